from __future__ import annotations

from datetime import datetime
from typing import Optional

from flask import Blueprint, jsonify, request

from utils.auth import current_profile, requires, school_scope
from utils.errors import ValidationError
from utils.fee_rates import (
    active_rate_for_school,
    approve_rate,
    fee_report,
    get_rate,
    list_rates,
    pending_rate_for_school,
    propose_rate,
    rate_history,
    reject_rate,
)
from utils.roles import Capability

school_fee_rates_bp = Blueprint("school_fee_rates", __name__, url_prefix="/school/payment-fees")
admin_fee_rates_bp = Blueprint("admin_fee_rates", __name__, url_prefix="/admin/payment-fees")


def _parse_dt(value, field: str) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00")).replace(tzinfo=None)
    except ValueError:
        raise ValidationError(f"{field} must be an ISO date", {field: value})


def _report_window():
    return _parse_dt(request.args.get("start"), "start"), _parse_dt(request.args.get("end"), "end")


# -----------------------------
# School side
# -----------------------------


@school_fee_rates_bp.route("", methods=["GET"])
@requires(Capability.VIEW_SCHOOL_FEE_RATES)
def school_list():
    school_id = school_scope(current_profile())
    rates = list_rates(school_id=school_id, status=request.args.get("status") or None)
    active = active_rate_for_school(school_id)
    pending = pending_rate_for_school(school_id)
    return jsonify(
        {
            "ok": True,
            "rates": [r.to_dict() for r in rates],
            "active": active.to_dict() if active else None,
            "pending": pending.to_dict() if pending else None,
        }
    )


@school_fee_rates_bp.route("", methods=["POST"])
@requires(Capability.PROPOSE_SCHOOL_FEE_RATE)
def school_propose():
    profile = current_profile()
    data = request.get_json(silent=True) or {}
    rate = propose_rate(
        school_scope(profile),
        data.get("fee_percentage"),
        profile,
        effective_from=_parse_dt(data.get("effective_from"), "effective_from"),
        notes=data.get("notes"),
    )
    return jsonify({"ok": True, "rate": rate.to_dict()}), 201


@school_fee_rates_bp.route("/<rate_id>/approve", methods=["POST"])
@requires(Capability.DECIDE_SCHOOL_FEE_RATE)
def school_approve(rate_id):
    rate = approve_rate(rate_id, current_profile())
    return jsonify({"ok": True, "rate": rate.to_dict()})


@school_fee_rates_bp.route("/<rate_id>/reject", methods=["POST"])
@requires(Capability.DECIDE_SCHOOL_FEE_RATE)
def school_reject(rate_id):
    data = request.get_json(silent=True) or {}
    rate = reject_rate(rate_id, current_profile(), data.get("reason") or data.get("rejection_reason"))
    return jsonify({"ok": True, "rate": rate.to_dict()})


@school_fee_rates_bp.route("/reports", methods=["GET"])
@requires(Capability.VIEW_SCHOOL_FEE_RATES)
def school_reports():
    start, end = _report_window()
    school_id = school_scope(current_profile())
    return jsonify({"ok": True, **fee_report(school_id=school_id, start=start, end=end)})


# -----------------------------
# Platform side
# -----------------------------


@admin_fee_rates_bp.route("", methods=["GET"])
@requires(Capability.VIEW_PLATFORM_FEE_RATES)
def admin_list():
    rates = list_rates(
        school_id=request.args.get("school_id") or None,
        status=request.args.get("status") or None,
    )
    return jsonify({"ok": True, "rates": [r.to_dict() for r in rates]})


@admin_fee_rates_bp.route("", methods=["POST"])
@requires(Capability.PROPOSE_PLATFORM_FEE_RATE)
def admin_propose():
    data = request.get_json(silent=True) or {}
    if not data.get("school_id"):
        raise ValidationError("school_id is required")
    rate = propose_rate(
        data["school_id"],
        data.get("fee_percentage"),
        current_profile(),
        effective_from=_parse_dt(data.get("effective_from"), "effective_from"),
        notes=data.get("notes"),
    )
    return jsonify({"ok": True, "rate": rate.to_dict()}), 201


@admin_fee_rates_bp.route("/<rate_id>/approve", methods=["POST"])
@requires(Capability.DECIDE_PLATFORM_FEE_RATE)
def admin_approve(rate_id):
    rate = approve_rate(rate_id, current_profile())
    return jsonify({"ok": True, "rate": rate.to_dict()})


@admin_fee_rates_bp.route("/<rate_id>/reject", methods=["POST"])
@requires(Capability.DECIDE_PLATFORM_FEE_RATE)
def admin_reject(rate_id):
    data = request.get_json(silent=True) or {}
    rate = reject_rate(rate_id, current_profile(), data.get("reason") or data.get("rejection_reason"))
    return jsonify({"ok": True, "rate": rate.to_dict()})


@admin_fee_rates_bp.route("/<rate_id>/history", methods=["GET"])
@requires(Capability.VIEW_PLATFORM_FEE_RATES)
def admin_history(rate_id):
    rate = get_rate(rate_id)
    return jsonify({"ok": True, "rate": rate.to_dict(), "history": rate_history(rate.id)})


@admin_fee_rates_bp.route("/reports", methods=["GET"])
@requires(Capability.VIEW_PLATFORM_FEE_RATES)
def admin_reports():
    start, end = _report_window()
    return jsonify(
        {"ok": True, **fee_report(school_id=request.args.get("school_id") or None, start=start, end=end)}
    )
