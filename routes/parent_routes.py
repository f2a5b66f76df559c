from __future__ import annotations

from flask import Blueprint, jsonify, request

from utils.auth import current_profile, ensure_parent_owns_student, requires
from utils.errors import ValidationError
from utils.fee_assignments import category_summary, used_payment_plan
from utils.fee_rates import effective_fee_percentage
from utils.roles import Capability

parent_bp = Blueprint("parent", __name__, url_prefix="/parent")


def _required_args(*names):
    values = [(request.args.get(n) or "").strip() for n in names]
    missing = [n for n, v in zip(names, values) if not v]
    if missing:
        raise ValidationError("Missing required parameters", {"missing": missing})
    return values


@parent_bp.route("/payment-installments", methods=["GET"])
@requires(Capability.VIEW_OWN_STUDENTS)
def payment_installments():
    student_id, category_id = _required_args("student_id", "category_id")
    _, student = ensure_parent_owns_student(current_profile(), student_id)
    summary = category_summary(student.id, category_id, request.args.get("academic_year_id") or None)
    body = {"ok": True, **summary.to_dict()}
    if not summary.installments:
        body["message"] = "No installments found for this category"
    return jsonify(body)


@parent_bp.route("/active-fee-rate", methods=["GET"])
@requires(Capability.VIEW_OWN_STUDENTS)
def active_fee_rate():
    (student_id,) = _required_args("student_id")
    _, student = ensure_parent_owns_student(current_profile(), student_id)
    pct, rate = effective_fee_percentage(student.school_id)
    return jsonify(
        {
            "ok": True,
            "school_id": student.school_id,
            "fee_percentage": float(pct),
            "is_default": rate is None,
            "rate": rate.to_dict() if rate else None,
        }
    )


@parent_bp.route("/used-payment-plan", methods=["GET"])
@requires(Capability.VIEW_OWN_STUDENTS)
def used_plan():
    student_id, category_id = _required_args("student_id", "category_id")
    _, student = ensure_parent_owns_student(current_profile(), student_id)
    plan = used_payment_plan(student.id, category_id)
    return jsonify({"ok": True, "payment_plan": plan.to_dict() if plan else None})
