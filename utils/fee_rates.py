from __future__ import annotations

import logging
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Tuple

from flask import current_app
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from extensions import db
from models import (
    PaymentFeeRate,
    PaymentFeeRateHistory,
    PaymentStatus,
    Profile,
    RateStatus,
    School,
    TransactionFeeSnapshot,
    utcnow,
)
from utils.errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from utils.roles import Capability, Role, has_capability, is_platform_role, is_school_role

log = logging.getLogger(__name__)

SCHOOL = "school"
PLATFORM = "platform"

# Which party still has to sign off on a pending rate
_AWAITING = {RateStatus.PENDING_SCHOOL: SCHOOL, RateStatus.PENDING_ADMIN: PLATFORM}


# -----------------------------
# Helpers
# -----------------------------


def _party(profile: Profile, school_id: str, capability_school: Capability, capability_platform: Capability) -> str:
    role = Role.parse(getattr(profile, "role", None))
    if is_platform_role(role) and has_capability(role, capability_platform):
        return PLATFORM
    if is_school_role(role) and has_capability(role, capability_school):
        if profile.school_id != school_id:
            raise AuthorizationError("Rate belongs to another school")
        return SCHOOL
    raise AuthorizationError("Your role cannot perform this fee rate action")


def _parse_percentage(value) -> Decimal:
    try:
        pct = Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        raise ValidationError("fee_percentage must be a number", {"fee_percentage": value})
    if not pct.is_finite() or pct < 0 or pct > 100:
        raise ValidationError("fee_percentage must be between 0 and 100", {"fee_percentage": value})
    return pct.quantize(Decimal("0.01"))


def _history(rate: PaymentFeeRate, change_type: str, changed_by: Optional[str], **details) -> None:
    db.session.add(
        PaymentFeeRateHistory(
            rate_id=rate.id,
            school_id=rate.school_id,
            fee_percentage=rate.fee_percentage,
            status=rate.status,
            changed_by=changed_by,
            change_type=change_type,
            change_details={k: v for k, v in details.items() if v is not None},
        )
    )


def get_rate(rate_id: str) -> PaymentFeeRate:
    rate = db.session.get(PaymentFeeRate, rate_id) if rate_id else None
    if rate is None:
        raise NotFoundError("Fee rate not found", {"rate_id": rate_id})
    return rate


def pending_rate_for_school(school_id: str) -> Optional[PaymentFeeRate]:
    return PaymentFeeRate.query.filter(
        PaymentFeeRate.school_id == school_id,
        PaymentFeeRate.status.in_(RateStatus.PENDING),
    ).first()


# -----------------------------
# Transitions
# -----------------------------


def propose_rate(
    school_id: str,
    fee_percentage,
    proposer: Profile,
    effective_from: Optional[datetime] = None,
    notes: Optional[str] = None,
) -> PaymentFeeRate:
    party = _party(proposer, school_id, Capability.PROPOSE_SCHOOL_FEE_RATE, Capability.PROPOSE_PLATFORM_FEE_RATE)
    pct = _parse_percentage(fee_percentage)

    # Row lock serializes proposals and activations for one school
    school = db.session.get(School, school_id, with_for_update=True) if school_id else None
    if school is None:
        raise NotFoundError("School not found", {"school_id": school_id})
    if school.verification_status != "verified":
        raise ValidationError("Fee rates can only be set for verified schools", {"school_id": school_id})

    existing = pending_rate_for_school(school_id)
    if existing is not None:
        raise ConflictError(
            "This school already has a fee rate awaiting approval",
            {"rate_id": existing.id, "status": existing.status},
        )

    now = utcnow()
    rate = PaymentFeeRate(
        school_id=school_id,
        fee_percentage=pct,
        proposed_by_id=proposer.id,
        proposed_by_role=proposer.role,
        notes=notes,
        effective_from=effective_from or now,
    )
    # The proposer's own approval is implied by proposing
    if party == PLATFORM:
        rate.status = RateStatus.PENDING_SCHOOL
        rate.admin_approved_by = proposer.id
        rate.admin_approved_at = now
    else:
        rate.status = RateStatus.PENDING_ADMIN
        rate.school_approved_by = proposer.id
        rate.school_approved_at = now

    ttl_days = current_app.config.get("FEE_RATE_PENDING_TTL_DAYS")
    if ttl_days:
        rate.expires_at = now + timedelta(days=int(ttl_days))

    db.session.add(rate)
    try:
        db.session.flush()
    except IntegrityError:
        db.session.rollback()
        raise ConflictError("This school already has a fee rate awaiting approval", {"school_id": school_id})
    _history(rate, "created", proposer.id, proposed_by_role=proposer.role, notes=notes)
    db.session.commit()
    log.info("Fee rate %s%% proposed for school %s by %s (%s)", pct, school_id, proposer.id, rate.status)
    return rate


def _supersede_active(school_id: str, keep_id: str, now: datetime, changed_by: str) -> None:
    for prior in PaymentFeeRate.query.filter(
        PaymentFeeRate.school_id == school_id,
        PaymentFeeRate.status == RateStatus.ACTIVE,
        PaymentFeeRate.id != keep_id,
    ).all():
        prior.status = RateStatus.EXPIRED
        prior.effective_until = now
        _history(prior, "expired", changed_by, reason="superseded", superseded_by=keep_id)


def approve_rate(rate_id: str, approver: Profile) -> PaymentFeeRate:
    rate = get_rate(rate_id)
    db.session.get(School, rate.school_id, with_for_update=True)
    db.session.refresh(rate)
    party = _party(approver, rate.school_id, Capability.DECIDE_SCHOOL_FEE_RATE, Capability.DECIDE_PLATFORM_FEE_RATE)
    awaiting = _AWAITING.get(rate.status)
    if awaiting is None:
        raise ConflictError(f"Fee rate is {rate.status}, not awaiting approval", {"rate_id": rate.id})
    if awaiting != party:
        raise ConflictError("Fee rate is awaiting approval from the other party", {"rate_id": rate.id, "status": rate.status})

    now = utcnow()
    if party == SCHOOL:
        rate.school_approved_by = approver.id
        rate.school_approved_at = now
        _history(rate, "approved_school", approver.id)
    else:
        rate.admin_approved_by = approver.id
        rate.admin_approved_at = now
        _history(rate, "approved_admin", approver.id)

    _supersede_active(rate.school_id, rate.id, now, approver.id)
    # Release the prior active slot before this rate claims it
    db.session.flush()
    rate.status = RateStatus.ACTIVE
    rate.activated_at = now
    rate.effective_until = None
    _history(rate, "activated", approver.id)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise ConflictError("Another fee rate was activated for this school at the same time", {"rate_id": rate_id})
    log.info("Fee rate %s active for school %s", rate.id, rate.school_id)
    return rate


def reject_rate(rate_id: str, rejector: Profile, reason: Optional[str]) -> PaymentFeeRate:
    reason = (reason or "").strip()
    if not reason:
        raise ValidationError("A rejection reason is required")
    rate = get_rate(rate_id)
    party = _party(rejector, rate.school_id, Capability.DECIDE_SCHOOL_FEE_RATE, Capability.DECIDE_PLATFORM_FEE_RATE)
    if rate.status not in RateStatus.PENDING:
        raise ConflictError(f"Fee rate is {rate.status} and can no longer be rejected", {"rate_id": rate.id})

    rate.status = RateStatus.REJECTED_BY_SCHOOL if party == SCHOOL else RateStatus.REJECTED_BY_ADMIN
    rate.rejection_reason = reason
    rate.rejected_by = rejector.id
    rate.rejected_at = utcnow()
    _history(rate, "rejected", rejector.id, reason=reason)
    db.session.commit()
    return rate


def expire_stale_rates(now: Optional[datetime] = None) -> int:
    now = now or utcnow()
    stale = PaymentFeeRate.query.filter(
        PaymentFeeRate.status.in_(RateStatus.PENDING),
        PaymentFeeRate.expires_at.isnot(None),
        PaymentFeeRate.expires_at <= now,
    ).all()
    for rate in stale:
        previous = rate.status
        rate.status = RateStatus.EXPIRED
        rate.effective_until = now
        _history(rate, "expired", None, reason="approval window elapsed", previous_status=previous)
    if stale:
        db.session.commit()
        log.info("Expired %s pending fee rate(s)", len(stale))
    return len(stale)


# -----------------------------
# Reads
# -----------------------------


def active_rate_for_school(school_id: str, at: Optional[datetime] = None) -> Optional[PaymentFeeRate]:
    at = at or utcnow()
    return (
        PaymentFeeRate.query.filter(
            PaymentFeeRate.school_id == school_id,
            PaymentFeeRate.status == RateStatus.ACTIVE,
            PaymentFeeRate.effective_from <= at,
            db.or_(PaymentFeeRate.effective_until.is_(None), PaymentFeeRate.effective_until > at),
        )
        .order_by(PaymentFeeRate.activated_at.desc())
        .first()
    )


def effective_fee_percentage(school_id: str) -> Tuple[Decimal, Optional[PaymentFeeRate]]:
    rate = active_rate_for_school(school_id)
    if rate is not None:
        return Decimal(str(rate.fee_percentage)), rate
    default = current_app.config.get("PLATFORM_DEFAULT_FEE_PERCENTAGE", 2.5)
    return Decimal(str(default)), None


def list_rates(school_id: Optional[str] = None, status: Optional[str] = None) -> List[PaymentFeeRate]:
    q = PaymentFeeRate.query
    if school_id:
        q = q.filter(PaymentFeeRate.school_id == school_id)
    if status:
        q = q.filter(PaymentFeeRate.status == status)
    return q.order_by(PaymentFeeRate.created_at.desc()).all()


def rate_history(rate_id: str) -> List[Dict[str, Any]]:
    rows = PaymentFeeRateHistory.query.filter_by(rate_id=rate_id).order_by(PaymentFeeRateHistory.id).all()
    return [
        {
            "status": r.status,
            "change_type": r.change_type,
            "changed_by": r.changed_by,
            "fee_percentage": float(r.fee_percentage),
            "details": r.change_details or {},
            "created_at": r.created_at.isoformat() if r.created_at else None,
        }
        for r in rows
    ]


def fee_report(
    school_id: Optional[str] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Commission owed per school, from snapshots of completed payments."""
    q = db.session.query(
        TransactionFeeSnapshot.school_id,
        func.count(TransactionFeeSnapshot.id),
        func.coalesce(func.sum(TransactionFeeSnapshot.base_amount), 0),
        func.coalesce(func.sum(TransactionFeeSnapshot.fee_amount), 0),
        func.coalesce(func.sum(TransactionFeeSnapshot.total_amount), 0),
    ).filter(TransactionFeeSnapshot.payment_status == PaymentStatus.COMPLETED)
    if school_id:
        q = q.filter(TransactionFeeSnapshot.school_id == school_id)
    if start:
        q = q.filter(TransactionFeeSnapshot.locked_at >= start)
    if end:
        q = q.filter(TransactionFeeSnapshot.locked_at < end)
    rows = q.group_by(TransactionFeeSnapshot.school_id).all()

    schools = []
    totals = {"transactions": 0, "base_amount": 0.0, "fee_amount": 0.0, "total_amount": 0.0}
    for sid, count, base, fee, total in rows:
        item = {
            "school_id": sid,
            "transactions": int(count),
            "base_amount": float(base),
            "fee_amount": float(fee),
            "total_amount": float(total),
        }
        schools.append(item)
        for key in totals:
            totals[key] += item[key]
    return {"schools": schools, "totals": totals}
