from __future__ import annotations

import logging
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Optional

from sqlalchemy import update

from extensions import db
from models import Payment, PaymentStatus, TransactionFeeSnapshot, as_decimal, utcnow
from utils.errors import NotFoundError, PaymentStateError, ValidationError

log = logging.getLogger(__name__)

_ALLOWED = {
    PaymentStatus.PENDING: frozenset({PaymentStatus.COMPLETED, PaymentStatus.FAILED}),
    PaymentStatus.COMPLETED: frozenset(),
    PaymentStatus.FAILED: frozenset(),
}

_CONTEXT_FIELDS = (
    "payment_plan_id",
    "fee_structure_id",
    "installment_number",
    "installment_label",
    "description",
    "transaction_reference",
    "third_party_conversation_id",
)


def get_payment(payment_id: str) -> Payment:
    payment = db.session.get(Payment, payment_id) if payment_id else None
    if payment is None:
        raise NotFoundError("Payment not found", {"payment_id": payment_id})
    return payment


def transition(payment: Payment, new_status: str) -> Payment:
    """Move ``payment`` to ``new_status``; only pending -> completed/failed is legal."""
    current = payment.status or PaymentStatus.PENDING
    if new_status not in _ALLOWED.get(current, frozenset()):
        raise PaymentStateError(
            f"Payment cannot move from {current} to {new_status}",
            {"payment_id": payment.id, "status": current},
        )
    payment.status = new_status
    if new_status in PaymentStatus.TERMINAL and payment.fee_snapshot is not None:
        lock_fee_snapshot(payment.fee_snapshot, new_status)
    return payment


def create_pending_payment(
    student_id: str,
    parent_id: Optional[str],
    amount,
    method: str = "mobile_money",
    installment_context: Optional[Dict[str, Any]] = None,
) -> Payment:
    try:
        value = as_decimal(amount)
    except (ArithmeticError, ValueError, TypeError):
        raise ValidationError("Amount must be a number", {"amount": amount})
    if value <= 0:
        raise ValidationError("Amount must be greater than zero", {"amount": amount})
    if not student_id:
        raise ValidationError("studentId is required")

    ctx = installment_context or {}
    payment = Payment(
        student_id=student_id,
        parent_id=parent_id,
        amount=value,
        payment_method=method or "mobile_money",
        status=PaymentStatus.PENDING,
    )
    for name in _CONTEXT_FIELDS:
        if ctx.get(name) is not None:
            setattr(payment, name, ctx[name])
    db.session.add(payment)
    db.session.commit()
    return payment


def record_gateway_result(payment_id: str, result) -> Payment:
    """Store the gateway's answer to initiation.

    ``result`` is a ``CollectionResult`` or a plain dict with at least
    ``success``. Accepted requests stay pending until confirmed.
    """
    payment = get_payment(payment_id)
    if payment.status != PaymentStatus.PENDING:
        raise PaymentStateError(
            "Gateway result can only be recorded on a pending payment",
            {"payment_id": payment.id, "status": payment.status},
        )
    data = result.to_dict() if hasattr(result, "to_dict") else dict(result or {})
    payment.gateway_response = data
    if data.get("transaction_id"):
        payment.transaction_reference = data["transaction_id"]
    if not data.get("success"):
        transition(payment, PaymentStatus.FAILED)
        log.info("Payment %s failed at gateway: %s", payment.id, data.get("response_desc") or data.get("error"))
    db.session.commit()
    return payment


def mark_failed(payment_id: str, error: str, details: Optional[Dict[str, Any]] = None) -> Payment:
    payment = get_payment(payment_id)
    body = dict(details or {})
    body.update({"success": False, "error": error})
    payment.gateway_response = body
    transition(payment, PaymentStatus.FAILED)
    db.session.commit()
    return payment


def mark_completed_if_pending(payment_id: str, payload: Optional[Dict[str, Any]] = None) -> bool:
    """Conditional pending -> completed; True only for the caller that won."""
    now = utcnow()
    values: Dict[str, Any] = {"status": PaymentStatus.COMPLETED, "payment_date": now, "updated_at": now}
    if payload is not None:
        values["gateway_response"] = payload
    res = db.session.execute(
        update(Payment)
        .where(Payment.id == payment_id, Payment.status == PaymentStatus.PENDING)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    won = res.rowcount == 1
    if won:
        db.session.execute(
            update(TransactionFeeSnapshot)
            .where(TransactionFeeSnapshot.payment_id == payment_id)
            .values(payment_status=PaymentStatus.COMPLETED, locked_at=now)
            .execution_options(synchronize_session=False)
        )
    db.session.commit()
    return won


# -----------------------------
# Commission snapshot
# -----------------------------


def calculate_fee(base_amount, fee_percentage) -> Dict[str, Decimal]:
    base = as_decimal(base_amount)
    pct = Decimal(str(fee_percentage))
    fee = (base * pct / Decimal("100")).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    return {
        "base_amount": base,
        "fee_percentage": pct,
        "fee_amount": fee,
        "total_amount": base + fee,
    }


def create_fee_snapshot(
    payment: Payment,
    school_id: str,
    fee_percentage,
    fee_rate_id: Optional[str] = None,
) -> TransactionFeeSnapshot:
    fee = calculate_fee(payment.amount, fee_percentage)
    snap = TransactionFeeSnapshot(
        payment_id=payment.id,
        student_id=payment.student_id,
        school_id=school_id,
        fee_rate_id=fee_rate_id,
        fee_percentage=fee["fee_percentage"],
        base_amount=fee["base_amount"],
        fee_amount=fee["fee_amount"],
        total_amount=fee["total_amount"],
        payment_method=payment.payment_method,
        payment_status=payment.status,
    )
    db.session.add(snap)
    db.session.commit()
    return snap


def lock_fee_snapshot(snapshot: TransactionFeeSnapshot, status: str) -> TransactionFeeSnapshot:
    if snapshot.locked_at is None:
        snapshot.payment_status = status
        snapshot.locked_at = utcnow()
    return snapshot
