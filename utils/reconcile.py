from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from extensions import db
from models import (
    AssignmentStatus,
    Payment,
    PaymentPlan,
    PaymentStatus,
    PaymentTransaction,
    StudentFeeAssignment,
    as_decimal,
)
from utils.errors import NotFoundError, PaymentStateError
from utils.fee_assignments import recompute_paid_amount, resolve_assignment
from utils.ledger import get_payment, mark_completed_if_pending, transition
from utils.mpesa import ACCEPTED
from utils.notify import send_payment_confirmation

log = logging.getLogger(__name__)

APPLIED = "applied"
ALREADY_COMPLETED = "already_completed"
PARTIAL = "partial"
FAILED = "failed"

FULL_PAYMENT_LABEL = "Full Payment"


@dataclass
class ReconcileResult:
    outcome: str
    payment: Payment
    transaction: Optional[PaymentTransaction] = None
    assignment: Optional[StudentFeeAssignment] = None
    warning: Optional[str] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.outcome in (APPLIED, ALREADY_COMPLETED, FAILED)

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "outcome": self.outcome,
            "payment": self.payment.to_dict(),
            "transaction": self.transaction.to_dict() if self.transaction else None,
            "assignment": self.assignment.to_dict() if self.assignment else None,
        }
        if self.warning:
            body["warning"] = self.warning
        if self.error:
            body["error"] = self.error
        return body


def resolve_installment_label(payment: Payment, plan: Optional[PaymentPlan]) -> Optional[str]:
    if plan is not None:
        inst = plan.installment(payment.installment_number)
        if inst and inst.get("label"):
            return inst["label"]
    if payment.installment_label:
        return payment.installment_label
    if plan is not None and plan.is_single_payment:
        return FULL_PAYMENT_LABEL
    if payment.installment_number is not None:
        return f"Installment {payment.installment_number}"
    return None


def _plan_for(payment: Payment, assignment: Optional[StudentFeeAssignment]) -> Optional[PaymentPlan]:
    plan_id = payment.payment_plan_id or (assignment.payment_plan_id if assignment else None)
    return db.session.get(PaymentPlan, plan_id) if plan_id else None


def _existing_transaction(payment_id: str) -> Optional[PaymentTransaction]:
    return PaymentTransaction.query.filter_by(payment_id=payment_id).first()


def _apply_to_ledger(payment: Payment, assignment: Optional[StudentFeeAssignment]) -> PaymentTransaction:
    """Append the transaction and refresh the assignment rollup in one commit."""
    plan = _plan_for(payment, assignment)
    txn = PaymentTransaction(
        payment_id=payment.id,
        student_fee_assignment_id=assignment.id if assignment else None,
        payment_plan_id=plan.id if plan else None,
        installment_number=payment.installment_number,
        installment_label=resolve_installment_label(payment, plan),
        amount_paid=as_decimal(payment.amount),
        transaction_status=PaymentStatus.COMPLETED,
        gateway_transaction_id=payment.transaction_reference,
        notes=payment.description,
    )
    db.session.add(txn)
    db.session.flush()

    if assignment is not None:
        paid = recompute_paid_amount(assignment)
        assignment.paid_amount = paid
        if paid >= as_decimal(assignment.total_due):
            assignment.status = AssignmentStatus.FULLY_PAID
        elif assignment.status != AssignmentStatus.FULLY_PAID:
            assignment.status = AssignmentStatus.ACTIVE
    db.session.commit()
    return txn


def _merged_response(payment: Payment, payload: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    merged = dict(payment.gateway_response or {})
    merged["confirmation"] = payload or {}
    return merged


def apply_confirmation(payment_id: str, gateway_payload: Optional[Dict[str, Any]] = None) -> ReconcileResult:
    payment = get_payment(payment_id)
    if payment.status == PaymentStatus.COMPLETED:
        return ReconcileResult(ALREADY_COMPLETED, payment, _existing_transaction(payment.id), resolve_assignment(payment))
    if payment.status == PaymentStatus.FAILED:
        raise PaymentStateError("A failed payment cannot be confirmed", {"payment_id": payment.id})

    assignment = resolve_assignment(payment)
    warning = None
    if assignment is None:
        warning = "No active fee assignment matched this payment; ledger rollup not updated"
        log.warning("Payment %s for student %s has no matching fee assignment", payment.id, payment.student_id)

    if not mark_completed_if_pending(payment.id, _merged_response(payment, gateway_payload)):
        payment = get_payment(payment_id)
        if payment.status == PaymentStatus.COMPLETED:
            return ReconcileResult(ALREADY_COMPLETED, payment, _existing_transaction(payment.id), assignment)
        raise PaymentStateError("A failed payment cannot be confirmed", {"payment_id": payment.id})

    payment = get_payment(payment_id)
    try:
        txn = _apply_to_ledger(payment, assignment)
    except IntegrityError:
        db.session.rollback()
        log.info("Payment %s already has a transaction row", payment.id)
        return ReconcileResult(ALREADY_COMPLETED, payment, _existing_transaction(payment.id), assignment)
    except SQLAlchemyError as e:
        db.session.rollback()
        log.error("Payment %s completed but ledger update failed: %s", payment.id, e)
        return ReconcileResult(
            PARTIAL,
            payment,
            None,
            assignment,
            warning="Payment completed but bookkeeping is incomplete; run reconciliation repair",
            error=str(e),
        )

    send_payment_confirmation(payment, txn)
    return ReconcileResult(APPLIED, payment, txn, assignment, warning=warning)


# -----------------------------
# Provider callbacks
# -----------------------------


def simulated_payload(payment: Payment) -> Dict[str, Any]:
    return {
        "input_TransactionID": payment.transaction_reference or f"SIM{int(time.time() * 1000)}",
        "input_ThirdPartyConversationID": payment.third_party_conversation_id,
        "input_ResultCode": ACCEPTED,
        "input_ResultDesc": "Request processed successfully",
        "input_Amount": f"{as_decimal(payment.amount)}",
        "simulated": True,
    }


def find_payment_for_callback(payload: Dict[str, Any]) -> Optional[Payment]:
    tx_id = payload.get("input_TransactionID") or payload.get("output_TransactionID")
    conv_id = payload.get("input_ThirdPartyConversationID") or payload.get("output_ThirdPartyConversationID")
    payment = None
    if tx_id:
        payment = Payment.query.filter_by(transaction_reference=tx_id).first()
    if payment is None and conv_id:
        payment = Payment.query.filter_by(third_party_conversation_id=conv_id).first()
    return payment


def apply_gateway_callback(payload: Dict[str, Any]) -> ReconcileResult:
    payment = find_payment_for_callback(payload or {})
    if payment is None:
        raise NotFoundError("No payment matches this callback")
    code = payload.get("input_ResultCode") or payload.get("output_ResponseCode")
    if code == ACCEPTED:
        return apply_confirmation(payment.id, payload)

    if payment.status == PaymentStatus.COMPLETED:
        log.warning("Ignoring failure callback %s for completed payment %s", code, payment.id)
        return ReconcileResult(ALREADY_COMPLETED, payment, _existing_transaction(payment.id))
    if payment.status == PaymentStatus.PENDING:
        payment.gateway_response = _merged_response(payment, payload)
        transition(payment, PaymentStatus.FAILED)
        db.session.commit()
        log.info("Payment %s failed by callback: %s", payment.id, payload.get("input_ResultDesc"))
    return ReconcileResult(FAILED, payment, warning=payload.get("input_ResultDesc"))


# -----------------------------
# Repair tooling
# -----------------------------


def find_unreconciled_payments(limit: Optional[int] = None) -> List[Payment]:
    q = (
        Payment.query.outerjoin(PaymentTransaction, PaymentTransaction.payment_id == Payment.id)
        .filter(Payment.status == PaymentStatus.COMPLETED, PaymentTransaction.id.is_(None))
        .order_by(Payment.payment_date)
    )
    if limit:
        q = q.limit(limit)
    return q.all()


def repair_payment(payment_id: str) -> ReconcileResult:
    """Re-run the bookkeeping half of a confirmation for a completed payment."""
    payment = get_payment(payment_id)
    if payment.status != PaymentStatus.COMPLETED:
        raise PaymentStateError("Only completed payments can be repaired", {"payment_id": payment.id, "status": payment.status})
    assignment = resolve_assignment(payment)
    existing = _existing_transaction(payment.id)
    if existing is not None:
        return ReconcileResult(ALREADY_COMPLETED, payment, existing, assignment)
    try:
        txn = _apply_to_ledger(payment, assignment)
    except IntegrityError:
        db.session.rollback()
        return ReconcileResult(ALREADY_COMPLETED, payment, _existing_transaction(payment.id), assignment)
    log.info("Repaired ledger for payment %s", payment.id)
    return ReconcileResult(APPLIED, payment, txn, assignment)
