from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import func

from extensions import db
from models import (
    AssignmentStatus,
    FeeStructure,
    Payment,
    PaymentPlan,
    PaymentStatus,
    PaymentTransaction,
    StudentFeeAssignment,
    as_decimal,
)

log = logging.getLogger(__name__)

DEFAULT_TOLERANCE = Decimal("0.05")


@dataclass
class CategorySummary:
    student_id: str
    fee_category_id: str
    total_due: Decimal = Decimal("0.00")
    paid: Decimal = Decimal("0.00")
    payment_plan_id: Optional[str] = None
    installments: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def remaining(self) -> Decimal:
        return max(Decimal("0.00"), self.total_due - self.paid)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "student_id": self.student_id,
            "fee_category_id": self.fee_category_id,
            "payment_plan_id": self.payment_plan_id,
            "total_due": float(self.total_due),
            "paid_amount": float(self.paid),
            "remaining": float(self.remaining),
            "installments": self.installments,
        }


# -----------------------------
# Assignment lookups
# -----------------------------


def structure_id_for(payment: Payment) -> Optional[str]:
    if payment.fee_structure_id:
        return payment.fee_structure_id
    if payment.payment_plan_id:
        plan = db.session.get(PaymentPlan, payment.payment_plan_id)
        if plan is not None:
            return plan.structure_id
    return None


def resolve_assignment(payment: Payment) -> Optional[StudentFeeAssignment]:
    """The student's live assignment for the structure the payment was made against."""
    structure_id = structure_id_for(payment)
    if not structure_id:
        return None
    return (
        StudentFeeAssignment.query.filter(
            StudentFeeAssignment.student_id == payment.student_id,
            StudentFeeAssignment.structure_id == structure_id,
            StudentFeeAssignment.status != AssignmentStatus.CANCELLED,
        )
        .order_by(StudentFeeAssignment.created_at.desc())
        .first()
    )


def _completed_sum(*criteria) -> Decimal:
    total = (
        db.session.query(func.coalesce(func.sum(PaymentTransaction.amount_paid), 0))
        .filter(PaymentTransaction.transaction_status == PaymentStatus.COMPLETED, *criteria)
        .scalar()
    )
    return as_decimal(total)


def recompute_paid_amount(assignment: StudentFeeAssignment) -> Decimal:
    return _completed_sum(PaymentTransaction.student_fee_assignment_id == assignment.id)


def assignment_consistency(assignment: StudentFeeAssignment) -> Dict[str, Any]:
    computed = recompute_paid_amount(assignment)
    cached = as_decimal(assignment.paid_amount)
    rows = (
        db.session.query(PaymentTransaction.payment_plan_id, func.sum(PaymentTransaction.amount_paid))
        .filter(
            PaymentTransaction.student_fee_assignment_id == assignment.id,
            PaymentTransaction.transaction_status == PaymentStatus.COMPLETED,
        )
        .group_by(PaymentTransaction.payment_plan_id)
        .all()
    )
    return {
        "assignment_id": assignment.id,
        "cached_paid_amount": float(cached),
        "computed_paid_amount": float(computed),
        "consistent": cached == computed,
        "by_plan": {plan_id: float(as_decimal(total)) for plan_id, total in rows},
    }


# -----------------------------
# Per-category view
# -----------------------------


def plan_total(plan: PaymentPlan) -> Decimal:
    total = Decimal("0.00")
    for inst in plan.installments or []:
        total += as_decimal(inst.get("amount"))
    return total


def _live_assignments(student_id: str, academic_year_id: Optional[str]) -> List[StudentFeeAssignment]:
    q = StudentFeeAssignment.query.filter(
        StudentFeeAssignment.student_id == student_id,
        StudentFeeAssignment.status.in_([AssignmentStatus.ACTIVE, AssignmentStatus.FULLY_PAID]),
    )
    if academic_year_id:
        q = q.filter(StudentFeeAssignment.academic_year_id == academic_year_id)
    return q.all()


def _pick_plan(plans: List[PaymentPlan], assignments: Iterable[StudentFeeAssignment], used: Optional[PaymentPlan]):
    if used is not None:
        return used
    chosen = {a.payment_plan_id for a in assignments if a.payment_plan_id}
    for plan in plans:
        if plan.id in chosen:
            return plan
    return plans[0] if plans else None


def category_summary(
    student_id: str,
    fee_category_id: str,
    academic_year_id: Optional[str] = None,
    today: Optional[date] = None,
) -> CategorySummary:
    summary = CategorySummary(student_id=student_id, fee_category_id=fee_category_id)
    assignments = _live_assignments(student_id, academic_year_id)
    if not assignments:
        return summary

    structure_ids = [a.structure_id for a in assignments]
    plans = (
        PaymentPlan.query.filter(
            PaymentPlan.fee_category_id == fee_category_id,
            PaymentPlan.structure_id.in_(structure_ids),
        )
        .order_by(PaymentPlan.created_at)
        .all()
    )
    if not plans:
        return summary

    plan_ids = [p.id for p in plans]
    assignment_ids = [a.id for a in assignments]
    summary.paid = _completed_sum(
        PaymentTransaction.student_fee_assignment_id.in_(assignment_ids),
        PaymentTransaction.payment_plan_id.in_(plan_ids),
    )

    plan = _pick_plan(plans, assignments, used_payment_plan(student_id, fee_category_id))
    summary.payment_plan_id = plan.id
    summary.total_due = plan_total(plan)

    paid_by_installment = dict(
        db.session.query(PaymentTransaction.installment_number, func.sum(PaymentTransaction.amount_paid))
        .filter(
            PaymentTransaction.student_fee_assignment_id.in_(assignment_ids),
            PaymentTransaction.payment_plan_id == plan.id,
            PaymentTransaction.transaction_status == PaymentStatus.COMPLETED,
        )
        .group_by(PaymentTransaction.installment_number)
        .all()
    )
    today = today or date.today()
    for inst in sorted(plan.installments or [], key=lambda i: int(i.get("installment_number") or 0)):
        number = inst.get("installment_number")
        amount = as_decimal(inst.get("amount"))
        paid = as_decimal(paid_by_installment.get(int(number)) if number is not None else 0)
        due = inst.get("due_date")
        summary.installments.append(
            {
                "installment_number": number,
                "label": inst.get("label"),
                "amount": float(amount),
                "due_date": due,
                "paid_amount": float(paid),
                "is_paid": paid >= amount,
                "is_current": bool(due) and str(due)[:10] <= today.isoformat(),
            }
        )
    return summary


def used_payment_plan(student_id: str, fee_category_id: str) -> Optional[PaymentPlan]:
    """Plan the student has already paid against for this category, if any."""
    return (
        PaymentPlan.query.join(PaymentTransaction, PaymentTransaction.payment_plan_id == PaymentPlan.id)
        .join(Payment, Payment.id == PaymentTransaction.payment_id)
        .filter(
            Payment.student_id == student_id,
            PaymentPlan.fee_category_id == fee_category_id,
            PaymentTransaction.transaction_status == PaymentStatus.COMPLETED,
        )
        .order_by(PaymentTransaction.created_at.desc())
        .first()
    )


# -----------------------------
# Legacy plan -> category migration
# -----------------------------


def match_plan_to_category(
    plan: PaymentPlan,
    fee_items: List[Dict[str, Any]],
    tolerance=DEFAULT_TOLERANCE,
) -> Optional[Dict[str, Any]]:
    """First fee item whose discounted amount is within ``tolerance`` of the plan total.

    List order decides between several items inside the band.
    """
    total = plan_total(plan)
    tol = Decimal(str(tolerance))
    discount = Decimal(str(plan.discount_percentage or 0))
    for item in fee_items or []:
        amount = as_decimal(item.get("amount"))
        if amount <= 0:
            continue
        expected = amount * (Decimal("1") - discount / Decimal("100"))
        if abs(total - expected) <= amount * tol:
            return item
    return None


def migrate_plan_categories(school_id: str) -> Dict[str, Any]:
    plans = (
        PaymentPlan.query.join(FeeStructure, FeeStructure.id == PaymentPlan.structure_id)
        .filter(FeeStructure.school_id == school_id, PaymentPlan.fee_category_id.is_(None))
        .order_by(PaymentPlan.created_at)
        .all()
    )
    updated = 0
    unmatched: List[Dict[str, Any]] = []
    for plan in plans:
        items = [i for i in (plan.structure.fee_items or []) if i.get("category_id")]
        item = match_plan_to_category(plan, items)
        if item is None:
            unmatched.append({"payment_plan_id": plan.id, "plan_total": float(plan_total(plan))})
            continue
        plan.fee_category_id = item["category_id"]
        updated += 1
    db.session.commit()
    log.info("Plan category migration for school %s: %s/%s updated", school_id, updated, len(plans))
    return {
        "total_plans": len(plans),
        "updated": updated,
        "unmatched": len(unmatched),
        "unmatched_plans": unmatched,
    }
