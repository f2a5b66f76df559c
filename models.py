from __future__ import annotations

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict

from sqlalchemy import event
from sqlalchemy.orm import validates

from extensions import db


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _uuid() -> str:
    return str(uuid.uuid4())


def _money(value) -> float | None:
    return float(value) if value is not None else None


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


class PaymentStatus:
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    TERMINAL = frozenset({COMPLETED, FAILED})


class AssignmentStatus:
    ACTIVE = "active"
    FULLY_PAID = "fully_paid"
    CANCELLED = "cancelled"


class RateStatus:
    PENDING_SCHOOL = "pending_school"
    PENDING_ADMIN = "pending_admin"
    ACTIVE = "active"
    REJECTED_BY_SCHOOL = "rejected_by_school"
    REJECTED_BY_ADMIN = "rejected_by_admin"
    EXPIRED = "expired"
    PENDING = (PENDING_SCHOOL, PENDING_ADMIN)


# -----------------------------
# Tenancy / people (read-only collaborators)
# -----------------------------


class School(db.Model):
    __tablename__ = "schools"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    name = db.Column(db.String(200), nullable=False)
    verification_status = db.Column(db.String(20), nullable=False, default="pending")
    created_at = db.Column(db.DateTime, default=utcnow)

    def __repr__(self):
        return f"<School {self.name}>"


class Profile(db.Model):
    __tablename__ = "profiles"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    email = db.Column(db.String(255), nullable=True, index=True)
    first_name = db.Column(db.String(100))
    last_name = db.Column(db.String(100))
    role = db.Column(db.String(32), nullable=False)
    school_id = db.Column(db.String(36), db.ForeignKey("schools.id"), nullable=True, index=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime, default=utcnow)

    def __repr__(self):
        return f"<Profile {self.id} ({self.role})>"


class Parent(db.Model):
    __tablename__ = "parents"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    profile_id = db.Column(db.String(36), db.ForeignKey("profiles.id"), nullable=False, unique=True)
    phone = db.Column(db.String(20))

    profile = db.relationship("Profile")


class Student(db.Model):
    __tablename__ = "students"
    __table_args__ = (
        db.UniqueConstraint("school_id", "student_number", name="uq_students_school_number"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    school_id = db.Column(db.String(36), db.ForeignKey("schools.id"), nullable=False, index=True)
    student_number = db.Column(db.String(50), nullable=False)
    first_name = db.Column(db.String(100), nullable=False)
    last_name = db.Column(db.String(100), nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow)

    school = db.relationship("School")

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    def __repr__(self):
        return f"<Student {self.full_name} ({self.student_number})>"


class ParentStudent(db.Model):
    __tablename__ = "parent_students"
    __table_args__ = (
        db.UniqueConstraint("parent_id", "student_id", name="uq_parent_student"),
    )

    id = db.Column(db.Integer, primary_key=True)
    parent_id = db.Column(db.String(36), db.ForeignKey("parents.id"), nullable=False, index=True)
    student_id = db.Column(db.String(36), db.ForeignKey("students.id"), nullable=False, index=True)


# -----------------------------
# Fee structures
# -----------------------------


class FeeCategory(db.Model):
    __tablename__ = "fee_categories"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    school_id = db.Column(db.String(36), db.ForeignKey("schools.id"), nullable=False, index=True)
    name = db.Column(db.String(120), nullable=False)


class FeeStructure(db.Model):
    __tablename__ = "fee_structures"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    school_id = db.Column(db.String(36), db.ForeignKey("schools.id"), nullable=False, index=True)
    academic_year_id = db.Column(db.String(36), nullable=True, index=True)
    name = db.Column(db.String(200), nullable=False)
    # [{"category_id": ..., "category_name": ..., "amount": 1000}]
    fee_items = db.Column(db.JSON, nullable=False, default=list)

    plans = db.relationship("PaymentPlan", backref="structure", order_by="PaymentPlan.created_at")


class PaymentPlan(db.Model):
    __tablename__ = "payment_plans"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    structure_id = db.Column(db.String(36), db.ForeignKey("fee_structures.id"), nullable=False, index=True)
    fee_category_id = db.Column(db.String(36), db.ForeignKey("fee_categories.id"), nullable=True, index=True)
    type = db.Column(db.String(20), nullable=False, default="installments")  # installments/one_time/upfront/monthly
    discount_percentage = db.Column(db.Numeric(5, 2), nullable=False, default=0)
    # [{"installment_number": 1, "amount": 300, "label": "Term 1", "due_date": "2025-01-15"}]
    installments = db.Column(db.JSON, nullable=False, default=list)
    created_at = db.Column(db.DateTime, default=utcnow)

    @property
    def is_single_payment(self) -> bool:
        return self.type in ("one_time", "upfront")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "structure_id": self.structure_id,
            "fee_category_id": self.fee_category_id,
            "type": self.type,
            "discount_percentage": _money(self.discount_percentage),
            "installments": self.installments or [],
        }

    def installment(self, number) -> Dict[str, Any] | None:
        if number is None:
            return None
        for inst in self.installments or []:
            if str(inst.get("installment_number")) == str(number):
                return inst
        return None


class StudentFeeAssignment(db.Model):
    __tablename__ = "student_fee_assignments"
    __table_args__ = (
        db.UniqueConstraint("student_id", "structure_id", name="uq_assignment_student_structure"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    student_id = db.Column(db.String(36), db.ForeignKey("students.id"), nullable=False, index=True)
    structure_id = db.Column(db.String(36), db.ForeignKey("fee_structures.id"), nullable=False, index=True)
    payment_plan_id = db.Column(db.String(36), db.ForeignKey("payment_plans.id"), nullable=True)
    academic_year_id = db.Column(db.String(36), nullable=True, index=True)
    total_due = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    # Cached rollup of completed payment_transactions; written by the reconciler only
    paid_amount = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    status = db.Column(db.String(20), nullable=False, default=AssignmentStatus.ACTIVE)
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "student_id": self.student_id,
            "structure_id": self.structure_id,
            "payment_plan_id": self.payment_plan_id,
            "academic_year_id": self.academic_year_id,
            "total_due": _money(self.total_due),
            "paid_amount": _money(self.paid_amount),
            "status": self.status,
        }


# -----------------------------
# Payments
# -----------------------------


class Payment(db.Model):
    __tablename__ = "payments"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    student_id = db.Column(db.String(36), db.ForeignKey("students.id"), nullable=False, index=True)
    parent_id = db.Column(db.String(36), db.ForeignKey("parents.id"), nullable=True, index=True)
    payment_plan_id = db.Column(db.String(36), db.ForeignKey("payment_plans.id"), nullable=True)
    fee_structure_id = db.Column(db.String(36), db.ForeignKey("fee_structures.id"), nullable=True)
    # Base fee amount credited to the student's ledger (platform commission lives on the snapshot)
    amount = db.Column(db.Numeric(12, 2), nullable=False)
    payment_method = db.Column(db.String(32), nullable=False, default="mobile_money")
    status = db.Column(db.String(20), nullable=False, default=PaymentStatus.PENDING, index=True)
    transaction_reference = db.Column(db.String(64), nullable=True, index=True)
    third_party_conversation_id = db.Column(db.String(64), nullable=True, index=True)
    gateway_response = db.Column(db.JSON, nullable=True)
    installment_number = db.Column(db.Integer, nullable=True)
    installment_label = db.Column(db.String(120), nullable=True)
    description = db.Column(db.String(255), nullable=True)
    payment_date = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    transaction = db.relationship("PaymentTransaction", back_populates="payment", uselist=False)
    fee_snapshot = db.relationship("TransactionFeeSnapshot", back_populates="payment", uselist=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "student_id": self.student_id,
            "parent_id": self.parent_id,
            "payment_plan_id": self.payment_plan_id,
            "amount": _money(self.amount),
            "payment_method": self.payment_method,
            "status": self.status,
            "transaction_reference": self.transaction_reference,
            "installment_number": self.installment_number,
            "installment_label": self.installment_label,
            "description": self.description,
            "payment_date": _iso(self.payment_date),
            "created_at": _iso(self.created_at),
        }

    def __repr__(self):
        return f"<Payment {self.id} {self.status} {self.amount}>"


class PaymentTransaction(db.Model):
    """Append-only record of one applied payment.

    The unique ``payment_id`` makes applying the same payment twice fail at
    the database instead of relying on application checks.
    """

    __tablename__ = "payment_transactions"
    __table_args__ = (
        db.UniqueConstraint("payment_id", name="uq_payment_transactions_payment"),
        db.Index("ix_payment_transactions_assignment_plan", "student_fee_assignment_id", "payment_plan_id"),
    )

    id = db.Column(db.Integer, primary_key=True)
    payment_id = db.Column(db.String(36), db.ForeignKey("payments.id"), nullable=False)
    student_fee_assignment_id = db.Column(
        db.String(36), db.ForeignKey("student_fee_assignments.id"), nullable=True
    )
    payment_plan_id = db.Column(db.String(36), db.ForeignKey("payment_plans.id"), nullable=True)
    installment_number = db.Column(db.Integer, nullable=True)
    installment_label = db.Column(db.String(120), nullable=True)
    amount_paid = db.Column(db.Numeric(12, 2), nullable=False)
    transaction_status = db.Column(db.String(20), nullable=False, default=PaymentStatus.COMPLETED)
    gateway_transaction_id = db.Column(db.String(64), nullable=True)
    notes = db.Column(db.String(255), nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    payment = db.relationship("Payment", back_populates="transaction")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "payment_id": self.payment_id,
            "student_fee_assignment_id": self.student_fee_assignment_id,
            "payment_plan_id": self.payment_plan_id,
            "installment_number": self.installment_number,
            "installment_label": self.installment_label,
            "amount_paid": _money(self.amount_paid),
            "transaction_status": self.transaction_status,
            "gateway_transaction_id": self.gateway_transaction_id,
            "notes": self.notes,
            "created_at": _iso(self.created_at),
        }


@event.listens_for(PaymentTransaction, "before_update")
def _payment_transaction_is_immutable(mapper, connection, target):
    raise RuntimeError("payment_transactions rows are append-only")


@event.listens_for(PaymentTransaction, "before_delete")
def _payment_transaction_is_permanent(mapper, connection, target):
    raise RuntimeError("payment_transactions rows are append-only")


# -----------------------------
# Platform commission
# -----------------------------


class PaymentFeeRate(db.Model):
    __tablename__ = "payment_fee_rates"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    school_id = db.Column(db.String(36), db.ForeignKey("schools.id"), nullable=False, index=True)
    fee_percentage = db.Column(db.Numeric(5, 2), nullable=False)
    status = db.Column(db.String(24), nullable=False, index=True)
    proposed_by_id = db.Column(db.String(36), db.ForeignKey("profiles.id"), nullable=True)
    proposed_by_role = db.Column(db.String(32), nullable=False)
    notes = db.Column(db.Text, nullable=True)
    school_approved_by = db.Column(db.String(36), nullable=True)
    school_approved_at = db.Column(db.DateTime, nullable=True)
    admin_approved_by = db.Column(db.String(36), nullable=True)
    admin_approved_at = db.Column(db.DateTime, nullable=True)
    rejection_reason = db.Column(db.Text, nullable=True)
    rejected_by = db.Column(db.String(36), nullable=True)
    rejected_at = db.Column(db.DateTime, nullable=True)
    effective_from = db.Column(db.DateTime, nullable=False, default=utcnow)
    effective_until = db.Column(db.DateTime, nullable=True)
    expires_at = db.Column(db.DateTime, nullable=True)
    activated_at = db.Column(db.DateTime, nullable=True)
    # Hold the school id only while pending / active; the unique constraints
    # allow one pending and one active rate per school (NULLs never collide).
    pending_slot = db.Column(db.String(36), nullable=True, unique=True)
    active_slot = db.Column(db.String(36), nullable=True, unique=True)
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    school = db.relationship("School")

    @validates("status")
    def _claim_slots(self, key, status):
        self.pending_slot = self.school_id if status in RateStatus.PENDING else None
        self.active_slot = self.school_id if status == RateStatus.ACTIVE else None
        return status

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "school_id": self.school_id,
            "school_name": self.school.name if self.school else None,
            "fee_percentage": _money(self.fee_percentage),
            "status": self.status,
            "proposed_by_id": self.proposed_by_id,
            "proposed_by_role": self.proposed_by_role,
            "notes": self.notes,
            "school_approved_by": self.school_approved_by,
            "school_approved_at": _iso(self.school_approved_at),
            "admin_approved_by": self.admin_approved_by,
            "admin_approved_at": _iso(self.admin_approved_at),
            "rejection_reason": self.rejection_reason,
            "rejected_by": self.rejected_by,
            "rejected_at": _iso(self.rejected_at),
            "effective_from": _iso(self.effective_from),
            "effective_until": _iso(self.effective_until),
            "expires_at": _iso(self.expires_at),
            "activated_at": _iso(self.activated_at),
            "created_at": _iso(self.created_at),
        }


class PaymentFeeRateHistory(db.Model):
    __tablename__ = "payment_fee_rate_history"

    id = db.Column(db.Integer, primary_key=True)
    rate_id = db.Column(db.String(36), db.ForeignKey("payment_fee_rates.id"), nullable=False, index=True)
    school_id = db.Column(db.String(36), nullable=False, index=True)
    fee_percentage = db.Column(db.Numeric(5, 2), nullable=False)
    status = db.Column(db.String(24), nullable=False)
    changed_by = db.Column(db.String(36), nullable=True)
    change_type = db.Column(db.String(24), nullable=False)
    change_details = db.Column(db.JSON, nullable=False, default=dict)
    created_at = db.Column(db.DateTime, default=utcnow)


class TransactionFeeSnapshot(db.Model):
    __tablename__ = "transaction_fee_snapshots"

    id = db.Column(db.Integer, primary_key=True)
    payment_id = db.Column(db.String(36), db.ForeignKey("payments.id"), nullable=False, unique=True)
    student_id = db.Column(db.String(36), nullable=False, index=True)
    school_id = db.Column(db.String(36), nullable=False, index=True)
    fee_rate_id = db.Column(db.String(36), db.ForeignKey("payment_fee_rates.id"), nullable=True)
    fee_percentage = db.Column(db.Numeric(5, 2), nullable=False)
    base_amount = db.Column(db.Numeric(12, 2), nullable=False)
    fee_amount = db.Column(db.Numeric(12, 2), nullable=False)
    total_amount = db.Column(db.Numeric(12, 2), nullable=False)
    payment_method = db.Column(db.String(32), nullable=False)
    payment_status = db.Column(db.String(20), nullable=False, default=PaymentStatus.PENDING)
    locked_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow)

    payment = db.relationship("Payment", back_populates="fee_snapshot")

    def fee_info(self) -> Dict[str, Any]:
        return {
            "baseAmount": _money(self.base_amount),
            "feePercentage": _money(self.fee_percentage),
            "feeAmount": _money(self.fee_amount),
            "totalAmount": _money(self.total_amount),
            "schoolReceives": _money(self.total_amount),
            "schoolOwes": _money(self.fee_amount),
        }


def as_decimal(value) -> Decimal:
    d = value if isinstance(value, Decimal) else Decimal(str(value if value is not None else 0))
    # NaN quantizes silently and then breaks every comparison
    if not d.is_finite():
        raise ValueError(f"Not a finite amount: {value!r}")
    return d.quantize(Decimal("0.01"))
