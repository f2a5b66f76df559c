from __future__ import annotations

from flask import current_app
from flask_mail import Message

from extensions import db, mail
from models import Parent, Student


def _parent_email(parent_id: str | None) -> str | None:
    if not parent_id:
        return None
    parent = db.session.get(Parent, parent_id)
    if parent is None or parent.profile is None:
        return None
    email = (parent.profile.email or "").strip()
    return email or None


def send_payment_confirmation(payment, transaction=None) -> bool:
    """Best-effort receipt email to the paying parent.

    Skipped when no mail server is configured. Delivery problems are logged
    and never propagate into reconciliation.
    """
    cfg = current_app.config
    if not cfg.get("MAIL_SERVER"):
        return False
    email = _parent_email(payment.parent_id)
    if not email:
        return False
    student = db.session.get(Student, payment.student_id)
    brand = cfg.get("APP_NAME") or "School"
    currency = cfg.get("MPESA_CURRENCY") or ""
    amount = f"{currency} {float(payment.amount):,.2f}".strip()
    label = (transaction.installment_label if transaction is not None else None) or payment.description or "school fees"
    subject = f"Payment received - {amount}"
    body = (
        f"Hi,\n\nWe received your payment of {amount} for "
        f"{student.full_name if student else 'your student'} ({label}).\n"
        f"Reference: {payment.transaction_reference or payment.id}\n\n- {brand}"
    )
    try:
        sender = cfg.get("MAIL_DEFAULT_SENDER") or cfg.get("MAIL_USERNAME") or None
        mail.send(Message(subject=subject, recipients=[email], body=body, sender=sender))
        return True
    except Exception:
        current_app.logger.exception("Failed to send payment confirmation for %s", payment.id)
        return False
