from decimal import Decimal
from unittest.mock import patch

import pytest
from sqlalchemy.exc import OperationalError

from extensions import db
from models import AssignmentStatus, PaymentStatus, PaymentTransaction, StudentFeeAssignment
from utils.errors import NotFoundError, PaymentStateError
from utils.fee_assignments import assignment_consistency
from utils.ledger import create_pending_payment, get_payment, record_gateway_result
from utils.mpesa import CollectionResult
from utils.reconcile import (
    ALREADY_COMPLETED,
    APPLIED,
    FAILED,
    PARTIAL,
    apply_confirmation,
    apply_gateway_callback,
    find_unreconciled_payments,
    repair_payment,
    simulated_payload,
)


def _pay(world, amount, installment=None, student=None, **ctx):
    context = {"payment_plan_id": world.plan.id, "installment_number": installment}
    context.update(ctx)
    return create_pending_payment((student or world.student).id, world.parent.id, amount, "mobile_money", context)


def _assignment(world):
    return db.session.get(StudentFeeAssignment, world.assignment.id)


def _transactions(payment_id):
    return PaymentTransaction.query.filter_by(payment_id=payment_id).all()


def test_installments_accumulate_until_fully_paid(world):
    first = _pay(world, 300, installment=1)
    result = apply_confirmation(first.id, {"input_ResultCode": "INS-0"})
    assert result.outcome == APPLIED
    assert result.transaction.installment_label == "Term 1"
    a = _assignment(world)
    assert a.paid_amount == Decimal("300.00")
    assert a.status == AssignmentStatus.ACTIVE

    second = _pay(world, 200, installment=2)
    result = apply_confirmation(second.id, {"input_ResultCode": "INS-0"})
    assert result.transaction.installment_label == "Term 2"
    a = _assignment(world)
    assert a.paid_amount == Decimal("500.00")
    assert a.status == AssignmentStatus.FULLY_PAID
    assert assignment_consistency(a)["consistent"] is True
    assert assignment_consistency(a)["by_plan"] == {world.plan.id: 500.0}


def test_duplicate_confirmation_applies_once(world):
    p = _pay(world, 100, installment=1)
    payload = simulated_payload(p)
    assert apply_confirmation(p.id, payload).outcome == APPLIED
    again = apply_confirmation(p.id, payload)
    assert again.outcome == ALREADY_COMPLETED
    assert again.transaction is not None

    rows = _transactions(p.id)
    assert len(rows) == 1
    assert rows[0].amount_paid == Decimal("100.00")
    assert _assignment(world).paid_amount == Decimal("100.00")


def test_failed_payment_cannot_be_confirmed(world):
    p = _pay(world, 100)
    record_gateway_result(p.id, CollectionResult(success=False, response_code="INS-1", response_desc="Internal error"))
    with pytest.raises(PaymentStateError):
        apply_confirmation(p.id, {})
    assert _transactions(p.id) == []


def test_unknown_payment_is_not_found(world):
    with pytest.raises(NotFoundError):
        apply_confirmation("missing-id", {})


def test_payment_without_assignment_still_completes(world):
    p = _pay(world, 80, student=world.other_student)
    result = apply_confirmation(p.id, {})
    assert result.outcome == APPLIED
    assert result.warning
    assert get_payment(p.id).status == PaymentStatus.COMPLETED
    assert result.transaction.student_fee_assignment_id is None
    assert _assignment(world).paid_amount == Decimal("0.00")


def test_single_payment_plan_labels_full_payment(world):
    world.plan.type = "one_time"
    world.plan.installments = []
    db.session.commit()
    p = _pay(world, 500)
    result = apply_confirmation(p.id, {})
    assert result.transaction.installment_label == "Full Payment"
    assert _assignment(world).status == AssignmentStatus.FULLY_PAID


def test_existing_transaction_row_blocks_second_insert(world):
    p = _pay(world, 100, installment=1)
    db.session.add(PaymentTransaction(payment_id=p.id, amount_paid=100, installment_number=1))
    db.session.commit()

    result = apply_confirmation(p.id, {})
    assert result.outcome == ALREADY_COMPLETED
    assert len(_transactions(p.id)) == 1


def test_ledger_failure_is_partial_and_repairable(world):
    p = _pay(world, 300, installment=1)
    with patch("utils.reconcile.recompute_paid_amount", side_effect=OperationalError("UPDATE", {}, Exception("lock timeout"))):
        result = apply_confirmation(p.id, {})

    assert result.outcome == PARTIAL
    assert result.warning
    assert get_payment(p.id).status == PaymentStatus.COMPLETED
    assert _transactions(p.id) == []
    assert [x.id for x in find_unreconciled_payments()] == [p.id]

    repaired = repair_payment(p.id)
    assert repaired.outcome == APPLIED
    assert len(_transactions(p.id)) == 1
    assert _assignment(world).paid_amount == Decimal("300.00")
    assert find_unreconciled_payments() == []
    assert repair_payment(p.id).outcome == ALREADY_COMPLETED


def test_repair_rejects_pending_payments(world):
    p = _pay(world, 10)
    with pytest.raises(PaymentStateError):
        repair_payment(p.id)


def test_transactions_are_append_only(world):
    p = _pay(world, 100, installment=1)
    txn = apply_confirmation(p.id, {}).transaction
    txn.amount_paid = 1
    with pytest.raises(RuntimeError):
        db.session.commit()
    db.session.rollback()


def test_gateway_callback_success_and_failure(world):
    ok = _pay(world, 100, installment=1, third_party_conversation_id="HPconvOK")
    res = apply_gateway_callback({"input_ThirdPartyConversationID": "HPconvOK", "input_ResultCode": "INS-0"})
    assert res.outcome == APPLIED

    bad = _pay(world, 100, installment=2, transaction_reference="TXBAD")
    res = apply_gateway_callback({"input_TransactionID": "TXBAD", "input_ResultCode": "INS-2006", "input_ResultDesc": "Insufficient balance"})
    assert res.outcome == FAILED
    bad = get_payment(bad.id)
    assert bad.status == PaymentStatus.FAILED
    assert bad.gateway_response["confirmation"]["input_ResultDesc"] == "Insufficient balance"

    # A late failure for an already completed payment changes nothing
    res = apply_gateway_callback({"input_ThirdPartyConversationID": "HPconvOK", "input_ResultCode": "INS-1"})
    assert res.outcome == ALREADY_COMPLETED
    assert get_payment(ok.id).status == PaymentStatus.COMPLETED


def test_gateway_callback_for_unknown_payment(world):
    with pytest.raises(NotFoundError):
        apply_gateway_callback({"input_TransactionID": "nope", "input_ResultCode": "INS-0"})


def test_confirmation_email_goes_to_the_parent(app, world):
    from extensions import mail

    app.config.update(MAIL_SERVER="smtp.example.com", MAIL_DEFAULT_SENDER="fees@example.com")
    p = _pay(world, 300, installment=1)
    with mail.record_messages() as outbox:
        apply_confirmation(p.id, {})
    assert len(outbox) == 1
    assert outbox[0].recipients == ["parent@example.com"]
    assert "Term 1" in outbox[0].body
