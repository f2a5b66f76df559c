from decimal import Decimal

import pytest

from extensions import db
from models import PaymentStatus
from utils.errors import PaymentStateError, ValidationError
from utils.ledger import (
    calculate_fee,
    create_fee_snapshot,
    create_pending_payment,
    get_payment,
    mark_completed_if_pending,
    record_gateway_result,
    transition,
)
from utils.mpesa import CollectionResult


def _pending(world, amount=100):
    return create_pending_payment(
        world.student.id,
        world.parent.id,
        amount,
        "mobile_money",
        {"payment_plan_id": world.plan.id, "installment_number": 1, "transaction_reference": "HP1ref"},
    )


def test_create_pending_payment_persists_context(world):
    p = _pending(world, "150.50")
    assert p.status == PaymentStatus.PENDING
    assert p.amount == Decimal("150.50")
    assert p.payment_plan_id == world.plan.id
    assert p.installment_number == 1
    assert p.transaction_reference == "HP1ref"


@pytest.mark.parametrize("amount", [0, -5, "abc", None, "NaN", "Infinity", "-inf"])
def test_create_pending_payment_rejects_bad_amounts(world, amount):
    with pytest.raises(ValidationError):
        create_pending_payment(world.student.id, world.parent.id, amount)


def test_only_pending_payments_can_change_status(world):
    p = _pending(world)
    transition(p, PaymentStatus.COMPLETED)
    db.session.commit()
    with pytest.raises(PaymentStateError):
        transition(p, PaymentStatus.FAILED)
    with pytest.raises(PaymentStateError):
        transition(p, PaymentStatus.PENDING)


def test_rejected_gateway_result_fails_payment_and_keeps_response(world):
    p = _pending(world)
    result = CollectionResult(success=False, response_code="INS-2006", response_desc="Insufficient balance")
    record_gateway_result(p.id, result)
    p = get_payment(p.id)
    assert p.status == PaymentStatus.FAILED
    assert p.gateway_response["response_desc"] == "Insufficient balance"
    with pytest.raises(PaymentStateError):
        record_gateway_result(p.id, result)


def test_accepted_gateway_result_stays_pending(world):
    p = _pending(world)
    record_gateway_result(p.id, CollectionResult(success=True, response_code="INS-0", response_desc="ok", transaction_id="TX9"))
    p = get_payment(p.id)
    assert p.status == PaymentStatus.PENDING
    assert p.transaction_reference == "TX9"


def test_conditional_completion_has_a_single_winner(world):
    p = _pending(world)
    assert mark_completed_if_pending(p.id, {"input_ResultCode": "INS-0"}) is True
    assert mark_completed_if_pending(p.id, {"input_ResultCode": "INS-0"}) is False
    p = get_payment(p.id)
    assert p.status == PaymentStatus.COMPLETED
    assert p.payment_date is not None


def test_calculate_fee_rounds_to_cents():
    fee = calculate_fee(100, 2.5)
    assert fee["fee_amount"] == Decimal("2.50")
    assert fee["total_amount"] == Decimal("102.50")
    assert calculate_fee("333.33", "2.5")["fee_amount"] == Decimal("8.33")


def test_fee_snapshot_locks_when_payment_completes(world):
    p = _pending(world, 200)
    snap = create_fee_snapshot(p, world.school.id, 3)
    assert snap.fee_amount == Decimal("6.00")
    assert snap.locked_at is None
    mark_completed_if_pending(p.id)
    db.session.refresh(snap)
    assert snap.payment_status == PaymentStatus.COMPLETED
    assert snap.locked_at is not None
    assert snap.fee_info()["totalAmount"] == 206.0
