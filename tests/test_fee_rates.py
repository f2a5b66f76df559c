from datetime import timedelta
from decimal import Decimal
from unittest.mock import patch

import pytest

from extensions import db
from models import PaymentFeeRateHistory, RateStatus, School, utcnow
from utils.errors import AuthorizationError, ConflictError, ValidationError
from utils.fee_rates import (
    active_rate_for_school,
    approve_rate,
    effective_fee_percentage,
    expire_stale_rates,
    fee_report,
    list_rates,
    propose_rate,
    reject_rate,
)
from utils.ledger import create_fee_snapshot, create_pending_payment, mark_completed_if_pending


def test_platform_proposal_needs_school_approval(world):
    rate = propose_rate(world.school.id, 3, world.platform_admin)
    assert rate.status == RateStatus.PENDING_SCHOOL
    assert rate.admin_approved_by == world.platform_admin.id

    with pytest.raises(ConflictError):
        propose_rate(world.school.id, 4, world.platform_admin)

    rate = approve_rate(rate.id, world.school_admin)
    assert rate.status == RateStatus.ACTIVE
    assert rate.activated_at is not None
    assert rate.school_approved_by == world.school_admin.id
    assert active_rate_for_school(world.school.id).id == rate.id
    assert effective_fee_percentage(world.school.id)[0] == Decimal("3.00")


def test_school_proposal_needs_platform_approval(world):
    rate = propose_rate(world.school.id, "1.75", world.school_admin, notes="Volume discount")
    assert rate.status == RateStatus.PENDING_ADMIN

    with pytest.raises(ConflictError):
        approve_rate(rate.id, world.school_staff)

    rate = approve_rate(rate.id, world.platform_admin)
    assert rate.status == RateStatus.ACTIVE


def test_activation_supersedes_previous_active_rate(world):
    first = approve_rate(propose_rate(world.school.id, 3, world.platform_admin).id, world.school_admin)
    second = approve_rate(propose_rate(world.school.id, 2, world.school_admin).id, world.platform_admin)

    first = db.session.get(type(first), first.id)
    assert first.status == RateStatus.EXPIRED
    assert first.effective_until is not None
    assert second.status == RateStatus.ACTIVE
    assert [r.id for r in list_rates(world.school.id, RateStatus.ACTIVE)] == [second.id]


def test_active_rate_cannot_be_approved_again(world):
    rate = approve_rate(propose_rate(world.school.id, 3, world.platform_admin).id, world.school_admin)
    with pytest.raises(ConflictError):
        approve_rate(rate.id, world.platform_admin)
    with pytest.raises(ConflictError):
        reject_rate(rate.id, world.platform_admin, "too late")


def test_reject_requires_reason_and_records_party(world):
    rate = propose_rate(world.school.id, 5, world.platform_admin)
    with pytest.raises(ValidationError):
        reject_rate(rate.id, world.school_staff, "  ")
    rate = reject_rate(rate.id, world.school_staff, "Too high")
    assert rate.status == RateStatus.REJECTED_BY_SCHOOL
    assert rate.rejection_reason == "Too high"

    # Rejection frees the school for a new proposal; the proposer can withdraw it
    rate = propose_rate(world.school.id, 4, world.school_admin)
    assert reject_rate(rate.id, world.school_admin, "Withdrawn").status == RateStatus.REJECTED_BY_SCHOOL
    rate = propose_rate(world.school.id, 4, world.school_admin)
    assert reject_rate(rate.id, world.platform_admin, "No").status == RateStatus.REJECTED_BY_ADMIN


def test_role_and_school_checks(world):
    with pytest.raises(AuthorizationError):
        propose_rate(world.school.id, 3, world.school_staff)
    with pytest.raises(AuthorizationError):
        propose_rate(world.school.id, 3, world.other_school_admin)
    with pytest.raises(AuthorizationError):
        propose_rate(world.school.id, 3, world.parent_profile)

    rate = propose_rate(world.school.id, 3, world.platform_admin)
    with pytest.raises(AuthorizationError):
        approve_rate(rate.id, world.other_school_admin)


@pytest.mark.parametrize("pct", [-1, 100.5, "abc"])
def test_percentage_must_be_in_range(world, pct):
    with pytest.raises(ValidationError):
        propose_rate(world.school.id, pct, world.platform_admin)


def test_unverified_school_cannot_get_a_rate(world):
    pending_school = School(name="New School", verification_status="pending")
    db.session.add(pending_school)
    db.session.commit()
    with pytest.raises(ValidationError):
        propose_rate(pending_school.id, 3, world.platform_admin)


def test_pending_rates_expire_only_with_a_configured_window(app, world):
    rate = propose_rate(world.school.id, 3, world.platform_admin)
    assert rate.expires_at is None
    assert expire_stale_rates(utcnow() + timedelta(days=365)) == 0
    reject_rate(rate.id, world.platform_admin, "reset")

    app.config["FEE_RATE_PENDING_TTL_DAYS"] = 7
    rate = propose_rate(world.school.id, 3, world.platform_admin)
    assert rate.expires_at is not None
    assert expire_stale_rates(utcnow() + timedelta(days=6)) == 0
    assert expire_stale_rates(utcnow() + timedelta(days=8)) == 1
    rate = db.session.get(type(rate), rate.id)
    assert rate.status == RateStatus.EXPIRED


def test_default_percentage_without_active_rate(world):
    pct, rate = effective_fee_percentage(world.school.id)
    assert pct == Decimal("2.5")
    assert rate is None


def test_every_transition_is_recorded(world):
    rate = propose_rate(world.school.id, 3, world.platform_admin)
    approve_rate(rate.id, world.school_admin)
    kinds = [h.change_type for h in PaymentFeeRateHistory.query.filter_by(rate_id=rate.id).order_by(PaymentFeeRateHistory.id)]
    assert kinds == ["created", "approved_school", "activated"]


def test_fee_report_counts_completed_snapshots_only(world):
    done = create_pending_payment(world.student.id, world.parent.id, 200)
    create_fee_snapshot(done, world.school.id, 3)
    mark_completed_if_pending(done.id)
    pending = create_pending_payment(world.student.id, world.parent.id, 100)
    create_fee_snapshot(pending, world.school.id, 3)

    report = fee_report(school_id=world.school.id)
    assert report["totals"]["transactions"] == 1
    assert report["totals"]["fee_amount"] == 6.0
    assert report["schools"][0]["school_id"] == world.school.id


def test_scheduler_only_starts_with_an_expiry_window(app, world):
    from scheduler import expire_rates_job, start_scheduler

    assert start_scheduler(app) is None

    app.config["FEE_RATE_PENDING_TTL_DAYS"] = 1
    rate = propose_rate(world.school.id, 3, world.platform_admin)
    rate.expires_at = utcnow() - timedelta(minutes=1)
    db.session.commit()
    expire_rates_job(app)
    assert db.session.get(type(rate), rate.id).status == RateStatus.EXPIRED


def test_second_pending_rate_is_refused_even_when_the_check_is_missed(world):
    first = propose_rate(world.school.id, 3, world.platform_admin)
    # Simulate a concurrent proposal that read "no pending rate" before the first committed
    with patch("utils.fee_rates.pending_rate_for_school", return_value=None):
        with pytest.raises(ConflictError):
            propose_rate(world.school.id, 4, world.school_admin)
    assert [r.id for r in list_rates(world.school.id, RateStatus.PENDING_SCHOOL)] == [first.id]
    assert list_rates(world.school.id, RateStatus.PENDING_ADMIN) == []


def test_two_active_rates_cannot_coexist(world):
    first = approve_rate(propose_rate(world.school.id, 3, world.platform_admin).id, world.school_admin)
    second = propose_rate(world.school.id, 2, world.school_admin)
    with patch("utils.fee_rates._supersede_active"):
        with pytest.raises(ConflictError):
            approve_rate(second.id, world.platform_admin)
    assert [r.id for r in list_rates(world.school.id, RateStatus.ACTIVE)] == [first.id]
    assert db.session.get(type(second), second.id).status == RateStatus.PENDING_ADMIN


def test_slots_follow_the_rate_status(world):
    rate = propose_rate(world.school.id, 3, world.platform_admin)
    assert (rate.pending_slot, rate.active_slot) == (world.school.id, None)
    rate = approve_rate(rate.id, world.school_admin)
    assert (rate.pending_slot, rate.active_slot) == (None, world.school.id)
    rejected = reject_rate(propose_rate(world.school.id, 4, world.platform_admin).id, world.school_admin, "No")
    assert (rejected.pending_slot, rejected.active_slot) == (None, None)
