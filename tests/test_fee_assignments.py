from datetime import date

from extensions import db
from models import FeeCategory, FeeStructure, PaymentPlan
from utils.fee_assignments import (
    category_summary,
    match_plan_to_category,
    migrate_plan_categories,
    plan_total,
    used_payment_plan,
)
from utils.ledger import create_pending_payment
from utils.reconcile import apply_confirmation


def _plan(structure, amounts, discount=0, category_id=None):
    plan = PaymentPlan(
        structure_id=structure.id,
        fee_category_id=category_id,
        discount_percentage=discount,
        installments=[{"installment_number": i + 1, "amount": a} for i, a in enumerate(amounts)],
    )
    db.session.add(plan)
    db.session.flush()
    return plan


def test_tolerance_band_is_five_percent(world):
    items = [{"category_id": "tuition", "amount": 1000}]
    assert match_plan_to_category(_plan(world.structure, [500, 450]), items)["category_id"] == "tuition"
    assert match_plan_to_category(_plan(world.structure, [500, 440]), items) is None
    assert match_plan_to_category(_plan(world.structure, [1050]), items) is not None
    assert match_plan_to_category(_plan(world.structure, [1051]), items) is None


def test_discount_is_applied_before_matching(world):
    items = [{"category_id": "tuition", "amount": 1000}]
    assert match_plan_to_category(_plan(world.structure, [900], discount=10), items) is not None
    assert match_plan_to_category(_plan(world.structure, [1000], discount=10), items) is None


def test_first_item_inside_the_band_wins(world):
    items = [
        {"category_id": "transport", "amount": 980},
        {"category_id": "tuition", "amount": 1000},
    ]
    assert match_plan_to_category(_plan(world.structure, [1000]), items)["category_id"] == "transport"


def test_plan_total_sums_installments(world):
    assert float(plan_total(world.plan)) == 500.0


def test_migrate_plan_categories_fills_missing_categories(world):
    transport = FeeCategory(school_id=world.school.id, name="Transport")
    db.session.add(transport)
    db.session.flush()
    structure = FeeStructure(
        school_id=world.school.id,
        name="Legacy 2025",
        fee_items=[
            {"category_id": world.tuition.id, "amount": 1000},
            {"category_id": transport.id, "amount": 400},
        ],
    )
    db.session.add(structure)
    db.session.flush()
    tuition_plan = _plan(structure, [600, 350])
    transport_plan = _plan(structure, [390])
    orphan = _plan(structure, [10])
    db.session.commit()

    summary = migrate_plan_categories(world.school.id)

    assert summary["total_plans"] == 3
    assert summary["updated"] == 2
    assert summary["unmatched"] == 1
    assert summary["unmatched_plans"][0]["payment_plan_id"] == orphan.id
    assert db.session.get(PaymentPlan, tuition_plan.id).fee_category_id == world.tuition.id
    assert db.session.get(PaymentPlan, transport_plan.id).fee_category_id == transport.id
    # Plans that already have a category are left alone
    assert migrate_plan_categories(world.school.id)["total_plans"] == 1


def test_category_summary_reports_paid_and_remaining(world):
    p = create_pending_payment(
        world.student.id, world.parent.id, 300, "mobile_money",
        {"payment_plan_id": world.plan.id, "installment_number": 1},
    )
    apply_confirmation(p.id, {})

    summary = category_summary(world.student.id, world.tuition.id, "ay-2026", today=date(2026, 3, 1))

    assert float(summary.total_due) == 500.0
    assert float(summary.paid) == 300.0
    assert float(summary.remaining) == 200.0
    first, second = summary.installments
    assert first["is_paid"] is True and first["is_current"] is True
    assert second["is_paid"] is False and second["is_current"] is False
    assert second["paid_amount"] == 0.0


def test_category_summary_for_other_year_is_empty(world):
    summary = category_summary(world.student.id, world.tuition.id, "ay-1999")
    assert summary.installments == []
    assert float(summary.remaining) == 0.0


def test_used_payment_plan_follows_completed_transactions(world):
    assert used_payment_plan(world.student.id, world.tuition.id) is None
    p = create_pending_payment(world.student.id, world.parent.id, 200, "mobile_money", {"payment_plan_id": world.plan.id})
    apply_confirmation(p.id, {})
    assert used_payment_plan(world.student.id, world.tuition.id).id == world.plan.id
