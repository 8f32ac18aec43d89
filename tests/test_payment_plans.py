from datetime import date
from decimal import Decimal

import pytest

from backend.app.core.context import TenantContext
from backend.app.core.exceptions import InvalidStateError, NotFoundError, ValidationError
from backend.app.db.base import Base
from backend.app.db.session import SessionLocal, engine
from backend.app.models.financial_concept import FinancialConcept
from backend.app.models.student import Student
from backend.app.services import payment_plans, payments, receivables
from backend.app.services.billing import split_amount

SCHOOL = TenantContext(school_id=1, actor_id=10)
TODAY = date(2024, 1, 1)


@pytest.fixture(autouse=True)
def setup_db():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db(setup_db):
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def student(db):
    student = Student(school_id=1, full_name="Ana Gomez")
    db.add(student)
    db.commit()
    return student


def _plan(db, student, total="1200.00", count=4, frequency="monthly", start=TODAY, **kwargs):
    return payment_plans.create_plan(
        db,
        SCHOOL,
        student_id=student.id,
        total_amount=total,
        installments_count=count,
        frequency=frequency,
        start_date=start,
        today=TODAY,
        **kwargs,
    )


def test_split_puts_rounding_remainder_on_last_installment():
    assert split_amount(Decimal("100.00"), 3) == [Decimal("33.33"), Decimal("33.33"), Decimal("33.34")]
    parts = split_amount(Decimal("1000.01"), 7)
    assert sum(parts) == Decimal("1000.01")


def test_monthly_plan_schedule(db, student):
    plan = _plan(db, student)
    assert plan.status == "active"
    assert [i.due_date for i in plan.installments] == [
        date(2024, 1, 1),
        date(2024, 2, 1),
        date(2024, 3, 1),
        date(2024, 4, 1),
    ]
    assert [i.amount for i in plan.installments] == [Decimal("300.00")] * 4
    assert [i.installment_number for i in plan.installments] == [1, 2, 3, 4]


def test_month_end_start_does_not_drift():
    schedule = payment_plans.build_schedule(Decimal("90.00"), 3, "monthly", date(2024, 1, 31))
    assert [due for _, _, due in schedule] == [date(2024, 1, 31), date(2024, 2, 29), date(2024, 3, 31)]


@pytest.mark.parametrize(
    "frequency,expected",
    [
        ("weekly", date(2024, 1, 15)),
        ("biweekly", date(2024, 1, 29)),
        ("quarterly", date(2024, 7, 1)),
        ("semester", date(2025, 1, 1)),
        ("annual", date(2026, 1, 1)),
    ],
)
def test_third_installment_due_date_per_frequency(frequency, expected):
    assert payment_plans.installment_due_date(TODAY, frequency, 3) == expected


@pytest.mark.parametrize(
    "kwargs",
    [
        {"count": 1},
        {"count": 61},
        {"total": "0"},
        {"frequency": "daily"},
        {"start": date(2023, 12, 31)},
    ],
)
def test_create_plan_validation(db, student, kwargs):
    with pytest.raises(ValidationError):
        _plan(db, student, **kwargs)


def test_create_plan_for_unknown_student(db):
    with pytest.raises(NotFoundError):
        payment_plans.create_plan(
            db,
            SCHOOL,
            student_id=42,
            total_amount="100",
            installments_count=2,
            frequency="monthly",
            start_date=TODAY,
            today=TODAY,
        )


def test_update_regenerates_installments(db, student):
    plan = _plan(db, student)
    updated = payment_plans.update_plan(db, SCHOOL, plan.id, total_amount="100.00", installments_count=3, today=TODAY)
    assert updated.installments_count == 3
    assert [i.amount for i in updated.installments] == [Decimal("33.33"), Decimal("33.33"), Decimal("33.34")]
    assert len(payment_plans.list_installments(db, SCHOOL, plan.id)) == 3


def test_suspend_reactivate_and_cancel(db, student):
    plan = _plan(db, student)
    assert payment_plans.suspend_plan(db, SCHOOL, plan.id).status == "suspended"
    with pytest.raises(InvalidStateError):
        payment_plans.suspend_plan(db, SCHOOL, plan.id)
    assert payment_plans.reactivate_plan(db, SCHOOL, plan.id).status == "active"

    cancelled = payment_plans.cancel_plan(db, SCHOOL, plan.id)
    assert cancelled.status == "cancelled"
    assert {i.status for i in cancelled.installments} == {"cancelled"}
    with pytest.raises(InvalidStateError):
        payment_plans.cancel_plan(db, SCHOOL, plan.id)


def _linked_plan(db, student):
    concept = FinancialConcept(school_id=1, code="TUITION", name="Tuition", default_amount=Decimal("100.00"))
    db.add(concept)
    db.commit()
    receivable = receivables.create_receivable(
        db, SCHOOL, student_id=student.id, concept_id=concept.id, amount="100.00", due_date=TODAY, today=TODAY
    )
    plan = _plan(db, student, total="100.00", count=3, receivable_id=receivable.id)
    return plan, receivable


def test_paying_every_installment_completes_plan_and_receivable(db, student):
    plan, receivable = _linked_plan(db, student)
    installment_ids = [i.id for i in plan.installments]

    first = payment_plans.pay_installment(db, SCHOOL, plan.id, installment_ids[0], method="cash", today=TODAY)
    assert first.status == "paid"
    assert first.payment_id is not None
    assert first.payment.status == "confirmed"
    assert receivables.get_receivable(db, SCHOOL, receivable.id).status == "partial"

    with pytest.raises(InvalidStateError):
        payment_plans.pay_installment(db, SCHOOL, plan.id, installment_ids[0], method="cash", today=TODAY)

    for installment_id in installment_ids[1:]:
        payment_plans.pay_installment(db, SCHOOL, plan.id, installment_id, method="card", today=TODAY)

    plan = payment_plans.get_plan(db, SCHOOL, plan.id)
    assert plan.status == "completed"
    assert plan.paid_amount == Decimal("100.00")
    assert plan.completion_percentage == Decimal("100.00")
    assert receivables.get_receivable(db, SCHOOL, receivable.id).status == "paid"


def test_plan_with_paid_installment_cannot_be_updated(db, student):
    plan, _ = _linked_plan(db, student)
    payment_plans.pay_installment(db, SCHOOL, plan.id, plan.installments[0].id, method="cash", today=TODAY)
    with pytest.raises(InvalidStateError):
        payment_plans.update_plan(db, SCHOOL, plan.id, installments_count=4, today=TODAY)


def test_pay_installment_needs_a_receivable(db, student):
    plan = _plan(db, student)
    with pytest.raises(ValidationError):
        payment_plans.pay_installment(db, SCHOOL, plan.id, plan.installments[0].id, method="cash", today=TODAY)


def test_suspended_plan_rejects_installment_payment(db, student):
    plan, _ = _linked_plan(db, student)
    payment_plans.suspend_plan(db, SCHOOL, plan.id)
    with pytest.raises(InvalidStateError):
        payment_plans.pay_installment(db, SCHOOL, plan.id, plan.installments[0].id, method="cash", today=TODAY)


def test_plans_due_soon_lists_pending_installments(db, student):
    plan = _plan(db, student, frequency="weekly")
    rows = payment_plans.plans_due_soon(db, SCHOOL, days=7, today=TODAY)
    assert [(r["plan_id"], r["installment_number"]) for r in rows] == [(plan.id, 1), (plan.id, 2)]
    assert rows[0]["amount"] == "300.00"


def test_cancelling_installment_payment_reopens_plan(db, student):
    plan, receivable = _linked_plan(db, student)
    installment_ids = [i.id for i in plan.installments]
    settled = [
        payment_plans.pay_installment(db, SCHOOL, plan.id, installment_id, method="cash", today=TODAY)
        for installment_id in installment_ids
    ]
    assert payment_plans.get_plan(db, SCHOOL, plan.id).status == "completed"

    cancelled = payments.cancel_payment(db, SCHOOL, settled[0].payment_id, reason="Chargeback")
    assert cancelled.status == "cancelled"

    db.expire_all()
    plan = payment_plans.get_plan(db, SCHOOL, plan.id)
    first = plan.installments[0]
    assert first.status == "pending"
    assert first.payment_id is None
    assert first.paid_at is None
    assert plan.status == "active"
    assert plan.paid_amount == Decimal("66.67")
    current = receivables.get_receivable(db, SCHOOL, receivable.id)
    assert current.status == "partial"
    assert current.remaining_amount == Decimal("33.33")

    repaid = payment_plans.pay_installment(db, SCHOOL, plan.id, first.id, method="card", today=TODAY)
    assert repaid.status == "paid"
    assert payment_plans.get_plan(db, SCHOOL, plan.id).status == "completed"


def test_linked_plan_total_cannot_exceed_open_receivable(db, student):
    plan, receivable = _linked_plan(db, student)
    with pytest.raises(ValidationError):
        payment_plans.update_plan(db, SCHOOL, plan.id, total_amount="1200.00", today=TODAY)
    with pytest.raises(ValidationError):
        _plan(db, student, total="1200.00", count=4, receivable_id=receivable.id)

    payments.register_payment(db, SCHOOL, receivable_id=receivable.id, amount="40", method="cash", today=TODAY)
    with pytest.raises(ValidationError):
        _plan(db, student, total="100.00", count=2, receivable_id=receivable.id)
    smaller = _plan(db, student, total="60.00", count=2, receivable_id=receivable.id)
    assert [i.amount for i in smaller.installments] == [Decimal("30.00"), Decimal("30.00")]
