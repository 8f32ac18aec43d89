from datetime import date
from decimal import Decimal

import pytest

from backend.app.core.context import TenantContext
from backend.app.core.exceptions import ConflictError, InvalidStateError, NotFoundError, ValidationError
from backend.app.db.base import Base
from backend.app.db.session import SessionLocal, engine
from backend.app.models.financial_concept import FinancialConcept
from backend.app.models.student import Student
from backend.app.services import payments, receivables

SCHOOL = TenantContext(school_id=1, actor_id=10)
OTHER_SCHOOL = TenantContext(school_id=2, actor_id=20)
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


def _seed(db, school_id=1, name="Ana Gomez", code="TUITION"):
    student = Student(school_id=school_id, full_name=name, grade_level="5")
    concept = FinancialConcept(
        school_id=school_id, code=code, name=code.title(), default_amount=Decimal("500.00"), is_recurring=True
    )
    db.add_all([student, concept])
    db.commit()
    return student, concept


def _receivable(db, student, concept, amount="500.00", due=date(2024, 1, 31), ctx=SCHOOL):
    return receivables.create_receivable(
        db, ctx, student_id=student.id, concept_id=concept.id, amount=amount, due_date=due, today=TODAY
    )


def test_create_receivable_starts_pending_with_full_remaining(db):
    student, concept = _seed(db)
    receivable = _receivable(db, student, concept)
    assert receivable.status == "pending"
    assert receivable.amount == Decimal("500.00")
    assert receivable.remaining_amount == Decimal("500.00")
    assert receivable.school_id == 1
    assert receivable.created_by == 10


@pytest.mark.parametrize("amount", ["0", "-5", "abc"])
def test_create_receivable_rejects_non_positive_amount(db, amount):
    student, concept = _seed(db)
    with pytest.raises(ValidationError):
        _receivable(db, student, concept, amount=amount)


def test_create_receivable_rejects_past_due_date(db):
    student, concept = _seed(db)
    with pytest.raises(ValidationError):
        _receivable(db, student, concept, due=date(2023, 12, 31))


def test_missing_tenant_is_rejected(db):
    student, concept = _seed(db)
    with pytest.raises(ValidationError) as exc:
        _receivable(db, student, concept, ctx=TenantContext(school_id=None, actor_id=1))
    assert exc.value.message == "School ID is required"


def test_unknown_student_or_concept_is_not_found(db):
    student, concept = _seed(db)
    with pytest.raises(NotFoundError):
        receivables.create_receivable(
            db, SCHOOL, student_id=999, concept_id=concept.id, amount="10", due_date=TODAY, today=TODAY
        )
    with pytest.raises(NotFoundError):
        receivables.create_receivable(
            db, SCHOOL, student_id=student.id, concept_id=999, amount="10", due_date=TODAY, today=TODAY
        )


def test_duplicate_open_receivable_for_same_concept_conflicts(db):
    student, concept = _seed(db)
    _receivable(db, student, concept)
    with pytest.raises(ConflictError):
        _receivable(db, student, concept, amount="100.00")


def test_other_tenant_cannot_see_receivable(db):
    student, concept = _seed(db)
    receivable = _receivable(db, student, concept)
    with pytest.raises(NotFoundError):
        receivables.get_receivable(db, OTHER_SCHOOL, receivable.id)
    with pytest.raises(NotFoundError):
        receivables.update_receivable(db, OTHER_SCHOOL, receivable.id, amount="1.00", today=TODAY)


def test_amount_is_locked_once_payments_exist(db):
    student, concept = _seed(db)
    receivable = _receivable(db, student, concept)
    payments.register_payment(db, SCHOOL, receivable_id=receivable.id, amount="100", method="cash", today=TODAY)

    with pytest.raises(ConflictError):
        receivables.update_receivable(db, SCHOOL, receivable.id, amount="600.00", today=TODAY)

    updated = receivables.update_receivable(
        db, SCHOOL, receivable.id, due_date=date(2024, 2, 15), description="Second term", today=TODAY
    )
    assert updated.due_date == date(2024, 2, 15)
    assert updated.description == "Second term"


def test_paid_receivable_cannot_be_updated(db):
    student, concept = _seed(db)
    receivable = _receivable(db, student, concept, amount="100.00")
    payment = payments.register_payment(
        db, SCHOOL, receivable_id=receivable.id, amount="100", method="cash", today=TODAY
    )
    payments.confirm_payment(db, SCHOOL, payment.id)
    with pytest.raises(InvalidStateError):
        receivables.update_receivable(db, SCHOOL, receivable.id, description="late", today=TODAY)


def test_delete_refused_when_payments_registered(db):
    student, concept = _seed(db)
    receivable = _receivable(db, student, concept)
    payments.register_payment(db, SCHOOL, receivable_id=receivable.id, amount="50", method="cash", today=TODAY)
    with pytest.raises(ConflictError):
        receivables.delete_receivable(db, SCHOOL, receivable.id)


def test_delete_receivable_without_payments(db):
    student, concept = _seed(db)
    receivable = _receivable(db, student, concept)
    receivables.delete_receivable(db, SCHOOL, receivable.id)
    with pytest.raises(NotFoundError):
        receivables.get_receivable(db, SCHOOL, receivable.id)


def test_recompute_status_is_idempotent(db):
    student, concept = _seed(db)
    receivable = _receivable(db, student, concept)
    payment = payments.register_payment(
        db, SCHOOL, receivable_id=receivable.id, amount="200", method="cash", today=TODAY
    )
    payments.confirm_payment(db, SCHOOL, payment.id)

    first = receivables.recompute_status(db, SCHOOL, receivable.id).status
    second = receivables.recompute_status(db, SCHOOL, receivable.id).status
    assert first == second == "partial"


def test_list_filters_by_derived_overdue_status_and_search(db):
    student, concept = _seed(db)
    other_student, other_concept = _seed(db, name="Luis Perez", code="TRANSPORT")
    _receivable(db, student, concept, due=date(2024, 1, 10))
    _receivable(db, other_student, other_concept, amount="80.00", due=date(2024, 3, 1))

    overdue = receivables.list_receivables(db, SCHOOL, status="overdue", today=date(2024, 2, 1))
    assert overdue["total"] == 1
    assert overdue["items"][0].student_id == student.id

    found = receivables.list_receivables(db, SCHOOL, search="perez", today=TODAY)
    assert [r.student_id for r in found["items"]] == [other_student.id]

    page = receivables.list_receivables(db, SCHOOL, sort_by="amount", sort_order="desc", limit=1, today=TODAY)
    assert page["total"] == 2
    assert page["items"][0].amount == Decimal("500.00")

    assert receivables.list_receivables(db, OTHER_SCHOOL, today=TODAY)["total"] == 0


def test_list_rejects_unknown_sort_field(db):
    with pytest.raises(ValidationError):
        receivables.list_receivables(db, SCHOOL, sort_by="bogus", today=TODAY)


def test_summary_reports_collection_rate_and_overdue(db):
    student, concept = _seed(db)
    other_student, _ = _seed(db, name="Luis Perez", code="BOOKS")
    first = _receivable(db, student, concept, amount="400.00", due=date(2024, 1, 10))
    _receivable(db, other_student, concept, amount="100.00", due=date(2024, 3, 1))
    payment = payments.register_payment(db, SCHOOL, receivable_id=first.id, amount="100", method="cash", today=TODAY)
    payments.confirm_payment(db, SCHOOL, payment.id)

    summary = receivables.summarize(db, SCHOOL, today=date(2024, 2, 1))
    assert summary["total_count"] == 2
    assert summary["total_amount"] == "500.00"
    assert summary["paid_amount"] == "100.00"
    assert summary["pending_amount"] == "400.00"
    assert summary["overdue_count"] == 1
    assert summary["overdue_amount"] == "300.00"
    assert summary["collection_rate"] == "0.2000"
    assert summary["by_status"]["partial"]["count"] == 1


def test_due_soon_and_overdue_accounts(db):
    student, concept = _seed(db)
    other_student, other_concept = _seed(db, name="Luis Perez", code="TRANSPORT")
    _receivable(db, student, concept, due=date(2024, 1, 5))
    _receivable(db, other_student, other_concept, due=date(2024, 2, 20))

    soon = receivables.due_soon(db, SCHOOL, days=7, today=TODAY)
    assert [r.student_id for r in soon] == [student.id]

    late = receivables.overdue_accounts(db, SCHOOL, min_days=10, today=date(2024, 1, 20))
    assert len(late) == 1
    assert late[0]["days_overdue"] == 15
    assert late[0]["remaining_amount"] == "500.00"
