from datetime import date, timedelta
from decimal import Decimal

import pytest

from backend.app.core.context import TenantContext
from backend.app.core.exceptions import ConflictError, InvalidStateError, ValidationError
from backend.app.db.base import Base
from backend.app.db.session import SessionLocal, engine
from backend.app.models.financial_concept import FinancialConcept
from backend.app.models.invoice import Invoice, InvoiceStatus
from backend.app.models.student import Student
from backend.app.services import invoices
from backend.app.services.collaborators import BillableItem

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
def school(db):
    students = [
        Student(school_id=1, full_name="Ana Gomez"),
        Student(school_id=1, full_name="Luis Perez"),
        Student(school_id=1, full_name="Former Student", is_active=False),
    ]
    concepts = [
        FinancialConcept(
            school_id=1, code="TUITION", name="Tuition", default_amount=Decimal("450.00"), is_recurring=True
        ),
        FinancialConcept(school_id=1, code="LUNCH", name="Lunch", default_amount=Decimal("50.00"), is_recurring=True),
        FinancialConcept(school_id=1, code="BOOKS", name="Books", default_amount=Decimal("80.00"), is_recurring=False),
    ]
    db.add_all(students + concepts)
    db.commit()
    return students, concepts


class FailingCatalog:
    """Raises for one student and bills everyone else a flat fee."""

    def __init__(self, broken_student_id):
        self.broken_student_id = broken_student_id

    def billable_items(self, ctx, student_id, period):
        if student_id == self.broken_student_id:
            raise RuntimeError("catalog unavailable")
        return [BillableItem(concept_id=None, unit_price=Decimal("100.00"), description="Flat fee")]


class EmptyCatalog:
    def billable_items(self, ctx, student_id, period):
        return []


def _draft(db, student, unit_price="120.00", **kwargs):
    return invoices.create_invoice(
        db,
        SCHOOL,
        student_id=student.id,
        items=[{"description": "Field trip", "quantity": 2, "unit_price": unit_price}],
        today=TODAY,
        **kwargs,
    )


def test_draft_cannot_jump_to_paid(db, school):
    students, _ = school
    invoice = _draft(db, students[0])
    assert invoice.status == "draft"
    assert invoices.valid_next_states(invoice) == ["pending"]
    with pytest.raises(InvalidStateError):
        invoices.mark_invoice_paid(db, SCHOOL, invoice.id)
    with pytest.raises(InvalidStateError):
        invoices.cancel_invoice(db, SCHOOL, invoice.id)


def test_draft_totals_and_update(db, school):
    students, _ = school
    invoice = _draft(db, students[0], discount="40", tax="19.00")
    assert invoice.subtotal == Decimal("240.00")
    assert invoice.total == Decimal("219.00")
    assert invoice.invoice_number == "INV-2024-01-0001"

    updated = invoices.update_invoice(
        db,
        SCHOOL,
        invoice.id,
        items=[{"description": "Uniform", "quantity": 1, "unit_price": "75.50"}],
        discount="0",
        today=TODAY,
    )
    assert updated.subtotal == Decimal("75.50")
    assert updated.total == Decimal("94.50")
    assert [item.description for item in updated.items] == ["Uniform"]


def test_discount_larger_than_subtotal_rejected(db, school):
    students, _ = school
    with pytest.raises(ValidationError):
        _draft(db, students[0], discount="500")


def test_issue_then_pay_records_timestamps_and_notes(db, school):
    students, _ = school
    invoice = _draft(db, students[0])
    issued = invoices.issue_invoice(db, SCHOOL, invoice.id, today=TODAY)
    assert issued.status == "pending"
    assert issued.issue_date == TODAY
    assert issued.due_date == TODAY + timedelta(days=30)
    assert issued.issued_at is not None
    with pytest.raises(InvalidStateError):
        invoices.update_invoice(db, SCHOOL, invoice.id, notes="edit", today=TODAY)

    paid = invoices.mark_invoice_paid(db, SCHOOL, invoice.id, reference="TRX-881")
    assert paid.status == "paid"
    assert paid.payment_reference == "TRX-881"
    assert paid.paid_at is not None
    assert "draft -> pending" in paid.notes
    assert "pending -> paid (ref TRX-881)" in paid.notes
    assert invoices.valid_next_states(paid) == []

    with pytest.raises(ConflictError):
        invoices.delete_invoice(db, SCHOOL, invoice.id)


def test_invoice_numbers_are_sequential_per_period(db, school):
    students, _ = school
    first = _draft(db, students[0])
    second = _draft(db, students[1])
    assert first.invoice_number == "INV-2024-01-0001"
    assert second.invoice_number == "INV-2024-01-0002"
    assert invoices.allocate_invoice_number(db, 1, "2024-02") == "INV-2024-02-0001"
    assert invoices.allocate_invoice_number(db, 2, "2024-01") == "INV-2024-01-0001"


def test_generate_student_invoice_bills_recurring_concepts(db, school):
    students, _ = school
    invoice = invoices.generate_student_invoice(db, SCHOOL, students[0].id, "2024-01", today=TODAY)
    assert invoice.status == "pending"
    assert invoice.billing_period == "2024-01"
    assert invoice.total == Decimal("500.00")
    assert sorted(item.description for item in invoice.items) == ["Lunch", "Tuition"]


def test_generate_student_invoice_is_idempotent(db, school):
    students, concepts = school
    first = invoices.generate_student_invoice(db, SCHOOL, students[0].id, date(2024, 1, 15), today=TODAY)

    concepts[1].default_amount = Decimal("60.00")
    db.commit()
    second = invoices.generate_student_invoice(db, SCHOOL, students[0].id, "2024-01", today=TODAY)

    assert second.id == first.id
    assert second.invoice_number == first.invoice_number
    assert second.total == Decimal("510.00")
    assert db.query(Invoice).filter(Invoice.student_id == students[0].id).count() == 1


def test_regeneration_keeps_existing_discount_and_tax(db, school):
    students, _ = school
    first = invoices.generate_student_invoice(
        db, SCHOOL, students[0].id, "2024-01", discount="50", tax="10", today=TODAY
    )
    assert first.total == Decimal("460.00")

    invoices.generate_monthly_invoices(db, SCHOOL, "2024-01", today=TODAY)
    again = invoices.generate_student_invoice(db, SCHOOL, students[0].id, "2024-01", today=TODAY)
    assert again.discount == Decimal("50.00")
    assert again.tax == Decimal("10.00")
    assert again.total == Decimal("460.00")

    cleared = invoices.generate_student_invoice(db, SCHOOL, students[0].id, "2024-01", discount="0", today=TODAY)
    assert cleared.discount == Decimal("0.00")
    assert cleared.total == Decimal("510.00")


def test_settled_invoice_is_returned_unchanged(db, school):
    students, concepts = school
    invoice = invoices.generate_student_invoice(db, SCHOOL, students[0].id, "2024-01", today=TODAY)
    invoices.mark_invoice_paid(db, SCHOOL, invoice.id)

    concepts[0].default_amount = Decimal("999.00")
    db.commit()
    again = invoices.generate_student_invoice(db, SCHOOL, students[0].id, "2024-01", today=TODAY)
    assert again.status == "paid"
    assert again.total == Decimal("500.00")


def test_generate_without_billable_items_fails(db, school):
    students, _ = school
    with pytest.raises(ValidationError):
        invoices.generate_student_invoice(db, SCHOOL, students[0].id, "2024-01", catalog=EmptyCatalog(), today=TODAY)
    with pytest.raises(ValidationError):
        invoices.generate_student_invoice(db, SCHOOL, students[0].id, "2024-13", today=TODAY)


def test_monthly_batch_isolates_failures(db, school):
    students, _ = school
    result = invoices.generate_monthly_invoices(
        db, SCHOOL, "2024-01", catalog=FailingCatalog(students[1].id), today=TODAY
    )
    assert result["generated"] == 1
    assert result["failed"] == 1
    by_student = {r["student_id"]: r for r in result["results"]}
    assert set(by_student) == {students[0].id, students[1].id}
    assert by_student[students[0].id]["success"] is True
    assert by_student[students[1].id]["success"] is False


def test_monthly_batch_can_be_rerun(db, school):
    first = invoices.generate_monthly_invoices(db, SCHOOL, "2024-01", today=TODAY)
    second = invoices.generate_monthly_invoices(db, SCHOOL, "2024-01", today=TODAY)
    assert first["generated"] == second["generated"] == 2
    assert db.query(Invoice).count() == 2


def test_overdue_sweep_then_late_payment(db, school):
    students, _ = school
    invoices.generate_monthly_invoices(db, SCHOOL, "2024-01", today=TODAY)

    assert invoices.update_overdue_invoices(db, SCHOOL, today=date(2024, 1, 31)) == 0
    assert invoices.update_overdue_invoices(db, SCHOOL, today=date(2024, 2, 15)) == 2
    assert invoices.update_overdue_invoices(db, SCHOOL, today=date(2024, 2, 15)) == 0

    overdue = db.query(Invoice).filter(Invoice.status == InvoiceStatus.OVERDUE.value).all()
    assert len(overdue) == 2

    paid = invoices.mark_invoice_paid(db, SCHOOL, overdue[0].id, reference="LATE-1")
    assert paid.status == "paid"
    cancelled = invoices.cancel_invoice(db, SCHOOL, overdue[1].id, reason="Student withdrew")
    assert cancelled.status == "cancelled"
    assert "overdue -> cancelled: Student withdrew" in cancelled.notes


def test_statistics_and_attention(db, school):
    students, _ = school
    invoices.generate_monthly_invoices(db, SCHOOL, "2024-01", today=TODAY)
    invoices.update_overdue_invoices(db, SCHOOL, today=date(2024, 3, 15))
    first = db.query(Invoice).order_by(Invoice.id).first()
    invoices.mark_invoice_paid(db, SCHOOL, first.id)

    stats = invoices.invoice_statistics(db, SCHOOL)
    assert stats["total_count"] == 2
    assert stats["by_status"]["paid"] == {"count": 1, "amount": "500.00"}
    assert stats["by_status"]["overdue"]["count"] == 1
    assert stats["collection_rate"] == "0.5000"

    attention = invoices.invoices_needing_attention(db, SCHOOL, days=7, today=date(2024, 3, 15))
    assert len(attention["overdue"]) == 1
    assert len(attention["long_overdue"]) == 1
    assert attention["due_soon"] == []


def test_list_invoices_filters(db, school):
    students, _ = school
    invoices.generate_monthly_invoices(db, SCHOOL, "2024-01", today=TODAY)
    _draft(db, students[0])

    page = invoices.list_invoices(db, SCHOOL, student_id=students[0].id)
    assert page["total"] == 2
    drafts = invoices.list_invoices(db, SCHOOL, status="draft")
    assert drafts["total"] == 1
    found = invoices.list_invoices(db, SCHOOL, search="0002")
    assert found["total"] == 1
