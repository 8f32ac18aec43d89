"""Invoice lifecycle: generation, numbering and status transitions.

Status changes go through ``transition_invoice`` only. The legal moves are:

    draft    -> pending              issue
    pending  -> paid | overdue | cancelled
    overdue  -> paid | cancelled
    paid, cancelled                  terminal
"""

import logging
import re
from dataclasses import dataclass
from datetime import date, timedelta
from decimal import Decimal
from typing import Iterable, List, Sequence

from sqlalchemy import func, or_, select, update
from sqlalchemy.orm import Session, selectinload

from backend.app.core.context import TenantContext, require_tenant
from backend.app.core.exceptions import ConflictError, InvalidStateError, LedgerError, NotFoundError, ValidationError
from backend.app.core.settings import get_settings
from backend.app.core.time import utc_now, utc_today
from backend.app.db.locking import lock_row
from backend.app.db.session import atomic
from backend.app.models.financial_concept import FinancialConcept
from backend.app.models.invoice import Invoice, InvoiceStatus
from backend.app.models.invoice_item import InvoiceItem
from backend.app.models.invoice_sequence import InvoiceSequence
from backend.app.models.student import Student
from backend.app.services.billing import (
    ZERO,
    calculate_invoice_totals,
    calculate_line_total,
    format_money,
    to_money,
    to_positive_money,
)
from backend.app.services.collaborators import (
    BillableItem,
    ConceptFeeCatalog,
    FeeCatalog,
    RosterStudentDirectory,
    StudentDirectory,
)
from backend.app.services.listing import paginate

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS = {
    InvoiceStatus.DRAFT: frozenset({InvoiceStatus.PENDING}),
    InvoiceStatus.PENDING: frozenset({InvoiceStatus.PAID, InvoiceStatus.OVERDUE, InvoiceStatus.CANCELLED}),
    InvoiceStatus.OVERDUE: frozenset({InvoiceStatus.PAID, InvoiceStatus.CANCELLED}),
    InvoiceStatus.PAID: frozenset(),
    InvoiceStatus.CANCELLED: frozenset(),
}

LONG_OVERDUE_DAYS = 30

_PERIOD_RE = re.compile(r"^\d{4}-(0[1-9]|1[0-2])$")
_UNSET = object()


@dataclass(frozen=True)
class InvoiceGenerationResult:
    student_id: int
    success: bool
    invoice_id: int | None = None
    invoice_number: str | None = None
    error_code: str | None = None
    error_message: str | None = None

    def to_dict(self) -> dict:
        payload = {"student_id": self.student_id, "success": self.success}
        if self.success:
            payload.update(invoice_id=self.invoice_id, invoice_number=self.invoice_number)
        else:
            payload["error"] = {"code": self.error_code, "message": self.error_message}
        return payload


def normalize_period(period) -> str:
    """Accept a date or a ``YYYY-MM`` string and return the ``YYYY-MM`` key."""
    if isinstance(period, date):
        return f"{period.year:04d}-{period.month:02d}"
    if isinstance(period, str) and _PERIOD_RE.match(period):
        return period
    raise ValidationError("Billing period must be formatted as YYYY-MM", period=period)


def _period_start(period_key: str) -> date:
    year, month = period_key.split("-")
    return date(int(year), int(month), 1)


def valid_next_states(invoice: Invoice) -> List[str]:
    return sorted(s.value for s in ALLOWED_TRANSITIONS.get(InvoiceStatus(invoice.status), ()))


def _append_note(invoice: Invoice, line: str) -> None:
    stamped = f"[{utc_now().isoformat(timespec='seconds')}] {line}"
    invoice.notes = f"{invoice.notes}\n{stamped}" if invoice.notes else stamped


def transition_invoice(
    db: Session,
    invoice: Invoice,
    to_status,
    *,
    reason: str | None = None,
    reference: str | None = None,
    today: date | None = None,
) -> Invoice:
    """Move an invoice to ``to_status`` inside the caller's transaction."""
    today = today or utc_today()
    current = InvoiceStatus(invoice.status)
    target = InvoiceStatus(to_status)
    if target not in ALLOWED_TRANSITIONS[current]:
        raise InvalidStateError(
            f"Cannot transition invoice from {current.value} to {target.value}",
            current_status=current.value,
            requested_status=target.value,
        )

    if target == InvoiceStatus.PENDING:
        if not invoice.items:
            raise ValidationError("Cannot issue an invoice without items", invoice_id=invoice.id)
        _recalculate_totals(invoice)
        invoice.issue_date = invoice.issue_date or today
        invoice.due_date = invoice.due_date or invoice.issue_date + timedelta(days=get_settings().invoice_due_days)
        invoice.issued_at = utc_now()
    elif target == InvoiceStatus.OVERDUE:
        if invoice.due_date is None or invoice.due_date >= today:
            raise InvalidStateError("Invoice is not past its due date", current_status=current.value)
    elif target == InvoiceStatus.PAID:
        invoice.paid_at = utc_now()
        if reference:
            invoice.payment_reference = reference
    elif target == InvoiceStatus.CANCELLED:
        invoice.cancelled_at = utc_now()

    invoice.status = target.value
    note = f"{current.value} -> {target.value}"
    if reason:
        note = f"{note}: {reason}"
    elif reference:
        note = f"{note} (ref {reference})"
    _append_note(invoice, note)
    db.flush()
    logger.info(
        "Invoice status changed",
        extra={
            "invoice_id": invoice.id,
            "invoice_number": invoice.invoice_number,
            "from_status": current.value,
            "to_status": target.value,
        },
    )
    return invoice


def allocate_invoice_number(db: Session, school_id: int, period_key: str) -> str:
    """Next ``PREFIX-YYYY-MM-NNNN`` number for the school, inside the caller's transaction."""
    result = db.execute(
        update(InvoiceSequence)
        .where(InvoiceSequence.school_id == school_id, InvoiceSequence.period_key == period_key)
        .values(current_value=InvoiceSequence.current_value + 1, version=InvoiceSequence.version + 1)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        db.add(InvoiceSequence(school_id=school_id, period_key=period_key, current_value=1))
        db.flush()
        value = 1
    else:
        value = db.execute(
            select(InvoiceSequence.current_value).where(
                InvoiceSequence.school_id == school_id, InvoiceSequence.period_key == period_key
            )
        ).scalar_one()
    return f"{get_settings().invoice_number_prefix}-{period_key}-{value:04d}"


def _recalculate_totals(invoice: Invoice) -> None:
    subtotal, total = calculate_invoice_totals(
        (item.total for item in invoice.items),
        Decimal(invoice.discount or 0),
        Decimal(invoice.tax or 0),
    )
    if total < ZERO:
        raise ValidationError("Discount cannot exceed the invoice subtotal plus tax", invoice_id=invoice.id)
    invoice.subtotal = subtotal
    invoice.total = total


def _coerce_items(db: Session, school_id: int, items: Iterable) -> List[InvoiceItem]:
    rows = []
    for raw in items:
        if isinstance(raw, BillableItem):
            item = raw
        else:
            data = dict(raw)
            item = BillableItem(
                concept_id=data.get("concept_id"),
                unit_price=data.get("unit_price"),
                quantity=data.get("quantity", 1),
                description=data.get("description"),
            )
        quantity = to_positive_money(item.quantity, "quantity")
        unit_price = to_positive_money(item.unit_price, "unit_price")
        description = item.description
        if item.concept_id is not None:
            concept = (
                db.query(FinancialConcept)
                .filter(FinancialConcept.id == item.concept_id, FinancialConcept.school_id == school_id)
                .first()
            )
            if concept is None:
                raise NotFoundError("Financial concept", item.concept_id)
            description = description or concept.name
        rows.append(
            InvoiceItem(
                concept_id=item.concept_id,
                description=description,
                quantity=quantity,
                unit_price=unit_price,
                total=calculate_line_total(quantity, unit_price),
            )
        )
    return rows


def _replace_items(db: Session, invoice: Invoice, rows: Sequence[InvoiceItem]) -> None:
    invoice.items.clear()
    db.flush()
    invoice.items.extend(rows)
    _recalculate_totals(invoice)
    db.flush()


def _get_student(db: Session, school_id: int, student_id: int) -> Student:
    student = db.query(Student).filter(Student.id == student_id, Student.school_id == school_id).first()
    if student is None:
        raise NotFoundError("Student", student_id)
    return student


def get_invoice(db: Session, ctx: TenantContext, invoice_id: int) -> Invoice:
    school_id = require_tenant(ctx)
    invoice = (
        db.query(Invoice)
        .options(selectinload(Invoice.items))
        .filter(Invoice.id == invoice_id, Invoice.school_id == school_id)
        .first()
    )
    if invoice is None:
        raise NotFoundError("Invoice", invoice_id)
    return invoice


def _lock_invoice(db: Session, ctx: TenantContext, invoice_id: int) -> Invoice:
    school_id = require_tenant(ctx)
    invoice = lock_row(db, Invoice, school_id, invoice_id)
    if invoice is None:
        raise NotFoundError("Invoice", invoice_id)
    db.refresh(invoice, attribute_names=["items"])
    return invoice


def create_invoice(
    db: Session,
    ctx: TenantContext,
    *,
    student_id: int,
    items: Iterable,
    due_date: date | None = None,
    discount=0,
    tax=0,
    notes: str | None = None,
    billing_period=None,
    today: date | None = None,
) -> Invoice:
    """Create a draft invoice from explicit line items."""
    school_id = require_tenant(ctx)
    today = today or utc_today()
    discount = to_money(discount, "discount")
    tax = to_money(tax, "tax")
    if discount < ZERO or tax < ZERO:
        raise ValidationError("Discount and tax cannot be negative", discount=discount, tax=tax)
    if due_date is not None and due_date < today:
        raise ValidationError("Due date cannot be in the past", due_date=due_date)
    period_key = normalize_period(billing_period) if billing_period is not None else None
    _get_student(db, school_id, student_id)
    rows = _coerce_items(db, school_id, items)
    if not rows:
        raise ValidationError("An invoice needs at least one item")

    with atomic(db):
        if period_key is not None:
            _ensure_period_free(db, school_id, student_id, period_key)
        invoice = Invoice(
            school_id=school_id,
            student_id=student_id,
            invoice_number=allocate_invoice_number(db, school_id, period_key or normalize_period(today)),
            billing_period=period_key,
            status=InvoiceStatus.DRAFT.value,
            discount=discount,
            tax=tax,
            due_date=due_date,
            notes=notes,
            created_by=ctx.actor_id,
        )
        db.add(invoice)
        db.flush()
        _replace_items(db, invoice, rows)
    db.refresh(invoice)
    logger.info(
        "Invoice created",
        extra={"invoice_id": invoice.id, "invoice_number": invoice.invoice_number, "total": invoice.total},
    )
    return invoice


def _ensure_period_free(db: Session, school_id: int, student_id: int, period_key: str) -> None:
    existing = (
        db.query(Invoice.id)
        .filter(
            Invoice.school_id == school_id,
            Invoice.student_id == student_id,
            Invoice.billing_period == period_key,
        )
        .first()
    )
    if existing is not None:
        raise ConflictError(
            "Student already has an invoice for this billing period",
            existing_invoice_id=existing.id,
            billing_period=period_key,
        )


def update_invoice(
    db: Session,
    ctx: TenantContext,
    invoice_id: int,
    *,
    items: Iterable | None = None,
    due_date: date | None = None,
    discount=None,
    tax=None,
    notes=_UNSET,
    today: date | None = None,
) -> Invoice:
    school_id = require_tenant(ctx)
    today = today or utc_today()
    if due_date is not None and due_date < today:
        raise ValidationError("Due date cannot be in the past", due_date=due_date)
    new_discount = to_money(discount, "discount") if discount is not None else None
    new_tax = to_money(tax, "tax") if tax is not None else None
    if (new_discount is not None and new_discount < ZERO) or (new_tax is not None and new_tax < ZERO):
        raise ValidationError("Discount and tax cannot be negative", discount=new_discount, tax=new_tax)
    rows = _coerce_items(db, school_id, items) if items is not None else None
    if rows is not None and not rows:
        raise ValidationError("An invoice needs at least one item")

    with atomic(db):
        invoice = _lock_invoice(db, ctx, invoice_id)
        if invoice.status != InvoiceStatus.DRAFT:
            raise InvalidStateError("Only draft invoices can be edited", current_status=invoice.status)
        if due_date is not None:
            invoice.due_date = due_date
        if new_discount is not None:
            invoice.discount = new_discount
        if new_tax is not None:
            invoice.tax = new_tax
        if notes is not _UNSET:
            invoice.notes = notes
        if rows is not None:
            _replace_items(db, invoice, rows)
        else:
            _recalculate_totals(invoice)
    db.refresh(invoice)
    logger.info("Invoice updated", extra={"invoice_id": invoice.id, "total": invoice.total})
    return invoice


def _change_status(db: Session, ctx: TenantContext, invoice_id: int, to_status: InvoiceStatus, **kwargs) -> Invoice:
    with atomic(db):
        invoice = _lock_invoice(db, ctx, invoice_id)
        transition_invoice(db, invoice, to_status, **kwargs)
    db.refresh(invoice)
    return invoice


def issue_invoice(db: Session, ctx: TenantContext, invoice_id: int, *, today: date | None = None) -> Invoice:
    return _change_status(db, ctx, invoice_id, InvoiceStatus.PENDING, today=today)


def mark_invoice_paid(
    db: Session, ctx: TenantContext, invoice_id: int, *, reference: str | None = None, today: date | None = None
) -> Invoice:
    return _change_status(db, ctx, invoice_id, InvoiceStatus.PAID, reference=reference, today=today)


def cancel_invoice(
    db: Session, ctx: TenantContext, invoice_id: int, *, reason: str | None = None, today: date | None = None
) -> Invoice:
    return _change_status(db, ctx, invoice_id, InvoiceStatus.CANCELLED, reason=reason, today=today)


def delete_invoice(db: Session, ctx: TenantContext, invoice_id: int) -> None:
    with atomic(db):
        invoice = _lock_invoice(db, ctx, invoice_id)
        if invoice.status == InvoiceStatus.PAID:
            raise ConflictError("Cannot delete a paid invoice", invoice_id=invoice.id)
        number = invoice.invoice_number
        db.delete(invoice)
    logger.info("Invoice deleted", extra={"invoice_id": invoice_id, "invoice_number": number})


def generate_student_invoice(
    db: Session,
    ctx: TenantContext,
    student_id: int,
    period,
    *,
    catalog: FeeCatalog | None = None,
    discount=None,
    tax=None,
    today: date | None = None,
) -> Invoice:
    """Bill a student for one period and issue the invoice.

    Repeat calls for the same student and period refresh the existing invoice
    rather than creating a second one and keep its discount and tax unless new
    values are given. Paid and cancelled invoices are returned untouched.
    """
    school_id = require_tenant(ctx)
    today = today or utc_today()
    period_key = normalize_period(period)
    discount = to_money(discount, "discount") if discount is not None else None
    tax = to_money(tax, "tax") if tax is not None else None
    if (discount is not None and discount < ZERO) or (tax is not None and tax < ZERO):
        raise ValidationError("Discount and tax cannot be negative", discount=discount, tax=tax)
    _get_student(db, school_id, student_id)

    existing = (
        db.query(Invoice)
        .filter(
            Invoice.school_id == school_id,
            Invoice.student_id == student_id,
            Invoice.billing_period == period_key,
        )
        .first()
    )
    if existing is not None and existing.status in (InvoiceStatus.PAID, InvoiceStatus.CANCELLED):
        logger.info(
            "Invoice already settled for period",
            extra={"invoice_id": existing.id, "billing_period": period_key, "status": existing.status},
        )
        return existing

    catalog = catalog or ConceptFeeCatalog(db)
    billable = catalog.billable_items(ctx, student_id, _period_start(period_key))
    rows = _coerce_items(db, school_id, billable)
    if not rows:
        raise ValidationError("No billable items for this student and period", student_id=student_id, period=period_key)

    with atomic(db):
        if existing is not None:
            invoice = _lock_invoice(db, ctx, existing.id)
            created = False
        else:
            invoice = Invoice(
                school_id=school_id,
                student_id=student_id,
                invoice_number=allocate_invoice_number(db, school_id, period_key),
                billing_period=period_key,
                status=InvoiceStatus.DRAFT.value,
                created_by=ctx.actor_id,
            )
            db.add(invoice)
            db.flush()
            created = True
        if discount is not None or created:
            invoice.discount = discount if discount is not None else ZERO
        if tax is not None or created:
            invoice.tax = tax if tax is not None else ZERO
        _replace_items(db, invoice, rows)
        if invoice.status == InvoiceStatus.DRAFT:
            transition_invoice(db, invoice, InvoiceStatus.PENDING, today=today)
    db.refresh(invoice)
    logger.info(
        "Student invoice generated" if created else "Student invoice refreshed",
        extra={
            "invoice_id": invoice.id,
            "invoice_number": invoice.invoice_number,
            "student_id": student_id,
            "billing_period": period_key,
            "total": invoice.total,
        },
    )
    return invoice


def generate_monthly_invoices(
    db: Session,
    ctx: TenantContext,
    period,
    *,
    catalog: FeeCatalog | None = None,
    directory: StudentDirectory | None = None,
    today: date | None = None,
) -> dict:
    """Generate one invoice per active student; a failing student never stops the batch."""
    require_tenant(ctx)
    period_key = normalize_period(period)
    catalog = catalog or ConceptFeeCatalog(db)
    directory = directory or RosterStudentDirectory(db)

    results: List[InvoiceGenerationResult] = []
    for student_id in directory.active_student_ids(ctx):
        try:
            invoice = generate_student_invoice(db, ctx, student_id, period_key, catalog=catalog, today=today)
        except LedgerError as exc:
            logger.warning(
                "Invoice generation failed",
                extra={"student_id": student_id, "billing_period": period_key, "error_code": exc.code},
            )
            results.append(
                InvoiceGenerationResult(student_id, False, error_code=exc.code, error_message=exc.message)
            )
        except Exception:
            db.rollback()
            logger.exception(
                "Invoice generation crashed", extra={"student_id": student_id, "billing_period": period_key}
            )
            results.append(
                InvoiceGenerationResult(
                    student_id, False, error_code="INTERNAL_ERROR", error_message="Invoice generation failed unexpectedly"
                )
            )
        else:
            results.append(InvoiceGenerationResult(student_id, True, invoice.id, invoice.invoice_number))

    generated = sum(1 for r in results if r.success)
    logger.info(
        "Monthly invoice batch finished",
        extra={"billing_period": period_key, "generated": generated, "failed": len(results) - generated},
    )
    return {
        "billing_period": period_key,
        "generated": generated,
        "failed": len(results) - generated,
        "results": [r.to_dict() for r in results],
    }


def update_overdue_invoices(db: Session, ctx: TenantContext, *, today: date | None = None) -> int:
    """Flag pending invoices past their due date as overdue; commits per invoice."""
    school_id = require_tenant(ctx)
    today = today or utc_today()
    candidate_ids = [
        row.id
        for row in db.query(Invoice.id)
        .filter(
            Invoice.school_id == school_id,
            Invoice.status == InvoiceStatus.PENDING.value,
            Invoice.due_date < today,
        )
        .order_by(Invoice.id)
        .all()
    ]
    updated = 0
    for invoice_id in candidate_ids:
        with atomic(db):
            invoice = _lock_invoice(db, ctx, invoice_id)
            # Paid or cancelled between the scan and the lock.
            if invoice.status != InvoiceStatus.PENDING:
                continue
            transition_invoice(db, invoice, InvoiceStatus.OVERDUE, today=today)
            updated += 1
    logger.info("Overdue invoice sweep finished", extra={"school_id": school_id, "updated": updated})
    return updated


def list_invoices(
    db: Session,
    ctx: TenantContext,
    *,
    status: str | None = None,
    student_id: int | None = None,
    billing_period: str | None = None,
    date_from: date | None = None,
    date_to: date | None = None,
    min_amount=None,
    max_amount=None,
    search: str | None = None,
    sort_by: str = "created_at",
    sort_order: str = "desc",
    skip: int = 0,
    limit: int = 50,
) -> dict:
    school_id = require_tenant(ctx)
    query = db.query(Invoice).options(selectinload(Invoice.items)).filter(Invoice.school_id == school_id)
    if status:
        query = query.filter(Invoice.status == status)
    if student_id is not None:
        query = query.filter(Invoice.student_id == student_id)
    if billing_period:
        query = query.filter(Invoice.billing_period == normalize_period(billing_period))
    if date_from is not None:
        query = query.filter(Invoice.issue_date >= date_from)
    if date_to is not None:
        query = query.filter(Invoice.issue_date <= date_to)
    if min_amount is not None:
        query = query.filter(Invoice.total >= to_money(min_amount, "min_amount"))
    if max_amount is not None:
        query = query.filter(Invoice.total <= to_money(max_amount, "max_amount"))
    if search:
        pattern = f"%{search}%"
        query = query.filter(or_(Invoice.invoice_number.ilike(pattern), Invoice.notes.ilike(pattern)))
    return paginate(
        query,
        sort_fields={
            "created_at": Invoice.created_at,
            "issue_date": Invoice.issue_date,
            "due_date": Invoice.due_date,
            "total": Invoice.total,
            "status": Invoice.status,
            "invoice_number": Invoice.invoice_number,
        },
        sort_by=sort_by,
        sort_order=sort_order,
        tiebreaker=Invoice.id,
        skip=skip,
        limit=limit,
    )


def invoice_statistics(
    db: Session,
    ctx: TenantContext,
    *,
    date_from: date | None = None,
    date_to: date | None = None,
) -> dict:
    school_id = require_tenant(ctx)
    query = (
        db.query(Invoice.status, func.count(Invoice.id), func.coalesce(func.sum(Invoice.total), 0))
        .filter(Invoice.school_id == school_id)
        .group_by(Invoice.status)
    )
    if date_from is not None:
        query = query.filter(Invoice.issue_date >= date_from)
    if date_to is not None:
        query = query.filter(Invoice.issue_date <= date_to)

    by_status = {s.value: {"count": 0, "amount": ZERO} for s in InvoiceStatus}
    for status_value, count, amount in query.all():
        by_status[status_value] = {"count": count, "amount": Decimal(str(amount))}

    paid = by_status[InvoiceStatus.PAID]["amount"]
    billable = paid + by_status[InvoiceStatus.PENDING]["amount"] + by_status[InvoiceStatus.OVERDUE]["amount"]
    collection_rate = (paid / billable).quantize(Decimal("0.0001")) if billable > 0 else Decimal("0")

    return {
        "total_count": sum(v["count"] for v in by_status.values()),
        "total_amount": format_money(sum((v["amount"] for v in by_status.values()), ZERO)),
        "collection_rate": str(collection_rate),
        "by_status": {
            key: {"count": vals["count"], "amount": format_money(vals["amount"])} for key, vals in by_status.items()
        },
    }


def invoices_needing_attention(
    db: Session,
    ctx: TenantContext,
    *,
    days: int | None = None,
    today: date | None = None,
) -> dict:
    """Overdue invoices, pending ones due within ``days``, and those overdue for over a month."""
    school_id = require_tenant(ctx)
    today = today or utc_today()
    window = days if days is not None else get_settings().due_soon_days
    base = db.query(Invoice).options(selectinload(Invoice.items)).filter(Invoice.school_id == school_id)

    overdue = (
        base.filter(Invoice.status == InvoiceStatus.OVERDUE.value).order_by(Invoice.due_date.asc(), Invoice.id).all()
    )
    due_soon = (
        base.filter(
            Invoice.status == InvoiceStatus.PENDING.value,
            Invoice.due_date >= today,
            Invoice.due_date <= today + timedelta(days=window),
        )
        .order_by(Invoice.due_date.asc(), Invoice.id)
        .all()
    )
    long_cutoff = today - timedelta(days=LONG_OVERDUE_DAYS)
    long_overdue = [invoice for invoice in overdue if invoice.due_date < long_cutoff]
    return {"overdue": overdue, "due_soon": due_soon, "long_overdue": long_overdue}
