"""Account receivable lifecycle and status derivation."""

import logging
from datetime import date, timedelta
from decimal import Decimal

from sqlalchemy import func, or_
from sqlalchemy.orm import Session, selectinload

from backend.app.core.context import TenantContext, require_tenant
from backend.app.core.exceptions import ConflictError, InvalidStateError, NotFoundError, ValidationError
from backend.app.core.settings import get_settings
from backend.app.core.time import utc_today
from backend.app.db.locking import lock_row
from backend.app.db.session import atomic
from backend.app.models.account_receivable import OPEN_RECEIVABLE_STATUSES, AccountReceivable, ReceivableStatus
from backend.app.models.financial_concept import FinancialConcept
from backend.app.models.payment import Payment, PaymentStatus
from backend.app.models.payment_plan import PaymentPlan
from backend.app.models.student import Student
from backend.app.services.billing import ZERO, format_money, to_positive_money
from backend.app.services.listing import paginate

logger = logging.getLogger(__name__)

_UNSET = object()


def derive_status(amount: Decimal, paid: Decimal) -> ReceivableStatus:
    remaining = Decimal(amount) - Decimal(paid)
    if remaining <= ZERO:
        return ReceivableStatus.PAID
    if remaining == Decimal(amount):
        return ReceivableStatus.PENDING
    return ReceivableStatus.PARTIAL


def sum_payments(db: Session, receivable_id: int, statuses) -> Decimal:
    total = (
        db.query(func.coalesce(func.sum(Payment.amount), 0))
        .filter(Payment.account_receivable_id == receivable_id, Payment.status.in_([str(s) for s in statuses]))
        .scalar()
    )
    return Decimal(str(total)).quantize(Decimal("0.01"))


def confirmed_total(db: Session, receivable_id: int) -> Decimal:
    return sum_payments(db, receivable_id, [PaymentStatus.CONFIRMED])


def get_receivable(db: Session, ctx: TenantContext, receivable_id: int) -> AccountReceivable:
    school_id = require_tenant(ctx)
    receivable = (
        db.query(AccountReceivable)
        .options(selectinload(AccountReceivable.payments))
        .filter(AccountReceivable.id == receivable_id, AccountReceivable.school_id == school_id)
        .first()
    )
    if receivable is None:
        raise NotFoundError("Account receivable", receivable_id)
    return receivable


def lock_receivable(db: Session, ctx: TenantContext, receivable_id: int) -> AccountReceivable:
    """Exclusive lock on the receivable row for the rest of the caller's transaction."""
    school_id = require_tenant(ctx)
    receivable = lock_row(db, AccountReceivable, school_id, receivable_id)
    if receivable is None:
        raise NotFoundError("Account receivable", receivable_id)
    return receivable


def refresh_status(db: Session, receivable: AccountReceivable) -> ReceivableStatus:
    """Recompute status from confirmed payments inside the caller's transaction."""
    db.flush()
    paid = confirmed_total(db, receivable.id)
    if paid > Decimal(receivable.amount):
        raise ConflictError(
            "Confirmed payments exceed the receivable amount",
            receivable_id=receivable.id,
            amount=receivable.amount,
            paid=paid,
        )
    status = derive_status(receivable.amount, paid)
    if receivable.status != status:
        logger.info(
            "Account receivable status changed",
            extra={"receivable_id": receivable.id, "from_status": receivable.status, "to_status": str(status)},
        )
        receivable.status = status.value
    return status


def create_receivable(
    db: Session,
    ctx: TenantContext,
    *,
    student_id: int,
    concept_id: int,
    amount,
    due_date: date,
    description: str | None = None,
    today: date | None = None,
) -> AccountReceivable:
    school_id = require_tenant(ctx)
    today = today or utc_today()
    amount = to_positive_money(amount)
    if due_date is None:
        raise ValidationError("due_date is required", field="due_date")
    if due_date < today:
        raise ValidationError("Due date cannot be in the past", due_date=due_date)

    student = db.query(Student).filter(Student.id == student_id, Student.school_id == school_id).first()
    if student is None:
        raise NotFoundError("Student", student_id)
    concept = (
        db.query(FinancialConcept)
        .filter(
            FinancialConcept.id == concept_id,
            FinancialConcept.school_id == school_id,
            FinancialConcept.is_active.is_(True),
        )
        .first()
    )
    if concept is None:
        raise NotFoundError("Financial concept", concept_id)

    duplicate = (
        db.query(AccountReceivable.id)
        .filter(
            AccountReceivable.school_id == school_id,
            AccountReceivable.student_id == student_id,
            AccountReceivable.concept_id == concept_id,
            AccountReceivable.status.in_([str(s) for s in OPEN_RECEIVABLE_STATUSES]),
        )
        .first()
    )
    if duplicate is not None:
        raise ConflictError(
            "Student already has an open account receivable for this concept",
            existing_receivable_id=duplicate.id,
        )

    receivable = AccountReceivable(
        school_id=school_id,
        student_id=student_id,
        concept_id=concept_id,
        amount=amount,
        due_date=due_date,
        description=description,
        status=ReceivableStatus.PENDING.value,
        created_by=ctx.actor_id,
    )
    with atomic(db):
        db.add(receivable)
    db.refresh(receivable)
    logger.info(
        "Account receivable created",
        extra={"receivable_id": receivable.id, "school_id": school_id, "student_id": student_id, "amount": amount},
    )
    return receivable


def update_receivable(
    db: Session,
    ctx: TenantContext,
    receivable_id: int,
    *,
    amount=None,
    due_date: date | None = None,
    description=_UNSET,
    today: date | None = None,
) -> AccountReceivable:
    today = today or utc_today()
    new_amount = to_positive_money(amount) if amount is not None else None
    if due_date is not None and due_date < today:
        raise ValidationError("Due date cannot be in the past", due_date=due_date)

    with atomic(db):
        receivable = lock_receivable(db, ctx, receivable_id)
        if receivable.status not in OPEN_RECEIVABLE_STATUSES:
            raise InvalidStateError(
                "Only pending or partial account receivables can be updated",
                current_status=receivable.status,
            )
        if new_amount is not None and new_amount != Decimal(receivable.amount):
            live = (
                db.query(Payment.id)
                .filter(
                    Payment.account_receivable_id == receivable.id,
                    Payment.status.in_([PaymentStatus.PENDING.value, PaymentStatus.CONFIRMED.value]),
                )
                .first()
            )
            if live is not None:
                raise ConflictError(
                    "Amount cannot change once pending or confirmed payments exist",
                    receivable_id=receivable.id,
                )
            receivable.amount = new_amount
        if due_date is not None:
            receivable.due_date = due_date
        if description is not _UNSET:
            receivable.description = description

    db.refresh(receivable)
    logger.info("Account receivable updated", extra={"receivable_id": receivable.id})
    return receivable


def delete_receivable(db: Session, ctx: TenantContext, receivable_id: int) -> None:
    with atomic(db):
        receivable = lock_receivable(db, ctx, receivable_id)
        payment_count = db.query(Payment).filter(Payment.account_receivable_id == receivable.id).count()
        if payment_count:
            raise ConflictError(
                "Cannot delete an account receivable with registered payments",
                receivable_id=receivable.id,
                payment_count=payment_count,
            )
        linked_plan = db.query(PaymentPlan.id).filter(PaymentPlan.account_receivable_id == receivable.id).first()
        if linked_plan is not None:
            raise ConflictError(
                "Cannot delete an account receivable linked to a payment plan",
                receivable_id=receivable.id,
                payment_plan_id=linked_plan.id,
            )
        db.delete(receivable)
    logger.info("Account receivable deleted", extra={"receivable_id": receivable_id})


def recompute_status(db: Session, ctx: TenantContext, receivable_id: int) -> AccountReceivable:
    with atomic(db):
        receivable = lock_receivable(db, ctx, receivable_id)
        refresh_status(db, receivable)
    db.refresh(receivable)
    return receivable


def _filtered_query(
    db: Session,
    school_id: int,
    *,
    status: str | None = None,
    student_id: int | None = None,
    concept_id: int | None = None,
    due_from: date | None = None,
    due_to: date | None = None,
    min_amount=None,
    max_amount=None,
    search: str | None = None,
    today: date,
):
    query = db.query(AccountReceivable).filter(AccountReceivable.school_id == school_id)
    if status == "overdue":
        query = query.filter(
            AccountReceivable.status.in_([str(s) for s in OPEN_RECEIVABLE_STATUSES]),
            AccountReceivable.due_date < today,
        )
    elif status:
        query = query.filter(AccountReceivable.status == status)
    if student_id is not None:
        query = query.filter(AccountReceivable.student_id == student_id)
    if concept_id is not None:
        query = query.filter(AccountReceivable.concept_id == concept_id)
    if due_from is not None:
        query = query.filter(AccountReceivable.due_date >= due_from)
    if due_to is not None:
        query = query.filter(AccountReceivable.due_date <= due_to)
    if min_amount is not None:
        query = query.filter(AccountReceivable.amount >= Decimal(str(min_amount)))
    if max_amount is not None:
        query = query.filter(AccountReceivable.amount <= Decimal(str(max_amount)))
    if search:
        pattern = f"%{search}%"
        query = query.outerjoin(Student, Student.id == AccountReceivable.student_id).filter(
            or_(AccountReceivable.description.ilike(pattern), Student.full_name.ilike(pattern))
        )
    return query


def list_receivables(
    db: Session,
    ctx: TenantContext,
    *,
    status: str | None = None,
    student_id: int | None = None,
    concept_id: int | None = None,
    due_from: date | None = None,
    due_to: date | None = None,
    min_amount=None,
    max_amount=None,
    search: str | None = None,
    sort_by: str = "due_date",
    sort_order: str = "asc",
    skip: int = 0,
    limit: int = 50,
    today: date | None = None,
) -> dict:
    school_id = require_tenant(ctx)
    query = _filtered_query(
        db,
        school_id,
        status=status,
        student_id=student_id,
        concept_id=concept_id,
        due_from=due_from,
        due_to=due_to,
        min_amount=min_amount,
        max_amount=max_amount,
        search=search,
        today=today or utc_today(),
    ).options(selectinload(AccountReceivable.payments))
    return paginate(
        query,
        sort_fields={
            "due_date": AccountReceivable.due_date,
            "amount": AccountReceivable.amount,
            "created_at": AccountReceivable.created_at,
            "status": AccountReceivable.status,
        },
        sort_by=sort_by,
        sort_order=sort_order,
        tiebreaker=AccountReceivable.id,
        skip=skip,
        limit=limit,
    )


def summarize(
    db: Session,
    ctx: TenantContext,
    *,
    student_id: int | None = None,
    concept_id: int | None = None,
    due_from: date | None = None,
    due_to: date | None = None,
    today: date | None = None,
) -> dict:
    """Counts and amounts per status plus the collection rate over the filtered set."""
    school_id = require_tenant(ctx)
    today = today or utc_today()
    receivables = (
        _filtered_query(
            db,
            school_id,
            student_id=student_id,
            concept_id=concept_id,
            due_from=due_from,
            due_to=due_to,
            today=today,
        )
        .options(selectinload(AccountReceivable.payments))
        .all()
    )

    by_status = {str(s): {"count": 0, "amount": ZERO, "remaining": ZERO} for s in ReceivableStatus}
    total_amount = ZERO
    paid_amount = ZERO
    overdue_count = 0
    overdue_amount = ZERO
    for receivable in receivables:
        paid = receivable.paid_amount
        remaining = receivable.remaining_amount
        bucket = by_status.setdefault(receivable.status, {"count": 0, "amount": ZERO, "remaining": ZERO})
        bucket["count"] += 1
        bucket["amount"] += Decimal(receivable.amount)
        bucket["remaining"] += remaining
        total_amount += Decimal(receivable.amount)
        paid_amount += paid
        if receivable.is_overdue_on(today):
            overdue_count += 1
            overdue_amount += remaining

    collection_rate = (paid_amount / total_amount).quantize(Decimal("0.0001")) if total_amount > 0 else Decimal("0")

    return {
        "as_of": today.isoformat(),
        "currency": get_settings().currency,
        "total_count": len(receivables),
        "total_amount": format_money(total_amount),
        "paid_amount": format_money(paid_amount),
        "pending_amount": format_money(total_amount - paid_amount),
        "overdue_count": overdue_count,
        "overdue_amount": format_money(overdue_amount),
        "collection_rate": str(collection_rate),
        "by_status": {
            key: {"count": vals["count"], "amount": format_money(vals["amount"]), "remaining": format_money(vals["remaining"])}
            for key, vals in by_status.items()
        },
    }


def due_soon(db: Session, ctx: TenantContext, *, days: int | None = None, today: date | None = None) -> list[AccountReceivable]:
    school_id = require_tenant(ctx)
    today = today or utc_today()
    window = days if days is not None else get_settings().due_soon_days
    if window < 0:
        raise ValidationError("days must not be negative", days=window)
    return (
        db.query(AccountReceivable)
        .options(selectinload(AccountReceivable.payments))
        .filter(
            AccountReceivable.school_id == school_id,
            AccountReceivable.status.in_([str(s) for s in OPEN_RECEIVABLE_STATUSES]),
            AccountReceivable.due_date >= today,
            AccountReceivable.due_date <= today + timedelta(days=window),
        )
        .order_by(AccountReceivable.due_date.asc(), AccountReceivable.id.asc())
        .all()
    )


def overdue_accounts(db: Session, ctx: TenantContext, *, min_days: int = 0, today: date | None = None) -> list[dict]:
    """Open receivables past due by more than ``min_days``, most overdue first."""
    school_id = require_tenant(ctx)
    today = today or utc_today()
    cutoff = today - timedelta(days=min_days)
    receivables = (
        db.query(AccountReceivable)
        .options(selectinload(AccountReceivable.payments))
        .filter(
            AccountReceivable.school_id == school_id,
            AccountReceivable.status.in_([str(s) for s in OPEN_RECEIVABLE_STATUSES]),
            AccountReceivable.due_date < cutoff,
        )
        .order_by(AccountReceivable.due_date.asc(), AccountReceivable.id.asc())
        .all()
    )
    return [
        {
            "receivable_id": r.id,
            "student_id": r.student_id,
            "concept_id": r.concept_id,
            "due_date": r.due_date.isoformat(),
            "days_overdue": (today - r.due_date).days,
            "amount": format_money(r.amount),
            "remaining_amount": format_money(r.remaining_amount),
            "status": r.status,
        }
        for r in receivables
    ]
