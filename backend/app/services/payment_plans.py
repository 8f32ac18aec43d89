"""Installment schedules for amounts owed by a student."""

import logging
from datetime import date, timedelta
from decimal import Decimal
from typing import List, Tuple

from dateutil.relativedelta import relativedelta
from sqlalchemy.orm import Session, selectinload

from backend.app.core.context import TenantContext, require_tenant
from backend.app.core.exceptions import ConflictError, InvalidStateError, NotFoundError, ValidationError
from backend.app.core.settings import get_settings
from backend.app.core.time import utc_now, utc_today
from backend.app.db.locking import lock_row
from backend.app.db.session import atomic
from backend.app.models.account_receivable import AccountReceivable
from backend.app.models.payment_plan import PaymentPlan, PlanFrequency, PlanStatus
from backend.app.models.payment_plan_installment import InstallmentStatus, PaymentPlanInstallment
from backend.app.models.student import Student
from backend.app.services import payments, receivables
from backend.app.services.billing import format_money, split_amount, to_positive_money
from backend.app.services.collaborators import NotificationDispatcher, Notification, notify_safely

logger = logging.getLogger(__name__)

MIN_INSTALLMENTS = 2
MAX_INSTALLMENTS = 60

_PERIOD_STEP = {
    PlanFrequency.WEEKLY: relativedelta(weeks=1),
    PlanFrequency.BIWEEKLY: relativedelta(weeks=2),
    PlanFrequency.MONTHLY: relativedelta(months=1),
    PlanFrequency.QUARTERLY: relativedelta(months=3),
    PlanFrequency.SEMESTER: relativedelta(months=6),
    PlanFrequency.ANNUAL: relativedelta(years=1),
}

_SCHEDULE_FIELDS = ("total_amount", "installments_count", "frequency", "start_date")


def _validate_frequency(frequency) -> PlanFrequency:
    try:
        return PlanFrequency(frequency)
    except ValueError as exc:
        allowed = ", ".join(f.value for f in PlanFrequency)
        raise ValidationError(f"Frequency must be one of: {allowed}", frequency=frequency) from exc


def _validate_count(count) -> int:
    if not isinstance(count, int) or isinstance(count, bool) or not MIN_INSTALLMENTS <= count <= MAX_INSTALLMENTS:
        raise ValidationError(
            f"Installment count must be between {MIN_INSTALLMENTS} and {MAX_INSTALLMENTS}",
            installments_count=count,
        )
    return count


def installment_due_date(start_date: date, frequency, number: int) -> date:
    """Due date of installment ``number`` (1-based), always measured from the start date."""
    step = _PERIOD_STEP[PlanFrequency(frequency)]
    return start_date + step * (number - 1)


def build_schedule(total_amount: Decimal, count: int, frequency, start_date: date) -> List[Tuple[int, Decimal, date]]:
    """Return ``(number, amount, due_date)`` rows whose amounts sum exactly to the total."""
    amounts = split_amount(total_amount, count)
    return [
        (number, amount, installment_due_date(start_date, frequency, number))
        for number, amount in enumerate(amounts, start=1)
    ]


def _replace_installments(db: Session, plan: PaymentPlan) -> None:
    for installment in list(plan.installments):
        plan.installments.remove(installment)
    # Old rows must be gone before new ones reuse their installment numbers.
    db.flush()
    for number, amount, due in build_schedule(
        Decimal(plan.total_amount), plan.installments_count, plan.frequency, plan.start_date
    ):
        plan.installments.append(
            PaymentPlanInstallment(
                installment_number=number,
                amount=amount,
                due_date=due,
                status=InstallmentStatus.PENDING.value,
            )
        )
    db.flush()


def get_plan(db: Session, ctx: TenantContext, plan_id: int) -> PaymentPlan:
    school_id = require_tenant(ctx)
    plan = (
        db.query(PaymentPlan)
        .options(selectinload(PaymentPlan.installments))
        .filter(PaymentPlan.id == plan_id, PaymentPlan.school_id == school_id)
        .first()
    )
    if plan is None:
        raise NotFoundError("Payment plan", plan_id)
    return plan


def _lock_plan(db: Session, ctx: TenantContext, plan_id: int) -> PaymentPlan:
    school_id = require_tenant(ctx)
    plan = lock_row(db, PaymentPlan, school_id, plan_id)
    if plan is None:
        raise NotFoundError("Payment plan", plan_id)
    db.refresh(plan, attribute_names=["installments"])
    return plan


def _check_receivable_link(
    db: Session, school_id: int, student_id: int, receivable_id: int | None, total_amount: Decimal
) -> None:
    if receivable_id is None:
        return
    receivable = (
        db.query(AccountReceivable)
        .filter(AccountReceivable.id == receivable_id, AccountReceivable.school_id == school_id)
        .first()
    )
    if receivable is None:
        raise NotFoundError("Account receivable", receivable_id)
    if receivable.student_id != student_id:
        raise ValidationError(
            "Account receivable belongs to a different student",
            receivable_id=receivable_id,
            student_id=student_id,
        )
    _check_plan_total(db, receivable, total_amount)


def _check_plan_total(db: Session, receivable: AccountReceivable, total_amount: Decimal) -> None:
    available = payments.available_amount(db, receivable)
    if total_amount > available:
        raise ValidationError(
            f"Plan total ({total_amount}) exceeds the receivable's open amount ({format_money(available)})",
            receivable_id=receivable.id,
            total_amount=total_amount,
            remaining_amount=available,
        )


def create_plan(
    db: Session,
    ctx: TenantContext,
    *,
    student_id: int,
    total_amount,
    installments_count: int,
    frequency,
    start_date: date,
    description: str | None = None,
    receivable_id: int | None = None,
    today: date | None = None,
) -> PaymentPlan:
    school_id = require_tenant(ctx)
    today = today or utc_today()
    total_amount = to_positive_money(total_amount, "total_amount")
    installments_count = _validate_count(installments_count)
    frequency = _validate_frequency(frequency)
    if start_date is None or start_date < today:
        raise ValidationError("Start date cannot be in the past", start_date=start_date)

    student = db.query(Student).filter(Student.id == student_id, Student.school_id == school_id).first()
    if student is None:
        raise NotFoundError("Student", student_id)
    _check_receivable_link(db, school_id, student_id, receivable_id, total_amount)

    plan = PaymentPlan(
        school_id=school_id,
        student_id=student_id,
        account_receivable_id=receivable_id,
        total_amount=total_amount,
        installments_count=installments_count,
        frequency=frequency.value,
        start_date=start_date,
        description=description,
        status=PlanStatus.ACTIVE.value,
        created_by=ctx.actor_id,
    )
    with atomic(db):
        db.add(plan)
        db.flush()
        _replace_installments(db, plan)
    db.refresh(plan)
    logger.info(
        "Payment plan created",
        extra={
            "plan_id": plan.id,
            "student_id": student_id,
            "total_amount": total_amount,
            "installments_count": installments_count,
            "frequency": frequency.value,
        },
    )
    return plan


def update_plan(
    db: Session,
    ctx: TenantContext,
    plan_id: int,
    *,
    total_amount=None,
    installments_count: int | None = None,
    frequency=None,
    start_date: date | None = None,
    description: str | None = None,
    today: date | None = None,
) -> PaymentPlan:
    today = today or utc_today()
    changes = {}
    if total_amount is not None:
        changes["total_amount"] = to_positive_money(total_amount, "total_amount")
    if installments_count is not None:
        changes["installments_count"] = _validate_count(installments_count)
    if frequency is not None:
        changes["frequency"] = _validate_frequency(frequency).value
    if start_date is not None:
        if start_date < today:
            raise ValidationError("Start date cannot be in the past", start_date=start_date)
        changes["start_date"] = start_date

    with atomic(db):
        plan = _lock_plan(db, ctx, plan_id)
        if plan.status != PlanStatus.ACTIVE:
            raise InvalidStateError("Only active payment plans can be updated", current_status=plan.status)
        if any(i.status == InstallmentStatus.PAID for i in plan.installments):
            raise InvalidStateError(
                "Cannot update payment plan with paid installments", current_status=plan.status
            )
        if "total_amount" in changes and plan.account_receivable_id is not None:
            receivable = receivables.lock_receivable(db, ctx, plan.account_receivable_id)
            _check_plan_total(db, receivable, changes["total_amount"])
        schedule_changed = False
        for field, value in changes.items():
            if getattr(plan, field) != value:
                setattr(plan, field, value)
                schedule_changed = schedule_changed or field in _SCHEDULE_FIELDS
        if description is not None:
            plan.description = description
        if schedule_changed:
            _replace_installments(db, plan)
    db.refresh(plan)
    logger.info("Payment plan updated", extra={"plan_id": plan.id, "schedule_regenerated": schedule_changed})
    return plan


def _set_plan_status(db: Session, ctx: TenantContext, plan_id: int, allowed_from, to_status: PlanStatus, message: str) -> PaymentPlan:
    with atomic(db):
        plan = _lock_plan(db, ctx, plan_id)
        if plan.status not in allowed_from:
            raise InvalidStateError(message, current_status=plan.status)
        previous = plan.status
        plan.status = to_status.value
        if to_status == PlanStatus.CANCELLED:
            for installment in plan.installments:
                if installment.status == InstallmentStatus.PENDING:
                    installment.status = InstallmentStatus.CANCELLED.value
    db.refresh(plan)
    logger.info(
        "Payment plan status changed",
        extra={"plan_id": plan.id, "from_status": previous, "to_status": to_status.value},
    )
    return plan


def suspend_plan(db: Session, ctx: TenantContext, plan_id: int) -> PaymentPlan:
    return _set_plan_status(
        db, ctx, plan_id, (PlanStatus.ACTIVE,), PlanStatus.SUSPENDED, "Only active payment plans can be suspended"
    )


def reactivate_plan(db: Session, ctx: TenantContext, plan_id: int) -> PaymentPlan:
    return _set_plan_status(
        db, ctx, plan_id, (PlanStatus.SUSPENDED,), PlanStatus.ACTIVE, "Only suspended payment plans can be reactivated"
    )


def cancel_plan(db: Session, ctx: TenantContext, plan_id: int) -> PaymentPlan:
    return _set_plan_status(
        db,
        ctx,
        plan_id,
        (PlanStatus.ACTIVE, PlanStatus.SUSPENDED),
        PlanStatus.CANCELLED,
        "Only active or suspended payment plans can be cancelled",
    )


def pay_installment(
    db: Session,
    ctx: TenantContext,
    plan_id: int,
    installment_id: int,
    *,
    method,
    payment_date: date | None = None,
    reference_number: str | None = None,
    receivable_id: int | None = None,
    today: date | None = None,
    notifier: NotificationDispatcher | None = None,
) -> PaymentPlanInstallment:
    """Settle one installment with a confirmed payment against the plan's receivable.

    The payment is registered and confirmed through the payment processor in the
    same transaction that marks the installment paid; the plan completes once no
    installment is left pending.
    """
    today = today or utc_today()
    method = payments._validate_method(method)
    payment_date = payments._validate_payment_date(payment_date, today)

    with atomic(db):
        plan = _lock_plan(db, ctx, plan_id)
        if plan.status != PlanStatus.ACTIVE:
            raise InvalidStateError("Installments can only be paid on active payment plans", current_status=plan.status)
        installment = next((i for i in plan.installments if i.id == installment_id), None)
        if installment is None:
            raise NotFoundError("Payment plan installment", installment_id)
        if installment.status != InstallmentStatus.PENDING:
            raise InvalidStateError("Installment is not pending", current_status=installment.status)

        target_receivable_id = receivable_id or plan.account_receivable_id
        if target_receivable_id is None:
            raise ValidationError("A receivable is required to pay this installment", plan_id=plan.id)
        if receivable_id is not None and plan.account_receivable_id not in (None, receivable_id):
            raise ConflictError(
                "Payment plan is linked to a different account receivable",
                plan_id=plan.id,
                receivable_id=receivable_id,
            )
        receivable = receivables.lock_receivable(db, ctx, target_receivable_id)
        if receivable.student_id != plan.student_id:
            raise ValidationError("Account receivable belongs to a different student", receivable_id=receivable.id)

        payment = payments.register_locked(
            db,
            ctx,
            receivable,
            amount=Decimal(installment.amount),
            method=method,
            payment_date=payment_date,
            reference_number=reference_number,
        )
        payments.confirm_locked(db, ctx, payment, receivable)

        installment.status = InstallmentStatus.PAID.value
        installment.payment_id = payment.id
        installment.paid_at = utc_now()
        if not any(i.status == InstallmentStatus.PENDING for i in plan.installments):
            plan.status = PlanStatus.COMPLETED.value
    db.refresh(installment)
    logger.info(
        "Payment plan installment paid",
        extra={
            "plan_id": plan_id,
            "installment_id": installment.id,
            "payment_id": installment.payment_id,
            "plan_status": plan.status,
        },
    )
    notify_safely(
        notifier,
        Notification(
            channel="email",
            recipient=f"student:{plan.student_id}",
            template_id="installment_paid",
            variables={"plan_id": plan_id, "installment_number": installment.installment_number},
        ),
    )
    return installment


def list_installments(db: Session, ctx: TenantContext, plan_id: int, *, status: str | None = None) -> List[PaymentPlanInstallment]:
    plan = get_plan(db, ctx, plan_id)
    query = db.query(PaymentPlanInstallment).filter(PaymentPlanInstallment.payment_plan_id == plan.id)
    if status:
        query = query.filter(PaymentPlanInstallment.status == status)
    return query.order_by(PaymentPlanInstallment.installment_number.asc()).all()


def list_plans(
    db: Session,
    ctx: TenantContext,
    *,
    status: str | None = None,
    student_id: int | None = None,
    frequency: str | None = None,
) -> List[PaymentPlan]:
    school_id = require_tenant(ctx)
    query = (
        db.query(PaymentPlan)
        .options(selectinload(PaymentPlan.installments))
        .filter(PaymentPlan.school_id == school_id)
    )
    if status:
        query = query.filter(PaymentPlan.status == status)
    if student_id is not None:
        query = query.filter(PaymentPlan.student_id == student_id)
    if frequency:
        query = query.filter(PaymentPlan.frequency == frequency)
    return query.order_by(PaymentPlan.created_at.desc(), PaymentPlan.id.desc()).all()


def plans_due_soon(db: Session, ctx: TenantContext, *, days: int | None = None, today: date | None = None) -> List[dict]:
    """Active plans with pending installments falling due within the window."""
    school_id = require_tenant(ctx)
    today = today or utc_today()
    window_end = today + timedelta(days=days if days is not None else get_settings().due_soon_days)
    rows = (
        db.query(PaymentPlanInstallment, PaymentPlan)
        .join(PaymentPlan, PaymentPlan.id == PaymentPlanInstallment.payment_plan_id)
        .filter(
            PaymentPlan.school_id == school_id,
            PaymentPlan.status == PlanStatus.ACTIVE.value,
            PaymentPlanInstallment.status == InstallmentStatus.PENDING.value,
            PaymentPlanInstallment.due_date <= window_end,
        )
        .order_by(PaymentPlanInstallment.due_date.asc(), PaymentPlanInstallment.id.asc())
        .all()
    )
    return [
        {
            "plan_id": plan.id,
            "student_id": plan.student_id,
            "installment_id": installment.id,
            "installment_number": installment.installment_number,
            "amount": str(Decimal(installment.amount).quantize(Decimal("0.01"))),
            "due_date": installment.due_date.isoformat(),
            "is_overdue": installment.due_date < today,
        }
        for installment, plan in rows
    ]
