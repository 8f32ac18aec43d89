"""Payment registration and settlement against account receivables.

This is the only module that changes how much of a receivable is settled.
Every balance-affecting step runs with the owning receivable row locked so two
payments processed at the same time can never jointly overpay it.
"""

import logging
from datetime import date
from decimal import Decimal
from typing import BinaryIO

from sqlalchemy.orm import Session

from backend.app.core.context import TenantContext, require_tenant
from backend.app.core.exceptions import ConflictError, InvalidStateError, NotFoundError, ValidationError
from backend.app.core.time import utc_now, utc_today
from backend.app.db.locking import lock_row
from backend.app.db.session import atomic
from backend.app.models.account_receivable import AccountReceivable, ReceivableStatus
from backend.app.models.payment import Payment, PaymentMethod, PaymentStatus
from backend.app.models.payment_plan import PaymentPlan, PlanStatus
from backend.app.models.payment_plan_installment import InstallmentStatus, PaymentPlanInstallment
from backend.app.services import receivables
from backend.app.services.billing import format_money, to_positive_money
from backend.app.services.collaborators import Notification, NotificationDispatcher, VoucherStorage, notify_safely
from backend.app.services.listing import paginate

logger = logging.getLogger(__name__)

_UNSET = object()


def _validate_method(method) -> str:
    try:
        return PaymentMethod(method).value
    except ValueError as exc:
        allowed = ", ".join(m.value for m in PaymentMethod)
        raise ValidationError(f"Payment method must be one of: {allowed}", method=method) from exc


def _validate_payment_date(payment_date: date | None, today: date) -> date:
    if payment_date is None:
        return today
    if payment_date > today:
        raise ValidationError("Payment date cannot be in the future", payment_date=payment_date)
    return payment_date


def get_payment(db: Session, ctx: TenantContext, payment_id: int) -> Payment:
    school_id = require_tenant(ctx)
    payment = db.query(Payment).filter(Payment.id == payment_id, Payment.school_id == school_id).first()
    if payment is None:
        raise NotFoundError("Payment", payment_id)
    return payment


def _lock_payment(db: Session, ctx: TenantContext, payment_id: int) -> tuple[Payment, AccountReceivable]:
    """Lock the owning receivable, then re-read the payment under that lock."""
    payment = get_payment(db, ctx, payment_id)
    receivable = receivables.lock_receivable(db, ctx, payment.account_receivable_id)
    db.refresh(payment)
    return payment, receivable


def available_amount(db: Session, receivable: AccountReceivable) -> Decimal:
    """Amount still open for new payments: the total minus confirmed and pending payments."""
    committed = receivables.sum_payments(db, receivable.id, [PaymentStatus.PENDING, PaymentStatus.CONFIRMED])
    return receivable.amount - committed


def register_locked(
    db: Session,
    ctx: TenantContext,
    receivable: AccountReceivable,
    *,
    amount,
    method,
    payment_date: date,
    reference_number: str | None = None,
    voucher_reference: str | None = None,
) -> Payment:
    """Create a pending payment; the caller holds the receivable lock and commits."""
    if receivable.status == ReceivableStatus.PAID:
        raise ConflictError("Account receivable is already paid", receivable_id=receivable.id)
    available = available_amount(db, receivable)
    if amount > available:
        raise ValidationError(
            f"Payment amount ({amount}) exceeds remaining amount ({format_money(available)})",
            receivable_id=receivable.id,
            amount=amount,
            remaining_amount=available,
        )
    payment = Payment(
        school_id=receivable.school_id,
        account_receivable_id=receivable.id,
        amount=amount,
        payment_date=payment_date,
        method=method,
        reference_number=reference_number,
        voucher_reference=voucher_reference,
        status=PaymentStatus.PENDING.value,
        created_by=ctx.actor_id,
    )
    db.add(payment)
    db.flush()
    return payment


def confirm_locked(db: Session, ctx: TenantContext, payment: Payment, receivable: AccountReceivable) -> Payment:
    if payment.status != PaymentStatus.PENDING:
        raise InvalidStateError("Only pending payments can be confirmed", current_status=payment.status)
    payment.status = PaymentStatus.CONFIRMED.value
    payment.confirmed_by = ctx.actor_id
    payment.confirmed_at = utc_now()
    receivables.refresh_status(db, receivable)
    return payment


def register_payment(
    db: Session,
    ctx: TenantContext,
    *,
    receivable_id: int,
    amount,
    method,
    payment_date: date | None = None,
    reference_number: str | None = None,
    voucher_reference: str | None = None,
    today: date | None = None,
) -> Payment:
    require_tenant(ctx)
    amount = to_positive_money(amount)
    method = _validate_method(method)
    payment_date = _validate_payment_date(payment_date, today or utc_today())

    with atomic(db):
        receivable = receivables.lock_receivable(db, ctx, receivable_id)
        payment = register_locked(
            db,
            ctx,
            receivable,
            amount=amount,
            method=method,
            payment_date=payment_date,
            reference_number=reference_number,
            voucher_reference=voucher_reference,
        )
    db.refresh(payment)
    logger.info(
        "Payment registered",
        extra={"payment_id": payment.id, "receivable_id": receivable_id, "amount": amount, "method": method},
    )
    return payment


def update_payment(
    db: Session,
    ctx: TenantContext,
    payment_id: int,
    *,
    amount=None,
    payment_date: date | None = None,
    method=None,
    reference_number=_UNSET,
    today: date | None = None,
) -> Payment:
    new_amount = to_positive_money(amount) if amount is not None else None
    new_method = _validate_method(method) if method is not None else None
    if payment_date is not None:
        _validate_payment_date(payment_date, today or utc_today())

    with atomic(db):
        payment, receivable = _lock_payment(db, ctx, payment_id)
        if payment.status != PaymentStatus.PENDING:
            raise InvalidStateError("Only pending payments can be updated", current_status=payment.status)
        if new_amount is not None and new_amount != payment.amount:
            # The payment's own amount is released before checking the new one.
            available = available_amount(db, receivable) + payment.amount
            if new_amount > available:
                raise ValidationError(
                    f"Payment amount ({new_amount}) exceeds remaining amount ({format_money(available)})",
                    payment_id=payment.id,
                    remaining_amount=available,
                )
            payment.amount = new_amount
        if payment_date is not None:
            payment.payment_date = payment_date
        if new_method is not None:
            payment.method = new_method
        if reference_number is not _UNSET:
            payment.reference_number = reference_number
    db.refresh(payment)
    logger.info("Payment updated", extra={"payment_id": payment.id})
    return payment


def confirm_payment(
    db: Session,
    ctx: TenantContext,
    payment_id: int,
    *,
    notifier: NotificationDispatcher | None = None,
) -> Payment:
    with atomic(db):
        payment, receivable = _lock_payment(db, ctx, payment_id)
        confirm_locked(db, ctx, payment, receivable)
    db.refresh(payment)
    logger.info(
        "Payment confirmed",
        extra={"payment_id": payment.id, "confirmed_by": ctx.actor_id, "amount": payment.amount},
    )
    notify_safely(
        notifier,
        Notification(
            channel="email",
            recipient=f"student:{receivable.student_id}",
            template_id="payment_confirmed",
            variables={
                "payment_id": payment.id,
                "amount": format_money(payment.amount),
                "receivable_id": receivable.id,
                "receivable_status": receivable.status,
            },
        ),
    )
    return payment


def reject_payment(db: Session, ctx: TenantContext, payment_id: int, *, reason: str | None = None) -> Payment:
    with atomic(db):
        payment, _ = _lock_payment(db, ctx, payment_id)
        if payment.status != PaymentStatus.PENDING:
            raise InvalidStateError("Only pending payments can be rejected", current_status=payment.status)
        payment.status = PaymentStatus.REJECTED.value
        payment.rejected_by = ctx.actor_id
        payment.rejected_at = utc_now()
        payment.rejection_reason = reason
    db.refresh(payment)
    logger.info("Payment rejected", extra={"payment_id": payment.id, "reason": reason})
    return payment


def _lock_settled_installment(db: Session, ctx: TenantContext, payment_id: int):
    """Lock the plan whose installment this payment settled, before any receivable lock."""
    installment = db.query(PaymentPlanInstallment).filter(PaymentPlanInstallment.payment_id == payment_id).first()
    if installment is None:
        return None, None
    plan = lock_row(db, PaymentPlan, require_tenant(ctx), installment.payment_plan_id)
    if plan is None:
        return None, None
    db.refresh(installment)
    return plan, installment


def cancel_payment(db: Session, ctx: TenantContext, payment_id: int, *, reason: str | None = None) -> Payment:
    """Reverse a payment; a confirmed amount flows back into the receivable's balance.

    When the payment settled a plan installment, the installment is reopened and
    a completed plan becomes active again.
    """
    with atomic(db):
        plan, installment = _lock_settled_installment(db, ctx, payment_id)
        payment, receivable = _lock_payment(db, ctx, payment_id)
        if payment.status not in (PaymentStatus.PENDING, PaymentStatus.CONFIRMED):
            raise InvalidStateError("Only pending or confirmed payments can be cancelled", current_status=payment.status)
        previous_status = payment.status
        payment.status = PaymentStatus.CANCELLED.value
        payment.cancelled_by = ctx.actor_id
        payment.cancelled_at = utc_now()
        payment.cancellation_reason = reason
        receivables.refresh_status(db, receivable)
        if installment is not None and installment.payment_id == payment.id:
            reopened = InstallmentStatus.CANCELLED if plan.status == PlanStatus.CANCELLED else InstallmentStatus.PENDING
            installment.status = reopened.value
            installment.payment_id = None
            installment.paid_at = None
            if plan.status == PlanStatus.COMPLETED:
                plan.status = PlanStatus.ACTIVE.value
    db.refresh(payment)
    logger.info(
        "Payment cancelled",
        extra={
            "payment_id": payment.id,
            "previous_status": previous_status,
            "reason": reason,
            "installment_id": installment.id if installment is not None else None,
        },
    )
    return payment


def attach_voucher(
    db: Session,
    ctx: TenantContext,
    payment_id: int,
    *,
    stream: BinaryIO,
    filename: str,
    storage: VoucherStorage,
) -> Payment:
    """Hand the voucher bytes to file storage and keep only the returned reference."""
    payment = get_payment(db, ctx, payment_id)
    if payment.status in (PaymentStatus.REJECTED, PaymentStatus.CANCELLED):
        raise InvalidStateError("Cannot attach a voucher to a closed payment", current_status=payment.status)
    reference = storage.save(stream, filename)
    with atomic(db):
        payment.voucher_reference = reference
    db.refresh(payment)
    logger.info("Payment voucher attached", extra={"payment_id": payment.id})
    return payment


def list_payments(
    db: Session,
    ctx: TenantContext,
    *,
    status: str | None = None,
    method: str | None = None,
    receivable_id: int | None = None,
    student_id: int | None = None,
    date_from: date | None = None,
    date_to: date | None = None,
    min_amount=None,
    max_amount=None,
    search: str | None = None,
    sort_by: str = "payment_date",
    sort_order: str = "desc",
    skip: int = 0,
    limit: int = 50,
) -> dict:
    school_id = require_tenant(ctx)
    query = db.query(Payment).filter(Payment.school_id == school_id)
    if status:
        query = query.filter(Payment.status == status)
    if method:
        query = query.filter(Payment.method == method)
    if receivable_id is not None:
        query = query.filter(Payment.account_receivable_id == receivable_id)
    if student_id is not None:
        query = query.join(AccountReceivable).filter(AccountReceivable.student_id == student_id)
    if date_from is not None:
        query = query.filter(Payment.payment_date >= date_from)
    if date_to is not None:
        query = query.filter(Payment.payment_date <= date_to)
    if min_amount is not None:
        query = query.filter(Payment.amount >= to_positive_money(min_amount, "min_amount"))
    if max_amount is not None:
        query = query.filter(Payment.amount <= to_positive_money(max_amount, "max_amount"))
    if search:
        query = query.filter(Payment.reference_number.ilike(f"%{search}%"))
    return paginate(
        query,
        sort_fields={
            "payment_date": Payment.payment_date,
            "amount": Payment.amount,
            "created_at": Payment.created_at,
            "status": Payment.status,
        },
        sort_by=sort_by,
        sort_order=sort_order,
        tiebreaker=Payment.id,
        skip=skip,
        limit=limit,
    )
