"""Payment registration and settlement routes."""

from datetime import date
from decimal import Decimal

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from backend.app.api.responses import ok, page_of
from backend.app.core.context import TenantContext
from backend.app.core.security import get_tenant_context
from backend.app.db.session import get_db
from backend.app.dependencies.collaborators import get_notifier
from backend.app.schemas.common import Envelope, Page
from backend.app.schemas.payment import PaymentCreate, PaymentRead, PaymentReason, PaymentUpdate
from backend.app.services import payments
from backend.app.services.collaborators import NotificationDispatcher

router = APIRouter(prefix="/payments", tags=["payments"])


@router.get("/", response_model=Envelope[Page[PaymentRead]])
def list_payments(
    status: str | None = None,
    method: str | None = None,
    receivable_id: int | None = None,
    student_id: int | None = None,
    date_from: date | None = None,
    date_to: date | None = None,
    min_amount: Decimal | None = None,
    max_amount: Decimal | None = None,
    search: str | None = None,
    sort_by: str = "payment_date",
    sort_order: str = "desc",
    skip: int = 0,
    limit: int = 50,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
):
    page = payments.list_payments(
        db,
        ctx,
        status=status,
        method=method,
        receivable_id=receivable_id,
        student_id=student_id,
        date_from=date_from,
        date_to=date_to,
        min_amount=min_amount,
        max_amount=max_amount,
        search=search,
        sort_by=sort_by,
        sort_order=sort_order,
        skip=skip,
        limit=limit,
    )
    return page_of(page, PaymentRead)


@router.post("/", response_model=Envelope[PaymentRead], status_code=status.HTTP_201_CREATED)
def register_payment(
    payload: PaymentCreate,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
):
    payment = payments.register_payment(db, ctx, **payload.model_dump())
    return ok(PaymentRead.model_validate(payment))


@router.get("/{payment_id}", response_model=Envelope[PaymentRead])
def get_payment(payment_id: int, db: Session = Depends(get_db), ctx: TenantContext = Depends(get_tenant_context)):
    return ok(PaymentRead.model_validate(payments.get_payment(db, ctx, payment_id)))


@router.patch("/{payment_id}", response_model=Envelope[PaymentRead])
def update_payment(
    payment_id: int,
    payload: PaymentUpdate,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
):
    payment = payments.update_payment(db, ctx, payment_id, **payload.model_dump(exclude_unset=True))
    return ok(PaymentRead.model_validate(payment))


@router.post("/{payment_id}/confirm", response_model=Envelope[PaymentRead])
def confirm_payment(
    payment_id: int,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
    notifier: NotificationDispatcher = Depends(get_notifier),
):
    return ok(PaymentRead.model_validate(payments.confirm_payment(db, ctx, payment_id, notifier=notifier)))


@router.post("/{payment_id}/reject", response_model=Envelope[PaymentRead])
def reject_payment(
    payment_id: int,
    payload: PaymentReason,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
):
    return ok(PaymentRead.model_validate(payments.reject_payment(db, ctx, payment_id, reason=payload.reason)))


@router.post("/{payment_id}/cancel", response_model=Envelope[PaymentRead])
def cancel_payment(
    payment_id: int,
    payload: PaymentReason,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
):
    return ok(PaymentRead.model_validate(payments.cancel_payment(db, ctx, payment_id, reason=payload.reason)))
