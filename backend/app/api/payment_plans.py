"""Payment plan routes."""

from typing import List

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from backend.app.api.responses import ok
from backend.app.core.context import TenantContext
from backend.app.core.security import get_tenant_context
from backend.app.db.session import get_db
from backend.app.dependencies.collaborators import get_notifier
from backend.app.schemas.common import Envelope
from backend.app.schemas.payment_plan import InstallmentPayment, InstallmentRead, PlanCreate, PlanRead, PlanUpdate
from backend.app.services import payment_plans
from backend.app.services.collaborators import NotificationDispatcher

router = APIRouter(prefix="/payment-plans", tags=["payment-plans"])


@router.get("/", response_model=Envelope[List[PlanRead]])
def list_plans(
    status: str | None = None,
    student_id: int | None = None,
    frequency: str | None = None,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
):
    plans = payment_plans.list_plans(db, ctx, status=status, student_id=student_id, frequency=frequency)
    return ok([PlanRead.model_validate(plan) for plan in plans])


@router.post("/", response_model=Envelope[PlanRead], status_code=status.HTTP_201_CREATED)
def create_plan(payload: PlanCreate, db: Session = Depends(get_db), ctx: TenantContext = Depends(get_tenant_context)):
    plan = payment_plans.create_plan(db, ctx, **payload.model_dump())
    return ok(PlanRead.model_validate(plan))


@router.get("/due-soon", response_model=Envelope[List[dict]])
def plans_due_soon(
    days: int | None = None,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
):
    return ok(payment_plans.plans_due_soon(db, ctx, days=days))


@router.get("/{plan_id}", response_model=Envelope[PlanRead])
def get_plan(plan_id: int, db: Session = Depends(get_db), ctx: TenantContext = Depends(get_tenant_context)):
    return ok(PlanRead.model_validate(payment_plans.get_plan(db, ctx, plan_id)))


@router.patch("/{plan_id}", response_model=Envelope[PlanRead])
def update_plan(
    plan_id: int,
    payload: PlanUpdate,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
):
    plan = payment_plans.update_plan(db, ctx, plan_id, **payload.model_dump(exclude_unset=True))
    return ok(PlanRead.model_validate(plan))


@router.post("/{plan_id}/suspend", response_model=Envelope[PlanRead])
def suspend_plan(plan_id: int, db: Session = Depends(get_db), ctx: TenantContext = Depends(get_tenant_context)):
    return ok(PlanRead.model_validate(payment_plans.suspend_plan(db, ctx, plan_id)))


@router.post("/{plan_id}/reactivate", response_model=Envelope[PlanRead])
def reactivate_plan(plan_id: int, db: Session = Depends(get_db), ctx: TenantContext = Depends(get_tenant_context)):
    return ok(PlanRead.model_validate(payment_plans.reactivate_plan(db, ctx, plan_id)))


@router.post("/{plan_id}/cancel", response_model=Envelope[PlanRead])
def cancel_plan(plan_id: int, db: Session = Depends(get_db), ctx: TenantContext = Depends(get_tenant_context)):
    return ok(PlanRead.model_validate(payment_plans.cancel_plan(db, ctx, plan_id)))


@router.get("/{plan_id}/installments", response_model=Envelope[List[InstallmentRead]])
def list_installments(
    plan_id: int,
    status: str | None = None,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
):
    installments = payment_plans.list_installments(db, ctx, plan_id, status=status)
    return ok([InstallmentRead.model_validate(i) for i in installments])


@router.post("/{plan_id}/installments/{installment_id}/pay", response_model=Envelope[InstallmentRead])
def pay_installment(
    plan_id: int,
    installment_id: int,
    payload: InstallmentPayment,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
    notifier: NotificationDispatcher = Depends(get_notifier),
):
    installment = payment_plans.pay_installment(
        db, ctx, plan_id, installment_id, notifier=notifier, **payload.model_dump()
    )
    return ok(InstallmentRead.model_validate(installment))
