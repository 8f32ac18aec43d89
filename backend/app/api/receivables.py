"""Account receivable routes."""

from datetime import date
from decimal import Decimal
from typing import List

from fastapi import APIRouter, Depends, Response, status
from sqlalchemy.orm import Session

from backend.app.api.responses import ok, page_of
from backend.app.core.context import TenantContext
from backend.app.core.security import get_tenant_context
from backend.app.db.session import get_db
from backend.app.schemas.common import Envelope, Page
from backend.app.schemas.receivable import ReceivableCreate, ReceivableRead, ReceivableUpdate
from backend.app.services import receivables

router = APIRouter(prefix="/receivables", tags=["receivables"])


@router.get("/", response_model=Envelope[Page[ReceivableRead]])
def list_receivables(
    status: str | None = None,
    student_id: int | None = None,
    concept_id: int | None = None,
    due_from: date | None = None,
    due_to: date | None = None,
    min_amount: Decimal | None = None,
    max_amount: Decimal | None = None,
    search: str | None = None,
    sort_by: str = "due_date",
    sort_order: str = "asc",
    skip: int = 0,
    limit: int = 50,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
):
    page = receivables.list_receivables(
        db,
        ctx,
        status=status,
        student_id=student_id,
        concept_id=concept_id,
        due_from=due_from,
        due_to=due_to,
        min_amount=min_amount,
        max_amount=max_amount,
        search=search,
        sort_by=sort_by,
        sort_order=sort_order,
        skip=skip,
        limit=limit,
    )
    return page_of(page, ReceivableRead)


@router.post("/", response_model=Envelope[ReceivableRead], status_code=status.HTTP_201_CREATED)
def create_receivable(
    payload: ReceivableCreate,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
):
    receivable = receivables.create_receivable(db, ctx, **payload.model_dump())
    return ok(ReceivableRead.model_validate(receivable))


@router.get("/summary", response_model=Envelope[dict])
def receivables_summary(
    student_id: int | None = None,
    concept_id: int | None = None,
    due_from: date | None = None,
    due_to: date | None = None,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
):
    return ok(
        receivables.summarize(db, ctx, student_id=student_id, concept_id=concept_id, due_from=due_from, due_to=due_to)
    )


@router.get("/due-soon", response_model=Envelope[List[ReceivableRead]])
def receivables_due_soon(
    days: int | None = None,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
):
    return ok([ReceivableRead.model_validate(r) for r in receivables.due_soon(db, ctx, days=days)])


@router.get("/overdue", response_model=Envelope[List[dict]])
def overdue_receivables(
    min_days: int = 0,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
):
    return ok(receivables.overdue_accounts(db, ctx, min_days=min_days))


@router.get("/{receivable_id}", response_model=Envelope[ReceivableRead])
def get_receivable(receivable_id: int, db: Session = Depends(get_db), ctx: TenantContext = Depends(get_tenant_context)):
    return ok(ReceivableRead.model_validate(receivables.get_receivable(db, ctx, receivable_id)))


@router.patch("/{receivable_id}", response_model=Envelope[ReceivableRead])
def update_receivable(
    receivable_id: int,
    payload: ReceivableUpdate,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
):
    receivable = receivables.update_receivable(db, ctx, receivable_id, **payload.model_dump(exclude_unset=True))
    return ok(ReceivableRead.model_validate(receivable))


@router.post("/{receivable_id}/recompute", response_model=Envelope[ReceivableRead])
def recompute_receivable(
    receivable_id: int,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
):
    return ok(ReceivableRead.model_validate(receivables.recompute_status(db, ctx, receivable_id)))


@router.delete("/{receivable_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_receivable(
    receivable_id: int,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
):
    receivables.delete_receivable(db, ctx, receivable_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
