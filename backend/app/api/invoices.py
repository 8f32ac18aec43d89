"""Invoice routes: drafting, generation and status transitions."""

from datetime import date
from decimal import Decimal
from typing import List

from fastapi import APIRouter, Depends, Response, status
from sqlalchemy.orm import Session

from backend.app.api.responses import ok, page_of
from backend.app.core.context import TenantContext
from backend.app.core.security import get_tenant_context
from backend.app.db.session import get_db
from backend.app.dependencies.collaborators import get_fee_catalog, get_student_directory
from backend.app.schemas.common import Envelope, Page
from backend.app.schemas.invoice import (
    InvoiceCancel,
    InvoiceCreate,
    InvoiceGenerate,
    InvoicePaid,
    InvoiceRead,
    InvoiceUpdate,
    MonthlyInvoiceRun,
)
from backend.app.services import invoices
from backend.app.services.collaborators import FeeCatalog, StudentDirectory

router = APIRouter(prefix="/invoices", tags=["invoices"])


@router.get("/", response_model=Envelope[Page[InvoiceRead]])
def list_invoices(
    status: str | None = None,
    student_id: int | None = None,
    billing_period: str | None = None,
    date_from: date | None = None,
    date_to: date | None = None,
    min_amount: Decimal | None = None,
    max_amount: Decimal | None = None,
    search: str | None = None,
    sort_by: str = "created_at",
    sort_order: str = "desc",
    skip: int = 0,
    limit: int = 50,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
):
    page = invoices.list_invoices(
        db,
        ctx,
        status=status,
        student_id=student_id,
        billing_period=billing_period,
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
    return page_of(page, InvoiceRead)


@router.post("/", response_model=Envelope[InvoiceRead], status_code=status.HTTP_201_CREATED)
def create_invoice(payload: InvoiceCreate, db: Session = Depends(get_db), ctx: TenantContext = Depends(get_tenant_context)):
    data = payload.model_dump()
    invoice = invoices.create_invoice(db, ctx, **data)
    return ok(InvoiceRead.model_validate(invoice))


@router.get("/statistics", response_model=Envelope[dict])
def invoice_statistics(
    date_from: date | None = None,
    date_to: date | None = None,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
):
    return ok(invoices.invoice_statistics(db, ctx, date_from=date_from, date_to=date_to))


@router.get("/attention", response_model=Envelope[dict[str, List[InvoiceRead]]])
def invoices_needing_attention(
    days: int | None = None,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
):
    groups = invoices.invoices_needing_attention(db, ctx, days=days)
    return ok({key: [InvoiceRead.model_validate(inv) for inv in rows] for key, rows in groups.items()})


@router.post("/generate-monthly", response_model=Envelope[dict])
def generate_monthly_invoices(
    payload: MonthlyInvoiceRun,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
    catalog: FeeCatalog = Depends(get_fee_catalog),
    directory: StudentDirectory = Depends(get_student_directory),
):
    return ok(invoices.generate_monthly_invoices(db, ctx, payload.period, catalog=catalog, directory=directory))


@router.post("/overdue-sweep", response_model=Envelope[dict])
def sweep_overdue_invoices(db: Session = Depends(get_db), ctx: TenantContext = Depends(get_tenant_context)):
    return ok({"updated": invoices.update_overdue_invoices(db, ctx)})


@router.post(
    "/students/{student_id}/generate", response_model=Envelope[InvoiceRead], status_code=status.HTTP_201_CREATED
)
def generate_student_invoice(
    student_id: int,
    payload: InvoiceGenerate,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
    catalog: FeeCatalog = Depends(get_fee_catalog),
):
    invoice = invoices.generate_student_invoice(
        db, ctx, student_id, payload.period, catalog=catalog, discount=payload.discount, tax=payload.tax
    )
    return ok(InvoiceRead.model_validate(invoice))


@router.get("/{invoice_id}", response_model=Envelope[InvoiceRead])
def get_invoice(invoice_id: int, db: Session = Depends(get_db), ctx: TenantContext = Depends(get_tenant_context)):
    return ok(InvoiceRead.model_validate(invoices.get_invoice(db, ctx, invoice_id)))


@router.get("/{invoice_id}/next-states", response_model=Envelope[List[str]])
def invoice_next_states(invoice_id: int, db: Session = Depends(get_db), ctx: TenantContext = Depends(get_tenant_context)):
    return ok(invoices.valid_next_states(invoices.get_invoice(db, ctx, invoice_id)))


@router.patch("/{invoice_id}", response_model=Envelope[InvoiceRead])
def update_invoice(
    invoice_id: int,
    payload: InvoiceUpdate,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
):
    invoice = invoices.update_invoice(db, ctx, invoice_id, **payload.model_dump(exclude_unset=True))
    return ok(InvoiceRead.model_validate(invoice))


@router.post("/{invoice_id}/issue", response_model=Envelope[InvoiceRead])
def issue_invoice(invoice_id: int, db: Session = Depends(get_db), ctx: TenantContext = Depends(get_tenant_context)):
    return ok(InvoiceRead.model_validate(invoices.issue_invoice(db, ctx, invoice_id)))


@router.post("/{invoice_id}/pay", response_model=Envelope[InvoiceRead])
def mark_invoice_paid(
    invoice_id: int,
    payload: InvoicePaid,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
):
    invoice = invoices.mark_invoice_paid(db, ctx, invoice_id, reference=payload.reference)
    return ok(InvoiceRead.model_validate(invoice))


@router.post("/{invoice_id}/cancel", response_model=Envelope[InvoiceRead])
def cancel_invoice(
    invoice_id: int,
    payload: InvoiceCancel,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
):
    return ok(InvoiceRead.model_validate(invoices.cancel_invoice(db, ctx, invoice_id, reason=payload.reason)))


@router.delete("/{invoice_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_invoice(invoice_id: int, db: Session = Depends(get_db), ctx: TenantContext = Depends(get_tenant_context)):
    invoices.delete_invoice(db, ctx, invoice_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
