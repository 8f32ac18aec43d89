"""Aging and collection reporting routes."""

from datetime import date

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from backend.app.api.responses import ok
from backend.app.core.context import TenantContext
from backend.app.core.security import get_tenant_context
from backend.app.db.session import get_db
from backend.app.schemas.common import Envelope
from backend.app.schemas.reporting import AgingReport, PaymentMethodReport
from backend.app.services.aging_reporting import get_aging_report
from backend.app.services.collection_reporting import get_dashboard, get_payment_method_breakdown, get_trends

router = APIRouter(prefix="/collections", tags=["collections"])


@router.get("/aging", response_model=Envelope[AgingReport])
def aging_report(
    as_of: date | None = None,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
):
    return ok(get_aging_report(db, ctx, as_of=as_of))


@router.get("/dashboard", response_model=Envelope[dict])
def collection_dashboard(db: Session = Depends(get_db), ctx: TenantContext = Depends(get_tenant_context)):
    return ok(get_dashboard(db, ctx))


@router.get("/trends", response_model=Envelope[dict])
def collection_trends(
    months: int = 6,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
):
    return ok(get_trends(db, ctx, months=months))


@router.get("/payment-methods", response_model=Envelope[PaymentMethodReport])
def payment_method_breakdown(
    date_from: date | None = None,
    date_to: date | None = None,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
):
    return ok(get_payment_method_breakdown(db, ctx, date_from=date_from, date_to=date_to))
