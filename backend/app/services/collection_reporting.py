"""Collection dashboard, monthly trends and payment method mix."""

from datetime import date
from decimal import Decimal
from typing import Dict, List, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session, selectinload

from backend.app.core.context import TenantContext, require_tenant
from backend.app.core.exceptions import ValidationError
from backend.app.core.settings import get_settings
from backend.app.core.time import utc_today
from backend.app.models.account_receivable import OPEN_RECEIVABLE_STATUSES, AccountReceivable
from backend.app.models.payment import Payment, PaymentStatus
from backend.app.models.payment_plan import PaymentPlan, PlanStatus

MAX_TREND_MONTHS = 24


def _money(value: Decimal) -> str:
    return str(Decimal(value).quantize(Decimal("0.01")))


def _last_n_months(today: date, n: int = 12) -> List[Tuple[int, int]]:
    # returns list from oldest to newest
    year = today.year
    month = today.month
    months = []
    for _ in range(n):
        months.append((year, month))
        month -= 1
        if month == 0:
            month = 12
            year -= 1
    return list(reversed(months))


def _confirmed_payments(db: Session, school_id: int):
    return db.query(Payment).filter(Payment.school_id == school_id, Payment.status == PaymentStatus.CONFIRMED.value)


def get_dashboard(db: Session, ctx: TenantContext, *, today: date | None = None) -> dict:
    school_id = require_tenant(ctx)
    as_of_date = today or utc_today()

    receivables = (
        db.query(AccountReceivable)
        .options(selectinload(AccountReceivable.payments))
        .filter(AccountReceivable.school_id == school_id)
        .all()
    )
    total_amount = Decimal("0.00")
    pending_amount = Decimal("0.00")
    overdue_amount = Decimal("0.00")
    overdue_count = 0
    for receivable in receivables:
        total_amount += Decimal(receivable.amount)
        if receivable.status in OPEN_RECEIVABLE_STATUSES:
            remaining = receivable.remaining_amount
            pending_amount += remaining
            if receivable.due_date < as_of_date:
                overdue_count += 1
                overdue_amount += remaining

    payments = _confirmed_payments(db, school_id).all()
    collected = sum((Decimal(p.amount) for p in payments), Decimal("0.00"))

    (last_year, last_month), (this_year, this_month) = _last_n_months(as_of_date, 2)
    this_month_total = sum(
        (Decimal(p.amount) for p in payments if (p.payment_date.year, p.payment_date.month) == (this_year, this_month)),
        Decimal("0.00"),
    )
    last_month_total = sum(
        (Decimal(p.amount) for p in payments if (p.payment_date.year, p.payment_date.month) == (last_year, last_month)),
        Decimal("0.00"),
    )
    if last_month_total > 0:
        growth = str(((this_month_total - last_month_total) / last_month_total * 100).quantize(Decimal("0.01")))
    else:
        growth = None

    plan_counts = dict(
        db.query(PaymentPlan.status, func.count(PaymentPlan.id))
        .filter(PaymentPlan.school_id == school_id)
        .group_by(PaymentPlan.status)
        .all()
    )

    return {
        "as_of": as_of_date.isoformat(),
        "currency": get_settings().currency,
        "receivables": {
            "count": len(receivables),
            "total_amount": _money(total_amount),
            "pending_amount": _money(pending_amount),
            "overdue_amount": _money(overdue_amount),
            "overdue_count": overdue_count,
            "collected_amount": _money(collected),
        },
        "payments": {
            "this_month": _money(this_month_total),
            "last_month": _money(last_month_total),
            "growth_percentage": growth,
        },
        "payment_plans": {
            "active": plan_counts.get(PlanStatus.ACTIVE.value, 0),
            "completed": plan_counts.get(PlanStatus.COMPLETED.value, 0),
        },
    }


def get_trends(db: Session, ctx: TenantContext, *, months: int = 6, today: date | None = None) -> dict:
    """Confirmed collections and newly created receivables per month, oldest first."""
    school_id = require_tenant(ctx)
    if months < 1 or months > MAX_TREND_MONTHS:
        raise ValidationError(f"months must be between 1 and {MAX_TREND_MONTHS}", months=months)
    as_of_date = today or utc_today()

    month_keys = _last_n_months(as_of_date, months)
    month_map: Dict[Tuple[int, int], dict] = {
        key: {
            "collected": Decimal("0.00"),
            "payment_count": 0,
            "receivables_created": 0,
            "receivables_amount": Decimal("0.00"),
        }
        for key in month_keys
    }
    for p in _confirmed_payments(db, school_id).all():
        key = (p.payment_date.year, p.payment_date.month)
        if key in month_map:
            month_map[key]["collected"] += Decimal(p.amount)
            month_map[key]["payment_count"] += 1
    for r in db.query(AccountReceivable).filter(AccountReceivable.school_id == school_id).all():
        key = (r.created_at.year, r.created_at.month)
        if key in month_map:
            month_map[key]["receivables_created"] += 1
            month_map[key]["receivables_amount"] += Decimal(r.amount)

    return {
        "as_of": as_of_date.isoformat(),
        "months": [
            {
                "year": year,
                "month": month,
                "collected": _money(month_map[(year, month)]["collected"]),
                "payment_count": month_map[(year, month)]["payment_count"],
                "receivables_created": month_map[(year, month)]["receivables_created"],
                "receivables_amount": _money(month_map[(year, month)]["receivables_amount"]),
            }
            for year, month in month_keys
        ],
    }


def get_payment_method_breakdown(
    db: Session,
    ctx: TenantContext,
    *,
    date_from: date | None = None,
    date_to: date | None = None,
) -> dict:
    school_id = require_tenant(ctx)
    if date_from is not None and date_to is not None and date_from > date_to:
        raise ValidationError("date_from must not be after date_to", date_from=date_from, date_to=date_to)

    query = _confirmed_payments(db, school_id)
    if date_from is not None:
        query = query.filter(Payment.payment_date >= date_from)
    if date_to is not None:
        query = query.filter(Payment.payment_date <= date_to)

    methods_map: Dict[str, dict] = {}
    grand_total = Decimal("0.00")
    for p in query.all():
        entry = methods_map.setdefault(p.method, {"total": Decimal("0.00"), "count": 0})
        entry["total"] += Decimal(p.amount)
        entry["count"] += 1
        grand_total += Decimal(p.amount)

    methods = []
    for method, vals in sorted(methods_map.items(), key=lambda item: (-item[1]["total"], item[0])):
        methods.append(
            {
                "method": method,
                "count": vals["count"],
                "total": _money(vals["total"]),
                "average": _money(vals["total"] / vals["count"]),
                "percentage": str((vals["total"] / grand_total * 100).quantize(Decimal("0.01")))
                if grand_total > 0
                else "0.00",
            }
        )

    return {
        "date_from": date_from.isoformat() if date_from else None,
        "date_to": date_to.isoformat() if date_to else None,
        "total": _money(grand_total),
        "count": sum(vals["count"] for vals in methods_map.values()),
        "methods": methods,
    }
