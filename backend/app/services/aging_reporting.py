"""Aging of open account receivables by days past due."""

from datetime import date
from decimal import Decimal
from typing import Dict

from sqlalchemy.orm import Session, selectinload

from backend.app.core.context import TenantContext, require_tenant
from backend.app.core.settings import get_settings
from backend.app.core.time import utc_today
from backend.app.models.account_receivable import OPEN_RECEIVABLE_STATUSES, AccountReceivable
from backend.app.models.student import Student

BUCKETS = ("current", "1-30", "31-60", "61-90", "90+")


def _init_buckets() -> Dict[str, dict]:
    return {key: {"count": 0, "amount": Decimal("0.00")} for key in BUCKETS}


def bucket_for_days(days_past_due: int) -> str:
    if days_past_due <= 0:
        return "current"
    if days_past_due <= 30:
        return "1-30"
    if days_past_due <= 60:
        return "31-60"
    if days_past_due <= 90:
        return "61-90"
    return "90+"


def _format(buckets: Dict[str, dict]) -> Dict[str, dict]:
    return {
        key: {"count": vals["count"], "amount": str(vals["amount"].quantize(Decimal("0.01")))}
        for key, vals in buckets.items()
    }


def get_aging_report(db: Session, ctx: TenantContext, *, as_of: date | None = None) -> dict:
    """Bucket pending and partial receivables by how late they are, summing what is still owed."""
    school_id = require_tenant(ctx)
    as_of_date = as_of or utc_today()

    receivables = (
        db.query(AccountReceivable)
        .options(selectinload(AccountReceivable.payments))
        .filter(
            AccountReceivable.school_id == school_id,
            AccountReceivable.status.in_([str(s) for s in OPEN_RECEIVABLE_STATUSES]),
        )
        .all()
    )

    totals = _init_buckets()
    per_student: Dict[int, Dict[str, dict]] = {}
    for receivable in receivables:
        remaining = receivable.remaining_amount
        bucket = bucket_for_days((as_of_date - receivable.due_date).days)
        totals[bucket]["count"] += 1
        totals[bucket]["amount"] += remaining
        student_buckets = per_student.setdefault(receivable.student_id, _init_buckets())
        student_buckets[bucket]["count"] += 1
        student_buckets[bucket]["amount"] += remaining

    students_rows = []
    if per_student:
        student_map = {
            stu.id: stu
            for stu in db.query(Student).filter(Student.school_id == school_id, Student.id.in_(per_student.keys())).all()
        }
        for student_id in sorted(per_student):
            student = student_map.get(student_id)
            students_rows.append(
                {
                    "student_id": student_id,
                    "student_name": student.full_name if student else "Unknown",
                    "buckets": _format(per_student[student_id]),
                }
            )

    total_outstanding = sum((vals["amount"] for vals in totals.values()), Decimal("0.00"))
    return {
        "as_of": as_of_date.isoformat(),
        "currency": get_settings().currency,
        "total_outstanding": str(total_outstanding.quantize(Decimal("0.01"))),
        "buckets": _format(totals),
        "students": students_rows,
    }
