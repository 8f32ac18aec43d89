"""Scheduled ledger jobs, run from cron as ``python -m backend.app.jobs``."""

import argparse
import json
import logging
import sys
from datetime import date

from backend.app.core.context import TenantContext
from backend.app.core.exceptions import LedgerError
from backend.app.core.logging_config import configure_logging
from backend.app.core.time import utc_today
from backend.app.db.session import SessionLocal
from backend.app.services.invoices import generate_monthly_invoices, normalize_period, update_overdue_invoices

logger = logging.getLogger(__name__)


def run_overdue_sweep(school_id: int, today: date | None = None) -> dict:
    db = SessionLocal()
    try:
        updated = update_overdue_invoices(db, TenantContext(school_id=school_id), today=today)
    finally:
        db.close()
    return {"school_id": school_id, "updated": updated}


def run_monthly_invoices(school_id: int, period: str | None = None, today: date | None = None) -> dict:
    db = SessionLocal()
    try:
        return generate_monthly_invoices(
            db, TenantContext(school_id=school_id), period or normalize_period(today or utc_today()), today=today
        )
    finally:
        db.close()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="receivables-jobs", description="Run scheduled receivables jobs.")
    sub = parser.add_subparsers(dest="command", required=True)

    sweep = sub.add_parser("overdue-sweep", help="Mark pending invoices past their due date as overdue.")
    sweep.add_argument("--school-id", type=int, required=True)
    sweep.add_argument("--today", type=date.fromisoformat, default=None)

    monthly = sub.add_parser("monthly-invoices", help="Generate invoices for every active student.")
    monthly.add_argument("--school-id", type=int, required=True)
    monthly.add_argument("--period", default=None, help="Billing period as YYYY-MM (defaults to this month).")
    monthly.add_argument("--today", type=date.fromisoformat, default=None)
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging()
    try:
        if args.command == "overdue-sweep":
            result = run_overdue_sweep(args.school_id, today=args.today)
        else:
            result = run_monthly_invoices(args.school_id, period=args.period, today=args.today)
    except LedgerError as exc:
        logger.error("Job failed", extra={"job": args.command, "error_code": exc.code})
        print(json.dumps({"success": False, "error": exc.to_dict()}))
        return 1
    print(json.dumps({"success": True, "data": result}))
    return 0


if __name__ == "__main__":
    sys.exit(main())
