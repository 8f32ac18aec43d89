"""Time utilities for timezone-aware UTC datetimes."""

from datetime import UTC, date, datetime


def utc_now() -> datetime:
    """Return a timezone-aware UTC datetime for defaults and onupdate hooks."""
    return datetime.now(UTC)


def utc_today() -> date:
    """Return the current UTC calendar date; the ledger's notion of "today"."""
    return utc_now().date()
