"""Explicit tenant scope passed into every ledger call."""

from dataclasses import dataclass

from backend.app.core.exceptions import ValidationError


@dataclass(frozen=True)
class TenantContext:
    school_id: int | None
    actor_id: int | None = None


def require_tenant(ctx: TenantContext | None) -> int:
    """Return the tenant id or fail closed when the caller supplied none."""
    if ctx is None or ctx.school_id is None:
        raise ValidationError("School ID is required")
    return ctx.school_id
