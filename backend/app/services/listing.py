"""Sorting and pagination for tenant-scoped list queries."""

from typing import Any, Dict

from sqlalchemy.orm import Query

from backend.app.core.exceptions import ValidationError

MAX_PAGE_SIZE = 200


def paginate(
    query: Query,
    *,
    sort_fields: Dict[str, Any],
    sort_by: str,
    sort_order: str,
    tiebreaker,
    skip: int = 0,
    limit: int = 50,
) -> dict:
    if sort_by not in sort_fields:
        raise ValidationError("Invalid sort_by value", sort_by=sort_by)
    sort_order_normalized = (sort_order or "desc").lower()
    if sort_order_normalized not in {"asc", "desc"}:
        raise ValidationError("Invalid sort_order value", sort_order=sort_order)
    if skip < 0 or limit < 1 or limit > MAX_PAGE_SIZE:
        raise ValidationError("Invalid pagination parameters", skip=skip, limit=limit)

    total = query.order_by(None).count()

    sort_column = sort_fields[sort_by]
    if sort_order_normalized == "asc":
        order_by_clause = [sort_column.asc(), tiebreaker.asc()]
    else:
        order_by_clause = [sort_column.desc(), tiebreaker.desc()]

    items = query.order_by(*order_by_clause).offset(skip).limit(limit).all()
    return {"items": items, "total": total, "skip": skip, "limit": limit}
