"""Helpers wrapping service results in the success envelope."""

from typing import Any

from pydantic import BaseModel


def ok(data: Any) -> dict:
    return {"success": True, "data": data}


def page_of(page: dict, schema: type[BaseModel]) -> dict:
    return ok(
        {
            "items": [schema.model_validate(item) for item in page["items"]],
            "total": page["total"],
            "skip": page["skip"],
            "limit": page["limit"],
        }
    )
