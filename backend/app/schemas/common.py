"""Response envelopes shared by every router."""

from typing import Generic, List, TypeVar

from pydantic import BaseModel

T = TypeVar("T")


class Envelope(BaseModel, Generic[T]):
    success: bool = True
    data: T


class Page(BaseModel, Generic[T]):
    items: List[T]
    total: int
    skip: int
    limit: int


class ErrorBody(BaseModel):
    code: str
    message: str
    details: dict | None = None


class ErrorEnvelope(BaseModel):
    success: bool = False
    error: ErrorBody
