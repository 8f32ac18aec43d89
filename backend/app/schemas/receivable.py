"""Account receivable schemas."""

from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict


class ReceivableBase(BaseModel):
    amount: Decimal
    due_date: date
    description: Optional[str] = None


class ReceivableCreate(ReceivableBase):
    student_id: int
    concept_id: int


class ReceivableUpdate(BaseModel):
    amount: Optional[Decimal] = None
    due_date: Optional[date] = None
    description: Optional[str] = None


class ReceivableRead(ReceivableBase):
    model_config = ConfigDict(from_attributes=True)

    id: int
    school_id: int
    student_id: int
    concept_id: int
    status: str
    paid_amount: Decimal
    remaining_amount: Decimal
    is_overdue: bool
    days_overdue: int

    created_at: datetime
    updated_at: datetime
