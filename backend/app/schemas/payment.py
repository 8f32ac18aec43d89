"""Payment schemas."""

from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict


class PaymentBase(BaseModel):
    amount: Decimal
    method: str
    payment_date: Optional[date] = None
    reference_number: Optional[str] = None


class PaymentCreate(PaymentBase):
    receivable_id: int
    voucher_reference: Optional[str] = None


class PaymentUpdate(BaseModel):
    amount: Optional[Decimal] = None
    method: Optional[str] = None
    payment_date: Optional[date] = None
    reference_number: Optional[str] = None


class PaymentReason(BaseModel):
    reason: Optional[str] = None


class PaymentRead(PaymentBase):
    id: int
    school_id: int
    account_receivable_id: int
    payment_date: date
    status: str
    voucher_reference: Optional[str] = None
    created_by: Optional[int] = None
    confirmed_by: Optional[int] = None
    confirmed_at: Optional[datetime] = None
    rejected_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)
