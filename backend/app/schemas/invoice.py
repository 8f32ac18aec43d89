"""Invoice schemas."""

from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict


class InvoiceItemInput(BaseModel):
    concept_id: Optional[int] = None
    description: Optional[str] = None
    quantity: Decimal = Decimal("1")
    unit_price: Decimal


class InvoiceCreate(BaseModel):
    student_id: int
    items: List[InvoiceItemInput]
    due_date: Optional[date] = None
    discount: Decimal = Decimal("0")
    tax: Decimal = Decimal("0")
    notes: Optional[str] = None
    billing_period: Optional[str] = None


class InvoiceUpdate(BaseModel):
    items: Optional[List[InvoiceItemInput]] = None
    due_date: Optional[date] = None
    discount: Optional[Decimal] = None
    tax: Optional[Decimal] = None
    notes: Optional[str] = None


class InvoiceGenerate(BaseModel):
    period: str
    discount: Optional[Decimal] = None
    tax: Optional[Decimal] = None


class MonthlyInvoiceRun(BaseModel):
    period: str


class InvoicePaid(BaseModel):
    reference: Optional[str] = None


class InvoiceCancel(BaseModel):
    reason: Optional[str] = None


class InvoiceItemRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    concept_id: Optional[int] = None
    description: Optional[str] = None
    quantity: Decimal
    unit_price: Decimal
    total: Decimal


class InvoiceRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    school_id: int
    student_id: int
    invoice_number: str
    billing_period: Optional[str] = None

    status: str
    subtotal: Decimal
    discount: Decimal
    tax: Decimal
    total: Decimal
    issue_date: Optional[date] = None
    due_date: Optional[date] = None
    issued_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    payment_reference: Optional[str] = None
    notes: Optional[str] = None
    items: List[InvoiceItemRead]

    created_at: datetime
    updated_at: datetime
