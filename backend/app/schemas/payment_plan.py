"""Payment plan and installment schemas."""

from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict


class PlanCreate(BaseModel):
    student_id: int
    total_amount: Decimal
    installments_count: int
    frequency: str
    start_date: date
    description: Optional[str] = None
    receivable_id: Optional[int] = None


class PlanUpdate(BaseModel):
    total_amount: Optional[Decimal] = None
    installments_count: Optional[int] = None
    frequency: Optional[str] = None
    start_date: Optional[date] = None
    description: Optional[str] = None


class InstallmentPayment(BaseModel):
    method: str
    payment_date: Optional[date] = None
    reference_number: Optional[str] = None
    receivable_id: Optional[int] = None


class InstallmentRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    payment_plan_id: int
    installment_number: int
    amount: Decimal
    due_date: date
    status: str
    payment_id: Optional[int] = None
    paid_at: Optional[datetime] = None


class PlanRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    school_id: int
    student_id: int
    account_receivable_id: Optional[int] = None
    total_amount: Decimal
    installments_count: int
    frequency: str
    start_date: date
    description: Optional[str] = None
    status: str
    paid_amount: Decimal
    remaining_amount: Decimal
    completion_percentage: Decimal
    installments: List[InstallmentRead]

    created_at: datetime
    updated_at: datetime
