from typing import Dict

from pydantic import BaseModel, ConfigDict


class AgingBucket(BaseModel):
    count: int
    amount: str


class StudentAging(BaseModel):
    student_id: int
    student_name: str
    buckets: Dict[str, AgingBucket]


class AgingReport(BaseModel):
    as_of: str
    currency: str | None = "COP"
    total_outstanding: str
    buckets: Dict[str, AgingBucket]
    students: list[StudentAging]

    model_config = ConfigDict(from_attributes=True)


class MethodBreakdown(BaseModel):
    method: str
    count: int
    total: str
    average: str
    percentage: str


class PaymentMethodReport(BaseModel):
    date_from: str | None = None
    date_to: str | None = None
    total: str
    count: int
    methods: list[MethodBreakdown]
