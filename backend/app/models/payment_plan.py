"""Installment plan dividing a total amount owed by a student."""

import enum
from decimal import Decimal

from sqlalchemy import Column, Date, DateTime, ForeignKey, Integer, Numeric, String
from sqlalchemy.orm import relationship

from backend.app.db.base_class import Base
from backend.app.core.time import utc_now


class PlanStatus(enum.StrEnum):
    ACTIVE = "active"
    SUSPENDED = "suspended"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class PlanFrequency(enum.StrEnum):
    WEEKLY = "weekly"
    BIWEEKLY = "biweekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    SEMESTER = "semester"
    ANNUAL = "annual"


class PaymentPlan(Base):
    __tablename__ = "payment_plans"

    id = Column(Integer, primary_key=True, index=True)
    school_id = Column(Integer, nullable=False, index=True)
    student_id = Column(Integer, ForeignKey("students.id"), nullable=False, index=True)
    account_receivable_id = Column(Integer, ForeignKey("account_receivables.id"), nullable=True, index=True)
    total_amount = Column(Numeric(12, 2), nullable=False)
    installments_count = Column(Integer, nullable=False)
    frequency = Column(String(20), nullable=False)
    start_date = Column(Date, nullable=False)
    description = Column(String(500), nullable=True)
    status = Column(String(20), nullable=False, default=PlanStatus.ACTIVE.value, index=True)
    created_by = Column(Integer, nullable=True)
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now)

    student = relationship("Student", back_populates="payment_plans")
    account_receivable = relationship("AccountReceivable")
    installments = relationship(
        "PaymentPlanInstallment",
        back_populates="payment_plan",
        cascade="all, delete-orphan",
        order_by="PaymentPlanInstallment.installment_number",
    )

    @property
    def paid_amount(self) -> Decimal:
        return sum((Decimal(i.amount) for i in self.installments if i.status == "paid"), Decimal("0.00"))

    @property
    def remaining_amount(self) -> Decimal:
        return Decimal(self.total_amount) - self.paid_amount

    @property
    def completion_percentage(self) -> Decimal:
        total = Decimal(self.total_amount or 0)
        if total == 0:
            return Decimal("0.00")
        return (self.paid_amount / total * 100).quantize(Decimal("0.01"))

    @property
    def next_due_installment(self):
        pending = [i for i in self.installments if i.status == "pending"]
        return min(pending, key=lambda i: i.due_date) if pending else None
