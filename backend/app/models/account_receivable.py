"""Money owed by a student for a fee concept."""

import enum
from datetime import date
from decimal import Decimal

from sqlalchemy import Column, Date, DateTime, ForeignKey, Integer, Numeric, String, Text
from sqlalchemy.orm import relationship

from backend.app.db.base_class import Base
from backend.app.core.time import utc_now, utc_today


class ReceivableStatus(enum.StrEnum):
    PENDING = "pending"
    PARTIAL = "partial"
    PAID = "paid"


OPEN_RECEIVABLE_STATUSES = (ReceivableStatus.PENDING, ReceivableStatus.PARTIAL)


class AccountReceivable(Base):
    __tablename__ = "account_receivables"

    id = Column(Integer, primary_key=True, index=True)
    school_id = Column(Integer, nullable=False, index=True)
    student_id = Column(Integer, ForeignKey("students.id"), nullable=False, index=True)
    concept_id = Column(Integer, ForeignKey("financial_concepts.id"), nullable=False, index=True)
    amount = Column(Numeric(12, 2), nullable=False)
    due_date = Column(Date, nullable=False, index=True)
    description = Column(Text, nullable=True)
    status = Column(String(20), nullable=False, default=ReceivableStatus.PENDING.value, index=True)
    created_by = Column(Integer, nullable=True)
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now)

    student = relationship("Student", back_populates="receivables")
    concept = relationship("FinancialConcept")
    payments = relationship("Payment", back_populates="account_receivable", order_by="Payment.id")

    @property
    def paid_amount(self) -> Decimal:
        return sum(
            (Decimal(p.amount) for p in self.payments if p.status == "confirmed"),
            Decimal("0.00"),
        )

    @property
    def remaining_amount(self) -> Decimal:
        return Decimal(self.amount) - self.paid_amount

    def is_overdue_on(self, today: date) -> bool:
        return self.status in OPEN_RECEIVABLE_STATUSES and self.due_date < today

    @property
    def is_overdue(self) -> bool:
        return self.is_overdue_on(utc_today())

    @property
    def days_overdue(self) -> int:
        return max(0, (utc_today() - self.due_date).days)
