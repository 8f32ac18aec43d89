"""One scheduled installment of a payment plan."""

import enum

from sqlalchemy import Column, Date, DateTime, ForeignKey, Integer, Numeric, String, UniqueConstraint
from sqlalchemy.orm import relationship

from backend.app.db.base_class import Base
from backend.app.core.time import utc_now


class InstallmentStatus(enum.StrEnum):
    PENDING = "pending"
    PAID = "paid"
    CANCELLED = "cancelled"


class PaymentPlanInstallment(Base):
    __tablename__ = "payment_plan_installments"
    __table_args__ = (
        UniqueConstraint("payment_plan_id", "installment_number", name="uq_installments_plan_number"),
    )

    id = Column(Integer, primary_key=True, index=True)
    payment_plan_id = Column(Integer, ForeignKey("payment_plans.id"), nullable=False, index=True)
    installment_number = Column(Integer, nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)
    due_date = Column(Date, nullable=False, index=True)
    status = Column(String(20), nullable=False, default=InstallmentStatus.PENDING.value)
    payment_id = Column(Integer, ForeignKey("payments.id"), nullable=True, unique=True)
    paid_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now)

    payment_plan = relationship("PaymentPlan", back_populates="installments")
    payment = relationship("Payment")
