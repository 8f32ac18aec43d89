"""Student roster entry, mirrored from the enrollment service for billing."""

from sqlalchemy import Boolean, Column, DateTime, Integer, String
from sqlalchemy.orm import relationship

from backend.app.db.base_class import Base
from backend.app.core.time import utc_now


class Student(Base):
    __tablename__ = "students"

    id = Column(Integer, primary_key=True, index=True)
    school_id = Column(Integer, nullable=False, index=True)
    full_name = Column(String, nullable=False)
    grade_level = Column(String(50), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, default=utc_now)
    updated_at = Column(DateTime, nullable=False, default=utc_now, onupdate=utc_now)

    receivables = relationship("AccountReceivable", back_populates="student")
    invoices = relationship("Invoice", back_populates="student")
    payment_plans = relationship("PaymentPlan", back_populates="student")
