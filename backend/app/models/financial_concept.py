"""Fee concept (tuition, enrollment, transport...) billed to students."""

from sqlalchemy import Boolean, Column, DateTime, Integer, Numeric, String, UniqueConstraint

from backend.app.db.base_class import Base
from backend.app.core.time import utc_now


class FinancialConcept(Base):
    __tablename__ = "financial_concepts"
    __table_args__ = (UniqueConstraint("school_id", "code", name="uq_financial_concepts_school_code"),)

    id = Column(Integer, primary_key=True, index=True)
    school_id = Column(Integer, nullable=False, index=True)
    code = Column(String(50), nullable=False)
    name = Column(String(255), nullable=False)
    description = Column(String(500), nullable=True)
    default_amount = Column(Numeric(12, 2), nullable=False, default=0)
    is_recurring = Column(Boolean, nullable=False, default=False)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now)
