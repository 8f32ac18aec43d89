"""Per-school, per-period counter backing invoice numbers."""

from sqlalchemy import Column, Integer, String, UniqueConstraint

from backend.app.db.base_class import Base


class InvoiceSequence(Base):
    __tablename__ = "invoice_sequences"
    __table_args__ = (UniqueConstraint("school_id", "period_key", name="uq_invoice_sequences_school_period"),)

    id = Column(Integer, primary_key=True)
    school_id = Column(Integer, nullable=False)
    period_key = Column(String(20), nullable=False)
    current_value = Column(Integer, nullable=False, default=0)
    version = Column(Integer, nullable=False, default=1)
