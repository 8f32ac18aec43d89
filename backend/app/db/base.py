from backend.app.db.base_class import Base

# Import models to register metadata for Base.metadata.create_all in tests
from backend.app.models.student import Student  # noqa: F401
from backend.app.models.financial_concept import FinancialConcept  # noqa: F401
from backend.app.models.account_receivable import AccountReceivable  # noqa: F401
from backend.app.models.payment import Payment  # noqa: F401
from backend.app.models.payment_plan import PaymentPlan  # noqa: F401
from backend.app.models.payment_plan_installment import PaymentPlanInstallment  # noqa: F401
from backend.app.models.invoice import Invoice  # noqa: F401
from backend.app.models.invoice_item import InvoiceItem  # noqa: F401
from backend.app.models.invoice_sequence import InvoiceSequence  # noqa: F401
