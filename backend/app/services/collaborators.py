"""Narrow interfaces to services that live outside the ledger.

Each protocol has a default implementation backed by the ledger store (or by
logging, for notifications) so the engine runs standalone; deployments swap in
adapters for the real enrollment, catalog, storage and messaging services.
"""

import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any, BinaryIO, Dict, List, Protocol

from sqlalchemy.orm import Session

from backend.app.core.context import TenantContext
from backend.app.models.financial_concept import FinancialConcept
from backend.app.models.student import Student

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BillableItem:
    concept_id: int | None
    unit_price: Decimal
    quantity: Decimal = Decimal("1")
    description: str | None = None


@dataclass(frozen=True)
class Notification:
    channel: str
    recipient: str
    template_id: str
    variables: Dict[str, Any] = field(default_factory=dict)


class FeeCatalog(Protocol):
    def billable_items(self, ctx: TenantContext, student_id: int, period: date) -> List[BillableItem]: ...


class StudentDirectory(Protocol):
    def active_student_ids(self, ctx: TenantContext) -> List[int]: ...


class VoucherStorage(Protocol):
    def save(self, stream: BinaryIO, filename: str) -> str: ...


class NotificationDispatcher(Protocol):
    def dispatch(self, notification: Notification) -> None: ...


class ConceptFeeCatalog:
    """Bills every active recurring concept of the school at its default amount."""

    def __init__(self, db: Session):
        self.db = db

    def billable_items(self, ctx: TenantContext, student_id: int, period: date) -> List[BillableItem]:
        concepts = (
            self.db.query(FinancialConcept)
            .filter(
                FinancialConcept.school_id == ctx.school_id,
                FinancialConcept.is_active.is_(True),
                FinancialConcept.is_recurring.is_(True),
                FinancialConcept.default_amount > 0,
            )
            .order_by(FinancialConcept.id)
            .all()
        )
        return [
            BillableItem(
                concept_id=concept.id,
                unit_price=Decimal(concept.default_amount),
                description=concept.description or concept.name,
            )
            for concept in concepts
        ]


class RosterStudentDirectory:
    def __init__(self, db: Session):
        self.db = db

    def active_student_ids(self, ctx: TenantContext) -> List[int]:
        rows = (
            self.db.query(Student.id)
            .filter(Student.school_id == ctx.school_id, Student.is_active.is_(True))
            .order_by(Student.id)
            .all()
        )
        return [row.id for row in rows]


class LoggingNotificationDispatcher:
    def dispatch(self, notification: Notification) -> None:
        logger.info(
            "Notification queued",
            extra={
                "channel": notification.channel,
                "recipient": notification.recipient,
                "template_id": notification.template_id,
            },
        )


def notify_safely(dispatcher: NotificationDispatcher | None, notification: Notification) -> None:
    """Fire-and-forget: a failing dispatcher is logged and never reaches the caller."""
    if dispatcher is None:
        return
    try:
        dispatcher.dispatch(notification)
    except Exception:
        logger.exception(
            "Notification dispatch failed",
            extra={"template_id": notification.template_id, "recipient": notification.recipient},
        )
