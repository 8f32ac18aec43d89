"""Dependencies wiring the default external collaborators into routes."""

from fastapi import Depends
from sqlalchemy.orm import Session

from backend.app.db.session import get_db
from backend.app.services.collaborators import (
    ConceptFeeCatalog,
    FeeCatalog,
    LoggingNotificationDispatcher,
    NotificationDispatcher,
    RosterStudentDirectory,
    StudentDirectory,
)

_dispatcher = LoggingNotificationDispatcher()


def get_notifier() -> NotificationDispatcher:
    return _dispatcher


def get_fee_catalog(db: Session = Depends(get_db)) -> FeeCatalog:
    return ConceptFeeCatalog(db)


def get_student_directory(db: Session = Depends(get_db)) -> StudentDirectory:
    return RosterStudentDirectory(db)
