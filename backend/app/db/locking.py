"""Row locks for read-modify-write on a single aggregate."""

from typing import TypeVar

from sqlalchemy import select, update
from sqlalchemy.orm import Session

T = TypeVar("T")


def lock_row(db: Session, model: type[T], school_id: int, row_id: int) -> T | None:
    """Take an exclusive lock on one tenant-scoped row and return it freshly loaded.

    The version bump is a write, so it acquires the row lock on PostgreSQL and
    the database write lock on SQLite; a concurrent writer blocks here until the
    holder commits, then re-reads committed state. Returns None when the row does
    not exist for this tenant.
    """
    result = db.execute(
        update(model)
        .where(model.id == row_id, model.school_id == school_id)
        .values(version=model.version + 1)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        return None
    return db.execute(
        select(model)
        .where(model.id == row_id, model.school_id == school_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one()
