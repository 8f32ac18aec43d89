"""Typed exceptions raised by the receivables engine.

Every error carries a stable machine-readable ``code`` alongside its human
message so the API layer can map it to an envelope without parsing text:

    LedgerError (base)
    +-- ValidationError      malformed or out-of-range input
    +-- InvalidStateError    operation not legal in the current lifecycle state
    +-- ConflictError        operation would violate an invariant
    +-- NotFoundError        id not found within the caller's tenant
"""

from typing import Any


class LedgerError(Exception):
    """Base class for all receivables engine errors."""

    code: str = "LEDGER_ERROR"

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        payload = {"code": self.code, "message": self.message}
        if self.details:
            payload["details"] = {k: str(v) for k, v in self.details.items()}
        return payload


class ValidationError(LedgerError):
    code = "VALIDATION_ERROR"


class InvalidStateError(LedgerError):
    code = "INVALID_STATE"

    def __init__(self, message: str, *, current_status: str | None = None, **details: Any):
        if current_status is not None:
            details["current_status"] = current_status
        super().__init__(message, **details)
        self.current_status = current_status


class ConflictError(LedgerError):
    code = "CONFLICT"


class NotFoundError(LedgerError):
    code = "NOT_FOUND"

    def __init__(self, entity: str, entity_id: Any):
        super().__init__(f"{entity} not found", entity=entity, id=entity_id)
        self.entity = entity
        self.entity_id = entity_id
