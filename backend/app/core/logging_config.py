"""Structured JSON logging for the receivables engine."""

import json
import logging
import sys
import threading
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

_LOGGER_PREFIX = "backend.app"

_STDLIB_KEYS: frozenset[str] = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", (), None)).keys()
) | {"message", "taskName"}


class _JSONEncoder(json.JSONEncoder):
    def default(self, obj: Any) -> Any:
        if isinstance(obj, Decimal):
            return str(obj)
        if isinstance(obj, datetime):
            return obj.isoformat()
        return str(obj)


class StructuredFormatter(logging.Formatter):
    """Formats each log record as a single JSON line, merging ``extra`` fields."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key, val in vars(record).items():
            if key not in _STDLIB_KEYS and key not in payload:
                payload[key] = val

        if record.exc_info and record.exc_info[1] is not None:
            exc = record.exc_info[1]
            payload["exc_type"] = type(exc).__name__
            payload["exc_message"] = str(exc)
            if hasattr(exc, "code"):
                payload["exc_code"] = exc.code
            payload["traceback"] = self.formatException(record.exc_info)

        return json.dumps(payload, cls=_JSONEncoder)


_configured = False
_lock = threading.Lock()


def configure_logging(*, level: int | str | None = None, handler: logging.Handler | None = None) -> None:
    """Attach the JSON handler to the application logger hierarchy (idempotent)."""
    global _configured
    with _lock:
        if _configured:
            return
        _configured = True

    if level is None:
        from backend.app.core.settings import get_settings

        level = get_settings().log_level

    app_logger = logging.getLogger(_LOGGER_PREFIX)
    app_logger.setLevel(level)

    h = handler or logging.StreamHandler(sys.stderr)
    h.setFormatter(StructuredFormatter())
    app_logger.addHandler(h)


def reset_logging() -> None:
    """Remove handlers installed by configure_logging. Tests only."""
    global _configured
    with _lock:
        _configured = False
    app_logger = logging.getLogger(_LOGGER_PREFIX)
    app_logger.handlers.clear()
    app_logger.setLevel(logging.NOTSET)
