import json
import logging
from decimal import Decimal

import pytest

from backend.app.core.exceptions import ConflictError
from backend.app.core.logging_config import StructuredFormatter, configure_logging, reset_logging


class ListHandler(logging.Handler):
    def __init__(self):
        super().__init__()
        self.lines = []

    def emit(self, record):
        self.lines.append(self.format(record))


@pytest.fixture
def handler():
    reset_logging()
    h = ListHandler()
    configure_logging(level="INFO", handler=h)
    yield h
    reset_logging()


def test_records_are_json_with_extra_fields(handler):
    logging.getLogger("backend.app.services.payments").info(
        "Payment registered", extra={"payment_id": 3, "amount": Decimal("80.00")}
    )
    payload = json.loads(handler.lines[-1])
    assert payload["message"] == "Payment registered"
    assert payload["level"] == "INFO"
    assert payload["logger"] == "backend.app.services.payments"
    assert payload["payment_id"] == 3
    assert payload["amount"] == "80.00"


def test_exception_info_includes_error_code(handler):
    try:
        raise ConflictError("Account receivable is already paid")
    except ConflictError:
        logging.getLogger("backend.app.jobs").exception("Job failed")
    payload = json.loads(handler.lines[-1])
    assert payload["exc_type"] == "ConflictError"
    assert payload["exc_code"] == "CONFLICT"
    assert "traceback" in payload


def test_configure_logging_is_idempotent(handler):
    configure_logging(level="DEBUG", handler=ListHandler())
    assert logging.getLogger("backend.app").handlers == [handler]


def test_formatter_can_be_used_standalone():
    record = logging.LogRecord("x", logging.WARNING, __file__, 1, "hello %s", ("world",), None)
    assert json.loads(StructuredFormatter().format(record))["message"] == "hello world"
