from decimal import Decimal

import pytest

from backend.app.core.exceptions import ValidationError
from backend.app.services.billing import (
    calculate_invoice_totals,
    calculate_line_total,
    format_money,
    split_amount,
    to_money,
    to_positive_money,
)


def test_to_money_quantizes_to_cents():
    assert to_money("10") == Decimal("10.00")
    assert to_money(12.345) == Decimal("12.35")
    assert to_money(Decimal("0.004")) == Decimal("0.00")


@pytest.mark.parametrize("value", [None, "abc", "NaN", "Infinity"])
def test_to_money_rejects_non_numbers(value):
    with pytest.raises(ValidationError):
        to_money(value)


def test_to_positive_money_rejects_zero_and_negative():
    assert to_positive_money("0.01") == Decimal("0.01")
    with pytest.raises(ValidationError):
        to_positive_money("0")
    with pytest.raises(ValidationError) as exc:
        to_positive_money("-3", "total_amount")
    assert exc.value.message == "total_amount must be greater than zero"


def test_line_and_invoice_totals():
    assert calculate_line_total(3, Decimal("33.333")) == Decimal("100.00")
    assert calculate_line_total(Decimal("1.5"), Decimal("80.00")) == Decimal("120.00")
    subtotal, total = calculate_invoice_totals([Decimal("80.00"), Decimal("40.00")], Decimal("20.00"), Decimal("5.50"))
    assert subtotal == Decimal("120.00")
    assert total == Decimal("105.50")


@pytest.mark.parametrize(
    "total,parts",
    [("100.00", 3), ("0.05", 4), ("1200.00", 4), ("999.99", 60), ("10.00", 7)],
)
def test_split_amount_always_sums_to_total(total, parts):
    amounts = split_amount(Decimal(total), parts)
    assert len(amounts) == parts
    assert sum(amounts) == Decimal(total)
    assert all(a == amounts[0] for a in amounts[:-1])
    assert amounts[-1] >= amounts[0]


def test_split_amount_rejects_zero_parts():
    with pytest.raises(ValidationError):
        split_amount(Decimal("10.00"), 0)


def test_format_money():
    assert format_money(None) == "0.00"
    assert format_money(Decimal("7.5")) == "7.50"
