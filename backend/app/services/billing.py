"""Money arithmetic shared by receivables, payment plans and invoices."""

from decimal import Decimal, InvalidOperation, ROUND_DOWN, ROUND_HALF_UP
from typing import Iterable, List

from backend.app.core.exceptions import ValidationError

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def to_money(value, field: str = "amount") -> Decimal:
    """Coerce user input to a two-decimal Decimal; reject anything non-numeric."""
    if value is None:
        raise ValidationError(f"{field} is required", field=field)
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise ValidationError(f"{field} must be a number", field=field) from exc
    if not amount.is_finite():
        raise ValidationError(f"{field} must be a number", field=field)
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def to_positive_money(value, field: str = "amount") -> Decimal:
    amount = to_money(value, field)
    if amount <= ZERO:
        raise ValidationError(f"{field} must be greater than zero", field=field, value=amount)
    return amount


def format_money(value: Decimal | None) -> str:
    return str(Decimal(value or 0).quantize(CENT, rounding=ROUND_HALF_UP))


def calculate_line_total(quantity: Decimal | float | int, unit_price: Decimal | float) -> Decimal:
    return (Decimal(str(quantity)) * Decimal(str(unit_price))).quantize(CENT, rounding=ROUND_HALF_UP)


def calculate_invoice_totals(line_totals: Iterable[Decimal], discount: Decimal, tax: Decimal) -> tuple[Decimal, Decimal]:
    """Return (subtotal, total) where total = subtotal - discount + tax."""
    subtotal = sum((Decimal(t) for t in line_totals), ZERO).quantize(CENT)
    total = (subtotal - discount + tax).quantize(CENT)
    return subtotal, total


def split_amount(total: Decimal, parts: int) -> List[Decimal]:
    """Split ``total`` into ``parts`` amounts summing exactly to it.

    Every part gets the floor of the even share to the cent; the rounding
    remainder goes to the last part (100.00 / 3 -> 33.33, 33.33, 33.34).
    """
    if parts < 1:
        raise ValidationError("parts must be at least 1", parts=parts)
    total = Decimal(total).quantize(CENT)
    base = (total / parts).quantize(CENT, rounding=ROUND_DOWN)
    amounts = [base] * parts
    amounts[-1] = total - base * (parts - 1)
    return amounts
