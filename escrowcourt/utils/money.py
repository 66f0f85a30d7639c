from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

from escrowcourt.errors import InvalidAmount

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def quantize(value) -> Decimal:
    return Decimal(str(value if value is not None else 0)).quantize(CENT, rounding=ROUND_HALF_UP)


def parse_amount(value, *, field: str = "amount", allow_zero: bool = False) -> Decimal:
    if value is None or isinstance(value, bool) or (isinstance(value, str) and not value.strip()):
        raise InvalidAmount(f"{field} is required", field=field)
    try:
        amount = quantize(value)
    except (InvalidOperation, ValueError, TypeError):
        raise InvalidAmount(f"{field} must be a number", field=field)
    if not amount.is_finite():
        raise InvalidAmount(f"{field} must be a number", field=field)
    if amount < ZERO or (amount == ZERO and not allow_zero):
        raise InvalidAmount(f"{field} must be greater than 0", field=field)
    return amount


def as_float(value) -> float:
    return float(quantize(value))
