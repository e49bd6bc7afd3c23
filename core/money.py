from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any

CENT = Decimal("0.01")


def to_decimal(value: Any) -> Decimal:
    """Parse a numeric value into a finite Decimal or raise ValueError."""
    if isinstance(value, bool):
        raise ValueError("Amount must be numeric")
    if isinstance(value, Decimal):
        result = value
    else:
        try:
            result = Decimal(str(value).strip())
        except (InvalidOperation, TypeError):
            raise ValueError("Amount must be numeric") from None
    if not result.is_finite():
        raise ValueError("Amount must be a finite number")
    return result


def money(value: Any) -> Decimal:
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)
