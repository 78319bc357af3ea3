"""
Decimal helpers shared by the ledger projections.

Quantization scales match the storage columns so a value computed in memory
equals the value read back from the database.
"""
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Optional

from stockfolio.core.exceptions import ValidationError

ZERO = Decimal("0")
ONE = Decimal("1")

MONEY = Decimal("0.01")
SHARES = Decimal("0.000001")
PRICE = Decimal("0.000001")
COST = Decimal("0.00000001")
GAIN = Decimal("0.0001")


def to_decimal(value: Any, field: str = "value") -> Optional[Decimal]:
    """Coerce user input to Decimal. None stays None."""
    if value is None:
        return None
    if isinstance(value, Decimal):
        result = value
    else:
        try:
            # str() keeps floats like 4.19 from picking up binary noise
            result = Decimal(str(value))
        except (InvalidOperation, ValueError) as exc:
            raise ValidationError(f"{field} is not a number: {value!r}", field=field) from exc
    if not result.is_finite():
        raise ValidationError(f"{field} must be finite", field=field)
    return result


def money(value: Decimal) -> Decimal:
    return value.quantize(MONEY, rounding=ROUND_HALF_UP)


def shares(value: Decimal) -> Decimal:
    return value.quantize(SHARES, rounding=ROUND_HALF_UP)


def cost(value: Decimal) -> Decimal:
    return value.quantize(COST, rounding=ROUND_HALF_UP)


def gain(value: Decimal) -> Decimal:
    return value.quantize(GAIN, rounding=ROUND_HALF_UP)


def or_zero(value: Optional[Decimal]) -> Decimal:
    return ZERO if value is None else value


def price(value: Decimal) -> Decimal:
    return value.quantize(PRICE, rounding=ROUND_HALF_UP)
