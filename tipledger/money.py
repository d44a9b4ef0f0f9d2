from decimal import ROUND_HALF_UP, Decimal
from typing import Union

Number = Union[int, float, str, Decimal]


def to_decimal(value: Number) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def round_half_up(value: Number) -> int:
    """Round to the nearest whole minor unit, halves away from zero."""
    return int(to_decimal(value).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def percent_of(amount: Number, percent: Number) -> int:
    return round_half_up(to_decimal(amount) * to_decimal(percent) / Decimal(100))
