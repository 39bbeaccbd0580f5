"""Fixed-precision decimal arithmetic for price calculations.

All evaluation runs inside ``CALC_CONTEXT`` (34 significant digits,
banker's rounding). Node values and prices are quantized to
``RESULT_PLACES`` decimal places so ledgers reproduce exactly.
"""

from __future__ import annotations

from decimal import ROUND_HALF_EVEN, Context, Decimal, InvalidOperation
from typing import Any, Final

RESULT_PLACES: Final[int] = 12
CALC_CONTEXT: Final[Context] = Context(prec=34, rounding=ROUND_HALF_EVEN)

_QUANTUM = Decimal(1).scaleb(-RESULT_PLACES)
_HUNDRED = Decimal(100)


def to_decimal(value: Any) -> Decimal:
    """Convert int/str/Decimal to Decimal. Floats go through repr.

    Raises:
        ValueError: If the value is not numeric or not finite.
    """
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, bool):
        raise ValueError(f"not a number: {value!r}")
    elif isinstance(value, float):
        result = Decimal(repr(value))
    else:
        try:
            result = Decimal(value)
        except (InvalidOperation, TypeError) as e:
            raise ValueError(f"not a number: {value!r}") from e
    if not result.is_finite():
        raise ValueError(f"not a finite number: {value!r}")
    return result


def quantize(value: Decimal, places: int = RESULT_PLACES) -> Decimal:
    """Round half-even to ``places`` decimal places."""
    quantum = _QUANTUM if places == RESULT_PLACES else Decimal(1).scaleb(-places)
    return value.quantize(quantum, rounding=ROUND_HALF_EVEN, context=CALC_CONTEXT)


def from_percent(weight: Decimal) -> Decimal:
    """Percentage weight as a fraction (50 -> 0.5)."""
    return weight / _HUNDRED


def safe_divide(numerator: Decimal, denominator: Decimal) -> Decimal:
    """Divide, raising ValueError instead of DivisionByZero."""
    if denominator == 0:
        raise ValueError("division by zero")
    return numerator / denominator


def percentage_change(base: Decimal, value: Decimal) -> Decimal:
    """Fractional change from ``base`` to ``value``: (value - base) / base."""
    if base == 0:
        raise ValueError("percentage change from zero")
    return (value - base) / base


def clamp(value: Decimal, lower: Decimal | None, upper: Decimal | None) -> Decimal:
    if upper is not None and value > upper:
        value = upper
    if lower is not None and value < lower:
        value = lower
    return value
