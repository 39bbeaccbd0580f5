"""Node operations: combine, transform, unit conversion and controls.

Functions here take plain Decimals and configs and raise ValueError on
invalid input; the evaluator attaches the node id. Call them inside
``CALC_CONTEXT``.
"""

from __future__ import annotations

from collections.abc import Sequence
from decimal import ROUND_CEILING, ROUND_FLOOR, ROUND_HALF_EVEN, Decimal

from cpam.calc.decimal_math import clamp, from_percent, percentage_change, safe_divide
from cpam.models.formula_graph import (
    CombineOperation,
    ControlsConfig,
    SpikeDirection,
    TransformConfig,
    TransformFunction,
)

SUM_FAMILY = frozenset({CombineOperation.SUM, CombineOperation.WEIGHTED_SUM})
WEIGHTED = frozenset({CombineOperation.WEIGHTED_SUM, CombineOperation.WEIGHTED_AVERAGE})
MIN_INPUTS: dict[CombineOperation, int] = {
    CombineOperation.SUBTRACT: 2,
    CombineOperation.DIVIDE: 2,
}

_ONE = Decimal(1)


def combine_terms(
    operation: CombineOperation,
    values: Sequence[Decimal],
    weights: Sequence[Decimal] | None = None,
) -> list[Decimal]:
    """Per-input terms of a sum-family combine (value, or weight/100 * value)."""
    if operation is CombineOperation.SUM:
        return list(values)
    if operation is CombineOperation.WEIGHTED_SUM:
        _check_weights(values, weights)
        return [from_percent(w) * v for v, w in zip(values, weights, strict=True)]
    raise ValueError(f"{operation} is not a sum-family operation")


def _check_weights(values: Sequence[Decimal], weights: Sequence[Decimal] | None) -> None:
    if weights is None:
        raise ValueError("weighted operation requires weights for every input")
    if len(weights) != len(values):
        raise ValueError(f"{len(weights)} weight(s) for {len(values)} input(s)")


def combine(
    operation: CombineOperation,
    values: Sequence[Decimal],
    weights: Sequence[Decimal] | None = None,
) -> Decimal:
    """Aggregate input values.

    Args:
        operation: Combine operation.
        values: Input values in edge order.
        weights: Percent weights aligned with ``values`` (weighted ops only).

    Raises:
        ValueError: On missing inputs, bad weights or division by zero.
    """
    operation = CombineOperation(operation)
    if not values:
        raise ValueError("combine requires at least one input")
    minimum = MIN_INPUTS.get(operation, 1)
    if len(values) < minimum:
        raise ValueError(f"{operation} requires at least {minimum} inputs, got {len(values)}")

    if operation in SUM_FAMILY:
        return sum(combine_terms(operation, values, weights), Decimal(0))

    if operation is CombineOperation.PRODUCT:
        result = _ONE
        for v in values:
            result *= v
        return result

    if operation is CombineOperation.COMPOUND:
        result = _ONE
        for v in values:
            result *= _ONE + v
        return result - _ONE

    if operation is CombineOperation.SUBTRACT:
        result = values[0]
        for v in values[1:]:
            result -= v
        return result

    if operation is CombineOperation.DIVIDE:
        result = values[0]
        for v in values[1:]:
            result = safe_divide(result, v)
        return result

    if operation is CombineOperation.AVERAGE:
        return sum(values, Decimal(0)) / Decimal(len(values))

    if operation is CombineOperation.WEIGHTED_AVERAGE:
        _check_weights(values, weights)
        total_weight = sum(weights, Decimal(0))
        if total_weight == 0:
            raise ValueError("weights sum to zero")
        weighted = sum((v * w for v, w in zip(values, weights, strict=True)), Decimal(0))
        return weighted / total_weight

    if operation is CombineOperation.MIN:
        return min(values)
    if operation is CombineOperation.MAX:
        return max(values)

    raise ValueError(f"unsupported combine operation: {operation}")


def transform(config: TransformConfig, value: Decimal) -> Decimal:
    """Apply a single-input transformation."""
    fn = config.function
    if fn is TransformFunction.ABS:
        return abs(value)
    if fn is TransformFunction.CEIL:
        return value.to_integral_value(rounding=ROUND_CEILING)
    if fn is TransformFunction.FLOOR:
        return value.to_integral_value(rounding=ROUND_FLOOR)
    if fn is TransformFunction.ROUND:
        places = config.decimals or 0
        return value.quantize(Decimal(1).scaleb(-places), rounding=ROUND_HALF_EVEN)
    if fn is TransformFunction.SQRT:
        if value < 0:
            raise ValueError("square root of a negative value")
        return value.sqrt()
    if fn is TransformFunction.POW:
        if value == 0 and config.exponent < 0:
            raise ValueError("zero raised to a negative power")
        if value < 0 and config.exponent != config.exponent.to_integral_value():
            raise ValueError("negative base with a fractional exponent")
        return value**config.exponent
    if fn is TransformFunction.PERCENT_CHANGE:
        return percentage_change(config.base_value, value)
    if fn is TransformFunction.LOG:
        if value <= 0:
            raise ValueError("natural log of a non-positive value")
        return value.ln()
    if fn is TransformFunction.EXP:
        return value.exp()
    raise ValueError(f"unsupported transform function: {fn}")


def apply_controls(config: ControlsConfig, value: Decimal) -> Decimal:
    """Apply spike sharing, then the cap/floor collar.

    Outside the trigger band only ``share_percent`` of the excursion is
    passed through: above the band the result is ``upper + share * spike``,
    below it ``lower - share * spike``.
    """
    if config.trigger_band is not None and config.spike_sharing is not None:
        lower = config.trigger_band.lower
        upper = config.trigger_band.upper
        share = from_percent(config.spike_sharing.share_percent)
        direction = config.spike_sharing.direction

        if direction in (SpikeDirection.ABOVE, SpikeDirection.BOTH) and value > upper:
            value = upper + (value - upper) * share
        elif direction in (SpikeDirection.BELOW, SpikeDirection.BOTH) and value < lower:
            value = lower - (lower - value) * share

    return clamp(value, config.floor, config.cap)
