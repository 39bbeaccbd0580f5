"""Graph Evaluator: turns a formula graph into an adjusted price.

All arithmetic uses Decimal inside ``CALC_CONTEXT``; no float operations.
Missing series data is a hard failure (DataUnavailableError), never a
zero substitution.

Contribution ledger: one entry per evaluated node in plan order. When the
output node is a sum or weighted_sum, each of its direct inputs moves the
running price by its (weighted) term; otherwise only the output node
moves it. The output node's cumulative is always the adjusted price.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal, localcontext
from typing import Any

from cpam.calc.decimal_math import (
    CALC_CONTEXT,
    percentage_change,
    quantize,
    safe_divide,
    to_decimal,
)
from cpam.calc.errors import DataUnavailableError, EvaluationError
from cpam.calc.graph import ExecutionPlan, compile_graph, load_graph
from cpam.calc.hashing import canonical_json_for_hash, compute_sha256
from cpam.calc.operations import SUM_FAMILY, apply_controls, combine, combine_terms, transform
from cpam.fx.rates import FxRateService
from cpam.models.calc_batch import ContributionEntry
from cpam.models.formula_graph import (
    CombineNode,
    ConstantNode,
    ControlsNode,
    ConversionKind,
    ConvertNode,
    FactorNode,
    FormulaGraph,
    FormulaType,
    Normalization,
    TransformNode,
)
from cpam.models.observation import VersionTag
from cpam.timeseries.resolver import VersionResolver

logger = logging.getLogger(__name__)

_ONE = Decimal(1)
_HUNDRED = Decimal(100)


@dataclass(frozen=True)
class EvaluationResult:
    """Outcome of one graph evaluation.

    Attributes:
        adjusted_price: Final price, quantized.
        currency: Currency of the adjusted price (the base currency).
        output_value: Value of the output node.
        contributions: Ledger entries in plan order.
        inputs_hash: SHA-256 over graph, date, preference, base price and
            every resolved input.
        node_values: Value of every evaluated node.
    """

    adjusted_price: Decimal
    currency: str
    output_value: Decimal
    contributions: list[ContributionEntry]
    inputs_hash: str
    node_values: dict[str, Decimal] = field(default_factory=dict)


@dataclass
class _Run:
    as_of_date: date
    preference: VersionTag
    values: dict[str, Decimal] = field(default_factory=dict)
    resolved: list[dict[str, Any]] = field(default_factory=list)


class GraphEvaluator:
    """Evaluates formula graphs against versioned observations.

    Stateless between calls and safe to share across threads.

    Args:
        resolver: Version resolver for Factor lookups.
        fx_rates: FX service for currency Convert nodes. Defaults to an
            uncached service over ``resolver``.
    """

    def __init__(self, resolver: VersionResolver, fx_rates: FxRateService | None = None) -> None:
        self._resolver = resolver
        self._fx_rates = fx_rates if fx_rates is not None else FxRateService(resolver)

    def evaluate(
        self,
        graph: FormulaGraph | dict[str, Any],
        *,
        formula_type: FormulaType,
        base_price: Decimal,
        base_currency: str,
        as_of_date: date,
        version_preference: VersionTag,
    ) -> EvaluationResult:
        """Evaluate a graph for one item.

        Args:
            graph: Formula graph or its JSON mapping.
            formula_type: additive (base + output) or multiplicative
                (base * (1 + output)).
            base_price: Item base price.
            base_currency: Currency of the base price.
            as_of_date: Evaluation date.
            version_preference: Preferred observation tag.

        Returns:
            EvaluationResult with the adjusted price and ledger.

        Raises:
            StructuralError: If the graph is malformed or cyclic.
            DataUnavailableError: If a referenced series has no usable observation.
            EvaluationError: If a node cannot be computed.
        """
        graph = load_graph(graph)
        plan = compile_graph(graph)
        formula_type = FormulaType(formula_type)
        preference = VersionTag(version_preference)
        base_price = to_decimal(base_price)

        with localcontext(CALC_CONTEXT):
            run = _Run(as_of_date=as_of_date, preference=preference)
            node_map = graph.node_map()
            for node_id in plan.order:
                node = node_map[node_id]
                inputs = [run.values[i] for i in plan.inputs[node_id]]
                value = self._evaluate_node(node, inputs, plan, node_map, run)
                run.values[node_id] = quantize(value)

            output_value = run.values[plan.output]
            adjusted = quantize(self._apply(formula_type, base_price, output_value))
            contributions = self._ledger(plan, node_map, run, formula_type, base_price, adjusted)

        inputs_hash = self._hash_inputs(
            graph, formula_type, base_price, base_currency, as_of_date, preference, run.resolved
        )
        logger.debug(
            "Evaluated graph output=%s value=%s price=%s", plan.output, output_value, adjusted
        )
        return EvaluationResult(
            adjusted_price=adjusted,
            currency=base_currency,
            output_value=output_value,
            contributions=contributions,
            inputs_hash=inputs_hash,
            node_values=dict(run.values),
        )

    @staticmethod
    def _apply(formula_type: FormulaType, base_price: Decimal, output_value: Decimal) -> Decimal:
        if formula_type is FormulaType.MULTIPLICATIVE:
            return base_price * (_ONE + output_value)
        return base_price + output_value

    def _evaluate_node(
        self,
        node: Any,
        inputs: list[Decimal],
        plan: ExecutionPlan,
        node_map: dict[str, Any],
        run: _Run,
    ) -> Decimal:
        try:
            if isinstance(node, ConstantNode):
                return node.config.value
            if isinstance(node, FactorNode):
                return self._factor(node, run)
            if isinstance(node, CombineNode):
                weights = self._weights(node, plan, node_map)
                return combine(node.config.operation, inputs, weights)
            if isinstance(node, TransformNode):
                return transform(node.config, inputs[0])
            if isinstance(node, ConvertNode):
                return self._convert(node, inputs[0], run)
            if isinstance(node, ControlsNode):
                return apply_controls(node.config, inputs[0])
        except (ValueError, ArithmeticError) as e:
            raise EvaluationError(node.id, str(e)) from e
        raise EvaluationError(node.id, f"unsupported node type {type(node).__name__}")

    @staticmethod
    def _weights(
        node: CombineNode, plan: ExecutionPlan, node_map: dict[str, Any]
    ) -> list[Decimal] | None:
        """Combine weights: explicit config weights, else each input node's weight."""
        if node.config.weights is not None:
            return list(node.config.weights)
        collected = [
            getattr(node_map[source].config, "weight", None) for source in plan.inputs[node.id]
        ]
        if any(w is None for w in collected):
            return None
        return collected

    def _factor(self, node: FactorNode, run: _Run) -> Decimal:
        config = node.config
        value, observations = self._resolver.resolve_window(
            config.series,
            run.as_of_date,
            run.preference,
            operation=config.operation,
            lag_days=config.lag_days,
        )
        for obs in observations:
            run.resolved.append(
                {
                    "as_of_date": obs.as_of_date,
                    "node": node.id,
                    "series": obs.series_code,
                    "value": obs.value,
                    "version_tag": obs.version_tag,
                }
            )

        baseline = config.baseline
        if baseline is None:
            return value

        if baseline.value is not None:
            base = baseline.value
        else:
            obs = self._resolver.latest_at_or_before(
                config.series, baseline.on_date, run.preference
            )
            if obs is None:
                raise DataUnavailableError(
                    config.series,
                    baseline.on_date,
                    run.preference,
                    self._resolver.policy.preference_order(run.preference),
                    detail=f"no baseline at or before the date for node {node.id}",
                )
            run.resolved.append(
                {
                    "as_of_date": obs.as_of_date,
                    "node": f"{node.id}:baseline",
                    "series": obs.series_code,
                    "value": obs.value,
                    "version_tag": obs.version_tag,
                }
            )
            base = obs.value

        mode = config.normalize
        if mode is Normalization.CHANGE:
            return value - base
        if mode is Normalization.RATIO:
            return safe_divide(value, base)
        if mode is Normalization.RELATIVE_CHANGE:
            return percentage_change(base, value)
        return percentage_change(base, value) * _HUNDRED

    def _convert(self, node: ConvertNode, value: Decimal, run: _Run) -> Decimal:
        config = node.config
        if config.kind is ConversionKind.UNIT:
            return value * config.factor
        if config.source.upper() == config.target.upper():
            return value
        if config.fixed_rate is not None:
            return value * config.fixed_rate

        rate = self._fx_rates.get_rate(
            config.fx_series, run.as_of_date, config.fx_policy, run.preference
        )
        run.resolved.append(
            {
                "as_of_date": rate.rate_date,
                "node": node.id,
                "policy": rate.policy,
                "series": config.fx_series,
                "value": rate.rate,
            }
        )
        return value * rate.rate

    @staticmethod
    def _ledger(
        plan: ExecutionPlan,
        node_map: dict[str, Any],
        run: _Run,
        formula_type: FormulaType,
        base_price: Decimal,
        adjusted: Decimal,
    ) -> list[ContributionEntry]:
        output_node = node_map[plan.output]
        terms: dict[str, Decimal] = {}
        if isinstance(output_node, CombineNode) and output_node.config.operation in SUM_FAMILY:
            sources = plan.inputs[plan.output]
            weights = GraphEvaluator._weights(output_node, plan, node_map)
            values = [run.values[s] for s in sources]
            for source, term in zip(
                sources, combine_terms(output_node.config.operation, values, weights), strict=True
            ):
                terms[source] = terms.get(source, Decimal(0)) + term

        entries: list[ContributionEntry] = []
        running_output = Decimal(0)
        running_price = base_price
        for node_id in plan.order:
            node = node_map[node_id]
            if node_id == plan.output:
                cumulative = adjusted
            elif node_id in terms:
                running_output += terms[node_id]
                running_price = quantize(
                    GraphEvaluator._apply(formula_type, base_price, running_output)
                )
                cumulative = running_price
            else:
                cumulative = running_price
            contribution = quantize(terms[node_id]) if node_id in terms else run.values[node_id]
            entries.append(
                ContributionEntry(
                    node_id=node_id,
                    node_type=node.type,
                    contribution=contribution,
                    cumulative=cumulative,
                )
            )
        return entries

    @staticmethod
    def _hash_inputs(
        graph: FormulaGraph,
        formula_type: FormulaType,
        base_price: Decimal,
        base_currency: str,
        as_of_date: date,
        preference: VersionTag,
        resolved: list[dict[str, Any]],
    ) -> str:
        dumped = graph.model_dump(mode="json", by_alias=True)
        dumped["nodes"] = sorted(dumped["nodes"], key=lambda n: n["id"])
        payload = {
            "as_of_date": as_of_date,
            "base_currency": base_currency,
            "base_price": str(base_price),
            "formula_type": formula_type,
            "graph": dumped,
            "inputs": sorted(
                resolved, key=lambda r: (r["node"], r["series"], r["as_of_date"].isoformat())
            ),
            "version_preference": preference,
        }
        return compute_sha256(canonical_json_for_hash(payload))
