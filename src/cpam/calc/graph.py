"""Formula graph loading, validation and compilation.

Loading turns raw JSON into the typed node variants and rejects anything
that makes the graph meaningless (duplicate ids, dangling edges, missing
output). Validation adds arity rules and cycle detection over the
ancestors of the output node. Compilation produces the execution plan the
evaluator walks: the output's ancestors in dependency order, each with its
inputs in edge order.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from pydantic import ValidationError

from cpam.calc.errors import StructuralError
from cpam.calc.operations import MIN_INPUTS, WEIGHTED
from cpam.models.formula_graph import (
    CombineNode,
    ConstantNode,
    ControlsNode,
    ConvertNode,
    FactorNode,
    FormulaGraph,
    TransformNode,
)

logger = logging.getLogger(__name__)

SOURCE_NODES = (FactorNode, ConstantNode)
SINGLE_INPUT_NODES = (TransformNode, ConvertNode, ControlsNode)


@dataclass
class GraphValidation:
    """Outcome of ``validate_graph``."""

    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors


@dataclass(frozen=True)
class ExecutionPlan:
    """Dependency-ordered evaluation plan.

    Attributes:
        order: Node ids to evaluate; every node follows all of its inputs
            and the output node is last.
        inputs: Node id -> input node ids in edge order.
        output: Output node id.
    """

    order: tuple[str, ...]
    inputs: Mapping[str, tuple[str, ...]]
    output: str


def _structural_errors(graph: FormulaGraph) -> list[str]:
    errors: list[str] = []
    seen: set[str] = set()
    for node in graph.nodes:
        if node.id in seen:
            errors.append(f"duplicate node id '{node.id}'")
        seen.add(node.id)

    if graph.output not in seen:
        errors.append(f"output node '{graph.output}' does not exist")

    for index, edge in enumerate(graph.edges):
        if edge.source not in seen:
            errors.append(f"edge {index} references unknown source '{edge.source}'")
        if edge.target not in seen:
            errors.append(f"edge {index} references unknown target '{edge.target}'")
        if edge.source == edge.target:
            errors.append(f"edge {index} is a self-loop on '{edge.source}'")
    return errors


def load_graph(data: FormulaGraph | Mapping[str, Any]) -> FormulaGraph:
    """Parse and structurally check a formula graph.

    Args:
        data: A FormulaGraph or its JSON-like mapping (``from``/``to`` edge keys).

    Raises:
        StructuralError: On schema violations, duplicate ids, dangling or
            self-loop edges, or a missing output node.
    """
    if isinstance(data, FormulaGraph):
        graph = data
    else:
        try:
            graph = FormulaGraph.model_validate(data)
        except ValidationError as e:
            raise StructuralError(
                [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()]
            ) from e

    errors = _structural_errors(graph)
    if errors:
        raise StructuralError(errors)
    return graph


def input_map(graph: FormulaGraph) -> dict[str, list[str]]:
    """Node id -> input node ids, in the order edges appear."""
    inputs: dict[str, list[str]] = {node.id: [] for node in graph.nodes}
    for edge in graph.edges:
        inputs.setdefault(edge.target, []).append(edge.source)
    return inputs


def ancestors_of(graph: FormulaGraph, node_id: str) -> set[str]:
    """``node_id`` plus every node that can reach it."""
    inputs = input_map(graph)
    found = {node_id}
    stack = [node_id]
    while stack:
        current = stack.pop()
        for source in inputs.get(current, []):
            if source not in found:
                found.add(source)
                stack.append(source)
    return found


def find_cycle(graph: FormulaGraph, restrict_to: set[str] | None = None) -> list[str] | None:
    """Return one cycle as a node path (first node repeated at the end), or None."""
    successors: dict[str, list[str]] = {}
    for edge in graph.edges:
        if restrict_to is not None and (
            edge.source not in restrict_to or edge.target not in restrict_to
        ):
            continue
        successors.setdefault(edge.source, []).append(edge.target)

    white, grey, black = 0, 1, 2
    color: dict[str, int] = {}
    path: list[str] = []

    def visit(node_id: str) -> list[str] | None:
        color[node_id] = grey
        path.append(node_id)
        for nxt in successors.get(node_id, []):
            state = color.get(nxt, white)
            if state == grey:
                return path[path.index(nxt) :] + [nxt]
            if state == white:
                cycle = visit(nxt)
                if cycle is not None:
                    return cycle
        path.pop()
        color[node_id] = black
        return None

    for node in graph.nodes:
        if restrict_to is not None and node.id not in restrict_to:
            continue
        if color.get(node.id, white) == white:
            cycle = visit(node.id)
            if cycle is not None:
                return cycle
    return None


def _arity_errors(node: Any, inputs: list[str], node_map: Mapping[str, Any]) -> list[str]:
    count = len(inputs)
    if isinstance(node, SOURCE_NODES):
        if count:
            return [f"{node.type} node '{node.id}' must not have inputs, has {count}"]
        return []
    if isinstance(node, SINGLE_INPUT_NODES):
        if count != 1:
            return [f"{node.type} node '{node.id}' requires exactly 1 input, has {count}"]
        return []
    if isinstance(node, CombineNode):
        errors = []
        operation = node.config.operation
        minimum = MIN_INPUTS.get(operation, 1)
        if count < minimum:
            errors.append(
                f"Combine node '{node.id}' ({operation}) requires at least {minimum} "
                f"input(s), has {count}"
            )
        weights = node.config.weights
        if weights is not None and len(weights) != count:
            errors.append(
                f"Combine node '{node.id}' has {len(weights)} weight(s) for {count} input(s)"
            )
        if operation in WEIGHTED and weights is None:
            unweighted = [
                source
                for source in inputs
                if getattr(getattr(node_map.get(source), "config", None), "weight", None) is None
            ]
            if unweighted:
                errors.append(
                    f"Combine node '{node.id}' ({operation}) has no weights and inputs "
                    f"{unweighted} carry no weight"
                )
        return errors
    return []


def validate_graph(graph: FormulaGraph) -> GraphValidation:
    """Report every problem with a graph without raising.

    Errors: structural problems, a cycle among the output's ancestors and
    arity/weight problems of those ancestors. Warnings: nodes that do not
    feed the output, single-input combines.
    """
    result = GraphValidation(errors=_structural_errors(graph))
    if result.errors:
        return result

    node_map = graph.node_map()
    inputs = input_map(graph)
    relevant = ancestors_of(graph, graph.output)

    cycle = find_cycle(graph, restrict_to=relevant)
    if cycle is not None:
        result.errors.append("cycle detected: " + " -> ".join(cycle))

    for node in graph.nodes:
        if node.id not in relevant:
            result.warnings.append(f"node '{node.id}' does not contribute to the output")
            continue
        node_inputs = inputs.get(node.id, [])
        result.errors.extend(_arity_errors(node, node_inputs, node_map))
        if isinstance(node, CombineNode) and len(node_inputs) == 1:
            result.warnings.append(f"Combine node '{node.id}' has a single input")

    return result


def compile_graph(graph: FormulaGraph) -> ExecutionPlan:
    """Build the execution plan for a graph.

    Raises:
        StructuralError: If ``validate_graph`` reports any error.
    """
    validation = validate_graph(graph)
    if not validation.is_valid:
        raise StructuralError(validation.errors)
    for warning in validation.warnings:
        logger.debug("Graph warning: %s", warning)

    relevant = ancestors_of(graph, graph.output)
    inputs = input_map(graph)
    position = {node.id: i for i, node in enumerate(graph.nodes)}

    pending = {node_id: len(inputs.get(node_id, [])) for node_id in relevant}
    dependents: dict[str, list[str]] = {}
    for edge in graph.edges:
        if edge.source in relevant and edge.target in relevant:
            dependents.setdefault(edge.source, []).append(edge.target)

    ready = sorted((n for n, c in pending.items() if c == 0), key=position.__getitem__)
    order: list[str] = []
    while ready:
        current = ready.pop(0)
        order.append(current)
        for dependent in dependents.get(current, []):
            pending[dependent] -= 1
            if pending[dependent] == 0:
                ready.append(dependent)
                ready.sort(key=position.__getitem__)

    if len(order) != len(relevant):
        raise StructuralError("cycle detected among output ancestors")

    return ExecutionPlan(
        order=tuple(order),
        inputs={node_id: tuple(inputs.get(node_id, [])) for node_id in order},
        output=graph.output,
    )
