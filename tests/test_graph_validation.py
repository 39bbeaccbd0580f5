"""Tests for formula graph loading, validation and compilation.

Tests verify:
- load_graph rejects schema violations, duplicate ids, dangling edges and a missing output
- validate_graph reports cycles and arity problems and warns about unused nodes
- compile_graph orders nodes so every input precedes its consumer
"""

from __future__ import annotations

from typing import Any

import pytest

from cpam.calc.errors import StructuralError
from cpam.calc.graph import compile_graph, find_cycle, load_graph, validate_graph
from tests.fixtures.builders import wti_change_graph


def _constant(node_id: str, value: str = "1", weight: str | None = None) -> dict[str, Any]:
    config: dict[str, Any] = {"value": value}
    if weight is not None:
        config["weight"] = weight
    return {"id": node_id, "type": "Constant", "config": config}


def _combine(node_id: str, operation: str = "sum") -> dict[str, Any]:
    return {"id": node_id, "type": "Combine", "config": {"operation": operation}}


def _edge(source: str, target: str) -> dict[str, str]:
    return {"from": source, "to": target}


class TestLoadGraph:
    """Loading raw JSON into a typed graph."""

    def test_loads_valid_graph(self) -> None:
        graph = load_graph(wti_change_graph())
        assert graph.output == "total"
        assert graph.referenced_series() == ["WTI"]

    def test_unknown_node_type_rejected(self) -> None:
        data = {"nodes": [{"id": "x", "type": "Magic", "config": {}}], "output": "x"}
        with pytest.raises(StructuralError):
            load_graph(data)

    def test_missing_output_rejected(self) -> None:
        data = {"nodes": [_constant("a")], "edges": [], "output": "b"}
        with pytest.raises(StructuralError) as exc_info:
            load_graph(data)
        assert "output node 'b' does not exist" in exc_info.value.errors

    def test_duplicate_ids_and_dangling_edges_all_reported(self) -> None:
        data = {
            "nodes": [_constant("a"), _constant("a"), _combine("out")],
            "edges": [_edge("a", "out"), _edge("ghost", "out")],
            "output": "out",
        }
        with pytest.raises(StructuralError) as exc_info:
            load_graph(data)
        assert len(exc_info.value.errors) == 2

    def test_invalid_config_rejected(self) -> None:
        data = {
            "nodes": [{"id": "t", "type": "Transform", "config": {"function": "pow"}}],
            "output": "t",
        }
        with pytest.raises(StructuralError):
            load_graph(data)


class TestValidateGraph:
    """Non-raising validation report."""

    def test_valid_graph(self) -> None:
        validation = validate_graph(load_graph(wti_change_graph()))
        assert validation.is_valid
        assert validation.warnings == ["Combine node 'total' has a single input"]

    def test_cycle_among_output_ancestors(self) -> None:
        graph = load_graph(
            {
                "nodes": [_constant("c"), _combine("a"), _combine("b")],
                "edges": [_edge("c", "a"), _edge("a", "b"), _edge("b", "a")],
                "output": "b",
            }
        )

        validation = validate_graph(graph)

        assert not validation.is_valid
        assert any(e.startswith("cycle detected") for e in validation.errors)
        assert find_cycle(graph) in (["a", "b", "a"], ["b", "a", "b"])

    def test_source_node_with_input(self) -> None:
        graph = load_graph(
            {
                "nodes": [_constant("a"), _constant("b"), _combine("out")],
                "edges": [_edge("a", "b"), _edge("b", "out")],
                "output": "out",
            }
        )
        errors = validate_graph(graph).errors
        assert "Constant node 'b' must not have inputs, has 1" in errors

    def test_subtract_needs_two_inputs(self) -> None:
        graph = load_graph(
            {
                "nodes": [_constant("a"), _combine("out", "subtract")],
                "edges": [_edge("a", "out")],
                "output": "out",
            }
        )
        assert not validate_graph(graph).is_valid

    def test_weighted_sum_needs_weights(self) -> None:
        graph = load_graph(
            {
                "nodes": [_constant("a"), _constant("b"), _combine("out", "weighted_sum")],
                "edges": [_edge("a", "out"), _edge("b", "out")],
                "output": "out",
            }
        )
        assert not validate_graph(graph).is_valid

    def test_unused_node_is_warning_only(self) -> None:
        graph = load_graph(
            {
                "nodes": [_constant("a"), _constant("b"), _constant("unused"), _combine("out")],
                "edges": [_edge("a", "out"), _edge("b", "out")],
                "output": "out",
            }
        )
        validation = validate_graph(graph)
        assert validation.is_valid
        assert validation.warnings == ["node 'unused' does not contribute to the output"]


class TestCompileGraph:
    """Execution plan ordering."""

    def test_inputs_precede_consumers(self) -> None:
        graph = load_graph(
            {
                "nodes": [
                    _combine("out"),
                    _combine("mid"),
                    _constant("a"),
                    _constant("b"),
                ],
                "edges": [_edge("a", "mid"), _edge("b", "mid"), _edge("mid", "out")],
                "output": "out",
            }
        )

        plan = compile_graph(graph)

        assert plan.order == ("a", "b", "mid", "out")
        assert plan.inputs["mid"] == ("a", "b")
        assert plan.output == "out"

    def test_invalid_graph_raises(self) -> None:
        graph = load_graph(
            {
                "nodes": [_constant("a"), _combine("out", "divide")],
                "edges": [_edge("a", "out")],
                "output": "out",
            }
        )
        with pytest.raises(StructuralError):
            compile_graph(graph)
