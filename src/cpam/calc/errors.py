"""Calculation error taxonomy.

- StructuralError: the graph itself is malformed (cycle, missing output,
  dangling edge, wrong arity). Never retried.
- DataUnavailableError: a series has no acceptable observation for the
  date and preference. Defined next to the resolver and re-exported here.
- EvaluationError: a node could not be computed from valid inputs
  (division by zero, zero baseline, negative square root).
"""

from __future__ import annotations

from cpam.timeseries.resolver import DataUnavailableError


class StructuralError(Exception):
    """Raised when a formula graph is structurally invalid.

    Attributes:
        errors: Every structural problem found.
    """

    def __init__(self, errors: list[str] | str) -> None:
        self.errors = [errors] if isinstance(errors, str) else list(errors)
        super().__init__("Invalid formula graph: " + "; ".join(self.errors))


class EvaluationError(Exception):
    """Raised when a node cannot be evaluated.

    Attributes:
        node_id: Failing node.
        reason: What went wrong.
    """

    def __init__(self, node_id: str, reason: str) -> None:
        self.node_id = node_id
        self.reason = reason
        super().__init__(f"Node {node_id}: {reason}")


__all__ = ["DataUnavailableError", "EvaluationError", "StructuralError"]
