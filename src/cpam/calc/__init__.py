"""CPAM calculation engine.

Decimal-only graph evaluation with reproducible contribution ledgers.
"""

from cpam.calc.decimal_math import CALC_CONTEXT, RESULT_PLACES, quantize, to_decimal
from cpam.calc.engine import EvaluationResult, GraphEvaluator
from cpam.calc.errors import DataUnavailableError, EvaluationError, StructuralError
from cpam.calc.graph import (
    ExecutionPlan,
    GraphValidation,
    compile_graph,
    find_cycle,
    load_graph,
    validate_graph,
)
from cpam.calc.hashing import canonical_json_for_hash, compute_sha256
from cpam.calc.operations import apply_controls, combine, transform

__all__ = [
    "CALC_CONTEXT",
    "RESULT_PLACES",
    "DataUnavailableError",
    "EvaluationError",
    "EvaluationResult",
    "ExecutionPlan",
    "GraphEvaluator",
    "GraphValidation",
    "StructuralError",
    "apply_controls",
    "canonical_json_for_hash",
    "combine",
    "compile_graph",
    "compute_sha256",
    "find_cycle",
    "load_graph",
    "quantize",
    "to_decimal",
    "transform",
    "validate_graph",
]
