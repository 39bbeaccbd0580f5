"""CPAM domain models - Pydantic models for calculation entities.

Observations and series, formula graphs, calculation batches/results and
credit/debit proposals.
"""

from cpam.models.calc_batch import (
    BatchKey,
    BatchRequest,
    BatchResultView,
    BatchSubmission,
    CalcBatch,
    CalcResult,
    CalcStatus,
    ContributionEntry,
    ResultSummary,
)
from cpam.models.formula_graph import (
    Baseline,
    CombineNode,
    CombineOperation,
    ConstantNode,
    ContractItem,
    ControlsNode,
    ConversionKind,
    ConvertNode,
    FactorNode,
    Formula,
    FormulaGraph,
    FormulaType,
    FxPolicy,
    GraphEdge,
    GraphNode,
    Normalization,
    TransformFunction,
    TransformNode,
    WindowOperation,
)
from cpam.models.observation import IndexSeries, Observation, UpsertOutcome, VersionTag
from cpam.models.proposal import (
    CreateProposalInput,
    ItemDelta,
    Proposal,
    ProposalStatus,
    ProposalSummary,
    ProposalType,
    ReviewOutcome,
    ReviewProposalInput,
)

__all__ = [
    "Baseline",
    "BatchKey",
    "BatchRequest",
    "BatchResultView",
    "BatchSubmission",
    "CalcBatch",
    "CalcResult",
    "CalcStatus",
    "CombineNode",
    "CombineOperation",
    "ConstantNode",
    "ContractItem",
    "ContributionEntry",
    "ControlsNode",
    "ConversionKind",
    "ConvertNode",
    "CreateProposalInput",
    "FactorNode",
    "Formula",
    "FormulaGraph",
    "FormulaType",
    "FxPolicy",
    "GraphEdge",
    "GraphNode",
    "IndexSeries",
    "ItemDelta",
    "Normalization",
    "Observation",
    "Proposal",
    "ProposalStatus",
    "ProposalSummary",
    "ProposalType",
    "ResultSummary",
    "ReviewOutcome",
    "ReviewProposalInput",
    "TransformFunction",
    "TransformNode",
    "UpsertOutcome",
    "VersionTag",
    "WindowOperation",
]
