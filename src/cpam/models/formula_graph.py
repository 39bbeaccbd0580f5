"""Formula graph models (Price Adjustment Methodology).

A formula graph is a set of typed nodes, directed edges and a designated
output node. Nodes are a closed tagged variant keyed by ``type``; each
variant carries its own validated ``config`` payload, so malformed configs
are rejected when the graph is loaded rather than when it is evaluated.

Weights are stored as percentages (50 means one half).
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from enum import StrEnum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, BeforeValidator, Field, model_validator


def _coerce_decimal(value: Any) -> Any:
    """Convert JSON floats through their repr so 0.1 stays 0.1."""
    if isinstance(value, float):
        return Decimal(repr(value))
    return value


DecimalInput = Annotated[Decimal, BeforeValidator(_coerce_decimal)]


class FormulaType(StrEnum):
    """How the output node value is applied to the base price."""

    ADDITIVE = "additive"
    MULTIPLICATIVE = "multiplicative"


class WindowOperation(StrEnum):
    """Series lookup operation for Factor nodes."""

    VALUE = "value"
    AVG_3M = "avg_3m"
    AVG_6M = "avg_6m"
    AVG_12M = "avg_12m"
    MIN = "min"
    MAX = "max"


class Normalization(StrEnum):
    """How a Factor value is expressed relative to its baseline."""

    CHANGE = "change"
    RATIO = "ratio"
    RELATIVE_CHANGE = "relative_change"
    PERCENT_CHANGE = "percent_change"


class CombineOperation(StrEnum):
    """Aggregation applied by a Combine node over its inputs."""

    SUM = "sum"
    WEIGHTED_SUM = "weighted_sum"
    PRODUCT = "product"
    COMPOUND = "compound"
    SUBTRACT = "subtract"
    DIVIDE = "divide"
    AVERAGE = "average"
    WEIGHTED_AVERAGE = "weighted_average"
    MIN = "min"
    MAX = "max"


class TransformFunction(StrEnum):
    """Single-input transformation applied by a Transform node."""

    ABS = "abs"
    CEIL = "ceil"
    FLOOR = "floor"
    ROUND = "round"
    SQRT = "sqrt"
    POW = "pow"
    PERCENT_CHANGE = "percent_change"
    LOG = "log"
    EXP = "exp"


class ConversionKind(StrEnum):
    UNIT = "unit"
    CURRENCY = "currency"


class FxPolicy(StrEnum):
    """Which FX observation a currency conversion uses."""

    EFFECTIVE_DATE = "EFFECTIVE_DATE"
    EOP = "EOP"
    PERIOD_AVG = "PERIOD_AVG"


class SpikeDirection(StrEnum):
    ABOVE = "above"
    BELOW = "below"
    BOTH = "both"


_CONFIG = {"frozen": True, "extra": "forbid", "populate_by_name": True}


class Baseline(BaseModel):
    """Reference point for a normalized Factor: a fixed value or a date."""

    on_date: date | None = Field(None, alias="date")
    value: DecimalInput | None = None

    model_config = _CONFIG

    @model_validator(mode="after")
    def exactly_one(self) -> Baseline:
        if (self.on_date is None) == (self.value is None):
            raise ValueError("baseline requires exactly one of 'date' or 'value'")
        return self


class FactorConfig(BaseModel):
    series: str = Field(..., min_length=1, description="Series code to resolve")
    weight: DecimalInput | None = Field(None, description="Weight in percent")
    lag_days: int = Field(0, ge=0, description="Calendar days subtracted before lookup")
    operation: WindowOperation = WindowOperation.VALUE
    baseline: Baseline | None = None
    normalize: Normalization = Normalization.CHANGE

    model_config = _CONFIG


class ConstantConfig(BaseModel):
    value: DecimalInput
    weight: DecimalInput | None = Field(None, description="Weight in percent")

    model_config = _CONFIG


class CombineConfig(BaseModel):
    operation: CombineOperation
    weights: list[DecimalInput] | None = Field(
        None, description="Per-input weights in percent, aligned with input edge order"
    )

    model_config = _CONFIG


class TransformConfig(BaseModel):
    function: TransformFunction
    exponent: DecimalInput | None = None
    decimals: int | None = Field(None, ge=0)
    base_value: DecimalInput | None = None

    model_config = _CONFIG

    @model_validator(mode="after")
    def required_params(self) -> TransformConfig:
        if self.function is TransformFunction.POW and self.exponent is None:
            raise ValueError("pow requires 'exponent'")
        if self.function is TransformFunction.PERCENT_CHANGE:
            if self.base_value is None or self.base_value == 0:
                raise ValueError("percent_change requires a non-zero 'base_value'")
        return self


class ConvertConfig(BaseModel):
    kind: ConversionKind
    source: str = Field(..., alias="from", min_length=1)
    target: str = Field(..., alias="to", min_length=1)
    factor: DecimalInput | None = Field(None, description="Unit conversion multiplier")
    fixed_rate: DecimalInput | None = None
    fx_series: str | None = None
    fx_policy: FxPolicy = FxPolicy.EFFECTIVE_DATE

    model_config = _CONFIG

    @model_validator(mode="after")
    def rate_source(self) -> ConvertConfig:
        if self.kind is ConversionKind.UNIT and self.factor is None:
            raise ValueError("unit conversion requires 'factor'")
        if self.kind is ConversionKind.CURRENCY and self.fixed_rate is None and not self.fx_series:
            raise ValueError("currency conversion requires 'fixed_rate' or 'fx_series'")
        return self


class TriggerBand(BaseModel):
    lower: DecimalInput
    upper: DecimalInput

    model_config = _CONFIG

    @model_validator(mode="after")
    def ordered(self) -> TriggerBand:
        if self.lower > self.upper:
            raise ValueError("trigger band lower bound exceeds upper bound")
        return self


class SpikeSharing(BaseModel):
    share_percent: DecimalInput = Field(..., ge=0, le=100)
    direction: SpikeDirection = SpikeDirection.BOTH

    model_config = _CONFIG


class ControlsConfig(BaseModel):
    cap: DecimalInput | None = None
    floor: DecimalInput | None = None
    trigger_band: TriggerBand | None = None
    spike_sharing: SpikeSharing | None = None

    model_config = _CONFIG

    @model_validator(mode="after")
    def consistent(self) -> ControlsConfig:
        if self.cap is not None and self.floor is not None and self.floor > self.cap:
            raise ValueError("floor exceeds cap")
        if (self.trigger_band is None) != (self.spike_sharing is None):
            raise ValueError("trigger_band and spike_sharing must be configured together")
        return self


class _NodeBase(BaseModel):
    id: str = Field(..., min_length=1)
    label: str | None = None

    model_config = _CONFIG


class FactorNode(_NodeBase):
    type: Literal["Factor"] = "Factor"
    config: FactorConfig


class ConstantNode(_NodeBase):
    type: Literal["Constant"] = "Constant"
    config: ConstantConfig


class CombineNode(_NodeBase):
    type: Literal["Combine"] = "Combine"
    config: CombineConfig


class TransformNode(_NodeBase):
    type: Literal["Transform"] = "Transform"
    config: TransformConfig


class ConvertNode(_NodeBase):
    type: Literal["Convert"] = "Convert"
    config: ConvertConfig


class ControlsNode(_NodeBase):
    type: Literal["Controls"] = "Controls"
    config: ControlsConfig


GraphNode = Annotated[
    FactorNode | ConstantNode | CombineNode | TransformNode | ConvertNode | ControlsNode,
    Field(discriminator="type"),
]


class GraphEdge(BaseModel):
    """Directed edge: the value of ``source`` feeds ``target``."""

    source: str = Field(..., alias="from", min_length=1)
    target: str = Field(..., alias="to", min_length=1)

    model_config = _CONFIG


class FormulaGraph(BaseModel):
    """Tenant-authored node graph with a designated output node."""

    nodes: list[GraphNode] = Field(default_factory=list)
    edges: list[GraphEdge] = Field(default_factory=list)
    output: str = Field(..., min_length=1)
    metadata: dict[str, str] = Field(default_factory=dict)

    model_config = {"frozen": True, "extra": "forbid", "populate_by_name": True}

    def node_map(self) -> dict[str, Any]:
        """Map node id to node (first occurrence wins)."""
        mapping: dict[str, Any] = {}
        for node in self.nodes:
            mapping.setdefault(node.id, node)
        return mapping

    def referenced_series(self) -> list[str]:
        """Sorted series codes referenced by Factor and Convert nodes."""
        codes: set[str] = set()
        for node in self.nodes:
            if isinstance(node, FactorNode):
                codes.add(node.config.series)
            elif isinstance(node, ConvertNode) and node.config.fx_series:
                codes.add(node.config.fx_series)
        return sorted(codes)


class Formula(BaseModel):
    """A versioned price adjustment formula owned by a tenant."""

    formula_id: str
    tenant_id: str
    name: str
    graph: FormulaGraph
    formula_type: FormulaType = FormulaType.ADDITIVE
    version: int = Field(1, ge=1)

    model_config = {"frozen": True, "extra": "forbid"}


class ContractItem(BaseModel):
    """A priced item on a contract, adjusted by a formula."""

    item_id: str
    tenant_id: str
    contract_id: str
    formula_id: str
    base_price: DecimalInput
    base_currency: str = Field(..., min_length=3, max_length=3)
    uom: str | None = None
    sku: str | None = None
    name: str | None = None

    model_config = {"frozen": True, "extra": "forbid"}
