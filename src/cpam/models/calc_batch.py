"""Calculation batch and result models.

A CalcBatch is one execution of a formula for an as-of date and version
preference. It is created once per identity key and moves through
QUEUED -> RUNNING -> COMPLETED | FAILED. CalcResult rows exist only for
COMPLETED batches.
"""

from __future__ import annotations

import hashlib
import json
from datetime import date, datetime
from decimal import Decimal
from enum import StrEnum
from typing import NamedTuple

from pydantic import BaseModel, Field

from cpam.models.observation import VersionTag


class CalcStatus(StrEnum):
    """Batch lifecycle state."""

    QUEUED = "QUEUED"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (CalcStatus.COMPLETED, CalcStatus.FAILED)


class BatchKey(NamedTuple):
    """Identity key of a batch.

    ``revision_of`` and ``data_watermark`` are only set for recalculation
    batches; for ordinary requests the key is the five-tuple
    (tenant, formula, contract, as_of_date, version_preference).
    """

    tenant_id: str
    formula_id: str
    contract_id: str | None
    as_of_date: date
    version_preference: VersionTag
    revision_of: str | None = None
    data_watermark: str | None = None

    def digest(self) -> str:
        """Stable SHA-256 of the key, used as the unique column."""
        payload = {
            "as_of_date": self.as_of_date.isoformat(),
            "contract_id": self.contract_id,
            "data_watermark": self.data_watermark,
            "formula_id": self.formula_id,
            "revision_of": self.revision_of,
            "tenant_id": self.tenant_id,
            "version_preference": str(self.version_preference),
        }
        canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class BatchRequest(BaseModel):
    """Request to create a calculation batch."""

    tenant_id: str = Field(..., min_length=1)
    formula_id: str = Field(..., min_length=1)
    contract_id: str | None = None
    as_of_date: date
    version_preference: VersionTag = VersionTag.FINAL
    revision_of: str | None = Field(None, description="Original batch for recalculations")
    data_watermark: str | None = Field(None, description="Observation store watermark")

    model_config = {"frozen": True, "extra": "forbid"}

    def key(self) -> BatchKey:
        return BatchKey(
            tenant_id=self.tenant_id,
            formula_id=self.formula_id,
            contract_id=self.contract_id,
            as_of_date=self.as_of_date,
            version_preference=self.version_preference,
            revision_of=self.revision_of,
            data_watermark=self.data_watermark,
        )


class CalcBatch(BaseModel):
    """Persistent batch record."""

    batch_id: str
    tenant_id: str
    formula_id: str
    contract_id: str | None = None
    as_of_date: date
    version_preference: VersionTag
    revision_of: str | None = None
    data_watermark: str | None = None
    key_hash: str
    status: CalcStatus = CalcStatus.QUEUED
    error: str | None = None
    created_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None

    model_config = {"frozen": True, "extra": "forbid"}

    def key(self) -> BatchKey:
        return BatchKey(
            tenant_id=self.tenant_id,
            formula_id=self.formula_id,
            contract_id=self.contract_id,
            as_of_date=self.as_of_date,
            version_preference=self.version_preference,
            revision_of=self.revision_of,
            data_watermark=self.data_watermark,
        )


class ContributionEntry(BaseModel):
    """One row of the evaluation ledger."""

    node_id: str
    node_type: str
    contribution: Decimal
    cumulative: Decimal

    model_config = {"frozen": True, "extra": "forbid"}


class CalcResult(BaseModel):
    """Adjusted price of one item within a COMPLETED batch."""

    result_id: str
    batch_id: str
    tenant_id: str
    item_id: str
    adjusted_price: Decimal
    adjusted_currency: str
    effective_date: date
    contributions: list[ContributionEntry] = Field(default_factory=list)
    inputs_hash: str | None = None
    is_approved: bool = False
    approved_by: str | None = None
    approved_at: datetime | None = None

    model_config = {"frozen": True, "extra": "forbid"}


class BatchSubmission(BaseModel):
    """Response to a batch request."""

    batch_id: str
    status: CalcStatus
    is_duplicate: bool

    model_config = {"frozen": True, "extra": "forbid"}


class ResultSummary(BaseModel):
    item_id: str
    adjusted_price: Decimal
    adjusted_currency: str
    effective_date: date

    model_config = {"frozen": True, "extra": "forbid"}


class BatchResultView(BaseModel):
    """Response to a batch result query."""

    batch_id: str
    status: CalcStatus
    results: list[ResultSummary] = Field(default_factory=list)
    error: str | None = None

    model_config = {"frozen": True, "extra": "forbid"}
