"""Credit/debit proposal models.

A Proposal links an approved batch to a fresh recalculation and records the
signed per-item price deltas. Review (approve or reject) is terminal.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import StrEnum

from pydantic import BaseModel, Field


class ProposalType(StrEnum):
    CREDIT = "CREDIT"
    DEBIT = "DEBIT"


class ProposalStatus(StrEnum):
    DRAFT = "DRAFT"
    PENDING_REVIEW = "PENDING_REVIEW"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"

    @property
    def is_reviewable(self) -> bool:
        return self in (ProposalStatus.DRAFT, ProposalStatus.PENDING_REVIEW)


class ItemDelta(BaseModel):
    """Signed price change of one item (revised minus original)."""

    item_id: str
    original_price: Decimal
    revised_price: Decimal
    delta: Decimal
    currency: str

    model_config = {"frozen": True, "extra": "forbid"}


class Proposal(BaseModel):
    """Persistent proposal record."""

    proposal_id: str
    tenant_id: str
    original_batch_id: str
    proposal_batch_id: str
    type: ProposalType
    status: ProposalStatus = ProposalStatus.DRAFT
    reason: str
    revision_description: str | None = None
    total_delta: Decimal
    delta_currency: str
    deltas: list[ItemDelta] = Field(default_factory=list)
    requested_by: str
    requested_at: datetime
    reviewed_by: str | None = None
    reviewed_at: datetime | None = None
    comments: str | None = None

    model_config = {"frozen": True, "extra": "forbid"}


class CreateProposalInput(BaseModel):
    """Input for creating a proposal from an approved batch."""

    original_batch_id: str = Field(..., min_length=1)
    reason: str = Field(..., min_length=1, description="Why the recalculation was requested")
    revision_description: str | None = None
    requested_by: str = Field(..., min_length=1)

    model_config = {"frozen": True, "extra": "forbid"}


class ReviewProposalInput(BaseModel):
    """Input for approving or rejecting a proposal."""

    approve: bool
    reviewer: str = Field(..., min_length=1)
    comments: str | None = None

    model_config = {"frozen": True, "extra": "forbid"}


class ProposalSummary(BaseModel):
    """Response to a proposal request."""

    proposal_id: str
    type: ProposalType
    total_delta: Decimal
    delta_currency: str
    deltas: list[ItemDelta]
    proposal_batch_id: str

    model_config = {"frozen": True, "extra": "forbid"}


class ReviewOutcome(BaseModel):
    """Response to a proposal review."""

    proposal_id: str
    status: ProposalStatus
    reviewed_by: str
    reviewed_at: datetime

    model_config = {"frozen": True, "extra": "forbid"}
