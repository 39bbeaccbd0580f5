"""Revision and proposal service for CPAM.

Provides ProposalService for creating credit/debit proposals from
recalculated batches and reviewing them.
"""

from cpam.services.proposals.revision import describe_revision
from cpam.services.proposals.service import (
    NoApprovedResultsError,
    ProposalAlreadyExistsError,
    ProposalNoChangeError,
    ProposalNotFoundError,
    ProposalService,
    ProposalServiceError,
    ProposalStateError,
    RecalculationFailedError,
    RecalculationInProgressError,
    compute_deltas,
)

__all__ = [
    "NoApprovedResultsError",
    "ProposalAlreadyExistsError",
    "ProposalNoChangeError",
    "ProposalNotFoundError",
    "ProposalService",
    "ProposalServiceError",
    "ProposalStateError",
    "RecalculationFailedError",
    "RecalculationInProgressError",
    "compute_deltas",
    "describe_revision",
]
