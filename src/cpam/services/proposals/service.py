"""ProposalService - credit/debit proposals from recalculated batches.

A proposal compares the approved results of an original batch with a fresh
recalculation of the same formula, contract, date and version preference
against current observation data. Revision detection is the recalculation
itself: when nothing changed every delta is zero and no proposal is made.

Lifecycle: DRAFT -> PENDING_REVIEW -> APPROVED | REJECTED. Review is
terminal and never touches CalcResult rows.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from datetime import UTC, datetime
from decimal import Decimal

from cpam.audit.events import build_audit_event, emit_audit_event
from cpam.audit.sink import AuditSink
from cpam.models.calc_batch import BatchRequest, CalcResult, CalcStatus
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
from cpam.persistence.repositories.formulas import FormulaCatalog
from cpam.persistence.repositories.observations import ObservationRepository
from cpam.persistence.repositories.proposals import (
    ActiveProposalExistsError,
    ProposalRepository,
)
from cpam.services.batches.orchestrator import (
    BatchOrchestrator,
    FormulaNotFoundError,
    InvalidBatchStateError,
)
from cpam.services.proposals.revision import describe_revision

logger = logging.getLogger(__name__)

REVIEWABLE = (ProposalStatus.DRAFT, ProposalStatus.PENDING_REVIEW)


class ProposalServiceError(Exception):
    """Base exception for ProposalService errors."""

    pass


class ProposalNotFoundError(ProposalServiceError):
    """Raised when a proposal is not found."""

    def __init__(self, proposal_id: str, tenant_id: str) -> None:
        self.proposal_id = proposal_id
        self.tenant_id = tenant_id
        super().__init__(f"Proposal {proposal_id} not found for tenant {tenant_id}")


class NoApprovedResultsError(ProposalServiceError):
    """Raised when the original batch has no approved results to compare."""

    def __init__(self, batch_id: str) -> None:
        self.batch_id = batch_id
        super().__init__(f"Batch {batch_id} has no approved results")


class RecalculationFailedError(ProposalServiceError):
    """Raised when the recalculation batch ends FAILED."""

    def __init__(self, batch_id: str, error: str | None) -> None:
        self.batch_id = batch_id
        self.error = error
        super().__init__(f"Recalculation batch {batch_id} failed: {error}")


class RecalculationInProgressError(ProposalServiceError):
    """Raised when the recalculation batch is still owned by another caller."""

    def __init__(self, batch_id: str, status: CalcStatus) -> None:
        self.batch_id = batch_id
        self.status = status
        super().__init__(f"Recalculation batch {batch_id} is still {status}; retry later")


class ProposalNoChangeError(ProposalServiceError):
    """Raised when recalculation changed no item price."""

    def __init__(self, original_batch_id: str, proposal_batch_id: str) -> None:
        self.original_batch_id = original_batch_id
        self.proposal_batch_id = proposal_batch_id
        super().__init__(
            f"No changes detected: recalculation {proposal_batch_id} matches "
            f"batch {original_batch_id}"
        )


class ProposalAlreadyExistsError(ProposalServiceError):
    """Raised when a non-rejected proposal already uses the recalculation batch."""

    def __init__(self, proposal_id: str, proposal_batch_id: str) -> None:
        self.proposal_id = proposal_id
        self.proposal_batch_id = proposal_batch_id
        super().__init__(
            f"Proposal {proposal_id} already exists for recalculation {proposal_batch_id}"
        )


class ProposalStateError(ProposalServiceError):
    """Raised when a proposal is not in a state that allows the operation."""

    def __init__(self, proposal_id: str, status: ProposalStatus, operation: str) -> None:
        self.proposal_id = proposal_id
        self.status = status
        self.operation = operation
        super().__init__(f"Cannot {operation} proposal {proposal_id} in status {status}")


def _utcnow() -> datetime:
    return datetime.now(UTC)


def compute_deltas(original: list[CalcResult], revised: list[CalcResult]) -> list[ItemDelta]:
    """Signed non-zero deltas for items present in both result sets.

    Ordered by item_id. The delta currency is the original result's.
    """
    revised_by_item = {r.item_id: r for r in revised}
    deltas = []
    for before in sorted(original, key=lambda r: r.item_id):
        after = revised_by_item.get(before.item_id)
        if after is None:
            continue
        delta = after.adjusted_price - before.adjusted_price
        if delta == 0:
            continue
        deltas.append(
            ItemDelta(
                item_id=before.item_id,
                original_price=before.adjusted_price,
                revised_price=after.adjusted_price,
                delta=delta,
                currency=before.adjusted_currency,
            )
        )
    return deltas


class ProposalService:
    """Creates and reviews credit/debit proposals for one tenant.

    Usage:
        service = ProposalService(tenant_id, orchestrator=..., ...)
        summary = service.create_proposal(CreateProposalInput(...))

    Args:
        tenant_id: Tenant scope for every operation.
        orchestrator: Batch orchestrator for the same tenant.
        proposal_repo: Tenant-scoped proposal repository.
        formula_repo: Tenant-scoped formula catalog.
        observation_repo: Observation store, read for the data watermark.
        audit_sink: Sink for proposal audit events.
        clock: Returns the current UTC time.
    """

    def __init__(
        self,
        tenant_id: str,
        *,
        orchestrator: BatchOrchestrator,
        proposal_repo: ProposalRepository,
        formula_repo: FormulaCatalog,
        observation_repo: ObservationRepository,
        audit_sink: AuditSink,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._tenant_id = tenant_id
        self._orchestrator = orchestrator
        self._proposals = proposal_repo
        self._formulas = formula_repo
        self._observations = observation_repo
        self._audit = audit_sink
        self._clock = clock

    def create_proposal(self, data: CreateProposalInput) -> ProposalSummary:
        """Recalculate an approved batch and record the price deltas as a DRAFT.

        Args:
            data: Original batch, reason and requester.

        Returns:
            ProposalSummary with the per-item deltas.

        Raises:
            BatchNotFoundError: If the original batch does not exist.
            InvalidBatchStateError: If the original batch is not COMPLETED.
            NoApprovedResultsError: If it has no approved results.
            RecalculationInProgressError: If another caller is still running
                the same recalculation.
            RecalculationFailedError: If the recalculation batch fails.
            ProposalAlreadyExistsError: If the recalculation already backs a
                non-rejected proposal.
            ProposalNoChangeError: If no item price changed.
        """
        original = self._orchestrator.get_batch(data.original_batch_id)
        if original.status is not CalcStatus.COMPLETED:
            raise InvalidBatchStateError(original.batch_id, original.status, CalcStatus.COMPLETED)
        approved = [r for r in self._orchestrator.list_results(original.batch_id) if r.is_approved]
        if not approved:
            raise NoApprovedResultsError(original.batch_id)

        formula = self._formulas.get_formula(original.formula_id)
        if formula is None:
            raise FormulaNotFoundError(original.formula_id, self._tenant_id)
        series = formula.graph.referenced_series()

        submission = self._orchestrator.create_batch(
            BatchRequest(
                tenant_id=self._tenant_id,
                formula_id=original.formula_id,
                contract_id=original.contract_id,
                as_of_date=original.as_of_date,
                version_preference=original.version_preference,
                revision_of=original.batch_id,
                data_watermark=self._observations.data_watermark(series),
            )
        )
        if submission.is_duplicate:
            existing = self._proposals.find_active_for_batch(submission.batch_id)
            if existing is not None:
                raise ProposalAlreadyExistsError(existing.proposal_id, submission.batch_id)

        recalculated = self._orchestrator.execute_batch(submission.batch_id)
        if recalculated.status in (CalcStatus.QUEUED, CalcStatus.RUNNING):
            raise RecalculationInProgressError(recalculated.batch_id, recalculated.status)
        if recalculated.status is not CalcStatus.COMPLETED:
            raise RecalculationFailedError(recalculated.batch_id, recalculated.error)

        revised = self._orchestrator.list_results(recalculated.batch_id)
        deltas = compute_deltas(approved, revised)
        if not deltas:
            logger.info(
                "No changes between batch %s and recalculation %s",
                original.batch_id,
                recalculated.batch_id,
            )
            raise ProposalNoChangeError(original.batch_id, recalculated.batch_id)

        total = sum((d.delta for d in deltas), Decimal(0))
        proposal = Proposal(
            proposal_id=str(uuid.uuid4()),
            tenant_id=self._tenant_id,
            original_batch_id=original.batch_id,
            proposal_batch_id=recalculated.batch_id,
            type=ProposalType.CREDIT if total > 0 else ProposalType.DEBIT,
            status=ProposalStatus.DRAFT,
            reason=data.reason,
            revision_description=data.revision_description
            or describe_revision(series, original.as_of_date),
            total_delta=total,
            delta_currency=approved[0].adjusted_currency,
            deltas=deltas,
            requested_by=data.requested_by,
            requested_at=self._clock(),
        )
        try:
            self._proposals.create(proposal)
        except ActiveProposalExistsError as e:
            raise ProposalAlreadyExistsError(e.existing_proposal_id, recalculated.batch_id) from e

        logger.info(
            "Created %s proposal %s for batch %s: total %s over %d item(s)",
            proposal.type,
            proposal.proposal_id,
            original.batch_id,
            total,
            len(deltas),
        )
        self._emit(
            "proposal.created",
            proposal.proposal_id,
            data.requested_by,
            {
                "original_batch_id": original.batch_id,
                "proposal_batch_id": recalculated.batch_id,
                "type": str(proposal.type),
                "total_delta": str(total),
                "delta_currency": proposal.delta_currency,
                "item_count": len(deltas),
            },
        )
        return ProposalSummary(
            proposal_id=proposal.proposal_id,
            type=proposal.type,
            total_delta=proposal.total_delta,
            delta_currency=proposal.delta_currency,
            deltas=proposal.deltas,
            proposal_batch_id=proposal.proposal_batch_id,
        )

    def submit_for_review(self, proposal_id: str, actor_id: str) -> Proposal:
        """Move a DRAFT proposal to PENDING_REVIEW.

        Raises:
            ProposalNotFoundError: If the proposal does not exist.
            ProposalStateError: If the proposal is not a DRAFT.
        """
        proposal = self.get_proposal(proposal_id)
        changed = self._proposals.transition(
            proposal_id,
            expected=(ProposalStatus.DRAFT,),
            status=ProposalStatus.PENDING_REVIEW,
        )
        if not changed:
            current = self.get_proposal(proposal_id)
            raise ProposalStateError(proposal_id, current.status, "submit")
        logger.info("Proposal %s submitted for review (was %s)", proposal_id, proposal.status)
        self._emit("proposal.submitted", proposal_id, actor_id, {})
        return self.get_proposal(proposal_id)

    def review_proposal(self, proposal_id: str, data: ReviewProposalInput) -> ReviewOutcome:
        """Approve or reject a DRAFT or PENDING_REVIEW proposal.

        Raises:
            ProposalNotFoundError: If the proposal does not exist.
            ProposalStateError: If the proposal was already reviewed.
        """
        proposal = self.get_proposal(proposal_id)
        if not proposal.status.is_reviewable:
            raise ProposalStateError(proposal_id, proposal.status, "review")

        status = ProposalStatus.APPROVED if data.approve else ProposalStatus.REJECTED
        reviewed_at = self._clock()
        changed = self._proposals.transition(
            proposal_id,
            expected=REVIEWABLE,
            status=status,
            reviewed_by=data.reviewer,
            reviewed_at=reviewed_at,
            comments=data.comments,
        )
        if not changed:
            current = self.get_proposal(proposal_id)
            raise ProposalStateError(proposal_id, current.status, "review")

        logger.info("Proposal %s %s by %s", proposal_id, status, data.reviewer)
        self._emit(
            "proposal.reviewed",
            proposal_id,
            data.reviewer,
            {"status": str(status), "comments": data.comments},
        )
        return ReviewOutcome(
            proposal_id=proposal_id,
            status=status,
            reviewed_by=data.reviewer,
            reviewed_at=reviewed_at,
        )

    def get_proposal(self, proposal_id: str) -> Proposal:
        """Return a proposal.

        Raises:
            ProposalNotFoundError: If the proposal does not exist.
        """
        proposal = self._proposals.get(proposal_id)
        if proposal is None:
            raise ProposalNotFoundError(proposal_id, self._tenant_id)
        return proposal

    def list_proposals(self, status: ProposalStatus | None = None) -> list[Proposal]:
        """Proposals of the tenant, oldest first."""
        return self._proposals.list(status=status)

    def _emit(
        self, event_type: str, proposal_id: str, actor_id: str, details: dict[str, object]
    ) -> None:
        event = build_audit_event(
            tenant_id=self._tenant_id,
            event_type=event_type,
            resource_type="proposal",
            resource_id=proposal_id,
            actor_id=actor_id,
            severity="HIGH" if event_type == "proposal.reviewed" else "MEDIUM",
            details=details,
            occurred_at=self._clock(),
        )
        emit_audit_event(self._audit, event)
