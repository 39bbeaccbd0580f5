"""BatchOrchestrator - calculation batch lifecycle.

State machine: QUEUED -> RUNNING -> COMPLETED | FAILED. Terminal states are
immutable. Creation is idempotent on the batch identity key; execution is
all-or-nothing per batch, so a failed batch never has results.

No framework globals. Repositories, evaluator, audit sink and clock are
injected via the constructor.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

from cpam.audit.events import build_audit_event, emit_audit_event
from cpam.audit.sink import AuditSink
from cpam.calc.engine import GraphEvaluator
from cpam.models.calc_batch import (
    BatchRequest,
    BatchResultView,
    BatchSubmission,
    CalcBatch,
    CalcResult,
    CalcStatus,
    ResultSummary,
)
from cpam.persistence.repositories.batches import BatchRepository
from cpam.persistence.repositories.formulas import FormulaCatalog

logger = logging.getLogger(__name__)

SERVICE_ACTOR = "cpam-batch-orchestrator"


class BatchServiceError(Exception):
    """Base exception for batch orchestration errors."""

    pass


class TenantMismatchError(BatchServiceError):
    """Raised when a request's tenant_id does not match the service context."""

    def __init__(self, expected: str, actual: str) -> None:
        self.expected = expected
        self.actual = actual
        super().__init__(f"Tenant mismatch: expected {expected}, got {actual}")


class FormulaNotFoundError(BatchServiceError):
    """Raised when a batch references an unknown formula."""

    def __init__(self, formula_id: str, tenant_id: str) -> None:
        self.formula_id = formula_id
        self.tenant_id = tenant_id
        super().__init__(f"Formula {formula_id} not found for tenant {tenant_id}")


class NoItemsError(BatchServiceError):
    """Raised when a formula/contract selection prices no items."""

    def __init__(self, formula_id: str, contract_id: str | None) -> None:
        self.formula_id = formula_id
        self.contract_id = contract_id
        scope = f" on contract {contract_id}" if contract_id else ""
        super().__init__(f"No items priced by formula {formula_id}{scope}")


class BatchNotFoundError(BatchServiceError):
    """Raised when a batch is not found."""

    def __init__(self, batch_id: str, tenant_id: str) -> None:
        self.batch_id = batch_id
        self.tenant_id = tenant_id
        super().__init__(f"Batch {batch_id} not found for tenant {tenant_id}")


class InvalidBatchStateError(BatchServiceError):
    """Raised when an operation requires a different batch status."""

    def __init__(self, batch_id: str, status: CalcStatus, required: CalcStatus) -> None:
        self.batch_id = batch_id
        self.status = status
        self.required = required
        super().__init__(f"Batch {batch_id} is {status}, operation requires {required}")


def _utcnow() -> datetime:
    return datetime.now(UTC)


class BatchOrchestrator:
    """Creates, executes and queries calculation batches for one tenant.

    Args:
        tenant_id: Tenant scope for every operation.
        batch_repo: Tenant-scoped batch repository.
        formula_repo: Tenant-scoped formula and item catalog.
        evaluator: Graph evaluator used for every item.
        audit_sink: Sink for lifecycle audit events.
        clock: Returns the current UTC time.
    """

    def __init__(
        self,
        tenant_id: str,
        *,
        batch_repo: BatchRepository,
        formula_repo: FormulaCatalog,
        evaluator: GraphEvaluator,
        audit_sink: AuditSink,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._tenant_id = tenant_id
        self._batches = batch_repo
        self._formulas = formula_repo
        self._evaluator = evaluator
        self._audit = audit_sink
        self._clock = clock

    @property
    def tenant_id(self) -> str:
        return self._tenant_id

    def create_batch(self, request: BatchRequest) -> BatchSubmission:
        """Create a QUEUED batch, or return the existing one for the same key.

        Args:
            request: Batch request.

        Returns:
            BatchSubmission; ``is_duplicate`` is True when an existing
            QUEUED, RUNNING or COMPLETED batch was returned.

        Raises:
            TenantMismatchError: If the request names another tenant.
            FormulaNotFoundError: If the formula is unknown.
            NoItemsError: If the formula prices no items in scope.
        """
        if request.tenant_id != self._tenant_id:
            raise TenantMismatchError(self._tenant_id, request.tenant_id)
        if self._formulas.get_formula(request.formula_id) is None:
            raise FormulaNotFoundError(request.formula_id, self._tenant_id)
        if not self._formulas.list_items(request.formula_id, request.contract_id):
            raise NoItemsError(request.formula_id, request.contract_id)

        key = request.key()
        candidate = CalcBatch(
            batch_id=str(uuid.uuid4()),
            tenant_id=self._tenant_id,
            formula_id=request.formula_id,
            contract_id=request.contract_id,
            as_of_date=request.as_of_date,
            version_preference=request.version_preference,
            revision_of=request.revision_of,
            data_watermark=request.data_watermark,
            key_hash=key.digest(),
            status=CalcStatus.QUEUED,
            created_at=self._clock(),
        )
        stored, created = self._batches.insert_if_absent(candidate)

        if created:
            logger.info(
                "Created batch %s for formula %s as of %s",
                stored.batch_id,
                stored.formula_id,
                stored.as_of_date.isoformat(),
            )
            self._emit(
                "batch.created",
                stored.batch_id,
                {
                    "formula_id": stored.formula_id,
                    "contract_id": stored.contract_id,
                    "as_of_date": stored.as_of_date.isoformat(),
                    "version_preference": str(stored.version_preference),
                    "revision_of": stored.revision_of,
                },
            )
        else:
            logger.warning(
                "Duplicate batch request for formula %s as of %s, returning %s (%s)",
                request.formula_id,
                request.as_of_date.isoformat(),
                stored.batch_id,
                stored.status,
            )

        return BatchSubmission(
            batch_id=stored.batch_id, status=stored.status, is_duplicate=not created
        )

    def execute_batch(self, batch_id: str) -> CalcBatch:
        """Run a QUEUED batch to COMPLETED or FAILED.

        Every item in scope is evaluated; results are written only if all
        items succeed. A batch that is not QUEUED, or that another worker
        claimed first, is returned unchanged.

        Raises:
            BatchNotFoundError: If the batch does not exist.
        """
        batch = self._require(batch_id)
        if batch.status is not CalcStatus.QUEUED:
            logger.debug("Batch %s is %s, nothing to execute", batch_id, batch.status)
            return batch
        if not self._batches.claim(batch_id, self._clock()):
            logger.info("Batch %s was claimed by another worker", batch_id)
            return self._require(batch_id)

        logger.info("Running batch %s", batch_id)
        self._emit("batch.running", batch_id, {"formula_id": batch.formula_id})

        try:
            results = self._evaluate(batch)
        except Exception as e:
            error = f"{type(e).__name__}: {e}"
            self._batches.fail(batch_id, error, self._clock())
            logger.warning("Batch %s failed: %s", batch_id, error)
            self._emit("batch.failed", batch_id, {"error": error}, severity="HIGH")
            return self._require(batch_id)

        if not self._batches.complete_with_results(batch_id, results, self._clock()):
            logger.warning("Batch %s left RUNNING before completion was recorded", batch_id)
            return self._require(batch_id)

        logger.info("Completed batch %s with %d result(s)", batch_id, len(results))
        self._emit("batch.completed", batch_id, {"result_count": len(results)})
        return self._require(batch_id)

    def _evaluate(self, batch: CalcBatch) -> list[CalcResult]:
        formula = self._formulas.get_formula(batch.formula_id)
        if formula is None:
            raise FormulaNotFoundError(batch.formula_id, self._tenant_id)
        items = self._formulas.list_items(batch.formula_id, batch.contract_id)
        if not items:
            raise NoItemsError(batch.formula_id, batch.contract_id)

        results = []
        for item in items:
            evaluation = self._evaluator.evaluate(
                formula.graph,
                formula_type=formula.formula_type,
                base_price=item.base_price,
                base_currency=item.base_currency,
                as_of_date=batch.as_of_date,
                version_preference=batch.version_preference,
            )
            results.append(
                CalcResult(
                    result_id=str(uuid.uuid4()),
                    batch_id=batch.batch_id,
                    tenant_id=self._tenant_id,
                    item_id=item.item_id,
                    adjusted_price=evaluation.adjusted_price,
                    adjusted_currency=evaluation.currency,
                    effective_date=batch.as_of_date,
                    contributions=evaluation.contributions,
                    inputs_hash=evaluation.inputs_hash,
                )
            )
        return results

    def get_batch(self, batch_id: str) -> CalcBatch:
        """Return a batch.

        Raises:
            BatchNotFoundError: If the batch does not exist.
        """
        return self._require(batch_id)

    def get_batch_result(self, batch_id: str) -> BatchResultView:
        """Status, per-item results and error of a batch.

        Raises:
            BatchNotFoundError: If the batch does not exist.
        """
        batch = self._require(batch_id)
        results = []
        if batch.status is CalcStatus.COMPLETED:
            results = [
                ResultSummary(
                    item_id=r.item_id,
                    adjusted_price=r.adjusted_price,
                    adjusted_currency=r.adjusted_currency,
                    effective_date=r.effective_date,
                )
                for r in self._batches.list_results(batch_id)
            ]
        return BatchResultView(
            batch_id=batch.batch_id, status=batch.status, results=results, error=batch.error
        )

    def list_results(self, batch_id: str) -> list[CalcResult]:
        """Full result rows of a batch, ordered by item_id."""
        self._require(batch_id)
        return self._batches.list_results(batch_id)

    def approve_results(self, batch_id: str, approved_by: str) -> int:
        """Mark every result of a COMPLETED batch approved.

        Returns:
            Number of results newly approved.

        Raises:
            BatchNotFoundError: If the batch does not exist.
            InvalidBatchStateError: If the batch is not COMPLETED.
        """
        batch = self._require(batch_id)
        if batch.status is not CalcStatus.COMPLETED:
            raise InvalidBatchStateError(batch_id, batch.status, CalcStatus.COMPLETED)
        count = self._batches.mark_results_approved(batch_id, approved_by, self._clock())
        logger.info("Approved %d result(s) of batch %s", count, batch_id)
        self._emit(
            "batch.results_approved",
            batch_id,
            {"approved_count": count},
            actor_id=approved_by,
        )
        return count

    def expire_running(self, max_runtime: timedelta) -> list[str]:
        """Fail RUNNING batches that started more than ``max_runtime`` ago.

        Returns:
            Ids of the batches that were failed.
        """
        now = self._clock()
        expired = []
        for batch in self._batches.list_by_status(CalcStatus.RUNNING):
            if batch.started_at is None or now - batch.started_at <= max_runtime:
                continue
            error = f"Timed out after {max_runtime.total_seconds():g}s in RUNNING"
            if self._batches.fail(batch.batch_id, error, now):
                logger.warning("Batch %s expired: %s", batch.batch_id, error)
                self._emit("batch.failed", batch.batch_id, {"error": error}, severity="HIGH")
                expired.append(batch.batch_id)
        return expired

    def list_queued(self, limit: int | None = None) -> list[CalcBatch]:
        """QUEUED batches, oldest first."""
        return self._batches.list_by_status(CalcStatus.QUEUED, limit)

    def _require(self, batch_id: str) -> CalcBatch:
        batch = self._batches.get(batch_id)
        if batch is None:
            raise BatchNotFoundError(batch_id, self._tenant_id)
        return batch

    def _emit(
        self,
        event_type: str,
        batch_id: str,
        details: dict[str, object],
        *,
        severity: str = "MEDIUM",
        actor_id: str = SERVICE_ACTOR,
    ) -> None:
        event = build_audit_event(
            tenant_id=self._tenant_id,
            event_type=event_type,
            resource_type="batch",
            resource_id=batch_id,
            actor_id=actor_id,
            severity=severity,
            details=details,
            occurred_at=self._clock(),
        )
        emit_audit_event(self._audit, event)
