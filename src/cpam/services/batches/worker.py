"""Background worker for processing calculation batches.

Polls for QUEUED batches and executes them through a BatchOrchestrator.
The orchestrator's QUEUED -> RUNNING compare-and-set guarantees that two
workers polling the same store never execute the same batch. Store and
evaluation calls are synchronous, so they run in a worker thread and the
event loop stays free while a batch executes.

Environment:
    CPAM_WORKER_POLL_INTERVAL: Seconds between polls (default: 5).
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
from datetime import timedelta

from cpam.models.calc_batch import CalcStatus
from cpam.services.batches.orchestrator import BatchOrchestrator

logger = logging.getLogger(__name__)

CPAM_WORKER_POLL_INTERVAL_ENV = "CPAM_WORKER_POLL_INTERVAL"
DEFAULT_POLL_INTERVAL = 5.0


def get_poll_interval() -> float:
    """Poll interval from the environment, or the default."""
    raw = os.getenv(CPAM_WORKER_POLL_INTERVAL_ENV)
    if not raw:
        return DEFAULT_POLL_INTERVAL
    try:
        interval = float(raw)
    except ValueError as e:
        raise ValueError(f"{CPAM_WORKER_POLL_INTERVAL_ENV} must be a number, got {raw!r}") from e
    if interval <= 0:
        raise ValueError(f"{CPAM_WORKER_POLL_INTERVAL_ENV} must be positive, got {raw!r}")
    return interval


class BatchWorker:
    """Background worker that processes queued batches."""

    def __init__(
        self,
        orchestrator: BatchOrchestrator,
        poll_interval: float | None = None,
        batch_limit: int = 10,
        max_runtime: timedelta | None = None,
    ) -> None:
        """Initialize worker.

        Args:
            orchestrator: Tenant-scoped orchestrator that executes batches.
            poll_interval: Seconds between polls. Defaults to
                CPAM_WORKER_POLL_INTERVAL.
            batch_limit: Maximum batches executed per poll.
            max_runtime: When set, RUNNING batches older than this are
                failed at the start of every poll.
        """
        self._orchestrator = orchestrator
        self._poll_interval = poll_interval if poll_interval is not None else get_poll_interval()
        self._batch_limit = batch_limit
        self._max_runtime = max_runtime
        self._running = False
        self._task: asyncio.Task | None = None

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the worker."""
        if self._running:
            logger.warning("Worker already running")
            return

        self._running = True
        self._task = asyncio.create_task(self._poll_loop())
        logger.info("Batch worker started for tenant %s", self._orchestrator.tenant_id)

    async def stop(self) -> None:
        """Stop the worker."""
        if not self._running:
            return

        self._running = False
        if self._task:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        logger.info("Batch worker stopped for tenant %s", self._orchestrator.tenant_id)

    async def run(self, stop_event: asyncio.Event) -> None:
        """Poll until ``stop_event`` is set."""
        self._running = True
        try:
            while not stop_event.is_set():
                await self._poll_once_logged()
                with contextlib.suppress(TimeoutError):
                    await asyncio.wait_for(stop_event.wait(), timeout=self._poll_interval)
        finally:
            self._running = False

    async def _poll_loop(self) -> None:
        """Main polling loop."""
        while self._running:
            await self._poll_once_logged()
            await asyncio.sleep(self._poll_interval)

    async def _poll_once_logged(self) -> None:
        try:
            await self.run_once()
        except Exception as e:
            logger.error("Error in batch worker poll loop: %s", e, exc_info=True)

    async def run_once(self) -> dict[str, CalcStatus]:
        """Execute every currently QUEUED batch, up to ``batch_limit``.

        Returns:
            batch_id -> status after execution.
        """
        if self._max_runtime is not None:
            await asyncio.to_thread(self._orchestrator.expire_running, self._max_runtime)

        queued = await asyncio.to_thread(self._orchestrator.list_queued, self._batch_limit)
        if not queued:
            return {}

        logger.info("Found %d queued batch(es) to process", len(queued))
        outcomes: dict[str, CalcStatus] = {}
        for batch in queued:
            try:
                finished = await asyncio.to_thread(self._orchestrator.execute_batch, batch.batch_id)
            except Exception as e:
                logger.error(
                    "Failed to execute batch %s: %s",
                    batch.batch_id,
                    e,
                    extra={"batch_id": batch.batch_id, "error": str(e)},
                    exc_info=True,
                )
                continue
            outcomes[batch.batch_id] = finished.status
        return outcomes
