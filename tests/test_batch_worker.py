"""Tests for the background batch worker.

Tests verify:
- run_once executes every queued batch and reports final statuses
- Stale RUNNING batches are expired before polling
- Batches execute off the event loop thread
- run() stops when its event is set
- Poll interval comes from CPAM_WORKER_POLL_INTERVAL
"""

from __future__ import annotations

import asyncio
import threading
from datetime import timedelta

import pytest

from cpam.models.calc_batch import BatchRequest, CalcStatus
from cpam.persistence.repositories import (
    InMemoryBatchRepository,
    InMemoryFormulaRepository,
    InMemoryObservationRepository,
)
from cpam.services.batches import (
    CPAM_WORKER_POLL_INTERVAL_ENV,
    BatchOrchestrator,
    BatchWorker,
    get_poll_interval,
)
from tests.fixtures.builders import (
    AS_OF,
    TENANT_ID,
    FakeClock,
    make_formula,
    make_item,
    make_observation,
    wti_change_graph,
)


@pytest.fixture(autouse=True)
def catalog(formula_repo: InMemoryFormulaRepository) -> None:
    formula_repo.save_formula(make_formula(wti_change_graph()))
    formula_repo.save_item(make_item("item-a", "100"))


def _queue(orchestrator: BatchOrchestrator, contract_id: str | None = None) -> str:
    request = BatchRequest(
        tenant_id=TENANT_ID, formula_id="formula-1", contract_id=contract_id, as_of_date=AS_OF
    )
    return orchestrator.create_batch(request).batch_id


class TestRunOnce:
    """Single poll."""

    def test_executes_queued_batches(
        self,
        orchestrator: BatchOrchestrator,
        observation_store: InMemoryObservationRepository,
    ) -> None:
        observation_store.upsert(make_observation("WTI", AS_OF, "75.50"))
        first = _queue(orchestrator)
        second = _queue(orchestrator, "contract-1")
        worker = BatchWorker(orchestrator, poll_interval=0.01)

        outcomes = asyncio.run(worker.run_once())

        assert outcomes == {first: CalcStatus.COMPLETED, second: CalcStatus.COMPLETED}
        assert orchestrator.list_queued() == []

    def test_failed_batch_reported(self, orchestrator: BatchOrchestrator) -> None:
        batch_id = _queue(orchestrator)
        worker = BatchWorker(orchestrator, poll_interval=0.01)

        assert asyncio.run(worker.run_once()) == {batch_id: CalcStatus.FAILED}

    def test_empty_queue(self, orchestrator: BatchOrchestrator) -> None:
        worker = BatchWorker(orchestrator, poll_interval=0.01)
        assert asyncio.run(worker.run_once()) == {}

    def test_batch_limit(
        self,
        orchestrator: BatchOrchestrator,
        observation_store: InMemoryObservationRepository,
    ) -> None:
        observation_store.upsert(make_observation("WTI", AS_OF, "75.50"))
        first = _queue(orchestrator)
        _queue(orchestrator, "contract-1")
        worker = BatchWorker(orchestrator, poll_interval=0.01, batch_limit=1)

        assert list(asyncio.run(worker.run_once())) == [first]
        assert len(orchestrator.list_queued()) == 1

    def test_expires_stale_running_batches(
        self, orchestrator: BatchOrchestrator, clock: FakeClock
    ) -> None:
        batch_id = _queue(orchestrator)
        InMemoryBatchRepository(TENANT_ID).claim(batch_id, clock())
        clock.advance(timedelta(minutes=30))
        worker = BatchWorker(orchestrator, poll_interval=0.01, max_runtime=timedelta(minutes=10))

        asyncio.run(worker.run_once())

        assert orchestrator.get_batch(batch_id).status is CalcStatus.FAILED

    def test_execution_leaves_event_loop_free(
        self,
        orchestrator: BatchOrchestrator,
        observation_store: InMemoryObservationRepository,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        observation_store.upsert(make_observation("WTI", AS_OF, "75.50"))
        batch_id = _queue(orchestrator)
        worker = BatchWorker(orchestrator, poll_interval=0.01)
        execute_batch = orchestrator.execute_batch
        released = threading.Event()
        threads: list[int] = []

        def blocking_execute(batch_id: str):
            threads.append(threading.get_ident())
            # Only a coroutine on the still-running loop can release this.
            assert released.wait(timeout=5)
            return execute_batch(batch_id)

        monkeypatch.setattr(orchestrator, "execute_batch", blocking_execute)

        async def release() -> None:
            await asyncio.sleep(0.01)
            released.set()

        async def scenario() -> dict[str, CalcStatus]:
            outcomes, _ = await asyncio.gather(worker.run_once(), release())
            return outcomes

        loop_thread = threading.get_ident()
        assert asyncio.run(scenario()) == {batch_id: CalcStatus.COMPLETED}
        assert threads and threads[0] != loop_thread

class TestRun:
    """Long-running loop."""

    def test_run_until_stopped(
        self,
        orchestrator: BatchOrchestrator,
        observation_store: InMemoryObservationRepository,
    ) -> None:
        observation_store.upsert(make_observation("WTI", AS_OF, "75.50"))
        batch_id = _queue(orchestrator)
        worker = BatchWorker(orchestrator, poll_interval=0.01)

        async def scenario() -> None:
            stop = asyncio.Event()
            task = asyncio.create_task(worker.run(stop))
            for _ in range(100):
                if orchestrator.get_batch(batch_id).status is CalcStatus.COMPLETED:
                    break
                await asyncio.sleep(0.01)
            stop.set()
            await task

        asyncio.run(scenario())

        assert orchestrator.get_batch(batch_id).status is CalcStatus.COMPLETED
        assert not worker.is_running

    def test_start_and_stop(self, orchestrator: BatchOrchestrator) -> None:
        worker = BatchWorker(orchestrator, poll_interval=0.01)

        async def scenario() -> None:
            await worker.start()
            assert worker.is_running
            await asyncio.sleep(0.02)
            await worker.stop()

        asyncio.run(scenario())

        assert not worker.is_running


class TestPollInterval:
    """CPAM_WORKER_POLL_INTERVAL."""

    def test_default(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv(CPAM_WORKER_POLL_INTERVAL_ENV, raising=False)
        assert get_poll_interval() == 5.0

    def test_from_env(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv(CPAM_WORKER_POLL_INTERVAL_ENV, "0.5")
        assert get_poll_interval() == 0.5

    @pytest.mark.parametrize("raw", ["soon", "0", "-1"])
    def test_invalid(self, monkeypatch: pytest.MonkeyPatch, raw: str) -> None:
        monkeypatch.setenv(CPAM_WORKER_POLL_INTERVAL_ENV, raw)
        with pytest.raises(ValueError):
            get_poll_interval()
