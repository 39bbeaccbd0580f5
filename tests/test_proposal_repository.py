"""Tests for the proposal store (SQLite and in-memory).

Tests verify:
- create refuses a second non-rejected proposal for one recalculation batch
- a rejected proposal frees its recalculation batch for a new proposal
- the guard is per tenant
- concurrent creates for one batch leave exactly one proposal
- transition is a compare-and-set on the current status
"""

from __future__ import annotations

import threading
import uuid
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.exc import IntegrityError

from cpam.models.proposal import ItemDelta, Proposal, ProposalStatus, ProposalType
from cpam.persistence.repositories.proposals import (
    ActiveProposalExistsError,
    InMemoryProposalRepository,
    SqlProposalRepository,
)
from cpam.persistence.schema import create_schema
from tests.fixtures.builders import OTHER_TENANT_ID, TENANT_ID

NOW = datetime(2024, 2, 1, 9, 0, tzinfo=UTC)


@pytest.fixture(params=["memory", "sqlite"])
def repo_factory(request: pytest.FixtureRequest, sqlite_engine):
    if request.param == "memory":
        return InMemoryProposalRepository
    return lambda tenant_id: SqlProposalRepository(sqlite_engine, tenant_id)


def _proposal(
    proposal_batch_id: str = "recalc-1",
    tenant_id: str = TENANT_ID,
) -> Proposal:
    return Proposal(
        proposal_id=str(uuid.uuid4()),
        tenant_id=tenant_id,
        original_batch_id="batch-1",
        proposal_batch_id=proposal_batch_id,
        type=ProposalType.CREDIT,
        reason="Final WTI published",
        total_delta=Decimal("2.5"),
        delta_currency="USD",
        deltas=[
            ItemDelta(
                item_id="A",
                original_price=Decimal("100"),
                revised_price=Decimal("102.5"),
                delta=Decimal("2.5"),
                currency="USD",
            )
        ],
        requested_by="analyst@example.com",
        requested_at=NOW,
    )


class TestActiveProposalPerBatch:
    """At most one non-rejected proposal per recalculation batch."""

    def test_second_active_proposal_rejected(self, repo_factory) -> None:
        repo = repo_factory(TENANT_ID)
        first = repo.create(_proposal())

        with pytest.raises(ActiveProposalExistsError) as exc_info:
            repo.create(_proposal())

        assert exc_info.value.existing_proposal_id == first.proposal_id
        assert exc_info.value.proposal_batch_id == "recalc-1"
        assert [p.proposal_id for p in repo.list()] == [first.proposal_id]

    def test_rejected_proposal_frees_batch(self, repo_factory) -> None:
        repo = repo_factory(TENANT_ID)
        first = repo.create(_proposal())
        assert repo.transition(
            first.proposal_id,
            expected=(ProposalStatus.DRAFT,),
            status=ProposalStatus.REJECTED,
        )

        second = repo.create(_proposal())

        assert repo.find_active_for_batch("recalc-1").proposal_id == second.proposal_id

    def test_other_batch_not_blocked(self, repo_factory) -> None:
        repo = repo_factory(TENANT_ID)
        repo.create(_proposal("recalc-1"))
        repo.create(_proposal("recalc-2"))
        assert len(repo.list()) == 2

    def test_guard_is_per_tenant(self, repo_factory) -> None:
        repo_factory(TENANT_ID).create(_proposal())
        other = repo_factory(OTHER_TENANT_ID).create(_proposal(tenant_id=OTHER_TENANT_ID))
        assert repo_factory(OTHER_TENANT_ID).get(other.proposal_id) == other

    def test_duplicate_proposal_id_is_not_reported_as_active_conflict(
        self, sqlite_engine
    ) -> None:
        repo = SqlProposalRepository(sqlite_engine, TENANT_ID)
        proposal = repo.create(_proposal())
        with pytest.raises(IntegrityError):
            repo.create(proposal)

    def test_transition_requires_expected_status(self, repo_factory) -> None:
        repo = repo_factory(TENANT_ID)
        proposal = repo.create(_proposal())
        assert not repo.transition(
            proposal.proposal_id,
            expected=(ProposalStatus.PENDING_REVIEW,),
            status=ProposalStatus.APPROVED,
        )
        assert repo.get(proposal.proposal_id).status == ProposalStatus.DRAFT


class TestConcurrentCreate:
    """Racing creates for one recalculation batch."""

    THREADS = 8

    def _race(self, repo_for_thread) -> tuple[list[Proposal], list[Exception]]:
        barrier = threading.Barrier(self.THREADS)
        created: list[Proposal] = []
        errors: list[Exception] = []
        lock = threading.Lock()

        def attempt() -> None:
            repo = repo_for_thread()
            barrier.wait()
            try:
                proposal = repo.create(_proposal())
            except ActiveProposalExistsError as e:
                with lock:
                    errors.append(e)
            else:
                with lock:
                    created.append(proposal)

        threads = [threading.Thread(target=attempt) for _ in range(self.THREADS)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        return created, errors

    def test_in_memory_single_winner(self) -> None:
        created, errors = self._race(lambda: InMemoryProposalRepository(TENANT_ID))

        assert len(created) == 1
        assert len(errors) == self.THREADS - 1
        assert all(e.existing_proposal_id == created[0].proposal_id for e in errors)

    def test_sqlite_single_winner(self, tmp_path: Path) -> None:
        engine = create_engine(
            f"sqlite:///{tmp_path / 'proposals.db'}",
            connect_args={"timeout": 30},
        )
        create_schema(engine)
        try:
            created, errors = self._race(lambda: SqlProposalRepository(engine, TENANT_ID))
            assert len(created) == 1
            assert len(errors) == self.THREADS - 1
            rows = SqlProposalRepository(engine, TENANT_ID).list()
            assert [p.proposal_id for p in rows] == [created[0].proposal_id]
        finally:
            engine.dispose()
