"""Tests for ProposalService.

Tests verify:
- Recalculating after a data revision yields signed per-item deltas
- CREDIT vs DEBIT follows the sign of the total delta
- No revision means no proposal
- One active proposal per recalculation batch, even when creators race
- A recalculation still running elsewhere is reported as in progress
- Cached FX rates never hide a revised rate from the recalculation
- Review is terminal and emits a HIGH severity audit event
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal

import pytest

from cpam.audit.sink import InMemoryAuditSink
from cpam.calc.engine import GraphEvaluator
from cpam.fx import FxRateService, TTLCache
from cpam.models.calc_batch import BatchRequest, CalcResult, CalcStatus
from cpam.models.proposal import (
    CreateProposalInput,
    ProposalStatus,
    ProposalType,
    ReviewProposalInput,
)
from cpam.persistence.repositories import (
    InMemoryBatchRepository,
    InMemoryFormulaRepository,
    InMemoryObservationRepository,
    InMemoryProposalRepository,
)
from cpam.services.batches import BatchOrchestrator, InvalidBatchStateError
from cpam.services.proposals import (
    NoApprovedResultsError,
    ProposalAlreadyExistsError,
    ProposalNoChangeError,
    ProposalNotFoundError,
    ProposalService,
    ProposalStateError,
    RecalculationFailedError,
    RecalculationInProgressError,
    compute_deltas,
    describe_revision,
)
from cpam.timeseries.resolver import VersionResolver
from tests.fixtures.builders import (
    AS_OF,
    TENANT_ID,
    FakeClock,
    make_formula,
    make_item,
    make_observation,
    passthrough_graph,
)


@pytest.fixture
def service(
    orchestrator: BatchOrchestrator,
    formula_repo: InMemoryFormulaRepository,
    observation_store: InMemoryObservationRepository,
    audit_sink: InMemoryAuditSink,
    clock: FakeClock,
) -> ProposalService:
    formula_repo.save_formula(make_formula(passthrough_graph()))
    formula_repo.save_item(make_item("item-a", "100"))
    formula_repo.save_item(make_item("item-b", "50"))
    observation_store.upsert(make_observation("IDX", AS_OF, "0"))
    return ProposalService(
        TENANT_ID,
        orchestrator=orchestrator,
        proposal_repo=InMemoryProposalRepository(TENANT_ID),
        formula_repo=formula_repo,
        observation_repo=observation_store,
        audit_sink=audit_sink,
        clock=clock,
    )


@pytest.fixture
def approved_batch(orchestrator: BatchOrchestrator, service: ProposalService) -> str:
    """COMPLETED batch with approved results at IDX = 0."""
    submission = orchestrator.create_batch(
        BatchRequest(tenant_id=TENANT_ID, formula_id="formula-1", as_of_date=AS_OF)
    )
    orchestrator.execute_batch(submission.batch_id)
    orchestrator.approve_results(submission.batch_id, "analyst-1")
    return submission.batch_id


def _revise(store: InMemoryObservationRepository, value: str) -> None:
    store.upsert(make_observation("IDX", AS_OF, value))


def _input(batch_id: str) -> CreateProposalInput:
    return CreateProposalInput(
        original_batch_id=batch_id, reason="Index revised", requested_by="analyst-2"
    )


def _result(item_id: str, price: str) -> CalcResult:
    return CalcResult(
        result_id=f"r-{item_id}-{price}",
        batch_id="b",
        tenant_id=TENANT_ID,
        item_id=item_id,
        adjusted_price=Decimal(price),
        adjusted_currency="USD",
        effective_date=AS_OF,
    )


class TestComputeDeltas:
    """Per-item delta computation."""

    def test_signed_deltas_ordered_by_item(self) -> None:
        deltas = compute_deltas(
            [_result("B", "50"), _result("A", "100")],
            [_result("A", "110"), _result("B", "45")],
        )

        assert [(d.item_id, d.delta) for d in deltas] == [
            ("A", Decimal("10")),
            ("B", Decimal("-5")),
        ]
        assert sum(d.delta for d in deltas) == Decimal("5")

    def test_unchanged_items_omitted(self) -> None:
        assert compute_deltas([_result("A", "100")], [_result("A", "100.000")]) == []


class TestCreateProposal:
    """Proposal creation."""

    def test_upward_revision_is_credit(
        self,
        service: ProposalService,
        approved_batch: str,
        observation_store: InMemoryObservationRepository,
        audit_sink: InMemoryAuditSink,
    ) -> None:
        _revise(observation_store, "10")

        summary = service.create_proposal(_input(approved_batch))

        assert summary.type is ProposalType.CREDIT
        assert summary.total_delta == Decimal("20")
        assert summary.delta_currency == "USD"
        assert [(d.item_id, d.original_price, d.revised_price) for d in summary.deltas] == [
            ("item-a", Decimal("100"), Decimal("110")),
            ("item-b", Decimal("50"), Decimal("60")),
        ]
        assert summary.proposal_batch_id != approved_batch

        proposal = service.get_proposal(summary.proposal_id)
        assert proposal.status is ProposalStatus.DRAFT
        assert proposal.revision_description == describe_revision(["IDX"], AS_OF)
        event = audit_sink.events_of_type("proposal.created")[0]
        assert event["payload"]["details"]["total_delta"] == "20.000000000000"

    def test_downward_revision_is_debit(
        self,
        service: ProposalService,
        approved_batch: str,
        observation_store: InMemoryObservationRepository,
    ) -> None:
        _revise(observation_store, "-5")

        summary = service.create_proposal(_input(approved_batch))

        assert summary.type is ProposalType.DEBIT
        assert summary.total_delta == Decimal("-10")

    def test_recalculation_links_original_batch(
        self,
        service: ProposalService,
        approved_batch: str,
        orchestrator: BatchOrchestrator,
        observation_store: InMemoryObservationRepository,
    ) -> None:
        _revise(observation_store, "10")

        summary = service.create_proposal(_input(approved_batch))

        recalculation = orchestrator.get_batch(summary.proposal_batch_id)
        assert recalculation.revision_of == approved_batch
        assert recalculation.status is CalcStatus.COMPLETED
        assert recalculation.data_watermark == observation_store.data_watermark(["IDX"])
        original = orchestrator.list_results(approved_batch)
        assert [r.adjusted_price for r in original] == [Decimal("100"), Decimal("50")]

    def test_no_revision_no_proposal(self, service: ProposalService, approved_batch: str) -> None:
        with pytest.raises(ProposalNoChangeError) as exc_info:
            service.create_proposal(_input(approved_batch))

        assert str(exc_info.value).startswith("No changes detected")
        assert service.list_proposals() == []

    def test_second_proposal_for_same_revision_rejected(
        self,
        service: ProposalService,
        approved_batch: str,
        observation_store: InMemoryObservationRepository,
    ) -> None:
        _revise(observation_store, "10")
        first = service.create_proposal(_input(approved_batch))

        with pytest.raises(ProposalAlreadyExistsError) as exc_info:
            service.create_proposal(_input(approved_batch))

        assert exc_info.value.proposal_id == first.proposal_id

    def test_rejected_proposal_can_be_recreated(
        self,
        service: ProposalService,
        approved_batch: str,
        observation_store: InMemoryObservationRepository,
    ) -> None:
        _revise(observation_store, "10")
        first = service.create_proposal(_input(approved_batch))
        service.review_proposal(
            first.proposal_id, ReviewProposalInput(approve=False, reviewer="manager-1")
        )

        second = service.create_proposal(_input(approved_batch))

        assert second.proposal_id != first.proposal_id
        assert second.proposal_batch_id == first.proposal_batch_id

    def test_unapproved_batch(
        self, service: ProposalService, orchestrator: BatchOrchestrator
    ) -> None:
        batch_id = orchestrator.create_batch(
            BatchRequest(tenant_id=TENANT_ID, formula_id="formula-1", as_of_date=AS_OF)
        ).batch_id
        orchestrator.execute_batch(batch_id)

        with pytest.raises(NoApprovedResultsError):
            service.create_proposal(_input(batch_id))

    def test_queued_batch(self, service: ProposalService, orchestrator: BatchOrchestrator) -> None:
        batch_id = orchestrator.create_batch(
            BatchRequest(tenant_id=TENANT_ID, formula_id="formula-1", as_of_date=AS_OF)
        ).batch_id

        with pytest.raises(InvalidBatchStateError):
            service.create_proposal(_input(batch_id))

    def test_failed_recalculation(
        self,
        service: ProposalService,
        approved_batch: str,
        formula_repo: InMemoryFormulaRepository,
    ) -> None:
        formula_repo.save_formula(make_formula(passthrough_graph("NEW_IDX")))

        with pytest.raises(RecalculationFailedError) as exc_info:
            service.create_proposal(_input(approved_batch))

        assert exc_info.value.error.startswith("DataUnavailableError")

    def test_running_recalculation_is_in_progress(
        self,
        service: ProposalService,
        approved_batch: str,
        orchestrator: BatchOrchestrator,
        observation_store: InMemoryObservationRepository,
        clock: FakeClock,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        _revise(observation_store, "10")
        create_batch = orchestrator.create_batch

        def create_and_claim(request: BatchRequest):
            submission = create_batch(request)
            assert InMemoryBatchRepository(TENANT_ID).claim(submission.batch_id, clock())
            return submission

        monkeypatch.setattr(orchestrator, "create_batch", create_and_claim)

        with pytest.raises(RecalculationInProgressError) as exc_info:
            service.create_proposal(_input(approved_batch))

        assert exc_info.value.status is CalcStatus.RUNNING
        assert orchestrator.get_batch(exc_info.value.batch_id).status is CalcStatus.RUNNING
        assert service.list_proposals() == []

    def test_racing_creator_gets_existing_proposal(
        self,
        service: ProposalService,
        approved_batch: str,
        observation_store: InMemoryObservationRepository,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        _revise(observation_store, "10")
        first = service.create_proposal(_input(approved_batch))
        # Both creators passed the lookup before either stored its proposal.
        monkeypatch.setattr(
            InMemoryProposalRepository, "find_active_for_batch", lambda self, batch_id: None
        )

        with pytest.raises(ProposalAlreadyExistsError) as exc_info:
            service.create_proposal(_input(approved_batch))

        assert exc_info.value.proposal_id == first.proposal_id
        assert exc_info.value.proposal_batch_id == first.proposal_batch_id
        assert [p.proposal_id for p in service.list_proposals()] == [first.proposal_id]



class TestCachedFxRevision:
    """Recalculation through a caching FX service."""

    @pytest.fixture
    def fx_service(
        self,
        formula_repo: InMemoryFormulaRepository,
        observation_store: InMemoryObservationRepository,
        audit_sink: InMemoryAuditSink,
        clock: FakeClock,
    ) -> tuple[ProposalService, str]:
        """Service over a cached FX lookup and the id of an approved batch at USDEUR 0.9."""
        resolver = VersionResolver(observation_store)
        evaluator = GraphEvaluator(
            resolver, fx_rates=FxRateService(resolver, cache=TTLCache(ttl_seconds=3600))
        )
        orchestrator = BatchOrchestrator(
            TENANT_ID,
            batch_repo=InMemoryBatchRepository(TENANT_ID),
            formula_repo=formula_repo,
            evaluator=evaluator,
            audit_sink=audit_sink,
            clock=clock,
        )
        graph = passthrough_graph()
        graph["nodes"].append(
            {
                "id": "eur",
                "type": "Convert",
                "config": {"kind": "currency", "from": "USD", "to": "EUR", "fx_series": "USDEUR"},
            }
        )
        graph["edges"] = [{"from": "idx", "to": "eur"}, {"from": "eur", "to": "out"}]
        formula_repo.save_formula(make_formula(graph))
        formula_repo.save_item(make_item("item-a", "100"))
        observation_store.upsert(make_observation("IDX", AS_OF, "10"))
        observation_store.upsert(make_observation("USDEUR", AS_OF, "0.9"))

        batch_id = orchestrator.create_batch(
            BatchRequest(tenant_id=TENANT_ID, formula_id="formula-1", as_of_date=AS_OF)
        ).batch_id
        assert orchestrator.execute_batch(batch_id).status is CalcStatus.COMPLETED
        orchestrator.approve_results(batch_id, "analyst-1")
        service = ProposalService(
            TENANT_ID,
            orchestrator=orchestrator,
            proposal_repo=InMemoryProposalRepository(TENANT_ID),
            formula_repo=formula_repo,
            observation_repo=observation_store,
            audit_sink=audit_sink,
            clock=clock,
        )
        return service, batch_id

    def test_revised_fx_rate_produces_proposal(
        self,
        fx_service: tuple[ProposalService, str],
        observation_store: InMemoryObservationRepository,
    ) -> None:
        service, batch_id = fx_service
        observation_store.upsert(make_observation("USDEUR", AS_OF, "0.8"))

        summary = service.create_proposal(_input(batch_id))

        assert summary.type is ProposalType.DEBIT
        assert [(d.original_price, d.revised_price) for d in summary.deltas] == [
            (Decimal("109"), Decimal("108"))
        ]


class TestReviewProposal:
    """Proposal review."""

    @pytest.fixture
    def proposal_id(
        self,
        service: ProposalService,
        approved_batch: str,
        observation_store: InMemoryObservationRepository,
    ) -> str:
        _revise(observation_store, "10")
        return service.create_proposal(_input(approved_batch)).proposal_id

    def test_approve(
        self, service: ProposalService, proposal_id: str, audit_sink: InMemoryAuditSink
    ) -> None:
        outcome = service.review_proposal(
            proposal_id,
            ReviewProposalInput(approve=True, reviewer="manager-1", comments="Agreed"),
        )

        assert outcome.status is ProposalStatus.APPROVED
        proposal = service.get_proposal(proposal_id)
        assert proposal.reviewed_by == "manager-1"
        assert proposal.comments == "Agreed"
        event = audit_sink.events_of_type("proposal.reviewed")[0]
        assert event["severity"] == "HIGH"
        assert event["actor"]["actor_id"] == "manager-1"

    def test_submit_then_reject(self, service: ProposalService, proposal_id: str) -> None:
        submitted = service.submit_for_review(proposal_id, "analyst-2")
        assert submitted.status is ProposalStatus.PENDING_REVIEW

        outcome = service.review_proposal(
            proposal_id, ReviewProposalInput(approve=False, reviewer="manager-1")
        )

        assert outcome.status is ProposalStatus.REJECTED
        assert service.list_proposals(ProposalStatus.REJECTED)[0].proposal_id == proposal_id

    def test_review_is_terminal(self, service: ProposalService, proposal_id: str) -> None:
        service.review_proposal(proposal_id, ReviewProposalInput(approve=True, reviewer="m-1"))
        before = service.get_proposal(proposal_id)

        with pytest.raises(ProposalStateError) as exc_info:
            service.review_proposal(
                proposal_id, ReviewProposalInput(approve=False, reviewer="m-2")
            )

        assert exc_info.value.status is ProposalStatus.APPROVED
        assert service.get_proposal(proposal_id) == before

    def test_submit_requires_draft(self, service: ProposalService, proposal_id: str) -> None:
        service.submit_for_review(proposal_id, "analyst-2")
        with pytest.raises(ProposalStateError):
            service.submit_for_review(proposal_id, "analyst-2")

    def test_review_leaves_results_untouched(
        self,
        service: ProposalService,
        proposal_id: str,
        approved_batch: str,
        orchestrator: BatchOrchestrator,
    ) -> None:
        before = orchestrator.list_results(approved_batch)

        service.review_proposal(proposal_id, ReviewProposalInput(approve=True, reviewer="m-1"))

        assert orchestrator.list_results(approved_batch) == before

    def test_unknown_proposal(self, service: ProposalService) -> None:
        with pytest.raises(ProposalNotFoundError):
            service.get_proposal("missing")


def test_describe_revision_truncates() -> None:
    codes = [f"S{i}" for i in range(7)]
    text = describe_revision(codes, date(2024, 1, 15))
    assert text == "Recalculation as of 2024-01-15 after revisions to S0, S1, S2, S3, S4 and 2 more"
