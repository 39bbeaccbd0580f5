"""Pytest configuration and fixtures for CPAM tests.

This module provides common fixtures and configuration for all tests.
"""

from __future__ import annotations

from collections.abc import Generator

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from cpam.audit.sink import InMemoryAuditSink
from cpam.calc.engine import GraphEvaluator
from cpam.persistence.repositories import (
    InMemoryBatchRepository,
    InMemoryFormulaRepository,
    InMemoryObservationRepository,
    clear_in_memory_batch_store,
    clear_in_memory_formula_store,
    clear_in_memory_observation_store,
    clear_in_memory_proposal_store,
)
from cpam.persistence.schema import create_schema
from cpam.services.batches import BatchOrchestrator
from cpam.timeseries.resolver import VersionResolver
from cpam.timeseries.versioning import CPAM_VERSION_POLICY_ENV
from tests.fixtures.builders import TENANT_ID, FakeClock


@pytest.fixture(autouse=True)
def clean_in_memory_stores() -> Generator[None, None, None]:
    """Start and finish every test with empty in-memory repositories."""
    clear_in_memory_observation_store()
    clear_in_memory_batch_store()
    clear_in_memory_proposal_store()
    clear_in_memory_formula_store()
    yield
    clear_in_memory_observation_store()
    clear_in_memory_batch_store()
    clear_in_memory_proposal_store()
    clear_in_memory_formula_store()


@pytest.fixture(autouse=True)
def default_version_policy(monkeypatch: pytest.MonkeyPatch) -> None:
    """Pin the resolver default so a developer's environment cannot leak in."""
    monkeypatch.delenv(CPAM_VERSION_POLICY_ENV, raising=False)


@pytest.fixture
def sqlite_engine():
    """In-memory SQLite engine with the calculation schema, shared across threads."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    create_schema(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def audit_sink() -> InMemoryAuditSink:
    return InMemoryAuditSink()


@pytest.fixture
def observation_store() -> InMemoryObservationRepository:
    return InMemoryObservationRepository(TENANT_ID)


@pytest.fixture
def formula_repo() -> InMemoryFormulaRepository:
    return InMemoryFormulaRepository(TENANT_ID)


@pytest.fixture
def orchestrator(
    observation_store: InMemoryObservationRepository,
    formula_repo: InMemoryFormulaRepository,
    audit_sink: InMemoryAuditSink,
    clock: FakeClock,
) -> BatchOrchestrator:
    """Orchestrator over in-memory stores for TENANT_ID."""
    return BatchOrchestrator(
        TENANT_ID,
        batch_repo=InMemoryBatchRepository(TENANT_ID),
        formula_repo=formula_repo,
        evaluator=GraphEvaluator(VersionResolver(observation_store)),
        audit_sink=audit_sink,
        clock=clock,
    )
