"""Tests for the observation ingestion boundary.

Tests verify:
- RetryPolicy schedule: 1 initial try + 3 retries at 1s, 2s, 4s
- Transient failures are retried with the schedule, then surfaced
- Rate-limit delay between consecutive writes
- Feed records reject floats and normalize provider tags
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal

import pytest
from pydantic import ValidationError

from cpam.models.observation import Observation, UpsertOutcome, VersionTag
from cpam.persistence.repositories.observations import InMemoryObservationRepository
from cpam.timeseries.ingestion import (
    IngestionError,
    ObservationIngestor,
    ObservationRecord,
    TransientIngestionError,
)
from cpam.timeseries.retry import RetryPolicy, compute_backoff_seconds
from tests.fixtures.builders import TENANT_ID


class FlakyStore:
    """Store that raises TransientIngestionError for the first ``failures`` writes."""

    def __init__(self, failures: int) -> None:
        self.failures = failures
        self.calls = 0
        self.inner = InMemoryObservationRepository(TENANT_ID)

    def upsert(self, observation: Observation) -> UpsertOutcome:
        self.calls += 1
        if self.calls <= self.failures:
            raise TransientIngestionError(f"timeout #{self.calls}")
        return self.inner.upsert(observation)


def _record(day: int = 15, value: str = "75.50", tag: str = "FINAL") -> ObservationRecord:
    return ObservationRecord(
        series_code="WTI", as_of_date=date(2024, 1, day), value=value, version_tag=tag
    )


class TestRetryPolicy:
    """Retry schedule value object."""

    def test_default_schedule(self) -> None:
        policy = RetryPolicy()
        assert policy.max_attempts == 4
        assert [policy.delay_for(i) for i in range(3)] == [1.0, 2.0, 4.0]
        assert policy.delay_for(7) == 4.0

    def test_exponential_matches_default(self) -> None:
        assert RetryPolicy.exponential() == RetryPolicy()
        assert compute_backoff_seconds(3, cap_seconds=5) == 5.0

    def test_no_retry(self) -> None:
        assert RetryPolicy.no_retry().is_exhausted(1)

    def test_invalid_policies(self) -> None:
        with pytest.raises(ValueError):
            RetryPolicy(max_attempts=0)
        with pytest.raises(ValueError):
            RetryPolicy(max_attempts=3, backoff_schedule=())


class TestIngestor:
    """Retrying, rate-limited writes."""

    def test_retries_then_succeeds(self) -> None:
        sleeps: list[float] = []
        store = FlakyStore(failures=2)
        ingestor = ObservationIngestor(store, rate_limit_delay=0, sleep=sleeps.append)

        report = ingestor.ingest([_record()])

        assert report.inserted == 1
        assert report.retries == 2
        assert sleeps == [1.0, 2.0]
        assert store.calls == 3

    def test_exhausted_retries_raise(self) -> None:
        sleeps: list[float] = []
        store = FlakyStore(failures=10)
        ingestor = ObservationIngestor(store, rate_limit_delay=0, sleep=sleeps.append)

        with pytest.raises(IngestionError) as exc_info:
            ingestor.ingest([_record()])

        assert exc_info.value.attempts == 4
        assert exc_info.value.series_code == "WTI"
        assert sleeps == [1.0, 2.0, 4.0]

    def test_rate_limit_between_writes(self) -> None:
        sleeps: list[float] = []
        store = InMemoryObservationRepository(TENANT_ID)
        ingestor = ObservationIngestor(store, rate_limit_delay=0.25, sleep=sleeps.append)

        report = ingestor.ingest([_record(15), _record(16), _record(15)])

        assert sleeps == [0.25, 0.25]
        assert (report.inserted, report.unchanged) == (2, 1)
        assert report.written == 2

    def test_non_transient_errors_propagate(self) -> None:
        class BrokenStore:
            def upsert(self, observation: Observation) -> UpsertOutcome:
                raise RuntimeError("disk full")

        ingestor = ObservationIngestor(BrokenStore(), rate_limit_delay=0, sleep=lambda _: None)
        with pytest.raises(RuntimeError, match="disk full"):
            ingestor.ingest([_record()])


class TestObservationRecord:
    """Feed record validation."""

    def test_provider_tag_spellings(self) -> None:
        assert _record(tag="final").version_tag is VersionTag.FINAL
        assert _record(tag="rev3").version_tag is VersionTag.REVISED

    def test_unknown_tag_rejected(self) -> None:
        with pytest.raises(ValidationError):
            _record(tag="draft")

    def test_float_value_rejected(self) -> None:
        with pytest.raises(ValidationError):
            ObservationRecord(
                series_code="WTI", as_of_date=date(2024, 1, 15), value=75.5, version_tag="FINAL"
            )

    def test_to_observation_keeps_decimal(self) -> None:
        assert _record(value="75.500").to_observation().value == Decimal("75.500")
