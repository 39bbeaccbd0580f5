"""Tests for the observation store (SQLite and in-memory).

Tests verify:
- One row per (series, date, tag): re-ingest is UNCHANGED, a new value UPDATED
- Tenant isolation
- latest_at_or_before tag precedence on the newest date
- data_watermark changes on every write of the selected series only
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal

import pytest

from cpam.models.observation import UpsertOutcome, VersionTag
from cpam.persistence.repositories.observations import (
    InMemoryObservationRepository,
    SqlObservationRepository,
    get_observation_repository,
)
from tests.fixtures.builders import OTHER_TENANT_ID, TENANT_ID, make_observation


@pytest.fixture(params=["memory", "sqlite"])
def repo_factory(request: pytest.FixtureRequest, sqlite_engine):
    """Build repositories of either backend for any tenant."""
    if request.param == "memory":
        return InMemoryObservationRepository
    return lambda tenant_id: SqlObservationRepository(sqlite_engine, tenant_id)


class TestUpsert:
    """Uniqueness invariant."""

    def test_insert_then_unchanged_then_updated(self, repo_factory) -> None:
        repo = repo_factory(TENANT_ID)
        day = date(2024, 1, 15)
        assert repo.upsert(make_observation("WTI", day, "75.50")) is UpsertOutcome.INSERTED
        assert repo.upsert(make_observation("WTI", day, "75.500")) is UpsertOutcome.UNCHANGED
        assert repo.upsert(make_observation("WTI", day, "76.00")) is UpsertOutcome.UPDATED

        rows = repo.list_tags_for_date("WTI", day)
        assert len(rows) == 1
        assert rows[0].value == Decimal("76.00")

    def test_tags_are_separate_rows(self, repo_factory) -> None:
        repo = repo_factory(TENANT_ID)
        day = date(2024, 1, 15)
        repo.upsert(make_observation("WTI", day, "75.50", VersionTag.FINAL))
        repo.upsert(make_observation("WTI", day, "75.10", VersionTag.PRELIMINARY))
        tags = {o.version_tag for o in repo.list_tags_for_date("WTI", day)}
        assert tags == {VersionTag.FINAL, VersionTag.PRELIMINARY}
        assert repo.get_exact("WTI", day, VersionTag.PRELIMINARY).value == Decimal("75.10")

    def test_decimal_precision_preserved(self, repo_factory) -> None:
        repo = repo_factory(TENANT_ID)
        day = date(2024, 1, 15)
        repo.upsert(make_observation("EURUSD", day, "1.093456789012"))
        assert repo.get_exact("EURUSD", day, VersionTag.FINAL).value == Decimal("1.093456789012")

    def test_tenant_isolation(self, repo_factory) -> None:
        """Another tenant never sees the rows."""
        repo_factory(TENANT_ID).upsert(make_observation("WTI", date(2024, 1, 15), "75.50"))
        other = repo_factory(OTHER_TENANT_ID)
        assert other.list_tags_for_date("WTI", date(2024, 1, 15)) == []
        assert other.data_watermark() == "0:0"


class TestQueries:
    """Range and as-of lookups."""

    def test_list_range_ordered(self, repo_factory) -> None:
        repo = repo_factory(TENANT_ID)
        points = [(date(2024, 1, 17), "3"), (date(2024, 1, 2), "1"), (date(2024, 1, 9), "2")]
        for day, value in points:
            repo.upsert(make_observation("IDX", day, value))
        rows = repo.list_range("IDX", date(2024, 1, 1), date(2024, 1, 10))
        assert [o.value for o in rows] == [Decimal("1"), Decimal("2")]

    def test_latest_at_or_before_prefers_newest_date(self, repo_factory) -> None:
        repo = repo_factory(TENANT_ID)
        repo.upsert(make_observation("IDX", date(2024, 1, 5), "10", VersionTag.REVISED))
        repo.upsert(make_observation("IDX", date(2024, 1, 8), "11", VersionTag.PRELIMINARY))
        repo.upsert(make_observation("IDX", date(2024, 1, 8), "12", VersionTag.FINAL))
        order = [VersionTag.FINAL, VersionTag.REVISED, VersionTag.PRELIMINARY]
        obs = repo.latest_at_or_before("IDX", date(2024, 1, 10), order)
        assert (obs.as_of_date, obs.value) == (date(2024, 1, 8), Decimal("12"))

    def test_latest_at_or_before_respects_tags(self, repo_factory) -> None:
        """Tags outside the order are skipped even on newer dates."""
        repo = repo_factory(TENANT_ID)
        repo.upsert(make_observation("IDX", date(2024, 1, 5), "10", VersionTag.FINAL))
        repo.upsert(make_observation("IDX", date(2024, 1, 8), "11", VersionTag.PRELIMINARY))
        obs = repo.latest_at_or_before("IDX", date(2024, 1, 10), [VersionTag.FINAL])
        assert obs.as_of_date == date(2024, 1, 5)


class TestWatermark:
    """data_watermark."""

    def test_changes_on_insert_and_update_only(self, repo_factory) -> None:
        repo = repo_factory(TENANT_ID)
        day = date(2024, 1, 15)
        empty = repo.data_watermark()
        repo.upsert(make_observation("WTI", day, "75.50"))
        inserted = repo.data_watermark()
        repo.upsert(make_observation("WTI", day, "75.50"))
        assert repo.data_watermark() == inserted
        repo.upsert(make_observation("WTI", day, "76.00"))
        updated = repo.data_watermark()
        assert len({empty, inserted, updated}) == 3

    def test_restricted_to_series(self, repo_factory) -> None:
        repo = repo_factory(TENANT_ID)
        repo.upsert(make_observation("WTI", date(2024, 1, 15), "75.50"))
        before = repo.data_watermark(["WTI"])
        repo.upsert(make_observation("BRENT", date(2024, 1, 15), "80.00"))
        assert repo.data_watermark(["WTI"]) == before
        assert repo.data_watermark([]) == "0:0"


def test_factory_selects_backend(sqlite_engine) -> None:
    """An engine selects SQL, None the in-memory fallback."""
    sql_repo = get_observation_repository(sqlite_engine, TENANT_ID)
    assert isinstance(sql_repo, SqlObservationRepository)
    assert isinstance(get_observation_repository(None, TENANT_ID), InMemoryObservationRepository)
