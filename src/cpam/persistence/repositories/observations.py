"""Observation store: SQL persistence and in-memory fallback.

Both implementations honour the uniqueness invariant: at most one row per
(tenant, series_code, as_of_date, version_tag). Re-ingesting an identical
value is a no-op (UNCHANGED); a changed value replaces the row (UPDATED).

Every write bumps a per-row write sequence. ``data_watermark`` folds the
row count and the sequence total into a token that changes whenever any
observation of the selected series is inserted or updated.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterable, Sequence
from datetime import date
from typing import TYPE_CHECKING, Any

from sqlalchemy import bindparam, text
from sqlalchemy.exc import IntegrityError

from cpam.models.observation import Observation, UpsertOutcome, VersionTag
from cpam.persistence.serialization import (
    dump_date,
    dump_datetime,
    dump_decimal,
    load_date,
    load_datetime,
    load_decimal,
)

if TYPE_CHECKING:
    from sqlalchemy import Connection, Engine

logger = logging.getLogger(__name__)

_COLUMNS = "series_code, as_of_date, version_tag, value, ingested_at, provider_timestamp"


def _row_to_observation(row: Any) -> Observation:
    m = row._mapping
    return Observation(
        series_code=m["series_code"],
        as_of_date=load_date(m["as_of_date"]),
        value=load_decimal(m["value"]),
        version_tag=VersionTag(m["version_tag"]),
        ingested_at=load_datetime(m["ingested_at"]),
        provider_timestamp=load_datetime(m["provider_timestamp"]),
    )


def _pick_latest(rows: Iterable[Observation], tags: Sequence[VersionTag]) -> Observation | None:
    """Newest date first, then the earliest tag in ``tags``."""
    best: Observation | None = None
    for obs in rows:
        if obs.version_tag not in tags:
            continue
        if best is None or obs.as_of_date > best.as_of_date:
            best = obs
        elif obs.as_of_date == best.as_of_date and tags.index(obs.version_tag) < tags.index(
            best.version_tag
        ):
            best = obs
    return best


class SqlObservationRepository:
    """Tenant-scoped observation store over a SQLAlchemy engine.

    Args:
        engine: Engine bound to a database with the calculation schema.
        tenant_id: Owning tenant; every query is filtered by it.
    """

    def __init__(self, engine: Engine, tenant_id: str) -> None:
        self._engine = engine
        self._tenant_id = tenant_id

    def upsert(self, observation: Observation) -> UpsertOutcome:
        """Insert or update one observation under the uniqueness invariant.

        Args:
            observation: Observation to write.

        Returns:
            INSERTED, UPDATED or UNCHANGED.
        """
        try:
            with self._engine.begin() as conn:
                return self._upsert(conn, observation)
        except IntegrityError:
            # A concurrent writer inserted the same key first.
            logger.warning(
                "Observation insert conflict for %s %s %s, re-reading",
                observation.series_code,
                observation.as_of_date,
                observation.version_tag,
            )
            with self._engine.begin() as conn:
                return self._upsert(conn, observation)

    def _upsert(self, conn: Connection, observation: Observation) -> UpsertOutcome:
        params = {
            "tenant_id": self._tenant_id,
            "series_code": observation.series_code,
            "as_of_date": dump_date(observation.as_of_date),
            "version_tag": observation.version_tag.value,
        }
        existing = conn.execute(
            text(
                """
                SELECT value FROM observations
                WHERE tenant_id = :tenant_id AND series_code = :series_code
                  AND as_of_date = :as_of_date AND version_tag = :version_tag
                """
            ),
            params,
        ).fetchone()

        write = {
            **params,
            "value": dump_decimal(observation.value),
            "ingested_at": dump_datetime(observation.ingested_at),
            "provider_timestamp": dump_datetime(observation.provider_timestamp),
        }
        if existing is None:
            conn.execute(
                text(
                    """
                    INSERT INTO observations
                        (tenant_id, series_code, as_of_date, version_tag, value,
                         ingested_at, provider_timestamp, write_seq)
                    VALUES
                        (:tenant_id, :series_code, :as_of_date, :version_tag, :value,
                         :ingested_at, :provider_timestamp, 1)
                    """
                ),
                write,
            )
            return UpsertOutcome.INSERTED

        if load_decimal(existing.value) == observation.value:
            return UpsertOutcome.UNCHANGED

        conn.execute(
            text(
                """
                UPDATE observations
                SET value = :value, ingested_at = :ingested_at,
                    provider_timestamp = :provider_timestamp,
                    write_seq = write_seq + 1
                WHERE tenant_id = :tenant_id AND series_code = :series_code
                  AND as_of_date = :as_of_date AND version_tag = :version_tag
                """
            ),
            write,
        )
        return UpsertOutcome.UPDATED

    def get_exact(
        self, series_code: str, as_of_date: date, version_tag: VersionTag
    ) -> Observation | None:
        with self._engine.connect() as conn:
            row = conn.execute(
                text(
                    f"""
                    SELECT {_COLUMNS} FROM observations
                    WHERE tenant_id = :tenant_id AND series_code = :series_code
                      AND as_of_date = :as_of_date AND version_tag = :version_tag
                    """
                ),
                {
                    "tenant_id": self._tenant_id,
                    "series_code": series_code,
                    "as_of_date": dump_date(as_of_date),
                    "version_tag": VersionTag(version_tag).value,
                },
            ).fetchone()
        return _row_to_observation(row) if row is not None else None

    def list_tags_for_date(self, series_code: str, as_of_date: date) -> list[Observation]:
        """All observations of a series on one date, one per tag."""
        with self._engine.connect() as conn:
            rows = conn.execute(
                text(
                    f"""
                    SELECT {_COLUMNS} FROM observations
                    WHERE tenant_id = :tenant_id AND series_code = :series_code
                      AND as_of_date = :as_of_date
                    ORDER BY version_tag
                    """
                ),
                {
                    "tenant_id": self._tenant_id,
                    "series_code": series_code,
                    "as_of_date": dump_date(as_of_date),
                },
            ).fetchall()
        return [_row_to_observation(r) for r in rows]

    def list_range(self, series_code: str, start: date, end: date) -> list[Observation]:
        """Observations with start <= as_of_date <= end, ordered by date then tag."""
        with self._engine.connect() as conn:
            rows = conn.execute(
                text(
                    f"""
                    SELECT {_COLUMNS} FROM observations
                    WHERE tenant_id = :tenant_id AND series_code = :series_code
                      AND as_of_date >= :start AND as_of_date <= :end
                    ORDER BY as_of_date, version_tag
                    """
                ),
                {
                    "tenant_id": self._tenant_id,
                    "series_code": series_code,
                    "start": dump_date(start),
                    "end": dump_date(end),
                },
            ).fetchall()
        return [_row_to_observation(r) for r in rows]

    def latest_at_or_before(
        self, series_code: str, target: date, tags: Sequence[VersionTag]
    ) -> Observation | None:
        """Most recent observation dated on or before ``target`` among ``tags``.

        Args:
            series_code: Series to query.
            target: Inclusive upper bound on as_of_date.
            tags: Acceptable tags in preference order.
        """
        tags = [VersionTag(t) for t in tags]
        if not tags:
            return None
        stmt = text(
            f"""
            SELECT {_COLUMNS} FROM observations
            WHERE tenant_id = :tenant_id AND series_code = :series_code
              AND as_of_date = (
                  SELECT MAX(as_of_date) FROM observations
                  WHERE tenant_id = :tenant_id AND series_code = :series_code
                    AND as_of_date <= :target AND version_tag IN :tags
              )
              AND version_tag IN :tags
            """
        ).bindparams(bindparam("tags", expanding=True))
        with self._engine.connect() as conn:
            rows = conn.execute(
                stmt,
                {
                    "tenant_id": self._tenant_id,
                    "series_code": series_code,
                    "target": dump_date(target),
                    "tags": [t.value for t in tags],
                },
            ).fetchall()
        return _pick_latest((_row_to_observation(r) for r in rows), tags)

    def data_watermark(self, series_codes: Iterable[str] | None = None) -> str:
        """Token that changes whenever a selected series is written.

        Args:
            series_codes: Restrict to these series; all series when None.
        """
        codes = sorted(set(series_codes)) if series_codes is not None else None
        if codes == []:
            return "0:0"
        sql = """
            SELECT COUNT(*) AS n, COALESCE(SUM(write_seq), 0) AS seq
            FROM observations WHERE tenant_id = :tenant_id
        """
        params: dict[str, Any] = {"tenant_id": self._tenant_id}
        if codes is not None:
            sql += " AND series_code IN :codes"
            params["codes"] = codes
            stmt = text(sql).bindparams(bindparam("codes", expanding=True))
        else:
            stmt = text(sql)
        with self._engine.connect() as conn:
            row = conn.execute(stmt, params).fetchone()
        return f"{int(row.n)}:{int(row.seq)}"


_in_memory_observations: dict[tuple[str, str, date, VersionTag], tuple[Observation, int]] = {}
"""Global in-memory store keyed by (tenant_id, series_code, as_of_date, version_tag)."""

_in_memory_lock = threading.Lock()


class InMemoryObservationRepository:
    """In-memory fallback observation store.

    Reads are filtered by tenant so one tenant never sees another's rows.

    Args:
        tenant_id: Owning tenant.
    """

    def __init__(self, tenant_id: str) -> None:
        self._tenant_id = tenant_id

    def _rows(self, series_code: str) -> list[Observation]:
        with _in_memory_lock:
            return [
                obs
                for (tenant, code, _, _), (obs, _) in _in_memory_observations.items()
                if tenant == self._tenant_id and code == series_code
            ]

    def upsert(self, observation: Observation) -> UpsertOutcome:
        key = (
            self._tenant_id,
            observation.series_code,
            observation.as_of_date,
            observation.version_tag,
        )
        with _in_memory_lock:
            existing = _in_memory_observations.get(key)
            if existing is None:
                _in_memory_observations[key] = (observation, 1)
                return UpsertOutcome.INSERTED
            current, seq = existing
            if current.value == observation.value:
                return UpsertOutcome.UNCHANGED
            _in_memory_observations[key] = (observation, seq + 1)
            return UpsertOutcome.UPDATED

    def get_exact(
        self, series_code: str, as_of_date: date, version_tag: VersionTag
    ) -> Observation | None:
        key = (self._tenant_id, series_code, as_of_date, VersionTag(version_tag))
        with _in_memory_lock:
            entry = _in_memory_observations.get(key)
        return entry[0] if entry is not None else None

    def list_tags_for_date(self, series_code: str, as_of_date: date) -> list[Observation]:
        rows = [o for o in self._rows(series_code) if o.as_of_date == as_of_date]
        return sorted(rows, key=lambda o: o.version_tag.value)

    def list_range(self, series_code: str, start: date, end: date) -> list[Observation]:
        rows = [o for o in self._rows(series_code) if start <= o.as_of_date <= end]
        return sorted(rows, key=lambda o: (o.as_of_date, o.version_tag.value))

    def latest_at_or_before(
        self, series_code: str, target: date, tags: Sequence[VersionTag]
    ) -> Observation | None:
        tags = [VersionTag(t) for t in tags]
        rows = [o for o in self._rows(series_code) if o.as_of_date <= target]
        return _pick_latest(rows, tags)

    def data_watermark(self, series_codes: Iterable[str] | None = None) -> str:
        codes = set(series_codes) if series_codes is not None else None
        count = 0
        total = 0
        with _in_memory_lock:
            for (tenant, code, _, _), (_, seq) in _in_memory_observations.items():
                if tenant != self._tenant_id or (codes is not None and code not in codes):
                    continue
                count += 1
                total += seq
        return f"{count}:{total}"


def clear_in_memory_observation_store() -> None:
    """Clear the in-memory observation store. For testing only."""
    with _in_memory_lock:
        _in_memory_observations.clear()


ObservationRepository = SqlObservationRepository | InMemoryObservationRepository


def get_observation_repository(engine: Engine | None, tenant_id: str) -> ObservationRepository:
    """SQL repository when an engine is given, otherwise the in-memory fallback."""
    if engine is not None:
        return SqlObservationRepository(engine, tenant_id)
    return InMemoryObservationRepository(tenant_id)
