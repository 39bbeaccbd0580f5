"""Calculation batch and result store: SQL persistence and in-memory fallback.

Concurrency contract:
- ``insert_if_absent`` serializes on the batch identity hash. The SQL
  implementation relies on the unique ``key_hash`` constraint and re-reads
  the winning row on conflict.
- ``claim`` is an optimistic compare-and-set QUEUED -> RUNNING; only one
  caller can win it.
- ``complete_with_results`` flips RUNNING -> COMPLETED and inserts every
  result in one transaction, so a batch never carries a partial result set.
- ``fail`` releases the identity key: the stored key hash gets a
  ``:failed:<batch_id>`` suffix so the same request can be submitted again
  once new data arrives. Only QUEUED, RUNNING and COMPLETED batches
  deduplicate.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError

from cpam.models.calc_batch import CalcBatch, CalcResult, CalcStatus, ContributionEntry
from cpam.models.observation import VersionTag
from cpam.persistence.serialization import (
    dump_date,
    dump_datetime,
    dump_decimal,
    dump_json,
    load_date,
    load_datetime,
    load_decimal,
    load_json,
)

if TYPE_CHECKING:
    from sqlalchemy import Connection, Engine

logger = logging.getLogger(__name__)

_BATCH_COLUMNS = (
    "batch_id, tenant_id, formula_id, contract_id, as_of_date, version_preference, "
    "revision_of, data_watermark, key_hash, status, error, created_at, started_at, completed_at"
)

_RESULT_COLUMNS = (
    "result_id, batch_id, tenant_id, item_id, adjusted_price, adjusted_currency, "
    "effective_date, contributions, inputs_hash, is_approved, approved_by, approved_at"
)


def _row_to_batch(row: Any) -> CalcBatch:
    m = row._mapping
    return CalcBatch(
        batch_id=m["batch_id"],
        tenant_id=m["tenant_id"],
        formula_id=m["formula_id"],
        contract_id=m["contract_id"],
        as_of_date=load_date(m["as_of_date"]),
        version_preference=VersionTag(m["version_preference"]),
        revision_of=m["revision_of"],
        data_watermark=m["data_watermark"],
        key_hash=m["key_hash"],
        status=CalcStatus(m["status"]),
        error=m["error"],
        created_at=load_datetime(m["created_at"]),
        started_at=load_datetime(m["started_at"]),
        completed_at=load_datetime(m["completed_at"]),
    )


def _row_to_result(row: Any) -> CalcResult:
    m = row._mapping
    return CalcResult(
        result_id=m["result_id"],
        batch_id=m["batch_id"],
        tenant_id=m["tenant_id"],
        item_id=m["item_id"],
        adjusted_price=load_decimal(m["adjusted_price"]),
        adjusted_currency=m["adjusted_currency"],
        effective_date=load_date(m["effective_date"]),
        contributions=[ContributionEntry.model_validate(c) for c in load_json(m["contributions"])],
        inputs_hash=m["inputs_hash"],
        is_approved=bool(m["is_approved"]),
        approved_by=m["approved_by"],
        approved_at=load_datetime(m["approved_at"]),
    )


def _batch_params(batch: CalcBatch) -> dict[str, Any]:
    return {
        "batch_id": batch.batch_id,
        "tenant_id": batch.tenant_id,
        "formula_id": batch.formula_id,
        "contract_id": batch.contract_id,
        "as_of_date": dump_date(batch.as_of_date),
        "version_preference": batch.version_preference.value,
        "revision_of": batch.revision_of,
        "data_watermark": batch.data_watermark,
        "key_hash": batch.key_hash,
        "status": batch.status.value,
        "error": batch.error,
        "created_at": dump_datetime(batch.created_at),
        "started_at": dump_datetime(batch.started_at),
        "completed_at": dump_datetime(batch.completed_at),
    }


def _result_params(result: CalcResult) -> dict[str, Any]:
    return {
        "result_id": result.result_id,
        "batch_id": result.batch_id,
        "tenant_id": result.tenant_id,
        "item_id": result.item_id,
        "adjusted_price": dump_decimal(result.adjusted_price),
        "adjusted_currency": result.adjusted_currency,
        "effective_date": dump_date(result.effective_date),
        "contributions": dump_json([c.model_dump(mode="json") for c in result.contributions]),
        "inputs_hash": result.inputs_hash,
        "is_approved": result.is_approved,
        "approved_by": result.approved_by,
        "approved_at": dump_datetime(result.approved_at),
    }


class SqlBatchRepository:
    """Tenant-scoped batch/result store over a SQLAlchemy engine.

    Each operation runs in its own short transaction.

    Args:
        engine: Engine bound to a database with the calculation schema.
        tenant_id: Owning tenant; every query is filtered by it.
    """

    def __init__(self, engine: Engine, tenant_id: str) -> None:
        self._engine = engine
        self._tenant_id = tenant_id

    def insert_if_absent(self, batch: CalcBatch) -> tuple[CalcBatch, bool]:
        """Insert a QUEUED batch unless one with the same key hash exists.

        Returns:
            (stored batch, created). ``created`` is False when an existing
            batch was returned instead.
        """
        existing = self.get_by_key_hash(batch.key_hash)
        if existing is not None:
            return existing, False

        try:
            with self._engine.begin() as conn:
                conn.execute(
                    text(
                        f"""
                        INSERT INTO calc_batches ({_BATCH_COLUMNS})
                        VALUES
                            (:batch_id, :tenant_id, :formula_id, :contract_id, :as_of_date,
                             :version_preference, :revision_of, :data_watermark, :key_hash,
                             :status, :error, :created_at, :started_at, :completed_at)
                        """
                    ),
                    _batch_params(batch),
                )
        except IntegrityError:
            winner = self.get_by_key_hash(batch.key_hash)
            if winner is None:
                raise
            logger.warning(
                "Concurrent batch creation for key %s, returning %s",
                batch.key_hash[:12],
                winner.batch_id,
            )
            return winner, False
        return batch, True

    def get(self, batch_id: str) -> CalcBatch | None:
        with self._engine.connect() as conn:
            row = conn.execute(
                text(
                    f"""
                    SELECT {_BATCH_COLUMNS} FROM calc_batches
                    WHERE tenant_id = :tenant_id AND batch_id = :batch_id
                    """
                ),
                {"tenant_id": self._tenant_id, "batch_id": batch_id},
            ).fetchone()
        return _row_to_batch(row) if row is not None else None

    def get_by_key_hash(self, key_hash: str) -> CalcBatch | None:
        with self._engine.connect() as conn:
            row = conn.execute(
                text(
                    f"""
                    SELECT {_BATCH_COLUMNS} FROM calc_batches
                    WHERE tenant_id = :tenant_id AND key_hash = :key_hash
                    """
                ),
                {"tenant_id": self._tenant_id, "key_hash": key_hash},
            ).fetchone()
        return _row_to_batch(row) if row is not None else None

    def list_by_status(self, status: CalcStatus, limit: int | None = None) -> list[CalcBatch]:
        """Batches in ``status``, oldest first."""
        sql = f"""
            SELECT {_BATCH_COLUMNS} FROM calc_batches
            WHERE tenant_id = :tenant_id AND status = :status
            ORDER BY created_at, batch_id
        """
        params: dict[str, Any] = {"tenant_id": self._tenant_id, "status": status.value}
        if limit is not None:
            sql += " LIMIT :limit"
            params["limit"] = limit
        with self._engine.connect() as conn:
            rows = conn.execute(text(sql), params).fetchall()
        return [_row_to_batch(r) for r in rows]

    def claim(self, batch_id: str, started_at: datetime) -> bool:
        """Compare-and-set QUEUED -> RUNNING. True if this caller won."""
        with self._engine.begin() as conn:
            result = conn.execute(
                text(
                    """
                    UPDATE calc_batches
                    SET status = 'RUNNING', started_at = :started_at
                    WHERE tenant_id = :tenant_id AND batch_id = :batch_id
                      AND status = 'QUEUED'
                    """
                ),
                {
                    "tenant_id": self._tenant_id,
                    "batch_id": batch_id,
                    "started_at": dump_datetime(started_at),
                },
            )
            return result.rowcount == 1

    def complete_with_results(
        self, batch_id: str, results: list[CalcResult], completed_at: datetime
    ) -> bool:
        """Atomically mark a RUNNING batch COMPLETED and store its results.

        Returns:
            False (nothing written) if the batch was no longer RUNNING.
        """
        with self._engine.begin() as conn:
            if not self._finish(conn, batch_id, CalcStatus.COMPLETED, None, completed_at):
                return False
            for result in results:
                conn.execute(
                    text(
                        f"""
                        INSERT INTO calc_results ({_RESULT_COLUMNS})
                        VALUES
                            (:result_id, :batch_id, :tenant_id, :item_id, :adjusted_price,
                             :adjusted_currency, :effective_date, :contributions,
                             :inputs_hash, :is_approved, :approved_by, :approved_at)
                        """
                    ),
                    _result_params(result),
                )
            return True

    def fail(self, batch_id: str, error: str, completed_at: datetime) -> bool:
        """Mark a RUNNING batch FAILED and release its key. True if it transitioned."""
        with self._engine.begin() as conn:
            return self._finish(conn, batch_id, CalcStatus.FAILED, error, completed_at)

    def _finish(
        self,
        conn: Connection,
        batch_id: str,
        status: CalcStatus,
        error: str | None,
        completed_at: datetime,
    ) -> bool:
        key_update = ""
        if status is CalcStatus.FAILED:
            key_update = ", key_hash = key_hash || ':failed:' || batch_id"
        result = conn.execute(
            text(
                f"""
                UPDATE calc_batches
                SET status = :status, error = :error, completed_at = :completed_at{key_update}
                WHERE tenant_id = :tenant_id AND batch_id = :batch_id
                  AND status = 'RUNNING'
                """
            ),
            {
                "tenant_id": self._tenant_id,
                "batch_id": batch_id,
                "status": status.value,
                "error": error,
                "completed_at": dump_datetime(completed_at),
            },
        )
        return result.rowcount == 1

    def list_results(self, batch_id: str) -> list[CalcResult]:
        """Results of a batch ordered by item_id."""
        with self._engine.connect() as conn:
            rows = conn.execute(
                text(
                    f"""
                    SELECT {_RESULT_COLUMNS} FROM calc_results
                    WHERE tenant_id = :tenant_id AND batch_id = :batch_id
                    ORDER BY item_id
                    """
                ),
                {"tenant_id": self._tenant_id, "batch_id": batch_id},
            ).fetchall()
        return [_row_to_result(r) for r in rows]

    def mark_results_approved(self, batch_id: str, approved_by: str, approved_at: datetime) -> int:
        """Approve every not-yet-approved result of a batch. Returns rows changed."""
        with self._engine.begin() as conn:
            result = conn.execute(
                text(
                    """
                    UPDATE calc_results
                    SET is_approved = :approved, approved_by = :approved_by,
                        approved_at = :approved_at
                    WHERE tenant_id = :tenant_id AND batch_id = :batch_id
                      AND is_approved = :not_approved
                    """
                ),
                {
                    "tenant_id": self._tenant_id,
                    "batch_id": batch_id,
                    "approved": True,
                    "not_approved": False,
                    "approved_by": approved_by,
                    "approved_at": dump_datetime(approved_at),
                },
            )
            return result.rowcount


_in_memory_batches: dict[str, CalcBatch] = {}
"""Global in-memory batch store keyed by batch_id."""

_in_memory_batch_keys: dict[str, str] = {}
"""key_hash -> batch_id."""

_in_memory_results: dict[str, list[CalcResult]] = {}
"""batch_id -> results."""

_in_memory_lock = threading.Lock()


class InMemoryBatchRepository:
    """In-memory fallback batch/result store guarded by a process-wide lock.

    Args:
        tenant_id: Owning tenant.
    """

    def __init__(self, tenant_id: str) -> None:
        self._tenant_id = tenant_id

    def _visible(self, batch: CalcBatch | None) -> CalcBatch | None:
        if batch is None or batch.tenant_id != self._tenant_id:
            return None
        return batch

    def insert_if_absent(self, batch: CalcBatch) -> tuple[CalcBatch, bool]:
        with _in_memory_lock:
            existing_id = _in_memory_batch_keys.get(batch.key_hash)
            if existing_id is not None:
                return _in_memory_batches[existing_id], False
            _in_memory_batches[batch.batch_id] = batch
            _in_memory_batch_keys[batch.key_hash] = batch.batch_id
            return batch, True

    def get(self, batch_id: str) -> CalcBatch | None:
        with _in_memory_lock:
            return self._visible(_in_memory_batches.get(batch_id))

    def get_by_key_hash(self, key_hash: str) -> CalcBatch | None:
        with _in_memory_lock:
            batch_id = _in_memory_batch_keys.get(key_hash)
            if batch_id is None:
                return None
            return self._visible(_in_memory_batches.get(batch_id))

    def list_by_status(self, status: CalcStatus, limit: int | None = None) -> list[CalcBatch]:
        with _in_memory_lock:
            batches = [
                b
                for b in _in_memory_batches.values()
                if b.tenant_id == self._tenant_id and b.status == status
            ]
        batches.sort(key=lambda b: (b.created_at, b.batch_id))
        return batches[:limit] if limit is not None else batches

    def claim(self, batch_id: str, started_at: datetime) -> bool:
        with _in_memory_lock:
            batch = self._visible(_in_memory_batches.get(batch_id))
            if batch is None or batch.status != CalcStatus.QUEUED:
                return False
            _in_memory_batches[batch_id] = batch.model_copy(
                update={"status": CalcStatus.RUNNING, "started_at": started_at}
            )
            return True

    def _finish(
        self,
        batch_id: str,
        status: CalcStatus,
        error: str | None,
        completed_at: datetime,
    ) -> bool:
        batch = self._visible(_in_memory_batches.get(batch_id))
        if batch is None or batch.status != CalcStatus.RUNNING:
            return False
        update: dict[str, object] = {
            "status": status,
            "error": error,
            "completed_at": completed_at,
        }
        if status is CalcStatus.FAILED:
            _in_memory_batch_keys.pop(batch.key_hash, None)
            update["key_hash"] = f"{batch.key_hash}:failed:{batch_id}"
        _in_memory_batches[batch_id] = batch.model_copy(update=update)
        return True

    def complete_with_results(
        self, batch_id: str, results: list[CalcResult], completed_at: datetime
    ) -> bool:
        with _in_memory_lock:
            if not self._finish(batch_id, CalcStatus.COMPLETED, None, completed_at):
                return False
            _in_memory_results[batch_id] = list(results)
            return True

    def fail(self, batch_id: str, error: str, completed_at: datetime) -> bool:
        with _in_memory_lock:
            return self._finish(batch_id, CalcStatus.FAILED, error, completed_at)

    def list_results(self, batch_id: str) -> list[CalcResult]:
        with _in_memory_lock:
            results = [
                r for r in _in_memory_results.get(batch_id, []) if r.tenant_id == self._tenant_id
            ]
        return sorted(results, key=lambda r: r.item_id)

    def mark_results_approved(self, batch_id: str, approved_by: str, approved_at: datetime) -> int:
        changed = 0
        with _in_memory_lock:
            updated = []
            for result in _in_memory_results.get(batch_id, []):
                if result.tenant_id == self._tenant_id and not result.is_approved:
                    result = result.model_copy(
                        update={
                            "is_approved": True,
                            "approved_by": approved_by,
                            "approved_at": approved_at,
                        }
                    )
                    changed += 1
                updated.append(result)
            if batch_id in _in_memory_results:
                _in_memory_results[batch_id] = updated
        return changed


def clear_in_memory_batch_store() -> None:
    """Clear the in-memory batch and result stores. For testing only."""
    with _in_memory_lock:
        _in_memory_batches.clear()
        _in_memory_batch_keys.clear()
        _in_memory_results.clear()


BatchRepository = SqlBatchRepository | InMemoryBatchRepository


def get_batch_repository(engine: Engine | None, tenant_id: str) -> BatchRepository:
    """SQL repository when an engine is given, otherwise the in-memory fallback."""
    if engine is not None:
        return SqlBatchRepository(engine, tenant_id)
    return InMemoryBatchRepository(tenant_id)
