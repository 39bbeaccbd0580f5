"""Proposal store: SQL persistence and in-memory fallback.

Status changes go through ``transition``, a compare-and-set on the current
status, so two reviewers racing on one proposal cannot both succeed.

``create`` enforces at most one non-rejected proposal per recalculation
batch: the SQL store through the partial unique index
``uq_proposals_active_batch``, the in-memory store by checking and inserting
under its lock.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Collection
from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import bindparam, text
from sqlalchemy.exc import IntegrityError

from cpam.models.proposal import ItemDelta, Proposal, ProposalStatus, ProposalType
from cpam.persistence.serialization import (
    dump_datetime,
    dump_decimal,
    dump_json,
    load_datetime,
    load_decimal,
    load_json,
)

if TYPE_CHECKING:
    from sqlalchemy import Engine

logger = logging.getLogger(__name__)


class ActiveProposalExistsError(Exception):
    """Raised when a recalculation batch already backs a non-rejected proposal.

    Attributes:
        proposal_batch_id: Recalculation batch.
        existing_proposal_id: The proposal already using the batch.
    """

    def __init__(self, proposal_batch_id: str, existing_proposal_id: str) -> None:
        self.proposal_batch_id = proposal_batch_id
        self.existing_proposal_id = existing_proposal_id
        super().__init__(
            f"Batch {proposal_batch_id} already backs active proposal {existing_proposal_id}"
        )

_COLUMNS = (
    "proposal_id, tenant_id, original_batch_id, proposal_batch_id, type, status, reason, "
    "revision_description, total_delta, delta_currency, deltas, requested_by, requested_at, "
    "reviewed_by, reviewed_at, comments"
)


def _row_to_proposal(row: Any) -> Proposal:
    m = row._mapping
    return Proposal(
        proposal_id=m["proposal_id"],
        tenant_id=m["tenant_id"],
        original_batch_id=m["original_batch_id"],
        proposal_batch_id=m["proposal_batch_id"],
        type=ProposalType(m["type"]),
        status=ProposalStatus(m["status"]),
        reason=m["reason"],
        revision_description=m["revision_description"],
        total_delta=load_decimal(m["total_delta"]),
        delta_currency=m["delta_currency"],
        deltas=[ItemDelta.model_validate(d) for d in load_json(m["deltas"])],
        requested_by=m["requested_by"],
        requested_at=load_datetime(m["requested_at"]),
        reviewed_by=m["reviewed_by"],
        reviewed_at=load_datetime(m["reviewed_at"]),
        comments=m["comments"],
    )


class SqlProposalRepository:
    """Tenant-scoped proposal store over a SQLAlchemy engine.

    Args:
        engine: Engine bound to a database with the calculation schema.
        tenant_id: Owning tenant; every query is filtered by it.
    """

    def __init__(self, engine: Engine, tenant_id: str) -> None:
        self._engine = engine
        self._tenant_id = tenant_id

    def create(self, proposal: Proposal) -> Proposal:
        """Insert a proposal.

        Raises:
            ActiveProposalExistsError: If another non-rejected proposal uses
                the same recalculation batch.
        """
        try:
            self._insert(proposal)
        except IntegrityError as e:
            existing = self.find_active_for_batch(proposal.proposal_batch_id)
            if existing is None or existing.proposal_id == proposal.proposal_id:
                raise
            raise ActiveProposalExistsError(
                proposal.proposal_batch_id, existing.proposal_id
            ) from e
        return proposal

    def _insert(self, proposal: Proposal) -> None:
        with self._engine.begin() as conn:
            conn.execute(
                text(
                    f"""
                    INSERT INTO proposals ({_COLUMNS})
                    VALUES
                        (:proposal_id, :tenant_id, :original_batch_id, :proposal_batch_id,
                         :type, :status, :reason, :revision_description, :total_delta,
                         :delta_currency, :deltas, :requested_by, :requested_at,
                         :reviewed_by, :reviewed_at, :comments)
                    """
                ),
                {
                    "proposal_id": proposal.proposal_id,
                    "tenant_id": self._tenant_id,
                    "original_batch_id": proposal.original_batch_id,
                    "proposal_batch_id": proposal.proposal_batch_id,
                    "type": proposal.type.value,
                    "status": proposal.status.value,
                    "reason": proposal.reason,
                    "revision_description": proposal.revision_description,
                    "total_delta": dump_decimal(proposal.total_delta),
                    "delta_currency": proposal.delta_currency,
                    "deltas": dump_json([d.model_dump(mode="json") for d in proposal.deltas]),
                    "requested_by": proposal.requested_by,
                    "requested_at": dump_datetime(proposal.requested_at),
                    "reviewed_by": proposal.reviewed_by,
                    "reviewed_at": dump_datetime(proposal.reviewed_at),
                    "comments": proposal.comments,
                },
            )

    def get(self, proposal_id: str) -> Proposal | None:
        with self._engine.connect() as conn:
            row = conn.execute(
                text(
                    f"""
                    SELECT {_COLUMNS} FROM proposals
                    WHERE tenant_id = :tenant_id AND proposal_id = :proposal_id
                    """
                ),
                {"tenant_id": self._tenant_id, "proposal_id": proposal_id},
            ).fetchone()
        return _row_to_proposal(row) if row is not None else None

    def list(
        self,
        status: ProposalStatus | None = None,
        original_batch_id: str | None = None,
    ) -> list[Proposal]:
        """Proposals of the tenant, oldest first, optionally filtered."""
        sql = f"SELECT {_COLUMNS} FROM proposals WHERE tenant_id = :tenant_id"
        params: dict[str, Any] = {"tenant_id": self._tenant_id}
        if status is not None:
            sql += " AND status = :status"
            params["status"] = ProposalStatus(status).value
        if original_batch_id is not None:
            sql += " AND original_batch_id = :original_batch_id"
            params["original_batch_id"] = original_batch_id
        sql += " ORDER BY requested_at, proposal_id"
        with self._engine.connect() as conn:
            rows = conn.execute(text(sql), params).fetchall()
        return [_row_to_proposal(r) for r in rows]

    def find_active_for_batch(self, proposal_batch_id: str) -> Proposal | None:
        """A non-rejected proposal referencing ``proposal_batch_id``, if any."""
        with self._engine.connect() as conn:
            row = conn.execute(
                text(
                    f"""
                    SELECT {_COLUMNS} FROM proposals
                    WHERE tenant_id = :tenant_id AND proposal_batch_id = :proposal_batch_id
                      AND status <> 'REJECTED'
                    ORDER BY requested_at
                    """
                ),
                {"tenant_id": self._tenant_id, "proposal_batch_id": proposal_batch_id},
            ).fetchone()
        return _row_to_proposal(row) if row is not None else None

    def transition(
        self,
        proposal_id: str,
        *,
        expected: Collection[ProposalStatus],
        status: ProposalStatus,
        reviewed_by: str | None = None,
        reviewed_at: datetime | None = None,
        comments: str | None = None,
    ) -> bool:
        """Move a proposal to ``status`` if it is currently in ``expected``.

        Review fields are only overwritten when given.

        Returns:
            True if the row changed.
        """
        stmt = text(
            """
            UPDATE proposals
            SET status = :status,
                reviewed_by = COALESCE(:reviewed_by, reviewed_by),
                reviewed_at = COALESCE(:reviewed_at, reviewed_at),
                comments = COALESCE(:comments, comments)
            WHERE tenant_id = :tenant_id AND proposal_id = :proposal_id
              AND status IN :expected
            """
        ).bindparams(bindparam("expected", expanding=True))
        with self._engine.begin() as conn:
            result = conn.execute(
                stmt,
                {
                    "tenant_id": self._tenant_id,
                    "proposal_id": proposal_id,
                    "status": ProposalStatus(status).value,
                    "reviewed_by": reviewed_by,
                    "reviewed_at": dump_datetime(reviewed_at),
                    "comments": comments,
                    "expected": [ProposalStatus(s).value for s in expected],
                },
            )
            return result.rowcount == 1


_in_memory_proposals: dict[str, Proposal] = {}
"""Global in-memory proposal store keyed by proposal_id."""

_in_memory_lock = threading.Lock()


class InMemoryProposalRepository:
    """In-memory fallback proposal store.

    Args:
        tenant_id: Owning tenant.
    """

    def __init__(self, tenant_id: str) -> None:
        self._tenant_id = tenant_id

    def create(self, proposal: Proposal) -> Proposal:
        with _in_memory_lock:
            for existing in _in_memory_proposals.values():
                if (
                    existing.tenant_id == self._tenant_id
                    and existing.proposal_batch_id == proposal.proposal_batch_id
                    and existing.status != ProposalStatus.REJECTED
                ):
                    raise ActiveProposalExistsError(
                        proposal.proposal_batch_id, existing.proposal_id
                    )
            _in_memory_proposals[proposal.proposal_id] = proposal
        return proposal

    def get(self, proposal_id: str) -> Proposal | None:
        with _in_memory_lock:
            proposal = _in_memory_proposals.get(proposal_id)
        if proposal is None or proposal.tenant_id != self._tenant_id:
            return None
        return proposal

    def list(
        self,
        status: ProposalStatus | None = None,
        original_batch_id: str | None = None,
    ) -> list[Proposal]:
        with _in_memory_lock:
            proposals = [p for p in _in_memory_proposals.values() if p.tenant_id == self._tenant_id]
        if status is not None:
            proposals = [p for p in proposals if p.status == status]
        if original_batch_id is not None:
            proposals = [p for p in proposals if p.original_batch_id == original_batch_id]
        return sorted(proposals, key=lambda p: (p.requested_at, p.proposal_id))

    def find_active_for_batch(self, proposal_batch_id: str) -> Proposal | None:
        for proposal in self.list():
            if (
                proposal.proposal_batch_id == proposal_batch_id
                and proposal.status != ProposalStatus.REJECTED
            ):
                return proposal
        return None

    def transition(
        self,
        proposal_id: str,
        *,
        expected: Collection[ProposalStatus],
        status: ProposalStatus,
        reviewed_by: str | None = None,
        reviewed_at: datetime | None = None,
        comments: str | None = None,
    ) -> bool:
        with _in_memory_lock:
            proposal = _in_memory_proposals.get(proposal_id)
            if proposal is None or proposal.tenant_id != self._tenant_id:
                return False
            if proposal.status not in expected:
                return False
            update: dict[str, Any] = {"status": status}
            if reviewed_by is not None:
                update["reviewed_by"] = reviewed_by
            if reviewed_at is not None:
                update["reviewed_at"] = reviewed_at
            if comments is not None:
                update["comments"] = comments
            _in_memory_proposals[proposal_id] = proposal.model_copy(update=update)
            return True


def clear_in_memory_proposal_store() -> None:
    """Clear the in-memory proposal store. For testing only."""
    with _in_memory_lock:
        _in_memory_proposals.clear()


ProposalRepository = SqlProposalRepository | InMemoryProposalRepository


def get_proposal_repository(engine: Engine | None, tenant_id: str) -> ProposalRepository:
    """SQL repository when an engine is given, otherwise the in-memory fallback."""
    if engine is not None:
        return SqlProposalRepository(engine, tenant_id)
    return InMemoryProposalRepository(tenant_id)
