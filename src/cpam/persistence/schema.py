"""Table definitions for the calculation store.

Decimals, dates and JSON payloads are stored as canonical text so that the
same schema behaves identically on PostgreSQL and SQLite and values
round-trip without binary floating point.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import sqlalchemy as sa

if TYPE_CHECKING:
    from sqlalchemy import Engine

metadata = sa.MetaData()

observations = sa.Table(
    "observations",
    metadata,
    sa.Column("tenant_id", sa.String(64), nullable=False),
    sa.Column("series_code", sa.String(128), nullable=False),
    sa.Column("as_of_date", sa.String(10), nullable=False),
    sa.Column("version_tag", sa.String(16), nullable=False),
    sa.Column("value", sa.Text, nullable=False),
    sa.Column("ingested_at", sa.String(40), nullable=False),
    sa.Column("provider_timestamp", sa.String(40), nullable=True),
    sa.Column("write_seq", sa.Integer, nullable=False, server_default="1"),
    sa.PrimaryKeyConstraint("tenant_id", "series_code", "as_of_date", "version_tag"),
)

calc_batches = sa.Table(
    "calc_batches",
    metadata,
    sa.Column("batch_id", sa.String(64), primary_key=True),
    sa.Column("tenant_id", sa.String(64), nullable=False, index=True),
    sa.Column("formula_id", sa.String(64), nullable=False),
    sa.Column("contract_id", sa.String(64), nullable=True),
    sa.Column("as_of_date", sa.String(10), nullable=False),
    sa.Column("version_preference", sa.String(16), nullable=False),
    sa.Column("revision_of", sa.String(64), nullable=True),
    sa.Column("data_watermark", sa.String(128), nullable=True),
    sa.Column("key_hash", sa.String(160), nullable=False),
    sa.Column("status", sa.String(16), nullable=False, index=True),
    sa.Column("error", sa.Text, nullable=True),
    sa.Column("created_at", sa.String(40), nullable=False),
    sa.Column("started_at", sa.String(40), nullable=True),
    sa.Column("completed_at", sa.String(40), nullable=True),
    sa.UniqueConstraint("key_hash", name="uq_calc_batches_key_hash"),
)

calc_results = sa.Table(
    "calc_results",
    metadata,
    sa.Column("result_id", sa.String(64), primary_key=True),
    sa.Column(
        "batch_id",
        sa.String(64),
        sa.ForeignKey("calc_batches.batch_id"),
        nullable=False,
    ),
    sa.Column("tenant_id", sa.String(64), nullable=False),
    sa.Column("item_id", sa.String(64), nullable=False),
    sa.Column("adjusted_price", sa.Text, nullable=False),
    sa.Column("adjusted_currency", sa.String(3), nullable=False),
    sa.Column("effective_date", sa.String(10), nullable=False),
    sa.Column("contributions", sa.Text, nullable=False),
    sa.Column("inputs_hash", sa.String(64), nullable=True),
    sa.Column("is_approved", sa.Boolean, nullable=False, server_default=sa.false()),
    sa.Column("approved_by", sa.String(128), nullable=True),
    sa.Column("approved_at", sa.String(40), nullable=True),
    sa.UniqueConstraint("batch_id", "item_id", name="uq_calc_results_batch_item"),
)

proposals = sa.Table(
    "proposals",
    metadata,
    sa.Column("proposal_id", sa.String(64), primary_key=True),
    sa.Column("tenant_id", sa.String(64), nullable=False, index=True),
    sa.Column("original_batch_id", sa.String(64), nullable=False, index=True),
    sa.Column("proposal_batch_id", sa.String(64), nullable=False),
    sa.Column("type", sa.String(16), nullable=False),
    sa.Column("status", sa.String(16), nullable=False),
    sa.Column("reason", sa.Text, nullable=False),
    sa.Column("revision_description", sa.Text, nullable=True),
    sa.Column("total_delta", sa.Text, nullable=False),
    sa.Column("delta_currency", sa.String(3), nullable=False),
    sa.Column("deltas", sa.Text, nullable=False),
    sa.Column("requested_by", sa.String(128), nullable=False),
    sa.Column("requested_at", sa.String(40), nullable=False),
    sa.Column("reviewed_by", sa.String(128), nullable=True),
    sa.Column("reviewed_at", sa.String(40), nullable=True),
    sa.Column("comments", sa.Text, nullable=True),
    sa.Index(
        "uq_proposals_active_batch",
        "tenant_id",
        "proposal_batch_id",
        unique=True,
        sqlite_where=sa.text("status <> 'REJECTED'"),
        postgresql_where=sa.text("status <> 'REJECTED'"),
    ),
)


def create_schema(engine: Engine) -> None:
    """Create all calculation store tables that do not exist yet."""
    metadata.create_all(engine)


def drop_schema(engine: Engine) -> None:
    """Drop all calculation store tables. For testing only."""
    metadata.drop_all(engine)
