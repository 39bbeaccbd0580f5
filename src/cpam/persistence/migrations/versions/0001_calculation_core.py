"""Calculation core: observations, calc_batches, calc_results, proposals.

Revision ID: 0001
Revises:
Create Date: 2026-10-19

Decimal values, dates and timestamps are stored as canonical text.
The unique key_hash column on calc_batches backs batch idempotency.
"""

from alembic import op

revision = "0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    """Create the calculation store tables."""
    op.execute(
        """
        CREATE TABLE IF NOT EXISTS observations (
            tenant_id VARCHAR(64) NOT NULL,
            series_code VARCHAR(128) NOT NULL,
            as_of_date VARCHAR(10) NOT NULL,
            version_tag VARCHAR(16) NOT NULL,
            value TEXT NOT NULL,
            ingested_at VARCHAR(40) NOT NULL,
            provider_timestamp VARCHAR(40),
            write_seq INTEGER NOT NULL DEFAULT 1,
            PRIMARY KEY (tenant_id, series_code, as_of_date, version_tag)
        )
        """
    )

    op.execute(
        """
        CREATE TABLE IF NOT EXISTS calc_batches (
            batch_id VARCHAR(64) PRIMARY KEY,
            tenant_id VARCHAR(64) NOT NULL,
            formula_id VARCHAR(64) NOT NULL,
            contract_id VARCHAR(64),
            as_of_date VARCHAR(10) NOT NULL,
            version_preference VARCHAR(16) NOT NULL,
            revision_of VARCHAR(64),
            data_watermark VARCHAR(128),
            key_hash VARCHAR(160) NOT NULL,
            status VARCHAR(16) NOT NULL,
            error TEXT,
            created_at VARCHAR(40) NOT NULL,
            started_at VARCHAR(40),
            completed_at VARCHAR(40),
            CONSTRAINT uq_calc_batches_key_hash UNIQUE (key_hash)
        )
        """
    )
    op.execute("CREATE INDEX IF NOT EXISTS ix_calc_batches_tenant_id ON calc_batches (tenant_id)")
    op.execute("CREATE INDEX IF NOT EXISTS ix_calc_batches_status ON calc_batches (status)")

    op.execute(
        """
        CREATE TABLE IF NOT EXISTS calc_results (
            result_id VARCHAR(64) PRIMARY KEY,
            batch_id VARCHAR(64) NOT NULL REFERENCES calc_batches (batch_id),
            tenant_id VARCHAR(64) NOT NULL,
            item_id VARCHAR(64) NOT NULL,
            adjusted_price TEXT NOT NULL,
            adjusted_currency VARCHAR(3) NOT NULL,
            effective_date VARCHAR(10) NOT NULL,
            contributions TEXT NOT NULL,
            inputs_hash VARCHAR(64),
            is_approved BOOLEAN NOT NULL DEFAULT FALSE,
            approved_by VARCHAR(128),
            approved_at VARCHAR(40),
            CONSTRAINT uq_calc_results_batch_item UNIQUE (batch_id, item_id)
        )
        """
    )

    op.execute(
        """
        CREATE TABLE IF NOT EXISTS proposals (
            proposal_id VARCHAR(64) PRIMARY KEY,
            tenant_id VARCHAR(64) NOT NULL,
            original_batch_id VARCHAR(64) NOT NULL,
            proposal_batch_id VARCHAR(64) NOT NULL,
            type VARCHAR(16) NOT NULL,
            status VARCHAR(16) NOT NULL,
            reason TEXT NOT NULL,
            revision_description TEXT,
            total_delta TEXT NOT NULL,
            delta_currency VARCHAR(3) NOT NULL,
            deltas TEXT NOT NULL,
            requested_by VARCHAR(128) NOT NULL,
            requested_at VARCHAR(40) NOT NULL,
            reviewed_by VARCHAR(128),
            reviewed_at VARCHAR(40),
            comments TEXT
        )
        """
    )
    op.execute("CREATE INDEX IF NOT EXISTS ix_proposals_tenant_id ON proposals (tenant_id)")
    op.execute(
        "CREATE INDEX IF NOT EXISTS ix_proposals_original_batch_id ON proposals (original_batch_id)"
    )


def downgrade() -> None:
    """Drop the calculation store tables."""
    op.execute("DROP TABLE IF EXISTS proposals")
    op.execute("DROP TABLE IF EXISTS calc_results")
    op.execute("DROP TABLE IF EXISTS calc_batches")
    op.execute("DROP TABLE IF EXISTS observations")
