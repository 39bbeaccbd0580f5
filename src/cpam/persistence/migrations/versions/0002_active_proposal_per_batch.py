"""At most one non-rejected proposal per recalculation batch.

Revision ID: 0002
Revises: 0001
Create Date: 2026-10-20

Partial unique index; PostgreSQL and SQLite both support the WHERE clause.
"""

from alembic import op

revision = "0002"
down_revision = "0001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    """Create the active-proposal unique index."""
    op.execute(
        """
        CREATE UNIQUE INDEX IF NOT EXISTS uq_proposals_active_batch
        ON proposals (tenant_id, proposal_batch_id)
        WHERE status <> 'REJECTED'
        """
    )


def downgrade() -> None:
    """Drop the active-proposal unique index."""
    op.execute("DROP INDEX IF EXISTS uq_proposals_active_batch")
