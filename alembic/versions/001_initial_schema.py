"""Initial schema - deals and background jobs.

Revision ID: 001
Revises:
Create Date: 2026-10-18

"""

from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    """Create the pipeline and job ledger tables."""

    # 1. deals
    op.create_table(
        "deals",
        sa.Column("id", UUID(as_uuid=False), primary_key=True),
        sa.Column("business_name", sa.String(200), nullable=False),
        sa.Column("stage", sa.String(30), server_default="lead", nullable=False),
        sa.Column("status", sa.String(20), server_default="active", nullable=False),
        sa.Column("assigned_to", sa.String(100), nullable=True),
        sa.Column("estimated_monthly_volume", sa.Float, server_default="0", nullable=False),
        sa.Column("deal_probability", sa.Integer, server_default="0", nullable=False),
        sa.Column("temperature", sa.String(10), nullable=True),
        sa.Column("priority", sa.String(10), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    # Keyset pagination: Kanban columns and the default list order.
    op.create_index("ix_deals_stage_updated_at_id", "deals", ["stage", "updated_at", "id"])
    op.create_index("ix_deals_created_at_id", "deals", ["created_at", "id"])

    # 2. background_jobs
    op.create_table(
        "background_jobs",
        sa.Column("id", UUID(as_uuid=False), primary_key=True),
        sa.Column("job_type", sa.String(50), nullable=False),
        sa.Column("status", sa.String(20), server_default="pending", nullable=False),
        sa.Column("input", sa.JSON, nullable=True),
        sa.Column("result", sa.JSON, nullable=True),
        sa.Column("progress", sa.JSON, nullable=True),
        sa.Column("error_message", sa.Text, nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    # Stale-job recovery scans by status and age.
    op.create_index(
        "ix_background_jobs_status_created_at",
        "background_jobs",
        ["status", "created_at"],
    )


def downgrade() -> None:
    """Drop the pipeline and job ledger tables."""
    op.drop_index("ix_background_jobs_status_created_at", table_name="background_jobs")
    op.drop_table("background_jobs")
    op.drop_index("ix_deals_created_at_id", table_name="deals")
    op.drop_index("ix_deals_stage_updated_at_id", table_name="deals")
    op.drop_table("deals")
