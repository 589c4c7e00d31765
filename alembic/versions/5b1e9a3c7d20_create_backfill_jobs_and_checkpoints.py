"""Create backfill_jobs and backfill_checkpoints tables

Revision ID: 5b1e9a3c7d20
Revises:
Create Date: 2026-10-17 09:12:44.318205

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "5b1e9a3c7d20"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

ACTIVE_STATUS_SQL = "status IN ('pending', 'running', 'recovering')"


def upgrade() -> None:
    """Upgrade schema."""
    op.create_table(
        "backfill_jobs",
        sa.Column("job_id", sa.String(length=36), nullable=False),
        sa.Column("job_type", sa.String(length=40), nullable=False),
        sa.Column("target_key", sa.String(length=255), nullable=False),
        sa.Column("config", sa.JSON(), nullable=False),
        sa.Column(
            "status",
            sa.String(length=20),
            nullable=False,
            comment="pending, running, completed, failed, cancelled, recovering",
        ),
        sa.Column("total_items", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("processed_items", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("skipped_items", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("failed_items", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("current_item", sa.String(length=255), nullable=True),
        sa.Column("errors", sa.JSON(), nullable=False),
        sa.Column("error_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("snapshot_ids", sa.JSON(), nullable=False),
        sa.Column(
            "checkpoint_ref",
            sa.Integer(),
            nullable=True,
            comment="Stream offset of the last persisted checkpoint",
        ),
        sa.Column("result", sa.JSON(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("cancel_requested", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("cancel_reason", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resumed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("job_id"),
    )

    op.create_index("ix_backfill_jobs_job_type", "backfill_jobs", ["job_type"], unique=False)
    op.create_index("ix_backfill_jobs_target_key", "backfill_jobs", ["target_key"], unique=False)
    op.create_index("ix_backfill_jobs_status", "backfill_jobs", ["status"], unique=False)
    op.create_index(
        "idx_backfill_jobs_created", "backfill_jobs", ["created_at", "job_id"], unique=False
    )
    op.create_index(
        "idx_backfill_jobs_status_created", "backfill_jobs", ["status", "created_at"], unique=False
    )
    # At most one non-terminal job per target key
    op.create_index(
        "uq_backfill_jobs_active_target",
        "backfill_jobs",
        ["target_key"],
        unique=True,
        postgresql_where=sa.text(ACTIVE_STATUS_SQL),
        sqlite_where=sa.text(ACTIVE_STATUS_SQL),
    )

    op.create_table(
        "backfill_checkpoints",
        sa.Column("job_id", sa.String(length=36), nullable=False),
        sa.Column("stream_offset", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("processed_items", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("skipped_items", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("failed_items", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_items", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "stream_digest",
            sa.String(length=64),
            nullable=True,
            comment="SHA-256 of the enumerated item stream",
        ),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("job_id"),
    )


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_table("backfill_checkpoints")
    op.drop_index("uq_backfill_jobs_active_target", table_name="backfill_jobs")
    op.drop_index("idx_backfill_jobs_status_created", table_name="backfill_jobs")
    op.drop_index("idx_backfill_jobs_created", table_name="backfill_jobs")
    op.drop_index("ix_backfill_jobs_status", table_name="backfill_jobs")
    op.drop_index("ix_backfill_jobs_target_key", table_name="backfill_jobs")
    op.drop_index("ix_backfill_jobs_job_type", table_name="backfill_jobs")
    op.drop_table("backfill_jobs")
