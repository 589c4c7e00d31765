"""Add run_epoch and rate limit overrides to backfill_jobs, create backfill_rate_limits

Revision ID: 8d4f2c61a9e3
Revises: 5b1e9a3c7d20
Create Date: 2026-10-17 14:03:27.905117

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "8d4f2c61a9e3"
down_revision: Union[str, Sequence[str], None] = "5b1e9a3c7d20"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""
    with op.batch_alter_table("backfill_jobs") as batch_op:
        batch_op.add_column(
            sa.Column(
                "run_epoch",
                sa.Integer(),
                nullable=False,
                server_default="0",
                comment="Bumped on every claim and resume; runner writes must match it",
            )
        )
        batch_op.add_column(
            sa.Column(
                "rate_limit_overrides",
                sa.JSON(),
                nullable=True,
                comment="Per-job fields merged over the global backfill_rate_limits row",
            )
        )

    op.create_table(
        "backfill_rate_limits",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column(
            "max_items_per_minute",
            sa.Integer(),
            nullable=True,
            comment="Cap on items started per rolling minute; NULL means uncapped",
        ),
        sa.Column(
            "min_delay_seconds",
            sa.Float(),
            nullable=False,
            server_default="0",
            comment="Minimum spacing between the starts of consecutive items",
        ),
        sa.Column(
            "max_delay_seconds",
            sa.Float(),
            nullable=False,
            server_default="30",
            comment="Upper bound of the retry backoff",
        ),
        sa.Column("backoff_multiplier", sa.Float(), nullable=False, server_default="2"),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_table("backfill_rate_limits")
    with op.batch_alter_table("backfill_jobs") as batch_op:
        batch_op.drop_column("rate_limit_overrides")
        batch_op.drop_column("run_epoch")
