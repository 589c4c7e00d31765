"""Backfill job model: the durable record of one long-running backfill."""

import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    Index,
    Integer,
    JSON,
    String,
    Text,
    TIMESTAMP,
    text,
)

from src.models.base import Base


class JobStatus(str, enum.Enum):
    """Lifecycle status values, persisted as their literal strings."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    RECOVERING = "recovering"


class JobType(str, enum.Enum):
    """Kinds of backfill work."""

    DATA_COLLECTION = "data-collection"
    ANALYTICS_GENERATION = "analytics-generation"


ACTIVE_STATUSES = (JobStatus.PENDING, JobStatus.RUNNING, JobStatus.RECOVERING)
TERMINAL_STATUSES = (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)

FORCE_CANCELLED_ERROR = "force-cancelled"

_ACTIVE_STATUS_SQL = "status IN ('pending', 'running', 'recovering')"


def generate_job_id() -> str:
    """Globally unique job identifier."""
    return str(uuid.uuid4())


class BackfillJob(Base):
    """Track a backfill job from admission to its terminal status.

    Progress counters live in columns so they can be updated with a single
    conditional UPDATE; config, errors, snapshot ids and result are JSON.
    """

    __tablename__ = "backfill_jobs"

    job_id = Column(String(36), primary_key=True, default=generate_job_id)
    job_type = Column(String(40), nullable=False, index=True)
    target_key = Column(String(255), nullable=False, index=True)
    config = Column(JSON, nullable=False, default=dict)
    rate_limit_overrides = Column(
        JSON,
        nullable=True,
        comment="Per-job fields merged over the global backfill_rate_limits row",
    )

    status = Column(
        String(20),
        nullable=False,
        default=JobStatus.PENDING.value,
        index=True,
        comment="pending, running, completed, failed, cancelled, recovering",
    )

    # Progress
    total_items = Column(Integer, nullable=False, default=0)
    processed_items = Column(Integer, nullable=False, default=0)
    skipped_items = Column(Integer, nullable=False, default=0)
    failed_items = Column(Integer, nullable=False, default=0)
    current_item = Column(String(255), nullable=True)
    errors = Column(JSON, nullable=False, default=list)
    error_count = Column(Integer, nullable=False, default=0)
    snapshot_ids = Column(JSON, nullable=False, default=list)
    checkpoint_ref = Column(
        Integer,
        nullable=True,
        comment="Stream offset of the last persisted checkpoint",
    )

    # Outcome
    result = Column(JSON, nullable=True)
    error = Column(Text, nullable=True)

    # Cancellation
    cancel_requested = Column(Boolean, nullable=False, default=False)
    cancel_reason = Column(Text, nullable=True)

    # Ownership
    run_epoch = Column(
        Integer,
        nullable=False,
        default=0,
        comment="Bumped on every claim and resume; runner writes must match it",
    )

    # Timestamps (UTC)
    created_at = Column(
        TIMESTAMP(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    started_at = Column(TIMESTAMP(timezone=True), nullable=True)
    completed_at = Column(TIMESTAMP(timezone=True), nullable=True)
    resumed_at = Column(TIMESTAMP(timezone=True), nullable=True)
    updated_at = Column(
        TIMESTAMP(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        # At most one non-terminal job per target key
        Index(
            "uq_backfill_jobs_active_target",
            "target_key",
            unique=True,
            sqlite_where=text(_ACTIVE_STATUS_SQL),
            postgresql_where=text(_ACTIVE_STATUS_SQL),
        ),
        # Newest-first listing
        Index("idx_backfill_jobs_created", "created_at", "job_id"),
        Index("idx_backfill_jobs_status_created", "status", "created_at"),
    )

    def __repr__(self):
        return (
            f"<BackfillJob(job_id='{self.job_id}', job_type='{self.job_type}', "
            f"target_key='{self.target_key}', status='{self.status}')>"
        )
