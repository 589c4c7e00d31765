"""Model for backfill resume checkpoints."""

from datetime import datetime, timezone

from sqlalchemy import Column, Integer, String, TIMESTAMP

from src.models.base import Base


class BackfillCheckpoint(Base):
    """Resume position of a non-terminal backfill job.

    One row per job id. Written together with the job's progress columns and
    deleted in the same transaction as any terminal transition.
    """

    __tablename__ = "backfill_checkpoints"

    job_id = Column(String(36), primary_key=True)
    offset = Column("stream_offset", Integer, nullable=False, default=0)
    processed_items = Column(Integer, nullable=False, default=0)
    skipped_items = Column(Integer, nullable=False, default=0)
    failed_items = Column(Integer, nullable=False, default=0)
    total_items = Column(Integer, nullable=False, default=0)
    stream_digest = Column(
        String(64),
        nullable=True,
        comment="SHA-256 of the enumerated item stream",
    )
    updated_at = Column(
        TIMESTAMP(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    def __repr__(self):
        return (
            f"<BackfillCheckpoint(job_id='{self.job_id}', offset={self.offset}, "
            f"total_items={self.total_items})>"
        )
