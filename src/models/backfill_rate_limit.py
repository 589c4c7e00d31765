"""Model for the runtime rate limit applied to backfill item processing."""

from datetime import datetime, timezone

from sqlalchemy import Column, Float, Integer, TIMESTAMP

from src.models.base import Base

# The table holds a single row
RATE_LIMIT_ROW_ID = 1


class BackfillRateLimit(Base):
    """Global pacing for item processing, editable while the service runs.

    Jobs may override individual fields through ``rate_limit_overrides`` on
    their own record; the runner merges the two when it starts a job.
    """

    __tablename__ = "backfill_rate_limits"

    id = Column(Integer, primary_key=True, default=RATE_LIMIT_ROW_ID)
    max_items_per_minute = Column(
        Integer,
        nullable=True,
        comment="Cap on items started per rolling minute; NULL means uncapped",
    )
    min_delay_seconds = Column(
        Float,
        nullable=False,
        default=0.0,
        comment="Minimum spacing between the starts of consecutive items",
    )
    max_delay_seconds = Column(
        Float,
        nullable=False,
        default=30.0,
        comment="Upper bound of the retry backoff",
    )
    backoff_multiplier = Column(Float, nullable=False, default=2.0)
    updated_at = Column(
        TIMESTAMP(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    def __repr__(self):
        return (
            f"<BackfillRateLimit(max_items_per_minute={self.max_items_per_minute}, "
            f"min_delay_seconds={self.min_delay_seconds})>"
        )
