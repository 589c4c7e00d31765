"""Persisted global rate limit for backfill item processing."""

import logging
from typing import Any, Dict, Optional

from config.settings import BackfillConfig
from src.models.backfill_rate_limit import RATE_LIMIT_ROW_ID, BackfillRateLimit
from src.models.dtos import RateLimitDTO
from src.utils.database import session_scope
from src.utils.timezone import utcnow

logger = logging.getLogger(__name__)


def default_rate_limits(config: Optional[BackfillConfig] = None) -> RateLimitDTO:
    """Rate limit used until an operator stores one, taken from ``BACKFILL_*`` settings."""
    config = config or BackfillConfig()
    return RateLimitDTO(
        max_items_per_minute=config.max_items_per_minute,
        min_delay_seconds=config.item_delay_seconds,
        max_delay_seconds=config.retry_max_delay,
        backoff_multiplier=config.retry_backoff_multiplier,
    )


class RateLimitStore:
    """Read and update the single ``backfill_rate_limits`` row."""

    def __init__(self, session_factory=None, defaults: Optional[RateLimitDTO] = None):
        self.session_factory = session_factory
        self.defaults = defaults or default_rate_limits()

    def get(self) -> RateLimitDTO:
        """The stored rate limit, or the defaults when none was saved yet."""
        with session_scope(self.session_factory) as session:
            row = session.get(BackfillRateLimit, RATE_LIMIT_ROW_ID)
            if row is None:
                return self.defaults
            return RateLimitDTO.from_orm(row)

    def update(self, changes: Dict[str, Any]) -> RateLimitDTO:
        """Merge ``changes`` into the stored rate limit and persist the result."""
        with session_scope(self.session_factory) as session:
            row = session.get(BackfillRateLimit, RATE_LIMIT_ROW_ID)
            current = RateLimitDTO.from_orm(row) if row is not None else self.defaults
            merged = current.merged(changes)

            if row is None:
                row = BackfillRateLimit(id=RATE_LIMIT_ROW_ID)
                session.add(row)
            row.max_items_per_minute = merged.max_items_per_minute
            row.min_delay_seconds = merged.min_delay_seconds
            row.max_delay_seconds = merged.max_delay_seconds
            row.backoff_multiplier = merged.backoff_multiplier
            row.updated_at = utcnow()
            session.flush()
            return RateLimitDTO.from_orm(row)
