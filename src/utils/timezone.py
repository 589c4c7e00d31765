"""UTC time helpers shared by the job store, runner and API layer."""

from datetime import datetime
from typing import Optional
import pytz


def utcnow() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(pytz.UTC)


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """
    Normalize a datetime to timezone-aware UTC.

    SQLite hands back naive datetimes even for ``DateTime(timezone=True)``
    columns, so naive values are assumed to already be UTC.

    Args:
        dt: Datetime to normalize (can be naive or timezone-aware)

    Returns:
        Timezone-aware UTC datetime, or None
    """
    if dt is None:
        return None

    # If naive, assume UTC
    if dt.tzinfo is None:
        return pytz.UTC.localize(dt)

    return dt.astimezone(pytz.UTC)


def isoformat_utc(dt: Optional[datetime]) -> Optional[str]:
    """Serialize a datetime as an ISO-8601 UTC string (None passes through)."""
    normalized = ensure_utc(dt)
    return normalized.isoformat() if normalized else None


def seconds_between(start: Optional[datetime], end: Optional[datetime]) -> float:
    """Elapsed seconds between two datetimes, 0.0 when either is missing."""
    if start is None or end is None:
        return 0.0
    return max(0.0, (ensure_utc(end) - ensure_utc(start)).total_seconds())
