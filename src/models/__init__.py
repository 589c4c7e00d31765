"""Models package for the backfill engine."""

# Import base first
from .base import Base

from .backfill_job import (
    BackfillJob,
    JobStatus,
    JobType,
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    FORCE_CANCELLED_ERROR,
    generate_job_id,
)
from .backfill_checkpoint import BackfillCheckpoint
from .backfill_rate_limit import BackfillRateLimit, RATE_LIMIT_ROW_ID

# Import DTOs
from .dtos import (
    BackfillJobDTO,
    CheckpointDTO,
    JobErrorDTO,
    JobProgressDTO,
    RateLimitDTO,
    convert_list_to_dtos,
)

__all__ = [
    # ORM Models
    "Base",
    "BackfillJob",
    "BackfillCheckpoint",
    "BackfillRateLimit",
    # Enums and constants
    "JobStatus",
    "JobType",
    "ACTIVE_STATUSES",
    "TERMINAL_STATUSES",
    "FORCE_CANCELLED_ERROR",
    "generate_job_id",
    "RATE_LIMIT_ROW_ID",
    # DTOs
    "BackfillJobDTO",
    "CheckpointDTO",
    "JobErrorDTO",
    "JobProgressDTO",
    "RateLimitDTO",
    "convert_list_to_dtos",
]
