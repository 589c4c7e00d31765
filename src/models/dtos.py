"""Data Transfer Objects (DTOs) for the backfill tables.

These DTOs solve the "detached object" problem by copying data from SQLAlchemy
objects while the session is still active. They are plain Python objects that
can be safely passed between threads and used after the session is closed.
"""
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Optional, List, Dict, Any

from src.utils.timezone import ensure_utc, isoformat_utc


@dataclass
class JobErrorDTO:
    """One retained per-item failure."""
    item_id: str
    message: str
    occurred_at: Optional[str] = None
    attempts: int = 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "item_id": self.item_id,
            "message": self.message,
            "occurred_at": self.occurred_at,
            "attempts": self.attempts,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "JobErrorDTO":
        return cls(
            item_id=str(data.get("item_id", "")),
            message=str(data.get("message", "")),
            occurred_at=data.get("occurred_at"),
            attempts=int(data.get("attempts", 1)),
        )


@dataclass
class JobProgressDTO:
    """Progress counters of a job."""
    total_items: int = 0
    processed_items: int = 0
    skipped_items: int = 0
    failed_items: int = 0
    current_item: Optional[str] = None
    errors: List[JobErrorDTO] = field(default_factory=list)
    error_count: int = 0

    @property
    def position(self) -> int:
        """Number of stream items already consumed."""
        return self.processed_items + self.skipped_items

    @property
    def errors_truncated(self) -> bool:
        return self.error_count > len(self.errors)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_items": self.total_items,
            "processed_items": self.processed_items,
            "skipped_items": self.skipped_items,
            "failed_items": self.failed_items,
            "current_item": self.current_item,
            "errors": [e.to_dict() for e in self.errors],
            "error_count": self.error_count,
            "errors_truncated": self.errors_truncated,
        }


@dataclass
class BackfillJobDTO:
    """DTO for BackfillJob model."""
    job_id: str
    job_type: str
    target_key: str
    status: str
    config: Dict[str, Any] = field(default_factory=dict)
    rate_limit_overrides: Optional[Dict[str, Any]] = None
    progress: JobProgressDTO = field(default_factory=JobProgressDTO)
    snapshot_ids: List[str] = field(default_factory=list)
    checkpoint_ref: Optional[int] = None
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    cancel_requested: bool = False
    cancel_reason: Optional[str] = None
    run_epoch: int = 0
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    resumed_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_orm(cls, job):
        """Create DTO from SQLAlchemy BackfillJob object.

        Must be called while the session is still active!
        """
        if job is None:
            return None

        return cls(
            job_id=job.job_id,
            job_type=job.job_type,
            target_key=job.target_key,
            status=job.status,
            config=dict(job.config or {}),
            rate_limit_overrides=(
                dict(job.rate_limit_overrides) if job.rate_limit_overrides else None
            ),
            progress=JobProgressDTO(
                total_items=job.total_items or 0,
                processed_items=job.processed_items or 0,
                skipped_items=job.skipped_items or 0,
                failed_items=job.failed_items or 0,
                current_item=job.current_item,
                errors=[JobErrorDTO.from_dict(e) for e in (job.errors or [])],
                error_count=job.error_count or 0,
            ),
            snapshot_ids=list(job.snapshot_ids or []),
            checkpoint_ref=job.checkpoint_ref,
            result=dict(job.result) if job.result is not None else None,
            error=job.error,
            cancel_requested=bool(job.cancel_requested),
            cancel_reason=job.cancel_reason,
            run_epoch=job.run_epoch or 0,
            created_at=ensure_utc(job.created_at),
            started_at=ensure_utc(job.started_at),
            completed_at=ensure_utc(job.completed_at),
            resumed_at=ensure_utc(job.resumed_at),
            updated_at=ensure_utc(job.updated_at),
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for API responses."""
        return {
            "job_id": self.job_id,
            "job_type": self.job_type,
            "target_key": self.target_key,
            "status": self.status,
            "config": self.config,
            "rate_limit_overrides": self.rate_limit_overrides,
            "progress": self.progress.to_dict(),
            "snapshot_ids": self.snapshot_ids,
            "checkpoint_ref": self.checkpoint_ref,
            "result": self.result,
            "error": self.error,
            "cancel_requested": self.cancel_requested,
            "cancel_reason": self.cancel_reason,
            "created_at": isoformat_utc(self.created_at),
            "started_at": isoformat_utc(self.started_at),
            "completed_at": isoformat_utc(self.completed_at),
            "resumed_at": isoformat_utc(self.resumed_at),
        }


@dataclass
class CheckpointDTO:
    """DTO for BackfillCheckpoint model."""
    job_id: str
    offset: int
    processed_items: int = 0
    skipped_items: int = 0
    failed_items: int = 0
    total_items: int = 0
    stream_digest: Optional[str] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_orm(cls, checkpoint):
        """Create DTO from SQLAlchemy BackfillCheckpoint object."""
        if checkpoint is None:
            return None

        return cls(
            job_id=checkpoint.job_id,
            offset=checkpoint.offset,
            processed_items=checkpoint.processed_items or 0,
            skipped_items=checkpoint.skipped_items or 0,
            failed_items=checkpoint.failed_items or 0,
            total_items=checkpoint.total_items or 0,
            stream_digest=checkpoint.stream_digest,
            updated_at=ensure_utc(checkpoint.updated_at),
        )


@dataclass
class RateLimitDTO:
    """Effective pacing for item processing."""
    max_items_per_minute: Optional[int] = None
    min_delay_seconds: float = 0.0
    max_delay_seconds: float = 30.0
    backoff_multiplier: float = 2.0
    updated_at: Optional[datetime] = None

    FIELDS = (
        "max_items_per_minute",
        "min_delay_seconds",
        "max_delay_seconds",
        "backoff_multiplier",
    )

    @classmethod
    def from_orm(cls, rate_limit):
        """Create DTO from SQLAlchemy BackfillRateLimit object."""
        if rate_limit is None:
            return None

        return cls(
            max_items_per_minute=rate_limit.max_items_per_minute,
            min_delay_seconds=rate_limit.min_delay_seconds,
            max_delay_seconds=rate_limit.max_delay_seconds,
            backoff_multiplier=rate_limit.backoff_multiplier,
            updated_at=ensure_utc(rate_limit.updated_at),
        )

    def merged(self, overrides: Optional[Dict[str, Any]]) -> "RateLimitDTO":
        """Copy with the known fields of ``overrides`` applied on top."""
        changes = {k: v for k, v in (overrides or {}).items() if k in self.FIELDS}
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "max_items_per_minute": self.max_items_per_minute,
            "min_delay_seconds": self.min_delay_seconds,
            "max_delay_seconds": self.max_delay_seconds,
            "backoff_multiplier": self.backoff_multiplier,
            "updated_at": isoformat_utc(self.updated_at),
        }


def convert_list_to_dtos(orm_objects: List, dto_class) -> List:
    """Convert a list of SQLAlchemy objects to DTOs.

    Must be called while the session is still active!
    """
    return [dto_class.from_orm(obj) for obj in orm_objects if obj is not None]
