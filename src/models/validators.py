"""Pydantic validation models for backfill requests."""

from datetime import date
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from src.models.backfill_job import JobStatus, JobType


class DateRangeConfig(BaseModel):
    """Optional inclusive date range shared by both job types."""

    start_date: Optional[date] = Field(
        default=None, description="First date to backfill (YYYY-MM-DD)"
    )
    end_date: Optional[date] = Field(
        default=None, description="Last date to backfill (YYYY-MM-DD), inclusive"
    )

    model_config = {"extra": "forbid"}

    @model_validator(mode="after")
    def validate_date_range(self):
        """Both bounds or neither; end must not precede start."""
        if (self.start_date is None) != (self.end_date is None):
            raise ValueError("start_date and end_date must be provided together")
        if self.start_date and self.end_date and self.end_date < self.start_date:
            raise ValueError("end_date must not be before start_date")
        return self

    @property
    def has_range(self) -> bool:
        return self.start_date is not None and self.end_date is not None


class DataCollectionConfig(DateRangeConfig):
    """Config for data-collection jobs. No range means all available dates."""

    skip_existing: bool = Field(
        default=True, description="Skip dates whose data is already collected"
    )

    model_config = {
        "extra": "forbid",
        "json_schema_extra": {
            "example": {
                "start_date": "2025-01-01",
                "end_date": "2025-01-31",
                "skip_existing": True,
            }
        },
    }


class AnalyticsGenerationConfig(DateRangeConfig):
    """Config for analytics-generation jobs.

    ``snapshot_ids`` pins the item stream explicitly; otherwise the snapshots
    inside the optional date range are enumerated by the item processor.
    """

    snapshot_ids: Optional[List[str]] = Field(
        default=None, description="Explicit snapshots to generate analytics for"
    )

    model_config = {
        "extra": "forbid",
        "json_schema_extra": {"example": {"start_date": "2025-01-01", "end_date": "2025-03-31"}},
    }

    @field_validator("snapshot_ids")
    @classmethod
    def validate_snapshot_ids(cls, v: Optional[List[str]]) -> Optional[List[str]]:
        """Reject blank or duplicate snapshot ids."""
        if v is None:
            return v
        cleaned = [s.strip() for s in v]
        if any(not s for s in cleaned):
            raise ValueError("snapshot_ids must not contain blank values")
        if len(set(cleaned)) != len(cleaned):
            raise ValueError("snapshot_ids must be unique")
        return cleaned


CONFIG_MODELS = {
    JobType.DATA_COLLECTION: DataCollectionConfig,
    JobType.ANALYTICS_GENERATION: AnalyticsGenerationConfig,
}


def parse_job_config(job_type: JobType, config: Optional[Dict[str, Any]]) -> DateRangeConfig:
    """Validate a raw config dict against the model for its job type."""
    model_class = CONFIG_MODELS[JobType(job_type)]
    return model_class(**(config or {}))


def normalize_job_config(job_type: JobType, config: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Validate and return the JSON-safe form stored on the job record."""
    return parse_job_config(job_type, config).model_dump(mode="json", exclude_none=True)


class RateLimitUpdate(BaseModel):
    """Partial rate limit: used for global updates and per-job overrides."""

    max_items_per_minute: Optional[int] = Field(
        default=None, ge=1, description="Cap on items started per rolling minute"
    )
    min_delay_seconds: Optional[float] = Field(
        default=None, ge=0, description="Minimum spacing between item starts"
    )
    max_delay_seconds: Optional[float] = Field(
        default=None, ge=0, description="Upper bound of the retry backoff"
    )
    backoff_multiplier: Optional[float] = Field(
        default=None, ge=1, description="Retry backoff growth factor"
    )

    model_config = {
        "extra": "forbid",
        "json_schema_extra": {"example": {"max_items_per_minute": 10, "min_delay_seconds": 2.0}},
    }

    def changes(self) -> Dict[str, Any]:
        """Fields the caller set; an explicit null only clears the per-minute cap."""
        return {
            k: v
            for k, v in self.model_dump(exclude_unset=True).items()
            if v is not None or k == "max_items_per_minute"
        }


class StartJobRequest(BaseModel):
    """Validation for start/preview job requests."""

    target_key: str = Field(
        min_length=1, max_length=255, description="Scope the job operates on (e.g. a district)"
    )
    job_type: JobType
    config: Dict[str, Any] = Field(default_factory=dict)
    rate_limit_overrides: Optional[RateLimitUpdate] = Field(
        default=None, description="Rate limit fields that apply to this job only"
    )

    @field_validator("target_key")
    @classmethod
    def strip_target_key(cls, v: str) -> str:
        stripped = v.strip()
        if not stripped:
            raise ValueError("target_key must not be blank")
        return stripped

    @model_validator(mode="after")
    def validate_config_for_type(self):
        """Config is polymorphic by job type; normalize it in place."""
        try:
            self.config = normalize_job_config(self.job_type, self.config)
        except PydanticValidationError as e:
            messages = "; ".join(err["msg"] for err in e.errors())
            raise ValueError(f"invalid config for {self.job_type.value}: {messages}")
        return self

    model_config = {
        "json_schema_extra": {
            "example": {
                "target_key": "district-42",
                "job_type": "data-collection",
                "config": {"start_date": "2025-01-01", "end_date": "2025-01-03"},
            }
        }
    }


class ListJobsRequest(BaseModel):
    """Validation for job listing filters."""

    status: Optional[List[JobStatus]] = None
    job_type: Optional[List[JobType]] = None
    target_key: Optional[str] = Field(default=None, max_length=255)
    limit: int = Field(default=20, ge=1, le=100, description="Page size (1-100)")
    offset: int = Field(default=0, ge=0, description="Number of jobs to skip")


class ForceCancelRequest(BaseModel):
    """Validation for force-cancel requests."""

    confirm: bool = Field(
        default=False, description="Caller acknowledges the checkpoint is discarded"
    )
    reason: Optional[str] = Field(default=None, max_length=500)

    @model_validator(mode="after")
    def require_confirmation(self):
        if not self.confirm:
            raise ValueError("force-cancel is irreversible and requires confirm=true")
        return self
