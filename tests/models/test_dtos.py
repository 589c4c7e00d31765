"""Tests for DTO conversion and API serialization."""

from datetime import datetime

from src.models import BackfillJob, JobStatus, generate_job_id
from src.models.dtos import BackfillJobDTO, JobErrorDTO, JobProgressDTO, RateLimitDTO


def test_from_orm_normalizes_naive_datetimes():
    # SQLite hands back naive datetimes; the DTO must treat them as UTC
    job = BackfillJob(
        job_id="job-1",
        job_type="data-collection",
        target_key="district-1",
        config={"start_date": "2025-01-01", "end_date": "2025-01-02"},
        status=JobStatus.RUNNING.value,
        total_items=2,
        processed_items=1,
        errors=[{"item_id": "2025-01-01", "message": "bad", "attempts": 3}],
        error_count=4,
        snapshot_ids=["snap-1"],
        created_at=datetime(2025, 1, 1, 12, 0),
    )

    dto = BackfillJobDTO.from_orm(job)

    assert dto.created_at.tzinfo is not None
    assert dto.progress.errors[0].attempts == 3
    assert dto.progress.errors_truncated is True
    assert dto.progress.position == 1


def test_from_orm_none():
    assert BackfillJobDTO.from_orm(None) is None


def test_to_dict_serializes_timestamps():
    dto = BackfillJobDTO(
        job_id="job-1",
        job_type="data-collection",
        target_key="district-1",
        status="completed",
        progress=JobProgressDTO(total_items=3, processed_items=3),
        result={"items_processed": 3},
        created_at=datetime.fromisoformat("2025-01-01T00:00:00+00:00"),
    )

    data = dto.to_dict()

    assert data["created_at"].startswith("2025-01-01T00:00:00")
    assert data["started_at"] is None
    assert data["progress"]["total_items"] == 3
    assert data["progress"]["errors_truncated"] is False
    assert data["result"] == {"items_processed": 3}


def test_error_round_trip_tolerates_missing_fields():
    error = JobErrorDTO.from_dict({"item_id": 7})

    assert error.item_id == "7"
    assert error.message == ""
    assert error.attempts == 1


def test_generate_job_id_unique():
    assert generate_job_id() != generate_job_id()


def test_rate_limit_merge_ignores_unknown_fields():
    base = RateLimitDTO(max_items_per_minute=60, min_delay_seconds=1.0)

    merged = base.merged({"min_delay_seconds": 0.0, "burst": 4})

    assert merged.max_items_per_minute == 60
    assert merged.min_delay_seconds == 0.0
    assert base.min_delay_seconds == 1.0
    assert base.merged(None) == base
