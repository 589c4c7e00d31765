"""Tests for BackfillService admission, queries, preview and cancellation."""

import threading
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
from sqlalchemy.orm import sessionmaker

from src.models import Base
from src.models.backfill_job import JobStatus, JobType
from src.models.dtos import CheckpointDTO
from src.services.backfill_service import (
    CANCELLED_BEFORE_START,
    BackfillService,
    build_backfill_service,
    build_dispatcher,
)
from src.services.dispatchers import InlineJobDispatcher, ThreadJobDispatcher
from src.services.exceptions import (
    ConflictError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from src.services.item_streams import UnconfiguredItemProcessor
from src.services.job_runner import JobRunner
from src.services.job_store import JobStore
from src.utils.database import build_engine

THREE_DAYS = {"start_date": "2025-01-01", "end_date": "2025-01-03"}


class TestAdmission:
    def test_start_returns_job_id(self, service, store):
        job_id = service.start_job("district-1", JobType.DATA_COLLECTION, THREE_DAYS)

        assert store.get_job(job_id).target_key == "district-1"

    def test_conflict_while_target_active(self, store, make_processor, insert_job, make_service):
        active = insert_job(status=JobStatus.RUNNING, target_key="district-1")
        service = make_service(make_processor())

        with pytest.raises(ConflictError) as exc_info:
            service.start_job("district-1", JobType.DATA_COLLECTION, THREE_DAYS)

        assert exc_info.value.active_job_id == active
        assert store.query_jobs()[1] == 1

    @pytest.mark.parametrize("target_key,job_type,config,field", [
        ("", JobType.DATA_COLLECTION, THREE_DAYS, "target_key"),
        ("   ", JobType.DATA_COLLECTION, THREE_DAYS, "target_key"),
        ("district-1", "bogus-type", THREE_DAYS, "job_type"),
        ("district-1", JobType.DATA_COLLECTION,
         {"start_date": "2025-01-05", "end_date": "2025-01-01"}, ""),
        ("district-1", JobType.DATA_COLLECTION, {"start_date": "2025-01-05"}, ""),
        ("district-1", JobType.DATA_COLLECTION, {"unknown": 1}, ""),
    ])
    def test_invalid_requests_rejected(self, service, store, target_key, job_type, config, field):
        with pytest.raises(ValidationError) as exc_info:
            service.start_job(target_key, job_type, config)

        assert exc_info.value.errors
        if field:
            assert exc_info.value.errors[0]["field"] == field
        assert store.query_jobs()[1] == 0

    def test_dispatch_failure_leaves_job_pending(self, store, make_processor, backfill_config):
        dispatcher = MagicMock()
        dispatcher.dispatch.side_effect = RuntimeError("broker down")
        processor = make_processor()
        runner = JobRunner(store, processor, backfill_config)
        service = BackfillService(store, processor, runner, dispatcher, backfill_config)

        job_id = service.start_job("district-1", JobType.DATA_COLLECTION, THREE_DAYS)

        assert store.get_job(job_id).status == "pending"

    def test_concurrent_starts_admit_exactly_one(self, tmp_path, make_processor, backfill_config):
        engine = build_engine(f"sqlite:///{tmp_path / 'admission.db'}")
        Base.metadata.create_all(engine)
        store = JobStore(sessionmaker(bind=engine, expire_on_commit=False))
        processor = make_processor()
        runner = JobRunner(store, processor, backfill_config)

        class NoopDispatcher(InlineJobDispatcher):
            def dispatch(self, job_id, resume=False):
                pass

        service = BackfillService(store, processor, runner, NoopDispatcher(runner), backfill_config)

        barrier = threading.Barrier(5)
        outcomes = []
        lock = threading.Lock()

        def start():
            barrier.wait()
            try:
                job_id = service.start_job("district-1", JobType.DATA_COLLECTION, THREE_DAYS)
                outcome = ("ok", job_id)
            except ConflictError as e:
                outcome = ("conflict", e.target_key)
            with lock:
                outcomes.append(outcome)

        threads = [threading.Thread(target=start) for _ in range(5)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(10)

        try:
            assert sorted(kind for kind, _ in outcomes) == ["conflict"] * 4 + ["ok"]
            assert store.query_jobs()[1] == 1
        finally:
            engine.dispose()


class TestQueries:
    def test_get_job_not_found(self, service):
        with pytest.raises(NotFoundError):
            service.get_job("missing")

    def test_list_failed_newest_first(self, service, insert_job):
        base = datetime(2025, 1, 1, tzinfo=timezone.utc)
        older = insert_job(status=JobStatus.FAILED, created_at=base)
        newer = insert_job(status=JobStatus.FAILED, created_at=base + timedelta(days=1))
        insert_job(status=JobStatus.COMPLETED, created_at=base + timedelta(days=2))

        page = service.list_jobs(status=["failed"])

        assert page["total"] == 2
        assert [job.job_id for job in page["jobs"]] == [newer, older]

    def test_list_pagination(self, service, insert_job):
        base = datetime(2025, 1, 1, tzinfo=timezone.utc)
        ids = [insert_job(created_at=base + timedelta(minutes=i)) for i in range(5)]

        page = service.list_jobs(limit=2, offset=1)

        assert page["total"] == 5
        assert [job.job_id for job in page["jobs"]] == [ids[3], ids[2]]

    def test_pages_are_stable_when_created_at_ties(self, service, insert_job):
        same = datetime(2025, 1, 1, tzinfo=timezone.utc)
        ids = [insert_job(created_at=same) for _ in range(5)]
        expected = sorted(ids, reverse=True)

        first = service.list_jobs(limit=2, offset=0)
        second = service.list_jobs(limit=2, offset=2)

        assert [job.job_id for job in first["jobs"]] == expected[0:2]
        assert [job.job_id for job in second["jobs"]] == expected[2:4]

    def test_list_filters_by_type_and_target(self, service, insert_job):
        wanted = insert_job(job_type=JobType.ANALYTICS_GENERATION, config={}, target_key="d-9")
        insert_job(job_type=JobType.DATA_COLLECTION, target_key="d-9")

        page = service.list_jobs(job_type=["analytics-generation"], target_key="d-9")

        assert [job.job_id for job in page["jobs"]] == [wanted]

    @pytest.mark.parametrize("kwargs", [
        {"status": ["exploded"]},
        {"limit": 0},
        {"limit": 101},
        {"offset": -1},
    ])
    def test_list_rejects_bad_filters(self, service, kwargs):
        with pytest.raises(ValidationError):
            service.list_jobs(**kwargs)


class TestRateLimitConfig:
    def test_defaults_until_updated(self, service):
        limits = service.get_rate_limit_config()

        assert limits.max_items_per_minute is None
        assert limits.min_delay_seconds == 0.0
        assert limits.updated_at is None

    def test_update_merges_and_persists(self, service):
        service.update_rate_limit_config({"max_items_per_minute": 120})
        saved = service.update_rate_limit_config({"min_delay_seconds": 0.25})

        assert saved.max_items_per_minute == 120
        assert saved.min_delay_seconds == 0.25
        assert saved.updated_at is not None
        assert service.get_rate_limit_config().to_dict() == saved.to_dict()

    def test_null_clears_per_minute_cap(self, service):
        service.update_rate_limit_config({"max_items_per_minute": 120})

        saved = service.update_rate_limit_config({"max_items_per_minute": None})

        assert saved.max_items_per_minute is None

    @pytest.mark.parametrize("changes", [
        {},
        None,
        {"burst": 5},
        {"max_items_per_minute": 0},
        {"min_delay_seconds": -1},
        {"backoff_multiplier": 0.5},
    ])
    def test_rejects_bad_updates(self, service, changes):
        with pytest.raises(ValidationError):
            service.update_rate_limit_config(changes)

    def test_start_job_stores_overrides(self, service, store):
        job_id = service.start_job(
            "district-1", JobType.DATA_COLLECTION, THREE_DAYS,
            rate_limit_overrides={"max_items_per_minute": 600},
        )

        job = store.get_job(job_id)
        assert job.rate_limit_overrides == {"max_items_per_minute": 600}
        assert job.to_dict()["rate_limit_overrides"] == {"max_items_per_minute": 600}
        assert job.status == "completed"

    def test_start_job_rejects_bad_overrides(self, service, store):
        with pytest.raises(ValidationError):
            service.start_job(
                "district-1", JobType.DATA_COLLECTION, THREE_DAYS,
                rate_limit_overrides={"min_delay_seconds": -2},
            )

        assert store.query_jobs()[1] == 0


class TestPreview:
    def test_preview_date_range(self, service, store):
        preview = service.preview_job("district-1", JobType.DATA_COLLECTION, THREE_DAYS)

        assert preview["total_items"] == 3
        assert preview["items"] == ["2025-01-01", "2025-01-02", "2025-01-03"]
        assert preview["date_range"] == {"start_date": "2025-01-01", "end_date": "2025-01-03"}
        assert preview["estimated_duration_seconds"] == 90.0
        assert store.query_jobs()[1] == 0

    def test_preview_truncates_items(self, service):
        preview = service.preview_job(
            "district-1", JobType.DATA_COLLECTION,
            {"start_date": "2025-01-01", "end_date": "2025-01-31"},
        )

        assert preview["total_items"] == 31
        assert len(preview["items"]) == service.config.preview_item_limit

    def test_preview_processor_enumeration(self, make_service, make_processor):
        service = make_service(make_processor(items=["snap-b", "snap-a", "snap-b"]))

        preview = service.preview_job("district-1", JobType.ANALYTICS_GENERATION, {})

        assert preview["items"] == ["snap-b", "snap-a"]
        assert preview["date_range"] == {"start_date": "snap-b", "end_date": "snap-a"}

    def test_preview_unenumerable(self, service):
        with pytest.raises(ValidationError, match="Cannot enumerate items"):
            service.preview_job("district-1", JobType.ANALYTICS_GENERATION, {})


class TestCancel:
    def test_cancel_pending(self, service, store, insert_job):
        job_id = insert_job(status=JobStatus.PENDING)

        service.cancel_job(job_id)

        job = store.get_job(job_id)
        assert job.status == "cancelled"
        assert job.error == CANCELLED_BEFORE_START
        assert job.completed_at is not None

    def test_cancel_running_sets_flag(self, service, store, insert_job):
        job_id = insert_job(status=JobStatus.RUNNING)

        service.cancel_job(job_id)

        job = store.get_job(job_id)
        # No local runner here: the flag waits for the next item boundary
        assert job.status == "running"
        assert job.cancel_requested is True

    @pytest.mark.parametrize("status", [
        JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED, JobStatus.RECOVERING,
    ])
    def test_cancel_rejected(self, service, store, insert_job, status):
        job_id = insert_job(status=status)

        with pytest.raises(InvalidStateError):
            service.cancel_job(job_id)

        assert store.get_job(job_id).status == status.value

    def test_cancel_missing(self, service):
        with pytest.raises(NotFoundError):
            service.cancel_job("missing")


class TestForceCancel:
    def test_force_cancel_recovering(self, service, store, insert_job):
        job_id = insert_job(status=JobStatus.RECOVERING)
        store.checkpoints.upsert(
            CheckpointDTO(job_id=job_id, offset=1, total_items=3, stream_digest="d" * 64)
        )

        job = service.force_cancel_job(job_id, reason="stuck after deploy")

        assert job.status == "cancelled"
        assert job.error == "force-cancelled"
        assert job.cancel_reason == "stuck after deploy"
        assert job.completed_at is not None
        assert store.checkpoints.get(job_id) is None

    @pytest.mark.parametrize("status", [JobStatus.PENDING, JobStatus.RUNNING])
    def test_force_cancel_active(self, service, store, insert_job, status):
        job_id = insert_job(status=status)

        job = service.force_cancel_job(job_id)

        assert job.status == "cancelled"
        assert job.cancel_reason is None

    @pytest.mark.parametrize("status", [JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED])
    def test_force_cancel_terminal_rejected(self, service, store, insert_job, status):
        job_id = insert_job(status=status)

        with pytest.raises(InvalidStateError):
            service.force_cancel_job(job_id)

        assert store.get_job(job_id).error is None

    def test_force_cancelled_job_is_not_recovered(self, service, store, insert_job):
        job_id = insert_job(status=JobStatus.RUNNING)
        service.force_cancel_job(job_id)

        report = service.recover()

        assert report.jobs_recovered == report.jobs_failed == 0
        assert store.get_job(job_id).error == "force-cancelled"


class TestWiring:
    def test_build_dispatcher(self, store, make_processor, backfill_config):
        runner = JobRunner(store, make_processor(), backfill_config)

        assert isinstance(build_dispatcher("inline", runner), InlineJobDispatcher)
        assert isinstance(build_dispatcher("thread", runner), ThreadJobDispatcher)
        with pytest.raises(ValueError):
            build_dispatcher("carrier-pigeon", runner)

    def test_unconfigured_processor_fails_jobs(self, session_factory):
        service = build_backfill_service(session_factory=session_factory, dispatch_mode="inline")

        assert isinstance(service.processor, UnconfiguredItemProcessor)
        job_id = service.start_job("district-1", JobType.DATA_COLLECTION, THREE_DAYS)

        job = service.get_job(job_id)
        assert job.status == "failed"
        assert "BACKFILL_ITEM_PROCESSOR" in job.error

    def test_thread_dispatcher_runs_in_background(self, store, make_processor, backfill_config):
        processor = make_processor()
        runner = JobRunner(store, processor, backfill_config)
        dispatcher = ThreadJobDispatcher(runner)
        job = store.create_job("district-1", JobType.DATA_COLLECTION, THREE_DAYS)

        dispatcher.dispatch(job.job_id)

        assert dispatcher.join(timeout=10) == []
        assert store.get_job(job.job_id).status == "completed"
        assert processor.calls == ["2025-01-01", "2025-01-02", "2025-01-03"]
