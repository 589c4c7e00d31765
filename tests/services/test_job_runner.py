"""Tests for JobRunner execution, retries, failure and cancellation paths."""

import threading
import time
from dataclasses import replace
from unittest.mock import patch

import pytest
from sqlalchemy.exc import OperationalError

from src.models.backfill_job import JobStatus, JobType
from src.services.item_streams import ItemProcessor, ItemResult, ItemStream
from src.services.job_runner import CANCELLED_BY_REQUEST, CancellationToken, JobRunner

THREE_DAYS = {"start_date": "2025-01-01", "end_date": "2025-01-03"}
DAYS = ["2025-01-01", "2025-01-02", "2025-01-03"]


class TestCompletion:
    """Jobs that run to completion."""

    def test_three_day_job_completes(self, make_processor, make_service, store):
        processor = make_processor()
        service = make_service(processor)

        job_id = service.start_job("district-1", JobType.DATA_COLLECTION, THREE_DAYS)

        job = store.get_job(job_id)
        assert job.status == "completed"
        assert processor.calls == DAYS
        assert job.result["items_processed"] == 3
        assert job.result["items_failed"] == 0
        assert job.result["outcome"] == "success"
        assert job.result["snapshot_ids"] == [f"snap-{d}" for d in DAYS]
        assert job.progress.total_items == 3
        assert job.progress.processed_items == 3
        assert job.progress.current_item is None
        assert job.started_at is not None
        assert job.completed_at >= job.started_at
        assert store.checkpoints.get(job_id) is None

    def test_progress_never_overruns_total(self, make_processor, make_service, store):
        observed = []

        def check_progress(job, item_id):
            current = store.get_job(job.job_id)
            observed.append((current.progress.position, current.progress.total_items))

        service = make_service(make_processor(on_item=check_progress))
        service.start_job("district-1", JobType.DATA_COLLECTION, THREE_DAYS)

        assert observed == [(0, 3), (1, 3), (2, 3)]

    def test_empty_stream_completes_immediately(self, make_processor, make_service, store):
        processor = make_processor(items=[])
        service = make_service(processor)

        job_id = service.start_job("district-1", JobType.ANALYTICS_GENERATION, {})

        job = store.get_job(job_id)
        assert job.status == "completed"
        assert job.result["items_processed"] == 0
        assert job.progress.total_items == 0
        assert processor.calls == []

    def test_skipped_items(self, make_processor, make_service, store):
        service = make_service(make_processor(skip={"2025-01-01"}))

        job_id = service.start_job("district-1", JobType.DATA_COLLECTION, THREE_DAYS)

        job = store.get_job(job_id)
        assert job.status == "completed"
        assert job.result["items_processed"] == 2
        assert job.result["items_skipped"] == 1
        assert job.progress.skipped_items == 1
        assert job.progress.position == 3


class TestItemFailures:
    """Per-item errors are retried locally and never fail the job."""

    def test_transient_failure_is_retried(self, make_processor, make_service, store):
        processor = make_processor(fail={"2025-01-02": 1})
        service = make_service(processor)

        job_id = service.start_job("district-1", JobType.DATA_COLLECTION, THREE_DAYS)

        job = store.get_job(job_id)
        assert job.status == "completed"
        assert job.result["items_processed"] == 3
        assert job.progress.error_count == 0
        assert processor.calls.count("2025-01-02") == 2

    def test_exhausted_retries_count_as_failed_item(self, make_processor, make_service, store):
        processor = make_processor(fail={"2025-01-02": 99})
        service = make_service(processor)

        job_id = service.start_job("district-1", JobType.DATA_COLLECTION, THREE_DAYS)

        job = store.get_job(job_id)
        assert job.status == "completed"
        assert job.error is None
        assert job.result["items_processed"] == 2
        assert job.result["items_failed"] == 1
        assert job.result["outcome"] == "partial"
        assert job.progress.failed_items == 1
        assert job.progress.error_count == 1
        error = job.progress.errors[0]
        assert error.item_id == "2025-01-02"
        assert error.attempts == 3
        assert "boom" in error.message
        assert processor.calls.count("2025-01-02") == 3

    def test_failed_result_is_retried_like_an_exception(self, make_processor, make_service, store):
        class FlakyProcessor(ItemProcessor):
            attempts = 0

            def process_item(self, job, item_id):
                self.attempts += 1
                if self.attempts == 1:
                    return ItemResult.failed("rate limited")
                return ItemResult.processed()

        service = make_service(FlakyProcessor())

        job_id = service.start_job("district-1", JobType.DATA_COLLECTION, THREE_DAYS)

        assert store.get_job(job_id).result["items_failed"] == 0

    def test_timed_out_item_fails_without_overlapping_attempts(
        self, make_processor, make_service, store, backfill_config
    ):
        lock = threading.Lock()
        in_flight = {"now": 0, "max": 0}

        def slow_first_day(job, item_id):
            if item_id != "2025-01-01":
                return
            with lock:
                in_flight["now"] += 1
                in_flight["max"] = max(in_flight["max"], in_flight["now"])
            time.sleep(0.2)
            with lock:
                in_flight["now"] -= 1

        processor = make_processor(on_item=slow_first_day)
        config = replace(backfill_config, item_timeout_seconds=0.05, max_item_retries=2)
        service = make_service(processor, config)

        job_id = service.start_job("district-1", JobType.DATA_COLLECTION, THREE_DAYS)

        job = store.get_job(job_id)
        assert job.status == "completed"
        assert in_flight["max"] == 1
        # The abandoned call returned before the runner moved on
        assert in_flight["now"] == 0
        assert processor.calls == DAYS
        assert job.result["items_failed"] == 1
        assert job.result["snapshot_ids"] == ["snap-2025-01-02", "snap-2025-01-03"]
        error = job.progress.errors[0]
        assert error.item_id == "2025-01-01"
        assert error.attempts == 1
        assert "timed out" in error.message


class TestFatalFailures:
    def test_progress_overrun_fails_job(self, make_processor, make_service, store):
        processor = make_processor()
        service = make_service(processor)

        # A stream that hands out its last item twice
        def remaining_with_repeat(self, offset):
            return self.items[offset:] + self.items[-1:]

        with patch.object(ItemStream, "remaining", remaining_with_repeat):
            job_id = service.start_job("district-1", JobType.DATA_COLLECTION, THREE_DAYS)

        job = store.get_job(job_id)
        assert job.status == "failed"
        assert "progress overran stream" in job.error
        assert job.progress.processed_items == 3
        assert job.completed_at is not None
        assert store.get_active_job_for_target("district-1") is None

    def test_fatal_error_fails_job(self, make_processor, make_service, store):
        processor = make_processor(fatal={"2025-01-02"})
        service = make_service(processor)

        job_id = service.start_job("district-1", JobType.DATA_COLLECTION, THREE_DAYS)

        job = store.get_job(job_id)
        assert job.status == "failed"
        assert "upstream unavailable" in job.error
        assert job.completed_at is not None
        assert job.progress.processed_items == 1
        assert processor.calls == ["2025-01-01", "2025-01-02"]
        assert store.checkpoints.get(job_id) is None

    def test_unenumerable_stream_fails_job(self, make_processor, make_service, store):
        service = make_service(make_processor(items=None))

        job_id = service.start_job("district-1", JobType.ANALYTICS_GENERATION, {})

        job = store.get_job(job_id)
        assert job.status == "failed"
        assert job.error.startswith("failed to enumerate items")

    def test_fatal_failure_frees_target(self, make_processor, make_service, store):
        service = make_service(make_processor(fatal={"2025-01-01"}))
        service.start_job("district-1", JobType.DATA_COLLECTION, THREE_DAYS)

        assert store.get_active_job_for_target("district-1") is None


class TestCancellation:
    def test_graceful_cancel_stops_between_items(self, make_processor, make_service, store):
        holder = {}

        def cancel_on_second(job, item_id):
            if item_id == "2025-01-02":
                holder["service"].cancel_job(job.job_id)

        processor = make_processor(on_item=cancel_on_second)
        service = make_service(processor)
        holder["service"] = service

        job_id = service.start_job("district-1", JobType.DATA_COLLECTION, THREE_DAYS)

        job = store.get_job(job_id)
        assert job.status == "cancelled"
        assert job.error == CANCELLED_BY_REQUEST
        assert job.cancel_requested is True
        # The in-flight item finishes; the next one never starts
        assert processor.calls == ["2025-01-01", "2025-01-02"]
        assert job.progress.processed_items == 2
        assert store.checkpoints.get(job_id) is None

    def test_force_cancel_mid_run_stops_runner_writes(self, make_processor, make_service, store):
        holder = {}

        def force_cancel_on_second(job, item_id):
            if item_id == "2025-01-02":
                holder["service"].force_cancel_job(job.job_id, reason="wedged")

        processor = make_processor(on_item=force_cancel_on_second)
        service = make_service(processor)
        holder["service"] = service

        job_id = service.start_job("district-1", JobType.DATA_COLLECTION, THREE_DAYS)

        job = store.get_job(job_id)
        assert job.status == "cancelled"
        assert job.error == "force-cancelled"
        assert job.cancel_reason == "wedged"
        assert job.result is None
        assert processor.calls == ["2025-01-01", "2025-01-02"]
        # Progress from the item finished after the force-cancel is not written
        assert job.progress.processed_items == 1
        assert store.checkpoints.get(job_id) is None

    def test_cancelled_pending_job_is_never_claimed(self, make_processor, store, insert_job, backfill_config):
        job_id = insert_job(status=JobStatus.CANCELLED)
        processor = make_processor()

        job = JobRunner(store, processor, backfill_config).run(job_id)

        assert job.status == "cancelled"
        assert processor.calls == []

    def test_resume_refuses_non_running_job(self, make_processor, store, insert_job, backfill_config):
        job_id = insert_job(status=JobStatus.RECOVERING)
        processor = make_processor()

        job = JobRunner(store, processor, backfill_config).run(job_id, resume=True)

        assert job.status == "recovering"
        assert processor.calls == []


class TestRateLimits:
    def test_job_override_merges_over_global(self, make_processor, store, backfill_config):
        runner = JobRunner(store, make_processor(), backfill_config)
        runner.rate_limits.update({"max_items_per_minute": 30, "min_delay_seconds": 0.5})
        job = store.create_job(
            "district-1", JobType.DATA_COLLECTION, THREE_DAYS,
            rate_limit_overrides={"min_delay_seconds": 0.0},
        )

        limits = runner.effective_rate_limits(job)

        assert limits.max_items_per_minute == 30
        assert limits.min_delay_seconds == 0.0

    def test_unreadable_config_falls_back_to_defaults(self, make_processor, store, backfill_config):
        runner = JobRunner(store, make_processor(), backfill_config)
        job = store.create_job("district-1", JobType.DATA_COLLECTION, THREE_DAYS)

        with patch.object(
            runner.rate_limits, "get",
            side_effect=OperationalError("SELECT", {}, Exception("db gone")),
        ):
            limits = runner.effective_rate_limits(job)

        assert limits == runner.rate_limits.defaults

    def test_min_delay_spaces_item_starts(self, make_processor, make_service, store):
        starts = []
        processor = make_processor(on_item=lambda job, item_id: starts.append(time.monotonic()))
        service = make_service(processor)

        job_id = service.start_job(
            "district-1", JobType.DATA_COLLECTION, THREE_DAYS,
            rate_limit_overrides={"min_delay_seconds": 0.05},
        )

        assert store.get_job(job_id).status == "completed"
        gaps = [later - earlier for earlier, later in zip(starts, starts[1:])]
        assert len(gaps) == 2
        assert all(gap >= 0.04 for gap in gaps)

    def test_cancel_during_throttle_wait(self, make_processor, make_service, store):
        holder = {}

        def cancel_after_first(job, item_id):
            holder["service"].cancel_job(job.job_id)

        processor = make_processor(on_item=cancel_after_first)
        service = make_service(processor)
        holder["service"] = service

        started = time.monotonic()
        job_id = service.start_job(
            "district-1", JobType.DATA_COLLECTION, THREE_DAYS,
            rate_limit_overrides={"min_delay_seconds": 30},
        )

        job = store.get_job(job_id)
        assert job.status == "cancelled"
        assert processor.calls == ["2025-01-01"]
        assert time.monotonic() - started < 10


class TestCancellationToken:
    def test_wait_returns_true_when_cancelled(self):
        token = CancellationToken()
        assert token.wait(0) is False

        token.cancel()

        assert token.cancelled is True
        assert token.wait(10) is True

    def test_runner_cancel_only_for_local_jobs(self, make_processor, store, backfill_config):
        runner = JobRunner(store, make_processor(), backfill_config)

        assert runner.cancel("not-here") is False
        assert runner.is_running_here("not-here") is False


@pytest.mark.parametrize("every_items", [1, 2, 10])
def test_final_progress_independent_of_flush_policy(make_processor, make_service, store, backfill_config, every_items):
    config = replace(backfill_config, checkpoint_every_items=every_items)
    service = make_service(make_processor(), config)

    job_id = service.start_job("district-1", JobType.DATA_COLLECTION, THREE_DAYS)

    job = store.get_job(job_id)
    assert job.progress.processed_items == 3
    assert job.result["items_processed"] == 3
