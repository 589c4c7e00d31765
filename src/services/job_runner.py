"""Executes a backfill job item by item.

Usage:
    runner = JobRunner(store, processor, settings.backfill)
    runner.run(job_id)               # claims a pending job
    runner.run(job_id, resume=True)  # continues a job recovery put back to running

The runner owns no state that matters after a crash: progress and the resume
offset are flushed through ``JobStore.save_progress``, and every status change
is a conditional write fenced by the job's ``run_epoch``. When a write is
refused because someone else moved the job (force-cancel, recovery), the
runner stops without touching it again.
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeoutError
from typing import Callable, Dict, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError

from config.settings import BackfillConfig
from src.models.backfill_job import JobStatus
from src.models.dtos import BackfillJobDTO, RateLimitDTO
from src.services.exceptions import FatalJobError, InvalidStateError, ItemTimeoutError
from src.services.item_streams import (
    ItemOutcome,
    ItemProcessor,
    ItemResult,
    ItemStream,
    build_item_stream,
)
from src.services.job_state_machine import Trigger
from src.services.job_store import JobStore
from src.services.progress_tracker import ProgressTracker
from src.services.rate_limit_store import RateLimitStore, default_rate_limits
from src.utils.rate_limiter import ItemThrottle
from src.utils.retry_logic import RetriesExhausted, call_with_retries
from src.utils.timezone import seconds_between, utcnow

logger = logging.getLogger(__name__)

CANCELLED_BY_REQUEST = "cancelled by request"


class ItemFailed(Exception):
    """An item attempt the processor reported as failed (retried like any error)."""


class CancellationToken:
    """In-process cancellation signal for one running job."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float) -> bool:
        """Sleep up to ``timeout`` seconds; True if cancelled meanwhile."""
        return self._event.wait(timeout)


class _Stop(Exception):
    """Internal: the job left ``running`` under us; stop without further writes."""


class _CancelNow(Exception):
    """Internal: cancellation was requested; stop at the current item boundary."""


class JobRunner:
    """Runs one job at a time per call; safe to call from several threads."""

    def __init__(
        self,
        store: JobStore,
        processor: ItemProcessor,
        config: Optional[BackfillConfig] = None,
        clock: Callable[[], float] = time.monotonic,
        rate_limits: Optional[RateLimitStore] = None,
    ):
        self.store = store
        self.processor = processor
        self.config = config or BackfillConfig()
        self.rate_limits = rate_limits or RateLimitStore(
            store.session_factory, default_rate_limits(self.config)
        )
        self._clock = clock
        self._tokens: Dict[str, CancellationToken] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Cancellation tokens
    # ------------------------------------------------------------------

    def cancel(self, job_id: str) -> bool:
        """Signal a job running in this process. Returns False if it is not here."""
        with self._lock:
            token = self._tokens.get(job_id)
        if token is None:
            return False
        token.cancel()
        return True

    def is_running_here(self, job_id: str) -> bool:
        with self._lock:
            return job_id in self._tokens

    def _register(self, job_id: str) -> Optional[CancellationToken]:
        with self._lock:
            if job_id in self._tokens:
                return None
            token = CancellationToken()
            self._tokens[job_id] = token
            return token

    def _unregister(self, job_id: str) -> None:
        with self._lock:
            self._tokens.pop(job_id, None)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def run(self, job_id: str, resume: bool = False) -> Optional[BackfillJobDTO]:
        """Run a job to a terminal status (or until another writer takes it).

        Args:
            job_id: Job to run
            resume: True when recovery already moved the job back to running

        Returns:
            The job as stored when the runner stopped
        """
        token = self._register(job_id)
        if token is None:
            logger.warning(f"Job {job_id} is already executing in this process; ignoring dispatch")
            return self.store.get_job(job_id)

        try:
            job = self._claim(job_id, resume)
            if job is None:
                return self.store.get_job(job_id)
            return self._run(job, resume, token)
        except SQLAlchemyError as e:
            # The job stays pending or running for recovery to pick up
            logger.error(f"❌ Store error while claiming job {job_id}: {e}")
            return None
        finally:
            self._unregister(job_id)

    def _run(
        self, job: BackfillJobDTO, resume: bool, token: CancellationToken
    ) -> Optional[BackfillJobDTO]:
        try:
            return self._execute(job, resume, token)
        except SQLAlchemyError as e:
            logger.error(f"❌ Store error while running job {job.job_id}: {e}")
            return self._fail(job, f"store error: {e}", tracker=None)

    def _execute(
        self, job: BackfillJobDTO, resume: bool, token: CancellationToken
    ) -> Optional[BackfillJobDTO]:
        job_id = job.job_id
        logger.info(
            f"🚀 {'Resuming' if resume else 'Starting'} backfill job {job_id} "
            f"({job.job_type}, target={job.target_key}, run={job.run_epoch})"
        )

        try:
            stream = build_item_stream(job.job_type, job.config, self.processor)
        except Exception as e:
            logger.error(f"❌ Failed to enumerate items for job {job_id}: {e}")
            return self._fail(job, f"failed to enumerate items: {e}", tracker=None)

        tracker = self._tracker_for(job, stream, resume)
        if tracker is None:
            return self._fail(job, "Recovery failed: item stream changed", tracker=None)

        limits = self.effective_rate_limits(job)
        throttle = ItemThrottle(
            min_interval=limits.min_delay_seconds,
            max_per_minute=limits.max_items_per_minute,
            clock=self._clock,
            wait=token.wait,
        )

        try:
            if not tracker.flush(force=True):
                raise _Stop()
            self._process_stream(job, stream, tracker, token, throttle, limits)
        except _Stop:
            logger.info(f"Job {job_id} was taken over by another writer; runner stopping")
            return self.store.get_job(job_id)
        except _CancelNow:
            return self._cancel(job, tracker)
        except FatalJobError as e:
            logger.error(f"❌ Fatal error in job {job_id}: {e}", exc_info=True)
            return self._fail(job, str(e), tracker)

        return self._complete(job, tracker)

    def _claim(self, job_id: str, resume: bool) -> Optional[BackfillJobDTO]:
        """Take ownership of the job; the returned ``run_epoch`` fences all later writes."""
        if resume:
            job = self.store.require_job(job_id)
            if job.status != JobStatus.RUNNING.value:
                logger.info(f"Job {job_id} is '{job.status}', not resuming")
                return None
            return job

        try:
            return self.store.transition(
                job_id, Trigger.CLAIM, expected=[JobStatus.PENDING], started_at=utcnow()
            )
        except InvalidStateError as e:
            logger.info(f"Job {job_id} not claimable: {e.message}")
            return None

    def effective_rate_limits(self, job: BackfillJobDTO) -> RateLimitDTO:
        """Global rate limit with the job's own overrides applied."""
        try:
            limits = self.rate_limits.get()
        except SQLAlchemyError as e:
            logger.warning(f"⚠️ Could not load rate limit config, using defaults: {e}")
            limits = self.rate_limits.defaults
        return limits.merged(job.rate_limit_overrides)

    def _tracker_for(
        self, job: BackfillJobDTO, stream: ItemStream, resume: bool
    ) -> Optional[ProgressTracker]:
        kwargs = {
            "every_items": self.config.checkpoint_every_items,
            "interval_seconds": self.config.checkpoint_interval_seconds,
            "max_retained_errors": self.config.max_retained_errors,
            "clock": self._clock,
            "run_epoch": job.run_epoch,
        }
        if not resume:
            return ProgressTracker(job.job_id, stream, self.store, **kwargs)

        checkpoint = self.store.checkpoints.get(job.job_id)
        if (
            checkpoint is None
            or checkpoint.stream_digest != stream.digest
            or checkpoint.offset > stream.total
        ):
            logger.warning(f"⚠️ Checkpoint for job {job.job_id} no longer matches its item stream")
            return None

        logger.info(
            f"Resuming job {job.job_id} from offset {checkpoint.offset}/{stream.total}"
        )
        return ProgressTracker.resume_from(job, checkpoint, stream, self.store, **kwargs)

    def _process_stream(
        self,
        job: BackfillJobDTO,
        stream: ItemStream,
        tracker: ProgressTracker,
        token: CancellationToken,
        throttle: ItemThrottle,
        limits: RateLimitDTO,
    ) -> None:
        for item_id in stream.remaining(tracker.position):
            if throttle.acquire():
                raise _CancelNow()
            self._check_control(job, token)
            tracker.start_item(item_id)

            result, attempts = self._process_item(job, item_id, token, limits)
            if result is None:
                # Interrupted mid-retry; the item stays unconsumed
                raise _CancelNow()

            tracker.record(item_id, result, attempts)
            if result.outcome == ItemOutcome.FAILED:
                logger.warning(
                    f"⚠️ Item {item_id} of job {job.job_id} failed after {attempts} attempt(s): "
                    f"{result.message}"
                )
            if not tracker.flush():
                raise _Stop()

    def _check_control(self, job: BackfillJobDTO, token: CancellationToken) -> None:
        status, cancel_requested = self.store.get_control_state(
            job.job_id, run_epoch=job.run_epoch
        )
        if status != JobStatus.RUNNING.value:
            raise _Stop()
        if cancel_requested or token.cancelled:
            raise _CancelNow()

    def _process_item(
        self,
        job: BackfillJobDTO,
        item_id: str,
        token: CancellationToken,
        limits: RateLimitDTO,
    ) -> Tuple[Optional[ItemResult], int]:
        """Process one item with retries.

        A timed-out attempt is not retried: the item is recorded as failed
        once the abandoned call has returned.

        Returns:
            (result, attempts); result is None if cancellation interrupted a retry wait
        """
        attempts = 0

        def attempt() -> ItemResult:
            nonlocal attempts
            attempts += 1
            result = self._invoke(job, item_id) or ItemResult.processed()
            if result.outcome == ItemOutcome.FAILED:
                raise ItemFailed(result.message or "item failed")
            return result

        try:
            return call_with_retries(
                attempt,
                max_retries=self.config.max_item_retries,
                base_delay=self.config.retry_base_delay,
                max_delay=limits.max_delay_seconds,
                backoff_factor=limits.backoff_multiplier,
                non_retriable=(FatalJobError, ItemTimeoutError),
                sleep=token.wait,
                label=f"Item {item_id} of job {job.job_id}",
            )
        except ItemTimeoutError as e:
            return ItemResult.failed(e.message), attempts
        except RetriesExhausted as e:
            if token.cancelled:
                return None, e.attempts
            message = getattr(e.last_error, "message", None) or str(e.last_error)
            return ItemResult.failed(message), e.attempts

    def _invoke(self, job: BackfillJobDTO, item_id: str) -> ItemResult:
        """One processor call, bounded by ``item_timeout_seconds`` when set.

        On timeout the call cannot be interrupted, so this waits for it to
        return before raising; no two calls for a job ever overlap.
        """
        timeout = self.config.item_timeout_seconds
        if not timeout:
            return self.processor.process_item(job, item_id)

        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="backfill-item")
        try:
            future = executor.submit(self.processor.process_item, job, item_id)
            try:
                return future.result(timeout=timeout)
            except FuturesTimeoutError:
                logger.warning(
                    f"⏱️ Item {item_id} of job {job.job_id} exceeded {timeout}s; "
                    f"waiting for the call to return"
                )
                raise ItemTimeoutError(item_id, timeout)
        finally:
            executor.shutdown(wait=True)

    # ------------------------------------------------------------------
    # Terminal transitions
    # ------------------------------------------------------------------

    def _complete(self, job: BackfillJobDTO, tracker: ProgressTracker) -> Optional[BackfillJobDTO]:
        if not tracker.flush(force=True):
            return self.store.get_job(job.job_id)

        duration = seconds_between(job.started_at, utcnow())
        result = tracker.build_result(duration)
        try:
            done = self.store.transition(
                job.job_id, Trigger.COMPLETE, run_epoch=job.run_epoch,
                result=result, current_item=None,
            )
        except InvalidStateError as e:
            logger.info(f"Job {job.job_id} could not complete: {e.message}")
            return self.store.get_job(job.job_id)

        logger.info(
            f"✅ Backfill job {job.job_id} completed: {result['items_processed']} processed, "
            f"{result['items_failed']} failed, {result['items_skipped']} skipped "
            f"in {result['duration_seconds']}s"
        )
        return done

    def _cancel(self, job: BackfillJobDTO, tracker: ProgressTracker) -> Optional[BackfillJobDTO]:
        if not tracker.flush(force=True):
            return self.store.get_job(job.job_id)
        try:
            cancelled = self.store.transition(
                job.job_id, Trigger.CANCEL, expected=[JobStatus.RUNNING],
                run_epoch=job.run_epoch, error=CANCELLED_BY_REQUEST, current_item=None,
            )
        except InvalidStateError as e:
            logger.info(f"Job {job.job_id} could not be cancelled: {e.message}")
            return self.store.get_job(job.job_id)

        logger.info(f"🛑 Backfill job {job.job_id} cancelled at offset {tracker.position}")
        return cancelled

    def _fail(
        self, job: BackfillJobDTO, message: str, tracker: Optional[ProgressTracker]
    ) -> Optional[BackfillJobDTO]:
        try:
            if tracker is not None:
                tracker.flush(force=True)
            return self.store.transition(
                job.job_id, Trigger.FAIL, expected=[JobStatus.RUNNING],
                run_epoch=job.run_epoch, error=message, current_item=None,
            )
        except InvalidStateError as e:
            logger.info(f"Job {job.job_id} not marked failed: {e.message}")
        except SQLAlchemyError as e:
            logger.error(
                f"❌ Could not record failure of job {job.job_id}; leaving it for recovery: {e}"
            )
            return None
        return self.store.get_job(job.job_id)
