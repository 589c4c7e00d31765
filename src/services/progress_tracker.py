"""In-memory progress for a running job, flushed to the stores at bounded intervals."""

import logging
import time
from typing import Callable, List, Optional

from src.models.dtos import BackfillJobDTO, CheckpointDTO, JobErrorDTO
from src.services.exceptions import FatalJobError
from src.services.item_streams import ItemOutcome, ItemResult, ItemStream
from src.services.job_store import JobStore
from src.utils.timezone import isoformat_utc, utcnow

logger = logging.getLogger(__name__)


class ProgressTracker:
    """Counters, retained errors and snapshot ids for one job run.

    ``processed_items`` counts every item carried to a conclusion (succeeded
    or failed after retries); ``failed_items`` is the failed subset and
    ``skipped_items`` counts items the processor reported as already done.
    Their sum ``position`` is the next stream offset.
    """

    def __init__(
        self,
        job_id: str,
        stream: ItemStream,
        store: JobStore,
        every_items: int = 1,
        interval_seconds: float = 5.0,
        max_retained_errors: int = 100,
        clock: Callable[[], float] = time.monotonic,
        run_epoch: Optional[int] = None,
    ):
        self.job_id = job_id
        self.run_epoch = run_epoch
        self.stream = stream
        self.store = store
        self.every_items = max(1, every_items)
        self.interval_seconds = interval_seconds
        self.max_retained_errors = max_retained_errors
        self._clock = clock

        self.processed_items = 0
        self.skipped_items = 0
        self.failed_items = 0
        self.current_item: Optional[str] = None
        self.errors: List[JobErrorDTO] = []
        self.error_count = 0
        self.snapshot_ids: List[str] = []

        self._unflushed = 0
        self._last_flush = self._clock()

    @classmethod
    def resume_from(
        cls,
        job: BackfillJobDTO,
        checkpoint: Optional[CheckpointDTO],
        stream: ItemStream,
        store: JobStore,
        **kwargs,
    ) -> "ProgressTracker":
        """Continue counters from a checkpoint instead of resetting them."""
        tracker = cls(job.job_id, stream, store, **kwargs)
        if checkpoint is not None:
            tracker.processed_items = checkpoint.processed_items
            tracker.skipped_items = checkpoint.skipped_items
            tracker.failed_items = checkpoint.failed_items
            tracker.errors = list(job.progress.errors)
            tracker.error_count = job.progress.error_count
            tracker.snapshot_ids = list(job.snapshot_ids)
        return tracker

    @property
    def total_items(self) -> int:
        return self.stream.total

    @property
    def position(self) -> int:
        return self.processed_items + self.skipped_items

    @property
    def succeeded_items(self) -> int:
        return self.processed_items - self.failed_items

    def start_item(self, item_id: str) -> None:
        self.current_item = item_id

    def record(self, item_id: str, result: ItemResult, attempts: int = 1) -> None:
        """Count one finished item.

        Raises:
            FatalJobError: the item would move the position past the stream end;
                counters are left untouched
        """
        if self.position + 1 > self.total_items:
            raise FatalJobError(
                f"progress overran stream for job {self.job_id}: "
                f"{self.position + 1} > {self.total_items}"
            )

        if result.outcome == ItemOutcome.SKIPPED:
            self.skipped_items += 1
        else:
            self.processed_items += 1
            if result.outcome == ItemOutcome.FAILED:
                self.failed_items += 1
                self._add_error(item_id, result.message or "unknown error", attempts)
            elif result.snapshot_id:
                self.snapshot_ids.append(result.snapshot_id)

        self._unflushed += 1

    def _add_error(self, item_id: str, message: str, attempts: int) -> None:
        self.error_count += 1
        if len(self.errors) < self.max_retained_errors:
            self.errors.append(
                JobErrorDTO(
                    item_id=item_id,
                    message=message,
                    occurred_at=isoformat_utc(utcnow()),
                    attempts=attempts,
                )
            )

    def should_flush(self) -> bool:
        if self._unflushed == 0:
            return False
        if self._unflushed >= self.every_items:
            return True
        return (self._clock() - self._last_flush) >= self.interval_seconds

    def progress_values(self) -> dict:
        return {
            "total_items": self.total_items,
            "processed_items": self.processed_items,
            "skipped_items": self.skipped_items,
            "failed_items": self.failed_items,
            "current_item": self.current_item,
            "errors": [e.to_dict() for e in self.errors],
            "error_count": self.error_count,
            "snapshot_ids": list(self.snapshot_ids),
        }

    def checkpoint(self) -> CheckpointDTO:
        return CheckpointDTO(
            job_id=self.job_id,
            offset=self.position,
            processed_items=self.processed_items,
            skipped_items=self.skipped_items,
            failed_items=self.failed_items,
            total_items=self.total_items,
            stream_digest=self.stream.digest,
        )

    def flush(self, force: bool = False) -> bool:
        """Persist progress and checkpoint if due.

        Returns:
            False if the store refused the write because the job left ``running``
            or was taken over by another run
        """
        if not force and not self.should_flush():
            return True

        written = self.store.save_progress(
            self.job_id,
            self.progress_values(),
            checkpoint=self.checkpoint(),
            run_epoch=self.run_epoch,
        )
        self._unflushed = 0
        self._last_flush = self._clock()

        if written:
            logger.debug(
                f"Checkpoint job {self.job_id}: offset={self.position}/{self.total_items} "
                f"failed={self.failed_items}"
            )
        return written

    def build_result(self, duration_seconds: float) -> dict:
        """Terminal ``result`` for a completed job."""
        return {
            "items_processed": self.succeeded_items,
            "items_failed": self.failed_items,
            "items_skipped": self.skipped_items,
            "snapshot_ids": list(self.snapshot_ids),
            "duration_seconds": round(duration_seconds, 3),
            "outcome": "partial" if self.failed_items > 0 else "success",
        }
