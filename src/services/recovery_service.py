"""Startup recovery of jobs orphaned by an unclean shutdown.

A job still ``running`` when a process starts has no live runner behind it
(unless this very process is running it). Recovery claims each such job with a
conditional ``running -> recovering`` write, validates its checkpoint against
the re-enumerated item stream, and either hands it back to a runner or fails
it. Pending jobs that never got dispatched are re-dispatched as-is.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from src.models.backfill_job import JobStatus
from src.models.dtos import BackfillJobDTO, CheckpointDTO
from src.services.dispatchers import JobDispatcher
from src.services.exceptions import InvalidStateError, RecoveryError
from src.services.item_streams import ItemProcessor, build_item_stream
from src.services.job_runner import JobRunner
from src.services.job_state_machine import Trigger
from src.services.job_store import JobStore
from src.utils.timezone import isoformat_utc, utcnow

logger = logging.getLogger(__name__)


@dataclass
class RecoveryReport:
    """Outcome of the most recent recovery pass."""

    status: str = "idle"  # idle | recovering | completed | failed
    last_recovery_at: Optional[datetime] = None
    jobs_recovered: int = 0
    jobs_failed: int = 0
    jobs_skipped: int = 0
    jobs_redispatched: int = 0
    errors: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "last_recovery_at": isoformat_utc(self.last_recovery_at),
            "jobs_recovered": self.jobs_recovered,
            "jobs_failed": self.jobs_failed,
            "jobs_skipped": self.jobs_skipped,
            "jobs_redispatched": self.jobs_redispatched,
            "errors": list(self.errors),
        }


class RecoveryService:
    def __init__(
        self,
        store: JobStore,
        processor: ItemProcessor,
        dispatcher: JobDispatcher,
        local_runner: Optional[JobRunner] = None,
    ):
        self.store = store
        self.processor = processor
        self.dispatcher = dispatcher
        self.local_runner = local_runner
        self._report = RecoveryReport()
        self._lock = threading.Lock()

    def get_status(self) -> Dict[str, Any]:
        with self._lock:
            return self._report.to_dict()

    def recover(self) -> RecoveryReport:
        """Run one recovery pass over orphaned running jobs and stranded pending jobs.

        Raises:
            SQLAlchemyError: the job store could not be scanned
        """
        report = RecoveryReport(status="recovering", last_recovery_at=utcnow())
        with self._lock:
            self._report = report

        try:
            orphans = self.store.find_by_status([JobStatus.RUNNING])
            if orphans:
                logger.info(f"🔄 Found {len(orphans)} orphaned running job(s), attempting recovery")
            for job in orphans:
                self._recover_job(job, report)

            for job in self.store.find_by_status([JobStatus.PENDING]):
                self._redispatch_pending(job, report)
        except Exception as e:
            report.status = "failed"
            report.errors.append({"job_id": None, "error": str(e)})
            logger.error(f"❌ Recovery pass failed: {e}", exc_info=True)
            raise

        report.status = "completed"
        logger.info(
            f"✅ Recovery complete: {report.jobs_recovered} resumed, {report.jobs_failed} failed, "
            f"{report.jobs_skipped} skipped, {report.jobs_redispatched} pending re-dispatched"
        )
        return report

    def _is_local(self, job_id: str) -> bool:
        return self.local_runner is not None and self.local_runner.is_running_here(job_id)

    def _recover_job(self, job: BackfillJobDTO, report: RecoveryReport) -> None:
        job_id = job.job_id
        if self._is_local(job_id):
            report.jobs_skipped += 1
            return

        try:
            self.store.transition(job_id, Trigger.ORPHANED, expected=[JobStatus.RUNNING])
        except InvalidStateError as e:
            # Another worker or a cancel got there first
            logger.info(f"Recovery of job {job_id} abandoned: {e.message}")
            report.jobs_skipped += 1
            return

        try:
            checkpoint = self.validate_checkpoint(job)
        except RecoveryError as e:
            self._fail_recovery(job_id, e, report)
            return

        try:
            self.store.transition(job_id, Trigger.RESUME, resumed_at=utcnow())
        except InvalidStateError as e:
            logger.info(f"Job {job_id} left recovering before resume: {e.message}")
            report.jobs_skipped += 1
            return

        logger.info(f"🔄 Resuming job {job_id} from offset {checkpoint.offset}")
        try:
            self.dispatcher.dispatch(job_id, resume=True)
        except Exception as e:
            # Job stays running; the next recovery pass picks it up again
            logger.error(f"❌ Could not dispatch recovered job {job_id}: {e}", exc_info=True)
            report.errors.append({"job_id": job_id, "error": f"dispatch failed: {e}"})
            return
        report.jobs_recovered += 1

    def validate_checkpoint(self, job: BackfillJobDTO) -> CheckpointDTO:
        """Check that ``job`` can resume exactly where its checkpoint says.

        Raises:
            RecoveryError: checkpoint absent, out of range, or the stream changed
        """
        checkpoint = self.store.checkpoints.get(job.job_id)
        if checkpoint is None:
            raise RecoveryError(job.job_id, "checkpoint missing")

        try:
            stream = build_item_stream(job.job_type, job.config, self.processor)
        except Exception as e:
            raise RecoveryError(job.job_id, f"item stream cannot be re-enumerated: {e}") from e

        if checkpoint.offset < 0 or checkpoint.offset > stream.total:
            raise RecoveryError(
                job.job_id,
                f"checkpoint offset {checkpoint.offset} outside item stream of {stream.total}",
            )
        if checkpoint.stream_digest != stream.digest:
            raise RecoveryError(job.job_id, "item stream changed")

        return checkpoint

    def _fail_recovery(self, job_id: str, error: RecoveryError, report: RecoveryReport) -> None:
        logger.warning(f"⚠️ Job {job_id} cannot be resumed: {error.reason}")
        try:
            self.store.transition(
                job_id, Trigger.RESUME_FAILED, error=error.message, current_item=None
            )
        except InvalidStateError as e:
            logger.info(f"Job {job_id} left recovering before it could be failed: {e.message}")
            report.jobs_skipped += 1
            return
        report.jobs_failed += 1
        report.errors.append({"job_id": job_id, "error": error.message})

    def _redispatch_pending(self, job: BackfillJobDTO, report: RecoveryReport) -> None:
        if self._is_local(job.job_id):
            return
        try:
            self.dispatcher.dispatch(job.job_id)
        except Exception as e:
            logger.error(f"❌ Could not re-dispatch pending job {job.job_id}: {e}", exc_info=True)
            report.errors.append({"job_id": job.job_id, "error": f"dispatch failed: {e}"})
            return
        report.jobs_redispatched += 1
