"""Hand admitted or recovered jobs to a runner.

Admission and recovery only decide *that* a job should run; the dispatcher
decides *where*: a background thread in this process, the calling thread, or a
Celery worker.
"""

import logging
import threading
from abc import ABC, abstractmethod
from typing import Dict, List

from src.services.job_runner import JobRunner

logger = logging.getLogger(__name__)


class JobDispatcher(ABC):
    """Schedules ``JobRunner.run`` for a job id."""

    @abstractmethod
    def dispatch(self, job_id: str, resume: bool = False) -> None:
        ...

    def cancel(self, job_id: str) -> bool:
        """Signal an in-process run of ``job_id``; False if it is not local."""
        return False


class InlineJobDispatcher(JobDispatcher):
    """Runs the job synchronously in the caller's thread."""

    def __init__(self, runner: JobRunner):
        self.runner = runner

    def dispatch(self, job_id: str, resume: bool = False) -> None:
        self.runner.run(job_id, resume=resume)

    def cancel(self, job_id: str) -> bool:
        return self.runner.cancel(job_id)


class ThreadJobDispatcher(JobDispatcher):
    """Runs each job in its own daemon thread."""

    def __init__(self, runner: JobRunner):
        self.runner = runner
        self._threads: Dict[str, threading.Thread] = {}
        self._lock = threading.Lock()

    def dispatch(self, job_id: str, resume: bool = False) -> None:
        def thread_target():
            try:
                self.runner.run(job_id, resume=resume)
            except Exception as e:
                logger.error(f"❌ Background run of job {job_id} crashed: {e}", exc_info=True)

        thread = threading.Thread(
            target=thread_target, name=f"backfill-{job_id[:8]}", daemon=True
        )
        with self._lock:
            self._threads = {k: t for k, t in self._threads.items() if t.is_alive()}
            self._threads[job_id] = thread
        thread.start()
        logger.debug(f"Dispatched job {job_id} to thread {thread.name}")

    def cancel(self, job_id: str) -> bool:
        return self.runner.cancel(job_id)

    def join(self, timeout: float = None) -> List[str]:
        """Wait for dispatched threads; returns ids still running afterwards."""
        with self._lock:
            threads = dict(self._threads)
        for thread in threads.values():
            thread.join(timeout)
        return [job_id for job_id, t in threads.items() if t.is_alive()]


class CeleryJobDispatcher(JobDispatcher):
    """Queues ``run_backfill_job`` for a Celery worker."""

    def dispatch(self, job_id: str, resume: bool = False) -> None:
        # Imported here: the task module builds a service that owns a dispatcher
        from src.tasks.backfill_tasks import run_backfill_job

        task = run_backfill_job.delay(job_id, resume)
        logger.info(f"Queued backfill job {job_id} as Celery task {task.id}")
