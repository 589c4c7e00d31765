"""
Celery tasks for backfill job execution.

The worker runs jobs directly through its ``JobRunner``; anything the worker
itself needs to dispatch (recovered jobs) is queued back onto Celery.
"""

import logging
import threading
from typing import Any, Dict

from src.tasks.celery_app import celery_app

logger = logging.getLogger(__name__)

_service = None
_service_lock = threading.Lock()


def get_worker_service():
    """Lazily build the worker's BackfillService (Celery dispatch)."""
    global _service
    with _service_lock:
        if _service is None:
            from src.services.backfill_service import build_backfill_service

            _service = build_backfill_service(dispatch_mode="celery")
        return _service


def reset_worker_service():
    """Drop the cached service (used by tests and after fork)."""
    global _service
    with _service_lock:
        _service = None


@celery_app.task(bind=True, name='backfill.run_job')
def run_backfill_job(self, job_id: str, resume: bool = False) -> Dict[str, Any]:
    """
    Run one backfill job to a terminal status.

    Args:
        job_id: Job to run
        resume: True for jobs recovery moved back to running

    Returns:
        Dict with the job id and the status the job ended in
    """
    logger.info(
        f"🔄 Task {self.request.id} running backfill job {job_id} (resume={resume})"
    )

    job = get_worker_service().runner.run(job_id, resume=resume)

    return {
        "job_id": job_id,
        "status": job.status if job else None,
        "resumed": resume,
    }
