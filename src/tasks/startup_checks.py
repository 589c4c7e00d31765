"""
Celery worker startup recovery.

When a worker comes up after a crash or deployment, any job still marked
``running`` lost its runner. Recovery resumes those jobs from their
checkpoints (queued back onto Celery) or fails them.
"""

import logging

from config.settings import settings

logger = logging.getLogger(__name__)


def run_startup_recovery(service=None):
    """Run one recovery pass; errors are logged, never raised into the worker.

    Args:
        service: BackfillService to use; defaults to the worker's service

    Returns:
        The RecoveryReport, or None if recovery is disabled or failed
    """
    if not settings.backfill.auto_recover:
        logger.info("⏭️  BACKFILL_AUTO_RECOVER disabled, skipping startup recovery")
        return None

    try:
        if service is None:
            from src.tasks.backfill_tasks import get_worker_service

            service = get_worker_service()

        logger.info("🔍 Checking for orphaned backfill jobs...")
        return service.recover()
    except Exception as e:
        logger.error(f"❌ Error during startup recovery: {e}", exc_info=True)
        return None


# This will be called by the worker when it starts
def on_worker_ready(**kwargs):
    """
    Celery signal handler for worker ready event.

    This is called when the worker has finished starting up and is ready
    to receive tasks.
    """
    logger.info("🚀 Worker startup complete, running backfill recovery...")
    run_startup_recovery()
