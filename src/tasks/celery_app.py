"""Celery application configuration for background backfill execution."""

import logging

from celery import Celery
from celery.signals import worker_process_shutdown, worker_ready

from config.settings import settings
from src.utils.database import cleanup_connections

logger = logging.getLogger(__name__)


def _result_backend_url() -> str:
    """Explicit backend if configured, else the job database via SQLAlchemy."""
    if settings.celery.result_backend:
        return settings.celery.result_backend

    database_url = settings.database.database_url
    if database_url.startswith('postgres://'):
        return 'db+postgresql://' + database_url.split('://', 1)[1]
    return 'db+' + database_url


celery_app = Celery('backfill_engine', include=['src.tasks.backfill_tasks'])

celery_app.conf.update(
    broker_url=settings.celery.broker_url,
    result_backend=_result_backend_url(),
    task_serializer='json',
    accept_content=['json'],
    result_serializer='json',
    timezone='UTC',
    enable_utc=True,
    task_track_started=True,
    task_always_eager=settings.celery.task_always_eager,
    broker_connection_retry_on_startup=True,
    broker_connection_max_retries=10,
    result_backend_table_prefix='celery_',
    result_expires=3600,  # 1 hour in seconds
    # Late ack + requeue on worker loss; a redelivered run of a job that is
    # already running is a no-op and startup recovery resumes it instead
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=1,  # Long-running jobs: fetch one task at a time
)

backend_display = celery_app.conf.result_backend
if '@' in backend_display:
    backend_display = backend_display.split('@')[0] + '@***'
logger.debug(f"Celery result backend: {backend_display}")


# Resume orphaned jobs once the worker can accept tasks
from src.tasks.startup_checks import on_worker_ready  # noqa: E402

worker_ready.connect(on_worker_ready)


@worker_process_shutdown.connect
def on_worker_process_shutdown(**kwargs):
    """Release pooled database connections when a worker process exits."""
    logger.info(f"⚠️  Celery worker process shutting down (pid={kwargs.get('pid')})")
    cleanup_connections()


__all__ = ['celery_app']
