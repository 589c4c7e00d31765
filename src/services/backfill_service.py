"""Backfill service: the operations exposed to the API, CLI and workers.

Wires the job store, runner, dispatcher, admission, query and recovery
components together and implements the cancellation paths.
"""

import logging
from typing import Any, Dict, Iterable, Optional

from pydantic import ValidationError as PydanticValidationError

from config.settings import BackfillConfig, Settings, settings as default_settings
from src.models.backfill_job import FORCE_CANCELLED_ERROR, JobStatus, JobType
from src.models.dtos import BackfillJobDTO, RateLimitDTO
from src.models.validators import RateLimitUpdate
from src.services import job_state_machine as fsm
from src.services.admission_controller import AdmissionController, validate_start_request
from src.services.dispatchers import (
    CeleryJobDispatcher,
    InlineJobDispatcher,
    JobDispatcher,
    ThreadJobDispatcher,
)
from src.services.exceptions import InvalidStateError, StaleStateError, ValidationError
from src.services.item_streams import (
    ItemProcessor,
    build_item_stream,
    describe_date_range,
    load_item_processor,
)
from src.services.job_query_service import JobQueryService
from src.services.job_runner import JobRunner
from src.services.job_state_machine import Trigger
from src.services.job_store import JobStore
from src.services.rate_limit_store import RateLimitStore, default_rate_limits
from src.services.recovery_service import RecoveryReport, RecoveryService

logger = logging.getLogger(__name__)

CANCELLED_BEFORE_START = "cancelled before start"


class BackfillService:
    """Facade over the backfill engine components."""

    def __init__(
        self,
        store: JobStore,
        processor: ItemProcessor,
        runner: JobRunner,
        dispatcher: JobDispatcher,
        config: Optional[BackfillConfig] = None,
    ):
        self.store = store
        self.processor = processor
        self.runner = runner
        self.dispatcher = dispatcher
        self.config = config or BackfillConfig()
        self.admission = AdmissionController(store, dispatcher)
        self.queries = JobQueryService(store)
        self.recovery = RecoveryService(store, processor, dispatcher, local_runner=runner)

    # ------------------------------------------------------------------
    # Admission and queries
    # ------------------------------------------------------------------

    def start_job(
        self,
        target_key: str,
        job_type: JobType,
        config: Optional[Dict[str, Any]] = None,
        rate_limit_overrides: Optional[Dict[str, Any]] = None,
    ) -> str:
        return self.admission.start_job(target_key, job_type, config, rate_limit_overrides)

    def list_jobs(
        self,
        status: Optional[Iterable[str]] = None,
        limit: int = 20,
        offset: int = 0,
        job_type: Optional[Iterable[str]] = None,
        target_key: Optional[str] = None,
    ) -> Dict[str, Any]:
        return self.queries.list_jobs(
            status=status, limit=limit, offset=offset, job_type=job_type, target_key=target_key
        )

    def get_job(self, job_id: str) -> BackfillJobDTO:
        return self.queries.get_job(job_id)

    def preview_job(
        self, target_key: str, job_type: JobType, config: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """Describe the work a start request would do without persisting anything."""
        request = validate_start_request(target_key, job_type, config)
        try:
            stream = build_item_stream(request.job_type, request.config, self.processor)
        except Exception as e:
            raise ValidationError(f"Cannot enumerate items: {e}") from e

        return {
            "job_type": request.job_type.value,
            "target_key": request.target_key,
            "total_items": stream.total,
            "date_range": describe_date_range(stream.items, request.config),
            "items": stream.items[: self.config.preview_item_limit],
            "estimated_duration_seconds": round(
                stream.total * self.config.estimated_seconds_per_item, 1
            ),
        }

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    def cancel_job(self, job_id: str) -> None:
        """Graceful cancel.

        A pending job is cancelled immediately; a running job gets the
        persisted cancellation flag and stops at its next item boundary.

        Raises:
            NotFoundError: unknown job
            InvalidStateError: the job is not pending or running
        """
        job = self.store.require_job(job_id)

        # One retry covers a pending job being claimed between read and write
        for _ in range(2):
            if job.status == JobStatus.PENDING.value:
                try:
                    self.store.transition(
                        job_id, Trigger.CANCEL, expected=[JobStatus.PENDING],
                        error=CANCELLED_BEFORE_START,
                    )
                    logger.info(f"🛑 Backfill job {job_id} cancelled before start")
                    return
                except StaleStateError:
                    job = self.store.require_job(job_id)
                    continue

            if job.status == JobStatus.RUNNING.value:
                if self.store.request_cancel(job_id):
                    self.dispatcher.cancel(job_id)
                    logger.info(f"🛑 Cancellation requested for backfill job {job_id}")
                    return
                job = self.store.require_job(job_id)
                continue

            break

        raise InvalidStateError(
            f"Job {job_id} cannot be cancelled while '{job.status}'",
            job_id=job_id,
            status=job.status,
        )

    def force_cancel_job(self, job_id: str, reason: Optional[str] = None) -> BackfillJobDTO:
        """Immediately cancel a job and discard its checkpoint. Irreversible.

        Raises:
            NotFoundError: unknown job
            InvalidStateError: the job is already terminal
        """
        job = self.store.require_job(job_id)
        if not fsm.can_force_cancel(job.status):
            raise InvalidStateError(
                f"Job {job_id} cannot be force-cancelled while '{job.status}'",
                job_id=job_id,
                status=job.status,
            )

        cancelled = self.store.transition(
            job_id,
            Trigger.FORCE_CANCEL,
            error=FORCE_CANCELLED_ERROR,
            cancel_reason=reason,
            current_item=None,
        )
        # Stop a local runner early; its own writes are refused from now on anyway
        self.dispatcher.cancel(job_id)

        logger.warning(
            f"⚠️ Backfill job {job_id} force-cancelled from '{job.status}'"
            + (f": {reason}" if reason else "")
        )
        return cancelled

    # ------------------------------------------------------------------
    # Rate limit
    # ------------------------------------------------------------------

    def get_rate_limit_config(self) -> RateLimitDTO:
        """Global rate limit applied to jobs started from now on."""
        return self.runner.rate_limits.get()

    def update_rate_limit_config(self, changes: Optional[Dict[str, Any]]) -> RateLimitDTO:
        """Merge a partial rate limit into the stored one.

        Only the given fields change. Jobs already running keep the limit they
        started with.

        Raises:
            ValidationError: unknown field, out-of-range value or empty update
        """
        try:
            update = RateLimitUpdate.model_validate(changes or {})
        except PydanticValidationError as e:
            errors = [
                {"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]}
                for err in e.errors()
            ]
            raise ValidationError("Invalid rate limit config", errors=errors) from e

        fields = update.changes()
        if not fields:
            raise ValidationError("Rate limit update must set at least one field")

        saved = self.runner.rate_limits.update(fields)
        logger.info(f"⚙️ Backfill rate limit updated: {saved.to_dict()}")
        return saved

    # ------------------------------------------------------------------
    # Recovery
    # ------------------------------------------------------------------

    def recover(self) -> RecoveryReport:
        return self.recovery.recover()

    def get_recovery_status(self) -> Dict[str, Any]:
        return self.recovery.get_status()


def build_dispatcher(mode: str, runner: JobRunner) -> JobDispatcher:
    if mode == "thread":
        return ThreadJobDispatcher(runner)
    if mode == "inline":
        return InlineJobDispatcher(runner)
    if mode == "celery":
        return CeleryJobDispatcher()
    raise ValueError(f"Unknown dispatch mode: {mode}")


def build_backfill_service(
    processor: Optional[ItemProcessor] = None,
    session_factory=None,
    dispatch_mode: Optional[str] = None,
    app_settings: Optional[Settings] = None,
) -> BackfillService:
    """Assemble a ``BackfillService`` from settings.

    Args:
        processor: Item processor; defaults to ``BACKFILL_ITEM_PROCESSOR``
        session_factory: SQLAlchemy session factory; defaults to the global one
        dispatch_mode: Overrides ``BACKFILL_DISPATCH_MODE``
        app_settings: Settings instance; defaults to the module singleton
    """
    cfg = (app_settings or default_settings).backfill
    processor = processor or load_item_processor(cfg.item_processor)

    store = JobStore(session_factory)
    rate_limits = RateLimitStore(session_factory, default_rate_limits(cfg))
    runner = JobRunner(store, processor, cfg, rate_limits=rate_limits)
    dispatcher = build_dispatcher(dispatch_mode or cfg.dispatch_mode, runner)

    logger.info(
        f"Backfill service ready (dispatch={dispatch_mode or cfg.dispatch_mode}, "
        f"processor={type(processor).__name__})"
    )
    return BackfillService(store, processor, runner, dispatcher, cfg)
