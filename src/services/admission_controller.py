"""Admission of new backfill jobs: one active job per target key."""

import logging
from typing import Any, Dict, Optional

from pydantic import ValidationError as PydanticValidationError

from src.models.backfill_job import JobType
from src.models.validators import StartJobRequest
from src.services.dispatchers import JobDispatcher
from src.services.exceptions import ValidationError
from src.services.job_store import JobStore

logger = logging.getLogger(__name__)


def validate_start_request(
    target_key: str,
    job_type: Any,
    config: Optional[Dict[str, Any]],
    rate_limit_overrides: Optional[Dict[str, Any]] = None,
) -> StartJobRequest:
    """Validate a start/preview request, raising the engine's ``ValidationError``."""
    try:
        return StartJobRequest(
            target_key=target_key,
            job_type=job_type,
            config=config or {},
            rate_limit_overrides=rate_limit_overrides,
        )
    except PydanticValidationError as e:
        errors = [
            {"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]}
            for err in e.errors()
        ]
        raise ValidationError("Invalid backfill job request", errors=errors) from e


class AdmissionController:
    def __init__(self, store: JobStore, dispatcher: JobDispatcher):
        self.store = store
        self.dispatcher = dispatcher

    def start_job(
        self,
        target_key: str,
        job_type: JobType,
        config: Optional[Dict[str, Any]] = None,
        rate_limit_overrides: Optional[Dict[str, Any]] = None,
    ) -> str:
        """Persist a pending job and hand it to the dispatcher.

        Returns:
            The new job id

        Raises:
            ValidationError: bad target key, job type, config or rate limit overrides
            ConflictError: the target already has a non-terminal job
        """
        request = validate_start_request(target_key, job_type, config, rate_limit_overrides)
        overrides = None
        if request.rate_limit_overrides is not None:
            overrides = request.rate_limit_overrides.changes() or None
        job = self.store.create_job(
            request.target_key, request.job_type, request.config, rate_limit_overrides=overrides
        )
        logger.info(
            f"📥 Backfill job {job.job_id} created ({job.job_type}, target={job.target_key})"
        )

        # A dispatch failure leaves the job pending; recovery re-dispatches it
        try:
            self.dispatcher.dispatch(job.job_id)
        except Exception as e:
            logger.error(f"❌ Could not dispatch job {job.job_id}: {e}", exc_info=True)

        return job.job_id
