"""Read-only job queries."""

from typing import Any, Dict, Iterable, Optional

from pydantic import ValidationError as PydanticValidationError

from src.models.dtos import BackfillJobDTO
from src.models.validators import ListJobsRequest
from src.services.exceptions import ValidationError
from src.services.job_store import JobStore


class JobQueryService:
    def __init__(self, store: JobStore):
        self.store = store

    def list_jobs(
        self,
        status: Optional[Iterable[str]] = None,
        limit: int = 20,
        offset: int = 0,
        job_type: Optional[Iterable[str]] = None,
        target_key: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Page of jobs, newest first.

        Returns:
            ``{"jobs": [BackfillJobDTO], "total": int}`` where ``total`` is the
            full filtered count, independent of ``limit``
        """
        try:
            request = ListJobsRequest(
                status=list(status) if status else None,
                job_type=list(job_type) if job_type else None,
                target_key=target_key,
                limit=limit,
                offset=offset,
            )
        except PydanticValidationError as e:
            errors = [
                {"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]}
                for err in e.errors()
            ]
            raise ValidationError("Invalid job list filter", errors=errors) from e

        jobs, total = self.store.query_jobs(
            statuses=request.status,
            job_types=request.job_type,
            target_key=request.target_key,
            limit=request.limit,
            offset=request.offset,
        )
        return {"jobs": jobs, "total": total}

    def get_job(self, job_id: str) -> BackfillJobDTO:
        """Raises NotFoundError if ``job_id`` does not exist."""
        return self.store.require_job(job_id)
