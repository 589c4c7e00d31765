"""Durable persistence of backfill job records.

All status changes go through ``transition``, which is a conditional UPDATE
guarded by the statuses the transition table allows for the trigger. A
zero-row update means another writer changed the job first.
"""

import logging
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy.exc import IntegrityError

from src.models.backfill_job import (
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    BackfillJob,
    JobStatus,
    JobType,
    generate_job_id,
)
from src.models.dtos import BackfillJobDTO, CheckpointDTO, convert_list_to_dtos
from src.services import job_state_machine as fsm
from src.services.checkpoint_store import CheckpointStore
from src.services.exceptions import (
    ConflictError,
    IllegalTransitionError,
    NotFoundError,
    StaleStateError,
)
from src.utils.database import session_scope
from src.utils.timezone import utcnow

logger = logging.getLogger(__name__)

_ACTIVE_VALUES = fsm.status_values(ACTIVE_STATUSES)
_TERMINAL_VALUES = fsm.status_values(TERMINAL_STATUSES)
# Triggers that hand the job to a new run
_OWNERSHIP_TRIGGERS = (fsm.Trigger.CLAIM, fsm.Trigger.RESUME)


class JobStore:
    """Repository for ``backfill_jobs`` rows."""

    def __init__(self, session_factory=None, checkpoint_store: Optional[CheckpointStore] = None):
        self.session_factory = session_factory
        self.checkpoints = checkpoint_store or CheckpointStore(session_factory)

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def create_job(
        self,
        target_key: str,
        job_type: JobType,
        config: Dict[str, Any],
        rate_limit_overrides: Optional[Dict[str, Any]] = None,
    ) -> BackfillJobDTO:
        """Insert a new pending job.

        The partial unique index on active target keys makes the existence
        check and the insert one atomic operation.

        Raises:
            ConflictError: if the target already has a non-terminal job
        """
        job_id = generate_job_id()
        now = utcnow()

        try:
            with session_scope(self.session_factory) as session:
                job = BackfillJob(
                    job_id=job_id,
                    job_type=JobType(job_type).value,
                    target_key=target_key,
                    config=config,
                    rate_limit_overrides=rate_limit_overrides,
                    status=JobStatus.PENDING.value,
                    total_items=0,
                    processed_items=0,
                    skipped_items=0,
                    failed_items=0,
                    errors=[],
                    error_count=0,
                    snapshot_ids=[],
                    cancel_requested=False,
                    run_epoch=0,
                    created_at=now,
                    updated_at=now,
                )
                session.add(job)
                session.flush()
                dto = BackfillJobDTO.from_orm(job)
        except IntegrityError as e:
            active = self.get_active_job_for_target(target_key)
            logger.info(
                f"Admission rejected for target '{target_key}': "
                f"active job {active.job_id if active else 'unknown'}"
            )
            raise ConflictError(target_key, active.job_id if active else None) from e

        return dto

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_job(self, job_id: str) -> Optional[BackfillJobDTO]:
        with session_scope(self.session_factory) as session:
            return BackfillJobDTO.from_orm(session.get(BackfillJob, job_id))

    def require_job(self, job_id: str) -> BackfillJobDTO:
        job = self.get_job(job_id)
        if job is None:
            raise NotFoundError(job_id)
        return job

    def get_active_job_for_target(self, target_key: str) -> Optional[BackfillJobDTO]:
        with session_scope(self.session_factory) as session:
            job = (
                session.query(BackfillJob)
                .filter(
                    BackfillJob.target_key == target_key,
                    BackfillJob.status.in_(_ACTIVE_VALUES),
                )
                .first()
            )
            return BackfillJobDTO.from_orm(job)

    def find_by_status(self, statuses: Iterable[JobStatus]) -> List[BackfillJobDTO]:
        """Jobs in any of ``statuses``, oldest first."""
        with session_scope(self.session_factory) as session:
            jobs = (
                session.query(BackfillJob)
                .filter(BackfillJob.status.in_(fsm.status_values(statuses)))
                .order_by(BackfillJob.created_at.asc(), BackfillJob.job_id.asc())
                .all()
            )
            return convert_list_to_dtos(jobs, BackfillJobDTO)

    def query_jobs(
        self,
        statuses: Optional[Iterable[JobStatus]] = None,
        job_types: Optional[Iterable[JobType]] = None,
        target_key: Optional[str] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> Tuple[List[BackfillJobDTO], int]:
        """Filtered page of jobs, newest first, plus the full filtered count."""
        with session_scope(self.session_factory) as session:
            query = session.query(BackfillJob)

            if statuses:
                query = query.filter(BackfillJob.status.in_(fsm.status_values(statuses)))
            if job_types:
                query = query.filter(
                    BackfillJob.job_type.in_([JobType(t).value for t in job_types])
                )
            if target_key:
                query = query.filter(BackfillJob.target_key == target_key)

            total = query.count()
            jobs = (
                query.order_by(BackfillJob.created_at.desc(), BackfillJob.job_id.desc())
                .offset(offset)
                .limit(limit)
                .all()
            )
            return convert_list_to_dtos(jobs, BackfillJobDTO), total

    def get_control_state(
        self, job_id: str, run_epoch: Optional[int] = None
    ) -> Tuple[Optional[str], bool]:
        """Cheap read of (status, cancel_requested) for the runner's loop.

        With ``run_epoch`` a job claimed by a later run reads as missing.
        """
        with session_scope(self.session_factory) as session:
            query = session.query(BackfillJob.status, BackfillJob.cancel_requested).filter(
                BackfillJob.job_id == job_id
            )
            if run_epoch is not None:
                query = query.filter(BackfillJob.run_epoch == run_epoch)
            row = query.first()
            if row is None:
                return None, False
            return row[0], bool(row[1])

    # ------------------------------------------------------------------
    # Conditional writes
    # ------------------------------------------------------------------

    def transition(
        self,
        job_id: str,
        trigger: fsm.Trigger,
        expected: Optional[Iterable[JobStatus]] = None,
        run_epoch: Optional[int] = None,
        **fields: Any,
    ) -> BackfillJobDTO:
        """Move a job along the transition table with optimistic concurrency.

        Args:
            job_id: Job to update
            trigger: Transition trigger; determines allowed sources and target
            expected: Optional narrower set of acceptable current statuses
            run_epoch: Only update if the job is still owned by this run
            **fields: Extra columns to set in the same UPDATE

        Returns:
            The job as stored after the update

        Raises:
            NotFoundError: job does not exist
            IllegalTransitionError: trigger not allowed from the current status
            StaleStateError: the job changed status concurrently
        """
        sources = set(fsm.sources_for(trigger))
        if expected is not None:
            sources &= {JobStatus(s) for s in expected}
        if not sources:
            raise IllegalTransitionError(",".join(fsm.status_values(expected or [])), trigger.value)

        target = fsm.target_for(trigger, next(iter(sources)))
        now = utcnow()
        values: Dict[Any, Any] = {"status": target.value, "updated_at": now}
        values.update(fields)
        if target in TERMINAL_STATUSES:
            values.setdefault("completed_at", now)
        if trigger in _OWNERSHIP_TRIGGERS:
            values["run_epoch"] = BackfillJob.run_epoch + 1

        with session_scope(self.session_factory) as session:
            query = session.query(BackfillJob).filter(
                BackfillJob.job_id == job_id,
                BackfillJob.status.in_(fsm.status_values(sources)),
            )
            if run_epoch is not None:
                query = query.filter(BackfillJob.run_epoch == run_epoch)
            updated = query.update(values, synchronize_session=False)

            if updated == 1 and target in TERMINAL_STATUSES:
                self.checkpoints.delete(job_id, session=session)

            current = session.get(BackfillJob, job_id)
            if current is None:
                raise NotFoundError(job_id)
            session.refresh(current)
            dto = BackfillJobDTO.from_orm(current)

        if updated != 1:
            if run_epoch is not None and dto.run_epoch != run_epoch:
                raise StaleStateError(
                    f"Job {job_id} belongs to run {dto.run_epoch}, not {run_epoch}",
                    job_id=job_id,
                    status=dto.status,
                )
            if not fsm.is_allowed(dto.status, target):
                raise IllegalTransitionError(dto.status, target.value, job_id=job_id)
            raise StaleStateError(
                f"Job {job_id} is '{dto.status}', expected one of "
                f"{sorted(fsm.status_values(sources))}",
                job_id=job_id,
                status=dto.status,
            )

        logger.debug(f"Job {job_id} transitioned to {target.value} ({trigger.value})")
        return dto

    def save_progress(
        self,
        job_id: str,
        progress: Dict[str, Any],
        checkpoint: Optional[CheckpointDTO] = None,
        run_epoch: Optional[int] = None,
    ) -> bool:
        """Persist progress columns and (optionally) the checkpoint atomically.

        Only applies while the job is running and, with ``run_epoch``, still
        owned by that run, so a force-cancelled or recovered job is never
        overwritten by a straggling runner.

        Returns:
            False if the job is no longer running or was taken over
        """
        values = dict(progress)
        values["updated_at"] = utcnow()
        if checkpoint is not None:
            values["checkpoint_ref"] = checkpoint.offset

        with session_scope(self.session_factory) as session:
            query = session.query(BackfillJob).filter(
                BackfillJob.job_id == job_id,
                BackfillJob.status == JobStatus.RUNNING.value,
            )
            if run_epoch is not None:
                query = query.filter(BackfillJob.run_epoch == run_epoch)
            updated = query.update(values, synchronize_session=False)
            if updated == 1 and checkpoint is not None:
                self.checkpoints.upsert(checkpoint, session=session)

        return updated == 1

    def request_cancel(self, job_id: str) -> bool:
        """Set the persisted cancellation flag on a running job."""
        with session_scope(self.session_factory) as session:
            updated = (
                session.query(BackfillJob)
                .filter(
                    BackfillJob.job_id == job_id,
                    BackfillJob.status == JobStatus.RUNNING.value,
                )
                .update(
                    {"cancel_requested": True, "updated_at": utcnow()},
                    synchronize_session=False,
                )
            )
        return updated == 1
