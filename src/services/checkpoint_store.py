"""Durable resume positions for backfill jobs, keyed by job id."""

import logging
from typing import Optional

from sqlalchemy.orm import Session

from src.models.backfill_checkpoint import BackfillCheckpoint
from src.models.dtos import CheckpointDTO
from src.utils.database import session_scope
from src.utils.timezone import utcnow

logger = logging.getLogger(__name__)


class CheckpointStore:
    """Read, upsert and delete checkpoint rows.

    Every method accepts an optional ``session`` so callers can fold the
    checkpoint write into the same transaction as a job update.
    """

    def __init__(self, session_factory=None):
        self.session_factory = session_factory

    def get(self, job_id: str, session: Optional[Session] = None) -> Optional[CheckpointDTO]:
        if session is not None:
            return CheckpointDTO.from_orm(session.get(BackfillCheckpoint, job_id))

        with session_scope(self.session_factory) as s:
            return CheckpointDTO.from_orm(s.get(BackfillCheckpoint, job_id))

    def exists(self, job_id: str) -> bool:
        return self.get(job_id) is not None

    def upsert(self, checkpoint: CheckpointDTO, session: Optional[Session] = None) -> bool:
        """Write a checkpoint unless a newer offset is already stored.

        Returns:
            True if the row was written, False if it would have moved backwards
        """
        if session is not None:
            return self._upsert(session, checkpoint)

        with session_scope(self.session_factory) as s:
            return self._upsert(s, checkpoint)

    def _upsert(self, session: Session, checkpoint: CheckpointDTO) -> bool:
        row = session.get(BackfillCheckpoint, checkpoint.job_id)
        if row is None:
            row = BackfillCheckpoint(job_id=checkpoint.job_id)
            session.add(row)
        elif row.offset > checkpoint.offset:
            logger.warning(
                f"Refusing to move checkpoint backwards for job {checkpoint.job_id}: "
                f"stored offset={row.offset}, new offset={checkpoint.offset}"
            )
            return False

        row.offset = checkpoint.offset
        row.processed_items = checkpoint.processed_items
        row.skipped_items = checkpoint.skipped_items
        row.failed_items = checkpoint.failed_items
        row.total_items = checkpoint.total_items
        row.stream_digest = checkpoint.stream_digest
        row.updated_at = utcnow()
        session.flush()
        return True

    def delete(self, job_id: str, session: Optional[Session] = None) -> bool:
        """Delete a job's checkpoint. Returns True if a row was removed."""
        if session is not None:
            return self._delete(session, job_id)

        with session_scope(self.session_factory) as s:
            return self._delete(s, job_id)

    @staticmethod
    def _delete(session: Session, job_id: str) -> bool:
        deleted = (
            session.query(BackfillCheckpoint)
            .filter(BackfillCheckpoint.job_id == job_id)
            .delete(synchronize_session=False)
        )
        if deleted:
            logger.debug(f"Deleted checkpoint for job {job_id}")
        return bool(deleted)
