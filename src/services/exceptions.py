"""
Exception hierarchy for the backfill engine.

Admission, lookup and cancellation errors are raised synchronously to callers;
fatal and recovery errors end up persisted on the job record instead.
"""

from typing import Any, Dict, Optional


class BackfillError(Exception):
    """Base exception for all backfill engine errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        """
        Initialize base exception with message and optional context.

        Args:
            message: Human-readable error message
            details: Optional dictionary of additional context for debugging
        """
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class ValidationError(BackfillError):
    """Raised when a request or job config fails validation."""

    def __init__(
        self,
        message: str,
        errors: Optional[list] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if errors:
            details["errors"] = errors
        self.errors = errors or []
        super().__init__(message, details)


class ConflictError(BackfillError):
    """Raised when a target already has a non-terminal job."""

    def __init__(
        self,
        target_key: str,
        active_job_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        details["target_key"] = target_key
        if active_job_id:
            details["active_job_id"] = active_job_id
        self.target_key = target_key
        self.active_job_id = active_job_id
        super().__init__(f"A backfill job is already active for target '{target_key}'", details)


class NotFoundError(BackfillError):
    """Raised when a job id does not exist."""

    def __init__(self, job_id: str, details: Optional[Dict[str, Any]] = None) -> None:
        details = details or {}
        details["job_id"] = job_id
        self.job_id = job_id
        super().__init__(f"Backfill job not found: {job_id}", details)


class InvalidStateError(BackfillError):
    """Raised when an operation is not allowed in the job's current status."""

    def __init__(
        self,
        message: str,
        job_id: Optional[str] = None,
        status: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if job_id:
            details["job_id"] = job_id
        if status:
            details["status"] = status
        self.job_id = job_id
        self.status = status
        super().__init__(message, details)


class IllegalTransitionError(InvalidStateError):
    """Raised when a status change is not in the transition table."""

    def __init__(self, from_status: str, to_status: str, job_id: Optional[str] = None) -> None:
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"Illegal transition {from_status} -> {to_status}",
            job_id=job_id,
            status=from_status,
            details={"to_status": to_status},
        )


class StaleStateError(InvalidStateError):
    """Raised when a conditional write finds the job no longer in the expected status."""


class FatalJobError(BackfillError):
    """Raised when a job cannot continue (store unavailable, bad config).

    Item processors raise this to abort the whole job rather than one item.
    """


class RecoveryError(BackfillError):
    """Raised when a job cannot be resumed from its checkpoint."""

    def __init__(self, job_id: str, reason: str) -> None:
        self.job_id = job_id
        self.reason = reason
        super().__init__(f"Recovery failed: {reason}", {"job_id": job_id})


class ItemTimeoutError(BackfillError):
    """Raised when one item attempt exceeds its timeout."""

    def __init__(self, item_id: str, timeout_seconds: float) -> None:
        self.item_id = item_id
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"Item '{item_id}' timed out after {timeout_seconds}s",
            {"item_id": item_id},
        )
