"""Allowed status transitions for backfill jobs.

This table is the single source of truth consulted by the runner, the
recovery service, the cancellation paths and API validation.
"""

import enum
from typing import Dict, FrozenSet, Iterable, Tuple

from src.models.backfill_job import JobStatus
from src.services.exceptions import IllegalTransitionError


class Trigger(str, enum.Enum):
    """What causes a transition."""

    CLAIM = "claim"
    COMPLETE = "complete"
    FAIL = "fail"
    CANCEL = "cancel"
    FORCE_CANCEL = "force_cancel"
    ORPHANED = "orphaned"
    RESUME = "resume"
    RESUME_FAILED = "resume_failed"


# (from, to, trigger)
TRANSITIONS: Tuple[Tuple[JobStatus, JobStatus, Trigger], ...] = (
    (JobStatus.PENDING, JobStatus.RUNNING, Trigger.CLAIM),
    (JobStatus.PENDING, JobStatus.CANCELLED, Trigger.CANCEL),
    (JobStatus.RUNNING, JobStatus.COMPLETED, Trigger.COMPLETE),
    (JobStatus.RUNNING, JobStatus.FAILED, Trigger.FAIL),
    (JobStatus.RUNNING, JobStatus.CANCELLED, Trigger.CANCEL),
    (JobStatus.RUNNING, JobStatus.RECOVERING, Trigger.ORPHANED),
    (JobStatus.RECOVERING, JobStatus.RUNNING, Trigger.RESUME),
    (JobStatus.RECOVERING, JobStatus.FAILED, Trigger.RESUME_FAILED),
    (JobStatus.PENDING, JobStatus.CANCELLED, Trigger.FORCE_CANCEL),
    (JobStatus.RUNNING, JobStatus.CANCELLED, Trigger.FORCE_CANCEL),
    (JobStatus.RECOVERING, JobStatus.CANCELLED, Trigger.FORCE_CANCEL),
)

_BY_TRIGGER: Dict[Trigger, Dict[JobStatus, JobStatus]] = {}
for _from, _to, _trigger in TRANSITIONS:
    _BY_TRIGGER.setdefault(_trigger, {})[_from] = _to


def _as_status(value) -> JobStatus:
    return value if isinstance(value, JobStatus) else JobStatus(value)


def is_allowed(from_status, to_status) -> bool:
    """Whether any trigger moves a job from ``from_status`` to ``to_status``."""
    src, dst = _as_status(from_status), _as_status(to_status)
    return any(f == src and t == dst for f, t, _ in TRANSITIONS)


def sources_for(trigger: Trigger) -> FrozenSet[JobStatus]:
    """Statuses from which ``trigger`` may fire."""
    return frozenset(_BY_TRIGGER.get(trigger, {}).keys())


def target_for(trigger: Trigger, from_status) -> JobStatus:
    """Resulting status when ``trigger`` fires in ``from_status``.

    Raises:
        IllegalTransitionError: if the trigger is not valid in that status
    """
    src = _as_status(from_status)
    targets = _BY_TRIGGER.get(trigger, {})
    if src not in targets:
        raise IllegalTransitionError(src.value, f"<{trigger.value}>")
    return targets[src]


def validate_transition(from_status, to_status, job_id: str = None) -> None:
    """Raise if ``from_status -> to_status`` is not in the table."""
    if not is_allowed(from_status, to_status):
        raise IllegalTransitionError(
            _as_status(from_status).value, _as_status(to_status).value, job_id=job_id
        )


def can_cancel(status) -> bool:
    return _as_status(status) in sources_for(Trigger.CANCEL)


def can_force_cancel(status) -> bool:
    return _as_status(status) in sources_for(Trigger.FORCE_CANCEL)


def status_values(statuses: Iterable[JobStatus]) -> Tuple[str, ...]:
    """Literal strings for use in SQL filters."""
    return tuple(_as_status(s).value for s in statuses)
