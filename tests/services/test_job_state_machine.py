"""Tests for the job status transition table."""

import pytest

from src.models.backfill_job import JobStatus
from src.services import job_state_machine as fsm
from src.services.exceptions import IllegalTransitionError, InvalidStateError
from src.services.job_state_machine import Trigger


class TestTransitionTable:
    """Allowed and rejected transitions."""

    @pytest.mark.parametrize("from_status,to_status", [
        (JobStatus.PENDING, JobStatus.RUNNING),
        (JobStatus.RUNNING, JobStatus.COMPLETED),
        (JobStatus.RUNNING, JobStatus.FAILED),
        (JobStatus.RUNNING, JobStatus.CANCELLED),
        (JobStatus.RUNNING, JobStatus.RECOVERING),
        (JobStatus.RECOVERING, JobStatus.RUNNING),
        (JobStatus.RECOVERING, JobStatus.FAILED),
        (JobStatus.RECOVERING, JobStatus.CANCELLED),
        (JobStatus.PENDING, JobStatus.CANCELLED),
    ])
    def test_allowed(self, from_status, to_status):
        assert fsm.is_allowed(from_status, to_status)
        fsm.validate_transition(from_status, to_status)

    @pytest.mark.parametrize("from_status,to_status", [
        (JobStatus.COMPLETED, JobStatus.RUNNING),
        (JobStatus.FAILED, JobStatus.RUNNING),
        (JobStatus.CANCELLED, JobStatus.PENDING),
        (JobStatus.PENDING, JobStatus.COMPLETED),
        (JobStatus.PENDING, JobStatus.RECOVERING),
        (JobStatus.RECOVERING, JobStatus.COMPLETED),
    ])
    def test_rejected(self, from_status, to_status):
        assert not fsm.is_allowed(from_status, to_status)
        with pytest.raises(IllegalTransitionError) as exc_info:
            fsm.validate_transition(from_status, to_status, job_id="job-1")

        assert exc_info.value.from_status == from_status.value
        assert exc_info.value.to_status == to_status.value
        assert isinstance(exc_info.value, InvalidStateError)

    def test_accepts_plain_strings(self):
        assert fsm.is_allowed("running", "completed")
        assert not fsm.is_allowed("completed", "running")


class TestTriggers:
    """Trigger lookups used by conditional writes."""

    def test_sources_for_force_cancel(self):
        assert fsm.sources_for(Trigger.FORCE_CANCEL) == {
            JobStatus.PENDING, JobStatus.RUNNING, JobStatus.RECOVERING
        }

    def test_sources_for_cancel(self):
        assert fsm.sources_for(Trigger.CANCEL) == {JobStatus.PENDING, JobStatus.RUNNING}

    def test_target_for(self):
        assert fsm.target_for(Trigger.CLAIM, JobStatus.PENDING) == JobStatus.RUNNING
        assert fsm.target_for(Trigger.ORPHANED, "running") == JobStatus.RECOVERING
        assert fsm.target_for(Trigger.RESUME_FAILED, JobStatus.RECOVERING) == JobStatus.FAILED

    def test_target_for_invalid_source(self):
        with pytest.raises(IllegalTransitionError):
            fsm.target_for(Trigger.COMPLETE, JobStatus.PENDING)

    def test_can_cancel_and_force_cancel(self):
        assert fsm.can_cancel("pending")
        assert fsm.can_cancel("running")
        assert not fsm.can_cancel("recovering")
        assert fsm.can_force_cancel("recovering")
        for terminal in ("completed", "failed", "cancelled"):
            assert not fsm.can_cancel(terminal)
            assert not fsm.can_force_cancel(terminal)

    def test_status_values(self):
        assert fsm.status_values([JobStatus.FAILED, "running"]) == ("failed", "running")
