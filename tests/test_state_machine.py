import pytest

from sheet_ingest.errors import InvalidStateError
from sheet_ingest.models.job import JobStatus
from sheet_ingest.state_machine import (
    JobEvent,
    TERMINAL_STATUSES,
    can_apply,
    ensure_can_apply,
    start_event_for,
)


@pytest.mark.parametrize("event,current,target", [
    (JobEvent.DEQUEUE, JobStatus.PENDING, JobStatus.IN_PROGRESS),
    (JobEvent.REDELIVER, JobStatus.FAILED, JobStatus.IN_PROGRESS),
    (JobEvent.REDELIVER, JobStatus.IN_PROGRESS, JobStatus.IN_PROGRESS),
    (JobEvent.COMPLETE, JobStatus.IN_PROGRESS, JobStatus.COMPLETED),
    (JobEvent.FAIL, JobStatus.IN_PROGRESS, JobStatus.FAILED),
    (JobEvent.RETRY, JobStatus.FAILED, JobStatus.PENDING),
    (JobEvent.CANCEL, JobStatus.PENDING, JobStatus.CANCELLED),
    (JobEvent.CANCEL, JobStatus.IN_PROGRESS, JobStatus.CANCELLED),
    (JobEvent.EXHAUST, JobStatus.PENDING, JobStatus.FAILED),
    (JobEvent.EXHAUST, JobStatus.IN_PROGRESS, JobStatus.FAILED),
    (JobEvent.EXHAUST, JobStatus.FAILED, JobStatus.FAILED),
])
def test_allowed_transitions(event, current, target):
    assert ensure_can_apply(event, current, job_id=1) == target


@pytest.mark.parametrize("event,current", [
    (JobEvent.RETRY, JobStatus.COMPLETED),
    (JobEvent.RETRY, JobStatus.PENDING),
    (JobEvent.CANCEL, JobStatus.COMPLETED),
    (JobEvent.CANCEL, JobStatus.FAILED),
    (JobEvent.DEQUEUE, JobStatus.CANCELLED),
    (JobEvent.COMPLETE, JobStatus.PENDING),
    (JobEvent.EXHAUST, JobStatus.COMPLETED),
    (JobEvent.EXHAUST, JobStatus.CANCELLED),
])
def test_rejected_transitions(event, current):
    assert not can_apply(event, current)
    with pytest.raises(InvalidStateError) as exc_info:
        ensure_can_apply(event, current, job_id=7)
    assert exc_info.value.to_dict()["error_code"] == "INVALID_JOB_STATE"


def test_terminal_statuses_have_no_exits():
    for status in TERMINAL_STATUSES:
        assert not any(can_apply(event, status) for event in JobEvent)


def test_start_event_for():
    assert start_event_for(JobStatus.PENDING) is JobEvent.DEQUEUE
    assert start_event_for(JobStatus.FAILED) is JobEvent.REDELIVER
    assert start_event_for(JobStatus.IN_PROGRESS) is JobEvent.REDELIVER
