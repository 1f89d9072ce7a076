"""
Job status state machine.

Every status write goes through one of these events; the job repository
turns an event into a conditional UPDATE restricted to the event's source
states, so concurrent writers cannot skip a transition.
"""
import enum
from dataclasses import dataclass
from typing import FrozenSet

from sheet_ingest.errors import InvalidStateError
from sheet_ingest.models.job import JobStatus


class JobEvent(str, enum.Enum):
    DEQUEUE = "DEQUEUE"
    REDELIVER = "REDELIVER"
    COMPLETE = "COMPLETE"
    FAIL = "FAIL"
    RETRY = "RETRY"
    CANCEL = "CANCEL"
    EXHAUST = "EXHAUST"


@dataclass(frozen=True)
class Transition:
    sources: FrozenSet[JobStatus]
    target: JobStatus


TRANSITIONS = {
    JobEvent.DEQUEUE: Transition(frozenset({JobStatus.PENDING}), JobStatus.IN_PROGRESS),
    # automatic redelivery after a failed attempt, or after a worker died mid-attempt
    JobEvent.REDELIVER: Transition(frozenset({JobStatus.FAILED, JobStatus.IN_PROGRESS}), JobStatus.IN_PROGRESS),
    JobEvent.COMPLETE: Transition(frozenset({JobStatus.IN_PROGRESS}), JobStatus.COMPLETED),
    JobEvent.FAIL: Transition(frozenset({JobStatus.IN_PROGRESS}), JobStatus.FAILED),
    JobEvent.RETRY: Transition(frozenset({JobStatus.FAILED}), JobStatus.PENDING),
    JobEvent.CANCEL: Transition(frozenset({JobStatus.PENDING, JobStatus.IN_PROGRESS}), JobStatus.CANCELLED),
    # delivery budget used up by attempts that never reported back
    JobEvent.EXHAUST: Transition(
        frozenset({JobStatus.PENDING, JobStatus.IN_PROGRESS, JobStatus.FAILED}),
        JobStatus.FAILED
    ),
}

TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.CANCELLED})


def transition_for(event: JobEvent) -> Transition:
    return TRANSITIONS[event]


def can_apply(event: JobEvent, current: JobStatus) -> bool:
    return current in TRANSITIONS[event].sources


def ensure_can_apply(event: JobEvent, current: JobStatus, job_id: int) -> JobStatus:
    """
    Target status for `event`, or InvalidStateError if `current` is not a source.
    """
    transition = TRANSITIONS[event]
    if not can_apply(event, current):
        raise InvalidStateError(job_id, current.value, transition.target.value)
    return transition.target


def start_event_for(current: JobStatus) -> JobEvent:
    """Event that moves a freshly delivered job into IN_PROGRESS."""
    return JobEvent.DEQUEUE if current == JobStatus.PENDING else JobEvent.REDELIVER
