"""
Job queue contract shared by the queue backends.

A queue delivers job ids at least once, keeps one active delivery per job,
and owns the retry budget: a failed delivery is either rescheduled with
exponential backoff or recorded as exhausted.
"""
import enum
import threading
import time
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, List, Optional

from sheet_ingest.errors import DeliveryExhausted, is_retryable
from sheet_ingest.settings import settings


class HandleState(str, enum.Enum):
    WAITING = "waiting"
    DELAYED = "delayed"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


class DeliveryOutcome(str, enum.Enum):
    """What the queue did with a failed delivery."""
    RESCHEDULED = "rescheduled"
    FAILED = "failed"


@dataclass(frozen=True)
class RetryPolicy:
    """
    Attempt budget and backoff.

    After the n-th failed attempt the next one waits base_delay * 2**(n-1)
    seconds: 2s, 4s, 8s ... with the defaults.
    """
    max_attempts: int = 3
    base_delay: float = 2.0

    def delay_for(self, failures: int) -> float:
        return self.base_delay * 2 ** (max(failures, 1) - 1)

    def should_retry(self, attempt: int, error: BaseException, max_attempts: Optional[int] = None) -> bool:
        """`attempt` is the 0-based attempt that just failed."""
        budget = max_attempts if max_attempts is not None else self.max_attempts
        return is_retryable(error) and attempt + 1 < budget

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        return cls(
            max_attempts=settings.MAX_DELIVERY_ATTEMPTS,
            base_delay=settings.RETRY_BASE_DELAY_SECONDS,
        )


@dataclass(frozen=True)
class EnqueueOptions:
    max_attempts: Optional[int] = None
    delay: float = 0.0
    # caller-chosen handle id, recorded on the job before the enqueue
    handle_id: Optional[str] = None


@dataclass
class JobHandle:
    """Queue-side bookkeeping for one enqueue of a job."""
    handle_id: str
    job_id: int
    max_attempts: int
    state: HandleState = HandleState.WAITING
    attempts_made: int = 0
    failed_reason: Optional[str] = None
    errors: List[str] = field(default_factory=list)
    created_at: float = field(default_factory=time.time)
    finished_at: Optional[float] = None


@dataclass
class Delivery:
    """One attempt at a job handed to a worker. `attempt` is 0-based."""
    job_id: int
    attempt: int
    handle_id: str
    max_attempts: int
    receipt: Any = None
    # earlier attempts spent the budget without reporting back; fail the job unprocessed
    exhausted: bool = False

    @property
    def is_last_attempt(self) -> bool:
        return self.attempt + 1 >= self.max_attempts


class HandleRegistry:
    """
    Handles kept for diagnosis.

    Waiting and active handles are always kept; only the most recent
    `keep_completed` completed and `keep_failed` failed ones survive.
    """

    def __init__(self, keep_completed: int = 10, keep_failed: int = 50):
        self.keep_completed = keep_completed
        self.keep_failed = keep_failed
        self._handles: Dict[str, JobHandle] = {}
        self._completed: Deque[str] = deque()
        self._failed: Deque[str] = deque()
        self._lock = threading.Lock()

    @classmethod
    def from_settings(cls) -> "HandleRegistry":
        return cls(settings.RETAIN_COMPLETED_HANDLES, settings.RETAIN_FAILED_HANDLES)

    def add(self, handle: JobHandle) -> None:
        with self._lock:
            self._handles[handle.handle_id] = handle

    def get(self, handle_id: str) -> Optional[JobHandle]:
        with self._lock:
            return self._handles.get(handle_id)

    def remove(self, handle_id: str) -> None:
        with self._lock:
            self._handles.pop(handle_id, None)

    def mark_completed(self, handle: JobHandle) -> None:
        with self._lock:
            handle.state = HandleState.COMPLETED
            handle.finished_at = time.time()
            self._retire(handle, self._completed, self.keep_completed)

    def mark_failed(self, handle: JobHandle, reason: str) -> None:
        with self._lock:
            handle.state = HandleState.FAILED
            handle.failed_reason = reason
            handle.finished_at = time.time()
            self._retire(handle, self._failed, self.keep_failed)

    def _retire(self, handle: JobHandle, finished: Deque[str], keep: int) -> None:
        self._handles[handle.handle_id] = handle
        finished.append(handle.handle_id)
        while len(finished) > keep:
            self._handles.pop(finished.popleft(), None)


class JobQueue(ABC):
    """Abstract interface for the job queue (in-memory or SQS)."""

    @abstractmethod
    def enqueue(self, job_id: int, options: Optional[EnqueueOptions] = None) -> JobHandle:
        """Queue a job for processing with a fresh attempt budget."""
        ...

    @abstractmethod
    def dequeue(self, timeout: Optional[float] = None) -> Optional[Delivery]:
        """Next due delivery; None when nothing arrived within `timeout` (0 polls)."""
        ...

    @abstractmethod
    def complete(self, delivery: Delivery) -> None:
        """Acknowledge a successful delivery."""
        ...

    @abstractmethod
    def fail(self, delivery: Delivery, error: BaseException) -> DeliveryOutcome:
        """Record a failed delivery and reschedule it if the budget allows."""
        ...

    @abstractmethod
    def get_job(self, handle_id: str) -> Optional[JobHandle]:
        ...

    def extend(self, delivery: Delivery) -> None:
        """Keep a long-running delivery from being handed to another worker."""

    def close(self) -> None:
        """Release resources and wake blocked consumers."""

    @staticmethod
    def failure_reason(delivery: Delivery, error: BaseException) -> str:
        """Reason recorded on a handle that will not be redelivered."""
        if is_retryable(error):
            return DeliveryExhausted(delivery.job_id, delivery.attempt + 1, str(error)).message
        return getattr(error, "message", None) or str(error)
