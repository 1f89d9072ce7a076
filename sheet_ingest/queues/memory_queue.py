"""In-process job queue for tests and single-process runs.

Nothing survives a restart; use the SQS backend where durability matters.
"""
import itertools
import threading
import time
import uuid
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from sheet_ingest.queues.base import (
    Delivery,
    DeliveryOutcome,
    EnqueueOptions,
    HandleRegistry,
    HandleState,
    JobHandle,
    JobQueue,
    RetryPolicy,
)
from sheet_ingest.app.logging_config import get_logger

logger = get_logger(__name__)


@dataclass
class _Scheduled:
    due: float
    seq: int
    handle_id: str
    job_id: int
    attempt: int
    max_attempts: int


class InMemoryQueue(JobQueue):
    """Thread-safe delayed queue. At most one active delivery per job id."""

    def __init__(
        self,
        policy: Optional[RetryPolicy] = None,
        registry: Optional[HandleRegistry] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        clock: source of "now" for due times; tests pass a fake one and
            advance it instead of sleeping through backoff delays.
        """
        self.policy = policy or RetryPolicy()
        self.registry = registry or HandleRegistry()
        self._clock = clock
        self._cond = threading.Condition()
        self._scheduled: List[_Scheduled] = []
        self._active: Dict[int, Delivery] = {}
        self._seq = itertools.count()
        self._closed = False

    def enqueue(self, job_id: int, options: Optional[EnqueueOptions] = None) -> JobHandle:
        options = options or EnqueueOptions()
        max_attempts = options.max_attempts or self.policy.max_attempts

        with self._cond:
            # a job already waiting is replaced, giving it a fresh budget
            for entry in [e for e in self._scheduled if e.job_id == job_id]:
                self._scheduled.remove(entry)
                self.registry.remove(entry.handle_id)
                logger.info(
                    "Replaced waiting delivery",
                    extra={"job_id": job_id, "handle_id": entry.handle_id}
                )

            handle = JobHandle(
                handle_id=options.handle_id or uuid.uuid4().hex,
                job_id=job_id,
                max_attempts=max_attempts,
                state=HandleState.DELAYED if options.delay > 0 else HandleState.WAITING,
            )
            self.registry.add(handle)
            self._schedule(handle, attempt=0, delay=options.delay)
            self._cond.notify_all()

        logger.info(
            "Job enqueued",
            extra={"job_id": job_id, "handle_id": handle.handle_id, "max_attempts": max_attempts}
        )
        return handle

    def dequeue(self, timeout: Optional[float] = None) -> Optional[Delivery]:
        deadline = None if timeout is None else time.monotonic() + timeout

        with self._cond:
            while not self._closed:
                entry = self._next_due()
                if entry is not None:
                    return self._activate(entry)

                wait = self._seconds_until_next_due()
                if deadline is not None:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        return None
                    wait = remaining if wait is None else min(wait, remaining)
                self._cond.wait(wait)

        return None

    def complete(self, delivery: Delivery) -> None:
        with self._cond:
            self._active.pop(delivery.job_id, None)
            handle = self.registry.get(delivery.handle_id)
            if handle is not None:
                self.registry.mark_completed(handle)
            self._cond.notify_all()

        logger.info(
            "Delivery completed",
            extra={"job_id": delivery.job_id, "attempt": delivery.attempt, "handle_id": delivery.handle_id}
        )

    def fail(self, delivery: Delivery, error: BaseException) -> DeliveryOutcome:
        with self._cond:
            self._active.pop(delivery.job_id, None)
            handle = self.registry.get(delivery.handle_id)
            if handle is not None:
                handle.attempts_made += 1
                handle.errors.append(str(error))

            superseded = any(e.job_id == delivery.job_id for e in self._scheduled)
            if (
                handle is not None
                and not superseded
                and self.policy.should_retry(delivery.attempt, error, delivery.max_attempts)
            ):
                delay = self.policy.delay_for(delivery.attempt + 1)
                handle.state = HandleState.DELAYED
                self._schedule(handle, attempt=delivery.attempt + 1, delay=delay)
                self._cond.notify_all()
                outcome = DeliveryOutcome.RESCHEDULED
            else:
                if handle is not None:
                    self.registry.mark_failed(handle, self.failure_reason(delivery, error))
                self._cond.notify_all()
                outcome = DeliveryOutcome.FAILED

        logger.info(
            "Delivery failed",
            extra={
                "job_id": delivery.job_id,
                "attempt": delivery.attempt,
                "handle_id": delivery.handle_id,
                "outcome": outcome.value,
                "error": str(error),
            }
        )
        return outcome

    def get_job(self, handle_id: str) -> Optional[JobHandle]:
        return self.registry.get(handle_id)

    def close(self) -> None:
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    def pending_count(self) -> int:
        with self._cond:
            return len(self._scheduled)

    def active_count(self) -> int:
        with self._cond:
            return len(self._active)

    def _schedule(self, handle: JobHandle, attempt: int, delay: float) -> None:
        self._scheduled.append(_Scheduled(
            due=self._clock() + max(delay, 0.0),
            seq=next(self._seq),
            handle_id=handle.handle_id,
            job_id=handle.job_id,
            attempt=attempt,
            max_attempts=handle.max_attempts,
        ))

    def _next_due(self) -> Optional[_Scheduled]:
        now = self._clock()
        ready = [
            e for e in self._scheduled
            if e.due <= now and e.job_id not in self._active
        ]
        if not ready:
            return None
        return min(ready, key=lambda e: (e.due, e.seq))

    def _seconds_until_next_due(self) -> Optional[float]:
        waiting = [e.due for e in self._scheduled if e.job_id not in self._active]
        if not waiting:
            return None
        return max(min(waiting) - self._clock(), 0.0)

    def _activate(self, entry: _Scheduled) -> Delivery:
        self._scheduled.remove(entry)
        delivery = Delivery(
            job_id=entry.job_id,
            attempt=entry.attempt,
            handle_id=entry.handle_id,
            max_attempts=entry.max_attempts,
        )
        self._active[entry.job_id] = delivery
        handle = self.registry.get(entry.handle_id)
        if handle is not None:
            handle.state = HandleState.ACTIVE
        return delivery
