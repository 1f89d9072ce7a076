"""
Queue consumer and worker pool.
"""
import signal
import threading
from typing import Callable, List, Optional

from botocore.exceptions import ClientError, BotoCoreError

from sheet_ingest.errors import DeliveryExhausted, is_retryable
from sheet_ingest.queues.base import Delivery, DeliveryOutcome, JobQueue
from sheet_ingest.queues.factory import build_queue
from sheet_ingest.processor import Processor
from sheet_ingest.services.storage import build_storage
from sheet_ingest.settings import settings
from sheet_ingest.app.db.database import SessionLocal, init_db
from sheet_ingest.app.logging_config import get_logger, setup_logging

logger = get_logger(__name__)


class Consumer:
    """Pulls deliveries off a queue and hands them to a processor."""

    def __init__(
        self,
        queue: JobQueue,
        processor: Processor,
        poll_timeout: float = 1.0,
        error_backoff: float = 5.0,
        stop_event: Optional[threading.Event] = None
    ):
        self.queue = queue
        self.processor = processor
        self.poll_timeout = poll_timeout
        self.error_backoff = error_backoff
        self.stop_event = stop_event or threading.Event()

    def run_once(self, timeout: Optional[float] = None) -> bool:
        """
        Handle at most one delivery.

        Returns:
            True if a delivery was received
        """
        delivery = self.queue.dequeue(timeout)
        if delivery is None:
            return False

        if delivery.exhausted:
            self._abandon(delivery)
            return True

        try:
            result = self.processor.process(delivery)
        except Exception as e:
            outcome = self.queue.fail(delivery, e)
            if outcome == DeliveryOutcome.FAILED and is_retryable(e):
                exhausted = DeliveryExhausted(delivery.job_id, delivery.attempt + 1, str(e))
                logger.error(
                    "Job failed after all delivery attempts",
                    extra={"job_id": delivery.job_id, "error_code": exhausted.error_code, "error": exhausted.message}
                )
            else:
                logger.warning(
                    "Job delivery failed",
                    extra={
                        "job_id": delivery.job_id,
                        "attempt": delivery.attempt,
                        "outcome": outcome.value,
                        "error": str(e)
                    }
                )
            return True

        self.queue.complete(delivery)
        logger.info(
            "Job delivery handled",
            extra={"job_id": delivery.job_id, "attempt": delivery.attempt, "result": result.value}
        )
        return True

    def _abandon(self, delivery: Delivery) -> None:
        """Fail the job first; the message goes only once the job says FAILED."""
        result = self.processor.abandon(delivery)
        self.queue.fail(
            delivery,
            DeliveryExhausted(delivery.job_id, delivery.attempt, "worker stopped before reporting a result")
        )
        logger.warning(
            "Exhausted delivery dropped",
            extra={"job_id": delivery.job_id, "attempt": delivery.attempt, "result": result.value}
        )

    def start(self) -> None:
        """
        Consume until the stop event is set.
        """
        logger.info("Starting consumer")

        while not self.stop_event.is_set():
            try:
                self.run_once(self.poll_timeout)
            except ClientError as e:
                error_code = e.response.get('Error', {}).get('Code', 'Unknown')
                logger.error(
                    "SQS client error",
                    extra={
                        "error_code": error_code,
                        "error": str(e)
                    },
                    exc_info=True
                )
                # Wait before retrying
                self.stop_event.wait(self.error_backoff)
            except BotoCoreError as e:
                logger.error(
                    "Queue connection error",
                    extra={"error": str(e)},
                    exc_info=True
                )
                self.stop_event.wait(self.error_backoff)
            except Exception as e:
                logger.error(
                    "Unexpected error in consumer loop",
                    extra={"error": str(e)},
                    exc_info=True
                )
                self.stop_event.wait(self.error_backoff)

        logger.info("Consumer stopped")


class WorkerPool:
    """Fixed number of consumer threads sharing one queue."""

    def __init__(
        self,
        queue: JobQueue,
        processor_factory: Callable[[], Processor],
        concurrency: int = settings.WORKER_CONCURRENCY,
        poll_timeout: float = 1.0
    ):
        self.queue = queue
        self.processor_factory = processor_factory
        self.concurrency = max(1, concurrency)
        self.poll_timeout = poll_timeout
        self.stop_event = threading.Event()
        self._threads: List[threading.Thread] = []

    def start(self) -> None:
        for index in range(self.concurrency):
            consumer = Consumer(
                self.queue,
                self.processor_factory(),
                poll_timeout=self.poll_timeout,
                stop_event=self.stop_event
            )
            thread = threading.Thread(
                target=consumer.start,
                name=f"ingest-worker-{index}",
                daemon=True
            )
            thread.start()
            self._threads.append(thread)

        logger.info("Worker pool started", extra={"concurrency": self.concurrency})

    def stop(self, timeout: Optional[float] = None) -> None:
        self.stop_event.set()
        for thread in self._threads:
            thread.join(timeout)
        self._threads.clear()
        logger.info("Worker pool stopped")

    def wait(self) -> None:
        """Block until stop() is called from another thread or a signal handler."""
        while not self.stop_event.wait(1.0):
            pass


def main():
    """Main entry point for the worker."""
    # Setup logging
    setup_logging()

    logger.info(
        "Starting spreadsheet ingestion worker",
        extra={"queue_backend": settings.QUEUE_BACKEND, "storage_backend": settings.STORAGE_BACKEND}
    )
    if settings.QUEUE_BACKEND.lower() == "memory":
        logger.warning("In-memory queue only sees jobs submitted inside this process")

    init_db()
    storage = build_storage()
    queue = build_queue()

    pool = WorkerPool(queue, lambda: Processor(SessionLocal, storage, queue=queue))

    def _shutdown(signum, frame):
        logger.info("Shutdown signal received", extra={"signal": signum})
        pool.stop_event.set()

    signal.signal(signal.SIGTERM, _shutdown)

    pool.start()
    try:
        pool.wait()
    except KeyboardInterrupt:
        logger.info("Worker interrupted by user")
    finally:
        pool.stop(timeout=30)
        queue.close()


if __name__ == "__main__":
    main()
