"""
Queue backend selection.
"""
from sheet_ingest.queues.base import HandleRegistry, JobQueue, RetryPolicy
from sheet_ingest.queues.memory_queue import InMemoryQueue
from sheet_ingest.queues.sqs_queue import SQSQueue
from sheet_ingest.settings import settings


def build_queue() -> JobQueue:
    """Queue backend selected by QUEUE_BACKEND."""
    backend = settings.QUEUE_BACKEND.lower()
    policy = RetryPolicy.from_settings()
    registry = HandleRegistry.from_settings()

    if backend == "sqs":
        if not settings.SQS_QUEUE_URL:
            raise ValueError("SQS_QUEUE_URL is required for the sqs queue backend")
        return SQSQueue(
            settings.SQS_QUEUE_URL,
            region=settings.AWS_REGION,
            policy=policy,
            registry=registry,
            wait_time=settings.SQS_WAIT_TIME_SECONDS,
            visibility_timeout=settings.SQS_VISIBILITY_TIMEOUT,
        )
    if backend == "memory":
        return InMemoryQueue(policy=policy, registry=registry)
    raise ValueError(f"Unknown QUEUE_BACKEND: {settings.QUEUE_BACKEND}")
