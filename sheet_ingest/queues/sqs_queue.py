"""
Amazon SQS job queue.

Message body: {"job_id": int, "attempt": int, "handle_id": str, "max_attempts": int}.
A message that is received again without being deleted (worker crash,
visibility timeout) counts as a further attempt through
ApproximateReceiveCount. Once those attempts use up the budget the
delivery is handed out flagged as exhausted; the consumer fails the job
without processing it and the message is then dropped through fail().
"""
import json
import uuid
from typing import Any, Dict, Optional

import boto3
from botocore.exceptions import ClientError, BotoCoreError

from sheet_ingest.errors import QueueUnavailableError
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

# SQS refuses DelaySeconds above 15 minutes
MAX_DELAY_SECONDS = 900
MAX_WAIT_TIME_SECONDS = 20


class SQSQueue(JobQueue):
    """Job queue backed by an SQS queue."""

    def __init__(
        self,
        queue_url: str,
        region: Optional[str] = None,
        client=None,
        policy: Optional[RetryPolicy] = None,
        registry: Optional[HandleRegistry] = None,
        wait_time: int = 20,
        visibility_timeout: int = 300,
    ):
        """Initialize SQS client."""
        self.queue_url = queue_url
        self.region = region
        self.policy = policy or RetryPolicy()
        self.registry = registry or HandleRegistry()
        self.wait_time = wait_time
        self.visibility_timeout = visibility_timeout

        try:
            self.sqs_client = client or boto3.client('sqs', region_name=self.region)
            logger.info(
                "SQS queue initialized",
                extra={
                    "queue_url": self.queue_url,
                    "region": self.region,
                    "wait_time": self.wait_time
                }
            )
        except Exception as e:
            logger.error(
                "Failed to initialize SQS client",
                extra={"region": self.region, "error": str(e)},
                exc_info=True
            )
            raise

    def enqueue(self, job_id: int, options: Optional[EnqueueOptions] = None) -> JobHandle:
        options = options or EnqueueOptions()
        handle = JobHandle(
            handle_id=options.handle_id or uuid.uuid4().hex,
            job_id=job_id,
            max_attempts=options.max_attempts or self.policy.max_attempts,
            state=HandleState.DELAYED if options.delay > 0 else HandleState.WAITING,
        )

        try:
            self._send(handle, attempt=0, delay=options.delay)
        except (ClientError, BotoCoreError) as e:
            logger.error(
                "Failed to enqueue job",
                extra={"job_id": job_id, "queue_url": self.queue_url, "error": str(e)},
                exc_info=True
            )
            raise QueueUnavailableError(str(e)) from e

        self.registry.add(handle)
        logger.info(
            "Job enqueued",
            extra={"job_id": job_id, "handle_id": handle.handle_id, "queue_url": self.queue_url}
        )
        return handle

    def dequeue(self, timeout: Optional[float] = None) -> Optional[Delivery]:
        """
        Receive at most one message.

        Raises:
            ClientError: on SQS failures, for the consumer loop to back off
        """
        wait = self.wait_time if timeout is None else int(min(max(timeout, 0), MAX_WAIT_TIME_SECONDS))

        response = self.sqs_client.receive_message(
            QueueUrl=self.queue_url,
            MaxNumberOfMessages=1,
            WaitTimeSeconds=wait,
            VisibilityTimeout=self.visibility_timeout,
            AttributeNames=['ApproximateReceiveCount']
        )

        messages = response.get('Messages', [])
        if not messages:
            return None

        return self._to_delivery(messages[0])

    def complete(self, delivery: Delivery) -> None:
        self._delete_message(delivery.receipt)
        handle = self._handle_for(delivery)
        self.registry.mark_completed(handle)

    def fail(self, delivery: Delivery, error: BaseException) -> DeliveryOutcome:
        handle = self._handle_for(delivery)
        handle.attempts_made += 1
        handle.errors.append(str(error))

        if self.policy.should_retry(delivery.attempt, error, delivery.max_attempts):
            delay = self.policy.delay_for(delivery.attempt + 1)
            try:
                self._send(handle, attempt=delivery.attempt + 1, delay=delay)
            except (ClientError, BotoCoreError) as e:
                # original stays in flight and comes back after the visibility timeout
                logger.error(
                    "Failed to reschedule job, leaving message for redelivery",
                    extra={"job_id": delivery.job_id, "error": str(e)},
                    exc_info=True
                )
                return DeliveryOutcome.RESCHEDULED

            self._delete_message(delivery.receipt)
            handle.state = HandleState.DELAYED
            logger.info(
                "Job rescheduled",
                extra={"job_id": delivery.job_id, "next_attempt": delivery.attempt + 1, "delay_seconds": delay}
            )
            return DeliveryOutcome.RESCHEDULED

        self._delete_message(delivery.receipt)
        self.registry.mark_failed(handle, self.failure_reason(delivery, error))
        return DeliveryOutcome.FAILED

    def get_job(self, handle_id: str) -> Optional[JobHandle]:
        return self.registry.get(handle_id)

    def extend(self, delivery: Delivery) -> None:
        """
        Push the message's visibility timeout out again.

        Best effort: if this fails the message may reappear for another worker,
        which then skips it while the job is held under a newer handle.
        """
        try:
            self.sqs_client.change_message_visibility(
                QueueUrl=self.queue_url,
                ReceiptHandle=delivery.receipt,
                VisibilityTimeout=self.visibility_timeout
            )
        except (ClientError, BotoCoreError) as e:
            logger.warning(
                "Failed to extend message visibility",
                extra={"job_id": delivery.job_id, "error": str(e)}
            )

    def _send(self, handle: JobHandle, attempt: int, delay: float) -> None:
        body = {
            "job_id": handle.job_id,
            "attempt": attempt,
            "handle_id": handle.handle_id,
            "max_attempts": handle.max_attempts,
        }
        self.sqs_client.send_message(
            QueueUrl=self.queue_url,
            MessageBody=json.dumps(body),
            DelaySeconds=min(int(delay), MAX_DELAY_SECONDS)
        )

    def _to_delivery(self, message: Dict[str, Any]) -> Optional[Delivery]:
        message_id = message.get('MessageId')
        receipt_handle = message.get('ReceiptHandle')
        body = message.get('Body', '{}')

        try:
            message_data = json.loads(body)
            job_id = message_data.get('job_id')
            if job_id is None:
                raise ValueError("Invalid message format: missing job_id")
        except (json.JSONDecodeError, ValueError, AttributeError) as e:
            logger.error(
                "Invalid message body",
                extra={"message_id": message_id, "body": body, "error": str(e)}
            )
            # Delete invalid message to prevent infinite retries
            self._delete_message(receipt_handle)
            return None

        receive_count = int(message.get('Attributes', {}).get('ApproximateReceiveCount', 1))
        attempt = int(message_data.get('attempt', 0)) + receive_count - 1
        handle_id = message_data.get('handle_id') or message_id
        max_attempts = int(message_data.get('max_attempts') or self.policy.max_attempts)

        handle = self.registry.get(handle_id)
        if handle is None:
            # enqueued by another process
            handle = JobHandle(handle_id=handle_id, job_id=int(job_id), max_attempts=max_attempts)
            self.registry.add(handle)
        handle.state = HandleState.ACTIVE

        delivery = Delivery(
            job_id=int(job_id),
            attempt=attempt,
            handle_id=handle_id,
            max_attempts=max_attempts,
            receipt=receipt_handle,
        )

        if attempt >= max_attempts:
            # earlier receives died without deleting the message (worker crash)
            logger.error(
                "Message exceeded its delivery attempts",
                extra={
                    "message_id": message_id,
                    "job_id": job_id,
                    "attempt": attempt,
                    "max_attempts": max_attempts
                }
            )
            delivery.exhausted = True
            return delivery

        logger.info(
            "Message received",
            extra={"message_id": message_id, "job_id": job_id, "attempt": attempt}
        )
        return delivery

    def _handle_for(self, delivery: Delivery) -> JobHandle:
        handle = self.registry.get(delivery.handle_id)
        if handle is None:
            handle = JobHandle(
                handle_id=delivery.handle_id,
                job_id=delivery.job_id,
                max_attempts=delivery.max_attempts,
                state=HandleState.ACTIVE,
            )
            self.registry.add(handle)
        return handle

    def _delete_message(self, receipt_handle: str) -> None:
        """
        Delete message from queue.

        Args:
            receipt_handle: Message receipt handle
        """
        try:
            self.sqs_client.delete_message(
                QueueUrl=self.queue_url,
                ReceiptHandle=receipt_handle
            )
            logger.debug("Message deleted from queue")
        except (ClientError, BotoCoreError) as e:
            logger.error(
                "Failed to delete message from queue",
                extra={"error": str(e)},
                exc_info=True
            )
