"""
Domain exceptions for the ingestion pipeline.

Every error carries a machine-readable `error_code`, a coarse `kind` the
calling layer maps to a response ("bad input", "not found", "processing
failed"), a `user_message` that is safe to show, and a `retryable` flag the
queue consults when deciding whether to redeliver.
"""
import enum
from typing import Any, Dict, Optional, Union


class ErrorKind(str, enum.Enum):
    """Caller-facing error classes."""
    BAD_INPUT = "bad_input"
    NOT_FOUND = "not_found"
    PROCESSING_FAILED = "processing_failed"


class ParseFailure(str, enum.Enum):
    """Reasons the extraction engine can reject a source."""
    NO_DATA = "NO_DATA_FOUND"
    UNSUPPORTED_FORMAT = "UNSUPPORTED_FORMAT"
    SOURCE_UNREADABLE = "SOURCE_UNREADABLE"


PARSE_MESSAGES = {
    ParseFailure.NO_DATA: "No data found in the spreadsheet",
    ParseFailure.UNSUPPORTED_FORMAT: "The file is not a readable Excel workbook (.xlsx or .xls)",
    ParseFailure.SOURCE_UNREADABLE: "The uploaded file could not be read",
}


class IngestionError(Exception):
    """Base exception for all pipeline errors.

    Attributes:
        message: Internal message for logging
        error_code: Machine-readable error code
        kind: Caller-facing error class
        details: Additional context, never sent to callers
        user_message: Message safe to surface to callers
        retryable: Whether a delivery failing with this error may be redelivered
    """

    def __init__(
        self,
        message: str,
        error_code: str = "INGESTION_ERROR",
        kind: ErrorKind = ErrorKind.PROCESSING_FAILED,
        details: Optional[Dict[str, Any]] = None,
        user_message: Optional[str] = None,
        retryable: bool = False,
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.kind = kind
        self.details = details or {}
        self.user_message = user_message or message
        self.retryable = retryable

    def to_dict(self) -> Dict[str, Any]:
        """Caller-safe representation: no internal details."""
        return {
            "error_code": self.error_code,
            "kind": self.kind.value,
            "message": self.user_message,
        }

    def __str__(self) -> str:
        return self.user_message


class ValidationError(IngestionError):
    """Upload rejected before a job was created."""

    def __init__(self, field: str, message: str):
        super().__init__(
            message=f"Validation failed for {field}: {message}",
            error_code="VALIDATION_ERROR",
            kind=ErrorKind.BAD_INPUT,
            details={"field": field},
            user_message=message,
        )
        self.field = field


class ParseError(IngestionError):
    """The extraction engine could not turn the source into records."""

    def __init__(self, reason: ParseFailure, detail: Optional[str] = None):
        super().__init__(
            message=f"{PARSE_MESSAGES[reason]}" + (f" ({detail})" if detail else ""),
            error_code=reason.value,
            details={"detail": detail} if detail else None,
            user_message=PARSE_MESSAGES[reason],
        )
        self.reason = reason


class NotFoundError(IngestionError):
    """Job missing, or owned by someone else."""

    def __init__(self, resource_type: str, resource_id: Union[int, str]):
        super().__init__(
            message=f"{resource_type} {resource_id} not found or access denied",
            error_code=f"{resource_type.upper()}_NOT_FOUND",
            kind=ErrorKind.NOT_FOUND,
            details={"resource_type": resource_type, "resource_id": resource_id},
            user_message=f"{resource_type} not found",
        )


class InvalidStateError(IngestionError):
    """Requested transition is not allowed from the job's current status."""

    def __init__(self, job_id: int, current: str, requested: str):
        super().__init__(
            message=f"Job {job_id} cannot go from {current} to {requested}",
            error_code="INVALID_JOB_STATE",
            kind=ErrorKind.BAD_INPUT,
            details={"job_id": job_id, "current": current, "requested": requested},
            user_message=f"Job is {current} and cannot be moved to {requested}",
        )
        self.current = current
        self.requested = requested


class RetryLimitExceededError(IngestionError):
    """Operator retries for a job hit the configured cap."""

    def __init__(self, job_id: int, limit: int):
        super().__init__(
            message=f"Job {job_id} reached the manual retry limit of {limit}",
            error_code="RETRY_LIMIT_EXCEEDED",
            kind=ErrorKind.BAD_INPUT,
            details={"job_id": job_id, "limit": limit},
            user_message=f"This job has already been retried {limit} times",
        )


class DeliveryExhausted(IngestionError):
    """Queue attempt budget used up; only an explicit retry can revive the job."""

    def __init__(self, job_id: int, attempts: int, last_error: Optional[str] = None):
        super().__init__(
            message=f"Job {job_id} failed after {attempts} delivery attempts: {last_error}",
            error_code="DELIVERY_EXHAUSTED",
            details={"job_id": job_id, "attempts": attempts, "last_error": last_error},
            user_message="Processing failed after all automatic retries",
        )
        self.attempts = attempts


class PersistenceError(IngestionError):
    """Job record store unavailable or rejected a write."""

    def __init__(self, operation: str, reason: str):
        super().__init__(
            message=f"Job record store {operation} failed: {reason}",
            error_code="PERSISTENCE_ERROR",
            details={"operation": operation, "reason": reason},
            user_message="The job store is temporarily unavailable",
            retryable=True,
        )


class StorageError(IngestionError):
    """Source file storage failure."""

    def __init__(self, operation: str, reason: str):
        super().__init__(
            message=f"File storage {operation} failed: {reason}",
            error_code="STORAGE_ERROR",
            details={"operation": operation, "reason": reason},
            user_message="File storage is temporarily unavailable",
            retryable=True,
        )


class QueueUnavailableError(IngestionError):
    """The job could not be handed to the queue."""

    def __init__(self, reason: str):
        super().__init__(
            message=f"Queue unavailable: {reason}",
            error_code="QUEUE_UNAVAILABLE",
            details={"reason": reason},
            user_message="The processing queue is temporarily unavailable",
            retryable=True,
        )


def is_retryable(error: BaseException) -> bool:
    """Unknown exceptions are treated as transient."""
    if isinstance(error, IngestionError):
        return error.retryable
    return True
