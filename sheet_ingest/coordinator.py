"""
Public entry point of the ingestion pipeline.

The calling layer authenticates the user and passes `owner_id`; every read
and write here is scoped to it, and jobs owned by someone else look exactly
like missing ones.
"""
import uuid
from contextlib import contextmanager
from typing import Iterator, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from sheet_ingest.errors import (
    InvalidStateError,
    NotFoundError,
    PersistenceError,
    QueueUnavailableError,
    RetryLimitExceededError,
)
from sheet_ingest.models.job import Job
from sheet_ingest.queues.base import EnqueueOptions, JobQueue
from sheet_ingest.repositories.job_repository import JobRepository
from sheet_ingest.repositories.record_repository import RecordRepository
from sheet_ingest.schemas import JobFilters, JobOut, Page, RecordOut, SubmitResult, UploadMetadata
from sheet_ingest.services.storage import Storage
from sheet_ingest.state_machine import JobEvent, ensure_can_apply
from sheet_ingest.validators.upload_validator import UploadValidator
from sheet_ingest.settings import settings
from sheet_ingest.app.logging_config import get_logger

logger = get_logger(__name__)


def _page_window(page: int, page_size: int, cap: int) -> Tuple[int, int]:
    """(page, page_size) clamped to at least 1 and at most `cap` per page."""
    page = max(1, page)
    page_size = min(max(1, page_size), cap)
    return page, page_size


class PipelineCoordinator:
    """Submits, inspects and manages ingestion jobs."""

    def __init__(
        self,
        session_factory: sessionmaker,
        storage: Storage,
        queue: JobQueue,
        max_manual_retries: Optional[int] = settings.MAX_MANUAL_RETRIES,
        max_upload_bytes: int = settings.MAX_UPLOAD_BYTES,
        list_page_size_cap: int = settings.LIST_PAGE_SIZE_CAP,
        records_page_size_cap: int = settings.RECORDS_PAGE_SIZE_CAP,
        status_sample_size: int = settings.STATUS_SAMPLE_SIZE
    ):
        self.session_factory = session_factory
        self.storage = storage
        self.queue = queue
        self.max_manual_retries = max_manual_retries
        self.max_upload_bytes = max_upload_bytes
        self.list_page_size_cap = list_page_size_cap
        self.records_page_size_cap = records_page_size_cap
        self.status_sample_size = status_sample_size

    @contextmanager
    def _session(self) -> Iterator[Session]:
        db = self.session_factory()
        try:
            yield db
        except SQLAlchemyError as e:
            db.rollback()
            raise PersistenceError("query", str(e)) from e
        finally:
            db.close()

    def _owned_job(self, db: Session, job_id: int, owner_id: str) -> Job:
        job = JobRepository.get_owned(db, job_id, owner_id)
        if job is None:
            raise NotFoundError("Job", job_id)
        return job

    def submit(self, file_bytes: bytes, metadata: UploadMetadata, owner_id: str) -> SubmitResult:
        """
        Validate and store an upload, create its PENDING job and enqueue it.

        Raises:
            ValidationError: The upload was rejected; nothing was created
            StorageError: The file could not be stored
            QueueUnavailableError: Enqueue failed; the job and file were removed
        """
        UploadValidator.validate(
            file_bytes,
            metadata.filename,
            metadata.mime_type,
            max_bytes=self.max_upload_bytes
        ).raise_for_error()

        location = self.storage.save(file_bytes, metadata.filename)
        handle_id = uuid.uuid4().hex

        try:
            with self._session() as db:
                job = JobRepository.create(
                    db,
                    owner_id=owner_id,
                    original_filename=metadata.filename,
                    source_location=location,
                    file_size=len(file_bytes),
                    mime_type=metadata.mime_type,
                    queue_handle=handle_id
                )
                job_id = job.job_id
        except PersistenceError:
            self.storage.delete(location)
            raise

        try:
            handle = self.queue.enqueue(job_id, EnqueueOptions(handle_id=handle_id))
        except Exception as e:
            logger.error(
                "Failed to enqueue job, rolling back submission",
                extra={"job_id": job_id, "error": str(e)},
                exc_info=True
            )
            with self._session() as db:
                JobRepository.delete(db, job_id)
            self.storage.delete(location)
            if isinstance(e, QueueUnavailableError):
                raise
            raise QueueUnavailableError(str(e)) from e

        logger.info(
            "Job submitted",
            extra={"job_id": job_id, "owner_id": owner_id, "handle_id": handle.handle_id}
        )
        return SubmitResult(job_id=job_id, queue_handle=handle.handle_id)

    def get_status(self, job_id: int, owner_id: str) -> Optional[JobOut]:
        """Owner's job with a sample of its latest records, or None."""
        with self._session() as db:
            job = JobRepository.get_owned(db, job_id, owner_id)
            if job is None:
                return None
            sample = RecordRepository.latest_for_job(db, job_id, limit=self.status_sample_size)
            return JobOut.from_job(job, sample)

    def list_jobs(
        self,
        owner_id: str,
        filters: Optional[JobFilters] = None,
        page: int = 1,
        page_size: int = 10
    ) -> Page[JobOut]:
        """Owner's jobs, newest first."""
        filters = filters or JobFilters()
        page, page_size = _page_window(page, page_size, self.list_page_size_cap)

        with self._session() as db:
            jobs, total = JobRepository.list_for_owner(
                db,
                owner_id,
                status=filters.status,
                search=filters.search,
                created_from=filters.created_from,
                created_to=filters.created_to,
                offset=(page - 1) * page_size,
                limit=page_size
            )
            items = [JobOut.from_job(job) for job in jobs]

        return Page[JobOut](items=items, total=total, page=page, page_size=page_size)

    def get_records(
        self,
        job_id: int,
        owner_id: str,
        page: int = 1,
        page_size: int = 50
    ) -> Page[RecordOut]:
        """
        Extracted records ordered by (row_number, column_name).

        Raises:
            NotFoundError: Job missing or owned by someone else
        """
        page, page_size = _page_window(page, page_size, self.records_page_size_cap)

        with self._session() as db:
            self._owned_job(db, job_id, owner_id)
            records, total = RecordRepository.page_for_job(
                db,
                job_id,
                offset=(page - 1) * page_size,
                limit=page_size
            )
            items = [RecordOut.from_record(record) for record in records]

        return Page[RecordOut](items=items, total=total, page=page, page_size=page_size)

    def retry(self, job_id: int, owner_id: str) -> SubmitResult:
        """
        Re-run a FAILED job from scratch with a fresh attempt budget.

        Raises:
            NotFoundError: Job missing or owned by someone else
            InvalidStateError: Job is not FAILED
            RetryLimitExceededError: Manual retry cap reached
        """
        with self._session() as db:
            job = self._owned_job(db, job_id, owner_id)
            ensure_can_apply(JobEvent.RETRY, job.job_status, job_id)

            if self.max_manual_retries is not None and job.job_manual_retry_count >= self.max_manual_retries:
                raise RetryLimitExceededError(job_id, self.max_manual_retries)

            handle_id = uuid.uuid4().hex
            if not JobRepository.reset_for_retry(db, job_id, handle_id):
                current = JobRepository.get_status(db, job_id)
                raise InvalidStateError(job_id, current.value if current else "DELETED", "PENDING")

        try:
            handle = self.queue.enqueue(job_id, EnqueueOptions(handle_id=handle_id))
        except Exception as e:
            # job stays PENDING without a delivery; cancel or delete it
            logger.error(
                "Failed to enqueue retried job",
                extra={"job_id": job_id, "error": str(e)},
                exc_info=True
            )
            if isinstance(e, QueueUnavailableError):
                raise
            raise QueueUnavailableError(str(e)) from e

        logger.info(
            "Job retried",
            extra={"job_id": job_id, "owner_id": owner_id, "handle_id": handle.handle_id}
        )
        return SubmitResult(job_id=job_id, queue_handle=handle.handle_id)

    def cancel(self, job_id: int, owner_id: str) -> JobOut:
        """
        Cancel a PENDING or IN_PROGRESS job.

        A running worker notices between batches and drops partial records.
        """
        with self._session() as db:
            job = self._owned_job(db, job_id, owner_id)
            ensure_can_apply(JobEvent.CANCEL, job.job_status, job_id)

            if not JobRepository.cancel(db, job_id):
                db.expire_all()
                job = self._owned_job(db, job_id, owner_id)
                raise InvalidStateError(job_id, job.job_status.value, "CANCELLED")

            db.expire_all()
            job = self._owned_job(db, job_id, owner_id)
            logger.info("Job cancelled", extra={"job_id": job_id, "owner_id": owner_id})
            return JobOut.from_job(job)

    def delete(self, job_id: int, owner_id: str) -> None:
        """
        Delete a job and its records. Removing the stored file is best effort.
        """
        with self._session() as db:
            job = self._owned_job(db, job_id, owner_id)
            location = job.job_source_location
            JobRepository.delete(db, job_id)

        if not self.storage.delete(location):
            logger.warning(
                "Source file not removed for deleted job",
                extra={"job_id": job_id}
            )
