"""
Worker-side processing of one queue delivery.

Moves the job to IN_PROGRESS, extracts the workbook, stores records in
fixed-size batches and finalizes the job. Failures are written to the job
and re-raised so the queue can apply its retry budget.
"""
import enum
import time
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from sheet_ingest.errors import DeliveryExhausted, IngestionError, PersistenceError
from sheet_ingest.extraction.spreadsheet import CellRecord, extract_workbook
from sheet_ingest.models.job import Job, JobStatus
from sheet_ingest.queues.base import Delivery, JobQueue
from sheet_ingest.repositories.job_repository import JobRepository
from sheet_ingest.repositories.record_repository import RecordRepository
from sheet_ingest.services.progress_tracker import ProgressTracker
from sheet_ingest.services.storage import Storage
from sheet_ingest.state_machine import TERMINAL_STATUSES, start_event_for
from sheet_ingest.settings import settings
from sheet_ingest.app.logging_config import get_logger

logger = get_logger(__name__)


class ProcessResult(str, enum.Enum):
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    SKIPPED = "skipped"
    EXHAUSTED = "exhausted"


class JobCancelled(Exception):
    """Raised inside a run when the job was cancelled under the worker."""


class Processor:
    """Processor for spreadsheet ingestion."""

    def __init__(
        self,
        session_factory: sessionmaker,
        storage: Storage,
        batch_size: int = settings.BATCH_SIZE,
        progress_interval: int = settings.PROGRESS_UPDATE_INTERVAL,
        queue: Optional[JobQueue] = None,
        heartbeat_interval: float = settings.HEARTBEAT_INTERVAL_SECONDS
    ):
        """
        Initialize processor.

        Args:
            session_factory: Creates the database session for each delivery
            storage: Where uploaded source files are read from
            batch_size: Records per insert
            progress_interval: Rows between progress checkpoints
            queue: Queue the deliveries come from; told to extend them while batches land
            heartbeat_interval: Minimum seconds between two extensions of one delivery
        """
        self.session_factory = session_factory
        self.storage = storage
        self.batch_size = max(1, batch_size)
        self.progress_interval = progress_interval
        self.queue = queue
        self.heartbeat_interval = heartbeat_interval
        self._last_heartbeat = 0.0
        self.job_repo = JobRepository
        self.record_repo = RecordRepository

    def process(self, delivery: Delivery) -> ProcessResult:
        """
        Process one delivery of a job.

        Args:
            delivery: Queue delivery; `delivery.attempt` is stored as the job's retry_count

        Returns:
            What happened to the job

        Raises:
            IngestionError or any unexpected exception, after the job was marked FAILED
        """
        job_id = delivery.job_id
        logger.info(
            "Starting job processing",
            extra={"job_id": job_id, "attempt": delivery.attempt}
        )

        db: Session = self.session_factory()
        try:
            try:
                job = self.job_repo.get_by_id(db, job_id)
            except SQLAlchemyError as e:
                db.rollback()
                raise PersistenceError("load", str(e)) from e

            if not job:
                # Job not found - might have been deleted or message is stale
                logger.warning(
                    "Job not found - skipping processing",
                    extra={"job_id": job_id}
                )
                return ProcessResult.SKIPPED

            if job.job_status in TERMINAL_STATUSES:
                logger.info(
                    "Job already finished - skipping processing",
                    extra={"job_id": job_id, "status": job.job_status.value}
                )
                return ProcessResult.SKIPPED

            if self._is_stale(job, delivery):
                logger.info(
                    "Delivery superseded by a newer enqueue - skipping",
                    extra={"job_id": job_id, "handle_id": delivery.handle_id}
                )
                return ProcessResult.SKIPPED

            source_location = job.job_source_location
            event = start_event_for(job.job_status)

            try:
                started = self.job_repo.start_attempt(db, job_id, event, delivery.attempt)
            except SQLAlchemyError as e:
                db.rollback()
                raise PersistenceError("start", str(e)) from e

            if not started:
                logger.info(
                    "Job changed before processing started - skipping",
                    extra={"job_id": job_id, "event": event.value}
                )
                return ProcessResult.SKIPPED

            try:
                self._last_heartbeat = time.monotonic()
                return self._run(db, delivery, source_location)
            except JobCancelled:
                db.rollback()
                self._discard_partial(db, job_id)
                return ProcessResult.CANCELLED
            except Exception as e:
                db.rollback()
                error = self._as_ingestion_error(e)
                logger.error(
                    "Error processing job",
                    extra={"job_id": job_id, "attempt": delivery.attempt, "error": str(e)},
                    exc_info=True
                )
                self._mark_failed(db, job_id, error)
                if error is e:
                    raise
                raise error from e
        finally:
            db.close()

    def abandon(self, delivery: Delivery) -> ProcessResult:
        """
        Fail the job of a delivery whose attempt budget is already spent.

        The queue flags such deliveries when earlier attempts died without
        reporting back; the source is not read again.
        """
        job_id = delivery.job_id
        exhausted = DeliveryExhausted(job_id, delivery.attempt)

        db: Session = self.session_factory()
        try:
            job = self.job_repo.get_by_id(db, job_id)
            if not job or job.job_status in TERMINAL_STATUSES or self._is_stale(job, delivery):
                return ProcessResult.SKIPPED

            if not self.job_repo.exhaust(db, job_id, exhausted.user_message):
                return ProcessResult.SKIPPED
        except SQLAlchemyError as e:
            db.rollback()
            raise PersistenceError("exhaust", str(e)) from e
        finally:
            db.close()

        logger.error(
            "Job failed after all delivery attempts",
            extra={"job_id": job_id, "error_code": exhausted.error_code, "attempts": delivery.attempt}
        )
        return ProcessResult.EXHAUSTED

    def _run(self, db: Session, delivery: Delivery, source_location: str) -> ProcessResult:
        job_id = delivery.job_id
        source = self.storage.read(source_location)

        extraction = extract_workbook(source)
        self.job_repo.set_total_rows(db, job_id, extraction.total_rows)

        logger.info(
            "Workbook extracted",
            extra={
                "job_id": job_id,
                "total_rows": extraction.total_rows,
                "columns": extraction.column_names
            }
        )

        tracker = ProgressTracker(self.session_factory, job_id, self.progress_interval)
        buffer: List[CellRecord] = []
        stored = 0

        for row in extraction.iter_rows():
            buffer.extend(row.cells)
            while len(buffer) >= self.batch_size:
                stored += self._flush(db, delivery, buffer[:self.batch_size])
                del buffer[:self.batch_size]
            tracker.row_processed()

        if buffer:
            stored += self._flush(db, delivery, buffer)

        if not self.job_repo.complete(db, job_id):
            if self.job_repo.get_status(db, job_id) == JobStatus.CANCELLED:
                raise JobCancelled()
            logger.warning(
                "Job left IN_PROGRESS before completion",
                extra={"job_id": job_id}
            )
            return ProcessResult.SKIPPED

        logger.info(
            "Job processing complete",
            extra={
                "job_id": job_id,
                "total_rows": extraction.total_rows,
                "records": stored
            }
        )
        return ProcessResult.COMPLETED

    def _flush(self, db: Session, delivery: Delivery, batch: List[CellRecord]) -> int:
        inserted = self.record_repo.bulk_insert(db, delivery.job_id, batch)
        # cancellation is advisory and checked between batches
        if self.job_repo.get_status(db, delivery.job_id) == JobStatus.CANCELLED:
            raise JobCancelled()
        self._heartbeat(delivery)
        return inserted

    def _heartbeat(self, delivery: Delivery) -> None:
        if self.queue is None:
            return
        now = time.monotonic()
        if now - self._last_heartbeat < self.heartbeat_interval:
            return
        self._last_heartbeat = now
        self.queue.extend(delivery)

    def _discard_partial(self, db: Session, job_id: int) -> None:
        try:
            deleted = self.record_repo.delete_for_job(db, job_id)
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(
                "Failed to remove records of cancelled job",
                extra={"job_id": job_id, "error": str(e)},
                exc_info=True
            )
            return

        logger.info(
            "Job cancelled during processing - partial records removed",
            extra={"job_id": job_id, "records_deleted": deleted}
        )

    def _mark_failed(self, db: Session, job_id: int, error: BaseException) -> None:
        detail = error.user_message if isinstance(error, IngestionError) else (str(error) or type(error).__name__)
        try:
            self.job_repo.fail(db, job_id, detail)
        except SQLAlchemyError as e:
            # job stays IN_PROGRESS; the next delivery picks it up through REDELIVER
            db.rollback()
            logger.error(
                "Failed to mark job as FAILED",
                extra={"job_id": job_id, "error": str(e)},
                exc_info=True
            )

    @staticmethod
    def _is_stale(job: Job, delivery: Delivery) -> bool:
        """A retry or resubmission re-enqueued the job under another handle."""
        return bool(job.job_queue_handle) and job.job_queue_handle != delivery.handle_id

    @staticmethod
    def _as_ingestion_error(error: BaseException) -> BaseException:
        if isinstance(error, SQLAlchemyError):
            return PersistenceError("write", str(error))
        return error
