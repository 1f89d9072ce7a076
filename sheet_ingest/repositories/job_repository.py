"""
Repository for job operations.
"""
from sqlalchemy.orm import Session
from sqlalchemy import func, delete
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from sheet_ingest.models.job import Job, JobStatus
from sheet_ingest.models.extracted_record import ExtractedRecord
from sheet_ingest.state_machine import JobEvent, transition_for
from sheet_ingest.app.logging_config import get_logger

logger = get_logger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class JobRepository:
    """Repository for job database operations."""

    @staticmethod
    def get_by_id(db: Session, job_id: int) -> Optional[Job]:
        """
        Get job by ID.

        Args:
            db: Database session
            job_id: Job ID

        Returns:
            Job instance or None
        """
        return db.query(Job).filter(Job.job_id == job_id).first()

    @staticmethod
    def get_owned(db: Session, job_id: int, owner_id: str) -> Optional[Job]:
        """Get job by ID only if it belongs to `owner_id`."""
        return db.query(Job).filter(
            Job.job_id == job_id,
            Job.job_owner_id == owner_id
        ).first()

    @staticmethod
    def get_status(db: Session, job_id: int) -> Optional[JobStatus]:
        """Read the current status straight from the database."""
        row = db.query(Job.job_status).filter(Job.job_id == job_id).first()
        return row[0] if row else None

    @staticmethod
    def create(
        db: Session,
        owner_id: str,
        original_filename: str,
        source_location: str,
        file_size: int,
        mime_type: Optional[str] = None,
        queue_handle: Optional[str] = None
    ) -> Job:
        """
        Create a PENDING job.

        Args:
            db: Database session
            owner_id: Submitting principal
            original_filename: Name the file was uploaded with
            source_location: Storage reference of the uploaded bytes
            file_size: Upload size in bytes
            mime_type: Declared MIME type
            queue_handle: Handle id the job will be enqueued under

        Returns:
            Created job instance
        """
        job = Job(
            job_owner_id=owner_id,
            job_original_filename=original_filename,
            job_source_location=source_location,
            job_file_size=file_size,
            job_mime_type=mime_type,
            job_queue_handle=queue_handle,
            job_status=JobStatus.PENDING,
            job_retry_count=0,
            job_manual_retry_count=0
        )

        db.add(job)
        db.commit()
        db.refresh(job)

        logger.info(
            "Job created",
            extra={"job_id": job.job_id, "owner_id": owner_id}
        )

        return job

    @staticmethod
    def apply_event(
        db: Session,
        job_id: int,
        event: JobEvent,
        fields: Optional[Dict[Any, Any]] = None,
        commit: bool = True
    ) -> bool:
        """
        Move a job along the state machine.

        The UPDATE only matches while the job is in one of the event's source
        states, so status and counters change together or not at all.

        Args:
            db: Database session
            job_id: Job ID
            event: State machine event
            fields: Extra column values to set in the same statement
            commit: Commit immediately; False lets callers add work to the transaction

        Returns:
            True if the transition happened
        """
        transition = transition_for(event)
        values: Dict[Any, Any] = {Job.job_status: transition.target}
        if fields:
            values.update(fields)

        matched = db.query(Job).filter(
            Job.job_id == job_id,
            Job.job_status.in_(list(transition.sources))
        ).update(values, synchronize_session=False)

        if commit:
            db.commit()

        if matched:
            logger.info(
                "Job status updated",
                extra={"job_id": job_id, "event": event.value, "status": transition.target.value}
            )
        else:
            logger.info(
                "Job transition not applied",
                extra={"job_id": job_id, "event": event.value}
            )

        return bool(matched)

    @staticmethod
    def start_attempt(db: Session, job_id: int, event: JobEvent, retry_count: int) -> bool:
        """
        Enter IN_PROGRESS for a delivery and drop anything an earlier attempt left.

        Both happen in one transaction so a redelivered job never sees
        records from a crashed attempt.
        """
        started = JobRepository.apply_event(
            db,
            job_id,
            event,
            {
                Job.job_retry_count: retry_count,
                Job.job_error_detail: None,
                Job.job_total_rows: None,
                Job.job_processed_rows: None,
                Job.job_completed_at: None,
            },
            commit=False
        )
        if started:
            db.execute(delete(ExtractedRecord).where(ExtractedRecord.record_job_id == job_id))
        db.commit()
        return started

    @staticmethod
    def set_total_rows(db: Session, job_id: int, total_rows: int) -> bool:
        matched = db.query(Job).filter(
            Job.job_id == job_id,
            Job.job_status == JobStatus.IN_PROGRESS
        ).update(
            {Job.job_total_rows: total_rows, Job.job_processed_rows: 0},
            synchronize_session=False
        )
        db.commit()
        return bool(matched)

    @staticmethod
    def update_progress(db: Session, job_id: int, processed_rows: int) -> bool:
        """
        Checkpoint processed rows for an IN_PROGRESS job.

        The value is clamped to job_total_rows.
        """
        total = db.query(Job.job_total_rows).filter(Job.job_id == job_id).scalar()
        if total is not None:
            processed_rows = min(processed_rows, total)

        matched = db.query(Job).filter(
            Job.job_id == job_id,
            Job.job_status == JobStatus.IN_PROGRESS
        ).update({Job.job_processed_rows: processed_rows}, synchronize_session=False)
        db.commit()
        return bool(matched)

    @staticmethod
    def complete(db: Session, job_id: int) -> bool:
        return JobRepository.apply_event(
            db,
            job_id,
            JobEvent.COMPLETE,
            {
                Job.job_processed_rows: Job.job_total_rows,
                Job.job_completed_at: _now(),
            }
        )

    @staticmethod
    def fail(db: Session, job_id: int, error_detail: str) -> bool:
        return JobRepository.apply_event(
            db,
            job_id,
            JobEvent.FAIL,
            {Job.job_error_detail: error_detail, Job.job_completed_at: None}
        )

    @staticmethod
    def exhaust(db: Session, job_id: int, error_detail: str) -> bool:
        """FAILED for a job whose delivery budget ran out without a final report."""
        return JobRepository.apply_event(
            db,
            job_id,
            JobEvent.EXHAUST,
            {Job.job_error_detail: error_detail, Job.job_completed_at: None}
        )

    @staticmethod
    def reset_for_retry(db: Session, job_id: int, queue_handle: str) -> bool:
        """
        FAILED -> PENDING with records cleared and counters reset.

        `queue_handle` replaces the previous handle, so deliveries still in
        flight for the earlier enqueue are recognised as stale.
        """
        reset = JobRepository.apply_event(
            db,
            job_id,
            JobEvent.RETRY,
            {
                Job.job_error_detail: None,
                Job.job_total_rows: None,
                Job.job_processed_rows: None,
                Job.job_completed_at: None,
                Job.job_retry_count: 0,
                Job.job_manual_retry_count: Job.job_manual_retry_count + 1,
                Job.job_queue_handle: queue_handle,
            },
            commit=False
        )
        if reset:
            db.execute(delete(ExtractedRecord).where(ExtractedRecord.record_job_id == job_id))
        db.commit()
        return reset

    @staticmethod
    def cancel(db: Session, job_id: int) -> bool:
        return JobRepository.apply_event(db, job_id, JobEvent.CANCEL)

    @staticmethod
    def list_for_owner(
        db: Session,
        owner_id: str,
        status: Optional[JobStatus] = None,
        search: Optional[str] = None,
        created_from: Optional[datetime] = None,
        created_to: Optional[datetime] = None,
        offset: int = 0,
        limit: int = 10
    ) -> Tuple[List[Job], int]:
        """
        Filtered, newest-first page of an owner's jobs.

        Returns:
            (jobs on the page, total matching jobs)
        """
        query = db.query(Job).filter(Job.job_owner_id == owner_id)

        if status is not None:
            query = query.filter(Job.job_status == status)
        if search:
            query = query.filter(
                func.lower(Job.job_original_filename).contains(search.lower(), autoescape=True)
            )
        if created_from is not None:
            query = query.filter(Job.job_created_at >= created_from)
        if created_to is not None:
            query = query.filter(Job.job_created_at <= created_to)

        total = query.count()
        jobs = query.order_by(Job.job_created_at.desc(), Job.job_id.desc()).offset(offset).limit(limit).all()

        return jobs, total

    @staticmethod
    def delete(db: Session, job_id: int) -> bool:
        """
        Delete a job together with its extracted records.
        """
        db.execute(delete(ExtractedRecord).where(ExtractedRecord.record_job_id == job_id))
        deleted = db.query(Job).filter(Job.job_id == job_id).delete(synchronize_session=False)
        db.commit()

        logger.info(
            "Job deleted",
            extra={"job_id": job_id, "deleted": bool(deleted)}
        )

        return bool(deleted)
