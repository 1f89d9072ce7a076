"""
Repository for extracted record operations.
"""
from sqlalchemy.orm import Session
from sqlalchemy import delete, insert
from typing import List, Sequence, Tuple

from sheet_ingest.extraction.spreadsheet import CellRecord
from sheet_ingest.models.extracted_record import ExtractedRecord
from sheet_ingest.app.logging_config import get_logger

logger = get_logger(__name__)


class RecordRepository:
    """Repository for extracted record database operations."""

    @staticmethod
    def bulk_insert(db: Session, job_id: int, records: Sequence[CellRecord]) -> int:
        """
        Insert one batch of records in a single transaction.

        Args:
            db: Database session
            job_id: Job ID
            records: Cells to persist, in emission order

        Returns:
            Number of records inserted
        """
        if not records:
            return 0

        db.execute(
            insert(ExtractedRecord),
            [
                {
                    "record_job_id": job_id,
                    "record_row_number": record.row_number,
                    "record_column_name": record.column_name,
                    "record_value": record.value,
                    "record_value_kind": record.value_kind,
                }
                for record in records
            ]
        )
        db.commit()

        logger.debug(
            "Record batch flushed",
            extra={"job_id": job_id, "batch_size": len(records)}
        )

        return len(records)

    @staticmethod
    def delete_for_job(db: Session, job_id: int) -> int:
        """
        Delete all records of a job.

        Returns:
            Number of records deleted
        """
        result = db.execute(delete(ExtractedRecord).where(ExtractedRecord.record_job_id == job_id))
        db.commit()
        return result.rowcount or 0

    @staticmethod
    def latest_for_job(db: Session, job_id: int, limit: int = 5) -> List[ExtractedRecord]:
        """Most recently stored records of a job, newest first."""
        return db.query(ExtractedRecord).filter(
            ExtractedRecord.record_job_id == job_id
        ).order_by(ExtractedRecord.record_id.desc()).limit(limit).all()

    @staticmethod
    def page_for_job(
        db: Session,
        job_id: int,
        offset: int = 0,
        limit: int = 50
    ) -> Tuple[List[ExtractedRecord], int]:
        """
        Records of a job ordered by (row_number, column_name).

        Returns:
            (records on the page, total records for the job)
        """
        query = db.query(ExtractedRecord).filter(ExtractedRecord.record_job_id == job_id)
        total = query.count()
        records = query.order_by(
            ExtractedRecord.record_row_number.asc(),
            ExtractedRecord.record_column_name.asc()
        ).offset(offset).limit(limit).all()

        return records, total
