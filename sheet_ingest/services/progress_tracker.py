"""
Best-effort progress checkpoints for a running job.
"""
from sqlalchemy.orm import sessionmaker

from sheet_ingest.repositories.job_repository import JobRepository
from sheet_ingest.app.logging_config import get_logger

logger = get_logger(__name__)


class ProgressTracker:
    """
    Counts processed rows and writes job_processed_rows every `interval` rows.

    Checkpoints use their own session so a failing write never disturbs the
    worker's transaction, and failures are logged rather than raised.
    """

    def __init__(self, session_factory: sessionmaker, job_id: int, interval: int = 10):
        self.session_factory = session_factory
        self.job_id = job_id
        self.interval = max(1, interval)
        self.processed_rows = 0

    def row_processed(self) -> None:
        self.processed_rows += 1
        if self.processed_rows % self.interval == 0:
            self.checkpoint(self.job_id, self.processed_rows)

    def checkpoint(self, job_id: int, processed_rows: int) -> bool:
        """
        Write processed_rows for an IN_PROGRESS job.

        Returns:
            True if the row was updated
        """
        db = self.session_factory()
        try:
            updated = JobRepository.update_progress(db, job_id, processed_rows)
            logger.debug(
                "Progress checkpoint",
                extra={"job_id": job_id, "processed_rows": processed_rows, "updated": updated}
            )
            return updated
        except Exception as e:
            db.rollback()
            logger.warning(
                "Progress checkpoint failed",
                extra={"job_id": job_id, "processed_rows": processed_rows, "error": str(e)}
            )
            return False
        finally:
            db.close()
