"""
SQLAlchemy model for processing_jobs table.
"""
from sqlalchemy import Column, Integer, String, Text, DateTime, Enum as SQLEnum
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
import enum

from sheet_ingest.app.db.database import Base


class JobStatus(str, enum.Enum):
    """Job status enumeration."""
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class Job(Base):
    """Job model representing the processing_jobs table."""

    __tablename__ = "processing_jobs"

    job_id = Column(Integer, primary_key=True, index=True)
    job_owner_id = Column(String, nullable=False, index=True)
    job_original_filename = Column(String, nullable=False)
    job_mime_type = Column(String, nullable=True)
    job_file_size = Column(Integer, nullable=False, default=0)
    job_source_location = Column(String, nullable=False)
    job_status = Column(SQLEnum(JobStatus), nullable=False, index=True, default=JobStatus.PENDING)
    job_total_rows = Column(Integer, nullable=True)
    job_processed_rows = Column(Integer, nullable=True)
    job_error_detail = Column(Text, nullable=True)
    job_retry_count = Column(Integer, nullable=False, default=0)
    job_manual_retry_count = Column(Integer, nullable=False, default=0)
    job_queue_handle = Column(String, nullable=True)
    job_created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False, index=True)
    job_updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)
    job_completed_at = Column(DateTime(timezone=True), nullable=True)

    # Relationships
    records = relationship(
        "ExtractedRecord",
        back_populates="job",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    def __repr__(self):
        return f"<Job(job_id={self.job_id}, status={self.job_status}, owner_id={self.job_owner_id})>"
