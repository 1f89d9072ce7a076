"""
SQLAlchemy model for extracted_records table.
"""
from sqlalchemy import Column, Integer, String, Text, DateTime, Enum as SQLEnum, ForeignKey, UniqueConstraint
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship

from sheet_ingest.app.db.database import Base
from sheet_ingest.extraction.spreadsheet import ValueKind


class ExtractedRecord(Base):
    """One non-blank cell of a processed spreadsheet."""

    __tablename__ = "extracted_records"
    __table_args__ = (
        UniqueConstraint(
            "record_job_id", "record_row_number", "record_column_name",
            name="uq_extracted_records_job_row_column",
        ),
    )

    record_id = Column(Integer, primary_key=True, index=True)
    record_job_id = Column(Integer, ForeignKey("processing_jobs.job_id", ondelete="CASCADE"), nullable=False, index=True)
    record_row_number = Column(Integer, nullable=False)
    record_column_name = Column(String, nullable=False)
    record_value = Column(Text, nullable=False)
    record_value_kind = Column(
        SQLEnum(ValueKind, values_callable=lambda kinds: [k.value for k in kinds]),
        nullable=False,
    )
    record_created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    # Relationships
    job = relationship("Job", back_populates="records")

    def __repr__(self):
        return (
            f"<ExtractedRecord(job_id={self.record_job_id}, row={self.record_row_number}, "
            f"column={self.record_column_name!r}, kind={self.record_value_kind})>"
        )
