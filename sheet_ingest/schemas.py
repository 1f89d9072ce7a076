"""
Pydantic schemas returned by the pipeline coordinator.
"""
from datetime import datetime
from typing import Generic, List, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field

from sheet_ingest.extraction.spreadsheet import ValueKind
from sheet_ingest.models.job import Job, JobStatus
from sheet_ingest.models.extracted_record import ExtractedRecord

T = TypeVar("T")


class UploadMetadata(BaseModel):
    filename: str
    mime_type: Optional[str] = None


class JobFilters(BaseModel):
    status: Optional[JobStatus] = None
    search: Optional[str] = None
    created_from: Optional[datetime] = None
    created_to: Optional[datetime] = None


class RecordOut(BaseModel):
    row_number: int
    column_name: str
    value: str
    value_kind: ValueKind

    @classmethod
    def from_record(cls, record: ExtractedRecord) -> "RecordOut":
        return cls(
            row_number=record.record_row_number,
            column_name=record.record_column_name,
            value=record.record_value,
            value_kind=record.record_value_kind,
        )


class JobOut(BaseModel):
    """Caller-facing view of a job. The storage location is never included."""
    model_config = ConfigDict(from_attributes=True)

    id: int
    owner_id: str
    original_filename: str
    mime_type: Optional[str] = None
    file_size: int
    status: JobStatus
    total_rows: Optional[int] = None
    processed_rows: Optional[int] = None
    error_detail: Optional[str] = None
    retry_count: int = 0
    manual_retry_count: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    # latest stored records; only filled in by single-job status lookups
    sample_records: List[RecordOut] = Field(default_factory=list)

    @classmethod
    def from_job(cls, job: Job, sample_records: Optional[List[ExtractedRecord]] = None) -> "JobOut":
        return cls(
            id=job.job_id,
            owner_id=job.job_owner_id,
            original_filename=job.job_original_filename,
            mime_type=job.job_mime_type,
            file_size=job.job_file_size,
            status=job.job_status,
            total_rows=job.job_total_rows,
            processed_rows=job.job_processed_rows,
            error_detail=job.job_error_detail,
            retry_count=job.job_retry_count,
            manual_retry_count=job.job_manual_retry_count,
            created_at=job.job_created_at,
            updated_at=job.job_updated_at,
            completed_at=job.job_completed_at,
            sample_records=[RecordOut.from_record(record) for record in sample_records or []],
        )


class Page(BaseModel, Generic[T]):
    items: List[T]
    total: int
    page: int = Field(ge=1)
    page_size: int = Field(ge=1)

    @property
    def pages(self) -> int:
        return (self.total + self.page_size - 1) // self.page_size


class SubmitResult(BaseModel):
    job_id: int
    queue_handle: str
