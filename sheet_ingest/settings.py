"""
Application settings and configuration.
"""
from pydantic_settings import BaseSettings
from typing import List, Optional


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    DATABASE_URL: str = "sqlite:///./ingestion.db"

    # Source file storage ("local" or "s3")
    STORAGE_BACKEND: str = "local"
    UPLOAD_DIR: str = "uploads"
    SOURCE_BUCKET_NAME: Optional[str] = None
    AWS_REGION: str = "us-east-1"

    # Queue ("memory" or "sqs")
    QUEUE_BACKEND: str = "memory"
    SQS_QUEUE_URL: Optional[str] = None
    SQS_WAIT_TIME_SECONDS: int = 20
    SQS_VISIBILITY_TIMEOUT: int = 300

    # Delivery retry
    MAX_DELIVERY_ATTEMPTS: int = 3
    RETRY_BASE_DELAY_SECONDS: float = 2.0
    MAX_MANUAL_RETRIES: Optional[int] = 5
    RETAIN_COMPLETED_HANDLES: int = 10
    RETAIN_FAILED_HANDLES: int = 50

    # Processing
    BATCH_SIZE: int = 100
    PROGRESS_UPDATE_INTERVAL: int = 10  # Update job_processed_rows every N rows
    WORKER_CONCURRENCY: int = 4
    HEARTBEAT_INTERVAL_SECONDS: float = 60.0  # must stay well under SQS_VISIBILITY_TIMEOUT

    # Uploads
    MAX_UPLOAD_BYTES: int = 10 * 1024 * 1024
    ALLOWED_EXTENSIONS: List[str] = [".xlsx", ".xls"]
    EXPECTED_MIME_TYPES: List[str] = [
        "application/vnd.ms-excel",
        "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        "application/octet-stream",
    ]

    # Pagination
    LIST_PAGE_SIZE_CAP: int = 100
    RECORDS_PAGE_SIZE_CAP: int = 1000
    STATUS_SAMPLE_SIZE: int = 5

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "json"

    class Config:
        env_file = ".env"
        case_sensitive = True


settings = Settings()
