"""
Storage for uploaded source files.
"""
import os
import uuid
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

import boto3
from botocore.exceptions import ClientError, BotoCoreError

from sheet_ingest.errors import StorageError
from sheet_ingest.settings import settings
from sheet_ingest.app.logging_config import get_logger

logger = get_logger(__name__)


def _storage_name(filename: str) -> str:
    """Unique name that keeps the original extension."""
    suffix = Path(filename).suffix.lower()
    return f"{uuid.uuid4().hex}{suffix}"


class Storage(ABC):
    """Where uploaded files live between submission and processing."""

    @abstractmethod
    def save(self, data: bytes, filename: str) -> str:
        """Store `data` and return an opaque location."""

    @abstractmethod
    def read(self, location: str) -> bytes:
        """Return the stored bytes. Raises StorageError."""

    @abstractmethod
    def delete(self, location: str) -> bool:
        """Best-effort removal; never raises."""


class LocalFileStorage(Storage):
    """Files under an upload directory on local disk."""

    def __init__(self, upload_dir: str):
        self.upload_dir = Path(upload_dir)
        self.upload_dir.mkdir(parents=True, exist_ok=True)

    def save(self, data: bytes, filename: str) -> str:
        path = self.upload_dir / _storage_name(filename)
        try:
            path.write_bytes(data)
        except OSError as e:
            logger.error(
                "Failed to write upload",
                extra={"path": str(path), "error": str(e)},
                exc_info=True
            )
            raise StorageError("save", str(e)) from e

        logger.debug("Upload stored", extra={"path": str(path), "size": len(data)})
        return str(path)

    def read(self, location: str) -> bytes:
        try:
            return Path(location).read_bytes()
        except OSError as e:
            logger.error(
                "Failed to read upload",
                extra={"path": location, "error": str(e)}
            )
            raise StorageError("read", str(e)) from e

    def delete(self, location: str) -> bool:
        try:
            os.remove(location)
            return True
        except FileNotFoundError:
            return False
        except OSError as e:
            logger.warning(
                "Failed to delete upload",
                extra={"path": location, "error": str(e)}
            )
            return False


class S3Storage(Storage):
    """Files as objects in an S3 bucket; locations are object keys."""

    def __init__(self, bucket_name: str, region: Optional[str] = None, client=None, prefix: str = "uploads/"):
        """Initialize S3 client."""
        self.bucket_name = bucket_name
        self.region = region
        self.prefix = prefix

        try:
            self.s3_client = client or boto3.client('s3', region_name=self.region)
            logger.debug(
                "S3 client initialized",
                extra={"bucket_name": self.bucket_name, "region": self.region}
            )
        except Exception as e:
            logger.error(
                "Failed to initialize S3 client",
                extra={"region": self.region, "error": str(e)},
                exc_info=True
            )
            raise

    def save(self, data: bytes, filename: str) -> str:
        key = f"{self.prefix}{_storage_name(filename)}"
        try:
            self.s3_client.put_object(Bucket=self.bucket_name, Key=key, Body=data)
        except (ClientError, BotoCoreError) as e:
            logger.error(
                "Failed to upload file to S3",
                extra={"bucket_name": self.bucket_name, "s3_key": key, "error": str(e)},
                exc_info=True
            )
            raise StorageError("save", str(e)) from e

        logger.info(
            "Upload stored in S3",
            extra={"bucket_name": self.bucket_name, "s3_key": key, "size": len(data)}
        )
        return key

    def read(self, location: str) -> bytes:
        """
        Read an object from S3.

        Args:
            location: S3 object key

        Returns:
            Raw object bytes

        Raises:
            StorageError: If the object cannot be fetched
        """
        try:
            logger.info(
                "Reading source file from S3",
                extra={"bucket_name": self.bucket_name, "s3_key": location}
            )
            response = self.s3_client.get_object(Bucket=self.bucket_name, Key=location)
            return response['Body'].read()

        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            logger.error(
                "Failed to read file from S3",
                extra={
                    "bucket_name": self.bucket_name,
                    "s3_key": location,
                    "error_code": error_code,
                    "error": str(e)
                },
                exc_info=True
            )
            raise StorageError("read", error_code) from e

        except BotoCoreError as e:
            logger.error(
                "Unexpected error reading file from S3",
                extra={"bucket_name": self.bucket_name, "s3_key": location, "error": str(e)},
                exc_info=True
            )
            raise StorageError("read", str(e)) from e

    def delete(self, location: str) -> bool:
        try:
            self.s3_client.delete_object(Bucket=self.bucket_name, Key=location)
            return True
        except (ClientError, BotoCoreError) as e:
            logger.warning(
                "Failed to delete file from S3",
                extra={"bucket_name": self.bucket_name, "s3_key": location, "error": str(e)}
            )
            return False


def build_storage() -> Storage:
    """Storage backend selected by STORAGE_BACKEND."""
    backend = settings.STORAGE_BACKEND.lower()
    if backend == "s3":
        if not settings.SOURCE_BUCKET_NAME:
            raise ValueError("SOURCE_BUCKET_NAME is required for the s3 storage backend")
        return S3Storage(settings.SOURCE_BUCKET_NAME, settings.AWS_REGION)
    if backend == "local":
        return LocalFileStorage(settings.UPLOAD_DIR)
    raise ValueError(f"Unknown STORAGE_BACKEND: {settings.STORAGE_BACKEND}")
