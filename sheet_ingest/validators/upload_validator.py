"""
Upload validation logic.
"""
from dataclasses import dataclass
from pathlib import PurePath
from typing import Optional

from sheet_ingest.errors import ValidationError
from sheet_ingest.settings import settings
from sheet_ingest.app.logging_config import get_logger

logger = get_logger(__name__)


@dataclass
class ValidationResult:
    """Validation result."""
    is_valid: bool
    field: Optional[str] = None
    message: Optional[str] = None

    def raise_for_error(self) -> None:
        if not self.is_valid:
            raise ValidationError(self.field or "file", self.message or "invalid upload")


class UploadValidator:
    """Validator for uploaded spreadsheet files."""

    @staticmethod
    def extension_of(filename: str) -> str:
        return PurePath(filename).suffix.lower()

    @staticmethod
    def validate(
        data: bytes,
        filename: Optional[str],
        mime_type: Optional[str] = None,
        max_bytes: int = settings.MAX_UPLOAD_BYTES
    ) -> ValidationResult:
        """
        Validate an upload before a job is created.

        This does not parse the workbook; unreadable content is reported
        by the worker.

        Args:
            data: Raw file bytes
            filename: Name the file was uploaded with
            mime_type: Declared MIME type; a mismatch is only logged
            max_bytes: Size limit

        Returns:
            ValidationResult with validation status
        """
        if not filename or not filename.strip():
            return ValidationResult(False, "filename", "A file name is required")

        if not data:
            return ValidationResult(False, "file", "The uploaded file is empty")

        if len(data) > max_bytes:
            return ValidationResult(
                False,
                "file",
                f"File is too large ({len(data)} bytes, limit {max_bytes} bytes)"
            )

        extension = UploadValidator.extension_of(filename)
        allowed = [ext.lower() for ext in settings.ALLOWED_EXTENSIONS]
        if extension not in allowed:
            return ValidationResult(
                False,
                "filename",
                f"Only Excel files are accepted ({', '.join(allowed)})"
            )

        if mime_type and mime_type not in settings.EXPECTED_MIME_TYPES:
            logger.warning(
                "Unexpected MIME type for spreadsheet upload",
                extra={"upload_filename": filename, "mime_type": mime_type}
            )

        return ValidationResult(True)
