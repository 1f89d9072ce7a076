import pytest

from sheet_ingest.errors import (
    DeliveryExhausted,
    ErrorKind,
    NotFoundError,
    ParseError,
    ParseFailure,
    PersistenceError,
    QueueUnavailableError,
    StorageError,
    ValidationError,
    is_retryable,
)
from sheet_ingest.validators.upload_validator import UploadValidator


def test_to_dict_exposes_only_caller_safe_fields():
    error = StorageError("read", "/var/data/uploads/secret.xlsx: permission denied")

    assert error.to_dict() == {
        "error_code": "STORAGE_ERROR",
        "kind": "processing_failed",
        "message": "File storage is temporarily unavailable",
    }
    assert "secret" in error.message


@pytest.mark.parametrize("error,retryable", [
    (PersistenceError("write", "locked"), True),
    (StorageError("read", "timeout"), True),
    (QueueUnavailableError("down"), True),
    (ParseError(ParseFailure.SOURCE_UNREADABLE), False),
    (ParseError(ParseFailure.NO_DATA), False),
    (ParseError(ParseFailure.UNSUPPORTED_FORMAT), False),
    (ValidationError("file", "empty"), False),
    (DeliveryExhausted(1, 3), False),
    (KeyError("unexpected"), True),
])
def test_retryability(error, retryable):
    assert is_retryable(error) is retryable


def test_error_kinds():
    assert ValidationError("file", "empty").kind == ErrorKind.BAD_INPUT
    assert NotFoundError("Job", 3).kind == ErrorKind.NOT_FOUND
    assert ParseError(ParseFailure.NO_DATA).kind == ErrorKind.PROCESSING_FAILED
    assert str(ParseError(ParseFailure.NO_DATA, "sheet empty")) == "No data found in the spreadsheet"


def test_upload_validator_accepts_excel_extensions_case_insensitively():
    assert UploadValidator.validate(b"x", "Book.XLS").is_valid
    assert UploadValidator.validate(b"x", "book.xlsx").is_valid


def test_upload_validator_reports_field():
    result = UploadValidator.validate(b"x" * 11, "book.xlsx", max_bytes=10)

    assert not result.is_valid
    assert result.field == "file"
    with pytest.raises(ValidationError) as exc_info:
        result.raise_for_error()
    assert exc_info.value.field == "file"


def test_upload_validator_logs_unexpected_mime_type(caplog):
    with caplog.at_level("WARNING"):
        result = UploadValidator.validate(b"x", "book.xlsx", mime_type="image/png")

    assert result.is_valid
    assert "Unexpected MIME type" in caplog.text
