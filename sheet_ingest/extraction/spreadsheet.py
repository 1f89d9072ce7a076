"""
Spreadsheet extraction engine.

Turns the bytes of an .xlsx or .xls workbook into a lazy stream of
non-blank cells keyed by (row_number, column_name). Row 0 of the first
worksheet is the header; data rows are numbered from 1.
"""
import datetime as dt
import enum
import struct
import zipfile
import zlib
from dataclasses import dataclass, field
from decimal import Decimal
from io import BytesIO
from typing import Any, Callable, Iterable, Iterator, List, Optional, Sequence, Tuple

import openpyxl
import xlrd
from openpyxl.utils.exceptions import InvalidFileException
from xlrd.biffh import error_text_from_code
from xlrd.compdoc import CompDocError
from xlrd.xldate import XLDateError, xldate_as_datetime

from sheet_ingest.errors import ParseError, ParseFailure
from sheet_ingest.app.logging_config import get_logger

logger = get_logger(__name__)

XLSX_SIGNATURE = b"PK\x03\x04"
XLS_SIGNATURE = b"\xd0\xcf\x11\xe0\xa1\xb1\x1a\xe1"

# raised by a truncated or corrupt sheet while rows are streamed (XML parse errors subclass SyntaxError)
_XLSX_STREAM_ERRORS = (zipfile.BadZipFile, zlib.error, EOFError, OSError, KeyError, SyntaxError)


class ValueKind(str, enum.Enum):
    """Primitive type inferred from a spreadsheet cell."""
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    DATE = "date"
    OTHER = "other"


@dataclass(frozen=True)
class CellRecord:
    """A single non-blank cell."""
    row_number: int
    column_name: str
    value: str
    value_kind: ValueKind


@dataclass(frozen=True)
class ExtractedRow:
    """All non-blank cells of one data row (may be empty)."""
    row_number: int
    cells: List[CellRecord] = field(default_factory=list)


def is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str) and not value.strip():
        return True
    return False


def _format_number(value) -> str:
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, Decimal) and value == value.to_integral_value():
        return str(value.quantize(Decimal(1)))
    return str(value)


def normalize_value(value: Any) -> Tuple[str, ValueKind]:
    """
    Render a native cell value as a string and tag its kind.

    bool is checked before numbers since it subclasses int.
    """
    if isinstance(value, bool):
        return ("true" if value else "false"), ValueKind.BOOLEAN
    if isinstance(value, (int, float, Decimal)):
        return _format_number(value), ValueKind.NUMBER
    if isinstance(value, str):
        return value.strip(), ValueKind.STRING
    if isinstance(value, (dt.datetime, dt.date, dt.time)):
        return value.isoformat(), ValueKind.DATE
    return str(value), ValueKind.OTHER


def build_column_names(header: Sequence[Any]) -> List[Optional[str]]:
    """
    Column name per header index; None where the header cell is blank.

    Repeated names get _2, _3, ... so (row_number, column_name) stays unique.
    """
    names: List[Optional[str]] = []
    seen = set()
    for raw in header:
        if is_blank(raw):
            names.append(None)
            continue
        base = normalize_value(raw)[0]
        name = base
        suffix = 2
        while name in seen:
            name = f"{base}_{suffix}"
            suffix += 1
        seen.add(name)
        names.append(name)
    return names


class WorkbookExtraction:
    """
    Parsed view over the first worksheet of a workbook.

    `iter_rows()` can be consumed once; the underlying reader is released
    when the stream is exhausted.
    """

    def __init__(
        self,
        columns: List[Optional[str]],
        total_rows: int,
        data_rows: Iterator[Sequence[Tuple[Any, ValueKind]]],
        fmt: str,
    ):
        self.columns = columns
        self.total_rows = total_rows
        self.format = fmt
        self._data_rows = data_rows
        self._consumed = False

    @property
    def column_names(self) -> List[str]:
        return [name for name in self.columns if name is not None]

    def iter_rows(self) -> Iterator[ExtractedRow]:
        if self._consumed:
            raise RuntimeError("Extraction stream has already been consumed")
        self._consumed = True
        return self._generate_rows()

    def _generate_rows(self) -> Iterator[ExtractedRow]:
        for row_number, values in enumerate(self._data_rows, start=1):
            cells = []
            for index, column_name in enumerate(self.columns):
                if column_name is None or index >= len(values):
                    continue
                value, kind = values[index]
                if is_blank(value):
                    continue
                text, inferred = normalize_value(value) if kind is None else (value, kind)
                cells.append(CellRecord(row_number, column_name, text, inferred))
            yield ExtractedRow(row_number, cells)


def _xlsx_rows(source: bytes) -> Tuple[int, Callable[[], Iterator[Sequence[Any]]]]:
    """Row count and a row-iterator factory for the first xlsx worksheet."""
    try:
        workbook = openpyxl.load_workbook(BytesIO(source), read_only=True, data_only=True)
    except (InvalidFileException, zipfile.BadZipFile, KeyError, OSError, ValueError) as e:
        raise ParseError(ParseFailure.UNSUPPORTED_FORMAT, str(e)) from e

    if not workbook.worksheets:
        workbook.close()
        raise ParseError(ParseFailure.NO_DATA)
    sheet = workbook.worksheets[0]

    # read-only dimensions can be stale, so count with a pass of its own
    try:
        row_count = sum(1 for _ in sheet.iter_rows(values_only=True))
    except _XLSX_STREAM_ERRORS as e:
        workbook.close()
        raise ParseError(ParseFailure.SOURCE_UNREADABLE, str(e)) from e

    def rows() -> Iterator[Sequence[Any]]:
        try:
            for values in sheet.iter_rows(values_only=True):
                yield [(value, None) for value in values]
        except _XLSX_STREAM_ERRORS as e:
            raise ParseError(ParseFailure.SOURCE_UNREADABLE, str(e)) from e
        finally:
            workbook.close()

    return row_count, rows


def _xls_cell(cell, datemode: int) -> Tuple[Any, Optional[ValueKind]]:
    if cell.ctype in (xlrd.XL_CELL_EMPTY, xlrd.XL_CELL_BLANK):
        return None, None
    if cell.ctype == xlrd.XL_CELL_BOOLEAN:
        return bool(cell.value), None
    if cell.ctype == xlrd.XL_CELL_DATE:
        try:
            return xldate_as_datetime(cell.value, datemode), None
        except (XLDateError, ValueError, OverflowError):
            return _format_number(cell.value), ValueKind.OTHER
    if cell.ctype == xlrd.XL_CELL_ERROR:
        return error_text_from_code.get(cell.value, "#ERR"), ValueKind.OTHER
    return cell.value, None


def _xls_rows(source: bytes) -> Tuple[int, Callable[[], Iterator[Sequence[Any]]]]:
    """Row count and a row-iterator factory for the first xls worksheet."""
    try:
        book = xlrd.open_workbook(file_contents=source)
    except (xlrd.XLRDError, CompDocError, struct.error, ValueError, IndexError, EOFError) as e:
        raise ParseError(ParseFailure.UNSUPPORTED_FORMAT, str(e)) from e

    if book.nsheets == 0:
        raise ParseError(ParseFailure.NO_DATA)
    sheet = book.sheet_by_index(0)

    def rows() -> Iterator[Sequence[Any]]:
        try:
            for index in range(sheet.nrows):
                yield [_xls_cell(cell, book.datemode) for cell in sheet.row(index)]
        finally:
            book.release_resources()

    return sheet.nrows, rows


def detect_format(source: bytes) -> str:
    if source.startswith(XLSX_SIGNATURE):
        return "xlsx"
    if source.startswith(XLS_SIGNATURE):
        return "xls"
    raise ParseError(ParseFailure.UNSUPPORTED_FORMAT, "unrecognised file signature")


def _header_values(values: Iterable[Any]) -> List[Any]:
    """Header cells as plain values, whichever reader produced them."""
    plain = []
    for value in values:
        if isinstance(value, tuple):
            value = value[0]
        plain.append(value)
    return plain


def extract_workbook(source: bytes) -> WorkbookExtraction:
    """
    Parse a workbook into a lazy record stream.

    Args:
        source: Raw bytes of an .xlsx or .xls file

    Returns:
        WorkbookExtraction with column names, total data row count and a
        one-shot row stream

    Raises:
        ParseError: UNSUPPORTED_FORMAT for unreadable content, NO_DATA when
            there is no header or no data row
    """
    if not source:
        raise ParseError(ParseFailure.NO_DATA)

    fmt = detect_format(source)
    row_count, make_rows = _xlsx_rows(source) if fmt == "xlsx" else _xls_rows(source)

    rows = make_rows()
    header = next(rows, None)
    if header is None:
        raise ParseError(ParseFailure.NO_DATA)

    columns = build_column_names(_header_values(header))
    total_rows = row_count - 1

    if not any(name is not None for name in columns) or total_rows <= 0:
        rows.close()
        raise ParseError(ParseFailure.NO_DATA)

    logger.debug(
        "Workbook parsed",
        extra={"format": fmt, "columns": [c for c in columns if c], "total_rows": total_rows}
    )

    return WorkbookExtraction(columns, total_rows, rows, fmt)
