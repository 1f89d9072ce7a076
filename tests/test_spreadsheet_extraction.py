import datetime as dt
import zipfile
from decimal import Decimal
from io import BytesIO

import pytest
import xlwt

from sheet_ingest.errors import ParseError, ParseFailure
from sheet_ingest.extraction.spreadsheet import (
    ValueKind,
    build_column_names,
    detect_format,
    extract_workbook,
    normalize_value,
)


def _cells(extraction):
    return [cell for row in extraction.iter_rows() for cell in row.cells]


def test_alice_bob_produces_three_records(alice_bob_xlsx):
    extraction = extract_workbook(alice_bob_xlsx)

    assert extraction.format == "xlsx"
    assert extraction.column_names == ["ID", "Name"]
    assert extraction.total_rows == 2

    records = [(r.row_number, r.column_name, r.value, r.value_kind) for r in _cells(extraction)]
    assert records == [
        (1, "ID", "1", ValueKind.NUMBER),
        (1, "Name", "Alice", ValueKind.STRING),
        (2, "Name", "Bob", ValueKind.STRING),
    ]


def test_header_only_workbook_has_no_data(workbook_bytes):
    with pytest.raises(ParseError) as exc_info:
        extract_workbook(workbook_bytes([["ID", "Name"]]))

    assert exc_info.value.reason is ParseFailure.NO_DATA
    assert exc_info.value.retryable is False


def test_empty_source_has_no_data():
    with pytest.raises(ParseError) as exc_info:
        extract_workbook(b"")
    assert exc_info.value.reason is ParseFailure.NO_DATA


def test_blank_header_row_has_no_data(workbook_bytes):
    with pytest.raises(ParseError) as exc_info:
        extract_workbook(workbook_bytes([[None, "  "], [1, 2]]))
    assert exc_info.value.reason is ParseFailure.NO_DATA


def test_unrecognised_bytes_are_unsupported():
    with pytest.raises(ParseError) as exc_info:
        extract_workbook(b"id,name\n1,Alice\n")
    assert exc_info.value.reason is ParseFailure.UNSUPPORTED_FORMAT
    assert exc_info.value.error_code == "UNSUPPORTED_FORMAT"


def test_zip_that_is_not_a_workbook_is_unsupported():
    buffer = BytesIO()
    with zipfile.ZipFile(buffer, "w") as archive:
        archive.writestr("readme.txt", "not a spreadsheet")

    with pytest.raises(ParseError) as exc_info:
        extract_workbook(buffer.getvalue())
    assert exc_info.value.reason is ParseFailure.UNSUPPORTED_FORMAT


def test_truncated_sheet_is_source_unreadable(alice_bob_xlsx):
    original = zipfile.ZipFile(BytesIO(alice_bob_xlsx))
    buffer = BytesIO()
    with zipfile.ZipFile(buffer, "w") as archive:
        for item in original.infolist():
            data = original.read(item.filename)
            if item.filename == "xl/worksheets/sheet1.xml":
                data = data[: len(data) // 2]
            archive.writestr(item, data)

    with pytest.raises(ParseError) as exc_info:
        _cells(extract_workbook(buffer.getvalue()))
    assert exc_info.value.reason is ParseFailure.SOURCE_UNREADABLE
    assert exc_info.value.error_code == "SOURCE_UNREADABLE"


def _make_xls():
    book = xlwt.Workbook()
    sheet = book.add_sheet("People")
    for col, name in enumerate(["name", "joined", "active", "score", "ratio"]):
        sheet.write(0, col, name)
    sheet.write(1, 0, "Alice")
    sheet.write(1, 1, dt.datetime(2024, 1, 15), xlwt.easyxf(num_format_str="YYYY-MM-DD"))
    sheet.write(1, 2, True)
    sheet.write(1, 3, 3.5)
    sheet.row(1).set_cell_error(4, "#DIV/0!")
    sheet.write(2, 0, "Bob")
    buffer = BytesIO()
    book.save(buffer)
    return buffer.getvalue()


def test_legacy_xls_cells_are_typed():
    extraction = extract_workbook(_make_xls())

    assert extraction.format == "xls"
    assert extraction.total_rows == 2
    assert extraction.column_names == ["name", "joined", "active", "score", "ratio"]
    assert [(c.row_number, c.column_name, c.value, c.value_kind) for c in _cells(extraction)] == [
        (1, "name", "Alice", ValueKind.STRING),
        (1, "joined", "2024-01-15T00:00:00", ValueKind.DATE),
        (1, "active", "true", ValueKind.BOOLEAN),
        (1, "score", "3.5", ValueKind.NUMBER),
        (1, "ratio", "#DIV/0!", ValueKind.OTHER),
        (2, "name", "Bob", ValueKind.STRING),
    ]


def test_detect_format_by_signature():
    assert detect_format(b"PK\x03\x04rest") == "xlsx"
    assert detect_format(b"\xd0\xcf\x11\xe0\xa1\xb1\x1a\xe1rest") == "xls"


def test_value_kinds_are_inferred(workbook_bytes):
    source = workbook_bytes([
        ["text", "int", "float", "flag", "when"],
        ["  padded  ", 42, 2.5, True, dt.datetime(2024, 1, 15, 9, 30)],
    ])

    cells = {r.column_name: r for r in _cells(extract_workbook(source))}

    assert (cells["text"].value, cells["text"].value_kind) == ("padded", ValueKind.STRING)
    assert (cells["int"].value, cells["int"].value_kind) == ("42", ValueKind.NUMBER)
    assert (cells["float"].value, cells["float"].value_kind) == ("2.5", ValueKind.NUMBER)
    assert (cells["flag"].value, cells["flag"].value_kind) == ("true", ValueKind.BOOLEAN)
    assert cells["when"].value_kind == ValueKind.DATE
    assert cells["when"].value.startswith("2024-01-15T09:30")


def test_blank_cells_are_skipped_but_rows_are_counted(workbook_bytes):
    source = workbook_bytes([
        ["a", "b"],
        ["x", None],
        [None, "   "],
        [None, "y"],
    ])

    extraction = extract_workbook(source)
    rows = list(extraction.iter_rows())

    assert extraction.total_rows == 3
    assert [row.row_number for row in rows] == [1, 2, 3]
    assert rows[1].cells == []
    assert [(c.row_number, c.column_name, c.value) for row in rows for c in row.cells] == [
        (1, "a", "x"),
        (3, "b", "y"),
    ]


def test_columns_with_blank_header_are_ignored(workbook_bytes):
    source = workbook_bytes([["a", None, "c"], [1, 2, 3]])

    records = list(_cells(extract_workbook(source)))

    assert [r.column_name for r in records] == ["a", "c"]


def test_duplicate_headers_get_suffixes(workbook_bytes):
    source = workbook_bytes([["name", "name", "name"], ["x", "y", "z"]])

    records = list(_cells(extract_workbook(source)))

    assert [r.column_name for r in records] == ["name", "name_2", "name_3"]


def test_stream_can_only_be_consumed_once(alice_bob_xlsx):
    extraction = extract_workbook(alice_bob_xlsx)
    list(extraction.iter_rows())

    with pytest.raises(RuntimeError):
        extraction.iter_rows()


def test_normalize_value():
    assert normalize_value(False) == ("false", ValueKind.BOOLEAN)
    assert normalize_value(3.0) == ("3", ValueKind.NUMBER)
    assert normalize_value(Decimal("10.50")) == ("10.50", ValueKind.NUMBER)
    assert normalize_value(dt.date(2024, 2, 29)) == ("2024-02-29", ValueKind.DATE)
    assert normalize_value(dt.time(8, 15)) == ("08:15:00", ValueKind.DATE)
    assert normalize_value(b"raw") == ("b'raw'", ValueKind.OTHER)


def test_build_column_names():
    assert build_column_names(["ID", None, "", "ID", 2020]) == ["ID", None, None, "ID_2", "2020"]
