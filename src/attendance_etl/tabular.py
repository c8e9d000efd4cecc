"""attendance_etl.tabular

Decode an uploaded file into a header list plus one dict per data row,
keyed by the raw header label.  Every cell comes back as a string.
A label repeated across columns gets a numeric suffix on its later
columns ("Name", "Name_1") so no cell is lost; `labels` keeps the
labels as written.

  .csv          : delimited text, UTF-8 (BOM tolerated)
  .xlsx         : first worksheet, via openpyxl
  .xls          : first worksheet, via xlrd

Blank lines / fully blank sheet rows are skipped.  Columns with a blank
header label are dropped.  Short rows are padded with "".
"""

from __future__ import annotations

import csv
import io
import re
import zipfile
from dataclasses import dataclass
from datetime import date, datetime, time
from typing import Any, Iterable, Sequence

import xlrd
from xlrd.compdoc import CompDocError
from openpyxl import load_workbook
from openpyxl.utils.exceptions import InvalidFileException

from attendance_etl.shared import (
    EmptyFileError,
    FileDecodeError,
    UnsupportedFileTypeError,
)

CSV_EXTENSIONS = (".csv",)
XLSX_EXTENSIONS = (".xlsx",)
XLS_EXTENSIONS = (".xls",)
SUPPORTED_EXTENSIONS = CSV_EXTENSIONS + XLSX_EXTENSIONS + XLS_EXTENSIONS


@dataclass
class DecodedTable:
    headers: list[str]
    rows: list[dict[str, str]]
    labels: list[str]


def file_kind(filename: str) -> str:
    """Return 'csv', 'xlsx' or 'xls' for a filename, else raise."""
    name = (filename or "").strip().lower()
    if name.endswith(CSV_EXTENSIONS):
        return "csv"
    if name.endswith(XLSX_EXTENSIONS):
        return "xlsx"
    if name.endswith(XLS_EXTENSIONS):
        return "xls"
    raise UnsupportedFileTypeError(
        "File must be CSV (.csv) or Excel (.xlsx, .xls) format"
    )


def cell_text(value: Any) -> str:
    """Render one spreadsheet cell as trimmed text."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, datetime):
        return value.isoformat(sep=" ")
    if isinstance(value, (date, time)):
        return value.isoformat()
    return str(value).strip()


def unique_labels(labels: Sequence[str]) -> list[str]:
    """Suffix repeated labels with _1, _2, ... skipping names already in use."""
    taken = set(labels)
    seen: set[str] = set()
    out: list[str] = []
    for label in labels:
        key, n = label, 0
        while key in seen or (n and key in taken):
            n += 1
            key = f"{label}_{n}"
        seen.add(key)
        out.append(key)
    return out


def _build_table(physical_rows: Iterable[list[str]]) -> DecodedTable:
    rows_iter = (r for r in physical_rows if any(c.strip() for c in r))
    header_row = next(rows_iter, None)
    if header_row is None:
        raise EmptyFileError("File must have headers and at least one data row")

    columns = [(idx, label.strip()) for idx, label in enumerate(header_row) if label.strip()]
    labels = [label for _, label in columns]
    headers = unique_labels(labels)
    rows: list[dict[str, str]] = []
    for cells in rows_iter:
        rows.append({
            key: (cells[idx].strip() if idx < len(cells) else "")
            for key, (idx, _) in zip(headers, columns)
        })

    if not headers or not rows:
        raise EmptyFileError("File must have headers and at least one data row")
    return DecodedTable(headers=headers, rows=rows, labels=labels)


# ---------------------------------------------------------------------------
# Delimited text
# ---------------------------------------------------------------------------

def decode_delimited(
    data: bytes,
    field_separator: str = ",",
    line_separator: str | None = None,
) -> DecodedTable:
    """Decode delimited text.

    With line_separator=None the csv module's own newline handling applies
    (quoted fields may span lines).  An explicit separator splits the text
    on that literal string first.
    """
    try:
        text = data.decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise FileDecodeError("CSV must be UTF-8 encoded") from exc

    if line_separator is None:
        lines: Iterable[str] = io.StringIO(text, newline="")
    else:
        lines = [ln for ln in re.split(re.escape(line_separator), text) if ln.strip()]

    reader = csv.reader(lines, delimiter=field_separator)
    try:
        physical = [list(r) for r in reader]
    except csv.Error as exc:
        raise FileDecodeError(f"CSV could not be parsed: {exc}") from exc
    return _build_table(physical)


# ---------------------------------------------------------------------------
# Spreadsheets
# ---------------------------------------------------------------------------

def decode_xlsx(data: bytes) -> DecodedTable:
    if not data:
        raise EmptyFileError("File must have headers and at least one data row")
    try:
        workbook = load_workbook(io.BytesIO(data), data_only=True, read_only=True)
    except (InvalidFileException, zipfile.BadZipFile, KeyError, OSError) as exc:
        raise FileDecodeError("Spreadsheet could not be read") from exc
    try:
        sheet = workbook.worksheets[0]
        physical = [
            [cell_text(v) for v in (row or ())]
            for row in sheet.iter_rows(values_only=True)
        ]
    finally:
        workbook.close()
    return _build_table(physical)


def decode_xls(data: bytes) -> DecodedTable:
    if not data:
        raise EmptyFileError("File must have headers and at least one data row")
    try:
        book = xlrd.open_workbook(file_contents=data)
    except (xlrd.XLRDError, CompDocError, ValueError) as exc:
        raise FileDecodeError("Spreadsheet could not be read") from exc
    sheet = book.sheet_by_index(0)
    physical = [
        [cell_text(v) for v in sheet.row_values(r)]
        for r in range(sheet.nrows)
    ]
    return _build_table(physical)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def decode_upload(
    data: bytes,
    filename: str,
    field_separator: str = ",",
    line_separator: str | None = None,
) -> DecodedTable:
    """Decode an upload by extension.  Raises ImportStructureError subclasses."""
    kind = file_kind(filename)
    if kind == "csv":
        return decode_delimited(data, field_separator, line_separator)
    if kind == "xlsx":
        return decode_xlsx(data)
    return decode_xls(data)
