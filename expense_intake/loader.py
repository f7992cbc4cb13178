"""
loader.py — turn an uploaded payload into a source the pipeline can walk

Supports: xlsx, xls (converted to xlsx first), csv, pdf

Two kinds of source come out of here:
    StructuredSource: sheets of raw cell rows (workbooks and delimited text)
    FreeformSource:   plain text extracted from a bank-statement PDF

Public API:
    source = load_source(payload, "csv")

Every read or decode failure is raised as FormatError.
"""

from __future__ import annotations

import io
import logging
import struct
import zipfile
import zlib
from dataclasses import dataclass, field
from typing import Any, Union

import chardet
import openpyxl
import xlrd
from openpyxl.utils.exceptions import InvalidFileException
from xlrd.compdoc import CompDocError

from expense_intake.models import FormatError
from expense_intake.statement_text import PDF_SOURCE_NAME, extract_pdf_text

logger = logging.getLogger(__name__)

# ── Format groups ──────────────────────────────────────────────────────────────
WORKBOOK_KINDS = {"xlsx", "xls"}
DELIMITED_KINDS = {"csv"}
FREEFORM_KINDS = {"pdf"}
ALL_KINDS = WORKBOOK_KINDS | DELIMITED_KINDS | FREEFORM_KINDS

# SyntaxError covers ElementTree and lxml parse errors from truncated sheet XML
WORKBOOK_READ_ERRORS = (
    InvalidFileException,
    zipfile.BadZipFile,
    zlib.error,
    EOFError,
    SyntaxError,
    KeyError,
    ValueError,
    TypeError,
    OSError,
)

CSV_SHEET_NAME = "Sheet1"


@dataclass
class SheetData:
    """One worksheet. rows[0] is spreadsheet row 1; cells are raw values."""

    name: str
    rows: list[tuple[Any, ...]] = field(default_factory=list)

    @property
    def row_count(self) -> int:
        return len(self.rows)

    def row(self, row_number: int) -> tuple[Any, ...]:
        if 1 <= row_number <= len(self.rows):
            return self.rows[row_number - 1]
        return ()

    def cell(self, row_number: int, column: int) -> Any:
        values = self.row(row_number)
        if 1 <= column <= len(values):
            return values[column - 1]
        return None


@dataclass
class StructuredSource:
    file_kind: str
    sheets: list[SheetData]
    kind: str = "structured"


@dataclass
class FreeformSource:
    file_kind: str
    text: str
    source_name: str = PDF_SOURCE_NAME
    kind: str = "freeform"


Source = Union[StructuredSource, FreeformSource]


def normalize_file_kind(file_kind: str) -> str:
    return (file_kind or "").strip().lower().lstrip(".")


# ══════════════════════════════════════════════════════════════════════════════
# TEXT DECODING
# ══════════════════════════════════════════════════════════════════════════════

def _detect_encoding(raw: bytes) -> str:
    """Best guess at the payload encoding; utf-8 when chardet has no opinion."""
    if raw.startswith(b"\xef\xbb\xbf"):
        return "utf-8-sig"
    result = chardet.detect(raw[:200_000])
    return result.get("encoding") or "utf-8"


def decode_text(raw: bytes) -> str:
    """
    Decode raw bytes line-by-line.

    Strategy per line:
      1. Try UTF-8
      2. Try the detected encoding
      3. Try latin-1
      4. CP1252 with replace (never fails)

    BOM and embedded null bytes are stripped.
    """
    preferred = _detect_encoding(raw)
    if raw.startswith(b"\xef\xbb\xbf"):
        raw = raw[3:]

    decoded_lines: list[str] = []
    for raw_line in raw.split(b"\n"):
        decoded: str | None = None
        for enc in ("utf-8", preferred, "latin-1"):
            try:
                decoded = raw_line.decode(enc)
                break
            except (LookupError, UnicodeDecodeError):
                continue
        if decoded is None:
            decoded = raw_line.decode("cp1252", errors="replace")
        decoded_lines.append(decoded.replace("\x00", ""))
    return "\n".join(decoded_lines)


# ══════════════════════════════════════════════════════════════════════════════
# DELIMITED TEXT
# ══════════════════════════════════════════════════════════════════════════════

def detect_delimiter(first_line: str) -> str:
    return ";" if ";" in first_line else ","


def split_delimited_line(line: str, delimiter: str) -> list[str]:
    """
    Split one line on the delimiter, honouring double quotes.

    A quote toggles the in-quotes state and is not kept; a delimiter inside
    quotes is literal. Fields are trimmed.
    """
    fields: list[str] = []
    current: list[str] = []
    in_quotes = False
    for char in line:
        if char == '"':
            in_quotes = not in_quotes
        elif char == delimiter and not in_quotes:
            fields.append("".join(current).strip())
            current = []
        else:
            current.append(char)
    fields.append("".join(current).strip())
    return fields


def load_delimited_source(payload: bytes) -> StructuredSource:
    """Build a single synthetic sheet from delimited text; blank text gives an empty sheet."""
    text = decode_text(payload).strip()
    if not text:
        logger.info("CSV payload has no content")
        return StructuredSource(file_kind="csv", sheets=[SheetData(name=CSV_SHEET_NAME)])

    lines = text.splitlines()
    delimiter = detect_delimiter(lines[0])
    rows = [tuple(split_delimited_line(line, delimiter)) for line in lines]
    logger.debug("Parsed %d CSV lines with delimiter %r", len(rows), delimiter)
    return StructuredSource(file_kind="csv", sheets=[SheetData(name=CSV_SHEET_NAME, rows=rows)])


# ══════════════════════════════════════════════════════════════════════════════
# WORKBOOKS
# ══════════════════════════════════════════════════════════════════════════════

def _xlrd_cell_value(book: xlrd.Book, cell: xlrd.sheet.Cell) -> Any:
    if cell.ctype in (xlrd.XL_CELL_EMPTY, xlrd.XL_CELL_BLANK):
        return None
    if cell.ctype == xlrd.XL_CELL_DATE:
        return xlrd.xldate.xldate_as_datetime(cell.value, book.datemode)
    if cell.ctype == xlrd.XL_CELL_BOOLEAN:
        return bool(cell.value)
    if cell.ctype == xlrd.XL_CELL_ERROR:
        return None
    return cell.value


def convert_xls_to_xlsx(payload: bytes) -> bytes:
    """
    Rewrite a legacy binary .xls workbook as an .xlsx container.

    openpyxl only reads the zip-based format, so the old BIFF file is read
    with xlrd and every sheet is copied value-by-value.
    """
    try:
        book = xlrd.open_workbook(file_contents=payload)
        workbook = openpyxl.Workbook()
        workbook.remove(workbook.active)
        for xls_sheet in book.sheets():
            sheet = workbook.create_sheet(title=xls_sheet.name[:31])
            for row_idx in range(xls_sheet.nrows):
                sheet.append([_xlrd_cell_value(book, cell) for cell in xls_sheet.row(row_idx)])
        buffer = io.BytesIO()
        workbook.save(buffer)
    except (xlrd.XLRDError, CompDocError, struct.error, ValueError, TypeError, OSError, IndexError, AssertionError) as exc:
        raise FormatError(
            "Failed to read .xls file. The file may be corrupted or in an unsupported format."
        ) from exc
    logger.info("Converted legacy .xls workbook (%d sheets) to .xlsx", book.nsheets)
    return buffer.getvalue()


def load_workbook_source(payload: bytes, file_kind: str = "xlsx") -> StructuredSource:
    """Read every worksheet of an .xlsx payload, formula cells as cached values."""
    sheets: list[SheetData] = []
    try:
        workbook = openpyxl.load_workbook(io.BytesIO(payload), data_only=True)
        for worksheet in workbook.worksheets:
            rows = [
                tuple(values)
                for values in worksheet.iter_rows(min_row=1, max_row=worksheet.max_row, values_only=True)
            ]
            sheets.append(SheetData(name=worksheet.title, rows=rows))
        workbook.close()
    except WORKBOOK_READ_ERRORS as exc:
        raise FormatError(f"Could not read workbook: {exc}") from exc
    logger.debug("Loaded %d worksheets", len(sheets))
    return StructuredSource(file_kind=file_kind, sheets=sheets)


# ══════════════════════════════════════════════════════════════════════════════
# PUBLIC API
# ══════════════════════════════════════════════════════════════════════════════

def load_source(payload: bytes, file_kind: str) -> Source:
    """
    Load an uploaded payload.

    Args:
        payload:   Raw uploaded bytes.
        file_kind: "xlsx", "xls", "csv" or "pdf" (case-insensitive, dot optional).

    Raises:
        FormatError if the kind is unsupported or the payload is unreadable.
    """
    kind = normalize_file_kind(file_kind)
    if kind not in ALL_KINDS:
        supported = ", ".join(sorted(ALL_KINDS))
        raise FormatError(
            f"Unsupported file type '{kind or '[missing]'}'. Supported: {supported}"
        )
    if kind == "csv":
        return load_delimited_source(payload)

    if not payload:
        raise FormatError("The uploaded file is empty.")

    if kind == "xls":
        return load_workbook_source(convert_xls_to_xlsx(payload), file_kind="xls")

    if kind == "xlsx":
        return load_workbook_source(payload, file_kind="xlsx")

    return FreeformSource(file_kind="pdf", text=extract_pdf_text(payload))
