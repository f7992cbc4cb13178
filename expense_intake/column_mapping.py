"""
column_mapping.py — advisory header and column detection for the preview step

Nothing here feeds the import itself: the operator reviews the suggestion,
adjusts it, and sends the confirmed mapping back with the upload.

Public API:
    result = preview_file(payload, "xlsx")
    result.suggested_mapping   -> {"date_column": 1, "name_column": 2, ...}
    result.has_mixed_values    -> True when the amount column holds both signs
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Sequence

from expense_intake.loader import FreeformSource, SheetData, Source, load_source
from expense_intake.models import FormatError
from expense_intake.normalizer import is_blank, parse_signed_amount

logger = logging.getLogger(__name__)

HEADER_SCAN_ROWS = 5
SAMPLE_ROW_LIMIT = 5
MIXED_SIGN_EXTRA_ROWS = 50

DATE_KEYWORDS = ("data", "date", "dia", "day", "when", "quando")
NAME_KEYWORDS = (
    "tipo", "type", "name", "nome", "description", "descricao", "descrição",
    "custo", "expense", "item", "merchant",
)
AMOUNT_KEYWORDS = (
    "valor", "value", "amount", "custo", "cost", "price", "preço", "preco",
    "total", "€", "eur",
)


@dataclass
class SheetPreview:
    name: str
    headers: list[dict[str, Any]] = field(default_factory=list)
    sample_rows: list[dict[int, Any]] = field(default_factory=list)
    row_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "headers": [dict(header) for header in self.headers],
            "sample_rows": [{str(col): value for col, value in row.items()} for row in self.sample_rows],
            "row_count": self.row_count,
        }


def empty_suggestion() -> dict[str, Any]:
    return {"date_column": None, "name_column": None, "amount_column": None, "header_row": 1}


@dataclass
class PreviewResult:
    success: bool
    sheets: list[SheetPreview] = field(default_factory=list)
    suggested_mapping: dict[str, Any] = field(default_factory=empty_suggestion)
    has_mixed_values: bool = False
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload = {
            "success": self.success,
            "sheets": [sheet.to_dict() for sheet in self.sheets],
            "suggested_mapping": dict(self.suggested_mapping),
            "has_mixed_values": self.has_mixed_values,
        }
        if self.error:
            payload["error"] = self.error
        return payload


# ══════════════════════════════════════════════════════════════════════════════
# DETECTION
# ══════════════════════════════════════════════════════════════════════════════

def detect_column_type(header: str) -> str | None:
    lowered = header.lower().strip()
    if any(keyword in lowered for keyword in DATE_KEYWORDS):
        return "date"
    if any(keyword in lowered for keyword in AMOUNT_KEYWORDS):
        return "amount"
    if any(keyword in lowered for keyword in NAME_KEYWORDS):
        return "name"
    return None


def detect_header_row(sheet: SheetData) -> int:
    """The row among the first five with the most non-empty text cells."""
    best_row = 1
    best_count = 0
    for row_number in range(1, min(HEADER_SCAN_ROWS, sheet.row_count) + 1):
        count = sum(
            1 for value in sheet.row(row_number)
            if isinstance(value, str) and value.strip()
        )
        if count > best_count:
            best_count = count
            best_row = row_number
    return best_row


def header_cells(sheet: SheetData, header_row: int) -> list[dict[str, Any]]:
    headers = []
    for column, value in enumerate(sheet.row(header_row), start=1):
        if is_blank(value):
            continue
        headers.append({"column": column, "value": str(value).strip()})
    return headers


def suggest_column_roles(headers: Sequence[dict[str, Any]]) -> dict[str, int | None]:
    """First header matching each role wins it; later matches never overwrite."""
    roles: dict[str, int | None] = {"date_column": None, "name_column": None, "amount_column": None}
    for header in headers:
        column_type = detect_column_type(header["value"])
        if column_type is None:
            continue
        key = f"{column_type}_column"
        if roles[key] is None:
            roles[key] = header["column"]
    return roles


def format_preview_value(value: Any) -> Any:
    if isinstance(value, datetime):
        if value.time() == datetime.min.time():
            return value.date().isoformat()
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, str):
        return value.strip()
    return value


def collect_sample_rows(sheet: SheetData, header_row: int, limit: int = SAMPLE_ROW_LIMIT) -> list[dict[int, Any]]:
    samples: list[dict[int, Any]] = []
    for row_number in range(header_row + 1, sheet.row_count + 1):
        if len(samples) >= limit:
            break
        row_data = {
            column: format_preview_value(value)
            for column, value in enumerate(sheet.row(row_number), start=1)
            if not is_blank(value)
        }
        if not row_data:
            continue
        if any(isinstance(v, str) and "total" in v.lower() for v in row_data.values()):
            continue
        samples.append(row_data)
    return samples


def detect_mixed_signs(
    sheet: SheetData,
    amount_column: int | None,
    header_row: int,
    sample_rows: Sequence[dict[int, Any]],
) -> bool:
    """True once both a positive and a negative amount have been seen."""
    if amount_column is None:
        return False

    seen_positive = False
    seen_negative = False

    def observe(raw: Any) -> bool:
        nonlocal seen_positive, seen_negative
        number = parse_signed_amount(raw)
        if number is not None:
            if number > 0:
                seen_positive = True
            elif number < 0:
                seen_negative = True
        return seen_positive and seen_negative

    for row in sample_rows:
        if observe(row.get(amount_column)):
            return True

    start = header_row + 1 + len(sample_rows)
    stop = min(start + MIXED_SIGN_EXTRA_ROWS, sheet.row_count + 1)
    for row_number in range(start, stop):
        if observe(sheet.cell(row_number, amount_column)):
            return True
    return False


# ══════════════════════════════════════════════════════════════════════════════
# PUBLIC API
# ══════════════════════════════════════════════════════════════════════════════

def preview_source(source: Source) -> PreviewResult:
    if isinstance(source, FreeformSource):
        return PreviewResult(
            success=False,
            error="PDF files cannot be previewed for column mapping. Import them directly.",
        )

    result = PreviewResult(success=True)
    first_sheet: SheetData | None = None
    for sheet in source.sheets:
        header_row = detect_header_row(sheet)
        headers = header_cells(sheet, header_row)
        samples = collect_sample_rows(sheet, header_row)
        if first_sheet is None:
            first_sheet = sheet
            result.suggested_mapping = {**suggest_column_roles(headers), "header_row": header_row}
        result.sheets.append(
            SheetPreview(name=sheet.name, headers=headers, sample_rows=samples, row_count=sheet.row_count)
        )

    if first_sheet is not None:
        result.has_mixed_values = detect_mixed_signs(
            first_sheet,
            result.suggested_mapping["amount_column"],
            result.suggested_mapping["header_row"],
            result.sheets[0].sample_rows,
        )
    logger.debug("Preview built for %d sheets: %s", len(result.sheets), result.suggested_mapping)
    return result


def preview_file(payload: bytes, file_kind: str) -> PreviewResult:
    """Read-only preview of an upload; failures come back as success=False."""
    try:
        source = load_source(payload, file_kind)
    except FormatError as exc:
        logger.warning("Preview failed: %s", exc)
        return PreviewResult(success=False, error=str(exc))
    return preview_source(source)
