"""
tabular.py — walk the sheets of a structured source as mapped rows

Public API:
    for sheet in select_sheets(source, mapping):
        for raw in iter_raw_rows(sheet, mapping):
            cells = extract_mapped_cells(raw, mapping)

Sheets are duck-typed (anything with ``name`` and ``rows``) so this module
stays independent of how the payload was loaded.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Iterator

from expense_intake.models import ColumnMapping

if TYPE_CHECKING:
    from expense_intake.loader import SheetData, StructuredSource

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RawRow:
    source_name: str
    row_number: int
    cells: tuple[Any, ...]

    def cell(self, column: int | None) -> Any:
        if column is None or column < 1 or column > len(self.cells):
            return None
        return self.cells[column - 1]


@dataclass(frozen=True)
class MappedCells:
    date: Any
    name: Any
    amount: Any


def select_sheets(source: "StructuredSource", mapping: ColumnMapping) -> Iterator["SheetData"]:
    for sheet in source.sheets:
        if not mapping.includes_sheet(sheet.name):
            logger.info("Skipping sheet %r (not selected)", sheet.name)
            continue
        yield sheet


def iter_raw_rows(sheet: "SheetData", mapping: ColumnMapping) -> Iterator[RawRow]:
    """Yield every row after the header row, numbered as in the spreadsheet."""
    for row_number in range(mapping.header_row + 1, len(sheet.rows) + 1):
        yield RawRow(
            source_name=sheet.name,
            row_number=row_number,
            cells=tuple(sheet.rows[row_number - 1] or ()),
        )


def extract_mapped_cells(raw_row: RawRow, mapping: ColumnMapping) -> MappedCells:
    return MappedCells(
        date=raw_row.cell(mapping.date_column),
        name=raw_row.cell(mapping.name_column),
        amount=raw_row.cell(mapping.amount_column),
    )
