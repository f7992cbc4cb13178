"""Shared data model for the import pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Any


class ExpenseIntakeError(Exception):
    """Base class for pipeline errors that become result data at the boundary."""


class FormatError(ExpenseIntakeError):
    """Payload is unreadable, corrupted, or of an unsupported kind."""


class MappingError(ExpenseIntakeError):
    """Caller-supplied column mapping is malformed."""


class ExpenseType(str, Enum):
    SURVIVAL_FIXED = "SURVIVAL_FIXED"
    SURVIVAL_VARIABLE = "SURVIVAL_VARIABLE"
    LIFESTYLE = "LIFESTYLE"
    PROJECT = "PROJECT"


RECURRING_TYPES = frozenset({ExpenseType.SURVIVAL_FIXED, ExpenseType.SURVIVAL_VARIABLE})


class ImportOutcome(str, Enum):
    SUCCESS = "success"
    FORMAT_ERROR = "format_error"
    MAPPING_ERROR = "mapping_error"
    EMPTY_RESULT = "empty_result"
    PERSISTENCE_ERROR = "persistence_error"


def _sheet_name_set(value: Any, field_name: str) -> frozenset[str]:
    if value is None:
        return frozenset()
    if isinstance(value, str) or not isinstance(value, (list, tuple, set, frozenset)):
        raise MappingError(f"{field_name} must be a list of sheet names")
    names = set()
    for item in value:
        if not isinstance(item, str):
            raise MappingError(f"{field_name} must only contain strings, got {item!r}")
        if item.strip():
            names.add(item.strip())
    return frozenset(names)


def _column_index(value: Any, field_name: str, *, optional: bool = False) -> int | None:
    if value is None and optional:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise MappingError(f"{field_name} must be an integer column number, got {value!r}")
    if value < 1:
        raise MappingError(f"{field_name} must be >= 1, got {value}")
    return value


@dataclass(frozen=True)
class ColumnMapping:
    """Which cells hold the date, name and amount. Column numbers are 1-based."""

    date_column: int | None
    name_column: int
    amount_column: int
    header_row: int = 1
    sheets_to_import: frozenset[str] = frozenset()
    project_sheets: frozenset[str] = frozenset()

    @classmethod
    def from_dict(cls, data: Any) -> "ColumnMapping":
        """Build a mapping from a JSON-style dict, accepting snake_case or camelCase keys."""
        if not isinstance(data, dict):
            raise MappingError(f"Column mapping must be an object, got {type(data).__name__}")

        def pick(snake: str, camel: str, default: Any = None) -> Any:
            if snake in data:
                return data[snake]
            return data.get(camel, default)

        if pick("name_column", "nameColumn") is None:
            raise MappingError("Column mapping is missing name_column")
        if pick("amount_column", "amountColumn") is None:
            raise MappingError("Column mapping is missing amount_column")

        header_row = _column_index(pick("header_row", "headerRow", 1), "header_row")
        return cls(
            date_column=_column_index(pick("date_column", "dateColumn"), "date_column", optional=True),
            name_column=_column_index(pick("name_column", "nameColumn"), "name_column"),
            amount_column=_column_index(pick("amount_column", "amountColumn"), "amount_column"),
            header_row=header_row,
            sheets_to_import=_sheet_name_set(pick("sheets_to_import", "sheetsToImport"), "sheets_to_import"),
            project_sheets=_sheet_name_set(pick("project_sheets", "projectSheets"), "project_sheets"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "date_column": self.date_column,
            "name_column": self.name_column,
            "amount_column": self.amount_column,
            "header_row": self.header_row,
            "sheets_to_import": sorted(self.sheets_to_import),
            "project_sheets": sorted(self.project_sheets),
        }

    def includes_sheet(self, sheet_name: str) -> bool:
        if not self.sheets_to_import:
            return True
        lowered = sheet_name.lower()
        return any(name.lower() == lowered for name in self.sheets_to_import)

    def is_project_sheet(self, sheet_name: str) -> bool:
        lowered = sheet_name.lower()
        return any(name.lower() == lowered for name in self.project_sheets)


DEFAULT_COLUMN_MAPPING = ColumnMapping(
    date_column=2,
    name_column=3,
    amount_column=4,
    header_row=2,
    sheets_to_import=frozenset(),
    project_sheets=frozenset({"casa"}),
)


@dataclass
class SheetProcessingContext:
    """Row-order tracking state for a single sheet. Never reused across sheets."""

    last_valid_date: date | None = None
    first_date_seen: bool = False
    seen_recurring_names: set[str] = field(default_factory=set)


@dataclass(frozen=True)
class ParsedRow:
    source_name: str
    row_number: int
    effective_date: date
    name: str
    raw_input_summary: str
    amount: Decimal
    type: ExpenseType


@dataclass(frozen=True)
class RecurringCandidate:
    name: str
    amount: Decimal
    type: ExpenseType

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "amount": str(self.amount), "type": self.type.value}


@dataclass
class ImportStats:
    survival_fixed: int = 0
    survival_variable: int = 0
    lifestyle: int = 0
    project: int = 0

    def record(self, expense_type: ExpenseType) -> None:
        if expense_type is ExpenseType.SURVIVAL_FIXED:
            self.survival_fixed += 1
        elif expense_type is ExpenseType.SURVIVAL_VARIABLE:
            self.survival_variable += 1
        elif expense_type is ExpenseType.LIFESTYLE:
            self.lifestyle += 1
        elif expense_type is ExpenseType.PROJECT:
            self.project += 1

    def to_dict(self) -> dict[str, int]:
        return {
            "survival_fixed": self.survival_fixed,
            "survival_variable": self.survival_variable,
            "lifestyle": self.lifestyle,
            "project": self.project,
        }


@dataclass
class ImportBatchResult:
    outcome: ImportOutcome
    imported_count: int = 0
    failed_count: int = 0
    errors: list[str] = field(default_factory=list)
    stats: ImportStats = field(default_factory=ImportStats)
    sources_processed: list[str] = field(default_factory=list)
    recurring_candidates: list[RecurringCandidate] = field(default_factory=list)
    recurring_templates_created: int = 0
    batch_id: str | None = None

    @property
    def success(self) -> bool:
        return self.outcome is ImportOutcome.SUCCESS

    @classmethod
    def failure(
        cls,
        outcome: ImportOutcome,
        message: str,
        *,
        sources_processed: list[str] | None = None,
        stats: ImportStats | None = None,
    ) -> "ImportBatchResult":
        return cls(
            outcome=outcome,
            errors=[message],
            stats=stats or ImportStats(),
            sources_processed=list(sources_processed or []),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "outcome": self.outcome.value,
            "imported_count": self.imported_count,
            "failed_count": self.failed_count,
            "errors": list(self.errors),
            "stats": self.stats.to_dict(),
            "sources_processed": list(self.sources_processed),
            "recurring_candidates": [candidate.to_dict() for candidate in self.recurring_candidates],
            "recurring_templates_created": self.recurring_templates_created,
            "batch_id": self.batch_id,
        }
