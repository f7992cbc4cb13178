"""
classifier.py — four-way expense typing and the per-sheet row state machine

Rules, in order:
    project sheet                        -> PROJECT
    row has (or inherits) a date         -> LIFESTYLE
    name contains a utility keyword      -> SURVIVAL_VARIABLE
    name contains a fixed-cost keyword   -> SURVIVAL_FIXED
    anything else                        -> SURVIVAL_FIXED

Undated rows at the top of a sheet, before its first dated row, are the
monthly bills block and become recurring candidates.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from typing import TYPE_CHECKING, Any, Iterable

from expense_intake.models import (
    RECURRING_TYPES,
    ColumnMapping,
    ExpenseType,
    ParsedRow,
    RecurringCandidate,
    SheetProcessingContext,
)
from expense_intake.normalizer import is_blank, parse_amount, parse_date, parse_sheet_date
from expense_intake.tabular import MappedCells, extract_mapped_cells, iter_raw_rows

if TYPE_CHECKING:
    from expense_intake.loader import SheetData

logger = logging.getLogger(__name__)

FIXED_KEYWORDS = (
    "spotify", "netflix", "youtube", "hbo", "disney", "amazon", "prime",
    "ginásio", "ginasio", "gym", "renda", "aluguer", "rent", "seguro",
    "insurance", "mensalidade", "subscription", "assinatura", "nowo",
    "vodafone", "meo", "nos", "phone", "telemovel", "telemóvel",
    "duster", "prestação", "prestacao", "seg social", "contabilista",
    "manutenção", "manutencao", "conta",
)

VARIABLE_KEYWORDS = (
    "luz", "água", "agua", "gás", "gas", "eletricidade", "electricity",
    "water", "edp", "galp", "endesa",
)


@dataclass(frozen=True)
class KeywordRules:
    variable: tuple[str, ...] = VARIABLE_KEYWORDS
    fixed: tuple[str, ...] = FIXED_KEYWORDS

    def extended(self, variable: Iterable[str] = (), fixed: Iterable[str] = ()) -> "KeywordRules":
        extra_variable = tuple(k.strip().lower() for k in variable if k and k.strip())
        extra_fixed = tuple(k.strip().lower() for k in fixed if k and k.strip())
        return KeywordRules(
            variable=self.variable + extra_variable,
            fixed=self.fixed + extra_fixed,
        )


DEFAULT_KEYWORD_RULES = KeywordRules()


def normalize_name(name: str) -> str:
    return name.strip().lower()


def classify_expense(
    name: str,
    has_date_context: bool,
    is_project_sheet: bool,
    rules: KeywordRules = DEFAULT_KEYWORD_RULES,
) -> ExpenseType:
    if is_project_sheet:
        return ExpenseType.PROJECT
    if has_date_context:
        return ExpenseType.LIFESTYLE

    lowered = normalize_name(name)
    # Utilities first: "conta da luz" must not land on the "conta" fixed keyword.
    if any(keyword in lowered for keyword in rules.variable):
        return ExpenseType.SURVIVAL_VARIABLE
    if any(keyword in lowered for keyword in rules.fixed):
        return ExpenseType.SURVIVAL_FIXED
    return ExpenseType.SURVIVAL_FIXED


@dataclass(frozen=True)
class SheetDescriptor:
    name: str
    is_project_sheet: bool
    sheet_date: date | None


@dataclass(frozen=True)
class RowOutcome:
    row: ParsedRow | None = None
    candidate: RecurringCandidate | None = None


SKIPPED = RowOutcome()


def _cell_text(value: Any) -> str:
    if is_blank(value):
        return ""
    return str(value).strip()


def process_row(
    context: SheetProcessingContext,
    sheet: SheetDescriptor,
    cells: MappedCells,
    row_number: int,
    imported_at: date,
    rules: KeywordRules = DEFAULT_KEYWORD_RULES,
) -> RowOutcome:
    """
    Classify one row and advance the sheet's tracking state.

    Rows without a usable name or amount are dropped silently; they are
    neither errors nor failures.
    """
    name = _cell_text(cells.name)
    if not name or name.lower() == "total":
        return SKIPPED
    amount = parse_amount(cells.amount)
    if amount is None:
        return SKIPPED

    original_had_date = not is_blank(cells.date)
    parsed_date = parse_date(cells.date)

    candidate = None
    if not original_had_date and not context.first_date_seen and not sheet.is_project_sheet:
        key = normalize_name(name)
        if key not in context.seen_recurring_names:
            context.seen_recurring_names.add(key)
            candidate_type = classify_expense(name, False, False, rules)
            if candidate_type in RECURRING_TYPES:
                candidate = RecurringCandidate(name=name, amount=amount, type=candidate_type)

    if parsed_date is not None:
        context.last_valid_date = parsed_date
        context.first_date_seen = True
    elif context.last_valid_date is not None:
        parsed_date = context.last_valid_date

    has_date_context = original_had_date or (
        context.last_valid_date is not None and not sheet.is_project_sheet
    )
    expense_type = classify_expense(name, has_date_context, sheet.is_project_sheet, rules)

    effective_date = parsed_date or sheet.sheet_date or imported_at

    row = ParsedRow(
        source_name=sheet.name,
        row_number=row_number,
        effective_date=effective_date,
        name=name,
        raw_input_summary=f"[{sheet.name}] {name}: {amount}",
        amount=amount,
        type=expense_type,
    )
    return RowOutcome(row=row, candidate=candidate)


@dataclass
class SheetResult:
    rows: list[ParsedRow]
    candidates: list[RecurringCandidate]


def classify_sheet(
    sheet: "SheetData",
    mapping: ColumnMapping,
    imported_at: date,
    rules: KeywordRules = DEFAULT_KEYWORD_RULES,
) -> SheetResult:
    """Run every data row of one sheet through the state machine with a fresh context."""
    context = SheetProcessingContext()
    descriptor = SheetDescriptor(
        name=sheet.name,
        is_project_sheet=mapping.is_project_sheet(sheet.name),
        sheet_date=parse_sheet_date(sheet.name),
    )

    result = SheetResult(rows=[], candidates=[])
    for raw in iter_raw_rows(sheet, mapping):
        outcome = process_row(
            context,
            descriptor,
            extract_mapped_cells(raw, mapping),
            raw.row_number,
            imported_at,
            rules,
        )
        if outcome.candidate is not None:
            result.candidates.append(outcome.candidate)
        if outcome.row is not None:
            result.rows.append(outcome.row)

    logger.info(
        "Sheet %r: %d expenses, %d recurring candidates%s",
        sheet.name,
        len(result.rows),
        len(result.candidates),
        " (project sheet)" if descriptor.is_project_sheet else "",
    )
    return result
