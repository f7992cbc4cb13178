"""
importer.py — one uploaded file in, one persisted import batch out

Pipeline:
    1. resolve the column mapping     (MappingError   -> MAPPING_ERROR)
    2. load the payload               (FormatError    -> FORMAT_ERROR)
    3. classify sheets, or parse statement text
    4. zero rows                      (               -> EMPTY_RESULT)
    5. persist category, projects, batch, expenses, recurring templates
                                      (StoreError     -> PERSISTENCE_ERROR)

Nothing raises out of import_expenses: every failure comes back as an
ImportBatchResult with an outcome and a single descriptive error.

Public API:
    result = import_expenses(ImportRequest(payload, "xlsx", "ws-1"), store)
    removed = undo_import(store, "ws-1", result.batch_id)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any

from expense_intake.classifier import KeywordRules, classify_sheet
from expense_intake.config import Config
from expense_intake.loader import FreeformSource, StructuredSource, load_source, normalize_file_kind
from expense_intake.models import (
    ColumnMapping,
    ExpenseType,
    FormatError,
    ImportBatchResult,
    ImportOutcome,
    ImportStats,
    MappingError,
    ParsedRow,
    RecurringCandidate,
)
from expense_intake.recurring import dedupe_candidates
from expense_intake.statement_text import parse_statement_text
from expense_intake.storage import ExpenseStore, NewExpense, StoreError
from expense_intake.tabular import select_sheets

logger = logging.getLogger(__name__)

EXPENSE_STATUS = "PAID"
TEMPLATE_FREQUENCY = "MONTHLY"

EMPTY_TABULAR_MESSAGE = "No valid expense rows found. Please check your column mapping."
EMPTY_STATEMENT_MESSAGE = (
    "No expenses found in PDF. The file format may not be supported. "
    "Try exporting your bank statement as CSV or Excel instead."
)


@dataclass
class ImportRequest:
    payload: bytes
    file_kind: str
    workspace_id: str
    uploader_id: str | None = None
    file_name: str = ""
    mapping: ColumnMapping | dict[str, Any] | None = None


@dataclass
class ParsedUpload:
    """Everything the parse phase produced, before any persistence."""

    file_kind: str
    rows: list[ParsedRow] = field(default_factory=list)
    stats: ImportStats = field(default_factory=ImportStats)
    sources_processed: list[str] = field(default_factory=list)
    candidates: list[RecurringCandidate] = field(default_factory=list)
    project_sheets: frozenset[str] = frozenset()
    structured: bool = True


def resolve_mapping(mapping: ColumnMapping | dict[str, Any] | None, default: ColumnMapping) -> ColumnMapping:
    if mapping is None:
        return default
    if isinstance(mapping, ColumnMapping):
        return mapping
    return ColumnMapping.from_dict(mapping)


def project_display_name(sheet_name: str) -> str:
    name = sheet_name.strip()
    return name[:1].upper() + name[1:].lower()


# ══════════════════════════════════════════════════════════════════════════════
# PARSE PHASE
# ══════════════════════════════════════════════════════════════════════════════

def parse_structured(
    source: StructuredSource,
    mapping: ColumnMapping,
    imported_at: date,
    rules: KeywordRules,
) -> ParsedUpload:
    parsed = ParsedUpload(file_kind=source.file_kind, project_sheets=mapping.project_sheets)
    collected: list[RecurringCandidate] = []
    for sheet in select_sheets(source, mapping):
        sheet_result = classify_sheet(sheet, mapping, imported_at, rules)
        parsed.sources_processed.append(sheet.name)
        for row in sheet_result.rows:
            parsed.rows.append(row)
            parsed.stats.record(row.type)
        collected.extend(sheet_result.candidates)
    parsed.candidates = dedupe_candidates(collected)
    return parsed


def parse_freeform(source: FreeformSource) -> ParsedUpload:
    parsed = ParsedUpload(file_kind=source.file_kind, structured=False)
    parsed.rows = parse_statement_text(source.text)
    for row in parsed.rows:
        parsed.stats.record(row.type)
    parsed.sources_processed.append(source.source_name)
    return parsed


# ══════════════════════════════════════════════════════════════════════════════
# PERSIST PHASE
# ══════════════════════════════════════════════════════════════════════════════

def _ensure_default_category(store: ExpenseStore, workspace_id: str, name: str):
    category = store.find_category(workspace_id, name)
    if category is None:
        category = store.create_category(workspace_id, name, is_system=True)
        logger.info("Created default category %r", name)
    return category


def _ensure_projects(store: ExpenseStore, workspace_id: str, project_sheets: frozenset[str]) -> dict[str, str]:
    """Map each lower-cased project sheet name to its project id."""
    project_ids: dict[str, str] = {}
    for sheet_name in sorted(project_sheets, key=str.lower):
        key = sheet_name.lower()
        if key in project_ids:
            continue
        project = store.find_project(workspace_id, sheet_name)
        if project is None:
            project = store.create_project(workspace_id, project_display_name(sheet_name))
            logger.info("Created project %r", project.name)
        project_ids[key] = project.id
    return project_ids


def _build_expenses(
    parsed: ParsedUpload,
    request: ImportRequest,
    batch_id: str,
    category_id: str,
    project_ids: dict[str, str],
    home_currency: str,
) -> list[NewExpense]:
    expenses = []
    for row in parsed.rows:
        project_id = None
        if row.type is ExpenseType.PROJECT:
            project_id = project_ids.get(row.source_name.lower())
        expenses.append(
            NewExpense(
                workspace_id=request.workspace_id,
                batch_id=batch_id,
                category_id=category_id,
                project_id=project_id,
                name=row.name,
                raw_input=row.raw_input_summary,
                type=row.type,
                status=EXPENSE_STATUS,
                amount=row.amount,
                currency=home_currency,
                home_currency_amount=row.amount,
                expense_date=row.effective_date,
            )
        )
    return expenses


def _create_recurring_templates(
    store: ExpenseStore,
    workspace_id: str,
    candidates: list[RecurringCandidate],
    category_id: str,
) -> int:
    created = 0
    for candidate in candidates:
        if store.find_recurring_template(workspace_id, candidate.name) is not None:
            logger.debug("Recurring template %r already exists", candidate.name)
            continue
        store.create_recurring_template(
            workspace_id,
            name=candidate.name,
            amount=candidate.amount,
            type=candidate.type,
            category_id=category_id,
            frequency=TEMPLATE_FREQUENCY,
            is_active=True,
        )
        created += 1
        logger.info("Created recurring template: %s (%s %s)", candidate.name, candidate.amount, candidate.type.value)
    return created


# ══════════════════════════════════════════════════════════════════════════════
# PUBLIC API
# ══════════════════════════════════════════════════════════════════════════════

def import_expenses(
    request: ImportRequest,
    store: ExpenseStore,
    config: Config | None = None,
    now: datetime | None = None,
) -> ImportBatchResult:
    """
    Parse, classify and persist one uploaded file.

    Args:
        request: The upload plus its workspace, uploader and optional mapping.
        store:   Record store the batch is written through.
        config:  Settings; defaults apply when omitted.
        now:     Import timestamp, the last-resort effective date.
    """
    config = config or Config()
    imported_at = (now or datetime.now()).date()
    file_kind = normalize_file_kind(request.file_kind)

    try:
        mapping = resolve_mapping(request.mapping, config.imports.column_mapping())
    except MappingError as exc:
        logger.warning("Rejected column mapping: %s", exc)
        return ImportBatchResult.failure(ImportOutcome.MAPPING_ERROR, f"Invalid column mapping: {exc}")

    try:
        source = load_source(request.payload, file_kind)
    except FormatError as exc:
        logger.warning("Could not read %s upload: %s", file_kind or "unknown", exc)
        return ImportBatchResult.failure(ImportOutcome.FORMAT_ERROR, str(exc))

    if isinstance(source, FreeformSource):
        parsed = parse_freeform(source)
    else:
        parsed = parse_structured(source, mapping, imported_at, config.classification.keyword_rules())

    if not parsed.rows:
        message = EMPTY_TABULAR_MESSAGE if parsed.structured else EMPTY_STATEMENT_MESSAGE
        logger.warning("Nothing to import from %s: %s", request.file_name or file_kind, message)
        return ImportBatchResult.failure(
            ImportOutcome.EMPTY_RESULT,
            message,
            sources_processed=parsed.sources_processed,
            stats=parsed.stats,
        )

    logger.info(
        "Parsed %d expenses from %s (%s)",
        len(parsed.rows),
        ", ".join(parsed.sources_processed),
        parsed.stats.to_dict(),
    )

    result = ImportBatchResult(
        outcome=ImportOutcome.SUCCESS,
        stats=parsed.stats,
        sources_processed=parsed.sources_processed,
        recurring_candidates=parsed.candidates,
    )
    inserted = 0
    try:
        category = _ensure_default_category(store, request.workspace_id, config.imports.default_category)
        project_ids: dict[str, str] = {}
        if parsed.structured:
            project_ids = _ensure_projects(store, request.workspace_id, parsed.project_sheets)

        batch = store.create_import_batch(
            request.workspace_id,
            file_name=request.file_name,
            file_kind=file_kind,
            total_rows=len(parsed.rows),
            uploader_id=request.uploader_id,
        )
        result.batch_id = batch.id

        expenses = _build_expenses(
            parsed, request, batch.id, category.id, project_ids, config.imports.home_currency
        )
        inserted = store.insert_expenses(expenses)
        store.update_import_batch(batch.id, imported_rows=inserted)
        result.imported_count = inserted

        if parsed.structured:
            result.recurring_templates_created = _create_recurring_templates(
                store, request.workspace_id, parsed.candidates, category.id
            )
    except StoreError as exc:
        logger.error("Import of %s failed while saving: %s", request.file_name or file_kind, exc)
        result.outcome = ImportOutcome.PERSISTENCE_ERROR
        result.imported_count = inserted
        result.failed_count = len(parsed.rows) - inserted
        result.errors = [str(exc)][: config.imports.max_reported_errors]
        return result

    logger.info(
        "Imported %d expenses into batch %s, %d recurring templates created",
        result.imported_count,
        result.batch_id,
        result.recurring_templates_created,
    )
    result.errors = result.errors[: config.imports.max_reported_errors]
    return result


def undo_import(store: ExpenseStore, workspace_id: str, batch_id: str) -> int:
    """
    Delete an import batch and every expense it created.

    Recurring templates, projects and categories created by the import stay.
    Raises StoreError when the batch does not exist in the workspace.
    """
    batch = store.get_import_batch(workspace_id, batch_id)
    if batch is None:
        raise StoreError(f"Import batch not found: {batch_id}")
    removed = store.delete_import_batch(workspace_id, batch_id)
    logger.info("Undid import batch %s (%s): %d expenses removed", batch_id, batch.file_name, removed)
    return removed
