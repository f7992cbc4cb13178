"""
storage.py — the record store the importer writes through

The importer only needs a narrow slice of a bookkeeping database: look up or
create categories, projects and recurring templates by name, open an import
batch, bulk-insert expenses, and later review or undo that batch.

Implementations:
    InMemoryExpenseStore: dict-backed, for tests and --dry-run
    SqliteExpenseStore:   single-file SQLite database

Names are matched case-insensitively within a workspace. Every failure is
raised as StoreError.
"""

from __future__ import annotations

import logging
import sqlite3
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Iterator, Protocol

from expense_intake.models import ExpenseIntakeError, ExpenseType

logger = logging.getLogger(__name__)


class StoreError(ExpenseIntakeError):
    """The record store rejected or failed an operation."""


def new_id() -> str:
    return uuid.uuid4().hex


def name_key(name: str) -> str:
    return name.strip().lower()


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


# ══════════════════════════════════════════════════════════════════════════════
# RECORDS
# ══════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class CategoryRecord:
    id: str
    workspace_id: str
    name: str
    is_system: bool = False


@dataclass(frozen=True)
class ProjectRecord:
    id: str
    workspace_id: str
    name: str


@dataclass(frozen=True)
class RecurringTemplateRecord:
    id: str
    workspace_id: str
    name: str
    amount: Decimal
    type: ExpenseType
    category_id: str | None
    frequency: str = "MONTHLY"
    is_active: bool = True


@dataclass(frozen=True)
class ImportBatchRecord:
    id: str
    workspace_id: str
    file_name: str
    file_kind: str
    total_rows: int
    imported_rows: int
    uploader_id: str | None
    created_at: str


@dataclass(frozen=True)
class NewExpense:
    """An expense row ready to insert; the store assigns the id."""

    workspace_id: str
    batch_id: str
    category_id: str
    project_id: str | None
    name: str
    raw_input: str
    type: ExpenseType
    status: str
    amount: Decimal
    currency: str
    home_currency_amount: Decimal
    expense_date: date


@dataclass(frozen=True)
class ExpenseRecord(NewExpense):
    id: str = ""


class ExpenseStore(Protocol):
    def find_category(self, workspace_id: str, name: str) -> CategoryRecord | None: ...

    def create_category(self, workspace_id: str, name: str, *, is_system: bool = False) -> CategoryRecord: ...

    def find_project(self, workspace_id: str, name: str) -> ProjectRecord | None: ...

    def create_project(self, workspace_id: str, name: str) -> ProjectRecord: ...

    def find_recurring_template(self, workspace_id: str, name: str) -> RecurringTemplateRecord | None: ...

    def create_recurring_template(
        self,
        workspace_id: str,
        *,
        name: str,
        amount: Decimal,
        type: ExpenseType,
        category_id: str | None,
        frequency: str = "MONTHLY",
        is_active: bool = True,
    ) -> RecurringTemplateRecord: ...

    def create_import_batch(
        self,
        workspace_id: str,
        *,
        file_name: str,
        file_kind: str,
        total_rows: int,
        uploader_id: str | None,
    ) -> ImportBatchRecord: ...

    def update_import_batch(self, batch_id: str, *, imported_rows: int) -> None: ...

    def insert_expenses(self, expenses: list[NewExpense]) -> int: ...

    def get_import_batch(self, workspace_id: str, batch_id: str) -> ImportBatchRecord | None: ...

    def list_batch_expenses(self, workspace_id: str, batch_id: str) -> list[ExpenseRecord]: ...

    def delete_import_batch(self, workspace_id: str, batch_id: str) -> int: ...


# ══════════════════════════════════════════════════════════════════════════════
# IN-MEMORY
# ══════════════════════════════════════════════════════════════════════════════

@dataclass
class InMemoryExpenseStore:
    categories: dict[str, CategoryRecord] = field(default_factory=dict)
    projects: dict[str, ProjectRecord] = field(default_factory=dict)
    templates: dict[str, RecurringTemplateRecord] = field(default_factory=dict)
    batches: dict[str, ImportBatchRecord] = field(default_factory=dict)
    expenses: dict[str, ExpenseRecord] = field(default_factory=dict)

    @staticmethod
    def _find_named(records, workspace_id: str, name: str):
        key = name_key(name)
        for record in records.values():
            if record.workspace_id == workspace_id and name_key(record.name) == key:
                return record
        return None

    def find_category(self, workspace_id: str, name: str) -> CategoryRecord | None:
        return self._find_named(self.categories, workspace_id, name)

    def create_category(self, workspace_id: str, name: str, *, is_system: bool = False) -> CategoryRecord:
        existing = self.find_category(workspace_id, name)
        if existing is not None:
            return existing
        record = CategoryRecord(id=new_id(), workspace_id=workspace_id, name=name, is_system=is_system)
        self.categories[record.id] = record
        return record

    def find_project(self, workspace_id: str, name: str) -> ProjectRecord | None:
        return self._find_named(self.projects, workspace_id, name)

    def create_project(self, workspace_id: str, name: str) -> ProjectRecord:
        existing = self.find_project(workspace_id, name)
        if existing is not None:
            return existing
        record = ProjectRecord(id=new_id(), workspace_id=workspace_id, name=name)
        self.projects[record.id] = record
        return record

    def find_recurring_template(self, workspace_id: str, name: str) -> RecurringTemplateRecord | None:
        return self._find_named(self.templates, workspace_id, name)

    def create_recurring_template(
        self,
        workspace_id: str,
        *,
        name: str,
        amount: Decimal,
        type: ExpenseType,
        category_id: str | None,
        frequency: str = "MONTHLY",
        is_active: bool = True,
    ) -> RecurringTemplateRecord:
        existing = self.find_recurring_template(workspace_id, name)
        if existing is not None:
            return existing
        record = RecurringTemplateRecord(
            id=new_id(),
            workspace_id=workspace_id,
            name=name,
            amount=amount,
            type=type,
            category_id=category_id,
            frequency=frequency,
            is_active=is_active,
        )
        self.templates[record.id] = record
        return record

    def create_import_batch(
        self,
        workspace_id: str,
        *,
        file_name: str,
        file_kind: str,
        total_rows: int,
        uploader_id: str | None,
    ) -> ImportBatchRecord:
        record = ImportBatchRecord(
            id=new_id(),
            workspace_id=workspace_id,
            file_name=file_name,
            file_kind=file_kind,
            total_rows=total_rows,
            imported_rows=0,
            uploader_id=uploader_id,
            created_at=utc_now_iso(),
        )
        self.batches[record.id] = record
        return record

    def update_import_batch(self, batch_id: str, *, imported_rows: int) -> None:
        batch = self.batches.get(batch_id)
        if batch is None:
            raise StoreError(f"Import batch not found: {batch_id}")
        self.batches[batch_id] = replace(batch, imported_rows=imported_rows)

    def insert_expenses(self, expenses: list[NewExpense]) -> int:
        for expense in expenses:
            if expense.batch_id not in self.batches:
                raise StoreError(f"Import batch not found: {expense.batch_id}")
        for expense in expenses:
            record = ExpenseRecord(**{**expense.__dict__, "id": new_id()})
            self.expenses[record.id] = record
        return len(expenses)

    def get_import_batch(self, workspace_id: str, batch_id: str) -> ImportBatchRecord | None:
        batch = self.batches.get(batch_id)
        if batch is None or batch.workspace_id != workspace_id:
            return None
        return batch

    def list_batch_expenses(self, workspace_id: str, batch_id: str) -> list[ExpenseRecord]:
        return [
            expense for expense in self.expenses.values()
            if expense.workspace_id == workspace_id and expense.batch_id == batch_id
        ]

    def delete_import_batch(self, workspace_id: str, batch_id: str) -> int:
        if self.get_import_batch(workspace_id, batch_id) is None:
            raise StoreError(f"Import batch not found: {batch_id}")
        doomed = [expense.id for expense in self.list_batch_expenses(workspace_id, batch_id)]
        for expense_id in doomed:
            del self.expenses[expense_id]
        del self.batches[batch_id]
        return len(doomed)


# ══════════════════════════════════════════════════════════════════════════════
# SQLITE
# ══════════════════════════════════════════════════════════════════════════════

SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS categories (
        id TEXT PRIMARY KEY,
        workspace_id TEXT NOT NULL,
        name TEXT NOT NULL,
        name_key TEXT NOT NULL,
        is_system INTEGER NOT NULL DEFAULT 0,
        UNIQUE (workspace_id, name_key)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS projects (
        id TEXT PRIMARY KEY,
        workspace_id TEXT NOT NULL,
        name TEXT NOT NULL,
        name_key TEXT NOT NULL,
        UNIQUE (workspace_id, name_key)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS recurring_templates (
        id TEXT PRIMARY KEY,
        workspace_id TEXT NOT NULL,
        name TEXT NOT NULL,
        name_key TEXT NOT NULL,
        amount TEXT NOT NULL,
        type TEXT NOT NULL,
        category_id TEXT REFERENCES categories(id),
        frequency TEXT NOT NULL,
        is_active INTEGER NOT NULL DEFAULT 1,
        UNIQUE (workspace_id, name_key)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS import_batches (
        id TEXT PRIMARY KEY,
        workspace_id TEXT NOT NULL,
        file_name TEXT NOT NULL,
        file_kind TEXT NOT NULL,
        total_rows INTEGER NOT NULL,
        imported_rows INTEGER NOT NULL DEFAULT 0,
        uploader_id TEXT,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS expenses (
        id TEXT PRIMARY KEY,
        workspace_id TEXT NOT NULL,
        batch_id TEXT NOT NULL REFERENCES import_batches(id),
        category_id TEXT NOT NULL REFERENCES categories(id),
        project_id TEXT REFERENCES projects(id),
        name TEXT NOT NULL,
        raw_input TEXT NOT NULL,
        type TEXT NOT NULL,
        status TEXT NOT NULL,
        amount TEXT NOT NULL,
        currency TEXT NOT NULL,
        home_currency_amount TEXT NOT NULL,
        expense_date TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_expenses_batch ON expenses(batch_id)",
)


def _category_from_row(row: sqlite3.Row) -> CategoryRecord:
    return CategoryRecord(
        id=row["id"],
        workspace_id=row["workspace_id"],
        name=row["name"],
        is_system=bool(row["is_system"]),
    )


def _project_from_row(row: sqlite3.Row) -> ProjectRecord:
    return ProjectRecord(id=row["id"], workspace_id=row["workspace_id"], name=row["name"])


def _template_from_row(row: sqlite3.Row) -> RecurringTemplateRecord:
    return RecurringTemplateRecord(
        id=row["id"],
        workspace_id=row["workspace_id"],
        name=row["name"],
        amount=Decimal(row["amount"]),
        type=ExpenseType(row["type"]),
        category_id=row["category_id"],
        frequency=row["frequency"],
        is_active=bool(row["is_active"]),
    )


def _batch_from_row(row: sqlite3.Row) -> ImportBatchRecord:
    return ImportBatchRecord(
        id=row["id"],
        workspace_id=row["workspace_id"],
        file_name=row["file_name"],
        file_kind=row["file_kind"],
        total_rows=row["total_rows"],
        imported_rows=row["imported_rows"],
        uploader_id=row["uploader_id"],
        created_at=row["created_at"],
    )


def _expense_from_row(row: sqlite3.Row) -> ExpenseRecord:
    return ExpenseRecord(
        id=row["id"],
        workspace_id=row["workspace_id"],
        batch_id=row["batch_id"],
        category_id=row["category_id"],
        project_id=row["project_id"],
        name=row["name"],
        raw_input=row["raw_input"],
        type=ExpenseType(row["type"]),
        status=row["status"],
        amount=Decimal(row["amount"]),
        currency=row["currency"],
        home_currency_amount=Decimal(row["home_currency_amount"]),
        expense_date=date.fromisoformat(row["expense_date"]),
    )


class SqliteExpenseStore:
    """
    SQLite-backed store. One short-lived connection per operation.

    Categories, projects and templates carry a UNIQUE (workspace, name)
    constraint; a create that loses a race re-reads and returns the winner.
    """

    def __init__(self, db_path: Path | str):
        self.db_path = Path(db_path)
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StoreError(f"Cannot create database directory for {self.db_path}: {exc}") from exc
        self._init_db()

    def _get_connection(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.db_path))
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = self._get_connection()
        except sqlite3.Error as exc:
            raise StoreError(f"Cannot open database {self.db_path}: {exc}") from exc
        try:
            yield conn
            conn.commit()
        except sqlite3.IntegrityError:
            conn.rollback()
            raise
        except sqlite3.Error as exc:
            conn.rollback()
            raise StoreError(str(exc)) from exc
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_db(self) -> None:
        try:
            with self._transaction() as conn:
                for statement in SCHEMA:
                    conn.execute(statement)
        except sqlite3.IntegrityError as exc:
            raise StoreError(str(exc)) from exc

    def _fetch_one(self, query: str, params: tuple) -> sqlite3.Row | None:
        try:
            with self._transaction() as conn:
                return conn.execute(query, params).fetchone()
        except sqlite3.IntegrityError as exc:
            raise StoreError(str(exc)) from exc

    def _insert_named(self, table: str, values: dict, reread) -> object:
        """Insert a uniquely-named row; on a name collision return the existing one."""
        columns = ", ".join(values)
        placeholders = ", ".join("?" for _ in values)
        try:
            with self._transaction() as conn:
                conn.execute(f"INSERT INTO {table} ({columns}) VALUES ({placeholders})", tuple(values.values()))
        except sqlite3.IntegrityError as exc:
            existing = reread()
            if existing is None:
                raise StoreError(str(exc)) from exc
            logger.debug("%s %r already exists, reusing it", table, values["name"])
            return existing
        return None

    # ── Named lookups ──────────────────────────────────────────────────────────

    def find_category(self, workspace_id: str, name: str) -> CategoryRecord | None:
        row = self._fetch_one(
            "SELECT * FROM categories WHERE workspace_id = ? AND name_key = ?",
            (workspace_id, name_key(name)),
        )
        return _category_from_row(row) if row else None

    def create_category(self, workspace_id: str, name: str, *, is_system: bool = False) -> CategoryRecord:
        record = CategoryRecord(id=new_id(), workspace_id=workspace_id, name=name, is_system=is_system)
        existing = self._insert_named(
            "categories",
            {
                "id": record.id,
                "workspace_id": workspace_id,
                "name": name,
                "name_key": name_key(name),
                "is_system": int(is_system),
            },
            lambda: self.find_category(workspace_id, name),
        )
        return existing or record

    def find_project(self, workspace_id: str, name: str) -> ProjectRecord | None:
        row = self._fetch_one(
            "SELECT * FROM projects WHERE workspace_id = ? AND name_key = ?",
            (workspace_id, name_key(name)),
        )
        return _project_from_row(row) if row else None

    def create_project(self, workspace_id: str, name: str) -> ProjectRecord:
        record = ProjectRecord(id=new_id(), workspace_id=workspace_id, name=name)
        existing = self._insert_named(
            "projects",
            {"id": record.id, "workspace_id": workspace_id, "name": name, "name_key": name_key(name)},
            lambda: self.find_project(workspace_id, name),
        )
        return existing or record

    def find_recurring_template(self, workspace_id: str, name: str) -> RecurringTemplateRecord | None:
        row = self._fetch_one(
            "SELECT * FROM recurring_templates WHERE workspace_id = ? AND name_key = ?",
            (workspace_id, name_key(name)),
        )
        return _template_from_row(row) if row else None

    def create_recurring_template(
        self,
        workspace_id: str,
        *,
        name: str,
        amount: Decimal,
        type: ExpenseType,
        category_id: str | None,
        frequency: str = "MONTHLY",
        is_active: bool = True,
    ) -> RecurringTemplateRecord:
        record = RecurringTemplateRecord(
            id=new_id(),
            workspace_id=workspace_id,
            name=name,
            amount=amount,
            type=type,
            category_id=category_id,
            frequency=frequency,
            is_active=is_active,
        )
        existing = self._insert_named(
            "recurring_templates",
            {
                "id": record.id,
                "workspace_id": workspace_id,
                "name": name,
                "name_key": name_key(name),
                "amount": str(amount),
                "type": type.value,
                "category_id": category_id,
                "frequency": frequency,
                "is_active": int(is_active),
            },
            lambda: self.find_recurring_template(workspace_id, name),
        )
        return existing or record

    # ── Import batches ─────────────────────────────────────────────────────────

    def create_import_batch(
        self,
        workspace_id: str,
        *,
        file_name: str,
        file_kind: str,
        total_rows: int,
        uploader_id: str | None,
    ) -> ImportBatchRecord:
        record = ImportBatchRecord(
            id=new_id(),
            workspace_id=workspace_id,
            file_name=file_name,
            file_kind=file_kind,
            total_rows=total_rows,
            imported_rows=0,
            uploader_id=uploader_id,
            created_at=utc_now_iso(),
        )
        try:
            with self._transaction() as conn:
                conn.execute(
                    """
                    INSERT INTO import_batches
                        (id, workspace_id, file_name, file_kind, total_rows, imported_rows, uploader_id, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        record.id,
                        record.workspace_id,
                        record.file_name,
                        record.file_kind,
                        record.total_rows,
                        record.imported_rows,
                        record.uploader_id,
                        record.created_at,
                    ),
                )
        except sqlite3.IntegrityError as exc:
            raise StoreError(str(exc)) from exc
        return record

    def update_import_batch(self, batch_id: str, *, imported_rows: int) -> None:
        try:
            with self._transaction() as conn:
                cursor = conn.execute(
                    "UPDATE import_batches SET imported_rows = ? WHERE id = ?",
                    (imported_rows, batch_id),
                )
                if cursor.rowcount == 0:
                    raise StoreError(f"Import batch not found: {batch_id}")
        except sqlite3.IntegrityError as exc:
            raise StoreError(str(exc)) from exc

    def insert_expenses(self, expenses: list[NewExpense]) -> int:
        rows = [
            (
                new_id(),
                expense.workspace_id,
                expense.batch_id,
                expense.category_id,
                expense.project_id,
                expense.name,
                expense.raw_input,
                expense.type.value,
                expense.status,
                str(expense.amount),
                expense.currency,
                str(expense.home_currency_amount),
                expense.expense_date.isoformat(),
            )
            for expense in expenses
        ]
        try:
            with self._transaction() as conn:
                conn.executemany(
                    """
                    INSERT INTO expenses
                        (id, workspace_id, batch_id, category_id, project_id, name, raw_input,
                         type, status, amount, currency, home_currency_amount, expense_date)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    rows,
                )
        except sqlite3.IntegrityError as exc:
            raise StoreError(str(exc)) from exc
        return len(rows)

    def get_import_batch(self, workspace_id: str, batch_id: str) -> ImportBatchRecord | None:
        row = self._fetch_one(
            "SELECT * FROM import_batches WHERE workspace_id = ? AND id = ?",
            (workspace_id, batch_id),
        )
        return _batch_from_row(row) if row else None

    def list_batch_expenses(self, workspace_id: str, batch_id: str) -> list[ExpenseRecord]:
        try:
            with self._transaction() as conn:
                rows = conn.execute(
                    "SELECT * FROM expenses WHERE workspace_id = ? AND batch_id = ? ORDER BY expense_date, rowid",
                    (workspace_id, batch_id),
                ).fetchall()
        except sqlite3.IntegrityError as exc:
            raise StoreError(str(exc)) from exc
        return [_expense_from_row(row) for row in rows]

    def delete_import_batch(self, workspace_id: str, batch_id: str) -> int:
        try:
            with self._transaction() as conn:
                batch = conn.execute(
                    "SELECT id FROM import_batches WHERE workspace_id = ? AND id = ?",
                    (workspace_id, batch_id),
                ).fetchone()
                if batch is None:
                    raise StoreError(f"Import batch not found: {batch_id}")
                deleted = conn.execute(
                    "DELETE FROM expenses WHERE workspace_id = ? AND batch_id = ?",
                    (workspace_id, batch_id),
                ).rowcount
                conn.execute("DELETE FROM import_batches WHERE id = ?", (batch_id,))
        except sqlite3.IntegrityError as exc:
            raise StoreError(str(exc)) from exc
        return deleted
