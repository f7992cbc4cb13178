import io
import tempfile
import unittest
import zipfile
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path
from unittest import mock

from openpyxl import Workbook

from expense_intake import importer
from expense_intake.config import Config
from expense_intake.importer import ImportRequest, import_expenses, undo_import
from expense_intake.models import ExpenseType, ImportOutcome
from expense_intake.storage import InMemoryExpenseStore, SqliteExpenseStore, StoreError

NOW = datetime(2026, 1, 15, 9, 30)


def workbook_bytes(sheets: dict) -> bytes:
    wb = Workbook()
    wb.remove(wb.active)
    for title, rows in sheets.items():
        ws = wb.create_sheet(title)
        for row in rows:
            ws.append(row)
    buffer = io.BytesIO()
    wb.save(buffer)
    return buffer.getvalue()


def truncate_first_sheet(payload: bytes) -> bytes:
    """Keep the zip container valid but cut the first worksheet XML short."""
    source = zipfile.ZipFile(io.BytesIO(payload))
    out = io.BytesIO()
    with zipfile.ZipFile(out, "w") as target:
        for item in source.infolist():
            data = source.read(item.filename)
            if item.filename == "xl/worksheets/sheet1.xml":
                data = b"<worksheet><sheetData><row><c"
            target.writestr(item, data)
    return out.getvalue()


def legacy_workbook() -> bytes:
    """Default layout: title row, header on row 2, columns B/C/D."""
    return workbook_bytes({
        "Dezembro 2025": [
            ["Gastos"],
            [None, "Data", "Tipo", "Valor"],
            [None, None, "Netflix", 9.99],
            [None, None, "Conta da luz EDP", "45,30"],
            [None, datetime(2025, 12, 10), "Supermercado", "54,00"],
            [None, None, "Cafe", 2.1],
            [None, None, "TOTAL", 111.39],
        ],
        "Janeiro 2026": [
            [None],
            [None, "Data", "Tipo", "Valor"],
            [None, None, "netflix ", 9.99],
            [None, None, "Renda", 700],
        ],
        "casa": [
            [None],
            [None, "Data", "Tipo", "Valor"],
            [None, datetime(2025, 11, 2), "Tinta", 30],
            [None, None, "Pincel", 5],
        ],
    })


class ImportWorkbookTests(unittest.TestCase):
    def setUp(self):
        self.store = InMemoryExpenseStore()

    def run_import(self, payload: bytes, file_kind: str = "xlsx", mapping=None, config=None):
        return import_expenses(
            ImportRequest(
                payload=payload,
                file_kind=file_kind,
                workspace_id="ws",
                uploader_id="user-1",
                file_name=f"upload.{file_kind}",
                mapping=mapping,
            ),
            self.store,
            config,
            now=NOW,
        )

    def test_default_mapping_end_to_end(self):
        result = self.run_import(legacy_workbook())

        self.assertTrue(result.success)
        self.assertEqual(result.outcome, ImportOutcome.SUCCESS)
        self.assertEqual(result.imported_count, 8)
        self.assertEqual(result.failed_count, 0)
        self.assertEqual(result.errors, [])
        self.assertEqual(result.sources_processed, ["Dezembro 2025", "Janeiro 2026", "casa"])
        self.assertEqual(
            result.stats.to_dict(),
            {"survival_fixed": 3, "survival_variable": 1, "lifestyle": 2, "project": 2},
        )
        self.assertEqual(
            [(c.name, c.type) for c in result.recurring_candidates],
            [
                ("Netflix", ExpenseType.SURVIVAL_FIXED),
                ("Conta da luz EDP", ExpenseType.SURVIVAL_VARIABLE),
                ("Renda", ExpenseType.SURVIVAL_FIXED),
            ],
        )
        self.assertEqual(result.recurring_templates_created, 3)

        batch = self.store.get_import_batch("ws", result.batch_id)
        self.assertEqual(batch.total_rows, 8)
        self.assertEqual(batch.imported_rows, 8)
        self.assertEqual(batch.file_kind, "xlsx")
        self.assertEqual(batch.uploader_id, "user-1")

        category = self.store.find_category("ws", "Uncategorized")
        self.assertTrue(category.is_system)
        project = self.store.find_project("ws", "casa")
        self.assertEqual(project.name, "Casa")

        expenses = {e.name: e for e in self.store.list_batch_expenses("ws", result.batch_id)}
        self.assertEqual(expenses["Netflix"].expense_date, date(2025, 12, 1))
        self.assertEqual(expenses["Cafe"].expense_date, date(2025, 12, 10))
        self.assertEqual(expenses["Cafe"].type, ExpenseType.LIFESTYLE)
        self.assertEqual(expenses["Renda"].expense_date, date(2026, 1, 1))
        self.assertEqual(expenses["Pincel"].expense_date, date(2025, 11, 2))
        self.assertEqual(expenses["Pincel"].project_id, project.id)
        self.assertIsNone(expenses["Cafe"].project_id)
        self.assertEqual(expenses["Conta da luz EDP"].amount, Decimal("45.30"))
        self.assertEqual(expenses["Conta da luz EDP"].home_currency_amount, Decimal("45.30"))
        self.assertEqual(expenses["Conta da luz EDP"].currency, "EUR")
        self.assertEqual(expenses["Conta da luz EDP"].status, "PAID")
        self.assertEqual(expenses["Conta da luz EDP"].raw_input, "[Dezembro 2025] Conta da luz EDP: 45.30")
        self.assertTrue(all(e.category_id == category.id for e in expenses.values()))

    def test_existing_templates_and_entities_are_reused(self):
        self.store.create_recurring_template(
            "ws", name="NETFLIX", amount=Decimal("7.99"), type=ExpenseType.SURVIVAL_FIXED, category_id=None
        )
        existing_project = self.store.create_project("ws", "CASA")

        result = self.run_import(legacy_workbook())
        self.assertEqual(result.recurring_templates_created, 2)
        self.assertEqual(len(self.store.projects), 1)
        self.assertEqual(self.store.find_project("ws", "casa").id, existing_project.id)

        second = self.run_import(legacy_workbook())
        self.assertEqual(second.recurring_templates_created, 0)
        self.assertEqual(len(self.store.categories), 1)
        self.assertNotEqual(second.batch_id, result.batch_id)

    def test_sheets_to_import_skips_unselected_project_sheet(self):
        payload = workbook_bytes({
            "December 2025": [["Data", "Nome", "Valor"], ["10/12/2025", "Cafe", "2,00"]],
            "Renovation": [["Data", "Nome", "Valor"], ["11/12/2025", "Tinta", "30,00"]],
        })
        result = self.run_import(
            payload,
            mapping={
                "dateColumn": 1,
                "nameColumn": 2,
                "amountColumn": 3,
                "headerRow": 1,
                "sheetsToImport": ["December 2025"],
                "projectSheets": ["Renovation"],
            },
        )
        self.assertTrue(result.success)
        self.assertEqual(result.sources_processed, ["December 2025"])
        self.assertEqual(result.stats.project, 0)
        self.assertEqual(result.imported_count, 1)

    def test_wrong_mapping_yields_empty_result_and_persists_nothing(self):
        result = self.run_import(
            legacy_workbook(),
            mapping={"date_column": 7, "name_column": 8, "amount_column": 9},
        )
        self.assertFalse(result.success)
        self.assertEqual(result.outcome, ImportOutcome.EMPTY_RESULT)
        self.assertEqual(result.imported_count, 0)
        self.assertIn("check your column mapping", result.errors[0])
        self.assertEqual(result.sources_processed, ["Dezembro 2025", "Janeiro 2026", "casa"])
        self.assertEqual(self.store.categories, {})
        self.assertEqual(self.store.projects, {})
        self.assertEqual(self.store.templates, {})
        self.assertEqual(self.store.batches, {})

    def test_malformed_mapping_is_rejected_before_parsing(self):
        with mock.patch.object(importer, "load_source") as load:
            result = self.run_import(b"irrelevant", mapping={"name_column": "B", "amount_column": 3})
        load.assert_not_called()
        self.assertEqual(result.outcome, ImportOutcome.MAPPING_ERROR)
        self.assertIn("name_column", result.errors[0])

    def test_unreadable_payload_is_a_format_error(self):
        result = self.run_import(b"\x00\x01garbage", file_kind=".XLS")
        self.assertEqual(result.outcome, ImportOutcome.FORMAT_ERROR)
        self.assertEqual(result.errors, ["Failed to read .xls file. The file may be corrupted or in an unsupported format."])
        self.assertEqual(result.stats.to_dict(), {"survival_fixed": 0, "survival_variable": 0, "lifestyle": 0, "project": 0})
        self.assertEqual(self.store.batches, {})

    def test_truncated_sheet_xml_is_a_format_error(self):
        result = self.run_import(truncate_first_sheet(legacy_workbook()))
        self.assertEqual(result.outcome, ImportOutcome.FORMAT_ERROR)
        self.assertTrue(result.errors[0].startswith("Could not read workbook"))
        self.assertEqual(self.store.batches, {})
        self.assertEqual(self.store.categories, {})

    def test_configured_defaults_apply(self):
        config = Config()
        config.imports.default_category = "Importado"
        config.imports.home_currency = "BRL"
        config.imports.default_mapping = {"date_column": None, "name_column": 1, "amount_column": 2, "header_row": 1}
        config.classification.extra_variable_keywords = ["iberdrola"]
        payload = workbook_bytes({"Sheet": [["Nome", "Valor"], ["Iberdrola", 50]]})

        result = self.run_import(payload, config=config)
        self.assertEqual(result.stats.survival_variable, 1)
        category = self.store.find_category("ws", "importado")
        expense = self.store.list_batch_expenses("ws", result.batch_id)[0]
        self.assertEqual(expense.category_id, category.id)
        self.assertEqual(expense.currency, "BRL")
        self.assertEqual(expense.expense_date, NOW.date())


class ImportDelimitedAndStatementTests(unittest.TestCase):
    def setUp(self):
        self.store = InMemoryExpenseStore()

    def test_semicolon_csv(self):
        payload = (
            "Data;Descricao;Valor\n"
            "02/01/2024;\"Jantar; amigos\";35,00\n"
            ";Padaria;3,10\n"
        ).encode("utf-8")
        result = import_expenses(
            ImportRequest(
                payload=payload,
                file_kind="csv",
                workspace_id="ws",
                file_name="extrato.csv",
                mapping={"date_column": 1, "name_column": 2, "amount_column": 3, "header_row": 1},
            ),
            self.store,
            now=NOW,
        )
        self.assertTrue(result.success)
        self.assertEqual(result.sources_processed, ["Sheet1"])
        self.assertEqual(result.stats.lifestyle, 2)
        expenses = self.store.list_batch_expenses("ws", result.batch_id)
        self.assertEqual(sorted(e.name for e in expenses), ["Jantar; amigos", "Padaria"])
        self.assertTrue(all(e.expense_date == date(2024, 1, 2) for e in expenses))

    def test_blank_csv_is_an_empty_result(self):
        result = import_expenses(
            ImportRequest(payload=b"  \n\n", file_kind="csv", workspace_id="ws", file_name="vazio.csv"),
            self.store,
            now=NOW,
        )
        self.assertEqual(result.outcome, ImportOutcome.EMPTY_RESULT)
        self.assertEqual(result.errors, ["No valid expense rows found. Please check your column mapping."])
        self.assertEqual(self.store.batches, {})

    def test_pdf_statement(self):
        text = "02/01/2024 COMPRA CONTINENTE -45,30 €\nSaldo final 100,00\n"
        with mock.patch("expense_intake.loader.extract_pdf_text", return_value=text):
            result = import_expenses(
                ImportRequest(payload=b"%PDF", file_kind="pdf", workspace_id="ws", file_name="extrato.pdf"),
                self.store,
                now=NOW,
            )
        self.assertTrue(result.success)
        self.assertEqual(result.sources_processed, ["PDF"])
        self.assertEqual(result.stats.lifestyle, 1)
        self.assertEqual(result.recurring_candidates, [])
        self.assertEqual(result.recurring_templates_created, 0)
        self.assertEqual(self.store.projects, {})
        self.assertEqual(self.store.get_import_batch("ws", result.batch_id).file_kind, "pdf")

    def test_pdf_without_transactions_suggests_export(self):
        with mock.patch("expense_intake.loader.extract_pdf_text", return_value="Extrato\nSaldo 10,00"):
            result = import_expenses(
                ImportRequest(payload=b"%PDF", file_kind="pdf", workspace_id="ws"),
                self.store,
                now=NOW,
            )
        self.assertEqual(result.outcome, ImportOutcome.EMPTY_RESULT)
        self.assertIn("CSV or Excel", result.errors[0])


class PersistenceFailureTests(unittest.TestCase):
    def test_store_failure_after_parsing_reports_partial_counts(self):
        store = InMemoryExpenseStore()
        with mock.patch.object(store, "insert_expenses", side_effect=StoreError("disk full")):
            result = import_expenses(
                ImportRequest(payload=legacy_workbook(), file_kind="xlsx", workspace_id="ws"),
                store,
                now=NOW,
            )
        self.assertFalse(result.success)
        self.assertEqual(result.outcome, ImportOutcome.PERSISTENCE_ERROR)
        self.assertEqual(result.errors, ["disk full"])
        self.assertEqual(result.imported_count, 0)
        self.assertEqual(result.failed_count, 8)
        self.assertIsNotNone(result.batch_id)
        # Entities created before the failure stay in place.
        self.assertEqual(len(store.categories), 1)
        self.assertEqual(len(store.projects), 1)
        self.assertEqual(len(store.batches), 1)
        self.assertEqual(store.templates, {})


class UndoImportTests(unittest.TestCase):
    def test_undo_removes_batch_and_expenses_but_keeps_templates(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            store = SqliteExpenseStore(Path(tmpdir) / "expenses.db")
            result = import_expenses(
                ImportRequest(payload=legacy_workbook(), file_kind="xlsx", workspace_id="ws", file_name="x.xlsx"),
                store,
                now=NOW,
            )
            self.assertTrue(result.success)

            removed = undo_import(store, "ws", result.batch_id)
            self.assertEqual(removed, 8)
            self.assertIsNone(store.get_import_batch("ws", result.batch_id))
            self.assertIsNotNone(store.find_recurring_template("ws", "Renda"))
            self.assertIsNotNone(store.find_project("ws", "Casa"))

            with self.assertRaises(StoreError):
                undo_import(store, "ws", result.batch_id)

    def test_undo_is_scoped_to_workspace(self):
        store = InMemoryExpenseStore()
        result = import_expenses(
            ImportRequest(payload=legacy_workbook(), file_kind="xlsx", workspace_id="ws"),
            store,
            now=NOW,
        )
        with self.assertRaises(StoreError):
            undo_import(store, "someone-else", result.batch_id)
        self.assertIsNotNone(store.get_import_batch("ws", result.batch_id))


if __name__ == "__main__":
    unittest.main()
