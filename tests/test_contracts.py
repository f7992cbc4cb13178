from __future__ import annotations

import json
import unittest
from decimal import Decimal
from pathlib import Path

from expense_intake.contracts import (
    CONTRACT_VERSIONS,
    build_contract,
    build_run_summary,
    import_payload,
    undo_payload,
)
from expense_intake.models import (
    ExpenseType,
    ImportBatchResult,
    ImportOutcome,
    ImportStats,
    RecurringCandidate,
)


class ContractTests(unittest.TestCase):
    def test_every_contract_is_versioned(self):
        for name in CONTRACT_VERSIONS:
            contract = build_contract(name)
            self.assertEqual(contract["name"], name)
            self.assertRegex(contract["version"], r"^\d+\.\d+\.\d+$")

    def test_unknown_contract_raises(self):
        with self.assertRaises(KeyError):
            build_contract("expense_intake.unknown")

    def test_run_summary_shape(self):
        summary = build_run_summary(
            "import",
            Path("jan.xlsx"),
            status="success",
            metrics={"imported": 3},
            warnings=["one"],
        )
        self.assertEqual(summary["tool"], "expense-intake")
        self.assertEqual(summary["input_file"], "jan.xlsx")
        self.assertEqual(summary["warnings"], ["one"])
        self.assertEqual(summary["metrics"], {"imported": 3})
        self.assertTrue(summary["generated_at"].endswith("Z"))


class ImportResultPayloadTests(unittest.TestCase):
    def test_success_payload_is_json_ready(self):
        stats = ImportStats()
        stats.record(ExpenseType.SURVIVAL_FIXED)
        stats.record(ExpenseType.LIFESTYLE)
        result = ImportBatchResult(
            outcome=ImportOutcome.SUCCESS,
            imported_count=2,
            stats=stats,
            sources_processed=["Dezembro 2025"],
            recurring_candidates=[RecurringCandidate("Netflix", Decimal("9.99"), ExpenseType.SURVIVAL_FIXED)],
            recurring_templates_created=1,
            batch_id="abc",
        )
        payload = json.loads(json.dumps(result.to_dict()))
        self.assertTrue(payload["success"])
        self.assertEqual(payload["outcome"], "success")
        self.assertEqual(payload["stats"], {"survival_fixed": 1, "survival_variable": 0, "lifestyle": 1, "project": 0})
        self.assertEqual(payload["recurring_candidates"], [{"name": "Netflix", "amount": "9.99", "type": "SURVIVAL_FIXED"}])

    def test_failure_payload(self):
        result = ImportBatchResult.failure(ImportOutcome.EMPTY_RESULT, "nothing here", sources_processed=["S"])
        payload = result.to_dict()
        self.assertFalse(payload["success"])
        self.assertEqual(payload["errors"], ["nothing here"])
        self.assertEqual(payload["imported_count"], 0)
        self.assertEqual(payload["sources_processed"], ["S"])
        self.assertIsNone(payload["batch_id"])


class CliPayloadTests(unittest.TestCase):
    def test_import_payload_folds_outcome_and_batch(self):
        result = ImportBatchResult(
            outcome=ImportOutcome.SUCCESS,
            imported_count=4,
            sources_processed=["Janeiro 2025", "Casa"],
            recurring_templates_created=2,
            batch_id="batch-1",
        )
        body = import_payload(result, Path("jan.xlsx"), dry_run=False)
        summary = body["run_summary"]
        self.assertEqual(body["contract"]["name"], "expense_intake.import_result")
        self.assertFalse(body["dry_run"])
        self.assertEqual(summary["status"], "success")
        self.assertEqual(summary["batch_id"], "batch-1")
        self.assertTrue(summary["persisted"])
        self.assertEqual(summary["metrics"]["sheets"], 2)
        self.assertEqual(summary["metrics"]["recurring_templates_created"], 2)

    def test_failed_or_dry_import_is_not_persisted(self):
        failed = ImportBatchResult.failure(ImportOutcome.MAPPING_ERROR, "Invalid column mapping: bad")
        summary = import_payload(failed, Path("x.csv"), dry_run=False)["run_summary"]
        self.assertEqual(summary["status"], "mapping_error")
        self.assertEqual(summary["warnings"], [])
        self.assertFalse(summary["persisted"])

        dry = ImportBatchResult(outcome=ImportOutcome.SUCCESS, imported_count=1, batch_id="b")
        self.assertFalse(import_payload(dry, Path("x.csv"), dry_run=True)["run_summary"]["persisted"])

    def test_undo_payload(self):
        body = undo_payload("ws", "batch-1", 3)
        self.assertEqual(body["contract"]["name"], "expense_intake.undo_result")
        self.assertEqual(body["expenses_removed"], 3)
        self.assertEqual(body["run_summary"]["command"], "undo")
        self.assertIsNone(body["run_summary"]["input_file"])


if __name__ == "__main__":
    unittest.main()
