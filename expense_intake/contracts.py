"""
contracts.py — versioned JSON payloads emitted by `expense-intake --json`

Each payload carries a `contract` block naming its shape and a `run_summary`
describing the run. Bump the version when a field is removed or renamed.
"""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from expense_intake.column_mapping import PreviewResult
    from expense_intake.models import ImportBatchResult

TOOL_NAME = "expense-intake"

CONTRACT_VERSIONS = {
    "expense_intake.preview": "1.0.0",
    "expense_intake.import_result": "1.1.0",
    "expense_intake.undo_result": "1.0.0",
}


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def build_contract(name: str) -> dict[str, str]:
    return {"name": name, "version": CONTRACT_VERSIONS[name]}


def build_run_summary(
    command: str,
    input_path: Path | None,
    *,
    status: str,
    metrics: dict[str, Any] | None = None,
    warnings: list[str] | None = None,
) -> dict[str, Any]:
    return {
        "tool": TOOL_NAME,
        "command": command,
        "status": status,
        "generated_at": utc_now_iso(),
        "input_file": str(input_path) if input_path else None,
        "warnings": list(warnings or []),
        "metrics": metrics or {},
    }


def preview_payload(result: PreviewResult, input_path: Path) -> dict[str, Any]:
    body = result.to_dict()
    body["contract"] = build_contract("expense_intake.preview")
    body["run_summary"] = build_run_summary(
        "preview",
        input_path,
        status="ok" if result.success else "failed",
        metrics={
            "sheets": len(result.sheets),
            "rows": sum(sheet.row_count for sheet in result.sheets),
            "has_mixed_values": result.has_mixed_values,
        },
    )
    return body


def import_payload(result: ImportBatchResult, input_path: Path, *, dry_run: bool) -> dict[str, Any]:
    """
    The import result plus its run summary.

    On success the result's messages are warnings; on failure they are the
    reason, so the summary status is the outcome itself.
    """
    body = result.to_dict()
    body["dry_run"] = dry_run
    body["contract"] = build_contract("expense_intake.import_result")
    summary = build_run_summary(
        "import",
        input_path,
        status=result.outcome.value,
        metrics={
            "imported": result.imported_count,
            "failed": result.failed_count,
            "sheets": len(result.sources_processed),
            "recurring_candidates": len(result.recurring_candidates),
            "recurring_templates_created": result.recurring_templates_created,
        },
        warnings=result.errors if result.success else None,
    )
    # persisted=False tells callers there is nothing to undo
    summary["batch_id"] = result.batch_id
    summary["persisted"] = result.batch_id is not None and not dry_run
    body["run_summary"] = summary
    return body


def undo_payload(workspace_id: str, batch_id: str, removed: int) -> dict[str, Any]:
    return {
        "contract": build_contract("expense_intake.undo_result"),
        "batch_id": batch_id,
        "workspace_id": workspace_id,
        "expenses_removed": removed,
        "run_summary": build_run_summary("undo", None, status="ok", metrics={"expenses_removed": removed}),
    }
