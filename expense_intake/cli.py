from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any

from expense_intake import __version__ as TOOL_VERSION
from expense_intake.column_mapping import PreviewResult, preview_file
from expense_intake.config import (
    DEFAULT_CONFIG_PATH,
    Config,
    ConfigError,
    create_default_config,
    load_config,
    setup_logging,
)
from expense_intake.contracts import import_payload, preview_payload, undo_payload
from expense_intake.importer import ImportRequest, import_expenses, undo_import
from expense_intake.loader import ALL_KINDS, normalize_file_kind
from expense_intake.models import ImportBatchResult, ImportOutcome
from expense_intake.storage import ExpenseStore, InMemoryExpenseStore, SqliteExpenseStore, StoreError

logger = logging.getLogger(__name__)

EXIT_SUCCESS = 0
EXIT_COMMAND_ERROR = 1
EXIT_FORMAT_ERROR = 2
EXIT_MAPPING_ERROR = 3
EXIT_EMPTY_RESULT = 4
EXIT_PERSISTENCE_ERROR = 5

OUTCOME_EXIT_CODES = {
    ImportOutcome.SUCCESS: EXIT_SUCCESS,
    ImportOutcome.FORMAT_ERROR: EXIT_FORMAT_ERROR,
    ImportOutcome.MAPPING_ERROR: EXIT_MAPPING_ERROR,
    ImportOutcome.EMPTY_RESULT: EXIT_EMPTY_RESULT,
    ImportOutcome.PERSISTENCE_ERROR: EXIT_PERSISTENCE_ERROR,
}


class CliError(Exception):
    def __init__(self, message: str, code: int = EXIT_COMMAND_ERROR) -> None:
        super().__init__(message)
        self.code = code


class ExpenseIntakeArgumentParser(argparse.ArgumentParser):
    def error(self, message: str) -> None:
        raise CliError(message, EXIT_COMMAND_ERROR)


def eprint(message: str) -> None:
    print(message, file=sys.stderr)


def emit_human(message: str, *, quiet: bool = False) -> None:
    if not quiet:
        eprint(message)


def json_dumps(payload: Any) -> str:
    return json.dumps(payload, indent=2, ensure_ascii=False, sort_keys=True, default=str)


def maybe_emit_json_stdout(payload: Any, enabled: bool) -> None:
    if enabled:
        print(json_dumps(payload))


def configure_logging(args: argparse.Namespace, config: Config) -> None:
    if getattr(args, "verbose", False):
        level = "DEBUG"
    elif getattr(args, "quiet", False):
        level = "WARNING"
    else:
        level = config.logging.level
    setup_logging(level)


def load_cli_config(args: argparse.Namespace) -> Config:
    try:
        config = load_config(getattr(args, "config", None))
    except ConfigError as exc:
        raise CliError(str(exc), EXIT_COMMAND_ERROR) from exc
    problems = config.validate()
    if problems:
        raise CliError("Invalid configuration:\n  " + "\n  ".join(problems), EXIT_COMMAND_ERROR)
    return config


def read_input(path_value: str) -> tuple[Path, bytes, str]:
    input_path = Path(path_value)
    if not input_path.exists():
        raise CliError(f"File not found: {input_path}", EXIT_COMMAND_ERROR)
    file_kind = normalize_file_kind(input_path.suffix)
    if file_kind not in ALL_KINDS:
        raise CliError(
            f"Unsupported file type '{input_path.suffix or '[missing extension]'}'. "
            f"Supported: {', '.join('.' + kind for kind in sorted(ALL_KINDS))}",
            EXIT_COMMAND_ERROR,
        )
    return input_path, input_path.read_bytes(), file_kind


def load_mapping_file(path_value: str | None) -> dict[str, Any] | None:
    if not path_value:
        return None
    mapping_path = Path(path_value)
    if not mapping_path.exists():
        raise CliError(f"Mapping file not found: {mapping_path}", EXIT_COMMAND_ERROR)
    try:
        return json.loads(mapping_path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise CliError(f"Could not read mapping {mapping_path}: {exc}", EXIT_MAPPING_ERROR) from exc


def open_store(config: Config, *, dry_run: bool = False) -> ExpenseStore:
    if dry_run:
        return InMemoryExpenseStore()
    try:
        return SqliteExpenseStore(config.storage.db_path)
    except StoreError as exc:
        raise CliError(str(exc), EXIT_PERSISTENCE_ERROR) from exc


# ══════════════════════════════════════════════════════════════════════════════
# RENDERING
# ══════════════════════════════════════════════════════════════════════════════

def render_preview_text(input_path: Path, result: PreviewResult) -> str:
    suggestion = result.suggested_mapping
    lines = [
        "expense-intake preview",
        f"File: {input_path}",
        f"Sheets: {len(result.sheets)}",
        f"Suggested header row: {suggestion['header_row']}",
        f"Suggested columns: date={suggestion['date_column']} "
        f"name={suggestion['name_column']} amount={suggestion['amount_column']}",
        f"Mixed signs in amount column: {'yes' if result.has_mixed_values else 'no'}",
    ]
    for sheet in result.sheets:
        header_text = ", ".join(f"{h['column']}:{h['value']}" for h in sheet.headers) or "[none]"
        lines.append(f"  - {sheet.name} ({sheet.row_count} rows) headers: {header_text}")
    return "\n".join(lines) + "\n"


def render_import_text(input_path: Path, result: ImportBatchResult, *, dry_run: bool) -> str:
    stats = result.stats
    lines = [
        "expense-intake import" + (" (dry run)" if dry_run else ""),
        f"File: {input_path}",
        f"Outcome: {result.outcome.value}",
        f"Imported: {result.imported_count}",
        f"Failed: {result.failed_count}",
        f"Sources: {', '.join(result.sources_processed) or '[none]'}",
        f"Types: fixed={stats.survival_fixed} variable={stats.survival_variable} "
        f"lifestyle={stats.lifestyle} project={stats.project}",
        f"Recurring candidates: {len(result.recurring_candidates)} "
        f"({result.recurring_templates_created} templates created)",
    ]
    if result.batch_id and not dry_run:
        lines.append(f"Batch: {result.batch_id}")
    return "\n".join(lines) + "\n"


# ══════════════════════════════════════════════════════════════════════════════
# PARSER
# ══════════════════════════════════════════════════════════════════════════════

def add_common_flags(subparser: argparse.ArgumentParser) -> None:
    subparser.add_argument("--config", help=f"Config file path (default: {DEFAULT_CONFIG_PATH})")
    subparser.add_argument("-q", "--quiet", action="store_true", help="Minimal human logs")
    subparser.add_argument("-v", "--verbose", action="store_true", help="More human logs")


def build_parser() -> argparse.ArgumentParser:
    parser = ExpenseIntakeArgumentParser(
        prog="expense-intake",
        description="Import and classify expenses from spreadsheets, CSV files and bank statements.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    preview = subparsers.add_parser("preview", help="Suggest a column mapping for a file.")
    preview.add_argument("input", help="Input file path")
    preview.add_argument("--json", action="store_true", help="Write machine JSON to stdout")
    add_common_flags(preview)

    import_cmd = subparsers.add_parser("import", help="Import a file into a workspace.")
    import_cmd.add_argument("input", help="Input file path")
    import_cmd.add_argument("--workspace", required=True, help="Workspace id")
    import_cmd.add_argument("--uploader", help="Uploader id recorded on the batch")
    import_cmd.add_argument("--mapping", help="Column mapping JSON file")
    import_cmd.add_argument("--dry-run", action="store_true", help="Parse and classify without writing to the database")
    import_cmd.add_argument("--json", action="store_true", help="Write machine JSON to stdout")
    add_common_flags(import_cmd)

    undo = subparsers.add_parser("undo", help="Delete an import batch and its expenses.")
    undo.add_argument("batch_id", help="Import batch id")
    undo.add_argument("--workspace", required=True, help="Workspace id")
    undo.add_argument("--json", action="store_true", help="Write machine JSON to stdout")
    add_common_flags(undo)

    config = subparsers.add_parser("config", help="Generate configuration.")
    config_subparsers = config.add_subparsers(dest="config_command", required=True)
    config_init = config_subparsers.add_parser("init", help="Write a starter config file.")
    config_init.add_argument("--path", default=str(DEFAULT_CONFIG_PATH), help="Config output path")

    subparsers.add_parser("version", help="Print version")
    return parser


# ══════════════════════════════════════════════════════════════════════════════
# COMMANDS
# ══════════════════════════════════════════════════════════════════════════════

def run_preview(args: argparse.Namespace) -> int:
    config = load_cli_config(args)
    configure_logging(args, config)
    input_path, payload, file_kind = read_input(args.input)

    result = preview_file(payload, file_kind)
    if args.json:
        maybe_emit_json_stdout(preview_payload(result, input_path), True)
    elif result.success:
        emit_human(render_preview_text(input_path, result).rstrip(), quiet=args.quiet)

    if not result.success:
        eprint(result.error or "Preview failed")
        return EXIT_FORMAT_ERROR
    return EXIT_SUCCESS


def run_import(args: argparse.Namespace) -> int:
    config = load_cli_config(args)
    configure_logging(args, config)
    input_path, payload, file_kind = read_input(args.input)
    mapping = load_mapping_file(args.mapping)
    store = open_store(config, dry_run=args.dry_run)

    result = import_expenses(
        ImportRequest(
            payload=payload,
            file_kind=file_kind,
            workspace_id=args.workspace,
            uploader_id=args.uploader,
            file_name=input_path.name,
            mapping=mapping,
        ),
        store,
        config,
    )

    if args.json:
        maybe_emit_json_stdout(import_payload(result, input_path, dry_run=args.dry_run), True)
    else:
        emit_human(render_import_text(input_path, result, dry_run=args.dry_run).rstrip(), quiet=args.quiet)

    if not result.success:
        for error in result.errors:
            eprint(error)
    return OUTCOME_EXIT_CODES[result.outcome]


def run_undo(args: argparse.Namespace) -> int:
    config = load_cli_config(args)
    configure_logging(args, config)
    store = open_store(config)
    try:
        removed = undo_import(store, args.workspace, args.batch_id)
    except StoreError as exc:
        raise CliError(str(exc), EXIT_PERSISTENCE_ERROR) from exc

    if args.json:
        maybe_emit_json_stdout(undo_payload(args.workspace, args.batch_id, removed), True)
    else:
        emit_human(f"Batch {args.batch_id} removed ({removed} expenses)", quiet=args.quiet)
    return EXIT_SUCCESS


def run_config_init(args: argparse.Namespace) -> int:
    config_path = Path(args.path)
    if config_path.exists():
        eprint(f"Refusing to overwrite existing config: {config_path}")
        return EXIT_COMMAND_ERROR
    create_default_config(config_path)
    emit_human(f"Config written: {config_path}")
    return EXIT_SUCCESS


def run_version() -> int:
    print(TOOL_VERSION)
    return EXIT_SUCCESS


def main(argv: list[str] | None = None) -> int:
    try:
        parser = build_parser()
        args = parser.parse_args(argv)
        if args.command == "preview":
            return run_preview(args)
        if args.command == "import":
            return run_import(args)
        if args.command == "undo":
            return run_undo(args)
        if args.command == "config":
            if args.config_command == "init":
                return run_config_init(args)
        if args.command == "version":
            return run_version()
        raise CliError(f"Unknown command: {args.command}", EXIT_COMMAND_ERROR)
    except CliError as exc:
        eprint(str(exc))
        return exc.code


if __name__ == "__main__":
    raise SystemExit(main())
