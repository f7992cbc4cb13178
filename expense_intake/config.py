"""
Configuration for imports, classification and storage.

All settings live here, loaded from a YAML file with environment overrides:
- EXPENSE_INTAKE_DB_PATH
- EXPENSE_INTAKE_HOME_CURRENCY
- EXPENSE_INTAKE_LOG_LEVEL
- EXPENSE_INTAKE_DEFAULT_CATEGORY

A missing config file is not an error; every field has a default.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from expense_intake.classifier import DEFAULT_KEYWORD_RULES, KeywordRules
from expense_intake.models import DEFAULT_COLUMN_MAPPING, ColumnMapping, ExpenseIntakeError, MappingError

DEFAULT_CONFIG_PATH = Path("expense-intake.yml")
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class ConfigError(ExpenseIntakeError):
    """Config file exists but cannot be read or parsed."""


@dataclass
class ImportSettings:
    default_category: str = "Uncategorized"
    home_currency: str = "EUR"
    max_reported_errors: int = 10
    default_mapping: dict[str, Any] = field(default_factory=DEFAULT_COLUMN_MAPPING.to_dict)

    def column_mapping(self) -> ColumnMapping:
        return ColumnMapping.from_dict(self.default_mapping)


@dataclass
class ClassificationSettings:
    """Keywords appended to the built-in lists."""

    extra_fixed_keywords: list[str] = field(default_factory=list)
    extra_variable_keywords: list[str] = field(default_factory=list)

    def keyword_rules(self) -> KeywordRules:
        return DEFAULT_KEYWORD_RULES.extended(
            variable=self.extra_variable_keywords,
            fixed=self.extra_fixed_keywords,
        )


@dataclass
class StorageSettings:
    db_path: Path = field(default_factory=lambda: Path("data/expenses.db"))


@dataclass
class LoggingSettings:
    level: str = "INFO"


@dataclass
class Config:
    imports: ImportSettings = field(default_factory=ImportSettings)
    classification: ClassificationSettings = field(default_factory=ClassificationSettings)
    storage: StorageSettings = field(default_factory=StorageSettings)
    logging: LoggingSettings = field(default_factory=LoggingSettings)

    def validate(self) -> list[str]:
        """Return a list of problems; empty when the config is usable."""
        errors: list[str] = []

        if not self.imports.default_category.strip():
            errors.append("imports.default_category must not be empty")
        if not self.imports.home_currency.strip():
            errors.append("imports.home_currency must not be empty")
        if self.imports.max_reported_errors < 1:
            errors.append("imports.max_reported_errors must be >= 1")
        try:
            self.imports.column_mapping()
        except MappingError as exc:
            errors.append(f"imports.default_mapping: {exc}")
        if self.logging.level.upper() not in LOG_LEVELS:
            errors.append(f"logging.level must be one of {', '.join(LOG_LEVELS)}")

        return errors


def _string_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    return [str(item) for item in value]


def _int_setting(section: dict[str, Any], key: str, default: int) -> int:
    value = section.get(key, default)
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{key} must be an integer, got {value!r}") from exc


def load_config(config_path: Path | str | None = None) -> Config:
    """Load configuration from YAML; environment variables win over the file."""
    path = Path(config_path) if config_path else DEFAULT_CONFIG_PATH
    if path.exists():
        try:
            with open(path, encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as exc:
            raise ConfigError(f"Cannot read config {path}: {exc}") from exc
        if not isinstance(data, dict):
            raise ConfigError(f"Config {path} must contain a mapping at the top level")
    else:
        data = {}

    imports_data = data.get("imports") or {}
    imports = ImportSettings(
        default_category=os.environ.get(
            "EXPENSE_INTAKE_DEFAULT_CATEGORY",
            imports_data.get("default_category", "Uncategorized"),
        ),
        home_currency=os.environ.get(
            "EXPENSE_INTAKE_HOME_CURRENCY",
            imports_data.get("home_currency", "EUR"),
        ),
        max_reported_errors=_int_setting(imports_data, "max_reported_errors", 10),
        default_mapping=imports_data.get("default_mapping") or DEFAULT_COLUMN_MAPPING.to_dict(),
    )

    classification_data = data.get("classification") or {}
    classification = ClassificationSettings(
        extra_fixed_keywords=_string_list(classification_data.get("extra_fixed_keywords")),
        extra_variable_keywords=_string_list(classification_data.get("extra_variable_keywords")),
    )

    storage_data = data.get("storage") or {}
    storage = StorageSettings(
        db_path=Path(os.environ.get("EXPENSE_INTAKE_DB_PATH", storage_data.get("db_path", "data/expenses.db"))),
    )

    logging_data = data.get("logging") or {}
    log_settings = LoggingSettings(
        level=os.environ.get("EXPENSE_INTAKE_LOG_LEVEL", logging_data.get("level", "INFO")).upper(),
    )

    return Config(
        imports=imports,
        classification=classification,
        storage=storage,
        logging=log_settings,
    )


DEFAULT_CONFIG_TEXT = """# expense-intake configuration

imports:
  default_category: "Uncategorized"   # Category every imported expense is filed under
  home_currency: "EUR"
  max_reported_errors: 10
  # Legacy three-column layout: date in B, name in C, amount in D, header on row 2
  default_mapping:
    date_column: 2
    name_column: 3
    amount_column: 4
    header_row: 2
    sheets_to_import: []               # Empty imports every sheet
    project_sheets: ["casa"]

classification:
  extra_fixed_keywords: []             # e.g. ["ginasio do bairro"]
  extra_variable_keywords: []          # e.g. ["iberdrola"]

storage:
  db_path: "data/expenses.db"

logging:
  level: INFO
"""


def create_default_config(config_path: Path) -> None:
    """Write the starter configuration file."""
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with open(config_path, "w", encoding="utf-8") as f:
        f.write(DEFAULT_CONFIG_TEXT)


def setup_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
