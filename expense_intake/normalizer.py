"""
normalizer.py — locale-tolerant cell parsing

Every function here is best-effort: an unparseable value comes back as None
and the caller decides what absence means (a skipped row for amounts, a
missing date for dates). Nothing in this module raises on bad input.

Public API:
    parse_amount(raw)            -> Decimal > 0, or None
    parse_signed_amount(raw)     -> Decimal with sign kept, or None
    parse_date(raw)              -> date, or None
    parse_sheet_date(sheet_name) -> first day of the named month, or None
"""

from __future__ import annotations

import math
import re
from datetime import date, datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any

import pandas as pd

EXCEL_EPOCH = datetime(1899, 12, 30)

CURRENCY_STRIP_RE = re.compile(r"R\$|[€$£¥₹\s]")
LEADING_NUMBER_RE = re.compile(r"^[+-]?(?:\d+(?:\.\d*)?|\.\d+)")
DMY_RE = re.compile(r"^(\d{1,2})[/-](\d{1,2})[/-](\d{4}|\d{2})$")
# the generic fallback needs an explicit year
YEAR_TOKEN_RE = re.compile(r"(?<!\d)\d{4}(?!\d)")
SHEET_MONTH_RE = re.compile(r"(\w+)\s+(\d{4})")

# Portuguese and English month names and abbreviations.
MONTH_NAMES = {
    "janeiro": 1, "january": 1, "jan": 1,
    "fevereiro": 2, "february": 2, "feb": 2, "fev": 2,
    "março": 3, "marco": 3, "march": 3, "mar": 3,
    "abril": 4, "april": 4, "apr": 4, "abr": 4,
    "maio": 5, "may": 5, "mai": 5,
    "junho": 6, "june": 6, "jun": 6,
    "julho": 7, "july": 7, "jul": 7,
    "agosto": 8, "august": 8, "aug": 8, "ago": 8,
    "setembro": 9, "september": 9, "sep": 9, "sept": 9, "set": 9,
    "outubro": 10, "october": 10, "oct": 10, "out": 10,
    "novembro": 11, "november": 11, "nov": 11,
    "dezembro": 12, "december": 12, "dec": 12, "dez": 12,
}


def is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, float) and math.isnan(value):
        return True
    if isinstance(value, str):
        return value.strip() == ""
    return value is pd.NaT


def _to_decimal(value: int | float | Decimal | str) -> Decimal | None:
    if isinstance(value, float) and not math.isfinite(value):
        return None
    try:
        number = Decimal(str(value))
    except InvalidOperation:
        return None
    if not number.is_finite():
        return None
    return number


def parse_signed_amount(raw: Any) -> Decimal | None:
    """
    Parse a cell into a signed Decimal.

    Strings follow the European convention: currency symbols and whitespace
    are stripped, every "." is a thousands separator and the first "," is the
    decimal point. The leading number is read the way a lenient float parser
    would, so trailing junk after the digits is ignored.
    """
    if isinstance(raw, bool) or raw is None:
        return None
    if isinstance(raw, (int, float, Decimal)):
        return _to_decimal(raw)
    if not isinstance(raw, str):
        return None

    cleaned = CURRENCY_STRIP_RE.sub("", raw)
    cleaned = cleaned.replace(".", "").replace(",", ".", 1)
    match = LEADING_NUMBER_RE.match(cleaned)
    if not match:
        return None
    return _to_decimal(match.group(0).rstrip("."))


def parse_amount(raw: Any) -> Decimal | None:
    """Absolute amount of a cell; None when unparseable or exactly zero."""
    number = parse_signed_amount(raw)
    if number is None or number == 0:
        return None
    return abs(number)


def _serial_to_date(serial: float) -> date | None:
    if not math.isfinite(serial):
        return None
    try:
        return (EXCEL_EPOCH + timedelta(days=serial)).date()
    except OverflowError:
        return None


def parse_date(raw: Any) -> date | None:
    """
    Parse a cell into a calendar date.

    Native dates pass through, numbers are spreadsheet serials (days since
    1899-12-30), and strings are read as D/M/Y or D-M-Y (day first) before
    falling back to generic parsing, which needs a 4-digit year. "total"
    and blanks are not dates.
    """
    if is_blank(raw) or isinstance(raw, bool):
        return None
    if isinstance(raw, pd.Timestamp):
        return raw.date()
    if isinstance(raw, datetime):
        return raw.date()
    if isinstance(raw, date):
        return raw
    if isinstance(raw, (int, float, Decimal)):
        return _serial_to_date(float(raw))
    if not isinstance(raw, str):
        return None

    text = raw.strip()
    if text.lower() == "total":
        return None

    m = DMY_RE.match(text)
    if m:
        day, month, year = int(m.group(1)), int(m.group(2)), m.group(3)
        full_year = 2000 + int(year) if len(year) == 2 else int(year)
        try:
            return date(full_year, month, day)
        except ValueError:
            return None

    if not YEAR_TOKEN_RE.search(text):
        return None
    try:
        parsed = pd.to_datetime(text, errors="coerce")
    except (ValueError, TypeError, OverflowError):
        return None
    if pd.isna(parsed) or not isinstance(parsed, pd.Timestamp):
        return None
    return parsed.date()


def parse_sheet_date(sheet_name: str) -> date | None:
    """First day of the month named in a sheet title such as "Dezembro 2025"."""
    for m in SHEET_MONTH_RE.finditer(sheet_name.lower()):
        month = MONTH_NAMES.get(m.group(1))
        if month is not None:
            return date(int(m.group(2)), month, 1)
    return None
