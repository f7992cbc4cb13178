"""
statement_text.py — bank-statement lines straight to parsed rows

PDF statements have no column layout worth mapping, so this path skips the
tabular model entirely: every line that starts with a date and ends with an
amount becomes a row. Because every accepted line carries its own date there
is no inheritance state and every row classifies as LIFESTYLE.
"""

from __future__ import annotations

import io
import logging
import re
from datetime import date

import pdfplumber
from pdfminer.pdfparser import PDFSyntaxError
from pdfplumber.utils.exceptions import PdfminerException

from expense_intake.classifier import classify_expense
from expense_intake.models import FormatError, ParsedRow
from expense_intake.normalizer import parse_amount

logger = logging.getLogger(__name__)

PDF_SOURCE_NAME = "PDF"
MAX_NAME_LENGTH = 100
MAX_RAW_INPUT_LENGTH = 200

LEADING_DATE_RE = re.compile(r"^(\d{1,2})[/-](\d{1,2})[/-](\d{4}|\d{2})")
EURO_AMOUNT_RE = re.compile(r"(-?\d{1,3}(?:\.\d{3})*(?:,\d{2}))\s*€?")
TRAILING_AMOUNT_RE = re.compile(r"€?\s*(-?\d{1,3}(?:[.,]\d{3})*(?:[.,]\d{2})?)(?:\s*€)?$")

NON_TRANSACTION_RE = re.compile(
    r"^(saldo|balance|total|data mov|documento|reference|movimentos)",
    re.IGNORECASE,
)


def extract_pdf_text(payload: bytes) -> str:
    """Concatenate the text layer of every page."""
    try:
        with pdfplumber.open(io.BytesIO(payload)) as pdf:
            pages = [page.extract_text() or "" for page in pdf.pages]
    except (PdfminerException, PDFSyntaxError, ValueError, KeyError, TypeError, OSError) as exc:
        raise FormatError(
            "Failed to parse PDF file. The file may be corrupted, password-protected, "
            "or in an unsupported format."
        ) from exc
    logger.info("PDF parsed: %d pages, %d characters", len(pages), sum(len(p) for p in pages))
    return "\n".join(pages)


def _leading_date(line: str) -> tuple[date, str] | None:
    m = LEADING_DATE_RE.match(line)
    if not m:
        return None
    year = int(m.group(3))
    if year < 100:
        year += 2000
    try:
        parsed = date(year, int(m.group(2)), int(m.group(1)))
    except ValueError:
        return None
    return parsed, line[m.end():].strip()


def _split_amount(text: str):
    """Return (amount, description) using the European pattern first, else a trailing number."""
    for pattern in (EURO_AMOUNT_RE, TRAILING_AMOUNT_RE):
        m = pattern.search(text)
        if m:
            amount = parse_amount(m.group(1))
            return amount, text.replace(m.group(0), "", 1).strip()
    return None, text


def parse_statement_line(line: str, row_number: int) -> ParsedRow | None:
    dated = _leading_date(line)
    if dated is None:
        return None
    row_date, remainder = dated

    amount, name = _split_amount(remainder)
    if amount is None or len(name) < 2:
        return None
    if NON_TRANSACTION_RE.match(name):
        return None

    return ParsedRow(
        source_name=PDF_SOURCE_NAME,
        row_number=row_number,
        effective_date=row_date,
        name=name[:MAX_NAME_LENGTH],
        raw_input_summary=line[:MAX_RAW_INPUT_LENGTH],
        amount=amount,
        type=classify_expense(name, has_date_context=True, is_project_sheet=False),
    )


def parse_statement_text(text: str) -> list[ParsedRow]:
    lines = [line.strip() for line in text.split("\n")]
    lines = [line for line in lines if line]

    rows: list[ParsedRow] = []
    for row_number, line in enumerate(lines, start=1):
        parsed = parse_statement_line(line, row_number)
        if parsed is not None:
            rows.append(parsed)
    logger.info("Extracted %d expenses from %d statement lines", len(rows), len(lines))
    return rows
