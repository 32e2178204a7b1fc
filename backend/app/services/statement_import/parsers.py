"""Statement readers: CSV, XLSX and text-layer PDF into raw transaction rows.

Expected column order is ``Date, Merchant, Amount, Status, Bank``. Header rows
are recognised by their column names and dropped wherever they appear
(multi-page PDFs repeat them).
"""

from __future__ import annotations

import csv
import io
import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from pathlib import PurePath
from typing import Any, Iterable, Optional

logger = logging.getLogger(__name__)

HEADER_WORDS = frozenset({"date", "merchant", "amount", "status", "bank", "description", "narration"})
FAILED_STATUS_MARKERS = ("FAIL", "DECLIN", "REJECT")
_DEBIT_RE = re.compile(r"\bDR\b", re.IGNORECASE)
# First grouped number; currency prefixes such as "Rs." or "INR" are ignored.
_AMOUNT_RE = re.compile(r"\d[\d,]*(?:\.\d+)?")


class UnsupportedStatementFormat(Exception):
    """The upload cannot be read as a statement."""


@dataclass(frozen=True)
class RawTransaction:
    row_number: int
    name: str
    bank: str
    amount: Decimal
    date_text: str
    status: str
    is_income: bool

    @property
    def failed(self) -> bool:
        status = self.status.upper()
        return any(marker in status for marker in FAILED_STATUS_MARKERS)


@dataclass(frozen=True)
class RejectedRow:
    row_number: int
    reason: str


@dataclass
class ParsedStatement:
    rows: list[RawTransaction] = field(default_factory=list)
    rejected: list[RejectedRow] = field(default_factory=list)

    @property
    def total_rows(self) -> int:
        return len(self.rows) + len(self.rejected)


def _cell_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, datetime):
        return value.strftime("%Y-%m-%d %H:%M:%S") if (value.hour or value.minute) else value.strftime("%Y-%m-%d")
    if isinstance(value, date):
        return value.isoformat()
    return str(value).strip()


def read_csv(file_bytes: bytes) -> list[list[str]]:
    try:
        text = file_bytes.decode("utf-8-sig")
    except UnicodeDecodeError:
        text = file_bytes.decode("latin-1")
    return [[cell.strip() for cell in row] for row in csv.reader(io.StringIO(text))]


def read_xlsx(file_bytes: bytes) -> list[list[str]]:
    from openpyxl import load_workbook

    try:
        workbook = load_workbook(io.BytesIO(file_bytes), read_only=True, data_only=True)
    except Exception as exc:
        raise UnsupportedStatementFormat(f"Could not open the Excel workbook: {exc}") from exc
    try:
        sheet = workbook.worksheets[0]
        return [[_cell_text(cell) for cell in row] for row in sheet.iter_rows(values_only=True)]
    finally:
        workbook.close()


def _split_text_line(line: str) -> list[str]:
    """``date merchant words... amount status bank`` -> five cells."""
    tokens = line.split()
    if len(tokens) < 5:
        return tokens
    return [tokens[0], " ".join(tokens[1:-3]), tokens[-3], tokens[-2], tokens[-1]]


def read_pdf(file_bytes: bytes) -> list[list[str]]:
    import pdfplumber

    try:
        pdf = pdfplumber.open(io.BytesIO(file_bytes))
    except Exception as exc:
        raise UnsupportedStatementFormat(f"Could not open the PDF: {exc}") from exc

    table_rows: list[list[str]] = []
    text_rows: list[list[str]] = []
    with pdf:
        for page in pdf.pages:
            for table in page.extract_tables() or []:
                table_rows.extend([_cell_text(cell) for cell in row] for row in table)
            text = page.extract_text() or ""
            text_rows.extend(_split_text_line(line) for line in text.splitlines() if line.strip())

    rows = table_rows or text_rows
    if not rows:
        raise UnsupportedStatementFormat(
            "This PDF has no text layer (scanned statement); export it as CSV or Excel instead"
        )
    return rows


def read_table(file_bytes: bytes, filename: str) -> list[list[str]]:
    suffix = PurePath(filename or "").suffix.lower()
    if suffix in {".csv", ".txt"}:
        return read_csv(file_bytes)
    if suffix in {".xlsx", ".xlsm"}:
        return read_xlsx(file_bytes)
    if suffix == ".xls":
        raise UnsupportedStatementFormat("Legacy .xls workbooks are not supported; save the file as .xlsx or .csv")
    if suffix == ".pdf":
        return read_pdf(file_bytes)
    raise UnsupportedStatementFormat(f"Unsupported statement file type {suffix or '(none)'!r}")


def parse_amount(text: str) -> tuple[Optional[Decimal], bool]:
    """Return (absolute amount, is_income). Minus, parentheses or DR mark a debit."""
    raw = (text or "").strip()
    is_debit = "-" in raw or (raw.startswith("(") and raw.endswith(")")) or bool(_DEBIT_RE.search(raw))
    match = _AMOUNT_RE.search(raw)
    if not match:
        return None, not is_debit
    try:
        amount = Decimal(match.group(0).replace(",", ""))
    except InvalidOperation:
        return None, not is_debit
    if amount == 0:
        return None, not is_debit
    return amount, not is_debit


def _is_header(row: list[str]) -> bool:
    return sum(1 for cell in row if cell.strip().lower() in HEADER_WORDS) >= 2


def parse_rows(table: Iterable[list[str]], *, min_columns: int = 5) -> ParsedStatement:
    parsed = ParsedStatement()
    for index, row in enumerate(table, start=1):
        cells = [c if isinstance(c, str) else _cell_text(c) for c in row]
        if not any(cell.strip() for cell in cells) or _is_header(cells):
            continue
        if len(cells) < min_columns:
            parsed.rejected.append(RejectedRow(index, f"expected at least {min_columns} columns, got {len(cells)}"))
            continue

        date_text, merchant, amount_text, status, bank = cells[:5]
        amount, is_income = parse_amount(amount_text)
        if amount is None:
            parsed.rejected.append(RejectedRow(index, f"invalid amount {amount_text!r}"))
            continue
        if not merchant.strip():
            parsed.rejected.append(RejectedRow(index, "missing merchant"))
            continue

        parsed.rows.append(
            RawTransaction(
                row_number=index,
                name=merchant.strip(),
                bank=bank.strip(),
                amount=amount,
                date_text=date_text.strip(),
                status=status.strip(),
                is_income=is_income,
            )
        )
    return parsed


def parse_statement(file_bytes: bytes, filename: str, *, min_columns: int = 5) -> ParsedStatement:
    table = read_table(file_bytes, filename)
    parsed = parse_rows(table, min_columns=min_columns)
    logger.info(
        "Parsed statement %s: %d rows, %d rejected", filename, len(parsed.rows), len(parsed.rejected)
    )
    return parsed
