"""Bulk import of bank statement rows as income/expense entries."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from pydantic import ValidationError

from app.core.config import get_settings
from app.schemas.finance import (
    FALLBACK_CATEGORY,
    EntryKind,
    FinancialEntry,
    ImportSummary,
    Provenance,
)
from app.services.categorization import (
    categorize_expense,
    clean_merchant_name,
    detect_income_source,
    detect_recurring,
)
from app.services.finance_store import FinanceStore, PersistenceError
from app.utils.amounts import to_money

from .parsers import RawTransaction, UnsupportedStatementFormat, parse_statement

logger = logging.getLogger(__name__)

DATE_FORMATS = (
    "%d/%m/%Y",
    "%d/%m/%y",
    "%d-%m-%Y",
    "%d-%m-%y",
    "%Y-%m-%d",
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%dT%H:%M:%S",
    "%d/%m/%Y %H:%M",
    "%d %b %Y",
    "%d-%b-%Y",
    "%d %B %Y",
    "%b %d, %Y",
)


def parse_transaction_date(text: str, default: datetime) -> datetime:
    """First matching format wins (day-first); unreadable dates use *default*."""
    cleaned = " ".join((text or "").split())
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(cleaned, fmt).replace(tzinfo=timezone.utc)
        except ValueError:
            continue
    return default


def classify_transaction(raw: RawTransaction, *, imported_at: datetime) -> FinancialEntry:
    occurred_at = parse_transaction_date(raw.date_text, imported_at)
    amount = to_money(raw.amount)
    if raw.is_income:
        return FinancialEntry(
            kind=EntryKind.INCOME,
            amount=amount,
            category=detect_income_source(raw.name),
            name=f"Income from {raw.name}",
            description=f"Bank transfer from {raw.name}",
            occurred_at=occurred_at,
            provenance=Provenance.IMPORT,
            is_recurring=detect_recurring(raw.name),
        )
    return FinancialEntry(
        kind=EntryKind.EXPENSE,
        amount=amount,
        category=categorize_expense(raw.name),
        name=clean_merchant_name(raw.name) or "Statement expense",
        description=f"Payment to {raw.name}",
        merchant=raw.name,
        occurred_at=occurred_at,
        provenance=Provenance.IMPORT,
        is_recurring=detect_recurring(raw.name),
    )


def import_statement(
    user_id: str,
    file_bytes: bytes,
    filename: str,
    store: FinanceStore,
    *,
    imported_at: Optional[datetime] = None,
) -> ImportSummary:
    """Parse, classify and save every row; one row's failure never aborts the batch."""
    settings = get_settings()
    summary = ImportSummary()
    imported_at = imported_at or datetime.now(timezone.utc)

    if not file_bytes:
        summary.errors.append("The uploaded file is empty")
        return summary
    if len(file_bytes) > settings.statement_max_bytes:
        summary.errors.append(f"The file is larger than {settings.statement_max_bytes // (1024 * 1024)} MB")
        return summary

    try:
        parsed = parse_statement(file_bytes, filename, min_columns=settings.statement_min_columns)
    except UnsupportedStatementFormat as exc:
        logger.info("Statement %s rejected: %s", filename, exc)
        summary.errors.append(str(exc))
        return summary

    summary.processed_count = parsed.total_rows
    for rejected in parsed.rejected:
        summary.skipped_count += 1
        summary.errors.append(f"Row {rejected.row_number}: {rejected.reason}")

    totals = summary.totals
    for raw in parsed.rows:
        if raw.failed:
            logger.debug("Skipping row %d with status %r", raw.row_number, raw.status)
            summary.skipped_count += 1
            continue
        try:
            saved = store.save_entry(user_id, classify_transaction(raw, imported_at=imported_at))
        except (PersistenceError, ValidationError, ValueError) as exc:
            logger.warning("Row %d (%s) not imported: %s", raw.row_number, raw.name, exc)
            summary.errors.append(f"Row {raw.row_number} ({raw.name}): {exc}")
            summary.skipped_count += 1
            continue

        summary.imported_count += 1
        if saved.kind == EntryKind.EXPENSE:
            category = saved.category or FALLBACK_CATEGORY
            totals.expenses += saved.amount
            totals.per_category[category] = totals.per_category.get(category, Decimal("0")) + saved.amount
        else:
            totals.income += saved.amount

    summary.success = summary.imported_count > 0
    logger.info(
        "Imported statement %s for user=%s: processed=%d imported=%d skipped=%d",
        filename,
        user_id,
        summary.processed_count,
        summary.imported_count,
        summary.skipped_count,
    )
    return summary


def render_import_report(summary: ImportSummary, currency: Optional[str] = None) -> str:
    currency = currency or get_settings().currency_symbol
    totals = summary.totals
    lines = [
        "**Bank Statement Import Complete!**",
        "",
        "**Overview:**",
        f"• Processed: {summary.processed_count} transactions",
        f"• Successfully imported: {summary.imported_count}",
        f"• Skipped: {summary.skipped_count}",
        "",
        "**Financial Summary:**",
        f"• Total Expenses: {currency}{totals.expenses:.2f}",
        f"• Total Income: {currency}{totals.income:.2f}",
        f"• Net: {currency}{totals.income - totals.expenses:.2f}",
    ]
    if totals.per_category:
        lines += ["", "**Top Categories:**"]
        top = sorted(totals.per_category.items(), key=lambda item: item[1], reverse=True)[:5]
        lines += [f"• {category}: {currency}{amount:.2f}" for category, amount in top]
    if summary.errors:
        lines += ["", f"**Issues ({len(summary.errors)}):**"]
        lines += [f"• {error}" for error in summary.errors[:10]]
    return "\n".join(lines)
