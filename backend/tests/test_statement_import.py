import io
from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import patch

import pytest
from openpyxl import Workbook

from app.core.config import get_settings
from app.schemas.finance import EntryKind, Provenance
from app.services.finance_store import InMemoryFinanceStore, PersistenceError
from app.services.statement_import.parsers import (
    UnsupportedStatementFormat,
    _split_text_line,
    parse_amount,
    parse_rows,
    read_pdf,
    read_table,
)
from app.services.statement_import.service import (
    import_statement,
    parse_transaction_date,
    render_import_report,
)

IMPORTED_AT = datetime(2026, 10, 1, 9, 0, tzinfo=timezone.utc)

STATEMENT_ROWS = [
    ["Date", "Merchant", "Amount", "Status", "Bank"],
    ["01/09/2026", "Swiggy", "-450.00", "SUCCESS", "HDFC"],
    ["02/09/2026", "Uber", "-230", "SUCCESS", "HDFC"],
    ["03/09/2026", "ACME Corp Salary", "50000", "SUCCESS", "HDFC"],
    ["04/09/2026", "Netflix", "-649", "SUCCESS", "HDFC"],
    ["05/09/2026", "Amazon", "-1299.50", "FAILED", "HDFC"],
    ["06/09/2026", "Jio Recharge", "-299", "SUCCESS", "HDFC"],
    ["07/09/2026", "Zomato", "abc", "SUCCESS", "HDFC"],
    ["08/09/2026", "Apollo Pharmacy", "-820", "SUCCESS", "HDFC"],
    ["09/09/2026", "Freelance Client", "15000", "SUCCESS", "ICICI"],
    ["10/09/2026", "Ola Cabs", "-180", "DECLINED", "HDFC"],
]


def _csv(rows):
    return "\n".join(",".join(row) for row in rows).encode("utf-8")


def _xlsx(rows):
    workbook = Workbook()
    sheet = workbook.active
    for row in rows:
        sheet.append(row)
    buffer = io.BytesIO()
    workbook.save(buffer)
    return buffer.getvalue()


class _FlakyStore(InMemoryFinanceStore):
    def __init__(self, failing_name):
        super().__init__()
        self.failing_name = failing_name

    def save_expense(self, user_id, entry):
        if self.failing_name in entry.name:
            raise PersistenceError("could not save the expense")
        return super().save_expense(user_id, entry)


def test_csv_import_counts_and_totals():
    store = InMemoryFinanceStore()

    summary = import_statement("u1", _csv(STATEMENT_ROWS), "september.csv", store, imported_at=IMPORTED_AT)

    assert summary.success
    assert summary.processed_count == 10
    assert summary.imported_count == 7
    assert summary.skipped_count == 3
    assert summary.errors == ["Row 8: invalid amount 'abc'"]
    assert summary.totals.expenses == Decimal("2448.00")
    assert summary.totals.income == Decimal("65000.00")
    assert sum(summary.totals.per_category.values()) == summary.totals.expenses
    assert summary.totals.per_category == {
        "food": Decimal("450.00"),
        "transport": Decimal("230.00"),
        "entertainment": Decimal("649.00"),
        "bills": Decimal("299.00"),
        "healthcare": Decimal("820.00"),
    }


def test_imported_entries_carry_provenance_and_dates():
    store = InMemoryFinanceStore()
    import_statement("u1", _csv(STATEMENT_ROWS), "september.csv", store, imported_at=IMPORTED_AT)

    expenses = store.list_expenses("u1")
    income = store.list_income("u1")
    assert len(expenses) == 5
    assert len(income) == 2
    assert {e.provenance for e in expenses + income} == {Provenance.IMPORT}

    swiggy = next(e for e in expenses if e.merchant == "Swiggy")
    assert swiggy.occurred_at == datetime(2026, 9, 1, tzinfo=timezone.utc)
    assert swiggy.description == "Payment to Swiggy"

    salary = next(i for i in income if i.category == "salary")
    assert salary.kind == EntryKind.INCOME
    assert salary.name == "Income from ACME Corp Salary"
    assert salary.is_recurring


def test_xlsx_import_matches_csv():
    store = InMemoryFinanceStore()

    summary = import_statement("u1", _xlsx(STATEMENT_ROWS), "september.xlsx", store, imported_at=IMPORTED_AT)

    assert summary.imported_count == 7
    assert summary.skipped_count == 3
    assert summary.totals.expenses == Decimal("2448.00")


def test_one_failing_row_does_not_abort_the_batch():
    store = _FlakyStore("Netflix")

    summary = import_statement("u1", _csv(STATEMENT_ROWS), "september.csv", store, imported_at=IMPORTED_AT)

    assert summary.imported_count == 6
    assert summary.skipped_count == 4
    assert any("Netflix" in error for error in summary.errors)
    assert "entertainment" not in summary.totals.per_category


def test_short_rows_are_rejected_with_row_number():
    rows = [["11/09/2026", "Cafe"], ["12/09/2026", "Metro", "-40", "SUCCESS", "SBI"]]

    summary = import_statement("u1", _csv(rows), "short.csv", InMemoryFinanceStore(), imported_at=IMPORTED_AT)

    assert summary.processed_count == 2
    assert summary.imported_count == 1
    assert summary.errors == ["Row 1: expected at least 5 columns, got 2"]


def test_repeated_header_rows_are_dropped():
    rows = STATEMENT_ROWS[:3] + [STATEMENT_ROWS[0]] + STATEMENT_ROWS[3:4]

    parsed = parse_rows(rows)

    assert [r.name for r in parsed.rows] == ["Swiggy", "Uber", "ACME Corp Salary"]
    assert parsed.rejected == []


@pytest.mark.parametrize(
    ("filename", "content", "message"),
    [
        ("old.xls", b"binary", "Legacy .xls"),
        ("notes.docx", b"binary", "Unsupported statement file type"),
        ("broken.xlsx", b"not a zip", "Could not open the Excel workbook"),
    ],
)
def test_unsupported_files_report_an_error(filename, content, message):
    summary = import_statement("u1", content, filename, InMemoryFinanceStore())

    assert not summary.success
    assert summary.imported_count == 0
    assert message in summary.errors[0]


def test_empty_and_oversized_files(monkeypatch):
    assert import_statement("u1", b"", "a.csv", InMemoryFinanceStore()).errors == ["The uploaded file is empty"]

    monkeypatch.setenv("STATEMENT_MAX_BYTES", "10")
    get_settings.cache_clear()
    summary = import_statement("u1", _csv(STATEMENT_ROWS), "a.csv", InMemoryFinanceStore())
    assert not summary.success
    assert "larger than" in summary.errors[0]


def test_read_table_dispatches_on_suffix():
    assert read_table(b"a,b\n1,2\n", "x.CSV") == [["a", "b"], ["1", "2"]]
    with pytest.raises(UnsupportedStatementFormat):
        read_table(b"", "statement")


@pytest.mark.parametrize(
    ("text", "amount", "is_income"),
    [
        ("-450.00", Decimal("450.00"), False),
        ("(1,200.00)", Decimal("1200.00"), False),
        ("500 DR", Decimal("500"), False),
        ("1,200 CR", Decimal("1200"), True),
        ("₹ 3,000", Decimal("3000"), True),
        ("Rs. 500", Decimal("500"), True),
        ("Rs.1,500", Decimal("1500"), True),
        ("INR 2,000.50 DR", Decimal("2000.50"), False),
        ("0", None, True),
        ("n/a", None, True),
    ],
)
def test_parse_amount(text, amount, is_income):
    assert parse_amount(text) == (amount, is_income)


def test_pdf_text_line_split():
    assert _split_text_line("01/09/2026 Big Bazaar Store -1,250.00 SUCCESS HDFC") == [
        "01/09/2026",
        "Big Bazaar Store",
        "-1,250.00",
        "SUCCESS",
        "HDFC",
    ]


def test_transaction_date_formats():
    default = IMPORTED_AT
    assert parse_transaction_date("03/09/2026", default) == datetime(2026, 9, 3, tzinfo=timezone.utc)
    assert parse_transaction_date("2026-09-03T10:15:00", default) == datetime(2026, 9, 3, 10, 15, tzinfo=timezone.utc)
    assert parse_transaction_date("3 Sep 2026", default) == datetime(2026, 9, 3, tzinfo=timezone.utc)
    assert parse_transaction_date("yesterday", default) is default


def test_report_sections():
    summary = import_statement(
        "u1", _csv(STATEMENT_ROWS), "september.csv", InMemoryFinanceStore(), imported_at=IMPORTED_AT
    )

    report = render_import_report(summary, currency="₹")

    assert "Processed: 10 transactions" in report
    assert "Successfully imported: 7" in report
    assert "Total Expenses: ₹2448.00" in report
    assert "Net: ₹62552.00" in report
    top = report.split("**Top Categories:**")[1].split("**Issues")[0].strip().splitlines()
    assert top[0] == "• healthcare: ₹820.00"
    assert len(top) == 5
    assert "**Issues (1):**" in report


class _FakePage:
    def __init__(self, tables=(), text=""):
        self._tables = [list(t) for t in tables]
        self._text = text

    def extract_tables(self):
        return self._tables

    def extract_text(self):
        return self._text


class _FakePdf:
    def __init__(self, *pages):
        self.pages = list(pages)

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        return False


PDF_TEXT = (
    "HDFC Bank Statement\n"
    "Date Merchant Amount Status Bank\n"
    "01/09/2026 Big Bazaar Store -1,250.00 SUCCESS HDFC\n"
    "03/09/2026 Salary ACME 50,000.00 SUCCESS HDFC\n"
)


def test_pdf_tables_win_over_text_layer():
    page = _FakePage(tables=[STATEMENT_ROWS[:3]], text=PDF_TEXT)

    with patch("pdfplumber.open", return_value=_FakePdf(page)):
        rows = read_pdf(b"%PDF-1.7")

    assert rows == STATEMENT_ROWS[:3]


def test_pdf_table_cells_are_stringified():
    page = _FakePage(tables=[[["01/09/2026", "Swiggy", None, "SUCCESS", "HDFC"]]])

    with patch("pdfplumber.open", return_value=_FakePdf(page)):
        rows = read_pdf(b"%PDF-1.7")

    assert rows == [["01/09/2026", "Swiggy", "", "SUCCESS", "HDFC"]]


def test_pdf_text_layer_is_used_without_tables():
    pages = (_FakePage(text=PDF_TEXT), _FakePage(text=""))

    with patch("pdfplumber.open", return_value=_FakePdf(*pages)):
        summary = import_statement(
            "u1", b"%PDF-1.7", "september.pdf", InMemoryFinanceStore(), imported_at=IMPORTED_AT
        )

    assert summary.imported_count == 2
    assert summary.totals.expenses == Decimal("1250.00")
    assert summary.totals.income == Decimal("50000.00")
    assert summary.errors == ["Row 1: expected at least 5 columns, got 3"]


def test_scanned_pdf_is_reported_as_unsupported():
    with patch("pdfplumber.open", return_value=_FakePdf(_FakePage(), _FakePage(text="   "))):
        with pytest.raises(UnsupportedStatementFormat, match="no text layer"):
            read_pdf(b"%PDF-1.7")

    with patch("pdfplumber.open", return_value=_FakePdf(_FakePage())):
        summary = import_statement("u1", b"%PDF-1.7", "scan.pdf", InMemoryFinanceStore())

    assert not summary.success
    assert summary.imported_count == 0
    assert "no text layer" in summary.errors[0]


def test_unreadable_pdf_is_reported():
    with patch("pdfplumber.open", side_effect=ValueError("not a PDF")):
        with pytest.raises(UnsupportedStatementFormat, match="Could not open the PDF"):
            read_pdf(b"garbage")
