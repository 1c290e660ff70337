"""
Tests for salesync.records module.
"""
import pytest
from datetime import date

from salesync.records import (
    HeaderRecordAdapter,
    LedgerRecordAdapter,
    SalesRecord,
    attribute_handled_by,
    header_reference_date,
)


@pytest.fixture
def header_adapter() -> HeaderRecordAdapter:
    return HeaderRecordAdapter(
        date_column="Billing Date",
        customer_code_column="Payer",
        customer_name_column="Name Payer",
        amount_column="Sales revenue",
        handled_by_column="Sales Rep",
    )


class TestHeaderRecordAdapter:
    """Tests for header-layout sheets."""

    def test_parses_rows(self, header_adapter, header_rows):
        """Valid rows become records; the row without a date is skipped."""
        report = header_adapter.parse(header_rows)

        assert len(report.records) == 4
        assert report.skipped == 1
        first = report.records[0]
        assert first.date == date(2025, 1, 15)
        assert first.customer_code == "100200"
        assert first.amount == pytest.approx(1500.50)
        assert first.handled_by == "ANNA PAPADOPOULOU"

    def test_negative_amount_is_credit_note(self, header_adapter, header_rows):
        """Negative revenue marks a credit note."""
        credit = header_adapter.parse(header_rows).records[2]
        assert credit.is_credit_note
        assert not credit.is_invoice
        assert credit.amount == pytest.approx(-250.0)

    def test_header_below_title_rows(self, header_adapter, header_rows):
        """The header may sit below a few title rows."""
        rows = [["Sales export"], []] + header_rows
        assert len(header_adapter.parse(rows).records) == 4

    def test_header_case_insensitive(self, header_adapter, header_rows):
        """Column labels match regardless of case."""
        rows = [[c.upper() for c in header_rows[0]]] + header_rows[1:]
        assert len(header_adapter.parse(rows).records) == 4

    def test_missing_header(self, header_adapter):
        """Without a header every non-blank row counts as skipped."""
        report = header_adapter.parse([["a", "b"], ["1", "2"], []])
        assert report.records == []
        assert report.skipped == 2

    def test_empty(self, header_adapter):
        """No rows, no records."""
        assert header_adapter.parse([]).to_dict() == {"records": 0, "skipped": 0, "filtered": 0}


class TestLedgerRecordAdapter:
    """Tests for the positional ledger layout."""

    def test_parses_year(self, ledger_rows):
        """Invoices and credit notes of the year become net-of-VAT records."""
        report = LedgerRecordAdapter(2025, vat_divisor=1.24).parse(ledger_rows)

        assert [r.customer_code for r in report.records] == ["C001", "C002", "C001"]
        assert [round(r.amount, 2) for r in report.records] == [1000.0, 500.0, -100.0]
        assert report.records[2].is_credit_note
        assert report.filtered == 3  # other year, unknown document type, zero amount
        assert report.skipped == 1   # unparseable date

    def test_no_header_row(self, ledger_rows):
        """Rows are read from the top when no header is found."""
        report = LedgerRecordAdapter(2025).parse(ledger_rows[2:5])
        assert len(report.records) == 3

    def test_find_header_row(self, ledger_rows):
        """The header is the row whose first cell names the date column."""
        assert LedgerRecordAdapter.find_header_row(ledger_rows) == 1
        assert LedgerRecordAdapter.find_header_row([["Date", "Type"]]) == 0
        assert LedgerRecordAdapter.find_header_row([["x"]]) is None


class TestHelpers:
    """Tests for reference date and attribution helpers."""

    def test_header_reference_date(self, ledger_rows):
        """The last filled cell of the first row holds the 'data as of' date."""
        assert header_reference_date(ledger_rows) == date(2025, 3, 14)
        assert header_reference_date([]) is None

    def test_attribute_handled_by(self):
        """Single-salesperson customers are credited to that salesperson."""
        records = [
            SalesRecord(date(2025, 1, 1), "C1", "A", "", 10.0, handled_by="NIKOS"),
            SalesRecord(date(2025, 1, 2), "C2", "B", "", 20.0, handled_by="NIKOS"),
        ]
        result = attribute_handled_by(records, {"C1": "ANNA"})

        assert [r.handled_by for r in result] == ["ANNA", "NIKOS"]
        assert records[0].handled_by == "NIKOS"

    def test_record_year(self):
        assert SalesRecord(date(2024, 12, 31), "C1", "A", "", 1.0).year == 2024
