"""
Tests for salesync.kpi module.
"""
import pytest
from datetime import date
from typing import List

from salesync.kpi import (
    HandledByFilter,
    KpiAggregator,
    MembershipFilter,
    ReferenceDate,
    percent_change,
    resolve_reference_date,
)
from salesync.records import SalesRecord


def record(day: str, code: str, amount: float, handled_by: str = "") -> SalesRecord:
    return SalesRecord(
        date=date.fromisoformat(day),
        customer_code=code,
        customer_name=code,
        doc_type="",
        amount=amount,
        is_invoice=amount >= 0,
        is_credit_note=amount < 0,
        handled_by=handled_by,
    )


@pytest.fixture
def sales() -> List[SalesRecord]:
    return [
        record("2025-01-15", "C1", 100, "ANNA"),
        record("2025-03-10", "C2", 200, "NIKOS"),
        record("2025-03-14", "C1", -50, "ANNA"),
        record("2025-03-20", "C3", 400, "NIKOS"),
        record("2025-06-01", "C4", 1000, "ANNA"),
        record("2024-01-20", "C1", 80, "ANNA"),
        record("2024-03-05", "C2", 100, "NIKOS"),
        record("2024-03-15", "C2", 999, "NIKOS"),
        record("2024-11-11", "C5", 300, "ANNA"),
    ]


REFERENCE = ReferenceDate(2025, 3, 14)


class TestReferenceDate:
    """Tests for ReferenceDate and its resolution."""

    def test_for_year_clamps_leap_day(self):
        """Feb 29 maps to Feb 28 in non-leap years."""
        assert ReferenceDate(2024, 2, 29).for_year(2023) == ReferenceDate(2023, 2, 28)
        assert REFERENCE.for_year(2024) == ReferenceDate(2024, 3, 14)

    def test_resolve_prefers_later_record(self, sales):
        """Records newer than the fallback move the reference forward."""
        assert resolve_reference_date(sales, date(2025, 3, 14)) == ReferenceDate(2025, 6, 1)

    def test_resolve_keeps_later_fallback(self, sales):
        """A fallback after every record is kept."""
        assert resolve_reference_date(sales, date(2025, 7, 1)) == ReferenceDate(2025, 7, 1)

    def test_resolve_without_records(self):
        """No records, the fallback is the reference."""
        assert resolve_reference_date([], date(2025, 1, 2)).isoformat() == "2025-01-02"


class TestPercentChange:
    """Tests for percent_change."""

    def test_regular(self):
        assert percent_change(150, 100) == pytest.approx(50.0)

    def test_zero_previous(self):
        """No baseline, no percentage."""
        assert percent_change(100, 0) is None
        assert percent_change(0, 0) is None

    def test_negative_previous(self):
        """Change is measured against the absolute previous value."""
        assert percent_change(50, -100) == pytest.approx(150.0)


class TestAggregate:
    """Tests for KpiAggregator.aggregate."""

    def test_period_totals(self, sales):
        """MTD, YTD and full-year sums and distinct customers."""
        report = KpiAggregator().aggregate(sales, REFERENCE)

        current = report.years[2025]
        assert current["mtd"].amount == pytest.approx(150)
        assert current["mtd"].customers == 2
        assert current["ytd"].amount == pytest.approx(250)
        assert current["ytd"].customers == 2
        assert current["fy"].amount == pytest.approx(1650)
        assert current["fy"].customers == 4

        previous = report.years[2024]
        assert previous["mtd"].amount == pytest.approx(100)
        assert previous["ytd"].amount == pytest.approx(180)
        assert previous["fy"].amount == pytest.approx(1479)
        assert previous["fy"].customers == 3
        assert report.record_count == 9

    def test_year_over_year(self, sales):
        """Current year is compared with the year before."""
        report = KpiAggregator().aggregate(sales, REFERENCE)

        ytd = report.current["ytd"]
        assert ytd.diff_amount == pytest.approx(70)
        assert ytd.diff_percent == pytest.approx(38.888, rel=1e-3)
        assert report.current["mtd"].diff_percent == pytest.approx(50.0)

    def test_to_dict(self, sales):
        """Serialized report uses string year keys and rounded values."""
        data = KpiAggregator().aggregate(sales, REFERENCE).to_dict()

        assert data["reference"] == "2025-03-14"
        assert data["metrics"]["2025"]["ytd"]["diff"] == {"amount": 70.0, "percent": 38.89}
        assert data["years"]["2024"]["fy"] == {"amount": 1479.0, "customers": 3}

    def test_missing_previous_year_has_no_percent(self, sales):
        """An empty earlier year gives None percentages."""
        by_year = {2024: [r for r in sales if r.year == 2024], 2023: []}
        report = KpiAggregator().aggregate(by_year, REFERENCE.for_year(2024))

        assert report.metrics[2024]["fy"].diff_percent is None
        assert 2023 not in report.metrics

    def test_empty_input(self):
        """No records yields zero totals."""
        report = KpiAggregator().aggregate([], REFERENCE)
        assert report.years[2025]["fy"].amount == 0
        assert report.years[2025]["fy"].customers == 0
        assert report.current["fy"].diff_percent is None

    def test_salesmen_filter(self, sales):
        """Only records of the selected salespeople count."""
        report = KpiAggregator().aggregate(sales, REFERENCE, salesmen_filter=HandledByFilter(["anna"]))

        assert report.years[2025]["ytd"].amount == pytest.approx(50)
        assert report.years[2025]["fy"].customers == 2

    def test_customer_predicate(self, sales):
        """Customer predicates combine with the salesperson filter."""
        report = KpiAggregator().aggregate(
            sales,
            REFERENCE,
            salesmen_filter=HandledByFilter(["NIKOS"]),
            customer_predicate=MembershipFilter(["c-3"]),
        )
        assert report.years[2025]["fy"].amount == pytest.approx(400)

    def test_aggregate_pair(self, sales):
        """The two-list form matches the flat form."""
        current = [r for r in sales if r.year == 2025]
        previous = [r for r in sales if r.year == 2024]

        pair = KpiAggregator().aggregate_pair(current, previous, REFERENCE)
        assert pair.to_dict() == KpiAggregator().aggregate(sales, REFERENCE).to_dict()


class TestMonthlyTotals:
    """Tests for monthly_totals."""

    def test_ytd_equals_months_plus_mtd(self, sales):
        """YTD is the full earlier months plus the month-to-date."""
        aggregator = KpiAggregator()
        report = aggregator.aggregate(sales, REFERENCE)
        months = aggregator.monthly_totals(sales, 2025)

        earlier = sum(m.amount for m in months[:REFERENCE.month - 1])
        assert report.years[2025]["ytd"].amount == pytest.approx(earlier + report.years[2025]["mtd"].amount)

    def test_twelve_months(self, sales):
        """Every calendar month is present."""
        months = KpiAggregator.monthly_totals(sales, 2025)
        assert len(months) == 12
        assert months[2].amount == pytest.approx(550)
        assert months[5].customers == 1
        assert months[11].amount == 0
