"""
Period KPIs over sales records.

Periods relative to a reference (year, month, day):
    mtd  - reference month, days 1..day
    ytd  - Jan 1 through the reference date
    fy   - the whole year

Each period yields the signed amount sum and the number of distinct
customers; consecutive years are compared with a percentage change that is
None when the earlier amount is zero.

Usage:
    aggregator = KpiAggregator()
    report = aggregator.aggregate(
        {2025: records_2025, 2024: records_2024},
        ReferenceDate(2025, 3, 14),
        salesmen_filter=HandledByFilter(["ANNA PAPADOPOULOU"]),
    )
    report.metrics[2025]["ytd"].diff_percent
"""
import calendar
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Union

import pandas as pd

from salesync.numbers import normalize_customer_code, normalize_salesman
from salesync.observability import get_logger
from salesync.records import SalesRecord

logger = get_logger(__name__)

PERIODS = ("mtd", "ytd", "fy")

RecordPredicate = Callable[[SalesRecord], bool]
RecordsInput = Union[Sequence[SalesRecord], Mapping[int, Sequence[SalesRecord]]]

_COLUMNS = ["year", "month", "day", "customer_code", "amount"]


@dataclass(frozen=True)
class ReferenceDate:
    year: int
    month: int  # 1-12
    day: int

    @classmethod
    def from_date(cls, value: date) -> "ReferenceDate":
        return cls(value.year, value.month, value.day)

    def for_year(self, year: int) -> "ReferenceDate":
        """Same calendar position in another year, Feb 29 clamped to Feb 28."""
        last_day = calendar.monthrange(year, self.month)[1]
        return ReferenceDate(year, self.month, min(self.day, last_day))

    def to_date(self) -> date:
        return date(self.year, self.month, self.day)

    def isoformat(self) -> str:
        return self.to_date().isoformat()


def resolve_reference_date(records: Iterable[SalesRecord], fallback: Optional[date] = None) -> ReferenceDate:
    """Reference for a dataset: the fallback (today by default), or the latest record date if later."""
    anchor = fallback or date.today()
    latest = max((r.date for r in records), default=None)
    if latest is not None and latest > anchor:
        anchor = latest
    return ReferenceDate.from_date(anchor)


def percent_change(current: float, previous: float) -> Optional[float]:
    """(current - previous) / |previous| * 100, or None when previous is zero."""
    if previous == 0:
        return None
    return (current - previous) / abs(previous) * 100


# ═══════════════════════════════════════════════════════════════════════════════
# RESULT TYPES
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass
class PeriodTotals:
    amount: float = 0.0
    customers: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {"amount": round(self.amount, 2), "customers": self.customers}


@dataclass
class PeriodMetric:
    current: PeriodTotals
    previous: PeriodTotals

    @property
    def diff_amount(self) -> float:
        return self.current.amount - self.previous.amount

    @property
    def diff_percent(self) -> Optional[float]:
        return percent_change(self.current.amount, self.previous.amount)

    def to_dict(self) -> Dict[str, Any]:
        percent = self.diff_percent
        return {
            "current": self.current.to_dict(),
            "previous": self.previous.to_dict(),
            "diff": {
                "amount": round(self.diff_amount, 2),
                "percent": None if percent is None else round(percent, 2),
            },
        }


@dataclass
class KpiReport:
    reference: ReferenceDate
    # year -> period -> totals
    years: Dict[int, Dict[str, PeriodTotals]] = field(default_factory=dict)
    # year -> period -> comparison with year - 1 (only when year - 1 is loaded)
    metrics: Dict[int, Dict[str, PeriodMetric]] = field(default_factory=dict)
    record_count: int = 0

    @property
    def current(self) -> Dict[str, PeriodMetric]:
        """Comparisons for the reference year."""
        return self.metrics.get(self.reference.year, {})

    def to_dict(self) -> Dict[str, Any]:
        return {
            "reference": self.reference.isoformat(),
            "record_count": self.record_count,
            "years": {
                str(year): {p: t.to_dict() for p, t in periods.items()}
                for year, periods in self.years.items()
            },
            "metrics": {
                str(year): {p: m.to_dict() for p, m in periods.items()}
                for year, periods in self.metrics.items()
            },
        }


# ═══════════════════════════════════════════════════════════════════════════════
# FILTERS
# ═══════════════════════════════════════════════════════════════════════════════

class HandledByFilter:
    """Keep records attributed to one of the given salespeople."""

    def __init__(self, salesmen: Iterable[str]):
        self.salesmen = {normalize_salesman(s) for s in salesmen if s}

    def __call__(self, record: SalesRecord) -> bool:
        return normalize_salesman(record.handled_by) in self.salesmen


class MembershipFilter:
    """Keep records of customers that belong to a salesperson's customer list."""

    def __init__(self, customer_codes: Iterable[str]):
        self.codes = {normalize_customer_code(c) for c in customer_codes if c}

    def __call__(self, record: SalesRecord) -> bool:
        return normalize_customer_code(record.customer_code) in self.codes


# ═══════════════════════════════════════════════════════════════════════════════
# AGGREGATION
# ═══════════════════════════════════════════════════════════════════════════════

def records_frame(records: Sequence[SalesRecord]) -> pd.DataFrame:
    frame = pd.DataFrame(
        {
            "year": [r.date.year for r in records],
            "month": [r.date.month for r in records],
            "day": [r.date.day for r in records],
            "customer_code": [r.customer_code for r in records],
            "amount": [float(r.amount) for r in records],
        },
        columns=_COLUMNS,
    )
    return frame.astype({"year": "int64", "month": "int64", "day": "int64", "amount": "float64"})


def period_mask(frame: pd.DataFrame, period: str, reference: ReferenceDate) -> pd.Series:
    """Rows of `frame` inside `period` of reference.year."""
    in_year = frame["year"] == reference.year
    if period == "fy":
        return in_year

    month_to_day = (frame["month"] == reference.month) & (frame["day"] <= reference.day)
    if period == "mtd":
        return in_year & month_to_day
    if period == "ytd":
        return in_year & ((frame["month"] < reference.month) | month_to_day)
    raise ValueError(f"Unknown period: {period}")


def totals(frame: pd.DataFrame, mask: pd.Series) -> PeriodTotals:
    selected = frame[mask]
    codes = selected.loc[selected["customer_code"] != "", "customer_code"]
    return PeriodTotals(
        amount=float(selected["amount"].sum()),
        customers=int(codes.nunique()),
    )


class KpiAggregator:
    """Computes MTD / YTD / full-year totals and year-over-year comparisons."""

    @staticmethod
    def _by_year(records: RecordsInput, reference: ReferenceDate) -> Dict[int, List[SalesRecord]]:
        if isinstance(records, Mapping):
            return {int(year): list(items) for year, items in records.items()}
        # flat list: current/previous pair around the reference year
        grouped: Dict[int, List[SalesRecord]] = {reference.year: [], reference.year - 1: []}
        for record in records:
            if record.year in grouped:
                grouped[record.year].append(record)
        return grouped

    @staticmethod
    def apply_filters(
        records: Iterable[SalesRecord],
        salesmen_filter: Optional[RecordPredicate] = None,
        customer_predicate: Optional[RecordPredicate] = None,
    ) -> List[SalesRecord]:
        selected = list(records)
        if salesmen_filter is not None:
            selected = [r for r in selected if salesmen_filter(r)]
        if customer_predicate is not None:
            selected = [r for r in selected if customer_predicate(r)]
        return selected

    def aggregate(
        self,
        records: RecordsInput,
        reference: ReferenceDate,
        salesmen_filter: Optional[RecordPredicate] = None,
        customer_predicate: Optional[RecordPredicate] = None,
    ) -> KpiReport:
        """
        Period totals for every loaded year plus comparisons with the year before.

        `records` is either a flat list (current/previous years around the
        reference) or an explicit {year: records} map. Each year is measured
        at the reference's calendar position within that year.
        """
        by_year = {
            year: self.apply_filters(items, salesmen_filter, customer_predicate)
            for year, items in self._by_year(records, reference).items()
        }

        report = KpiReport(reference=reference)
        for year in sorted(by_year, reverse=True):
            frame = records_frame(by_year[year])
            year_reference = reference.for_year(year)
            report.years[year] = {
                period: totals(frame, period_mask(frame, period, year_reference))
                for period in PERIODS
            }
            report.record_count += len(frame)

        for year, periods in report.years.items():
            previous = report.years.get(year - 1)
            if previous is None:
                continue
            report.metrics[year] = {
                period: PeriodMetric(current=periods[period], previous=previous[period])
                for period in PERIODS
            }

        logger.debug(
            f"Aggregated {report.record_count} records",
            extra={"reference": reference.isoformat(), "years": sorted(report.years)},
        )
        return report

    def aggregate_pair(
        self,
        current: Sequence[SalesRecord],
        previous: Sequence[SalesRecord],
        reference: ReferenceDate,
        salesmen_filter: Optional[RecordPredicate] = None,
        customer_predicate: Optional[RecordPredicate] = None,
    ) -> KpiReport:
        """Two-year form: current-year and previous-year record lists."""
        return self.aggregate(
            {reference.year: current, reference.year - 1: previous},
            reference,
            salesmen_filter,
            customer_predicate,
        )

    @staticmethod
    def monthly_totals(records: Sequence[SalesRecord], year: int) -> List[PeriodTotals]:
        """Totals of each calendar month of `year` (index 0 = January)."""
        frame = records_frame(records)
        frame = frame[frame["year"] == year]
        return [
            totals(frame, frame["month"] == month)
            for month in range(1, 13)
        ]
