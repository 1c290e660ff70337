"""
KPI requests end to end.

    ResultCache hit? ──yes──▶ cached result
          │ no
          ▼
    DatasetCache hit? ──no──▶ SpreadsheetLoader.load_many ─▶ adapters ─▶ SalesRecords
          │
          ▼
    salesperson filter ─▶ KpiAggregator ─▶ ResultCache.set ─▶ result
"""
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence

from salesync.cancellation import CancellationToken, checkpoint
from salesync.config import AppConfig, BrandProfile, config
from salesync.customers import CustomerDirectory
from salesync.events import EventBus, SyncEvent, events
from salesync.kpi import (
    HandledByFilter,
    KpiAggregator,
    MembershipFilter,
    RecordPredicate,
    ReferenceDate,
    resolve_reference_date,
)
from salesync.observability import Timer, get_logger
from salesync.records import (
    HeaderRecordAdapter,
    LedgerRecordAdapter,
    ParseReport,
    SalesRecord,
    attribute_handled_by,
    header_reference_date,
)
from salesync.result_cache import ResultCache
from salesync.sheets import SpreadsheetLoader

logger = get_logger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Dataset:
    """Parsed sales records of one brand, by year."""

    records_by_year: Dict[int, List[SalesRecord]]
    reports: Dict[int, ParseReport] = field(default_factory=dict)
    # "data as of" date written in the newest sheet, when the layout has one
    reference_date: Optional[date] = None
    loaded_at: Optional[datetime] = None

    @property
    def all_records(self) -> List[SalesRecord]:
        return [r for records in self.records_by_year.values() for r in records]


class DatasetCache:
    """
    In-memory cache of loaded datasets with an explicit lifecycle.

    Usage:
        datasets = DatasetCache(ttl_seconds=3600, clock=clock)
        datasets.init()
        datasets.put("kivos", dataset)
        datasets.get("kivos")  # None once older than the TTL
        datasets.clear()
    """

    def __init__(self, ttl_seconds: int = None, clock: Callable[[], datetime] = utc_now):
        self.ttl = timedelta(seconds=ttl_seconds or config.kpi.dataset_ttl_seconds)
        self.clock = clock
        self._entries: Optional[Dict[str, Dataset]] = None

    @property
    def initialized(self) -> bool:
        return self._entries is not None

    def init(self) -> None:
        self._entries = {}

    def clear(self) -> None:
        if self._entries is not None:
            self._entries.clear()

    def _require(self) -> Dict[str, Dataset]:
        if self._entries is None:
            raise RuntimeError("DatasetCache used before init()")
        return self._entries

    def get(self, brand: str) -> Optional[Dataset]:
        entries = self._require()
        dataset = entries.get(brand)
        if dataset is None:
            return None
        if dataset.loaded_at is None or self.clock() - dataset.loaded_at >= self.ttl:
            del entries[brand]
            return None
        return dataset

    def put(self, brand: str, dataset: Dataset) -> None:
        if dataset.loaded_at is None:
            dataset.loaded_at = self.clock()
        self._require()[brand] = dataset


class KpiService:
    """Brand KPI computation with result and dataset caching."""

    def __init__(
        self,
        loader: SpreadsheetLoader,
        results: ResultCache,
        directory: CustomerDirectory,
        aggregator: KpiAggregator = None,
        datasets: DatasetCache = None,
        settings: AppConfig = None,
        clock: Callable[[], datetime] = utc_now,
        bus: EventBus = None,
    ):
        self.loader = loader
        self.results = results
        self.directory = directory
        self.aggregator = aggregator or KpiAggregator()
        self.settings = settings or config
        self.clock = clock
        self.bus = bus or events
        self.datasets = datasets or DatasetCache(self.settings.kpi.dataset_ttl_seconds, clock)
        if not self.datasets.initialized:
            self.datasets.init()

    def _profile(self, brand: str) -> BrandProfile:
        profile = self.settings.brands.get(brand)
        if profile is None or not profile.kpi_sheets:
            raise ValueError(f"No KPI sheets configured for brand {brand!r}")
        return profile

    def _parse(self, profile: BrandProfile, year: int, rows: List[List[str]]) -> ParseReport:
        if profile.layout == "ledger":
            return LedgerRecordAdapter(year, self.settings.kpi.vat_divisor).parse(rows)

        columns = self.settings.kpi.playmobil_columns
        report = HeaderRecordAdapter(
            date_column=columns.date,
            customer_code_column=columns.customer_code,
            customer_name_column=columns.customer_name,
            amount_column=columns.amount,
            handled_by_column=columns.handled_by,
        ).parse(rows)
        in_year = [r for r in report.records if r.year == year]
        report.filtered += len(report.records) - len(in_year)
        report.records = in_year
        return report

    async def load_dataset(
        self,
        brand: str,
        force: bool = False,
        cancel: Optional[CancellationToken] = None,
    ) -> Dataset:
        """Parsed records of every KPI sheet of the brand."""
        profile = self._profile(brand)
        if not force:
            cached = self.datasets.get(profile.name)
            if cached is not None:
                return cached

        with Timer(f"load dataset {profile.name}", logger, warn_threshold_ms=5000):
            rows_by_key = await self.loader.load_many(profile.kpi_sheets.values(), force=force, cancel=cancel)

        checkpoint(cancel, f"load dataset {profile.name}")
        dataset = Dataset(records_by_year={})
        for year, key in profile.kpi_sheets.items():
            report = self._parse(profile, year, rows_by_key[key])
            dataset.reports[year] = report
            dataset.records_by_year[year] = report.records
            if report.skipped:
                logger.warning(f"{key}: {report.skipped} unparseable rows skipped")

        if profile.layout == "ledger":
            newest_key = profile.kpi_sheets[max(profile.kpi_sheets)]
            dataset.reference_date = header_reference_date(rows_by_key[newest_key])

        if profile.filter_strategy == "handled_by":
            assignments = await self.directory.single_salesman_assignments(
                profile.customer_collection, profile.name
            )
            dataset.records_by_year = {
                year: attribute_handled_by(records, assignments)
                for year, records in dataset.records_by_year.items()
            }

        self.datasets.put(profile.name, dataset)
        logger.info(
            f"Dataset {profile.name} loaded",
            extra={"years": {y: len(r) for y, r in dataset.records_by_year.items()}},
        )
        return dataset

    async def build_filter(
        self,
        profile: BrandProfile,
        salesmen: Sequence[str],
        cancel: Optional[CancellationToken] = None,
    ) -> Optional[RecordPredicate]:
        if not salesmen:
            return None
        if profile.filter_strategy == "membership":
            codes = await self.directory.codes_for(
                profile.customer_collection, profile.name, salesmen, cancel
            )
            return MembershipFilter(codes)
        return HandledByFilter(salesmen)

    async def get_kpis(
        self,
        brand: str,
        salesmen: Optional[Sequence[str]] = None,
        reference: Optional[ReferenceDate] = None,
        force: bool = False,
        cancel: Optional[CancellationToken] = None,
    ) -> Dict[str, Any]:
        """
        KPI results for a brand and salesperson selection.

        Results for the default reference date are served from and stored in
        the result cache; an explicit `reference` always recomputes.

        Raises:
            ValueError: Brand has no KPI sheets
            RemoteFetchError: A sheet could not be loaded and none is stored
            OperationCancelled: The token fired
        """
        profile = self._profile(brand)
        salesmen = sorted({s.strip() for s in (salesmen or []) if s and s.strip()})
        use_cache = reference is None

        if use_cache and not force:
            cached = await self.results.get(profile.name, salesmen)
            if cached is not None:
                return cached

        checkpoint(cancel, f"kpis {profile.name}")
        dataset = await self.load_dataset(profile.name, force=force, cancel=cancel)
        record_filter = await self.build_filter(profile, salesmen, cancel)
        checkpoint(cancel, f"kpis {profile.name}")

        if reference is None:
            newest = dataset.records_by_year.get(max(dataset.records_by_year), [])
            reference = resolve_reference_date(
                newest, dataset.reference_date or self.clock().date()
            )

        report = self.aggregator.aggregate(dataset.records_by_year, reference, salesmen_filter=record_filter)
        result = {
            "brand": profile.name,
            "filters": salesmen,
            **report.to_dict(),
            "parse": {str(year): r.to_dict() for year, r in dataset.reports.items()},
            "generated_at": self.clock().isoformat(),
        }

        if use_cache:
            await self.results.set(profile.name, salesmen, result)

        await self.bus.emit(
            SyncEvent.KPI_COMPUTED,
            {"brand": profile.name, "filters": salesmen, "records": report.record_count},
        )
        return result
