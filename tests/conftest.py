"""
Pytest configuration and shared fixtures.
"""
import pytest
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence, Set

from salesync.events import EventBus
from salesync.exceptions import DocumentQueryError
from salesync.storage import LocalStore
from salesync.watermarks import parse_instant


class FixedClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class FakeDocumentStore:
    """
    In-memory DocumentStore.

    Range queries compare the field as an instant, like the remote store
    compares timestamps; documents without the field are never returned.
    """

    def __init__(self, collections: Optional[Dict[str, List[Dict[str, Any]]]] = None):
        self.collections = collections or {}
        self.failing_fields: Set[str] = set()
        self.fail_membership = False
        self.calls: List[tuple] = []

    async def fetch_all(self, collection: str) -> List[Dict[str, Any]]:
        self.calls.append(("fetch_all", collection))
        return [dict(d) for d in self.collections.get(collection, [])]

    async def query_after(
        self, collection: str, field: str, after: Any, limit: int, after_id: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        self.calls.append(("query_after", collection, field))
        if field in self.failing_fields:
            raise DocumentQueryError("Missing index", collection=collection, field=field)
        cursor = parse_instant(after)

        def position(doc):
            return parse_instant(doc.get(field)), str(doc.get("id"))

        def after_cursor(doc) -> bool:
            instant, doc_id = position(doc)
            if instant is None:
                return False
            if after_id is None:
                return instant > cursor
            return (instant, doc_id) > (cursor, after_id)

        matching = sorted(
            (d for d in self.collections.get(collection, []) if after_cursor(d)),
            key=position,
        )
        return [dict(d) for d in matching[:limit]]

    async def query_contains_any(self, collection: str, field: str, values: Sequence[Any]) -> List[Dict[str, Any]]:
        self.calls.append(("query_contains_any", collection, field))
        if self.fail_membership:
            raise DocumentQueryError("Permission denied", collection=collection, field=field)
        wanted = set(values)
        return [
            dict(d) for d in self.collections.get(collection, [])
            if wanted.intersection(d.get(field) or [])
        ]

    def count(self, kind: str) -> int:
        return sum(1 for call in self.calls if call[0] == kind)


@pytest.fixture
def clock() -> FixedClock:
    """Clock fixed at 2025-03-14 08:00 UTC."""
    return FixedClock(datetime(2025, 3, 14, 8, 0, tzinfo=timezone.utc))


@pytest.fixture
def store() -> LocalStore:
    """In-memory DuckDB store (connects lazily on first use)."""
    return LocalStore(":memory:")


@pytest.fixture
def bus() -> EventBus:
    """Fresh event bus, isolated from the global one."""
    return EventBus()


@pytest.fixture
def documents() -> FakeDocumentStore:
    return FakeDocumentStore()


@pytest.fixture
def ledger_rows() -> List[List[str]]:
    """Ledger export for 2025 with a 'data as of' date in the first row."""
    return [
        ["Πωλήσεις ανά πελάτη", "", "", "", "14/03/2025"],
        ["Ημερομηνία", "Παραστατικό", "Κωδικός", "Επωνυμία", "Αξία"],
        ["05.01.2025", "ΤΔΑ 1001", "c001", "Alpha Toys", "1.240,00"],
        ["10.03.2025", "ΤΔΑ 1002", "C002", "Beta Store", "620,00"],
        ["12.03.2025", "ΠΤΕ 77", "C001", "Alpha Toys", "-124,00"],
        ["20.12.2024", "ΤΔΑ 999", "C003", "Gamma", "500,00"],
        ["15.02.2025", "ΔΑ 12", "C004", "Delta", "300,00"],
        ["16.02.2025", "ΤΔΑ 1003", "C005", "Epsilon", "0,00"],
        ["not a date", "ΤΔΑ 1004", "C006", "Zeta", "100,00"],
    ]


@pytest.fixture
def header_rows() -> List[List[str]]:
    """Header-layout sales export (Playmobil style)."""
    return [
        ["Payer", "Name Payer", "Billing Date", "Sales revenue", "Sales Rep"],
        ["100200", "Toy Corner", "15/01/2025", "1.500,50", "anna  papadopoulou"],
        ["100201", "Kids World", "2025-03-10", "2,000.00", "Nikos Georgiou"],
        ["100200", "Toy Corner", "2025-03-12", "-250", "Anna Papadopoulou"],
        ["100202", "Play Land", "2024-03-05", "800", "Nikos Georgiou"],
        ["100203", "Broken Row", "", "100", "Nikos Georgiou"],
    ]
