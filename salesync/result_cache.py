"""
Result cache for computed KPI reports.

Entries are keyed by brand plus the sorted salesperson selection, so the
order in which a user ticks names does not matter:

    kpi:results:kivos:ALL
    kpi:results:playmobil:ANNA|NIKOS

Every entry records the data version current when it was written. Bumping
`kpi:data:version` invalidates all entries at once without enumerating them;
stale entries are removed lazily when read. At most `max_entries` filter
combinations are kept, evicting the least recently accessed.

Failures of local persistence are logged and reported as misses; caching is
never required for a correct answer.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional

from salesync.config import config
from salesync.events import EventBus, SyncEvent, events
from salesync.exceptions import SalesyncError
from salesync.observability import get_logger, metrics
from salesync.storage import LocalStore

logger = get_logger(__name__)

RESULT_PREFIX = "kpi:results:"
INDEX_KEY = "kpi:results:index"
VERSION_KEY = "kpi:data:version"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def filter_key(brand: str, filters: Optional[Iterable[str]] = None) -> str:
    """Canonical `<brand>:<sorted filters joined by |>` or `<brand>:ALL`."""
    names = sorted({str(f).strip() for f in (filters or []) if f and str(f).strip()})
    if not names:
        return f"{brand}:ALL"
    return f"{brand}:" + "|".join(names)


@dataclass
class CacheStats:
    """Result cache counters for monitoring."""

    hits: int = 0
    misses: int = 0
    errors: int = 0
    sets: int = 0
    evictions: int = 0
    invalidations: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return (self.hits / total * 100) if total > 0 else 0.0

    def to_dict(self) -> dict:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "errors": self.errors,
            "sets": self.sets,
            "evictions": self.evictions,
            "invalidations": self.invalidations,
            "hit_rate_percent": round(self.hit_rate, 2),
        }


@dataclass
class ResultCacheEntry:
    filter_key: str
    data_version: int
    timestamp: int  # epoch ms
    results: Any

    def to_dict(self) -> Dict[str, Any]:
        return {
            "filterKey": self.filter_key,
            "dataVersion": self.data_version,
            "timestamp": self.timestamp,
            "results": self.results,
        }

    @classmethod
    def from_dict(cls, data: Any) -> Optional["ResultCacheEntry"]:
        if not isinstance(data, dict) or "results" not in data:
            return None
        try:
            return cls(
                filter_key=data["filterKey"],
                data_version=int(data["dataVersion"]),
                timestamp=int(data["timestamp"]),
                results=data["results"],
            )
        except (KeyError, TypeError, ValueError):
            return None


class ResultCache:
    """
    Versioned, size-capped cache of KPI results per filter combination.

    Usage:
        cached = await results.get("kivos", ["NIKOS"])
        if cached is None:
            cached = report.to_dict()
            await results.set("kivos", ["NIKOS"], cached)
    """

    def __init__(
        self,
        store: LocalStore,
        ttl_seconds: int = None,
        max_entries: int = None,
        clock: Callable[[], datetime] = utc_now,
        bus: EventBus = None,
    ):
        self.store = store
        self.ttl_ms = (ttl_seconds or config.kpi.result_ttl_seconds) * 1000
        self.max_entries = max_entries or config.kpi.max_cached_filters
        self.clock = clock
        self.bus = bus or events
        self._stats = CacheStats()

    @staticmethod
    def entry_key(key: str) -> str:
        return f"{RESULT_PREFIX}{key}"

    def _now_ms(self) -> int:
        return int(self.clock().timestamp() * 1000)

    # ─── Data version ────────────────────────────────────────────────────────

    async def get_data_version(self) -> int:
        raw = await self.store.get(VERSION_KEY)
        try:
            return int(raw) if raw else 0
        except ValueError:
            return 0

    async def _ensure_data_version(self) -> int:
        version = await self.get_data_version()
        if version == 0:
            version = self._now_ms()
            await self.store.set(VERSION_KEY, str(version))
        return version

    # ─── Index ───────────────────────────────────────────────────────────────

    async def _load_index(self) -> List[Dict[str, Any]]:
        index = await self.store.get_json(INDEX_KEY, [])
        if not isinstance(index, list):
            return []
        return [item for item in index if isinstance(item, dict) and "key" in item]

    async def _touch(self, key: str, now: int) -> None:
        """Record an access and evict the least recently used keys above the cap."""
        index = [item for item in await self._load_index() if item["key"] != key]
        index.append({"key": key, "lastAccess": now})

        if len(index) > self.max_entries:
            index.sort(key=lambda item: item.get("lastAccess", 0))
            overflow = len(index) - self.max_entries
            for item in index[:overflow]:
                await self.store.delete(self.entry_key(item["key"]))
                self._stats.evictions += 1
                logger.debug(f"Evicted KPI results {item['key']}")
            index = index[overflow:]

        await self.store.set_json(INDEX_KEY, index)

    async def _remove(self, key: str) -> None:
        await self.store.delete(self.entry_key(key))
        index = await self._load_index()
        remaining = [item for item in index if item["key"] != key]
        if len(remaining) != len(index):
            await self.store.set_json(INDEX_KEY, remaining)

    # ─── Public API ──────────────────────────────────────────────────────────

    async def get(self, brand: str, filters: Optional[Iterable[str]] = None) -> Optional[Any]:
        """Cached results for the filter combination, or None on a miss."""
        key = filter_key(brand, filters)
        try:
            entry = ResultCacheEntry.from_dict(await self.store.get_json(self.entry_key(key)))
            if entry is None:
                return self._miss(key, "absent")

            if entry.data_version != await self.get_data_version():
                await self._remove(key)
                return self._miss(key, "version")

            now = self._now_ms()
            if now - entry.timestamp > self.ttl_ms:
                await self._remove(key)
                return self._miss(key, "expired")

            await self._touch(key, now)
        except SalesyncError as e:
            self._stats.errors += 1
            logger.warning(f"KPI cache read failed for {key}: {e}")
            return None

        self._stats.hits += 1
        metrics.increment("kpi_cache.hits")
        return entry.results

    def _miss(self, key: str, reason: str) -> None:
        self._stats.misses += 1
        metrics.increment("kpi_cache.misses")
        logger.debug(f"KPI cache miss for {key} ({reason})")
        return None

    async def set(self, brand: str, filters: Optional[Iterable[str]], results: Any) -> bool:
        """Store results for the filter combination. Returns False if nothing was stored."""
        key = filter_key(brand, filters)
        try:
            version = await self._ensure_data_version()
            now = self._now_ms()
            entry = ResultCacheEntry(filter_key=key, data_version=version, timestamp=now, results=results)
            # one write per entry: a reader sees either the old entry or the new one
            await self.store.set_json(self.entry_key(key), entry.to_dict())
            await self._touch(key, now)
        except (SalesyncError, TypeError, ValueError) as e:
            self._stats.errors += 1
            logger.warning(f"KPI cache write failed for {key}: {e}")
            return False

        self._stats.sets += 1
        return True

    async def invalidate_all(self, reason: str = "manual") -> None:
        """Bump the data version and drop the index; entries die on next read."""
        try:
            current = await self.get_data_version()
            version = max(self._now_ms(), current + 1)
            await self.store.set(VERSION_KEY, str(version))
            await self.store.delete(INDEX_KEY)
        except SalesyncError as e:
            self._stats.errors += 1
            logger.warning(f"KPI cache invalidation failed: {e}")
            return

        self._stats.invalidations += 1
        logger.info(f"KPI cache invalidated ({reason})", extra={"data_version": version})
        await self.bus.emit(SyncEvent.KPI_CACHE_INVALIDATED, {"reason": reason, "data_version": version})

    async def clear_all(self) -> int:
        """Delete every stored result entry and the index. Returns entries removed."""
        try:
            removed = await self.store.delete_prefix(RESULT_PREFIX)
        except SalesyncError as e:
            self._stats.errors += 1
            logger.warning(f"KPI cache clear failed: {e}")
            return 0
        logger.info(f"KPI cache cleared ({removed} keys)")
        return removed

    async def stats(self) -> Dict[str, Any]:
        index = await self._load_index()
        return {
            **self._stats.to_dict(),
            "entries": len(index),
            "max_entries": self.max_entries,
            "data_version": await self.get_data_version(),
            "keys": [item["key"] for item in sorted(index, key=lambda i: i.get("lastAccess", 0), reverse=True)],
        }

    def register_invalidation_handlers(self) -> None:
        """Invalidate all results whenever a source sheet is refreshed."""
        self.bus.subscribe(SyncEvent.SHEET_REFRESHED, self._on_sheet_refreshed)

    async def _on_sheet_refreshed(self, data: Dict[str, Any]) -> None:
        await self.invalidate_all(reason=f"sheet:{data.get('key', '?')}")
