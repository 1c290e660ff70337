"""
Sync orchestration: remote collections and brand spreadsheets → local state.

For every brand:
- each collection goes through replicate → merge (delta) or replace (full)
  → watermark advance; the brand's collections sync concurrently
- the brand's spreadsheets are force-reloaded

A failing step is recorded as `{brand, step, message}` and the remaining
steps still run. Nothing retries; the caller re-triggers a sync.
"""
import asyncio
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from salesync.cancellation import CancellationToken, checkpoint
from salesync.config import BrandConfig, config
from salesync.events import EventBus, SyncEvent, events
from salesync.exceptions import OperationCancelled
from salesync.merger import LocalCollectionStore, merge_documents
from salesync.observability import Timer, get_logger, metrics, sync_context, timed
from salesync.replicator import INCREMENTAL, IncrementalReplicator
from salesync.sheets import SpreadsheetLoader
from salesync.watermarks import WatermarkStore

logger = get_logger(__name__)


@dataclass
class CollectionSyncResult:
    collection: str
    status: str  # ok | error
    mode: Optional[str] = None
    reason: Optional[str] = None
    changed: int = 0
    total: int = 0
    watermark: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class StepError:
    brand: str
    step: str
    message: str

    def to_dict(self) -> Dict[str, str]:
        return asdict(self)


@dataclass
class BrandSyncSummary:
    brand: str
    collections: Dict[str, CollectionSyncResult] = field(default_factory=dict)
    sheets: List[Dict[str, str]] = field(default_factory=list)
    errors: List[StepError] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "brand": self.brand,
            "collections": {k: v.to_dict() for k, v in self.collections.items()},
            "sheets": list(self.sheets),
            "errors": [e.to_dict() for e in self.errors],
        }


@dataclass
class SyncReport:
    brands: List[BrandSyncSummary] = field(default_factory=list)
    duration_ms: float = 0.0

    @property
    def errors(self) -> List[StepError]:
        return [e for summary in self.brands for e in summary.errors]

    @property
    def ok(self) -> bool:
        return not self.errors

    def to_dict(self) -> Dict[str, Any]:
        return {
            "brands": [b.to_dict() for b in self.brands],
            "errors": [e.to_dict() for e in self.errors],
            "duration_ms": round(self.duration_ms, 2),
        }


class SyncService:
    """
    Keeps the local copies of every brand's collections and sheets current.

    Usage:
        service = SyncService(replicator, watermarks, collections, loader)
        report = await service.sync_all(["playmobil", "kivos"])
        if not report.ok:
            for error in report.errors:
                print(error.brand, error.step, error.message)
    """

    def __init__(
        self,
        replicator: IncrementalReplicator,
        watermarks: WatermarkStore,
        collections: LocalCollectionStore,
        loader: Optional[SpreadsheetLoader] = None,
        brands: BrandConfig = None,
        bus: EventBus = None,
    ):
        self.replicator = replicator
        self.watermarks = watermarks
        self.collections = collections
        self.loader = loader
        self.brands = brands or config.brands
        self.bus = bus or events

    async def sync_collection(
        self,
        brand: str,
        collection: str,
        cancel: Optional[CancellationToken] = None,
    ) -> CollectionSyncResult:
        """
        Bring the local copy of one collection up to date.

        Raises:
            RemoteFetchError: Full fetch failed
            OperationCancelled: The token fired
        """
        last_sync = await self.watermarks.get(brand, collection)
        result = await self.replicator.replicate(collection, last_sync, cancel)
        checkpoint(cancel, f"sync {brand}/{collection}")

        if result.mode == INCREMENTAL:
            local = await self.collections.load(collection, brand)
            docs = merge_documents(local, result.docs, "id")
        else:
            docs = result.docs

        if not await self.collections.save(collection, brand, docs):
            # keep the old watermark so the next run fetches these changes again
            return CollectionSyncResult(
                collection=collection,
                status="error",
                mode=result.mode,
                reason=result.reason,
                changed=len(result.docs),
                watermark=last_sync,
                error="Local write failed",
            )

        watermark = await self.watermarks.advance(brand, collection, result.newest_iso)
        metrics.increment(f"sync.{result.mode}")

        summary = CollectionSyncResult(
            collection=collection,
            status="ok",
            mode=result.mode,
            reason=result.reason,
            changed=len(result.docs),
            total=len(docs),
            watermark=watermark,
        )
        logger.info(
            f"Synced {brand}/{collection}: {summary.changed} changed, {summary.total} total",
            extra={"mode": result.mode, "reason": result.reason},
        )
        await self.bus.emit(SyncEvent.COLLECTION_SYNCED, {"brand": brand, **summary.to_dict()})
        return summary

    async def _collection_step(
        self, brand: str, collection: str, cancel: Optional[CancellationToken]
    ) -> CollectionSyncResult:
        try:
            return await self.sync_collection(brand, collection, cancel)
        except OperationCancelled:
            raise
        except Exception as e:
            logger.error(f"Sync of {brand}/{collection} failed: {e}", exc_info=True)
            return CollectionSyncResult(collection=collection, status="error", error=str(e))

    async def _sheet_step(self, key: str, cancel: Optional[CancellationToken]) -> Dict[str, str]:
        try:
            await self.loader.load(key, force=True, cancel=cancel)
            return {"key": key, "status": "ok"}
        except OperationCancelled:
            raise
        except Exception as e:
            logger.error(f"Sheet {key} failed: {e}")
            return {"key": key, "status": "error", "message": str(e)}

    @timed("sync_brand", warn_threshold_ms=20000)
    async def sync_brand(
        self, brand: str, cancel: Optional[CancellationToken] = None
    ) -> BrandSyncSummary:
        """Sync every collection of the brand, then reload its spreadsheets."""
        profile = self.brands.get(brand)
        if profile is None:
            summary = BrandSyncSummary(brand=brand)
            summary.errors.append(StepError(brand, "brand", f"Unknown brand {brand!r}"))
            return summary

        summary = BrandSyncSummary(brand=profile.name)

        results = await asyncio.gather(
            *[self._collection_step(profile.name, c, cancel) for c in profile.collections]
        )
        for result in results:
            summary.collections[result.collection] = result
            if result.status != "ok":
                summary.errors.append(StepError(profile.name, result.collection, result.error or "failed"))

        if self.loader is not None and profile.sync_sheets:
            checkpoint(cancel, f"sync {profile.name} sheets")
            summary.sheets = list(await asyncio.gather(
                *[self._sheet_step(key, cancel) for key in profile.sync_sheets]
            ))
            for sheet in summary.sheets:
                if sheet["status"] != "ok":
                    summary.errors.append(StepError(profile.name, f"sheet:{sheet['key']}", sheet["message"]))

        return summary

    async def sync_all(
        self,
        brands: Optional[Iterable[str]] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> SyncReport:
        """Sync brands one after another and collect a report."""
        brands = list(brands) if brands is not None else self.brands.names
        report = SyncReport()

        with sync_context() as run_id:
            await self.bus.emit(SyncEvent.SYNC_STARTED, {"brands": brands, "run_id": run_id})
            try:
                with Timer("sync_all", logger, warn_threshold_ms=30000) as timer:
                    for brand in brands:
                        checkpoint(cancel, "sync")
                        report.brands.append(await self.sync_brand(brand, cancel))
            except OperationCancelled as e:
                await self.bus.emit(SyncEvent.SYNC_FAILED, {"brands": brands, "error": str(e)})
                raise

            report.duration_ms = timer.elapsed_ms
            metrics.record_timing("sync_all", timer.elapsed_ms)
            logger.info(
                f"Sync finished: {len(report.brands)} brands, {len(report.errors)} errors",
                extra={"duration_ms": round(timer.elapsed_ms, 2)},
            )
            await self.bus.emit(
                SyncEvent.SYNC_COMPLETED,
                {"brands": brands, "duration_ms": report.duration_ms, "errors": len(report.errors)},
            )
        return report

    async def force_full_resync(
        self,
        brands: Optional[Iterable[str]] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> SyncReport:
        """Forget the watermarks of the brands' collections, then sync them."""
        brands = list(brands) if brands is not None else self.brands.names
        for brand in brands:
            profile = self.brands.get(brand)
            if profile is not None:
                await self.watermarks.reset(profile.name, profile.collections)
        return await self.sync_all(brands, cancel)
