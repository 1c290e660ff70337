"""
Registered spreadsheets: load parsed rows by logical name.

Rows are persisted under `sheetdata:<key>` so a sheet that has not changed
is served from local storage without parsing, and a sheet that cannot be
downloaded falls back to the last rows that were stored.
"""
import asyncio
from typing import Dict, Iterable, Optional

from salesync.cancellation import CancellationToken, checkpoint
from salesync.config import SheetSource, SheetsConfig, config
from salesync.events import EventBus, SyncEvent, events
from salesync.exceptions import CacheWriteError, RecordParseError, RemoteFetchError
from salesync.observability import get_logger
from salesync.storage import LocalStore
from salesync.tabular import Rows, TabularCache, gviz_rows, parse_delimited, project_columns, unwrap_gviz

logger = get_logger(__name__)

DATA_PREFIX = "sheetdata"


def parse_sheet(source: SheetSource, raw_text: str) -> Rows:
    """Parse a downloaded body according to the sheet's format."""
    if source.format == "gviz":
        rows = gviz_rows(unwrap_gviz(raw_text))
    else:
        rows = parse_delimited(raw_text)
    return project_columns(rows, source.keep_columns)


class SpreadsheetLoader:
    """Logical-name access to registered sheets on top of TabularCache."""

    def __init__(
        self,
        store: LocalStore,
        tabular: TabularCache,
        sheets: SheetsConfig = None,
        bus: EventBus = None,
    ):
        self.store = store
        self.tabular = tabular
        self.sheets = sheets or config.sheets
        self.bus = bus or events

    @staticmethod
    def data_key(key: str) -> str:
        return f"{DATA_PREFIX}:{key}"

    async def stored_rows(self, key: str) -> Optional[Rows]:
        rows = await self.store.get_json(self.data_key(key))
        return rows if isinstance(rows, list) else None

    async def load(
        self,
        key: str,
        force: bool = False,
        cancel: Optional[CancellationToken] = None,
    ) -> Rows:
        """
        Rows of the sheet registered as `key`.

        Raises:
            KeyError: Unknown sheet key
            RemoteFetchError: Download failed and nothing is stored locally
        """
        source = self.sheets.get(key)
        if source is None:
            raise KeyError(f"Unknown spreadsheet: {key}")
        if not source.url:
            logger.warning(f"Spreadsheet {key} has no URL configured")
            return await self.stored_rows(key) or []

        try:
            result = await self.tabular.fetch(source.url, force=force, cancel=cancel)
            if not result.refreshed:
                stored = await self.stored_rows(key)
                if stored is not None:
                    return stored
                # meta without data (e.g. data write failed earlier)
                await self.tabular.invalidate(source.url)
                result = await self.tabular.fetch(source.url, force=True, cancel=cancel)
        except RemoteFetchError as e:
            stored = await self.stored_rows(key)
            if stored is None:
                raise
            logger.warning(f"Using stored rows for {key}: {e}")
            return stored

        checkpoint(cancel, f"load {key}")
        try:
            rows = parse_sheet(source, result.raw_text or "")
        except RecordParseError as e:
            # forget the checksum so the next load retries the download
            await self.tabular.invalidate(source.url)
            stored = await self.stored_rows(key)
            if stored is None:
                raise
            logger.warning(f"Unparseable body for {key}, using stored rows: {e}")
            return stored

        try:
            await self.store.set_json(self.data_key(key), rows)
        except CacheWriteError as e:
            logger.warning(f"Failed to store rows for {key}: {e}")

        logger.info(f"Spreadsheet {key} refreshed: {len(rows)} rows")
        await self.bus.emit(
            SyncEvent.SHEET_REFRESHED,
            {"key": key, "url": source.url, "rows": len(rows)},
        )
        return rows

    async def load_many(
        self,
        keys: Iterable[str],
        force: bool = False,
        cancel: Optional[CancellationToken] = None,
    ) -> Dict[str, Rows]:
        """Load several sheets concurrently."""
        keys = list(keys)
        results = await asyncio.gather(*[self.load(k, force=force, cancel=cancel) for k in keys])
        return dict(zip(keys, results))
