"""
Remote tabular resources: fetch guard, checksum and text parsers.

`TabularCache.fetch` decides whether a spreadsheet export has to be
downloaded at all and whether the downloaded body differs from what was
seen before. Meta per URL lives under `sheetmeta:<url>`:

    {"url": ..., "lastFetchedAt": "2025-03-01T08:00:00.000Z", "checksum": "9f0c2a11"}

Parsing helpers turn delimiter-separated text or a gviz query response into
rows of string cells.
"""
import csv
import io
import json
import re
import zlib
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence

import httpx

from salesync.cancellation import CancellationToken, cancellable
from salesync.config import config
from salesync.exceptions import CacheWriteError, RecordParseError, RemoteFetchError
from salesync.observability import Timer, get_logger, metrics
from salesync.storage import LocalStore
from salesync.watermarks import parse_instant, to_iso

logger = get_logger(__name__)

META_PREFIX = "sheetmeta"

Rows = List[List[str]]

_GVIZ_ENVELOPE = re.compile(
    r"google\.visualization\.Query\.setResponse\((.*)\);?\s*$", re.DOTALL
)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def text_checksum(text: str) -> str:
    """CRC-32 of the UTF-8 body as 8 hex digits."""
    return format(zlib.crc32(text.encode("utf-8")) & 0xFFFFFFFF, "08x")


# ═══════════════════════════════════════════════════════════════════════════════
# TEXT PARSERS
# ═══════════════════════════════════════════════════════════════════════════════

def detect_delimiter(text: str) -> str:
    """`;` if the first record has more semicolons than commas outside quotes, else `,`."""
    commas = semicolons = 0
    in_quotes = False
    for ch in text:
        if ch == '"':
            in_quotes = not in_quotes
        elif in_quotes:
            continue
        elif ch in "\r\n":
            break
        elif ch == ",":
            commas += 1
        elif ch == ";":
            semicolons += 1
    return ";" if semicolons > commas else ","


def parse_delimited(text: str, delimiter: Optional[str] = None) -> Rows:
    """
    Split delimiter-separated text into rows of string cells.

    Quoted fields may contain the delimiter, doubled quotes and newlines.
    Blank lines are dropped.
    """
    if not text:
        return []
    delimiter = delimiter or detect_delimiter(text)
    reader = csv.reader(io.StringIO(text, newline=""), delimiter=delimiter, quotechar='"')
    return [row for row in reader if row]


def format_delimited(rows: Sequence[Sequence[Any]], delimiter: str = ",") -> str:
    """
    Inverse of parse_delimited, including its delimiter detection.

    Every cell is quoted, so only the real delimiters sit outside quotes and
    a `;` inside a comma-separated cell cannot win the detection.
    """
    buffer = io.StringIO(newline="")
    writer = csv.writer(
        buffer, delimiter=delimiter, quotechar='"', quoting=csv.QUOTE_ALL, lineterminator="\r\n"
    )
    writer.writerows(["" if cell is None else str(cell) for cell in row] for row in rows)
    return buffer.getvalue()


def unwrap_gviz(text: str) -> Dict[str, Any]:
    """
    Extract the JSON payload from a gviz `setResponse(...)` envelope.

    Raises:
        RecordParseError: The body is neither an envelope nor bare JSON
    """
    match = _GVIZ_ENVELOPE.search(text or "")
    body = match.group(1) if match else (text or "").strip()
    try:
        payload = json.loads(body)
    except json.JSONDecodeError as e:
        raise RecordParseError("Unrecognized gviz response", details=str(e)) from e
    if not isinstance(payload, dict):
        raise RecordParseError("Unrecognized gviz response", details=type(payload).__name__)
    return payload


def _gviz_cell(cell: Optional[Dict[str, Any]]) -> str:
    if not cell or cell.get("v") is None:
        return ""
    value = cell["v"]
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def gviz_rows(payload: Dict[str, Any]) -> Rows:
    """Rows of string cells from a gviz payload; column labels first when present."""
    table = payload.get("table") or {}
    rows: Rows = []

    labels = [col.get("label") or "" for col in table.get("cols", [])]
    if any(labels):
        rows.append(labels)

    for row in table.get("rows", []):
        rows.append([_gviz_cell(cell) for cell in (row or {}).get("c", [])])
    return rows


def project_columns(rows: Rows, keep_columns: Sequence[int]) -> Rows:
    """Keep only the given column indices (missing cells become "")."""
    if not keep_columns:
        return rows
    return [[row[i] if i < len(row) else "" for i in keep_columns] for row in rows]


# ═══════════════════════════════════════════════════════════════════════════════
# FETCH GUARD
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass
class TabularCacheMeta:
    url: str
    last_fetched_at: str
    checksum: str

    def to_dict(self) -> Dict[str, str]:
        return {"url": self.url, "lastFetchedAt": self.last_fetched_at, "checksum": self.checksum}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Optional["TabularCacheMeta"]:
        if not isinstance(data, dict) or not data.get("lastFetchedAt"):
            return None
        return cls(
            url=data.get("url", ""),
            last_fetched_at=data["lastFetchedAt"],
            checksum=str(data.get("checksum", "")),
        )


@dataclass
class FetchResult:
    raw_text: Optional[str]
    refreshed: bool


class TabularCache:
    """
    Checksum + TTL guarded fetch of remote spreadsheet exports.

    Usage:
        async with TabularCache(store) as sheets:
            result = await sheets.fetch(url)
            if result.refreshed:
                rows = parse_delimited(result.raw_text)
    """

    def __init__(
        self,
        store: LocalStore,
        ttl_seconds: int = None,
        timeout: float = None,
        clock: Callable[[], datetime] = utc_now,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.store = store
        self.ttl = timedelta(seconds=ttl_seconds or config.sheets.ttl_seconds)
        self.timeout = timeout or config.sheets.fetch_timeout
        self.clock = clock
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def connect(self) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                follow_redirects=True,
                transport=self._transport,
            )

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "TabularCache":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    @staticmethod
    def meta_key(url: str) -> str:
        return f"{META_PREFIX}:{url}"

    async def get_meta(self, url: str) -> Optional[TabularCacheMeta]:
        return TabularCacheMeta.from_dict(await self.store.get_json(self.meta_key(url)))

    def _is_fresh(self, meta: TabularCacheMeta, now: datetime) -> bool:
        fetched_at = parse_instant(meta.last_fetched_at)
        return fetched_at is not None and now - fetched_at < self.ttl

    async def fetch(
        self,
        url: str,
        force: bool = False,
        cancel: Optional[CancellationToken] = None,
    ) -> FetchResult:
        """
        Download `url` unless the stored copy is recent, report whether it changed.

        Raises:
            RemoteFetchError: Timeout, transport failure or non-success status
        """
        meta = await self.get_meta(url)
        if not force and meta is not None and self._is_fresh(meta, self.clock()):
            metrics.increment("sheets.fresh")
            return FetchResult(None, False)

        text = await cancellable(self._download(url), cancel, "sheet fetch")
        checksum = text_checksum(text)

        if meta is not None and meta.checksum == checksum and self._is_fresh(meta, self.clock()):
            metrics.increment("sheets.unchanged")
            logger.debug(f"Sheet unchanged: {url}")
            return FetchResult(None, False)

        new_meta = TabularCacheMeta(url=url, last_fetched_at=to_iso(self.clock()), checksum=checksum)
        try:
            await self.store.set_json(self.meta_key(url), new_meta.to_dict())
        except CacheWriteError as e:
            logger.warning(f"Failed to store sheet meta for {url}: {e}")

        metrics.increment("sheets.refreshed")
        return FetchResult(text, True)

    async def invalidate(self, url: str) -> None:
        """Drop the meta so the next fetch downloads and reports refreshed."""
        try:
            await self.store.delete(self.meta_key(url))
        except CacheWriteError as e:
            logger.warning(f"Failed to drop sheet meta for {url}: {e}")

    async def _download(self, url: str) -> str:
        if not self._client:
            await self.connect()

        try:
            with Timer("sheet download", logger, warn_threshold_ms=5000):
                response = await self._client.get(url)
        except httpx.TimeoutException as e:
            raise RemoteFetchError(
                f"Sheet fetch timed out after {self.timeout}s", details=url, retry_after=5
            ) from e
        except httpx.RequestError as e:
            raise RemoteFetchError("Sheet fetch failed", details=str(e)) from e

        if not response.is_success:
            logger.error(
                f"Sheet fetch failed ({response.status_code})",
                extra={"url": url, "status_code": response.status_code},
            )
            raise RemoteFetchError(
                f"Sheet fetch failed ({response.status_code})",
                details=url,
                status_code=response.status_code,
            )
        return response.text
