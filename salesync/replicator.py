"""
Incremental replication of remote collections.

Given a collection and its watermark, fetch only what changed since the
watermark. Documents do not agree on which timestamp field they carry, so
the delta is the union of one range query per freshness field:

    updatedAt → lastUpdated → importedAt → createdAt

A field whose query fails (missing index, permission) contributes nothing.
When there is no usable watermark, or the union comes back empty, the whole
collection is re-read.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence

from salesync.cancellation import CancellationToken, cancellable, checkpoint
from salesync.config import config
from salesync.exceptions import DocumentQueryError, RemoteFetchError
from salesync.firestore import Document, DocumentStore
from salesync.observability import Timer, get_logger, metrics
from salesync.watermarks import parse_instant, to_iso

logger = get_logger(__name__)

FULL = "full"
INCREMENTAL = "incremental"

REASON_INITIAL = "initial"
REASON_INVALID_LAST_SYNC = "invalid_last_sync"
REASON_EMPTY_DELTA = "empty_delta"
REASON_DELTA = "delta"
REASON_NO_CHANGES = "no_changes"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class DeltaFetchResult:
    """Outcome of one replicate() call, consumed by the local merge step."""

    mode: str
    reason: str
    docs: List[Document] = field(default_factory=list)
    newest_iso: str = ""

    @property
    def is_full(self) -> bool:
        return self.mode == FULL


def document_timestamp(doc: Document, fields: Sequence[str]) -> Optional[datetime]:
    """First usable freshness timestamp of a document, in priority order."""
    for name in fields:
        value = doc.get(name)
        if value is None:
            continue
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            # epoch milliseconds
            return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
        instant = parse_instant(value)
        if instant is not None:
            return instant
    return None


def newest_timestamp_iso(
    docs: Sequence[Document],
    fields: Sequence[str],
    now: Callable[[], datetime] = utc_now,
) -> str:
    """Newest freshness timestamp across docs as ISO-8601, or now if none has one."""
    newest: Optional[datetime] = None
    for doc in docs:
        stamp = document_timestamp(doc, fields)
        if stamp is not None and (newest is None or stamp > newest):
            newest = stamp
    return to_iso(newest or now())


class IncrementalReplicator:
    """
    Delta fetch against a DocumentStore.

    Per-field queries run one after another so a single index is never hit
    by concurrent scans.
    """

    def __init__(
        self,
        documents: DocumentStore,
        freshness_fields: Sequence[str] = None,
        page_size: int = None,
        full_fetch_on_empty_delta: bool = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.documents = documents
        self.freshness_fields = tuple(freshness_fields or config.sync.freshness_fields)
        self.page_size = page_size or config.firestore.page_size
        self.full_fetch_on_empty_delta = (
            config.sync.full_fetch_on_empty_delta
            if full_fetch_on_empty_delta is None
            else full_fetch_on_empty_delta
        )
        self.clock = clock

    async def replicate(
        self,
        collection: str,
        last_sync_iso: Optional[str],
        cancel: Optional[CancellationToken] = None,
    ) -> DeltaFetchResult:
        """
        Fetch what changed in `collection` since `last_sync_iso`.

        Raises:
            RemoteFetchError: The full-fetch path failed
            OperationCancelled: The token fired
        """
        if not last_sync_iso:
            return await self._full_fetch(collection, REASON_INITIAL, cancel)

        watermark = parse_instant(last_sync_iso)
        if watermark is None:
            logger.warning(f"Unparseable watermark {last_sync_iso!r} for {collection}")
            return await self._full_fetch(collection, REASON_INVALID_LAST_SYNC, cancel)

        union: Dict[str, Document] = {}
        with Timer(f"delta {collection}", logger):
            for name in self.freshness_fields:
                checkpoint(cancel, f"replicate {collection}")
                for doc in await self._fetch_field(collection, name, watermark, cancel):
                    doc_id = doc.get("id")
                    if doc_id:
                        # later fields overwrite earlier ones
                        union[doc_id] = doc

        if not union:
            if self.full_fetch_on_empty_delta:
                return await self._full_fetch(collection, REASON_EMPTY_DELTA, cancel)
            metrics.increment("replicate.no_changes")
            return DeltaFetchResult(
                mode=INCREMENTAL,
                reason=REASON_NO_CHANGES,
                docs=[],
                newest_iso=to_iso(watermark),
            )

        docs = list(union.values())
        metrics.increment("replicate.incremental")
        logger.info(
            f"Delta for {collection}: {len(docs)} changed",
            extra={"collection": collection, "since": last_sync_iso},
        )
        return DeltaFetchResult(
            mode=INCREMENTAL,
            reason=REASON_DELTA,
            docs=docs,
            newest_iso=newest_timestamp_iso(docs, self.freshness_fields, self.clock),
        )

    async def _full_fetch(
        self, collection: str, reason: str, cancel: Optional[CancellationToken]
    ) -> DeltaFetchResult:
        with Timer(f"full fetch {collection}", logger):
            docs = await cancellable(
                self.documents.fetch_all(collection), cancel, f"fetch {collection}"
            )
        metrics.increment("replicate.full")
        logger.info(
            f"Full fetch of {collection}: {len(docs)} documents",
            extra={"collection": collection, "reason": reason},
        )
        return DeltaFetchResult(
            mode=FULL,
            reason=reason,
            docs=docs,
            newest_iso=newest_timestamp_iso(docs, self.freshness_fields, self.clock),
        )

    async def _fetch_field(
        self,
        collection: str,
        field_name: str,
        after: datetime,
        cancel: Optional[CancellationToken],
    ) -> List[Document]:
        """
        All documents with `field_name` strictly after `after`; [] if the query fails.

        Pages resume from the (value, id) of the last document, so documents
        sharing a timestamp across a page boundary are all returned.
        """
        found: List[Document] = []
        cursor: Any = after
        cursor_id: Optional[str] = None
        try:
            while True:
                page = await cancellable(
                    self.documents.query_after(
                        collection, field_name, cursor, self.page_size, after_id=cursor_id
                    ),
                    cancel,
                    f"query {collection}.{field_name}",
                )
                if not page:
                    break
                found.extend(page)
                if len(page) < self.page_size:
                    break
                last, last_id = page[-1].get(field_name), page[-1].get("id")
                if last is None or last_id is None or (last, last_id) == (cursor, cursor_id):
                    break
                cursor, cursor_id = last, str(last_id)
        except (DocumentQueryError, RemoteFetchError) as e:
            metrics.increment("replicate.field_errors")
            logger.warning(
                f"Skipping {collection}.{field_name}: {e}",
                extra={"collection": collection, "field": field_name},
            )
            return []
        return found
