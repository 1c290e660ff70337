"""
Async client for the remote document store (Firestore REST API).

Provides the three query shapes the sync layer needs:
- full collection read, paged by `pageToken`
- ordered range query resuming after a (value, document id) cursor, one page at a time
- membership query (`field array-contains-any values`), batched by 10

Documents come back as plain dicts: typed Firestore values are decoded to
Python values (`timestampValue` → aware datetime) and the document id is
stored under "id".
"""
import base64
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol, Sequence

import httpx

from salesync.config import FirestoreConfig, config
from salesync.exceptions import DocumentQueryError, RemoteFetchError
from salesync.observability import Timer, get_logger, get_run_id

logger = get_logger(__name__)

Document = Dict[str, Any]

_FRACTION = re.compile(r"\.(\d{6})\d+")


class DocumentStore(Protocol):
    """Remote collection queries used by the replicator and customer directory."""

    async def fetch_all(self, collection: str) -> List[Document]:
        ...

    async def query_after(
        self, collection: str, field: str, after: Any, limit: int, after_id: Optional[str] = None
    ) -> List[Document]:
        ...

    async def query_contains_any(
        self, collection: str, field: str, values: Sequence[Any]
    ) -> List[Document]:
        ...


# ═══════════════════════════════════════════════════════════════════════════════
# VALUE CODEC
# ═══════════════════════════════════════════════════════════════════════════════

def _parse_timestamp(text: str) -> datetime:
    # Firestore sends nanoseconds; datetime keeps microseconds
    text = _FRACTION.sub(r".\1", text)
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return datetime.fromisoformat(text)


def decode_value(value: Dict[str, Any]) -> Any:
    """Convert one Firestore typed value into a Python value."""
    if "nullValue" in value:
        return None
    if "booleanValue" in value:
        return bool(value["booleanValue"])
    if "integerValue" in value:
        return int(value["integerValue"])
    if "doubleValue" in value:
        return float(value["doubleValue"])
    if "timestampValue" in value:
        return _parse_timestamp(value["timestampValue"])
    if "stringValue" in value:
        return value["stringValue"]
    if "bytesValue" in value:
        # kept base64-encoded so documents stay JSON-serializable
        return value["bytesValue"]
    if "referenceValue" in value:
        return value["referenceValue"]
    if "geoPointValue" in value:
        point = value["geoPointValue"]
        return {"latitude": point.get("latitude", 0.0), "longitude": point.get("longitude", 0.0)}
    if "arrayValue" in value:
        return [decode_value(v) for v in value["arrayValue"].get("values", [])]
    if "mapValue" in value:
        return {k: decode_value(v) for k, v in value["mapValue"].get("fields", {}).items()}
    raise ValueError(f"Unsupported Firestore value: {sorted(value)}")


def encode_value(value: Any) -> Dict[str, Any]:
    """Convert a Python value into a Firestore typed value."""
    if value is None:
        return {"nullValue": None}
    if isinstance(value, bool):
        return {"booleanValue": value}
    if isinstance(value, int):
        return {"integerValue": str(value)}
    if isinstance(value, float):
        return {"doubleValue": value}
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        stamp = value.astimezone(timezone.utc).isoformat(timespec="microseconds")
        return {"timestampValue": stamp.replace("+00:00", "Z")}
    if isinstance(value, str):
        return {"stringValue": value}
    if isinstance(value, bytes):
        return {"bytesValue": base64.b64encode(value).decode("ascii")}
    if isinstance(value, (list, tuple)):
        return {"arrayValue": {"values": [encode_value(v) for v in value]}}
    if isinstance(value, dict):
        return {"mapValue": {"fields": {k: encode_value(v) for k, v in value.items()}}}
    raise TypeError(f"Cannot encode {type(value).__name__} as a Firestore value")


def decode_document(raw: Dict[str, Any]) -> Document:
    """Decode a Firestore document resource into `{"id": ..., **fields}`."""
    doc_id = raw.get("name", "").rsplit("/", 1)[-1]
    fields = {k: decode_value(v) for k, v in raw.get("fields", {}).items()}
    fields["id"] = doc_id
    return fields


def chunked(values: Sequence[Any], size: int) -> List[List[Any]]:
    return [list(values[i:i + size]) for i in range(0, len(values), size)]


# ═══════════════════════════════════════════════════════════════════════════════
# CLIENT
# ═══════════════════════════════════════════════════════════════════════════════

class FirestoreClient:
    """
    Async Firestore REST client.

    Usage:
        async with FirestoreClient() as client:
            docs = await client.query_after("products", "updatedAt", watermark, 500)
    """

    def __init__(
        self,
        settings: FirestoreConfig = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings or config.firestore
        if not self.settings.project_id:
            raise ValueError("FIRESTORE_PROJECT_ID is required")
        self.timeout = self.settings.request_timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def document_root(self) -> str:
        """Resource name prefix of every document (used in reference values)."""
        s = self.settings
        return f"projects/{s.project_id}/databases/{s.database}/documents"

    @property
    def documents_url(self) -> str:
        return f"{self.settings.base_url}/{self.document_root}"

    @property
    def headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json", "Content-Type": "application/json"}
        if self.settings.token:
            headers["Authorization"] = f"Bearer {self.settings.token}"
        return headers

    async def connect(self) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(
                headers=self.headers,
                timeout=self.timeout,
                transport=self._transport,
                limits=httpx.Limits(max_keepalive_connections=10, max_connections=20),
            )

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "FirestoreClient":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def _request(
        self,
        method: str,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
    ) -> httpx.Response:
        """
        Send one request.

        Raises:
            RemoteFetchError: Timeout or transport failure
        """
        if not self._client:
            await self.connect()

        params = dict(params or {})
        if self.settings.api_key:
            params["key"] = self.settings.api_key

        request_headers = {}
        run_id = get_run_id()
        if run_id:
            request_headers["X-Request-ID"] = run_id

        try:
            with Timer(f"firestore {method} {url.rsplit('/', 1)[-1]}", logger):
                return await self._client.request(
                    method=method,
                    url=url,
                    params=params,
                    json=json,
                    headers=request_headers or None,
                )
        except httpx.TimeoutException as e:
            logger.error(f"Request timeout: {method} {url}", extra={"timeout": self.timeout})
            raise RemoteFetchError(
                f"Request timeout after {self.timeout}s", retry_after=5
            ) from e
        except httpx.RequestError as e:
            logger.error(f"Request failed: {method} {url} - {e}")
            raise RemoteFetchError("Request failed", details=str(e)) from e

    # ─── Full fetch ──────────────────────────────────────────────────────────

    async def fetch_all(self, collection: str) -> List[Document]:
        """
        Read every document of a collection.

        Raises:
            RemoteFetchError: Network failure or non-success response
        """
        documents: List[Document] = []
        page_token: Optional[str] = None

        while True:
            params: Dict[str, Any] = {"pageSize": self.settings.page_size}
            if page_token:
                params["pageToken"] = page_token

            response = await self._request("GET", f"{self.documents_url}/{collection}", params=params)
            if response.status_code >= 400:
                error_text = response.text[:500]
                logger.error(
                    f"List {collection} failed with {response.status_code}: {error_text}",
                    extra={"collection": collection, "status_code": response.status_code},
                )
                raise RemoteFetchError(
                    f"Collection fetch failed ({response.status_code})",
                    details=error_text,
                    status_code=response.status_code,
                )

            payload = response.json() if response.content else {}
            documents.extend(decode_document(d) for d in payload.get("documents", []))

            page_token = payload.get("nextPageToken")
            if not page_token:
                break

        logger.info(f"Fetched {len(documents)} documents from {collection}")
        return documents

    # ─── Structured queries ──────────────────────────────────────────────────

    async def _run_query(self, collection: str, structured_query: Dict[str, Any], field: str) -> List[Document]:
        query = {"from": [{"collectionId": collection}], **structured_query}
        response = await self._request(
            "POST", f"{self.documents_url}:runQuery", json={"structuredQuery": query}
        )

        if response.status_code >= 400:
            error_text = response.text[:500]
            raise DocumentQueryError(
                f"Query on {collection}.{field} rejected ({response.status_code})",
                details=error_text,
                collection=collection,
                field=field,
            )

        rows = response.json() if response.content else []
        # Entries without "document" only carry readTime (empty result / progress)
        return [decode_document(row["document"]) for row in rows if "document" in row]

    async def query_after(
        self, collection: str, field: str, after: Any, limit: int, after_id: Optional[str] = None
    ) -> List[Document]:
        """
        One page of documents ordered by (`field`, document name).

        Without `after_id` the page starts strictly after the value `after`.
        With it, the page resumes strictly after the document `after_id`
        holding that value, so documents sharing the value that did not fit
        on the previous page are still returned.

        Raises:
            DocumentQueryError: Query rejected (missing index, permissions)
            RemoteFetchError: Network failure
        """
        cursor = [encode_value(after)]
        if after_id is not None:
            cursor.append({"referenceValue": f"{self.document_root}/{collection}/{after_id}"})
        return await self._run_query(
            collection,
            {
                "orderBy": [
                    {"field": {"fieldPath": field}, "direction": "ASCENDING"},
                    {"field": {"fieldPath": "__name__"}, "direction": "ASCENDING"},
                ],
                "startAt": {"values": cursor, "before": False},
                "limit": limit,
            },
            field,
        )

    async def query_contains_any(
        self, collection: str, field: str, values: Sequence[Any]
    ) -> List[Document]:
        """
        Documents whose array `field` contains any of `values`.

        Values are sent in batches of `membership_batch_size`; results are
        unioned by document id.
        """
        found: Dict[str, Document] = {}
        for batch in chunked(list(values), self.settings.membership_batch_size):
            docs = await self._run_query(
                collection,
                {
                    "where": {
                        "fieldFilter": {
                            "field": {"fieldPath": field},
                            "op": "ARRAY_CONTAINS_ANY",
                            "value": encode_value(batch),
                        }
                    }
                },
                field,
            )
            for doc in docs:
                found[doc["id"]] = doc
        return list(found.values())
