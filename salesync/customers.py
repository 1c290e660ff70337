"""
Customer directory: which customers belong to which salesperson.

Customer documents carry a `merch` array naming the salespeople responsible
for them. The directory answers membership questions from the remote store
and falls back to the locally synced copy of the collection when the remote
query cannot be made.
"""
from typing import Any, Dict, Iterable, List, Optional, Set

from salesync.cancellation import CancellationToken, cancellable
from salesync.exceptions import DocumentQueryError, RemoteFetchError
from salesync.firestore import DocumentStore
from salesync.merger import LocalCollectionStore
from salesync.numbers import normalize_customer_code, normalize_salesman
from salesync.observability import get_logger

logger = get_logger(__name__)

CODE_FIELD = "customerCode"
MERCH_FIELD = "merch"


def merch_list(doc: Dict[str, Any]) -> List[str]:
    """The `merch` field as a list, whether stored as array or single string."""
    value = doc.get(MERCH_FIELD)
    if isinstance(value, list):
        return [str(v) for v in value if v]
    return [str(value)] if value else []


class CustomerDirectory:
    def __init__(self, documents: DocumentStore, collections: LocalCollectionStore):
        self.documents = documents
        self.collections = collections

    async def codes_for(
        self,
        collection: str,
        scope: str,
        salesmen: Iterable[str],
        cancel: Optional[CancellationToken] = None,
    ) -> Set[str]:
        """Normalized codes of customers handled by any of `salesmen`."""
        names = sorted({s.strip() for s in salesmen if s and s.strip()})
        if not names:
            return set()

        try:
            docs = await cancellable(
                self.documents.query_contains_any(collection, MERCH_FIELD, names),
                cancel,
                f"customers of {collection}",
            )
        except (DocumentQueryError, RemoteFetchError) as e:
            logger.warning(f"Membership query on {collection} failed, using local copy: {e}")
            return await self.local_codes_for(collection, scope, names)

        codes = {normalize_customer_code(d.get(CODE_FIELD)) for d in docs}
        codes.discard("")
        logger.debug(f"{len(codes)} customers for {len(names)} salespeople in {collection}")
        return codes

    async def local_codes_for(self, collection: str, scope: str, salesmen: Iterable[str]) -> Set[str]:
        wanted = {normalize_salesman(s) for s in salesmen}
        codes = set()
        for doc in await self.collections.load(collection, scope):
            if wanted.intersection(normalize_salesman(m) for m in merch_list(doc)):
                codes.add(normalize_customer_code(doc.get(CODE_FIELD)))
        codes.discard("")
        return codes

    async def single_salesman_assignments(self, collection: str, scope: str) -> Dict[str, str]:
        """customer code -> salesperson, for customers with exactly one salesperson."""
        assignments = {}
        for doc in await self.collections.load(collection, scope):
            merch = merch_list(doc)
            code = normalize_customer_code(doc.get(CODE_FIELD))
            if code and len(merch) == 1:
                assignments[code] = normalize_salesman(merch[0])
        return assignments
