"""
Upsert replicated documents into the local copy of a collection.
"""
from typing import Any, Dict, Iterable, List

from salesync.exceptions import CacheWriteError
from salesync.observability import get_logger
from salesync.storage import LocalStore

logger = get_logger(__name__)

DATA_PREFIX = "data"


def merge_documents(
    local: Iterable[Dict[str, Any]],
    incoming: Iterable[Dict[str, Any]],
    id_field: str = "id",
) -> List[Dict[str, Any]]:
    """
    Merge incoming documents onto the local collection by `id_field`.

    Incoming fields win; fields missing from an incoming document keep their
    local value. Documents without an id are ignored. Existing documents keep
    their position and new ones are appended in arrival order, so replaying
    the same incoming set is a no-op.
    """
    merged: Dict[Any, Dict[str, Any]] = {}
    for doc in local or []:
        key = doc.get(id_field)
        if key in (None, ""):
            continue
        merged[key] = dict(doc)

    for doc in incoming or []:
        key = doc.get(id_field)
        if key in (None, ""):
            continue
        merged[key] = {**merged.get(key, {}), **doc}

    return list(merged.values())


def collection_key(collection: str, scope: str) -> str:
    return f"{DATA_PREFIX}:{collection}:{scope}"


class LocalCollectionStore:
    """Local copies of remote collections, one JSON array per (collection, scope)."""

    def __init__(self, store: LocalStore):
        self.store = store

    async def load(self, collection: str, scope: str) -> List[Dict[str, Any]]:
        docs = await self.store.get_json(collection_key(collection, scope), [])
        return docs if isinstance(docs, list) else []

    async def save(self, collection: str, scope: str, docs: List[Dict[str, Any]]) -> bool:
        """Replace the local copy. Returns False if the write failed."""
        try:
            await self.store.set_json(collection_key(collection, scope), docs)
        except CacheWriteError as e:
            logger.error(f"Failed to save {collection} for {scope}: {e}")
            return False
        return True
