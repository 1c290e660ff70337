"""
Per (scope, collection) sync watermarks.

A watermark is the ISO-8601 timestamp of the newest record observed in the
last successful sync of one collection for one brand. It only moves forward;
`reset` is the explicit way to start over with a full fetch.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable, Optional

from salesync.exceptions import CacheWriteError
from salesync.observability import get_logger
from salesync.storage import LocalStore

logger = get_logger(__name__)

SYNC_PREFIX = "sync:last"


@dataclass(frozen=True)
class Watermark:
    scope: str
    collection_name: str
    last_sync_iso: Optional[str]


def watermark_key(scope: str, collection: str) -> str:
    return f"{SYNC_PREFIX}:{scope}:{collection}"


def parse_instant(value) -> Optional[datetime]:
    """
    Parse an ISO-8601 instant into an aware UTC datetime.

    Naive values are taken as UTC. Returns None for empty or invalid input.
    """
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    else:
        return None

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def to_iso(instant: datetime) -> str:
    """UTC ISO-8601 with millisecond precision and a Z suffix."""
    instant = instant.astimezone(timezone.utc)
    return instant.isoformat(timespec="milliseconds").replace("+00:00", "Z")


class WatermarkStore:
    """Watermarks persisted under `sync:last:<scope>:<collection>`."""

    def __init__(self, store: LocalStore):
        self.store = store

    async def get(self, scope: str, collection: str) -> Optional[str]:
        value = await self.store.get(watermark_key(scope, collection))
        return value or None

    async def get_watermark(self, scope: str, collection: str) -> Watermark:
        return Watermark(scope, collection, await self.get(scope, collection))

    async def advance(self, scope: str, collection: str, iso: str) -> Optional[str]:
        """
        Move the watermark to `iso` unless that would move it backwards.

        Returns the watermark value stored after the call. Write failures are
        logged and leave the previous value in place.
        """
        candidate = parse_instant(iso)
        if candidate is None:
            logger.warning(f"Ignoring invalid watermark {iso!r} for {scope}/{collection}")
            return await self.get(scope, collection)

        current_raw = await self.get(scope, collection)
        current = parse_instant(current_raw)
        if current is not None and candidate < current:
            logger.debug(
                f"Watermark for {scope}/{collection} stays at {current_raw}",
                extra={"rejected": iso},
            )
            return current_raw

        value = to_iso(candidate)
        try:
            await self.store.set(watermark_key(scope, collection), value)
        except CacheWriteError as e:
            logger.warning(f"Failed to persist watermark for {scope}/{collection}: {e}")
            return current_raw
        return value

    async def reset(self, scope: str, collections: Iterable[str]) -> None:
        """Forget the watermarks so the next sync of each collection is a full fetch."""
        for collection in collections:
            await self.store.delete(watermark_key(scope, collection))
        logger.info(f"Watermarks reset for {scope}")
