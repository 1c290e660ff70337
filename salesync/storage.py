"""
Local key-value persistence on DuckDB.

Every piece of client-side state (watermarks, sheet rows and meta, KPI
result entries, local copies of remote collections) is a string value under
a namespaced key in a single `kv_store` table.

Writes are single-key `INSERT OR REPLACE`; there is no multi-key
transaction, so read-modify-write cycles across keys can interleave and the
last write wins.
"""
import asyncio
import json
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, List, Optional

import duckdb

from salesync.exceptions import CacheWriteError
from salesync.observability import get_logger

logger = get_logger(__name__)

MEMORY = ":memory:"


class LocalStore:
    """
    Async-compatible DuckDB key-value store.

    Usage:
        async with LocalStore("data/salesync.duckdb") as store:
            await store.set_json("sync:last:kivos:products_kivos", "2025-01-01T00:00:00Z")
    """

    def __init__(self, db_path: str = MEMORY):
        self.db_path = str(db_path)
        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        self._lock = asyncio.Lock()  # DuckDB connections are not thread-safe

    async def connect(self) -> None:
        """Open the database and create the table."""
        async with self._lock:
            if self._connection is not None:
                return
            if self.db_path != MEMORY:
                Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
            self._connection = duckdb.connect(self.db_path)
            self._connection.execute("""
                CREATE TABLE IF NOT EXISTS kv_store (
                    key VARCHAR PRIMARY KEY,
                    value VARCHAR,
                    updated_at TIMESTAMP WITH TIME ZONE DEFAULT CURRENT_TIMESTAMP
                )
            """)
            logger.info(f"Local store connected: {self.db_path}")

    async def close(self) -> None:
        async with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None
                logger.info("Local store closed")

    async def __aenter__(self) -> "LocalStore":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    @asynccontextmanager
    async def connection(self):
        """Serialized access to the DuckDB connection."""
        if self._connection is None:
            await self.connect()
        async with self._lock:
            yield self._connection

    # ─── Raw string values ───────────────────────────────────────────────────

    async def get(self, key: str) -> Optional[str]:
        async with self.connection() as conn:
            row = await asyncio.to_thread(
                lambda: conn.execute("SELECT value FROM kv_store WHERE key = ?", [key]).fetchone()
            )
        return row[0] if row else None

    async def set(self, key: str, value: str) -> None:
        """
        Replace the value stored under key.

        Raises:
            CacheWriteError: If DuckDB rejects the write
        """
        async with self.connection() as conn:
            try:
                await asyncio.to_thread(
                    conn.execute,
                    """
                    INSERT OR REPLACE INTO kv_store (key, value, updated_at)
                    VALUES (?, ?, CURRENT_TIMESTAMP)
                    """,
                    [key, value],
                )
            except duckdb.Error as e:
                raise CacheWriteError("Local write failed", details=str(e), key=key) from e

    async def delete(self, key: str) -> None:
        async with self.connection() as conn:
            try:
                await asyncio.to_thread(conn.execute, "DELETE FROM kv_store WHERE key = ?", [key])
            except duckdb.Error as e:
                raise CacheWriteError("Local delete failed", details=str(e), key=key) from e

    async def keys(self, prefix: str = "") -> List[str]:
        """Keys starting with prefix, sorted."""
        async with self.connection() as conn:
            rows = await asyncio.to_thread(
                lambda: conn.execute(
                    "SELECT key FROM kv_store WHERE starts_with(key, ?) ORDER BY key", [prefix]
                ).fetchall()
            )
        return [row[0] for row in rows]

    async def delete_prefix(self, prefix: str) -> int:
        """Delete every key starting with prefix. Returns how many were removed."""
        keys = await self.keys(prefix)
        async with self.connection() as conn:
            try:
                await asyncio.to_thread(
                    conn.execute, "DELETE FROM kv_store WHERE starts_with(key, ?)", [prefix]
                )
            except duckdb.Error as e:
                raise CacheWriteError("Local delete failed", details=str(e), key=prefix) from e
        return len(keys)

    # ─── JSON values ─────────────────────────────────────────────────────────

    async def get_json(self, key: str, default: Any = None) -> Any:
        """Decode the JSON value under key; corrupt values read as default."""
        raw = await self.get(key)
        if raw is None:
            return default
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            logger.warning(f"Discarding corrupt JSON under {key}")
            return default

    async def set_json(self, key: str, value: Any) -> None:
        await self.set(key, json.dumps(value, default=_json_default, ensure_ascii=False))


def _json_default(obj: Any) -> Any:
    # datetimes and dates from decoded documents
    if hasattr(obj, "isoformat"):
        return obj.isoformat()
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")
