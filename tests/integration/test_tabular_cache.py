"""
Integration tests for TabularCache in salesync/tabular.py

Downloads go through httpx.MockTransport; meta is stored in DuckDB.
"""
import httpx
import pytest

from salesync.exceptions import RemoteFetchError
from salesync.tabular import TabularCache, text_checksum

URL = "https://docs.example.test/sales.csv"


class SheetServer:
    """Mock endpoint serving a mutable body and counting requests."""

    def __init__(self, body: str = "a,b\n1,2\n", status: int = 200):
        self.body = body
        self.status = status
        self.requests = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests += 1
        return httpx.Response(self.status, text=self.body)


def make_cache(store, clock, server: SheetServer, ttl_seconds: int = 3600) -> TabularCache:
    return TabularCache(store, ttl_seconds=ttl_seconds, clock=clock, transport=httpx.MockTransport(server))


class TestTabularCache:
    """Tests for TabularCache.fetch."""

    @pytest.mark.asyncio
    async def test_first_fetch_refreshes(self, store, clock):
        """The first fetch downloads and stores meta."""
        server = SheetServer()
        async with make_cache(store, clock, server) as cache:
            result = await cache.fetch(URL)
            meta = await cache.get_meta(URL)

        assert result.refreshed
        assert result.raw_text == "a,b\n1,2\n"
        assert meta.checksum == text_checksum("a,b\n1,2\n")
        assert meta.last_fetched_at == "2025-03-14T08:00:00.000Z"

    @pytest.mark.asyncio
    async def test_fresh_copy_skips_network(self, store, clock):
        """Within the TTL a second fetch does not touch the network or the meta."""
        server = SheetServer()
        async with make_cache(store, clock, server) as cache:
            await cache.fetch(URL)
            before = await store.get(cache.meta_key(URL))
            clock.advance(minutes=30)
            result = await cache.fetch(URL)
            after = await store.get(cache.meta_key(URL))

        assert not result.refreshed
        assert result.raw_text is None
        assert server.requests == 1
        assert before == after

    @pytest.mark.asyncio
    async def test_forced_unchanged_body(self, store, clock):
        """A forced fetch of an unchanged body within the TTL reports no refresh."""
        server = SheetServer()
        async with make_cache(store, clock, server) as cache:
            await cache.fetch(URL)
            result = await cache.fetch(URL, force=True)

        assert server.requests == 2
        assert not result.refreshed

    @pytest.mark.asyncio
    async def test_forced_changed_body(self, store, clock):
        """A changed body is reported as refreshed."""
        server = SheetServer()
        async with make_cache(store, clock, server) as cache:
            await cache.fetch(URL)
            server.body = "a,b\n1,3\n"
            result = await cache.fetch(URL, force=True)

        assert result.refreshed
        assert result.raw_text == "a,b\n1,3\n"

    @pytest.mark.asyncio
    async def test_expired_copy_refetched(self, store, clock):
        """After the TTL the body is downloaded again and treated as refreshed."""
        server = SheetServer()
        async with make_cache(store, clock, server, ttl_seconds=60) as cache:
            await cache.fetch(URL)
            clock.advance(minutes=5)
            result = await cache.fetch(URL)
            meta = await cache.get_meta(URL)

        assert server.requests == 2
        assert result.refreshed
        assert meta.last_fetched_at == "2025-03-14T08:05:00.000Z"

    @pytest.mark.asyncio
    async def test_error_status_raises(self, store, clock):
        """Non-success statuses raise and leave no meta behind."""
        server = SheetServer(status=404)
        async with make_cache(store, clock, server) as cache:
            with pytest.raises(RemoteFetchError) as exc_info:
                await cache.fetch(URL)
            assert await cache.get_meta(URL) is None

        assert exc_info.value.status_code == 404

    @pytest.mark.asyncio
    async def test_invalidate(self, store, clock):
        """Invalidating forces the next fetch to download."""
        server = SheetServer()
        async with make_cache(store, clock, server) as cache:
            await cache.fetch(URL)
            await cache.invalidate(URL)
            result = await cache.fetch(URL)

        assert server.requests == 2
        assert result.refreshed
