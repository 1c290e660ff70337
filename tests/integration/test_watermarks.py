"""
Integration tests for salesync/watermarks.py
"""
import pytest
from datetime import datetime, timezone
from unittest.mock import AsyncMock, patch

from salesync.exceptions import CacheWriteError
from salesync.watermarks import WatermarkStore, parse_instant, to_iso, watermark_key


class TestInstantHelpers:
    """Tests for parse_instant and to_iso."""

    def test_parse_z_suffix(self):
        assert parse_instant("2025-03-01T09:30:00Z") == datetime(2025, 3, 1, 9, 30, tzinfo=timezone.utc)

    def test_parse_offset_converted_to_utc(self):
        """Offsets are normalized to UTC."""
        assert parse_instant("2025-03-01T11:30:00+02:00") == datetime(2025, 3, 1, 9, 30, tzinfo=timezone.utc)

    def test_naive_is_utc(self):
        assert parse_instant("2025-03-01T09:30:00").tzinfo == timezone.utc

    def test_invalid(self):
        assert parse_instant("garbage") is None
        assert parse_instant("") is None
        assert parse_instant(None) is None

    def test_to_iso(self):
        """Millisecond precision with a Z suffix."""
        assert to_iso(datetime(2025, 3, 1, 9, 30, 0, 123999, tzinfo=timezone.utc)) == "2025-03-01T09:30:00.123Z"


class TestWatermarkStore:
    """Tests for WatermarkStore."""

    @pytest.mark.asyncio
    async def test_absent(self, store):
        """No watermark before the first sync."""
        watermarks = WatermarkStore(store)
        assert await watermarks.get("kivos", "products_kivos") is None
        assert (await watermarks.get_watermark("kivos", "products_kivos")).last_sync_iso is None

    @pytest.mark.asyncio
    async def test_advance_and_key_layout(self, store):
        """Advancing stores a normalized value under sync:last:<scope>:<collection>."""
        watermarks = WatermarkStore(store)
        value = await watermarks.advance("kivos", "products_kivos", "2025-03-01T09:30:00Z")

        assert value == "2025-03-01T09:30:00.000Z"
        assert await store.get(watermark_key("kivos", "products_kivos")) == value
        assert watermark_key("kivos", "products_kivos") == "sync:last:kivos:products_kivos"

    @pytest.mark.asyncio
    async def test_never_moves_backwards(self, store):
        """Older values are ignored."""
        watermarks = WatermarkStore(store)
        await watermarks.advance("kivos", "products_kivos", "2025-03-01T00:00:00Z")
        value = await watermarks.advance("kivos", "products_kivos", "2025-02-01T00:00:00Z")

        assert value == "2025-03-01T00:00:00.000Z"
        assert await watermarks.get("kivos", "products_kivos") == "2025-03-01T00:00:00.000Z"

    @pytest.mark.asyncio
    async def test_scopes_are_independent(self, store):
        """Each brand keeps its own watermark for the same collection name."""
        watermarks = WatermarkStore(store)
        await watermarks.advance("kivos", "products", "2025-03-01T00:00:00Z")
        assert await watermarks.get("playmobil", "products") is None

    @pytest.mark.asyncio
    async def test_invalid_value_ignored(self, store):
        watermarks = WatermarkStore(store)
        assert await watermarks.advance("kivos", "products_kivos", "not-a-date") is None

    @pytest.mark.asyncio
    async def test_write_failure_keeps_previous(self, store):
        """A failed write leaves the previous watermark."""
        watermarks = WatermarkStore(store)
        await watermarks.advance("kivos", "products_kivos", "2025-03-01T00:00:00Z")

        with patch.object(store, "set", AsyncMock(side_effect=CacheWriteError("disk full"))):
            value = await watermarks.advance("kivos", "products_kivos", "2025-03-05T00:00:00Z")

        assert value == "2025-03-01T00:00:00.000Z"

    @pytest.mark.asyncio
    async def test_reset(self, store):
        """Reset forgets the listed collections."""
        watermarks = WatermarkStore(store)
        await watermarks.advance("kivos", "products_kivos", "2025-03-01T00:00:00Z")
        await watermarks.advance("kivos", "customers_kivos", "2025-03-01T00:00:00Z")

        await watermarks.reset("kivos", ["products_kivos", "customers_kivos"])

        assert await watermarks.get("kivos", "products_kivos") is None
        assert await watermarks.get("kivos", "customers_kivos") is None
