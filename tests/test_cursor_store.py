"""Tests for the sync watermark store."""

from datetime import datetime, timedelta, timezone

import pytest

from erp_sync.services.cursor_store import CursorStore

NOW = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)


class TestCursorStore:

    @pytest.mark.asyncio
    async def test_first_run_uses_lookback(self, db):
        store = CursorStore(db)

        since = await store.effective_since("invoices", lookback_days=3, overlap_minutes=10, now=NOW)

        assert since == NOW - timedelta(days=3)

    @pytest.mark.asyncio
    async def test_stored_cursor_minus_overlap(self, db):
        store = CursorStore(db)
        await store.write("invoices", "2024-05-01T11:00:00Z", "2024-05-01T10:00:00.000Z")

        since = await store.effective_since("invoices", lookback_days=3, overlap_minutes=10, now=NOW)

        assert since == datetime(2024, 5, 1, 9, 50, tzinfo=timezone.utc)

    @pytest.mark.asyncio
    async def test_null_cursor_keeps_previous_value(self, db):
        store = CursorStore(db)
        await store.write("invoices", "2024-05-01T11:00:00Z", "2024-05-01T10:00:00.000Z")
        await store.write("invoices", "2024-05-02T11:00:00Z", None)

        cursor = await store.read("invoices")

        assert cursor.last_success_at == "2024-05-02T11:00:00Z"
        assert cursor.last_cursor == "2024-05-01T10:00:00.000Z"

    @pytest.mark.asyncio
    async def test_list_all_sorted_by_key(self, db):
        store = CursorStore(db)
        await store.write("sales_orders", "a", "2024-01-01T00:00:00.000Z")
        await store.write("invoices", "b", None)

        assert [c.key for c in await store.list_all()] == ["invoices", "sales_orders"]
        assert await store.read("fulfillments") is None

    def test_next_cursor_never_moves_backwards(self):
        previous = "2024-05-01T10:00:00.000Z"

        assert CursorStore.next_cursor(previous, ["2024-04-30T00:00:00Z", None]) == previous
        assert CursorStore.next_cursor(previous, ["2024-05-01T12:00:00+02:00", "2024-05-01T10:30:00Z"]) == "2024-05-01T10:30:00.000Z"
        assert CursorStore.next_cursor(None, []) is None
