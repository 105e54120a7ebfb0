"""Tests for DatabaseService write serialization on the shared connection."""

import asyncio

import pytest

from erp_sync.services.batch_writer import BatchWriter


class TestWriteLock:
    """transaction() and execute() never interleave"""

    @pytest.mark.asyncio
    async def test_execute_waits_for_open_transaction(self, db, invoices):
        await BatchWriter(db=db).replace_children(
            invoices, [1], {"invoice_lines": {1: [{"line_no": 1, "amount": 10.0}]}}
        )
        writer = None

        with pytest.raises(RuntimeError):
            async with db.transaction() as conn:
                await conn.execute("DELETE FROM invoice_lines WHERE invoice_id = 1")
                writer = asyncio.create_task(
                    db.execute("INSERT INTO sync_state (key, last_cursor) VALUES ('invoices', 'x')")
                )
                for _ in range(5):
                    await asyncio.sleep(0)
                assert not writer.done()
                raise RuntimeError("insert failed")

        await writer
        lines = (await db.fetch_children(invoices, [1]))["invoice_lines"]
        assert [row["line_no"] for row in lines[1]] == [1]
        assert await db.fetch_scalar("SELECT last_cursor FROM sync_state WHERE key = 'invoices'") == "x"

    @pytest.mark.asyncio
    async def test_insert_returns_row_id(self, db):
        first = await db.insert("INSERT INTO sync_history (stream, sync_type, status) VALUES ('invoices', 'incremental', 'running')")
        second = await db.insert("INSERT INTO sync_history (stream, sync_type, status) VALUES ('fulfillments', 'snapshot', 'running')")

        assert second == first + 1
