"""
End-to-end tests for SyncService against a temporary SQLite store.

Upstream is a FakeExecutor answering by query tag; discovery, reconciler,
writer and cursor store are the real implementations.
"""

import re
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest
from pydantic import ValidationError

from erp_sync.exceptions import InvalidManifest, ManifestNotFound, SyncInProgress, UnknownStream, UpstreamQueryFailed
from erp_sync.models.sync import IncrementalRequest, SnapshotRequest
from erp_sync.services.batch_writer import BatchWriter
from erp_sync.services.cursor_store import CursorStore
from erp_sync.services.discovery import ChangeSetDiscovery
from erp_sync.services.manifest_resolver import Manifest, ManifestPart
from erp_sync.services.reconciler import GracePolicy, Reconciler
from erp_sync.services.sync_service import SyncService, get_sync_history, get_sync_service
from erp_sync.utils.constants import SyncStatus
from erp_sync.utils.helpers import utc_now

from .conftest import FakeExecutor

LAST_MODIFIED = "2024-05-01T09:00:00.000+00:00"


def present_except(*gone):
    """Presence responder echoing every queried id except the given ones"""
    def respond(query):
        ids = [int(i) for i in re.search(r"T\.id IN \(([\d,]+)\)", query).group(1).split(",")]
        return [{"id": i} for i in ids if i not in gone]
    return respond


def voided_only(*voided):
    """Voided-status responder returning the queried ids among the given ones"""
    def respond(query):
        ids = [int(i) for i in re.search(r"T\.id IN \(([\d,]+)\)", query).group(1).split(",")]
        return [{"id": i} for i in ids if i in voided]
    return respond


def invoice_upstream(lines=((1, 150.0), (2, 100.0))):
    return {
        "invoices.modified_since": [{"id": 100}],
        "invoices.header": [{
            "invoice_id": 100,
            "tran_id": "INV-100",
            "trandate": "2024-05-01",
            "total": "250.00",
            "customer_id": 42,
            "last_modified": LAST_MODIFIED,
        }],
        "invoices.invoice_lines": [
            {"invoice_id": 100, "line_no": line_no, "item_id": 7, "quantity": 1, "rate": amount, "amount": amount}
            for line_no, amount in lines
        ],
        "invoices.presence": present_except(101),
    }


class FakeFileReader:
    def __init__(self, files):
        self.files = files

    async def read_records(self, file_ids):
        records = []
        for file_id in file_ids:
            records.extend(dict(r) for r in self.files.get(file_id, []))
        return records


def make_service(descriptor, executor, db, **overrides):
    notifier = AsyncMock()
    notifier.notify_unpaid.return_value = 1
    parts = dict(
        executor=executor,
        discovery=ChangeSetDiscovery(executor=executor, disabled=[], pause=0, sleep=AsyncMock()),
        details=AsyncMock(),
        resolver=AsyncMock(),
        reader=FakeFileReader({}),
        reconciler=Reconciler(epsilon=0.01, grace=GracePolicy(timedelta(minutes=90), "order console")),
        writer=BatchWriter(db=db),
        cursors=CursorStore(db),
        db=db,
        notifier=notifier,
        sleep=AsyncMock(),
    )
    parts.update(overrides)
    return SyncService(descriptor, **parts)


async def seed(db, descriptor, raw, **foreign):
    await BatchWriter(db=db).upsert_records(descriptor, [descriptor.normalize(raw)])
    if foreign:
        assignments = ", ".join(f"{column} = ?" for column in foreign)
        await db.execute(
            f"UPDATE {descriptor.table} SET {assignments} WHERE {descriptor.id_column} = ?",
            tuple(foreign.values()) + (descriptor.record_id(raw),)
        )


async def seed_invoice_101(db, invoices, **foreign):
    await seed(db, invoices, {
        "invoice_id": 101, "tran_id": "INV-101", "total": 80.0, "amount_paid": 80.0,
        "amount_remaining": 0.0, "customer_id": 42,
    }, **foreign)


class TestIncrementalSync:
    """Discovery-driven runs"""

    @pytest.mark.asyncio
    async def test_new_invoice_and_presence_tombstone(self, db, invoices):
        await seed_invoice_101(db, invoices)
        executor = FakeExecutor(invoice_upstream())
        service = make_service(invoices, executor, db)

        result = await service.run_incremental(IncrementalRequest(scope="all"))

        assert result.status == SyncStatus.COMPLETED
        assert result.new == 1
        assert result.new_ids == [100]
        assert result.tombstoned_ids == [101]
        assert result.issues == []

        stored = await db.fetch_records(invoices, [100, 101])
        assert stored[100]["amount_remaining"] == 250.0
        assert stored[100]["amount_paid"] == 0.0
        assert stored[100]["netsuite_url"].endswith("/app/accounting/transactions/custinvc.nl?id=100")
        assert len((await db.fetch_children(invoices, [100]))["invoice_lines"][100]) == 2
        assert stored[101]["deleted_at"] is not None
        assert await db.fetch_active_ids(invoices) == [100]

        cursor = await CursorStore(db).read("invoices")
        assert cursor.last_cursor == "2024-05-01T09:00:00.000Z"
        assert result.cursor_after == cursor.last_cursor
        service.notifier.notify_unpaid.assert_awaited_once()
        assert result.notifications_sent == 1

    @pytest.mark.asyncio
    async def test_second_run_is_unchanged(self, db, invoices):
        executor = FakeExecutor(invoice_upstream())
        service = make_service(invoices, executor, db)
        await service.run_incremental(IncrementalRequest(scope="all"))

        result = await service.run_incremental(IncrementalRequest(scope="all"))

        assert (result.new, result.changed, result.unchanged) == (0, 0, 1)
        assert service.notifier.notify_unpaid.await_count == 1

    @pytest.mark.asyncio
    async def test_child_set_shrinks(self, db, invoices):
        executor = FakeExecutor(invoice_upstream(lines=((1, 100.0), (2, 100.0), (3, 50.0))))
        service = make_service(invoices, executor, db)
        await service.run_incremental(IncrementalRequest(ids=[100]))

        executor.responses.update(invoice_upstream(lines=((1, 250.0),)))
        result = await service.run_incremental(IncrementalRequest(ids=[100]))

        assert result.changed == 1
        assert result.changes[0]["children"] == ["invoice_lines"]
        lines = (await db.fetch_children(invoices, [100]))["invoice_lines"][100]
        assert [(line["line_no"], line["amount"]) for line in lines] == [(1, 250.0)]

    @pytest.mark.asyncio
    async def test_grace_period_exempts_recent_console_record(self, db, invoices):
        recent = (utc_now() - timedelta(minutes=10)).isoformat()
        await seed_invoice_101(db, invoices, created_by="Order Console", created_at=recent)
        service = make_service(invoices, FakeExecutor(invoice_upstream()), db)

        result = await service.run_incremental(IncrementalRequest(scope="all"))

        assert result.exempted_ids == [101]
        assert result.tombstoned_ids == []
        assert await db.fetch_active_ids(invoices) == [100, 101]

    @pytest.mark.asyncio
    async def test_failure_keeps_cursor_and_is_recorded(self, db, invoices):
        await CursorStore(db).write("invoices", "2024-04-30T00:00:00Z", "2024-04-30T00:00:00.000Z")
        executor = FakeExecutor(invoice_upstream())
        executor.failures["invoices.header"] = UpstreamQueryFailed(400, "Invalid search query", "invoices.header")
        service = make_service(invoices, executor, db)

        result = await service.run_incremental(IncrementalRequest(scope="all"))

        assert result.status == SyncStatus.FAILED
        assert "Invalid search query" in result.error
        assert service.get_status()["status"] == SyncStatus.FAILED
        assert (await CursorStore(db).read("invoices")).last_cursor == "2024-04-30T00:00:00.000Z"
        history = await get_sync_history(db=db)
        assert history[0]["status"] == SyncStatus.FAILED
        assert history[0]["stream"] == "invoices"

    @pytest.mark.asyncio
    async def test_dry_run_writes_nothing(self, db, invoices):
        await seed_invoice_101(db, invoices)
        service = make_service(invoices, FakeExecutor(invoice_upstream()), db)

        result = await service.run_incremental(IncrementalRequest(scope="all", dry_run=True))

        assert result.new_ids == [100]
        assert result.tombstoned_ids == [101]
        assert await db.get_table_count("invoices") == 1
        assert await db.fetch_active_ids(invoices) == [101]
        assert await CursorStore(db).read("invoices") is None
        service.notifier.notify_unpaid.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_notification_failure_does_not_fail_run(self, db, invoices):
        service = make_service(invoices, FakeExecutor(invoice_upstream()), db)
        service.notifier.notify_unpaid.side_effect = RuntimeError("webhook down")

        result = await service.run_incremental(IncrementalRequest(scope="all"))

        assert result.status == SyncStatus.COMPLETED
        assert result.notifications_sent == 0
        assert await CursorStore(db).read("invoices") is not None

    @pytest.mark.asyncio
    async def test_empty_first_run_stores_lower_bound(self, db, invoices):
        service = make_service(invoices, FakeExecutor(), db)

        result = await service.run_incremental(IncrementalRequest(scope="all"))

        assert result.candidates == 0
        assert (await CursorStore(db).read("invoices")).last_cursor == result.since

    @pytest.mark.asyncio
    async def test_explicit_ids_skip_discovery_presence_and_cursor(self, db, invoices):
        await seed_invoice_101(db, invoices)
        executor = FakeExecutor(invoice_upstream())
        service = make_service(invoices, executor, db)

        result = await service.run_incremental(IncrementalRequest(ids=[100]))

        assert result.mode == "explicit_ids"
        assert result.new_ids == [100]
        assert "invoices.modified_since" not in executor.tags()
        assert "invoices.presence" not in executor.tags()
        assert await db.fetch_active_ids(invoices) == [100, 101]
        assert await CursorStore(db).read("invoices") is None

    @pytest.mark.asyncio
    async def test_profile_scope_limits_discovery(self, db, invoices):
        await db.execute("INSERT INTO profiles (email, netsuite_customer_id) VALUES ('a@x.com', 42)")
        executor = FakeExecutor(invoice_upstream())
        service = make_service(invoices, executor, db)

        await service.run_incremental(IncrementalRequest())

        assert "AND T.entity IN (42)" in executor.queries("invoices.modified_since")[0]

    @pytest.mark.asyncio
    async def test_cancel_between_batches(self, db, invoices):
        upstream = invoice_upstream()
        upstream["invoices.modified_since"] = [{"id": 100}, {"id": 200}]
        executor = FakeExecutor(upstream)
        service = make_service(invoices, executor, db)

        def header(query):
            service.cancel()
            return upstream["invoices.header"]

        executor.responses["invoices.header"] = header

        result = await service.run_incremental(IncrementalRequest(scope="all", batch_size=1))

        assert result.status == SyncStatus.CANCELLED
        assert result.batches == 1
        assert len(executor.queries("invoices.header")) == 1
        assert await CursorStore(db).read("invoices") is None

    @pytest.mark.asyncio
    async def test_concurrent_run_is_rejected(self, db, invoices):
        service = make_service(invoices, FakeExecutor(), db)
        service.status = SyncStatus.RUNNING

        with pytest.raises(SyncInProgress):
            await service.run_incremental()

    @pytest.mark.asyncio
    async def test_voided_record_is_tombstoned_once(self, db, invoices):
        await seed(db, invoices, {"invoice_id": 200, "tran_id": "INV-200", "total": 40.0, "customer_id": 42})
        upstream = invoice_upstream()
        upstream["invoices.modified_since"] = [{"id": 100}, {"id": 200}]
        upstream["invoices.header"] = upstream["invoices.header"] + [{
            "invoice_id": 200, "tran_id": "INV-200", "total": "40.00", "customer_id": 42, "last_modified": LAST_MODIFIED,
        }]
        upstream["invoices.presence"] = present_except()
        upstream["invoices.voided"] = voided_only(200)
        service = make_service(invoices, FakeExecutor(upstream), db)

        first = await service.run_incremental(IncrementalRequest(scope="all"))
        stamp = (await db.fetch_records(invoices, [200]))[200]["deleted_at"]
        second = await service.run_incremental(IncrementalRequest(scope="all"))

        assert (first.new, first.changed, first.tombstoned_ids) == (1, 0, [200])
        assert stamp is not None
        assert (second.new, second.changed, second.unchanged, second.tombstoned) == (0, 0, 1, 0)
        assert second.changes == []
        assert (await db.fetch_records(invoices, [200]))[200]["deleted_at"] == stamp
        assert await db.fetch_active_ids(invoices) == [100]

    @pytest.mark.asyncio
    async def test_voided_record_is_never_inserted(self, db, invoices):
        upstream = invoice_upstream()
        upstream["invoices.voided"] = voided_only(100)
        service = make_service(invoices, FakeExecutor(upstream), db)

        result = await service.run_incremental(IncrementalRequest(ids=[100]))

        assert result.status == SyncStatus.COMPLETED
        assert result.new_ids == []
        assert await db.get_table_count("invoices") == 0
        assert (await db.fetch_children(invoices, [100]))["invoice_lines"] == {}

    @pytest.mark.asyncio
    async def test_unqueried_columns_and_required_columns(self, db, sales_orders):
        await seed(db, sales_orders, {"so_id": 7, "total": 10.0, "customer_id": 42, "hubspot_so_id": "HS-1"})
        executor = FakeExecutor({
            "sales_orders.header": [
                {"so_id": 7, "tran_id": "SO-7", "total": 12.0, "customer_id": 42},
                {"so_id": 8, "tran_id": "SO-8", "total": 5.0, "customer_id": None},
            ],
        })
        service = make_service(sales_orders, executor, db)

        result = await service.run_incremental(IncrementalRequest(ids=[7, 8]))

        assert result.skipped == 1
        assert result.changed == 1
        stored = await db.fetch_records(sales_orders, [7, 8])
        assert list(stored) == [7]
        assert stored[7]["total"] == 12.0
        assert stored[7]["hubspot_so_id"] == "HS-1"


class TestFulfillmentEnrichment:
    """Detail fetch keyed by last_modified"""

    @pytest.mark.asyncio
    async def test_detail_fetched_once_per_modification(self, db, fulfillments):
        executor = FakeExecutor({
            "fulfillments.header": [{"fulfillment_id": 5, "tran_id": "IF-5", "customer_id": 42, "last_modified": LAST_MODIFIED}],
            "fulfillments.link": [{"fulfillment_id": 5, "created_from_so_id": 9, "created_from_so_tranid": "SO-9"}],
        })
        details = AsyncMock()
        details.fetch_many.return_value = {5: {
            "ship_status": "Shipped",
            "tracking": "1Z999AA10123456784",
            "tracking_urls": ["https://www.ups.com/track?tracknum=1Z999AA10123456784"],
            "tracking_details": [{"number": "1Z999AA10123456784", "carrier": "ups"}],
            "lines": [{"line_no": 1, "item_sku": "SKU-7", "quantity": 2.0, "serial_numbers": ["SN1"]}],
        }}
        service = make_service(fulfillments, executor, db, details=details)

        first = await service.run_incremental(IncrementalRequest(ids=[5]))
        second = await service.run_incremental(IncrementalRequest(ids=[5]))

        details.fetch_many.assert_awaited_once_with("itemFulfillment", [5], None)
        assert first.new == 1
        assert second.unchanged == 1
        stored = (await db.fetch_records(fulfillments, [5]))[5]
        assert stored["ship_status"] == "Shipped"
        assert stored["created_from_so_tranid"] == "SO-9"
        lines = (await db.fetch_children(fulfillments, [5]))["fulfillment_lines"][5]
        assert lines[0]["serial_numbers"] == '["SN1"]'

    @pytest.mark.asyncio
    async def test_failed_detail_keeps_stored_values(self, db, fulfillments):
        await seed(db, fulfillments, {"fulfillment_id": 5, "tran_id": "IF-5", "tracking": "OLD", "last_modified": "2024-01-01T00:00:00Z"})
        executor = FakeExecutor({
            "fulfillments.header": [{"fulfillment_id": 5, "tran_id": "IF-5", "last_modified": LAST_MODIFIED}],
        })
        details = AsyncMock()
        details.fetch_many.return_value = {5: None}
        service = make_service(fulfillments, executor, db, details=details)

        await service.run_incremental(IncrementalRequest(ids=[5]))

        stored = (await db.fetch_records(fulfillments, [5]))[5]
        assert stored["tracking"] == "OLD"
        assert stored["last_modified"] == "2024-05-01T09:00:00.000Z"


class TestSnapshotSync:
    """Manifest-driven runs"""

    def manifest(self):
        return Manifest(
            name="manifest_latest.json",
            file_id=1,
            generated_at="2024-05-01T06:00:00Z",
            datasets={
                "invoices": [ManifestPart(11, rows=1)],
                "invoice_lines": [ManifestPart(12)],
                "invoice_payments": [ManifestPart(13)],
            },
        )

    def files(self):
        return {
            11: [{"invoice_id": "100", "tranid": "INV-100", "trandate": "5/1/2024", "total": "250.00", "customer_id": "42"}],
            12: [
                {"invoice_id": "100", "linesequencenumber": "1", "amount": "150.00"},
                {"invoice_id": "100", "linesequencenumber": "2", "amount": "100.00"},
                {"invoice_id": "999", "linesequencenumber": "1", "amount": "1.00"},
            ],
            13: [],
        }

    @pytest.mark.asyncio
    async def test_snapshot_is_authoritative(self, db, invoices):
        await seed_invoice_101(db, invoices)
        resolver = AsyncMock()
        resolver.resolve.return_value = self.manifest()
        service = make_service(invoices, FakeExecutor(), db, resolver=resolver, reader=FakeFileReader(self.files()))

        result = await service.run_snapshot(SnapshotRequest())

        resolver.resolve.assert_awaited_once_with(
            "manifest_latest.json", required=["invoices", "invoice_lines", "invoice_payments"]
        )
        assert result.status == SyncStatus.COMPLETED
        assert result.new_ids == [100]
        assert result.tombstoned_ids == [101]
        stored = await db.fetch_records(invoices, [100])
        assert stored[100]["trandate"] == "2024-05-01"
        assert stored[100]["amount_remaining"] == 250.0
        children = await db.fetch_children(invoices, [100, 999])
        assert sorted(children["invoice_lines"]) == [100]
        assert await db.fetch_active_ids(invoices) == [100]
        cursor = await CursorStore(db).read("invoices:snapshot")
        assert cursor.last_cursor == "2024-05-01T06:00:00.000Z"

    @pytest.mark.asyncio
    async def test_manifest_not_found_is_raised_and_recorded(self, db, invoices):
        resolver = AsyncMock()
        resolver.resolve.side_effect = ManifestNotFound("manifest_latest.json", 2279)
        service = make_service(invoices, FakeExecutor(), db, resolver=resolver)

        with pytest.raises(ManifestNotFound):
            await service.run_snapshot()

        assert service.status == SyncStatus.FAILED
        assert (await get_sync_history(db=db))[0]["status"] == SyncStatus.FAILED

    @pytest.mark.asyncio
    async def test_empty_snapshot_leaves_store_alone(self, db, invoices):
        await seed_invoice_101(db, invoices)
        resolver = AsyncMock()
        resolver.resolve.return_value = self.manifest()
        service = make_service(invoices, FakeExecutor(), db, resolver=resolver, reader=FakeFileReader({}))

        with pytest.raises(InvalidManifest):
            await service.run_snapshot()

        assert await db.fetch_active_ids(invoices) == [101]


class TestRequestsAndRegistry:

    def test_incremental_request_normalizes_input(self):
        request = IncrementalRequest(ids=[3, 3, -1, 5], since="4/1/2024", batch_size=5000, detail_concurrency=0)

        assert request.ids == [3, 5]
        assert request.since == "2024-04-01"
        assert request.batch_size == 1000
        assert request.detail_concurrency == 1
        assert request.mode == "explicit_ids"
        assert IncrementalRequest(force_all=True).mode == "force_all"

    def test_bad_since_is_rejected(self):
        with pytest.raises(ValidationError):
            IncrementalRequest(since="yesterday")

    def test_registry(self):
        assert get_sync_service("invoices").stream == "invoices"
        with pytest.raises(UnknownStream):
            get_sync_service("payments")

    @pytest.mark.asyncio
    async def test_skipped_row_is_not_tombstoned(self, db, sales_orders):
        await seed(db, sales_orders, {"so_id": 5, "tran_id": "SO-5", "total": 10.0, "customer_id": 42})
        resolver = AsyncMock()
        resolver.resolve.return_value = Manifest(
            name="sales_orders_manifest_latest.json",
            file_id=2,
            generated_at="2024-05-01T06:00:00Z",
            datasets={"sales_orders": [ManifestPart(21, rows=2)], "sales_order_lines": [ManifestPart(22)]},
        )
        files = {
            21: [
                {"so_id": "5", "tranid": "SO-5", "total": "10.00", "customer_id": ""},
                {"so_id": "6", "tranid": "SO-6", "total": "7.00", "customer_id": "42"},
            ],
            22: [],
        }
        service = make_service(sales_orders, FakeExecutor(), db, resolver=resolver, reader=FakeFileReader(files))

        result = await service.run_snapshot(SnapshotRequest())

        assert result.status == SyncStatus.COMPLETED
        assert result.skipped == 1
        assert result.new_ids == [6]
        assert result.tombstoned_ids == []
        assert await db.fetch_active_ids(sales_orders) == [5, 6]
