"""
Sync Service Module
====================
Orchestrates ERP -> SQLite synchronization for one stream.

ARCHITECTURE:
------------
One SyncService per stream descriptor (invoices, fulfillments,
sales_orders). It coordinates:
1. ChangeSetDiscovery - which ids may have changed
2. QueryExecutor      - header, link and child queries per id batch
3. DetailFetcher      - record detail enrichment (fulfillments)
4. ManifestResolver / BulkFileReader - bulk export snapshots
5. Reconciler         - New / Changed / Unchanged / Missing
6. BatchWriter        - upserts, child replaces, tombstones
7. CursorStore        - watermarks

SYNC TYPES:
-----------
1. INCREMENTAL (run_incremental):
   - incremental:  discovery since the stored cursor (minus overlap)
   - explicit_ids: only the given ids, discovery skipped
   - force_all:    keyset rescan of every record in scope
   - ids are processed in sequential batches (default 300) with a pause
   - fetched records that are voided upstream are never written; stored
     active ones are tombstoned once
   - presence reconciliation tombstones records gone upstream (skipped
     for explicit ids)
   - only the default mode moves the cursor

2. SNAPSHOT (run_snapshot):
   - resolves the stream's manifest and reads every dataset
   - the file set is authoritative: active rows absent from it are Missing
   - writes {stream}:snapshot cursor = manifest generated_at

Dry runs do discovery, fetching and diffing but write nothing (no rows, no
tombstones, no cursor, no notifications).

FAILURES:
--------
A failed run is recorded (status, error, sync_history) and returned; batches
written before the failure stay. Manifest errors are re-raised after being
recorded so the API can map them to HTTP statuses. The cursor never moves on
a failed or cancelled run.
"""

import asyncio
from datetime import datetime, time, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple

import aiosqlite

from ..config import config
from ..exceptions import InvalidManifest, ManifestNotFound, SyncInProgress, UnknownStream
from ..models.entities import EntityDescriptor
from ..models.streams import STREAMS
from ..models.sync import IncrementalRequest, SnapshotRequest, SyncResult
from ..utils.constants import SYNC_HISTORY_TABLE, TOMBSTONE_COLUMN, SyncMode, SyncStatus
from ..utils.decorators import timed
from ..utils.helpers import chunk_list, format_erp_timestamp, id_list_csv, normalize_timestamp, utc_now
from ..utils.logger import logger
from .batch_writer import BatchWriter, batch_writer
from .cursor_store import CursorStore, cursor_store
from .database_service import DatabaseService, database_service
from .detail_fetcher import DetailFetcher, detail_fetcher
from .discovery import ChangeSetDiscovery, change_set_discovery
from .file_reader import BulkFileReader, bulk_file_reader
from .manifest_resolver import Manifest, ManifestResolver, manifest_resolver
from .notification_service import NotificationService, notification_service
from .query_executor import QueryExecutor, query_executor
from .reconciler import ChildRows, Reconciler, Reconciliation

Rows = Dict[int, Dict[str, Any]]


class SyncService:
    """Runs incremental and snapshot syncs for one stream"""

    def __init__(
        self,
        descriptor: EntityDescriptor,
        executor: Optional[QueryExecutor] = None,
        discovery: Optional[ChangeSetDiscovery] = None,
        details: Optional[DetailFetcher] = None,
        resolver: Optional[ManifestResolver] = None,
        reader: Optional[BulkFileReader] = None,
        reconciler: Optional[Reconciler] = None,
        writer: Optional[BatchWriter] = None,
        cursors: Optional[CursorStore] = None,
        db: Optional[DatabaseService] = None,
        notifier: Optional[NotificationService] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.descriptor = descriptor
        self.executor = executor or query_executor
        self.discovery = discovery or change_set_discovery
        self.details = details or detail_fetcher
        self.resolver = resolver or manifest_resolver
        self.reader = reader or bulk_file_reader
        self.reconciler = reconciler or Reconciler()
        self.writer = writer or batch_writer
        self.cursors = cursors or cursor_store
        self.db = db or database_service
        self.notifier = notifier or notification_service
        self._sleep = sleep

        self.status = SyncStatus.IDLE
        self.mode = ""
        self.progress = 0
        self.rows_processed = 0
        self.started_at: Optional[datetime] = None
        self.completed_at: Optional[datetime] = None
        self.error_message: Optional[str] = None
        self.last_result: Optional[SyncResult] = None
        self._cancel_requested = False

    @property
    def stream(self) -> str:
        return self.descriptor.stream

    def get_status(self) -> Dict[str, Any]:
        """Get current sync status"""
        return {
            "stream": self.stream,
            "status": self.status,
            "mode": self.mode,
            "progress": self.progress,
            "rows_processed": self.rows_processed,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "error_message": self.error_message,
            "last_result": self.last_result.model_dump() if self.last_result else None,
        }

    def cancel(self) -> bool:
        """Request cancellation; honored between batches"""
        if self.status == SyncStatus.RUNNING:
            self._cancel_requested = True
            logger.info(f"[{self.stream}] sync cancellation requested")
            return True
        return False

    def _reset_status(self) -> None:
        self.status = SyncStatus.IDLE
        self.mode = ""
        self.progress = 0
        self.rows_processed = 0
        self.started_at = None
        self.completed_at = None
        self.error_message = None
        self._cancel_requested = False

    def _begin(self, mode: str, dry_run: bool) -> SyncResult:
        if self.status == SyncStatus.RUNNING:
            raise SyncInProgress(self.stream)
        self._reset_status()
        self.status = SyncStatus.RUNNING
        self.mode = mode
        self.started_at = utc_now()
        return SyncResult(
            stream=self.stream,
            mode=mode,
            status=SyncStatus.RUNNING,
            dry_run=dry_run,
            started_at=self.started_at.isoformat(),
        )

    def _finish(self, result: SyncResult, status: str, error: Optional[str] = None) -> SyncResult:
        self.status = status
        self.completed_at = utc_now()
        self.error_message = error
        if status == SyncStatus.COMPLETED:
            self.progress = 100
        result.status = status
        result.error = error
        result.completed_at = self.completed_at.isoformat()
        result.duration_seconds = round((self.completed_at - self.started_at).total_seconds(), 3)
        self.last_result = result
        return result

    # ============== Incremental ==============

    @timed
    async def run_incremental(self, request: Optional[IncrementalRequest] = None) -> SyncResult:
        """Discovery-driven sync in sequential id batches"""
        request = request or IncrementalRequest()
        result = self._begin(request.mode, request.dry_run)
        descriptor = self.descriptor
        logger.info(
            f"[{self.stream}] starting {request.mode} sync "
            f"(dry_run={request.dry_run}, scope={request.scope})"
        )

        history_id = 0
        try:
            await self.db.connect()
            history_id = await self._save_sync_history(request.mode, request.dry_run)
            scope_ids = None if request.scope == "all" else await self.db.fetch_scope_ids()
            cursor = await self.cursors.read(descriptor.cursor_key)
            previous_cursor = cursor.last_cursor if cursor else None
            result.cursor_before = previous_cursor

            candidate_ids = await self._candidate_ids(request, scope_ids, result)
            result.candidates = len(candidate_ids)

            observed: List[Any] = []
            voided_ids: List[int] = []
            new_rows: List[Dict[str, Any]] = []
            batch_size = request.batch_size or config.sync.id_batch_size
            batches = chunk_list(candidate_ids, batch_size)

            for index, batch in enumerate(batches):
                if self._cancel_requested:
                    break
                logger.info(
                    f"[{self.stream}] batch {index + 1}/{len(batches)}: "
                    f"ids {batch[0]}..{batch[-1]} ({len(batch)})"
                )
                reconciliation, fresh, skipped, voided = await self._process_batch(batch, request)
                voided_ids.extend(voided)
                self._accumulate(result, reconciliation)
                result.fetched += len(fresh) + skipped
                result.skipped += skipped
                result.batches += 1
                self.rows_processed = result.fetched
                self.progress = int(100 * (index + 1) / len(batches))

                observed.extend(row.get("last_modified") for row in fresh.values())
                new_ids = set(reconciliation.new)
                new_rows.extend(r for r in reconciliation.rows if r[descriptor.id_column] in new_ids)

                if index + 1 < len(batches):
                    await self._sleep(config.sync.batch_pause)

            if self._cancel_requested:
                logger.warning(f"[{self.stream}] sync cancelled after {result.batches} batches")
                await self._update_sync_history(history_id, SyncStatus.CANCELLED, result)
                return self._finish(result, SyncStatus.CANCELLED)

            if voided_ids:
                await self._retire(voided_ids, request.dry_run, result)
            if request.mode != SyncMode.EXPLICIT_IDS:
                await self._reconcile_presence(scope_ids, request.dry_run, result)

            if not request.dry_run:
                await self._notify(new_rows, result)
                if request.mode == SyncMode.INCREMENTAL:
                    # nothing observed on a first run: start from the lower bound used
                    next_cursor = CursorStore.next_cursor(previous_cursor, observed) or result.since
                    await self.cursors.write(descriptor.cursor_key, utc_now().isoformat(), next_cursor)
                    result.cursor_after = next_cursor or previous_cursor

            logger.info(
                f"[{self.stream}] {request.mode} sync completed: {result.new} new, "
                f"{result.changed} changed, {result.unchanged} unchanged, "
                f"{result.tombstoned} tombstoned, {result.exempted} exempted"
            )
            await self._update_sync_history(history_id, SyncStatus.COMPLETED, result)
            return self._finish(result, SyncStatus.COMPLETED)

        except Exception as e:
            logger.error(f"[{self.stream}] {request.mode} sync failed after {result.batches} batches: {e}")
            await self._update_sync_history(history_id, SyncStatus.FAILED, result, str(e))
            return self._finish(result, SyncStatus.FAILED, str(e))

    async def _candidate_ids(
        self,
        request: IncrementalRequest,
        scope_ids: Optional[List[int]],
        result: SyncResult,
    ) -> List[int]:
        """Ids to fetch for the requested mode"""
        if request.mode == SyncMode.EXPLICIT_IDS:
            return list(request.ids)
        if request.mode == SyncMode.FORCE_ALL:
            result.since = request.since
            return await self.discovery.scan_all(self.descriptor, scope_ids, since_date=request.since)

        if request.since:
            since = datetime.combine(datetime.fromisoformat(request.since).date(), time.min, tzinfo=timezone.utc)
        else:
            since = await self.cursors.effective_since(self.descriptor.cursor_key)
        result.since = format_erp_timestamp(since)
        change_set = await self.discovery.discover(self.descriptor, since, scope_ids)
        result.strategy_counts = change_set.counts
        return change_set.ids

    async def _process_batch(
        self,
        batch: List[int],
        request: IncrementalRequest,
    ) -> Tuple[Reconciliation, Rows, int, List[int]]:
        """Fetch, enrich, reconcile and (unless dry run) write one id batch

        Records cancelled or voided upstream are left out of the write so a
        stored tombstone is never cleared and re-stamped; their ids are
        returned for retirement.
        """
        descriptor = self.descriptor
        fresh, fresh_children, skipped = await self._fetch_batch(batch)

        voided = sorted(await self.discovery.find_voided(descriptor, fresh) & set(fresh)) if fresh else []
        for record_id in voided:
            del fresh[record_id]
            for by_parent in fresh_children.values():
                by_parent.pop(record_id, None)
        if voided:
            logger.info(f"[{self.stream}] {len(voided)} fetched records are voided upstream: {voided}")

        stored = await self.db.fetch_records(descriptor, batch)
        stored_children = await self.db.fetch_children(descriptor, list(fresh))

        for record_id, row in fresh.items():
            existing = stored.get(record_id) or {}
            for column in descriptor.unqueried_columns:
                row[column] = existing.get(column)

        if descriptor.detail_record:
            await self._enrich(fresh, fresh_children, stored, stored_children, request.detail_concurrency)
        self._derive(fresh, fresh_children)

        reconciliation = self.reconciler.reconcile(descriptor, fresh, fresh_children, stored, stored_children)

        if not request.dry_run and reconciliation.rows:
            await self.writer.upsert_records(descriptor, reconciliation.rows)
            await self.writer.replace_children(descriptor, reconciliation.write_ids, reconciliation.children)
        return reconciliation, fresh, skipped, voided

    async def _fetch_batch(self, batch: List[int]) -> Tuple[Rows, ChildRows, int]:
        """Header, link and child queries for one batch, run together"""
        descriptor = self.descriptor
        ids = id_list_csv(batch)
        queried_children = [child for child in descriptor.children if child.query]

        results = await asyncio.gather(
            self.executor.execute(descriptor.header_query.format(ids=ids), tag=f"{self.stream}.header"),
            *(self.executor.execute(q.format(ids=ids), tag=f"{self.stream}.link") for q in descriptor.link_queries),
            *(self.executor.execute(c.query.format(ids=ids), tag=f"{self.stream}.{c.table}") for c in queried_children),
        )
        header_rows = results[0]
        link_rows = results[1:1 + len(descriptor.link_queries)]
        child_rows = results[1 + len(descriptor.link_queries):]

        raw: Rows = {}
        for row in header_rows:
            record_id = descriptor.record_id(row)
            if record_id is not None:
                raw[record_id] = dict(row)

        for rows in link_rows:
            for row in rows:
                target = raw.get(descriptor.record_id(row))
                if target is None:
                    continue
                for key, value in row.items():
                    if target.get(key) is None:
                        target[key] = value

        fresh: Rows = {}
        skipped = 0
        for record_id, row in raw.items():
            if any(row.get(column) in (None, "") for column in descriptor.required_columns):
                skipped += 1
                continue
            fresh[record_id] = descriptor.normalize(row)
        if skipped:
            logger.warning(f"[{self.stream}] skipped {skipped} records missing {descriptor.required_columns}")

        fresh_children: ChildRows = {child.table: {} for child in descriptor.children}
        for child, rows in zip(queried_children, child_rows):
            for row in rows:
                child_row = descriptor.normalize_child(child, row)
                parent_id = child_row[descriptor.id_column]
                if parent_id in fresh:
                    fresh_children[child.table].setdefault(parent_id, []).append(child_row)

        return fresh, fresh_children, skipped

    async def _enrich(
        self,
        fresh: Rows,
        fresh_children: ChildRows,
        stored: Rows,
        stored_children: ChildRows,
        concurrency: Optional[int],
    ) -> None:
        """Detail enrichment for records whose last_modified fingerprint moved"""
        descriptor = self.descriptor
        detail_children = [child for child in descriptor.children if not child.query]

        def keep_stored(record_id: int) -> None:
            existing = stored.get(record_id) or {}
            for column in descriptor.enriched_fields:
                fresh[record_id][column] = existing.get(column)
            for child in detail_children:
                rows = stored_children.get(child.table, {}).get(record_id)
                if rows:
                    fresh_children[child.table][record_id] = rows

        stale = []
        for record_id, row in fresh.items():
            existing = stored.get(record_id)
            if existing and normalize_timestamp(existing.get("last_modified")) == row.get("last_modified"):
                keep_stored(record_id)
            else:
                stale.append(record_id)
        if not stale:
            return

        logger.info(f"[{self.stream}] fetching detail for {len(stale)} of {len(fresh)} records")
        details = await self.details.fetch_many(descriptor.detail_record, stale, concurrency)
        for record_id in stale:
            detail = details.get(record_id)
            if detail is None:
                keep_stored(record_id)
                continue
            for column in descriptor.enriched_fields:
                fresh[record_id][column] = descriptor.get_field(column).normalize(detail.get(column))
            for child in detail_children:
                fresh_children[child.table][record_id] = [
                    descriptor.normalize_child(child, {**line, descriptor.id_column: record_id})
                    for line in detail.get("lines", [])
                ]

    def _derive(self, fresh: Rows, fresh_children: ChildRows) -> None:
        descriptor = self.descriptor
        ui_host = config.erp.get_ui_host()
        for record_id, row in fresh.items():
            if descriptor.derive:
                descriptor.derive(row, {
                    table: by_parent.get(record_id, []) for table, by_parent in fresh_children.items()
                })
            if not row.get("netsuite_url"):
                row["netsuite_url"] = descriptor.build_url(ui_host, record_id)

    async def _reconcile_presence(self, scope_ids: Optional[List[int]], dry_run: bool, result: SyncResult) -> None:
        """Tombstone locally active records that are gone or voided upstream"""
        descriptor = self.descriptor
        handled = set(result.tombstoned_ids) | set(result.exempted_ids)
        active_ids = [i for i in await self.db.fetch_active_ids(descriptor, scope_ids) if i not in handled]
        presence = await self.discovery.reconcile_presence(descriptor, active_ids)
        if presence.gone:
            await self._retire(presence.gone, dry_run, result)

    async def _retire(self, ids: List[int], dry_run: bool, result: SyncResult) -> None:
        """Tombstone the stored active records among ids, honoring the grace period"""
        descriptor = self.descriptor
        stored = await self.db.fetch_records(descriptor, ids)
        active = sorted(i for i, row in stored.items() if row.get(TOMBSTONE_COLUMN) is None)
        result.missing += len(active)
        if not active:
            return

        tombstone, exempted = self.reconciler.apply_grace(active, stored)
        if exempted:
            logger.info(f"[{self.stream}] grace period exempted {len(exempted)} ids: {exempted}")
        if not dry_run and tombstone:
            await self.writer.tombstone(descriptor, tombstone)
        result.tombstoned += len(tombstone)
        result.exempted += len(exempted)
        result.tombstoned_ids.extend(tombstone)
        result.exempted_ids.extend(exempted)

    # ============== Snapshot ==============

    @timed
    async def run_snapshot(self, request: Optional[SnapshotRequest] = None) -> SyncResult:
        """Manifest-driven sync; the bulk export is the full truth"""
        request = request or SnapshotRequest()
        result = self._begin(SyncMode.SNAPSHOT, request.dry_run)
        descriptor = self.descriptor
        logger.info(f"[{self.stream}] starting snapshot sync (dry_run={request.dry_run})")

        history_id = 0
        try:
            await self.db.connect()
            history_id = await self._save_sync_history(SyncMode.SNAPSHOT, request.dry_run)
            required = [descriptor.header_dataset] + [c.dataset for c in descriptor.children if c.dataset]
            manifest = await self.resolver.resolve(descriptor.manifest_name, required=required)
            previous = await self.cursors.read(descriptor.snapshot_cursor_key)
            result.cursor_before = previous.last_cursor if previous else None
            self.progress = 10

            fresh, fresh_children, skipped, skipped_ids = await self._read_snapshot(manifest)
            result.fetched = len(fresh) + skipped
            result.skipped = skipped
            self.rows_processed = result.fetched
            self.progress = 50
            if not fresh:
                raise InvalidManifest(descriptor.manifest_name, reason=f"dataset {descriptor.header_dataset} is empty")
            self._derive(fresh, fresh_children)

            # skipped rows are still present upstream
            active_ids = [i for i in await self.db.fetch_active_ids(descriptor) if i not in skipped_ids]
            stored = await self.db.fetch_records(descriptor, set(fresh) | set(active_ids))
            stored_children = await self.db.fetch_children(descriptor, list(fresh))
            reconciliation = self.reconciler.reconcile(
                descriptor, fresh, fresh_children, stored, stored_children, active_ids=active_ids
            )
            self._accumulate(result, reconciliation)
            result.missing = len(reconciliation.missing)
            result.tombstoned = len(reconciliation.tombstone)
            result.exempted = len(reconciliation.exempted)
            result.tombstoned_ids = reconciliation.tombstone
            result.exempted_ids = reconciliation.exempted
            result.batches = 1
            self.progress = 70

            if self._cancel_requested:
                logger.warning(f"[{self.stream}] snapshot cancelled before writing")
                await self._update_sync_history(history_id, SyncStatus.CANCELLED, result)
                return self._finish(result, SyncStatus.CANCELLED)

            if not request.dry_run:
                await self.writer.upsert_records(descriptor, reconciliation.rows)
                await self.writer.replace_children(descriptor, reconciliation.write_ids, reconciliation.children)
                await self.writer.tombstone(descriptor, reconciliation.tombstone)

                new_ids = set(reconciliation.new)
                await self._notify([r for r in reconciliation.rows if r[descriptor.id_column] in new_ids], result)

                generated_at = normalize_timestamp(manifest.generated_at)
                await self.cursors.write(descriptor.snapshot_cursor_key, utc_now().isoformat(), generated_at)
                result.cursor_after = generated_at or result.cursor_before

            logger.info(
                f"[{self.stream}] snapshot completed: {result.new} new, {result.changed} changed, "
                f"{result.unchanged} unchanged, {result.tombstoned} tombstoned, {result.exempted} exempted"
            )
            await self._update_sync_history(history_id, SyncStatus.COMPLETED, result)
            return self._finish(result, SyncStatus.COMPLETED)

        except (ManifestNotFound, InvalidManifest) as e:
            logger.error(f"[{self.stream}] snapshot aborted: {e}")
            await self._update_sync_history(history_id, SyncStatus.FAILED, result, str(e))
            self._finish(result, SyncStatus.FAILED, str(e))
            raise
        except Exception as e:
            logger.error(f"[{self.stream}] snapshot failed: {e}")
            await self._update_sync_history(history_id, SyncStatus.FAILED, result, str(e))
            return self._finish(result, SyncStatus.FAILED, str(e))

    async def _read_snapshot(self, manifest: Manifest) -> Tuple[Rows, ChildRows, int, Set[int]]:
        """Normalized parent and child rows from the manifest's files

        Also returns the ids of rows skipped for missing required columns;
        they exist upstream and must not be treated as Missing.
        """
        descriptor = self.descriptor

        records = await self.reader.read_records(manifest.file_ids(descriptor.header_dataset))
        reported = manifest.rows_reported(descriptor.header_dataset)
        if reported is not None and reported != len(records):
            logger.warning(
                f"[{self.stream}] manifest reports {reported} rows for "
                f"{descriptor.header_dataset}, files hold {len(records)}"
            )

        fresh: Rows = {}
        skipped = 0
        skipped_ids: Set[int] = set()
        for raw in records:
            record_id = descriptor.record_id(raw)
            if record_id is None or any(raw.get(c) in (None, "") for c in descriptor.required_columns):
                skipped += 1
                if record_id is not None:
                    skipped_ids.add(record_id)
                continue
            fresh[record_id] = descriptor.normalize(raw)

        fresh_children: ChildRows = {child.table: {} for child in descriptor.children}
        for child in descriptor.children:
            if not child.dataset:
                continue
            for raw in await self.reader.read_records(manifest.file_ids(child.dataset)):
                row = descriptor.normalize_child(child, raw)
                parent_id = row[descriptor.id_column]
                if parent_id in fresh:
                    fresh_children[child.table].setdefault(parent_id, []).append(row)

        logger.info(
            f"[{self.stream}] snapshot holds {len(fresh)} records"
            + "".join(f", {sum(len(v) for v in rows.values())} {table}" for table, rows in fresh_children.items())
        )
        if skipped:
            logger.warning(f"[{self.stream}] snapshot skipped {skipped} records missing {descriptor.required_columns}")
        return fresh, fresh_children, skipped, skipped_ids

    # ============== Shared steps ==============

    @staticmethod
    def _accumulate(result: SyncResult, reconciliation: Reconciliation) -> None:
        result.new += len(reconciliation.new)
        result.changed += len(reconciliation.changed)
        result.unchanged += len(reconciliation.unchanged)
        result.new_ids.extend(reconciliation.new)
        result.changes.extend(diff.as_dict() for diff in reconciliation.changed)
        result.issues.extend(issue.as_dict() for issue in reconciliation.issues)

    async def _notify(self, new_rows: List[Dict[str, Any]], result: SyncResult) -> None:
        """Fire-and-forget unpaid notifications; never fails the run"""
        if not self.descriptor.notify_unpaid or not new_rows:
            return
        try:
            result.notifications_sent = await self.notifier.notify_unpaid(
                self.stream, new_rows, self.descriptor.id_column
            )
        except Exception as e:
            logger.warning(f"[{self.stream}] notifications failed: {e}")

    # ============== Sync History ==============

    async def _save_sync_history(self, sync_type: str, dry_run: bool) -> int:
        """Save sync history record and return ID"""
        try:
            return await self.db.insert(
                f"""
                INSERT INTO {SYNC_HISTORY_TABLE} (stream, sync_type, status, dry_run, started_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (self.stream, sync_type, SyncStatus.RUNNING, int(dry_run), self.started_at.isoformat())
            )
        except aiosqlite.Error as e:
            logger.warning(f"Failed to save sync history: {e}")
            return 0

    async def _update_sync_history(
        self,
        history_id: int,
        status: str,
        result: SyncResult,
        error_message: Optional[str] = None,
    ) -> None:
        """Update sync history record"""
        if not history_id:
            return
        completed_at = utc_now()
        duration = int((completed_at - self.started_at).total_seconds()) if self.started_at else 0
        try:
            await self.db.execute(
                f"""
                UPDATE {SYNC_HISTORY_TABLE}
                SET status = ?, completed_at = ?, duration_seconds = ?, rows_processed = ?,
                    new_count = ?, changed_count = ?, tombstoned_count = ?, error_message = ?
                WHERE id = ?
                """,
                (
                    status, completed_at.isoformat(), duration, result.fetched,
                    result.new, result.changed, result.tombstoned, error_message, history_id
                )
            )
        except aiosqlite.Error as e:
            logger.warning(f"Failed to update sync history: {e}")


async def get_sync_history(
    limit: int = 50,
    stream: Optional[str] = None,
    db: Optional[DatabaseService] = None,
) -> List[Dict[str, Any]]:
    """Most recent runs first, optionally for one stream"""
    db = db or database_service
    where, params = "", ()
    if stream:
        where, params = "WHERE stream = ?", (stream,)
    return await db.fetch_all(
        f"""
        SELECT id, stream, sync_type, status, dry_run, started_at, completed_at,
               duration_seconds, rows_processed, new_count, changed_count,
               tombstoned_count, error_message
        FROM {SYNC_HISTORY_TABLE}
        {where}
        ORDER BY id DESC
        LIMIT ?
        """,
        params + (limit,)
    )


# Global service instances, one per stream
sync_services: Dict[str, SyncService] = {name: SyncService(d) for name, d in STREAMS.items()}


def get_sync_service(stream: str) -> SyncService:
    try:
        return sync_services[stream]
    except KeyError:
        raise UnknownStream(stream)
