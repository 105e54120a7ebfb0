"""
Batch Writer Module
===================
Applies reconciled results to the local store.

- upsert_records: INSERT ... ON CONFLICT(id) DO UPDATE over owned columns
  only, so foreign columns keep their values; deleted_at is reset to NULL
  because a fetched record is live
- replace_children: per chunk of parents, delete every child row of those
  parents and insert the fresh set, inside one transaction
- tombstone: sets deleted_at only where it is still NULL

Each batch (default 1000 rows) commits on its own. A failing batch raises
StoreWriteFailed naming the table and batch index; earlier batches stay
committed and the whole run can be repeated safely.
"""

import json
from typing import Any, Dict, List, Optional

import aiosqlite

from ..config import config
from ..exceptions import StoreWriteFailed
from ..models.entities import EntityDescriptor
from ..utils.constants import SYNCED_AT_COLUMN, TOMBSTONE_COLUMN
from ..utils.helpers import chunk_list, get_current_timestamp
from ..utils.logger import logger
from .database_service import DatabaseService, database_service


def _sql_value(value: Any) -> Any:
    if isinstance(value, (list, dict)):
        return json.dumps(value, sort_keys=True, default=str)
    return value


class BatchWriter:
    """Idempotent writes for stream tables"""

    def __init__(self, db: Optional[DatabaseService] = None, batch_size: Optional[int] = None):
        self.db = db or database_service
        self.batch_size = batch_size or config.sync.batch_size

    async def upsert_records(
        self,
        descriptor: EntityDescriptor,
        rows: List[Dict[str, Any]],
        synced_at: Optional[str] = None,
    ) -> int:
        """Upsert parent rows keyed on the business id"""
        if not rows:
            return 0
        synced_at = synced_at or get_current_timestamp()
        columns = descriptor.write_columns
        updates = ", ".join(f"{c} = excluded.{c}" for c in columns if c != descriptor.id_column)
        query = (
            f"INSERT INTO {descriptor.table} ({', '.join(columns)}) "
            f"VALUES ({', '.join('?' for _ in columns)}) "
            f"ON CONFLICT({descriptor.id_column}) DO UPDATE SET {updates}"
        )

        written = 0
        for batch_index, batch in enumerate(chunk_list(rows, self.batch_size)):
            params = []
            for row in batch:
                values = {**row, TOMBSTONE_COLUMN: None, SYNCED_AT_COLUMN: synced_at}
                params.append(tuple(_sql_value(values.get(c)) for c in columns))
            try:
                async with self.db.transaction() as conn:
                    await conn.executemany(query, params)
            except aiosqlite.Error as e:
                logger.error(f"[{descriptor.stream}] upsert batch {batch_index} failed: {e}")
                raise StoreWriteFailed(descriptor.table, batch_index, e)
            written += len(batch)

        logger.debug(f"[{descriptor.stream}] upserted {written} rows into {descriptor.table}")
        return written

    async def replace_children(
        self,
        descriptor: EntityDescriptor,
        parent_ids: List[int],
        children: Dict[str, Dict[int, List[Dict[str, Any]]]],
    ) -> int:
        """Replace the full child set of every given parent"""
        if not parent_ids or not descriptor.children:
            return 0

        written = 0
        for batch_index, chunk in enumerate(chunk_list(sorted(set(parent_ids)), self.batch_size)):
            placeholders = ",".join("?" for _ in chunk)
            try:
                async with self.db.transaction() as conn:
                    for child in descriptor.children:
                        await conn.execute(
                            f"DELETE FROM {child.table} WHERE {descriptor.id_column} IN ({placeholders})",
                            tuple(chunk)
                        )
                        columns = [descriptor.id_column] + child.columns
                        rows = [
                            {**row, descriptor.id_column: parent_id}
                            for parent_id in chunk
                            for row in children.get(child.table, {}).get(parent_id, [])
                        ]
                        if not rows:
                            continue
                        await conn.executemany(
                            f"INSERT OR REPLACE INTO {child.table} ({', '.join(columns)}) "
                            f"VALUES ({', '.join('?' for _ in columns)})",
                            [tuple(_sql_value(row.get(c)) for c in columns) for row in rows]
                        )
                        written += len(rows)
            except aiosqlite.Error as e:
                logger.error(f"[{descriptor.stream}] child replace batch {batch_index} failed: {e}")
                raise StoreWriteFailed(
                    ",".join(child.table for child in descriptor.children), batch_index, e
                )

        return written

    async def tombstone(
        self,
        descriptor: EntityDescriptor,
        ids: List[int],
        when: Optional[str] = None,
    ) -> int:
        """Mark records deleted; already tombstoned rows are left untouched"""
        if not ids:
            return 0
        when = when or get_current_timestamp()

        affected = 0
        for batch_index, chunk in enumerate(chunk_list(sorted(set(ids)), self.batch_size)):
            placeholders = ",".join("?" for _ in chunk)
            try:
                async with self.db.transaction() as conn:
                    cursor = await conn.execute(
                        f"UPDATE {descriptor.table} SET {TOMBSTONE_COLUMN} = ? "
                        f"WHERE {descriptor.id_column} IN ({placeholders}) AND {TOMBSTONE_COLUMN} IS NULL",
                        (when,) + tuple(chunk)
                    )
                    affected += max(cursor.rowcount, 0)
            except aiosqlite.Error as e:
                logger.error(f"[{descriptor.stream}] tombstone batch {batch_index} failed: {e}")
                raise StoreWriteFailed(descriptor.table, batch_index, e)

        logger.info(f"[{descriptor.stream}] tombstoned {affected} of {len(ids)} ids")
        return affected


# Global writer instance
batch_writer = BatchWriter()
