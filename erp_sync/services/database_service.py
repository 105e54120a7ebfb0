"""
Database Service Module
=======================
Handles SQLite database operations for the local store.

SCHEMA:
------
Stream tables are generated from entity descriptors:
- parent table: owned columns + foreign columns + deleted_at + synced_at,
  primary key = business id
- child tables: parent id + child columns, primary key (parent id, sub key)
Engine tables:
- sync_state:   one cursor row per stream key
- sync_history: one row per run
- profiles:     portal profiles; netsuite_customer_id scopes discovery

CONNECTION:
----------
One aiosqlite connection per service instance, WAL journal mode and a busy
timeout so readers do not block the writer. transaction() groups
statements into a single commit (or rollback on error). Every write path
(transaction, execute, insert) holds the service write lock, so runs of
different streams never commit or roll back each other's statements.
"""

import asyncio

import aiosqlite
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Tuple

from ..config import config
from ..models.entities import EntityDescriptor
from ..utils.constants import (
    SCOPE_COLUMN, SCOPE_TABLE, SYNC_HISTORY_TABLE, SYNC_STATE_TABLE,
    SYNCED_AT_COLUMN, TOMBSTONE_COLUMN
)
from ..utils.decorators import timed
from ..utils.helpers import chunk_list
from ..utils.logger import logger

# SQLite caps bound parameters per statement; keep IN lists well below it
IN_CHUNK_SIZE = 500


class DatabaseService:
    """Service for SQLite database operations"""

    def __init__(self, db_path: Optional[str] = None):
        self.db_path = db_path or config.database.path
        self._connection: Optional[aiosqlite.Connection] = None
        self._write_lock = asyncio.Lock()

    async def _get_connection(self) -> aiosqlite.Connection:
        """Get or create database connection"""
        if self._connection is None:
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

            self._connection = await aiosqlite.connect(self.db_path, timeout=30.0)
            self._connection.row_factory = aiosqlite.Row

            await self._connection.execute("PRAGMA journal_mode=WAL")
            await self._connection.execute("PRAGMA busy_timeout=30000")
            await self._connection.execute("PRAGMA synchronous=NORMAL")

            logger.info(f"Connected to SQLite database: {self.db_path}")

        return self._connection

    async def connect(self) -> None:
        """Open database connection"""
        await self._get_connection()

    async def disconnect(self) -> None:
        """Close database connection"""
        if self._connection:
            await self._connection.close()
            self._connection = None
            logger.info("Database connection closed")

    async def execute(self, query: str, params: Tuple = ()) -> int:
        """Execute a query and return affected rows"""
        conn = await self._get_connection()

        async with self._write_lock:
            try:
                cursor = await conn.execute(query, params)
                await conn.commit()
                return cursor.rowcount
            except aiosqlite.Error as e:
                logger.error(f"Query execution failed: {e}\nQuery: {query[:200]}...")
                raise

    async def insert(self, query: str, params: Tuple = ()) -> int:
        """Execute an INSERT and return the new row id"""
        conn = await self._get_connection()

        async with self._write_lock:
            try:
                cursor = await conn.execute(query, params)
                await conn.commit()
                return cursor.lastrowid or 0
            except aiosqlite.Error as e:
                logger.error(f"Insert failed: {e}\nQuery: {query[:200]}...")
                raise

    async def fetch_all(self, query: str, params: Tuple = ()) -> List[Dict[str, Any]]:
        """Fetch all rows from query"""
        conn = await self._get_connection()
        cursor = await conn.execute(query, params)
        rows = await cursor.fetchall()
        return [dict(row) for row in rows]

    async def fetch_one(self, query: str, params: Tuple = ()) -> Optional[Dict[str, Any]]:
        """Fetch single row from query"""
        conn = await self._get_connection()
        cursor = await conn.execute(query, params)
        row = await cursor.fetchone()
        return dict(row) if row else None

    async def fetch_scalar(self, query: str, params: Tuple = ()) -> Any:
        """Fetch single value from query"""
        result = await self.fetch_one(query, params)
        if result:
            return list(result.values())[0]
        return None

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Run statements on the shared connection and commit once; roll back on error

        Holds the write lock for the whole block; do not call execute() or
        insert() inside it.
        """
        conn = await self._get_connection()
        async with self._write_lock:
            try:
                yield conn
            except BaseException:
                await conn.rollback()
                raise
            else:
                await conn.commit()

    # ============== Schema ==============

    def _get_schema_sql(self, descriptors: Iterable[EntityDescriptor]) -> List[str]:
        """DDL for engine tables and every stream table"""
        statements = [
            f"""
            CREATE TABLE IF NOT EXISTS {SYNC_STATE_TABLE} (
                key TEXT PRIMARY KEY,
                last_success_at TEXT,
                last_cursor TEXT
            )
            """,
            f"""
            CREATE TABLE IF NOT EXISTS {SYNC_HISTORY_TABLE} (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                stream TEXT NOT NULL,
                sync_type TEXT NOT NULL,
                status TEXT NOT NULL,
                dry_run INTEGER DEFAULT 0,
                started_at TEXT,
                completed_at TEXT,
                duration_seconds INTEGER DEFAULT 0,
                rows_processed INTEGER DEFAULT 0,
                new_count INTEGER DEFAULT 0,
                changed_count INTEGER DEFAULT 0,
                tombstoned_count INTEGER DEFAULT 0,
                error_message TEXT
            )
            """,
            f"""
            CREATE TABLE IF NOT EXISTS {SCOPE_TABLE} (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                email TEXT,
                {SCOPE_COLUMN} INTEGER
            )
            """,
        ]

        for descriptor in descriptors:
            columns = [f"{descriptor.id_column} INTEGER PRIMARY KEY"]
            columns += [
                f"{spec.column} {spec.sql_type}"
                for spec in descriptor.fields + descriptor.foreign_fields
                if spec.column != descriptor.id_column
            ]
            columns += [f"{TOMBSTONE_COLUMN} TEXT", f"{SYNCED_AT_COLUMN} TEXT"]
            statements.append(f"CREATE TABLE IF NOT EXISTS {descriptor.table} ({', '.join(columns)})")
            statements.append(
                f"CREATE INDEX IF NOT EXISTS idx_{descriptor.table}_active "
                f"ON {descriptor.table}({TOMBSTONE_COLUMN})"
            )
            if any(spec.column == "customer_id" for spec in descriptor.fields):
                statements.append(
                    f"CREATE INDEX IF NOT EXISTS idx_{descriptor.table}_customer "
                    f"ON {descriptor.table}(customer_id)"
                )

            for child in descriptor.children:
                child_columns = [f"{descriptor.id_column} INTEGER NOT NULL"]
                child_columns += [f"{spec.column} {spec.sql_type}" for spec in child.fields]
                child_columns.append(f"PRIMARY KEY ({descriptor.id_column}, {child.key})")
                statements.append(f"CREATE TABLE IF NOT EXISTS {child.table} ({', '.join(child_columns)})")

        return statements

    @timed
    async def create_tables(self, descriptors: Iterable[EntityDescriptor]) -> None:
        """Create engine and stream tables if they do not exist"""
        async with self.transaction() as conn:
            for statement in self._get_schema_sql(descriptors):
                await conn.execute(statement)
        logger.debug("Database tables ensured")

    async def get_table_count(self, table_name: str) -> int:
        """Get row count for a table"""
        return await self.fetch_scalar(f"SELECT COUNT(*) FROM {table_name}") or 0

    # ============== Stream reads ==============

    async def fetch_scope_ids(self) -> List[int]:
        """Distinct customer ids of portal profiles"""
        rows = await self.fetch_all(
            f"SELECT DISTINCT {SCOPE_COLUMN} AS id FROM {SCOPE_TABLE} "
            f"WHERE {SCOPE_COLUMN} IS NOT NULL ORDER BY {SCOPE_COLUMN}"
        )
        return [int(row["id"]) for row in rows]

    async def fetch_active_ids(
        self,
        descriptor: EntityDescriptor,
        scope_ids: Optional[List[int]] = None,
        page_size: int = 1000,
    ) -> List[int]:
        """Ids of non-tombstoned records, optionally limited to scoped customers"""
        if scope_ids is None:
            scope_chunks: List[Optional[List[int]]] = [None]
        else:
            scope_chunks = chunk_list(sorted(set(scope_ids)), IN_CHUNK_SIZE)

        ids = set()
        for scope_chunk in scope_chunks:
            clause, scope_params = "", ()
            if scope_chunk is not None:
                clause = f" AND customer_id IN ({','.join('?' for _ in scope_chunk)})"
                scope_params = tuple(scope_chunk)

            last_id = 0
            while True:
                rows = await self.fetch_all(
                    f"SELECT {descriptor.id_column} AS id FROM {descriptor.table} "
                    f"WHERE {TOMBSTONE_COLUMN} IS NULL AND {descriptor.id_column} > ?{clause} "
                    f"ORDER BY {descriptor.id_column} LIMIT ?",
                    (last_id,) + scope_params + (page_size,)
                )
                ids.update(int(row["id"]) for row in rows)
                if len(rows) < page_size:
                    break
                last_id = int(rows[-1]["id"])
        return sorted(ids)

    async def fetch_records(self, descriptor: EntityDescriptor, ids: Iterable[int]) -> Dict[int, Dict[str, Any]]:
        """Stored parent rows (tombstoned included) keyed by id"""
        records: Dict[int, Dict[str, Any]] = {}
        for chunk in chunk_list(sorted(set(ids)), IN_CHUNK_SIZE):
            placeholders = ",".join("?" for _ in chunk)
            rows = await self.fetch_all(
                f"SELECT * FROM {descriptor.table} WHERE {descriptor.id_column} IN ({placeholders})",
                tuple(chunk)
            )
            for row in rows:
                records[int(row[descriptor.id_column])] = row
        return records

    async def fetch_children(
        self,
        descriptor: EntityDescriptor,
        ids: Iterable[int],
    ) -> Dict[str, Dict[int, List[Dict[str, Any]]]]:
        """Stored child rows per child table, grouped by parent id"""
        id_list = sorted(set(ids))
        children: Dict[str, Dict[int, List[Dict[str, Any]]]] = {}
        for child in descriptor.children:
            grouped: Dict[int, List[Dict[str, Any]]] = {}
            for chunk in chunk_list(id_list, IN_CHUNK_SIZE):
                placeholders = ",".join("?" for _ in chunk)
                rows = await self.fetch_all(
                    f"SELECT * FROM {child.table} WHERE {descriptor.id_column} IN ({placeholders}) "
                    f"ORDER BY {descriptor.id_column}, {child.key}",
                    tuple(chunk)
                )
                for row in rows:
                    grouped.setdefault(int(row[descriptor.id_column]), []).append(row)
            children[child.table] = grouped
        return children


# Global service instance
database_service = DatabaseService()
