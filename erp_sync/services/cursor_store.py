"""
Cursor Store Module
Per-stream watermark persisted in sync_state(key, last_success_at, last_cursor).
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

from ..config import config
from ..utils.constants import SYNC_STATE_TABLE
from ..utils.helpers import format_erp_timestamp, parse_timestamp, utc_now
from ..utils.logger import logger
from .database_service import DatabaseService, database_service


@dataclass
class SyncCursor:
    key: str
    last_success_at: Optional[str] = None
    last_cursor: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "last_success_at": self.last_success_at,
            "last_cursor": self.last_cursor,
        }


class CursorStore:
    """Reads and writes sync watermarks"""

    def __init__(self, db: Optional[DatabaseService] = None):
        self.db = db or database_service

    async def read(self, key: str) -> Optional[SyncCursor]:
        row = await self.db.fetch_one(
            f"SELECT key, last_success_at, last_cursor FROM {SYNC_STATE_TABLE} WHERE key = ?",
            (key,)
        )
        return SyncCursor(**row) if row else None

    async def write(self, key: str, last_success_at: str, last_cursor: Optional[str]) -> None:
        """Upsert the watermark; a NULL cursor keeps the stored one"""
        await self.db.execute(
            f"""
            INSERT INTO {SYNC_STATE_TABLE} (key, last_success_at, last_cursor)
            VALUES (?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET
                last_success_at = excluded.last_success_at,
                last_cursor = COALESCE(excluded.last_cursor, {SYNC_STATE_TABLE}.last_cursor)
            """,
            (key, last_success_at, last_cursor)
        )
        logger.info(f"Cursor {key} -> {last_cursor} (success at {last_success_at})")

    async def list_all(self) -> List[SyncCursor]:
        rows = await self.db.fetch_all(
            f"SELECT key, last_success_at, last_cursor FROM {SYNC_STATE_TABLE} ORDER BY key"
        )
        return [SyncCursor(**row) for row in rows]

    async def effective_since(
        self,
        key: str,
        lookback_days: Optional[int] = None,
        overlap_minutes: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> datetime:
        """Discovery lower bound: stored cursor minus overlap, else now minus lookback"""
        lookback_days = config.sync.lookback_days if lookback_days is None else lookback_days
        overlap_minutes = config.sync.overlap_minutes if overlap_minutes is None else overlap_minutes
        now = now or utc_now()

        cursor = await self.read(key)
        moment = parse_timestamp(cursor.last_cursor) if cursor else None
        if moment is None:
            return now - timedelta(days=lookback_days)
        return moment - timedelta(minutes=overlap_minutes)

    @staticmethod
    def next_cursor(previous: Optional[str], observed: Iterable[Any]) -> Optional[str]:
        """max(previous, newest observed last_modified); None when both are empty"""
        candidates = [parse_timestamp(value) for value in observed]
        candidates.append(parse_timestamp(previous))
        candidates = [c for c in candidates if c is not None]
        if not candidates:
            return None
        return format_erp_timestamp(max(candidates))


# Global store instance
cursor_store = CursorStore()
