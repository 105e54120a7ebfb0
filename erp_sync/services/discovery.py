"""
Change-Set Discovery Module
===========================
Finds which record ids may have changed since a lower bound, and which
locally active records no longer exist upstream.

STRATEGIES:
----------
No single ERP signal is reliable, so several independent strategies run
and their results are unioned:

1. modified_since        lastmodifieddate >= since
2. created_in_window     trandate >= since (calendar date), catches records
                         whose modification stamp lags their creation
3. related_activity      descriptor queries over related objects (payments,
                         linked orders) changed since the bound
4. full_window_fallback  trandate within the lookback window
                         (sync.lookback_days, or since when that is older),
                         a safety net for the other three

Each strategy can be disabled by name (sync.disabled_strategies). Every
query is scoped by chunks of customer ids (900 per IN list) with a short
pause between calls.

OTHER MODES:
-----------
- scan_all: keyset pagination over (trandate DESC, id DESC) for forced
  full rescans
- reconcile_presence: checks local ids against the ERP in chunks and
  reports the ones that are missing or cancelled/voided
- find_voided: the cancelled/voided subset of fetched ids, so a batch never
  revives a record that presence reconciliation retires
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set

from ..config import config
from ..models.entities import EntityDescriptor
from ..utils.helpers import chunk_list, format_erp_timestamp, id_list_csv, to_int_or_none, utc_now
from ..utils.logger import logger
from .query_executor import QueryExecutor, query_executor

SINCE_TIMESTAMP_SQL = """TO_TIMESTAMP_TZ('{since_iso}', 'YYYY-MM-DD"T"HH24:MI:SS.FF3"Z"')"""


def scope_filter(entity_column: str, scope_chunk: Optional[List[int]]) -> str:
    if scope_chunk is None:
        return ""
    return f"AND {entity_column} IN ({id_list_csv(scope_chunk)})"


def collect_ids(rows: Iterable[Dict[str, Any]], column: str = "id") -> Set[int]:
    ids = set()
    for row in rows:
        value = to_int_or_none(row.get(column))
        if value and value > 0:
            ids.add(value)
    return ids


class DiscoveryStrategy:
    """Base strategy: builds queries, runs them, collects the id column"""
    name = ""

    def build_queries(
        self,
        descriptor: EntityDescriptor,
        since: datetime,
        scope_chunk: Optional[List[int]],
        lookback_since: Optional[datetime] = None,
    ) -> List[str]:
        raise NotImplementedError

    async def discover(
        self,
        executor: QueryExecutor,
        descriptor: EntityDescriptor,
        since: datetime,
        scope_chunk: Optional[List[int]],
        lookback_since: Optional[datetime] = None,
    ) -> Set[int]:
        ids: Set[int] = set()
        for query in self.build_queries(descriptor, since, scope_chunk, lookback_since):
            rows = await executor.execute(query, tag=f"{descriptor.stream}.{self.name}")
            ids |= collect_ids(rows)
        return ids


class ModifiedSince(DiscoveryStrategy):
    name = "modified_since"

    def build_queries(self, descriptor, since, scope_chunk, lookback_since=None):
        since_sql = SINCE_TIMESTAMP_SQL.format(since_iso=format_erp_timestamp(since))
        return [f"""
            SELECT T.id AS id
            FROM transaction T
            WHERE T.type = '{descriptor.record_type}'
              {scope_filter(descriptor.entity_column, scope_chunk)}
              AND T.lastmodifieddate >= {since_sql}
            ORDER BY T.lastmodifieddate ASC
        """]


class CreatedInWindow(DiscoveryStrategy):
    name = "created_in_window"

    def build_queries(self, descriptor, since, scope_chunk, lookback_since=None):
        return [f"""
            SELECT T.id AS id
            FROM transaction T
            WHERE T.type = '{descriptor.record_type}'
              {scope_filter(descriptor.entity_column, scope_chunk)}
              AND T.trandate >= TO_DATE('{since.date().isoformat()}', 'YYYY-MM-DD')
            ORDER BY T.trandate ASC
        """]


class RelatedActivity(DiscoveryStrategy):
    name = "related_activity"

    def build_queries(self, descriptor, since, scope_chunk, lookback_since=None):
        return [
            related.template.format(
                since_iso=format_erp_timestamp(since),
                since_date=since.date().isoformat(),
                scope_filter=scope_filter(related.entity_column, scope_chunk),
            )
            for related in descriptor.related_queries
        ]


class FullWindowFallback(DiscoveryStrategy):
    """Every record dated inside the lookback window, regardless of the cursor"""
    name = "full_window_fallback"

    def build_queries(self, descriptor, since, scope_chunk, lookback_since=None):
        window_start = min(since, lookback_since) if lookback_since else since
        return [f"""
            SELECT T.id AS id
            FROM transaction T
            WHERE T.type = '{descriptor.record_type}'
              {scope_filter(descriptor.entity_column, scope_chunk)}
              AND T.trandate >= TO_DATE('{window_start.date().isoformat()}', 'YYYY-MM-DD')
        """]


DEFAULT_STRATEGIES = [ModifiedSince(), CreatedInWindow(), RelatedActivity(), FullWindowFallback()]


@dataclass
class ChangeSet:
    ids: List[int] = field(default_factory=list)
    counts: Dict[str, int] = field(default_factory=dict)


@dataclass
class PresenceResult:
    checked: int = 0
    missing: List[int] = field(default_factory=list)
    voided: List[int] = field(default_factory=list)

    @property
    def gone(self) -> List[int]:
        return sorted(set(self.missing) | set(self.voided))


class ChangeSetDiscovery:
    """Runs discovery strategies and presence checks"""

    def __init__(
        self,
        executor: Optional[QueryExecutor] = None,
        strategies: Optional[List[DiscoveryStrategy]] = None,
        disabled: Optional[Iterable[str]] = None,
        chunk_size: Optional[int] = None,
        presence_chunk_size: Optional[int] = None,
        pause: Optional[float] = None,
        lookback_days: Optional[int] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.executor = executor or query_executor
        self.strategies = strategies if strategies is not None else list(DEFAULT_STRATEGIES)
        self.disabled = set(disabled if disabled is not None else config.sync.disabled_strategies)
        self.chunk_size = chunk_size or config.sync.scope_chunk_size
        self.presence_chunk_size = presence_chunk_size or config.sync.presence_chunk_size
        self.pause = config.sync.query_pause if pause is None else pause
        self.lookback_days = config.sync.lookback_days if lookback_days is None else lookback_days
        self._sleep = sleep

    @property
    def active_strategies(self) -> List[DiscoveryStrategy]:
        return [s for s in self.strategies if s.name not in self.disabled]

    def _scope_chunks(self, scope_ids: Optional[List[int]]) -> List[Optional[List[int]]]:
        if scope_ids is None:
            return [None]
        return chunk_list(sorted(set(scope_ids)), self.chunk_size)

    async def discover(
        self,
        descriptor: EntityDescriptor,
        since: datetime,
        scope_ids: Optional[List[int]] = None,
        lookback_since: Optional[datetime] = None,
    ) -> ChangeSet:
        """Union of every enabled strategy over every scope chunk

        since bounds the change-driven strategies; the fallback scans the
        lookback window (now minus lookback_days unless given).
        """
        if lookback_since is None:
            lookback_since = utc_now() - timedelta(days=self.lookback_days)
        found: Set[int] = set()
        counts: Dict[str, int] = {}

        for strategy in self.active_strategies:
            hits: Set[int] = set()
            for scope_chunk in self._scope_chunks(scope_ids):
                hits |= await strategy.discover(self.executor, descriptor, since, scope_chunk, lookback_since)
                await self._sleep(self.pause)
            counts[strategy.name] = len(hits)
            found |= hits

        logger.info(
            f"[{descriptor.stream}] discovered {len(found)} candidate ids since "
            f"{format_erp_timestamp(since)}: {counts}"
        )
        return ChangeSet(ids=sorted(found), counts=counts)

    async def scan_all(
        self,
        descriptor: EntityDescriptor,
        scope_ids: Optional[List[int]] = None,
        since_date: Optional[str] = None,
        page_size: int = 1000,
    ) -> List[int]:
        """Every record id in scope (optionally trandate >= since_date), newest first"""
        found: List[int] = []
        seen: Set[int] = set()
        date_filter = f"AND T.trandate >= TO_DATE('{since_date}', 'YYYY-MM-DD')" if since_date else ""

        for scope_chunk in self._scope_chunks(scope_ids):
            last_date: Optional[str] = None
            last_id: Optional[int] = None
            while True:
                after = ""
                if last_date is not None:
                    after = (
                        f"AND (T.trandate < TO_DATE('{last_date}', 'YYYY-MM-DD') "
                        f"OR (T.trandate = TO_DATE('{last_date}', 'YYYY-MM-DD') AND T.id < {last_id}))"
                    )
                rows = await self.executor.execute(
                    f"""
                    SELECT T.id AS id, TO_CHAR(T.trandate, 'YYYY-MM-DD') AS trandate
                    FROM transaction T
                    WHERE T.type = '{descriptor.record_type}'
                      {scope_filter(descriptor.entity_column, scope_chunk)}
                      {date_filter}
                      {after}
                    ORDER BY T.trandate DESC, T.id DESC
                    FETCH NEXT {page_size} ROWS ONLY
                    """,
                    tag=f"{descriptor.stream}.scan_all",
                )
                for row in rows:
                    record_id = to_int_or_none(row.get("id"))
                    if record_id and record_id not in seen:
                        seen.add(record_id)
                        found.append(record_id)

                if len(rows) < page_size:
                    break
                last_date = str(rows[-1].get("trandate"))
                last_id = to_int_or_none(rows[-1].get("id"))
                await self._sleep(self.pause)

        logger.info(f"[{descriptor.stream}] full rescan found {len(found)} ids")
        return found

    async def _voided_in(self, descriptor: EntityDescriptor, ids: List[int]) -> Set[int]:
        rows = await self.executor.execute(
            f"""
            SELECT T.id AS id
            FROM transaction T
            WHERE T.type = '{descriptor.record_type}'
              AND T.id IN ({id_list_csv(sorted(ids))})
              AND (
                LOWER(BUILTIN.DF(T.status)) LIKE '%cancel%'
                OR LOWER(BUILTIN.DF(T.status)) LIKE '%void%'
              )
            """,
            tag=f"{descriptor.stream}.voided",
        )
        return collect_ids(rows)

    async def find_voided(self, descriptor: EntityDescriptor, ids: Iterable[int]) -> Set[int]:
        """Ids among the given ones that are cancelled or voided upstream"""
        voided: Set[int] = set()
        for chunk in chunk_list(sorted(set(ids)), self.presence_chunk_size):
            voided |= await self._voided_in(descriptor, chunk)
        return voided

    async def reconcile_presence(self, descriptor: EntityDescriptor, local_ids: List[int]) -> PresenceResult:
        """Split local ids into present, missing upstream, and cancelled/voided upstream"""
        result = PresenceResult()

        for chunk in chunk_list(sorted(set(local_ids)), self.presence_chunk_size):
            id_csv = id_list_csv(chunk)
            rows = await self.executor.execute(
                f"""
                SELECT T.id AS id
                FROM transaction T
                WHERE T.type = '{descriptor.record_type}' AND T.id IN ({id_csv})
                """,
                tag=f"{descriptor.stream}.presence",
            )
            present = collect_ids(rows)
            result.missing.extend(i for i in chunk if i not in present)

            if present:
                result.voided.extend(sorted(await self._voided_in(descriptor, sorted(present))))

            result.checked += len(chunk)
            await self._sleep(self.pause)

        logger.info(
            f"[{descriptor.stream}] presence check: {result.checked} checked, "
            f"{len(result.missing)} missing, {len(result.voided)} voided"
        )
        return result


# Global discovery instance
change_set_discovery = ChangeSetDiscovery()
