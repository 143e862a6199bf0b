"""
Interaction Log.

Append-only store of user→product interactions with a hard retention
window. Query access by (user, time), (product, time) and
(strategy, kind, time), plus grouped aggregates.

Backends:
- InMemoryInteractionBackend: process-local, indexed lists (default)
- SupabaseInteractionBackend: ``recommendation_interactions`` table

Both are wrapped by InteractionLog, which scores records on write,
stamps monotonic timestamps and enforces retention on every read.
"""

import asyncio
import bisect
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta
from threading import Lock
from typing import (
    Any, AsyncIterator, Callable, Dict, Iterable, List, Mapping, Optional,
    Sequence, Tuple,
)

from config.constants import DEFAULT_ENGAGEMENT_CONFIG, EngagementConfig
from core.errors import DependencyUnavailable, ValidationError
from core.logging import get_logger
from core.utils import ensure_utc, isoformat, utcnow
from recs.models import Interaction, InteractionKind, Strategy, new_interaction_id
from recs.scorer import score_engagement


logger = get_logger(__name__)

GROUP_FIELDS = ("strategy", "kind", "product", "user")

KindFilter = Optional[Iterable[InteractionKind]]


@dataclass(frozen=True)
class AggregateRow:
    """Count and average quality for one group."""
    group: Tuple[Tuple[str, str], ...]
    count: int
    avg_quality: float

    def key(self, name: str) -> Optional[str]:
        return dict(self.group).get(name)

    def to_dict(self) -> Dict[str, Any]:
        row: Dict[str, Any] = dict(self.group)
        row["count"] = self.count
        row["avgQuality"] = round(self.avg_quality, 4)
        return row


def _group_value(record: Interaction, name: str) -> str:
    if name == "strategy":
        return record.strategy.value
    if name == "kind":
        return record.kind.value
    if name == "product":
        return record.product_id
    return record.user_key


def _kind_set(kinds: KindFilter) -> Optional[frozenset]:
    if kinds is None:
        return None
    return frozenset(InteractionKind(k) for k in kinds)


# =============================================================================
# In-Memory Backend (Default)
# =============================================================================

class InMemoryInteractionBackend:
    """
    In-memory interaction storage for development/testing.

    Records are appended in timestamp order, so every index is a list sorted
    ascending by time and range queries are bisections. Reads copy the
    matching slice, so a concurrent append never changes a result already
    handed out.

    Note: Interactions are lost on server restart.
    """

    name = "in_memory"

    def __init__(self):
        self._lock = Lock()
        self._all: List[Interaction] = []
        self._by_user: Dict[str, List[Interaction]] = defaultdict(list)
        self._by_product: Dict[str, List[Interaction]] = defaultdict(list)
        self._by_strategy_kind: Dict[Tuple[str, str], List[Interaction]] = defaultdict(list)

    @staticmethod
    def _window(records: List[Interaction], since: Optional[datetime],
                until: Optional[datetime]) -> List[Interaction]:
        lo = 0 if since is None else bisect.bisect_left(records, since, key=lambda r: r.timestamp)
        hi = len(records) if until is None else bisect.bisect_right(records, until, key=lambda r: r.timestamp)
        return records[lo:hi]

    @staticmethod
    def _insort(records: List[Interaction], record: Interaction) -> None:
        if not records or records[-1].timestamp <= record.timestamp:
            records.append(record)
        else:
            bisect.insort_right(records, record, key=lambda r: r.timestamp)

    async def insert(self, record: Interaction) -> None:
        with self._lock:
            self._insort(self._all, record)
            self._insort(self._by_user[record.user_key], record)
            self._insort(self._by_product[record.product_id], record)
            self._insort(self._by_strategy_kind[(record.strategy.value, record.kind.value)], record)

    async def fetch_by_user(self, user_key: str, since: Optional[datetime],
                            until: Optional[datetime]) -> List[Interaction]:
        with self._lock:
            rows = self._window(self._by_user.get(user_key, []), since, until)
        return rows[::-1]

    async def fetch_by_product(self, product_id: str, since: Optional[datetime],
                               until: Optional[datetime]) -> List[Interaction]:
        with self._lock:
            rows = self._window(self._by_product.get(product_id, []), since, until)
        return rows[::-1]

    async def fetch_by_strategy(self, strategy: str, kind: str, since: Optional[datetime],
                                until: Optional[datetime]) -> List[Interaction]:
        with self._lock:
            rows = self._window(self._by_strategy_kind.get((strategy, kind), []), since, until)
        return rows[::-1]

    async def fetch_range(self, since: Optional[datetime],
                          until: Optional[datetime]) -> List[Interaction]:
        with self._lock:
            rows = self._window(self._all, since, until)
        return rows[::-1]

    async def delete_before(self, cutoff: datetime) -> int:
        with self._lock:
            keep = [r for r in self._all if r.timestamp >= cutoff]
            removed = len(self._all) - len(keep)
            if removed:
                self._all = keep
                for index in (self._by_user, self._by_product, self._by_strategy_kind):
                    for key in list(index):
                        rows = [r for r in index[key] if r.timestamp >= cutoff]
                        if rows:
                            index[key] = rows
                        else:
                            del index[key]
        return removed

    async def count(self) -> int:
        with self._lock:
            return len(self._all)

    def get_stats(self) -> Dict[str, Any]:
        return {
            "backend": self.name,
            "records": len(self._all),
            "users": len(self._by_user),
            "products": len(self._by_product),
        }


# =============================================================================
# Supabase Backend (Optional - for production)
# =============================================================================

class SupabaseInteractionBackend:
    """
    Interaction storage in a Supabase (PostgREST) table.

    Expected indexes: (user_key, created_at desc), (product_id, created_at
    desc), (recommendation_type, interaction_type, created_at desc). The
    synchronous client runs in worker threads.
    """

    name = "supabase"
    PAGE_SIZE = 1000

    def __init__(self, client: Any, table: str = "recommendation_interactions"):
        self._client = client
        self._table = table

    async def _run(self, fn: Callable[[], Any]) -> Any:
        try:
            return await asyncio.to_thread(fn)
        except Exception as e:
            logger.warning("Interaction store call failed", table=self._table, error=str(e))
            raise DependencyUnavailable("Interaction store unavailable") from e

    async def _select(self, build: Callable[[Any], Any]) -> List[Interaction]:
        rows: List[Interaction] = []
        start = 0
        while True:
            def page(offset=start):
                query = build(self._client.table(self._table).select("*"))
                return query.order("created_at", desc=True).range(
                    offset, offset + self.PAGE_SIZE - 1
                ).execute()

            result = await self._run(page)
            data = result.data or []
            rows.extend(Interaction.from_dict(row) for row in data)
            if len(data) < self.PAGE_SIZE:
                return rows
            start += self.PAGE_SIZE

    @staticmethod
    def _bounded(query: Any, since: Optional[datetime], until: Optional[datetime]) -> Any:
        if since is not None:
            query = query.gte("created_at", isoformat(since))
        if until is not None:
            query = query.lte("created_at", isoformat(until))
        return query

    async def insert(self, record: Interaction) -> None:
        row = record.to_dict()
        await self._run(lambda: self._client.table(self._table).insert(row).execute())

    async def fetch_by_user(self, user_key, since, until):
        return await self._select(lambda q: self._bounded(q.eq("user_key", user_key), since, until))

    async def fetch_by_product(self, product_id, since, until):
        return await self._select(lambda q: self._bounded(q.eq("product_id", product_id), since, until))

    async def fetch_by_strategy(self, strategy, kind, since, until):
        return await self._select(
            lambda q: self._bounded(
                q.eq("recommendation_type", strategy).eq("interaction_type", kind), since, until
            )
        )

    async def fetch_range(self, since, until):
        return await self._select(lambda q: self._bounded(q, since, until))

    async def delete_before(self, cutoff: datetime) -> int:
        result = await self._run(
            lambda: self._client.table(self._table).delete().lt("created_at", isoformat(cutoff)).execute()
        )
        return len(result.data or [])

    async def count(self) -> int:
        result = await self._run(
            lambda: self._client.table(self._table).select("id", count="exact").limit(1).execute()
        )
        return int(result.count or 0)

    def get_stats(self) -> Dict[str, Any]:
        return {"backend": self.name, "table": self._table}


# =============================================================================
# Record streams
# =============================================================================

class RecordStream:
    """
    Lazy, restartable sequence of interactions, newest first.

    Each ``async for`` runs the query again, so iterating twice sees
    records written in between.
    """

    def __init__(self, fetch: Callable[[], Any], kinds: Optional[frozenset]):
        self._fetch = fetch
        self._kinds = kinds

    async def __aiter__(self) -> AsyncIterator[Interaction]:
        for record in await self._fetch():
            if self._kinds is None or record.kind in self._kinds:
                yield record

    async def to_list(self, limit: Optional[int] = None) -> List[Interaction]:
        out: List[Interaction] = []
        async for record in self:
            out.append(record)
            if limit is not None and len(out) >= limit:
                break
        return out


# =============================================================================
# Interaction Log (Main Interface)
# =============================================================================

class InteractionLog:
    """
    Scored, retention-bounded access to an interaction backend.

    Usage:
        log = InteractionLog(InMemoryInteractionBackend())
        record = await log.append(user_key="u1", product_id=pid, kind=InteractionKind.VIEW)
        async for r in log.query_by_user("u1", kinds=[InteractionKind.VIEW]):
            ...
    """

    def __init__(
        self,
        backend: Any = None,
        retention_days: int = 90,
        engagement_config: EngagementConfig = DEFAULT_ENGAGEMENT_CONFIG,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.backend = backend or InMemoryInteractionBackend()
        self.retention = timedelta(days=retention_days)
        self._engagement_config = engagement_config
        self._clock = clock
        self._last_timestamp: Optional[datetime] = None
        self._stamp_lock = Lock()

    def now(self) -> datetime:
        return self._clock()

    def retention_floor(self, now: Optional[datetime] = None) -> datetime:
        return (now or self._clock()) - self.retention

    def _bound_since(self, since: Optional[datetime]) -> datetime:
        floor = self.retention_floor()
        if since is None:
            return floor
        return max(ensure_utc(since), floor)

    def _next_timestamp(self) -> datetime:
        """Monotonic write timestamp, strictly increasing within this process."""
        with self._stamp_lock:
            now = self._clock()
            if self._last_timestamp is not None and now <= self._last_timestamp:
                now = self._last_timestamp + timedelta(microseconds=1)
            self._last_timestamp = now
            return now

    async def append(
        self,
        user_key: Optional[str],
        product_id: Optional[str],
        kind: Optional[InteractionKind],
        strategy: Strategy = Strategy.UNKNOWN,
        position: Optional[int] = None,
        metadata: Optional[Mapping[str, Any]] = None,
        user_id: Optional[str] = None,
        client_id: Optional[str] = None,
    ) -> Interaction:
        """
        Score and persist one interaction.

        Raises:
            ValidationError: Missing kind, identity or product.
            DependencyUnavailable: The backend rejected the write.
        """
        if kind is None:
            raise ValidationError("Interaction kind is required", {"field": "type"})
        if not user_key:
            raise ValidationError("A user or client id is required", {"field": "user"})
        if not product_id:
            raise ValidationError("Product id is required", {"field": "productId"})
        if position is not None and position < 0:
            raise ValidationError("Position must be >= 0", {"field": "position"})

        meta = dict(metadata or {})
        record = Interaction(
            id=new_interaction_id(),
            user_key=user_key,
            user_id=user_id,
            client_id=client_id,
            product_id=product_id,
            kind=kind,
            strategy=strategy,
            position=position,
            metadata=meta,
            quality=score_engagement(kind, meta, self._engagement_config),
            timestamp=self._next_timestamp(),
        )
        await self.backend.insert(record)
        logger.debug(
            "Interaction recorded",
            interaction_id=record.id,
            kind=kind.value,
            strategy=strategy.value,
            quality=record.quality,
        )
        return record

    def query_by_user(self, user_key: str, since: Optional[datetime] = None,
                      until: Optional[datetime] = None, kinds: KindFilter = None) -> RecordStream:
        return RecordStream(
            lambda: self.backend.fetch_by_user(user_key, self._bound_since(since), until),
            _kind_set(kinds),
        )

    def query_by_product(self, product_id: str, since: Optional[datetime] = None,
                         until: Optional[datetime] = None, kinds: KindFilter = None) -> RecordStream:
        return RecordStream(
            lambda: self.backend.fetch_by_product(product_id, self._bound_since(since), until),
            _kind_set(kinds),
        )

    def query_by_strategy(self, strategy: Strategy, kind: InteractionKind,
                          since: Optional[datetime] = None,
                          until: Optional[datetime] = None) -> RecordStream:
        return RecordStream(
            lambda: self.backend.fetch_by_strategy(strategy.value, kind.value,
                                                   self._bound_since(since), until),
            None,
        )

    async def aggregate(
        self,
        group_by: Sequence[str],
        since: Optional[datetime] = None,
        kinds: KindFilter = None,
        until: Optional[datetime] = None,
    ) -> List[AggregateRow]:
        """
        Counts and average quality per group, largest groups first.

        ``group_by`` is any of "strategy", "kind", "product", "user". The
        lower bound is never earlier than the retention floor.
        """
        unknown = [g for g in group_by if g not in GROUP_FIELDS]
        if unknown or not group_by:
            raise ValidationError("Invalid aggregate grouping", {"groupBy": list(group_by)})

        kind_filter = _kind_set(kinds)
        counts: Dict[Tuple[str, ...], int] = defaultdict(int)
        quality: Dict[Tuple[str, ...], float] = defaultdict(float)
        for record in await self.backend.fetch_range(self._bound_since(since), until):
            if kind_filter is not None and record.kind not in kind_filter:
                continue
            key = tuple(_group_value(record, g) for g in group_by)
            counts[key] += 1
            quality[key] += record.quality

        rows = [
            AggregateRow(
                group=tuple(zip(group_by, key)),
                count=count,
                avg_quality=quality[key] / count,
            )
            for key, count in counts.items()
        ]
        rows.sort(key=lambda r: (-r.count, r.group))
        return rows

    async def purge_expired(self, now: Optional[datetime] = None) -> int:
        """Delete records older than the retention window. Idempotent."""
        cutoff = self.retention_floor(ensure_utc(now) if now else None)
        removed = await self.backend.delete_before(cutoff)
        if removed:
            logger.info("Purged expired interactions", removed=removed, cutoff=isoformat(cutoff))
        return removed

    async def count(self) -> int:
        return await self.backend.count()

    def get_stats(self) -> Dict[str, Any]:
        stats = self.backend.get_stats()
        stats["retention_days"] = self.retention.days
        return stats
