"""
Recommendation Cache.

Caches rendered feed pages under

    recs:<strategy>:<user-key | anon>:<sha1 of the query fingerprint>

with per-strategy TTLs, plus reverse indexes used for invalidation:

- product id → keys whose page contains that product
- user key   → keys computed for that user
- strategy   → keys computed for that strategy

A product that is published or updated can enter any listing it was not in
before, so those events drop every strategy index; removals only need the
product index.

The cache is a hint: every failure is logged and treated as a miss, and the
query service re-checks product liveness after every read.
"""

import json
import time
from dataclasses import dataclass
from threading import Lock
from typing import Any, Dict, Iterable, Mapping, Optional, Set, Tuple

from core.logging import get_logger
from core.utils import convert_numpy, fingerprint
from recs.models import CatalogEventType, FeedPage


logger = get_logger(__name__)

KEY_PREFIX = "recs:"
PRODUCT_INDEX = "recs:idx:product:"
USER_INDEX = "recs:idx:user:"
STRATEGY_INDEX = "recs:idx:strategy:"
# Set of strategy names that currently have an index
STRATEGY_REGISTRY = "recs:idx:strategies"

LISTING_EVENTS = frozenset({CatalogEventType.PUBLISHED, CatalogEventType.UPDATED})

FAST_STRATEGIES = frozenset({"trending", "new"})
SLOW_STRATEGIES = frozenset({"similar", "category"})


@dataclass(frozen=True)
class CacheTTLs:
    default: int = 300
    fast: int = 120
    slow: int = 600

    def for_strategy(self, strategy: str) -> int:
        if strategy in FAST_STRATEGIES:
            return self.fast
        if strategy in SLOW_STRATEGIES:
            return self.slow
        return self.default


# =============================================================================
# In-Memory Backend (Default)
# =============================================================================

class InMemoryCacheBackend:
    """
    Process-local key/value store with expiry and set-valued indexes.

    Note: Entries are lost on server restart. Expired entries and indexes
    are swept on write, at most once per ``sweep_interval`` seconds.
    """

    name = "in_memory"

    def __init__(self, clock=time.monotonic, sweep_interval: float = 60.0):
        self._values: Dict[str, Tuple[float, str]] = {}
        self._sets: Dict[str, Tuple[float, Set[str]]] = {}
        self._lock = Lock()
        self._clock = clock
        self._sweep_interval = sweep_interval
        self._next_sweep = clock() + sweep_interval

    def _sweep(self, now: float) -> None:
        for key in [k for k, (expires_at, _) in self._values.items() if expires_at <= now]:
            del self._values[key]
        for index in [k for k, (expires_at, _) in self._sets.items() if expires_at <= now]:
            del self._sets[index]
        self._next_sweep = now + self._sweep_interval

    def _maybe_sweep(self, now: float) -> None:
        if now >= self._next_sweep:
            self._sweep(now)

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._values.get(key)
            if entry is None:
                return None
            expires_at, value = entry
            if expires_at <= self._clock():
                del self._values[key]
                return None
            return value

    async def set(self, key: str, value: str, ttl: int) -> None:
        with self._lock:
            now = self._clock()
            self._maybe_sweep(now)
            self._values[key] = (now + ttl, value)

    async def delete(self, keys: Iterable[str]) -> int:
        removed = 0
        with self._lock:
            for key in keys:
                if self._values.pop(key, None) is not None:
                    removed += 1
                self._sets.pop(key, None)
        return removed

    async def add_members(self, index: str, members: Iterable[str], ttl: int) -> None:
        # Same semantics as SADD + EXPIRE: the whole set expires ttl from now
        with self._lock:
            now = self._clock()
            self._maybe_sweep(now)
            entry = self._sets.get(index)
            current = entry[1] if entry is not None and entry[0] > now else set()
            current.update(members)
            self._sets[index] = (now + ttl, current)

    async def members(self, index: str) -> Set[str]:
        with self._lock:
            entry = self._sets.get(index)
            if entry is None:
                return set()
            expires_at, members = entry
            if expires_at <= self._clock():
                del self._sets[index]
                return set()
            return set(members)

    async def ping(self) -> bool:
        return True

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            self._sweep(self._clock())
            return {"backend": self.name, "entries": len(self._values), "indexes": len(self._sets)}


# =============================================================================
# Redis Backend (Optional - for production)
# =============================================================================

class RedisCacheBackend:
    """Redis-based cache storage (``redis.asyncio`` client)."""

    name = "redis"

    def __init__(self, client: Any):
        self._redis = client

    async def get(self, key: str) -> Optional[str]:
        return await self._redis.get(key)

    async def set(self, key: str, value: str, ttl: int) -> None:
        await self._redis.set(key, value, ex=ttl)

    async def delete(self, keys: Iterable[str]) -> int:
        keys = list(keys)
        if not keys:
            return 0
        return int(await self._redis.delete(*keys))

    async def add_members(self, index: str, members: Iterable[str], ttl: int) -> None:
        members = list(members)
        if not members:
            return
        async with self._redis.pipeline(transaction=False) as pipe:
            pipe.sadd(index, *members)
            pipe.expire(index, ttl)
            await pipe.execute()

    async def members(self, index: str) -> Set[str]:
        return set(await self._redis.smembers(index))

    async def ping(self) -> bool:
        return bool(await self._redis.ping())

    def get_stats(self) -> Dict[str, Any]:
        return {"backend": self.name}


# =============================================================================
# Recommendation Cache (Main Interface)
# =============================================================================

class RecommendationCache:
    """
    Feed-page cache with product and user invalidation.

    Usage:
        key = cache.key_for("trending", None, {"limit": 20, "offset": 0})
        page = await cache.get(key)
        if page is None:
            page = ...
            await cache.put(key, page, user_key=None)
    """

    def __init__(self, backend: Any = None, ttls: CacheTTLs = CacheTTLs(), enabled: bool = True):
        self.backend = backend or InMemoryCacheBackend()
        self.ttls = ttls
        self.enabled = enabled
        self.hits = 0
        self.misses = 0
        self.errors = 0

    @staticmethod
    def key_for(strategy: str, user_key: Optional[str], params: Mapping[str, Any]) -> str:
        """
        Cache key for one query.

        ``params`` holds every input that changes the result (category,
        tags, sort, limit, offset, seed, maker, window); tags are sorted so
        ``a,b`` and ``b,a`` share an entry.
        """
        normalized = dict(params)
        if normalized.get("tags"):
            normalized["tags"] = sorted(normalized["tags"])
        normalized["strategy"] = strategy
        digest = fingerprint({k: v for k, v in normalized.items() if v is not None})
        return f"{KEY_PREFIX}{strategy}:{user_key or 'anon'}:{digest}"

    async def get(self, key: str) -> Optional[FeedPage]:
        if not self.enabled:
            return None
        try:
            raw = await self.backend.get(key)
            if raw is None:
                self.misses += 1
                return None
            page = FeedPage.from_cache(json.loads(raw))
        except Exception as e:
            self.errors += 1
            logger.warning("Cache read failed, bypassing", key=key, error=str(e))
            return None
        self.hits += 1
        return page

    async def put(self, key: str, page: FeedPage, user_key: Optional[str] = None) -> bool:
        if not self.enabled:
            return False
        ttl = self.ttls.for_strategy(page.strategy)
        # Indexes outlive every entry they point at
        index_ttl = max(self.ttls.default, self.ttls.fast, self.ttls.slow)
        try:
            payload = json.dumps(convert_numpy(page.to_cache()))
            await self.backend.set(key, payload, ttl)
            for product_id in page.product_ids():
                await self.backend.add_members(f"{PRODUCT_INDEX}{product_id}", [key], index_ttl)
            if user_key:
                await self.backend.add_members(f"{USER_INDEX}{user_key}", [key], index_ttl)
            await self.backend.add_members(f"{STRATEGY_INDEX}{page.strategy}", [key], index_ttl)
            await self.backend.add_members(STRATEGY_REGISTRY, [page.strategy], index_ttl)
        except Exception as e:
            self.errors += 1
            logger.warning("Cache write failed, bypassing", key=key, error=str(e))
            return False
        return True

    async def _invalidate_index(self, index: str) -> int:
        try:
            keys = await self.backend.members(index)
            removed = await self.backend.delete(list(keys) + [index])
        except Exception as e:
            self.errors += 1
            logger.warning("Cache invalidation failed", index=index, error=str(e))
            return 0
        return removed

    async def invalidate_product(self, product_id: str) -> int:
        removed = await self._invalidate_index(f"{PRODUCT_INDEX}{product_id}")
        if removed:
            logger.debug("Invalidated cached pages for product", product_id=product_id, keys=removed)
        return removed

    async def invalidate_user(self, user_key: str) -> int:
        removed = await self._invalidate_index(f"{USER_INDEX}{user_key}")
        if removed:
            logger.debug("Invalidated cached pages for user", user_key=user_key, keys=removed)
        return removed

    async def invalidate_listings(self) -> int:
        """Drop every cached page that was indexed under a strategy."""
        try:
            strategies = await self.backend.members(STRATEGY_REGISTRY)
        except Exception as e:
            self.errors += 1
            logger.warning("Cache invalidation failed", index=STRATEGY_REGISTRY, error=str(e))
            return 0
        removed = 0
        for strategy in sorted(strategies):
            removed += await self._invalidate_index(f"{STRATEGY_INDEX}{strategy}")
        if removed:
            logger.debug("Invalidated cached listings", strategies=sorted(strategies), keys=removed)
        return removed

    async def on_product_event(self, product_id: str, event: CatalogEventType) -> None:
        """Listener for the product event registry."""
        await self.invalidate_product(product_id)
        if CatalogEventType(event) in LISTING_EVENTS:
            await self.invalidate_listings()

    async def ping(self) -> bool:
        return await self.backend.ping()

    def get_stats(self) -> Dict[str, Any]:
        stats = self.backend.get_stats()
        stats.update({"enabled": self.enabled, "hits": self.hits, "misses": self.misses, "errors": self.errors})
        return stats
