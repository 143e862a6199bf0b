"""
User profiles: storage, affinity building and budgeted rebuilds.

Components:
- InMemoryProfileStore / RedisProfileStore: profile persistence by user key
- build_affinities(): decayed, normalized category and tag affinities
- ProfileService: lazy creation, freshness, coalesced rebuilds with a
  time budget and stale-serve fallback, user-owned field updates
"""

import asyncio
import json
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from threading import Lock
from typing import Any, AsyncIterator, Callable, Dict, Iterable, Mapping, Optional, Tuple

import numpy as np

from config.constants import NON_CONTRIBUTING_KINDS, decay_tau_seconds
from core.errors import DependencyUnavailable
from core.logging import get_logger
from core.utils import convert_numpy
from recs.catalog import CategoryTree
from recs.interaction_log import InteractionLog
from recs.models import Interaction, Product, UserProfile


logger = get_logger(__name__)


# =============================================================================
# Profile stores
# =============================================================================

class InMemoryProfileStore:
    """
    In-memory profile storage for development/testing.

    Stored profiles are copied on the way in and out, so callers can never
    mutate what another request reads.
    """

    name = "in_memory"

    def __init__(self):
        self._profiles: Dict[str, UserProfile] = {}
        self._lock = Lock()

    async def get(self, user_key: str) -> Optional[UserProfile]:
        with self._lock:
            profile = self._profiles.get(user_key)
            return profile.copy() if profile else None

    async def put(self, profile: UserProfile) -> None:
        with self._lock:
            self._profiles[profile.user_id] = profile.copy(degraded=False)

    async def delete(self, user_key: str) -> bool:
        with self._lock:
            return self._profiles.pop(user_key, None) is not None

    async def ping(self) -> bool:
        return True

    def get_stats(self) -> Dict[str, Any]:
        return {"backend": self.name, "profiles": len(self._profiles)}


class RedisProfileStore:
    """
    Redis-based profile storage for production (``redis.asyncio`` client).

    One JSON document per user under ``recs:profile:<user>``.
    """

    name = "redis"
    PREFIX = "recs:profile:"

    def __init__(self, client: Any, ttl_seconds: Optional[int] = None):
        self._redis = client
        self._ttl = ttl_seconds

    def _key(self, user_key: str) -> str:
        return f"{self.PREFIX}{user_key}"

    async def get(self, user_key: str) -> Optional[UserProfile]:
        try:
            data = await self._redis.get(self._key(user_key))
        except Exception as e:
            raise DependencyUnavailable("Profile store unavailable") from e
        if not data:
            return None
        return UserProfile.from_dict(json.loads(data))

    async def put(self, profile: UserProfile) -> None:
        payload = json.dumps(convert_numpy(profile.to_dict()))
        try:
            await self._redis.set(self._key(profile.user_id), payload, ex=self._ttl)
        except Exception as e:
            raise DependencyUnavailable("Profile store unavailable") from e

    async def delete(self, user_key: str) -> bool:
        try:
            return bool(await self._redis.delete(self._key(user_key)))
        except Exception as e:
            raise DependencyUnavailable("Profile store unavailable") from e

    async def ping(self) -> bool:
        return bool(await self._redis.ping())

    def get_stats(self) -> Dict[str, Any]:
        return {"backend": self.name, "prefix": self.PREFIX}


# =============================================================================
# Affinity building
# =============================================================================

@dataclass(frozen=True)
class AffinityConfig:
    """Decay and truncation parameters for affinity vectors."""
    half_life_days: float = 14.0
    category_top_k: int = 64
    tag_top_k: int = 256

    @property
    def tau_seconds(self) -> float:
        return decay_tau_seconds(self.half_life_days)


def decay_weights(ages_seconds: np.ndarray, tau_seconds: float) -> np.ndarray:
    """exp(-Δ/τ) for each age; negative ages (clock skew) count as zero."""
    return np.exp(-np.clip(ages_seconds, 0.0, None) / tau_seconds)


def _top_k(weights: Mapping[str, float], k: int) -> Dict[str, float]:
    ranked = sorted(weights.items(), key=lambda kv: (-kv[1], kv[0]))
    return {key: float(value) for key, value in ranked[:k] if value > 0}


def build_affinities(
    interactions: Iterable[Interaction],
    products: Mapping[str, Product],
    tree: CategoryTree,
    now: datetime,
    config: AffinityConfig = AffinityConfig(),
    category_overrides: Optional[Mapping[str, float]] = None,
    tag_overrides: Optional[Mapping[str, float]] = None,
) -> Tuple[Dict[str, float], Dict[str, float], int]:
    """
    Compute category and tag affinities from a user's interactions.

    Each interaction contributes quality × exp(-Δ/τ) to the product's
    category, every ancestor of that category, and every tag. Totals are
    divided by the user's overall contribution mass, multiplied by explicit
    overrides, and truncated to the top K by weight.

    Returns:
        (category_affinities, tag_affinities, contributing_interactions)
    """
    usable = [
        i for i in interactions
        if i.kind.value not in NON_CONTRIBUTING_KINDS and i.product_id in products
    ]
    if not usable:
        return {}, {}, 0

    ages = np.array([(now - i.timestamp).total_seconds() for i in usable], dtype=float)
    quality = np.array([i.quality for i in usable], dtype=float)
    contributions = quality * decay_weights(ages, config.tau_seconds)

    mass = float(contributions.sum())
    if mass <= 0:
        return {}, {}, len(usable)

    categories: Dict[str, float] = {}
    tags: Dict[str, float] = {}
    for interaction, c in zip(usable, contributions):
        if c <= 0:
            continue
        product = products[interaction.product_id]
        for category_id in tree.lineage(product.category_id):
            categories[category_id] = categories.get(category_id, 0.0) + float(c)
        for tag in product.tags:
            tags[tag] = tags.get(tag, 0.0) + float(c)

    category_overrides = category_overrides or {}
    tag_overrides = tag_overrides or {}
    categories = {k: (v / mass) * category_overrides.get(k, 1.0) for k, v in categories.items()}
    tags = {k: (v / mass) * tag_overrides.get(k, 1.0) for k, v in tags.items()}

    return (
        _top_k(categories, config.category_top_k),
        _top_k(tags, config.tag_top_k),
        len(usable),
    )


# =============================================================================
# Profile Service (Main Interface)
# =============================================================================

class ProfileService:
    """
    Serves profiles with freshness, budgets and coalesced rebuilds.

    - A profile is fresh for ``fresh_seconds`` after its last rebuild.
    - At most one rebuild per user is in flight; concurrent callers share it.
    - Callers wait at most ``build_budget_ms``; after that they get the
      stale profile and the rebuild finishes in the background.
    - A failed rebuild yields an empty-affinity profile flagged degraded.
    - Writes to one user's profile are serialized, and a rebuild only
      replaces derived fields, so user settings written meanwhile survive.
    """

    def __init__(
        self,
        store: Any,
        log: InteractionLog,
        catalog: Any,
        affinity_config: AffinityConfig = AffinityConfig(),
        fresh_seconds: float = 900,
        build_budget_ms: float = 250,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.log = log
        self.catalog = catalog
        self.affinity_config = affinity_config
        self.fresh_seconds = fresh_seconds
        self.build_budget = build_budget_ms / 1000.0
        self._clock = clock or log.now
        self._inflight: Dict[str, asyncio.Task] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}

    @asynccontextmanager
    async def _user_lock(self, user_key: str) -> AsyncIterator[None]:
        """Per-user write lock, dropped once nobody holds or waits for it."""
        lock = self._locks.get(user_key)
        if lock is None:
            lock = self._locks[user_key] = asyncio.Lock()
        self._lock_users[user_key] = self._lock_users.get(user_key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            remaining = self._lock_users.pop(user_key) - 1
            if remaining:
                self._lock_users[user_key] = remaining
            else:
                del self._locks[user_key]

    # -- rebuild -------------------------------------------------------------

    async def _rebuild(self, user_key: str) -> UserProfile:
        now = self._clock()
        interactions = await self.log.query_by_user(user_key).to_list()
        product_ids = {i.product_id for i in interactions}
        products = await self.catalog.get_products(product_ids)
        tree = await self.catalog.category_tree()

        async with self._user_lock(user_key):
            current = await self.store.get(user_key)
            categories, tags, used = build_affinities(
                interactions,
                products,
                tree,
                now,
                self.affinity_config,
                current.category_overrides if current else None,
                current.tag_overrides if current else None,
            )
            profile = current or UserProfile(user_id=user_key)
            profile.category_affinities = categories
            profile.tag_affinities = tags
            profile.interaction_count = used
            profile.last_rebuilt = now
            profile.degraded = False
            # Profiles are created lazily: no interactions and no settings, no record
            if current is not None or interactions:
                await self.store.put(profile)

        logger.debug(
            "Profile rebuilt",
            user_key=user_key,
            interactions=len(interactions),
            categories=len(categories),
            tags=len(tags),
        )
        return profile

    def _on_rebuild_done(self, user_key: str, task: asyncio.Task) -> None:
        if self._inflight.get(user_key) is task:
            del self._inflight[user_key]
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.warning("Profile rebuild failed", user_key=user_key, error=str(error))

    def ensure_rebuild(self, user_key: str) -> asyncio.Task:
        """Start a rebuild unless one is already running; returns the shared task."""
        task = self._inflight.get(user_key)
        if task is None or task.done():
            task = asyncio.get_running_loop().create_task(self._rebuild(user_key))
            self._inflight[user_key] = task
            task.add_done_callback(lambda t, key=user_key: self._on_rebuild_done(key, t))
        return task

    def schedule_refresh(self, user_key: str) -> None:
        """Background refresh after new interactions."""
        self.ensure_rebuild(user_key)

    async def rebuild(self, user_key: str) -> UserProfile:
        """Rebuild now and wait for it, however long it takes."""
        return await asyncio.shield(self.ensure_rebuild(user_key))

    # -- reads ---------------------------------------------------------------

    async def get_profile(self, user_key: Optional[str]) -> UserProfile:
        """
        Profile for a query, within the build budget.

        Anonymous callers without a client id get an empty profile.
        """
        if not user_key:
            return UserProfile(user_id="anonymous")

        try:
            stored = await self.store.get(user_key)
        except DependencyUnavailable as e:
            logger.warning("Profile store read failed", user_key=user_key, error=str(e))
            return UserProfile(user_id=user_key, degraded=True)

        if stored is not None and stored.is_fresh(self._clock(), self.fresh_seconds):
            return stored

        task = self.ensure_rebuild(user_key)
        try:
            return await asyncio.wait_for(asyncio.shield(task), timeout=self.build_budget)
        except asyncio.TimeoutError:
            logger.info("Profile rebuild over budget, serving stale profile", user_key=user_key)
            return stored if stored is not None else UserProfile(user_id=user_key)
        except Exception as e:
            logger.warning("Profile build failed, serving empty profile", user_key=user_key, error=str(e))
            fallback = stored.copy() if stored is not None else UserProfile(user_id=user_key)
            fallback.category_affinities = {}
            fallback.tag_affinities = {}
            fallback.degraded = True
            return fallback

    async def peek(self, user_key: str) -> Optional[UserProfile]:
        """Stored profile without triggering a rebuild."""
        return await self.store.get(user_key)

    # -- writes --------------------------------------------------------------

    async def update(self, user_key: str, mutate: Callable[[UserProfile], None]) -> UserProfile:
        """
        Apply a change to the user-owned fields and persist it.

        Creates the profile when the user has none yet.
        """
        async with self._user_lock(user_key):
            profile = await self.store.get(user_key) or UserProfile(user_id=user_key)
            mutate(profile)
            await self.store.put(profile)
            return profile

    async def delete(self, user_key: str) -> bool:
        async with self._user_lock(user_key):
            removed = await self.store.delete(user_key)
        return removed

    async def drain(self) -> None:
        """Wait for background rebuilds (shutdown and tests)."""
        while self._inflight:
            await asyncio.gather(*list(self._inflight.values()), return_exceptions=True)

    def inflight_count(self) -> int:
        return len(self._inflight)


def scale_override(weights: Dict[str, float], keys: Iterable[str], factor: float,
                   lower: float, upper: float) -> Dict[str, float]:
    """Multiply the override of each key by ``factor`` within [lower, upper]."""
    out = dict(weights)
    for key in keys:
        out[key] = float(min(upper, max(lower, out.get(key, 1.0) * factor)))
    return out
