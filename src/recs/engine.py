"""
Recommendation engine composition root.

Builds every component from Settings and owns their lifecycle:

- memory or Supabase catalog and interaction log
- memory or Redis profile store and recommendation cache
- generators, blender, ingress and query service on top

Usage:
    from recs.engine import get_engine

    engine = get_engine()
    page = await engine.service.query(identity, normalize_query("trending"))
"""

from typing import Any, Dict, Optional

from config.database import create_redis_client, get_supabase_client_optional
from config.settings import Settings, get_settings
from core.logging import get_logger
from recs.blender import DiversityConfig, FeedBlender
from recs.cache import CacheTTLs, InMemoryCacheBackend, RecommendationCache, RedisCacheBackend
from recs.catalog import InMemoryCatalog, ProductEventRegistry, SupabaseCatalog
from recs.generators import GeneratorSettings, build_generators
from recs.ingress import ImpressionDeduplicator, InteractionIngress, SlidingWindowRateLimiter
from recs.interaction_log import InMemoryInteractionBackend, InteractionLog, SupabaseInteractionBackend
from recs.profile import AffinityConfig, InMemoryProfileStore, ProfileService, RedisProfileStore
from recs.service import RecommendationService


logger = get_logger(__name__)


class RecommendationEngine:
    """
    All engine components wired together.

    Components can be passed in (tests); anything missing is built from
    ``settings``.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        catalog: Any = None,
        log_backend: Any = None,
        profile_store: Any = None,
        cache_backend: Any = None,
        clock=None,
    ):
        self.settings = settings or get_settings()
        s = self.settings
        self._redis = None
        self._supabase = None

        if catalog is not None:
            self.catalog = catalog
            self.events = catalog.events
        else:
            self.events = ProductEventRegistry()
            self.catalog = self._build_catalog()

        log_kwargs = {"clock": clock} if clock is not None else {}
        self.log = InteractionLog(
            log_backend or self._build_log_backend(),
            retention_days=s.retention_days,
            **log_kwargs,
        )
        self.profiles = ProfileService(
            profile_store or self._build_profile_store(),
            self.log,
            self.catalog,
            AffinityConfig(
                half_life_days=s.decay_half_life_days,
                category_top_k=s.category_affinity_top_k,
                tag_top_k=s.tag_affinity_top_k,
            ),
            fresh_seconds=s.profile_fresh_seconds,
            build_budget_ms=s.profile_build_budget_ms,
        )
        self.cache = RecommendationCache(
            cache_backend or self._build_cache_backend(),
            CacheTTLs(
                default=s.cache_default_ttl_seconds,
                fast=s.cache_fast_ttl_seconds,
                slow=s.cache_slow_ttl_seconds,
            ),
        )
        # Product lifecycle events drop cached pages containing that product
        self._cache_subscription = self.events.subscribe(self.cache.on_product_event)

        self.generators = build_generators(
            self.catalog,
            self.log,
            GeneratorSettings(
                trending_window_days=s.trending_window_days,
                new_window_days=s.new_window_days,
                history_seed_count=s.history_seed_count,
                collaborative_user_cap=s.collaborative_user_cap,
                collaborative_window_days=s.collaborative_window_days,
                interest_tag_alpha=s.interest_tag_alpha,
            ),
        )
        self.blender = FeedBlender(
            self.generators,
            generator_budget_ms=s.generator_budget_ms,
            diversity=DiversityConfig(
                max_per_category=s.max_per_category,
                maker_share_cap=s.maker_share_cap,
            ),
        )
        self.ingress = InteractionIngress(
            self.log,
            self.profiles,
            self.cache,
            self.catalog,
            rate_limiter=SlidingWindowRateLimiter(s.rate_limit_per_minute, 60.0),
            deduplicator=ImpressionDeduplicator(s.impression_dedup_seconds),
        )
        self.service = RecommendationService(
            self.catalog,
            self.log,
            self.profiles,
            self.cache,
            self.generators,
            self.blender,
            self.ingress,
            query_budget_ms=s.query_budget_ms,
            generator_budget_ms=s.generator_budget_ms,
        )

    # -- backend selection -----------------------------------------------------

    def _supabase_client(self):
        if self._supabase is None:
            self._supabase = get_supabase_client_optional()
            if self._supabase is None:
                logger.warning("Supabase not configured, using in-memory storage")
        return self._supabase

    def _redis_client(self):
        if self._redis is None:
            self._redis = create_redis_client(self.settings.redis_url)
        return self._redis

    def _build_catalog(self) -> Any:
        s = self.settings
        if s.storage_backend == "supabase" and self._supabase_client() is not None:
            return SupabaseCatalog(self._supabase, s.products_table, s.categories_table, self.events)
        if s.catalog_seed_file:
            return InMemoryCatalog.from_file(s.catalog_seed_file, self.events)
        return InMemoryCatalog(events=self.events)

    def _build_log_backend(self) -> Any:
        s = self.settings
        if s.storage_backend == "supabase" and self._supabase_client() is not None:
            return SupabaseInteractionBackend(self._supabase, s.interactions_table)
        return InMemoryInteractionBackend()

    def _build_profile_store(self) -> Any:
        if self.settings.redis_enabled:
            return RedisProfileStore(self._redis_client())
        return InMemoryProfileStore()

    def _build_cache_backend(self) -> Any:
        if self.settings.cache_backend == "redis" or self.settings.redis_enabled:
            return RedisCacheBackend(self._redis_client())
        return InMemoryCacheBackend()

    # -- lifecycle -------------------------------------------------------------

    async def startup(self) -> None:
        logger.info(
            "Recommendation engine starting",
            catalog=self.catalog.name,
            log=self.log.backend.name,
            profiles=self.profiles.store.name,
            cache=self.cache.backend.name,
        )
        if self._redis is not None:
            try:
                await self._redis.ping()
            except Exception as e:
                logger.warning("Redis not reachable at startup", error=str(e))

    async def shutdown(self) -> None:
        await self.service.drain()
        await self.profiles.drain()
        await self.events.drain()
        self.events.unsubscribe(self._cache_subscription)
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
        logger.info("Recommendation engine stopped")

    async def purge_expired(self) -> int:
        return await self.log.purge_expired()

    # -- health ----------------------------------------------------------------

    async def health(self) -> Dict[str, Dict[str, Any]]:
        """Status of each dependency: {"status": "up" | "down", ...}."""
        checks: Dict[str, Dict[str, Any]] = {}
        for name, component in (
            ("catalog", self.catalog),
            ("profiles", self.profiles.store),
            ("cache", self.cache),
        ):
            try:
                ok = await component.ping()
                checks[name] = {"status": "up" if ok else "down"}
            except Exception as e:
                checks[name] = {"status": "down", "error": str(e)}
        try:
            checks["interaction_log"] = {"status": "up", "records": await self.log.count()}
        except Exception as e:
            checks["interaction_log"] = {"status": "down", "error": str(e)}
        return checks

    def get_stats(self) -> Dict[str, Any]:
        return {
            "catalog": self.catalog.get_stats(),
            "interaction_log": self.log.get_stats(),
            "profiles": {**self.profiles.store.get_stats(), "rebuilds_inflight": self.profiles.inflight_count()},
            "cache": self.cache.get_stats(),
            "ingress": self.ingress.get_stats(),
            "product_subscriptions": len(self.events.watched_products()),
        }


# =============================================================================
# Singleton
# =============================================================================

_engine: Optional[RecommendationEngine] = None


def get_engine() -> RecommendationEngine:
    """Get the process-wide engine, building it on first use."""
    global _engine
    if _engine is None:
        _engine = RecommendationEngine()
    return _engine


def set_engine(engine: Optional[RecommendationEngine]) -> None:
    """Replace the process-wide engine (tests, app factory)."""
    global _engine
    _engine = engine
