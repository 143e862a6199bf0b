"""
Recommendation Query Service.

Serves every feed endpoint through one pipeline of typed stages. Each
stage takes the QueryContext and returns a new one:

    profile → cache read → generate → liveness filter → cache write → impressions

Query parameters are normalized before the pipeline starts. Generation
runs under the query budget; single-strategy requests that run out of time
fall back to trending and say so in the response meta.

Also hosts the account-level operations that sit next to the feeds:
preferences, strategy stats, forced profile regeneration and catalog
events.
"""

import asyncio
import math
import time
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, FrozenSet, List, Mapping, Optional, Set, Tuple

from config.constants import (
    BLEND_POLICIES,
    DEEP_ENGAGEMENT_KINDS,
    DEFAULT_BLEND,
    DEFAULT_PROFILE_BOUNDS,
    DEFAULT_QUERY_LIMITS,
    QueryLimits,
)
from core.auth import Identity
from core.errors import DependencyUnavailable, ValidationError
from core.logging import get_logger
from core.utils import is_finite_number, is_object_id, isoformat, parse_csv, parse_period_days
from recs.blender import FeedBlender, apply_sort
from recs.cache import RecommendationCache
from recs.generators import CandidateGenerator, GeneratorQuery
from recs.ingress import InteractionIngress
from recs.interaction_log import InteractionLog
from recs.models import (
    CatalogEventRequest,
    Candidate,
    FeedPage,
    InteractionKind,
    PreferencesUpdate,
    SortBy,
    UserProfile,
)
from recs.profile import ProfileService


logger = get_logger(__name__)

# Endpoint strategies whose results depend on who is asking
PERSONALIZED_STRATEGIES: FrozenSet[str] = frozenset({"feed", "interests", "history", "collaborative"})

# Endpoint strategy -> generator serving it (the feed goes through the blender)
STRATEGY_GENERATORS: Dict[str, str] = {
    "trending": "trending",
    "new": "new",
    "similar": "similar",
    "category": "category",
    "maker": "maker",
    "tag": "tag",
    "interests": "interests",
    "collaborative": "collaborative",
    "history": "history",
}

FALLBACK_STRATEGY = "trending"


# =============================================================================
# Query normalization
# =============================================================================

@dataclass(frozen=True)
class FeedQuery:
    """Normalized feed request."""
    strategy: str
    limit: int = DEFAULT_QUERY_LIMITS.DEFAULT_LIMIT
    offset: int = 0
    blend: Optional[str] = None
    sort_by: SortBy = SortBy.SCORE
    category_id: Optional[str] = None
    tags: Tuple[str, ...] = ()
    seed_product_id: Optional[str] = None
    maker_id: Optional[str] = None
    window_days: Optional[int] = None

    @property
    def personalized(self) -> bool:
        return self.strategy in PERSONALIZED_STRATEGIES

    def cache_params(self) -> Dict[str, Any]:
        return {
            "limit": self.limit,
            "offset": self.offset,
            "blend": self.blend,
            "sortBy": self.sort_by.value,
            "category": self.category_id,
            "tags": list(self.tags),
            "seed": self.seed_product_id,
            "maker": self.maker_id,
            "window": self.window_days,
        }


def _as_int(value: Any, field: str) -> int:
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be an integer", {"field": field})
    if isinstance(value, int):
        return value
    try:
        return int(str(value).strip())
    except ValueError:
        raise ValidationError(f"{field} must be an integer", {"field": field, "value": str(value)[:32]})


def _object_id(value: Any, field: str) -> str:
    if not is_object_id(value):
        raise ValidationError(f"{field} must be a 24-character hex id", {"field": field, "value": str(value)[:64]})
    return value


def _window_days(value: Any, max_days: int) -> int:
    """``7``, ``"7"`` and ``"7d"`` are all seven days; hours round up to a day."""
    text = str(value).strip().lower()
    if text.isdigit():
        text += "d"
    try:
        days = parse_period_days(text, max_days)
    except ValueError:
        raise ValidationError("timeframe must be a number of days such as 7 or 7d", {"field": "timeframe"})
    return max(1, int(math.ceil(days)))


def normalize_query(
    strategy: str,
    limit: Any = None,
    offset: Any = None,
    blend: Optional[str] = None,
    sort_by: Optional[str] = None,
    category: Optional[str] = None,
    tags: Any = None,
    timeframe: Any = None,
    seed_product_id: Optional[str] = None,
    maker_id: Optional[str] = None,
    limits: QueryLimits = DEFAULT_QUERY_LIMITS,
    max_window_days: int = 30,
) -> FeedQuery:
    """
    Validate and normalize raw feed parameters.

    ``limit`` is clamped into [1, 50]; everything else that is malformed
    raises ValidationError.
    """
    size = limits.DEFAULT_LIMIT if limit is None else _as_int(limit, "limit")
    size = max(limits.MIN_LIMIT, min(limits.MAX_LIMIT, size))

    start = 0 if offset is None else _as_int(offset, "offset")
    if start < 0:
        raise ValidationError("offset must be >= 0", {"field": "offset"})

    policy = None
    if strategy == "feed":
        policy = (blend or DEFAULT_BLEND).strip().lower()
        if policy not in BLEND_POLICIES:
            raise ValidationError(
                "Unknown blend", {"field": "blend", "allowed": sorted(BLEND_POLICIES)}
            )

    order = SortBy.SCORE
    if sort_by:
        try:
            order = SortBy(sort_by.strip().lower())
        except ValueError:
            raise ValidationError(
                "Unknown sortBy", {"field": "sortBy", "allowed": sorted(limits.SORT_OPTIONS)}
            )

    category_id = _object_id(category, "category") if category else None

    if isinstance(tags, str):
        tag_list = parse_csv(tags)
    else:
        tag_list = parse_csv(",".join(tags)) if tags else []
    if strategy == "tag" and not tag_list:
        raise ValidationError("At least one tag is required", {"field": "tags"})

    window = _window_days(timeframe, max_window_days) if timeframe not in (None, "") else None

    return FeedQuery(
        strategy=strategy,
        limit=size,
        offset=start,
        blend=policy,
        sort_by=order,
        category_id=category_id,
        tags=tuple(tag_list),
        seed_product_id=_object_id(seed_product_id, "productId") if seed_product_id is not None else None,
        maker_id=_object_id(maker_id, "makerId") if maker_id is not None else None,
        window_days=window,
    )


# =============================================================================
# Pipeline context
# =============================================================================

@dataclass(frozen=True)
class QueryContext:
    """State threaded through the query pipeline."""
    identity: Identity
    query: FeedQuery
    now: datetime
    deadline: float
    profile: Optional[UserProfile] = None
    exclude: FrozenSet[str] = frozenset()
    cache_key: Optional[str] = None
    page: Optional[FeedPage] = None
    fresh: bool = False

    @property
    def cache_user(self) -> Optional[str]:
        return self.identity.key if self.query.personalized else None

    def remaining(self) -> float:
        return max(0.0, self.deadline - time.monotonic())


Stage = Callable[[QueryContext], Awaitable[QueryContext]]


def personalization_state(profile: Optional[UserProfile]) -> str:
    if profile is None:
        return "fallback"
    if profile.degraded:
        return "degraded"
    if not profile.personalization_enabled:
        return "disabled"
    if not profile.has_affinities:
        return "fallback"
    return "enabled"


# =============================================================================
# Recommendation Service (Main Interface)
# =============================================================================

class RecommendationService:
    """
    Feed queries and account-level recommendation operations.

    Usage:
        service = RecommendationService(catalog, log, profiles, cache, generators, blender, ingress)
        query = normalize_query("trending", limit=3, timeframe=7)
        page = await service.query(identity, query)
    """

    def __init__(
        self,
        catalog: Any,
        log: InteractionLog,
        profiles: ProfileService,
        cache: RecommendationCache,
        generators: Mapping[str, CandidateGenerator],
        blender: FeedBlender,
        ingress: InteractionIngress,
        query_budget_ms: float = 1200,
        generator_budget_ms: float = 400,
    ):
        self.catalog = catalog
        self.log = log
        self.profiles = profiles
        self.cache = cache
        self.generators = dict(generators)
        self.blender = blender
        self.ingress = ingress
        self.query_budget = query_budget_ms / 1000.0
        self.generator_budget = generator_budget_ms / 1000.0
        self._background: Set[asyncio.Task] = set()
        self.pipeline: List[Stage] = [
            self._load_profile,
            self._read_cache,
            self._generate,
            self._filter_live,
            self._write_cache,
            self._record_impressions,
        ]

    # -- entry point -----------------------------------------------------------

    async def query(self, identity: Identity, query: FeedQuery) -> FeedPage:
        ctx = QueryContext(
            identity=identity,
            query=query,
            now=self.log.now(),
            deadline=time.monotonic() + self.query_budget,
        )
        for stage in self.pipeline:
            ctx = await stage(ctx)
        return ctx.page

    # -- stages ----------------------------------------------------------------

    async def _load_profile(self, ctx: QueryContext) -> QueryContext:
        if not ctx.query.personalized:
            return ctx
        user_key = ctx.identity.key
        profile = await self.profiles.get_profile(user_key)
        exclude: Set[str] = set(profile.dismissed_products)
        if user_key:
            exclude |= await self._engaged_products(user_key)
        if ctx.identity.user_id:
            exclude |= await self._own_products(ctx.identity.user_id)

        query = ctx.query
        if profile.max_recommendations and query.limit > profile.max_recommendations:
            query = replace(query, limit=profile.max_recommendations)
        return replace(ctx, profile=profile, exclude=frozenset(exclude), query=query)

    async def _engaged_products(self, user_key: str) -> Set[str]:
        records = await self.log.query_by_user(user_key, kinds=DEEP_ENGAGEMENT_KINDS).to_list()
        return {r.product_id for r in records}

    async def _own_products(self, user_id: str) -> Set[str]:
        return {p.id for p in await self.catalog.published_products() if p.maker_id == user_id}

    async def _read_cache(self, ctx: QueryContext) -> QueryContext:
        key = self.cache.key_for(ctx.query.strategy, ctx.cache_user, ctx.query.cache_params())
        page = await self.cache.get(key)
        return replace(ctx, cache_key=key, page=page)

    async def _generate(self, ctx: QueryContext) -> QueryContext:
        if ctx.page is not None:
            return ctx
        if ctx.query.strategy == "feed":
            page = await self._blend(ctx)
        else:
            page = await self._single(ctx)
        if ctx.query.personalized:
            page.personalization = personalization_state(ctx.profile)
        return replace(ctx, page=page, fresh=True)

    async def _filter_live(self, ctx: QueryContext) -> QueryContext:
        """Drop anything no longer Published and attach current product records."""
        page = ctx.page
        products = await self.catalog.get_products(page.product_ids())
        kept: List[Candidate] = []
        for candidate in page.items:
            product = products.get(candidate.product_id)
            if product is None or not product.is_published:
                continue
            if candidate.product is not product:
                candidate = candidate.model_copy(update={"product": product})
            kept.append(candidate)

        dropped = len(page.items) - len(kept)
        if dropped:
            logger.debug("Dropped products that are no longer live",
                         strategy=page.strategy, dropped=dropped, cached=page.cached)
        return replace(ctx, page=replace(page, items=kept, total=max(0, page.total - dropped)))

    async def _write_cache(self, ctx: QueryContext) -> QueryContext:
        page = ctx.page
        if ctx.fresh and ctx.cache_key and not page.partial and not page.fallback:
            await self.cache.put(ctx.cache_key, page, ctx.cache_user)
        return ctx

    async def _record_impressions(self, ctx: QueryContext) -> QueryContext:
        if ctx.identity.key is None or not ctx.page.items:
            return ctx
        task = asyncio.get_running_loop().create_task(
            self.ingress.record_impressions(ctx.identity, ctx.page)
        )
        self._background.add(task)
        task.add_done_callback(self._on_impressions_done)
        return ctx

    def _on_impressions_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.warning("Impression write failed", error=str(error), error_type=type(error).__name__)

    # -- generation ------------------------------------------------------------

    def _generator_query(self, ctx: QueryContext) -> GeneratorQuery:
        q = ctx.query
        return GeneratorQuery(
            now=ctx.now,
            user_key=ctx.identity.key,
            user_id=ctx.identity.user_id,
            profile=ctx.profile,
            category_id=q.category_id,
            tags=q.tags,
            seed_product_id=q.seed_product_id,
            maker_id=q.maker_id,
            window_days=q.window_days,
            exclude=ctx.exclude,
        )

    async def _blend(self, ctx: QueryContext) -> FeedPage:
        q = ctx.query
        profile = ctx.profile or UserProfile(user_id="anonymous")
        disabled = set(profile.disabled_strategies)
        if not profile.personalization_enabled:
            disabled |= {"interests", "history", "collaborative"}

        outcome = await self.blender.blend(
            q.blend,
            self._generator_query(ctx),
            offset=q.offset,
            limit=q.limit,
            sort_by=q.sort_by,
            disabled=disabled,
            diversification_weight=profile.diversification_weight,
            deadline=ctx.deadline,
        )
        return FeedPage(
            items=outcome.items,
            total=outcome.total,
            offset=q.offset,
            limit=q.limit,
            strategy="feed",
            generated_at=ctx.now,
            blend=q.blend,
            partial=outcome.partial,
            degraded_strategies=outcome.degraded_strategies,
        )

    async def _single(self, ctx: QueryContext) -> FeedPage:
        """
        One generator, asked for enough items to tell whether a next page
        exists. A timeout or dependency failure falls back to trending.
        """
        q = ctx.query
        name = STRATEGY_GENERATORS[q.strategy]
        want = q.offset + 2 * q.limit
        gq = self._generator_query(ctx)
        timeout = min(self.generator_budget, ctx.remaining())

        fallback = None
        try:
            candidates = await asyncio.wait_for(self.generators[name].generate(gq, want), timeout=timeout)
        except (asyncio.TimeoutError, DependencyUnavailable) as e:
            if name == FALLBACK_STRATEGY:
                raise DependencyUnavailable("Trending is unavailable", {"strategy": name}) from e
            logger.warning("Generator unavailable, falling back to trending",
                           strategy=q.strategy, error=str(e) or type(e).__name__)
            fallback = FALLBACK_STRATEGY
            candidates = await self._fallback(gq, want, ctx)

        candidates = apply_sort(candidates, q.sort_by)
        return FeedPage(
            items=candidates[q.offset:q.offset + q.limit],
            total=len(candidates),
            offset=q.offset,
            limit=q.limit,
            strategy=q.strategy,
            generated_at=ctx.now,
            partial=fallback is not None,
            degraded_strategies=[q.strategy] if fallback else [],
            fallback=fallback,
        )

    async def _fallback(self, gq: GeneratorQuery, want: int, ctx: QueryContext) -> List[Candidate]:
        trending = self.generators[FALLBACK_STRATEGY]
        try:
            return await asyncio.wait_for(trending.generate(gq, want), timeout=max(ctx.remaining(), 0.05))
        except (asyncio.TimeoutError, DependencyUnavailable) as e:
            raise DependencyUnavailable("No recommendations available right now") from e

    async def drain(self) -> None:
        """Wait for background impression writes (shutdown and tests)."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # =========================================================================
    # Preferences
    # =========================================================================

    async def get_preferences(self, user_key: str) -> Dict[str, Any]:
        profile = await self.profiles.peek(user_key) or UserProfile(user_id=user_key)
        return profile.preferences()

    async def update_preferences(self, user_key: str, update: PreferencesUpdate) -> Dict[str, Any]:
        """
        Write the user-owned profile settings.

        Weights must be finite and within [0, 4]; disabled strategies must
        name blend components.
        """
        bounds = DEFAULT_PROFILE_BOUNDS
        category_weights = _weights(update.category_weights, "categoryWeights", bounds.FEEDBACK_MAX_WEIGHT)
        tag_weights = _weights(update.tag_weights, "tagWeights", bounds.FEEDBACK_MAX_WEIGHT)
        if category_weights:
            for key in category_weights:
                _object_id(key, "categoryWeights")

        disabled = None
        if update.disabled_strategies is not None:
            components = {name for policy in BLEND_POLICIES.values() for name in policy}
            disabled = {s.strip().lower() for s in update.disabled_strategies if s and s.strip()}
            unknown = sorted(disabled - components)
            if unknown:
                raise ValidationError(
                    "Unknown strategies in disabledStrategies",
                    {"field": "disabledStrategies", "unknown": unknown, "allowed": sorted(components)},
                )

        def mutate(profile: UserProfile) -> None:
            if category_weights is not None:
                profile.category_overrides = category_weights
            if tag_weights is not None:
                profile.tag_overrides = tag_weights
            if category_weights is not None or tag_weights is not None:
                profile.last_rebuilt = None
            if disabled is not None:
                profile.disabled_strategies = disabled
            if update.personalization_enabled is not None:
                profile.personalization_enabled = update.personalization_enabled
            if update.diversification_weight is not None:
                profile.diversification_weight = float(update.diversification_weight)
            if update.max_recommendations is not None:
                profile.max_recommendations = int(update.max_recommendations)

        profile = await self.profiles.update(user_key, mutate)
        await self.cache.invalidate_user(user_key)
        logger.info("Preferences updated", user_key=user_key)
        return profile.preferences()

    # =========================================================================
    # Admin operations
    # =========================================================================

    async def stats(self, period: str = "7d") -> Dict[str, Any]:
        """Interaction counts, quality and rates per strategy since ``period``."""
        try:
            days = parse_period_days(period, self.log.retention.days)
        except ValueError:
            raise ValidationError("period must look like 7d, 12h or 2w", {"field": "period"})
        now = self.log.now()
        since = now - timedelta(days=days)

        rows = await self.log.aggregate(("strategy", "kind"), since=since)
        users = await self.log.aggregate(("user",), since=since)

        strategies: Dict[str, Dict[str, Any]] = {}
        totals: Dict[str, int] = {}
        for row in rows:
            strategy, kind = row.key("strategy"), row.key("kind")
            entry = strategies.setdefault(strategy, {"interactions": 0, "byKind": {}})
            entry["interactions"] += row.count
            entry["byKind"][kind] = {"count": row.count, "avgQuality": round(row.avg_quality, 4)}
            totals[kind] = totals.get(kind, 0) + row.count

        for entry in strategies.values():
            counts = {kind: v["count"] for kind, v in entry["byKind"].items()}
            entry.update(_rates(counts))

        return {
            "period": period,
            "since": isoformat(since),
            "until": isoformat(now),
            "summary": {
                "totalInteractions": sum(totals.values()),
                "totalImpressions": totals.get("impression", 0),
                "totalClicks": totals.get("click", 0),
                "totalViews": totals.get("view", 0),
                "totalConversions": totals.get("conversion", 0),
                "uniqueUsers": len(users),
                **_rates(totals),
            },
            "strategies": strategies,
        }

    async def regenerate(self, user_id: str) -> Dict[str, Any]:
        """Rebuild a user's profile now and drop their cached feeds."""
        user_id = (user_id or "").strip()
        if not user_id:
            raise ValidationError("userId is required", {"field": "userId"})
        profile = await self.profiles.rebuild(user_id)
        removed = await self.cache.invalidate_user(user_id)
        logger.info("Profile regenerated", user_key=user_id, invalidated=removed)
        return {
            "userId": user_id,
            "interactionCount": profile.interaction_count,
            "categories": len(profile.category_affinities),
            "tags": len(profile.tag_affinities),
            "lastRebuilt": isoformat(profile.last_rebuilt),
            "invalidatedKeys": removed,
        }

    async def catalog_event(self, request: CatalogEventRequest) -> Dict[str, Any]:
        """Apply a product lifecycle event and wait for cache invalidation."""
        product_id = _object_id(request.product_id, "productId")
        known = await self.catalog.apply_event(product_id, request.event)
        await self.catalog.events.drain()
        logger.info("Catalog event applied", product_id=product_id, event_type=request.event.value, known=known)
        return {"productId": product_id, "event": request.event.value, "known": known}


# =============================================================================
# Helpers
# =============================================================================

def _weights(weights: Optional[Mapping[str, float]], field: str, upper: float) -> Optional[Dict[str, float]]:
    if weights is None:
        return None
    out: Dict[str, float] = {}
    for key, value in weights.items():
        if not key or not key.strip():
            raise ValidationError(f"{field} keys must be non-empty", {"field": field})
        if not is_finite_number(value) or value < 0 or value > upper:
            raise ValidationError(
                f"{field} values must be between 0 and {upper}", {"field": field, "key": key}
            )
        out[key] = float(value)
    return out


def _rates(counts: Mapping[str, int]) -> Dict[str, float]:
    impressions = counts.get(InteractionKind.IMPRESSION.value, 0)
    clicks = counts.get(InteractionKind.CLICK.value, 0)
    views = counts.get(InteractionKind.VIEW.value, 0)
    conversions = counts.get(InteractionKind.CONVERSION.value, 0)
    return {
        "clickThroughRate": round(clicks / impressions, 4) if impressions else 0.0,
        "engagementRate": round((clicks + views + conversions) / impressions, 4) if impressions else 0.0,
        "conversionRate": round(conversions / clicks, 4) if clicks else 0.0,
    }
