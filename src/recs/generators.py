"""
Candidate generators, one per recommendation strategy.

Every generator implements ``generate(query, limit) -> List[Candidate]``:
published products only, nothing from ``query.exclude``, deterministic
order (ties broken by upvotes, then recency, then id), and an explanation
naming the factor that dominated each score.

Strategies:
- trending:              in-window engagement × recency boost
- new:                   created inside the window, newest first
- similar:               tag Jaccard + same category + popularity vs a seed
- category/maker/tag:    filtered listings by trending score, then recency
- history:               similar-to over the user's recent views/upvotes
- collaborative:         co-engagement of users who liked the same things
- interests:             profile affinities × recency × popularity
- diversified_trending:  30-day trending, round-robin over categories
"""

import math
from collections import defaultdict
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Sequence, Set, Tuple

from config.constants import (
    COLLABORATIVE_SEED_KINDS,
    COLLABORATIVE_SIGNAL_KINDS,
    DEFAULT_GENERATOR_CONFIG,
    GeneratorConfig,
    HISTORY_SEED_KINDS,
)
from core.errors import NotFound
from core.logging import get_logger
from recs.catalog import CategoryTree
from recs.interaction_log import InteractionLog
from recs.models import Candidate, InteractionKind, Product, UserProfile


logger = get_logger(__name__)


# =============================================================================
# Query and tuning
# =============================================================================

@dataclass(frozen=True)
class GeneratorQuery:
    """Everything a generator may look at besides catalog and log."""
    now: datetime
    user_key: Optional[str] = None
    user_id: Optional[str] = None
    profile: Optional[UserProfile] = None
    category_id: Optional[str] = None
    tags: Tuple[str, ...] = ()
    seed_product_id: Optional[str] = None
    maker_id: Optional[str] = None
    window_days: Optional[int] = None
    exclude: FrozenSet[str] = frozenset()

    def with_changes(self, **changes: Any) -> "GeneratorQuery":
        return replace(self, **changes)


@dataclass(frozen=True)
class GeneratorSettings:
    """Environment-tunable knobs (from config.settings)."""
    trending_window_days: int = 7
    new_window_days: int = 14
    history_seed_count: int = 20
    collaborative_user_cap: int = 200
    collaborative_window_days: int = 30
    interest_tag_alpha: float = 0.5


def recency(age_days: float, scale_days: float = DEFAULT_GENERATOR_CONFIG.RECENCY_SCALE_DAYS) -> float:
    """1 / (1 + age/scale); 1.0 for brand-new products."""
    return 1.0 / (1.0 + max(0.0, age_days) / scale_days)


def tag_jaccard(a: Iterable[str], b: Iterable[str]) -> float:
    a, b = set(a), set(b)
    union = a | b
    if not union:
        return 0.0
    return len(a & b) / len(union)


def _tie_key(product: Product) -> Tuple[int, float, str]:
    return (-product.upvote_count, -product.created_at.timestamp(), product.id)


def _rank(scored: Iterable[Tuple[float, Product]]) -> List[Tuple[float, Product]]:
    return sorted(scored, key=lambda sp: (-sp[0], *_tie_key(sp[1])))


def _label(product: Product) -> str:
    return product.name or product.slug or product.id


# =============================================================================
# Base generator
# =============================================================================

class CandidateGenerator:
    """
    Shared plumbing: the published pool filtered by the query's exclude set
    and its category/tag filters.
    """

    name = "base"

    def __init__(self, catalog: Any, log: InteractionLog,
                 settings: GeneratorSettings = GeneratorSettings(),
                 config: GeneratorConfig = DEFAULT_GENERATOR_CONFIG):
        self.catalog = catalog
        self.log = log
        self.settings = settings
        self.config = config

    async def generate(self, query: GeneratorQuery, limit: int) -> List[Candidate]:
        raise NotImplementedError

    async def _pool(self, query: GeneratorQuery, apply_filters: bool = True) -> List[Product]:
        products = await self.catalog.published_products()
        allowed_categories: Optional[Set[str]] = None
        if apply_filters and query.category_id:
            tree = await self.catalog.category_tree()
            allowed_categories = tree.descendants(query.category_id)
        wanted_tags = set(query.tags) if apply_filters else set()

        pool = []
        for p in products:
            if not p.is_published or p.id in query.exclude:
                continue
            if allowed_categories is not None and p.category_id not in allowed_categories:
                continue
            if wanted_tags and not (wanted_tags & p.tags):
                continue
            pool.append(p)
        return pool

    def _candidate(self, product: Product, score: float, explanation: str,
                   relevance: float, now: datetime, popularity: float,
                   strategy: Optional[str] = None) -> Candidate:
        return Candidate(
            product_id=product.id,
            score=float(score),
            explanation=explanation,
            strategy=strategy or self.name,
            components={
                "relevance": round(float(relevance), 6),
                "recency": round(recency(product.age_days(now), self.config.RECENCY_SCALE_DAYS), 6),
                "popularity": round(float(popularity), 6),
            },
            sources=[strategy or self.name],
            product=product,
        )


# =============================================================================
# Trending
# =============================================================================

class TrendingGenerator(CandidateGenerator):
    """
    score = (w_u·upvotes + w_v·views + w_b·bookmarks in window) × recency(age)

    Window counts come from the interaction log. The decision is made per
    product: one with no logged activity inside the window is ranked by the
    catalog's lifetime counters instead, in a tier below every product the
    log has seen. Its score is rescaled under the weakest logged score so
    scores stay monotonic down the list.
    """

    name = "trending"

    def _window(self, query: GeneratorQuery) -> int:
        days = query.window_days or self.settings.trending_window_days
        return max(1, min(self.config.MAX_TRENDING_WINDOW_DAYS, int(days)))

    async def _window_counts(self, since: datetime) -> Dict[str, Dict[str, int]]:
        rows = await self.log.aggregate(
            ("product", "kind"),
            since=since,
            kinds=[InteractionKind.UPVOTE, InteractionKind.VIEW, InteractionKind.BOOKMARK],
        )
        counts: Dict[str, Dict[str, int]] = defaultdict(dict)
        for row in rows:
            counts[row.key("product")][row.key("kind")] = row.count
        return counts

    def _raw(self, upvotes: float, views: float, bookmarks: float) -> float:
        c = self.config
        return (
            c.TRENDING_UPVOTE_WEIGHT * upvotes
            + c.TRENDING_VIEW_WEIGHT * views
            + c.TRENDING_BOOKMARK_WEIGHT * bookmarks
        )

    async def score_pool(self, query: GeneratorQuery, window_days: int,
                         apply_filters: bool = True) -> List[Tuple[float, Product, int]]:
        """(score, product, upvotes counted) for every eligible product, best first."""
        since = query.now - timedelta(days=window_days)
        pool = await self._pool(query, apply_filters)
        counts = await self._window_counts(since)

        logged: List[Tuple[float, Product, int]] = []
        quiet: List[Tuple[float, Product, int]] = []
        for p in pool:
            boost = recency(p.age_days(query.now), self.config.RECENCY_SCALE_DAYS)
            c = counts.get(p.id)
            if c:
                upvotes, views, bookmarks = c.get("upvote", 0), c.get("view", 0), c.get("bookmark", 0)
                logged.append((self._raw(upvotes, views, bookmarks) * boost, p, upvotes))
            else:
                upvotes = p.upvote_count
                quiet.append((self._raw(upvotes, p.view_count, p.bookmark_count) * boost, p, upvotes))

        floor = min((s[0] for s in logged if s[0] > 0), default=0.0)
        top_quiet = max((s[0] for s in quiet), default=0.0)
        if logged and top_quiet > 0:
            # Counter-ranked products sit strictly below the logged tier
            scale = 0.5 * floor / top_quiet
            quiet = [(score * scale, p, upvotes) for score, p, upvotes in quiet]

        def order(s: Tuple[float, Product, int]):
            return -s[0], -s[2], -s[1].created_at.timestamp(), s[1].id

        return sorted(logged, key=order) + sorted(quiet, key=order)

    async def generate(self, query: GeneratorQuery, limit: int) -> List[Candidate]:
        window = self._window(query)
        scored = await self.score_pool(query, window)
        top_score = scored[0][0] if scored and scored[0][0] > 0 else 1.0
        top_upvotes = max((s[2] for s in scored), default=0) or 1

        out = []
        for score, p, upvotes in scored[:limit]:
            if upvotes:
                why = f"Trending: {upvotes} upvotes in the last {window} days"
            else:
                why = f"Trending in the last {window} days"
            out.append(self._candidate(p, score, why, score / top_score, query.now, upvotes / top_upvotes))
        return out


class DiversifiedTrendingGenerator(TrendingGenerator):
    """30-day trending, interleaved across categories round-robin."""

    name = "diversified_trending"

    async def generate(self, query: GeneratorQuery, limit: int) -> List[Candidate]:
        window = self.config.DIVERSIFIED_TRENDING_WINDOW_DAYS
        scored = await self.score_pool(query, window)

        buckets: Dict[Optional[str], List[Tuple[float, Product, int]]] = {}
        for item in scored:
            buckets.setdefault(item[1].category_id, []).append(item)

        interleaved: List[Tuple[float, Product, int]] = []
        queues = list(buckets.values())
        while queues and len(interleaved) < limit:
            next_round = []
            for queue in queues:
                interleaved.append(queue.pop(0))
                if queue:
                    next_round.append(queue)
            queues = next_round
        interleaved = interleaved[:limit]

        top_score = max((s[0] for s in interleaved), default=0.0) or 1.0
        top_upvotes = max((s[2] for s in interleaved), default=0) or 1
        n = len(interleaved)
        out = []
        for rank, (score, p, upvotes) in enumerate(interleaved):
            # Rank-based score keeps the interleaved order through blending
            out.append(self._candidate(
                p,
                (n - rank) / n,
                f"Popular in {p.category_id or 'its category'} this month",
                score / top_score,
                query.now,
                upvotes / top_upvotes,
            ))
        return out


# =============================================================================
# New
# =============================================================================

class NewGenerator(CandidateGenerator):
    name = "new"

    async def generate(self, query: GeneratorQuery, limit: int) -> List[Candidate]:
        days = query.window_days or self.settings.new_window_days
        since = query.now - timedelta(days=days)
        pool = [p for p in await self._pool(query) if p.created_at >= since]
        pool.sort(key=lambda p: (-p.created_at.timestamp(), -p.upvote_count, p.id))

        top_upvotes = max((p.upvote_count for p in pool), default=0) or 1
        out = []
        for p in pool[:limit]:
            age = p.age_days(query.now)
            fresh = recency(age, self.config.RECENCY_SCALE_DAYS)
            why = "Launched today" if age < 1 else f"Launched {int(age)} days ago"
            out.append(self._candidate(p, fresh, why, fresh, query.now, p.upvote_count / top_upvotes))
        return out


# =============================================================================
# Similar-to-product
# =============================================================================

class SimilarGenerator(CandidateGenerator):
    """score = 0.5·Jaccard(tags) + 0.3·[same category] + 0.2·upvotes/max"""

    name = "similar"

    async def _seed(self, product_id: Optional[str]) -> Product:
        seed = await self.catalog.get_product(product_id) if product_id else None
        if seed is None:
            raise NotFound("Product not found", {"productId": product_id})
        return seed

    def similar_to(self, seed: Product, pool: Sequence[Product], now: datetime,
                   limit: int, strategy: Optional[str] = None) -> List[Candidate]:
        c = self.config
        top_upvotes = max((p.upvote_count for p in pool), default=0) or 1
        scored = []
        for p in pool:
            if p.id == seed.id:
                continue
            jaccard = tag_jaccard(seed.tags, p.tags)
            same_category = bool(seed.category_id) and p.category_id == seed.category_id
            if jaccard <= 0 and not same_category:
                continue
            popularity = p.upvote_count / top_upvotes
            score = (
                c.SIMILAR_TAG_WEIGHT * jaccard
                + c.SIMILAR_CATEGORY_WEIGHT * (1.0 if same_category else 0.0)
                + c.SIMILAR_POPULARITY_WEIGHT * popularity
            )
            scored.append((score, p, jaccard, same_category, popularity))

        scored.sort(key=lambda s: (-s[0], *_tie_key(s[1])))
        out = []
        for score, p, jaccard, same_category, popularity in scored[:limit]:
            shared = sorted(seed.tags & p.tags)
            if c.SIMILAR_TAG_WEIGHT * jaccard >= c.SIMILAR_CATEGORY_WEIGHT * same_category and shared:
                why = f"Shares tags {', '.join(shared[:3])} with {_label(seed)}"
            elif same_category:
                why = f"Same category as {_label(seed)}"
            else:
                why = f"Similar to {_label(seed)}"
            out.append(self._candidate(p, score, why, jaccard, now, popularity, strategy))
        return out

    async def generate(self, query: GeneratorQuery, limit: int) -> List[Candidate]:
        seed = await self._seed(query.seed_product_id)
        pool = await self._pool(query)
        return self.similar_to(seed, pool, query.now, limit)


# =============================================================================
# Category / Maker / Tag listings
# =============================================================================

class _ListingGenerator(CandidateGenerator):
    """Filtered listing ordered by trending score, then newest."""

    def _listing(self, products: Sequence[Product], query: GeneratorQuery, limit: int,
                 explain, relevance=lambda p: 1.0) -> List[Candidate]:
        ordered = sorted(
            products,
            key=lambda p: (-(p.trending_score or 0.0), -p.created_at.timestamp(), p.id),
        )
        top_upvotes = max((p.upvote_count for p in ordered), default=0) or 1
        n = len(ordered)
        out = []
        for rank, p in enumerate(ordered[:limit]):
            score = p.trending_score if p.trending_score is not None else (n - rank) / n
            out.append(self._candidate(p, score, explain(p), relevance(p), query.now,
                                       p.upvote_count / top_upvotes))
        return out


class CategoryGenerator(_ListingGenerator):
    name = "category"

    async def generate(self, query: GeneratorQuery, limit: int) -> List[Candidate]:
        if not query.category_id:
            raise NotFound("Category not found", {"categoryId": query.category_id})
        tree = await self.catalog.category_tree()
        pool = await self._pool(query)
        if query.category_id not in tree and not pool:
            raise NotFound("Category not found", {"categoryId": query.category_id})
        category = tree.get(query.category_id)
        label = category.name if category else query.category_id
        return self._listing(pool, query, limit, lambda p: f"Popular in {label}")


class MakerGenerator(_ListingGenerator):
    name = "maker"

    async def generate(self, query: GeneratorQuery, limit: int) -> List[Candidate]:
        if not query.maker_id or not await self.catalog.maker_exists(query.maker_id):
            raise NotFound("Maker not found", {"makerId": query.maker_id})
        pool = [p for p in await self._pool(query) if p.maker_id == query.maker_id]
        return self._listing(pool, query, limit, lambda p: "More from this maker")


class TagGenerator(_ListingGenerator):
    name = "tag"

    async def generate(self, query: GeneratorQuery, limit: int) -> List[Candidate]:
        wanted = set(query.tags)
        pool = await self._pool(query)

        def explain(p: Product) -> str:
            return f"Tagged {', '.join(sorted(wanted & p.tags)[:3])}"

        def relevance(p: Product) -> float:
            return len(wanted & p.tags) / len(wanted) if wanted else 0.0

        return self._listing(pool, query, limit, explain, relevance)


# =============================================================================
# History-based
# =============================================================================

class HistoryGenerator(CandidateGenerator):
    """Similar-to over the user's most recent distinct views and upvotes."""

    name = "history"

    def __init__(self, similar: SimilarGenerator, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.similar = similar

    async def seed_ids(self, user_key: str) -> List[str]:
        seeds: List[str] = []
        async for record in self.log.query_by_user(user_key, kinds=HISTORY_SEED_KINDS_ENUM):
            if record.product_id not in seeds:
                seeds.append(record.product_id)
                if len(seeds) >= self.settings.history_seed_count:
                    break
        return seeds

    async def generate(self, query: GeneratorQuery, limit: int) -> List[Candidate]:
        if not query.user_key:
            return []
        seed_ids = await self.seed_ids(query.user_key)
        if not seed_ids:
            return []
        seeds = await self.catalog.get_products(seed_ids)
        pool = [p for p in await self._pool(query) if p.id not in seeds]

        best: Dict[str, Candidate] = {}
        for seed_id in seed_ids:
            seed = seeds.get(seed_id)
            if seed is None:
                continue
            for cand in self.similar.similar_to(seed, pool, query.now, limit, self.name):
                current = best.get(cand.product_id)
                if current is None or cand.score > current.score:
                    best[cand.product_id] = cand.model_copy(
                        update={"explanation": f"Because you looked at {_label(seed)}"}
                    )

        ranked = sorted(best.values(), key=lambda c: (-c.score, *_tie_key(c.product)))
        return ranked[:limit]


HISTORY_SEED_KINDS_ENUM = [InteractionKind(k) for k in sorted(HISTORY_SEED_KINDS)]


# =============================================================================
# Collaborative
# =============================================================================

class CollaborativeGenerator(CandidateGenerator):
    """
    Users who upvoted/bookmarked what you did also engaged with...

    score(p) = count(p) × avg_quality(p) over the co-users' recent
    engagements; products the user has touched in any way are skipped.
    """

    name = "collaborative"

    async def generate(self, query: GeneratorQuery, limit: int) -> List[Candidate]:
        if not query.user_key:
            return []
        since = query.now - timedelta(days=self.settings.collaborative_window_days)

        own = await self.log.query_by_user(query.user_key).to_list()
        touched = {r.product_id for r in own}
        seeds: List[str] = []
        for r in own:
            if r.timestamp >= since and r.kind.value in COLLABORATIVE_SEED_KINDS and r.product_id not in seeds:
                seeds.append(r.product_id)
        if not seeds:
            return []

        co_users: Set[str] = set()
        for seed in seeds:
            seen_for_seed: Set[str] = set()
            async for r in self.log.query_by_product(seed, since=since, kinds=COLLABORATIVE_SEED_KINDS_ENUM):
                if r.user_key == query.user_key or r.user_key in seen_for_seed:
                    continue
                seen_for_seed.add(r.user_key)
                if len(seen_for_seed) >= self.settings.collaborative_user_cap:
                    break
            co_users |= seen_for_seed
        if not co_users:
            return []

        counts: Dict[str, int] = defaultdict(int)
        quality: Dict[str, float] = defaultdict(float)
        for user_key in sorted(co_users):
            async for r in self.log.query_by_user(user_key, since=since, kinds=COLLABORATIVE_SIGNAL_KINDS_ENUM):
                if r.product_id in touched:
                    continue
                counts[r.product_id] += 1
                quality[r.product_id] += r.quality

        products = {p.id: p for p in await self._pool(query) if p.id in counts}
        scored = []
        for pid, p in products.items():
            avg = quality[pid] / counts[pid]
            scored.append((counts[pid] * avg, p))
        ranked = _rank(scored)

        top_score = ranked[0][0] if ranked and ranked[0][0] > 0 else 1.0
        top_count = max((counts[p.id] for _, p in ranked), default=0) or 1
        out = []
        for score, p in ranked[:limit]:
            n = counts[p.id]
            why = f"Liked by {n} {'person' if n == 1 else 'people'} with similar taste"
            out.append(self._candidate(p, score, why, score / top_score, query.now, n / top_count))
        return out


COLLABORATIVE_SEED_KINDS_ENUM = [InteractionKind(k) for k in sorted(COLLABORATIVE_SEED_KINDS)]
COLLABORATIVE_SIGNAL_KINDS_ENUM = [InteractionKind(k) for k in sorted(COLLABORATIVE_SIGNAL_KINDS)]


# =============================================================================
# Interests (personalized)
# =============================================================================

class InterestsGenerator(CandidateGenerator):
    """
    score(p) = (Σ_c aff(c)·[p ∈ c] + α·Σ_t aff(t)·[t ∈ p.tags])
               × (0.6 + 0.4·recency(age)) × (1 + log(1 + upvotes)/10)

    Falls back to trending when the profile has no affinities or
    personalization is off, and tops up with trending when too few
    products match.
    """

    name = "interests"

    def __init__(self, trending: TrendingGenerator, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.trending = trending

    @staticmethod
    def is_personalizable(profile: Optional[UserProfile]) -> bool:
        return bool(profile and profile.personalization_enabled and profile.has_affinities)

    def _score(self, p: Product, profile: UserProfile, tree: CategoryTree,
               now: datetime) -> Tuple[float, float, str]:
        c = self.config
        alpha = self.settings.interest_tag_alpha
        best_reason, best_part = "", 0.0

        category_part = 0.0
        for category_id in tree.lineage(p.category_id):
            weight = profile.category_affinities.get(category_id, 0.0)
            category_part += weight
            if weight > best_part:
                category = tree.get(category_id)
                best_part = weight
                best_reason = f"Matches your interest in {category.name if category else category_id}"

        tag_part = 0.0
        for tag in sorted(p.tags):
            weight = profile.tag_affinities.get(tag, 0.0)
            tag_part += weight
            if alpha * weight > best_part:
                best_part = alpha * weight
                best_reason = f"Tagged {tag}, which you engage with"

        relevance = category_part + alpha * tag_part
        if relevance <= 0:
            return 0.0, 0.0, ""
        fresh = c.INTEREST_RECENCY_FLOOR + c.INTEREST_RECENCY_WEIGHT * recency(p.age_days(now), c.RECENCY_SCALE_DAYS)
        popularity = 1.0 + math.log1p(p.upvote_count) / c.INTEREST_POPULARITY_DIVISOR
        return relevance * fresh * popularity, relevance, best_reason

    async def generate(self, query: GeneratorQuery, limit: int) -> List[Candidate]:
        profile = query.profile
        if not self.is_personalizable(profile):
            return await self.trending.generate(query, limit)

        tree = await self.catalog.category_tree()
        pool = await self._pool(query)
        scored = []
        for p in pool:
            score, relevance, reason = self._score(p, profile, tree, query.now)
            if score > 0:
                scored.append((score, p, relevance, reason))
        scored.sort(key=lambda s: (-s[0], *_tie_key(s[1])))

        top_relevance = max((s[2] for s in scored), default=0.0) or 1.0
        top_upvotes = max((p.upvote_count for p in pool), default=0) or 1
        out = [
            self._candidate(p, score, reason, relevance / top_relevance, query.now, p.upvote_count / top_upvotes)
            for score, p, relevance, reason in scored[:limit]
        ]

        if len(out) < limit:
            out.extend(await self._top_up(query, out, limit - len(out)))
        return out

    async def _top_up(self, query: GeneratorQuery, found: List[Candidate], missing: int) -> List[Candidate]:
        """Trending items ranked strictly below every interest match."""
        present = {c.product_id for c in found}
        extra = await self.trending.generate(
            query.with_changes(exclude=query.exclude | present), missing
        )
        if not extra:
            return []
        floor = min((c.score for c in found), default=1.0) or 1.0
        top = max(c.score for c in extra) or 1.0
        return [
            c.model_copy(update={"score": 0.5 * floor * (c.score / top) if c.score > 0 else 0.0})
            for c in extra
        ]


# =============================================================================
# Registry
# =============================================================================

def build_generators(catalog: Any, log: InteractionLog,
                     settings: GeneratorSettings = GeneratorSettings(),
                     config: GeneratorConfig = DEFAULT_GENERATOR_CONFIG) -> Dict[str, CandidateGenerator]:
    """All generators keyed by name."""
    trending = TrendingGenerator(catalog, log, settings, config)
    similar = SimilarGenerator(catalog, log, settings, config)
    generators: List[CandidateGenerator] = [
        trending,
        DiversifiedTrendingGenerator(catalog, log, settings, config),
        NewGenerator(catalog, log, settings, config),
        similar,
        CategoryGenerator(catalog, log, settings, config),
        MakerGenerator(catalog, log, settings, config),
        TagGenerator(catalog, log, settings, config),
        HistoryGenerator(similar, catalog, log, settings, config),
        CollaborativeGenerator(catalog, log, settings, config),
        InterestsGenerator(trending, catalog, log, settings, config),
    ]
    return {g.name: g for g in generators}
