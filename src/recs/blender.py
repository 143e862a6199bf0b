"""
Feed Blender.

Combines weighted generator outputs into one ranked feed:

1. Ask each generator of the policy for ⌈target × weight × 1.5⌉ candidates,
   concurrently, each inside its own time budget.
2. Normalize each list by its top score, scale by the generator weight and
   merge; a product proposed by several generators keeps its best score
   plus a 10% cross-source boost.
3. Drop excluded products, apply the requested ordering.
4. Diversify: at most N consecutive items per category (N scaled by the
   user's diversification weight) and at most ⌈share × limit⌉ items per
   maker within each page. Items that break a cap are deferred to a later
   slot; items no slot can take are left out.
5. Return the requested window and a total estimate.

Generators that fail, time out or are disabled lose their weight to the
others; failures mark the result partial.
"""

import asyncio
import math
import time
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple

from config.constants import BLEND_POLICIES, DEFAULT_BLEND_CONFIG, BlendConfig
from core.errors import DependencyUnavailable
from core.logging import get_logger
from recs.generators import CandidateGenerator, GeneratorQuery
from recs.models import Candidate, SortBy


logger = get_logger(__name__)


# =============================================================================
# Configuration
# =============================================================================

@dataclass(frozen=True)
class DiversityConfig:
    """Caps applied to blended feeds."""
    max_per_category: int = 2
    maker_share_cap: float = 0.15

    def category_run_limit(self, diversification_weight: float) -> int:
        """0 = strictest (runs of 1), 1 = configured cap, 2 = twice the cap."""
        return max(1, int(round(self.max_per_category * diversification_weight)))

    def maker_cap(self, limit: int) -> int:
        return max(1, math.ceil(self.maker_share_cap * limit))


DEFAULT_DIVERSITY_CONFIG = DiversityConfig()


@dataclass
class BlendOutcome:
    """Window of a blended feed plus diagnostics."""
    items: List[Candidate]
    total: int
    weights: Dict[str, float]
    degraded_strategies: List[str] = field(default_factory=list)

    @property
    def partial(self) -> bool:
        return bool(self.degraded_strategies)


# =============================================================================
# Helpers
# =============================================================================

def redistribute(weights: Mapping[str, float], drop: Iterable[str]) -> Dict[str, float]:
    """Remove generators and rescale the rest back to a total of 1.0."""
    dropped = set(drop)
    kept = {name: w for name, w in weights.items() if name not in dropped and w > 0}
    total = sum(kept.values())
    if total <= 0:
        return {}
    return {name: w / total for name, w in kept.items()}


def _merge_key(c: Candidate) -> Tuple:
    p = c.product
    if p is None:
        return (-c.score, 0, 0.0, c.product_id)
    return (-c.score, -p.upvote_count, -p.created_at.timestamp(), c.product_id)


def merge_candidates(
    lists: Mapping[str, Sequence[Candidate]],
    weights: Mapping[str, float],
    config: BlendConfig = DEFAULT_BLEND_CONFIG,
) -> List[Candidate]:
    """
    Weighted, normalized union of generator outputs, best first.

    Duplicates keep their highest weighted score times (1 + boost).
    """
    merged: Dict[str, Candidate] = {}
    for name in sorted(lists):
        candidates = lists[name]
        weight = weights.get(name, 0.0)
        if not candidates or weight <= 0:
            continue
        top = max(c.score for c in candidates)
        for c in candidates:
            normalized = (c.score / top if top > 0 else 0.0) * weight
            current = merged.get(c.product_id)
            if current is None:
                merged[c.product_id] = c.model_copy(update={"score": normalized, "sources": [name]})
                continue
            best = c if normalized > current.score else current
            sources = current.sources + [name]
            merged[c.product_id] = best.model_copy(update={
                "score": max(normalized, current.score),
                "sources": sources,
            })

    out = []
    for c in merged.values():
        if len(c.sources) > 1:
            c = c.model_copy(update={"score": c.score * (1.0 + config.CROSS_SOURCE_BOOST)})
        out.append(c)
    out.sort(key=_merge_key)
    return out


def apply_sort(candidates: List[Candidate], sort_by: SortBy) -> List[Candidate]:
    """Reorder for sortBy; ``score`` keeps the ranking as produced."""
    if sort_by == SortBy.SCORE:
        return list(candidates)

    def created(c: Candidate) -> float:
        return c.product.created_at.timestamp() if c.product else 0.0

    def upvotes(c: Candidate) -> int:
        return c.product.upvote_count if c.product else 0

    def trending(c: Candidate) -> float:
        if c.product and c.product.trending_score is not None:
            return c.product.trending_score
        return 0.0

    if sort_by == SortBy.CREATED:
        key = lambda c: (-created(c), -upvotes(c), c.product_id)
    elif sort_by == SortBy.UPVOTES:
        key = lambda c: (-upvotes(c), -created(c), c.product_id)
    else:
        key = lambda c: (-trending(c), -c.score, -created(c), c.product_id)
    return sorted(candidates, key=key)


def diversify(
    candidates: Sequence[Candidate],
    offset: int,
    limit: int,
    diversification_weight: float = 1.0,
    config: DiversityConfig = DEFAULT_DIVERSITY_CONFIG,
    stop_at: Optional[int] = None,
) -> Tuple[List[Candidate], int]:
    """
    Arrange candidates under the category-run and per-page maker caps.

    Pages are blocks of ``limit`` positions aligned on ``offset``, so the
    window the caller returns is exactly one block. Arrangement stops at
    ``stop_at`` positions or when no remaining item fits the next slot.

    Returns:
        (arranged items, estimated total length of the diversified feed)
    """
    run_limit = config.category_run_limit(diversification_weight)
    maker_cap = config.maker_cap(limit)
    stop_at = len(candidates) if stop_at is None else stop_at

    remaining = list(candidates)
    arranged: List[Candidate] = []
    maker_counts: Dict[str, int] = {}
    block = None
    stuck = False

    while remaining and len(arranged) < stop_at:
        position = len(arranged)
        current_block = (position - offset) // limit
        if current_block != block:
            block = current_block
            maker_counts = {}

        run_category = None
        if len(arranged) >= run_limit:
            tail = [_category(c) for c in arranged[-run_limit:]]
            if tail[0] is not None and all(t == tail[0] for t in tail):
                run_category = tail[0]

        chosen = None
        for index, candidate in enumerate(remaining):
            category = _category(candidate)
            if run_category is not None and category == run_category:
                continue
            maker = _maker(candidate)
            if maker is not None and maker_counts.get(maker, 0) >= maker_cap:
                continue
            chosen = index
            break

        if chosen is None:
            stuck = True
            break

        candidate = remaining.pop(chosen)
        maker = _maker(candidate)
        if maker is not None:
            maker_counts[maker] = maker_counts.get(maker, 0) + 1
        arranged.append(candidate)

    total = len(arranged) + (0 if stuck else len(remaining))
    return arranged, total


def _category(c: Candidate) -> Optional[str]:
    return c.product.category_id if c.product else None


def _maker(c: Candidate) -> Optional[str]:
    return c.product.maker_id if c.product else None


# =============================================================================
# Feed Blender (Main Interface)
# =============================================================================

class FeedBlender:
    """
    Runs a blend policy against the generators.

    Usage:
        blender = FeedBlender(generators)
        outcome = await blender.blend("standard", query, offset=0, limit=20)
    """

    def __init__(
        self,
        generators: Mapping[str, CandidateGenerator],
        generator_budget_ms: float = 400,
        config: BlendConfig = DEFAULT_BLEND_CONFIG,
        diversity: DiversityConfig = DEFAULT_DIVERSITY_CONFIG,
    ):
        self.generators = dict(generators)
        self.generator_budget = generator_budget_ms / 1000.0
        self.config = config
        self.diversity = diversity

    def policy_weights(self, policy: str, disabled: Iterable[str] = ()) -> Dict[str, float]:
        weights = BLEND_POLICIES.get(policy)
        if weights is None:
            raise ValueError(f"Unknown blend policy: {policy}")
        active = redistribute(weights, disabled)
        if not active:
            # Every component disabled: plain trending is the neutral feed
            active = {"trending": 1.0}
        return active

    async def _run_one(self, name: str, query: GeneratorQuery, count: int) -> List[Candidate]:
        generator = self.generators.get(name)
        if generator is None:
            raise DependencyUnavailable(f"No generator named {name}")
        return await asyncio.wait_for(generator.generate(query, count), timeout=self.generator_budget)

    def request_counts(self, weights: Mapping[str, float], target: int) -> Dict[str, int]:
        """⌈target × weight × overfetch⌉ per generator."""
        return {
            name: max(1, math.ceil(target * weight * self.config.OVERFETCH_FACTOR))
            for name, weight in weights.items()
        }

    async def collect(
        self,
        counts: Mapping[str, int],
        query: GeneratorQuery,
        deadline: Optional[float] = None,
    ) -> Tuple[Dict[str, List[Candidate]], List[str]]:
        """
        Run generators concurrently, each asked for ``counts[name]`` items.

        Returns:
            (candidates per successful generator, names of failed generators)
        """
        tasks: Dict[str, asyncio.Task] = {}
        for name, count in counts.items():
            tasks[name] = asyncio.ensure_future(self._run_one(name, query, count))

        timeout = None
        if deadline is not None:
            timeout = max(0.0, deadline - time.monotonic())

        try:
            done, pending = await asyncio.wait(set(tasks.values()), timeout=timeout)
        except asyncio.CancelledError:
            for task in tasks.values():
                task.cancel()
            raise

        for task in pending:
            task.cancel()

        results: Dict[str, List[Candidate]] = {}
        failed: List[str] = []
        for name, task in tasks.items():
            if task in pending:
                logger.warning("Generator cut off by query budget", generator=name)
                failed.append(name)
                continue
            error = task.exception()
            if error is None:
                results[name] = task.result()
            elif isinstance(error, asyncio.TimeoutError):
                logger.warning("Generator timed out", generator=name,
                               budget_ms=int(self.generator_budget * 1000))
                failed.append(name)
            else:
                logger.warning("Generator failed", generator=name,
                               error=str(error), error_type=type(error).__name__)
                failed.append(name)
        return results, sorted(failed)

    async def blend(
        self,
        policy: str,
        query: GeneratorQuery,
        offset: int,
        limit: int,
        sort_by: SortBy = SortBy.SCORE,
        disabled: Iterable[str] = (),
        diversification_weight: float = 1.0,
        deadline: Optional[float] = None,
        extra_exclude: Optional[Set[str]] = None,
    ) -> BlendOutcome:
        target = offset + limit
        weights = self.policy_weights(policy, disabled)
        counts = self.request_counts(weights, target)
        results, failed = await self.collect(counts, query, deadline)
        effective = redistribute(weights, failed)
        exclude = set(query.exclude) | set(extra_exclude or ())

        merged = [c for c in merge_candidates(results, effective, self.config)
                  if c.product_id not in exclude]

        if len(merged) < target:
            # Overlap or a lost generator left the feed short: one refill
            # round from generators that may have more to give.
            hungry = {
                name: target + len(exclude)
                for name, items in results.items()
                if len(items) >= counts[name] and counts[name] < target + len(exclude)
            }
            if hungry and (deadline is None or deadline > time.monotonic()):
                more, more_failed = await self.collect(hungry, query, deadline)
                results.update(more)
                if more_failed:
                    logger.info("Refill round incomplete", generators=more_failed)
                merged = [c for c in merge_candidates(results, effective, self.config)
                          if c.product_id not in exclude]

        merged = apply_sort(merged, sort_by)

        arranged, total = diversify(
            merged, offset, limit, diversification_weight, self.diversity, stop_at=target,
        )
        return BlendOutcome(
            items=arranged[offset:target],
            total=total,
            weights=effective,
            degraded_strategies=failed,
        )
