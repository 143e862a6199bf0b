"""
Engine constants and algorithm configuration.

These are values that don't change based on environment but may need
to be tuned or referenced across the codebase. Environment-dependent
tunables (budgets, TTLs, windows) live in config.settings.
"""

import math
from dataclasses import dataclass, field
from typing import Dict, FrozenSet


# =============================================================================
# Engagement Scoring
# =============================================================================

@dataclass(frozen=True)
class EngagementConfig:
    """Base scores and adjustment caps for engagement quality."""

    BASE_SCORES: Dict[str, float] = field(default_factory=lambda: {
        "conversion": 10.0,
        "bookmark": 8.0,
        "upvote": 7.0,
        "comment": 6.0,
        "share": 5.0,
        "click": 3.0,
        "view": 2.0,
        "impression": 1.0,
        "dismiss": 0.0,
    })
    OTHER_BASE_SCORE: float = 1.0

    TIME_ON_PAGE_DIVISOR: float = 60.0
    TIME_ON_PAGE_CAP: float = 4.0
    SCROLL_DEPTH_FACTOR: float = 3.0
    SESSION_DURATION_DIVISOR: float = 300.0
    SESSION_DURATION_CAP: float = 3.0
    CLICK_COUNT_CAP: float = 2.0

    MIN_SCORE: float = 0.0
    MAX_SCORE: float = 10.0


DEFAULT_ENGAGEMENT_CONFIG = EngagementConfig()


# =============================================================================
# Interaction classes
# =============================================================================

# Kinds whose arrival invalidates the user's personalized cache immediately
SIGNIFICANT_KINDS: FrozenSet[str] = frozenset({"upvote", "dismiss", "bookmark"})

# Kinds that never feed affinities
NON_CONTRIBUTING_KINDS: FrozenSet[str] = frozenset({
    "dismiss", "remove_upvote", "remove_bookmark",
})

# "Deep" engagement excludes a product from the user's personalized feeds
DEEP_ENGAGEMENT_KINDS: FrozenSet[str] = frozenset({"upvote", "bookmark", "conversion"})

# Seeds for the history generator
HISTORY_SEED_KINDS: FrozenSet[str] = frozenset({"view", "upvote"})

# Seeds and co-engagement signals for the collaborative generator
COLLABORATIVE_SEED_KINDS: FrozenSet[str] = frozenset({"upvote", "bookmark"})
COLLABORATIVE_SIGNAL_KINDS: FrozenSet[str] = frozenset({
    "view", "click", "upvote", "bookmark", "comment", "share", "conversion",
})


# =============================================================================
# Strategy aliases
# =============================================================================

# Producers emit near-duplicate strategy names; collapse them onto the
# canonical set before anything is stored.
STRATEGY_ALIASES: Dict[str, str] = {
    "similar-products": "similar",
    "similar_products": "similar",
    "similar_section": "similar",
    "view_similar": "similar",
    "history-based": "history",
    "history_based": "history",
    "popular": "trending",
    "discovery": "hybrid",
    "diversified": "hybrid",
    "diversified-feed": "hybrid",
    "interests": "personalized",
}


# =============================================================================
# Blend Policies
# =============================================================================

# Weights per generator; each policy sums to 1.0
BLEND_POLICIES: Dict[str, Dict[str, float]] = {
    "standard": {
        "interests": 0.5,
        "trending": 0.2,
        "new": 0.2,
        "history": 0.1,
    },
    "trending": {
        "trending": 1.0,
    },
    "discovery": {
        "new": 0.4,
        "collaborative": 0.3,
        "diversified_trending": 0.3,
    },
    "personalized": {
        "interests": 0.7,
        "collaborative": 0.2,
        "trending": 0.1,
    },
}

DEFAULT_BLEND = "standard"

# Generators whose output depends on who is asking
PERSONALIZED_GENERATORS: FrozenSet[str] = frozenset({"interests", "history", "collaborative"})


@dataclass(frozen=True)
class BlendConfig:
    """Merge and candidate-request parameters for the feed blender."""

    OVERFETCH_FACTOR: float = 1.5
    CROSS_SOURCE_BOOST: float = 0.10


DEFAULT_BLEND_CONFIG = BlendConfig()


# =============================================================================
# Generator tuning
# =============================================================================

@dataclass(frozen=True)
class GeneratorConfig:
    """Scoring constants shared by the candidate generators."""

    # Trending: in-window engagement weights
    TRENDING_UPVOTE_WEIGHT: float = 3.0
    TRENDING_VIEW_WEIGHT: float = 0.5
    TRENDING_BOOKMARK_WEIGHT: float = 2.0
    RECENCY_SCALE_DAYS: float = 7.0
    MAX_TRENDING_WINDOW_DAYS: int = 30
    DIVERSIFIED_TRENDING_WINDOW_DAYS: int = 30

    # Similar-to-product
    SIMILAR_TAG_WEIGHT: float = 0.5
    SIMILAR_CATEGORY_WEIGHT: float = 0.3
    SIMILAR_POPULARITY_WEIGHT: float = 0.2

    # Interests
    INTEREST_RECENCY_FLOOR: float = 0.6
    INTEREST_RECENCY_WEIGHT: float = 0.4
    INTEREST_POPULARITY_DIVISOR: float = 10.0


DEFAULT_GENERATOR_CONFIG = GeneratorConfig()


# =============================================================================
# Query limits
# =============================================================================

@dataclass(frozen=True)
class QueryLimits:
    """Bounds for query normalization."""

    DEFAULT_LIMIT: int = 20
    MIN_LIMIT: int = 1
    MAX_LIMIT: int = 50
    SORT_OPTIONS: FrozenSet[str] = frozenset({"score", "created", "upvotes", "trending"})


DEFAULT_QUERY_LIMITS = QueryLimits()


# =============================================================================
# Profile bounds
# =============================================================================

@dataclass(frozen=True)
class ProfileBounds:
    """Limits for user-editable profile settings and feedback adjustments."""

    MIN_DIVERSIFICATION: float = 0.0
    MAX_DIVERSIFICATION: float = 2.0
    DEFAULT_DIVERSIFICATION: float = 1.0
    MIN_RECOMMENDATIONS: int = 5
    MAX_RECOMMENDATIONS: int = 50
    DEFAULT_MAX_RECOMMENDATIONS: int = 50

    FEEDBACK_POSITIVE_FACTOR: float = 1.25
    FEEDBACK_NEGATIVE_FACTOR: float = 0.5
    FEEDBACK_MAX_WEIGHT: float = 4.0
    FEEDBACK_MIN_WEIGHT: float = 0.05


DEFAULT_PROFILE_BOUNDS = ProfileBounds()


def decay_tau_seconds(half_life_days: float) -> float:
    """Time constant τ such that exp(-half_life / τ) == 0.5."""
    return half_life_days * 86400.0 / math.log(2.0)
