"""
Data model for the recommendation engine.

Models cover:
- Interaction kinds, strategies, blends and catalog statuses
- Interaction records and their per-kind metadata variants
- Catalog products and categories (read-only, owned by the catalog)
- User profiles (materialized from the interaction log)
- Candidates and feed pages
- API request schemas
"""

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Set, Tuple, Type

from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from config.constants import DEFAULT_PROFILE_BOUNDS, STRATEGY_ALIASES
from core.utils import isoformat, normalize_string_set, parse_iso8601, utcnow


# =============================================================================
# Enums
# =============================================================================

class InteractionKind(str, Enum):
    """What the user did with the product."""
    IMPRESSION = "impression"
    VIEW = "view"
    CLICK = "click"
    UPVOTE = "upvote"
    REMOVE_UPVOTE = "remove_upvote"
    BOOKMARK = "bookmark"
    REMOVE_BOOKMARK = "remove_bookmark"
    COMMENT = "comment"
    SHARE = "share"
    DISMISS = "dismiss"
    CONVERSION = "conversion"
    FEEDBACK = "feedback"
    UNKNOWN = "unknown"

    @classmethod
    def coerce(cls, value: str) -> "InteractionKind":
        """Unknown kinds from newer clients are kept as UNKNOWN."""
        try:
            return cls(value.strip().lower())
        except ValueError:
            return cls.UNKNOWN


class Strategy(str, Enum):
    """Strategy that produced the recommendation the user acted on."""
    PERSONALIZED = "personalized"
    TRENDING = "trending"
    NEW = "new"
    CATEGORY = "category"
    TAG = "tag"
    HISTORY = "history"
    COLLABORATIVE = "collaborative"
    MAKER = "maker"
    SIMILAR = "similar"
    HYBRID = "hybrid"
    FEED = "feed"
    DIRECT = "direct"
    UNKNOWN = "unknown"

    @classmethod
    def coerce(cls, value: Optional[str]) -> "Strategy":
        """Collapse producer aliases; anything unrecognised becomes UNKNOWN."""
        if not isinstance(value, str) or not value.strip():
            return cls.UNKNOWN
        name = value.strip().lower()
        name = STRATEGY_ALIASES.get(name, name)
        try:
            return cls(name)
        except ValueError:
            return cls.UNKNOWN


class Blend(str, Enum):
    STANDARD = "standard"
    TRENDING = "trending"
    DISCOVERY = "discovery"
    PERSONALIZED = "personalized"


class SortBy(str, Enum):
    SCORE = "score"
    CREATED = "created"
    UPVOTES = "upvotes"
    TRENDING = "trending"


class ProductStatus(str, Enum):
    PUBLISHED = "Published"
    DRAFT = "Draft"
    ARCHIVED = "Archived"


class CatalogEventType(str, Enum):
    """Product lifecycle events published by the catalog."""
    PUBLISHED = "published"
    UNPUBLISHED = "unpublished"
    DELETED = "deleted"
    UPDATED = "updated"


# =============================================================================
# Interaction metadata (one variant per kind, shared header)
# =============================================================================

class InteractionMetadata(BaseModel):
    """
    Header shared by every interaction kind.

    Unknown keys are kept as extras so newer clients can send fields this
    version does not understand without losing them.
    """
    model_config = ConfigDict(extra="allow", populate_by_name=True, alias_generator=to_camel)

    source: Optional[str] = None
    session_id: Optional[str] = None
    position: Optional[int] = Field(default=None, ge=0)
    referrer: Optional[str] = None
    device: Optional[str] = None
    experiment_id: Optional[str] = None
    variant_id: Optional[str] = None


class ImpressionMetadata(InteractionMetadata):
    score_at_render: Optional[float] = None
    matched_tags: List[str] = Field(default_factory=list)
    page: Optional[str] = None


class EngagementMetrics(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True, alias_generator=to_camel)

    click_count: Optional[float] = Field(default=None, ge=0)
    dwell_time: Optional[float] = Field(default=None, ge=0)
    bounced: Optional[bool] = None


class ViewMetadata(InteractionMetadata):
    time_on_page: Optional[float] = Field(default=None, ge=0)
    scroll_depth: Optional[float] = Field(default=None, ge=0, le=1)
    session_duration: Optional[float] = Field(default=None, ge=0)
    engagement_metrics: Optional[EngagementMetrics] = None


class ClickMetadata(ViewMetadata):
    click_count: Optional[float] = Field(default=None, ge=0)


class ConversionMetadata(ViewMetadata):
    conversion_value: Optional[float] = Field(default=None, ge=0)


class FeedbackMetadata(InteractionMetadata):
    positive: bool = False
    negative: bool = False
    reason: Optional[str] = None


class DismissMetadata(InteractionMetadata):
    reason: Optional[str] = None


METADATA_VARIANTS: Dict[InteractionKind, Type[InteractionMetadata]] = {
    InteractionKind.IMPRESSION: ImpressionMetadata,
    InteractionKind.VIEW: ViewMetadata,
    InteractionKind.CLICK: ClickMetadata,
    InteractionKind.UPVOTE: ViewMetadata,
    InteractionKind.BOOKMARK: ViewMetadata,
    InteractionKind.COMMENT: ViewMetadata,
    InteractionKind.SHARE: ViewMetadata,
    InteractionKind.CONVERSION: ConversionMetadata,
    InteractionKind.FEEDBACK: FeedbackMetadata,
    InteractionKind.DISMISS: DismissMetadata,
}


def metadata_for_kind(kind: InteractionKind, raw: Optional[Mapping[str, Any]]) -> Optional[InteractionMetadata]:
    """
    Parse raw metadata into the variant for ``kind``.

    Returns None when the payload does not fit the variant; callers keep the
    raw mapping in that case.
    """
    model = METADATA_VARIANTS.get(kind, InteractionMetadata)
    try:
        return model.model_validate(dict(raw or {}))
    except PydanticValidationError:
        return None


# =============================================================================
# Interaction record
# =============================================================================

def new_interaction_id() -> str:
    return uuid.uuid4().hex[:24]


@dataclass(frozen=True)
class Interaction:
    """
    One user action on one product. Immutable once written.

    ``user_key`` is the user id for signed-in users and ``anon:<client-id>``
    for anonymous visitors.
    """
    id: str
    user_key: str
    product_id: str
    kind: InteractionKind
    strategy: Strategy
    timestamp: datetime
    quality: float
    position: Optional[int] = None
    metadata: Mapping[str, Any] = field(default_factory=dict)
    user_id: Optional[str] = None
    client_id: Optional[str] = None

    @property
    def is_anonymous(self) -> bool:
        return self.user_id is None

    def typed_metadata(self) -> Optional[InteractionMetadata]:
        return metadata_for_kind(self.kind, self.metadata)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_key": self.user_key,
            "user_id": self.user_id,
            "client_id": self.client_id,
            "product_id": self.product_id,
            "interaction_type": self.kind.value,
            "recommendation_type": self.strategy.value,
            "position": self.position,
            "metadata": dict(self.metadata),
            "engagement_quality": self.quality,
            "created_at": isoformat(self.timestamp),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Interaction":
        timestamp = parse_iso8601(data.get("created_at")) or utcnow()
        return cls(
            id=str(data.get("id") or new_interaction_id()),
            user_key=str(data["user_key"]),
            user_id=data.get("user_id"),
            client_id=data.get("client_id"),
            product_id=str(data["product_id"]),
            kind=InteractionKind.coerce(str(data.get("interaction_type", "unknown"))),
            strategy=Strategy.coerce(data.get("recommendation_type")),
            position=data.get("position"),
            metadata=dict(data.get("metadata") or {}),
            quality=float(data.get("engagement_quality") or 0.0),
            timestamp=timestamp,
        )


@dataclass
class InteractionReceipt:
    """What the caller gets back once an interaction is durably recorded."""
    interaction_id: Optional[str]
    engagement_quality: float
    recorded_at: datetime
    status: str = "recorded"  # recorded, already_dismissed

    def to_response(self) -> Dict[str, Any]:
        return {
            "interactionId": self.interaction_id,
            "engagementQuality": round(self.engagement_quality, 4),
            "recordedAt": isoformat(self.recorded_at),
            "status": self.status,
        }


# =============================================================================
# Catalog records (external, read-only)
# =============================================================================

def _pick(data: Mapping[str, Any], *keys: str, default: Any = None) -> Any:
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return default


@dataclass(frozen=True)
class Product:
    id: str
    slug: str
    status: str
    category_id: Optional[str]
    tags: FrozenSet[str]
    maker_id: Optional[str]
    created_at: datetime
    upvote_count: int = 0
    view_count: int = 0
    bookmark_count: int = 0
    trending_score: Optional[float] = None
    name: Optional[str] = None
    tagline: Optional[str] = None
    thumbnail: Optional[str] = None

    @property
    def is_published(self) -> bool:
        return self.status.lower() == ProductStatus.PUBLISHED.value.lower()

    def age_days(self, now: datetime) -> float:
        return max(0.0, (now - self.created_at).total_seconds() / 86400.0)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Product":
        """Build from a seed document or a Supabase row (camelCase or snake_case)."""
        created = parse_iso8601(_pick(data, "created_at", "createdAt"))
        trending = _pick(data, "trending_score", "trendingScore")
        return cls(
            id=str(_pick(data, "id", "_id")),
            slug=str(_pick(data, "slug", default="")),
            status=str(_pick(data, "status", default=ProductStatus.DRAFT.value)),
            category_id=_pick(data, "category_id", "categoryId", "category"),
            tags=frozenset(normalize_string_set(_pick(data, "tags", default=[]) or [])),
            maker_id=_pick(data, "maker_id", "makerId", "maker"),
            created_at=created or utcnow(),
            upvote_count=int(_pick(data, "upvote_count", "upvoteCount", "upvotes", default=0)),
            view_count=int(_pick(data, "view_count", "viewCount", "views", default=0)),
            bookmark_count=int(_pick(data, "bookmark_count", "bookmarkCount", "bookmarks", default=0)),
            trending_score=float(trending) if trending is not None else None,
            name=_pick(data, "name"),
            tagline=_pick(data, "tagline"),
            thumbnail=_pick(data, "thumbnail", "thumbnail_url"),
        )

    def summary(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "slug": self.slug,
            "name": self.name,
            "tagline": self.tagline,
            "thumbnail": self.thumbnail,
            "category": self.category_id,
            "maker": self.maker_id,
            "tags": sorted(self.tags),
            "upvotes": self.upvote_count,
            "createdAt": isoformat(self.created_at),
        }


@dataclass(frozen=True)
class Category:
    """One record type for categories and subcategories (level 0 or 1)."""
    id: str
    name: str
    slug: str = ""
    parent_category: Optional[str] = None
    level: int = 0

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Category":
        parent = _pick(data, "parent_category", "parentCategory")
        return cls(
            id=str(_pick(data, "id", "_id")),
            name=str(_pick(data, "name", default="")),
            slug=str(_pick(data, "slug", default="")),
            parent_category=str(parent) if parent else None,
            level=int(_pick(data, "level", default=1 if parent else 0)),
        )


# =============================================================================
# User profile
# =============================================================================

@dataclass
class UserProfile:
    """
    Materialized view over a user's interactions.

    Affinities are derived and replaced on every rebuild; overrides,
    settings, disabled strategies and dismissed products are user-owned and
    survive rebuilds.
    """
    user_id: str
    category_affinities: Dict[str, float] = field(default_factory=dict)
    tag_affinities: Dict[str, float] = field(default_factory=dict)
    category_overrides: Dict[str, float] = field(default_factory=dict)
    tag_overrides: Dict[str, float] = field(default_factory=dict)
    disabled_strategies: Set[str] = field(default_factory=set)
    dismissed_products: Set[str] = field(default_factory=set)
    personalization_enabled: bool = True
    diversification_weight: float = DEFAULT_PROFILE_BOUNDS.DEFAULT_DIVERSIFICATION
    max_recommendations: int = DEFAULT_PROFILE_BOUNDS.DEFAULT_MAX_RECOMMENDATIONS
    last_rebuilt: Optional[datetime] = None
    interaction_count: int = 0
    degraded: bool = False

    @property
    def has_affinities(self) -> bool:
        return bool(self.category_affinities or self.tag_affinities)

    def is_fresh(self, now: datetime, fresh_seconds: float) -> bool:
        if self.last_rebuilt is None:
            return False
        return (now - self.last_rebuilt).total_seconds() < fresh_seconds

    def copy(self, **changes: Any) -> "UserProfile":
        clone = replace(
            self,
            category_affinities=dict(self.category_affinities),
            tag_affinities=dict(self.tag_affinities),
            category_overrides=dict(self.category_overrides),
            tag_overrides=dict(self.tag_overrides),
            disabled_strategies=set(self.disabled_strategies),
            dismissed_products=set(self.dismissed_products),
        )
        for key, value in changes.items():
            setattr(clone, key, value)
        return clone

    def preferences(self) -> Dict[str, Any]:
        """User-editable part, as served by the preferences endpoints."""
        return {
            "categoryWeights": dict(self.category_overrides),
            "tagWeights": dict(self.tag_overrides),
            "disabledStrategies": sorted(self.disabled_strategies),
            "personalizationEnabled": self.personalization_enabled,
            "diversificationWeight": self.diversification_weight,
            "maxRecommendations": self.max_recommendations,
            "dismissedCount": len(self.dismissed_products),
            "lastRebuilt": isoformat(self.last_rebuilt),
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "category_affinities": self.category_affinities,
            "tag_affinities": self.tag_affinities,
            "category_overrides": self.category_overrides,
            "tag_overrides": self.tag_overrides,
            "disabled_strategies": sorted(self.disabled_strategies),
            "dismissed_products": sorted(self.dismissed_products),
            "personalization_enabled": self.personalization_enabled,
            "diversification_weight": self.diversification_weight,
            "max_recommendations": self.max_recommendations,
            "last_rebuilt": isoformat(self.last_rebuilt),
            "interaction_count": self.interaction_count,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "UserProfile":
        last = data.get("last_rebuilt")
        return cls(
            user_id=str(data["user_id"]),
            category_affinities={k: float(v) for k, v in (data.get("category_affinities") or {}).items()},
            tag_affinities={k: float(v) for k, v in (data.get("tag_affinities") or {}).items()},
            category_overrides={k: float(v) for k, v in (data.get("category_overrides") or {}).items()},
            tag_overrides={k: float(v) for k, v in (data.get("tag_overrides") or {}).items()},
            disabled_strategies=set(data.get("disabled_strategies") or []),
            dismissed_products=set(data.get("dismissed_products") or []),
            personalization_enabled=bool(data.get("personalization_enabled", True)),
            diversification_weight=float(
                data.get("diversification_weight", DEFAULT_PROFILE_BOUNDS.DEFAULT_DIVERSIFICATION)
            ),
            max_recommendations=int(
                data.get("max_recommendations", DEFAULT_PROFILE_BOUNDS.DEFAULT_MAX_RECOMMENDATIONS)
            ),
            last_rebuilt=parse_iso8601(last) if last else None,
            interaction_count=int(data.get("interaction_count", 0)),
        )


# =============================================================================
# Candidates and feed pages
# =============================================================================

class Candidate(BaseModel):
    """
    A product proposed for a feed.

    Component scores are each in [0, 1]:
    - relevance: match against the seed, filter or user profile
    - recency: 1 / (1 + age_days / 7)
    - popularity: engagement relative to the candidate pool
    """
    model_config = ConfigDict(arbitrary_types_allowed=True)

    product_id: str
    score: float
    explanation: str
    strategy: str
    components: Dict[str, float] = Field(
        default_factory=lambda: {"relevance": 0.0, "recency": 0.0, "popularity": 0.0}
    )
    sources: List[str] = Field(default_factory=list)
    product: Optional[Product] = Field(default=None, exclude=True)

    def to_response(self, position: int) -> Dict[str, Any]:
        item: Dict[str, Any] = self.product.summary() if self.product else {"id": self.product_id}
        item.update({
            "position": position,
            "score": round(self.score, 6),
            "strategy": self.strategy,
            "explanation": self.explanation,
            "scores": {k: round(v, 6) for k, v in self.components.items()},
        })
        if len(self.sources) > 1:
            item["sources"] = list(self.sources)
        return item

    def to_cache(self) -> Dict[str, Any]:
        return self.model_dump(exclude={"product"})


@dataclass
class FeedPage:
    """One window of a ranked feed plus how it was produced."""
    items: List[Candidate]
    total: int
    offset: int
    limit: int
    strategy: str
    generated_at: datetime = field(default_factory=utcnow)
    partial: bool = False
    degraded_strategies: List[str] = field(default_factory=list)
    personalization: Optional[str] = None
    blend: Optional[str] = None
    fallback: Optional[str] = None
    cached: bool = False

    def pagination(self) -> Dict[str, Any]:
        limit = max(1, self.limit)
        pages = (self.total + limit - 1) // limit if self.total else 0
        return {
            "total": self.total,
            "page": self.offset // limit + 1,
            "pages": pages,
            "hasNextPage": self.offset + limit < self.total,
            "hasPrevPage": self.offset > 0,
            "limit": self.limit,
        }

    def meta(self) -> Dict[str, Any]:
        meta: Dict[str, Any] = {
            "strategy": self.strategy,
            "generatedAt": isoformat(self.generated_at),
        }
        if self.blend:
            meta["blend"] = self.blend
        if self.partial:
            meta["partial"] = True
        if self.degraded_strategies:
            meta["degradedStrategies"] = list(self.degraded_strategies)
        if self.personalization:
            meta["personalization"] = self.personalization
        if self.fallback:
            meta["fallback"] = self.fallback
        if self.cached:
            meta["cached"] = True
        return meta

    def to_response(self) -> Dict[str, Any]:
        return {
            "success": True,
            "data": [c.to_response(self.offset + i) for i, c in enumerate(self.items)],
            "pagination": self.pagination(),
            "meta": self.meta(),
        }

    def to_cache(self) -> Dict[str, Any]:
        return {
            "items": [c.to_cache() for c in self.items],
            "total": self.total,
            "offset": self.offset,
            "limit": self.limit,
            "strategy": self.strategy,
            "generated_at": isoformat(self.generated_at),
            "partial": self.partial,
            "degraded_strategies": self.degraded_strategies,
            "personalization": self.personalization,
            "fallback": self.fallback,
            "blend": self.blend,
        }

    @classmethod
    def from_cache(cls, data: Mapping[str, Any]) -> "FeedPage":
        return cls(
            items=[Candidate.model_validate(item) for item in data.get("items", [])],
            total=int(data.get("total", 0)),
            offset=int(data.get("offset", 0)),
            limit=int(data.get("limit", 0)),
            strategy=str(data.get("strategy", "")),
            generated_at=parse_iso8601(data.get("generated_at")) or utcnow(),
            partial=bool(data.get("partial", False)),
            degraded_strategies=list(data.get("degraded_strategies") or []),
            personalization=data.get("personalization"),
            fallback=data.get("fallback"),
            blend=data.get("blend"),
            cached=True,
        )

    def product_ids(self) -> Tuple[str, ...]:
        return tuple(c.product_id for c in self.items)


# =============================================================================
# API Request Models
# =============================================================================

class InteractionRequest(BaseModel):
    """
    Body of POST /recs/interaction.

    Field values are checked by the ingress, not here, so that the same
    rules apply to HTTP and CLI callers.
    """
    model_config = ConfigDict(populate_by_name=True)

    product_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("productId", "product_id"))
    kind: Optional[Any] = Field(
        default=None, validation_alias=AliasChoices("type", "interactionType", "kind")
    )
    strategy: Optional[Any] = Field(
        default=None, validation_alias=AliasChoices("recommendationType", "strategy")
    )
    position: Optional[Any] = None
    metadata: Optional[Any] = None
    timestamp: Optional[Any] = None


class FeedbackRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    product_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("productId", "product_id"))
    positive: bool = False
    negative: bool = False
    reason: Optional[str] = Field(default=None, max_length=200)
    strategy: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("recommendationType", "strategy")
    )


class DismissRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    product_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("productId", "product_id"))
    reason: Optional[str] = Field(default=None, max_length=200)
    strategy: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("recommendationType", "strategy")
    )


class PreferencesUpdate(BaseModel):
    """Body of PUT /recs/preferences. Omitted fields are left unchanged."""
    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel)

    category_weights: Optional[Dict[str, float]] = None
    tag_weights: Optional[Dict[str, float]] = None
    disabled_strategies: Optional[List[str]] = None
    personalization_enabled: Optional[bool] = None
    diversification_weight: Optional[float] = Field(
        default=None,
        ge=DEFAULT_PROFILE_BOUNDS.MIN_DIVERSIFICATION,
        le=DEFAULT_PROFILE_BOUNDS.MAX_DIVERSIFICATION,
    )
    max_recommendations: Optional[int] = Field(
        default=None,
        ge=DEFAULT_PROFILE_BOUNDS.MIN_RECOMMENDATIONS,
        le=DEFAULT_PROFILE_BOUNDS.MAX_RECOMMENDATIONS,
    )


class CatalogEventRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    product_id: str = Field(validation_alias=AliasChoices("productId", "product_id"))
    event: CatalogEventType
