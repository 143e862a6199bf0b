"""
Interaction Ingress.

Single entry point for user events:

- record():    one interaction from the API or CLI, validated, rate limited
               and (for impressions) deduplicated per feed slot
- dismiss():   idempotent removal of a product from personalized feeds
- feedback():  explicit thumbs up/down adjusting the user's overrides
- record_impressions(): best-effort impression writes for a served page

The append is awaited before a receipt is returned; the profile refresh it
triggers runs in the background.
"""

import time
from collections import deque
from dataclasses import dataclass
from threading import Lock
from typing import Any, Deque, Dict, Mapping, Optional, Tuple

from config.constants import DEFAULT_PROFILE_BOUNDS, SIGNIFICANT_KINDS, ProfileBounds
from core.auth import Identity
from core.errors import Conflict, NotFound, RateLimited, ValidationError
from core.logging import get_logger
from core.utils import is_object_id, isoformat, parse_iso8601
from recs.cache import RecommendationCache
from recs.interaction_log import InteractionLog
from recs.models import (
    DismissRequest,
    FeedbackRequest,
    FeedPage,
    InteractionKind,
    InteractionReceipt,
    InteractionRequest,
    Strategy,
    UserProfile,
)
from recs.profile import ProfileService, scale_override


logger = get_logger(__name__)

NOT_INTERESTED = "not_interested"


# =============================================================================
# Rate limiting and impression dedup
# =============================================================================

class SlidingWindowRateLimiter:
    """
    Per-key sliding window: at most ``limit`` events in ``window_seconds``.

    In-memory; each API worker enforces its own window.
    """

    def __init__(self, limit: int = 60, window_seconds: float = 60.0, clock=time.monotonic):
        self.limit = limit
        self.window = window_seconds
        self._clock = clock
        self._events: Dict[str, Deque[float]] = {}
        self._next_sweep = 0.0
        self._lock = Lock()

    def hit(self, key: str) -> None:
        """
        Count one event for ``key``.

        Raises:
            RateLimited: The key already used its allowance in the window.
        """
        now = self._clock()
        with self._lock:
            if now >= self._next_sweep:
                self._sweep(now)
            events = self._events.setdefault(key, deque())
            while events and events[0] <= now - self.window:
                events.popleft()
            if len(events) >= self.limit:
                raise RateLimited(
                    "Too many interactions, slow down",
                    {"limit": self.limit, "windowSeconds": int(self.window)},
                )
            events.append(now)

    def _sweep(self, now: float) -> None:
        # Keys with no event left in the window are forgotten
        cutoff = now - self.window
        for key in list(self._events):
            events = self._events[key]
            while events and events[0] <= cutoff:
                events.popleft()
            if not events:
                del self._events[key]
        self._next_sweep = now + self.window

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            self._sweep(self._clock())
            return {"tracked_keys": len(self._events), "limit_per_window": self.limit}


class ImpressionDeduplicator:
    """Remembers (user, product, slot) impressions for ``window_seconds``."""

    def __init__(self, window_seconds: float = 30.0, clock=time.monotonic):
        self.window = window_seconds
        self._clock = clock
        self._seen: Dict[Tuple[str, str, Optional[int]], float] = {}
        self._lock = Lock()

    def _prune(self, now: float) -> None:
        expired = [key for key, expires_at in self._seen.items() if expires_at <= now]
        for key in expired:
            del self._seen[key]

    def claim(self, user_key: str, product_id: str, position: Optional[int]) -> bool:
        """True the first time a slot is seen inside the window."""
        now = self._clock()
        key = (user_key, product_id, position)
        with self._lock:
            if len(self._seen) > 10_000:
                self._prune(now)
            expires_at = self._seen.get(key)
            if expires_at is not None and expires_at > now:
                return False
            self._seen[key] = now + self.window
            return True

    def release(self, user_key: str, product_id: str, position: Optional[int]) -> None:
        """Forget a claimed slot whose write never landed."""
        with self._lock:
            self._seen.pop((user_key, product_id, position), None)

    def get_stats(self) -> Dict[str, Any]:
        return {"tracked_slots": len(self._seen), "window_seconds": self.window}


# =============================================================================
# Validation
# =============================================================================

@dataclass(frozen=True)
class ValidatedInteraction:
    product_id: str
    kind: InteractionKind
    strategy: Strategy
    position: Optional[int]
    metadata: Dict[str, Any]


def _product_id(value: Any) -> str:
    if value is None or value == "":
        raise ValidationError("productId is required", {"field": "productId"})
    if not is_object_id(value):
        raise ValidationError("productId must be a 24-character hex id", {"field": "productId", "value": str(value)[:64]})
    return value


def validate_interaction(request: InteractionRequest) -> ValidatedInteraction:
    """
    Check one interaction request.

    Unknown kinds and strategies are coerced to ``unknown``; values of the
    wrong type, bad ids, negative positions and unparseable timestamps are
    rejected.
    """
    product_id = _product_id(request.product_id)

    if request.kind is None or request.kind == "":
        raise ValidationError("Interaction type is required", {"field": "type"})
    if not isinstance(request.kind, str):
        raise ValidationError("Interaction type must be a string", {"field": "type"})
    kind = InteractionKind.coerce(request.kind)

    if request.strategy is not None and not isinstance(request.strategy, str):
        raise ValidationError("recommendationType must be a string", {"field": "recommendationType"})
    strategy = Strategy.coerce(request.strategy)

    if request.metadata is not None and not isinstance(request.metadata, Mapping):
        raise ValidationError("metadata must be an object", {"field": "metadata"})
    metadata = dict(request.metadata or {})

    position = request.position
    if position is None and "position" in metadata:
        position = metadata["position"]
    if position is not None:
        if isinstance(position, bool) or not isinstance(position, int):
            raise ValidationError("position must be an integer", {"field": "position"})
        if position < 0:
            raise ValidationError("position must be >= 0", {"field": "position"})

    if request.timestamp is not None:
        client_time = parse_iso8601(request.timestamp)
        if client_time is None:
            raise ValidationError("timestamp must be ISO-8601", {"field": "timestamp"})
        # Stored order always follows server time; the client's clock is kept for reference
        metadata["clientTimestamp"] = isoformat(client_time)

    return ValidatedInteraction(
        product_id=product_id,
        kind=kind,
        strategy=strategy,
        position=position,
        metadata=metadata,
    )


# =============================================================================
# Interaction Ingress (Main Interface)
# =============================================================================

class InteractionIngress:
    """
    Validates, scores and appends user events.

    Usage:
        ingress = InteractionIngress(log, profiles, cache, catalog)
        receipt = await ingress.record(identity, InteractionRequest(...))
    """

    def __init__(
        self,
        log: InteractionLog,
        profiles: ProfileService,
        cache: RecommendationCache,
        catalog: Any,
        rate_limiter: Optional[SlidingWindowRateLimiter] = None,
        deduplicator: Optional[ImpressionDeduplicator] = None,
        bounds: ProfileBounds = DEFAULT_PROFILE_BOUNDS,
    ):
        self.log = log
        self.profiles = profiles
        self.cache = cache
        self.catalog = catalog
        self.rate_limiter = rate_limiter or SlidingWindowRateLimiter()
        self.deduplicator = deduplicator or ImpressionDeduplicator()
        self.bounds = bounds

    @staticmethod
    def _require_key(identity: Identity) -> str:
        if identity.key is None:
            raise ValidationError("A user or client id is required", {"field": "user"})
        return identity.key

    async def _after_append(self, user_key: str, kind: InteractionKind) -> None:
        if kind.value in SIGNIFICANT_KINDS or kind == InteractionKind.FEEDBACK:
            await self.cache.invalidate_user(user_key)
        if kind != InteractionKind.IMPRESSION:
            self.profiles.schedule_refresh(user_key)

    async def record(self, identity: Identity, request: InteractionRequest) -> InteractionReceipt:
        """
        Record one interaction.

        Raises:
            ValidationError: Bad or missing field (nothing is written).
            RateLimited: More than the per-minute allowance for this user.
            Conflict: Same impression slot already recorded in the dedup window.
        """
        user_key = self._require_key(identity)
        event = validate_interaction(request)
        self.rate_limiter.hit(user_key)

        if event.kind == InteractionKind.IMPRESSION:
            if not self.deduplicator.claim(user_key, event.product_id, event.position):
                raise Conflict(
                    "Impression already recorded for this slot",
                    {"productId": event.product_id, "position": event.position},
                )

        try:
            record = await self.log.append(
                user_key,
                event.product_id,
                event.kind,
                strategy=event.strategy,
                position=event.position,
                metadata=event.metadata,
                user_id=identity.user_id,
                client_id=identity.client_id,
            )
        except Exception:
            # A failed write must not block the client's retry
            if event.kind == InteractionKind.IMPRESSION:
                self.deduplicator.release(user_key, event.product_id, event.position)
            raise
        await self._after_append(user_key, event.kind)
        return InteractionReceipt(record.id, record.quality, record.timestamp)

    async def dismiss(self, identity: Identity, request: DismissRequest) -> InteractionReceipt:
        """Hide a product from this user's personalized feeds. Idempotent."""
        user_key = self._require_key(identity)
        product_id = _product_id(request.product_id)
        self.rate_limiter.hit(user_key)

        newly_dismissed = []

        def mutate(profile: UserProfile) -> None:
            if product_id not in profile.dismissed_products:
                profile.dismissed_products.add(product_id)
                newly_dismissed.append(product_id)

        await self.profiles.update(user_key, mutate)
        if not newly_dismissed:
            return InteractionReceipt(None, 0.0, self.log.now(), status="already_dismissed")

        metadata = {"reason": request.reason} if request.reason else {}
        record = await self.log.append(
            user_key,
            product_id,
            InteractionKind.DISMISS,
            strategy=Strategy.coerce(request.strategy),
            metadata=metadata,
            user_id=identity.user_id,
            client_id=identity.client_id,
        )
        await self.cache.invalidate_user(user_key)
        logger.info("Product dismissed", user_key=user_key, product_id=product_id)
        return InteractionReceipt(record.id, record.quality, record.timestamp)

    async def feedback(self, identity: Identity, request: FeedbackRequest) -> InteractionReceipt:
        """
        Explicit feedback on a product.

        Positive feedback raises the user's overrides for the product's
        categories and tags, negative feedback lowers them; a negative with
        reason ``not_interested`` also dismisses the product.
        """
        user_key = self._require_key(identity)
        product_id = _product_id(request.product_id)
        if request.positive == request.negative:
            raise ValidationError("Exactly one of positive or negative must be true",
                                  {"fields": ["positive", "negative"]})

        product = await self.catalog.get_product(product_id)
        if product is None:
            raise NotFound("Product not found", {"productId": product_id})
        self.rate_limiter.hit(user_key)

        tree = await self.catalog.category_tree()
        categories = tree.lineage(product.category_id)
        b = self.bounds
        factor = b.FEEDBACK_POSITIVE_FACTOR if request.positive else b.FEEDBACK_NEGATIVE_FACTOR
        dismiss = request.negative and request.reason == NOT_INTERESTED

        def mutate(profile: UserProfile) -> None:
            profile.category_overrides = scale_override(
                profile.category_overrides, categories, factor, b.FEEDBACK_MIN_WEIGHT, b.FEEDBACK_MAX_WEIGHT
            )
            profile.tag_overrides = scale_override(
                profile.tag_overrides, product.tags, factor, b.FEEDBACK_MIN_WEIGHT, b.FEEDBACK_MAX_WEIGHT
            )
            if dismiss:
                profile.dismissed_products.add(product_id)
            # Overrides only take effect through a rebuild
            profile.last_rebuilt = None

        await self.profiles.update(user_key, mutate)

        metadata = {"positive": request.positive, "negative": request.negative}
        if request.reason:
            metadata["reason"] = request.reason
        record = await self.log.append(
            user_key,
            product_id,
            InteractionKind.FEEDBACK,
            strategy=Strategy.coerce(request.strategy),
            metadata=metadata,
            user_id=identity.user_id,
            client_id=identity.client_id,
        )
        await self._after_append(user_key, InteractionKind.FEEDBACK)
        logger.info(
            "Feedback recorded",
            user_key=user_key,
            product_id=product_id,
            positive=request.positive,
            dismissed=dismiss,
        )
        return InteractionReceipt(record.id, record.quality, record.timestamp)

    async def record_impressions(self, identity: Identity, page: FeedPage) -> int:
        """
        Write one impression per served item, skipping slots already seen.

        Not rate limited. Errors propagate to the caller, which treats the
        whole write as best-effort.
        """
        user_key = identity.key
        if user_key is None or not page.items:
            return 0
        strategy = Strategy.coerce(page.strategy)
        written = 0
        for index, candidate in enumerate(page.items):
            position = page.offset + index
            if not self.deduplicator.claim(user_key, candidate.product_id, position):
                continue
            try:
                await self.log.append(
                    user_key,
                    candidate.product_id,
                    InteractionKind.IMPRESSION,
                    strategy=strategy,
                    position=position,
                    metadata={"source": "feed", "position": position, "scoreAtRender": round(candidate.score, 6)},
                    user_id=identity.user_id,
                    client_id=identity.client_id,
                )
            except Exception:
                self.deduplicator.release(user_key, candidate.product_id, position)
                raise
            written += 1
        return written

    def get_stats(self) -> Dict[str, Any]:
        return {
            "rate_limiter": self.rate_limiter.get_stats(),
            "impression_dedup": self.deduplicator.get_stats(),
        }
