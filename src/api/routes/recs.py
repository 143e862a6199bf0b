"""
Recommendation API Routes.

Feeds (authentication optional unless noted):
    GET  /recs/feed                    hybrid blended feed (blend=standard|trending|discovery|personalized)
    GET  /recs/trending                trending window (timeframe=7 or 7d)
    GET  /recs/new                     new arrivals
    GET  /recs/similar/{productId}     similar to a product
    GET  /recs/category/{categoryId}   category listing (includes subcategories)
    GET  /recs/maker/{makerId}         maker listing
    GET  /recs/tags?tags=a,b           tag-filtered listing
    GET  /recs/interests               personalized (trending for unknown users)
    GET  /recs/collaborative           users who liked what you liked
    GET  /recs/history                 based on your recent views (auth)

Interactions (bearer token or X-Client-Id):
    POST /recs/interaction, /recs/feedback, /recs/dismiss

Preferences (auth):
    GET/PUT /recs/preferences

Admin:
    GET  /recs/stats, POST /recs/regenerate/{userId}, POST /recs/catalog/events

Every feed responds with {success, data, pagination, meta}. Engine work
runs in a task that is cancelled when the client disconnects.
"""

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query, Request

from core.auth import (
    Identity,
    SupabaseUser,
    identified_identity,
    optional_identity,
    require_admin,
    required_identity,
)
from core.middleware import run_cancellable
from recs.engine import get_engine
from recs.models import (
    CatalogEventRequest,
    DismissRequest,
    FeedbackRequest,
    InteractionRequest,
    PreferencesUpdate,
)
from recs.service import normalize_query


router = APIRouter(prefix="/recs", tags=["Recommendations"])


# =============================================================================
# Shared query parameters
# =============================================================================

def feed_params(
    limit: Optional[int] = Query(None, description="Page size, clamped to 1..50 (default 20)"),
    offset: Optional[int] = Query(None, description="Items to skip (>= 0)"),
    sort_by: Optional[str] = Query(None, alias="sortBy", description="score | created | upvotes | trending"),
    category: Optional[str] = Query(None, description="Category id filter"),
    tags: Optional[str] = Query(None, description="Comma separated tags"),
) -> Dict[str, Any]:
    return {
        "limit": limit,
        "offset": offset,
        "sort_by": sort_by,
        "category": category,
        "tags": tags,
    }


async def _serve(request: Request, identity: Identity, strategy: str, params: Dict[str, Any],
                 **extra: Any) -> Dict[str, Any]:
    query = normalize_query(strategy, **params, **extra)
    page = await run_cancellable(request, get_engine().service.query(identity, query))
    return page.to_response()


# =============================================================================
# Feeds
# =============================================================================

@router.get("/feed", summary="Hybrid blended feed")
async def get_feed(
    request: Request,
    blend: Optional[str] = Query(None, description="standard | trending | discovery | personalized"),
    params: Dict[str, Any] = Depends(feed_params),
    identity: Identity = Depends(optional_identity),
) -> Dict[str, Any]:
    """
    Weighted blend of several strategies with category and maker diversity.

    If a strategy fails or runs out of time the feed is still returned,
    with `meta.partial=true` and the failed strategies in
    `meta.degradedStrategies`.
    """
    return await _serve(request, identity, "feed", params, blend=blend)


@router.get("/trending", summary="Trending products")
async def get_trending(
    request: Request,
    timeframe: Optional[str] = Query(None, description="Window in days, e.g. 7 or 7d (max 30)"),
    params: Dict[str, Any] = Depends(feed_params),
    identity: Identity = Depends(optional_identity),
) -> Dict[str, Any]:
    return await _serve(request, identity, "trending", params, timeframe=timeframe)


@router.get("/new", summary="New arrivals")
async def get_new(
    request: Request,
    params: Dict[str, Any] = Depends(feed_params),
    identity: Identity = Depends(optional_identity),
) -> Dict[str, Any]:
    return await _serve(request, identity, "new", params)


@router.get("/similar/{product_id}", summary="Products similar to a product")
async def get_similar(
    request: Request,
    product_id: str,
    params: Dict[str, Any] = Depends(feed_params),
    identity: Identity = Depends(optional_identity),
) -> Dict[str, Any]:
    return await _serve(request, identity, "similar", params, seed_product_id=product_id)


@router.get("/category/{category_id}", summary="Category listing")
async def get_category(
    request: Request,
    category_id: str,
    params: Dict[str, Any] = Depends(feed_params),
    identity: Identity = Depends(optional_identity),
) -> Dict[str, Any]:
    params = {**params, "category": category_id}
    return await _serve(request, identity, "category", params)


@router.get("/maker/{maker_id}", summary="Maker listing")
async def get_maker(
    request: Request,
    maker_id: str,
    params: Dict[str, Any] = Depends(feed_params),
    identity: Identity = Depends(optional_identity),
) -> Dict[str, Any]:
    return await _serve(request, identity, "maker", params, maker_id=maker_id)


@router.get("/tags", summary="Tag-filtered listing")
async def get_tags(
    request: Request,
    params: Dict[str, Any] = Depends(feed_params),
    identity: Identity = Depends(optional_identity),
) -> Dict[str, Any]:
    return await _serve(request, identity, "tag", params)


@router.get("/interests", summary="Personalized by your interests")
@router.get("/personalized", include_in_schema=False)
async def get_interests(
    request: Request,
    params: Dict[str, Any] = Depends(feed_params),
    identity: Identity = Depends(optional_identity),
) -> Dict[str, Any]:
    """Falls back to trending (`meta.personalization=fallback`) until there is a profile."""
    return await _serve(request, identity, "interests", params)


@router.get("/collaborative", summary="Liked by people like you")
async def get_collaborative(
    request: Request,
    params: Dict[str, Any] = Depends(feed_params),
    identity: Identity = Depends(optional_identity),
) -> Dict[str, Any]:
    return await _serve(request, identity, "collaborative", params)


@router.get("/history", summary="Based on your recent activity")
async def get_history(
    request: Request,
    params: Dict[str, Any] = Depends(feed_params),
    identity: Identity = Depends(required_identity),
) -> Dict[str, Any]:
    return await _serve(request, identity, "history", params)


# =============================================================================
# Interactions
# =============================================================================

@router.post("/interaction", status_code=201, summary="Record one interaction")
async def record_interaction(
    body: InteractionRequest,
    identity: Identity = Depends(identified_identity),
) -> Dict[str, Any]:
    """
    Record a user event (impression, view, click, upvote, ...).

    Unknown `type` / `recommendationType` values are stored as `unknown`.
    At most 60 events per user per minute; a repeated impression for the
    same slot within 30 seconds is rejected with 409.
    """
    receipt = await get_engine().ingress.record(identity, body)
    return {"success": True, "data": receipt.to_response()}


@router.post("/feedback", status_code=201, summary="Explicit feedback on a product")
async def record_feedback(
    body: FeedbackRequest,
    identity: Identity = Depends(identified_identity),
) -> Dict[str, Any]:
    receipt = await get_engine().ingress.feedback(identity, body)
    return {"success": True, "data": receipt.to_response()}


@router.post("/dismiss", summary="Hide a product from personalized feeds")
async def dismiss_product(
    body: DismissRequest,
    identity: Identity = Depends(identified_identity),
) -> Dict[str, Any]:
    receipt = await get_engine().ingress.dismiss(identity, body)
    return {"success": True, "data": receipt.to_response()}


# =============================================================================
# Preferences
# =============================================================================

@router.get("/preferences", summary="Read recommendation settings")
async def get_preferences(identity: Identity = Depends(required_identity)) -> Dict[str, Any]:
    data = await get_engine().service.get_preferences(identity.key)
    return {"success": True, "data": data}


@router.put("/preferences", summary="Update recommendation settings")
async def update_preferences(
    body: PreferencesUpdate,
    identity: Identity = Depends(required_identity),
) -> Dict[str, Any]:
    data = await get_engine().service.update_preferences(identity.key, body)
    return {"success": True, "data": data}


# =============================================================================
# Admin
# =============================================================================

@router.get("/stats", summary="Per-strategy interaction statistics")
async def get_stats(
    period: str = Query("7d", description="Look-back period such as 7d, 12h or 2w (max 90d)"),
    user: SupabaseUser = Depends(require_admin),
) -> Dict[str, Any]:
    return {"success": True, "data": await get_engine().service.stats(period)}


@router.post("/regenerate/{user_id}", summary="Rebuild a user's profile now")
async def regenerate_profile(
    user_id: str,
    user: SupabaseUser = Depends(require_admin),
) -> Dict[str, Any]:
    return {"success": True, "data": await get_engine().service.regenerate(user_id)}


@router.post("/catalog/events", summary="Forward a product lifecycle event")
async def catalog_event(
    body: CatalogEventRequest,
    user: SupabaseUser = Depends(require_admin),
) -> Dict[str, Any]:
    return {"success": True, "data": await get_engine().service.catalog_event(body)}
