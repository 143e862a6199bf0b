"""
Health check endpoints.

Provides endpoints for monitoring application health and status.
"""

from typing import Any, Dict

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from config.settings import get_settings
from recs.engine import get_engine


router = APIRouter(tags=["Health"])


@router.get("/health")
async def health_check() -> Dict[str, Any]:
    """
    Basic health check endpoint.

    Returns:
        Health status with basic info
    """
    return {
        "status": "healthy",
        "service": "recs-engine",
    }


@router.get("/health/detailed")
async def detailed_health_check() -> Dict[str, Any]:
    """
    Detailed health check with dependency status.

    Checks:
    - Catalog reachable
    - Interaction log readable
    - Profile store and recommendation cache reachable

    Returns:
        Detailed health status
    """
    settings = get_settings()
    engine = get_engine()
    checks = await engine.health()
    healthy = all(check["status"] == "up" for check in checks.values())

    return {
        "status": "healthy" if healthy else "degraded",
        "service": "recs-engine",
        "environment": settings.environment,
        "checks": {"config": "ok", **checks},
        "stats": engine.get_stats(),
    }


@router.get("/ready")
async def readiness_check():
    """
    Kubernetes-style readiness probe.

    Returns 200 once the catalog answers; the cache and profile store are
    optional for serving.
    """
    checks = await get_engine().health()
    if checks["catalog"]["status"] != "up":
        return JSONResponse(status_code=503, content={"status": "not_ready", "reason": "catalog_unavailable"})
    return {"status": "ready"}


@router.get("/live")
async def liveness_check() -> Dict[str, str]:
    """
    Kubernetes-style liveness probe.

    Returns 200 if the service is alive.
    """
    return {"status": "alive"}
