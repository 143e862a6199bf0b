"""
FastAPI Application Factory.

This module provides a clean, configurable FastAPI application setup.

Usage:
    # Development
    uvicorn api.app:create_app --factory --reload

    # Production
    uvicorn api.app:app --host 0.0.0.0 --port 8080 --workers 4

    # Or use the convenience function
    from api.app import create_app
    app = create_app()
"""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware

from config.settings import get_settings
from core.errors import register_exception_handlers
from core.logging import configure_logging, get_logger
from core.middleware import ClientDisconnected, RequestTracingMiddleware
from recs.engine import RecommendationEngine, get_engine


logger = get_logger(__name__)


async def _retention_sweeper(engine: RecommendationEngine, interval_seconds: int) -> None:
    """Purge interactions past the retention window, forever."""
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await engine.purge_expired()
        except Exception as e:
            logger.warning("Retention sweep failed", error=str(e))


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan handler.

    Runs on startup:
    - Initialize logging
    - Build the recommendation engine and check its backends
    - Start the retention sweeper

    Runs on shutdown:
    - Stop the sweeper, flush background work, close connections
    """
    settings = get_settings()

    # Configure logging based on environment
    configure_logging(
        json_logs=settings.is_production,
        log_level="DEBUG" if settings.debug else "INFO",
    )

    logger.info(
        "Starting recommendation API",
        environment=settings.environment,
        port=settings.port,
    )

    engine = get_engine()
    await engine.startup()
    sweeper = asyncio.create_task(
        _retention_sweeper(engine, settings.retention_sweep_interval_seconds)
    )

    yield  # Application is running

    # Shutdown: Clean up resources
    sweeper.cancel()
    try:
        await sweeper
    except asyncio.CancelledError:
        pass
    await engine.shutdown()
    logger.info("Shutting down recommendation API")


async def _client_disconnected(request: Request, exc: ClientDisconnected) -> Response:
    # Nobody is listening; 499 only shows up in access logs
    return Response(status_code=499)


def create_app() -> FastAPI:
    """
    Create and configure the FastAPI application.

    Returns:
        Configured FastAPI application
    """
    settings = get_settings()

    app = FastAPI(
        title="Product Recommendation API",
        description="""
        Recommendation and interaction engine for a product discovery community.

        ## Features

        - **Feeds**: trending, new, similar, category, maker, tag, interests,
          collaborative and history strategies, plus blended feeds
        - **Interactions**: scored impressions, views, clicks, upvotes, bookmarks,
          dismissals and explicit feedback
        - **Profiles**: decayed category and tag affinities with user overrides

        ## Main Endpoints

        - `/recs/*` - Feeds, interactions, preferences and admin tools

        ## Health Checks

        - `/health` - Basic health check
        - `/health/detailed` - Detailed health with dependency status
        - `/ready` - Kubernetes readiness probe
        - `/live` - Kubernetes liveness probe
        """,
        version="1.0.0",
        lifespan=lifespan,
        docs_url="/docs" if settings.is_development else None,
        redoc_url="/redoc" if settings.is_development else None,
    )

    # =========================================================================
    # Middleware (order matters - first added = outermost)
    # =========================================================================

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Request tracing (adds X-Request-ID, logs timing)
    app.add_middleware(RequestTracingMiddleware)

    # =========================================================================
    # Errors
    # =========================================================================

    register_exception_handlers(app)
    app.add_exception_handler(ClientDisconnected, _client_disconnected)

    # =========================================================================
    # Routes
    # =========================================================================

    # Health checks
    from api.routes.health import router as health_router
    app.include_router(health_router, tags=["Health"])

    # Recommendation feeds, interactions, preferences and admin
    from api.routes.recs import router as recs_router
    app.include_router(recs_router)

    return app


# Create default app instance for uvicorn
# Usage: uvicorn api.app:app
app = create_app()


# Alternative: Factory function for gunicorn
# Usage: gunicorn -k uvicorn.workers.UvicornWorker api.app:create_app()
def get_app() -> FastAPI:
    """Get the application instance (for ASGI servers)."""
    return app


# Run with: python -m api.app
if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(app, host=settings.host, port=settings.port)
