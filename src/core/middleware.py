"""
FastAPI middleware and request helpers.

- RequestTracingMiddleware: request ids, timing, log context binding
- run_cancellable: runs engine work and cancels it when the client goes away
"""

import asyncio
import time
import uuid
from typing import Awaitable, Callable, TypeVar

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from core.logging import bind_context, get_logger, unbind_context


logger = get_logger(__name__)

T = TypeVar("T")

DISCONNECT_POLL_SECONDS = 0.05

_REQUEST_KEYS = ("request_id", "method", "path", "user_id")


class RequestTracingMiddleware(BaseHTTPMiddleware):
    """
    Middleware that adds request tracing and logging.

    Binds request_id/method/path for every log line emitted while the
    request is handled, logs start and completion with timing, and echoes
    the id back in ``X-Request-ID``.
    """

    async def dispatch(
        self, request: Request, call_next: Callable
    ) -> Response:
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4())[:8])

        bind_context(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
        )

        start_time = time.perf_counter()

        logger.debug(
            "Request started",
            query_params=dict(request.query_params) if request.query_params else None,
        )

        try:
            response = await call_next(request)

            duration_ms = (time.perf_counter() - start_time) * 1000
            logger.info(
                "Request completed",
                status_code=response.status_code,
                duration_ms=round(duration_ms, 2),
            )

            response.headers["X-Request-ID"] = request_id
            response.headers["X-Response-Time"] = f"{duration_ms:.2f}ms"
            return response

        except Exception as e:
            duration_ms = (time.perf_counter() - start_time) * 1000
            logger.error(
                "Request failed",
                error=str(e),
                error_type=type(e).__name__,
                duration_ms=round(duration_ms, 2),
            )
            raise

        finally:
            # Keep process-wide bindings such as ``service``
            unbind_context(*_REQUEST_KEYS)


class ClientDisconnected(Exception):
    """The HTTP client went away before the response was ready."""


async def run_cancellable(
    request: Request,
    work: Awaitable[T],
    poll_interval: float = DISCONNECT_POLL_SECONDS,
) -> T:
    """
    Await ``work`` while watching for client disconnect.

    The work runs in its own task; the disconnect flag is polled every
    ``poll_interval`` seconds and the task is cancelled as soon as the
    client is gone, which cancels whatever suspension point it is parked on.

    Raises:
        ClientDisconnected: If the client disconnected first.
    """
    task = asyncio.ensure_future(work)
    try:
        while True:
            done, _ = await asyncio.wait({task}, timeout=poll_interval)
            if done:
                return task.result()
            if await request.is_disconnected():
                task.cancel()
                logger.info("Client disconnected, request work cancelled")
                raise ClientDisconnected()
    except asyncio.CancelledError:
        task.cancel()
        raise
