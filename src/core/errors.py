"""
Error taxonomy and HTTP error envelope.

Every failure the engine reports to a caller is a RecsError subclass with
a stable ``kind``. The API layer turns them into

    {"success": false, "error": {"kind", "message", "details"?, "errorId"}}

and the CLI turns them into exit codes.
"""

import uuid
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from core.logging import get_logger


logger = get_logger(__name__)


class RecsError(Exception):
    """Base class for errors surfaced to callers."""

    kind: str = "Internal"
    status_code: int = 500
    exit_code: int = 5

    def __init__(self, message: str = "", details: Optional[Dict[str, Any]] = None):
        super().__init__(message or self.kind)
        self.message = message or self.kind
        self.details = details


class ValidationError(RecsError):
    kind = "ValidationError"
    status_code = 400
    exit_code = 2


class Unauthorized(RecsError):
    kind = "Unauthorized"
    status_code = 401


class Forbidden(RecsError):
    kind = "Unauthorized"
    status_code = 403


class NotFound(RecsError):
    kind = "NotFound"
    status_code = 404
    exit_code = 3


class Conflict(RecsError):
    kind = "Conflict"
    status_code = 409


class RateLimited(RecsError):
    kind = "RateLimited"
    status_code = 429
    exit_code = 4


class DependencyUnavailable(RecsError):
    kind = "DependencyUnavailable"
    status_code = 503


class BudgetExceeded(RecsError):
    kind = "BudgetExceeded"
    status_code = 504


class InternalError(RecsError):
    kind = "Internal"
    status_code = 500


def new_error_id() -> str:
    """Correlation id safe to show to users and quote to support."""
    return f"err_{uuid.uuid4().hex[:12]}"


def error_body(kind: str, message: str, error_id: str,
               details: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    error: Dict[str, Any] = {"kind": kind, "message": message, "errorId": error_id}
    if details:
        error["details"] = details
    return {"success": False, "error": error}


def exit_code_for(exc: BaseException) -> int:
    """CLI exit code: 2 validation, 3 not found, 4 rate limited, 5 otherwise."""
    if isinstance(exc, RecsError):
        return exc.exit_code
    return 5


# =============================================================================
# FastAPI handlers
# =============================================================================

async def _handle_recs_error(request: Request, exc: RecsError) -> JSONResponse:
    error_id = new_error_id()
    log = logger.error if exc.status_code >= 500 else logger.info
    log(
        "Request failed",
        error_id=error_id,
        kind=exc.kind,
        message=exc.message,
        path=request.url.path,
    )
    headers = {"Retry-After": "60"} if isinstance(exc, RateLimited) else None
    return JSONResponse(
        status_code=exc.status_code,
        content=error_body(exc.kind, exc.message, error_id, exc.details),
        headers=headers,
    )


async def _handle_request_validation(request: Request, exc: RequestValidationError) -> JSONResponse:
    error_id = new_error_id()
    problems = [
        {"field": ".".join(str(p) for p in err.get("loc", ())), "message": err.get("msg", "")}
        for err in exc.errors()
    ]
    logger.info("Request validation failed", error_id=error_id, problems=problems)
    return JSONResponse(
        status_code=400,
        content=error_body("ValidationError", "Invalid request parameters", error_id,
                           {"problems": problems}),
    )


async def _handle_http_exception(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    error_id = new_error_id()
    kind = {
        400: "ValidationError",
        401: "Unauthorized",
        403: "Unauthorized",
        404: "NotFound",
        409: "Conflict",
        429: "RateLimited",
        503: "DependencyUnavailable",
    }.get(exc.status_code, "Internal")
    return JSONResponse(
        status_code=exc.status_code,
        content=error_body(kind, str(exc.detail), error_id),
        headers=getattr(exc, "headers", None),
    )


async def _handle_unexpected(request: Request, exc: Exception) -> JSONResponse:
    error_id = new_error_id()
    logger.error(
        "Unhandled exception",
        error_id=error_id,
        error=str(exc),
        error_type=type(exc).__name__,
        path=request.url.path,
        exc_info=exc,
    )
    return JSONResponse(
        status_code=500,
        content=error_body("Internal", "Internal server error", error_id),
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Install the error envelope on an application."""
    app.add_exception_handler(RecsError, _handle_recs_error)
    app.add_exception_handler(RequestValidationError, _handle_request_validation)
    app.add_exception_handler(StarletteHTTPException, _handle_http_exception)
    app.add_exception_handler(Exception, _handle_unexpected)
