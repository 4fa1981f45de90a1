"""Error handling for the feed HTTP surface.

Every error is a short ``text/html`` body and every response closes the
connection, matching what browsers and camera viewers expect from a plain
MJPEG server.

Error Categories:
    - FEED_NOT_FOUND / UNKNOWN_ACTION: 404
    - INVALID_REQUEST: 400 (unparseable path or query values)
    - UNAUTHORIZED: 401
    - PROCESS_LAUNCH_FAILED: 502
    - INTERNAL_ERROR: 500

Logging Strategy:
    DEBUG - Validation details
    INFO  - Client errors (4xx)
    WARN  - Validation failures
    ERROR - Server errors (5xx), unexpected exceptions
"""
from __future__ import annotations

import logging
from enum import Enum
from typing import Optional

from fastapi import HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import HTMLResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from ..middleware.request_id import get_request_id

logger = logging.getLogger(__name__)


# ============================================================================
# Error Codes
# ============================================================================

class ErrorCode(str, Enum):
    """Error messages sent to clients, keyed by condition."""

    FEED_NOT_FOUND = "Feed not found"
    UNKNOWN_ACTION = "Unknown action"
    INVALID_REQUEST = "Invalid request"
    UNAUTHORIZED = "Invalid username or password."
    PROCESS_LAUNCH_FAILED = "Failed to start feed process"
    INTERNAL_ERROR = "Internal server error"


# ============================================================================
# Error Raisers
# ============================================================================

def raise_feed_not_found(feed: str) -> None:
    logger.debug(f"Feed not found: {feed}")
    raise HTTPException(status.HTTP_404_NOT_FOUND, detail=ErrorCode.FEED_NOT_FOUND.value)


def raise_unknown_action(feed: str, action: str) -> None:
    logger.debug(f"Unknown action for feed {feed}: {action!r}")
    raise HTTPException(status.HTTP_404_NOT_FOUND, detail=ErrorCode.UNKNOWN_ACTION.value)


def raise_launch_failed(feed: str, reason: Exception) -> None:
    logger.error(f"[{feed}] Feed process launch failed: {reason}")
    raise HTTPException(status.HTTP_502_BAD_GATEWAY, detail=ErrorCode.PROCESS_LAUNCH_FAILED.value)


# ============================================================================
# Response Factory
# ============================================================================

def error_response(
    status_code: int,
    message: str,
    headers: Optional[dict[str, str]] = None
) -> HTMLResponse:
    """Plain HTML error response with ``Connection: close``."""
    response_headers = dict(headers or {})
    response_headers["Connection"] = "close"
    return HTMLResponse(content=message, status_code=status_code, headers=response_headers)


# ============================================================================
# Global Exception Handlers
# ============================================================================

async def validation_exception_handler(
    request: Request,
    exc: RequestValidationError
) -> HTMLResponse:
    """Malformed path or query values (e.g. non-numeric max_fps) → 400."""
    logger.warning(
        f"Validation failed: {request.method} {request.url.path} "
        f"({len(exc.errors())} error(s))"
    )
    logger.debug(f"Validation errors: {exc.errors()}")
    return error_response(status.HTTP_400_BAD_REQUEST, ErrorCode.INVALID_REQUEST.value)


async def http_exception_handler(
    request: Request,
    exc: StarletteHTTPException
) -> HTMLResponse:
    """Render HTTPException as HTML, keeping its headers."""
    if exc.status_code >= 500:
        logger.error(
            f"Server error: {request.method} {request.url.path} "
            f"-> {exc.status_code}: {exc.detail}"
        )
    else:
        logger.info(
            f"Client error: {request.method} {request.url.path} "
            f"-> {exc.status_code}: {exc.detail}"
        )

    message = str(exc.detail) if exc.detail else "An error occurred"
    return error_response(exc.status_code, message, getattr(exc, "headers", None))


async def general_exception_handler(
    request: Request,
    exc: Exception
) -> HTMLResponse:
    """Log unexpected exceptions with stack trace; the client gets a generic 500."""
    logger.error(
        f"Unhandled exception: {request.method} {request.url.path} "
        f"-> {type(exc).__name__}: {exc}",
        exc_info=exc,
        extra={"request_id": get_request_id(request)}
    )
    return error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, ErrorCode.INTERNAL_ERROR.value)
