"""Per-request ID, one-request-per-connection policy and access logging.

Every response carries ``X-Request-ID`` (the client's own value when it sent
one) and ``Connection: close``. Live streams are logged once when their
headers go out; their lifetime is logged by the viewer that serves them.

Logging Strategy:
    INFO  - Completed requests below 400
    WARN  - 4xx responses
    ERROR - 5xx responses, unhandled exceptions
"""
from __future__ import annotations

import logging
import time
import uuid
from typing import Awaitable, Callable, Final

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER: Final[str] = "X-Request-ID"


def _level_for(status: int) -> int:
    if status >= 500:
        return logging.ERROR
    if status >= 400:
        return logging.WARNING
    return logging.INFO


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Tag each request with an ID, close its connection and log the outcome."""

    async def dispatch(
        self,
        request: Request,
        call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
        request.state.request_id = request_id
        started = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception:
            logger.exception(
                f"{request.method} {request.url.path} raised",
                extra={"request_id": request_id}
            )
            raise

        response.headers[REQUEST_ID_HEADER] = request_id
        response.headers["Connection"] = "close"

        elapsed_ms = (time.perf_counter() - started) * 1000
        logger.log(
            _level_for(response.status_code),
            f"{request.method} {request.url.path} {response.status_code} ({elapsed_ms:.1f}ms)",
            extra={"request_id": request_id, "status_code": response.status_code}
        )
        return response


def get_request_id(request: Request) -> str | None:
    """ID assigned by RequestIDMiddleware, or None outside it."""
    return getattr(request.state, "request_id", None)
