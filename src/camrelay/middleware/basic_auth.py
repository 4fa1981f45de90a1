"""HTTP Basic authentication for every request.

A single shared username/password pair guards the whole server, including
/shutdown. Comparison uses ``secrets.compare_digest`` on the raw
``user:pass`` bytes.

Logging Strategy:
    DEBUG - Missing or malformed Authorization headers
    WARN  - Wrong credentials
"""
from __future__ import annotations

import base64
import binascii
import logging
import secrets
from typing import Awaitable, Callable, Final, Optional

from fastapi import Request, Response, status
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from ..api.errors import ErrorCode, error_response

logger = logging.getLogger(__name__)

REALM: Final[str] = "Camera HTTP Server"


def parse_basic_credentials(header: Optional[str]) -> Optional[bytes]:
    """Decoded ``user:pass`` bytes from an Authorization header, or None."""
    if not header:
        return None
    scheme, _, encoded = header.partition(" ")
    if scheme.lower() != "basic" or not encoded.strip():
        return None
    try:
        return base64.b64decode(encoded.strip(), validate=True)
    except (binascii.Error, ValueError):
        return None


class BasicAuthMiddleware(BaseHTTPMiddleware):
    """Reject requests without the configured Basic credentials.

    Args:
        app: ASGI application
        username: Required username
        password: Required password
    """

    def __init__(self, app: ASGIApp, username: str, password: str) -> None:
        super().__init__(app)
        self._expected = f"{username}:{password}".encode("utf-8")
        logger.info("Basic authentication enabled")

    async def dispatch(
        self,
        request: Request,
        call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        supplied = parse_basic_credentials(request.headers.get("Authorization"))
        if supplied is None:
            logger.debug(f"Missing credentials: {request.method} {request.url.path}")
            return self._challenge()

        if not secrets.compare_digest(supplied, self._expected):
            client = request.client.host if request.client else "unknown"
            logger.warning(f"Invalid credentials from {client}: {request.url.path}")
            return self._challenge()

        return await call_next(request)

    @staticmethod
    def _challenge() -> Response:
        return error_response(
            status.HTTP_401_UNAUTHORIZED,
            ErrorCode.UNAUTHORIZED.value,
            headers={"WWW-Authenticate": f'Basic realm="{REALM}"'}
        )
