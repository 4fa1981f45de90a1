"""HTTP endpoints for live feeds.

Routes (all under the feed name as first path segment):
    GET /shutdown                  - Stop the server
    GET /{feed}/mjpeg[/{max_fps}]  - Live MJPEG (multipart, or raw with ?raw=1)
    GET /{feed}/stream             - Transcoded output (needs an output process)
    GET /{feed}/snapshot           - Latest cached JPEG
    GET /{feed}/{anything else}    - 404 Unknown action

The feed pages (/ and /{feed}) live in ui/views.py. ``fallback_router`` must
be included after the views router so /{feed}/ still renders the feed page.

Streaming bodies are async generators on the event loop; a silent feed holds
no worker thread and a vanished client is noticed within a second.

Logging Strategy:
    DEBUG - Snapshot sizes
    INFO  - Stream start, shutdown requests
    WARN  - Client write timeouts
    ERROR - Launch failures (via errors.raise_launch_failed)
"""
from __future__ import annotations

import logging
from typing import AsyncIterator, Callable, Final, Optional

import anyio
from fastapi import APIRouter, Depends, Path, Query, Request
from fastapi.responses import HTMLResponse, Response, StreamingResponse
from starlette.types import Message, Send

from ..services.container import get_feeds_service
from ..services.feeds_service import FeedRuntime, FeedsService
from ..utils.process import ProcessLaunchError
from .errors import raise_feed_not_found, raise_launch_failed, raise_unknown_action

logger = logging.getLogger(__name__)

router = APIRouter(tags=["feeds"])
fallback_router = APIRouter(tags=["feeds"])

# ============================================================================
# Constants
# ============================================================================

SEND_TIMEOUT: Final[float] = 15.0
"""Seconds a single chunk may take to reach the client before the stream is dropped."""

CORS_HEADERS: Final[dict[str, str]] = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Headers": (
        "DNT,User-Agent,X-Requested-With,If-Modified-Since,Cache-Control,Content-Type,Range"
    ),
    "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
    "Access-Control-Expose-Headers": "*",
}

NO_CACHE_HEADERS: Final[dict[str, str]] = {
    "Cache-Control": "no-cache, no-store, must-revalidate",
    "Pragma": "no-cache",
}


# ============================================================================
# Streaming Response
# ============================================================================

class LiveStreamResponse(StreamingResponse):
    """StreamingResponse that drops clients which stop reading.

    Each chunk must be accepted within ``send_timeout``; ``on_close`` runs
    once the body ends for any reason (feed ended, timeout, disconnect).
    """

    def __init__(
        self,
        content: AsyncIterator[bytes],
        on_close: Optional[Callable[[], None]] = None,
        send_timeout: float = SEND_TIMEOUT,
        **kwargs
    ) -> None:
        super().__init__(content, **kwargs)
        self.on_close = on_close
        self.send_timeout = send_timeout

    async def stream_response(self, send: Send) -> None:
        async def bounded_send(message: Message) -> None:
            with anyio.fail_after(self.send_timeout):
                await send(message)

        try:
            await super().stream_response(bounded_send)
        except TimeoutError:
            logger.warning(f"Client did not accept data for {self.send_timeout:.0f}s, closing stream")
        finally:
            if self.on_close is not None:
                self.on_close()


# ============================================================================
# Dependencies
# ============================================================================

def get_feed_runtime(
    feed: str,
    service: FeedsService = Depends(get_feeds_service)
) -> FeedRuntime:
    """Resolve the ``{feed}`` path segment or respond 404 Feed not found."""
    runtime = service.get_feed(feed)
    if runtime is None:
        raise_feed_not_found(feed)
    return runtime


# ============================================================================
# Server Control
# ============================================================================

@router.get("/shutdown", response_class=HTMLResponse)
async def shutdown(service: FeedsService = Depends(get_feeds_service)) -> HTMLResponse:
    logger.info("Shutdown requested over HTTP")
    service.request_shutdown()
    return HTMLResponse("Server shut down")


# ============================================================================
# Live MJPEG
# ============================================================================

def _mjpeg_response(
    request: Request,
    runtime: FeedRuntime,
    service: FeedsService,
    max_fps: Optional[float],
    raw: bool
) -> LiveStreamResponse:
    try:
        viewer = service.open_viewer(runtime, max_fps=max_fps, raw=raw)
    except ProcessLaunchError as e:
        raise_launch_failed(runtime.name, e)

    logger.info(f"[{runtime.name}] MJPEG stream started (max_fps={max_fps}, raw={raw})")
    return LiveStreamResponse(
        viewer.frames(request.is_disconnected),
        on_close=viewer.close,
        media_type=viewer.content_type,
        headers={**NO_CACHE_HEADERS, **CORS_HEADERS}
    )


@router.get("/{feed}/mjpeg")
def stream_mjpeg(
    request: Request,
    raw: bool = Query(False, description="Raw motion-JPEG instead of multipart"),
    runtime: FeedRuntime = Depends(get_feed_runtime),
    service: FeedsService = Depends(get_feeds_service)
) -> LiveStreamResponse:
    """Live MJPEG at the decoder's frame rate."""
    return _mjpeg_response(request, runtime, service, None, raw)


@router.get("/{feed}/mjpeg/{max_fps}")
def stream_mjpeg_limited(
    request: Request,
    max_fps: float = Path(..., gt=0, description="Maximum frames per second"),
    raw: bool = Query(False, description="Raw motion-JPEG instead of multipart"),
    runtime: FeedRuntime = Depends(get_feed_runtime),
    service: FeedsService = Depends(get_feeds_service)
) -> LiveStreamResponse:
    """Live MJPEG with frames closer than 1/max_fps skipped."""
    return _mjpeg_response(request, runtime, service, max_fps, raw)


# ============================================================================
# Transcoded Stream
# ============================================================================

@router.get("/{feed}/stream")
def stream_transcoded(
    request: Request,
    runtime: FeedRuntime = Depends(get_feed_runtime),
    service: FeedsService = Depends(get_feeds_service)
) -> LiveStreamResponse:
    """Feed piped through the configured output process."""
    if not runtime.config.has_output_process:
        raise_unknown_action(runtime.name, "stream")

    try:
        sink = service.open_transcode(runtime)
    except ProcessLaunchError as e:
        raise_launch_failed(runtime.name, e)

    logger.info(f"[{runtime.name}] Transcoded stream started ({runtime.config.output_content_type})")
    return LiveStreamResponse(
        sink.chunks(request.is_disconnected),
        on_close=sink.close,
        media_type=runtime.config.output_content_type,
        headers=dict(CORS_HEADERS)
    )


# ============================================================================
# Snapshot
# ============================================================================

@router.get("/{feed}/snapshot")
async def get_snapshot(
    runtime: FeedRuntime = Depends(get_feed_runtime),
    service: FeedsService = Depends(get_feeds_service)
) -> Response:
    """Most recent captured frame as a single JPEG."""
    jpeg_bytes = service.snapshot(runtime)
    if jpeg_bytes is None:
        raise_unknown_action(runtime.name, "snapshot")

    logger.debug(f"[{runtime.name}] Snapshot served ({len(jpeg_bytes)} bytes)")
    return Response(
        content=jpeg_bytes,
        media_type="image/jpeg",
        headers={**NO_CACHE_HEADERS, **CORS_HEADERS}
    )


# ============================================================================
# Fallback
# ============================================================================

@fallback_router.get("/{feed}/{action:path}")
async def unknown_action(
    action: str,
    runtime: FeedRuntime = Depends(get_feed_runtime)
) -> None:
    raise_unknown_action(runtime.name, action)
