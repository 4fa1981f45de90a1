"""Per-connection sessions bridging feed threads and HTTP responses.

MjpegViewer:
    Registry subscription on one side, async frame generator on the other.
    Holds at most one pending frame; frames arriving while the previous one
    is still being written are skipped, so a slow client sees a lower frame
    rate instead of growing latency. A client whose write has not completed
    within STALL_TIMEOUT is dropped.

ResponseSink:
    Bounded queue used as the Pipe Pump sink for transcoded responses. The
    response drains it; closing it makes the pump shut its transcoder down.

Response bodies are async generators woken by the feed threads through
LoopWakeup, so a silent feed parks no server worker thread. While waiting
they poll the client connection once per interval and end when it is gone.

Logging Strategy:
    DEBUG - Skipped frames, sink close
    INFO  - Viewer open/close with frame count, client disconnects
    WARN  - Stalled clients
"""
from __future__ import annotations

import asyncio
import logging
import queue
import threading
import time
from typing import AsyncIterator, Awaitable, Callable, Final, Optional

from .. import metrics
from ..utils.cancellation import ShutdownToken
from .feed_registry import Subscription

logger = logging.getLogger(__name__)

DisconnectCheck = Callable[[], Awaitable[bool]]

# ============================================================================
# Constants
# ============================================================================

BOUNDARY: Final[str] = "derpyderpderp"
"""Multipart boundary used by every live MJPEG response."""

PART_HEADER: Final[bytes] = (
    f"\r\n--{BOUNDARY}\r\nContent-type: image/jpeg\r\n\r\n".encode("ascii")
)

RAW_ALIGNMENT: Final[int] = 8
"""Raw frames are zero-padded to a multiple of this many bytes."""

STALL_TIMEOUT: Final[float] = 15.0
"""Seconds a single frame write may take before the client counts as stalled."""

WAIT_INTERVAL: Final[float] = 1.0
"""Seconds between shutdown and client-disconnect checks while streaming."""

SINK_QUEUE_SIZE: Final[int] = 64
SINK_POLL_INTERVAL: Final[float] = 0.5


def pad_raw_frame(frame: bytes) -> bytes:
    """Append zero bytes up to the next multiple of RAW_ALIGNMENT."""
    padding = -len(frame) % RAW_ALIGNMENT
    return frame + bytes(padding) if padding else frame


# ============================================================================
# Cross-Thread Wakeup
# ============================================================================

class LoopWakeup:
    """asyncio.Event owned by the response's event loop, settable from any thread."""

    def __init__(self) -> None:
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._event: Optional[asyncio.Event] = None

    def bind(self) -> None:
        """Attach to the running loop; call from the response generator."""
        self._event = asyncio.Event()
        self._loop = asyncio.get_running_loop()

    def clear(self) -> None:
        if self._event is not None:
            self._event.clear()

    def set(self) -> None:
        loop, event = self._loop, self._event
        if loop is None or event is None:
            return
        try:
            loop.call_soon_threadsafe(event.set)
        except RuntimeError:
            logger.debug("Wakeup after event loop closed, ignored")

    async def wait(self, timeout: float) -> bool:
        """True if woken, False after ``timeout`` seconds."""
        if self._event is None:
            await asyncio.sleep(timeout)
            return False
        try:
            await asyncio.wait_for(self._event.wait(), timeout)
            return True
        except asyncio.TimeoutError:
            return False


class DisconnectPoller:
    """Rate-limits client-disconnect checks to one per WAIT_INTERVAL."""

    def __init__(self, check: Optional[DisconnectCheck]) -> None:
        self._check = check
        self._last = time.monotonic()

    async def gone(self) -> bool:
        if self._check is None:
            return False
        now = time.monotonic()
        if now - self._last < WAIT_INTERVAL:
            return False
        self._last = now
        return await self._check()


# ============================================================================
# Live MJPEG Viewer
# ============================================================================

class MjpegViewer:
    """Frame-skipping live MJPEG session for one HTTP client."""

    def __init__(
        self,
        feed_name: str,
        token: ShutdownToken,
        max_fps: Optional[float] = None,
        raw: bool = False,
        clock: Callable[[], float] = time.monotonic
    ) -> None:
        self.feed_name = feed_name
        self.token = token
        self.max_fps = max_fps
        self.raw = raw
        self._clock = clock
        self._lock = threading.Lock()
        self._wakeup = LoopWakeup()
        self._pending: Optional[bytes] = None
        self._sending = False
        self._send_started: Optional[float] = None
        self._closed = False
        self.frames_sent = 0
        self.subscription: Optional[Subscription] = None

        metrics.playback_sessions_active.inc()
        metrics.playback_sessions_total.labels(feed=feed_name).inc()

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def busy(self) -> bool:
        """True while a frame is pending or still being written."""
        with self._lock:
            return self._sending or self._pending is not None

    @property
    def content_type(self) -> str:
        if self.raw:
            return "video/x-motion-jpeg"
        return f"multipart/x-mixed-replace;boundary={BOUNDARY}"

    def format_frame(self, frame: bytes) -> bytes:
        if self.raw:
            return pad_raw_frame(frame)
        return PART_HEADER + frame

    # ------------------------------------------------------------------------
    # Subscription Callback (decoder thread)
    # ------------------------------------------------------------------------

    def on_frame(self, frame: Optional[bytes]) -> bool:
        with self._lock:
            if self._closed:
                return False
            if frame is None:
                logger.debug(f"[{self.feed_name}] Feed ended, closing viewer")
                self._close_locked()
                return False

            now = self._clock()
            if self._sending or self._pending is not None:
                if self._send_started is not None and now - self._send_started > STALL_TIMEOUT:
                    logger.warning(
                        f"[{self.feed_name}] Viewer stalled for more than {STALL_TIMEOUT:.0f}s, disconnecting"
                    )
                    metrics.playback_stalls_total.labels(feed=self.feed_name).inc()
                    self._close_locked()
                    return False
                metrics.playback_frames_skipped_total.labels(feed=self.feed_name, reason="busy").inc()
                return True

            if (
                self.max_fps
                and self._send_started is not None
                and now - self._send_started < 1.0 / self.max_fps
            ):
                metrics.playback_frames_skipped_total.labels(feed=self.feed_name, reason="fps").inc()
                return True

            self._pending = frame
        self._wakeup.set()
        return True

    # ------------------------------------------------------------------------
    # Response Body (event loop)
    # ------------------------------------------------------------------------

    def _take(self) -> tuple[bool, Optional[bytes]]:
        """(finished, frame); arms the wakeup when no frame is pending."""
        with self._lock:
            self._sending = False
            if self._closed or self.token.cancelled:
                return True, None
            frame, self._pending = self._pending, None
            if frame is None:
                self._wakeup.clear()
            else:
                self._sending = True
                self._send_started = self._clock()
            return False, frame

    async def frames(self, is_disconnected: Optional[DisconnectCheck] = None) -> AsyncIterator[bytes]:
        """Yield formatted frames until the feed ends, the viewer closes, the
        client disconnects or shutdown.

        Resuming the generator means the previous chunk was handed to the
        server, which frees the slot for the next frame.
        """
        self._wakeup.bind()
        disconnect = DisconnectPoller(is_disconnected)
        try:
            while True:
                finished, frame = self._take()
                if finished:
                    break
                if frame is None:
                    await self._wakeup.wait(WAIT_INTERVAL)
                else:
                    self.frames_sent += 1
                    metrics.playback_frames_total.labels(feed=self.feed_name).inc()
                    yield self.format_frame(frame)

                if await disconnect.gone():
                    logger.info(f"[{self.feed_name}] Viewer disconnected")
                    break
        finally:
            self.close()

    # ------------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------------

    def close(self) -> None:
        """Detach from the feed; safe to call from any thread, any number of times."""
        with self._lock:
            self._close_locked()

    def _close_locked(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._pending = None
        self._wakeup.set()
        if self.subscription is not None:
            self.subscription.cancel()
        metrics.playback_sessions_active.dec()
        logger.info(f"[{self.feed_name}] Viewer closed after {self.frames_sent} frame(s)")


# ============================================================================
# Transcoded Response Sink
# ============================================================================

class ResponseSink:
    """Thread-safe byte sink drained by a streaming response."""

    def __init__(self, maxsize: int = SINK_QUEUE_SIZE) -> None:
        self._queue: queue.Queue[bytes] = queue.Queue(maxsize)
        self._closed = threading.Event()
        self._wakeup = LoopWakeup()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def write(self, data: bytes) -> int:
        """Queue ``data``; blocks while the response is behind.

        Raises:
            ValueError: The sink was closed
        """
        while not self.closed:
            try:
                self._queue.put(bytes(data), timeout=SINK_POLL_INTERVAL)
            except queue.Full:
                continue
            self._wakeup.set()
            return len(data)
        raise ValueError("write to closed sink")

    def close(self) -> None:
        if not self._closed.is_set():
            logger.debug("Response sink closed")
        self._closed.set()
        self._wakeup.set()

    async def chunks(self, is_disconnected: Optional[DisconnectCheck] = None) -> AsyncIterator[bytes]:
        """Yield queued output; ends once closed and drained, or on client disconnect."""
        self._wakeup.bind()
        disconnect = DisconnectPoller(is_disconnected)
        try:
            while True:
                self._wakeup.clear()
                closed = self.closed
                try:
                    chunk = self._queue.get_nowait()
                except queue.Empty:
                    if closed:
                        break
                    await self._wakeup.wait(SINK_POLL_INTERVAL)
                else:
                    yield chunk

                if await disconnect.gone():
                    logger.info("Transcoded stream client disconnected")
                    break
        finally:
            self.close()
