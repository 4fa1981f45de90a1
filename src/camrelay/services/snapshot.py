"""Latest-frame cache for snapshot requests.

Raw JPEG bytes are copied from the feed's frame stream at most once per
``interval`` seconds. Writers and readers share the feed lock, so a reader
always gets the bytes of exactly one capture.
"""
from __future__ import annotations

import logging
import threading
import time
from typing import Callable

from .. import metrics

logger = logging.getLogger(__name__)


class SnapshotCache:
    """Per-feed snapshot buffer guarded by the feed lock."""

    def __init__(
        self,
        feed_name: str,
        interval: float,
        lock: threading.Lock | None = None,
        clock: Callable[[], float] = time.monotonic
    ) -> None:
        self.feed_name = feed_name
        self.interval = interval
        self._lock = lock or threading.Lock()
        self._clock = clock
        self._buffer: bytearray | None = None
        self._length = 0
        self._last_capture: float | None = None

    @property
    def enabled(self) -> bool:
        return self.interval > 0

    @property
    def has_snapshot(self) -> bool:
        with self._lock:
            return self._buffer is not None

    def offer(self, frame: bytes) -> bool:
        """Capture ``frame`` if the interval has elapsed; returns True if captured."""
        if not self.enabled:
            return False

        now = self._clock()
        if self._last_capture is not None and now - self._last_capture < self.interval:
            return False
        self._last_capture = now

        size = len(frame)
        with self._lock:
            if self._buffer is None or len(self._buffer) < size:
                # Headroom so early frames don't force a resize each time
                self._buffer = bytearray(size * 2)
            self._buffer[:size] = frame
            self._length = size

        metrics.snapshots_captured_total.labels(feed=self.feed_name).inc()
        logger.debug(f"[{self.feed_name}] Snapshot captured ({size} bytes)")
        return True

    def read(self) -> bytes | None:
        """Copy of the latest snapshot, or None before the first capture."""
        with self._lock:
            if self._buffer is None:
                return None
            return bytes(self._buffer[:self._length])
