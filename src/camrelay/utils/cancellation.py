"""Server-wide shutdown token.

One token is created per server and handed to every long-lived loop
(viewers, motion engines, pipe predicates). Loops poll ``running`` between
frames; waiting code can block on ``wait()``.
"""
from __future__ import annotations

import logging
import threading

logger = logging.getLogger(__name__)


class ShutdownToken:
    """Cooperative cancellation flag shared by all feed loops."""

    def __init__(self) -> None:
        self._event = threading.Event()

    @property
    def running(self) -> bool:
        return not self._event.is_set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        if not self._event.is_set():
            logger.info("Shutdown requested")
        self._event.set()

    def wait(self, timeout: float | None = None) -> bool:
        """Block until cancelled; returns True if cancelled."""
        return self._event.wait(timeout)
