"""Shared decoder processes with frame fan-out.

Every consumer of a feed (HTTP viewers, snapshot cache, motion detector,
recorders, transcoders) subscribes by decoder command. Subscriptions with the
same command and arguments share one decoder process:

    decoder stdout → extract_jpegs → [sub 1, sub 2, ...] (in subscription order)

Lifecycle:
    - First subscribe() for a key launches the decoder and its reader thread
    - Later subscribe() calls attach to the running entry
    - A subscription leaves when its callback returns False, raises, or its
      handle is cancelled
    - With no subscriptions left, or when the decoder's output ends, the
      reader kills the decoder, removes the entry and sends every remaining
      callback the stream-ended sentinel (None) exactly once

Thread Safety:
    One lock guards the key → entry map. Decoder launch happens under that
    lock so concurrent first subscribers never start two decoders. The
    subscription list is only mutated by the reader thread, except for
    appends from subscribe(), which also hold the lock.

Logging Strategy:
    DEBUG - Subscribe/unsubscribe, kill failures
    INFO  - Reader start/stop
    ERROR - Subscriber exceptions, reader failures
"""
from __future__ import annotations

import logging
import subprocess
import threading
from typing import Callable, NamedTuple

from .. import metrics
from ..utils.process import launch_decoder
from ..utils.strings import mask_credentials
from .frame_extractor import extract_jpegs

logger = logging.getLogger(__name__)

FrameHandler = Callable[["bytes | None"], bool]
"""Receives each frame (or None once the stream ended); False unsubscribes."""

ProcessLauncher = Callable[[str, str], subprocess.Popen]


# ============================================================================
# Keys and Subscriptions
# ============================================================================

class ProcessKey(NamedTuple):
    """Identity of a shared decoder process."""

    command: str
    arguments: str

    def __str__(self) -> str:
        return f"{self.command} {self.arguments}"


class Subscription:
    """Handle for one registered frame handler.

    ``cancel()`` detaches the handler before the next frame is delivered;
    it is equivalent to the handler returning False.
    """

    def __init__(self, key: ProcessKey, handler: FrameHandler) -> None:
        self.key = key
        self.handler = handler
        self._cancelled = threading.Event()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self) -> None:
        self._cancelled.set()

    def __repr__(self) -> str:
        return f"Subscription({mask_credentials(str(self.key))!r}, cancelled={self.cancelled})"


class _FeedProcess:
    """Running decoder and its subscribers."""

    def __init__(self, key: ProcessKey, process: subprocess.Popen) -> None:
        self.key = key
        self.process = process
        self.subscriptions: list[Subscription] = []
        self.thread: threading.Thread | None = None


# ============================================================================
# Registry
# ============================================================================

class FeedRegistry:
    """Registry of shared decoder processes keyed by command + arguments."""

    def __init__(self, launcher: ProcessLauncher = launch_decoder) -> None:
        self._launcher = launcher
        self._entries: dict[ProcessKey, _FeedProcess] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------------
    # Subscribing
    # ------------------------------------------------------------------------

    def subscribe(
        self,
        command: str,
        arguments: str | None,
        handler: FrameHandler
    ) -> Subscription:
        """Register ``handler`` for frames of the given decoder command.

        Launches the decoder if no process is running for this key.

        Raises:
            ProcessLaunchError: The decoder had to be started and failed
        """
        key = ProcessKey(command, arguments or "")
        subscription = Subscription(key, handler)

        with self._lock:
            entry = self._entries.get(key)
            if entry is not None:
                entry.subscriptions.append(subscription)
                logger.debug(
                    f"Attached to running decoder ({len(entry.subscriptions)} subscribers): "
                    f"{mask_credentials(str(key))}"
                )
                return subscription

            try:
                process = self._launcher(key.command, key.arguments)
            except Exception:
                metrics.decoder_launches_total.labels(status="failure").inc()
                raise
            metrics.decoder_launches_total.labels(status="success").inc()

            entry = _FeedProcess(key, process)
            entry.subscriptions.append(subscription)
            self._entries[key] = entry
            entry.thread = threading.Thread(
                target=self._read_frames,
                args=(entry,),
                name=f"decoder-{process.pid}",
                daemon=True
            )
            metrics.decoder_processes_active.inc()
            entry.thread.start()

        return subscription

    # ------------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------------

    def is_running(self, command: str, arguments: str | None) -> bool:
        with self._lock:
            return ProcessKey(command, arguments or "") in self._entries

    def subscriber_count(self, command: str, arguments: str | None) -> int:
        with self._lock:
            entry = self._entries.get(ProcessKey(command, arguments or ""))
            return len(entry.subscriptions) if entry else 0

    def active_keys(self) -> list[ProcessKey]:
        with self._lock:
            return list(self._entries)

    # ------------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------------

    def shutdown(self, timeout: float = 5.0) -> None:
        """Kill every decoder and wait for the reader threads to finish.

        Reader threads still deliver the stream-ended sentinel to their
        remaining subscribers.
        """
        with self._lock:
            entries = list(self._entries.values())

        logger.info(f"Stopping {len(entries)} decoder process(es)")
        for entry in entries:
            self._kill(entry)
        for entry in entries:
            if entry.thread is not None and entry.thread is not threading.current_thread():
                entry.thread.join(timeout)

    # ------------------------------------------------------------------------
    # Reader Loop
    # ------------------------------------------------------------------------

    def _read_frames(self, entry: _FeedProcess) -> None:
        """Reader thread: extract frames and fan them out until nobody listens."""
        masked_key = mask_credentials(str(entry.key))
        logger.info(f"Starting decoder reader: {masked_key}")

        def deliver(buffer: bytearray, offset: int, length: int) -> bool:
            frame = bytes(memoryview(buffer)[offset:offset + length])
            metrics.frames_extracted_total.inc()
            for subscription in list(entry.subscriptions):
                if subscription.cancelled or not self._notify(subscription, frame):
                    subscription.cancel()
                    entry.subscriptions.remove(subscription)
                    logger.debug(f"Subscriber left ({len(entry.subscriptions)} remaining): {masked_key}")
            return len(entry.subscriptions) > 0

        try:
            ended = extract_jpegs(entry.process.stdout, deliver)
            if ended:
                logger.info(f"Decoder output ended: {masked_key}")
        except (OSError, ValueError) as e:
            logger.error(f"Decoder read failed: {masked_key}: {e}")

        with self._lock:
            remaining = [s for s in entry.subscriptions if not s.cancelled]
            entry.subscriptions.clear()
            self._kill(entry)
            self._entries.pop(entry.key, None)
            metrics.decoder_processes_active.dec()

        for subscription in remaining:
            subscription.cancel()
            self._notify(subscription, None)

        logger.info(f"Decoder reader stopped: {masked_key}")

    @staticmethod
    def _notify(subscription: Subscription, frame: bytes | None) -> bool:
        try:
            return bool(subscription.handler(frame))
        except Exception as e:
            logger.error(f"Frame subscriber failed, unsubscribing: {e}", exc_info=True)
            return False

    @staticmethod
    def _kill(entry: _FeedProcess) -> None:
        """Best-effort decoder termination."""
        process = entry.process
        # Kill before closing stdout: close() waits for a blocked read to return
        try:
            process.kill()
        except OSError as e:
            logger.debug(f"Killing decoder PID={process.pid} failed: {e}")
        try:
            if process.stdout is not None:
                process.stdout.close()
        except OSError as e:
            logger.debug(f"Closing decoder stdout failed: {e}")
        try:
            process.wait(timeout=5)
        except subprocess.TimeoutExpired as e:
            logger.debug(f"Decoder PID={process.pid} did not exit: {e}")
