"""Feed runtime state and the operations behind every HTTP route.

FeedsService owns:
    - The shared FeedRegistry (one decoder per process key)
    - The ShutdownToken handed to viewers, pipes and motion engines
    - One FeedRuntime per configured feed (feed lock, snapshot cache,
      motion engine)

Capture:
    Feeds with a snapshot interval or motion detection get an always-on
    capture subscription at startup. Its handler feeds the snapshot cache and
    the motion engine; HTTP viewers of the same feed share the decoder.

Logging Strategy:
    DEBUG - Viewer/transcode session setup
    INFO  - Capture start/stop, service shutdown
    WARN  - Capture stream ended
    ERROR - Capture launch failures
"""
from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, Optional

from ..models.feed import FeedConfig, ServerConfig
from ..models.motion import MotionStatus
from ..utils.cancellation import ShutdownToken
from ..utils.process import ProcessLaunchError
from .feed_registry import FeedRegistry, FrameHandler, Subscription
from .motion import MotionEngine, PipeFactory
from .pipe_pump import start_pipe
from .snapshot import SnapshotCache
from .viewers import MjpegViewer, ResponseSink

logger = logging.getLogger(__name__)


# ============================================================================
# Per-Feed Runtime
# ============================================================================

class FeedRuntime:
    """Mutable state of one configured feed.

    The snapshot buffer and the recording file share ``lock``.
    """

    def __init__(
        self,
        config: FeedConfig,
        registry: FeedRegistry,
        token: ShutdownToken,
        clock: Callable[[], float] = time.monotonic,
        pipe_factory: PipeFactory = start_pipe
    ) -> None:
        self.config = config
        self.lock = threading.Lock()
        self.snapshot = SnapshotCache(config.name, config.snapshot_seconds_interval, self.lock, clock)
        self.motion: Optional[MotionEngine] = None
        if config.motion_enabled:
            self.motion = MotionEngine(config, registry, token, self.lock, clock, pipe_factory)
        self.capture: Optional[Subscription] = None

    @property
    def name(self) -> str:
        return self.config.name


# ============================================================================
# Feeds Service
# ============================================================================

class FeedsService:
    """Entry point for all feed operations used by the HTTP layer."""

    def __init__(
        self,
        config: ServerConfig,
        registry: Optional[FeedRegistry] = None,
        token: Optional[ShutdownToken] = None,
        clock: Callable[[], float] = time.monotonic,
        pipe_factory: PipeFactory = start_pipe
    ) -> None:
        self.config = config
        self.registry = registry or FeedRegistry()
        self.token = token or ShutdownToken()
        self._pipe_factory = pipe_factory
        self.feeds: dict[str, FeedRuntime] = {
            feed.name: FeedRuntime(feed, self.registry, self.token, clock, pipe_factory)
            for feed in config.feeds
        }
        logger.info(f"FeedsService initialized with {len(self.feeds)} feed(s)")

    # ------------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------------

    def get_feed(self, name: str) -> Optional[FeedRuntime]:
        return self.feeds.get(name)

    def list_feeds(self) -> list[dict[str, Any]]:
        """Feed summaries rendered into the index page."""
        return [
            {
                "name": runtime.name,
                "snapshot_seconds_interval": runtime.config.snapshot_seconds_interval,
                "has_stream": runtime.config.has_output_process,
                "motion": runtime.motion is not None
            }
            for runtime in self.feeds.values()
        ]

    def motion_status(self, name: str) -> Optional[MotionStatus]:
        runtime = self.feeds.get(name)
        if runtime is None or runtime.motion is None:
            return None
        return runtime.motion.status()

    # ------------------------------------------------------------------------
    # Capture (snapshots + motion)
    # ------------------------------------------------------------------------

    def start_capture(self) -> None:
        """Subscribe every feed that needs an always-on decoder."""
        for runtime in self.feeds.values():
            if not runtime.config.needs_capture:
                continue

            if runtime.motion is not None:
                runtime.motion.start()

            config = runtime.config
            try:
                runtime.capture = self.registry.subscribe(
                    config.input_process_name,
                    config.input_process_arguments,
                    self._capture_handler(runtime)
                )
            except ProcessLaunchError as e:
                logger.error(f"[{runtime.name}] Capture failed to start: {e}")
                if runtime.motion is not None:
                    runtime.motion.stop()
                continue

            logger.info(
                f"[{runtime.name}] Capture started "
                f"(snapshot={config.snapshot_enabled}, motion={config.motion_enabled})"
            )

    def _capture_handler(self, runtime: FeedRuntime) -> FrameHandler:
        def on_frame(frame: Optional[bytes]) -> bool:
            if frame is None:
                logger.warning(f"[{runtime.name}] Capture stream ended")
                if runtime.motion is not None:
                    runtime.motion.stop()
                return False

            runtime.snapshot.offer(frame)
            if runtime.motion is not None:
                runtime.motion.on_frame(frame)
            return self.token.running

        return on_frame

    # ------------------------------------------------------------------------
    # HTTP Sessions
    # ------------------------------------------------------------------------

    def open_viewer(
        self,
        runtime: FeedRuntime,
        max_fps: Optional[float] = None,
        raw: bool = False
    ) -> MjpegViewer:
        """Attach a live MJPEG viewer to the feed's decoder.

        Raises:
            ProcessLaunchError: Decoder had to be started and failed
        """
        viewer = MjpegViewer(runtime.name, self.token, max_fps=max_fps, raw=raw)
        try:
            viewer.subscription = self.registry.subscribe(
                runtime.config.input_process_name,
                runtime.config.input_process_arguments,
                viewer.on_frame
            )
        except ProcessLaunchError:
            viewer.close()
            raise
        logger.debug(f"[{runtime.name}] Viewer attached (max_fps={max_fps}, raw={raw})")
        return viewer

    def open_transcode(self, runtime: FeedRuntime) -> ResponseSink:
        """Start a transcoder for the feed whose output drains into a new sink.

        Raises:
            ProcessLaunchError: Decoder or transcoder failed to start
        """
        config = runtime.config
        sink = ResponseSink()
        self._pipe_factory(
            self.registry,
            config.input_process_name,
            config.input_process_arguments,
            config.output_process_name,
            config.output_process_arguments,
            sink,
            keep_going=lambda: self.token.running,
            name=f"{runtime.name} stream"
        )
        logger.debug(f"[{runtime.name}] Transcode session started")
        return sink

    def snapshot(self, runtime: FeedRuntime) -> Optional[bytes]:
        return runtime.snapshot.read()

    # ------------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------------

    def request_shutdown(self) -> None:
        """Cancel the shutdown token; the runner stops the server."""
        self.token.cancel()

    def stop(self) -> None:
        """Stop motion engines (closing recordings) and kill every decoder."""
        logger.info("Stopping feeds")
        self.token.cancel()
        for runtime in self.feeds.values():
            if runtime.capture is not None:
                runtime.capture.cancel()
            if runtime.motion is not None:
                runtime.motion.stop()
        self.registry.shutdown()
        logger.info("Feeds stopped")
