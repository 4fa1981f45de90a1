"""
Motion detection and motion-triggered recording.

This module handles:
- Single-slot frame handoff from the feed thread to the analysis thread
- JPEG decoding and downsampling with OpenCV
- Sparse-grid frame comparison
- Sliding-window hysteresis deciding when recording starts and stops
- Recording through a transcoder pipe into a file

Sampling is lossy on purpose: a frame offered while the previous one is still
being analysed is dropped, so analysis always works on a recent frame and
never falls behind the live stream.

Logging Strategy:
    DEBUG - Per-frame verdicts, dropped frames, decode failures
    INFO  - Engine start/stop, recording start/stop
    ERROR - Recording launch failures
"""
from __future__ import annotations

import logging
import threading
import time
from collections import deque
from pathlib import Path
from typing import BinaryIO, Callable, Final, Optional

import cv2
import numpy as np

from .. import metrics
from ..models.feed import FeedConfig
from ..models.motion import MotionStatus, RecordingState, Transition
from ..utils.cancellation import ShutdownToken
from ..utils.process import ProcessLaunchError
from ..utils.strings import format_recording_filename
from .feed_registry import FeedRegistry
from .pipe_pump import PipeSession, start_pipe

logger = logging.getLogger(__name__)

# ============================================================================
# Constants
# ============================================================================

ANALYSIS_WIDTH: Final[int] = 200
"""Width frames are downsampled to before comparison."""

GRID_DIVISIONS: Final[int] = 10
"""Grid cells along the frame height; cell size is reused for the width."""

MAILBOX_POLL_INTERVAL: Final[float] = 0.5
"""Seconds the analysis thread waits for a frame before re-checking shutdown."""

Clock = Callable[[], float]
PipeFactory = Callable[..., PipeSession]


# ============================================================================
# Frame Handoff
# ============================================================================

class FrameMailbox:
    """One-slot mailbox; offers are dropped while the slot is occupied.

    The slot stays occupied from ``offer()`` until the consumer calls
    ``mark_consumed()``, so a frame being decoded is never replaced.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._frame: Optional[bytes] = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def offer(self, frame: bytes) -> bool:
        """Deposit ``frame`` if the slot is free; returns False if dropped."""
        with self._cond:
            if self._closed or self._frame is not None:
                return False
            self._frame = frame
            self._cond.notify()
            return True

    def take(self, timeout: Optional[float] = None) -> Optional[bytes]:
        """Wait for a frame; None on timeout or after close()."""
        with self._cond:
            self._cond.wait_for(lambda: self._frame is not None or self._closed, timeout)
            if self._closed:
                return None
            return self._frame

    def mark_consumed(self) -> None:
        with self._cond:
            self._frame = None

    def close(self) -> None:
        with self._cond:
            self._closed = True
            self._frame = None
            self._cond.notify_all()


# ============================================================================
# Frame Analysis
# ============================================================================

def decode_frame(jpeg: bytes, width: int = ANALYSIS_WIDTH) -> Optional[np.ndarray]:
    """Decode a JPEG and downsample it to ``width`` pixels, keeping aspect ratio.

    Returns:
        BGR image array, or None if the bytes are not a decodable image
    """
    data = np.frombuffer(jpeg, dtype=np.uint8)
    image = cv2.imdecode(data, cv2.IMREAD_COLOR)
    if image is None:
        return None

    height, original_width = image.shape[:2]
    if original_width != width:
        scaled_height = max(1, round(height * width / original_width))
        image = cv2.resize(image, (width, scaled_height), interpolation=cv2.INTER_AREA)
    return image


def grid_change_percentage(
    previous: np.ndarray,
    current: np.ndarray,
    ignore_percentage: float
) -> float:
    """Percentage of grid samples whose colour changed noticeably.

    One pixel is sampled at the centre of each ``height // 10`` sized cell.
    A sample's change is the summed absolute R, G and B difference scaled to
    0-100; it counts as changed when above ``ignore_percentage``.

    Args:
        previous: Previous downsampled frame
        current: Current downsampled frame (same shape)
        ignore_percentage: Per-sample change threshold (0-100)

    Returns:
        Changed samples as a percentage of all samples (0-100)
    """
    step = max(current.shape[0] // GRID_DIVISIONS, 1)
    offset = step // 2

    before = previous[offset::step, offset::step].astype(np.int16)
    after = current[offset::step, offset::step].astype(np.int16)
    difference = np.abs(after - before).sum(axis=2) * 100.0 / (256 * 3)

    total = difference.size
    if total == 0:
        return 0.0
    changed = int(np.count_nonzero(difference > ignore_percentage))
    return changed * 100.0 / total


# ============================================================================
# Hysteresis
# ============================================================================

class MotionTracker:
    """Sliding-window hysteresis over per-frame change verdicts.

    Recording starts when every verdict in a full window is "changed" and
    continues while any verdict in the window is. Once the window holds no
    change and ``linger_seconds`` passed since the last detection, it stops.
    """

    def __init__(self, frame_count: int, linger_seconds: float, clock: Clock = time.monotonic) -> None:
        self.frame_count = frame_count
        self.linger_seconds = linger_seconds
        self._clock = clock
        self.window: deque[bool] = deque(maxlen=frame_count)
        self.recording = False
        self.last_detected: Optional[float] = None

    @property
    def detected_count(self) -> int:
        return sum(self.window)

    def update(self, changed: bool) -> Transition:
        self.window.append(changed)
        detected = self.detected_count

        if detected == self.frame_count or (self.recording and detected > 0):
            self.last_detected = self._clock()
            if not self.recording:
                self.recording = True
                return Transition.START
            return Transition.NONE

        if self.recording and (
            self.last_detected is None
            or self._clock() - self.last_detected > self.linger_seconds
        ):
            self.recording = False
            return Transition.STOP
        return Transition.NONE

    def force_idle(self) -> None:
        """Drop back to idle without a STOP transition (failed recording start).

        The window is cleared too, so a new START needs a fresh full window of
        change instead of firing again on the next changed verdict.
        """
        self.recording = False
        self.window.clear()


# ============================================================================
# Motion Engine
# ============================================================================

class MotionEngine:
    """Per-feed motion analysis loop that starts and stops recordings."""

    def __init__(
        self,
        feed: FeedConfig,
        registry: FeedRegistry,
        token: ShutdownToken,
        lock: Optional[threading.Lock] = None,
        clock: Clock = time.monotonic,
        pipe_factory: PipeFactory = start_pipe
    ) -> None:
        self.feed = feed
        self.registry = registry
        self.token = token
        self._lock = lock or threading.Lock()
        self._clock = clock
        self._pipe_factory = pipe_factory

        self.mailbox = FrameMailbox()
        self.tracker = MotionTracker(
            feed.motion_detection_frame_count,
            feed.motion_seconds_linger,
            clock
        )
        self._stopped = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._last_sample: Optional[float] = None
        self._previous: Optional[np.ndarray] = None

        self._recording_file: Optional[BinaryIO] = None
        self._recording_path: Optional[str] = None
        self._pipe: Optional[PipeSession] = None
        self.last_change_percentage: Optional[float] = None

    # ------------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return not self._stopped.is_set() and self.token.running

    @property
    def state(self) -> RecordingState:
        with self._lock:
            recording = self._recording_file is not None
        return RecordingState.RECORDING if recording else RecordingState.IDLE

    @property
    def pipe(self) -> Optional[PipeSession]:
        return self._pipe

    def status(self) -> MotionStatus:
        with self._lock:
            path = self._recording_path
        return MotionStatus(
            feed=self.feed.name,
            state=self.state,
            window=list(self.tracker.window),
            last_change_percentage=self.last_change_percentage,
            recording_path=path
        )

    # ------------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------------

    def start(self) -> None:
        self._thread = threading.Thread(
            target=self.run,
            name=f"motion-{self.feed.name}",
            daemon=True
        )
        self._thread.start()
        logger.info(f"[{self.feed.name}] Motion detection started")

    def stop(self, timeout: float = 5.0) -> None:
        """Stop the analysis thread; an active recording is stopped too."""
        self._stopped.set()
        self.mailbox.close()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout)
        elif self._thread is None:
            self.stop_recording()

    # ------------------------------------------------------------------------
    # Frame Input (feed thread)
    # ------------------------------------------------------------------------

    def on_frame(self, frame: bytes) -> None:
        """Offer a frame for analysis if the sampling interval elapsed."""
        now = self._clock()
        if (
            self._last_sample is not None
            and now - self._last_sample < self.feed.motion_detection_seconds_between_frames
        ):
            return
        self._last_sample = now
        if not self.mailbox.offer(frame):
            logger.debug(f"[{self.feed.name}] Analysis busy, frame dropped")

    # ------------------------------------------------------------------------
    # Analysis Loop (engine thread)
    # ------------------------------------------------------------------------

    def run(self) -> None:
        try:
            while self.running:
                frame = self.mailbox.take(timeout=MAILBOX_POLL_INTERVAL)
                if frame is None:
                    if self.mailbox.closed:
                        break
                    continue
                try:
                    self.process_frame(frame)
                finally:
                    self.mailbox.mark_consumed()
        finally:
            self.stop_recording()
            logger.info(f"[{self.feed.name}] Motion detection stopped")

    def process_frame(self, jpeg: bytes) -> Transition:
        """Analyse one JPEG against the previous one and apply the verdict."""
        started = time.perf_counter()
        current = decode_frame(jpeg)
        if current is None:
            logger.debug(f"[{self.feed.name}] Undecodable frame skipped ({len(jpeg)} bytes)")
            return Transition.NONE

        previous, self._previous = self._previous, current
        if previous is None or previous.shape != current.shape:
            return Transition.NONE

        percentage = grid_change_percentage(
            previous,
            current,
            self.feed.motion_color_ignore_percentage
        )
        metrics.motion_analysis_duration_seconds.labels(feed=self.feed.name).observe(
            time.perf_counter() - started
        )
        return self.apply_verdict(percentage > self.feed.motion_detection_percentage, percentage)

    def apply_verdict(self, changed: bool, percentage: Optional[float] = None) -> Transition:
        """Feed one change verdict into the hysteresis window and act on it."""
        if percentage is not None:
            self.last_change_percentage = percentage
            metrics.motion_change_percent.labels(feed=self.feed.name).set(percentage)

        transition = self.tracker.update(changed)
        shown = f"{percentage:.1f} %" if percentage is not None else "n/a"
        if self.tracker.recording:
            logger.debug(f"[{self.feed.name}] Detection! {shown}")
        else:
            logger.debug(f"[{self.feed.name}] No detection {shown}")

        if transition is Transition.START:
            self.start_recording()
        elif transition is Transition.STOP:
            self.stop_recording()
        return transition

    # ------------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------------

    def start_recording(self) -> None:
        """Open the recording file and pipe the feed into the motion process."""
        with self._lock:
            if self._recording_file is not None and not self._recording_file.closed:
                return

        path = format_recording_filename(self.feed.motion_recording_file_name, self.feed.name)
        try:
            Path(path).parent.mkdir(parents=True, exist_ok=True)
            output = open(path, "wb")
        except OSError as e:
            logger.error(f"[{self.feed.name}] Cannot open recording file {path}: {e}")
            self.tracker.force_idle()
            return

        with self._lock:
            self._recording_file = output
            self._recording_path = path

        logger.info(f"[{self.feed.name}] Start recording: {path}")
        try:
            self._pipe = self._pipe_factory(
                self.registry,
                self.feed.input_process_name,
                self.feed.input_process_arguments,
                self.feed.motion_process_name,
                self.feed.motion_process_arguments,
                output,
                keep_going=lambda: self.running and not output.closed,
                name=f"{self.feed.name} recording"
            )
        except ProcessLaunchError as e:
            logger.error(f"[{self.feed.name}] Recording failed to start: {e}")
            self.stop_recording()
            try:
                Path(path).unlink(missing_ok=True)
            except OSError as unlink_error:
                logger.warning(f"[{self.feed.name}] Cannot remove empty recording {path}: {unlink_error}")
            self.tracker.force_idle()
            return

        metrics.recordings_active.inc()
        metrics.recordings_started_total.labels(feed=self.feed.name).inc()

    def stop_recording(self) -> None:
        """Close the recording file; the pipe shuts itself down on the closed sink."""
        with self._lock:
            output = self._recording_file
            path = self._recording_path
            self._recording_file = None
            self._recording_path = None

        if output is None:
            return

        try:
            output.close()
        except OSError as e:
            logger.warning(f"[{self.feed.name}] Closing recording file failed: {e}")

        if self._pipe is not None:
            metrics.recordings_active.dec()
        self._pipe = None
        logger.info(f"[{self.feed.name}] Stop recording: {path}")
