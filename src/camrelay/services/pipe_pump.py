"""Frame pump from a shared decoder through a transcoder into a sink.

    decoder ─(registry subscription)→ transcoder stdin
    transcoder stdout ─(relay thread)→ sink (HTTP response or recording file)

Used for live transcoding to HTTP clients and for motion recordings; the two
differ only in the sink and the keep-going predicate.

Shutdown Sequence (runs once per session, every step isolated):
    1. Flush and close transcoder stdin (lets it finalize and free hardware)
    2. Drain transcoder stdout for up to 5 seconds
    3. Close transcoder stdout and the sink
    4. Ask the process to terminate, wait 1 second
    5. Kill the process
    6. Reap the process and close stderr

Logging Strategy:
    DEBUG - Frame forwarding stops
    INFO  - Session start/close
    WARN  - Failed shutdown steps
"""
from __future__ import annotations

import logging
import subprocess
import threading
import time
from typing import Callable, Final, Protocol

from .. import metrics
from ..utils.process import launch_transcoder, monitor_stderr
from .feed_registry import FeedRegistry, Subscription

logger = logging.getLogger(__name__)

# ============================================================================
# Constants
# ============================================================================

RELAY_CHUNK_SIZE: Final[int] = 1024 * 1024
"""Maximum bytes relayed from transcoder stdout per read."""

DRAIN_TIMEOUT: Final[float] = 5.0
"""Seconds spent draining transcoder stdout during shutdown."""

DRAIN_CHUNK_SIZE: Final[int] = 1000

TERMINATE_WAIT: Final[float] = 1.0
"""Grace period after terminate() before kill()."""

KeepGoing = Callable[[], bool]
TranscoderLauncher = Callable[[str, str], subprocess.Popen]


class Sink(Protocol):
    """Writable byte destination (file object or response sink)."""

    closed: bool

    def write(self, data: bytes) -> object: ...

    def close(self) -> None: ...


# ============================================================================
# Pipe Session
# ============================================================================

class PipeSession:
    """One transcoder process wired between a feed and a sink."""

    def __init__(
        self,
        process: subprocess.Popen,
        sink: Sink,
        keep_going: KeepGoing | None = None,
        name: str = "pipe"
    ) -> None:
        self.process = process
        self.sink = sink
        self.name = name
        self._keep_going = keep_going
        self._close_lock = threading.Lock()
        self._closing = False
        self._closed = threading.Event()
        self.subscription: Subscription | None = None
        self.relay_thread: threading.Thread | None = None

    # ------------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------------

    @property
    def closed(self) -> bool:
        """True once the shutdown sequence has completed."""
        return self._closed.is_set()

    def wait_closed(self, timeout: float | None = None) -> bool:
        return self._closed.wait(timeout)

    def _should_continue(self) -> bool:
        stdin = self.process.stdin
        return (
            stdin is not None and not stdin.closed
            and not self.sink.closed
            and (self._keep_going is None or self._keep_going())
        )

    # ------------------------------------------------------------------------
    # Frame Input
    # ------------------------------------------------------------------------

    def on_frame(self, frame: bytes | None) -> bool:
        """Registry subscription handler: write one frame to transcoder stdin."""
        stdin = self.process.stdin
        stdout = self.process.stdout
        if (
            frame is None
            or stdin is None or stdin.closed
            or stdout is None or stdout.closed
            or self.sink.closed
        ):
            logger.debug(f"[{self.name}] Input ended, closing")
            self.close()
            return False

        try:
            stdin.write(frame)
            stdin.flush()
        except (OSError, ValueError) as e:
            logger.debug(f"[{self.name}] Transcoder stdin write failed: {e}")
            self.close()
            return False

        if not self._should_continue():
            self.close()
            return False
        return True

    # ------------------------------------------------------------------------
    # Output Relay
    # ------------------------------------------------------------------------

    def relay_output(self) -> None:
        """Relay thread: copy transcoder stdout to the sink."""
        stdout = self.process.stdout
        while self._should_continue() and stdout is not None and not stdout.closed:
            try:
                chunk = stdout.read1(RELAY_CHUNK_SIZE)
                if not chunk:
                    break
                self.sink.write(chunk)
            except (OSError, ValueError) as e:
                logger.debug(f"[{self.name}] Output relay stopped: {e}")
                break

        self.close()

    # ------------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------------

    def close(self) -> None:
        """Run the shutdown sequence; later calls return immediately."""
        with self._close_lock:
            if self._closing:
                return
            self._closing = True

        logger.info(f"[{self.name}] Closing transcoder PID={self.process.pid}")
        if self.subscription is not None:
            self.subscription.cancel()

        self._step("close stdin", self._close_stdin)
        self._step("drain stdout", self._drain_stdout)
        self._step("close stdout", self._close_stdout)
        self._step("close sink", self.sink.close)
        self._step("terminate", self._terminate)
        self._step("kill", self.process.kill)
        self._step("release", self._release)

        metrics.transcode_sessions_active.dec()
        self._closed.set()
        logger.info(f"[{self.name}] Transcoder closed")

    def _step(self, step: str, action: Callable[[], object]) -> None:
        try:
            action()
        except Exception as e:
            metrics.pipe_shutdown_errors_total.labels(step=step).inc()
            logger.warning(f"[{self.name}] Shutdown step '{step}' failed: {e}")

    def _close_stdin(self) -> None:
        stdin = self.process.stdin
        if stdin is not None and not stdin.closed:
            try:
                stdin.flush()
            finally:
                stdin.close()

    def _drain_stdout(self) -> None:
        # Unread output can leave the transcoder blocked on a full pipe
        stdout = self.process.stdout
        if stdout is None or stdout.closed:
            return
        deadline = time.monotonic() + DRAIN_TIMEOUT
        while time.monotonic() < deadline:
            if not stdout.read1(DRAIN_CHUNK_SIZE):
                break

    def _close_stdout(self) -> None:
        if self.process.stdout is not None:
            self.process.stdout.close()

    def _terminate(self) -> None:
        self.process.terminate()
        try:
            self.process.wait(timeout=TERMINATE_WAIT)
        except subprocess.TimeoutExpired:
            logger.debug(f"[{self.name}] Transcoder ignored terminate")

    def _release(self) -> None:
        try:
            self.process.wait(timeout=TERMINATE_WAIT)
        finally:
            if self.process.stderr is not None:
                self.process.stderr.close()


# ============================================================================
# Session Factory
# ============================================================================

def start_pipe(
    registry: FeedRegistry,
    input_command: str,
    input_arguments: str | None,
    output_command: str,
    output_arguments: str | None,
    sink: Sink,
    keep_going: KeepGoing | None = None,
    name: str = "pipe",
    launcher: TranscoderLauncher = launch_transcoder
) -> PipeSession:
    """Start a transcoder fed by a shared decoder and relay its output to ``sink``.

    Args:
        registry: Decoder registry providing the input frames
        input_command: Decoder executable
        input_arguments: Decoder argument string
        output_command: Transcoder executable
        output_arguments: Transcoder argument string
        sink: Destination for transcoder stdout
        keep_going: Optional predicate checked before forwarding more data
        name: Log prefix
        launcher: Transcoder launcher (injectable for tests)

    Returns:
        Running PipeSession

    Raises:
        ProcessLaunchError: Transcoder or decoder failed to start
    """
    process = launcher(output_command, output_arguments or "")
    metrics.transcode_sessions_active.inc()
    session = PipeSession(process, sink, keep_going, name=name)

    if process.stderr is not None:
        monitor_stderr(process.stderr, prefix=f"{name} transcoder")

    try:
        session.subscription = registry.subscribe(input_command, input_arguments, session.on_frame)
    except Exception:
        session.close()
        raise

    session.relay_thread = threading.Thread(
        target=session.relay_output,
        name=f"{name}-relay",
        daemon=True
    )
    session.relay_thread.start()
    logger.info(f"[{name}] Pipe started: PID={process.pid}")
    return session
