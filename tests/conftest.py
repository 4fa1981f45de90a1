"""Shared fixtures: in-memory stand-ins for decoder and transcoder processes."""

import io
import itertools
import queue
import threading
import time

import pytest

from camrelay.utils.process import ProcessLaunchError


SOI = b"\xff\xd8"
EOI = b"\xff\xd9"


def make_frame(payload: bytes = b"frame") -> bytes:
    """JPEG-delimited byte range; payload must not contain FF D8 / FF D9."""
    return SOI + payload + EOI


class ChunkedReader(io.RawIOBase):
    """Raw stream returning one predefined chunk (or part of it) per read."""

    def __init__(self, chunks):
        self._chunks = [bytes(c) for c in chunks]

    def readable(self):
        return True

    def readinto(self, b):
        if not self._chunks:
            return 0
        chunk = self._chunks.pop(0)
        n = min(len(b), len(chunk))
        b[:n] = chunk[:n]
        if n < len(chunk):
            self._chunks.insert(0, chunk[n:])
        return n


class QueueReader(io.RawIOBase):
    """Raw stream fed from another thread; blocks until data or end()."""

    def __init__(self):
        self._queue = queue.Queue()
        self._pending = b""
        self._ended = False

    def readable(self):
        return True

    def feed(self, data: bytes) -> None:
        self._queue.put(bytes(data))

    def end(self) -> None:
        self._queue.put(b"")

    def readinto(self, b):
        if not self._pending:
            if self._ended:
                return 0
            try:
                data = self._queue.get(timeout=10)
            except queue.Empty:
                raise OSError("fake stream timed out")
            if not data:
                self._ended = True
                return 0
            self._pending = data
        n = min(len(b), len(self._pending))
        b[:n] = self._pending[:n]
        self._pending = self._pending[n:]
        return n


class RecordingStdin(io.BytesIO):
    """Transcoder stdin that echoes writes to stdout and ends stdout on close."""

    def __init__(self, stdout_raw: QueueReader, echo: bool = True):
        super().__init__()
        self.stdout_raw = stdout_raw
        self.echo = echo
        self.written = []

    def write(self, data):
        self.written.append(bytes(data))
        if self.echo:
            self.stdout_raw.feed(data)
        return len(data)

    def close(self):
        if not self.closed:
            self.stdout_raw.end()
        super().close()


class FakeProcess:
    """Popen stand-in with a controllable stdout."""

    _pids = itertools.count(1000)

    def __init__(self, command, arguments, transcoder=False):
        self.command = command
        self.arguments = arguments
        self.pid = next(self._pids)
        self.raw_stdout = QueueReader()
        self.stdout = io.BufferedReader(self.raw_stdout) if transcoder else self.raw_stdout
        self.stdin = RecordingStdin(self.raw_stdout) if transcoder else None
        self.stderr = None
        self.returncode = None
        self.killed = False
        self.terminated = False

    def feed(self, *frames: bytes) -> None:
        for frame in frames:
            self.raw_stdout.feed(frame)

    def end(self) -> None:
        self.raw_stdout.end()

    def kill(self):
        self.killed = True
        self.raw_stdout.end()

    def terminate(self):
        self.terminated = True
        self.raw_stdout.end()

    def wait(self, timeout=None):
        self.returncode = -9
        return self.returncode

    def poll(self):
        return self.returncode


class FakeLauncher:
    """Callable launcher recording every process it starts."""

    def __init__(self, transcoder=False):
        self.transcoder = transcoder
        self.processes = []
        self.fail = False
        self.on_launch = None

    def __call__(self, command, arguments):
        if self.fail:
            raise ProcessLaunchError(command, arguments, FileNotFoundError(command))
        process = FakeProcess(command, arguments, transcoder=self.transcoder)
        if self.on_launch is not None:
            self.on_launch(process)
        self.processes.append(process)
        return process


def wait_until(predicate, timeout=5.0, interval=0.01):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start=1000.0):
        self.now = start
        self._lock = threading.Lock()

    def __call__(self):
        with self._lock:
            return self.now

    def advance(self, seconds):
        with self._lock:
            self.now += seconds


@pytest.fixture
def fake_launcher():
    return FakeLauncher()


@pytest.fixture
def fake_transcoder_launcher():
    return FakeLauncher(transcoder=True)


@pytest.fixture
def clock():
    return FakeClock()
