"""
Unit tests for the shared decoder registry.

Uses FakeLauncher/FakeProcess from conftest so frames are fed by the test
and no real processes start.
"""

import threading

import pytest

from camrelay.services.feed_registry import FeedRegistry, ProcessKey
from camrelay.utils.process import ProcessLaunchError
from conftest import make_frame, wait_until


class Collector:
    """Subscription handler recording frames; returns ``keep`` after each."""

    def __init__(self, keep=True, limit=None):
        self.frames = []
        self.ended = 0
        self.keep = keep
        self.limit = limit
        self.event = threading.Event()

    def __call__(self, frame):
        if frame is None:
            self.ended += 1
            self.event.set()
            return False
        self.frames.append(frame)
        if self.limit is not None and len(self.frames) >= self.limit:
            self.event.set()
            return False
        return self.keep


@pytest.fixture
def registry(fake_launcher):
    registry = FeedRegistry(launcher=fake_launcher)
    yield registry
    registry.shutdown(timeout=2)


class TestProcessKey:
    """Tests for ProcessKey."""

    def test_string_form_joins_command_and_arguments(self):
        """Should render as command + space + arguments."""
        assert str(ProcessKey("ffmpeg", "-i x -")) == "ffmpeg -i x -"

    def test_equal_keys_hash_equal(self):
        assert {ProcessKey("a", "b"): 1}[ProcessKey("a", "b")] == 1


class TestSubscribe:
    """Tests for FeedRegistry.subscribe()."""

    def test_launches_one_process_per_key(self, registry, fake_launcher):
        """Should share one decoder among subscribers of the same key."""
        registry.subscribe("dec", "-a", Collector())
        registry.subscribe("dec", "-a", Collector())

        assert len(fake_launcher.processes) == 1
        assert registry.subscriber_count("dec", "-a") == 2
        assert registry.active_keys() == [ProcessKey("dec", "-a")]

    def test_different_arguments_launch_separate_processes(self, registry, fake_launcher):
        """Should key processes on command and arguments together."""
        registry.subscribe("dec", "-a", Collector())
        registry.subscribe("dec", "-b", Collector())

        assert len(fake_launcher.processes) == 2

    def test_concurrent_first_subscribers_launch_once(self, registry, fake_launcher):
        """Should never start two decoders for one key."""
        barrier = threading.Barrier(8)

        def subscribe():
            barrier.wait()
            registry.subscribe("dec", "", Collector())

        threads = [threading.Thread(target=subscribe) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(fake_launcher.processes) == 1
        assert registry.subscriber_count("dec", "") == 8

    def test_delivers_frames_to_all_subscribers_in_order(self, registry, fake_launcher):
        """Should hand every frame to each subscriber, in decode order."""
        first = Collector(limit=3)
        second = Collector(limit=3)
        registry.subscribe("dec", "", first)
        registry.subscribe("dec", "", second)

        fake_launcher.processes[0].feed(make_frame(b"1"), make_frame(b"2"), make_frame(b"3"))

        assert first.event.wait(5) and second.event.wait(5)
        expected = [make_frame(b"1"), make_frame(b"2"), make_frame(b"3")]
        assert first.frames == expected
        assert second.frames == expected

    def test_subscribers_share_one_immutable_copy(self, registry, fake_launcher):
        """Should copy each frame out of the read buffer once, as bytes."""
        first = Collector(limit=2)
        second = Collector(limit=2)
        registry.subscribe("dec", "", first)
        registry.subscribe("dec", "", second)
        large = make_frame(b"x" * 200_000)

        fake_launcher.processes[0].feed(large, make_frame(b"small"))

        assert first.event.wait(5) and second.event.wait(5)
        assert first.frames == [large, make_frame(b"small")]
        assert all(type(frame) is bytes for frame in first.frames)
        assert all(a is b for a, b in zip(first.frames, second.frames))

    def test_launch_failure_raises_and_leaves_no_entry(self, registry, fake_launcher):
        """Should raise ProcessLaunchError to the caller and not register the key."""
        fake_launcher.fail = True

        with pytest.raises(ProcessLaunchError):
            registry.subscribe("missing", "", Collector())

        assert not registry.is_running("missing", "")

    def test_none_arguments_equal_empty(self, registry, fake_launcher):
        registry.subscribe("dec", None, Collector())
        registry.subscribe("dec", "", Collector())

        assert len(fake_launcher.processes) == 1


class TestTeardown:
    """Tests for process teardown when subscribers leave or the stream ends."""

    def test_kills_process_when_last_subscriber_leaves(self, registry, fake_launcher):
        """Should kill and remove the decoder once every callback returned False."""
        handler = Collector(limit=1)
        registry.subscribe("dec", "", handler)
        process = fake_launcher.processes[0]

        process.feed(make_frame())

        assert wait_until(lambda: not registry.is_running("dec", ""))
        assert process.killed
        assert handler.ended == 0

    def test_relaunches_after_removal(self, registry, fake_launcher):
        """Should start a fresh decoder for a key whose entry was removed."""
        registry.subscribe("dec", "", Collector(limit=1))
        fake_launcher.processes[0].feed(make_frame())
        assert wait_until(lambda: not registry.is_running("dec", ""))

        registry.subscribe("dec", "", Collector())

        assert len(fake_launcher.processes) == 2
        assert registry.is_running("dec", "")

    def test_stream_end_sends_sentinel_once(self, registry, fake_launcher):
        """Should call each remaining subscriber with None exactly once."""
        first = Collector()
        second = Collector()
        registry.subscribe("dec", "", first)
        registry.subscribe("dec", "", second)

        fake_launcher.processes[0].feed(make_frame())
        fake_launcher.processes[0].end()

        assert first.event.wait(5) and second.event.wait(5)
        assert wait_until(lambda: not registry.is_running("dec", ""))
        assert first.ended == 1
        assert second.ended == 1
        assert first.frames == [make_frame()]

    def test_failing_subscriber_is_removed_others_continue(self, registry, fake_launcher):
        """Should drop a subscriber that raises and keep serving the rest."""
        survivor = Collector(limit=2)

        def broken(frame):
            raise RuntimeError("boom")

        registry.subscribe("dec", "", broken)
        registry.subscribe("dec", "", survivor)

        fake_launcher.processes[0].feed(make_frame(b"1"))
        assert wait_until(lambda: registry.subscriber_count("dec", "") == 1)
        fake_launcher.processes[0].feed(make_frame(b"2"))

        assert survivor.event.wait(5)
        assert survivor.frames == [make_frame(b"1"), make_frame(b"2")]

    def test_cancelled_subscription_receives_no_more_frames(self, registry, fake_launcher):
        """Should stop delivering to a cancelled handle before the next frame."""
        cancelled = Collector()
        active = Collector(limit=1)
        subscription = registry.subscribe("dec", "", cancelled)
        registry.subscribe("dec", "", active)

        subscription.cancel()
        fake_launcher.processes[0].feed(make_frame())

        assert active.event.wait(5)
        assert cancelled.frames == []
        assert subscription.cancelled

    def test_shutdown_kills_all_and_notifies(self, fake_launcher):
        """Should kill every decoder and deliver the end sentinel."""
        registry = FeedRegistry(launcher=fake_launcher)
        first = Collector()
        second = Collector()
        registry.subscribe("a", "", first)
        registry.subscribe("b", "", second)

        registry.shutdown(timeout=5)

        assert all(process.killed for process in fake_launcher.processes)
        assert first.ended == 1 and second.ended == 1
        assert registry.active_keys() == []
