"""
Unit tests for JPEG extraction from MJPEG byte streams.

Covers chunking invariance, markers split across reads, truncated tails,
consumer stop, buffer growth and the buffer ceiling reset.
"""

import pytest

from camrelay.services.frame_extractor import extract_jpegs
from conftest import ChunkedReader, make_frame


def collect(chunks, **kwargs):
    frames = []

    def on_frame(buffer, offset, length):
        frames.append(bytes(buffer[offset:offset + length]))
        return True

    ended = extract_jpegs(ChunkedReader(chunks), on_frame, **kwargs)
    return ended, frames


def split(data, size):
    return [data[i:i + size] for i in range(0, len(data), size)]


STREAM_FRAMES = [make_frame(b"first"), make_frame(b"second frame"), make_frame(b"3")]
STREAM = b"garbage" + STREAM_FRAMES[0] + b"\r\n--x\r\n" + STREAM_FRAMES[1] + STREAM_FRAMES[2] + b"tail"


class TestExtractJpegs:
    """Tests for extract_jpegs()."""

    def test_extracts_single_frame(self):
        """Should deliver one frame delimited by SOI and EOI."""
        ended, frames = collect([make_frame(b"abc")])

        assert ended is True
        assert frames == [make_frame(b"abc")]

    @pytest.mark.parametrize("chunk_size", [1, 2, 3, 5, 8, 64, len(STREAM)])
    def test_output_independent_of_chunking(self, chunk_size):
        """Should produce the same frames however the bytes are split."""
        ended, frames = collect(split(STREAM, chunk_size), initial_size=16)

        assert ended is True
        assert frames == STREAM_FRAMES

    def test_marker_split_across_reads(self):
        """Should recognise FF|D8 and FF|D9 arriving in separate reads."""
        frame = make_frame(b"payload")
        chunks = [b"xx\xff", b"\xd8payload\xff", b"\xd9"]

        _, frames = collect(chunks)

        assert frames == [frame]

    def test_truncated_tail_produces_no_frame(self):
        """Should not emit a frame whose EOI never arrives."""
        ended, frames = collect([make_frame(b"a"), b"\xff\xd8incomplete"])

        assert ended is True
        assert frames == [make_frame(b"a")]

    def test_no_spurious_frame_at_end_of_stream(self):
        """Should call back exactly once per complete frame."""
        data = b"".join(make_frame(str(i).encode()) for i in range(10))

        _, frames = collect(split(data, 7))

        assert len(frames) == 10

    def test_returns_false_when_consumer_stops(self):
        """Should stop extracting as soon as the callback returns False."""
        seen = []

        def on_frame(buffer, offset, length):
            seen.append(bytes(buffer[offset:offset + length]))
            return False

        ended = extract_jpegs(ChunkedReader([make_frame(b"1") + make_frame(b"2")]), on_frame)

        assert ended is False
        assert seen == [make_frame(b"1")]

    def test_empty_stream(self):
        """Should return True with no callbacks for an empty stream."""
        ended, frames = collect([])

        assert ended is True
        assert frames == []

    def test_grows_buffer_for_large_frames(self):
        """Should grow the buffer past its initial size to fit a frame."""
        frame = make_frame(b"x" * 500)

        _, frames = collect(split(frame, 10), initial_size=8, max_size=1024)

        assert frames == [frame]

    def test_resets_buffer_at_ceiling(self):
        """Should drop an oversized frame and keep extracting afterwards."""
        chunks = [
            b"\xff\xd8" + b"x" * 6,       # opens a frame, fills the 8 byte buffer
            b"x" * 8,                     # grows to the 16 byte ceiling, full
            b"\xff\xd9" + make_frame(b"ok"),
        ]

        ended, frames = collect(chunks, initial_size=8, max_size=16)

        assert ended is True
        assert frames == [make_frame(b"ok")]

    def test_end_marker_without_start_is_ignored(self):
        """Should ignore EOI markers outside a frame."""
        _, frames = collect([b"\xff\xd9junk" + make_frame(b"real")])

        assert frames == [make_frame(b"real")]
