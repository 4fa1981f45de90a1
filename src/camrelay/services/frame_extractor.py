"""JPEG frame extraction from an MJPEG byte stream.

Decoders write concatenated JPEG images to stdout with no container framing.
Frames are recovered by scanning for the SOI (``FF D8``) and EOI (``FF D9``)
marker pairs. Content between markers is never inspected.

Buffer Policy:
    Starts at 512 KiB, doubles whenever it fills, capped at 20 MiB. A full
    buffer at the cap is discarded (open frame dropped) and scanning starts
    over, so garbage input degrades into lost frames instead of unbounded
    memory.

Logging Strategy:
    DEBUG - Buffer growth
    WARN  - Buffer ceiling resets
"""
from __future__ import annotations

import logging
from typing import BinaryIO, Callable, Final

from .. import metrics

logger = logging.getLogger(__name__)

# ============================================================================
# Constants
# ============================================================================

JPEG_START_MARKER: Final[bytes] = b'\xff\xd8'
"""JPEG SOI (Start of Image) marker."""

JPEG_END_MARKER: Final[bytes] = b'\xff\xd9'
"""JPEG EOI (End of Image) marker."""

INITIAL_BUFFER_SIZE: Final[int] = 512 * 1024
"""Initial scratch buffer size."""

MAX_BUFFER_SIZE: Final[int] = 20 * 1024 * 1024
"""Buffer ceiling; a full buffer at this size is reset."""

FrameCallback = Callable[[bytearray, int, int], bool]
"""Called as (buffer, offset, length); returns False to stop extraction."""


# ============================================================================
# Extraction
# ============================================================================

def extract_jpegs(
    stream: BinaryIO,
    on_frame: FrameCallback,
    initial_size: int = INITIAL_BUFFER_SIZE,
    max_size: int = MAX_BUFFER_SIZE
) -> bool:
    """Extract JPEG frames from ``stream`` until it ends or the consumer stops.

    The callback receives the scratch buffer itself; the frame bytes are only
    valid until the callback returns, so consumers that keep a frame must copy
    ``buffer[offset:offset + length]``.

    Args:
        stream: Binary stream (a ``Popen.stdout`` or any buffered reader)
        on_frame: Frame callback, see ``FrameCallback``
        initial_size: Initial buffer size in bytes
        max_size: Buffer ceiling in bytes

    Returns:
        True if the stream ended, False if ``on_frame`` asked to stop
    """
    buffer = bytearray(initial_size)
    # Buffered readers return whatever one raw read produced; plain raw
    # streams only offer readinto, which has the same semantics there.
    read_into = getattr(stream, "readinto1", None) or stream.readinto
    position = 0
    frame_start = -1

    while True:
        if position == len(buffer):
            if len(buffer) < max_size:
                grown = bytearray(min(len(buffer) * 2, max_size))
                grown[:position] = buffer[:position]
                buffer = grown
                logger.debug(f"Frame buffer grown to {len(buffer)} bytes")
            else:
                logger.warning("Frame buffer full, clearing buffer and skipping frames")
                metrics.extractor_buffer_resets_total.inc()
                position = 0
                frame_start = -1

        with memoryview(buffer) as view:
            count = read_into(view[position:])
        if not count:
            return True

        # Back up one byte so a marker split across two reads is still seen
        scan = max(position - 1, 0)
        position += count

        while True:
            if frame_start < 0:
                index = buffer.find(JPEG_START_MARKER, scan, position)
                if index < 0:
                    break
                frame_start = index
                scan = index + 2
                continue

            index = buffer.find(JPEG_END_MARKER, max(scan, frame_start + 2), position)
            if index < 0:
                break

            frame_end = index + 2
            if not on_frame(buffer, frame_start, frame_end - frame_start):
                return False

            # Move the unconsumed tail to the front and rescan from zero
            remaining = position - frame_end
            buffer[:remaining] = buffer[frame_end:position]
            position = remaining
            frame_start = -1
            scan = 0
