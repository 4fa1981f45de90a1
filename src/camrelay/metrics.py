"""Prometheus metrics for observability.

Provides metrics for:
- Decoder processes (active count, frames extracted, buffer resets)
- MJPEG playback (sessions, frames served and skipped)
- Transcoding (sessions, shutdown step failures)
- Motion detection (change percentage, analysis time, recordings)
- Snapshots (captures)

Metrics are exported on a dedicated port (``metrics_port`` in the server
config) so the main HTTP surface stays reserved for feeds.

Logging Strategy:
    INFO  - Exporter startup
"""
from __future__ import annotations

import logging

from prometheus_client import (
    Counter,
    Gauge,
    Histogram,
    Info,
    start_http_server
)

from . import __version__

logger = logging.getLogger(__name__)

# ============================================================================
# Application Info
# ============================================================================

app_info = Info("camrelay_app", "Application information")
app_info.info({
    "version": __version__,
    "name": "CamRelay",
    "description": "MJPEG camera relay with motion recording"
})

# ============================================================================
# Decoder Process Metrics
# ============================================================================

decoder_processes_active = Gauge("decoder_processes_active", "Running decoder processes")
decoder_launches_total = Counter("decoder_launches_total", "Decoder launch attempts", ["status"])
frames_extracted_total = Counter("frames_extracted_total", "JPEG frames extracted from decoders")

extractor_buffer_resets_total = Counter(
    "extractor_buffer_resets_total",
    "Frame buffer resets after hitting the size ceiling"
)

# ============================================================================
# MJPEG Playback Metrics
# ============================================================================

playback_sessions_active = Gauge("playback_sessions_active", "Active MJPEG sessions")
playback_sessions_total = Counter("playback_sessions_total", "MJPEG sessions started", ["feed"])
playback_frames_total = Counter("playback_frames_total", "MJPEG frames served", ["feed"])

playback_frames_skipped_total = Counter(
    "playback_frames_skipped_total",
    "MJPEG frames skipped",
    ["feed", "reason"]  # busy, fps
)

playback_stalls_total = Counter("playback_stalls_total", "MJPEG sessions closed as stalled", ["feed"])

# ============================================================================
# Transcoding Metrics
# ============================================================================

transcode_sessions_active = Gauge("transcode_sessions_active", "Active transcoder pipe sessions")

pipe_shutdown_errors_total = Counter(
    "pipe_shutdown_errors_total",
    "Failed pipe shutdown steps",
    ["step"]
)

# ============================================================================
# Motion Detection Metrics
# ============================================================================

motion_change_percent = Gauge(
    "motion_change_percent",
    "Percentage of sampled grid points changed in the last analysed frame",
    ["feed"]
)

motion_analysis_duration_seconds = Histogram(
    "motion_analysis_duration_seconds",
    "Decode + compare time per sampled frame",
    ["feed"],
    buckets=(0.001, 0.005, 0.010, 0.015, 0.020, 0.025, 0.050, 0.100, 0.200)
)

recordings_active = Gauge("recordings_active", "Recordings in progress")
recordings_started_total = Counter("recordings_started_total", "Recordings started", ["feed"])

# ============================================================================
# Snapshot Metrics
# ============================================================================

snapshots_captured_total = Counter("snapshots_captured_total", "Snapshots captured", ["feed"])

# ============================================================================
# Metrics Export
# ============================================================================

def start_metrics_server(port: int, host: str = "0.0.0.0") -> None:
    """Expose the default registry on a separate HTTP port."""
    start_http_server(port, addr=host)
    logger.info(f"Metrics exporter listening on {host}:{port}")
