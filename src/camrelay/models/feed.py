"""Feed and server configuration models for CamRelay.

Defines Pydantic v2 models loaded once from the config file:
- FeedConfig: One camera feed with its decoder, transcoder, motion and
  snapshot settings
- ServerConfig: Listener, credentials and the feed list

Both models are frozen; runtime state (snapshot bytes, recording handles)
lives in the feeds service, never on the configuration.

Field Validation:
- Feed names: non-empty, no "/", not a reserved route, unique
- Motion window (frame count) of at least 1
- Percentages within 0-100
"""
from __future__ import annotations

from typing import Final

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

# ============================================================================
# Constants
# ============================================================================

RESERVED_FEED_NAMES: Final[frozenset[str]] = frozenset({"shutdown"})
"""Path segments handled by the server itself."""

DEFAULT_PORT: Final[int] = 8082
"""Listen port used when the config omits it or sets 0."""


# ============================================================================
# Feed Model
# ============================================================================

class FeedConfig(BaseModel):
    """One camera feed.

    The decoder (input process) must write MJPEG to stdout. Output and
    motion processes read MJPEG on stdin and write their result to stdout.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    name: str = Field(
        min_length=1,
        description="Feed name, used as the first URL path segment",
        examples=["porch"]
    )

    input_process_name: str = Field(
        min_length=1,
        description="Decoder executable",
        examples=["ffmpeg"]
    )

    input_process_arguments: str = Field(
        default="",
        description="Decoder arguments (shell quoting rules)",
        examples=["-rtsp_transport tcp -i rtsp://cam/stream -f mjpeg -q:v 5 -"]
    )

    output_process_name: str | None = Field(
        default=None,
        description="Transcoder executable for /{feed}/stream"
    )

    output_process_arguments: str = Field(default="", description="Transcoder arguments")

    output_content_type: str = Field(
        default="application/octet-stream",
        description="Content-Type of the transcoder output",
        examples=["video/mp4"]
    )

    motion_detection_percentage: float = Field(
        default=0.0,
        ge=0.0,
        le=100.0,
        description="Percentage of changed grid samples that counts as motion (0 disables)"
    )

    motion_detection_frame_count: int = Field(
        default=3,
        ge=1,
        description="Sliding window size; all must show change to start recording"
    )

    motion_detection_seconds_between_frames: float = Field(
        default=1.0,
        ge=0.0,
        description="Minimum seconds between analysed frames"
    )

    motion_color_ignore_percentage: float = Field(
        default=10.0,
        ge=0.0,
        le=100.0,
        description="Per-pixel colour change below this percentage is ignored"
    )

    motion_process_name: str | None = Field(
        default=None,
        description="Recording transcoder executable"
    )

    motion_process_arguments: str = Field(default="", description="Recording transcoder arguments")

    motion_seconds_linger: float = Field(
        default=10.0,
        ge=0.0,
        description="Seconds without motion before a recording stops"
    )

    motion_recording_file_name: str | None = Field(
        default=None,
        description="Recording path template; [name] and [strftime] tokens are expanded",
        examples=["recordings/[%Y%m%d]/[name]_[%Y%m%d %H%M%S].mp4"]
    )

    snapshot_seconds_interval: float = Field(
        default=0.0,
        ge=0.0,
        description="Seconds between snapshot captures (0 disables)"
    )

    @field_validator("name")
    @classmethod
    def validate_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Feed name must not be empty")
        if "/" in value:
            raise ValueError("Feed name must not contain '/'")
        if value in RESERVED_FEED_NAMES:
            raise ValueError(f"Feed name '{value}' is reserved")
        return value

    @model_validator(mode="after")
    def validate_motion_process(self) -> FeedConfig:
        if self.motion_detection_percentage > 0 and not self.motion_process_name:
            raise ValueError(
                f"Feed '{self.name}': motion detection requires motion_process_name"
            )
        return self

    @property
    def has_output_process(self) -> bool:
        return bool(self.output_process_name)

    @property
    def motion_enabled(self) -> bool:
        return self.motion_detection_percentage > 0

    @property
    def snapshot_enabled(self) -> bool:
        return self.snapshot_seconds_interval > 0

    @property
    def needs_capture(self) -> bool:
        """Snapshots and motion detection need an always-on decoder."""
        return self.motion_enabled or self.snapshot_enabled


# ============================================================================
# Server Model
# ============================================================================

class ServerConfig(BaseModel):
    """Complete server configuration."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    host: str = Field(default="0.0.0.0", description="Listen address")

    port: int = Field(
        default=DEFAULT_PORT,
        ge=0,
        le=65535,
        description="Listen port (0 means the default)"
    )

    feeds: list[FeedConfig] = Field(default_factory=list, description="Configured feeds")

    username: str | None = Field(default=None, description="HTTP Basic username")
    password: str | None = Field(default=None, description="HTTP Basic password")

    metrics_port: int | None = Field(
        default=None,
        ge=1,
        le=65535,
        description="Port for the Prometheus exporter (disabled when unset)"
    )

    template_dir: str | None = Field(
        default=None,
        description="Directory with index.html/feed.html overriding the bundled pages"
    )

    @field_validator("port")
    @classmethod
    def default_port(cls, value: int) -> int:
        return value or DEFAULT_PORT

    @model_validator(mode="after")
    def validate_unique_names(self) -> ServerConfig:
        seen: set[str] = set()
        for feed in self.feeds:
            if feed.name in seen:
                raise ValueError(f"Duplicate feed name: {feed.name}")
            seen.add(feed.name)
        return self

    @property
    def auth_required(self) -> bool:
        return bool(self.username) and bool(self.password)

    def get_feed(self, name: str) -> FeedConfig | None:
        for feed in self.feeds:
            if feed.name == name:
                return feed
        return None
