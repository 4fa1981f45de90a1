"""
Data models for motion-triggered recording.

This module defines:
- RecordingState: Per-feed recording state
- Transition: Outcome of feeding one verdict into the hysteresis window
- MotionStatus: Snapshot of a feed's motion engine for logs and pages
"""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


# ============================================================================
# Enums
# ============================================================================

class RecordingState(str, Enum):
    """Motion engine recording state."""
    IDLE = "idle"                  # No recording sink open
    RECORDING = "recording"        # Sink open, owned by the feed's engine


class Transition(str, Enum):
    """Result of a hysteresis update."""
    NONE = "none"
    START = "start"
    STOP = "stop"


# ============================================================================
# Pydantic Models
# ============================================================================

class MotionStatus(BaseModel):
    """Current motion engine state for one feed."""

    feed: str = Field(..., description="Feed name")

    state: RecordingState = Field(default=RecordingState.IDLE)

    window: list[bool] = Field(
        default_factory=list,
        description="Change verdicts in the sliding window, oldest first"
    )

    last_change_percentage: Optional[float] = Field(
        default=None,
        ge=0.0,
        le=100.0,
        description="Changed grid samples in the last analysed frame (%)"
    )

    recording_path: Optional[str] = Field(
        default=None,
        description="File currently being recorded"
    )
