"""External process utilities for decoder and transcoder commands.

Commands are configured as an executable plus one argument string, the same
way they would be typed in a shell. The argument string is split with
``shlex`` and executed directly (never through a shell).

Logging Strategy:
    DEBUG - Command building, stderr lines of finished processes
    INFO  - Process launches
    WARN  - Transcoder stderr output
    ERROR - Launch failures
"""
from __future__ import annotations

import logging
import shlex
import subprocess
import threading
from typing import IO, Final

from .strings import mask_credentials

logger = logging.getLogger(__name__)

# ============================================================================
# Constants
# ============================================================================

STDERR_LOG_PREFIX: Final[str] = "process"
"""Default prefix for relayed stderr lines."""


# ============================================================================
# Exceptions
# ============================================================================

class ProcessLaunchError(RuntimeError):
    """Raised when an external process cannot be started."""

    def __init__(self, command: str, arguments: str, reason: Exception) -> None:
        self.command = command
        self.arguments = arguments
        self.reason = reason
        super().__init__(
            f"Failed to start {command} {mask_credentials(arguments)}: {reason}"
        )


# ============================================================================
# Command Building
# ============================================================================

def build_command(command: str, arguments: str | None) -> list[str]:
    """Build an argv list from an executable and its argument string.

    Args:
        command: Executable name or path
        arguments: Argument string, split with shell quoting rules

    Returns:
        Command list for subprocess.Popen()

    Example:
        >>> build_command("ffmpeg", "-i 'my cam.mjpeg' -f mjpeg -")
        ['ffmpeg', '-i', 'my cam.mjpeg', '-f', 'mjpeg', '-']
    """
    cmd = [command]
    if arguments:
        cmd.extend(shlex.split(arguments))
    masked = mask_credentials(f"{command} {arguments or ''}")
    logger.debug(f"Built command: {masked}")
    return cmd


# ============================================================================
# Process Launching
# ============================================================================

def launch_decoder(command: str, arguments: str | None) -> subprocess.Popen:
    """Start a decoder whose stdout carries MJPEG.

    stdin is closed and stderr is discarded.

    Raises:
        ProcessLaunchError: Executable missing or not startable
    """
    try:
        process = subprocess.Popen(
            build_command(command, arguments),
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.DEVNULL
        )
    except (OSError, ValueError) as e:
        logger.error(f"Decoder launch failed: {command}: {e}")
        raise ProcessLaunchError(command, arguments or "", e) from e

    logger.info(f"Decoder started: PID={process.pid} ({command})")
    return process


def launch_transcoder(command: str, arguments: str | None) -> subprocess.Popen:
    """Start a transcoder with piped stdin, stdout and stderr.

    Raises:
        ProcessLaunchError: Executable missing or not startable
    """
    try:
        process = subprocess.Popen(
            build_command(command, arguments),
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE
        )
    except (OSError, ValueError) as e:
        logger.error(f"Transcoder launch failed: {command}: {e}")
        raise ProcessLaunchError(command, arguments or "", e) from e

    logger.info(f"Transcoder started: PID={process.pid} ({command})")
    return process


# ============================================================================
# Stderr Monitoring
# ============================================================================

def monitor_stderr(stream: IO[bytes], prefix: str = STDERR_LOG_PREFIX) -> threading.Thread:
    """Relay a process's stderr to the log on a daemon thread.

    Lines mentioning errors are logged at WARNING, the rest at DEBUG. The
    thread ends when the stream reaches EOF or is closed.
    """
    def relay() -> None:
        try:
            for raw_line in iter(stream.readline, b""):
                message = raw_line.decode("utf-8", errors="replace").rstrip()
                if not message:
                    continue
                if "error" in message.lower():
                    logger.warning(f"{prefix}: {message}")
                else:
                    logger.debug(f"{prefix}: {message}")
        except (OSError, ValueError) as e:
            # Closed by the owner during shutdown
            logger.debug(f"{prefix}: stderr monitor ended: {e}")

    thread = threading.Thread(target=relay, name=f"{prefix}-stderr", daemon=True)
    thread.start()
    return thread
