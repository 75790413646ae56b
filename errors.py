#!/usr/bin/env python3
"""Common error types shared across modules.

Provides shared lightweight exceptions to avoid circular imports. Transient
failures (a single fetch or download) are never raised past the component
that saw them; only the conditions below end a run.
"""

from typing import Optional


class VideoFeedsError(Exception):
    """Base class for errors that end a run with a non-zero exit status."""


class ConfigurationError(VideoFeedsError):
    """Raised for a missing feed directory, an empty .feeds file, unreadable
    files, a broken killfile pattern or a missing downloader command."""


class HistoryLockedError(VideoFeedsError):
    """Raised when another process holds the lock on the history file.

    Attributes:
        path: The locked history file.
        age_seconds: Seconds since the current holder acquired the lock.
        quiet: True when the lock is young enough that the caller should
            exit without reporting anything.
    """

    def __init__(self, path: str, age_seconds: float, quiet: bool = False):
        self.path = path
        self.age_seconds = age_seconds
        self.quiet = quiet
        super().__init__(f"already locked for {format_lock_age(age_seconds)}: {path}")


class DownloadAbortedError(VideoFeedsError):
    """Raised when the downloader was killed by a signal (including a crash
    that dumped core).

    Attributes:
        command: The downloader executable.
        signal: The terminating signal number, if known.
    """

    def __init__(self, command: str, signal: Optional[int] = None):
        self.command = command
        self.signal = signal
        super().__init__(f"{command}: signal {signal}!")


def format_lock_age(age_seconds: float) -> str:
    """Render a lock age as H:MM:SS."""
    age = max(int(age_seconds), 0)
    return f"{age // 3600}:{(age // 60) % 60:02d}:{age % 60:02d}"


__all__ = [
    "VideoFeedsError",
    "ConfigurationError",
    "HistoryLockedError",
    "DownloadAbortedError",
    "format_lock_age",
]
