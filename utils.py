#!/usr/bin/env python3
"""
Utility classes and functions shared across the video feed modules.

This module contains the retry helper used by the fetcher, list-file reading
for .feeds and .killfile, and small text helpers.
"""

from asyncio import sleep
from typing import List
from urllib.parse import urlparse
import re

from config import get_logger

# Module-specific logger
logger = get_logger("utils")

def read_list_file(file_path: str) -> List[str]:
    """Read a one-entry-per-line file, skipping blank and comment lines.

    Only whole-line '#' comments are recognized, since URLs and regular
    expressions may contain '#' themselves.

    Args:
        file_path: Path of the file to read

    Returns:
        The stripped non-empty lines, in file order.

    Raises:
        OSError: If the file cannot be opened or read
    """
    entries = []
    with open(file_path, 'r', encoding='utf-8', errors='replace') as f:
        for line in f:
            line = line.strip()
            if line and not line.startswith('#'):
                entries.append(line)
    return entries


def url_host(url: str) -> str:
    """Return the lower-cased host of a URL, or '' when it has none."""
    try:
        return (urlparse(url).hostname or '').lower()
    except ValueError:
        return ''


def host_matches(url: str, sites: List[str]) -> bool:
    """True when any configured site name occurs in the URL's host."""
    host = url_host(url)
    return bool(host) and any(site and site in host for site in sites)


def flatten_newlines(text: str) -> str:
    """Collapse line breaks so a page body reads as one line of markup."""
    return re.sub(r'[\r\n]+', ' ', text)


def format_duration(seconds: float) -> str:
    """Format a duration in seconds to a human-readable string.

    Args:
        seconds: Duration in seconds

    Returns:
        Formatted duration string (e.g., "1h 23m 45s")
    """
    if seconds < 0:
        return "0s"

    hours = int(seconds // 3600)
    minutes = int((seconds % 3600) // 60)
    secs = int(seconds % 60)

    parts = []
    if hours > 0:
        parts.append(f"{hours}h")
    if minutes > 0:
        parts.append(f"{minutes}m")
    if secs > 0 or not parts:
        parts.append(f"{secs}s")

    return " ".join(parts)


class RetryHelper:
    """Helper class for retry loops with linear backoff.

    Attempt N (0-based) waits base_delay + N seconds, so five retries with the
    default base spend 2+3+4+5+6 seconds sleeping.
    """

    def __init__(self, max_retries: int = 5, base_delay: float = 2.0, max_delay: float = 60.0):
        """Initialize the retry helper.

        Args:
            max_retries: Maximum number of retry attempts after the first try
            base_delay: Delay in seconds before the first retry
            max_delay: Maximum delay in seconds between retries
        """
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay

    @property
    def attempts(self) -> int:
        return self.max_retries + 1

    def calculate_delay(self, attempt: int) -> float:
        """Calculate the delay after a failed attempt (0-based)."""
        return min(self.base_delay + attempt, self.max_delay)

    async def sleep_for_attempt(self, attempt: int):
        """Sleep for the calculated delay for the given attempt."""
        delay = self.calculate_delay(attempt)
        if delay > 0:
            logger.debug(f"Retry delay: sleeping for {delay:.2f} seconds")
            await sleep(delay)
