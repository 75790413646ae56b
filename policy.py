#!/usr/bin/env python3
"""
Entry policy: age limits and the killfile.

A killfile is a list of case-insensitive regular expressions, one per line.
They are joined into a single alternation and matched against an entry's
title, author and the plain-text rendering of its body.
"""

import os
import re
import time
from typing import Iterable, List, Optional

from bs4 import BeautifulSoup

from config import get_logger
from errors import ConfigurationError
from models import FeedEntry, PolicyDecision
from utils import host_matches, read_list_file

logger = get_logger("policy")

SECONDS_PER_DAY = 60 * 60 * 24

_NON_ASCII_RE = re.compile(r'[^\x00-\x7e]')


def compile_kill_pattern(lines: Iterable[str]) -> Optional[re.Pattern]:
    """Join killfile lines into one case-insensitive alternation.

    Returns None when there are no patterns.

    Raises:
        ConfigurationError: If the combined expression does not compile
    """
    parts: List[str] = [line.strip() for line in lines if line.strip() and not line.lstrip().startswith('#')]
    if not parts:
        return None
    try:
        return re.compile('|'.join(parts), re.I | re.M)
    except re.error as e:
        raise ConfigurationError(f"invalid killfile pattern: {e}") from e


def load_kill_pattern(file_path: str) -> Optional[re.Pattern]:
    """Read and compile a killfile; a missing file means no filtering."""
    if not os.path.exists(file_path):
        logger.debug(f"No killfile at {file_path}")
        return None
    try:
        lines = read_list_file(file_path)
    except OSError as e:
        raise ConfigurationError(f"{file_path}: {e}") from e
    pattern = compile_kill_pattern(lines)
    if pattern is not None:
        logger.info(f"Loaded {len(lines)} killfile lines from {file_path}")
    return pattern


def html_to_text(body_html: str) -> str:
    """Plain text of an entry body with non-ASCII characters blanked out."""
    if not body_html:
        return ""
    text = BeautifulSoup(body_html, 'html.parser').get_text()
    return _NON_ASCII_RE.sub(' ', text)


def evaluate(
    entry: FeedEntry,
    kill_pattern: Optional[re.Pattern],
    now: Optional[float] = None,
    max_age_days: float = 16.0,
    feed_url: Optional[str] = None,
    exempt_sites: Iterable[str] = (),
) -> PolicyDecision:
    """Decide whether an entry is killed, stale, or acceptable.

    An entry without a usable date is treated as published now, so it is
    never stale. A future date counts as stale unless the feed's host is
    listed in exempt_sites.
    """
    now = time.time() if now is None else now
    published = entry.published_at if entry.published_at is not None else now
    age_days = (now - published) / SECONDS_PER_DAY

    future = age_days < 0
    if future and feed_url and host_matches(feed_url, list(exempt_sites)):
        future = False
    stale = age_days > max_age_days or future

    matched_text = None
    if kill_pattern is not None:
        for field in (entry.title, entry.author, html_to_text(entry.body_html)):
            if not field:
                continue
            match = kill_pattern.search(field)
            if match:
                matched_text = match.group(0)
                break

    return PolicyDecision(
        age_days=age_days,
        killed=matched_text is not None,
        stale=stale,
        matched_text=matched_text,
    )
