#!/usr/bin/env python3
"""
Embedded URL scanning and per-document candidate building.

scan() pulls every http(s) URL out of an entry body without parsing it as
HTML. build_candidates() runs a whole extracted document through scanning,
canonicalization, the site drop rules, per-feed de-duplication and the entry
policy, and reports what was kept and why the rest was dropped.
"""

import re
import time
from typing import Callable, Iterable, List, Optional

from canonical import classify
from config import get_logger
from models import Candidate, DropReason, FeedDocument, FeedEntry, FeedScan
from policy import evaluate

logger = get_logger("scanner")

_PROTOCOL_RELATIVE_RE = re.compile(r'''(["'])(//)''')
_MISSING_SPACE_RE = re.compile(r'([a-z\d])(https?://)', re.I)
_URL_RE = re.compile(r'''\b(https?:[^'"\s<>]+)''')
_FRAGMENT_RE = re.compile(r'#.*$', re.S)


def scan(body_html: str) -> List[str]:
    """Return every embedded http(s) URL in document order, duplicates included.

    Protocol-relative references ("//host/...") inside attribute quotes get
    a synthetic http: scheme, and URLs glued onto a preceding word are split
    off from it.
    """
    if not body_html:
        return []
    text = _PROTOCOL_RELATIVE_RE.sub(r'\1http:\2', body_html)
    text = _MISSING_SPACE_RE.sub(r'\1 \2', text)
    return _URL_RE.findall(text)


def strip_fragment(url: str) -> str:
    return _FRAGMENT_RE.sub('', url)


def _is_excluded(url: str, excluded_sites: Iterable[str]) -> bool:
    return any(re.search(rf'\b{re.escape(site)}\.com/', url, re.I) for site in excluded_sites)


def _describe(entry: FeedEntry) -> str:
    return f"{entry.guid or '<undef>'} \"{entry.author or ''}\" \"{entry.title}\""


def build_candidates(
    document: FeedDocument,
    feed_url: str,
    kill_pattern: Optional[re.Pattern] = None,
    max_age_days: float = 16.0,
    now: Optional[float] = None,
    excluded_sites: Iterable[str] = ("twitter",),
    exempt_sites: Iterable[str] = (),
    body_for: Optional[Callable[[FeedEntry], str]] = None,
) -> FeedScan:
    """Turn one extracted document into a FeedScan.

    Args:
        document: Extractor output for one fetched body
        feed_url: URL the body was fetched from
        kill_pattern: Compiled killfile pattern, or None
        max_age_days: Entries older than this are stale
        now: Reference time (defaults to the current time)
        excluded_sites: Host names whose canonical URLs are never kept
        exempt_sites: Hosts whose feeds may carry future-dated entries
        body_for: Optional replacement for an entry's body, used for feeds
            whose video embeds only appear on the linked page

    Every distinct recognized URL counts towards `total`, including those of
    killed and stale entries. Only accepted ones become candidates.
    """
    now = time.time() if now is None else now
    excluded_sites = list(excluded_sites)
    exempt_sites = list(exempt_sites)
    result = FeedScan(feed_url=feed_url, title=document.title)
    seen = set()

    for entry in document.entries:
        decision = evaluate(entry, kill_pattern, now, max_age_days, feed_url, exempt_sites)
        if decision.killed:
            logger.debug(f"  killfile {_describe(entry)} \"{decision.matched_text}\"")
        elif decision.stale:
            logger.debug(f"  skipping {_describe(entry)} ({int(decision.age_days)} days old)")
        else:
            logger.debug(f"  checking {_describe(entry)}")

        body = body_for(entry) if body_for else entry.body_html
        if not body:
            logger.debug(f"{document.title}: no body for \"{entry.title}\"")
            continue

        for raw in scan(body):
            canonical, reason = classify(strip_fragment(raw))
            if reason is None and _is_excluded(canonical.url, excluded_sites):
                reason = DropReason.EXCLUDED_SITE
            if reason is None and canonical.url in seen:
                reason = DropReason.DUPLICATE
            if reason is not None:
                result.dropped[reason] += 1
                continue

            seen.add(canonical.url)
            result.total += 1

            if not decision.accepted:
                reason = DropReason.KILLED if decision.killed else DropReason.STALE
                result.dropped[reason] += 1
                logger.debug(f"    {'killfile' if decision.killed else 'skipping'} \"{canonical.url}\"")
                continue

            result.candidates.append(Candidate(
                canonical_url=canonical,
                source_entry=entry,
                age_days=decision.age_days,
                killed=decision.killed,
                stale=decision.stale,
            ))
            logger.debug(f"    found {canonical.url}")

    return result


def dump_entries(document: FeedDocument) -> str:
    """Render a document's entries one tag per line for a no-URLs warning."""
    text = "\n".join(entry.body_html for entry in document.entries)
    text = text.replace("<", "\n<")
    return text.replace("\n</", "</")
