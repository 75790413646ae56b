#!/usr/bin/env python3
"""
Data model for the video feed downloader.

Every value that flows between components is defined here: canonical URLs,
parsed feed entries, policy decisions, per-feed scan results and the explicit
run options that replace global verbosity/debug flags.
"""

from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional


class Site(str, Enum):
    """Video hosts with a canonical URL form."""
    YOUTUBE = "youtube"
    VIMEO = "vimeo"
    TUMBLR = "tumblr"
    VINE = "vine"
    INSTAGRAM = "instagram"
    TWITTER = "twitter"
    UNKNOWN = "unknown"


class DropReason(str, Enum):
    """Why an embedded URL was not turned into a download candidate."""
    UNRECOGNIZED = "unrecognized"    # no canonicalization rule matched
    PLAYLIST = "playlist"            # canonical form is a playlist, not a video
    BOGUS_ID = "bogus_id"            # recognized host, malformed video id
    EXCLUDED_SITE = "excluded_site"  # host is configured as excluded
    DUPLICATE = "duplicate"          # already seen earlier in the same feed
    KILLED = "killed"                # entry matched the killfile
    STALE = "stale"                  # entry too old, or dated in the future


@dataclass(frozen=True)
class CanonicalUrl:
    url: str
    id: Optional[str]
    site: Site
    is_playlist: bool = False


@dataclass(frozen=True)
class FeedEntry:
    """One item of a feed, after CDATA stripping and entity decoding.

    `body_html` still contains markup; it is prefixed with the guid and link
    so that links that only appear in metadata are scanned too.
    """
    title: str = ""
    author: Optional[str] = None
    link: Optional[str] = None
    guid: Optional[str] = None
    published_at: Optional[float] = None
    body_html: str = ""
    published_raw: Optional[str] = None


@dataclass(frozen=True)
class FeedDocument:
    title: str
    entries: List[FeedEntry]


@dataclass(frozen=True)
class PolicyDecision:
    age_days: float
    killed: bool
    stale: bool
    matched_text: Optional[str] = None

    @property
    def accepted(self) -> bool:
        return not (self.killed or self.stale)


@dataclass(frozen=True)
class Candidate:
    canonical_url: CanonicalUrl
    source_entry: FeedEntry
    age_days: float
    killed: bool = False
    stale: bool = False

    @property
    def url(self) -> str:
        return self.canonical_url.url


class ResolutionKind(str, Enum):
    FEED = "feed"            # a syndication feed, fetched as-is
    PLAYLISTS = "playlists"  # a channel's playlist listing, expanded into playlist feeds
    PAGE = "page"            # an HTML page with no feed equivalent


@dataclass(frozen=True)
class Resolution:
    url: str
    kind: ResolutionKind = ResolutionKind.FEED


@dataclass(frozen=True)
class FetchedFeed:
    """A fetched body together with the URL it actually came from."""
    url: str
    body: bytes


@dataclass
class FeedScan:
    """Merged scan result for one configured feed.

    `total` counts every distinct recognized URL, including those from killed
    or stale entries; `candidates` holds only the ones to download.
    """
    feed_url: str
    title: str = ""
    total: int = 0
    candidates: List[Candidate] = field(default_factory=list)
    dropped: Counter = field(default_factory=Counter)

    def merge(self, other: "FeedScan") -> None:
        """Fold a sub-feed result into this one (first non-empty title wins)."""
        if not self.title and other.title:
            self.title = other.title
        self.total += other.total
        self.candidates.extend(other.candidates)
        self.dropped.update(other.dropped)


@dataclass(frozen=True)
class RunOptions:
    """Command line options threaded through every component call."""
    verbose: int = 0
    debug: int = 0
    bwlimit: Optional[str] = None
    max_size: Optional[str] = None

    @property
    def dry_run(self) -> bool:
        return self.debug > 0


@dataclass
class RunSummary:
    feeds: int = 0
    found: int = 0
    new: int = 0
    downloaded: int = 0
    failed: int = 0
