#!/usr/bin/env python3
"""
URL canonicalization for video links.

Video hosts accept many historically accumulated spellings for the same
video. This module collapses them into one canonical URL so that history
lookups work regardless of how a feed happened to link the video.

Canonicalization is an ordered list of (matcher, rewriter) rules evaluated
first-match-wins. Patterns overlap (a playlist link is also a watch link), so
the order matters. New spellings are added as new rules; existing rules are
never rewritten, since that would silently change URLs already stored in
history files.
"""

import re
from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple
from urllib.parse import unquote_plus

from models import CanonicalUrl, DropReason, Site


@dataclass(frozen=True)
class Rule:
    name: str
    pattern: re.Pattern
    rewrite: Callable[[re.Match], Optional[CanonicalUrl]]

    def apply(self, url: str) -> Tuple[bool, Optional[CanonicalUrl]]:
        match = self.pattern.search(url)
        if not match:
            return False, None
        return True, self.rewrite(match)


def url_unquote(value: str) -> str:
    """Percent-decode a query value, treating '+' as a space."""
    return unquote_plus(value)


# ----------------------------------------------------------------------------
# Pre-normalization
# ----------------------------------------------------------------------------

_SCHEME_RE = re.compile(r'^https?://', re.I)

# (pattern, replacement) pairs for shorteners and mirror domains
_ALIASES = [
    (re.compile(r'^https?://([a-z]+\.)?youtu\.be/', re.I), 'https://youtube.com/v/'),
    (re.compile(r'^https?://([a-z]+\.)?x\.com/', re.I), 'https://twitter.com/'),
    (re.compile(r'^https?://(www\.)?instagr\.am/', re.I), 'https://www.instagram.com/'),
    # "/channels/foo#12345" => "/12345", so that we get a page with the video title
    (re.compile(r'^(https?://([a-z]+\.)?vimeo\.com/)[^\d].*#(\d+)$', re.S), r'\1\3'),
]


def normalize(raw: str) -> str:
    """Apply the site-independent rewrites that precede rule matching."""
    url = raw.strip()

    # Doubly escaped ampersands are common in feeds that escape HTML twice
    url = url.replace('&amp;', '&')
    url = url.replace('&amp;', '&')

    if not _SCHEME_RE.match(url):
        url = f"https://{url}"

    for pattern, replacement in _ALIASES:
        url = pattern.sub(replacement, url, count=1)

    return re.sub(r'^http:', 'https:', url, count=1, flags=re.I)


# ----------------------------------------------------------------------------
# Rewriters
# ----------------------------------------------------------------------------

def _youtube_playlist(m: re.Match) -> CanonicalUrl:
    pid = m.group(2)
    return CanonicalUrl(f"https://www.youtube.com/view_play_list?p={pid}", pid, Site.YOUTUBE, True)


def _youtube_watch(m: re.Match) -> CanonicalUrl:
    vid = m.group(2)
    return CanonicalUrl(f"https://www.youtube.com/watch?v={vid}", vid, Site.YOUTUBE)


def _youtube_user(m: re.Match) -> Optional[CanonicalUrl]:
    vid = url_unquote(m.group(2))
    if not vid:
        return None
    return CanonicalUrl(f"https://www.youtube.com/watch?v={vid}", vid, Site.YOUTUBE)


def _youtube_redirect(m: re.Match) -> Optional[CanonicalUrl]:
    """Unwrap a sign-in or age-verification redirect and canonicalize its target.

    The wrapped target may itself carry a `next=` parameter; that one level
    of nesting is unwrapped too. The result only counts if it matches one of
    the non-redirect rules.
    """
    target = url_unquote(m.group(2))
    nested = re.search(r'&next=([^&]+)', target)
    if nested:
        target = url_unquote(nested.group(1))
        target = re.sub(r'&.*$', '', target, flags=re.S)
    if target.startswith('/'):
        target = f"https://www.youtube.com{target}"
    return _match(normalize(target), [PLAYLIST_RULE, *VIDEO_RULES])


def _vimeo(m: re.Match) -> CanonicalUrl:
    vid = m.group(2)
    return CanonicalUrl(f"https://vimeo.com/{vid}", vid, Site.VIMEO)


def _tumblr_video(m: re.Match) -> CanonicalUrl:
    user, pid = m.group(2), m.group(3)
    return CanonicalUrl(f"https://{user}.tumblr.com/post/{pid}", pid, Site.TUMBLR)


def _tumblr_post(m: re.Match) -> CanonicalUrl:
    user, pid = m.group(1), m.group(3)
    return CanonicalUrl(f"https://{user}.tumblr.com/post/{pid}", pid, Site.TUMBLR)


def _vine(m: re.Match) -> CanonicalUrl:
    vid = m.group(3)
    return CanonicalUrl(f"https://vine.co/v/{vid}", vid, Site.VINE)


def _instagram(m: re.Match) -> CanonicalUrl:
    pid = m.group(3)
    return CanonicalUrl(f"https://www.instagram.com/p/{pid}", pid, Site.INSTAGRAM)


def _twitter(m: re.Match) -> CanonicalUrl:
    user, sid = m.group(3), m.group(4)
    return CanonicalUrl(f"https://twitter.com/{user}/status/{sid}", sid, Site.TWITTER)


# ----------------------------------------------------------------------------
# Rule tables
# ----------------------------------------------------------------------------

_YT_HOST = r'^https?://(?:[a-z]+\.)?(youtube)(?:-nocookie)?\.com/'

PLAYLIST_RULE = Rule(
    "youtube-playlist",
    re.compile(_YT_HOST + r'''
        (?: view_play_list\?p= |
            p/ |
            embed/p/ |
            .*? [?&] list=(?:PL)? |
            embed/videoseries\?list=(?:PL)?
        )
        ([^<>?&,]+) ($|&)''', re.S | re.X),
    _youtube_playlist,
)

REDIRECT_RULES = [
    # Youtube "/verify_age" and sign-in interstitials
    Rule(
        "youtube-next-url",
        re.compile(_YT_HOST + r'+ .* next_url=([^&]+)', re.S | re.X),
        _youtube_redirect,
    ),
    Rule(
        "google-continue",
        re.compile(r'''^https?://(?:[a-z]+\.)?google\.com/
                       .* service=(youtube)
                       .* continue=(https?%3A[^?&]+)''', re.S | re.X),
        _youtube_redirect,
    ),
    Rule(
        "google-next",
        re.compile(r'''^https?://(?:[a-z]+\.)?google\.com/
                       .* service=(youtube)
                       .* next=([^?&]+)''', re.S | re.X),
        _youtube_redirect,
    ),
]

VIDEO_RULES: List[Rule] = [
    # /watch?v=, /watch/?v=, /watch#!v=, /v/, /embed/, /shorts/ and "#p/u/1/ID" links
    Rule(
        "youtube-watch",
        re.compile(r'''^https?:// (?:[a-z]+\.)?
                       (youtube) (?:-nocookie)? (?:\.googleapis)? \.com/+
                       (?: (?: watch/? )? (?: \? | \#! ) v= |
                           v/ |
                           embed/ |
                           shorts/ |
                           .*? &v= |
                           [^/\#?&]+ \#p(?: /[a-zA-Z\d] )* /
                       )
                       ([^<>?&,\'\"]+) ($|[?&])''', re.S | re.X),
        _youtube_watch,
    ),
    Rule(
        "youtube-user",
        re.compile(_YT_HOST + r'(?:user|profile).*\#.*/([^&/]+)', re.S | re.X),
        _youtube_user,
    ),
    # vimeo.com/NNN, player.vimeo.com/video/NNN, vimeo.com/m/NNN
    Rule("vimeo-id", re.compile(r'^https?://(?:[a-z]+\.)?(vimeo)\.com/(?:video/|m/)?(\d+)', re.S), _vimeo),
    Rule("vimeo-videos", re.compile(r'^https?://(?:[a-z]+\.)?(vimeo)\.com/.*/videos/(\d+)', re.S), _vimeo),
    # /channels/NAME/NNN and /ondemand/NAME/NNN
    Rule("vimeo-channel", re.compile(r'^https?://(?:[a-z]+\.)?(vimeo)\.com/[^/]+/[^/]+/(\d+)', re.S), _vimeo),
    Rule("vimeo-album", re.compile(r'^https?://(?:[a-z]+\.)?(vimeo)\.com/album/\d+/video/(\d+)', re.S), _vimeo),
    Rule("vimeo-clip-id", re.compile(r'^https?://(?:[a-z]+\.)?(vimeo)\.com/.*clip_id=(\d+)', re.S), _vimeo),
    Rule(
        "tumblr-video",
        re.compile(r'^https?://[-_a-z\d]+\.(tumblr)\.com/video/([^/]+)/(\d{8,})/', re.S | re.I),
        _tumblr_video,
    ),
    Rule(
        "tumblr-post",
        re.compile(r'^https?://([-_a-z\d]+)\.(tumblr)\.com/.*?/(\d{8,})(/|$)', re.S | re.I),
        _tumblr_post,
    ),
    Rule("vine", re.compile(r'^https?://([-_a-z\d]+\.)?(vine)\.co/v/([^/?&]+)', re.S | re.I), _vine),
    Rule(
        "instagram",
        re.compile(r'^https?://([-_a-z\d]+\.)?(instagram)\.com/p/([^/?&]+)', re.S | re.I),
        _instagram,
    ),
    Rule(
        "twitter",
        re.compile(r'^https?://([-_a-z\d]+\.)?(twitter)\.com/([^/?&]+)/status/([^/?&]+)', re.S | re.I),
        _twitter,
    ),
]

RULES: List[Rule] = [PLAYLIST_RULE, *REDIRECT_RULES, *VIDEO_RULES]

# Youtube ids are 11 characters; anything shorter is a truncated or templated link
_WATCH_ID_RE = re.compile(r'watch\?v=([^?&]*)', re.S)


def _match(url: str, rules: List[Rule]) -> Optional[CanonicalUrl]:
    for rule in rules:
        matched, result = rule.apply(url)
        if matched:
            return result
    return None


def canonicalize(raw: str) -> Optional[CanonicalUrl]:
    """Map any URL spelling to its canonical form, or None if unrecognized.

    Pure and deterministic: equal inputs give equal outputs, and the output
    URL canonicalizes to itself.
    """
    if not raw or not raw.strip():
        return None
    return _match(normalize(raw), RULES)


def classify(raw: str) -> Tuple[Optional[CanonicalUrl], Optional[DropReason]]:
    """Canonicalize and report why a URL was rejected.

    Returns (canonical, None) for a usable video URL, or (canonical_or_None,
    reason) when the URL must be dropped.
    """
    canonical = canonicalize(raw)
    if canonical is None:
        return None, DropReason.UNRECOGNIZED
    if canonical.is_playlist or 'videoseries' in canonical.url:
        return canonical, DropReason.PLAYLIST
    bogus = _WATCH_ID_RE.search(canonical.url)
    if bogus and len(bogus.group(1)) < 11:
        return canonical, DropReason.BOGUS_ID
    return canonical, None
