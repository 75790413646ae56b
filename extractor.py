#!/usr/bin/env python3
"""
Heuristic feed entry extraction.

Feeds in the wild are frequently malformed, so this is deliberately not an
XML parser: the body is split on <entry>/<item> start tags and each block is
mined with tolerant patterns. HTML pages that are not feeds at all degrade to
one synthetic entry per src=/href= attribute.
"""

import calendar
import html
import re
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import List, Optional

from feedparser.datetimes import _parse_date

from config import get_logger
from models import FeedDocument, FeedEntry

logger = get_logger("extractor")

_HTML_PAGE_RE = re.compile(r'^\s*<(?:html|head|!doctype)\b', re.I | re.S)
_ATTR_LINK_RE = re.compile(r'''(?:src|href)\s*=\s*["']([^"']+)''', re.I | re.S)
_ENTRY_SPLIT_RE = re.compile(r'(?=<(?:entry|item)\b)', re.I)

# A text value that may be wrapped in one or more CDATA sections
_TEXT = r'((?:<!\[CDATA\[.*?\]\]>|[^<>])*)'

_TITLE_RE = re.compile(r'<title\b[^<>]*>' + _TEXT, re.S)
_CREATOR_RE = re.compile(r'<dc:creator\b[^<>]*>' + _TEXT, re.S)
_ATOM_AUTHOR_RE = re.compile(r'<author\b[^<>]*>\s*<name\b[^<>]*>' + _TEXT, re.S)
_LINK_TEXT_RE = re.compile(r'<link\b[^<>]*>\s*([^<>]*)', re.S)
_LINK_HREF_RE = re.compile(r'''<link\b[^<>]*href=["']?([^<>"']+)''', re.S | re.I)
_MEDIA_URL_RE = re.compile(r'''<media:content\b[^<>]*url=["']?([^<>"']+)''', re.S | re.I)
_GUID_RE = re.compile(r'<guid\b[^<>]*>([^<>]*)', re.S)
_ID_RE = re.compile(r'<id\b[^<>]*>([^<>]*)', re.S)
_DATE_RES = [
    re.compile(r'<pubDate\b[^<>]*>([^<>]*)', re.S),
    re.compile(r'<published\b[^<>]*>([^<>]*)', re.S),
    re.compile(r'<updated\b[^<>]*>([^<>]*)', re.S),
]
_BODY_RES = [
    re.compile(r'<content\b[^<>]*>\s*(.*?)</content', re.S),
    re.compile(r'<summary\b[^<>]*>\s*(.*?)</summary', re.S),
    re.compile(r'<description\b[^<>]*>\s*(.*?)</description', re.S),
    re.compile(r'<media:description\b[^<>]*>\s*(.*?)</media', re.S),
]

_CDATA_RE = re.compile(r'<!\[CDATA\[\s*(.*?)\s*\]\]>', re.S)
_BRACED_ESCAPE_RE = re.compile(r'\\[ux]\{([0-9a-f]+)\}', re.I)
_SHORT_ESCAPE_RE = re.compile(r'\\[ux]([0-9a-f]{4})', re.I)

_TWITTER_URL_RE = re.compile(r'<meta name="twitter:url" content="(.*?)"', re.S | re.I)
_PLAYLIST_ID_RE = re.compile(r'"playlistId":"([^"]+)"')


def decode_body(body: bytes) -> str:
    """Decode a fetched body as UTF-8, keeping undecodable input byte-for-byte."""
    if isinstance(body, str):
        return body
    try:
        return body.decode('utf-8')
    except UnicodeDecodeError:
        logger.debug("Body is not valid UTF-8; decoding as raw bytes")
        return body.decode('latin-1')


def is_html_page(text: str) -> bool:
    return bool(_HTML_PAGE_RE.match(text.lstrip('\ufeff')))


def html_unquote(value: str) -> str:
    """Convert HTML entities to Unicode characters."""
    return html.unescape(value)


def strip_cdata(value: str) -> str:
    return _CDATA_RE.sub(r'\1', value)


def _chr_or_keep(match: re.Match) -> str:
    try:
        return chr(int(match.group(1), 16))
    except (ValueError, OverflowError):
        return match.group(0)


def decode_escapes(value: str) -> str:
    """Decode literal \\uXXXX and \\u{XXXXXX} escapes left in feed text.

    JSON-style surrogate pairs are joined; a lone surrogate becomes U+FFFD.
    """
    value = _BRACED_ESCAPE_RE.sub(_chr_or_keep, value)
    value = _SHORT_ESCAPE_RE.sub(_chr_or_keep, value)
    value = value.encode("utf-16", "surrogatepass").decode("utf-16", "replace")
    return value.replace('\xa0', ' ')


def _first(patterns, block: str) -> Optional[str]:
    for pattern in patterns:
        match = pattern.search(block)
        if match and match.group(1).strip():
            return match.group(1)
    return None


# ----------------------------------------------------------------------------
# Dates
# ----------------------------------------------------------------------------

def _parse_with_feedparser(date_str: str) -> Optional[float]:
    try:
        time_struct = _parse_date(date_str)
        if time_struct:
            return float(calendar.timegm(time_struct))
    except (ValueError, TypeError, OverflowError):
        return None
    return None


def _parse_with_isoformat(date_str: str) -> Optional[float]:
    try:
        dt = datetime.fromisoformat(date_str.replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.timestamp()


def _parse_with_email_utils(date_str: str) -> Optional[float]:
    try:
        dt = parsedate_to_datetime(date_str)
        if dt:
            if dt.tzinfo is None:
                dt = dt.replace(tzinfo=timezone.utc)
            return dt.timestamp()
    except (TypeError, ValueError, OverflowError):
        return None
    return None


def _parse_with_custom_formats(date_str: str) -> Optional[float]:
    custom_formats = [
        "%d %b %Y %H:%M:%S %z",
        "%d %b %Y %H:%M:%S",
        "%Y-%m-%d %H:%M:%S",
        "%Y-%m-%d",
    ]
    for fmt in custom_formats:
        try:
            dt = datetime.strptime(date_str, fmt)
            if dt.tzinfo is None:
                dt = dt.replace(tzinfo=timezone.utc)
            return dt.timestamp()
        except (ValueError, TypeError):
            continue
    return None


def parse_date(date_str: Optional[str]) -> Optional[float]:
    """Parse a feed date into a Unix timestamp, or None if unparsable."""
    if not date_str or not date_str.strip():
        return None
    date_str = date_str.strip()
    for parser in (_parse_with_feedparser, _parse_with_isoformat,
                   _parse_with_email_utils, _parse_with_custom_formats):
        timestamp = parser(date_str)
        if timestamp is not None:
            return timestamp
    logger.debug(f"Unparsable date '{date_str}'")
    return None


# ----------------------------------------------------------------------------
# Entries
# ----------------------------------------------------------------------------

def parse_entry(block: str) -> FeedEntry:
    """Extract one entry from a raw <entry>/<item> block."""
    title = _first([_TITLE_RE], block) or ''
    author = _first([_CREATOR_RE, _ATOM_AUTHOR_RE], block) or ''
    link = _first([_LINK_TEXT_RE, _LINK_HREF_RE, _MEDIA_URL_RE], block)
    guid = _first([_GUID_RE, _ID_RE], block)
    date = _first(_DATE_RES, block)
    body = _first(_BODY_RES, block) or ''

    title, author, body = strip_cdata(title), strip_cdata(author), strip_cdata(body)

    link = link.strip() if link else None
    guid = guid.strip() if guid else None
    if link:
        body = f"{link}\n{body}"
    if guid:
        body = f"{guid}\n{body}"

    # Once for the RSS encoding, once more for HTML-encoded text inside it.
    # The body keeps its second layer since it is still scanned as markup.
    title = decode_escapes(html_unquote(html_unquote(title))).strip()
    author = decode_escapes(html_unquote(html_unquote(author))).strip()
    body = html_unquote(body)

    return FeedEntry(
        title=title,
        author=author or None,
        link=link or None,
        guid=guid or None,
        published_at=parse_date(date),
        body_html=body,
        published_raw=date.strip() if date else None,
    )


def _extract_html_links(text: str) -> List[FeedEntry]:
    """One synthetic entry per src=/href= value; HTML pages carry no titles or dates."""
    entries = []
    for link in _ATTR_LINK_RE.findall(text):
        entries.append(FeedEntry(link=link, body_html=html_unquote(f"{link}\n")))
    return entries


def extract(body: bytes, source_url: str) -> FeedDocument:
    """Parse a fetched body into the feed title and its ordered entries.

    Never raises for malformed input: unrecognizable blocks simply produce
    entries with empty fields.
    """
    text = decode_body(body)

    if is_html_page(text):
        logger.debug(f"{source_url} looks like HTML; extracting links only")
        return FeedDocument(title=source_url, entries=_extract_html_links(text))

    blocks = _ENTRY_SPLIT_RE.split(text)
    head = blocks.pop(0) if blocks else ''

    title_match = _TITLE_RE.search(head)
    feed_title = ''
    if title_match:
        feed_title = html_unquote(strip_cdata(title_match.group(1))).strip()

    entries = [parse_entry(block) for block in blocks if block]
    return FeedDocument(title=feed_title or source_url, entries=entries)


def find_channel_redirect(text: str) -> Optional[str]:
    """Return the canonical page URL advertised by an HTML page's twitter:url tag."""
    match = _TWITTER_URL_RE.search(text)
    return match.group(1) if match else None


def find_playlist_ids(text: str) -> List[str]:
    """Unique playlist ids embedded in a channel's playlists page, in page order."""
    return list(dict.fromkeys(_PLAYLIST_ID_RE.findall(text)))
