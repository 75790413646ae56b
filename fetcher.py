#!/usr/bin/env python3
"""
Feed fetcher.

This module turns the URLs listed in a .feeds file into fetched bodies. Human
facing channel, user, playlist and album pages are rewritten to their
machine-readable feed equivalents first; a channel's playlist listing is
expanded into one feed per playlist, and an HTML page that names a different
canonical channel page is followed once. Every GET goes through a bounded
retry loop, and exhausting it yields an empty body rather than an error.
"""

from asyncio import TimeoutError, Semaphore, gather
import re
from typing import Dict, Iterable, List, Optional

from aiohttp import ClientError, ClientSession, ClientTimeout

from config import config, get_logger
from errors import ConfigurationError
from extractor import decode_body, find_channel_redirect, find_playlist_ids, is_html_page
from models import FeedEntry, FetchedFeed, Resolution, ResolutionKind
from telemetry import trace_span
from utils import RetryHelper, flatten_newlines

# Module-specific logger
logger = get_logger("fetcher")

HTTP_OK = 200

_YOUTUBE_CHANNEL_RE = re.compile(r'youtube\.com/(user|channel)/([^/?&]+)(?:/([^/?&]+))?', re.I | re.S)
_YOUTUBE_PLAYLIST_RE = re.compile(r'youtube\.com/playlist\?list=([^?&]+)', re.I | re.S)
_VIMEO_ALBUM_RE = re.compile(r'vimeo\.com/(album/[^/?&]+)', re.I | re.S)
_VIMEO_CHANNEL_RE = re.compile(r'vimeo\.com/((?:(?:channels|groups)/)?[^/?&]+)', re.I | re.S)
_SCHEME_RE = re.compile(r'^https?://', re.I)

YOUTUBE_FEED_URL = "https://www.youtube.com/feeds/videos.xml"
YOUTUBE_PLAYLIST_URL = "https://www.youtube.com/playlist?list={}"


def resolve(url: str) -> Resolution:
    """Rewrite a listing page URL to the feed that carries the same videos.

    Raises:
        ConfigurationError: If the result is not an http(s) URL
    """
    url = url.strip()
    resolution = Resolution(url)

    m = _YOUTUBE_CHANNEL_RE.search(url)
    if m:
        kind, uid, tab = m.group(1).lower(), m.group(2), (m.group(3) or '').lower()
        if tab in ('', 'uploads', 'videos'):
            key = 'user' if kind == 'user' else 'channel_id'
            resolution = Resolution(f"{YOUTUBE_FEED_URL}?{key}={uid}")
        elif tab == 'playlists':
            resolution = Resolution(url, ResolutionKind.PLAYLISTS)
        else:
            # Other tabs have no feed; scrape whatever links the page has
            resolution = Resolution(url, ResolutionKind.PAGE)
    elif _YOUTUBE_PLAYLIST_RE.search(url):
        pid = _YOUTUBE_PLAYLIST_RE.search(url).group(1)
        resolution = Resolution(f"{YOUTUBE_FEED_URL}?playlist_id={pid}")
    elif _VIMEO_ALBUM_RE.search(url):
        resolution = Resolution(f"https://vimeo.com/{_VIMEO_ALBUM_RE.search(url).group(1)}/rss")
    elif _VIMEO_CHANNEL_RE.search(url):
        resolution = Resolution(f"https://vimeo.com/{_VIMEO_CHANNEL_RE.search(url).group(1)}/videos/rss")

    if not _SCHEME_RE.match(resolution.url):
        raise ConfigurationError(f"bad feed url {resolution.url}")
    if resolution.url != url:
        logger.debug(f"{url} -> {resolution.url}")
    return resolution


class FeedFetcher:
    """Fetches feed bodies over one shared aiohttp session.

    Use as an async context manager, or call close() when done.
    """

    def __init__(self, settings=None, session: Optional[ClientSession] = None) -> None:
        self.config = settings or config
        self.session = session
        self._owns_session = session is None
        self.retry_helper = RetryHelper(max_retries=self.config.MAX_RETRIES,
                                        base_delay=self.config.RETRY_DELAY_BASE)

    async def __aenter__(self) -> "FeedFetcher":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def close(self) -> None:
        if self.session is not None and self._owns_session:
            await self.session.close()
        self.session = None

    def _ensure_session(self) -> ClientSession:
        if self.session is None:
            self.session = ClientSession(
                timeout=ClientTimeout(total=self.config.HTTP_TIMEOUT),
                headers={'User-Agent': self.config.USER_AGENT},
            )
            self._owns_session = True
        return self.session

    def _format_client_error(self, error: ClientError) -> str:
        """Describe aiohttp client errors with any available status."""
        parts: List[str] = [error.__class__.__name__]
        status = getattr(error, 'status', None)
        if status is not None:
            parts.append(f"status={status}")
        message = str(error)
        if message:
            parts.append(message)
        return " ".join(parts)

    async def _get(self, url: str) -> Optional[bytes]:
        """One GET attempt. Returns the body, or None on any failure."""
        session = self._ensure_session()
        try:
            async with session.get(url) as response:
                if response.status != HTTP_OK:
                    logger.debug(f"{url}: HTTP {response.status}")
                    return None
                return await response.read()
        except TimeoutError:
            logger.debug(f"{url}: timed out after {self.config.HTTP_TIMEOUT}s")
        except ClientError as e:
            logger.debug(f"{url}: {self._format_client_error(e)}")
        return None

    @trace_span(
        "fetch_url",
        tracer_name="fetcher",
        attr_from_args=lambda self, url, min_length=None: {"http.url": url},
        attr_from_result=lambda body: {"http.body_length": len(body)},
    )
    async def fetch(self, url: str, min_length: Optional[int] = None) -> bytes:
        """GET a URL with bounded retry.

        A body no longer than min_length (MIN_BODY_LENGTH by default) is
        treated as a failed attempt. Returns b"" once retries are exhausted.
        """
        if min_length is None:
            min_length = self.config.MIN_BODY_LENGTH
        attempts = self.retry_helper.attempts
        for attempt in range(attempts):
            body = await self._get(url)
            if body and len(body) > min_length:
                return body
            if attempt + 1 < attempts:
                logger.debug(f"{url} failed, retrying ({attempt + 1}/{self.retry_helper.max_retries})...")
                await self.retry_helper.sleep_for_attempt(attempt)
        logger.info(f"{url} empty")
        return b""

    @trace_span(
        "fetch_feed",
        tracer_name="fetcher",
        attr_from_args=lambda self, url, _hops=0: {"feed.url": url},
        attr_from_result=lambda fetched: {"feed.documents": len(fetched)},
    )
    async def fetch_feed(self, url: str, _hops: int = 0) -> List[FetchedFeed]:
        """Fetch everything that a configured feed URL stands for.

        Returns one FetchedFeed per body to scan: usually one, one per
        playlist for a playlist listing, none when nothing could be fetched.
        """
        resolution = resolve(url)

        if resolution.kind == ResolutionKind.PLAYLISTS:
            return await self._fetch_playlists(resolution.url)

        logger.debug(f"reading {resolution.url}")
        body = await self.fetch(resolution.url)
        if not body:
            return []

        if _hops == 0:
            text = decode_body(body)
            if is_html_page(text):
                target = find_channel_redirect(text)
                if target and target != resolution.url and '/channel/' in target:
                    logger.debug(f" {resolution.url} -> {target}")
                    return await self.fetch_feed(target, _hops=1)

        return [FetchedFeed(resolution.url, body)]

    async def _fetch_playlists(self, url: str) -> List[FetchedFeed]:
        page = await self.fetch(url)
        playlist_ids = find_playlist_ids(decode_body(page)) if page else []
        logger.debug(f"{url}: {len(playlist_ids)} playlists")
        fetched: List[FetchedFeed] = []
        for pid in playlist_ids:
            playlist_url = YOUTUBE_PLAYLIST_URL.format(pid)
            logger.debug(f"reading playlist {playlist_url}")
            fetched.extend(await self.fetch_feed(playlist_url, _hops=1))
        return fetched

    async def fetch_linked_page(self, link: str) -> str:
        """Body of an entry's linked page, as one line of markup, or '' on failure."""
        logger.debug(f"reading {link}")
        body = await self.fetch(link, min_length=1)
        if not body:
            return ""
        return flatten_newlines(decode_body(body))

    async def fetch_linked_pages(self, entries: Iterable[FeedEntry]) -> Dict[str, str]:
        """Fetch the linked page of every entry that has a link, keyed by link."""
        links = list(dict.fromkeys(entry.link for entry in entries if entry.link))
        semaphore = Semaphore(self.config.FETCH_CONCURRENCY)

        async def fetch_with_semaphore(link):
            async with semaphore:
                return await self.fetch_linked_page(link)

        bodies = await gather(*(fetch_with_semaphore(link) for link in links))
        return dict(zip(links, bodies))
