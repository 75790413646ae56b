import pytest

import utils
from config import config
from errors import ConfigurationError
from fetcher import FeedFetcher, resolve
from models import ResolutionKind


@pytest.fixture
def no_sleep(monkeypatch):
    delays = []

    async def fake_sleep(delay):
        delays.append(delay)

    monkeypatch.setattr(utils, "sleep", fake_sleep)
    return delays


def _serve(monkeypatch, fetcher, pages):
    """Route fetcher GETs to a dict; records every requested URL."""
    requested = []

    async def fake_get(url):
        requested.append(url)
        return pages.get(url)

    monkeypatch.setattr(fetcher, "_get", fake_get)
    return requested


@pytest.mark.parametrize("url, expected", [
    ("https://www.youtube.com/user/someone", "https://www.youtube.com/feeds/videos.xml?user=someone"),
    ("https://www.youtube.com/user/someone/videos", "https://www.youtube.com/feeds/videos.xml?user=someone"),
    ("https://www.youtube.com/channel/UC123/uploads", "https://www.youtube.com/feeds/videos.xml?channel_id=UC123"),
    ("https://www.youtube.com/playlist?list=PL42", "https://www.youtube.com/feeds/videos.xml?playlist_id=PL42"),
    ("https://vimeo.com/album/77", "https://vimeo.com/album/77/rss"),
    ("https://vimeo.com/channels/staffpicks", "https://vimeo.com/channels/staffpicks/videos/rss"),
    ("https://vimeo.com/groups/animation", "https://vimeo.com/groups/animation/videos/rss"),
    ("https://vimeo.com/someone", "https://vimeo.com/someone/videos/rss"),
    ("https://example.com/feed.xml", "https://example.com/feed.xml"),
])
def test_resolve_rewrites_listing_pages(url, expected):
    resolution = resolve(url)

    assert resolution.url == expected
    assert resolution.kind == ResolutionKind.FEED


def test_resolve_playlists_tab():
    resolution = resolve("https://www.youtube.com/user/someone/playlists")

    assert resolution.kind == ResolutionKind.PLAYLISTS
    assert resolution.url == "https://www.youtube.com/user/someone/playlists"


def test_resolve_other_tab_is_scraped_as_page():
    resolution = resolve("https://www.youtube.com/channel/UC123/community")

    assert resolution.kind == ResolutionKind.PAGE


def test_resolve_rejects_non_http():
    with pytest.raises(ConfigurationError):
        resolve("ftp://example.com/feed")


@pytest.mark.asyncio
async def test_fetch_retries_then_gives_up_with_empty_body(monkeypatch, no_sleep):
    monkeypatch.setattr(config, "MAX_RETRIES", 3)
    monkeypatch.setattr(config, "RETRY_DELAY_BASE", 1.0)
    monkeypatch.setattr(config, "MIN_BODY_LENGTH", 1024)
    fetcher = FeedFetcher()
    requested = _serve(monkeypatch, fetcher, {"https://example.com/feed": b"<rss>too short</rss>"})

    body = await fetcher.fetch("https://example.com/feed")

    assert body == b""
    assert len(requested) == 4
    assert no_sleep == [1.0, 2.0, 3.0]


@pytest.mark.asyncio
async def test_fetch_succeeds_after_transient_failure(monkeypatch, no_sleep):
    monkeypatch.setattr(config, "MIN_BODY_LENGTH", 10)
    fetcher = FeedFetcher()
    responses = [None, b"short", b"<rss>" + b"x" * 20 + b"</rss>"]

    async def fake_get(url):
        return responses.pop(0)

    monkeypatch.setattr(fetcher, "_get", fake_get)

    body = await fetcher.fetch("https://example.com/feed")

    assert body.startswith(b"<rss>")
    assert len(no_sleep) == 2


@pytest.mark.asyncio
async def test_fetch_feed_resolves_before_fetching(monkeypatch, no_sleep):
    monkeypatch.setattr(config, "MIN_BODY_LENGTH", 1)
    fetcher = FeedFetcher()
    feed_url = "https://www.youtube.com/feeds/videos.xml?user=someone"
    requested = _serve(monkeypatch, fetcher, {feed_url: b"<feed></feed>"})

    fetched = await fetcher.fetch_feed("https://www.youtube.com/user/someone")

    assert requested == [feed_url]
    assert [(f.url, f.body) for f in fetched] == [(feed_url, b"<feed></feed>")]


@pytest.mark.asyncio
async def test_fetch_feed_nothing_fetched(monkeypatch, no_sleep):
    monkeypatch.setattr(config, "MAX_RETRIES", 0)
    fetcher = FeedFetcher()
    _serve(monkeypatch, fetcher, {})

    assert await fetcher.fetch_feed("https://example.com/feed") == []


@pytest.mark.asyncio
async def test_playlists_listing_expands_to_each_playlist(monkeypatch, no_sleep):
    monkeypatch.setattr(config, "MIN_BODY_LENGTH", 1)
    fetcher = FeedFetcher()
    listing = "https://www.youtube.com/user/someone/playlists"
    pages = {
        listing: b'<html>{"playlistId":"PL1"}{"playlistId":"PL2"}{"playlistId":"PL1"}</html>',
        "https://www.youtube.com/feeds/videos.xml?playlist_id=PL1": b"<feed>one</feed>",
        "https://www.youtube.com/feeds/videos.xml?playlist_id=PL2": b"<feed>two</feed>",
    }
    requested = _serve(monkeypatch, fetcher, pages)

    fetched = await fetcher.fetch_feed(listing)

    assert [f.body for f in fetched] == [b"<feed>one</feed>", b"<feed>two</feed>"]
    assert requested.count("https://www.youtube.com/feeds/videos.xml?playlist_id=PL1") == 1


@pytest.mark.asyncio
async def test_channel_redirect_is_followed_once(monkeypatch, no_sleep):
    monkeypatch.setattr(config, "MIN_BODY_LENGTH", 1)
    fetcher = FeedFetcher()
    first = b'<!DOCTYPE html><meta name="twitter:url" content="https://www.youtube.com/channel/UC1">'
    second = b'<!DOCTYPE html><meta name="twitter:url" content="https://www.youtube.com/channel/UC2">'
    pages = {
        "https://www.youtube.com/@handle": first,
        "https://www.youtube.com/feeds/videos.xml?channel_id=UC1": second,
    }
    requested = _serve(monkeypatch, fetcher, pages)

    fetched = await fetcher.fetch_feed("https://www.youtube.com/@handle")

    assert [f.url for f in fetched] == ["https://www.youtube.com/feeds/videos.xml?channel_id=UC1"]
    assert "https://www.youtube.com/feeds/videos.xml?channel_id=UC2" not in requested


@pytest.mark.asyncio
async def test_redirect_to_non_channel_page_is_ignored(monkeypatch, no_sleep):
    monkeypatch.setattr(config, "MIN_BODY_LENGTH", 1)
    fetcher = FeedFetcher()
    page = b'<!DOCTYPE html><meta name="twitter:url" content="https://example.com/elsewhere">'
    _serve(monkeypatch, fetcher, {"https://example.com/videos": page})

    fetched = await fetcher.fetch_feed("https://example.com/videos")

    assert [f.url for f in fetched] == ["https://example.com/videos"]


@pytest.mark.asyncio
async def test_linked_pages_are_flattened(monkeypatch, no_sleep):
    fetcher = FeedFetcher()
    _serve(monkeypatch, fetcher, {"https://blog.example.com/1": b"<p>\r\nhello\nworld</p>"})

    assert await fetcher.fetch_linked_page("https://blog.example.com/1") == "<p> hello world</p>"


@pytest.mark.asyncio
async def test_fetch_linked_pages_keyed_by_link(monkeypatch, no_sleep):
    from models import FeedEntry

    monkeypatch.setattr(config, "MAX_RETRIES", 0)
    fetcher = FeedFetcher()
    _serve(monkeypatch, fetcher, {"https://blog.example.com/1": b"one"})

    pages = await fetcher.fetch_linked_pages([
        FeedEntry(link="https://blog.example.com/1"),
        FeedEntry(link="https://blog.example.com/2"),
        FeedEntry(),
    ])

    assert pages == {"https://blog.example.com/1": "one", "https://blog.example.com/2": ""}


@pytest.mark.asyncio
async def test_body_of_exactly_min_length_is_a_failed_attempt(monkeypatch, no_sleep):
    monkeypatch.setattr(config, "MAX_RETRIES", 1)
    monkeypatch.setattr(config, "MIN_BODY_LENGTH", 8)
    fetcher = FeedFetcher()
    responses = [b"12345678", b"123456789"]

    async def fake_get(url):
        return responses.pop(0)

    monkeypatch.setattr(fetcher, "_get", fake_get)

    assert await fetcher.fetch("https://example.com/feed") == b"123456789"
    assert len(no_sleep) == 1


def test_default_retry_delays():
    helper = utils.RetryHelper()

    assert [helper.calculate_delay(attempt) for attempt in range(5)] == [2.0, 3.0, 4.0, 5.0, 6.0]
