import asyncio
import logging
from datetime import datetime, timedelta, timezone
from email.utils import format_datetime

import pytest

import main
from config import ROOT_LOGGER_NAME, config
from errors import ConfigurationError, DownloadAbortedError
from fetcher import FeedFetcher
from history import HistoryLock
from main import FeedOrchestrator
from models import RunOptions

FEED_URL = "https://example.com/feed.xml"
VIDEO_A = "https://www.youtube.com/watch?v=AAAAAAAAAAA"
VIDEO_B = "https://www.youtube.com/watch?v=BBBBBBBBBBB"
VIDEO_C = "https://www.youtube.com/watch?v=CCCCCCCCCCC"


def _rss(*items):
    body = "".join(
        f"<item><title>{title}</title><pubDate>{date}</pubDate>"
        f"<description>&lt;a href=\"{video}\"&gt;watch&lt;/a&gt;</description></item>"
        for title, date, video in items
    )
    return f"<rss><channel><title>Test Feed</title>{body}</channel></rss>".encode()


def _days_ago(days):
    return format_datetime(datetime.now(timezone.utc) - timedelta(days=days))


def _iso_days_ago(days):
    return (datetime.now(timezone.utc) - timedelta(days=days)).isoformat(timespec="seconds")


def _atom(*entries):
    body = "".join(
        f"<entry><id>yt:video:{video[-11:]}</id><title>{title}</title>"
        f"<link rel=\"alternate\" href=\"{video}\"/>"
        f"<author><name>someone</name></author><published>{date}</published></entry>"
        for title, date, video in entries
    )
    return f"<feed xmlns=\"http://www.w3.org/2005/Atom\"><title>Uploads by someone</title>{body}</feed>".encode()


@pytest.fixture
def feed_dir(tmp_path, monkeypatch):
    monkeypatch.setattr(config, "MIN_BODY_LENGTH", 1)
    monkeypatch.setattr(config, "MAX_RETRIES", 0)
    monkeypatch.setattr(config, "FETCH_CONCURRENCY", 1)
    monkeypatch.setattr(config, "LINK_FOLLOW_SITES", [])
    (tmp_path / ".feeds").write_text(f"# my feeds\n\n{FEED_URL}\n")
    return tmp_path


@pytest.fixture
def cli(monkeypatch):
    """main() adjusts log levels; put them back afterwards."""
    monkeypatch.setenv("DISABLE_TELEMETRY", "true")
    loggers = [logging.getLogger(), logging.getLogger(ROOT_LOGGER_NAME)]
    levels = [logger.level for logger in loggers]
    yield
    for logger, level in zip(loggers, levels):
        logger.setLevel(level)


class Recorder:
    """Stands in for downloader.download."""

    def __init__(self, failing=()):
        self.calls = []
        self.failing = set(failing)

    async def __call__(self, url, prefix, options, downloader=None, cwd=None):
        self.calls.append((url, prefix, cwd))
        return url not in self.failing


def _fetcher(orchestrator, monkeypatch, pages):
    fetcher = FeedFetcher(orchestrator.config)

    async def fake_get(url):
        return pages.get(url)

    monkeypatch.setattr(fetcher, "_get", fake_get)
    return fetcher


async def _run(feed_dir, monkeypatch, pages, options=None, recorder=None):
    recorder = recorder or Recorder()
    orchestrator = FeedOrchestrator(str(feed_dir), options or RunOptions(), download_func=recorder)
    summary = await orchestrator.run(fetcher=_fetcher(orchestrator, monkeypatch, pages))
    return summary, recorder


@pytest.mark.asyncio
async def test_two_item_feed_downloads_oldest_first(feed_dir, monkeypatch):
    pages = {FEED_URL: _rss(("Newest", _days_ago(0), VIDEO_A), ("Older", _days_ago(1), VIDEO_B))}

    summary, recorder = await _run(feed_dir, monkeypatch, pages)

    assert [url for url, _, _ in recorder.calls] == [VIDEO_B, VIDEO_A]
    assert all(prefix == "Test Feed" and cwd == str(feed_dir) for _, prefix, cwd in recorder.calls)
    assert (feed_dir / ".state").read_text() == f"{VIDEO_A}\n{VIDEO_B}\n"
    assert (summary.found, summary.new, summary.downloaded, summary.failed) == (2, 2, 2, 0)


@pytest.mark.asyncio
async def test_second_run_downloads_nothing(feed_dir, monkeypatch):
    pages = {FEED_URL: _rss(("Newest", _days_ago(0), VIDEO_A), ("Older", _days_ago(1), VIDEO_B))}
    await _run(feed_dir, monkeypatch, pages)

    summary, recorder = await _run(feed_dir, monkeypatch, pages)

    assert recorder.calls == []
    assert summary.found == 2
    assert summary.new == 0


@pytest.mark.asyncio
async def test_stale_and_killed_entries_are_counted_not_downloaded(feed_dir, monkeypatch):
    (feed_dir / ".killfile").write_text("# no spam\nspam\n")
    pages = {FEED_URL: _rss(
        ("Fresh", _days_ago(0), VIDEO_A),
        ("Ancient", _days_ago(20), VIDEO_B),
        ("Spam alert", _days_ago(0), VIDEO_C),
    )}

    summary, recorder = await _run(feed_dir, monkeypatch, pages)

    assert [url for url, _, _ in recorder.calls] == [VIDEO_A]
    assert summary.found == 3
    assert (feed_dir / ".state").read_text() == f"{VIDEO_A}\n"


@pytest.mark.asyncio
async def test_old_atom_entry_is_counted_not_downloaded(feed_dir, monkeypatch):
    pages = {FEED_URL: _atom(
        ("Fresh", _iso_days_ago(0), VIDEO_A),
        ("Ancient", _iso_days_ago(20), VIDEO_B),
    )}

    summary, recorder = await _run(feed_dir, monkeypatch, pages)

    assert [url for url, _, _ in recorder.calls] == [VIDEO_A]
    assert summary.found == 2


@pytest.mark.asyncio
async def test_failed_download_is_not_recorded(feed_dir, monkeypatch):
    pages = {FEED_URL: _rss(("Newest", _days_ago(0), VIDEO_A), ("Older", _days_ago(1), VIDEO_B))}

    summary, recorder = await _run(feed_dir, monkeypatch, pages, recorder=Recorder(failing=[VIDEO_B]))

    assert len(recorder.calls) == 2
    assert (feed_dir / ".state").read_text() == f"{VIDEO_A}\n"
    assert summary.failed == 1


@pytest.mark.asyncio
async def test_debug_run_writes_nothing(feed_dir, monkeypatch):
    pages = {FEED_URL: _rss(("Newest", _days_ago(0), VIDEO_A))}

    summary, recorder = await _run(feed_dir, monkeypatch, pages, options=RunOptions(debug=1))

    assert [url for url, _, _ in recorder.calls] == [VIDEO_A]
    assert summary.downloaded == 0
    assert not (feed_dir / ".state").exists()


@pytest.mark.asyncio
async def test_double_debug_ignores_history(feed_dir, monkeypatch):
    (feed_dir / ".state").write_text(f"{VIDEO_A}\n")
    pages = {FEED_URL: _rss(("Newest", _days_ago(0), VIDEO_A))}

    _, once = await _run(feed_dir, monkeypatch, pages, options=RunOptions(debug=1))
    _, twice = await _run(feed_dir, monkeypatch, pages, options=RunOptions(debug=2))

    assert once.calls == []
    assert [url for url, _, _ in twice.calls] == [VIDEO_A]


@pytest.mark.asyncio
async def test_candidates_beyond_max_urls_are_discarded(feed_dir, monkeypatch):
    monkeypatch.setattr(config, "MAX_URLS", 1)
    pages = {FEED_URL: _rss(("Newest", _days_ago(0), VIDEO_A), ("Older", _days_ago(1), VIDEO_B))}

    summary, recorder = await _run(feed_dir, monkeypatch, pages)

    assert [url for url, _, _ in recorder.calls] == [VIDEO_A]
    assert summary.found == 2


@pytest.mark.asyncio
async def test_feed_without_urls_logs_warning(feed_dir, monkeypatch, caplog):
    pages = {FEED_URL: b"<rss><channel><title>Empty</title><item><title>nothing</title></item></channel></rss>"}

    with caplog.at_level("WARNING"):
        summary, recorder = await _run(feed_dir, monkeypatch, pages)

    assert recorder.calls == []
    assert f"no URLs in {FEED_URL}" in caplog.text


@pytest.mark.asyncio
async def test_concurrent_prefetch_keeps_feed_order(feed_dir, monkeypatch):
    monkeypatch.setattr(config, "FETCH_CONCURRENCY", 4)
    other = "https://example.org/other.xml"
    (feed_dir / ".feeds").write_text(f"{FEED_URL}\n{other}\n")
    pages = {
        FEED_URL: _rss(("A", _days_ago(0), VIDEO_A)),
        other: _rss(("B", _days_ago(0), VIDEO_B)),
    }

    _, recorder = await _run(feed_dir, monkeypatch, pages)

    assert [url for url, _, _ in recorder.calls] == [VIDEO_A, VIDEO_B]


@pytest.mark.asyncio
async def test_failing_feed_cancels_concurrent_scans(feed_dir, monkeypatch):
    monkeypatch.setattr(config, "FETCH_CONCURRENCY", 2)
    (feed_dir / ".feeds").write_text(f"{FEED_URL}\nftp://example.com/feed\n")
    cancelled = []

    orchestrator = FeedOrchestrator(str(feed_dir), RunOptions(), download_func=Recorder())
    fetcher = FeedFetcher(orchestrator.config)

    async def stalled_get(url):
        try:
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            cancelled.append(url)
            raise

    monkeypatch.setattr(fetcher, "_get", stalled_get)

    with pytest.raises(ConfigurationError, match="bad feed url"):
        await orchestrator.run(fetcher=fetcher)

    assert cancelled == [FEED_URL]


@pytest.mark.asyncio
async def test_fatal_download_releases_lock(feed_dir, monkeypatch):
    pages = {FEED_URL: _rss(("Newest", _days_ago(0), VIDEO_A))}

    async def aborted(url, prefix, options, downloader=None, cwd=None):
        raise DownloadAbortedError("youtubedown", signal=9)

    with pytest.raises(DownloadAbortedError):
        orchestrator = FeedOrchestrator(str(feed_dir), RunOptions(), download_func=aborted)
        await orchestrator.run(fetcher=_fetcher(orchestrator, monkeypatch, pages))

    with HistoryLock(str(feed_dir / ".state")) as lock:
        assert lock.locked


def test_missing_directory_is_a_configuration_error(tmp_path):
    with pytest.raises(ConfigurationError):
        FeedOrchestrator(str(tmp_path / "missing")).load_feeds()


def test_empty_feeds_file_is_a_configuration_error(tmp_path):
    (tmp_path / ".feeds").write_text("# nothing yet\n\n")

    with pytest.raises(ConfigurationError, match="no URLs in"):
        FeedOrchestrator(str(tmp_path)).load_feeds()


def test_load_feeds_skips_comments(feed_dir):
    assert FeedOrchestrator(str(feed_dir)).load_feeds() == [FEED_URL]


def test_usage_error_exits_with_one(cli, capsys):
    with pytest.raises(SystemExit) as excinfo:
        main.main([])

    assert excinfo.value.code == 1


def test_cli_missing_directory_exits_with_one(tmp_path, cli):
    assert main.main([str(tmp_path / "missing")]) == 1


def test_cli_locked_history_exits_quietly(feed_dir, cli, caplog):
    with HistoryLock(str(feed_dir / ".state")):
        with caplog.at_level("ERROR"):
            status = main.main([str(feed_dir)])

    assert status == 1
    assert "already locked" not in caplog.text


def test_cli_locked_history_is_reported_when_verbose(feed_dir, cli, caplog):
    with HistoryLock(str(feed_dir / ".state")):
        with caplog.at_level("ERROR"):
            status = main.main(["-v", str(feed_dir)])

    assert status == 1
    assert "already locked for 0:00:" in caplog.text


def test_parser_counts_verbosity():
    args = main.build_parser().parse_args(["-vvv", "--debug", "--bwlimit", "1M", "--max-size", "2G", "dir"])

    assert (args.verbose, args.debug, args.bwlimit, args.max_size, args.directory) == (3, 1, "1M", "2G", "dir")
