#!/usr/bin/env python3
"""
Video Feed Orchestrator

This script drives one run over a feed directory:
1. Read the feed list (.feeds) and the killfile (.killfile)
2. Lock and load the download history (.state)
3. For each feed, in order: fetch, extract entries, collect candidate video URLs
4. Download every candidate not already in the history, oldest first,
   recording each success in the history as soon as it finishes

It is meant to be run from cron; a second run that finds the history locked
by a recent run exits quietly.
"""

import asyncio
import os
import sys
import time
import argparse
from typing import Callable, List, Optional

from config import config, configure_verbosity, get_logger
from downloader import derive_feed_prefix, download, entry_prefix
from errors import ConfigurationError, HistoryLockedError, VideoFeedsError
from extractor import extract
from fetcher import FeedFetcher
from history import HistoryStore, open_history
from models import Candidate, FeedScan, RunOptions, RunSummary
from policy import load_kill_pattern
from scanner import build_candidates, dump_entries
from telemetry import init_telemetry, trace_span
from utils import format_duration, host_matches, read_list_file

# Module-specific logger
logger = get_logger("orchestrator")

FEEDS_FILE_NAME = ".feeds"
KILLFILE_NAME = ".killfile"

# Aggregators whose entry "author" is just whoever posted the link
NO_AUTHOR_PREFIXES = ["reddit"]


class FeedOrchestrator:
    """Runs the fetch, filter and download pipeline for one feed directory."""

    def __init__(self, feed_dir: str, options: Optional[RunOptions] = None,
                 settings=None, download_func: Optional[Callable] = None) -> None:
        """Initialize the orchestrator.

        Args:
            feed_dir: Directory holding .feeds, .killfile and .state
            options: Command line options for this run
            settings: Base configuration; directory overrides are applied on top
            download_func: Replacement for downloader.download
        """
        self.feed_dir = feed_dir.rstrip('/') or feed_dir
        self.options = options or RunOptions()
        self.config = (settings or config).for_directory(self.feed_dir)
        self.download_func = download_func or download
        self.summary = RunSummary()

    def _path(self, name: str) -> str:
        return os.path.join(self.feed_dir, name)

    def load_feeds(self) -> List[str]:
        """Read the feed URLs to scan.

        Raises:
            ConfigurationError: If the directory or .feeds is missing, or lists nothing
        """
        if not os.path.isdir(self.feed_dir):
            raise ConfigurationError(f"no such directory; {self.feed_dir}")
        feeds_path = self._path(FEEDS_FILE_NAME)
        try:
            feeds = read_list_file(feeds_path)
        except OSError as e:
            raise ConfigurationError(f"{feeds_path}: {e.strerror or e}") from e
        if not feeds:
            raise ConfigurationError(f"no URLs in {feeds_path}")
        logger.info(f"read {len(feeds)} URLs from {feeds_path}")
        return feeds

    def _link_follow(self, feed_url: str) -> bool:
        return host_matches(feed_url, self.config.LINK_FOLLOW_SITES)

    @trace_span(
        "scan_feed",
        tracer_name="orchestrator",
        attr_from_args=lambda self, fetcher, feed_url, kill_pattern, now=None: {"feed.url": feed_url},
        attr_from_result=lambda scan: {"feed.urls": scan.total, "feed.candidates": len(scan.candidates)},
    )
    async def scan_feed(self, fetcher: FeedFetcher, feed_url: str, kill_pattern, now: Optional[float] = None) -> FeedScan:
        """Fetch one configured feed and collect its download candidates.

        Sub-feeds of a playlist listing are merged into one result. At most
        MAX_URLS candidates are kept, in document order.
        """
        now = time.time() if now is None else now
        result = FeedScan(feed_url=feed_url)
        documents = []

        for fetched in await fetcher.fetch_feed(feed_url):
            document = extract(fetched.body, fetched.url)
            documents.append(document)

            body_for = None
            if self._link_follow(feed_url):
                # These feeds leave the embeds out; the linked page has them
                pages = await fetcher.fetch_linked_pages(document.entries)
                body_for = lambda entry, pages=pages: pages.get(entry.link, '')

            result.merge(build_candidates(
                document,
                fetched.url,
                kill_pattern=kill_pattern,
                max_age_days=self.config.MAX_DAYS,
                now=now,
                excluded_sites=self.config.EXCLUDED_SITES,
                exempt_sites=self.config.FUTURE_DATE_EXEMPT_SITES,
                body_for=body_for,
            ))

        if not documents:
            logger.info(f"{feed_url}: nothing fetched")
        elif result.total == 0:
            logger.warning(f"no URLs in {feed_url}")
            for document in documents:
                logger.debug(f"{document.title}:\n\n{dump_entries(document)}\n")

        max_urls = self.config.MAX_URLS
        if len(result.candidates) > max_urls:
            extra = len(result.candidates) - max_urls
            first_dropped = result.candidates[max_urls]
            logger.warning(f"discarding {extra} URLs from {feed_url} ({first_dropped.source_entry.author or first_dropped.url})")
            del result.candidates[max_urls:]

        return result

    def select_new(self, scan: FeedScan, history: HistoryStore) -> List[Candidate]:
        """Candidates not yet in the history, marked seen as they are picked.

        With --debug given twice the history is ignored.
        """
        new = []
        for candidate in scan.candidates:
            if self.options.debug < 2 and candidate.url in history:
                continue
            history.mark_seen(candidate.url)
            new.append(candidate)
        logger.info(f"found {len(new)} new of {scan.total} URLs in \"{scan.title or scan.feed_url}\"")
        return new

    async def download_new(self, scan: FeedScan, new: List[Candidate], history: HistoryStore) -> None:
        """Download new candidates oldest first, recording each success."""
        feed_prefix = derive_feed_prefix(scan.feed_url, scan.title)
        no_author = NO_AUTHOR_PREFIXES + list(self.config.LINK_FOLLOW_SITES)

        for candidate in reversed(new):
            prefix = entry_prefix(feed_prefix, candidate.source_entry.author, no_author)
            ok = await self.download_func(candidate.url, prefix, self.options,
                                          downloader=self.config.DOWNLOADER, cwd=self.feed_dir)
            if not ok:
                self.summary.failed += 1
                continue
            if self.options.dry_run:
                continue
            history.record(candidate.url)
            self.summary.downloaded += 1

    async def _scan_all(self, fetcher: FeedFetcher, feeds: List[str], kill_pattern) -> List[FeedScan]:
        semaphore = asyncio.Semaphore(self.config.FETCH_CONCURRENCY)

        async def scan_with_semaphore(feed_url):
            async with semaphore:
                return await self.scan_feed(fetcher, feed_url, kill_pattern)

        tasks = [asyncio.create_task(scan_with_semaphore(feed_url)) for feed_url in feeds]
        try:
            return await asyncio.gather(*tasks)
        except BaseException:
            # One failed feed ends the run; the others must not outlive the session
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

    async def _process(self, scan: FeedScan, history: HistoryStore) -> None:
        self.summary.feeds += 1
        self.summary.found += scan.total
        new = self.select_new(scan, history)
        self.summary.new += len(new)
        await self.download_new(scan, new, history)

    @trace_span(
        "run",
        tracer_name="orchestrator",
        attr_from_args=lambda self, fetcher=None: {"feed.directory": self.feed_dir},
        attr_from_result=lambda summary: {"run.downloaded": summary.downloaded, "run.failed": summary.failed},
    )
    async def run(self, fetcher: Optional[FeedFetcher] = None) -> RunSummary:
        """Process every configured feed; the history lock is held throughout.

        Raises:
            ConfigurationError: For a missing directory, feed list or downloader
            HistoryLockedError: If another run holds the history lock
            DownloadAbortedError: If the downloader was killed by a signal
        """
        start_time = time.time()
        feeds = self.load_feeds()
        history = open_history(
            self.feed_dir,
            read_only=self.options.dry_run,
            verbose=self.options.verbose,
            quiet_seconds=self.config.LOCK_QUIET_SECONDS,
            max_history=self.config.MAX_HISTORY,
        )
        try:
            kill_pattern = load_kill_pattern(self._path(KILLFILE_NAME))
            async with (fetcher or FeedFetcher(self.config)) as active:
                if self.config.FETCH_CONCURRENCY > 1:
                    # Fetch in parallel; history and downloads stay in feed order
                    for scan in await self._scan_all(active, feeds, kill_pattern):
                        await self._process(scan, history)
                else:
                    for feed_url in feeds:
                        await self._process(await self.scan_feed(active, feed_url, kill_pattern), history)
        finally:
            history.lock.release()

        logger.info(
            f"🎉 {self.summary.downloaded} downloaded, {self.summary.failed} failed, "
            f"{self.summary.new} new of {self.summary.found} URLs in {self.summary.feeds} feeds "
            f"({len(history)} URLs in history, {format_duration(time.time() - start_time)})"
        )
        return self.summary


class ArgumentParser(argparse.ArgumentParser):
    """argparse exits with 2 on usage errors; this tool has always used 1."""

    def error(self, message):
        self.print_usage(sys.stderr)
        self.exit(1, f"{self.prog}: error: {message}\n")


def build_parser() -> ArgumentParser:
    parser = ArgumentParser(prog='videofeeds', description='Download new videos from the feeds listed in a directory')
    parser.add_argument('directory',
                        help='Feed directory holding .feeds, .killfile and .state')
    parser.add_argument('-v', '--verbose', action='count', default=0,
                        help='More progress output; repeat for more detail')
    parser.add_argument('--debug', action='count', default=0,
                        help='Dry run: no downloads, no history writes; twice to also ignore history')
    parser.add_argument('--bwlimit',
                        help='Bandwidth limit passed to the downloader')
    parser.add_argument('--max-size', dest='max_size',
                        help='Maximum video size passed to the downloader')
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)
    configure_verbosity(max(args.verbose, 2) if args.debug else args.verbose)
    init_telemetry("videofeeds")

    options = RunOptions(verbose=args.verbose, debug=args.debug,
                         bwlimit=args.bwlimit, max_size=args.max_size)
    orchestrator = FeedOrchestrator(args.directory, options)
    logger.debug(f"Configuration: {orchestrator.config.get_config_summary()}")

    try:
        asyncio.run(orchestrator.run())
    except HistoryLockedError as e:
        if not e.quiet:
            logger.error(str(e))
        return 1
    except VideoFeedsError as e:
        logger.error(str(e))
        return 1
    except KeyboardInterrupt:
        logger.info("👋 Interrupted")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
