#!/usr/bin/env python3
"""
Download capability: runs the external downloader on one URL at a time.

The downloader is expected to behave like youtubedown: it writes the video
into the current directory, exits 0 on success and with a positive status
when a video is unavailable. A child killed by a signal means something is
badly wrong on this machine, so that ends the whole run.

Downloaded files get a prefix naming the feed they came from, derived here
from the feed URL, the feed title and the entry author.
"""

from asyncio import create_subprocess_exec
import re
import shlex
from typing import Iterable, List, Optional

from config import get_logger
from errors import ConfigurationError, DownloadAbortedError
from models import RunOptions
from telemetry import trace_span

logger = get_logger("downloader")

DEFAULT_DOWNLOADER = "youtubedown"

_URL_NAME_RE = re.compile(r'(?:channels|groups|user|vimeo\.com)/([^/]+)/?$', re.I | re.S)
_TITLE_PATTERNS = [
    re.compile(r'^Uploads by (.*)$', re.I | re.S),
    re.compile(r'^Videos matching: (.*)$', re.I | re.S),
    re.compile(r'^Vimeo / (.*)$', re.I | re.S),
]
_HOST_LABEL_RE = re.compile(r'^https?://[^.]+\.([^./]+)\.', re.I | re.S)
_GENERIC_HOSTS_RE = re.compile(r'jwz|tumblr|feedburner|blogspot|youtube', re.I)
_YOUTUBE_JUNK_RE = re.compile(r'^youtube[^a-z\d]*', re.I | re.S)


def derive_feed_prefix(feed_url: str, feed_title: Optional[str]) -> Optional[str]:
    """Pick a short name for a feed to prefix its downloaded files with.

    Tries, in order: the channel/user name in the feed URL, the interesting
    part of a few well-known feed title shapes, the site name in the feed
    host, and finally the feed title itself.
    """
    feed_title = feed_title or ''
    prefix = None

    m = _URL_NAME_RE.search(feed_url)
    if m:
        prefix = m.group(1)
    else:
        for pattern in _TITLE_PATTERNS:
            m = pattern.match(feed_title)
            if m:
                prefix = m.group(1)
                break
    if prefix is None:
        m = _HOST_LABEL_RE.match(feed_url)
        if m and not _GENERIC_HOSTS_RE.search(m.group(1)):
            prefix = m.group(1)
        else:
            prefix = feed_title

    prefix = re.sub(r"'s videos$", '', prefix, flags=re.I | re.S)
    prefix = re.sub(r'^.* \| ', '', prefix, flags=re.S)
    if re.match(r'^http', prefix, re.I) or not prefix.strip():
        return None
    return prefix


def strip_youtube_junk(text: Optional[str]) -> Optional[str]:
    if not text:
        return text
    return _YOUTUBE_JUNK_RE.sub('', text)


def entry_prefix(feed_prefix: Optional[str], author: Optional[str],
                 no_author_sites: Iterable[str] = ()) -> Optional[str]:
    """Combine the feed prefix with an entry's author as "AUTHOR: PREFIX".

    Feeds whose prefix starts with one of no_author_sites carry aggregated
    posts whose "author" is just the poster, so it is left out there.
    """
    prefix = feed_prefix or ''
    if author and any(prefix.lower().startswith(site.lower()) for site in no_author_sites if site):
        author = None
    if author:
        prefix = f"{author}: {prefix}" if prefix else author
    return strip_youtube_junk(prefix) or None


def build_command(url: str, prefix: Optional[str], options: RunOptions,
                  downloader: str = DEFAULT_DOWNLOADER) -> List[str]:
    """Build the downloader argument vector for one URL."""
    cmd = [downloader, "--suffix"]
    if options.verbose == 0:
        cmd.append("--quiet")
    if options.bwlimit:
        cmd.extend(["--bwlimit", options.bwlimit])
    if options.max_size:
        cmd.extend(["--max-size", options.max_size, "--webm-transcode"])
    if options.verbose > 3:
        cmd.append("-" + "v" * (options.verbose - 3))
    if options.dry_run:
        # Report the size instead of downloading
        cmd.append("--size")
    if prefix:
        cmd.extend(["--prefix", f"{prefix}:"])
    cmd.append(url)
    return cmd


@trace_span(
    "download",
    tracer_name="downloader",
    attr_from_args=lambda url, prefix, options, downloader=DEFAULT_DOWNLOADER, cwd=None: {"video.url": url},
    attr_from_result=lambda ok: {"download.ok": ok},
)
async def download(url: str, prefix: Optional[str], options: RunOptions,
                   downloader: str = DEFAULT_DOWNLOADER, cwd: Optional[str] = None) -> bool:
    """Run the downloader on one URL inside cwd.

    Returns:
        True on exit status 0, False on a positive exit status
        or on arguments that cannot be passed to a process

    Raises:
        ConfigurationError: If the downloader cannot be started
        DownloadAbortedError: If the downloader was killed by a signal
    """
    cmd = build_command(url, prefix, options, downloader)
    logger.debug(f"exec: {shlex.join(cmd)}")
    try:
        process = await create_subprocess_exec(*cmd, cwd=cwd)
    except (FileNotFoundError, PermissionError) as e:
        raise ConfigurationError(f"cannot run {downloader}: {e}") from e
    except ValueError as e:
        # Arguments the OS cannot take: NUL bytes, unencodable characters
        logger.warning(f"{url}: cannot pass arguments to {downloader}: {e}")
        return False

    status = await process.wait()
    if status == 0:
        return True
    if status < 0:
        raise DownloadAbortedError(cmd[0], signal=-status)
    logger.info(f"{cmd[0]}: exited with {status}!")
    return False
