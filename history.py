#!/usr/bin/env python3
"""
Download history with cross-process locking.

The `.state` file in a feed directory lists every video URL that was already
downloaded, most recent first, one per line. It doubles as the run mutex: a
run holds an exclusive non-blocking flock on it from start to finish, and the
file's mtime is set when the lock is taken, so another run can tell how long
the current holder has been going.

The file is rewritten in full after every successful download, so a crash
leaves it consistent with the last download that finished.
"""

import fcntl
import os
import time
from typing import Iterable, List, Optional

from config import get_logger
from errors import ConfigurationError, HistoryLockedError, format_lock_age
from telemetry import trace_span

logger = get_logger("history")

STATE_FILE_NAME = ".state"


class HistoryLock:
    """Context manager holding the exclusive lock on a history file.

    In read-only (debug) mode the file is opened for reading only and a
    missing file yields an unlocked empty history. Contention with an old
    enough lock is logged instead of raised, so a dry run can proceed
    alongside a real one.
    """

    def __init__(self, file_path: str, read_only: bool = False, verbose: int = 0,
                 quiet_seconds: float = 2 * 60 * 60):
        self.file_path = file_path
        self.read_only = read_only
        self.verbose = verbose
        self.quiet_seconds = quiet_seconds
        self.handle = None
        self.locked = False

    def _open(self):
        if self.read_only:
            if not os.path.exists(self.file_path):
                logger.info(f"{self.file_path} does not exist; starting with empty history")
                return None
            return open(self.file_path, 'r', encoding='utf-8', errors='surrogateescape')
        # a+ creates the file without truncating it; undecodable bytes written
        # by older tools survive a rewrite unchanged
        return open(self.file_path, 'a+', encoding='utf-8', errors='surrogateescape')

    def lock_age(self) -> float:
        try:
            return max(time.time() - os.fstat(self.handle.fileno()).st_mtime, 0.0)
        except OSError:
            return 0.0

    def acquire(self) -> "HistoryLock":
        try:
            self.handle = self._open()
        except OSError as e:
            raise ConfigurationError(f"writing {self.file_path}: {e}") from e
        if self.handle is None:
            return self

        try:
            fcntl.flock(self.handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            age = self.lock_age()
            quiet = self.verbose == 0 and age < self.quiet_seconds
            if self.read_only and not quiet:
                logger.warning(f"already locked for {format_lock_age(age)}: {self.file_path}")
                return self
            self.handle.close()
            self.handle = None
            raise HistoryLockedError(self.file_path, age, quiet=quiet)

        self.locked = True
        logger.debug(f"locked {self.file_path}")
        if not self.read_only:
            # Lock age is measured from this moment
            os.utime(self.file_path, None)
        return self

    def release(self) -> None:
        if self.handle is None:
            return
        try:
            if self.locked:
                fcntl.flock(self.handle.fileno(), fcntl.LOCK_UN)
                logger.debug(f"unlocked {self.file_path}")
        finally:
            self.locked = False
            self.handle.close()
            self.handle = None

    def __enter__(self) -> "HistoryLock":
        return self.acquire()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()


class HistoryStore:
    """Ordered, bounded, duplicate-free list of downloaded URLs.

    `mark_seen` only affects membership for the rest of the run; `record`
    also puts the URL at the front of the persisted list and rewrites the
    file.
    """

    def __init__(self, lock: HistoryLock, max_history: int = 30000):
        self.lock = lock
        self.max_history = max_history
        self._urls: List[str] = []
        self._seen = set()

    @property
    def writable(self) -> bool:
        return self.lock.handle is not None and self.lock.locked and not self.lock.read_only

    def load(self) -> "HistoryStore":
        """Read the history file once; blank lines and repeated URLs are skipped."""
        urls: List[str] = []
        handle = self.lock.handle
        if handle is not None:
            try:
                handle.seek(0)
                lines = handle.read().splitlines()
            except OSError as e:
                raise ConfigurationError(f"reading {self.lock.file_path}: {e}") from e
            known = set()
            for line in lines:
                url = line.strip()
                if url and url not in known:
                    known.add(url)
                    urls.append(url)
        self._urls = urls
        self._seen = set(urls)
        logger.info(f"read {len(urls)} URLs from {self.lock.file_path}")
        return self

    def __contains__(self, url: str) -> bool:
        return url in self._seen

    def __len__(self) -> int:
        return len(self._urls)

    @property
    def urls(self) -> List[str]:
        return list(self._urls)

    def mark_seen(self, url: str) -> None:
        self._seen.add(url)

    def mark_all_seen(self, urls: Iterable[str]) -> None:
        for url in urls:
            self.mark_seen(url)

    def record(self, url: str) -> None:
        """Prepend a downloaded URL and persist the whole list."""
        self._urls = [url] + [u for u in self._urls if u != url]
        del self._urls[self.max_history:]
        self._seen.add(url)
        if self.writable:
            self.persist()
        else:
            logger.debug(f"not writing {self.lock.file_path} (read-only)")

    @trace_span("history.persist", tracer_name="history")
    def persist(self) -> None:
        """Rewrite the file in place while still holding the lock."""
        handle = self.lock.handle
        text = "\n".join(self._urls)
        if text:
            text += "\n"
        try:
            handle.seek(0)
            handle.truncate(0)
            handle.write(text)
            handle.flush()
            os.fsync(handle.fileno())
            handle.seek(0, os.SEEK_END)
        except OSError as e:
            raise ConfigurationError(f"writing {self.lock.file_path}: {e}") from e
        logger.debug(f"wrote {len(self._urls)} URLs to {self.lock.file_path}")


def open_history(feed_dir: str, read_only: bool = False, verbose: int = 0,
                 quiet_seconds: float = 2 * 60 * 60, max_history: int = 30000,
                 file_name: Optional[str] = None) -> HistoryStore:
    """Lock and load the history of a feed directory.

    The caller owns the returned store's lock and must release it.
    """
    lock = HistoryLock(os.path.join(feed_dir, file_name or STATE_FILE_NAME), read_only=read_only,
                       verbose=verbose, quiet_seconds=quiet_seconds)
    lock.acquire()
    try:
        return HistoryStore(lock, max_history=max_history).load()
    except Exception:
        lock.release()
        raise
