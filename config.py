#!/usr/bin/env python3
"""
Configuration management for the video feed downloader.

This module centralizes configuration loading, validation, and logging setup.
Defaults come from environment variables (optionally seeded from a .env file),
and each feed directory may carry a small YAML file that overrides thresholds
for that directory only.
"""

from os import environ, path, access, R_OK
from copy import copy
from typing import Dict, Any, List, Optional
from logging import getLogger, basicConfig, StreamHandler, INFO, DEBUG, WARNING, ERROR
import sys
import yaml
from dotenv import load_dotenv

ROOT_LOGGER_NAME = "VideoFeeds"
DIRECTORY_CONFIG_NAME = ".config.yaml"


def _setup_global_logger():
    """Setup a single global logger for the entire application.

    Environment Variables:
        LOG_LEVEL: Set log level (DEBUG, INFO, WARNING, ERROR) - defaults to WARNING
        LOG_TIMESTAMPS: Enable/disable timestamps in logs (true/false) - defaults to false

    Log lines go to stderr so that the downloader's own output on stdout stays
    readable. The CLI adjusts the level afterwards via configure_verbosity().
    """
    level_str = environ.get("LOG_LEVEL", "WARNING").upper()
    level_map = {
        "DEBUG": DEBUG,
        "INFO": INFO,
        "WARNING": WARNING,
        "ERROR": ERROR
    }
    level = level_map.get(level_str, WARNING)

    show_timestamps = environ.get("LOG_TIMESTAMPS", "false").lower() == "true"

    if show_timestamps:
        log_format = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    else:
        log_format = '%(name)s - %(levelname)s - %(message)s'

    basicConfig(
        level=level,
        format=log_format,
        handlers=[StreamHandler(sys.stderr)],
        force=True
    )

    return getLogger(ROOT_LOGGER_NAME)


def get_logger(name: str):
    """Get a module-specific logger with the unified configuration.

    Args:
        name: The logger name (e.g., "fetcher", "history", "downloader")

    Returns:
        A logger named "VideoFeeds.{name}" inheriting the global configuration
    """
    return getLogger(f"{ROOT_LOGGER_NAME}.{name}")


def configure_verbosity(verbose: int) -> None:
    """Map the CLI verbosity count onto logging levels.

    0 shows warnings and errors only, 1 adds progress information and 2 or
    more adds per-entry and per-URL detail.
    """
    if verbose <= 0:
        level = WARNING
    elif verbose == 1:
        level = INFO
    else:
        level = DEBUG
    getLogger().setLevel(level)
    getLogger(ROOT_LOGGER_NAME).setLevel(level)


logger = _setup_global_logger()


def _split_list(value: Optional[str]) -> List[str]:
    """Parse a comma separated environment value into a clean list."""
    if not value:
        return []
    return [item.strip().lower() for item in value.split(",") if item.strip()]


def _minutes_to_seconds(raw: Any) -> Any:
    try:
        return int(float(str(raw).strip()) * 60)
    except (TypeError, ValueError):
        return raw


class Config:
    """Configuration manager for the video feed downloader.

    Values are loaded from:
    1. Environment variables
    2. .env file next to this module (if present)
    3. An optional `.config.yaml` inside the feed directory (see for_directory)

    Example .config.yaml:
    ```yaml
    thresholds:
      max_days: 30
      max_urls: 50
      max_history: 10000
      lock_quiet_minutes: 60
    future_date_exempt:
      - www.dnalounge.com
    excluded_sites:
      - twitter
    link_follow_sites:
      - promonews
    downloader: youtubedown
    ```
    """

    def __init__(self):
        """Initialize configuration with environment variables and validation."""
        self._load_environment()
        self._validate_and_set_config()

    def _load_environment(self):
        """Load environment variables from .env file if present."""
        dotenv_path = path.join(path.dirname(path.abspath(__file__)), '.env')
        if path.exists(dotenv_path):
            load_dotenv(dotenv_path)
            logger.debug(f"Loaded environment variables from {dotenv_path}")

    def _validate_positive_int(self, env_var: str, default: int, min_val: int = 1) -> int:
        """Validate and parse a positive integer environment variable."""
        try:
            value = int(environ.get(env_var, str(default)))
            if value < min_val:
                logger.warning(f"{env_var} must be at least {min_val}, using default {default}")
                return default
            return value
        except (ValueError, TypeError):
            logger.warning(f"Invalid {env_var} value, using default {default}")
            return default

    def _validate_positive_float(self, env_var: str, default: float, min_val: float = 0.1) -> float:
        """Validate and parse a positive float environment variable."""
        try:
            value = float(environ.get(env_var, str(default)))
            if value < min_val:
                logger.warning(f"{env_var} must be at least {min_val}, using default {default}")
                return default
            return value
        except (ValueError, TypeError):
            logger.warning(f"Invalid {env_var} value, using default {default}")
            return default

    def _validate_and_set_config(self):
        """Validate and set all configuration values."""
        self.USER_AGENT = environ.get("USER_AGENT", "videofeeds/1.0")

        # HTTP request configuration
        self.HTTP_TIMEOUT = self._validate_positive_int("HTTP_TIMEOUT", 20, 1)
        self.MAX_RETRIES = self._validate_positive_int("MAX_RETRIES", 5, 0)
        self.RETRY_DELAY_BASE = self._validate_positive_float("RETRY_DELAY_BASE", 2.0, 0.0)
        # Anything shorter than this is an error page or a truncated response
        self.MIN_BODY_LENGTH = self._validate_positive_int("MIN_BODY_LENGTH", 1024, 0)
        self.FETCH_CONCURRENCY = self._validate_positive_int("FETCH_CONCURRENCY", 1, 1)

        # Per-feed and per-run limits
        self.MAX_URLS = self._validate_positive_int("MAX_URLS", 100, 1)
        self.MAX_DAYS = self._validate_positive_float("MAX_DAYS", 16.0, 0.0)
        self.MAX_HISTORY = self._validate_positive_int("MAX_HISTORY", 30000, 1)

        # A lock younger than this is assumed to be a run still in progress
        self.LOCK_QUIET_SECONDS = self._validate_positive_int("LOCK_QUIET_SECONDS", 2 * 60 * 60, 0)

        # Site lists
        self.FUTURE_DATE_EXEMPT_SITES = _split_list(environ.get("FUTURE_DATE_EXEMPT_SITES", ""))
        self.EXCLUDED_SITES = _split_list(environ.get("EXCLUDED_SITES", "twitter"))
        self.LINK_FOLLOW_SITES = _split_list(environ.get("LINK_FOLLOW_SITES", ""))

        # External downloader
        self.DOWNLOADER = environ.get("DOWNLOADER", "youtubedown")

    # ------------------------------------------------------------------
    # Per-directory YAML overrides
    # ------------------------------------------------------------------
    def _safe_read_yaml(self, file_path: str, max_size: int, kind: str) -> Any | None:
        """Safely read a YAML file with consistent validation.

        Args:
            file_path: Path to the YAML file
            max_size: Maximum allowed file size in bytes
            kind: Short label for logging context

        Returns:
            Parsed YAML or None when the file is absent, unreadable or invalid.
        """
        try:
            if not path.isfile(file_path):
                return None
            if not access(file_path, R_OK):
                logger.error(f"No read permission for {kind} file at {file_path}")
                return None
            size = path.getsize(file_path)
            if size > max_size:
                logger.error(f"{kind.capitalize()} file too large: {size} bytes (limit: {max_size} bytes)")
                return None
            with open(file_path, 'r') as f:
                data = yaml.safe_load(f)
            if not data:
                logger.warning(f"Empty or invalid YAML in {kind} file {file_path}")
                return None
            return data
        except yaml.YAMLError as e:
            logger.error(f"Error parsing YAML in {kind} file {file_path}: {e}")
        except OSError as e:
            logger.error(f"Error loading {kind} file {file_path}: {e}")
        return None

    def _apply_threshold(self, thresholds: Dict[str, Any], key: str, attr: str, cast, min_val) -> None:
        raw = thresholds.get(key)
        if raw is None:
            return
        try:
            value = cast(str(raw).strip())
        except (TypeError, ValueError):
            logger.warning(f"Invalid {key} value '{raw}' in {DIRECTORY_CONFIG_NAME}; keeping {getattr(self, attr)}")
            return
        if value < min_val:
            logger.warning(f"{key} must be >= {min_val}; keeping {getattr(self, attr)} (got {raw})")
            return
        setattr(self, attr, value)

    def _apply_list(self, data: Dict[str, Any], key: str, attr: str) -> None:
        raw = data.get(key)
        if raw is None:
            return
        if isinstance(raw, str):
            raw = [raw]
        if not isinstance(raw, list):
            logger.warning(f"{key} in {DIRECTORY_CONFIG_NAME} must be a list; ignoring")
            return
        setattr(self, attr, [str(item).strip().lower() for item in raw if str(item).strip()])

    def for_directory(self, feed_dir: str) -> "Config":
        """Return a copy of this configuration with the directory's overrides applied.

        Never fails: a missing or broken override file leaves the defaults intact.
        """
        derived = copy(self)
        data = self._safe_read_yaml(path.join(feed_dir, DIRECTORY_CONFIG_NAME), 1024 * 1024, 'directory config')
        if not isinstance(data, dict):
            return derived

        thresholds = data.get('thresholds')
        if isinstance(thresholds, dict):
            derived._apply_threshold(thresholds, 'max_days', 'MAX_DAYS', float, 0)
            derived._apply_threshold(thresholds, 'max_urls', 'MAX_URLS', int, 1)
            derived._apply_threshold(thresholds, 'max_history', 'MAX_HISTORY', int, 1)
            if thresholds.get('lock_quiet_minutes') is not None:
                derived._apply_threshold(
                    {'lock_quiet_seconds': _minutes_to_seconds(thresholds['lock_quiet_minutes'])},
                    'lock_quiet_seconds', 'LOCK_QUIET_SECONDS', int, 0,
                )
        elif thresholds is not None:
            logger.warning(f"thresholds in {DIRECTORY_CONFIG_NAME} must be a mapping; ignoring")

        derived._apply_list(data, 'future_date_exempt', 'FUTURE_DATE_EXEMPT_SITES')
        derived._apply_list(data, 'excluded_sites', 'EXCLUDED_SITES')
        derived._apply_list(data, 'link_follow_sites', 'LINK_FOLLOW_SITES')

        downloader = data.get('downloader')
        if isinstance(downloader, str) and downloader.strip():
            derived.DOWNLOADER = downloader.strip()

        logger.info(
            "Loaded directory overrides: MAX_DAYS=%s MAX_URLS=%s MAX_HISTORY=%s LOCK_QUIET_SECONDS=%s",
            derived.MAX_DAYS,
            derived.MAX_URLS,
            derived.MAX_HISTORY,
            derived.LOCK_QUIET_SECONDS,
        )
        return derived

    def get_config_summary(self) -> Dict[str, Any]:
        """Get a summary of current configuration for logging/debugging."""
        return {
            "http_timeout": self.HTTP_TIMEOUT,
            "max_retries": self.MAX_RETRIES,
            "min_body_length": self.MIN_BODY_LENGTH,
            "fetch_concurrency": self.FETCH_CONCURRENCY,
            "max_urls": self.MAX_URLS,
            "max_days": self.MAX_DAYS,
            "max_history": self.MAX_HISTORY,
            "lock_quiet_seconds": self.LOCK_QUIET_SECONDS,
            "excluded_sites": ",".join(self.EXCLUDED_SITES),
            "downloader": self.DOWNLOADER,
        }


# Global configuration instance
config = Config()
