#!/usr/bin/env python3
"""
Configuration management for Feed Sentry.

Settings come from the process environment, optionally seeded from a .env
file next to this module and from a YAML secrets file (SECRETS_FILE). The
list of feeds to keep in sync lives in feeds.yaml (FEEDS_CONFIG_PATH).
Logging is configured here once for every module.
"""

from os import environ, path, access, R_OK
from typing import Any, Callable, Dict, Optional, Union
from logging import getLogger, basicConfig, StreamHandler, INFO, DEBUG, WARNING, ERROR
import sys
import yaml
from dotenv import load_dotenv

BASE_DIR = path.dirname(path.abspath(__file__))
SECRETS_FILE_SIZE_LIMIT = 2 * 1024 * 1024
FEEDS_FILE_SIZE_LIMIT = 5 * 1024 * 1024

Number = Union[int, float]


def _setup_global_logger():
    """Configure the root handler once and return the application logger.

    LOG_LEVEL picks DEBUG, INFO (default), WARNING or ERROR and
    LOG_TIMESTAMPS=false drops the time prefix. Output goes to stderr so
    stdout stays free for command output such as JSON progress lines.
    """
    levels = {"DEBUG": DEBUG, "INFO": INFO, "WARNING": WARNING, "ERROR": ERROR}
    level = levels.get(environ.get("LOG_LEVEL", "INFO").upper(), INFO)

    parts = ['%(name)s', '%(levelname)s', '%(message)s']
    if environ.get("LOG_TIMESTAMPS", "true").lower() != "false":
        parts.insert(0, '%(asctime)s')

    basicConfig(
        level=level,
        format=' - '.join(parts),
        handlers=[StreamHandler(sys.stderr)],
        force=True
    )

    # aiohttp access noise is not useful for a fetch worker
    getLogger("aiohttp").setLevel(max(level, WARNING))

    return getLogger("FeedSentry")


def get_logger(name: str):
    """Return the "FeedSentry.<name>" logger, e.g. get_logger("fetcher")."""
    return getLogger(f"FeedSentry.{name}")


logger = _setup_global_logger()


def _read_yaml(file_path: str, max_size: int, kind: str) -> Optional[Any]:
    """Load a bounded YAML file; None (with a log line) when it is unusable.

    ``kind`` only labels log messages ('secrets', 'feeds').
    """
    if not path.isfile(file_path):
        logger.warning(f"No {kind} file at {file_path}")
        return None
    if not access(file_path, R_OK):
        logger.error(f"Cannot read {kind} file {file_path}: permission denied")
        return None
    try:
        size = path.getsize(file_path)
        if size > max_size:
            logger.error(f"Refusing {kind} file {file_path}: {size} bytes exceeds {max_size}")
            return None
        with open(file_path, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        logger.error(f"Invalid YAML in {kind} file {file_path}: {e}")
        return None
    except OSError as e:
        logger.error(f"Could not load {kind} file {file_path}: {e}")
        return None
    if not data:
        logger.warning(f"{kind.capitalize()} file {file_path} is empty")
        return None
    return data


def parse_feed_sources(data: Any) -> Dict[str, str]:
    """Turn the feeds.yaml document into a slug -> URL mapping.

    Entries may be ``slug: url`` or ``slug: {url: ...}``; anything else is
    skipped with a warning.
    """
    feeds = data.get('feeds') if isinstance(data, dict) else None
    if not isinstance(feeds, dict):
        return {}
    sources: Dict[str, str] = {}
    for slug, entry in feeds.items():
        url = entry.get('url') if isinstance(entry, dict) else entry
        if isinstance(url, str) and url.strip():
            sources[str(slug)] = url.strip()
        else:
            logger.warning(f"Ignoring feed '{slug}': no URL")
    return sources


class Config:
    """Process-wide settings for Feed Sentry.

    Example feeds.yaml:
    ```yaml
    feeds:
      hn:
        url: "https://news.ycombinator.com/rss"
      lwn: "https://lwn.net/headlines/rss"
    ```
    """

    def __init__(self):
        self._load_environment()
        self._apply_settings()
        self._load_feed_sources()

    def _load_environment(self):
        dotenv_path = path.join(BASE_DIR, '.env')
        if path.exists(dotenv_path):
            load_dotenv(dotenv_path)
            logger.info(f"Loaded .env from {dotenv_path}")
        self._load_secrets_file()

    def _load_secrets_file(self):
        """Copy a YAML secrets mapping into the environment.

        The mapping may sit at the top level or under an ``environment`` key.
        Existing variables are overwritten so secrets win over .env.
        """
        secrets_path = environ.get("SECRETS_FILE")
        if not secrets_path:
            return
        data = _read_yaml(secrets_path, SECRETS_FILE_SIZE_LIMIT, 'secrets')
        if data is None:
            return
        if not isinstance(data, dict):
            logger.warning(f"Secrets file {secrets_path} is not a mapping; ignoring it")
            return

        values = data['environment'] if isinstance(data.get('environment'), dict) else data
        loaded = 0
        for key, value in values.items():
            if not isinstance(key, str) or value is None:
                logger.warning(f"Skipping secrets entry {key!r}")
                continue
            environ[key] = str(value)
            loaded += 1
        logger.info(f"Loaded {loaded} secrets from {secrets_path}")

    def _env_number(self, name: str, default: Number, minimum: Number,
                    cast: Callable[[str], Number] = int) -> Number:
        """Read a numeric setting, falling back to ``default`` when invalid or below ``minimum``."""
        raw = environ.get(name)
        if raw is None:
            return default
        try:
            value = cast(raw)
        except (ValueError, TypeError):
            logger.warning(f"{name}={raw!r} is not a number; using {default}")
            return default
        if value < minimum:
            logger.warning(f"{name}={value} is below {minimum}; using {default}")
            return default
        return value

    def _apply_settings(self):
        # Storage and identity
        self.DATABASE_PATH = environ.get("DATABASE_PATH", "feeds.db")
        self.SCHEMA_FILE_PATH = path.join(BASE_DIR, "schema.sql")
        self.FEEDS_CONFIG_PATH = environ.get("FEEDS_CONFIG_PATH", path.join(BASE_DIR, "feeds.yaml"))
        self.USER_AGENT = environ.get("USER_AGENT", "Mozilla/5.0 (compatible; FeedSentry/1.0)")
        # Image hosts often refuse non-browser agents
        self.IMAGE_USER_AGENT = environ.get(
            "IMAGE_USER_AGENT",
            "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36",
        )
        self.INCLUDE_SHORTS = environ.get("INCLUDE_SHORTS", "false").lower() == "true"

        # DNS resolution cache
        self.DNS_CACHE_MAX_SIZE = self._env_number("DNS_CACHE_MAX_SIZE", 1000, 1)
        self.DNS_CACHE_TTL_SECONDS = self._env_number("DNS_CACHE_TTL_SECONDS", 300.0, 1.0, float)
        self.CACHE_CLEANUP_INTERVAL_SECONDS = self._env_number("CACHE_CLEANUP_INTERVAL_SECONDS", 3600.0, 1.0, float)

        # Outbound fetches
        self.FEED_FETCH_TIMEOUT = self._env_number("FEED_FETCH_TIMEOUT", 15.0, 0.1, float)
        self.IMAGE_FETCH_TIMEOUT = self._env_number("IMAGE_FETCH_TIMEOUT", 10.0, 0.1, float)
        self.HTTP_TIMEOUT = self._env_number("HTTP_TIMEOUT", 30, 1)
        self.MAX_REDIRECTS = self._env_number("MAX_REDIRECTS", 5, 0)
        self.MAX_FEED_BYTES = self._env_number("MAX_FEED_BYTES", 10 * 1024 * 1024, 1024)
        self.MAX_IMAGE_BYTES = self._env_number("MAX_IMAGE_BYTES", 15 * 1024 * 1024, 1024)

        # Sync (0 disables the cap / the schedule)
        self.SYNC_CONCURRENCY = self._env_number("SYNC_CONCURRENCY", 0, 0)
        self.SYNC_INTERVAL_MINUTES = self._env_number("SYNC_INTERVAL_MINUTES", 0, 0)

        # Article retention
        self.ARTICLE_CLEANUP_INTERVAL_HOURS = self._env_number("ARTICLE_CLEANUP_INTERVAL_HOURS", 24, 1)
        self.KEEP_RECENT_PER_FEED = self._env_number("KEEP_RECENT_PER_FEED", 200, 1)
        self.READ_RETENTION_DAYS = self._env_number("READ_RETENTION_DAYS", 30, 1)
        self.UNREAD_RETENTION_DAYS = self._env_number("UNREAD_RETENTION_DAYS", 60, 1)

    def _load_feed_sources(self) -> None:
        data = _read_yaml(self.FEEDS_CONFIG_PATH, FEEDS_FILE_SIZE_LIMIT, 'feeds')
        self.FEED_SOURCES = parse_feed_sources(data)
        if data is not None and not self.FEED_SOURCES:
            logger.warning(f"No usable feeds in {self.FEEDS_CONFIG_PATH}")
        else:
            logger.info(f"Loaded {len(self.FEED_SOURCES)} feeds from {self.FEEDS_CONFIG_PATH}")

    def reload_feed_sources(self):
        """Re-read feeds.yaml."""
        self._load_feed_sources()

    def get_config_summary(self) -> Dict[str, Any]:
        """Non-secret settings, for the status command and debug logs."""
        return {
            "database_path": self.DATABASE_PATH,
            "feed_count": len(self.FEED_SOURCES),
            "dns_cache_max_size": self.DNS_CACHE_MAX_SIZE,
            "dns_cache_ttl_seconds": self.DNS_CACHE_TTL_SECONDS,
            "cache_cleanup_interval_seconds": self.CACHE_CLEANUP_INTERVAL_SECONDS,
            "feed_fetch_timeout": self.FEED_FETCH_TIMEOUT,
            "sync_concurrency": self.SYNC_CONCURRENCY,
            "sync_interval_minutes": self.SYNC_INTERVAL_MINUTES,
            "include_shorts": self.INCLUDE_SHORTS,
            "secrets_file_configured": bool(environ.get("SECRETS_FILE")),
        }


config = Config()
