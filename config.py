#!/usr/bin/env python3
"""
Configuration management for the Feed Poller.

This module centralizes configuration loading, validation, and logging setup.
It handles environment variables, the optional secrets file, and the feeds.yaml
registry, and provides a single `config` instance used throughout the application.
"""

from os import environ, path, access, R_OK
from typing import Dict, Any, Optional
from logging import getLogger, basicConfig, StreamHandler, INFO, DEBUG, WARNING, ERROR
import sys
import yaml
from dotenv import load_dotenv

_LOG_LEVELS = {"DEBUG": DEBUG, "INFO": INFO, "WARNING": WARNING, "ERROR": ERROR}


def _setup_global_logger():
    """Configure the root handler once and return the "FeedPoller" logger.

    LOG_LEVEL picks the level (INFO unless set). LOG_TIMESTAMPS=false drops
    the time prefix, which is handy under systemd or cron where the caller
    stamps lines itself. Output goes to stdout, line buffered, so poll results
    show up as they happen.
    """
    environ.setdefault("PYTHONUNBUFFERED", "1")

    level = _LOG_LEVELS.get(environ.get("LOG_LEVEL", "INFO").strip().upper(), INFO)
    prefix = '%(asctime)s - ' if environ.get("LOG_TIMESTAMPS", "true").lower() != "false" else ''

    basicConfig(
        level=level,
        format=prefix + '%(name)s - %(levelname)s - %(message)s',
        handlers=[StreamHandler(sys.stdout)],
        force=True,
    )

    # pytest and some process managers swap stdout for objects without reconfigure()
    for stream in (sys.stdout, sys.stderr):
        reconfigure = getattr(stream, "reconfigure", None)
        if callable(reconfigure):
            reconfigure(line_buffering=True)

    getLogger("aiohttp").setLevel(max(level, WARNING))

    return getLogger("FeedPoller")


def get_logger(name: str):
    """Child logger "FeedPoller.{name}" (e.g. "poller", "decoder", "models")."""
    return getLogger(f"FeedPoller.{name}")


logger = _setup_global_logger()


def _as_bool(value: Any, default: bool) -> bool:
    """Interpret YAML/env style booleans ("true", "yes", 1, ...)."""
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")


class Config:
    """Configuration manager for the Feed Poller.

    Values are loaded from, in increasing priority:
    1. Environment variables
    2. .env file next to this module (if present)
    3. YAML secrets file (if SECRETS_FILE is set)

    The feed registry is read from feeds.yaml (or FEEDS_CONFIG_PATH).

    Example feeds.yaml:
    ```yaml
    feeds:
      lwn:
        url: "https://lwn.net/headlines/rss"
        update_frequency_seconds: 3600
      old-blog:
        url: "https://example.com/atom.xml"
        interval_minutes: 720
        archive: true
    ```
    """

    def __init__(self):
        """Initialize configuration with environment variables and validation."""
        self._load_environment()
        self._validate_and_set_config()
        self._load_feed_sources()

    def _load_environment(self):
        """Load environment variables from .env file and secrets file if present."""
        dotenv_path = path.join(path.dirname(path.abspath(__file__)), '.env')
        if path.exists(dotenv_path):
            load_dotenv(dotenv_path)
            logger.info(f"Loaded environment variables from {dotenv_path}")

        self._load_secrets_file()

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

    def _validate_and_set_config(self):
        """Validate and set all configuration values."""
        # Basic configuration
        self.DATABASE_PATH = environ.get("DATABASE_PATH", "feeds.db")
        self.USER_AGENT = environ.get("USER_AGENT", "Mozilla/5.0 (compatible; FeedPoller/1.0)")

        # Poll behaviour; the CLI flags of the same name override these per run
        self.IGNORE_POLL_TIMES = _as_bool(environ.get("IGNORE_POLL_TIMES"), False)
        self.IGNORE_PUBLICATION_TIMES = _as_bool(environ.get("IGNORE_PUBLICATION_TIMES"), False)
        self.DEFAULT_UPDATE_FREQUENCY_SECONDS = self._validate_positive_int("DEFAULT_UPDATE_FREQUENCY_SECONDS", 3600, 60)
        self.POLL_INTERVAL_MINUTES = self._validate_positive_int("POLL_INTERVAL_MINUTES", 5, 1)

        # HTTP request configuration
        self.HTTP_TIMEOUT = self._validate_positive_int("HTTP_TIMEOUT", 10, 1)
        self.MAX_REDIRECTS = self._validate_positive_int("MAX_REDIRECTS", 10, 0)

        # Reader configuration
        self.DEFAULT_USER_ID = self._validate_positive_int("DEFAULT_USER_ID", 1, 1)
        self.PAGE_SIZE = self._validate_positive_int("PAGE_SIZE", 50, 1)
        self.DESCRIPTION_DISPLAY_LIMIT = self._validate_positive_int("DESCRIPTION_DISPLAY_LIMIT", 2000, 100)

        # File size limits
        self.SCHEMA_FILE_SIZE_LIMIT_MB = self._validate_positive_int("SCHEMA_FILE_SIZE_LIMIT_MB", 10, 1)

        # File paths
        base_dir = path.dirname(path.abspath(__file__))
        self.SCHEMA_FILE_PATH = path.join(base_dir, "schema.sql")
        self.FEEDS_CONFIG_PATH = environ.get("FEEDS_CONFIG_PATH", path.join(base_dir, "feeds.yaml"))

    def _load_secrets_file(self):
        """Load environment variable overrides from a YAML secrets file.

        If SECRETS_FILE is set, the file is read and each top-level key (or each
        key under an `environment` mapping) is exported as an environment variable.
        """
        secrets_file_path = environ.get("SECRETS_FILE")
        if not secrets_file_path:
            logger.debug("SECRETS_FILE not set; relying on environment/.env")
            return

        secrets_config = self._safe_read_yaml(secrets_file_path, 2 * 1024 * 1024, 'secrets')
        if not isinstance(secrets_config, dict):
            if secrets_config is not None:
                logger.warning(f"Secrets file {secrets_file_path} must be a YAML mapping at the top level")
            return

        env_vars = secrets_config.get('environment') if isinstance(secrets_config.get('environment'), dict) else secrets_config
        secrets_loaded = 0
        for key, value in env_vars.items():
            if isinstance(key, str) and value is not None:
                environ[key] = str(value)
                secrets_loaded += 1
            else:
                logger.warning(f"Skipping invalid environment variable in secrets file: {key}")
        logger.info(f"Loaded {secrets_loaded} environment variables from secrets file {secrets_file_path}")

    def _safe_read_yaml(self, file_path: str, max_size: int, kind: str) -> Any | None:
        """Load a YAML file, or return None (with a log line) if it is unusable.

        `kind` only labels the log messages ('secrets', 'feeds').
        """
        label = kind.capitalize()
        if not path.isfile(file_path):
            logger.warning(f"{label} file not found at {file_path}")
            return None
        if not access(file_path, R_OK):
            logger.error(f"{label} file at {file_path} is not readable")
            return None

        try:
            size = path.getsize(file_path)
            if size > max_size:
                logger.error(f"{label} file {file_path} is {size} bytes, over the {max_size} byte limit")
                return None
            with open(file_path, 'r', encoding='utf-8') as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            logger.error(f"Invalid YAML in {kind} file {file_path}: {e}")
            return None
        except OSError as e:
            logger.error(f"Could not read {kind} file {file_path}: {e}")
            return None

        if not data:
            logger.warning(f"{label} file {file_path} is empty")
            return None
        return data

    def _parse_feed_source(self, name: str, feed_cfg: Any) -> Optional[Dict[str, Any]]:
        """Normalize one feeds.yaml entry, or return None if it is unusable."""
        if not isinstance(feed_cfg, dict) or not isinstance(feed_cfg.get('url'), str) or not feed_cfg['url'].strip():
            logger.warning(f"Skipping invalid feed configuration for '{name}': {feed_cfg}")
            return None

        frequency = feed_cfg.get('update_frequency_seconds')
        if frequency is None and feed_cfg.get('interval_minutes') is not None:
            try:
                frequency = int(feed_cfg['interval_minutes']) * 60
            except (TypeError, ValueError):
                frequency = None
        try:
            frequency = int(frequency) if frequency is not None else self.DEFAULT_UPDATE_FREQUENCY_SECONDS
        except (TypeError, ValueError):
            logger.warning(f"Invalid update frequency for '{name}', using default {self.DEFAULT_UPDATE_FREQUENCY_SECONDS}s")
            frequency = self.DEFAULT_UPDATE_FREQUENCY_SECONDS
        if frequency < 1:
            logger.warning(f"Update frequency for '{name}' must be positive, using default {self.DEFAULT_UPDATE_FREQUENCY_SECONDS}s")
            frequency = self.DEFAULT_UPDATE_FREQUENCY_SECONDS

        return {
            'url': feed_cfg['url'].strip(),
            'update_frequency_seconds': frequency,
            'archive': _as_bool(feed_cfg.get('archive'), False),
            'active': _as_bool(feed_cfg.get('active'), True),
        }

    def _load_feed_sources(self) -> None:
        """Populate self.FEED_SOURCES from feeds.yaml.

        Any failure results in an empty mapping; polling itself only depends on
        the feeds already registered in the database.
        """
        feeds_path = self.FEEDS_CONFIG_PATH
        config_data = self._safe_read_yaml(feeds_path, 5 * 1024 * 1024, 'feeds')
        feeds_section = config_data.get('feeds') if isinstance(config_data, dict) else None
        if not isinstance(feeds_section, dict):
            if config_data is not None:
                logger.warning(f"No valid feeds found in {feeds_path}")
            self.FEED_SOURCES: Dict[str, Dict[str, Any]] = {}
            return

        new_sources: Dict[str, Dict[str, Any]] = {}
        for name, feed_cfg in feeds_section.items():
            parsed = self._parse_feed_source(str(name), feed_cfg)
            if parsed:
                new_sources[str(name)] = parsed
                logger.debug(f"Loaded feed {name}: {parsed['url']}")

        self.FEED_SOURCES = new_sources
        logger.info(f"Loaded {len(self.FEED_SOURCES)} feeds from {feeds_path}")

    def reload_feed_sources(self, feeds_path: Optional[str] = None):
        """Reload feed sources, optionally from a different file."""
        if feeds_path:
            self.FEEDS_CONFIG_PATH = feeds_path
        logger.info(f"Reloading feed sources from {self.FEEDS_CONFIG_PATH}")
        self._load_feed_sources()

    def get_config_summary(self) -> Dict[str, Any]:
        """Get a summary of current configuration for logging/debugging."""
        return {
            "database_path": self.DATABASE_PATH,
            "http_timeout": self.HTTP_TIMEOUT,
            "max_redirects": self.MAX_REDIRECTS,
            "ignore_poll_times": self.IGNORE_POLL_TIMES,
            "ignore_publication_times": self.IGNORE_PUBLICATION_TIMES,
            "poll_interval_minutes": self.POLL_INTERVAL_MINUTES,
            "default_user_id": self.DEFAULT_USER_ID,
            "feed_count": len(self.FEED_SOURCES),
            "feeds_config_path": self.FEEDS_CONFIG_PATH,
            "secrets_file_configured": bool(environ.get("SECRETS_FILE")),
        }

# Global configuration instance
config = Config()
