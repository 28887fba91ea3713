#!/usr/bin/env python3
"""
Configuration management for the news gateway.

This module centralizes configuration loading, validation and logging setup.
It reads environment variables (optionally from a .env file and a YAML
secrets file) and the per-source settings in sources.yaml, and exposes a
single ``config`` instance used throughout the application.
"""

from os import environ, path, access, R_OK
from typing import Dict, Any, List
from logging import getLogger, basicConfig, StreamHandler, INFO, DEBUG, WARNING, ERROR
import sys
import yaml
from dotenv import load_dotenv

MINUTE_MS = 60 * 1000


def _setup_global_logger():
    """Setup a single global logger for the entire application.

    Environment Variables:
        LOG_LEVEL: Set log level (DEBUG, INFO, WARNING, ERROR) - defaults to INFO
        LOG_TIMESTAMPS: Enable/disable timestamps in logs (true/false) - defaults to true

    All modules should use get_logger() to create module-specific loggers that
    inherit this configuration.
    """
    level_str = environ.get("LOG_LEVEL", "INFO").upper()
    level_map = {
        "DEBUG": DEBUG,
        "INFO": INFO,
        "WARNING": WARNING,
        "ERROR": ERROR
    }
    level = level_map.get(level_str, INFO)

    show_timestamps = environ.get("LOG_TIMESTAMPS", "true").lower() != "false"
    if show_timestamps:
        log_format = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    else:
        log_format = '%(name)s - %(levelname)s - %(message)s'

    basicConfig(
        level=level,
        format=log_format,
        handlers=[StreamHandler(sys.stdout)],
        force=True
    )

    # Keep access logs and client libraries at the configured level or quieter
    for name in ("uvicorn.access", "aiohttp.client"):
        getLogger(name).setLevel(max(level, WARNING))

    return getLogger("NewsGateway")


def get_logger(name: str):
    """Get a module-specific logger with the unified configuration.

    Args:
        name: The logger name (e.g., "orchestrator", "cache", "sources")

    Returns:
        A logger named "NewsGateway.{name}"
    """
    return getLogger(f"NewsGateway.{name}")


logger = _setup_global_logger()


class Config:
    """Configuration manager for the news gateway.

    Loading order:
    1. Environment variables
    2. .env file (if present)
    3. YAML secrets file (if SECRETS_FILE is set), overriding both
    4. sources.yaml for per-source refresh intervals, aliases and proxy
    """

    def __init__(self):
        self._load_environment()
        self._validate_and_set_config()
        self._load_sources()

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

    @staticmethod
    def _flag(env_var: str, default: str = "false") -> bool:
        return environ.get(env_var, default).lower() == "true"

    def _validate_and_set_config(self):
        """Validate and set all configuration values."""
        base_dir = path.dirname(path.abspath(__file__))

        # Storage
        self.DATABASE_PATH = environ.get("DATABASE_PATH", "cache.db")
        self.SCHEMA_FILE_PATH = path.join(base_dir, "schema.sql")
        self.SCHEMA_FILE_SIZE_LIMIT_MB = self._validate_positive_int("SCHEMA_FILE_SIZE_LIMIT_MB", 1, 1)
        self.DISABLE_CACHE = self._flag("DISABLE_CACHE")

        # Freshness policy
        self.CACHE_TTL_MINUTES = self._validate_positive_int("CACHE_TTL_MINUTES", 24 * 60, 1)
        self.DEFAULT_REFRESH_MINUTES = self._validate_positive_int("DEFAULT_REFRESH_MINUTES", 10, 1)
        self.CACHE_TTL_MS = self.CACHE_TTL_MINUTES * MINUTE_MS

        # Filtered pagination bounds
        self.TARGET_ITEMS = self._validate_positive_int("TARGET_ITEMS", 30, 1)
        self.MAX_PAGES = self._validate_positive_int("MAX_PAGES", 5, 1)

        # Upstream HTTP configuration
        self.USER_AGENT = environ.get(
            "USER_AGENT",
            "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
        )
        self.HTTP_TIMEOUT = self._validate_positive_int("HTTP_TIMEOUT", 15, 1)
        self.MAX_RETRIES = self._validate_positive_int("MAX_RETRIES", 1, 0)
        self.RETRY_DELAY_BASE = self._validate_positive_float("RETRY_DELAY_BASE", 0.5, 0.1)

        # Requester eligibility for "latest" mode
        self.DISABLE_LOGIN = self._flag("DISABLE_LOGIN")
        self.API_TOKENS = {t.strip() for t in environ.get("API_TOKENS", "").split(",") if t.strip()}

        # Server
        self.HOST = environ.get("HOST", "0.0.0.0")
        self.PORT = self._validate_positive_int("PORT", 4444, 1)

        self.SOURCES_CONFIG_PATH = environ.get("SOURCES_CONFIG_PATH", path.join(base_dir, "sources.yaml"))

    def _load_secrets_file(self):
        """Load environment variable overrides from a YAML secrets file.

        Accepts either a top-level mapping or one nested under ``environment``::

            API_TOKENS: "token-a,token-b"
            # or
            environment:
              API_TOKENS: "token-a,token-b"
        """
        secrets_file_path = environ.get("SECRETS_FILE")
        if not secrets_file_path:
            logger.debug("SECRETS_FILE not set; relying on environment/.env for secrets")
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
        """Safely read a YAML file with consistent validation.

        Args:
            file_path: Path to the YAML file
            max_size: Maximum allowed file size in bytes
            kind: Short label for logging context (e.g. 'secrets', 'sources')

        Returns:
            Parsed YAML (mapping/list/primitive) or None on failure.
        """
        try:
            if not path.isfile(file_path):
                logger.warning(f"{kind.capitalize()} file not found at {file_path}")
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

    def _load_sources(self) -> None:
        """Populate self.SOURCES and self.PROXY_URL from sources.yaml.

        Each entry in SOURCES is a dict with keys: interval_ms, redirect, name,
        home, disabled, rss (feed url for generic RSS sources) and hidden_date.
        Any failure results in an empty mapping.
        """
        sources_path = self.SOURCES_CONFIG_PATH
        config_data = self._safe_read_yaml(sources_path, 1024 * 1024, 'sources')
        self.PROXY_URL = None
        self.SOURCES = {}
        if not isinstance(config_data, dict):
            return

        proxy_section = config_data.get('proxy')
        if isinstance(proxy_section, dict):
            proxy_url_value = proxy_section.get('url')
            if isinstance(proxy_url_value, str) and proxy_url_value.strip():
                self.PROXY_URL = proxy_url_value.strip()
                logger.info("Configured proxy fetch strategy via sources.yaml")
            elif proxy_url_value is not None:
                logger.warning(f"Invalid proxy.url entry in {sources_path}; ignoring proxy configuration")
        elif proxy_section not in (None, False):
            logger.warning(f"Proxy configuration in {sources_path} must be a mapping with a url field")

        sources_section = config_data.get('sources')
        if not isinstance(sources_section, dict):
            logger.warning(f"No valid sources found in {sources_path}")
            return

        loaded: Dict[str, Dict[str, Any]] = {}
        for source_id, source_cfg in sources_section.items():
            source_cfg = source_cfg or {}
            if not isinstance(source_cfg, dict):
                logger.warning(f"Skipping invalid source configuration for '{source_id}': {source_cfg}")
                continue
            loaded[str(source_id)] = {
                'interval_ms': self._interval_ms(source_id, source_cfg.get('interval_minutes')),
                'redirect': source_cfg.get('redirect'),
                'name': source_cfg.get('name') or str(source_id),
                'home': source_cfg.get('home'),
                'disabled': bool(source_cfg.get('disabled', False)),
                'rss': source_cfg.get('rss'),
                'hidden_date': bool(source_cfg.get('hidden_date', False)),
            }
        self.SOURCES = loaded
        logger.info(f"Loaded {len(self.SOURCES)} source settings from {sources_path}")

    def _interval_ms(self, source_id: str, raw: Any) -> int:
        """Convert a per-source interval_minutes value to milliseconds."""
        if raw is None:
            return self.DEFAULT_REFRESH_MINUTES * MINUTE_MS
        try:
            minutes = float(str(raw).strip())
            if minutes > 0:
                return int(minutes * MINUTE_MS)
        except ValueError:
            pass
        logger.warning(
            "Invalid interval_minutes '%s' for source %s; using default %sm",
            raw, source_id, self.DEFAULT_REFRESH_MINUTES,
        )
        return self.DEFAULT_REFRESH_MINUTES * MINUTE_MS

    def source_settings(self, source_id: str) -> Dict[str, Any]:
        """Return the settings for one source, with defaults when unconfigured."""
        return self.SOURCES.get(source_id) or {
            'interval_ms': self.DEFAULT_REFRESH_MINUTES * MINUTE_MS,
            'redirect': None,
            'name': source_id,
            'home': None,
            'disabled': False,
            'rss': None,
            'hidden_date': False,
        }

    def aliases(self) -> List[tuple]:
        """Return (alias, target) pairs declared with ``redirect``."""
        return [(sid, cfg['redirect']) for sid, cfg in self.SOURCES.items() if cfg.get('redirect')]

    def reload_sources(self):
        """Reload source settings from configuration file."""
        logger.info("Reloading source configuration")
        self._load_sources()

    def get_config_summary(self) -> Dict[str, Any]:
        """Get a summary of current configuration for logging/debugging."""
        return {
            "database_path": self.DATABASE_PATH,
            "cache_disabled": self.DISABLE_CACHE,
            "cache_ttl_minutes": self.CACHE_TTL_MINUTES,
            "target_items": self.TARGET_ITEMS,
            "max_pages": self.MAX_PAGES,
            "http_timeout": self.HTTP_TIMEOUT,
            "max_retries": self.MAX_RETRIES,
            "source_count": len(self.SOURCES),
            "proxy_configured": bool(self.PROXY_URL),
            "login_disabled": self.DISABLE_LOGIN,
            "api_token_count": len(self.API_TOKENS),
            "secrets_file_configured": bool(environ.get("SECRETS_FILE")),
        }


# Global configuration instance
config = Config()
