"""
Application settings helpers.

All values come from the environment (a ``.env`` file is loaded by the
entrypoint before the first call to ``get_settings``).
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from functools import lru_cache

logger = logging.getLogger(__name__)

DEFAULT_UPSTREAM_API_URL = "https://api.i-meto.com/meting/api"
DEFAULT_DB_HOST = "localhost"
DEFAULT_DB_USER = "root"
DEFAULT_DB_NAME = "api_stats"


def _env_int(env_name: str, default: int, minimum: int = 0) -> int:
    """Parse an integer env var, falling back to the default when invalid."""
    raw = os.getenv(env_name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except (ValueError, TypeError):
        logger.warning("Invalid integer for %s=%r, using %s", env_name, raw, default)
        return default
    if value < minimum:
        logger.warning("%s=%s is below %s, using %s", env_name, value, minimum, default)
        return default
    return value


def _env_flag(env_name: str) -> bool:
    """Return True when the env var is set to a truthy value."""
    return os.getenv(env_name, "").strip().lower() in ("1", "true", "yes", "on")


def _is_stateless_platform() -> bool:
    # Serverless targets have no persistent writable filesystem.
    if _env_flag("STATELESS_PLATFORM"):
        return True
    return any(
        os.getenv(name)
        for name in ("VERCEL", "VERCEL_ENV", "NEXT_PUBLIC_VERCEL_ENV")
    )


@dataclass(frozen=True)
class Settings:
    """Centralized configuration values."""

    app_version: str
    host: str
    port: int
    log_file: str
    log_level: str
    upstream_api_url: str
    upstream_timeout: float
    stats_file: str
    backup_dir: str
    max_backups: int
    backup_every: int
    stats_timezone: str
    db_path: str | None
    db_pool_size: int
    stateless_platform: bool
    db_host: str = DEFAULT_DB_HOST
    db_port: int = 3306
    db_user: str = DEFAULT_DB_USER
    db_password: str = ""
    db_name: str = DEFAULT_DB_NAME

    @property
    def database_configured(self) -> bool:
        """
        Whether the SQL backend should be attempted.

        An explicit ``STATS_DB_PATH`` always counts. Otherwise host, user and
        database name must all be set, and the bare default (localhost, root,
        no password) counts as unconfigured.
        """
        if self.db_path and self.db_path.strip():
            return True
        if not (self.db_host and self.db_user and self.db_name):
            return False
        is_default = (
            self.db_host == DEFAULT_DB_HOST
            and self.db_user == DEFAULT_DB_USER
            and not self.db_password
        )
        return not is_default

    @property
    def database_location(self) -> str:
        """SQLite file: ``STATS_DB_PATH``, else ``<DB_NAME>.db`` beside the stats file."""
        if self.db_path and self.db_path.strip():
            return self.db_path.strip()
        return os.path.join(os.path.dirname(self.stats_file) or ".", f"{self.db_name}.db")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached settings derived from the environment."""
    timeout_raw = os.getenv("UPSTREAM_TIMEOUT", "15")
    try:
        upstream_timeout = float(timeout_raw)
    except (ValueError, TypeError):
        upstream_timeout = 15.0

    return Settings(
        app_version=os.getenv("APP_VERSION", "0.1.0"),
        host=os.getenv("HOST", "0.0.0.0"),
        port=_env_int("PORT", 3000, minimum=1),
        log_file=os.getenv("LOG_FILE", "app.log"),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        upstream_api_url=os.getenv("UPSTREAM_API_URL", DEFAULT_UPSTREAM_API_URL),
        upstream_timeout=upstream_timeout,
        stats_file=os.getenv("STATS_FILE", "./stats.json"),
        backup_dir=os.getenv("STATS_BACKUP_DIR", "./backups"),
        max_backups=_env_int("STATS_MAX_BACKUPS", 3, minimum=1),
        backup_every=_env_int("STATS_BACKUP_EVERY", 1000, minimum=1),
        stats_timezone=os.getenv("STATS_TIMEZONE", "Asia/Shanghai"),
        db_path=os.getenv("STATS_DB_PATH") or None,
        db_pool_size=_env_int("STATS_DB_POOL_SIZE", 10, minimum=1),
        stateless_platform=_is_stateless_platform(),
        db_host=os.getenv("DB_HOST", DEFAULT_DB_HOST).strip(),
        db_port=_env_int("DB_PORT", 3306, minimum=1),
        db_user=os.getenv("DB_USER", DEFAULT_DB_USER).strip(),
        db_password=os.getenv("DB_PASSWORD", ""),
        db_name=os.getenv("DB_NAME", DEFAULT_DB_NAME).strip(),
    )
