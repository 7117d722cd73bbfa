"""
Pytest configuration and fixtures.
"""

from __future__ import annotations

from datetime import datetime

import pytest

from config import Settings, get_settings
from services.clock import FixedClock
from services.stats import StatsEngine
from services.stats_backups import BackupManager
from services.stats_storage import FileBackend

_STATS_ENV = (
    "STATELESS_PLATFORM",
    "VERCEL",
    "VERCEL_ENV",
    "NEXT_PUBLIC_VERCEL_ENV",
    "STATS_DB_PATH",
    "DB_HOST",
    "DB_PORT",
    "DB_USER",
    "DB_PASSWORD",
    "DB_NAME",
    "STATS_DB_POOL_SIZE",
    "STATS_FILE",
    "STATS_BACKUP_DIR",
    "STATS_MAX_BACKUPS",
    "STATS_BACKUP_EVERY",
    "STATS_TIMEZONE",
    "PORT",
)


@pytest.fixture(autouse=True)
def clean_stats_env(monkeypatch):
    """Keep the developer's environment out of the tests."""
    for name in _STATS_ENV:
        monkeypatch.delenv(name, raising=False)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def clock():
    """Frozen at 2025-01-01 10:00 Asia/Shanghai (a Wednesday)."""
    return FixedClock(datetime(2025, 1, 1, 10, 0, 0))


@pytest.fixture
def stats_path(tmp_path):
    return tmp_path / "stats.json"


@pytest.fixture
def backup_dir(tmp_path):
    return tmp_path / "backups"


@pytest.fixture
def file_backend(stats_path, clock):
    return FileBackend(stats_path, clock)


@pytest.fixture
def backups(backup_dir, clock):
    return BackupManager(backup_dir, clock, max_backups=3)


@pytest.fixture
def make_engine(file_backend, backups, clock):
    """Build (and load) an engine; the file backend is used unless overridden."""

    async def _make(backend=None, backup_every: int = 1000, legacy_file=None) -> StatsEngine:
        engine = StatsEngine(
            backend or file_backend,
            backups,
            clock,
            legacy_file=legacy_file,
            backup_every=backup_every,
        )
        await engine.load()
        return engine

    return _make


@pytest.fixture
def make_settings(tmp_path):
    """Settings pointing every path into tmp_path."""

    def _make(**overrides) -> Settings:
        values = dict(
            app_version="test",
            host="127.0.0.1",
            port=3000,
            log_file=str(tmp_path / "app.log"),
            log_level="DEBUG",
            upstream_api_url="https://upstream.test/meting/api",
            upstream_timeout=5.0,
            stats_file=str(tmp_path / "stats.json"),
            backup_dir=str(tmp_path / "backups"),
            max_backups=3,
            backup_every=1000,
            stats_timezone="Asia/Shanghai",
            db_path=None,
            db_pool_size=10,
            stateless_platform=False,
        )
        values.update(overrides)
        return Settings(**values)

    return _make
