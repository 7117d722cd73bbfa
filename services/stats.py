"""
Call statistics engine.

Owns the in-memory ``CounterState``, applies day/week/month rollovers before
every mutation, and writes the state through to the active storage backend
after each change. One engine is built at startup and shared by the request
handlers through ``app.state``.
"""

from __future__ import annotations

import asyncio
import logging
import shutil
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import aiosqlite

from config import Settings
from services.clock import (
    Clock,
    countdown,
    day_key,
    hour_key,
    month_key,
    next_day_boundary,
    next_month_boundary,
    next_week_boundary,
    week_key,
)
from services.counter_state import CounterState
from services.stats_backups import BackupManager
from services.stats_migration import merge_states, migrate
from services.stats_storage import (
    CallEvent,
    FileBackend,
    MemoryBackend,
    SqlBackend,
    StorageBackend,
    select_backend,
)

logger = logging.getLogger(__name__)

RESET_SCOPES = ("today", "week", "month", "all")
DEFAULT_BACKUP_EVERY = 1000
RESET_INFO = "Total calls are never reset automatically; today's count resets daily at 00:00"


class StatsError(Exception):
    """Base error for the stats subsystem."""


class StatsUnavailableError(StatsError):
    """The requested operation needs a backend that is not active."""


class StatsEngine:
    """
    Counter state plus the operations that mutate it.

    Every mutation (record, rollover, reset, migration) runs under one
    asyncio lock covering "check rollover, mutate, persist". Persist
    failures are logged and swallowed; the in-memory state stays
    authoritative until the next successful save.
    """

    def __init__(
        self,
        backend: StorageBackend,
        backups: BackupManager,
        clock: Clock,
        legacy_file: FileBackend | None = None,
        backup_every: int = DEFAULT_BACKUP_EVERY,
    ) -> None:
        self._backend = backend
        self._backups = backups
        self._clock = clock
        self._legacy_file = legacy_file
        self._backup_every = backup_every
        self._state = CounterState.fresh(clock.now())
        self._lock = asyncio.Lock()

    @property
    def backend(self) -> StorageBackend:
        return self._backend

    @property
    def backups(self) -> BackupManager:
        return self._backups

    @property
    def storage_type(self) -> str:
        return self._backend.kind

    @property
    def database_active(self) -> bool:
        return isinstance(self._backend, SqlBackend) and self._backend.connected

    def state(self) -> CounterState:
        """A copy of the current counters."""
        return self._state.copy()

    # ---------- persistence ----------

    async def load(self) -> None:
        """Hydrate from the backend; any failure starts from an empty state."""
        try:
            loaded = await self._backend.load()
        except Exception:
            logger.exception("Failed to load stats from %s storage", self.storage_type)
            loaded = None

        async with self._lock:
            if loaded is None:
                logger.info("No usable stats found, starting from an empty state")
                self._state = CounterState.fresh(self._clock.now())
                await self._persist()
            else:
                self._state = loaded
                logger.info(
                    "Loaded stats: total_calls=%s last_reset=%s",
                    loaded.total_calls,
                    loaded.last_reset_date,
                )
            if self._roll_over(self._clock.now()):
                logger.info("Date changed while stopped, rollover applied at startup")
                await self._persist()

    async def _persist(self) -> bool:
        self._state.touch(self._clock.now())
        try:
            await self._backend.save(self._state)
        except Exception:
            logger.exception("Failed to save stats to %s storage", self.storage_type)
            return False
        return True

    # ---------- rollover ----------

    def _roll_day(self, now: datetime) -> bool:
        today = day_key(now)
        if today == self._state.last_reset_date:
            return False
        logger.info("Day rollover: %s -> %s", self._state.last_reset_date, today)
        # Only the daily rollover is worth a backup.
        self._backups.create_backup(self._state)
        self._state.last_reset_date = today
        self._state.daily_calls[today] = 0
        dropped = self._state.prune_daily(now.date()) + self._state.prune_hourly(now.date())
        if dropped:
            logger.info("Pruned %s expired daily/hourly entries", dropped)
        return True

    def _roll_week(self, now: datetime) -> bool:
        week = week_key(now)
        if week == self._state.last_weekly_reset:
            return False
        logger.info("Week rollover: %s -> %s", self._state.last_weekly_reset, week)
        self._state.last_weekly_reset = week
        self._state.weekly_calls[week] = 0
        self._state.prune_weekly(now.date())
        return True

    def _roll_month(self, now: datetime) -> bool:
        month = month_key(now)
        if month == self._state.last_monthly_reset:
            return False
        logger.info("Month rollover: %s -> %s", self._state.last_monthly_reset, month)
        self._state.last_monthly_reset = month
        self._state.monthly_calls[month] = 0
        self._state.prune_monthly(now.date())
        return True

    def _roll_over(self, now: datetime) -> bool:
        # Evaluate every scope; they touch disjoint keys.
        rolled = [self._roll_day(now), self._roll_week(now), self._roll_month(now)]
        return any(rolled)

    async def check_and_reset_scope(self) -> bool:
        """Apply any pending day/week/month rollover. Returns True if one fired."""
        async with self._lock:
            if not self._roll_over(self._clock.now()):
                return False
            await self._persist()
            return True

    # ---------- operations ----------

    async def record_call(self) -> dict[str, Any]:
        """Count one successful proxied call and return the fresh snapshot."""
        async with self._lock:
            now = self._clock.now()
            self._roll_over(now)

            state = self._state
            state.total_calls += 1
            for counts, key in (
                (state.daily_calls, day_key(now)),
                (state.hourly_calls, hour_key(now)),
                (state.weekly_calls, week_key(now)),
                (state.monthly_calls, month_key(now)),
            ):
                counts[key] = counts.get(key, 0) + 1
            state.prune_hourly(now.date())

            await self._persist()
            if state.total_calls % self._backup_every == 0:
                logger.info("Periodic backup at %s total calls", state.total_calls)
                self._backups.create_backup(state)
            return self._build_snapshot(now)

    async def reset_scope(self, scope: str) -> dict[str, Any]:
        """
        Operator reset of one scope: ``today``, ``week``, ``month`` or ``all``.

        ``today`` and ``all`` take a backup first. ``all`` zeroes total calls too.
        """
        if scope not in RESET_SCOPES:
            raise ValueError(f"Unknown reset scope {scope!r}, expected one of {', '.join(RESET_SCOPES)}")

        async with self._lock:
            now = self._clock.now()
            self._roll_over(now)
            backup: Path | None = None

            if scope == "today":
                backup = self._backups.create_backup(self._state)
                period = day_key(now)
                self._state.daily_calls[period] = 0
                self._state.last_reset_date = period
            elif scope == "week":
                period = week_key(now)
                self._state.weekly_calls[period] = 0
                self._state.last_weekly_reset = period
            elif scope == "month":
                period = month_key(now)
                self._state.monthly_calls[period] = 0
                self._state.last_monthly_reset = period
            else:
                backup = self._backups.create_backup(self._state)
                period = day_key(now)
                self._state = CounterState.fresh(now)

            logger.info("Stats reset: scope=%s period=%s", scope, period)
            await self._persist()
            return {
                "scope": scope,
                "period": period,
                "totalCalls": self._state.total_calls,
                "backupFile": backup.name if backup else None,
            }

    def get_snapshot(self) -> dict[str, Any]:
        """Read view with derived totals and countdowns, computed fresh."""
        return self._build_snapshot(self._clock.now())

    def _build_snapshot(self, now: datetime) -> dict[str, Any]:
        state = self._state
        next_day = countdown(now, next_day_boundary(now))
        return {
            "totalCalls": state.total_calls,
            "todayCalls": state.daily_calls.get(day_key(now), 0),
            "weekCalls": state.weekly_calls.get(week_key(now), 0),
            "monthCalls": state.monthly_calls.get(month_key(now), 0),
            "dailyCalls": dict(state.daily_calls),
            "hourlyCalls": dict(state.hourly_calls),
            "weeklyCalls": dict(state.weekly_calls),
            "monthlyCalls": dict(state.monthly_calls),
            "lastUpdated": state.last_updated,
            "lastResetDate": state.last_reset_date,
            "lastWeeklyReset": state.last_weekly_reset,
            "lastMonthlyReset": state.last_monthly_reset,
            "nextReset": {
                "day": next_day,
                "week": countdown(now, next_week_boundary(now)),
                "month": countdown(now, next_month_boundary(now)),
            },
            "timeToReset": next_day["formatted"],
            "storageType": self.storage_type,
            "resetInfo": RESET_INFO,
            "resetTime": "00:00",
            "timezone": str(self._clock.tz),
            "serverTime": now.strftime("%Y-%m-%d %H:%M:%S"),
            "timestamp": now.astimezone(timezone.utc).isoformat(),
        }

    # ---------- backups ----------

    def create_backup(self) -> Path | None:
        return self._backups.create_backup(self._state)

    # ---------- call log / analytics ----------

    async def log_event(self, event: CallEvent) -> None:
        """Best-effort call log; never raises."""
        if not self._backend.supports_events:
            return
        try:
            await self._backend.log_event(event)
        except Exception:
            logger.exception("Failed to log call event")

    async def get_analytics(self, hours: int = 24) -> dict[str, Any]:
        backend = self._backend
        if not isinstance(backend, SqlBackend) or not backend.connected:
            raise StatsUnavailableError("Analytics require database storage")
        try:
            return await backend.get_analytics(hours=hours)
        except (aiosqlite.Error, OSError) as exc:
            raise StatsError(f"Failed to compute analytics: {exc}") from exc

    # ---------- migration ----------

    async def legacy_migrated(self) -> bool:
        """Whether the legacy stats file has already been merged into the database."""
        backend = self._backend
        if not isinstance(backend, SqlBackend) or not backend.connected:
            return False
        try:
            return await backend.migration_record() is not None
        except (aiosqlite.Error, OSError) as exc:
            raise StatsError(f"Could not read migration state: {exc}") from exc

    async def migrate_to_db(self) -> dict[str, Any]:
        """
        Merge the legacy stats file into the database (max per counter).

        Leaves the file in place and copies it next to a fresh backup for
        audit. Storage errors are raised as ``StatsError``.
        """
        backend = self._backend
        if not isinstance(backend, SqlBackend) or not backend.connected:
            raise StatsUnavailableError("Database is not connected, cannot migrate stats")
        if self._legacy_file is None or not self._legacy_file.exists():
            return {"migrated": False, "totalCalls": self._state.total_calls}

        async with self._lock:
            try:
                merged = await migrate(self._legacy_file, backend)
            except (aiosqlite.Error, OSError) as exc:
                raise StatsError(f"Migration failed: {exc}") from exc
            if merged is None:
                return {"migrated": False, "totalCalls": self._state.total_calls}
            self._state = merge_states(merged, self._state)
            await self._persist()

            backup = self._backups.create_backup(self._state)
            if backup is not None:
                try:
                    shutil.copyfile(self._legacy_file.path, self._backups.original_path(backup))
                except OSError:
                    logger.warning("Could not keep a copy of %s", self._legacy_file.path, exc_info=True)

            return {
                "migrated": True,
                "totalCalls": self._state.total_calls,
                "backupFile": backup.name if backup else None,
            }

    # ---------- info ----------

    def storage_info(self) -> dict[str, Any]:
        return {
            "storageType": self.storage_type,
            "databaseEnabled": isinstance(self._backend, SqlBackend),
            "databaseConnected": self.database_active,
            "localFileExists": bool(self._legacy_file and self._legacy_file.exists()),
            "stateless": isinstance(self._backend, MemoryBackend),
        }

    async def close(self) -> None:
        await self._backend.close()


async def create_stats_engine(settings: Settings, clock: Clock) -> StatsEngine:
    """
    Build the engine for this process: select a backend, hydrate, migrate a
    legacy stats file into the database when both exist, prune backups.
    """
    backend = await select_backend(settings, clock)
    stateless = settings.stateless_platform
    backups = BackupManager(
        settings.backup_dir,
        clock,
        max_backups=settings.max_backups,
        enabled=not stateless,
    )
    legacy_file = None if stateless else FileBackend(settings.stats_file, clock)
    engine = StatsEngine(
        backend,
        backups,
        clock,
        legacy_file=legacy_file,
        backup_every=settings.backup_every,
    )
    await engine.load()

    if engine.database_active and legacy_file is not None and legacy_file.exists():
        try:
            if await engine.legacy_migrated():
                logger.info("Stats file %s was already migrated, skipping", legacy_file.path)
            else:
                await engine.migrate_to_db()
        except StatsError:
            logger.exception("Automatic stats migration failed")

    if backups.enabled:
        backups.prune()
    return engine


__all__ = [
    "RESET_SCOPES",
    "StatsEngine",
    "StatsError",
    "StatsUnavailableError",
    "create_stats_engine",
]
