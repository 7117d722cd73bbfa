"""
Persistence backends for the call statistics.

Three strategies share one small interface (``load`` / ``save`` /
``log_event``):

- ``FileBackend``: a single JSON document (``stats.json``).
- ``SqlBackend``: SQLite via aiosqlite, one key-value row per logical field
  plus an append-only call log used for analytics.
- ``MemoryBackend``: nothing survives a restart; for platforms without a
  writable filesystem.

``select_backend`` picks one at startup and never retries.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, AsyncIterator

import aiosqlite

from config import Settings
from services.clock import Clock
from services.counter_state import CounterState

logger = logging.getLogger(__name__)

STATS_TABLE = "api_statistics"
EVENTS_TABLE = "api_call_logs"

# stat_key rows written on every save
KEY_TOTAL = "total_calls"
KEY_DAILY = "daily_calls"
KEY_HOURLY = "hourly_calls"
KEY_WEEKLY = "weekly_calls"
KEY_MONTHLY = "monthly_calls"
KEY_METADATA = "metadata"
# written once when the legacy stats file has been merged in
KEY_MIGRATION = "file_migration"

_SCHEMA_SQL = f"""
CREATE TABLE IF NOT EXISTS {STATS_TABLE} (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    stat_key TEXT UNIQUE NOT NULL,
    stat_value TEXT,
    updated_at TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS {EVENTS_TABLE} (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    endpoint TEXT NOT NULL,
    method TEXT NOT NULL,
    status_code INTEGER NOT NULL,
    response_time_ms INTEGER,
    client_ip TEXT,
    user_agent TEXT,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_call_logs_endpoint
    ON {EVENTS_TABLE}(endpoint);
CREATE INDEX IF NOT EXISTS idx_call_logs_created_at
    ON {EVENTS_TABLE}(created_at);
CREATE INDEX IF NOT EXISTS idx_call_logs_status_code
    ON {EVENTS_TABLE}(status_code);
"""

_UPSERT_SQL = f"""
INSERT INTO {STATS_TABLE} (stat_key, stat_value, updated_at, created_at)
VALUES (?, ?, ?, ?)
ON CONFLICT(stat_key) DO UPDATE SET
    stat_value = excluded.stat_value,
    updated_at = excluded.updated_at
"""

# Event timestamps are stored as UTC "YYYY-MM-DD HH:MM:SS" so that string
# order is time order and the first 13 characters name the hour.
_EVENT_TS_FORMAT = "%Y-%m-%d %H:%M:%S"


@dataclass
class CallEvent:
    """One proxied request, as written to the call log."""

    endpoint: str
    method: str
    status_code: int
    response_time_ms: int
    client_ip: str | None = None
    user_agent: str | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


def _read_json(path: Path) -> dict[str, Any] | None:
    """Return the parsed document, or None when it is not a JSON object."""
    with path.open("r", encoding="utf-8") as f:
        try:
            data = json.load(f)
        except (json.JSONDecodeError, UnicodeDecodeError):
            logger.warning("Stats file %s is malformed, ignoring it", path)
            return None
    if not isinstance(data, dict):
        logger.warning("Stats file %s does not hold a JSON object, ignoring it", path)
        return None
    return data


def _write_json_atomic(path: Path, data: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    with tmp.open("w", encoding="utf-8") as f:
        json.dump(data, f, indent=2, ensure_ascii=False)
    tmp.replace(path)


def _decode_value(raw: Any) -> Any:
    if isinstance(raw, (bytes, str)):
        return json.loads(raw)
    return raw


class StorageBackend:
    """Base class for persistence strategies."""

    kind = "none"
    supports_events = False

    async def load(self) -> CounterState | None:
        """Return the persisted state, or None when there is none."""
        raise NotImplementedError

    async def save(self, state: CounterState) -> None:
        raise NotImplementedError

    async def log_event(self, event: CallEvent) -> None:
        """Append a call record. Unsupported by default."""
        return None

    async def close(self) -> None:
        return None


class FileBackend(StorageBackend):
    """Whole-state JSON document, replaced atomically on every save."""

    kind = "file"

    def __init__(self, path: str | os.PathLike[str], clock: Clock) -> None:
        self.path = Path(path)
        self._clock = clock

    def exists(self) -> bool:
        return self.path.exists()

    async def load(self) -> CounterState | None:
        if not self.path.exists():
            return None
        data = _read_json(self.path)
        if data is None:
            return None
        return CounterState.from_dict(data, self._clock.now())

    async def save(self, state: CounterState) -> None:
        _write_json_atomic(self.path, state.to_dict())
        logger.debug("Stats saved to %s", self.path)


class MemoryBackend(StorageBackend):
    """Keeps the last saved state in process memory only."""

    kind = "memory"

    def __init__(self) -> None:
        self._state: CounterState | None = None

    async def load(self) -> CounterState | None:
        return self._state.copy() if self._state else None

    async def save(self, state: CounterState) -> None:
        self._state = state.copy()


class SqlBackend(StorageBackend):
    """
    Key-value persistence in SQLite with an append-only call log.

    Each save writes six rows (totals, four counter maps, metadata) inside a
    single transaction. Concurrent connections are capped by ``pool_size``.
    """

    kind = "database"
    supports_events = True

    def __init__(self, db_path: str, clock: Clock, pool_size: int = 10) -> None:
        self._db_path = db_path
        self._clock = clock
        self._pool = asyncio.Semaphore(pool_size)
        self.pool_size = pool_size
        self.connected = False

    @property
    def db_path(self) -> str:
        return self._db_path

    @asynccontextmanager
    async def _connection(self) -> AsyncIterator[aiosqlite.Connection]:
        async with self._pool:
            async with aiosqlite.connect(self._db_path) as conn:
                conn.row_factory = aiosqlite.Row
                yield conn

    async def connect(self) -> None:
        """Verify connectivity and create the schema. Raises on failure."""
        db_dir = os.path.dirname(self._db_path)
        if db_dir:
            os.makedirs(db_dir, exist_ok=True)

        async with self._connection() as conn:
            await conn.executescript(_SCHEMA_SQL)
            await conn.commit()

        self.connected = True
        logger.info("Stats database ready at %s", self._db_path)

    async def _fetch_value(self, conn: aiosqlite.Connection, key: str) -> Any:
        cursor = await conn.execute(
            f"SELECT stat_value FROM {STATS_TABLE} WHERE stat_key = ?",
            (key,),
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        return _decode_value(row["stat_value"])

    async def load(self) -> CounterState | None:
        async with self._connection() as conn:
            total = await self._fetch_value(conn, KEY_TOTAL)
            daily = await self._fetch_value(conn, KEY_DAILY)
            hourly = await self._fetch_value(conn, KEY_HOURLY)
            weekly = await self._fetch_value(conn, KEY_WEEKLY)
            monthly = await self._fetch_value(conn, KEY_MONTHLY)
            meta = await self._fetch_value(conn, KEY_METADATA)

        if all(v is None for v in (total, daily, hourly, weekly, monthly, meta)):
            return None

        document: dict[str, Any] = {
            "totalCalls": total.get("totalCalls", 0) if isinstance(total, dict) else 0,
            "dailyCalls": daily or {},
            "hourlyCalls": hourly or {},
            "weeklyCalls": weekly or {},
            "monthlyCalls": monthly or {},
        }
        if isinstance(meta, dict):
            document.update(meta)
        return CounterState.from_dict(document, self._clock.now())

    async def save(self, state: CounterState) -> None:
        data = state.to_dict()
        now = datetime.now(timezone.utc).isoformat()
        rows = [
            (KEY_TOTAL, {"totalCalls": data["totalCalls"]}),
            (KEY_DAILY, data["dailyCalls"]),
            (KEY_HOURLY, data["hourlyCalls"]),
            (KEY_WEEKLY, data["weeklyCalls"]),
            (KEY_MONTHLY, data["monthlyCalls"]),
            (
                KEY_METADATA,
                {
                    "lastUpdated": data["lastUpdated"],
                    "lastResetDate": data["lastResetDate"],
                    "lastWeeklyReset": data["lastWeeklyReset"],
                    "lastMonthlyReset": data["lastMonthlyReset"],
                },
            ),
        ]
        async with self._connection() as conn:
            await conn.executemany(
                _UPSERT_SQL,
                [(key, json.dumps(value), now, now) for key, value in rows],
            )
            await conn.commit()
        logger.debug("Stats saved to database %s", self._db_path)

    async def migration_record(self) -> dict[str, Any] | None:
        """The marker left by ``record_migration``, or None."""
        async with self._connection() as conn:
            value = await self._fetch_value(conn, KEY_MIGRATION)
        return value if isinstance(value, dict) else None

    async def record_migration(self, source: str, total_calls: int) -> None:
        now = datetime.now(timezone.utc).isoformat()
        marker = {"source": source, "totalCalls": total_calls, "migratedAt": now}
        async with self._connection() as conn:
            await conn.execute(_UPSERT_SQL, (KEY_MIGRATION, json.dumps(marker), now, now))
            await conn.commit()
        logger.info("Recorded stats migration from %s", source)

    async def log_event(self, event: CallEvent) -> None:
        try:
            async with self._connection() as conn:
                await conn.execute(
                    f"""
                    INSERT INTO {EVENTS_TABLE} (
                        endpoint, method, status_code, response_time_ms,
                        client_ip, user_agent, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        event.endpoint,
                        event.method,
                        event.status_code,
                        event.response_time_ms,
                        event.client_ip,
                        (event.user_agent or "")[:500] or None,
                        event.timestamp.astimezone(timezone.utc).strftime(_EVENT_TS_FORMAT),
                    ),
                )
                await conn.commit()
        except (aiosqlite.Error, OSError):
            logger.error("Failed to record call event for %s", event.endpoint, exc_info=True)

    async def get_analytics(self, hours: int = 24, top: int = 10) -> dict[str, Any]:
        """
        Aggregate the call log over a trailing window.

        Returns top endpoints, a status-code histogram, response-time
        min/avg/max and per-hour activity (hours labelled in the target
        zone).
        """
        now_utc = self._clock.utc_now()
        since = (now_utc - timedelta(hours=hours)).strftime(_EVENT_TS_FORMAT)

        async with self._connection() as conn:
            cursor = await conn.execute(
                f"""
                SELECT endpoint, COUNT(*) AS count, AVG(response_time_ms) AS avg_ms
                FROM {EVENTS_TABLE}
                WHERE created_at >= ?
                GROUP BY endpoint
                ORDER BY count DESC, endpoint ASC
                LIMIT ?
                """,
                (since, top),
            )
            endpoint_rows = await cursor.fetchall()

            cursor = await conn.execute(
                f"""
                SELECT status_code, COUNT(*) AS count
                FROM {EVENTS_TABLE}
                WHERE created_at >= ?
                GROUP BY status_code
                ORDER BY status_code
                """,
                (since,),
            )
            status_rows = await cursor.fetchall()

            cursor = await conn.execute(
                f"""
                SELECT
                    COUNT(*) AS total,
                    MIN(response_time_ms) AS min_ms,
                    AVG(response_time_ms) AS avg_ms,
                    MAX(response_time_ms) AS max_ms
                FROM {EVENTS_TABLE}
                WHERE created_at >= ?
                """,
                (since,),
            )
            timing = await cursor.fetchone()

            cursor = await conn.execute(
                f"""
                SELECT substr(created_at, 1, 13) AS hour_bucket, COUNT(*) AS count
                FROM {EVENTS_TABLE}
                WHERE created_at >= ?
                GROUP BY hour_bucket
                ORDER BY hour_bucket
                """,
                (since,),
            )
            hour_rows = await cursor.fetchall()

        hourly = []
        for row in hour_rows:
            bucket = datetime.strptime(row["hour_bucket"], "%Y-%m-%d %H").replace(
                tzinfo=timezone.utc
            )
            hourly.append({
                "hour": bucket.astimezone(self._clock.tz).strftime("%Y-%m-%d %H:00"),
                "count": row["count"],
            })

        return {
            "windowHours": hours,
            "since": since,
            "totalRequests": timing["total"] or 0,
            "topEndpoints": [
                {
                    "endpoint": row["endpoint"],
                    "count": row["count"],
                    "avgResponseTime": round(row["avg_ms"] or 0.0, 1),
                }
                for row in endpoint_rows
            ],
            "statusCodes": {str(row["status_code"]): row["count"] for row in status_rows},
            "responseTime": {
                "min": timing["min_ms"] or 0,
                "avg": round(timing["avg_ms"] or 0.0, 1),
                "max": timing["max_ms"] or 0,
            },
            "hourlyActivity": hourly,
        }


async def select_backend(settings: Settings, clock: Clock) -> StorageBackend:
    """
    Choose the persistence backend once, at startup.

    Stateless platforms get memory only. The SQL backend is tried only when
    the database settings differ from the bare defaults (see
    ``Settings.database_configured``); any connection failure falls back to
    the stats file.
    """
    if settings.stateless_platform:
        logger.info("Stateless platform detected, stats are kept in memory only")
        return MemoryBackend()

    if not settings.database_configured:
        logger.info(
            "Database settings are unset or default (%s@%s), using file storage at %s",
            settings.db_user,
            settings.db_host,
            settings.stats_file,
        )
        return FileBackend(settings.stats_file, clock)

    location = settings.database_location
    backend = SqlBackend(location, clock, pool_size=settings.db_pool_size)
    try:
        await backend.connect()
    except (aiosqlite.Error, OSError):
        logger.error(
            "Stats database %s unavailable, falling back to file storage",
            location,
            exc_info=True,
        )
        return FileBackend(settings.stats_file, clock)
    logger.info("Using database storage for stats (%s, user %s)", location, settings.db_user)
    return backend


__all__ = [
    "CallEvent",
    "FileBackend",
    "MemoryBackend",
    "SqlBackend",
    "StorageBackend",
    "select_backend",
]
