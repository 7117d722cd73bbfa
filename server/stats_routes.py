"""
Starlette routes for the call statistics.

- GET  /stats                 - counters, history maps and reset countdowns
- POST /stats/reset-today     - zero today's bucket (backup first)
- POST /stats/reset-week      - zero this week's bucket
- POST /stats/reset-month     - zero this month's bucket
- POST /stats/reset-all       - start over, total calls included (backup first)
- GET  /stats/storage-info    - active backend and connectivity flags
- POST /stats/migrate-to-db   - merge the legacy stats file into the database
- GET  /stats/backups         - backup inventory
- POST /stats/create-backup   - manual backup
- GET  /stats/analytics       - call-log aggregates (database storage only)
"""

from __future__ import annotations

import logging
from typing import Any

from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from config import Settings
from services.stats import StatsEngine, StatsError, StatsUnavailableError

logger = logging.getLogger(__name__)

_RESET_MESSAGES = {
    "today": "Today's stats have been reset",
    "week": "This week's stats have been reset",
    "month": "This month's stats have been reset",
    "all": "All stats have been reset",
}


def _engine(request: Request) -> StatsEngine:
    return request.app.state.stats


def _fail(message: str, status_code: int) -> JSONResponse:
    return JSONResponse({"success": False, "message": message}, status_code=status_code)


def build_stats_routes(settings: Settings) -> list[Route]:
    """
    Return the Starlette Routes for the stats HTTP surface.
    """

    async def stats_get(request: Request):
        return JSONResponse({"success": True, "data": _engine(request).get_snapshot()})

    def _reset_handler(scope: str):
        async def _inner(request: Request):
            try:
                result = await _engine(request).reset_scope(scope)
            except ValueError as exc:
                logger.warning("Stats reset rejected: %s", exc)
                return _fail(str(exc), 400)

            body: dict[str, Any] = {
                "success": True,
                "message": _RESET_MESSAGES[scope],
                "resetTime": "00:00",
                **result,
            }
            if scope == "today":
                body["todayCalls"] = 0
            if scope == "all":
                body["warning"] = "Total call count was reset as well!"
            return JSONResponse(body)

        return _inner

    async def storage_info(request: Request):
        data = _engine(request).storage_info()
        data["databaseConfigured"] = settings.database_configured
        data["stateless"] = settings.stateless_platform
        return JSONResponse({"success": True, "data": data})

    async def migrate_to_db(request: Request):
        try:
            result = await _engine(request).migrate_to_db()
        except StatsUnavailableError as exc:
            return _fail(str(exc), 400)
        except StatsError as exc:
            logger.exception("Stats migration failed")
            return _fail(str(exc), 500)

        message = "Migration complete" if result["migrated"] else "No legacy stats file to migrate"
        return JSONResponse({
            "success": True,
            "message": message,
            "storageType": "database",
            **result,
        })

    async def list_backups(request: Request):
        backups = _engine(request).backups
        try:
            entries = backups.list_backups()
        except OSError as exc:
            logger.exception("Failed to list stats backups")
            return _fail(f"Failed to list backups: {exc}", 500)
        return JSONResponse({
            "success": True,
            "data": {
                "backupDir": str(backups.backup_dir),
                "totalBackups": len(entries),
                "maxBackups": backups.max_backups,
                "backups": entries,
            },
        })

    async def create_backup(request: Request):
        engine = _engine(request)
        path = engine.create_backup()
        if path is None:
            return _fail("Backup failed", 500)
        return JSONResponse({
            "success": True,
            "message": "Backup created",
            "backupFile": path.name,
            "totalBackups": engine.backups.count(),
            "maxBackups": engine.backups.max_backups,
        })

    async def analytics(request: Request):
        raw_hours = request.query_params.get("hours", "24")
        try:
            hours = int(raw_hours)
        except ValueError:
            return _fail(f"Invalid hours value: {raw_hours!r}", 400)
        if not 1 <= hours <= 24 * 7:
            return _fail("hours must be between 1 and 168", 400)

        try:
            data = await _engine(request).get_analytics(hours=hours)
        except StatsUnavailableError as exc:
            return _fail(str(exc), 400)
        except StatsError as exc:
            logger.exception("Failed to compute analytics")
            return _fail(str(exc), 500)
        return JSONResponse({"success": True, "data": data})

    return [
        Route("/stats", stats_get, methods=["GET"]),
        Route("/stats/reset-today", _reset_handler("today"), methods=["POST"]),
        Route("/stats/reset-week", _reset_handler("week"), methods=["POST"]),
        Route("/stats/reset-month", _reset_handler("month"), methods=["POST"]),
        Route("/stats/reset-all", _reset_handler("all"), methods=["POST"]),
        Route("/stats/storage-info", storage_info, methods=["GET"]),
        Route("/stats/migrate-to-db", migrate_to_db, methods=["POST"]),
        Route("/stats/backups", list_backups, methods=["GET"]),
        Route("/stats/create-backup", create_backup, methods=["POST"]),
        Route("/stats/analytics", analytics, methods=["GET"]),
    ]


__all__ = ["build_stats_routes"]
