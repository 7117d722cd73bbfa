"""
CounterState: the single mutable record behind the call statistics.

The persisted JSON document uses camelCase field names so files written by
older deployments (``stats.json``) load unchanged.
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Any, Mapping

from services.clock import day_key, month_key, week_key

logger = logging.getLogger(__name__)

DAILY_RETENTION_DAYS = 90
HOURLY_RETENTION_DAYS = 7
WEEKLY_RETENTION_DAYS = 365
MONTHLY_RETENTION_YEARS = 2


def _clean_counts(raw: Any) -> dict[str, int]:
    """Keep only entries whose value is a non-negative integer count."""
    if not isinstance(raw, Mapping):
        return {}
    out: dict[str, int] = {}
    for key, value in raw.items():
        if isinstance(value, bool):
            continue
        try:
            count = int(value)
        except (TypeError, ValueError):
            continue
        if count >= 0:
            out[str(key)] = count
    return out


def _utc_iso(when: datetime) -> str:
    return when.astimezone(timezone.utc).isoformat()


@dataclass
class CounterState:
    """Call counters plus the rollover watermarks for each scope."""

    total_calls: int = 0
    daily_calls: dict[str, int] = field(default_factory=dict)
    hourly_calls: dict[str, int] = field(default_factory=dict)
    weekly_calls: dict[str, int] = field(default_factory=dict)
    monthly_calls: dict[str, int] = field(default_factory=dict)
    last_updated: str = ""
    last_reset_date: str = ""
    last_weekly_reset: str = ""
    last_monthly_reset: str = ""

    @classmethod
    def fresh(cls, now: datetime) -> CounterState:
        """Zeroed state whose watermarks point at the current periods."""
        return cls(
            last_updated=_utc_iso(now),
            last_reset_date=day_key(now),
            last_weekly_reset=week_key(now),
            last_monthly_reset=month_key(now),
        )

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], now: datetime) -> CounterState:
        """
        Build a state from a persisted document.

        Missing maps default to empty and missing watermarks to the current
        period keys, so partial or older documents still load.
        """
        try:
            total = int(data.get("totalCalls") or 0)
        except (TypeError, ValueError):
            logger.warning("Ignoring invalid totalCalls value %r", data.get("totalCalls"))
            total = 0
        return cls(
            total_calls=max(0, total),
            daily_calls=_clean_counts(data.get("dailyCalls")),
            hourly_calls=_clean_counts(data.get("hourlyCalls")),
            weekly_calls=_clean_counts(data.get("weeklyCalls")),
            monthly_calls=_clean_counts(data.get("monthlyCalls")),
            last_updated=str(data.get("lastUpdated") or _utc_iso(now)),
            last_reset_date=str(data.get("lastResetDate") or day_key(now)),
            last_weekly_reset=str(data.get("lastWeeklyReset") or week_key(now)),
            last_monthly_reset=str(data.get("lastMonthlyReset") or month_key(now)),
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialize with the persisted (camelCase) field names."""
        return {
            "totalCalls": self.total_calls,
            "dailyCalls": dict(self.daily_calls),
            "hourlyCalls": dict(self.hourly_calls),
            "weeklyCalls": dict(self.weekly_calls),
            "monthlyCalls": dict(self.monthly_calls),
            "lastUpdated": self.last_updated,
            "lastResetDate": self.last_reset_date,
            "lastWeeklyReset": self.last_weekly_reset,
            "lastMonthlyReset": self.last_monthly_reset,
        }

    def copy(self) -> CounterState:
        return copy.deepcopy(self)

    def touch(self, now: datetime) -> None:
        self.last_updated = _utc_iso(now)

    # ---------- retention ----------

    def prune_daily(self, today: date) -> int:
        cutoff = day_key(today - timedelta(days=DAILY_RETENTION_DAYS))
        return _drop_keys(self.daily_calls, lambda key: key < cutoff)

    def prune_hourly(self, today: date) -> int:
        cutoff = day_key(today - timedelta(days=HOURLY_RETENTION_DAYS))
        return _drop_keys(self.hourly_calls, lambda key: key[:10] < cutoff)

    def prune_weekly(self, today: date) -> int:
        cutoff = week_key(today - timedelta(days=WEEKLY_RETENTION_DAYS))
        return _drop_keys(self.weekly_calls, lambda key: key < cutoff)

    def prune_monthly(self, today: date) -> int:
        cutoff = f"{today.year - MONTHLY_RETENTION_YEARS:04d}-{today.month:02d}"
        return _drop_keys(self.monthly_calls, lambda key: key < cutoff)


def _drop_keys(counts: dict[str, int], is_stale) -> int:
    stale = [key for key in counts if is_stale(key)]
    for key in stale:
        del counts[key]
    return len(stale)


__all__ = [
    "CounterState",
    "DAILY_RETENTION_DAYS",
    "HOURLY_RETENTION_DAYS",
    "MONTHLY_RETENTION_YEARS",
    "WEEKLY_RETENTION_DAYS",
]
