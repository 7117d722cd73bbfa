"""
Calendar clock for the stats subsystem.

All counter buckets are keyed by calendar values in one fixed target zone
(Asia/Shanghai by default, UTC+8 with no daylight saving). Day buckets roll
over at 00:00 local time, weeks on Monday 00:00 (ISO-8601 numbering), months
on the 1st at 00:00.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

logger = logging.getLogger(__name__)

DEFAULT_TIMEZONE = "Asia/Shanghai"


def load_zone(name: str) -> ZoneInfo:
    """Resolve an IANA zone name, falling back to the default zone."""
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown timezone %r, falling back to %s", name, DEFAULT_TIMEZONE)
        return ZoneInfo(DEFAULT_TIMEZONE)


def day_key(when: datetime | date) -> str:
    """YYYY-MM-DD"""
    return when.strftime("%Y-%m-%d")


def hour_key(when: datetime) -> str:
    """YYYY-MM-DD-HH"""
    return when.strftime("%Y-%m-%d-%H")


def week_key(when: datetime | date) -> str:
    """ISO week key, YYYY-Www (the ISO year, not the calendar year)."""
    iso_year, iso_week, _ = when.isocalendar()
    return f"{iso_year:04d}-W{iso_week:02d}"


def month_key(when: datetime | date) -> str:
    """YYYY-MM"""
    return when.strftime("%Y-%m")


def next_day_boundary(now: datetime) -> datetime:
    """Midnight starting the next local day."""
    tomorrow = now.date() + timedelta(days=1)
    return datetime.combine(tomorrow, time.min, tzinfo=now.tzinfo)


def next_week_boundary(now: datetime) -> datetime:
    """Midnight starting the next ISO week (Monday)."""
    days_ahead = 7 - now.weekday()
    monday = now.date() + timedelta(days=days_ahead)
    return datetime.combine(monday, time.min, tzinfo=now.tzinfo)


def next_month_boundary(now: datetime) -> datetime:
    """Midnight starting the first day of the next month."""
    if now.month == 12:
        first = date(now.year + 1, 1, 1)
    else:
        first = date(now.year, now.month + 1, 1)
    return datetime.combine(first, time.min, tzinfo=now.tzinfo)


def format_countdown(seconds: int) -> str:
    """Format a non-negative number of seconds as e.g. ``2d 3h 4m 5s``."""
    seconds = max(0, int(seconds))
    days, remainder = divmod(seconds, 86400)
    hours, remainder = divmod(remainder, 3600)
    minutes, secs = divmod(remainder, 60)
    out = ""
    if days > 0:
        out += f"{days}d "
    if hours > 0 or days > 0:
        out += f"{hours}h "
    out += f"{minutes}m {secs}s"
    return out


def countdown(now: datetime, boundary: datetime) -> dict[str, object]:
    """Structured countdown from ``now`` to ``boundary``."""
    # Subtract in UTC so offset changes inside the interval are honoured.
    remaining = int(
        (boundary.astimezone(timezone.utc) - now.astimezone(timezone.utc)).total_seconds()
    )
    remaining = max(0, remaining)
    hours, remainder = divmod(remaining, 3600)
    minutes, seconds = divmod(remainder, 60)
    return {
        "at": boundary.isoformat(),
        "totalSeconds": remaining,
        "hours": hours,
        "minutes": minutes,
        "seconds": seconds,
        "formatted": format_countdown(remaining),
    }


class Clock:
    """Wall clock bound to the target zone."""

    def __init__(self, tz_name: str = DEFAULT_TIMEZONE) -> None:
        self._tz = load_zone(tz_name)

    @property
    def tz(self) -> ZoneInfo:
        return self._tz

    def now(self) -> datetime:
        """Current instant, expressed in the target zone."""
        return datetime.now(self._tz)

    def utc_now(self) -> datetime:
        return self.now().astimezone(timezone.utc)

    def day_key(self) -> str:
        return day_key(self.now())

    def hour_key(self) -> str:
        return hour_key(self.now())

    def week_key(self) -> str:
        return week_key(self.now())

    def month_key(self) -> str:
        return month_key(self.now())


class FixedClock(Clock):
    """
    Clock frozen at a given instant until moved explicitly.

    Used by tests and tooling that need deterministic calendar keys.
    """

    def __init__(self, current: datetime, tz_name: str = DEFAULT_TIMEZONE) -> None:
        super().__init__(tz_name)
        self.set(current)

    def set(self, current: datetime) -> None:
        """Move to ``current``; naive values are read as target-zone local time."""
        if current.tzinfo is None:
            current = current.replace(tzinfo=self._tz)
        self._current = current.astimezone(self._tz)

    def advance(self, **delta: float) -> None:
        """Move forward by a ``timedelta(**delta)``."""
        self._current = (
            self._current.astimezone(timezone.utc) + timedelta(**delta)
        ).astimezone(self._tz)

    def now(self) -> datetime:
        return self._current


__all__ = [
    "Clock",
    "FixedClock",
    "countdown",
    "day_key",
    "format_countdown",
    "hour_key",
    "load_zone",
    "month_key",
    "next_day_boundary",
    "next_month_boundary",
    "next_week_boundary",
    "week_key",
]
