"""
Tests for the calendar clock and key helpers.
"""

from datetime import date, datetime, timezone

from services.clock import (
    DEFAULT_TIMEZONE,
    Clock,
    FixedClock,
    countdown,
    day_key,
    format_countdown,
    hour_key,
    load_zone,
    month_key,
    next_day_boundary,
    next_month_boundary,
    next_week_boundary,
    week_key,
)


class TestKeys:
    """Calendar key formats."""

    def test_day_hour_month_keys(self):
        when = datetime(2025, 3, 7, 5, 30)
        assert day_key(when) == "2025-03-07"
        assert hour_key(when) == "2025-03-07-05"
        assert month_key(when) == "2025-03"

    def test_week_key_uses_iso_numbering(self):
        assert week_key(date(2025, 1, 1)) == "2025-W01"
        # Monday 2024-12-30 already belongs to ISO week 1 of 2025
        assert week_key(date(2024, 12, 30)) == "2025-W01"
        # Sunday 2021-01-03 is still in week 53 of 2020
        assert week_key(date(2021, 1, 3)) == "2020-W53"

    def test_week_key_changes_on_monday(self):
        assert week_key(date(2025, 1, 5)) == "2025-W01"
        assert week_key(date(2025, 1, 6)) == "2025-W02"


class TestTargetZone:
    """Keys are computed in the target zone, not in UTC."""

    def test_day_rolls_at_local_midnight(self):
        clock = FixedClock(datetime(2024, 12, 31, 15, 59, 59, tzinfo=timezone.utc))
        assert clock.day_key() == "2024-12-31"

        clock.advance(seconds=1)
        assert clock.day_key() == "2025-01-01"
        assert clock.month_key() == "2025-01"
        assert clock.utc_now() == datetime(2024, 12, 31, 16, 0, tzinfo=timezone.utc)

    def test_naive_values_are_local_time(self):
        clock = FixedClock(datetime(2025, 1, 1, 0, 30))
        assert clock.hour_key() == "2025-01-01-00"
        assert clock.utc_now().day == 31

    def test_system_clock_reports_target_zone(self):
        clock = Clock()
        assert str(clock.now().tzinfo) == DEFAULT_TIMEZONE

    def test_unknown_zone_falls_back(self):
        assert str(load_zone("Not/AZone")) == DEFAULT_TIMEZONE


class TestBoundaries:
    """Next-boundary and countdown helpers."""

    def test_next_boundaries(self, clock):
        now = clock.now()
        assert next_day_boundary(now).replace(tzinfo=None) == datetime(2025, 1, 2)
        assert next_week_boundary(now).replace(tzinfo=None) == datetime(2025, 1, 6)
        assert next_month_boundary(now).replace(tzinfo=None) == datetime(2025, 2, 1)

    def test_next_week_from_monday_is_following_monday(self):
        clock = FixedClock(datetime(2025, 1, 6, 0, 0))
        assert next_week_boundary(clock.now()).replace(tzinfo=None) == datetime(2025, 1, 13)

    def test_next_month_in_december(self):
        clock = FixedClock(datetime(2025, 12, 15, 8, 0))
        assert next_month_boundary(clock.now()).replace(tzinfo=None) == datetime(2026, 1, 1)

    def test_countdown_structure(self, clock):
        now = clock.now()
        result = countdown(now, next_day_boundary(now))
        assert result["hours"] == 14
        assert result["minutes"] == 0
        assert result["seconds"] == 0
        assert result["totalSeconds"] == 14 * 3600
        assert result["formatted"] == "14h 0m 0s"

    def test_countdown_never_negative(self, clock):
        now = clock.now()
        assert countdown(now, now.replace(hour=9))["totalSeconds"] == 0

    def test_format_countdown(self):
        assert format_countdown(59) == "0m 59s"
        assert format_countdown(3661) == "1h 1m 1s"
        assert format_countdown(90061) == "1d 1h 1m 1s"


class TestFixedClock:
    def test_advance_moves_forward(self, clock):
        clock.advance(days=1, hours=14)
        assert clock.day_key() == "2025-01-03"
        assert clock.hour_key() == "2025-01-03-00"
        assert clock.week_key() == "2025-W01"
