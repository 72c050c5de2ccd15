"""Tests for schedule parsing and next-run arithmetic."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from sitepipe.automation.schedule import Schedule, SchedulingError


def _at(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


class TestParse:
    """Malformed schedules are rejected, never defaulted."""

    @pytest.mark.parametrize("schedule_type, value", [
        ("cron", "* * * * *"),
        (None, 60),
        ("interval", 0),
        ("interval", -5),
        ("interval", "60"),
        ("interval", True),
        ("daily", {"hour": 24}),
        ("daily", {"minute": 60}),
        ("daily", {"hour": "9"}),
        ("daily", "09:00"),
        ("weekly", {"weekday": 7}),
        ("monthly", {"day": 0}),
        ("monthly", {"day": 32}),
    ])
    def test_rejects(self, schedule_type, value) -> None:
        with pytest.raises(SchedulingError):
            Schedule.parse(schedule_type, value)

    def test_from_dict(self) -> None:
        schedule = Schedule.from_dict({"type": "daily", "value": {"hour": 6}})
        assert schedule.hour == 6
        assert schedule.minute == 0

    def test_from_dict_rejects_non_mapping(self) -> None:
        with pytest.raises(SchedulingError):
            Schedule.from_dict("daily")


class TestNextRun:
    """Next-run computation."""

    def test_interval(self) -> None:
        schedule = Schedule.parse("interval", 90)
        assert schedule.next_run(_at(2024, 1, 1, 12, 0)) == _at(2024, 1, 1, 12, 1, 30)

    def test_daily_later_today(self) -> None:
        schedule = Schedule.parse("daily", {"hour": 14, "minute": 30})
        assert schedule.next_run(_at(2024, 1, 1, 9, 0)) == _at(2024, 1, 1, 14, 30)

    def test_daily_rolls_to_tomorrow(self) -> None:
        schedule = Schedule.parse("daily", {"hour": 14, "minute": 30})
        assert schedule.next_run(_at(2024, 1, 1, 14, 30)) == _at(2024, 1, 2, 14, 30)

    def test_daily_defaults_to_midnight(self) -> None:
        schedule = Schedule.parse("daily", None)
        assert schedule.next_run(_at(2024, 1, 1, 0, 0, 1)) == _at(2024, 1, 2)

    def test_weekly_with_weekday(self) -> None:
        # 2024-01-01 is a Monday
        schedule = Schedule.parse("weekly", {"weekday": 2, "hour": 8})
        assert schedule.next_run(_at(2024, 1, 1, 12, 0)) == _at(2024, 1, 3, 8, 0)
        assert schedule.next_run(_at(2024, 1, 3, 9, 0)) == _at(2024, 1, 10, 8, 0)

    def test_weekly_without_weekday_repeats_after_seven_days(self) -> None:
        schedule = Schedule.parse("weekly", {})
        assert schedule.next_run(_at(2024, 1, 1, 12, 15)) == _at(2024, 1, 8, 12, 15)

    def test_monthly_clamps_to_month_end(self) -> None:
        schedule = Schedule.parse("monthly", {"day": 31, "hour": 6})
        assert schedule.next_run(_at(2024, 2, 1)) == _at(2024, 2, 29, 6, 0)
        assert schedule.next_run(_at(2024, 2, 29, 7, 0)) == _at(2024, 3, 31, 6, 0)

    def test_monthly_without_day(self) -> None:
        schedule = Schedule.parse("monthly", {})
        assert schedule.next_run(_at(2024, 1, 31, 10, 0)) == _at(2024, 2, 29, 10, 0)
        assert schedule.next_run(_at(2024, 12, 15)) == _at(2025, 1, 15)

    def test_next_run_is_strictly_after(self) -> None:
        schedule = Schedule.parse("monthly", {"day": 1})
        moment = _at(2024, 5, 1)
        assert schedule.next_run(moment) > moment
