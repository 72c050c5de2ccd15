"""Schedule grammar and next-run arithmetic.

Schedules fire on wall-clock occurrences: the scheduler arms each entity for
exactly the ``next_run`` computed here, so the displayed next run and the
actual trigger always agree. All times are UTC.

Grammar (``type`` -> ``value``):
    interval: seconds between runs, a positive number.
    daily:    ``{"hour": 0-23, "minute": 0-59}``; both default to 0.
    weekly:   ``{"weekday": 0-6 (Mon=0), "hour", "minute"}``; without a
              weekday the run repeats seven days after the previous one.
    monthly:  ``{"day": 1-31, "hour", "minute"}``; days past the end of a
              month clamp to its last day. Without a day the run repeats on
              the same day next month.
"""

from __future__ import annotations

import calendar
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Mapping

SCHEDULE_TYPES = ("interval", "daily", "weekly", "monthly")


class SchedulingError(ValueError):
    """The schedule definition is malformed; it is rejected, never defaulted."""


def _bounded_int(value: Mapping[str, Any], key: str, low: int, high: int, default: int | None) -> int | None:
    raw = value.get(key)
    if raw is None:
        return default
    if isinstance(raw, bool) or not isinstance(raw, int):
        raise SchedulingError(f"'{key}' must be an integer, got {raw!r}")
    if not low <= raw <= high:
        raise SchedulingError(f"'{key}' must be between {low} and {high}, got {raw}")
    return raw


def _clamped_day(year: int, month: int, day: int) -> int:
    return min(day, calendar.monthrange(year, month)[1])


def _add_months(year: int, month: int, months: int) -> tuple[int, int]:
    index = month - 1 + months
    return year + index // 12, index % 12 + 1


@dataclass(frozen=True)
class Schedule:
    type: str
    value: Any = None
    interval_seconds: float | None = None
    hour: int | None = None
    minute: int | None = None
    weekday: int | None = None
    day: int | None = None

    @classmethod
    def parse(cls, schedule_type: str | None, value: Any) -> "Schedule":
        """Validate a schedule definition.

        Raises:
            SchedulingError: If the type is unknown or the value is malformed.
        """
        if schedule_type not in SCHEDULE_TYPES:
            raise SchedulingError(
                f"Invalid schedule type: {schedule_type!r}. Must be one of {SCHEDULE_TYPES}"
            )

        if schedule_type == "interval":
            if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
                raise SchedulingError(f"Interval must be a positive number of seconds, got {value!r}")
            return cls(type=schedule_type, value=value, interval_seconds=float(value))

        if value is None:
            value = {}
        if not isinstance(value, Mapping):
            raise SchedulingError(f"{schedule_type} schedule value must be an object, got {value!r}")

        hour = _bounded_int(value, "hour", 0, 23, None)
        minute = _bounded_int(value, "minute", 0, 59, None)
        if schedule_type == "daily":
            return cls(type=schedule_type, value=dict(value), hour=hour or 0, minute=minute or 0)
        if schedule_type == "weekly":
            weekday = _bounded_int(value, "weekday", 0, 6, None)
            return cls(type=schedule_type, value=dict(value), hour=hour, minute=minute, weekday=weekday)
        day = _bounded_int(value, "day", 1, 31, None)
        return cls(type=schedule_type, value=dict(value), hour=hour, minute=minute, day=day)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "Schedule":
        """Parse a pipeline-style ``{"type": ..., "value": ...}`` mapping."""
        if not isinstance(payload, Mapping):
            raise SchedulingError(f"Schedule must be an object, got {payload!r}")
        return cls.parse(payload.get("type"), payload.get("value"))

    def _at_time(self, moment: datetime) -> datetime:
        # Without an explicit time of day the previous run's time is kept
        if self.hour is None and self.minute is None:
            return moment
        return moment.replace(hour=self.hour or 0, minute=self.minute or 0, second=0, microsecond=0)

    def next_run(self, after: datetime) -> datetime:
        """Return the first occurrence strictly after ``after``."""
        if self.type == "interval":
            return after + timedelta(seconds=self.interval_seconds or 0)

        if self.type == "daily":
            candidate = after.replace(hour=self.hour or 0, minute=self.minute or 0, second=0, microsecond=0)
            if candidate <= after:
                candidate += timedelta(days=1)
            return candidate

        if self.type == "weekly":
            if self.weekday is None:
                return self._at_time(after + timedelta(days=7))
            candidate = self._at_time(after) + timedelta(days=(self.weekday - after.weekday()) % 7)
            if candidate <= after:
                candidate += timedelta(days=7)
            return candidate

        # monthly
        if self.day is None:
            year, month = _add_months(after.year, after.month, 1)
            shifted = after.replace(year=year, month=month, day=_clamped_day(year, month, after.day))
            return self._at_time(shifted)

        year, month = after.year, after.month
        candidate = self._at_time(after.replace(day=_clamped_day(year, month, self.day)))
        if candidate <= after:
            year, month = _add_months(year, month, 1)
            candidate = self._at_time(
                after.replace(year=year, month=month, day=_clamped_day(year, month, self.day))
            )
        return candidate
