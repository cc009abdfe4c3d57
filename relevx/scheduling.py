"""Next-run computation for project delivery schedules."""

from __future__ import annotations

import calendar
from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

from relevx.models import Project, utcnow

FREQUENCIES = ("daily", "weekly", "monthly")


def parse_delivery_time(value: str) -> tuple[int, int]:
    """``"HH:MM"`` -> (hour, minute); raises ValueError on bad input."""
    hour_str, sep, minute_str = value.strip().partition(":")
    if not sep:
        raise ValueError(f"Invalid delivery time: {value!r}")
    hour, minute = int(hour_str), int(minute_str)
    if not (0 <= hour < 24 and 0 <= minute < 60):
        raise ValueError(f"Invalid delivery time: {value!r}")
    return hour, minute


def _clamp_day(year: int, month: int, day: int) -> int:
    return min(day, calendar.monthrange(year, month)[1])


def _add_months(dt: datetime, months: int, anchor_day: int) -> datetime:
    """Shift by whole months, clamping ``anchor_day`` to the target month's length."""
    month_index = dt.month - 1 + months
    year = dt.year + month_index // 12
    month = month_index % 12 + 1
    return dt.replace(year=year, month=month, day=_clamp_day(year, month, anchor_day))


def calculate_next_run_at(
    frequency: str,
    delivery_time: str,
    tz: str = "UTC",
    now: datetime | None = None,
    day_of_week: int | None = None,
    day_of_month: int | None = None,
) -> datetime:
    """First delivery instant strictly after ``now``, as an aware UTC datetime.

    Works in the project's local time: today's delivery time (moved to the
    pinned weekday or day of month when given) is advanced one period at a
    time until it lies in the future.
    """
    if frequency not in FREQUENCIES:
        raise ValueError(f"Unknown frequency: {frequency!r}")
    hour, minute = parse_delivery_time(delivery_time)
    now = now or utcnow()
    local_now = now.astimezone(ZoneInfo(tz))

    candidate = local_now.replace(hour=hour, minute=minute, second=0, microsecond=0)
    anchor_day = candidate.day
    if frequency == "weekly" and day_of_week is not None:
        candidate += timedelta(days=(day_of_week - candidate.weekday()) % 7)
    elif frequency == "monthly" and day_of_month is not None:
        anchor_day = day_of_month
        candidate = candidate.replace(
            day=_clamp_day(candidate.year, candidate.month, day_of_month)
        )

    while candidate.astimezone(timezone.utc) <= now:
        if frequency == "daily":
            candidate += timedelta(days=1)
        elif frequency == "weekly":
            candidate += timedelta(days=7)
        else:
            candidate = _add_months(candidate, 1, anchor_day)

    return candidate.astimezone(timezone.utc)


def next_run_for(project: Project, now: datetime | None = None) -> datetime:
    return calculate_next_run_at(
        project.frequency,
        project.delivery_time,
        project.timezone,
        now=now,
        day_of_week=project.day_of_week,
        day_of_month=project.day_of_month,
    )
