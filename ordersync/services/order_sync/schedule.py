"""Pure next-fire calculations for the recurring jobs.

All functions take and return timezone-aware datetimes; ``after`` is
converted to the scheduler timezone so the hour windows are wall-clock hours.
"""
from __future__ import annotations

from datetime import date, datetime, time, timedelta, tzinfo
from typing import Iterator


def _day_start(day: date, hour: int, tz: tzinfo) -> datetime:
    return datetime.combine(day, time(hour=hour), tzinfo=tz)


def _days_from(after: datetime) -> Iterator[date]:
    day = after.date()
    for offset in range(0, 3):
        yield day + timedelta(days=offset)


def next_interval_fire(after: datetime, *, tz: tzinfo, interval_minutes: int,
                       start_hour: int = 0, end_hour: int = 23) -> datetime:
    """First fire strictly after ``after`` on a grid starting at ``start_hour``
    each day, every ``interval_minutes``, up to and including ``end_hour``:00.
    """
    if interval_minutes <= 0:
        raise ValueError("interval_minutes must be positive")
    local = after.astimezone(tz)
    step = timedelta(minutes=interval_minutes)
    for day in _days_from(local):
        candidate = _day_start(day, start_hour, tz)
        last = _day_start(day, end_hour, tz)
        while candidate <= last:
            if candidate > local:
                return candidate
            candidate += step
    raise RuntimeError("no fire time found within two days")  # pragma: no cover


def next_new_orders_fire(after: datetime, *, tz: tzinfo, interval_minutes: int,
                         start_hour: int, end_hour: int) -> datetime:
    return next_interval_fire(
        after, tz=tz, interval_minutes=interval_minutes, start_hour=start_hour, end_hour=end_hour
    )


def next_status_sync_fire(after: datetime, *, tz: tzinfo, interval_hours: int) -> datetime:
    # Aligned to local midnight: 00:00, 06:00, 12:00, 18:00 for a 6h interval.
    return next_interval_fire(after, tz=tz, interval_minutes=interval_hours * 60, start_hour=0, end_hour=23)


def next_daily_fire(after: datetime, *, tz: tzinfo, hour: int) -> datetime:
    local = after.astimezone(tz)
    candidate = _day_start(local.date(), hour, tz)
    if candidate <= local:
        candidate = _day_start(local.date() + timedelta(days=1), hour, tz)
    return candidate
