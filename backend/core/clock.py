"""Injectable clock and business-timezone day bucketing.

All day/hour buckets are computed in the business timezone (``BUSINESS_TIMEZONE``),
never in the host's local time. Datetimes handed to and returned from these
helpers are timezone-aware.
"""

from __future__ import annotations

from datetime import UTC, datetime, time, timedelta
from functools import lru_cache
from typing import Protocol
from zoneinfo import ZoneInfo

from backend.core.config import settings


class Clock(Protocol):
    def now(self) -> datetime: ...


class SystemClock:
    def now(self) -> datetime:
        return datetime.now(UTC)


class FrozenClock:
    """Manually advanced clock for tests and replays."""

    def __init__(self, now: datetime) -> None:
        self._now = ensure_aware(now)

    def now(self) -> datetime:
        return self._now

    def set(self, now: datetime) -> None:
        self._now = ensure_aware(now)

    def advance(self, **kwargs: float) -> datetime:
        self._now = self._now + timedelta(**kwargs)
        return self._now


@lru_cache(maxsize=16)
def get_timezone(name: str | None = None) -> ZoneInfo:
    return ZoneInfo(name or settings.BUSINESS_TIMEZONE)


def ensure_aware(dt: datetime) -> datetime:
    """Treat naive datetimes as UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt


def to_local(dt: datetime, tz: ZoneInfo | None = None) -> datetime:
    return ensure_aware(dt).astimezone(tz or get_timezone())


def start_of_day(now: datetime, tz: ZoneInfo | None = None) -> datetime:
    local = to_local(now, tz)
    return datetime.combine(local.date(), time.min, tzinfo=local.tzinfo)


def end_of_day(now: datetime, tz: ZoneInfo | None = None) -> datetime:
    return start_of_day(now, tz) + timedelta(days=1) - timedelta(microseconds=1)


def at_local_time(now: datetime, hour: int, minute: int = 0, *, days: int = 0, tz: ZoneInfo | None = None) -> datetime:
    """Wall-clock ``hour:minute`` in business time, ``days`` after the local date of ``now``."""
    local = to_local(now, tz)
    day = local.date() + timedelta(days=days)
    return datetime.combine(day, time(hour, minute), tzinfo=local.tzinfo)


def date_key(dt: datetime, tz: ZoneInfo | None = None) -> str:
    """Business calendar date bucket, ``YYYY-MM-DD``."""
    return to_local(dt, tz).strftime("%Y-%m-%d")


def hour_key(dt: datetime, tz: ZoneInfo | None = None) -> str:
    """Business hour bucket, ``YYYY-MM-DDTHH``."""
    return to_local(dt, tz).strftime("%Y-%m-%dT%H")


default_clock = SystemClock()
