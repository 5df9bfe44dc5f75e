from __future__ import annotations

import math
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


SECONDS_PER_DAY = 24 * 60 * 60


def utcnow() -> datetime:
    """Server-side 'now' in UTC (naive, canonical)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def parse_iso_datetime(value: Optional[str]) -> Optional[datetime]:
    """
    Parse an ISO-8601 datetime string and normalize to UTC-naive datetime.

    - None / "" -> None
    - "YYYY-MM-DD" is interpreted as midnight UTC
    - "YYYY-MM-DDTHH:MM" (naive) is interpreted as UTC
    - "...Z" or "...+/-HH:MM" is converted to UTC and tzinfo is stripped
    """
    if value is None:
        return None
    s = value.strip()
    if not s:
        return None

    # Accept trailing Z
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"

    dt = datetime.fromisoformat(s)
    return to_utc_naive(dt)


def to_utc_naive(dt: datetime) -> datetime:
    """Normalize an aware datetime to UTC and drop tzinfo; naive input is taken as UTC."""
    if dt.tzinfo is None:
        return dt
    return dt.astimezone(timezone.utc).replace(tzinfo=None)


def to_utc_z(dt: Optional[datetime]) -> Optional[str]:
    """
    Serializes datetime to ISO-8601 with trailing 'Z'.
    If dt is naive, it is treated as UTC.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    dt_utc = dt.astimezone(timezone.utc).replace(microsecond=0)
    return dt_utc.isoformat().replace("+00:00", "Z")


def get_zone(tz_name: Optional[str], fallback: str = "UTC") -> ZoneInfo:
    try:
        return ZoneInfo(tz_name or fallback)
    except (ZoneInfoNotFoundError, ValueError, OSError):
        return ZoneInfo(fallback)


def is_valid_timezone(tz_name: Optional[str]) -> bool:
    if not tz_name:
        return False
    try:
        ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError, OSError):
        return False
    return True


def local_today(tz_name: Optional[str], now: Optional[datetime] = None) -> date:
    """Calendar date at the store's wall clock for a UTC-naive 'now'."""
    now = now or utcnow()
    return now.replace(tzinfo=timezone.utc).astimezone(get_zone(tz_name)).date()


def expiry_from_days(days: int, tz_name: Optional[str], now: Optional[datetime] = None) -> datetime:
    """
    Expiry for a new deposit: end of the local day (23:59:59) `days` days from
    today, returned as UTC-naive so the full last day is included.
    """
    zone = get_zone(tz_name)
    target_day = local_today(tz_name, now) + timedelta(days=days)
    local_end = datetime.combine(target_day, time(23, 59, 59), tzinfo=zone)
    return to_utc_naive(local_end)


def days_until(target: datetime, now: Optional[datetime] = None) -> int:
    """Whole days from now until target, rounded up (negative once lapsed)."""
    now = now or utcnow()
    diff = (to_utc_naive(target) - to_utc_naive(now)).total_seconds()
    return math.ceil(diff / SECONDS_PER_DAY)
