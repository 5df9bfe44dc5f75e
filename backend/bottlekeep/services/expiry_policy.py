# Overview: Pure expiry and VIP rules for deposits (no database access).

"""
Expiry & VIP policy

- VIP deposits never expire and carry no expiry_date.
- Day counts round UP: 36 hours left is 2 days, 1 second left is 1 day,
  exactly 0 is 0 days (expired).
- "Expiring soon" means still in store, 0 < days_left <= threshold.

All functions take the deposit (or anything with status / is_vip /
expiry_date attributes) and an explicit `now` so callers and tests control
the clock.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional

from ..models.deposits import (
    DEPOSIT_STATUS_IN_STORE,
    DEPOSIT_STATUS_PENDING_CONFIRM,
)
from ..validation import ValidationError
from bottlekeep import time_utils


DEFAULT_WARNING_DAYS = 7

# Statuses the expiry sweep and mark_expired act on
EXPIRABLE_STATUSES = frozenset({DEPOSIT_STATUS_IN_STORE, DEPOSIT_STATUS_PENDING_CONFIRM})


def days_until(expiry: datetime, now: Optional[datetime] = None) -> int:
    return time_utils.days_until(expiry, now)


def is_expiring_soon(deposit, now: Optional[datetime] = None, threshold_days: int = DEFAULT_WARNING_DAYS) -> bool:
    if deposit.is_vip or deposit.expiry_date is None:
        return False
    if deposit.status != DEPOSIT_STATUS_IN_STORE:
        return False
    days = days_until(deposit.expiry_date, now)
    return 0 < days <= threshold_days


def is_expired(deposit, now: Optional[datetime] = None) -> bool:
    if deposit.is_vip or deposit.expiry_date is None:
        return False
    return days_until(deposit.expiry_date, now) <= 0


def can_mark_expired(deposit) -> bool:
    return deposit.status in EXPIRABLE_STATUSES and not deposit.is_vip


def can_extend_expiry(deposit) -> bool:
    return deposit.status == DEPOSIT_STATUS_IN_STORE and not deposit.is_vip


def extended_expiry(current: Optional[datetime], now: Optional[datetime], days: int) -> datetime:
    """
    New expiry when staff extend by `days`.

    Extends from whichever is later, the current expiry or now, so an
    already-lapsed date is not extended into the past.
    """
    if isinstance(days, bool) or not isinstance(days, int) or days <= 0:
        raise ValidationError("days must be a positive integer", field="days", value=days)
    now = time_utils.to_utc_naive(now or time_utils.utcnow())
    base = now
    if current is not None:
        current = time_utils.to_utc_naive(current)
        if current > now:
            base = current
    return base + timedelta(days=days)
