# Overview: Pytest coverage for expiry day counting and VIP rules (no database).

from datetime import datetime, timedelta
from types import SimpleNamespace

import pytest

from bottlekeep.services import expiry_policy
from bottlekeep.time_utils import expiry_from_days, local_today, to_utc_z
from bottlekeep.validation import ValidationError


NOW = datetime(2024, 3, 1, 12, 0, 0)


def _deposit(expiry, status="in_store", is_vip=False):
    return SimpleNamespace(expiry_date=expiry, status=status, is_vip=is_vip)


class TestDaysUntil:
    """Day counts round up."""

    @pytest.mark.parametrize("delta,expected", [
        (timedelta(hours=36), 2),
        (timedelta(days=1), 1),
        (timedelta(seconds=1), 1),
        (timedelta(0), 0),
        (timedelta(seconds=-1), 0),
        (timedelta(hours=-36), -1),
    ])
    def test_rounding(self, delta, expected):
        assert expiry_policy.days_until(NOW + delta, NOW) == expected


class TestExpiringSoon:

    def test_inside_window(self):
        assert expiry_policy.is_expiring_soon(_deposit(NOW + timedelta(days=3)), NOW, 7)

    def test_window_edge_is_inclusive(self):
        assert expiry_policy.is_expiring_soon(_deposit(NOW + timedelta(days=7)), NOW, 7)
        assert not expiry_policy.is_expiring_soon(_deposit(NOW + timedelta(days=7, seconds=1)), NOW, 7)

    def test_lapsed_is_not_expiring_soon(self):
        assert not expiry_policy.is_expiring_soon(_deposit(NOW), NOW, 7)

    def test_vip_and_other_statuses_excluded(self):
        soon = NOW + timedelta(days=2)
        assert not expiry_policy.is_expiring_soon(_deposit(None, is_vip=True), NOW, 7)
        assert not expiry_policy.is_expiring_soon(_deposit(soon, status="pending_withdrawal"), NOW, 7)
        assert not expiry_policy.is_expiring_soon(_deposit(soon, status="expired"), NOW, 7)


class TestExpired:

    def test_lapsed(self):
        assert expiry_policy.is_expired(_deposit(NOW), NOW)
        assert expiry_policy.is_expired(_deposit(NOW - timedelta(days=3)), NOW)
        assert not expiry_policy.is_expired(_deposit(NOW + timedelta(seconds=1)), NOW)

    def test_vip_never_expires(self):
        assert not expiry_policy.is_expired(_deposit(None, is_vip=True), NOW)

    def test_can_mark_expired(self):
        assert expiry_policy.can_mark_expired(_deposit(NOW, status="in_store"))
        assert expiry_policy.can_mark_expired(_deposit(NOW, status="pending_confirm"))
        assert not expiry_policy.can_mark_expired(_deposit(NOW, status="withdrawn"))
        assert not expiry_policy.can_mark_expired(_deposit(None, is_vip=True))

    def test_can_extend_expiry(self):
        assert expiry_policy.can_extend_expiry(_deposit(NOW))
        assert not expiry_policy.can_extend_expiry(_deposit(NOW, status="expired"))
        assert not expiry_policy.can_extend_expiry(_deposit(None, is_vip=True))


class TestExtendedExpiry:

    def test_from_lapsed_expiry_uses_now(self):
        assert expiry_policy.extended_expiry(datetime(2024, 1, 10), datetime(2024, 2, 1), 30) == datetime(2024, 3, 2)

    def test_from_future_expiry(self):
        assert expiry_policy.extended_expiry(datetime(2024, 3, 1), datetime(2024, 2, 1), 10) == datetime(2024, 3, 11)

    def test_without_expiry(self):
        assert expiry_policy.extended_expiry(None, NOW, 1) == NOW + timedelta(days=1)

    @pytest.mark.parametrize("days", [0, -1, 2.5, True, "3"])
    def test_bad_days(self, days):
        with pytest.raises(ValidationError):
            expiry_policy.extended_expiry(None, NOW, days)


class TestStoreCalendar:
    """Expiry dates follow the store's wall clock."""

    def test_local_day_rolls_over_before_utc(self):
        # 20:00 UTC is already 03:00 next day in Bangkok
        now = datetime(2024, 1, 1, 20, 0)
        assert local_today("Asia/Bangkok", now).isoformat() == "2024-01-02"
        assert local_today("UTC", now).isoformat() == "2024-01-01"

    def test_expiry_includes_last_local_day(self):
        expiry = expiry_from_days(30, "Asia/Bangkok", datetime(2024, 1, 1, 20, 0))
        assert to_utc_z(expiry) == "2024-02-01T16:59:59Z"

    def test_unknown_timezone_falls_back_to_utc(self):
        expiry = expiry_from_days(1, "Mars/Olympus", datetime(2024, 1, 1, 20, 0))
        assert expiry == datetime(2024, 1, 2, 23, 59, 59)
