"""Tests for time buckets and budget keys."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from costbreaker.buckets import (
    budget_key,
    bucket_end,
    bucket_for,
    expiry_seconds,
    user_id_from_key,
    user_key_pattern,
)
from costbreaker.models import Layer, Scope, Window


NOW = datetime(2026, 10, 18, 7, 45, 30, tzinfo=timezone.utc)

GLOBAL_DAILY = Layer("global-daily", Scope.GLOBAL, Window.DAILY, Decimal("50"))
GLOBAL_HOURLY = Layer("global-hourly", Scope.GLOBAL, Window.HOURLY, Decimal("5"))
USER_DAILY = Layer("user-daily", Scope.PER_USER, Window.DAILY, Decimal("1"))
USER_HOURLY = Layer("user-hourly", Scope.PER_USER, Window.HOURLY, Decimal("0.5"))


class TestBuckets:
    """Test calendar bucket computation."""

    def test_daily_bucket(self):
        assert bucket_for(Window.DAILY, NOW) == "2026-10-18"

    def test_hourly_bucket_zero_padded(self):
        assert bucket_for(Window.HOURLY, NOW) == "2026-10-18:07"

    def test_bucket_uses_utc(self):
        """A non-UTC time is converted before bucketing."""
        tokyo = timezone(timedelta(hours=9))
        local = datetime(2026, 10, 19, 3, 0, tzinfo=tokyo)  # 2026-10-18 18:00 UTC

        assert bucket_for(Window.DAILY, local) == "2026-10-18"
        assert bucket_for(Window.HOURLY, local) == "2026-10-18:18"

    def test_naive_datetime_rejected(self):
        with pytest.raises(ValueError):
            bucket_for(Window.DAILY, datetime(2026, 10, 18, 7, 0))

    def test_bucket_end(self):
        assert bucket_end(Window.DAILY, NOW) == datetime(2026, 10, 19, tzinfo=timezone.utc)
        assert bucket_end(Window.HOURLY, NOW) == datetime(2026, 10, 18, 8, tzinfo=timezone.utc)

    def test_expiry_is_end_of_bucket_plus_grace(self):
        # 14 min 30 s left in the hour
        assert expiry_seconds(Window.HOURLY, NOW, grace_seconds=300) == 870 + 300

        left_in_day = int((datetime(2026, 10, 19, tzinfo=timezone.utc) - NOW).total_seconds())
        assert expiry_seconds(Window.DAILY, NOW, grace_seconds=60) == left_in_day + 60

    def test_expiry_targets_same_deadline_within_bucket(self):
        """Later calls in the same bucket target the same absolute expiry."""
        later = NOW + timedelta(minutes=10)
        first = NOW + timedelta(seconds=expiry_seconds(Window.HOURLY, NOW, 300))
        second = later + timedelta(seconds=expiry_seconds(Window.HOURLY, later, 300))

        assert first == second


class TestBudgetKeys:
    """Test key derivation."""

    def test_global_keys(self):
        assert budget_key(GLOBAL_DAILY, NOW) == "cost:daily:2026-10-18"
        assert budget_key(GLOBAL_HOURLY, NOW) == "cost:hourly:2026-10-18:07"

    def test_user_keys(self):
        assert budget_key(USER_DAILY, NOW, "u1") == "cost:user:u1:2026-10-18"
        assert budget_key(USER_HOURLY, NOW, "u1") == "cost:user:u1:2026-10-18:07"

    def test_global_key_ignores_user(self):
        assert budget_key(GLOBAL_DAILY, NOW, "u1") == budget_key(GLOBAL_DAILY, NOW, "u2")

    def test_per_user_layer_requires_user(self):
        with pytest.raises(ValueError):
            budget_key(USER_DAILY, NOW)

    def test_prefix(self):
        assert budget_key(GLOBAL_DAILY, NOW, prefix="app") == "app:cost:daily:2026-10-18"

    def test_keys_change_across_buckets(self):
        next_hour = NOW + timedelta(hours=1)

        assert budget_key(GLOBAL_HOURLY, NOW) != budget_key(GLOBAL_HOURLY, next_hour)
        assert budget_key(GLOBAL_DAILY, NOW) == budget_key(GLOBAL_DAILY, next_hour)

    def test_user_id_roundtrip_through_pattern(self):
        key = budget_key(USER_DAILY, NOW, "user:with:colons", prefix="app")
        pattern = user_key_pattern(Window.DAILY, NOW, prefix="app")

        assert pattern == "app:cost:user:*:2026-10-18"
        assert user_id_from_key(key, Window.DAILY, NOW, prefix="app") == "user:with:colons"

    def test_user_id_from_hourly_key_does_not_match_daily(self):
        key = budget_key(USER_HOURLY, NOW, "u1")

        assert user_id_from_key(key, Window.DAILY, NOW) is None
