"""
Time buckets and budget keys.

All bucket boundaries are computed in UTC so every instance agrees on when
an hour or a day starts.

Key layout:
    cost:daily:2026-10-18              global, daily
    cost:hourly:2026-10-18:07          global, hourly
    cost:user:<user_id>:2026-10-18     per-user, daily
    cost:user:<user_id>:2026-10-18:07  per-user, hourly
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional

from costbreaker.models import Layer, Scope, Window


def _as_utc(now: datetime) -> datetime:
    if now.tzinfo is None:
        raise ValueError("datetime must be timezone-aware")
    return now.astimezone(timezone.utc)


def bucket_for(window: Window, now: datetime) -> str:
    """Return the calendar bucket string for ``now``."""
    now = _as_utc(now)
    if window == Window.DAILY:
        return now.strftime("%Y-%m-%d")
    return now.strftime("%Y-%m-%d:%H")


def bucket_start(window: Window, now: datetime) -> datetime:
    now = _as_utc(now)
    if window == Window.DAILY:
        return now.replace(hour=0, minute=0, second=0, microsecond=0)
    return now.replace(minute=0, second=0, microsecond=0)


def bucket_end(window: Window, now: datetime) -> datetime:
    """Return the first instant after the bucket containing ``now``."""
    step = timedelta(days=1) if window == Window.DAILY else timedelta(hours=1)
    return bucket_start(window, now) + step


def expiry_seconds(window: Window, now: datetime, grace_seconds: int) -> int:
    """Seconds from ``now`` until the bucket ends plus the grace margin.

    Every call inside one bucket targets the same absolute expiry, so
    re-asserting it never moves the deadline earlier.
    """
    remaining = bucket_end(window, now) - _as_utc(now)
    return max(1, int(remaining.total_seconds()) + int(grace_seconds))


def budget_key(
    layer: Layer,
    now: datetime,
    user_id: Optional[str] = None,
    prefix: str = "",
) -> str:
    """Derive the BudgetKey for ``layer`` at ``now``."""
    bucket = bucket_for(layer.window, now)
    if layer.scope == Scope.PER_USER:
        if not user_id:
            raise ValueError(f"layer '{layer.name}' is per-user and needs a user_id")
        key = f"cost:user:{user_id}:{bucket}"
    else:
        key = f"cost:{layer.window.value}:{bucket}"
    if prefix:
        return f"{prefix}:{key}"
    return key


def user_key_pattern(window: Window, now: datetime, prefix: str = "") -> str:
    """Glob pattern matching every per-user key of ``window`` at ``now``."""
    pattern = f"cost:user:*:{bucket_for(window, now)}"
    if prefix:
        return f"{prefix}:{pattern}"
    return pattern


def user_id_from_key(key: str, window: Window, now: datetime, prefix: str = "") -> Optional[str]:
    """Extract the user id from a per-user key, or None if it does not match."""
    head = f"{prefix}:cost:user:" if prefix else "cost:user:"
    tail = f":{bucket_for(window, now)}"
    if not key.startswith(head) or not key.endswith(tail):
        return None
    user_id = key[len(head):-len(tail)]
    return user_id or None
