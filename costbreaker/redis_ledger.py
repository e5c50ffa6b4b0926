"""
Redis budget ledger.

Spend is kept as integer minor units so INCRBY stays exact; INCRBYFLOAT
would accumulate binary rounding error over thousands of sub-cent calls.

Expiry uses ``EXPIRE NX`` followed by ``EXPIRE GT`` in one pipeline: the
first sets a TTL on a fresh key, the second only ever extends it. Both
flags need Redis 7.0 or newer.

Requires redis: pip install redis
"""

from __future__ import annotations

from decimal import Decimal
from typing import Dict, Optional

import redis
from redis.exceptions import RedisError

from costbreaker.ledger import LedgerUnavailableError
from costbreaker.models import from_minor_units, to_minor_units


class RedisLedger:
    """Ledger backed by a Redis (or Redis-compatible) server."""

    def __init__(
        self,
        client: Optional[redis.Redis] = None,
        url: Optional[str] = None,
        timeout_seconds: float = 0.5,
        scan_count: int = 500,
    ):
        if client is None:
            if not url:
                raise ValueError("RedisLedger needs either a client or a url")
            client = redis.Redis.from_url(
                url,
                decode_responses=True,
                socket_timeout=timeout_seconds,
                socket_connect_timeout=timeout_seconds,
            )
        self._client = client
        self.scan_count = scan_count

    def increment(self, key: str, amount: Decimal) -> Decimal:
        try:
            total = self._client.incrby(key, to_minor_units(amount))
        except RedisError as exc:
            raise LedgerUnavailableError(f"INCRBY {key} failed: {exc}") from exc
        return from_minor_units(int(total))

    def set_expiry(self, key: str, ttl_seconds: int) -> None:
        try:
            pipe = self._client.pipeline(transaction=False)
            pipe.expire(key, ttl_seconds, nx=True)
            pipe.expire(key, ttl_seconds, gt=True)
            pipe.execute()
        except RedisError as exc:
            raise LedgerUnavailableError(f"EXPIRE {key} failed: {exc}") from exc

    def read(self, key: str) -> Decimal:
        try:
            value = self._client.get(key)
        except RedisError as exc:
            raise LedgerUnavailableError(f"GET {key} failed: {exc}") from exc
        if value is None:
            return Decimal(0)
        return from_minor_units(int(value))

    def scan(self, pattern: str) -> Dict[str, Decimal]:
        try:
            keys = list(self._client.scan_iter(match=pattern, count=self.scan_count))
            if not keys:
                return {}
            values = self._client.mget(keys)
        except RedisError as exc:
            raise LedgerUnavailableError(f"SCAN {pattern} failed: {exc}") from exc

        result: Dict[str, Decimal] = {}
        for key, value in zip(keys, values):
            # Keys can expire between SCAN and MGET.
            if value is None:
                continue
            if isinstance(key, bytes):
                key = key.decode()
            result[key] = from_minor_units(int(value))
        return result

    def close(self) -> None:
        self._client.close()
