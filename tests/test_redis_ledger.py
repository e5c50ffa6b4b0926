"""Tests for the Redis ledger against a mocked client."""

from decimal import Decimal
from unittest.mock import MagicMock, call

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from costbreaker.ledger import LedgerUnavailableError
from costbreaker.redis_ledger import RedisLedger


@pytest.fixture
def client():
    return MagicMock()


class TestRedisLedger:
    """Test RedisLedger command usage."""

    def test_increment_uses_integer_minor_units(self, client):
        client.incrby.return_value = 15000
        ledger = RedisLedger(client=client)

        total = ledger.increment("cost:daily:2026-10-18", Decimal("0.05"))

        client.incrby.assert_called_once_with("cost:daily:2026-10-18", 5000)
        assert total == Decimal("0.15")

    def test_read_missing_key_is_zero(self, client):
        client.get.return_value = None
        ledger = RedisLedger(client=client)

        assert ledger.read("missing") == Decimal(0)

    def test_read_converts_minor_units(self, client):
        client.get.return_value = "115000"
        ledger = RedisLedger(client=client)

        assert ledger.read("k") == Decimal("1.15")

    def test_set_expiry_sets_then_only_extends(self, client):
        pipe = client.pipeline.return_value
        ledger = RedisLedger(client=client)

        ledger.set_expiry("k", 3900)

        client.pipeline.assert_called_once_with(transaction=False)
        assert pipe.expire.call_args_list == [
            call("k", 3900, nx=True),
            call("k", 3900, gt=True),
        ]
        pipe.execute.assert_called_once()

    def test_scan_skips_keys_that_expired_midway(self, client):
        client.scan_iter.return_value = iter(["cost:user:a:2026-10-18", "cost:user:b:2026-10-18"])
        client.mget.return_value = ["30000", None]
        ledger = RedisLedger(client=client)

        result = ledger.scan("cost:user:*:2026-10-18")

        client.scan_iter.assert_called_once_with(match="cost:user:*:2026-10-18", count=500)
        assert result == {"cost:user:a:2026-10-18": Decimal("0.3")}

    def test_scan_with_no_keys_skips_mget(self, client):
        client.scan_iter.return_value = iter([])
        ledger = RedisLedger(client=client)

        assert ledger.scan("*") == {}
        client.mget.assert_not_called()

    @pytest.mark.parametrize("method, args", [
        ("read", ("k",)),
        ("increment", ("k", Decimal("1"))),
        ("set_expiry", ("k", 60)),
        ("scan", ("*",)),
    ])
    def test_redis_errors_become_ledger_errors(self, client, method, args):
        client.get.side_effect = RedisConnectionError("down")
        client.incrby.side_effect = RedisConnectionError("down")
        client.pipeline.return_value.execute.side_effect = RedisConnectionError("down")
        client.scan_iter.side_effect = RedisConnectionError("down")
        ledger = RedisLedger(client=client)

        with pytest.raises(LedgerUnavailableError):
            getattr(ledger, method)(*args)

    def test_requires_client_or_url(self):
        with pytest.raises(ValueError):
            RedisLedger()
