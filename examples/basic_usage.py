"""
Basic usage examples for costbreaker.

Runs against the in-memory ledger, so no Redis is needed.
"""

import logging
from decimal import Decimal

from costbreaker import (
    BreakerConfig,
    BudgetExceededError,
    CostCircuitBreaker,
    DecisionCollector,
    InMemoryLedger,
    default_layers,
)


def example_basic():
    """Check before the call, record after it."""
    print("=" * 60)
    print("Example 1: Check and record")
    print("=" * 60)

    with CostCircuitBreaker(InMemoryLedger()) as breaker:
        for _ in range(3):
            verdict = breaker.check("test-user-1")
            print(f"Allowed: {verdict.allowed}")
            breaker.record("test-user-1", Decimal("0.05"))

        for name, spend in breaker.check("test-user-1").layer_spend.items():
            print(f"  {name}: ${spend:.2f}")
    print()


def example_user_limit():
    """Push one user over the per-user daily layer."""
    print("=" * 60)
    print("Example 2: Per-user limit")
    print("=" * 60)

    with CostCircuitBreaker(InMemoryLedger()) as breaker:
        breaker.record("test-user-limit", 0.50)
        breaker.record("test-user-limit", 0.50)
        breaker.record("test-user-limit", 0.10)

        verdict = breaker.check("test-user-limit")
        print(f"Allowed: {verdict.allowed}")
        print(f"Internal reason: {verdict.reason} (${verdict.current_spend:.2f})")
        print(f"Shown to the user: {verdict.public_message}")

        try:
            breaker.enforce("test-user-limit")
        except BudgetExceededError as e:
            print(f"enforce() raised: {e}")
    print()


def example_events():
    """Collect decision events for monitoring."""
    print("=" * 60)
    print("Example 3: Decision events")
    print("=" * 60)

    collector = DecisionCollector(enable_logging=False)
    config = BreakerConfig(layers=default_layers(daily=Decimal("2")))

    with CostCircuitBreaker(InMemoryLedger(), config, observer=collector) as breaker:
        for i in range(10):
            user_id = f"user-{i % 5}"
            if breaker.check(user_id).allowed:
                breaker.record(user_id, 0.30)

        snapshot = breaker.snapshot(top_n=3)

    print(f"Counters: {collector.get_stats()['counters']}")
    for status in snapshot.layers:
        print(f"  {status.layer.name}: ${status.current:.2f} ({status.percentage}%)")
    for user in snapshot.top_users:
        print(f"  {user.user_id}: ${user.cost:.2f}")
    print()


if __name__ == "__main__":
    logging.basicConfig(level=logging.WARNING)
    example_basic()
    example_user_limit()
    example_events()
