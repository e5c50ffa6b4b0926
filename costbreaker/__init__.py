"""
costbreaker - Multi-layer cost circuit breaker for metered APIs.

Simple usage:
    from costbreaker import CostCircuitBreaker, InMemoryLedger

    breaker = CostCircuitBreaker(InMemoryLedger())

    verdict = breaker.check("user_123")
    if verdict.allowed:
        result = call_llm(...)
        breaker.record("user_123", result.cost_usd)
    else:
        print(verdict.public_message)

Configuration from the environment (COST_LIMIT_DAILY, COST_LIMIT_HOURLY,
COST_LIMIT_USER_DAILY, ...):
    from costbreaker import load_config, RedisLedger

    breaker = CostCircuitBreaker(
        RedisLedger(url="redis://localhost:6379/0"),
        load_config(),
    )

Decision events:
    from costbreaker import DecisionCollector

    collector = DecisionCollector()
    breaker = CostCircuitBreaker(InMemoryLedger(), observer=collector)
    print(collector.get_stats())
"""

from costbreaker.breaker import CostCircuitBreaker
from costbreaker.config import BreakerConfig, ConfigError, default_layers, load_config
from costbreaker.ledger import (
    BudgetLedger,
    InMemoryLedger,
    LedgerTimeoutError,
    LedgerUnavailableError,
    SQLiteLedger,
)
from costbreaker.metrics import DecisionCollector
from costbreaker.models import (
    BudgetExceededError,
    DecisionEvent,
    InvalidCostError,
    Layer,
    Scope,
    SpendSnapshot,
    Verdict,
    Window,
)
from costbreaker.redis_ledger import RedisLedger


__version__ = "1.0.0"
__all__ = [
    # Breaker
    "CostCircuitBreaker",
    "Verdict",
    "BudgetExceededError",
    "InvalidCostError",
    "SpendSnapshot",
    # Configuration
    "BreakerConfig",
    "ConfigError",
    "Layer",
    "Scope",
    "Window",
    "default_layers",
    "load_config",
    # Ledgers
    "BudgetLedger",
    "InMemoryLedger",
    "SQLiteLedger",
    "RedisLedger",
    "LedgerTimeoutError",
    "LedgerUnavailableError",
    # Events
    "DecisionCollector",
    "DecisionEvent",
]
