"""Tests for decision event collection."""

import json
import tempfile
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path

from costbreaker.breaker import CostCircuitBreaker
from costbreaker.config import BreakerConfig, default_layers
from costbreaker.ledger import InMemoryLedger
from costbreaker.metrics import DecisionCollector
from costbreaker.models import DecisionEvent


NOW = datetime(2026, 10, 18, 10, 30, tzinfo=timezone.utc)


def make_breaker(collector):
    return CostCircuitBreaker(
        InMemoryLedger(),
        BreakerConfig(layers=default_layers()),
        observer=collector,
        clock=lambda: NOW,
    )


class TestDecisionCollector:
    """Test DecisionCollector."""

    def test_counts_checks_and_denials(self):
        collector = DecisionCollector(enable_logging=False)

        with make_breaker(collector) as breaker:
            breaker.check("u1")
            breaker.record("u1", 1.20)
            breaker.check("u1")

        counters = collector.get_stats()["counters"]
        assert counters["checks_total"] == 2
        assert counters["checks_allowed"] == 1
        assert counters["checks_denied"] == 1
        assert counters["denied_by_user-daily"] == 1
        assert counters["records_total"] == 1

    def test_recorded_spend_is_summed(self):
        collector = DecisionCollector(enable_logging=False)

        with make_breaker(collector) as breaker:
            breaker.record("u1", 0.05)
            breaker.record("u2", 0.10)

        assert collector.get_stats()["recorded_usd"] == Decimal("0.15")

    def test_recorded_spend_outlives_event_history(self):
        collector = DecisionCollector(enable_logging=False, max_events=2)

        for _ in range(5):
            collector.record(DecisionEvent(
                event_type="cost_recorded",
                user_id="u1",
                data={"cost_usd": "0.10"},
            ))

        stats = collector.get_stats()
        assert stats["total_events"] == 2
        assert stats["recorded_usd"] == Decimal("0.50")

    def test_counts_write_timeouts(self):
        collector = DecisionCollector(enable_logging=False)

        collector.record(DecisionEvent(event_type="ledger_write_timeout", user_id="u1"))

        counters = collector.get_stats()["counters"]
        assert counters["write_timeouts"] == 1
        assert "write_failures" not in counters

    def test_writes_jsonl(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "events.jsonl"
            collector = DecisionCollector(events_file=path, enable_logging=False)

            collector.record(DecisionEvent(
                event_type="denied",
                user_id="u1",
                layer="global-hourly",
                current_spend=Decimal("5.2"),
                ceiling=Decimal("5"),
                timestamp=NOW,
            ))

            lines = path.read_text().splitlines()
            assert len(lines) == 1
            record = json.loads(lines[0])
            assert record["event_type"] == "denied"
            assert record["current_spend"] == "5.2"
            assert record["timestamp"] == NOW.isoformat()

    def test_keeps_bounded_history(self):
        collector = DecisionCollector(enable_logging=False, max_events=3)

        for i in range(5):
            collector.record(DecisionEvent(event_type="allowed", user_id=f"u{i}"))

        assert [e.user_id for e in collector.events] == ["u2", "u3", "u4"]
        assert collector.get_stats()["counters"]["checks_total"] == 5

    def test_reset(self):
        collector = DecisionCollector(enable_logging=False)
        collector.record(DecisionEvent(event_type="ledger_read_failed", user_id="u1"))

        collector.reset()

        assert collector.get_stats() == {
            "counters": {},
            "recorded_usd": Decimal(0),
            "total_events": 0,
        }
