"""
Decision events for the cost circuit breaker.

Collects the structured events the breaker emits so an external
observability system can pick them up.
"""

import json
import logging
from collections import defaultdict
from dataclasses import asdict
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from threading import Lock
from typing import Any, Optional

from costbreaker.models import DecisionEvent


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


class DecisionCollector:
    """
    Observer that aggregates breaker decision events.

    Pass an instance as ``observer`` to ``CostCircuitBreaker``. Keeps events
    in memory, maintains counters, and can append each event to a JSONL file.
    """

    def __init__(
        self,
        events_file: Optional[Path] = None,
        enable_logging: bool = True,
        max_events: int = 10_000,
    ):
        """
        Initialize the collector.

        Args:
            events_file: Optional file to append events to (JSONL format)
            enable_logging: Whether to log each event
            max_events: Number of events kept in memory
        """
        self.events_file = Path(events_file) if events_file else None
        self.enable_logging = enable_logging
        self.max_events = max_events
        self._lock = Lock()

        self.logger = logging.getLogger("costbreaker.metrics")
        if enable_logging and not self.logger.handlers:
            handler = logging.StreamHandler()
            handler.setFormatter(
                logging.Formatter(
                    "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
                )
            )
            self.logger.addHandler(handler)
            self.logger.setLevel(logging.INFO)

        self._events: list[DecisionEvent] = []
        self._counters: dict[str, int] = defaultdict(int)
        self._recorded_usd = Decimal(0)

    def __call__(self, event: DecisionEvent) -> None:
        self.record(event)

    def record(self, event: DecisionEvent) -> None:
        """Record one decision event."""
        with self._lock:
            self._events.append(event)
            if len(self._events) > self.max_events:
                del self._events[: len(self._events) - self.max_events]
            self._count(event)

        if self.events_file:
            line = json.dumps(asdict(event), default=_json_default)
            with self._lock, open(self.events_file, "a") as f:
                f.write(line + "\n")

        if self.enable_logging:
            level = logging.INFO
            if event.event_type in (
                "denied",
                "ledger_read_failed",
                "ledger_write_failed",
                "ledger_write_timeout",
            ):
                level = logging.WARNING
            self.logger.log(
                level,
                f"{event.event_type.upper()}: user_id={event.user_id}, "
                f"layer={event.layer}, spend={event.current_spend}, "
                f"ceiling={event.ceiling}, data={event.data}",
            )

    def _count(self, event: DecisionEvent) -> None:
        kind = event.event_type
        if kind in ("allowed", "denied"):
            self._counters["checks_total"] += 1
            self._counters[f"checks_{kind}"] += 1
            if kind == "denied":
                self._counters[f"denied_by_{event.layer}"] += 1
        elif kind == "threshold_warning":
            self._counters[f"warnings_{event.layer}"] += 1
        elif kind == "ledger_read_failed":
            self._counters["read_failures"] += 1
        elif kind == "ledger_write_failed":
            self._counters["write_failures"] += 1
        elif kind == "ledger_write_timeout":
            self._counters["write_timeouts"] += 1
        elif kind == "cost_recorded":
            self._counters["records_total"] += 1
            self._recorded_usd += Decimal(str(event.data.get("cost_usd", 0)))

    @property
    def events(self) -> list[DecisionEvent]:
        with self._lock:
            return list(self._events)

    def get_stats(self) -> dict:
        """
        Get aggregated statistics.

        Returns:
            Dictionary with counters and recorded spend
        """
        with self._lock:
            return {
                "counters": dict(self._counters),
                "recorded_usd": self._recorded_usd,
                "total_events": len(self._events),
            }

    def reset(self) -> None:
        """Reset all events and counters."""
        with self._lock:
            self._events.clear()
            self._counters.clear()
            self._recorded_usd = Decimal(0)
