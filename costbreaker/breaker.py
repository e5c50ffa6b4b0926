"""
Cost circuit breaker.

Gates metered calls (LLM APIs and the like) behind spend ceilings that are
evaluated per layer: global or per-user, hourly or daily. All state lives in
a BudgetLedger; the breaker itself holds nothing mutable besides its
thread pool.

Reads and writes are advisory. Two concurrent callers can both pass
``check`` just under a ceiling and push spend past it together. Ledger
failures fail open on ``check`` and are swallowed on ``record``.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, wait
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Optional

from costbreaker.buckets import (
    budget_key,
    expiry_seconds,
    user_id_from_key,
    user_key_pattern,
)
from costbreaker.config import BreakerConfig, default_layers
from costbreaker.ledger import BudgetLedger, LedgerTimeoutError, LedgerUnavailableError
from costbreaker.models import (
    BudgetExceededError,
    DecisionEvent,
    Layer,
    LayerStatus,
    SpendSnapshot,
    UserSpend,
    Verdict,
    Window,
    to_decimal,
    to_minor_units,
)


logger = logging.getLogger(__name__)

DEFAULT_MAX_WORKERS = 32

Observer = Callable[[DecisionEvent], None]


def _require_user(user_id: str) -> None:
    if not isinstance(user_id, str) or not user_id:
        raise ValueError("user_id must be a non-empty string")


class _LedgerCall:
    """One ledger call on the breaker's pool.

    The timeout runs from the moment the call starts, so time spent queued
    behind other callers is not charged to the store. Queueing has its own
    bound, measured from submission.
    """

    def __init__(self, executor: ThreadPoolExecutor, queue_timeout: float, fn: Callable, *args):
        self._started = threading.Event()
        self._started_at = 0.0
        self._queue_deadline = time.monotonic() + queue_timeout
        self.future = executor.submit(self._run, fn, args)

    def _run(self, fn: Callable, args: tuple) -> Any:
        self._started_at = time.monotonic()
        self._started.set()
        return fn(*args)

    def result(self, timeout: float) -> Any:
        queued_for = max(self._queue_deadline - time.monotonic(), 0)
        if not self._started.wait(queued_for) and self.future.cancel():
            raise LedgerTimeoutError("queued too long", in_flight=False)
        self._started.wait()

        remaining = self._started_at + timeout - time.monotonic()
        done, _ = wait([self.future], timeout=max(remaining, 0))
        if not done:
            raise LedgerTimeoutError("timed out", in_flight=True)
        return self.future.result()


class CostCircuitBreaker:
    """
    Multi-layer spend admission controller.

    Example:
        ```python
        breaker = CostCircuitBreaker(RedisLedger(url="redis://localhost:6379/0"), load_config())

        verdict = breaker.check(user.id)
        if not verdict.allowed:
            return error_response(verdict.public_message)

        result = call_llm(...)
        breaker.record(user.id, result.cost_usd)
        ```
    """

    def __init__(
        self,
        ledger: BudgetLedger,
        config: Optional[BreakerConfig] = None,
        observer: Optional[Observer] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Args:
            ledger: Backing store for accumulated spend.
            config: Layers and tuning. Defaults to the reference layers.
            observer: Optional callable receiving every DecisionEvent.
            clock: Returns the current timezone-aware time. Tests pin it.
        """
        self.ledger = ledger
        self.config = config or BreakerConfig(layers=default_layers())
        self._observer = observer
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        # Worker threads are started lazily, so a large ceiling costs nothing idle.
        workers = self.config.max_workers or max(DEFAULT_MAX_WORKERS, 4 * len(self.config.layers))
        self._executor = ThreadPoolExecutor(
            max_workers=workers,
            thread_name_prefix="costbreaker",
        )

    @property
    def layers(self) -> tuple[Layer, ...]:
        return self.config.layers

    # =========================================================================
    # Admission
    # =========================================================================

    def check(self, user_id: str) -> Verdict:
        """
        Decide whether ``user_id`` may perform a metered operation now.

        All layer reads are issued concurrently. A layer whose read fails,
        times out, or cannot get a worker in time counts as not violated.

        Returns:
            Verdict naming the first configured layer whose spend is at or
            above its ceiling, or an allowed verdict.
        """
        _require_user(user_id)
        now = self._clock()
        keyed = [(layer, self._key(layer, now, user_id)) for layer in self.layers]

        calls: dict[str, _LedgerCall] = {}
        for _, key in keyed:
            if key not in calls:
                calls[key] = self._submit(self.ledger.read, key)

        outcomes: dict[str, Any] = {}
        for key, call in calls.items():
            try:
                outcomes[key] = call.result(self.config.timeout_seconds)
            except Exception as exc:
                outcomes[key] = exc

        readings: dict[str, Decimal] = {}
        failed: list[str] = []
        for layer, key in keyed:
            outcome = outcomes[key]
            if isinstance(outcome, Exception):
                failed.append(layer.name)
                self._read_failed(user_id, layer, key, outcome)
            else:
                readings[layer.name] = outcome

        violated: Optional[Layer] = None
        warnings: list[str] = []
        for layer in self.layers:
            spend = readings.get(layer.name)
            if spend is None:
                continue
            if spend >= layer.ceiling:
                if violated is None:
                    violated = layer
            elif spend >= layer.ceiling * self.config.warning_ratio:
                warnings.append(layer.name)
                self._emit(DecisionEvent(
                    event_type="threshold_warning",
                    user_id=user_id,
                    layer=layer.name,
                    current_spend=spend,
                    ceiling=layer.ceiling,
                    data={"ratio": str(self.config.warning_ratio)},
                ))

        if violated is not None:
            spend = readings[violated.name]
            logger.warning(
                f"{violated.name} cost limit exceeded: user_id={user_id}, "
                f"spend={spend}, limit={violated.ceiling}"
            )
            self._emit(DecisionEvent(
                event_type="denied",
                user_id=user_id,
                layer=violated.name,
                current_spend=spend,
                ceiling=violated.ceiling,
            ))
            return Verdict(
                allowed=False,
                violated_layer=violated,
                current_spend=spend,
                layer_spend=readings,
                failed_layers=tuple(failed),
                warnings=tuple(warnings),
            )

        self._emit(DecisionEvent(
            event_type="allowed",
            user_id=user_id,
            data={"failed_layers": list(failed)} if failed else {},
        ))
        return Verdict(
            allowed=True,
            layer_spend=readings,
            failed_layers=tuple(failed),
            warnings=tuple(warnings),
        )

    def enforce(self, user_id: str) -> Verdict:
        """
        Like ``check``, but raise instead of returning a denied verdict.

        Raises:
            BudgetExceededError: If any layer is violated.
        """
        verdict = self.check(user_id)
        if not verdict.allowed:
            raise BudgetExceededError(verdict.violated_layer, verdict.current_spend)
        return verdict

    # =========================================================================
    # Recording
    # =========================================================================

    def record(self, user_id: str, cost_usd: Any) -> None:
        """
        Add the measured cost of a completed operation to every layer.

        Call this after the metered operation, with its actual cost. Each
        distinct key is incremented once and its expiry re-asserted. Ledger
        failures are logged and swallowed.

        Raises:
            InvalidCostError: If ``cost_usd`` is negative, non-finite or not a
                number. Nothing is written in that case.
        """
        amount = to_decimal(cost_usd)
        _require_user(user_id)

        if to_minor_units(amount) == 0:
            logger.debug(f"Skipping zero cost record for user_id={user_id}")
            return

        now = self._clock()
        writes: dict[str, tuple[int, list[str]]] = {}
        for layer in self.layers:
            key = self._key(layer, now, user_id)
            if key in writes:
                writes[key][1].append(layer.name)
            else:
                ttl = expiry_seconds(layer.window, now, self.config.grace_seconds)
                writes[key] = (ttl, [layer.name])

        calls = {
            key: self._submit(self._write, key, amount, ttl)
            for key, (ttl, _) in writes.items()
        }

        totals: dict[str, str] = {}
        for key, call in calls.items():
            names = writes[key][1]
            try:
                totals[key] = str(call.result(self.config.timeout_seconds))
            except LedgerTimeoutError as exc:
                if exc.in_flight:
                    self._write_timed_out(user_id, names, key, amount)
                else:
                    self._write_failed(user_id, names, key, amount, exc)
            except Exception as exc:
                self._write_failed(user_id, names, key, amount, exc)

        logger.info(f"Cost tracked: user_id={user_id}, cost_usd={amount}, keys={sorted(totals)}")
        self._emit(DecisionEvent(
            event_type="cost_recorded",
            user_id=user_id,
            current_spend=amount,
            data={"cost_usd": str(amount), "totals": totals},
        ))

    def _write(self, key: str, amount: Decimal, ttl_seconds: int) -> Decimal:
        total = self.ledger.increment(key, amount)
        self.ledger.set_expiry(key, ttl_seconds)
        return total

    # =========================================================================
    # Reporting
    # =========================================================================

    def snapshot(self, top_n: int = 10) -> SpendSnapshot:
        """
        Current spend per global layer and the top per-user spenders.

        Users are ranked on the first per-user daily layer (or the first
        per-user layer when none is daily). Ledger errors propagate.
        """
        now = self._clock()
        global_layers = [layer for layer in self.layers if not layer.is_per_user]
        keys = [self._key(layer, now) for layer in global_layers]
        values = list(self._executor.map(self.ledger.read, keys))

        statuses = [
            LayerStatus(
                layer=layer,
                key=key,
                current=value,
                percentage=_percentage(value, layer.ceiling),
            )
            for layer, key, value in zip(global_layers, keys, values)
        ]

        top_users: list[UserSpend] = []
        user_layer = self._ranking_layer()
        if user_layer is not None:
            prefix = self.config.key_prefix
            pattern = user_key_pattern(user_layer.window, now, prefix)
            for key, cost in self.ledger.scan(pattern).items():
                user_id = user_id_from_key(key, user_layer.window, now, prefix)
                if user_id is not None:
                    top_users.append(UserSpend(user_id=user_id, cost=cost))
            top_users.sort(key=lambda u: (-u.cost, u.user_id))
            top_users = top_users[:top_n]

        return SpendSnapshot(taken_at=now, layers=statuses, top_users=top_users)

    def _ranking_layer(self) -> Optional[Layer]:
        per_user = [layer for layer in self.layers if layer.is_per_user]
        for layer in per_user:
            if layer.window == Window.DAILY:
                return layer
        return per_user[0] if per_user else None

    # =========================================================================
    # Helpers
    # =========================================================================

    def _submit(self, fn: Callable, *args) -> _LedgerCall:
        return _LedgerCall(self._executor, self.config.queue_timeout_seconds, fn, *args)

    def _key(self, layer: Layer, now: datetime, user_id: Optional[str] = None) -> str:
        return budget_key(layer, now, user_id if layer.is_per_user else None, self.config.key_prefix)

    def _read_failed(self, user_id: str, layer: Layer, key: str, error: Any) -> None:
        logger.warning(
            f"Budget read failed for layer {layer.name} ({key}), failing open: {error}",
            exc_info=isinstance(error, Exception) and not isinstance(error, LedgerUnavailableError),
        )
        self._emit(DecisionEvent(
            event_type="ledger_read_failed",
            user_id=user_id,
            layer=layer.name,
            ceiling=layer.ceiling,
            data={"key": key, "error": str(error)},
        ))

    def _write_failed(
        self,
        user_id: str,
        layer_names: list[str],
        key: str,
        amount: Decimal,
        error: Any,
    ) -> None:
        logger.warning(
            f"Cost tracking failed for {key}, continuing: user_id={user_id}, "
            f"cost_usd={amount}, error={error}",
            exc_info=isinstance(error, Exception) and not isinstance(error, LedgerUnavailableError),
        )
        for name in layer_names:
            self._emit(DecisionEvent(
                event_type="ledger_write_failed",
                user_id=user_id,
                layer=name,
                current_spend=amount,
                data={"key": key, "error": str(error)},
            ))

    def _write_timed_out(
        self,
        user_id: str,
        layer_names: list[str],
        key: str,
        amount: Decimal,
    ) -> None:
        logger.warning(
            f"Cost tracking timed out for {key}, write still in flight and may "
            f"land late: user_id={user_id}, cost_usd={amount}"
        )
        for name in layer_names:
            self._emit(DecisionEvent(
                event_type="ledger_write_timeout",
                user_id=user_id,
                layer=name,
                current_spend=amount,
                data={"key": key},
            ))

    def _emit(self, event: DecisionEvent) -> None:
        if self._observer is None:
            return
        try:
            self._observer(event)
        except Exception:
            logger.exception(f"Decision observer failed on {event.event_type} event")

    def close(self) -> None:
        """Wait for in-flight ledger calls and stop the thread pool."""
        self._executor.shutdown(wait=True)

    def __enter__(self) -> "CostCircuitBreaker":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()


def _percentage(current: Decimal, ceiling: Decimal) -> Decimal:
    if ceiling == 0:
        return Decimal(100) if current > 0 else Decimal(0)
    return (current / ceiling * 100).quantize(Decimal("0.01"))
