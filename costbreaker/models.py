"""Shared data models."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from enum import Enum
from typing import Any, Optional


# Ledger values are stored as integer hundred-thousandths of a dollar.
MINOR_UNITS_PER_USD = 100_000
_MINOR_UNIT = Decimal(1) / MINOR_UNITS_PER_USD

PUBLIC_LIMIT_MESSAGE = (
    "This feature is temporarily unavailable because a usage limit was reached. "
    "Please try again later."
)


class InvalidCostError(ValueError):
    """Raised when a cost is negative, non-finite or not a number."""
    pass


class Scope(str, Enum):
    """Aggregation dimension of a layer."""
    GLOBAL = "global"
    PER_USER = "per_user"


class Window(str, Enum):
    """Calendar-aligned accumulation window."""
    HOURLY = "hourly"
    DAILY = "daily"


def to_decimal(value: Any) -> Decimal:
    """Convert a money value to a finite, non-negative Decimal.

    Floats go through ``str`` so 0.05 becomes Decimal("0.05") and not its
    binary expansion.

    Raises:
        InvalidCostError: If the value is not a finite non-negative number.
    """
    if isinstance(value, bool):
        raise InvalidCostError(f"cost must be a number, got {value!r}")
    try:
        if isinstance(value, Decimal):
            amount = value
        elif isinstance(value, (int, float, str)):
            amount = Decimal(str(value))
        else:
            raise InvalidCostError(f"cost must be a number, got {type(value).__name__}")
    except InvalidOperation as exc:
        raise InvalidCostError(f"cost must be a number, got {value!r}") from exc

    if not amount.is_finite():
        raise InvalidCostError(f"cost must be finite, got {value!r}")
    if amount < 0:
        raise InvalidCostError(f"cost must be non-negative, got {value!r}")
    return amount


def to_minor_units(amount: Decimal) -> int:
    """Round a Decimal amount half-up to integer minor units."""
    return int((amount * MINOR_UNITS_PER_USD).quantize(Decimal(1), rounding=ROUND_HALF_UP))


def from_minor_units(units: int) -> Decimal:
    """Convert stored minor units back to a Decimal amount in USD."""
    return (Decimal(int(units)) * _MINOR_UNIT).quantize(_MINOR_UNIT)


@dataclass(frozen=True)
class Layer:
    """A named budget rule: scope + window + ceiling."""
    name: str
    scope: Scope
    window: Window
    ceiling: Decimal

    @property
    def is_per_user(self) -> bool:
        return self.scope == Scope.PER_USER


@dataclass(frozen=True)
class Verdict:
    """Result of an admission check.

    ``violated_layer`` is the first configured layer whose spend reached its
    ceiling. ``layer_spend`` holds every reading that succeeded, keyed by
    layer name; layers whose read failed are listed in ``failed_layers`` and
    were treated as not violated.
    """
    allowed: bool
    violated_layer: Optional[Layer] = None
    current_spend: Optional[Decimal] = None
    layer_spend: dict[str, Decimal] = field(default_factory=dict)
    failed_layers: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()

    @property
    def limit(self) -> Optional[Decimal]:
        if self.violated_layer is None:
            return None
        return self.violated_layer.ceiling

    @property
    def reason(self) -> Optional[str]:
        """Internal description of the denial. Not for end users."""
        if self.violated_layer is None:
            return None
        return f"{self.violated_layer.name} cost limit exceeded"

    @property
    def public_message(self) -> Optional[str]:
        """Generic message safe to show to end users."""
        if self.allowed:
            return None
        return PUBLIC_LIMIT_MESSAGE

    @property
    def degraded(self) -> bool:
        """True if at least one layer failed open."""
        return bool(self.failed_layers)


class BudgetExceededError(Exception):
    """Raised by ``CostCircuitBreaker.enforce`` when a layer is violated."""
    def __init__(self, layer: Layer, current_spend: Decimal):
        self.layer = layer
        self.current_spend = current_spend
        self.limit = layer.ceiling
        self.public_message = PUBLIC_LIMIT_MESSAGE
        super().__init__(
            f"{layer.name} cost limit exceeded: "
            f"${current_spend:.4f} spent of ${layer.ceiling:.4f} limit"
        )


@dataclass
class LayerStatus:
    """Current spend for one layer, as shown in a snapshot."""
    layer: Layer
    key: Optional[str]
    current: Decimal
    percentage: Decimal


@dataclass
class UserSpend:
    user_id: str
    cost: Decimal


@dataclass
class SpendSnapshot:
    """Admin view of current spend across layers."""
    taken_at: datetime
    layers: list[LayerStatus]
    top_users: list[UserSpend]

    def to_dict(self) -> dict:
        return {
            "taken_at": self.taken_at.isoformat(),
            "layers": [
                {
                    "name": status.layer.name,
                    "scope": status.layer.scope.value,
                    "window": status.layer.window.value,
                    "key": status.key,
                    "current": str(status.current),
                    "limit": str(status.layer.ceiling),
                    "percentage": str(status.percentage),
                }
                for status in self.layers
            ],
            "top_users": [
                {"user_id": user.user_id, "cost": str(user.cost)}
                for user in self.top_users
            ],
        }


@dataclass
class DecisionEvent:
    """Structured event emitted by the breaker for observers."""
    event_type: str  # allowed, denied, threshold_warning, ledger_read_failed, ledger_write_failed, cost_recorded
    user_id: str
    layer: Optional[str] = None
    current_spend: Optional[Decimal] = None
    ceiling: Optional[Decimal] = None
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
