"""Configuration for the cost circuit breaker."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional, Tuple

from pydantic import BaseModel, Field, ValidationError

from costbreaker.models import Layer, Scope, Window


DEFAULT_DAILY_LIMIT = Decimal("50")
DEFAULT_HOURLY_LIMIT = Decimal("5")
DEFAULT_USER_DAILY_LIMIT = Decimal("1")


class ConfigError(ValueError):
    """Raised when breaker configuration is invalid."""
    pass


@dataclass(frozen=True)
class BreakerConfig:
    """Immutable breaker configuration.

    Layer order is evaluation order: the first violated layer wins.
    """
    layers: Tuple[Layer, ...]
    grace_seconds: int = 300
    warning_ratio: Decimal = Decimal("0.8")
    timeout_seconds: float = 0.5
    queue_timeout_seconds: float = 5.0
    key_prefix: str = ""
    max_workers: Optional[int] = None

    def __post_init__(self):
        if not isinstance(self.layers, tuple):
            object.__setattr__(self, "layers", tuple(self.layers))
        if not isinstance(self.warning_ratio, Decimal):
            object.__setattr__(self, "warning_ratio", Decimal(str(self.warning_ratio)))
        if not self.layers:
            raise ConfigError("at least one layer is required")

        seen = set()
        for layer in self.layers:
            if layer.name in seen:
                raise ConfigError(f"duplicate layer name '{layer.name}'")
            seen.add(layer.name)
            if not isinstance(layer.ceiling, Decimal) or not layer.ceiling.is_finite():
                raise ConfigError(f"layer '{layer.name}' ceiling must be a finite Decimal")
            if layer.ceiling < 0:
                raise ConfigError(f"layer '{layer.name}' ceiling must be non-negative")

        if self.grace_seconds < 0:
            raise ConfigError("grace_seconds must be non-negative")
        if not (0 < self.warning_ratio <= 1):
            raise ConfigError("warning_ratio must be in (0, 1]")
        if self.timeout_seconds <= 0:
            raise ConfigError("timeout_seconds must be positive")
        if self.queue_timeout_seconds <= 0:
            raise ConfigError("queue_timeout_seconds must be positive")
        if self.max_workers is not None and self.max_workers < 1:
            raise ConfigError("max_workers must be at least 1")

    def layer(self, name: str) -> Layer:
        for layer in self.layers:
            if layer.name == name:
                return layer
        raise KeyError(name)


def default_layers(
    daily: Decimal = DEFAULT_DAILY_LIMIT,
    hourly: Decimal = DEFAULT_HOURLY_LIMIT,
    user_daily: Decimal = DEFAULT_USER_DAILY_LIMIT,
) -> Tuple[Layer, ...]:
    """Reference layers: global-daily, global-hourly, user-daily."""
    return (
        Layer("global-daily", Scope.GLOBAL, Window.DAILY, Decimal(daily)),
        Layer("global-hourly", Scope.GLOBAL, Window.HOURLY, Decimal(hourly)),
        Layer("user-daily", Scope.PER_USER, Window.DAILY, Decimal(user_daily)),
    )


class LayerSpec(BaseModel):
    name: str = Field(..., min_length=1)
    scope: Scope
    window: Window
    ceiling: Decimal = Field(..., ge=0)

    def to_layer(self) -> Layer:
        return Layer(self.name, self.scope, self.window, self.ceiling)


class EnvSettings(BaseModel):
    """Environment values, validated before a config is built."""
    daily: Decimal = Field(DEFAULT_DAILY_LIMIT, ge=0)
    hourly: Decimal = Field(DEFAULT_HOURLY_LIMIT, ge=0)
    user_daily: Decimal = Field(DEFAULT_USER_DAILY_LIMIT, ge=0)
    user_hourly: Optional[Decimal] = Field(None, ge=0)
    layers: Optional[List[LayerSpec]] = None
    warning_ratio: Decimal = Field(Decimal("0.8"), gt=0, le=1)
    grace_seconds: int = Field(300, ge=0)
    timeout_seconds: float = Field(0.5, gt=0)
    queue_timeout_seconds: float = Field(5.0, gt=0)
    key_prefix: str = ""


_ENV_FIELDS = {
    "COST_LIMIT_DAILY": "daily",
    "COST_LIMIT_HOURLY": "hourly",
    "COST_LIMIT_USER_DAILY": "user_daily",
    "COST_LIMIT_USER_HOURLY": "user_hourly",
    "COSTBREAKER_WARNING_RATIO": "warning_ratio",
    "COSTBREAKER_GRACE_SECONDS": "grace_seconds",
    "COSTBREAKER_TIMEOUT_SECONDS": "timeout_seconds",
    "COSTBREAKER_QUEUE_TIMEOUT_SECONDS": "queue_timeout_seconds",
    "COSTBREAKER_KEY_PREFIX": "key_prefix",
}


def _parse_layers_json(value: str) -> List[Dict[str, Any]]:
    try:
        parsed = json.loads(value)
    except json.JSONDecodeError as exc:
        raise ConfigError(f"COSTBREAKER_LAYERS_JSON is not valid JSON: {exc}") from exc
    if not isinstance(parsed, list):
        raise ConfigError("COSTBREAKER_LAYERS_JSON must be a JSON list")
    return parsed


def load_config(env: Optional[Mapping[str, str]] = None) -> BreakerConfig:
    """Build a BreakerConfig from environment-style values.

    Args:
        env: Mapping to read from. Defaults to ``os.environ``.

    Returns:
        Immutable configuration. ``COSTBREAKER_LAYERS_JSON`` replaces the
        ``COST_LIMIT_*`` layers entirely when set.

    Raises:
        ConfigError: If any value fails validation.
    """
    env = os.environ if env is None else env

    raw: Dict[str, Any] = {}
    for var, field_name in _ENV_FIELDS.items():
        value = env.get(var)
        if value is not None and value != "":
            raw[field_name] = value
    layers_json = env.get("COSTBREAKER_LAYERS_JSON")
    if layers_json:
        raw["layers"] = _parse_layers_json(layers_json)

    try:
        settings = EnvSettings(**raw)
    except ValidationError as exc:
        raise ConfigError(f"invalid cost breaker settings: {exc}") from exc

    if settings.layers is not None:
        layers = tuple(item.to_layer() for item in settings.layers)
    else:
        layers = default_layers(settings.daily, settings.hourly, settings.user_daily)
        if settings.user_hourly is not None:
            layers += (Layer("user-hourly", Scope.PER_USER, Window.HOURLY, settings.user_hourly),)

    return BreakerConfig(
        layers=layers,
        grace_seconds=settings.grace_seconds,
        warning_ratio=settings.warning_ratio,
        timeout_seconds=settings.timeout_seconds,
        queue_timeout_seconds=settings.queue_timeout_seconds,
        key_prefix=settings.key_prefix,
    )
