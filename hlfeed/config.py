"""
Feed configuration.

Purpose:
    - Typed, validated configuration for every component (pydantic models)
    - Load TOML config files
    - Layer sources: defaults < TOML file < CLI flags < ``--set`` overrides

Any validation failure surfaces as ConfigurationError naming the offending
field, before a connection is attempted.
"""

from __future__ import annotations

import tomllib
from enum import Enum
from pathlib import Path
from typing import Any, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from hlfeed.errors import ConfigurationError
from hlfeed.types import SubscriptionKind, SubscriptionRequest

DEFAULT_URL = "wss://api.hyperliquid.xyz/ws"
CANDLE_INTERVALS = (
    "1m", "3m", "5m", "15m", "30m",
    "1h", "2h", "4h", "8h", "12h",
    "1d", "3d", "1w", "1M",
)  # fmt: skip


class OutputFormat(str, Enum):
    TABLE = "table"
    CSV = "csv"
    JSON = "json"
    MINIMAL = "minimal"


class LogLevel(str, Enum):
    TRACE = "trace"
    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


class ConnectionConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    url: str = Field(default=DEFAULT_URL, description="Venue websocket endpoint (wss only)")
    connect_timeout_s: float = Field(default=30.0, gt=0, description="Connect/handshake bound")
    read_timeout_s: float = Field(default=60.0, gt=0, description="Idle-read bound")
    reconnect_base_delay_s: float = Field(default=5.0, gt=0, description="Backoff base delay")
    backoff_cap: int = Field(default=5, ge=0, le=16, description="Max backoff exponent")
    max_reconnects: int = Field(
        default=0, ge=0, description="Consecutive failures before giving up (0 = unlimited)"
    )
    ping_interval_s: float = Field(
        default=50.0, ge=0, description="Application keepalive ping interval (0 = off)"
    )

    @field_validator("url")
    @classmethod
    def _require_wss(cls, value: str) -> str:
        if not value.startswith("wss://") or len(value) <= len("wss://"):
            raise ValueError(f"endpoint must use the wss:// scheme, got {value!r}")
        return value


class SubscriptionConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    kind: SubscriptionKind = SubscriptionKind.TRADES
    coin: Optional[str] = Field(default=None, description="Coin symbol for market channels")
    interval: Optional[str] = Field(default=None, description="Candle interval")
    user: Optional[str] = Field(default=None, description="User address for account channels")

    @model_validator(mode="after")
    def _check_target(self) -> SubscriptionConfig:
        field = self.kind.target_field
        if field == "coin" and not self.coin:
            raise ValueError(f"{self.kind.value} subscription requires a coin")
        if field == "user" and not self.user:
            raise ValueError(f"{self.kind.value} subscription requires a user address")
        if self.kind == SubscriptionKind.CANDLE:
            if self.interval not in CANDLE_INTERVALS:
                raise ValueError(
                    f"candle subscription requires interval in {CANDLE_INTERVALS}, "
                    f"got {self.interval!r}"
                )
        elif self.interval is not None:
            raise ValueError("interval is only valid for candle subscriptions")
        return self

    def to_request(self) -> SubscriptionRequest:
        field = self.kind.target_field
        if field == "coin":
            target = str(self.coin).upper()
        elif field == "user":
            target = str(self.user).lower()
        else:
            target = "*"
        return SubscriptionRequest(kind=self.kind, target=target, interval=self.interval)


class BusConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    capacity: int = Field(default=1024, gt=0, description="Per-subscriber queue size")
    critical_wait_ms: float = Field(
        default=50.0, gt=0, description="Max wait for room before dropping a trade"
    )


class ValidationConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    max_clock_skew_ms: int = Field(default=300_000, gt=0)
    dedup_window: int = Field(default=100_000, gt=0, description="Trade ids remembered per session")


class MetricsConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    enabled: bool = False
    host: str = "0.0.0.0"
    port: int = Field(default=9090, ge=1, le=65535)


class HealthConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    check_interval_s: float = Field(default=30.0, gt=0)
    stale_after_s: float = Field(default=60.0, gt=0)


class OutputConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    format: OutputFormat = OutputFormat.TABLE
    color: bool = True
    quiet: bool = False
    verbose: bool = Field(default=False, description="Show buyer/seller addresses")
    price_only: bool = False
    max_trades: int = Field(default=0, ge=0, description="Stop after N trades (0 = unlimited)")
    emit_raw_messages: bool = False


class LoggingConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    level: LogLevel = LogLevel.INFO
    json_logs: bool = False


def _default_subscriptions() -> list[SubscriptionConfig]:
    return [SubscriptionConfig(kind=SubscriptionKind.TRADES, coin="BTC")]


class FeedConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    connection: ConnectionConfig = Field(default_factory=ConnectionConfig)
    subscriptions: list[SubscriptionConfig] = Field(
        default_factory=_default_subscriptions, min_length=1
    )
    bus: BusConfig = Field(default_factory=BusConfig)
    validation: ValidationConfig = Field(default_factory=ValidationConfig)
    metrics: MetricsConfig = Field(default_factory=MetricsConfig)
    health: HealthConfig = Field(default_factory=HealthConfig)
    output: OutputConfig = Field(default_factory=OutputConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @model_validator(mode="after")
    def _unique_subscriptions(self) -> FeedConfig:
        keys = [s.to_request().key for s in self.subscriptions]
        if len(keys) != len(set(keys)):
            raise ValueError("duplicate subscriptions")
        return self

    def subscription_requests(self) -> list[SubscriptionRequest]:
        return [s.to_request() for s in self.subscriptions]


# --- Loading ---


def insert_path(tree: dict[str, Any], dotted_path: str, value: Any) -> None:
    """Populate ``tree`` with ``value`` located at ``dotted_path``."""

    segments = [segment.strip() for segment in dotted_path.split(".") if segment.strip()]
    if not segments:
        raise ValueError("Override keys must contain at least one non-empty segment")

    cursor: dict[str, Any] = tree
    for segment in segments[:-1]:
        existing = cursor.get(segment)
        if existing is None:
            next_node: dict[str, Any] = {}
            cursor[segment] = next_node
            cursor = next_node
        elif isinstance(existing, dict):
            cursor = existing
        else:
            raise ValueError(
                f"Cannot override nested path '{dotted_path}': "
                f"segment '{segment}' is already a value"
            )

    leaf = segments[-1]
    if isinstance(cursor.get(leaf), dict):
        raise ValueError(f"Cannot assign value to '{dotted_path}': '{leaf}' is a section")
    cursor[leaf] = value


def parse_overrides(pairs: list[str]) -> dict[str, Any]:
    """Expand ``KEY=VALUE`` strings into a nested mapping."""
    overrides: dict[str, Any] = {}
    for item in pairs:
        key, sep, value = item.partition("=")
        if sep == "":
            raise ConfigurationError(
                f"--set requires KEY=VALUE format (got {item!r})", field="--set", value=item
            )
        try:
            insert_path(overrides, key, value)
        except ValueError as e:
            raise ConfigurationError(str(e), field=key, value=value) from e
    return overrides


def merge_layers(*layers: Mapping[str, Any]) -> dict[str, Any]:
    """Deep-merge mappings; later layers win. Lists are replaced, not merged."""
    merged: dict[str, Any] = {}
    for layer in layers:
        for key, value in layer.items():
            current = merged.get(key)
            if isinstance(current, dict) and isinstance(value, Mapping):
                merged[key] = merge_layers(current, value)
            elif isinstance(value, Mapping):
                merged[key] = merge_layers(value)
            else:
                merged[key] = value
    return merged


def load_toml(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise ConfigurationError(f"Config file not found: {path}", field="config", value=path)
    try:
        with path.open("rb") as f:
            return tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigurationError(f"Invalid TOML in {path}: {e}", field="config") from e


def build_config(
    *,
    file: Optional[Path] = None,
    cli: Optional[Mapping[str, Any]] = None,
    overrides: Optional[list[str]] = None,
) -> FeedConfig:
    """Resolve every layer into a validated FeedConfig."""
    layers: list[Mapping[str, Any]] = []
    if file is not None:
        layers.append(load_toml(file))
    if cli:
        layers.append(cli)
    if overrides:
        layers.append(parse_overrides(overrides))
    return validate_config(merge_layers(*layers))


def validate_config(data: Mapping[str, Any]) -> FeedConfig:
    try:
        return FeedConfig.model_validate(data)
    except ValidationError as e:
        first = e.errors()[0]
        field = ".".join(str(p) for p in first["loc"]) or "config"
        raise ConfigurationError(
            f"Invalid configuration at {field}: {first['msg']}",
            field=field,
            value=first.get("input"),
            details={"errors": e.error_count()},
        ) from e
