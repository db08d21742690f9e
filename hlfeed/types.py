"""
Shared types, enums, and venue data structures.

Everything here is immutable once constructed so instances can be handed to
several consumers without copying.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

# Milliseconds since epoch
Millis = int


class ConnectionState(str, Enum):
    """State machine for the connection manager."""

    IDLE = "idle"
    CONNECTING = "connecting"
    SUBSCRIBING = "subscribing"
    STREAMING = "streaming"
    CLOSING = "closing"
    FAILED = "failed"
    BACKOFF = "backoff"
    STOPPED = "stopped"


class SubscriptionKind(str, Enum):
    """Venue subscription types."""

    TRADES = "trades"
    L2_BOOK = "l2Book"
    BBO = "bbo"
    ALL_MIDS = "allMids"
    CANDLE = "candle"
    USER_EVENTS = "userEvents"
    USER_FILLS = "userFills"
    NOTIFICATION = "notification"

    @property
    def target_field(self) -> Optional[str]:
        """Wire key naming the subscription target, or None when there is none."""
        if self in (
            SubscriptionKind.USER_EVENTS,
            SubscriptionKind.USER_FILLS,
            SubscriptionKind.NOTIFICATION,
        ):
            return "user"
        if self == SubscriptionKind.ALL_MIDS:
            return None
        return "coin"


class MessageShape(str, Enum):
    """Structural shapes an inbound frame can take, in decoder priority order."""

    SUBSCRIPTION_RESPONSE = "subscriptionResponse"
    TRADES = "trades"
    BOOK = "l2Book"
    BBO = "bbo"
    ALL_MIDS = "allMids"
    CANDLES = "candle"
    USER_EVENT = "user"
    NOTIFICATION = "notification"
    BARE_TRADES = "bare_trades"
    BARE_CANDLES = "bare_candles"
    HEARTBEAT = "heartbeat"


class Side(str, Enum):
    BUY = "BUY"
    SELL = "SELL"

    @classmethod
    def parse(cls, raw: Any) -> Optional[Side]:
        """Resolve B/BUY and S/SELL (any case), plus the venue's A (ask) for sells."""
        if not isinstance(raw, str):
            return None
        value = raw.strip().upper()
        if value in ("B", "BUY"):
            return cls.BUY
        if value in ("S", "SELL", "A"):
            return cls.SELL
        return None


def _utc(ms: Millis) -> datetime:
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc)


# -------- Subscriptions --------


@dataclass(frozen=True, slots=True)
class SubscriptionRequest:
    """One subscription, as sent to and echoed back by the venue."""

    kind: SubscriptionKind
    target: str = "*"  # coin symbol or user address
    interval: Optional[str] = None  # candles only

    @property
    def key(self) -> tuple[str, str, Optional[str]]:
        """Identity used to match a confirmation against its request."""
        return (self.kind.value, self.target, self.interval)

    def describe(self) -> str:
        suffix = f"@{self.interval}" if self.interval else ""
        return f"{self.kind.value}:{self.target}{suffix}"

    def subscription_body(self) -> dict[str, Any]:
        body: dict[str, Any] = {"type": self.kind.value}
        target_field = self.kind.target_field
        if target_field:
            body[target_field] = self.target
        if self.interval:
            body["interval"] = self.interval
        return body

    def to_wire(self) -> dict[str, Any]:
        """Outbound message: {"method":"subscribe","subscription":{...}}."""
        return {"method": "subscribe", "subscription": self.subscription_body()}

    @classmethod
    def from_wire(cls, body: dict[str, Any]) -> SubscriptionRequest:
        """Rebuild a request from the ``subscription`` object of a confirmation."""
        kind = SubscriptionKind(body["type"])
        target_field = kind.target_field
        target = str(body.get(target_field, "*")) if target_field else "*"
        interval = body.get("interval")
        return cls(kind=kind, target=target, interval=str(interval) if interval else None)


# -------- Market data --------


@dataclass(frozen=True, slots=True)
class Trade:
    """A single public trade."""

    coin: str
    side: Side
    price: float
    size: float
    time: Millis
    tid: int  # unique trade id
    hash: str
    users: tuple[str, ...] = ()  # (buyer, seller) when present

    @property
    def is_buy(self) -> bool:
        return self.side == Side.BUY

    @property
    def is_sell(self) -> bool:
        return self.side == Side.SELL

    @property
    def value(self) -> float:
        """Notional value (price * size)."""
        return self.price * self.size

    @property
    def datetime_utc(self) -> datetime:
        return _utc(self.time)

    @property
    def buyer(self) -> Optional[str]:
        return self.users[0] if self.users else None

    @property
    def seller(self) -> Optional[str]:
        return self.users[1] if len(self.users) > 1 else None


@dataclass(frozen=True, slots=True)
class Level:
    """Single price level in a book."""

    price: float
    size: float
    orders: int


@dataclass(frozen=True, slots=True)
class Book:
    """L2 book update for a coin."""

    coin: str
    time: Millis
    bids: tuple[Level, ...]  # Best bid first
    asks: tuple[Level, ...]  # Best ask first

    @property
    def best_bid(self) -> Optional[float]:
        return self.bids[0].price if self.bids else None

    @property
    def best_ask(self) -> Optional[float]:
        return self.asks[0].price if self.asks else None

    @property
    def spread(self) -> Optional[float]:
        if self.bids and self.asks:
            return self.asks[0].price - self.bids[0].price
        return None


@dataclass(frozen=True, slots=True)
class Bbo:
    """Best bid / offer for a coin. Either side may be missing."""

    coin: str
    time: Millis
    bid: Optional[Level]
    ask: Optional[Level]

    @property
    def mid_price(self) -> Optional[float]:
        if self.bid and self.ask:
            return (self.bid.price + self.ask.price) / 2
        return None


@dataclass(frozen=True, slots=True)
class AllMids:
    """Mid prices for every listed coin."""

    mids: tuple[tuple[str, float], ...]

    def as_dict(self) -> dict[str, float]:
        return dict(self.mids)


@dataclass(frozen=True, slots=True)
class Candle:
    coin: str
    interval: str
    open_time: Millis
    close_time: Millis
    open: float
    high: float
    low: float
    close: float
    volume: float  # base units
    trades: int

    @property
    def open_time_utc(self) -> datetime:
        return _utc(self.open_time)

    @property
    def close_time_utc(self) -> datetime:
        return _utc(self.close_time)


# -------- User / account --------


@dataclass(frozen=True, slots=True)
class Fill:
    coin: str
    price: float
    size: float
    side: Side
    time: Millis
    oid: int
    tid: int
    hash: str
    direction: str
    closed_pnl: float
    fee: float
    fee_token: str
    crossed: bool
    start_position: float


@dataclass(frozen=True, slots=True)
class UserFunding:
    coin: str
    time: Millis
    usdc: float
    szi: float
    funding_rate: float


@dataclass(frozen=True, slots=True)
class Liquidation:
    lid: int
    liquidator: str
    liquidated_user: str
    liquidated_ntl_pos: float
    liquidated_account_value: float


@dataclass(frozen=True, slots=True)
class NonUserCancel:
    coin: str
    oid: int


class UserEventKind(str, Enum):
    FILLS = "fills"
    FUNDING = "funding"
    LIQUIDATION = "liquidation"
    NON_USER_CANCEL = "nonUserCancel"


@dataclass(frozen=True, slots=True)
class UserEvent:
    """Exactly one of the payload fields is populated, matching ``kind``."""

    kind: UserEventKind
    fills: tuple[Fill, ...] = ()
    funding: Optional[UserFunding] = None
    liquidation: Optional[Liquidation] = None
    cancels: tuple[NonUserCancel, ...] = ()


@dataclass(frozen=True, slots=True)
class Notification:
    message: str


# -------- Session --------


@dataclass(frozen=True, slots=True)
class ConnectionSession:
    """
    Identity of one connection attempt.

    A new instance is created for every attempt; snapshots handed to
    consumers are never mutated.
    """

    session_id: str
    created_at: datetime
    is_live: bool = False
    last_activity_at: Optional[datetime] = None

    @property
    def age_s(self) -> float:
        return (datetime.now(timezone.utc) - self.created_at).total_seconds()
