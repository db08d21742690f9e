"""
Typed events published on the event bus.

Closed set of variants in three classes:
- lifecycle: Starting, Connecting, Connected, SubscriptionSent,
  SubscriptionConfirmed, Disconnected, Reconnecting, Stopping
- data: TradeReceived, BookUpdated, BboUpdated, AllMidsUpdated,
  CandleReceived, UserEventReceived, NotificationReceived
- diagnostic: RawMessage, HealthCheckFailed

Only trades are critical: the bus waits briefly for room before dropping them.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import ClassVar

from hlfeed.types import (
    AllMids,
    Bbo,
    Book,
    Candle,
    Notification,
    SubscriptionRequest,
    Trade,
    UserEvent,
)


class EventClass(str, Enum):
    LIFECYCLE = "lifecycle"
    DATA = "data"
    DIAGNOSTIC = "diagnostic"


@dataclass(frozen=True, slots=True)
class FeedEvent:
    """Base for every bus event."""

    event_class: ClassVar[EventClass] = EventClass.DIAGNOSTIC
    critical: ClassVar[bool] = False

    @property
    def name(self) -> str:
        return type(self).__name__


# --- Lifecycle ---


@dataclass(frozen=True, slots=True)
class Starting(FeedEvent):
    event_class: ClassVar[EventClass] = EventClass.LIFECYCLE


@dataclass(frozen=True, slots=True)
class Connecting(FeedEvent):
    event_class: ClassVar[EventClass] = EventClass.LIFECYCLE

    url: str
    session_id: str


@dataclass(frozen=True, slots=True)
class Connected(FeedEvent):
    event_class: ClassVar[EventClass] = EventClass.LIFECYCLE

    session_id: str


@dataclass(frozen=True, slots=True)
class SubscriptionSent(FeedEvent):
    event_class: ClassVar[EventClass] = EventClass.LIFECYCLE

    request: SubscriptionRequest
    message: str  # exact text written to the socket


@dataclass(frozen=True, slots=True)
class SubscriptionConfirmed(FeedEvent):
    event_class: ClassVar[EventClass] = EventClass.LIFECYCLE

    request: SubscriptionRequest

    @property
    def kind(self) -> str:
        return self.request.kind.value

    @property
    def target(self) -> str:
        return self.request.target


@dataclass(frozen=True, slots=True)
class Disconnected(FeedEvent):
    event_class: ClassVar[EventClass] = EventClass.LIFECYCLE

    reason: str
    session_id: str = ""


@dataclass(frozen=True, slots=True)
class Reconnecting(FeedEvent):
    event_class: ClassVar[EventClass] = EventClass.LIFECYCLE

    attempt: int
    delay_s: float


@dataclass(frozen=True, slots=True)
class Stopping(FeedEvent):
    event_class: ClassVar[EventClass] = EventClass.LIFECYCLE

    reason: str = "shutdown"


# --- Data ---


@dataclass(frozen=True, slots=True)
class TradeReceived(FeedEvent):
    event_class: ClassVar[EventClass] = EventClass.DATA
    critical: ClassVar[bool] = True

    trade: Trade


@dataclass(frozen=True, slots=True)
class BookUpdated(FeedEvent):
    event_class: ClassVar[EventClass] = EventClass.DATA

    book: Book


@dataclass(frozen=True, slots=True)
class BboUpdated(FeedEvent):
    event_class: ClassVar[EventClass] = EventClass.DATA

    bbo: Bbo


@dataclass(frozen=True, slots=True)
class AllMidsUpdated(FeedEvent):
    event_class: ClassVar[EventClass] = EventClass.DATA

    mids: AllMids


@dataclass(frozen=True, slots=True)
class CandleReceived(FeedEvent):
    event_class: ClassVar[EventClass] = EventClass.DATA

    candle: Candle


@dataclass(frozen=True, slots=True)
class UserEventReceived(FeedEvent):
    event_class: ClassVar[EventClass] = EventClass.DATA

    event: UserEvent


@dataclass(frozen=True, slots=True)
class NotificationReceived(FeedEvent):
    event_class: ClassVar[EventClass] = EventClass.DATA

    notification: Notification


# --- Diagnostic ---


@dataclass(frozen=True, slots=True)
class RawMessage(FeedEvent):
    raw: str


@dataclass(frozen=True, slots=True)
class HealthCheckFailed(FeedEvent):
    reason: str
