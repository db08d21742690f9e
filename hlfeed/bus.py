from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from hlfeed.events import FeedEvent
from hlfeed.state import SharedState

logger = logging.getLogger(__name__)


class _BusState(str, Enum):
    """
    Internal enum for lifecycle: Running -> Closed
    """

    RUNNING = "RUNNING"
    CLOSED = "CLOSED"  # publishes are refused, subscribers got their sentinel


@dataclass(frozen=True)
class SubscriberStats:
    name: str
    capacity: int
    depth: int
    drops: int
    delivered: int
    closed: bool


@dataclass(frozen=True)
class BusStats:
    state: str
    capacity: int
    critical_wait_ms: float
    published: int
    total_drops: int
    per_subscriber: list[SubscriberStats]


# --- Subscription object ---


class Subscription:
    """
    Consumer handle on the bus.

    Each subscriber owns one bounded asyncio.Queue, so a slow consumer only
    loses its own events. A None sentinel marks the end of the stream.
    """

    def __init__(self, bus: EventBus, name: str, capacity: int) -> None:
        self.bus = bus
        self.name = name
        self.queue: asyncio.Queue[Optional[FeedEvent]] = asyncio.Queue(maxsize=capacity)

        self._closed: bool = False
        self._close_reason: Optional[str] = None

        self._drops: int = 0
        self._delivered: int = 0

    # --- Consumption API ---

    def __aiter__(self) -> Subscription:
        return self

    async def __anext__(self) -> FeedEvent:
        item = await self.get()
        if item is None:
            # Shutdown sentinel, end the loop
            raise StopAsyncIteration
        return item

    async def get(self) -> Optional[FeedEvent]:
        """Await one event; returns None once the sentinel is received."""
        item = await self.queue.get()
        self.queue.task_done()
        if item is None:
            return None
        self._delivered += 1
        return item

    # --- Introspection ---

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def close_reason(self) -> Optional[str]:
        return self._close_reason

    @property
    def drops(self) -> int:
        return self._drops

    @property
    def delivered(self) -> int:
        return self._delivered

    def depth(self) -> int:
        return self.queue.qsize()

    def stats(self) -> SubscriberStats:
        return SubscriberStats(
            name=self.name,
            capacity=self.queue.maxsize,
            depth=self.queue.qsize(),
            drops=self._drops,
            delivered=self._delivered,
            closed=self._closed,
        )

    def mark_closed(self, reason: str) -> None:
        """
        Signal shutdown to the consumer with a sentinel None (idempotent).
        Evicts the oldest queued event when the queue is full.
        """
        if self._closed:
            return
        self._closed = True
        self._close_reason = reason
        try:
            self.queue.put_nowait(None)
        except asyncio.QueueFull:
            try:
                self.queue.get_nowait()
                self.queue.task_done()
                self._drops += 1
                self.bus._record_drop(self, "sentinel_evict")
            except asyncio.QueueEmpty:
                pass
            self.queue.put_nowait(None)

    # --- Hooks used by the bus publisher ---

    def _offer(self, event: FeedEvent) -> bool:
        """Non-blocking enqueue. False when dropped."""
        if self._closed:
            return False
        try:
            self.queue.put_nowait(event)
            return True
        except asyncio.QueueFull:
            self._drops += 1
            self.bus._record_drop(self, "drop_newest")
            return False

    async def _offer_within(self, event: FeedEvent, timeout: float) -> bool:
        """
        Enqueue, waiting up to ``timeout`` seconds for room.

        Semantics:
            - room available: enqueue immediately
            - full: await room until the deadline, else drop
        """
        if self._closed:
            return False
        if not self.queue.full():
            self.queue.put_nowait(event)
            return True

        enqueued = False

        async def _put() -> None:
            nonlocal enqueued
            await self.queue.put(event)
            enqueued = True

        try:
            await asyncio.wait_for(_put(), timeout=max(0.0, timeout))
            return True
        except asyncio.TimeoutError:
            # wait_for can time out after the put already landed
            if enqueued:
                return True
            self._drops += 1
            self.bus._record_drop(self, "timeout_drop_newest")
            return False


# --- Bus object ---


class EventBus:
    """
    Bounded, ordered fan-out of feed events.

    - Producer: the connection manager (one task) calls ``publish``.
    - Consumers: each calls ``subscribe`` once and iterates its Subscription.

    Policy per event:
    - critical events (trades) wait up to ``critical_wait_ms`` for room, the
      deadline shared across all subscribers of one publish
    - everything else is dropped immediately when a subscriber is full

    Every drop increments ``SharedState.events_dropped`` once per subscriber
    that lost the event. A dropped event is never retried, so per-subscriber
    order matches publish order.
    """

    def __init__(
        self,
        state: SharedState,
        *,
        capacity: int = 1024,
        critical_wait_ms: float = 50.0,
        name: str = "bus",
    ) -> None:
        if capacity <= 0:
            raise ValueError(f"capacity must be positive, got {capacity}")
        if critical_wait_ms <= 0:
            raise ValueError(f"critical_wait_ms must be positive, got {critical_wait_ms}")
        self._state_ref = state
        self.capacity = capacity
        self.critical_wait_ms = critical_wait_ms
        self.name = name

        self._state = _BusState.RUNNING
        self._subscriptions: list[Subscription] = []
        self._published: int = 0
        self._total_drops: int = 0

    @property
    def closed(self) -> bool:
        return self._state == _BusState.CLOSED

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def subscribe(self, name: str, capacity: Optional[int] = None) -> Subscription:
        """Attach a consumer. Capacity defaults to the bus capacity."""
        if self._state != _BusState.RUNNING:
            raise RuntimeError("Cannot subscribe: bus is closed")
        if any(s.name == name for s in self._subscriptions):
            raise ValueError(f"Subscriber {name!r} already attached")
        sub = Subscription(self, name, capacity or self.capacity)
        self._subscriptions.append(sub)
        logger.debug(f"[{self.name}] Subscriber attached: {name} (capacity={sub.queue.maxsize})")
        return sub

    def unsubscribe(self, subscription: Subscription, reason: str = "unsubscribe") -> None:
        """Detach a subscription; it receives a sentinel. Safe to call twice."""
        subscription.mark_closed(reason)
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)
            logger.debug(f"[{self.name}] Subscriber detached: {subscription.name} ({reason})")

    async def publish(self, event: FeedEvent) -> bool:
        """
        Fan out one event. Returns True when every subscriber received it.

        Never blocks longer than ``critical_wait_ms`` in total.
        """
        if self._state != _BusState.RUNNING:
            return False
        self._published += 1

        if not event.critical:
            delivered = True
            for sub in self._subscriptions:
                delivered = sub._offer(event) and delivered
            return delivered

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.critical_wait_ms / 1000.0
        delivered = True
        for sub in list(self._subscriptions):
            ok = await sub._offer_within(event, deadline - loop.time())
            delivered = ok and delivered
        return delivered

    def close(self, reason: str = "shutdown") -> None:
        """Refuse further publishes and send every subscriber its sentinel."""
        if self._state == _BusState.CLOSED:
            return
        self._state = _BusState.CLOSED
        for sub in self._subscriptions:
            sub.mark_closed(reason)
        logger.debug(f"[{self.name}] Closed ({reason}), published={self._published}")

    def stats(self) -> BusStats:
        return BusStats(
            state=self._state.value,
            capacity=self.capacity,
            critical_wait_ms=self.critical_wait_ms,
            published=self._published,
            total_drops=self._total_drops,
            per_subscriber=[s.stats() for s in self._subscriptions],
        )

    def _record_drop(self, sub: Subscription, why: str) -> None:
        self._total_drops += 1
        self._state_ref.record_drop()
        if self._total_drops == 1 or self._total_drops % 1000 == 0:
            logger.warning(
                f"[{self.name}] Dropped event for {sub.name} ({why}), "
                f"total_drops={self._total_drops}"
            )
