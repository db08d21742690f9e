"""
WebSocket connection manager for the venue feed.

Drives one state machine per process:

    Idle -> Connecting -> Subscribing -> Streaming -> Failed -> Backoff -> Connecting ...
                                              \\-> Closing -> Stopped   (cancellation)
    Failed -> Stopped                                       (reconnect budget exhausted)

Each connection attempt gets a fresh ConnectionSession and a reset trade
validator; only the cumulative counters in SharedState survive a reconnect.

Every suspension point is bounded:
- connect: ``connect_timeout_s``
- subscription confirmations: ``connect_timeout_s`` after the last request
- frame read: ``read_timeout_s`` of silence
- backoff sleep: the computed delay
and all of them are cancellation-aware.
"""

from __future__ import annotations

import asyncio
import logging
import random
from typing import Any, Optional, Protocol, Sequence

import aiohttp
import orjson

from hlfeed.bus import EventBus
from hlfeed.config import ConnectionConfig
from hlfeed.decoder import decode_frame
from hlfeed.errors import (
    FeedError,
    ProtocolError,
    ReconnectBudgetExhausted,
    SubscriptionMismatchError,
    TransportError,
)
from hlfeed.events import (
    Connected,
    Connecting,
    Disconnected,
    FeedEvent,
    RawMessage,
    Reconnecting,
    Starting,
    Stopping,
    SubscriptionConfirmed,
    SubscriptionSent,
    TradeReceived,
)
from hlfeed.state import SharedState
from hlfeed.types import ConnectionSession, ConnectionState, SubscriptionRequest
from hlfeed.validator import TradeValidator

logger = logging.getLogger(__name__)

PING_MESSAGE = '{"method":"ping"}'
_CLOSE_TIMEOUT_S = 2.0

_CLOSED_TYPES = (
    aiohttp.WSMsgType.CLOSE,
    aiohttp.WSMsgType.CLOSING,
    aiohttp.WSMsgType.CLOSED,
)


class WebSocketLike(Protocol):
    """The subset of ``aiohttp.ClientWebSocketResponse`` the manager uses."""

    @property
    def closed(self) -> bool: ...

    @property
    def close_code(self) -> Optional[int]: ...

    async def send_str(self, data: str) -> None: ...

    async def receive(self) -> aiohttp.WSMessage: ...

    async def pong(self, message: bytes = b"") -> None: ...

    async def close(self) -> Any: ...

    def exception(self) -> Optional[BaseException]: ...


class Connector(Protocol):
    """Opens websocket connections; owns whatever client session that needs."""

    async def __call__(self, url: str) -> WebSocketLike: ...

    async def close(self) -> None: ...


class AiohttpConnector:
    """Default connector backed by one lazily created ``aiohttp.ClientSession``."""

    def __init__(self, *, max_msg_size: int = 16 * 1024 * 1024) -> None:
        self._max_msg_size = max_msg_size
        self._session: Optional[aiohttp.ClientSession] = None

    async def __call__(self, url: str) -> aiohttp.ClientWebSocketResponse:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        return await self._session.ws_connect(
            url, autoping=True, max_msg_size=self._max_msg_size
        )

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None


def backoff_delay(
    attempt: int, base_delay_s: float, cap: int, rng: Optional[random.Random] = None
) -> float:
    """
    Delay before reconnect attempt ``attempt`` (1-based).

    base * 2^min(attempt - 1, cap) plus jitter drawn from [0, base).
    """
    if attempt < 1:
        raise ValueError(f"attempt must be >= 1, got {attempt}")
    rng = rng or random.Random()
    exponent = min(attempt - 1, cap)
    return base_delay_s * (2**exponent) + rng.random() * base_delay_s


class ConnectionManager:
    """
    Owns the websocket for the lifetime of the feed.

    Responsibilities:
    - connect with timeout, subscribe, and wait for every confirmation
    - read frames, decode them, validate trades, publish events
    - classify failures and reconnect with exponential backoff and jitter
    - stop permanently only on cancellation or an exhausted reconnect budget

    Usage:
        manager = ConnectionManager(
            config=cfg.connection,
            subscriptions=[SubscriptionRequest(SubscriptionKind.TRADES, "BTC")],
            bus=bus,
            state=state,
            validator=TradeValidator(state),
        )
        task = asyncio.create_task(manager.run())
        # ... later ...
        task.cancel()
    """

    def __init__(
        self,
        config: ConnectionConfig,
        subscriptions: Sequence[SubscriptionRequest],
        bus: EventBus,
        state: SharedState,
        validator: TradeValidator,
        *,
        connector: Optional[Connector] = None,
        rng: Optional[random.Random] = None,
        emit_raw_messages: bool = False,
        name: str = "hl_ws",
    ) -> None:
        if not subscriptions:
            raise ValueError("At least one subscription is required")
        self._config = config
        self._subscriptions = tuple(subscriptions)
        self._bus = bus
        self._shared = state
        self._validator = validator
        self._connector: Connector = connector or AiohttpConnector()
        self._rng = rng or random.Random()
        self._emit_raw = emit_raw_messages
        self._name = name

        self._state = ConnectionState.IDLE
        self._session: Optional[ConnectionSession] = None
        self._consecutive_failures = 0
        self._next_ping_at: Optional[float] = None

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def session(self) -> Optional[ConnectionSession]:
        return self._session

    @property
    def url(self) -> str:
        return self._config.url

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    def backoff_delay(self, attempt: int) -> float:
        return backoff_delay(
            attempt,
            self._config.reconnect_base_delay_s,
            self._config.backoff_cap,
            self._rng,
        )

    def _set_state(self, new_state: ConnectionState) -> None:
        old_state = self._state
        self._state = new_state
        if old_state != new_state:
            logger.debug(f"[{self._name}] State: {old_state.value} -> {new_state.value}")

    async def _publish(self, event: FeedEvent) -> None:
        await self._bus.publish(event)

    # --- Main loop ---

    async def run(self) -> None:
        """
        Drive the state machine until cancelled or the reconnect budget runs out.

        Raises:
            ReconnectBudgetExhausted: ``max_reconnects`` consecutive attempts failed
            asyncio.CancelledError: after a clean transition to Stopped
        """
        await self._publish(Starting())
        try:
            while True:
                session = self._shared.new_session()
                self._session = session
                self._validator.reset()
                try:
                    await self._run_session(session)
                except (TransportError, ProtocolError) as e:
                    await self._handle_failure(e, session)
        except asyncio.CancelledError as e:
            # Task.cancel(msg=...) carries the shutdown reason
            await self._stop(str(e.args[0]) if e.args and e.args[0] else "cancelled")
            raise
        finally:
            await self._connector.close()

    async def _run_session(self, session: ConnectionSession) -> None:
        """One connection attempt. Only ever leaves by raising."""
        self._set_state(ConnectionState.CONNECTING)
        await self._publish(Connecting(url=self._config.url, session_id=session.session_id))
        logger.info(
            f"[{self._name}] Connecting to {self._config.url} (session {session.session_id[:8]})"
        )

        ws = await self._open()
        try:
            self._set_state(ConnectionState.SUBSCRIBING)
            await self._publish(Connected(session_id=session.session_id))
            logger.info(f"[{self._name}] Connected")

            pending = await self._subscribe(ws)
            await self._stream(ws, session, pending)
        except asyncio.CancelledError:
            self._set_state(ConnectionState.CLOSING)
            raise
        finally:
            await self._close_ws(ws)

    async def _open(self) -> WebSocketLike:
        timeout = self._config.connect_timeout_s
        attempt = self._consecutive_failures + 1
        try:
            return await asyncio.wait_for(self._connector(self._config.url), timeout=timeout)
        except asyncio.TimeoutError as e:
            raise TransportError(
                f"Connect timed out after {timeout}s",
                url=self._config.url,
                attempt=attempt,
                component="ConnectionManager",
            ) from e
        except (aiohttp.ClientError, OSError) as e:
            raise TransportError(
                f"Connect failed: {e}",
                url=self._config.url,
                attempt=attempt,
                component="ConnectionManager",
            ) from e

    async def _send(self, ws: WebSocketLike, message: str) -> None:
        try:
            await ws.send_str(message)
        except (aiohttp.ClientError, OSError) as e:
            raise TransportError(
                f"Send failed: {e}", url=self._config.url, component="ConnectionManager"
            ) from e

    async def _subscribe(self, ws: WebSocketLike) -> dict[tuple, SubscriptionRequest]:
        """Send one request per subscription; return them keyed for confirmation matching."""
        pending: dict[tuple, SubscriptionRequest] = {}
        for request in self._subscriptions:
            message = orjson.dumps(request.to_wire()).decode()
            await self._send(ws, message)
            pending[_match_key(request)] = request
            await self._publish(SubscriptionSent(request=request, message=message))
            logger.info(f"[{self._name}] Subscription sent: {request.describe()}")
        return pending

    async def _stream(
        self,
        ws: WebSocketLike,
        session: ConnectionSession,
        pending: dict[tuple, SubscriptionRequest],
    ) -> None:
        loop = asyncio.get_running_loop()
        confirmed: set[tuple] = set()
        confirm_deadline: Optional[float] = loop.time() + self._config.connect_timeout_s
        if self._config.ping_interval_s:
            self._next_ping_at = loop.time() + self._config.ping_interval_s

        while True:
            msg = await self._receive(ws, confirm_deadline if pending else None)

            if msg.type == aiohttp.WSMsgType.TEXT:
                await self._handle_text(msg.data, session, pending, confirmed)
                if confirm_deadline is not None and not pending:
                    confirm_deadline = None
                    await self._enter_streaming(session)

            elif msg.type == aiohttp.WSMsgType.BINARY:
                logger.debug(f"[{self._name}] Received binary message (ignored)")

            elif msg.type == aiohttp.WSMsgType.PING:
                try:
                    await ws.pong(msg.data)
                except (aiohttp.ClientError, OSError) as e:
                    raise TransportError(
                        f"Pong failed: {e}", url=self._config.url, component="ConnectionManager"
                    ) from e

            elif msg.type == aiohttp.WSMsgType.PONG:
                pass

            elif msg.type in _CLOSED_TYPES:
                raise TransportError(
                    f"Server closed connection (code={ws.close_code})",
                    url=self._config.url,
                    component="ConnectionManager",
                )

            elif msg.type == aiohttp.WSMsgType.ERROR:
                raise TransportError(
                    f"WebSocket error: {ws.exception()}",
                    url=self._config.url,
                    component="ConnectionManager",
                )

    async def _receive(
        self, ws: WebSocketLike, confirm_deadline: Optional[float]
    ) -> aiohttp.WSMessage:
        """
        Wait for the next frame.

        Wakes early to send keepalive pings; raises TransportError once the
        idle-read timeout or the confirmation deadline passes.
        """
        loop = asyncio.get_running_loop()
        idle_deadline = loop.time() + self._config.read_timeout_s
        while True:
            now = loop.time()
            wait = idle_deadline - now
            if confirm_deadline is not None:
                wait = min(wait, confirm_deadline - now)
            if self._next_ping_at is not None:
                wait = min(wait, self._next_ping_at - now)

            try:
                return await asyncio.wait_for(ws.receive(), timeout=max(wait, 0.0))
            except asyncio.TimeoutError:
                pass
            except (aiohttp.ClientError, OSError) as e:
                raise TransportError(
                    f"Read failed: {e}", url=self._config.url, component="ConnectionManager"
                ) from e

            now = loop.time()
            if now >= idle_deadline:
                raise TransportError(
                    f"No frame received for {self._config.read_timeout_s}s",
                    url=self._config.url,
                    component="ConnectionManager",
                )
            if confirm_deadline is not None and now >= confirm_deadline:
                raise TransportError(
                    f"Subscriptions not confirmed within {self._config.connect_timeout_s}s",
                    url=self._config.url,
                    component="ConnectionManager",
                )
            if self._next_ping_at is not None and now >= self._next_ping_at:
                await self._send(ws, PING_MESSAGE)
                self._next_ping_at = now + self._config.ping_interval_s
                logger.debug(f"[{self._name}] Sent ping")

    async def _handle_text(
        self,
        raw: str,
        session: ConnectionSession,
        pending: dict[tuple, SubscriptionRequest],
        confirmed: set[tuple],
    ) -> None:
        self._shared.record_message()
        if self._emit_raw:
            await self._publish(RawMessage(raw=raw))

        try:
            frame = decode_frame(raw)
        except ProtocolError as e:
            self._shared.record_malformed()
            if e.details.get("channel") == "error":
                logger.warning(f"[{self._name}] Venue error frame: {raw[:200]}")
            else:
                logger.debug(f"[{self._name}] Dropped frame: {e}")
            return

        if frame.malformed:
            self._shared.record_malformed(frame.malformed)
            logger.debug(
                f"[{self._name}] Dropped {frame.malformed} malformed record(s) "
                f"from {frame.shape.value} frame: {frame.dropped[0]}"
            )

        for event in frame.events:
            if isinstance(event, SubscriptionConfirmed):
                self._confirm(event, pending, confirmed)
            elif isinstance(event, TradeReceived):
                if self._validator.check(event.trade) is not None:
                    continue
            await self._publish(event)

    def _confirm(
        self,
        event: SubscriptionConfirmed,
        pending: dict[tuple, SubscriptionRequest],
        confirmed: set[tuple],
    ) -> None:
        key = _match_key(event.request)
        if key in pending:
            del pending[key]
            confirmed.add(key)
            logger.info(f"[{self._name}] Subscription confirmed: {event.request.describe()}")
            return
        if key in confirmed:
            logger.debug(f"[{self._name}] Repeated confirmation: {event.request.describe()}")
            return
        raise SubscriptionMismatchError(
            f"Confirmation does not match any request: {event.request.describe()}",
            expected=[r.describe() for r in pending.values()],
            received=event.request.describe(),
            component="ConnectionManager",
        )

    async def _enter_streaming(self, session: ConnectionSession) -> None:
        self._set_state(ConnectionState.STREAMING)
        self._shared.set_connected(True)
        if self._consecutive_failures:
            logger.info(
                f"[{self._name}] Streaming again after {self._consecutive_failures} failure(s)"
            )
        else:
            logger.info(f"[{self._name}] Streaming")
        self._consecutive_failures = 0

    # --- Failure, backoff, stop ---

    async def _handle_failure(self, error: FeedError, session: ConnectionSession) -> None:
        self._set_state(ConnectionState.FAILED)
        self._shared.set_connected(False)
        reason = error.args[0] if error.args else type(error).__name__
        await self._publish(Disconnected(reason=reason, session_id=session.session_id))

        self._consecutive_failures += 1
        self._shared.record_reconnect()
        attempts = self._consecutive_failures
        max_reconnects = self._config.max_reconnects
        if max_reconnects and attempts >= max_reconnects:
            logger.error(
                f"[{self._name}] Giving up after {attempts} consecutive failures: {error}"
            )
            self._set_state(ConnectionState.STOPPED)
            await self._publish(Stopping(reason="reconnect budget exhausted"))
            raise ReconnectBudgetExhausted(
                f"Reconnect budget exhausted after {attempts} attempts",
                attempts=attempts,
                component="ConnectionManager",
            ) from error

        delay = self.backoff_delay(attempts)
        self._set_state(ConnectionState.BACKOFF)
        await self._publish(Reconnecting(attempt=attempts, delay_s=delay))
        logger.warning(
            f"[{self._name}] Connection failed (attempt {attempts}), "
            f"retrying in {delay:.2f}s: {error}"
        )
        await asyncio.sleep(delay)

    async def _stop(self, reason: str) -> None:
        if self._state == ConnectionState.STOPPED:
            return
        if self._state not in (ConnectionState.CLOSING,):
            self._set_state(ConnectionState.CLOSING)
        self._shared.set_connected(False)
        await self._publish(Stopping(reason=reason))
        self._set_state(ConnectionState.STOPPED)
        logger.info(f"[{self._name}] Stopped ({reason})")

    async def _close_ws(self, ws: WebSocketLike) -> None:
        if ws.closed:
            return
        try:
            await asyncio.wait_for(ws.close(), timeout=_CLOSE_TIMEOUT_S)
        except (asyncio.TimeoutError, aiohttp.ClientError, OSError) as e:
            logger.debug(f"[{self._name}] Close failed: {e}")


def _match_key(request: SubscriptionRequest) -> tuple:
    """Confirmation identity; user addresses compare case-insensitively."""
    target = request.target
    if request.kind.target_field == "user":
        target = target.lower()
    return (request.kind.value, target, request.interval)
