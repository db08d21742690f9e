"""
Unit tests for the ConnectionManager state machine.

All tests run against scripted websockets; nothing touches the network.
"""

import asyncio
import random

import aiohttp
import pytest
from feed_helpers import (
    CLOSE,
    HANG,
    FakeConnector,
    FakeMessage,
    FakeWebSocket,
    collect_until,
    trade_record,
    trades_frame,
)

from hlfeed.bus import EventBus, Subscription
from hlfeed.config import ConnectionConfig
from hlfeed.connection import ConnectionManager, backoff_delay
from hlfeed.errors import ReconnectBudgetExhausted
from hlfeed.events import (
    Connected,
    Connecting,
    Disconnected,
    RawMessage,
    Reconnecting,
    Starting,
    Stopping,
    SubscriptionConfirmed,
    SubscriptionSent,
    TradeReceived,
)
from hlfeed.state import SharedState
from hlfeed.types import ConnectionState, SubscriptionKind, SubscriptionRequest
from hlfeed.validator import TradeValidator

BTC_TRADES = SubscriptionRequest(SubscriptionKind.TRADES, "BTC")


def _manager(
    config: ConnectionConfig,
    connector: FakeConnector,
    bus: EventBus,
    state: SharedState,
    validator: TradeValidator,
    **kwargs,
) -> ConnectionManager:
    return ConnectionManager(
        config,
        [BTC_TRADES],
        bus,
        state,
        validator,
        connector=connector,
        rng=random.Random(0),
        **kwargs,
    )


def _drain(sub: Subscription) -> list:
    """Take everything currently queued without waiting."""
    events = []
    while not sub.queue.empty():
        item = sub.queue.get_nowait()
        if item is not None:
            events.append(item)
    return events


async def _cancel(task: asyncio.Task, msg: str = "test finished") -> None:
    task.cancel(msg)
    with pytest.raises(asyncio.CancelledError):
        await asyncio.wait_for(task, timeout=2.0)


def _is_trade(tid: int):
    return lambda e: isinstance(e, TradeReceived) and e.trade.tid == tid


class _ResetOnPong(FakeWebSocket):
    async def pong(self, message: bytes = b"") -> None:
        raise ConnectionResetError("reset by peer")


class TestHappyPath:
    """Tests for a clean connect, subscribe and stream."""

    @pytest.mark.asyncio
    async def test_lifecycle_event_order(
        self, fast_config, bus: EventBus, state: SharedState, validator: TradeValidator
    ) -> None:
        """Test lifecycle events arrive in order before the first trade."""
        probe = bus.subscribe("probe")
        ws = FakeWebSocket([trades_frame(trade_record(tid=1))])
        manager = _manager(fast_config, FakeConnector([ws]), bus, state, validator)

        task = asyncio.create_task(manager.run())
        events = await collect_until(probe, _is_trade(1))

        assert [type(e) for e in events] == [
            Starting,
            Connecting,
            Connected,
            SubscriptionSent,
            SubscriptionConfirmed,
            TradeReceived,
        ]
        assert events[1].url == fast_config.url
        assert state.trades_accepted == 1

        await _cancel(task)

        assert manager.state == ConnectionState.STOPPED
        tail = _drain(probe)
        assert isinstance(tail[-1], Stopping)
        assert ws.closed

    @pytest.mark.asyncio
    async def test_subscribe_message_text(
        self, fast_config, bus: EventBus, state: SharedState, validator: TradeValidator
    ) -> None:
        probe = bus.subscribe("probe")
        ws = FakeWebSocket()
        manager = _manager(fast_config, FakeConnector([ws]), bus, state, validator)

        task = asyncio.create_task(manager.run())
        events = await collect_until(probe, lambda e: isinstance(e, SubscriptionConfirmed))
        await _cancel(task)

        expected = '{"method":"subscribe","subscription":{"type":"trades","coin":"BTC"}}'
        assert ws.sent == [expected]
        sent = next(e for e in events if isinstance(e, SubscriptionSent))
        assert sent.message == expected

    @pytest.mark.asyncio
    async def test_streaming_state_tracks_session(
        self, fast_config, bus: EventBus, state: SharedState, validator: TradeValidator
    ) -> None:
        ws = FakeWebSocket()
        manager = _manager(fast_config, FakeConnector([ws]), bus, state, validator)
        assert manager.state == ConnectionState.IDLE

        task = asyncio.create_task(manager.run())
        for _ in range(100):
            if manager.state == ConnectionState.STREAMING:
                break
            await asyncio.sleep(0.01)

        assert manager.state == ConnectionState.STREAMING
        assert state.connected
        assert state.session().is_live
        assert manager.session.session_id == state.session().session_id
        await _cancel(task)

        assert manager.state == ConnectionState.STOPPED
        assert not state.connected
        assert not state.session().is_live

    @pytest.mark.asyncio
    async def test_raw_messages_emitted_when_enabled(
        self, fast_config, bus: EventBus, state: SharedState, validator: TradeValidator
    ) -> None:
        probe = bus.subscribe("probe")
        frame = trades_frame(trade_record(tid=1))
        ws = FakeWebSocket([frame])
        manager = _manager(
            fast_config, FakeConnector([ws]), bus, state, validator, emit_raw_messages=True
        )

        task = asyncio.create_task(manager.run())
        events = await collect_until(probe, _is_trade(1))
        await _cancel(task)

        raws = [e.raw for e in events if isinstance(e, RawMessage)]
        assert raws[-1] == frame
        assert state.messages_received == 2

    @pytest.mark.asyncio
    async def test_data_before_confirmation_is_processed(
        self, fast_config, bus: EventBus, state: SharedState, validator: TradeValidator
    ) -> None:
        probe = bus.subscribe("probe")
        ws = FakeWebSocket([trades_frame(trade_record(tid=9))], confirm=False)
        manager = _manager(fast_config, FakeConnector([ws]), bus, state, validator)

        task = asyncio.create_task(manager.run())
        await collect_until(probe, _is_trade(9))

        assert manager.state == ConnectionState.SUBSCRIBING
        await _cancel(task)


class TestValidation:
    """Tests for trade filtering inside a session."""

    @pytest.mark.asyncio
    async def test_duplicate_rejected_within_session(
        self, fast_config, bus: EventBus, state: SharedState, validator: TradeValidator
    ) -> None:
        probe = bus.subscribe("probe")
        ws = FakeWebSocket(
            [
                trades_frame(trade_record(tid=1)),
                trades_frame(trade_record(tid=1)),
                trades_frame(trade_record(tid=2)),
            ]
        )
        manager = _manager(fast_config, FakeConnector([ws]), bus, state, validator)

        task = asyncio.create_task(manager.run())
        events = await collect_until(probe, _is_trade(2))
        await _cancel(task)

        assert [e.trade.tid for e in events if isinstance(e, TradeReceived)] == [1, 2]
        assert state.trades_rejected_duplicate == 1
        assert state.trades_accepted == 2

    @pytest.mark.asyncio
    async def test_malformed_frames_counted(
        self, fast_config, bus: EventBus, state: SharedState, validator: TradeValidator
    ) -> None:
        """Test invalid JSON and a bad record inside a batch both count."""
        probe = bus.subscribe("probe")
        ws = FakeWebSocket(
            [
                "{not json",
                trades_frame(trade_record(tid=1), trade_record(tid=2, px="bad")),
                trades_frame(trade_record(tid=3)),
            ]
        )
        manager = _manager(fast_config, FakeConnector([ws]), bus, state, validator)

        task = asyncio.create_task(manager.run())
        events = await collect_until(probe, _is_trade(3))
        await _cancel(task)

        assert [e.trade.tid for e in events if isinstance(e, TradeReceived)] == [1, 3]
        assert state.frames_malformed == 2
        assert manager.state == ConnectionState.STOPPED

    @pytest.mark.asyncio
    async def test_validator_reset_between_sessions(
        self, fast_config, bus: EventBus, state: SharedState, validator: TradeValidator
    ) -> None:
        """Test a trade id seen before a reconnect is accepted again after it."""
        probe = bus.subscribe("probe")
        first = FakeWebSocket([trades_frame(trade_record(tid=1)), CLOSE])
        second = FakeWebSocket([trades_frame(trade_record(tid=1))])
        manager = _manager(fast_config, FakeConnector([first, second]), bus, state, validator)

        trades: list[TradeReceived] = []

        def second_trade(event) -> bool:
            if isinstance(event, TradeReceived):
                trades.append(event)
            return len(trades) == 2

        task = asyncio.create_task(manager.run())
        events = await collect_until(probe, second_trade)
        await _cancel(task)

        assert [e.trade.tid for e in trades] == [1, 1]
        assert sum(isinstance(e, Disconnected) for e in events) == 1
        assert state.trades_rejected_duplicate == 0


class TestReconnect:
    """Tests for failure handling, backoff, and the reconnect budget."""

    @pytest.mark.asyncio
    async def test_subscription_mismatch_forces_reconnect(
        self, fast_config, bus: EventBus, state: SharedState, validator: TradeValidator
    ) -> None:
        probe = bus.subscribe("probe")
        wrong = FakeWebSocket(confirm_with=lambda body: {**body, "coin": "ETH"})
        right = FakeWebSocket([trades_frame(trade_record(tid=1))])
        connector = FakeConnector([wrong, right])
        manager = _manager(fast_config, connector, bus, state, validator)

        task = asyncio.create_task(manager.run())
        events = await collect_until(probe, _is_trade(1))
        await _cancel(task)

        disconnected = [e for e in events if isinstance(e, Disconnected)]
        assert len(disconnected) == 1
        assert "does not match" in disconnected[0].reason
        sessions = [e.session_id for e in events if isinstance(e, Connecting)]
        assert len(sessions) == 2
        assert sessions[0] != sessions[1]
        assert wrong.closed
        assert state.reconnect_attempts == 1

    @pytest.mark.asyncio
    async def test_budget_exhausted_after_max_attempts(
        self, fast_config, bus: EventBus, state: SharedState, validator: TradeValidator
    ) -> None:
        probe = bus.subscribe("probe")
        config = fast_config.model_copy(update={"max_reconnects": 3})
        connector = FakeConnector([OSError("refused")] * 3)
        manager = _manager(config, connector, bus, state, validator)

        with pytest.raises(ReconnectBudgetExhausted) as exc_info:
            await asyncio.wait_for(manager.run(), timeout=2.0)

        assert exc_info.value.attempts == 3
        assert manager.state == ConnectionState.STOPPED
        assert state.reconnect_attempts == 3
        assert len(connector.urls) == 3
        assert connector.closed

        events = _drain(probe)
        assert [e.attempt for e in events if isinstance(e, Reconnecting)] == [1, 2]
        assert sum(isinstance(e, Disconnected) for e in events) == 3
        assert events[-1] == Stopping(reason="reconnect budget exhausted")

    @pytest.mark.asyncio
    async def test_unlimited_budget_keeps_retrying(
        self, fast_config, bus: EventBus, state: SharedState, validator: TradeValidator
    ) -> None:
        connector = FakeConnector([])
        manager = _manager(fast_config, connector, bus, state, validator)

        task = asyncio.create_task(manager.run())
        await asyncio.sleep(0.3)

        assert not task.done()
        assert state.reconnect_attempts >= 3
        await _cancel(task)
        assert manager.state == ConnectionState.STOPPED

    @pytest.mark.asyncio
    async def test_failure_counter_resets_on_streaming(
        self, fast_config, bus: EventBus, state: SharedState, validator: TradeValidator
    ) -> None:
        """Test reaching Streaming restarts the consecutive-failure count."""
        config = fast_config.model_copy(update={"max_reconnects": 3})
        connector = FakeConnector(
            [OSError("refused"), OSError("refused"), FakeWebSocket([CLOSE])]
        )
        manager = _manager(config, connector, bus, state, validator)

        with pytest.raises(ReconnectBudgetExhausted) as exc_info:
            await asyncio.wait_for(manager.run(), timeout=2.0)

        # 2 failures, one stream that later closes, then 3 more failures
        assert len(connector.urls) == 5
        assert exc_info.value.attempts == 3
        assert state.reconnect_attempts == 5

    @pytest.mark.asyncio
    async def test_cancel_during_backoff(
        self, fast_config, bus: EventBus, state: SharedState, validator: TradeValidator
    ) -> None:
        probe = bus.subscribe("probe")
        config = fast_config.model_copy(update={"reconnect_base_delay_s": 10.0})
        manager = _manager(config, FakeConnector([]), bus, state, validator)

        task = asyncio.create_task(manager.run())
        await collect_until(probe, lambda e: isinstance(e, Reconnecting))
        assert manager.state == ConnectionState.BACKOFF

        await _cancel(task, "operator stop")

        assert manager.state == ConnectionState.STOPPED
        assert isinstance(_drain(probe)[-1], Stopping)


class TestTimeouts:
    """Tests for the bounded suspension points."""

    async def _first_disconnect(
        self,
        config: ConnectionConfig,
        connector: FakeConnector,
        bus: EventBus,
        state: SharedState,
        validator: TradeValidator,
    ) -> Disconnected:
        probe = bus.subscribe("probe")
        manager = _manager(
            config.model_copy(update={"max_reconnects": 1}), connector, bus, state, validator
        )
        with pytest.raises(ReconnectBudgetExhausted):
            await asyncio.wait_for(manager.run(), timeout=3.0)
        return next(e for e in _drain(probe) if isinstance(e, Disconnected))

    @pytest.mark.asyncio
    async def test_connect_timeout(
        self, fast_config, bus: EventBus, state: SharedState, validator: TradeValidator
    ) -> None:
        event = await self._first_disconnect(
            fast_config, FakeConnector([HANG]), bus, state, validator
        )
        assert event.reason.startswith("Connect timed out")

    @pytest.mark.asyncio
    async def test_read_timeout(
        self, fast_config, bus: EventBus, state: SharedState, validator: TradeValidator
    ) -> None:
        event = await self._first_disconnect(
            fast_config, FakeConnector([FakeWebSocket()]), bus, state, validator
        )
        assert event.reason.startswith("No frame received")

    @pytest.mark.asyncio
    async def test_confirmation_timeout(
        self, fast_config, bus: EventBus, state: SharedState, validator: TradeValidator
    ) -> None:
        event = await self._first_disconnect(
            fast_config, FakeConnector([FakeWebSocket(confirm=False)]), bus, state, validator
        )
        assert event.reason.startswith("Subscriptions not confirmed")

    @pytest.mark.asyncio
    async def test_failed_pong_is_a_transport_failure(
        self, fast_config, bus: EventBus, state: SharedState, validator: TradeValidator
    ) -> None:
        ws = _ResetOnPong([FakeMessage(aiohttp.WSMsgType.PING, b"hb")])
        event = await self._first_disconnect(
            fast_config, FakeConnector([ws]), bus, state, validator
        )
        assert event.reason.startswith("Pong failed")

    @pytest.mark.asyncio
    async def test_ping_sent_while_idle(
        self, fast_config, bus: EventBus, state: SharedState, validator: TradeValidator
    ) -> None:
        config = fast_config.model_copy(update={"ping_interval_s": 0.05})
        ws = FakeWebSocket()
        manager = _manager(config, FakeConnector([ws]), bus, state, validator)

        task = asyncio.create_task(manager.run())
        await asyncio.sleep(0.2)
        await _cancel(task)

        assert '{"method":"ping"}' in ws.sent


class TestBackoff:
    @pytest.mark.parametrize("attempt", range(1, 9))
    def test_delay_bounds(self, attempt: int) -> None:
        """Test delay lies in [base * 2^min(n-1, cap), that + base)."""
        rng = random.Random(attempt)
        lower = 5.0 * 2 ** min(attempt - 1, 5)

        delay = backoff_delay(attempt, 5.0, 5, rng)

        assert lower <= delay < lower + 5.0

    def test_cap_limits_growth(self) -> None:
        rng = random.Random(0)
        assert backoff_delay(20, 1.0, 3, rng) < 9.0

    def test_attempt_must_be_positive(self) -> None:
        with pytest.raises(ValueError):
            backoff_delay(0, 1.0, 3)
