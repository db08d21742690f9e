"""Fixtures shared by the feed tests."""

from __future__ import annotations

import pytest
from feed_helpers import NOW_MS

from hlfeed.bus import EventBus
from hlfeed.config import ConnectionConfig
from hlfeed.state import SharedState
from hlfeed.validator import TradeValidator


@pytest.fixture
def state() -> SharedState:
    return SharedState()


@pytest.fixture
def bus(state: SharedState) -> EventBus:
    return EventBus(state, capacity=1000, critical_wait_ms=50)


@pytest.fixture
def validator(state: SharedState) -> TradeValidator:
    return TradeValidator(state, clock=lambda: NOW_MS)


@pytest.fixture
def fast_config() -> ConnectionConfig:
    return ConnectionConfig(
        url="wss://test.invalid/ws",
        connect_timeout_s=0.2,
        read_timeout_s=0.5,
        reconnect_base_delay_s=0.01,
        backoff_cap=0,
        max_reconnects=0,
        ping_interval_s=0,
    )
