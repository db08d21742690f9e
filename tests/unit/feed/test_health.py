"""
Unit tests for HealthMonitor and HealthStatus.
"""

import asyncio
import time

import pytest

from hlfeed.bus import EventBus
from hlfeed.config import HealthConfig
from hlfeed.events import HealthCheckFailed
from hlfeed.health import HealthMonitor, build_status
from hlfeed.state import SharedState


def _go_silent(state: SharedState, seconds: float) -> None:
    """Pretend the last frame arrived ``seconds`` ago."""
    state.record_message()
    state._last_message_mono = time.monotonic() - seconds


@pytest.fixture
def health_config() -> HealthConfig:
    return HealthConfig(check_interval_s=0.02, stale_after_s=5.0)


class TestBuildStatus:
    def test_disconnected_is_unhealthy(self, state: SharedState) -> None:
        status = build_status(state, stale_after_s=5.0)

        assert not status.healthy
        assert not status.connected
        assert not status.stale
        assert status.session_id is None
        assert status.session_age_s is None
        assert status.last_message_at is None

    def test_connected_and_fresh_is_healthy(self, state: SharedState) -> None:
        session = state.new_session()
        state.set_connected(True)
        state.record_message()

        status = build_status(state, stale_after_s=5.0)

        assert status.healthy
        assert status.session_id == session.session_id
        assert 0.0 <= status.session_age_s < 5.0
        assert status.messages_received == 1

    def test_connected_but_silent_is_stale(self, state: SharedState) -> None:
        state.set_connected(True)
        _go_silent(state, 10.0)

        status = build_status(state, stale_after_s=5.0)

        assert status.stale
        assert not status.healthy

    def test_to_dict(self, state: SharedState) -> None:
        state.record_message()
        data = build_status(state, stale_after_s=5.0).to_dict()

        assert data["healthy"] is False
        assert isinstance(data["last_message_at"], str)
        assert data["session_age_s"] is None
        assert set(data) >= {"reconnect_attempts", "events_dropped", "trades_rejected"}


class TestHealthMonitor:
    """Tests for stale-episode reporting."""

    @pytest.mark.asyncio
    async def test_stale_published_once_per_episode(
        self, health_config: HealthConfig, state: SharedState, bus: EventBus
    ) -> None:
        probe = bus.subscribe("probe")
        monitor = HealthMonitor(health_config, state, bus)
        state.set_connected(True)
        _go_silent(state, 10.0)

        await monitor.check()
        await monitor.check()

        assert monitor.failures == 1
        assert probe.depth() == 1
        event = await probe.get()
        assert isinstance(event, HealthCheckFailed)
        assert "threshold 5.0s" in event.reason

    @pytest.mark.asyncio
    async def test_recovery_starts_new_episode(
        self, health_config: HealthConfig, state: SharedState, bus: EventBus
    ) -> None:
        monitor = HealthMonitor(health_config, state, bus)
        state.set_connected(True)

        _go_silent(state, 10.0)
        await monitor.check()
        state.record_message()
        status = await monitor.check()
        assert status.healthy

        _go_silent(state, 10.0)
        await monitor.check()

        assert monitor.failures == 2
        assert monitor.checks == 3

    @pytest.mark.asyncio
    async def test_loop_runs_until_stopped(
        self, health_config: HealthConfig, state: SharedState, bus: EventBus
    ) -> None:
        monitor = HealthMonitor(health_config, state, bus)

        await monitor.start()
        await asyncio.sleep(0.1)
        await monitor.stop()

        checks = monitor.checks
        assert checks >= 2
        await asyncio.sleep(0.05)
        assert monitor.checks == checks
