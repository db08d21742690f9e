"""
Health monitor for the feed.

Periodically inspects SharedState:
- connection liveness (connected gauge, current session)
- feed staleness (no frame for ``stale_after_s`` while connected)

A stale episode publishes one HealthCheckFailed event; the next frame ends
the episode.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

from hlfeed.bus import EventBus
from hlfeed.config import HealthConfig
from hlfeed.events import HealthCheckFailed
from hlfeed.state import SharedState

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HealthStatus:
    """Point-in-time health snapshot, served as JSON at /health."""

    healthy: bool
    connected: bool
    stale: bool
    session_id: Optional[str]
    session_age_s: Optional[float]
    last_message_at: Optional[datetime]
    seconds_since_message: Optional[float]
    messages_received: int
    trades_accepted: int
    trades_rejected: int
    frames_malformed: int
    reconnect_attempts: int
    events_dropped: int
    uptime_s: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "healthy": self.healthy,
            "connected": self.connected,
            "stale": self.stale,
            "session_id": self.session_id,
            "session_age_s": (
                round(self.session_age_s, 3) if self.session_age_s is not None else None
            ),
            "last_message_at": (
                self.last_message_at.isoformat() if self.last_message_at else None
            ),
            "seconds_since_message": (
                round(self.seconds_since_message, 3)
                if self.seconds_since_message is not None
                else None
            ),
            "messages_received": self.messages_received,
            "trades_accepted": self.trades_accepted,
            "trades_rejected": self.trades_rejected,
            "frames_malformed": self.frames_malformed,
            "reconnect_attempts": self.reconnect_attempts,
            "events_dropped": self.events_dropped,
            "uptime_s": round(self.uptime_s, 3),
        }


def build_status(state: SharedState, stale_after_s: float) -> HealthStatus:
    counters = state.snapshot()
    session = state.session()
    since = state.seconds_since_message()
    stale = counters.connected and since is not None and since > stale_after_s
    return HealthStatus(
        healthy=counters.connected and not stale,
        connected=counters.connected,
        stale=stale,
        session_id=session.session_id if session else None,
        session_age_s=session.age_s if session else None,
        last_message_at=state.last_message_at,
        seconds_since_message=since,
        messages_received=counters.messages_received,
        trades_accepted=counters.trades_accepted,
        trades_rejected=counters.trades_rejected,
        frames_malformed=counters.frames_malformed,
        reconnect_attempts=counters.reconnect_attempts,
        events_dropped=counters.events_dropped,
        uptime_s=(datetime.now(timezone.utc) - state.started_at).total_seconds(),
    )


class HealthMonitor:
    """
    Watches SharedState and reports stale feeds on the bus.

    Responsibilities:
    - Build HealthStatus snapshots on demand
    - Detect a connected-but-silent feed
    - Publish HealthCheckFailed once per stale episode
    """

    def __init__(
        self,
        config: HealthConfig,
        state: SharedState,
        bus: EventBus,
        name: str = "health",
    ) -> None:
        self._config = config
        self._state = state
        self._bus = bus
        self._name = name

        self._stale = False
        self._checks = 0
        self._failures = 0

        self._monitor_task: Optional[asyncio.Task[None]] = None
        self._shutdown_event = asyncio.Event()

    @property
    def checks(self) -> int:
        return self._checks

    @property
    def failures(self) -> int:
        return self._failures

    def status(self) -> HealthStatus:
        return build_status(self._state, self._config.stale_after_s)

    async def check(self) -> HealthStatus:
        """Run one health check, publishing on the start of a stale episode."""
        self._checks += 1
        status = self.status()
        if status.stale and not self._stale:
            self._stale = True
            self._failures += 1
            reason = (
                f"No message for {status.seconds_since_message:.1f}s "
                f"(threshold {self._config.stale_after_s}s)"
            )
            logger.warning(f"[{self._name}] Feed stale: {reason}")
            await self._bus.publish(HealthCheckFailed(reason=reason))
        elif not status.stale and self._stale:
            self._stale = False
            logger.info(f"[{self._name}] Feed recovered")
        return status

    async def start(self) -> None:
        """Start the health monitoring loop."""
        if self._monitor_task is not None:
            logger.warning(f"[{self._name}] Health monitor already running")
            return

        self._shutdown_event.clear()
        self._monitor_task = asyncio.create_task(self._monitor_loop(), name="health_monitor")
        logger.debug(f"[{self._name}] Health monitor started")

    async def stop(self) -> None:
        """Stop the health monitoring loop."""
        self._shutdown_event.set()

        if self._monitor_task:
            self._monitor_task.cancel()
            try:
                await self._monitor_task
            except asyncio.CancelledError:
                pass
            self._monitor_task = None

        logger.debug(f"[{self._name}] Health monitor stopped")

    async def _monitor_loop(self) -> None:
        while not self._shutdown_event.is_set():
            try:
                await asyncio.wait_for(
                    self._shutdown_event.wait(), timeout=self._config.check_interval_s
                )
            except asyncio.TimeoutError:
                await self.check()
