"""
Feed runner: top-level orchestration.

Wires configuration into every component and runs them concurrently:
- ConnectionManager task (owns the socket, publishes on the bus)
- renderer task (consumes the bus)
- HealthMonitor task
- optional metrics server

Stops on SIGINT/SIGTERM, on ``max_trades`` rendered trades, or when the
connection manager gives up (ReconnectBudgetExhausted propagates).
"""

from __future__ import annotations

import asyncio
import logging
import random
import signal
from typing import Any, Optional, TextIO

from hlfeed.bus import EventBus, Subscription
from hlfeed.config import FeedConfig
from hlfeed.connection import ConnectionManager, Connector
from hlfeed.events import TradeReceived
from hlfeed.health import HealthMonitor, HealthStatus
from hlfeed.metrics import MetricsServer
from hlfeed.render import TradeRenderer
from hlfeed.state import SharedState
from hlfeed.validator import TradeValidator

logger = logging.getLogger(__name__)

_DRAIN_TIMEOUT_S = 2.0


class FeedRunner:
    """
    Owns one SharedState, one EventBus, and every task built on them.

    Usage:
        runner = FeedRunner(build_config(...))
        reason = await runner.run()
    """

    def __init__(
        self,
        config: FeedConfig,
        *,
        connector: Optional[Connector] = None,
        rng: Optional[random.Random] = None,
        out: Optional[TextIO] = None,
        err: Optional[TextIO] = None,
        handle_signals: bool = True,
        name: str = "runner",
    ) -> None:
        self._config = config
        self._handle_signals = handle_signals
        self._name = name

        self.state = SharedState()
        self.bus = EventBus(
            self.state,
            capacity=config.bus.capacity,
            critical_wait_ms=config.bus.critical_wait_ms,
        )
        self.validator = TradeValidator(
            self.state,
            max_clock_skew_ms=config.validation.max_clock_skew_ms,
            dedup_window=config.validation.dedup_window,
        )
        self.connection = ConnectionManager(
            config.connection,
            config.subscription_requests(),
            self.bus,
            self.state,
            self.validator,
            connector=connector,
            rng=rng,
            emit_raw_messages=config.output.emit_raw_messages,
        )
        self.renderer = TradeRenderer(config.output, out=out, err=err)
        self.health = HealthMonitor(config.health, self.state, self.bus)
        self.metrics: Optional[MetricsServer] = None
        if config.metrics.enabled:
            self.metrics = MetricsServer(
                self.state,
                host=config.metrics.host,
                port=config.metrics.port,
                stale_after_s=config.health.stale_after_s,
            )

        # Subscribe before anything is published so no event is missed
        self._ui_sub: Subscription = self.bus.subscribe("renderer")

        self._stop_event = asyncio.Event()
        self._stop_reason: Optional[str] = None
        self._limit_reached = False

    @property
    def stop_reason(self) -> Optional[str]:
        return self._stop_reason

    def request_stop(self, reason: str = "shutdown") -> None:
        """Ask the runner to stop. Safe to call from a signal handler, and repeatedly."""
        if self._stop_reason is None:
            self._stop_reason = reason
            logger.info(f"[{self._name}] Stop requested: {reason}")
        self._stop_event.set()

    async def run(self) -> str:
        """
        Run until stopped. Returns the stop reason.

        Raises:
            ReconnectBudgetExhausted: the connection manager gave up
        """
        loop = asyncio.get_running_loop()
        installed = self._install_signal_handlers(loop)

        if self.metrics is not None:
            await self.metrics.start()
        await self.health.start()

        conn_task = asyncio.create_task(self.connection.run(), name="connection")
        ui_task = asyncio.create_task(self._consume(), name="renderer")
        stop_task = asyncio.create_task(self._stop_event.wait(), name="stop_wait")

        try:
            done, _ = await asyncio.wait(
                {conn_task, stop_task}, return_when=asyncio.FIRST_COMPLETED
            )
            if conn_task in done:
                # Only ever finishes by raising
                conn_task.result()
        finally:
            await self._shutdown(conn_task, ui_task, stop_task)
            self._remove_signal_handlers(loop, installed)

        return self._stop_reason or "shutdown"

    async def _consume(self) -> None:
        max_trades = self._config.output.max_trades
        async for event in self._ui_sub:
            if isinstance(event, TradeReceived):
                if self._limit_reached:
                    continue
                self.renderer.handle(event)
                if max_trades and self.renderer.trade_count >= max_trades:
                    self._limit_reached = True
                    self.request_stop(f"max trades reached ({max_trades})")
                continue
            self.renderer.handle(event)

    async def _shutdown(
        self, conn_task: asyncio.Task, ui_task: asyncio.Task, stop_task: asyncio.Task
    ) -> None:
        reason = self._stop_reason or "shutdown"

        if not conn_task.done():
            conn_task.cancel(msg=reason)
            try:
                await conn_task
            except asyncio.CancelledError:
                pass

        if not stop_task.done():
            stop_task.cancel()
            try:
                await stop_task
            except asyncio.CancelledError:
                pass

        await self.health.stop()

        # Sentinel lets the renderer drain what is already queued, then exit
        self.bus.close(reason)
        try:
            await asyncio.wait_for(ui_task, timeout=_DRAIN_TIMEOUT_S)
        except asyncio.TimeoutError:
            logger.warning(f"[{self._name}] Renderer did not drain within {_DRAIN_TIMEOUT_S}s")

        if self.metrics is not None:
            await self.metrics.stop()

        logger.info(
            f"[{self._name}] Stopped: trades={self.state.trades_accepted} "
            f"rejected={self.state.snapshot().trades_rejected} "
            f"dropped={self.state.events_dropped} reconnects={self.state.reconnect_attempts}"
        )

    def _install_signal_handlers(self, loop: asyncio.AbstractEventLoop) -> list[signal.Signals]:
        if not self._handle_signals:
            return []
        installed = []
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_stop, f"signal {sig.name}")
                installed.append(sig)
            except (NotImplementedError, RuntimeError):
                logger.debug(f"[{self._name}] Cannot install handler for {sig.name}")
        return installed

    def _remove_signal_handlers(
        self, loop: asyncio.AbstractEventLoop, installed: list[signal.Signals]
    ) -> None:
        for sig in installed:
            loop.remove_signal_handler(sig)

    def health_status(self) -> HealthStatus:
        return self.health.status()

    def get_stats(self) -> dict[str, Any]:
        snap = self.state.snapshot()
        bus_stats = self.bus.stats()
        session = self.state.session()
        return {
            "connection_state": self.connection.state.value,
            "session_id": session.session_id if session else None,
            "messages_received": snap.messages_received,
            "trades_accepted": snap.trades_accepted,
            "trades_rejected_duplicate": snap.trades_rejected_duplicate,
            "trades_rejected_invalid": snap.trades_rejected_invalid,
            "frames_malformed": snap.frames_malformed,
            "reconnect_attempts": snap.reconnect_attempts,
            "events_dropped": snap.events_dropped,
            "connected": snap.connected,
            "trades_rendered": self.renderer.trade_count,
            "bus_published": bus_stats.published,
        }
