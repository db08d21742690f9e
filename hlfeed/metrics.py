"""
Metrics exposition.

A prometheus_client collector reads SharedState at scrape time, so the read
loop never touches the prometheus registry. The aiohttp server exposes:
- GET /metrics  text exposition format
- GET /health   HealthStatus as JSON (503 when unhealthy)
"""

from __future__ import annotations

import logging
from typing import Iterator, Optional

import orjson
from aiohttp import web
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from prometheus_client.core import (
    CollectorRegistry,
    CounterMetricFamily,
    GaugeMetricFamily,
    Metric,
)

from hlfeed.errors import RejectReason
from hlfeed.health import build_status
from hlfeed.state import SharedState

logger = logging.getLogger(__name__)

PREFIX = "hlfeed"


class FeedCollector:
    """Custom collector mapping SharedState onto prometheus metric families."""

    def __init__(self, state: SharedState) -> None:
        self._state = state

    def collect(self) -> Iterator[Metric]:
        snap = self._state.snapshot()

        # Counter families take the name without the _total suffix
        yield CounterMetricFamily(
            f"{PREFIX}_messages_received", "Text frames received", value=snap.messages_received
        )
        yield CounterMetricFamily(
            f"{PREFIX}_trades_accepted", "Trades accepted by the validator",
            value=snap.trades_accepted,
        )

        rejected = CounterMetricFamily(
            f"{PREFIX}_trades_rejected", "Trades rejected by the validator", labels=["reason"]
        )
        rejected.add_metric([RejectReason.DUPLICATE.value], snap.trades_rejected_duplicate)
        rejected.add_metric([RejectReason.INVALID_TIMESTAMP.value], snap.trades_rejected_invalid)
        yield rejected

        yield CounterMetricFamily(
            f"{PREFIX}_frames_malformed", "Frames or batch records dropped by the decoder",
            value=snap.frames_malformed,
        )
        yield CounterMetricFamily(
            f"{PREFIX}_reconnect_attempts", "Reconnect attempts", value=snap.reconnect_attempts
        )
        yield CounterMetricFamily(
            f"{PREFIX}_events_dropped", "Events dropped by the bus", value=snap.events_dropped
        )
        yield GaugeMetricFamily(
            f"{PREFIX}_connected", "1 while streaming, else 0", value=int(snap.connected)
        )

        session = self._state.session()
        if session is not None:
            info = GaugeMetricFamily(
                f"{PREFIX}_session_info", "Current connection session", labels=["session_id"]
            )
            info.add_metric([session.session_id], 1)
            yield info


def build_registry(state: SharedState) -> CollectorRegistry:
    registry = CollectorRegistry(auto_describe=False)
    registry.register(FeedCollector(state))
    return registry


def render_metrics(registry: CollectorRegistry) -> bytes:
    return generate_latest(registry)


class MetricsServer:
    """aiohttp server for /metrics and /health."""

    def __init__(
        self,
        state: SharedState,
        *,
        host: str = "0.0.0.0",
        port: int = 9090,
        stale_after_s: float = 60.0,
        name: str = "metrics",
    ) -> None:
        self._state = state
        self._host = host
        self._port = port
        self._stale_after_s = stale_after_s
        self._name = name
        self._registry = build_registry(state)
        self._runner: Optional[web.AppRunner] = None

    @property
    def registry(self) -> CollectorRegistry:
        return self._registry

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/metrics", self._handle_metrics)
        app.router.add_get("/health", self._handle_health)
        return app

    async def _handle_metrics(self, request: web.Request) -> web.Response:
        body = render_metrics(self._registry)
        # CONTENT_TYPE_LATEST carries a charset, which web.Response refuses in content_type
        response = web.Response(body=body)
        response.headers["Content-Type"] = CONTENT_TYPE_LATEST
        return response

    async def _handle_health(self, request: web.Request) -> web.Response:
        status = build_status(self._state, self._stale_after_s)
        return web.Response(
            body=orjson.dumps(status.to_dict()),
            content_type="application/json",
            status=200 if status.healthy else 503,
        )

    async def start(self) -> None:
        if self._runner is not None:
            return
        self._runner = web.AppRunner(self.build_app(), access_log=None)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self._host, self._port)
        await site.start()
        logger.info(f"[{self._name}] Serving /metrics and /health on {self._host}:{self._port}")

    async def stop(self) -> None:
        if self._runner is None:
            return
        await self._runner.cleanup()
        self._runner = None
        logger.debug(f"[{self._name}] Metrics server stopped")
