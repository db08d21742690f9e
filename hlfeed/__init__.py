"""
hlfeed: streaming market data client for the Hyperliquid websocket API.

Pipeline:
    ConnectionManager -> decode_frame -> TradeValidator -> EventBus -> consumers

Usage:
    from hlfeed import FeedRunner, build_config

    config = build_config(cli={"subscriptions": [{"kind": "trades", "coin": "ETH"}]})
    asyncio.run(FeedRunner(config).run())
"""

__version__ = "0.1.0"

from hlfeed.bus import EventBus, Subscription
from hlfeed.config import FeedConfig, build_config
from hlfeed.connection import ConnectionManager, backoff_delay
from hlfeed.decoder import DecodedFrame, decode_frame
from hlfeed.errors import (
    ConfigurationError,
    FeedError,
    ProtocolError,
    ReconnectBudgetExhausted,
    RejectReason,
    SubscriptionMismatchError,
    TransportError,
)
from hlfeed.runner import FeedRunner
from hlfeed.state import SharedState
from hlfeed.validator import TradeValidator

__all__ = [
    "ConfigurationError",
    "ConnectionManager",
    "DecodedFrame",
    "EventBus",
    "FeedConfig",
    "FeedError",
    "FeedRunner",
    "ProtocolError",
    "ReconnectBudgetExhausted",
    "RejectReason",
    "SharedState",
    "Subscription",
    "SubscriptionMismatchError",
    "TradeValidator",
    "TransportError",
    "backoff_delay",
    "build_config",
    "decode_frame",
]
