"""
Unit tests for shared types and events.
"""

import pytest
from feed_helpers import NOW_MS, trade_record

from hlfeed.decoder import parse_trade
from hlfeed.events import EventClass, HealthCheckFailed, Starting, Stopping, TradeReceived
from hlfeed.types import Book, Level, SubscriptionKind, SubscriptionRequest


class TestSubscriptionRequest:
    def test_to_wire(self) -> None:
        request = SubscriptionRequest(SubscriptionKind.CANDLE, "ETH", "5m")

        assert request.to_wire() == {
            "method": "subscribe",
            "subscription": {"type": "candle", "coin": "ETH", "interval": "5m"},
        }

    @pytest.mark.parametrize(
        "request_",
        [
            SubscriptionRequest(SubscriptionKind.TRADES, "BTC"),
            SubscriptionRequest(SubscriptionKind.ALL_MIDS),
            SubscriptionRequest(SubscriptionKind.USER_EVENTS, "0xabc"),
            SubscriptionRequest(SubscriptionKind.CANDLE, "SOL", "1h"),
        ],
    )
    def test_confirmation_body_rebuilds_request(self, request_: SubscriptionRequest) -> None:
        assert SubscriptionRequest.from_wire(request_.subscription_body()) == request_

    def test_describe(self) -> None:
        assert SubscriptionRequest(SubscriptionKind.TRADES, "BTC").describe() == "trades:BTC"
        candle = SubscriptionRequest(SubscriptionKind.CANDLE, "BTC", "1m")
        assert candle.describe() == "candle:BTC@1m"

    def test_unknown_kind(self) -> None:
        with pytest.raises(ValueError):
            SubscriptionRequest.from_wire({"type": "orderUpdates"})


class TestTrade:
    def test_derived_fields(self) -> None:
        trade = parse_trade(trade_record(px="100", sz="0.5", users=["0xa", "0xb"]))

        assert trade.value == 50.0
        assert trade.buyer == "0xa"
        assert trade.seller == "0xb"
        assert int(trade.datetime_utc.timestamp() * 1000) == NOW_MS

    def test_book_without_asks(self) -> None:
        book = Book(coin="BTC", time=1, bids=(Level(100.0, 1.0, 1),), asks=())

        assert book.best_bid == 100.0
        assert book.best_ask is None
        assert book.spread is None


class TestEvents:
    def test_only_trades_are_critical(self) -> None:
        trade = TradeReceived(trade=parse_trade(trade_record()))

        assert trade.critical
        assert not Starting().critical
        assert not HealthCheckFailed(reason="x").critical

    def test_event_classes(self) -> None:
        assert Starting.event_class == EventClass.LIFECYCLE
        assert TradeReceived.event_class == EventClass.DATA
        assert HealthCheckFailed.event_class == EventClass.DIAGNOSTIC

    def test_events_are_immutable(self) -> None:
        event = Stopping(reason="x")
        with pytest.raises(AttributeError):
            event.reason = "y"

    def test_name(self) -> None:
        assert Stopping().name == "Stopping"
