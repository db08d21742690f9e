"""
Unit tests for TradeRenderer.
"""

import io

import orjson
import pytest
from feed_helpers import NOW_MS, trade_record

from hlfeed.config import OutputConfig, OutputFormat
from hlfeed.decoder import parse_trade
from hlfeed.events import (
    Disconnected,
    Reconnecting,
    SubscriptionConfirmed,
    TradeReceived,
)
from hlfeed.render import CSV_HEADER, TradeRenderer, format_time
from hlfeed.types import SubscriptionKind, SubscriptionRequest

CONFIRMED = SubscriptionConfirmed(request=SubscriptionRequest(SubscriptionKind.TRADES, "BTC"))


def _renderer(**kwargs) -> tuple[TradeRenderer, io.StringIO, io.StringIO]:
    out, err = io.StringIO(), io.StringIO()
    config = OutputConfig(color=False, **kwargs)
    return TradeRenderer(config, out=out, err=err), out, err


def _trade(**kwargs):
    return parse_trade(trade_record(**kwargs))


class TestFormats:
    """Tests for each trade output format."""

    def test_csv(self) -> None:
        renderer, out, _ = _renderer(format=OutputFormat.CSV)

        renderer.handle(TradeReceived(trade=_trade(tid=5, px="100.5", sz="2")))

        lines = out.getvalue().splitlines()
        assert lines[0] == CSV_HEADER
        assert lines[1] == f"1,BTC,BUY,100.5,2.0,201.000000,{format_time(_trade())},{NOW_MS}"

    def test_json(self) -> None:
        renderer, out, _ = _renderer(format=OutputFormat.JSON, verbose=True)

        renderer.handle(TradeReceived(trade=_trade(tid=5, side="S")))

        record = orjson.loads(out.getvalue().splitlines()[0])
        assert record["n"] == 1
        assert record["side"] == "SELL"
        assert record["tid"] == 5
        assert record["buyer"] == "0xbuyer"

    def test_minimal(self) -> None:
        renderer, out, _ = _renderer(format=OutputFormat.MINIMAL)

        renderer.handle(TradeReceived(trade=_trade(px="97000.5", sz="0.01")))

        assert out.getvalue() == "BUY  BTC 0.01 @ 97000.50\n"

    def test_table(self) -> None:
        renderer, out, _ = _renderer(format=OutputFormat.TABLE)

        renderer.handle(CONFIRMED)
        renderer.handle(TradeReceived(trade=_trade()))

        lines = out.getvalue().splitlines()
        assert len(lines) == 4
        assert lines[0].startswith("┌")
        assert "PRICE" in lines[1]
        assert len(lines[3]) == len(lines[0])
        assert "97000.50" in lines[3]

    def test_price_only(self) -> None:
        renderer, out, _ = _renderer(format=OutputFormat.TABLE, price_only=True)

        renderer.handle(CONFIRMED)
        renderer.handle(TradeReceived(trade=_trade(px="97000.456")))

        assert out.getvalue() == "97000.46\n"

    def test_verbose_adds_participants(self) -> None:
        renderer, out, _ = _renderer(format=OutputFormat.MINIMAL, verbose=True)

        renderer.handle(TradeReceived(trade=_trade(tid=3)))

        assert "buyer=0xbuyer seller=0xseller tid=3" in out.getvalue()


class TestStatus:
    """Tests for lifecycle status lines."""

    def test_status_goes_to_err(self) -> None:
        renderer, out, err = _renderer(format=OutputFormat.CSV)

        renderer.handle(Disconnected(reason="Server closed connection"))
        renderer.handle(Reconnecting(attempt=2, delay_s=10.5))

        assert out.getvalue() == ""
        assert err.getvalue().splitlines() == [
            "[DISCONNECTED] Server closed connection",
            "[RECONNECTING] attempt 2 in 10.5s",
        ]

    def test_header_printed_once(self) -> None:
        renderer, out, _ = _renderer(format=OutputFormat.CSV)

        renderer.handle(CONFIRMED)
        renderer.handle(CONFIRMED)
        renderer.handle(TradeReceived(trade=_trade()))

        assert out.getvalue().count(CSV_HEADER) == 1

    def test_quiet_suppresses_status(self) -> None:
        renderer, out, err = _renderer(format=OutputFormat.CSV, quiet=True)

        renderer.handle(CONFIRMED)
        renderer.handle(TradeReceived(trade=_trade()))

        assert err.getvalue() == ""
        assert CSV_HEADER not in out.getvalue()
        assert renderer.trade_count == 1

    @pytest.mark.parametrize("color, expected", [(True, True), (False, False)])
    def test_color_toggle(self, color: bool, expected: bool) -> None:
        out, err = io.StringIO(), io.StringIO()
        renderer = TradeRenderer(OutputConfig(color=color), out=out, err=err)

        renderer.handle(Disconnected(reason="x"))

        assert ("\x1b[" in err.getvalue()) is expected
