"""
Terminal presentation of feed events.

Trades go to ``out`` (stdout) in one of four formats; lifecycle status lines
go to ``err`` (stderr) so csv/json output stays machine readable.
"""

from __future__ import annotations

import sys
from typing import Optional, TextIO

import orjson

from hlfeed.config import OutputConfig, OutputFormat
from hlfeed.events import (
    Connected,
    Connecting,
    Disconnected,
    FeedEvent,
    HealthCheckFailed,
    NotificationReceived,
    Reconnecting,
    Starting,
    Stopping,
    SubscriptionConfirmed,
    SubscriptionSent,
    TradeReceived,
)
from hlfeed.types import Trade


class Colors:
    RESET = "\x1b[0m"
    BOLD = "\x1b[1m"
    GRAY = "\x1b[90m"
    BRIGHT_RED = "\x1b[91m"
    BRIGHT_GREEN = "\x1b[92m"
    BRIGHT_YELLOW = "\x1b[93m"
    BRIGHT_BLUE = "\x1b[94m"
    BRIGHT_MAGENTA = "\x1b[95m"
    BRIGHT_CYAN = "\x1b[96m"


_STATUS_COLORS = {
    "STARTING": Colors.BRIGHT_BLUE,
    "CONNECTING": Colors.BRIGHT_YELLOW,
    "CONNECTED": Colors.BRIGHT_GREEN,
    "SUBSCRIBING": Colors.BRIGHT_CYAN,
    "SUBSCRIBED": Colors.BRIGHT_GREEN,
    "DISCONNECTED": Colors.BRIGHT_RED,
    "RECONNECTING": Colors.BRIGHT_YELLOW,
    "STOPPING": Colors.BRIGHT_MAGENTA,
    "UNHEALTHY": Colors.BRIGHT_RED,
    "NOTICE": Colors.BRIGHT_CYAN,
}

TABLE_BORDER_TOP = "┌─────────┬──────┬─────────────┬─────────────┬─────────────┬─────────────────────────┐"
TABLE_BORDER_MID = "├─────────┼──────┼─────────────┼─────────────┼─────────────┼─────────────────────────┤"
CSV_HEADER = "#,coin,side,price,size,value,time_utc,unix_ms"


def format_time(trade: Trade) -> str:
    return trade.datetime_utc.strftime("%Y-%m-%d %H:%M:%S.%f")[:-3]


class TradeRenderer:
    """
    Renders trades and lifecycle events.

    The header is printed once, on the first subscription confirmation or
    right before the first trade, whichever comes first.
    """

    def __init__(
        self,
        config: OutputConfig,
        out: Optional[TextIO] = None,
        err: Optional[TextIO] = None,
    ) -> None:
        self._config = config
        self._out = out or sys.stdout
        self._err = err or sys.stderr
        self._trade_count = 0
        self._header_printed = False

    @property
    def trade_count(self) -> int:
        return self._trade_count

    def _c(self, code: str) -> str:
        return code if self._config.color else ""

    # --- Event dispatch ---

    def handle(self, event: FeedEvent) -> None:
        if isinstance(event, TradeReceived):
            self.render_trade(event.trade)
            return
        if isinstance(event, SubscriptionConfirmed):
            self.status("SUBSCRIBED", event.request.describe())
            self.print_header()
            return

        line = self._status_for(event)
        if line is not None:
            self.status(*line)

    def _status_for(self, event: FeedEvent) -> Optional[tuple[str, str]]:
        if isinstance(event, Starting):
            return ("STARTING", "Feed client starting")
        if isinstance(event, Connecting):
            return ("CONNECTING", event.url)
        if isinstance(event, Connected):
            return ("CONNECTED", f"session {event.session_id[:8]}")
        if isinstance(event, SubscriptionSent):
            return ("SUBSCRIBING", event.request.describe())
        if isinstance(event, Disconnected):
            return ("DISCONNECTED", event.reason)
        if isinstance(event, Reconnecting):
            return ("RECONNECTING", f"attempt {event.attempt} in {event.delay_s:.1f}s")
        if isinstance(event, Stopping):
            return ("STOPPING", event.reason)
        if isinstance(event, HealthCheckFailed):
            return ("UNHEALTHY", event.reason)
        if isinstance(event, NotificationReceived):
            return ("NOTICE", event.notification.message)
        return None

    def status(self, label: str, detail: str) -> None:
        if self._config.quiet:
            return
        color = self._c(_STATUS_COLORS.get(label, ""))
        print(f"{color}[{label}]{self._c(Colors.RESET)} {detail}", file=self._err, flush=True)

    # --- Trades ---

    def print_header(self) -> None:
        if self._header_printed or self._config.quiet or self._config.price_only:
            self._header_printed = True
            return
        self._header_printed = True
        for line in self.header_lines():
            print(line, file=self._out)

    def header_lines(self) -> list[str]:
        fmt = self._config.format
        if fmt == OutputFormat.CSV:
            return [CSV_HEADER]
        if fmt != OutputFormat.TABLE:
            return []
        gray, reset = self._c(Colors.BOLD + Colors.GRAY), self._c(Colors.RESET)
        labels = (
            f"│ {'#':<7} │ {'SIDE':<4} │ {'PRICE':<11} │ {'SIZE':<11} │ "
            f"{'VALUE':<11} │ {'TIME (UTC)':<23} │"
        )
        return [f"{gray}{TABLE_BORDER_TOP}{reset}", labels, f"{gray}{TABLE_BORDER_MID}{reset}"]

    def render_trade(self, trade: Trade) -> None:
        if not self._header_printed:
            self.print_header()
        self._trade_count += 1
        for line in self.format_trade(trade, self._trade_count):
            print(line, file=self._out, flush=True)

    def format_trade(self, trade: Trade, n: int) -> list[str]:
        if self._config.price_only:
            return [f"{trade.price:.2f}"]

        fmt = self._config.format
        if fmt == OutputFormat.CSV:
            lines = [
                f"{n},{trade.coin},{trade.side.value},{trade.price},{trade.size},"
                f"{trade.value:.6f},{format_time(trade)},{trade.time}"
            ]
        elif fmt == OutputFormat.JSON:
            lines = [orjson.dumps(self.trade_record(trade, n)).decode()]
        elif fmt == OutputFormat.MINIMAL:
            lines = [
                f"{self._side_color(trade)}{trade.side.value:<4}{self._c(Colors.RESET)} "
                f"{trade.coin} {trade.size} @ {trade.price:.2f}"
            ]
        else:
            gray, reset = self._c(Colors.GRAY), self._c(Colors.RESET)
            lines = [
                f"{gray}│{reset} {n:<7} {gray}│{reset} "
                f"{self._side_color(trade)}{trade.side.value:<4}{reset} {gray}│{reset} "
                f"{trade.price:<11.2f} {gray}│{reset} {trade.size:<11.6f} {gray}│{reset} "
                f"{trade.value:<11.2f} {gray}│{reset} {format_time(trade):<23} {gray}│{reset}"
            ]

        if self._config.verbose and fmt != OutputFormat.JSON:
            lines.append(
                f"    buyer={trade.buyer or '-'} seller={trade.seller or '-'} "
                f"tid={trade.tid} hash={trade.hash}"
            )
        return lines

    def trade_record(self, trade: Trade, n: int) -> dict:
        record = {
            "n": n,
            "coin": trade.coin,
            "side": trade.side.value,
            "price": trade.price,
            "size": trade.size,
            "value": trade.value,
            "time": trade.time,
            "tid": trade.tid,
            "hash": trade.hash,
        }
        if self._config.verbose:
            record["buyer"] = trade.buyer
            record["seller"] = trade.seller
        return record

    def _side_color(self, trade: Trade) -> str:
        return self._c(Colors.BRIGHT_GREEN if trade.is_buy else Colors.BRIGHT_RED)
