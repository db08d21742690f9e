"""hlfeed CLI entrypoint.

Streams venue market data to the terminal.

Exit codes: 0 clean shutdown, 1 reconnect budget exhausted, 2 invalid configuration.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Any, Optional

from hlfeed import __version__
from hlfeed.config import FeedConfig, LogLevel, OutputFormat, build_config
from hlfeed.errors import ConfigurationError, ReconnectBudgetExhausted
from hlfeed.logging_setup import setup_logging
from hlfeed.runner import FeedRunner
from hlfeed.types import SubscriptionKind

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_BUDGET_EXHAUSTED = 1
EXIT_CONFIG_ERROR = 2


def build_parser() -> argparse.ArgumentParser:
    """
    Return the CLI argument parser.

    Every option defaults to None so that only flags given on the command
    line override the config file.
    """
    p = argparse.ArgumentParser(prog="hlfeed", description="Venue websocket market data client")
    p.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    sub = p.add_argument_group("subscription")
    sub.add_argument(
        "--coin", action="append", default=None, help="Coin symbol (may be repeated)"
    )
    sub.add_argument(
        "--kind",
        choices=[k.value for k in SubscriptionKind],
        default=None,
        help="Subscription kind (default: trades)",
    )
    sub.add_argument("--interval", default=None, help="Candle interval, e.g. 1m")
    sub.add_argument(
        "--user", default=None, help="User address; requires a user --kind such as userFills"
    )

    conn = p.add_argument_group("connection")
    conn.add_argument("--url", default=None, help="Websocket endpoint (wss://)")
    conn.add_argument("--timeout", type=float, default=None, help="Connect timeout in seconds")
    conn.add_argument("--read-timeout", type=float, default=None, help="Idle-read timeout")
    conn.add_argument("--reconnect-delay", type=float, default=None, help="Backoff base delay")
    conn.add_argument(
        "--max-reconnects", type=int, default=None, help="Give up after N failures (0 = never)"
    )

    bus = p.add_argument_group("bus")
    bus.add_argument("--bus-capacity", type=int, default=None)
    bus.add_argument("--critical-wait-ms", type=float, default=None)

    mon = p.add_argument_group("monitoring")
    mon.add_argument("--metrics", action="store_const", const=True, default=None)
    mon.add_argument("--metrics-port", type=int, default=None)
    mon.add_argument("--health-check-interval", type=float, default=None)

    out = p.add_argument_group("output")
    out.add_argument("--format", choices=[f.value for f in OutputFormat], default=None)
    out.add_argument("--no-color", action="store_const", const=True, default=None)
    out.add_argument("--quiet", action="store_const", const=True, default=None)
    out.add_argument("--verbose-trades", action="store_const", const=True, default=None)
    out.add_argument("--price-only", action="store_const", const=True, default=None)
    out.add_argument("--max-trades", type=int, default=None, help="Stop after N trades")
    out.add_argument("--raw-messages", action="store_const", const=True, default=None)

    log = p.add_argument_group("logging")
    log.add_argument("--log-level", choices=[lv.value for lv in LogLevel], default=None)
    log.add_argument("--json-logs", action="store_const", const=True, default=None)

    p.add_argument("--config", type=Path, default=None, help="TOML config file")
    p.add_argument(
        "--set",
        dest="config_overrides",
        action="append",  # builds a list of KEY=VALUE strings
        default=[],
        metavar="KEY=VALUE",
        help="Override a config entry, e.g. connection.max_reconnects=3 (may be repeated)",
    )
    return p


def _subscriptions_from_args(args: argparse.Namespace) -> Optional[list[dict[str, Any]]]:
    if args.coin is None and args.kind is None and args.user is None and args.interval is None:
        return None
    kind = SubscriptionKind(args.kind or SubscriptionKind.TRADES.value)
    target_field = kind.target_field
    if args.user is not None and target_field != "user":
        raise ConfigurationError(
            f"--user only applies to user channels, not {kind.value}",
            field="user",
            value=args.user,
        )
    if target_field == "user":
        if args.coin is not None:
            raise ConfigurationError(
                f"--coin does not apply to {kind.value}", field="coin", value=args.coin
            )
        return [{"kind": kind.value, "user": args.user}]
    if target_field is None:
        return [{"kind": kind.value}]
    entries = []
    for coin in args.coin or ["BTC"]:
        entry: dict[str, Any] = {"kind": kind.value, "coin": coin}
        if args.interval is not None:
            entry["interval"] = args.interval
        entries.append(entry)
    return entries


def cli_layer(args: argparse.Namespace) -> dict[str, Any]:
    """Map parsed flags onto the nested config layout, skipping unset flags."""
    mapping = {
        ("connection", "url"): args.url,
        ("connection", "connect_timeout_s"): args.timeout,
        ("connection", "read_timeout_s"): args.read_timeout,
        ("connection", "reconnect_base_delay_s"): args.reconnect_delay,
        ("connection", "max_reconnects"): args.max_reconnects,
        ("bus", "capacity"): args.bus_capacity,
        ("bus", "critical_wait_ms"): args.critical_wait_ms,
        ("metrics", "enabled"): args.metrics,
        ("metrics", "port"): args.metrics_port,
        ("health", "check_interval_s"): args.health_check_interval,
        ("output", "format"): args.format,
        ("output", "color"): False if args.no_color else None,
        ("output", "quiet"): args.quiet,
        ("output", "verbose"): args.verbose_trades,
        ("output", "price_only"): args.price_only,
        ("output", "max_trades"): args.max_trades,
        ("output", "emit_raw_messages"): args.raw_messages,
        ("logging", "level"): args.log_level,
        ("logging", "json_logs"): args.json_logs,
    }
    layer: dict[str, Any] = {}
    for (section, key), value in mapping.items():
        if value is not None:
            layer.setdefault(section, {})[key] = value

    subscriptions = _subscriptions_from_args(args)
    if subscriptions is not None:
        layer["subscriptions"] = subscriptions
    return layer


async def _run(config: FeedConfig) -> str:
    runner = FeedRunner(config)
    return await runner.run()


def main(argv: list[str] | None = None) -> int:
    """CLI entrypoint wrapper compatible with setuptools scripts."""
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = build_config(
            file=args.config, cli=cli_layer(args), overrides=args.config_overrides
        )
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    setup_logging(config.logging.level.value, config.logging.json_logs)
    logger.info(f"Starting hlfeed v{__version__}")

    try:
        reason = asyncio.run(_run(config))
    except ReconnectBudgetExhausted as e:
        logger.error(f"Feed stopped: {e}")
        return EXIT_BUDGET_EXHAUSTED
    except KeyboardInterrupt:
        reason = "interrupted"

    logger.info(f"Shutdown complete ({reason})")
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
