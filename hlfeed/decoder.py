"""
Protocol decoder for venue websocket frames.

The venue multiplexes every message shape over one socket and the shapes are
not reliably tagged: a data envelope carries a ``channel`` string, but bare
arrays of trades or candles carry nothing at all. Frames are therefore
resolved by structural probing in a fixed priority order, most specific shape
first:

    1. subscriptionResponse envelope   {"channel", "data": {"method", "subscription"}}
    2. trades envelope                 {"channel", "data": [trade, ...]}
    3. l2Book envelope                 {"channel", "data": {"coin", "levels", "time"}}
    4. bbo envelope                    {"channel", "data": {"coin", "time", "bbo"}}
    5. allMids envelope                {"channel", "data": {"mids"}}
    6. candle envelope                 {"channel", "data": candle | [candle, ...]}
    7. user event envelope             {"channel", "data": {"fills"|"funding"|...}}
    8. notification envelope           {"channel", "data": {"notification"}}
    9. bare trade array                [trade, ...]
   10. bare candle array               [candle, ...]
   11. heartbeat                       {"channel"} without data

The first probe that matches wins. The order is part of the wire contract:
moving a permissive probe ahead of a specific one silently misclassifies
frames.

A batch probe matches on its channel tag, or when at least one element has
the record shape. Broken elements are left for the batch decoder to drop.

Batch shapes decode element by element. A malformed element (bad number,
unknown side) is dropped and reported in ``DecodedFrame.dropped``; its
siblings are still emitted.

Example trade frame:
{
    "channel": "trades",
    "data": [
        {
            "coin": "BTC",
            "side": "B",
            "px": "97123.5",
            "sz": "0.015",
            "time": 1735689600123,
            "hash": "0xabc...",
            "tid": 912837465,
            "users": ["0xbuyer...", "0xseller..."]
        }
    ]
}
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Optional, TypeVar, Union

import orjson

from hlfeed.errors import ProtocolError, ProtocolErrorReason
from hlfeed.events import (
    AllMidsUpdated,
    BboUpdated,
    BookUpdated,
    CandleReceived,
    FeedEvent,
    NotificationReceived,
    SubscriptionConfirmed,
    TradeReceived,
    UserEventReceived,
)
from hlfeed.types import (
    AllMids,
    Bbo,
    Book,
    Candle,
    Fill,
    Level,
    Liquidation,
    MessageShape,
    NonUserCancel,
    Notification,
    Side,
    SubscriptionRequest,
    Trade,
    UserEvent,
    UserEventKind,
    UserFunding,
)

T = TypeVar("T")

TRADE_KEYS = ("coin", "side", "px", "sz", "time", "hash", "tid")
CANDLE_KEYS = ("t", "T", "s", "i", "o", "c", "h", "l", "v", "n")
LEVEL_KEYS = ("px", "sz", "n")
USER_EVENT_KEYS = tuple(kind.value for kind in UserEventKind)


@dataclass(frozen=True, slots=True)
class DecodedFrame:
    """Result of decoding one frame."""

    shape: MessageShape
    events: tuple[FeedEvent, ...] = ()
    dropped: tuple[ProtocolError, ...] = ()  # malformed batch elements

    @property
    def malformed(self) -> int:
        return len(self.dropped)


# --- Field conversion ---


def _safe_float(value: Any, field_name: str, *, non_negative: bool = True) -> float:
    """Convert a numeric (usually quoted) wire field to a finite float."""
    if isinstance(value, bool) or not isinstance(value, (str, int, float)):
        raise ProtocolError(
            f"Invalid numeric value for {field_name}: {value!r}",
            reason=ProtocolErrorReason.MALFORMED_NUMERIC,
            field=field_name,
        )
    try:
        result = float(value)
    except ValueError as e:
        raise ProtocolError(
            f"Invalid numeric value for {field_name}: {value!r}",
            reason=ProtocolErrorReason.MALFORMED_NUMERIC,
            field=field_name,
        ) from e
    if not math.isfinite(result) or (non_negative and result < 0):
        raise ProtocolError(
            f"Out of range value for {field_name}: {value!r}",
            reason=ProtocolErrorReason.MALFORMED_NUMERIC,
            field=field_name,
        )
    return result


def _safe_int(value: Any, field_name: str) -> int:
    """Convert an integer wire field (number or digit string)."""
    if isinstance(value, bool):
        raise ProtocolError(
            f"Invalid integer value for {field_name}: {value!r}",
            reason=ProtocolErrorReason.MALFORMED_NUMERIC,
            field=field_name,
        )
    if isinstance(value, int):
        return value
    try:
        return int(value)
    except (ValueError, TypeError) as e:
        raise ProtocolError(
            f"Invalid integer value for {field_name}: {value!r}",
            reason=ProtocolErrorReason.MALFORMED_NUMERIC,
            field=field_name,
        ) from e


def _require(data: dict[str, Any], key: str, expected: str) -> Any:
    if not isinstance(data, dict):
        raise ProtocolError(
            f"Expected a {expected} object, got {type(data).__name__}",
            reason=ProtocolErrorReason.MISSING_FIELD,
            field=key,
        )
    try:
        return data[key]
    except KeyError as e:
        raise ProtocolError(
            f"Missing required {expected} field: {key}",
            reason=ProtocolErrorReason.MISSING_FIELD,
            field=key,
        ) from e


# --- Structural probes ---


def _has_keys(obj: Any, keys: Iterable[str]) -> bool:
    return isinstance(obj, dict) and all(k in obj for k in keys)


def _any_has_keys(obj: Any, keys: Iterable[str]) -> bool:
    keys = tuple(keys)
    return isinstance(obj, list) and any(_has_keys(item, keys) for item in obj)


def _channel(obj: Any) -> Optional[str]:
    if isinstance(obj, dict) and isinstance(obj.get("channel"), str):
        return obj["channel"]
    return None


def _envelope_data(obj: Any) -> Any:
    """Return the ``data`` member of a channel envelope, or None."""
    if _channel(obj) is not None and "data" in obj:
        return obj["data"]
    return None


def _probe_subscription_response(obj: Any) -> bool:
    data = _envelope_data(obj)
    return _has_keys(data, ("method", "subscription")) and isinstance(
        data["subscription"], dict
    )


def _probe_trades(obj: Any) -> bool:
    data = _envelope_data(obj)
    if not isinstance(data, list):
        return False
    return not data or _channel(obj) == "trades" or _any_has_keys(data, TRADE_KEYS)


def _probe_book(obj: Any) -> bool:
    data = _envelope_data(obj)
    return (
        _has_keys(data, ("coin", "levels", "time"))
        and isinstance(data["levels"], list)
        and len(data["levels"]) == 2
    )


def _probe_bbo(obj: Any) -> bool:
    data = _envelope_data(obj)
    return (
        _has_keys(data, ("coin", "time", "bbo"))
        and isinstance(data["bbo"], list)
        and len(data["bbo"]) == 2
    )


def _probe_all_mids(obj: Any) -> bool:
    data = _envelope_data(obj)
    return _has_keys(data, ("mids",)) and isinstance(data["mids"], dict)


def _probe_candles(obj: Any) -> bool:
    data = _envelope_data(obj)
    if isinstance(data, list):
        return _channel(obj) == "candle" or _any_has_keys(data, CANDLE_KEYS)
    return _has_keys(data, CANDLE_KEYS)


def _probe_user_event(obj: Any) -> bool:
    data = _envelope_data(obj)
    return isinstance(data, dict) and sum(1 for k in USER_EVENT_KEYS if k in data) == 1


def _probe_notification(obj: Any) -> bool:
    data = _envelope_data(obj)
    return _has_keys(data, ("notification",)) and isinstance(data["notification"], str)


def _probe_bare_trades(obj: Any) -> bool:
    return isinstance(obj, list) and (not obj or _any_has_keys(obj, TRADE_KEYS))


def _probe_bare_candles(obj: Any) -> bool:
    return _any_has_keys(obj, CANDLE_KEYS)


def _probe_heartbeat(obj: Any) -> bool:
    return _channel(obj) is not None and "data" not in obj


# --- Record parsers ---


def parse_trade(data: dict[str, Any]) -> Trade:
    """Parse one trade record. Raises ProtocolError on a bad side or number."""
    side = Side.parse(data.get("side"))
    if side is None:
        raise ProtocolError(
            f"Invalid trade side: {data.get('side')!r}",
            reason=ProtocolErrorReason.INVALID_SIDE,
            field="side",
        )
    users_raw = data.get("users") or []
    if not isinstance(users_raw, list):
        users_raw = []
    return Trade(
        coin=str(_require(data, "coin", "trade")),
        side=side,
        price=_safe_float(_require(data, "px", "trade"), "px"),
        size=_safe_float(_require(data, "sz", "trade"), "sz"),
        time=_safe_int(_require(data, "time", "trade"), "time"),
        tid=_safe_int(_require(data, "tid", "trade"), "tid"),
        hash=str(_require(data, "hash", "trade")),
        users=tuple(str(u) for u in users_raw[:2]),
    )


def _parse_level(data: Any, field_name: str) -> Level:
    if not _has_keys(data, LEVEL_KEYS):
        raise ProtocolError(
            f"Invalid {field_name} level: {data!r}",
            reason=ProtocolErrorReason.MISSING_FIELD,
            field=field_name,
        )
    return Level(
        price=_safe_float(data["px"], f"{field_name}.px"),
        size=_safe_float(data["sz"], f"{field_name}.sz"),
        orders=_safe_int(data["n"], f"{field_name}.n"),
    )


def parse_book(data: dict[str, Any]) -> Book:
    bids_raw, asks_raw = data["levels"]
    if not isinstance(bids_raw, list) or not isinstance(asks_raw, list):
        raise ProtocolError(
            "Book levels must be two lists",
            reason=ProtocolErrorReason.MISSING_FIELD,
            field="levels",
        )
    return Book(
        coin=str(data["coin"]),
        time=_safe_int(data["time"], "time"),
        bids=tuple(_parse_level(level, "bid") for level in bids_raw),
        asks=tuple(_parse_level(level, "ask") for level in asks_raw),
    )


def parse_bbo(data: dict[str, Any]) -> Bbo:
    bid_raw, ask_raw = data["bbo"]
    return Bbo(
        coin=str(data["coin"]),
        time=_safe_int(data["time"], "time"),
        bid=_parse_level(bid_raw, "bid") if bid_raw is not None else None,
        ask=_parse_level(ask_raw, "ask") if ask_raw is not None else None,
    )


def parse_all_mids(data: dict[str, Any]) -> AllMids:
    return AllMids(
        mids=tuple(
            (str(coin), _safe_float(px, f"mids.{coin}")) for coin, px in data["mids"].items()
        )
    )


def parse_candle(data: dict[str, Any]) -> Candle:
    return Candle(
        coin=str(data["s"]),
        interval=str(data["i"]),
        open_time=_safe_int(data["t"], "t"),
        close_time=_safe_int(data["T"], "T"),
        open=_safe_float(data["o"], "o"),
        high=_safe_float(data["h"], "h"),
        low=_safe_float(data["l"], "l"),
        close=_safe_float(data["c"], "c"),
        volume=_safe_float(data["v"], "v"),
        trades=_safe_int(data["n"], "n"),
    )


def parse_fill(data: dict[str, Any]) -> Fill:
    side = Side.parse(data.get("side"))
    if side is None:
        raise ProtocolError(
            f"Invalid fill side: {data.get('side')!r}",
            reason=ProtocolErrorReason.INVALID_SIDE,
            field="side",
        )
    return Fill(
        coin=str(_require(data, "coin", "fill")),
        price=_safe_float(_require(data, "px", "fill"), "px"),
        size=_safe_float(_require(data, "sz", "fill"), "sz"),
        side=side,
        time=_safe_int(_require(data, "time", "fill"), "time"),
        oid=_safe_int(_require(data, "oid", "fill"), "oid"),
        tid=_safe_int(_require(data, "tid", "fill"), "tid"),
        hash=str(_require(data, "hash", "fill")),
        direction=str(data.get("dir", "")),
        closed_pnl=_safe_float(data.get("closedPnl", "0"), "closedPnl", non_negative=False),
        fee=_safe_float(data.get("fee", "0"), "fee", non_negative=False),
        fee_token=str(data.get("feeToken", "")),
        crossed=bool(data.get("crossed", False)),
        start_position=_safe_float(
            data.get("startPosition", "0"), "startPosition", non_negative=False
        ),
    )


def _collect(
    records: list[Any], parse: Callable[[dict[str, Any]], T]
) -> tuple[list[T], list[ProtocolError]]:
    """Parse every record, keeping the good ones and the errors for the bad ones."""
    parsed: list[T] = []
    errors: list[ProtocolError] = []
    for record in records:
        if not isinstance(record, dict):
            errors.append(
                ProtocolError(
                    f"Expected an object in batch, got {type(record).__name__}",
                    reason=ProtocolErrorReason.MISSING_FIELD,
                )
            )
            continue
        try:
            parsed.append(parse(record))
        except ProtocolError as e:
            errors.append(e)
    return parsed, errors


def _batch(data: dict[str, Any], key: str) -> list[Any]:
    value = data[key]
    if value is None:
        return []
    if not isinstance(value, list):
        raise ProtocolError(
            f"Expected a list for {key}, got {type(value).__name__}",
            reason=ProtocolErrorReason.MISSING_FIELD,
            field=key,
        )
    return value


def parse_user_event(data: dict[str, Any]) -> tuple[UserEvent, list[ProtocolError]]:
    if "fills" in data:
        fills, errors = _collect(_batch(data, "fills"), parse_fill)
        return UserEvent(kind=UserEventKind.FILLS, fills=tuple(fills)), errors
    if "funding" in data:
        f = data["funding"]
        funding = UserFunding(
            coin=str(_require(f, "coin", "funding")),
            time=_safe_int(_require(f, "time", "funding"), "time"),
            usdc=_safe_float(_require(f, "usdc", "funding"), "usdc", non_negative=False),
            szi=_safe_float(_require(f, "szi", "funding"), "szi", non_negative=False),
            funding_rate=_safe_float(
                _require(f, "fundingRate", "funding"), "fundingRate", non_negative=False
            ),
        )
        return UserEvent(kind=UserEventKind.FUNDING, funding=funding), []
    if "liquidation" in data:
        liq = data["liquidation"]
        liquidation = Liquidation(
            lid=_safe_int(_require(liq, "lid", "liquidation"), "lid"),
            liquidator=str(_require(liq, "liquidator", "liquidation")),
            liquidated_user=str(_require(liq, "liquidated_user", "liquidation")),
            liquidated_ntl_pos=_safe_float(
                _require(liq, "liquidated_ntl_pos", "liquidation"),
                "liquidated_ntl_pos",
                non_negative=False,
            ),
            liquidated_account_value=_safe_float(
                _require(liq, "liquidated_account_value", "liquidation"),
                "liquidated_account_value",
                non_negative=False,
            ),
        )
        return UserEvent(kind=UserEventKind.LIQUIDATION, liquidation=liquidation), []

    cancels, errors = _collect(
        _batch(data, "nonUserCancel"),
        lambda c: NonUserCancel(
            coin=str(_require(c, "coin", "cancel")),
            oid=_safe_int(_require(c, "oid", "cancel"), "oid"),
        ),
    )
    return UserEvent(kind=UserEventKind.NON_USER_CANCEL, cancels=tuple(cancels)), errors


# --- Shape decoders ---


def _decode_subscription_response(obj: dict[str, Any]) -> DecodedFrame:
    body = obj["data"]["subscription"]
    try:
        request = SubscriptionRequest.from_wire(body)
    except (KeyError, ValueError) as e:
        raise ProtocolError(
            f"Unknown subscription in confirmation: {body!r}",
            reason=ProtocolErrorReason.UNRECOGNIZED_FRAME,
            field="subscription",
        ) from e
    return DecodedFrame(
        shape=MessageShape.SUBSCRIPTION_RESPONSE,
        events=(SubscriptionConfirmed(request=request),),
    )


def _decode_trade_batch(records: list[Any], shape: MessageShape) -> DecodedFrame:
    trades, errors = _collect(records, parse_trade)
    return DecodedFrame(
        shape=shape,
        events=tuple(TradeReceived(trade=t) for t in trades),
        dropped=tuple(errors),
    )


def _decode_candle_batch(records: list[Any], shape: MessageShape) -> DecodedFrame:
    candles, errors = _collect(records, parse_candle)
    return DecodedFrame(
        shape=shape,
        events=tuple(CandleReceived(candle=c) for c in candles),
        dropped=tuple(errors),
    )


def _decode_candles(obj: dict[str, Any]) -> DecodedFrame:
    data = obj["data"]
    records = data if isinstance(data, list) else [data]
    return _decode_candle_batch(records, MessageShape.CANDLES)


def _decode_user_event(obj: dict[str, Any]) -> DecodedFrame:
    event, errors = parse_user_event(obj["data"])
    return DecodedFrame(
        shape=MessageShape.USER_EVENT,
        events=(UserEventReceived(event=event),),
        dropped=tuple(errors),
    )


_Probe = Callable[[Any], bool]
_Decode = Callable[[Any], DecodedFrame]

# Match priority. Order is a contract; see module docstring.
SHAPE_PRIORITY: tuple[tuple[MessageShape, _Probe, _Decode], ...] = (
    (
        MessageShape.SUBSCRIPTION_RESPONSE,
        _probe_subscription_response,
        _decode_subscription_response,
    ),
    (
        MessageShape.TRADES,
        _probe_trades,
        lambda obj: _decode_trade_batch(obj["data"], MessageShape.TRADES),
    ),
    (
        MessageShape.BOOK,
        _probe_book,
        lambda obj: DecodedFrame(
            shape=MessageShape.BOOK, events=(BookUpdated(book=parse_book(obj["data"])),)
        ),
    ),
    (
        MessageShape.BBO,
        _probe_bbo,
        lambda obj: DecodedFrame(
            shape=MessageShape.BBO, events=(BboUpdated(bbo=parse_bbo(obj["data"])),)
        ),
    ),
    (
        MessageShape.ALL_MIDS,
        _probe_all_mids,
        lambda obj: DecodedFrame(
            shape=MessageShape.ALL_MIDS,
            events=(AllMidsUpdated(mids=parse_all_mids(obj["data"])),),
        ),
    ),
    (MessageShape.CANDLES, _probe_candles, _decode_candles),
    (MessageShape.USER_EVENT, _probe_user_event, _decode_user_event),
    (
        MessageShape.NOTIFICATION,
        _probe_notification,
        lambda obj: DecodedFrame(
            shape=MessageShape.NOTIFICATION,
            events=(
                NotificationReceived(
                    notification=Notification(message=obj["data"]["notification"])
                ),
            ),
        ),
    ),
    (
        MessageShape.BARE_TRADES,
        _probe_bare_trades,
        lambda obj: _decode_trade_batch(obj, MessageShape.BARE_TRADES),
    ),
    (
        MessageShape.BARE_CANDLES,
        _probe_bare_candles,
        lambda obj: _decode_candle_batch(obj, MessageShape.BARE_CANDLES),
    ),
    (
        MessageShape.HEARTBEAT,
        _probe_heartbeat,
        lambda obj: DecodedFrame(shape=MessageShape.HEARTBEAT),
    ),
)


def classify(obj: Any) -> Optional[MessageShape]:
    """Return the first shape whose probe accepts ``obj``, or None."""
    for shape, probe, _ in SHAPE_PRIORITY:
        if probe(obj):
            return shape
    return None


def decode_frame(raw: Union[str, bytes]) -> DecodedFrame:
    """
    Decode one text frame into typed events.

    Pure: identical input always yields equal output.

    Raises:
        ProtocolError: invalid JSON, an unrecognized shape, or a malformed
            single-record frame. The caller drops the frame and counts it.
    """
    try:
        obj = orjson.loads(raw)
    except orjson.JSONDecodeError as e:
        raise ProtocolError(
            f"Frame is not valid JSON: {e}",
            reason=ProtocolErrorReason.INVALID_JSON,
        ) from e

    for shape, probe, decode in SHAPE_PRIORITY:
        if probe(obj):
            return decode(obj)

    details: dict[str, Any] = {}
    if isinstance(obj, dict):
        details["keys"] = sorted(obj.keys())[:5]
        if isinstance(obj.get("channel"), str):
            details["channel"] = obj["channel"]
    else:
        details["type"] = type(obj).__name__
    raise ProtocolError(
        "Unrecognized frame shape",
        reason=ProtocolErrorReason.UNRECOGNIZED_FRAME,
        details=details,
    )
