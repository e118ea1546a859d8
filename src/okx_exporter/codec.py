"""Wire codec for the OKX public websocket API.

Pure functions, no I/O. Everything OKX sends numeric (prices, sizes,
timestamps) is transmitted as decimal strings, and candles are positional
arrays, so payloads are decoded field by field instead of relying on a
generic mapping.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, Optional, Union

import orjson

from .errors import DecodeError, ShortCandleArrayError
from .topics import Operation, Side, Topic
from .types import CandlePayload, Envelope, TickerPayload, TradePayload

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

# Number of leading candle array positions we consume:
# ts, open, high, low, close, volume
CANDLE_FIELDS = 6

_SIDES = frozenset(side.value for side in Side)


def parse_ts_ms(value: Any) -> Optional[datetime]:
    """
    Parse a Unix millisecond timestamp.

    JSON null and the empty string mean "unset" and return None.

    Raises:
        DecodeError: if the value is not an integer millisecond count
    """
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise DecodeError(f"invalid millisecond timestamp: {value!r}")
    if isinstance(value, int):
        ms = value
    elif isinstance(value, str):
        try:
            ms = int(value)
        except ValueError as e:
            raise DecodeError(f"invalid millisecond timestamp: {value!r}") from e
    else:
        raise DecodeError(f"invalid millisecond timestamp: {value!r}")
    try:
        return EPOCH + timedelta(milliseconds=ms)
    except (OverflowError, ValueError) as e:
        raise DecodeError(f"millisecond timestamp out of range: {value!r}") from e


def ts_to_ms(ts: datetime) -> int:
    """Convert a timestamp back to Unix milliseconds."""
    return (ts - EPOCH) // timedelta(milliseconds=1)


def _parse_float(value: Any, name: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (str, int, float)):
        raise DecodeError(f"{name} must be a decimal string, got {value!r}")
    try:
        return float(value)
    except ValueError as e:
        raise DecodeError(f"{name} is not numeric: {value!r}") from e


def _as_str(value: Any) -> str:
    return "" if value is None else str(value)


def decode_envelope(raw: Union[bytes, str]) -> Envelope:
    """
    Decode one websocket frame into an Envelope.

    Payload fragments are left as plain JSON values; use the decode_*
    functions below to turn them into typed payloads.

    Raises:
        DecodeError: if the frame is not a JSON object of the expected shape
    """
    try:
        msg = orjson.loads(raw)
    except orjson.JSONDecodeError as e:
        raise DecodeError(f"frame is not valid JSON: {e}") from e

    if not isinstance(msg, dict):
        raise DecodeError(f"frame must be a JSON object, got {type(msg).__name__}")

    arg = msg.get("arg") or {}
    if not isinstance(arg, dict):
        raise DecodeError("frame arg must be an object")

    data = msg.get("data")
    if data is None:
        data = []
    elif not isinstance(data, list):
        raise DecodeError("frame data must be an array")

    return Envelope(
        event=_as_str(msg.get("event")),
        channel=_as_str(arg.get("channel")),
        inst_id=_as_str(arg.get("instId")),
        action=_as_str(msg.get("action")),
        data=data,
        code=_as_str(msg.get("code")),
        msg=_as_str(msg.get("msg")),
    )


def decode_ticker(fragment: Any) -> TickerPayload:
    """Decode one tickers channel fragment."""
    if not isinstance(fragment, dict):
        raise DecodeError("ticker data must be an object")

    return TickerPayload(
        inst_type=_as_str(fragment.get("instType")),
        inst_id=_as_str(fragment.get("instId")),
        last=_as_str(fragment.get("last")),
        high_24h=_as_str(fragment.get("high24h")),
        low_24h=_as_str(fragment.get("low24h")),
        ts=parse_ts_ms(fragment.get("ts")),
    )


def decode_candle(fragment: Any) -> CandlePayload:
    """
    Decode one candle fragment.

    Example:
        ["1739685600000", "2709.13", "2720.65", "2706.99", "2718.45",
         "1407.871749", "3820532.8437713", "3820532.8437713", "0"]

    Only the first 6 positions are used; the rest are ignored.

    Raises:
        ShortCandleArrayError: if fewer than 6 values are present
        DecodeError: if any of the used values is not numeric
    """
    if not isinstance(fragment, list):
        raise DecodeError("candle data must be an array")
    if len(fragment) < CANDLE_FIELDS:
        raise ShortCandleArrayError(len(fragment))

    ts = parse_ts_ms(fragment[0])
    if ts is None:
        raise DecodeError("candle timestamp must be set")

    return CandlePayload(
        ts=ts,
        open=_parse_float(fragment[1], "candle open"),
        high=_parse_float(fragment[2], "candle high"),
        low=_parse_float(fragment[3], "candle low"),
        close=_parse_float(fragment[4], "candle close"),
        volume=_parse_float(fragment[5], "candle volume"),
    )


def decode_trade(fragment: Any) -> TradePayload:
    """Decode one aggregated-trades fragment."""
    if not isinstance(fragment, dict):
        raise DecodeError("trade data must be an object")

    side = _as_str(fragment.get("side"))
    if side not in _SIDES:
        raise DecodeError(f"unknown trade side: {side!r}")

    return TradePayload(
        first_id=_as_str(fragment.get("fId")),
        last_id=_as_str(fragment.get("lId")),
        inst_id=_as_str(fragment.get("instId")),
        price=_as_str(fragment.get("px")),
        side=side,
        size=_parse_float(fragment.get("sz"), "trade size"),
        ts=parse_ts_ms(fragment.get("ts")),
    )


def encode_request(op: Operation, topics: Iterable[Topic]) -> bytes:
    """Encode an op request (subscribe/unsubscribe) for the given topics."""
    return orjson.dumps({
        "op": op.value,
        "args": [topic.to_arg() for topic in topics],
    })


def encode_subscribe(topics: Iterable[Topic]) -> bytes:
    return encode_request(Operation.SUBSCRIBE, topics)


def decode_request(raw: Union[bytes, str]) -> tuple[Operation, list[Topic]]:
    """Decode an op request back into its operation and topics."""
    try:
        msg = orjson.loads(raw)
        op = Operation(msg["op"])
        topics = [Topic(arg["channel"], arg["instId"]) for arg in msg["args"]]
    except (orjson.JSONDecodeError, KeyError, TypeError, ValueError) as e:
        raise DecodeError(f"invalid request: {e}") from e
    return op, topics
