"""Shared fakes for exporter tests."""

import asyncio
import time
from typing import Any, Iterable, Optional

import orjson
import pytest
from websockets.exceptions import ConnectionClosedError, ConnectionClosedOK
from websockets.frames import Close

from okx_exporter.codec import decode_request
from okx_exporter.topics import INSTRUMENT_ETH_USDT


class RecordingSink:
    """MetricSink that records every write in order."""

    def __init__(self):
        self.gauges: dict[tuple, float] = {}
        self.observations: dict[tuple, list[float]] = {}
        self.writes: list[tuple] = []

    @staticmethod
    def _key(name, labels) -> tuple:
        return (name,) + tuple(sorted(labels.items()))

    def set_gauge(self, name, labels, value):
        self.gauges[self._key(name, labels)] = value
        self.writes.append(("gauge", name, dict(labels), value))

    def observe_histogram(self, name, labels, value):
        self.observations.setdefault(self._key(name, labels), []).append(value)
        self.writes.append(("histogram", name, dict(labels), value))

    def gauge(self, name, **labels) -> Optional[float]:
        return self.gauges.get(self._key(name, labels))

    def observed(self, name, **labels) -> list[float]:
        return self.observations.get(self._key(name, labels), [])


def closed_error(code: Optional[int], reason: str = "bye") -> ConnectionClosedError:
    """A websockets close exception; code None means no close frame was received."""
    rcvd = Close(code, reason) if code is not None else None
    return ConnectionClosedError(rcvd, None)


class FakeWebSocket:
    """
    In-memory stand-in for a websockets client connection.

    Frames (or exceptions to raise) are fed with feed(); recv() blocks until
    one is available or the socket is closed.
    """

    def __init__(
        self,
        frames: Iterable[Any] = (),
        auto_pong: bool = True,
        ping_error: Optional[BaseException] = None,
        send_error: Optional[BaseException] = None,
        ping_delay: float = 0.0,
    ):
        self.sent: list[str] = []
        self.pings = 0
        self.closed = False
        self.auto_pong = auto_pong
        self.ping_error = ping_error
        self.send_error = send_error
        self.ping_delay = ping_delay

        self._incoming: asyncio.Queue = asyncio.Queue()
        for frame in frames:
            self.feed(frame)

    def feed(self, frame: Any) -> None:
        self._incoming.put_nowait(frame)

    async def recv(self) -> Any:
        if self.closed:
            raise ConnectionClosedOK(Close(1000, ""), Close(1000, ""), True)
        item = await self._incoming.get()
        if isinstance(item, BaseException):
            raise item
        return item

    async def send(self, message: str) -> None:
        if self.send_error is not None:
            raise self.send_error
        self.sent.append(message)

    async def ping(self) -> asyncio.Future:
        self.pings += 1
        if self.ping_delay:
            await asyncio.sleep(self.ping_delay)
        if self.ping_error is not None:
            raise self.ping_error
        waiter = asyncio.get_running_loop().create_future()
        if self.auto_pong:
            waiter.set_result(0.0)
        return waiter

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._incoming.put_nowait(ConnectionClosedOK(Close(1000, ""), Close(1000, ""), True))

    def sent_topics(self) -> list[tuple[str, str]]:
        """(channel, instId) pairs of every request sent, in order."""
        pairs = []
        for message in self.sent:
            _, topics = decode_request(message)
            pairs.extend((topic.channel, topic.inst_id) for topic in topics)
        return pairs


def ticker_frame(last: str, ts_ms: Optional[int] = None, inst_id: str = INSTRUMENT_ETH_USDT) -> bytes:
    if ts_ms is None:
        ts_ms = int(time.time() * 1000)
    return orjson.dumps({
        "arg": {"channel": "tickers", "instId": inst_id},
        "data": [{
            "instType": "SPOT",
            "instId": inst_id,
            "last": last,
            "high24h": "2750.1",
            "low24h": "2650.4",
            "ts": str(ts_ms),
        }],
    })


def candle_frame(values: list, inst_id: str = INSTRUMENT_ETH_USDT) -> bytes:
    return orjson.dumps({
        "arg": {"channel": "candle1H", "instId": inst_id},
        "data": [values],
    })


def trade_fragment(size: str, side: str = "buy", inst_id: str = INSTRUMENT_ETH_USDT) -> dict:
    return {
        "fId": "4031351",
        "lId": "4031352",
        "instId": inst_id,
        "px": "2712.01",
        "side": side,
        "sz": size,
        "ts": "1739686000000",
    }


def trades_frame(fragments: list, inst_id: str = INSTRUMENT_ETH_USDT) -> bytes:
    return orjson.dumps({
        "arg": {"channel": "aggregated-trades", "instId": inst_id},
        "data": fragments,
    })


def subscribe_ack(channel: str, inst_id: str = INSTRUMENT_ETH_USDT) -> bytes:
    return orjson.dumps({
        "event": "subscribe",
        "arg": {"channel": channel, "instId": inst_id},
        "connId": "a4d3ae55",
    })


async def wait_until(predicate, timeout: float = 2.0, interval: float = 0.005) -> None:
    """Poll predicate until it is true or fail after timeout."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(interval)


@pytest.fixture
def sink():
    """Fresh recording sink."""
    return RecordingSink()
