"""Tests for the collector supervisor."""

import asyncio
import time

import pytest

from okx_exporter import metrics
from okx_exporter.collector import Collector, ExponentialBackoff
from okx_exporter.connection import FeedConnection
from okx_exporter.errors import ConnectError, DecodeError, ProcessError, StreamClosed
from okx_exporter.processor import MessageProcessor
from okx_exporter.topics import required_topics
from okx_exporter.types import CollectorState

from conftest import (
    FakeWebSocket,
    candle_frame,
    closed_error,
    subscribe_ack,
    ticker_frame,
    trade_fragment,
    trades_frame,
    wait_until,
)

REQUIRED = [
    ("tickers", "ETH-USDT"),
    ("candle1H", "ETH-USDT"),
    ("aggregated-trades", "ETH-USDT"),
]


class ScriptedConnector:
    """
    Connector that hands out prepared fake sockets in order.

    An exception in the script is raised instead of connecting.
    """

    def __init__(self, script, read_timeout=1.0, write_timeout=1.0):
        self.script = list(script)
        self.read_timeout = read_timeout
        self.write_timeout = write_timeout
        self.calls = 0
        self.sockets: list[FakeWebSocket] = []

    async def __call__(self) -> FeedConnection:
        self.calls += 1
        if not self.script:
            raise ConnectError("no more connections")
        item = self.script.pop(0)
        if isinstance(item, BaseException):
            raise item

        self.sockets.append(item)
        conn = FeedConnection(item, read_timeout=self.read_timeout, write_timeout=self.write_timeout)
        await conn.handshake(required_topics("ETH-USDT"))
        return conn


def make_collector(sink, connector, ping_interval=10.0, **kwargs) -> Collector:
    return Collector(
        processor=MessageProcessor(sink),
        topics=required_topics("ETH-USDT"),
        connector=connector,
        ping_interval=ping_interval,
        backoff=ExponentialBackoff(0, 0),
        drain_timeout=1.0,
        **kwargs,
    )


class TestExponentialBackoff:
    """Tests for ExponentialBackoff."""

    def test_doubles_up_to_max(self):
        """Test delays double and stop at the cap."""
        backoff = ExponentialBackoff(min_seconds=1.0, max_seconds=5.0)
        assert [backoff.next() for _ in range(5)] == [1.0, 2.0, 4.0, 5.0, 5.0]

    def test_long_outage_stays_capped(self):
        """Test many failures in a row keep returning the cap."""
        backoff = ExponentialBackoff(min_seconds=1.0, max_seconds=60.0)
        for _ in range(2000):
            backoff.next()
        assert backoff.next() == 60.0

    def test_reset(self):
        """Test reset returns to the minimum."""
        backoff = ExponentialBackoff(min_seconds=1.0, max_seconds=60.0)
        backoff.next()
        backoff.next()
        backoff.reset()
        assert backoff.next() == 1.0


class TestCloseClassification:
    """Tests for reconnect vs. fatal decisions on stream close."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("code", [1002, 1003, 1008, 1009])
    async def test_fatal_close_codes(self, sink, code):
        """Test fatal close codes end the collector without reconnecting."""
        connector = ScriptedConnector([
            FakeWebSocket(frames=[closed_error(code)]),
            FakeWebSocket(),
        ])
        collector = make_collector(sink, connector)

        with pytest.raises(StreamClosed) as exc_info:
            await collector.run()

        assert exc_info.value.code == code
        assert connector.calls == 1
        assert collector.state == CollectorState.CLOSED

    @pytest.mark.asyncio
    @pytest.mark.parametrize("code", [1000, 1001, 1011, 4004, None])
    async def test_recoverable_close_codes(self, sink, code):
        """Test other closes reconnect; a failed reconnect is fatal."""
        connector = ScriptedConnector([
            FakeWebSocket(frames=[closed_error(code)]),
            ConnectError("can't dial websocket"),
        ])
        collector = make_collector(sink, connector)

        with pytest.raises(ConnectError):
            await collector.run()

        assert connector.calls == 2
        assert collector.state == CollectorState.CLOSED


class TestReconnect:
    """Tests for recoverable failures."""

    @pytest.mark.asyncio
    async def test_read_timeout_resubscribes(self, sink):
        """Test a silent feed times out, reconnects and resubscribes."""
        silent = FakeWebSocket()
        live = FakeWebSocket(frames=[ticker_frame("2500.5")])
        connector = ScriptedConnector([silent, live], read_timeout=0.05)
        collector = make_collector(sink, connector)
        shutdown = asyncio.Event()

        task = asyncio.create_task(collector.run(shutdown))
        await wait_until(lambda: sink.gauge(metrics.PRICE, instrument="ETH-USDT") is not None)
        shutdown.set()
        await asyncio.wait_for(task, timeout=2.0)

        assert connector.calls == 2
        assert silent.closed
        assert live.sent_topics() == REQUIRED
        assert collector.health.reconnect_count == 1
        assert collector.state == CollectorState.CLOSED

    @pytest.mark.asyncio
    async def test_heartbeat_failure_reconnects(self, sink):
        """Test a failed ping ends the epoch and reconnects."""
        broken = FakeWebSocket(ping_error=closed_error(None))
        live = FakeWebSocket(frames=[ticker_frame("2501")])
        connector = ScriptedConnector([broken, live])
        collector = make_collector(sink, connector, ping_interval=0.02)
        shutdown = asyncio.Event()

        task = asyncio.create_task(collector.run(shutdown))
        await wait_until(lambda: sink.gauge(metrics.PRICE, instrument="ETH-USDT") == 2501.0)
        shutdown.set()
        await asyncio.wait_for(task, timeout=2.0)

        assert broken.pings == 1
        assert connector.calls == 2

    @pytest.mark.asyncio
    async def test_ping_write_timeout_reconnects(self, sink):
        """Test a ping stuck past the write deadline ends the epoch and reconnects."""
        stuck = FakeWebSocket(ping_delay=1.0)
        live = FakeWebSocket(frames=[ticker_frame("2502")])
        connector = ScriptedConnector([stuck, live], read_timeout=5.0, write_timeout=0.05)
        collector = make_collector(sink, connector, ping_interval=0.02)
        shutdown = asyncio.Event()

        task = asyncio.create_task(collector.run(shutdown))
        await wait_until(lambda: sink.gauge(metrics.PRICE, instrument="ETH-USDT") == 2502.0)
        shutdown.set()
        await asyncio.wait_for(task, timeout=2.0)

        assert stuck.closed
        assert connector.calls == 2
        assert collector.health.reconnect_count == 1
        assert "write deadline" in collector.health.last_error

    @pytest.mark.asyncio
    async def test_pongs_keep_connection_alive(self, sink):
        """Test answered pings keep a quiet feed from timing out."""
        ws = FakeWebSocket(auto_pong=True)
        connector = ScriptedConnector([ws], read_timeout=0.1)
        collector = make_collector(sink, connector, ping_interval=0.03)
        shutdown = asyncio.Event()

        task = asyncio.create_task(collector.run(shutdown))
        await asyncio.sleep(0.35)

        assert collector.state == CollectorState.LIVE
        assert connector.calls == 1
        assert ws.pings >= 3

        shutdown.set()
        await asyncio.wait_for(task, timeout=2.0)


class TestFatalErrors:
    """Tests for errors that stop the collector."""

    @pytest.mark.asyncio
    async def test_initial_connect_failure(self, sink):
        """Test a failed first connect is not retried."""
        connector = ScriptedConnector([ConnectError("can't dial websocket")])
        collector = make_collector(sink, connector)

        with pytest.raises(ConnectError):
            await collector.run()

        assert connector.calls == 1
        assert collector.state == CollectorState.CLOSED

    @pytest.mark.asyncio
    async def test_malformed_trade_batch(self, sink):
        """Test a bad trade fragment is fatal after the good one is recorded."""
        bad = trade_fragment("1")
        bad["sz"] = None
        ws = FakeWebSocket(frames=[trades_frame([trade_fragment("0.5"), bad])])
        connector = ScriptedConnector([ws, FakeWebSocket()])
        collector = make_collector(sink, connector)

        with pytest.raises(ProcessError):
            await collector.run()

        assert sink.observed(metrics.TRADE_SIZE, instrument="ETH-USDT") == [0.5]
        assert connector.calls == 1
        assert ws.closed

    @pytest.mark.asyncio
    async def test_invalid_frame(self, sink):
        """Test an undecodable frame is fatal."""
        connector = ScriptedConnector([FakeWebSocket(frames=["{not json"]), FakeWebSocket()])
        collector = make_collector(sink, connector)

        with pytest.raises(DecodeError):
            await collector.run()

        assert connector.calls == 1
        assert "not valid JSON" in collector.health.last_error


class TestDelivery:
    """Tests for message flow through one connection."""

    @pytest.mark.asyncio
    async def test_fifo_order(self, sink):
        """Test envelopes reach the processor in arrival order."""
        frames = [subscribe_ack("tickers")] + [ticker_frame(str(p)) for p in (1, 2, 3)]
        frames.append(candle_frame(["1739685600000", "1", "2", "0.5", "1.5", "10"]))
        connector = ScriptedConnector([FakeWebSocket(frames=frames)])
        collector = make_collector(sink, connector, queue_size=1)
        shutdown = asyncio.Event()

        task = asyncio.create_task(collector.run(shutdown))
        await wait_until(lambda: sink.gauge(metrics.VOLUME, instrument="ETH-USDT", candle="1H") == 10.0)
        shutdown.set()
        await asyncio.wait_for(task, timeout=2.0)

        prices = [w[3] for w in sink.writes if w[1] == metrics.PRICE]
        assert prices == [1.0, 2.0, 3.0]

    @pytest.mark.asyncio
    async def test_clean_shutdown(self, sink):
        """Test shutdown closes the connection and returns without error."""
        ws = FakeWebSocket(frames=[ticker_frame("2500.5", ts_ms=int(time.time() * 1000))])
        connector = ScriptedConnector([ws])
        collector = make_collector(sink, connector)
        shutdown = asyncio.Event()

        task = asyncio.create_task(collector.run(shutdown))
        await wait_until(lambda: collector.health.last_message_ts_ms is not None)
        assert collector.health.connected

        shutdown.set()
        assert await asyncio.wait_for(task, timeout=2.0) is None

        assert ws.closed
        assert not collector.health.connected
        assert collector.state == CollectorState.CLOSED

    @pytest.mark.asyncio
    async def test_shutdown_before_start(self, sink):
        """Test a pre-set shutdown never connects."""
        connector = ScriptedConnector([FakeWebSocket()])
        collector = make_collector(sink, connector)
        shutdown = asyncio.Event()
        shutdown.set()

        await collector.run(shutdown)

        assert connector.calls == 0
        assert collector.state == CollectorState.CLOSED
