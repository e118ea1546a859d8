"""Collector supervisor: keeps one feed connection alive and feeds the processor.

Each connection lives for one epoch, during which three tasks share it:

    reader -----> queue -----> dispatcher --> MessageProcessor --> MetricSink
    heartbeat (pings, re-arms the read deadline via pongs)

The first task to fail ends the epoch. Timeouts and ordinary remote closes
reconnect; everything else is fatal and propagates to the caller.
"""

import asyncio
import logging
from dataclasses import dataclass
from functools import partial
from time import time_ns
from typing import Awaitable, Callable, Iterable, Optional

from .codec import decode_envelope
from .connection import READ_TIMEOUT, WRITE_TIMEOUT, FeedConnection, open_connection
from .errors import is_recoverable
from .processor import MessageProcessor
from .topics import Topic
from .types import CollectorHealth, CollectorState, Envelope

logger = logging.getLogger(__name__)

PING_INTERVAL = 10.0
QUEUE_SIZE = 100
DRAIN_TIMEOUT = 5.0

Connector = Callable[[], Awaitable[FeedConnection]]


@dataclass
class ExponentialBackoff:
    """Reconnect delay: min_seconds doubled per consecutive failure, capped at max_seconds."""

    min_seconds: float = 1.0
    max_seconds: float = 60.0
    failures: int = 0

    def reset(self) -> None:
        self.failures = 0

    def next(self) -> float:
        delay = min(self.min_seconds * 2 ** self.failures, self.max_seconds)
        # Stop counting once capped
        if delay < self.max_seconds:
            self.failures += 1
        return delay


class Collector:
    """
    Supervises feed connections and the per-connection tasks.

    Args:
        processor: Message processor that receives every envelope
        host: Feed host, used by the default connector
        topics: Topics to subscribe to on every connect
        connector: Coroutine factory returning a subscribed FeedConnection.
            Defaults to open_connection(host, topics, ...).
        ping_interval: Seconds between keepalive pings
        queue_size: Capacity of the reader -> dispatcher queue
        backoff: Delay policy between a recoverable failure and the reconnect
    """

    def __init__(
        self,
        processor: MessageProcessor,
        host: str = "",
        topics: Iterable[Topic] = (),
        connector: Optional[Connector] = None,
        read_timeout: float = READ_TIMEOUT,
        write_timeout: float = WRITE_TIMEOUT,
        ping_interval: float = PING_INTERVAL,
        queue_size: int = QUEUE_SIZE,
        backoff: Optional[ExponentialBackoff] = None,
        drain_timeout: float = DRAIN_TIMEOUT,
    ):
        self.processor = processor
        self.topics = list(topics)
        self.ping_interval = ping_interval
        self.queue_size = queue_size
        self.drain_timeout = drain_timeout

        if connector is None:
            connector = partial(
                open_connection,
                host,
                self.topics,
                read_timeout=read_timeout,
                write_timeout=write_timeout,
            )
        self._connector = connector
        self._backoff = backoff if backoff is not None else ExponentialBackoff()

        self.health = CollectorHealth()
        self._messages_in_epoch = 0

    @property
    def state(self) -> CollectorState:
        return self.health.state

    def _set_state(self, state: CollectorState) -> None:
        if state != self.health.state:
            logger.debug(f"Collector state {self.health.state.value} -> {state.value}")
        self.health.state = state
        self.health.connected = state == CollectorState.LIVE

    async def _reader(
        self,
        conn: FeedConnection,
        queue: asyncio.Queue,
        stop: asyncio.Event,
    ) -> None:
        """Read frames, decode them and push envelopes onto the queue."""
        while True:
            raw = await conn.recv()
            envelope = decode_envelope(raw)
            # Blocks while the queue is full
            await queue.put(envelope)

            if stop.is_set():
                break

        logger.debug("Reader exiting")

    async def _heartbeat(self, conn: FeedConnection, stop: asyncio.Event) -> None:
        """Ping the feed every ping_interval seconds until stopped."""
        while True:
            try:
                await asyncio.wait_for(stop.wait(), timeout=self.ping_interval)
                logger.debug("Heartbeat exiting")
                return
            except asyncio.TimeoutError:
                pass

            await conn.ping()

    async def _dispatcher(self, queue: asyncio.Queue, stop: asyncio.Event) -> None:
        """Hand queued envelopes to the processor in arrival order."""
        stopped = asyncio.create_task(stop.wait())
        try:
            while True:
                getter = asyncio.create_task(queue.get())
                done, _ = await asyncio.wait(
                    {getter, stopped},
                    return_when=asyncio.FIRST_COMPLETED,
                )
                if getter not in done:
                    getter.cancel()
                    logger.debug("Dispatcher exiting")
                    return

                envelope: Envelope = getter.result()
                self.processor.process(envelope)

                self._messages_in_epoch += 1
                self.health.last_message_ts_ms = time_ns() // 1_000_000
        finally:
            stopped.cancel()

    async def _run_epoch(
        self,
        conn: FeedConnection,
        shutdown_event: Optional[asyncio.Event],
    ) -> Optional[BaseException]:
        """
        Run reader, heartbeat and dispatcher against one connection.

        Returns:
            The error that ended the epoch, or None on shutdown
        """
        stop = asyncio.Event()
        queue: asyncio.Queue[Envelope] = asyncio.Queue(maxsize=self.queue_size)
        tasks = [
            asyncio.create_task(self._reader(conn, queue, stop), name="okx_reader"),
            asyncio.create_task(self._heartbeat(conn, stop), name="okx_heartbeat"),
            asyncio.create_task(self._dispatcher(queue, stop), name="okx_dispatcher"),
        ]
        waiters = set(tasks)
        shutdown_waiter = None
        if shutdown_event is not None:
            shutdown_waiter = asyncio.create_task(shutdown_event.wait())
            waiters.add(shutdown_waiter)

        error: Optional[BaseException] = None
        try:
            done, _ = await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)

            # Keep task order so simultaneous failures resolve deterministically
            for task in tasks:
                if task in done and not task.cancelled() and task.exception() is not None:
                    error = task.exception()
                    break
        finally:
            self._set_state(CollectorState.DRAINING)
            stop.set()
            await conn.close()

            _, pending = await asyncio.wait(tasks, timeout=self.drain_timeout)
            for task in pending:
                logger.debug(f"Cancelling {task.get_name()} after drain timeout")
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

            if shutdown_waiter is not None:
                shutdown_waiter.cancel()
                await asyncio.gather(shutdown_waiter, return_exceptions=True)

            if not queue.empty():
                logger.debug(f"Discarding {queue.qsize()} queued messages from closed connection")

        return error

    async def _wait_backoff(self, shutdown_event: Optional[asyncio.Event]) -> None:
        delay = self._backoff.next()
        if delay <= 0:
            return
        logger.info(f"Reconnecting in {delay:.1f}s...")
        if shutdown_event is None:
            await asyncio.sleep(delay)
            return
        try:
            await asyncio.wait_for(shutdown_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

    async def run(self, shutdown_event: Optional[asyncio.Event] = None) -> None:
        """
        Run until shutdown or a fatal error.

        Args:
            shutdown_event: Optional event to signal shutdown

        Raises:
            ConnectError: if connecting or reconnecting fails
            ExporterError: any other fatal error that ended an epoch
        """
        reconnecting = False

        while True:
            if shutdown_event and shutdown_event.is_set():
                break

            self._set_state(CollectorState.CONNECTING)
            try:
                conn = await self._connector()
            except Exception as e:
                self.health.last_error = str(e)
                self._set_state(CollectorState.CLOSED)
                logger.debug(f"Collector can't connect: {e}")
                raise

            if reconnecting:
                self.health.reconnect_count += 1
                logger.info("Reconnected")

            self._set_state(CollectorState.LIVE)
            self._messages_in_epoch = 0
            error = await self._run_epoch(conn, shutdown_event)

            if error is None:
                break

            self.health.last_error = str(error)

            if not is_recoverable(error):
                logger.debug(f"Collector got irrecoverable error: {error}")
                self._set_state(CollectorState.CLOSED)
                raise error

            logger.warning(f"Collector is handling recoverable error: {error}")
            self._set_state(CollectorState.RECONNECTING)
            if self._messages_in_epoch > 0:
                self._backoff.reset()
            await self._wait_backoff(shutdown_event)
            reconnecting = True

        self._set_state(CollectorState.CLOSED)
        logger.info("Collector stopped")
