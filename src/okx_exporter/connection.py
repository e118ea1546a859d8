"""OKX websocket connection with read/write deadlines."""

import asyncio
import logging
from typing import Any, Iterable, Optional

import orjson
import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from .codec import encode_subscribe
from .errors import ConnectError, ExporterError, StreamClosed, TransportTimeout
from .topics import Topic

logger = logging.getLogger(__name__)

OKX_PUBLIC_PATH = "/ws/v5/ipublic"
READ_TIMEOUT = 15.0
WRITE_TIMEOUT = 15.0
CLOSE_TIMEOUT = 5.0


def feed_url(host: str) -> str:
    """Build the public websocket URL for a feed host."""
    return f"wss://{host}{OKX_PUBLIC_PATH}"


class FeedConnection:
    """
    One physical websocket connection to the OKX feed.

    The read deadline is absolute: it is armed once on connect and only
    pushed forward when a pong arrives, so a feed that keeps sending data
    but stops answering pings still times out. Writes (sends and pings)
    are serialized and each bounded by the write timeout.
    """

    def __init__(
        self,
        ws: Any,
        read_timeout: float = READ_TIMEOUT,
        write_timeout: float = WRITE_TIMEOUT,
    ):
        self._ws = ws
        self.read_timeout = read_timeout
        self.write_timeout = write_timeout

        self._write_lock = asyncio.Lock()
        self._read_deadline: Optional[float] = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def read_deadline(self) -> Optional[float]:
        """Loop time at which a pending read times out."""
        return self._read_deadline

    def arm_read_deadline(self) -> None:
        """Push the read deadline read_timeout seconds into the future."""
        self._read_deadline = asyncio.get_running_loop().time() + self.read_timeout

    def _on_pong(self, waiter: asyncio.Future) -> None:
        if waiter.cancelled() or waiter.exception() is not None:
            return
        logger.debug("Pong")
        self.arm_read_deadline()

    async def recv(self) -> Any:
        """
        Receive one frame.

        Raises:
            TransportTimeout: if the read deadline passes
            StreamClosed: if the stream is closed
        """
        loop = asyncio.get_running_loop()
        if self._read_deadline is None:
            self.arm_read_deadline()

        while True:
            remaining = self._read_deadline - loop.time()
            if remaining <= 0:
                raise TransportTimeout(f"read deadline of {self.read_timeout:.0f}s exceeded")
            try:
                return await asyncio.wait_for(self._ws.recv(), timeout=remaining)
            except asyncio.TimeoutError:
                # A pong may have moved the deadline while we waited
                continue
            except ConnectionClosed as e:
                raise StreamClosed.from_exception(e) from e

    async def _write(self, op: str, func, *args) -> Any:
        async with self._write_lock:
            try:
                return await asyncio.wait_for(func(*args), timeout=self.write_timeout)
            except asyncio.TimeoutError as e:
                raise TransportTimeout(
                    f"write deadline of {self.write_timeout:.0f}s exceeded while {op}"
                ) from e
            except ConnectionClosed as e:
                raise StreamClosed.from_exception(e) from e

    async def send(self, message: bytes) -> None:
        """Send one text frame."""
        # OKX only accepts text frames
        await self._write("sending", self._ws.send, message.decode())

    async def send_json(self, payload: Any) -> None:
        await self.send(orjson.dumps(payload))

    async def ping(self) -> None:
        """
        Send a transport-level ping.

        The read deadline is re-armed when the matching pong arrives.
        """
        waiter = await self._write("pinging", self._ws.ping)
        logger.debug("Ping")
        waiter.add_done_callback(self._on_pong)

    async def subscribe(self, topics: Iterable[Topic]) -> None:
        """Send one subscribe request per topic."""
        for topic in topics:
            logger.debug(f"Subscribing to {topic.channel} for {topic.inst_id}")
            await self.send(encode_subscribe([topic]))

    async def handshake(self, topics: Iterable[Topic]) -> None:
        """
        Arm the read deadline and subscribe to the given topics.

        Raises:
            ConnectError: if any step fails
        """
        try:
            self.arm_read_deadline()
            await self.subscribe(topics)
        except ExporterError as e:
            raise ConnectError(f"can't subscribe to required channels on connect: {e}") from e

    async def close(self) -> None:
        """Close the websocket. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        try:
            await self._ws.close()
        except (WebSocketException, OSError) as e:
            logger.debug(f"Error while closing websocket: {e}")


async def open_connection(
    host: str,
    topics: Iterable[Topic],
    read_timeout: float = READ_TIMEOUT,
    write_timeout: float = WRITE_TIMEOUT,
) -> FeedConnection:
    """
    Dial the feed and subscribe to every topic.

    Keepalive pings are sent by the collector's heartbeat, so the library's
    own ping loop is disabled.

    Raises:
        ConnectError: if dialing or subscribing fails
    """
    url = feed_url(host)
    logger.debug(f"Dialing {url}")

    try:
        ws = await websockets.connect(
            url,
            ping_interval=None,
            open_timeout=write_timeout,
            close_timeout=CLOSE_TIMEOUT,
            max_size=2**20,
            compression=None,
        )
    except (WebSocketException, OSError, asyncio.TimeoutError) as e:
        raise ConnectError(f"can't dial websocket at {url}: {e}") from e

    conn = FeedConnection(ws, read_timeout=read_timeout, write_timeout=write_timeout)
    try:
        await conn.handshake(topics)
    except ConnectError:
        await conn.close()
        raise

    logger.info(f"Connected to {url}")
    return conn
