"""Type definitions for the OKX exporter."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from .errors import DecodeError


class CollectorState(Enum):
    """Lifecycle states of the collector supervisor."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    LIVE = "live"
    DRAINING = "draining"
    RECONNECTING = "reconnecting"
    CLOSED = "closed"


@dataclass(slots=True)
class Envelope:
    """
    Decoded top-level websocket message.

    A non-empty event marks a control message (subscribe ack, error, ...).
    Data messages carry the channel/instrument they belong to and a list of
    JSON-decoded payload fragments that still need channel-specific decoding.
    """
    event: str = ""
    channel: str = ""
    inst_id: str = ""
    action: str = ""
    data: list[Any] = field(default_factory=list)

    # Only set on event == "error"
    code: str = ""
    msg: str = ""


@dataclass(slots=True)
class TickerPayload:
    """Ticker snapshot from the tickers channel."""
    inst_type: str
    inst_id: str
    last: str
    high_24h: str
    low_24h: str
    ts: Optional[datetime] = None

    def last_float(self) -> float:
        """Parse the last traded price."""
        try:
            return float(self.last)
        except (TypeError, ValueError) as e:
            raise DecodeError(f"ticker last price is not numeric: {self.last!r}") from e


@dataclass(slots=True)
class CandlePayload:
    """One candle record, decoded from its positional array form."""
    ts: datetime
    open: float
    high: float
    low: float
    close: float
    volume: float


@dataclass(slots=True)
class TradePayload:
    """Aggregated trade from the aggregated-trades channel."""
    first_id: str
    last_id: str
    inst_id: str
    price: str
    side: str  # "buy" or "sell"
    size: float
    ts: Optional[datetime] = None


@dataclass(slots=True)
class CollectorHealth:
    """Collector health state, served by the /health endpoint."""
    state: CollectorState = CollectorState.DISCONNECTED
    connected: bool = False
    reconnect_count: int = 0
    last_message_ts_ms: Optional[int] = None
    last_error: str = ""

    def to_dict(self) -> dict:
        return {
            "state": self.state.value,
            "connected": self.connected,
            "reconnect_count": self.reconnect_count,
            "last_message_ts_ms": self.last_message_ts_ms,
            "last_error": self.last_error,
        }
