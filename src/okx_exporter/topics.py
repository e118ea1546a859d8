"""Channels and instruments the exporter subscribes to."""

from dataclasses import dataclass
from enum import Enum


class Operation(str, Enum):
    """Request operations and event names used by the OKX websocket API."""
    LOGIN = "login"
    SUBSCRIBE = "subscribe"
    UNSUBSCRIBE = "unsubscribe"
    ERROR = "error"
    EMPTY = ""


class Channel(str, Enum):
    """Public channels known to the exporter."""
    TICKERS = "tickers"
    INSTRUMENTS = "instruments"
    CANDLE_1H = "candle1H"
    AGGREGATED_TRADES = "aggregated-trades"


class Side(str, Enum):
    """Taker side of a trade."""
    BUY = "buy"
    SELL = "sell"


# Value of the "candle" label on candle metrics
CANDLE_1H = "1H"

INSTRUMENT_ETH_USDT = "ETH-USDT"

# Channels required by the metrics pipeline
REQUIRED_CHANNELS = (
    Channel.TICKERS,
    Channel.CANDLE_1H,
    Channel.AGGREGATED_TRADES,
)


@dataclass(frozen=True, slots=True)
class Topic:
    """A subscribable (channel, instrument) pair."""
    channel: str
    inst_id: str

    def to_arg(self) -> dict:
        channel = self.channel.value if isinstance(self.channel, Channel) else self.channel
        return {"channel": channel, "instId": self.inst_id}


def required_topics(instrument: str = INSTRUMENT_ETH_USDT) -> list[Topic]:
    """Topics to subscribe to for one instrument, in subscription order."""
    return [Topic(channel.value, instrument) for channel in REQUIRED_CHANNELS]
