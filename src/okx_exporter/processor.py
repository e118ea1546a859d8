"""Turns decoded envelopes into metric updates."""

import logging
import time
from typing import Callable

from . import metrics
from .codec import decode_candle, decode_ticker, decode_trade, ts_to_ms
from .errors import DecodeError, ProcessError
from .metrics import MetricSink
from .topics import CANDLE_1H, Channel, Operation
from .types import Envelope

logger = logging.getLogger(__name__)


class MessageProcessor:
    """
    Decodes channel payloads and writes them to a metric sink.

    Holds no connection state; the only side effects are sink writes.
    """

    def __init__(self, sink: MetricSink, clock: Callable[[], float] = time.time):
        """
        Args:
            sink: Metric sink to write to
            clock: Wall clock in Unix seconds, used for ticker latency
        """
        self.sink = sink
        self._clock = clock

    def process(self, envelope: Envelope) -> None:
        """
        Process one envelope.

        Control messages (non-empty event) are acknowledged and skipped.
        Unknown channels are logged and skipped.

        Raises:
            ProcessError: if a payload of a known channel cannot be decoded
        """
        if envelope.event != Operation.EMPTY.value:
            if envelope.event == Operation.ERROR.value:
                logger.warning(f"OKX error event: code={envelope.code} msg={envelope.msg}")
            else:
                logger.debug(f"OKX {envelope.event} event for {envelope.channel}")
            return

        channel = envelope.channel
        if channel == Channel.TICKERS.value:
            self._process_tickers(envelope)
        elif channel == Channel.CANDLE_1H.value:
            self._process_candle(envelope)
        elif channel == Channel.AGGREGATED_TRADES.value:
            self._process_trades(envelope)
        else:
            logger.warning(f"Unknown channel: {channel}")

    @staticmethod
    def _first_fragment(envelope: Envelope):
        if not envelope.data:
            raise ProcessError(f"{envelope.channel} message has no data", envelope.channel)
        return envelope.data[0]

    def _process_tickers(self, envelope: Envelope) -> None:
        now = self._clock()
        try:
            ticker = decode_ticker(self._first_fragment(envelope))
            last = ticker.last_float()
        except DecodeError as e:
            raise ProcessError(f"can't parse data as data for tickers: {e}", envelope.channel) from e

        logger.debug(f"Got tickers data: {ticker}")

        labels = {"instrument": ticker.inst_id}
        self.sink.set_gauge(metrics.PRICE, labels, last)

        if ticker.ts is None:
            logger.debug(f"Ticker for {ticker.inst_id} has no timestamp, skipping latency")
            return
        latency = now - ticker.ts.timestamp()
        self.sink.observe_histogram(metrics.LATENCY, labels, latency)

    def _process_candle(self, envelope: Envelope) -> None:
        try:
            candle = decode_candle(self._first_fragment(envelope))
        except DecodeError as e:
            raise ProcessError(f"can't parse data as data for candle: {e}", envelope.channel) from e

        logger.debug(f"Got 1H candle data: {candle}")

        labels = {"instrument": envelope.inst_id, "candle": CANDLE_1H}
        self.sink.set_gauge(metrics.CANDLE_TS, labels, float(ts_to_ms(candle.ts)))
        self.sink.set_gauge(metrics.OPEN, labels, candle.open)
        self.sink.set_gauge(metrics.HIGH, labels, candle.high)
        self.sink.set_gauge(metrics.LOW, labels, candle.low)
        self.sink.set_gauge(metrics.CLOSE, labels, candle.close)
        self.sink.set_gauge(metrics.VOLUME, labels, candle.volume)

    def _process_trades(self, envelope: Envelope) -> None:
        labels = {"instrument": envelope.inst_id}

        # One message may batch several trades. Observations already made
        # for earlier fragments stay when a later one fails.
        for fragment in envelope.data:
            try:
                trade = decode_trade(fragment)
            except DecodeError as e:
                raise ProcessError(f"can't parse data as data for trade: {e}", envelope.channel) from e

            logger.debug(f"Got trade data: {trade}")

            self.sink.observe_histogram(metrics.TRADE_SIZE, labels, trade.size)
