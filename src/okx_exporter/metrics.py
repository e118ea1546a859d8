"""Metric sink used by the message processor.

The processor only ever writes: gauges are label-keyed upserts and
histograms accumulate observations. PrometheusSink keeps the metric families
in a CollectorRegistry that the HTTP server renders on scrape.
"""

from typing import Mapping, Optional, Protocol

from prometheus_client import CollectorRegistry, Gauge, Histogram


# Metric names
PRICE = "okx_price"
CANDLE_TS = "okx_candle_ts"
OPEN = "okx_open"
HIGH = "okx_high"
LOW = "okx_low"
CLOSE = "okx_close"
VOLUME = "okx_volume"
LATENCY = "okx_latency"
TRADE_SIZE = "okx_trade_size"

TRADE_SIZE_BUCKETS = (0.001, 0.01, 0.1, 1, 5, 10, 100, 1000, 10000)

_INSTRUMENT = ("instrument",)
_INSTRUMENT_CANDLE = ("instrument", "candle")

# name -> (help, label names)
GAUGES = {
    PRICE: ("Last traded price from the tickers channel", _INSTRUMENT),
    CANDLE_TS: ("Candle timestamp", _INSTRUMENT_CANDLE),
    OPEN: ("Open price got from candleXX message i.e candle1H", _INSTRUMENT_CANDLE),
    HIGH: ("High price got from candleXX message i.e candle1H", _INSTRUMENT_CANDLE),
    LOW: ("Low price got from candleXX message i.e candle1H", _INSTRUMENT_CANDLE),
    CLOSE: ("Close price got from candleXX message i.e candle1H", _INSTRUMENT_CANDLE),
    VOLUME: ("Volume got from candleXX message i.e candle1H", _INSTRUMENT_CANDLE),
}

# name -> (help, label names, buckets)
HISTOGRAMS = {
    LATENCY: (
        "Seconds between the ticker timestamp and its processing",
        _INSTRUMENT,
        Histogram.DEFAULT_BUCKETS,
    ),
    TRADE_SIZE: ("Size of aggregated trades", _INSTRUMENT, TRADE_SIZE_BUCKETS),
}


class MetricSink(Protocol):
    """Write-only metric target."""

    def set_gauge(self, name: str, labels: Mapping[str, str], value: float) -> None:
        ...

    def observe_histogram(self, name: str, labels: Mapping[str, str], value: float) -> None:
        ...


class PrometheusSink:
    """
    MetricSink backed by prometheus_client.

    Args:
        registry: Registry to register the metric families in. A fresh one
            is created when omitted, so several sinks can coexist in tests.
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry if registry is not None else CollectorRegistry()

        self._gauges: dict[str, Gauge] = {
            name: Gauge(name, doc, labelnames, registry=self.registry)
            for name, (doc, labelnames) in GAUGES.items()
        }
        self._histograms: dict[str, Histogram] = {
            name: Histogram(name, doc, labelnames, buckets=buckets, registry=self.registry)
            for name, (doc, labelnames, buckets) in HISTOGRAMS.items()
        }

    def set_gauge(self, name: str, labels: Mapping[str, str], value: float) -> None:
        self._gauges[name].labels(**labels).set(value)

    def observe_histogram(self, name: str, labels: Mapping[str, str], value: float) -> None:
        self._histograms[name].labels(**labels).observe(value)
