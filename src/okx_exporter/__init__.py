"""OKX Exporter - republishes the OKX public market-data feed as Prometheus metrics.

This package is responsible for:
- OKX websocket ingestion (tickers, 1H candles, aggregated trades)
- Keepalive, failure classification and reconnection of the feed
- Updating price, candle, latency and trade-size metrics
- Serving the metrics registry over HTTP for scraping
"""

__version__ = "0.1.0"
