"""Main application for the OKX exporter."""

import asyncio
import logging
import signal
import sys
from typing import Optional, Sequence

from dotenv import load_dotenv

from .collector import Collector, ExponentialBackoff
from .config import ExporterConfig, load_config
from .errors import ConfigurationError
from .metrics import PrometheusSink
from .processor import MessageProcessor
from .server import MetricsServer
from .topics import required_topics
from .util import setup_logging

logger = logging.getLogger(__name__)


class ExporterApp:
    """
    Wires the collector, processor, metric sink and HTTP server together.

    Component graph:
    Collector --> MessageProcessor --> PrometheusSink (registry)
        |                                    |
        └──── CollectorHealth ──► MetricsServer ◄┘
    """

    def __init__(self, config: ExporterConfig, collector: Optional[Collector] = None):
        """
        Initialize the application.

        Args:
            config: Application configuration
            collector: Pre-built collector, mostly for tests
        """
        self.config = config

        config.validate()

        self.sink = PrometheusSink()
        self.processor = MessageProcessor(self.sink)

        if collector is None:
            okx = config.okx
            collector = Collector(
                processor=self.processor,
                host=okx.ws_host,
                topics=required_topics(okx.instrument),
                read_timeout=okx.read_timeout,
                write_timeout=okx.write_timeout,
                ping_interval=okx.ping_interval,
                queue_size=okx.queue_size,
                backoff=ExponentialBackoff(okx.reconnect_min_seconds, okx.reconnect_max_seconds),
            )
        self.collector = collector

        self.server = MetricsServer(
            registry=self.sink.registry,
            health=self.collector.health,
            host=config.host,
            port=config.port,
        )

        self._shutdown_event = asyncio.Event()

    def request_shutdown(self) -> None:
        """Ask the application to stop."""
        logger.info("Received shutdown signal")
        self._shutdown_event.set()

    async def run(self) -> None:
        """
        Run until a shutdown signal or a fatal collector error.

        Handles SIGINT and SIGTERM for graceful shutdown.

        Raises:
            ExporterError: if the collector stops on a fatal error
        """
        loop = asyncio.get_running_loop()
        if sys.platform != "win32":
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.add_signal_handler(sig, self.request_shutdown)

        logger.info(
            f"Starting OKX exporter: instrument={self.config.okx.instrument}, "
            f"feed={self.config.okx.ws_host}"
        )

        await self.server.start()
        try:
            await self.collector.run(self._shutdown_event)
        finally:
            self._shutdown_event.set()
            await self.server.stop()
            if sys.platform != "win32":
                for sig in (signal.SIGINT, signal.SIGTERM):
                    loop.remove_signal_handler(sig)

        logger.info("Done!")


def main(argv: Optional[Sequence[str]] = None) -> None:
    """Entry point for the application."""
    load_dotenv()

    try:
        config = load_config(argv)
        setup_logging("okx_exporter", level=config.log_level)
        app = ExporterApp(config)
    except ConfigurationError as e:
        setup_logging("okx_exporter")
        logger.error(f"Can't load config: {e}")
        sys.exit(2)

    try:
        asyncio.run(app.run())
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    except Exception as e:
        logger.error(f"App error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
