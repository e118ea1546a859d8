"""HTTP server exposing the metrics registry."""

import logging
from typing import Optional

from aiohttp import web
import orjson
from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, generate_latest

from .types import CollectorHealth, CollectorState

logger = logging.getLogger(__name__)


class MetricsServer:
    """
    HTTP server for Prometheus scraping.

    Endpoints:
    - GET /metrics - Metrics in the Prometheus text format
    - GET /health - Collector health as JSON
    """

    def __init__(
        self,
        registry: CollectorRegistry,
        health: CollectorHealth,
        host: str = "0.0.0.0",
        port: int = 9100,
    ):
        """
        Initialize the server.

        Args:
            registry: Registry to render on scrape
            health: Collector health to report
            host: Host to bind to
            port: Port to bind to
        """
        self.registry = registry
        self.health = health
        self.host = host
        self.port = port

        self._app: Optional[web.Application] = None
        self._runner: Optional[web.AppRunner] = None
        self._site: Optional[web.TCPSite] = None

    async def handle_metrics(self, request: web.Request) -> web.Response:
        """Handle GET /metrics."""
        body = generate_latest(self.registry)
        # aiohttp rejects a charset inside content_type=
        return web.Response(
            status=200,
            body=body,
            headers={"Content-Type": CONTENT_TYPE_LATEST},
        )

    async def handle_health(self, request: web.Request) -> web.Response:
        """
        Handle GET /health.

        Healthy while the collector holds a live connection.
        """
        healthy = self.health.state == CollectorState.LIVE
        body = {"healthy": healthy, **self.health.to_dict()}

        return web.Response(
            status=200 if healthy else 503,
            content_type="application/json",
            body=orjson.dumps(body),
        )

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/metrics", self.handle_metrics)
        app.router.add_get("/health", self.handle_health)
        return app

    async def start(self) -> None:
        """Start the HTTP server."""
        self._app = self.build_app()

        self._runner = web.AppRunner(self._app)
        await self._runner.setup()

        self._site = web.TCPSite(self._runner, self.host, self.port)
        await self._site.start()

        logger.info(f"Metrics server started on http://{self.host}:{self.port}/metrics")

    async def stop(self) -> None:
        """Stop the HTTP server."""
        if self._site:
            await self._site.stop()
        if self._runner:
            await self._runner.cleanup()

        logger.info("Metrics server stopped")
