"""HTTP surface of the proxy using FastAPI."""
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import PlainTextResponse, Response

from relabel_proxy.engine import ScrapeEngine
from relabel_proxy.exceptions import AllTargetsFailedError
from relabel_proxy.scraper import InboundRequest
from relabel_proxy.self_metrics import SelfMetrics

EXPOSITION_CONTENT_TYPE = "text/plain; version=0.0.4; charset=utf-8"
DISCONNECT_POLL_INTERVAL_S = 0.25


def inbound_from_request(request: Request) -> InboundRequest:
    """Capture the headers and client address of a collector request."""
    return InboundRequest(
        headers=dict(request.headers),
        client_host=request.client.host if request.client else None
    )


class ProxyAPI:
    """FastAPI application serving the relabeled metrics."""

    def __init__(
        self,
        engine: ScrapeEngine,
        metrics_path: str = "/metrics",
        self_metrics: Optional[SelfMetrics] = None,
        logger: Optional[logging.Logger] = None
    ):
        """
        Initialize the proxy API.

        Args:
            engine: Scrape engine run once per inbound request
            metrics_path: Path the collector scrapes
            self_metrics: Proxy self-metrics, served at /-/metrics when given
            logger: Logger to use
        """
        self.engine = engine
        self.metrics_path = metrics_path
        self.self_metrics = self_metrics
        self.logger = logger or logging.getLogger(__name__)
        self.app = FastAPI(title="Prometheus Relabel Proxy", lifespan=self._lifespan)

        self._setup_routes()

    @asynccontextmanager
    async def _lifespan(self, app: FastAPI):
        yield
        await self.engine.scraper.close()

    def _setup_routes(self):
        """Setup API routes."""

        @self.app.get("/ping", response_class=PlainTextResponse)
        async def ping():
            return "pong"

        @self.app.get("/healthz", response_class=PlainTextResponse)
        async def healthz():
            return "ok"

        @self.app.get("/-/metrics")
        async def own_metrics():
            """Proxy self-metrics."""
            if self.self_metrics is None:
                return Response(status_code=404)
            return Response(content=self.self_metrics.render(), media_type=EXPOSITION_CONTENT_TYPE)

        @self.app.get(self.metrics_path)
        async def metrics(request: Request):
            """Scrape all targets and return the relabeled exposition."""
            return await self.handle_scrape(request)

    async def handle_scrape(self, request: Request) -> Response:
        """
        Run one scrape cycle for an inbound request.

        The cycle is cancelled if the collector disconnects first.
        """
        self.logger.debug("Scraping proxied targets")
        inbound = inbound_from_request(request)

        scrape = asyncio.ensure_future(self.engine.scrape(inbound))
        watcher = asyncio.ensure_future(self._wait_for_disconnect(request))
        try:
            await asyncio.wait({scrape, watcher}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            watcher.cancel()

        if not scrape.done():
            self.logger.info("Collector disconnected, cancelling in-flight scrapes")
            scrape.cancel()
            await asyncio.gather(scrape, return_exceptions=True)
            return Response(status_code=500)

        try:
            result = scrape.result()
        except AllTargetsFailedError as e:
            self.logger.error(str(e))
            return Response(status_code=500)

        if result.failed:
            self.logger.warning(f"{result.failed} of {result.attempted} targets failed")
        return Response(content=result.body, media_type=EXPOSITION_CONTENT_TYPE)

    @staticmethod
    async def _wait_for_disconnect(request: Request):
        while not await request.is_disconnected():
            await asyncio.sleep(DISCONNECT_POLL_INTERVAL_S)

    def run(self, host: str = "0.0.0.0", port: int = 9091):
        """Run the API server."""
        import uvicorn
        uvicorn.run(self.app, host=host, port=port, log_level="info")
