"""Health and metrics HTTP endpoints.

Routes:
    GET /health           liveness plus registry status (JSON)
    GET /metrics          Prometheus text exposition
    GET /metrics/summary  flat metrics summary (JSON)
"""

import logging
import time

from aiohttp import web

from turnkeeper.registry import SessionRegistry

logger = logging.getLogger(__name__)

PROMETHEUS_CONTENT_TYPE = "text/plain; version=0.0.4"


class HealthCheckHandler:
    """Serves the status and metrics of one session registry."""

    def __init__(self, registry: SessionRegistry) -> None:
        self.registry = registry
        self.start_time = time.time()

    @property
    def uptime_seconds(self) -> float:
        return time.time() - self.start_time

    async def health_check(self, request: web.Request) -> web.Response:
        """Report liveness with session, capture, standby and playback status.

        The process is healthy as long as it can answer; individual sessions
        recover on their own.
        """
        status = self.registry.get_status()
        logger.debug(f"Health check: {status['sessions']} sessions")
        return web.json_response(
            {"status": "healthy", "uptime_seconds": self.uptime_seconds, **status}
        )

    async def metrics_endpoint(self, request: web.Request) -> web.Response:
        """Prometheus scrape target. Export failures return 500."""
        try:
            body = self.registry.metrics.export_prometheus()
        except Exception as e:
            logger.error("Metrics export failed", extra={"error": str(e)}, exc_info=True)
            return web.Response(
                status=500, text=f"# metrics export failed: {e}\n", content_type="text/plain"
            )
        return web.Response(text=body, content_type=PROMETHEUS_CONTENT_TYPE)

    async def metrics_summary(self, request: web.Request) -> web.Response:
        try:
            summary = self.registry.metrics.get_summary()
        except Exception as e:
            logger.error("Metrics summary failed", extra={"error": str(e)}, exc_info=True)
            return web.json_response({"status": "error", "error": str(e)}, status=500)
        return web.json_response(
            {"status": "ok", "uptime_seconds": self.uptime_seconds, "metrics": summary}
        )


def setup_health_routes(app: web.Application, registry: SessionRegistry) -> HealthCheckHandler:
    """Register the health and metrics routes on an application.

    Returns:
        The handler bound to the routes
    """
    handler = HealthCheckHandler(registry)
    app.add_routes(
        [
            web.get("/health", handler.health_check),
            web.get("/metrics", handler.metrics_endpoint),
            web.get("/metrics/summary", handler.metrics_summary),
        ]
    )
    logger.info("Health endpoints registered: /health, /metrics, /metrics/summary")
    return handler
