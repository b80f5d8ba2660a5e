"""Health, metrics and ICE configuration endpoints for the signaling server.

Provides HTTP endpoints for load balancers, monitoring systems and call
clients:
- /health, /readiness, /liveness for orchestration probes
- /metrics (Prometheus text) and /metrics/summary (JSON)
- /ice-servers, the STUN/TURN list clients feed into their peer connections
"""

import logging
import time
from typing import Any

from aiohttp import web

from src.signaling.config import IceConfig
from src.signaling.metrics import MetricsCollector, get_metrics_collector
from src.signaling.registry import SessionRegistry
from src.signaling.transport.base import Transport

logger = logging.getLogger(__name__)


class HealthCheckHandler:
    """Health check handler for the signaling server.

    /health reports unhealthy (503) while the WebSocket transport is not
    accepting connections.
    """

    def __init__(
        self,
        transport: Transport | None = None,
        registry: SessionRegistry | None = None,
        ice_config: IceConfig | None = None,
        metrics_collector: MetricsCollector | None = None,
    ) -> None:
        """Initialize health check handler.

        Args:
            transport: Signaling transport (optional)
            registry: Session registry for occupancy figures (optional)
            ice_config: ICE servers published to clients (defaults when omitted)
            metrics_collector: Metrics source (defaults to the global collector)
        """
        self.transport = transport
        self.registry = registry
        self.ice_config = ice_config or IceConfig()
        self.start_time = time.time()
        self.metrics_collector = metrics_collector or get_metrics_collector()

    async def health_check(self, request: web.Request) -> web.Response:
        """Health check endpoint.

        Returns:
            200 OK: Transport is accepting connections
            503 Service Unavailable: Transport is down

        Response format:
        {
            "status": "healthy" | "unhealthy",
            "uptime_seconds": float,
            "transport": bool,
            "connections": int,
            "rooms": int
        }
        """
        transport_ok = self.transport is not None and self.transport.is_running

        response_data: dict[str, Any] = {
            "status": "healthy" if transport_ok else "unhealthy",
            "uptime_seconds": time.time() - self.start_time,
            "transport": transport_ok,
            "connections": self.registry.connection_count if self.registry else 0,
            "rooms": self.registry.room_count if self.registry else 0,
        }

        logger.debug("Health check performed", extra={"status": response_data["status"]})

        return web.json_response(response_data, status=200 if transport_ok else 503)

    async def readiness_check(self, request: web.Request) -> web.Response:
        """Readiness check endpoint (same criteria as /health)."""
        return await self.health_check(request)

    async def liveness_check(self, request: web.Request) -> web.Response:
        """Liveness check endpoint.

        Returns OK if the process is running, even when the transport is down.

        Returns:
            200 OK: Service is alive
        """
        return web.json_response(
            {
                "status": "alive",
                "uptime_seconds": time.time() - self.start_time,
            },
            status=200,
        )

    async def metrics_endpoint(self, request: web.Request) -> web.Response:
        """Prometheus metrics endpoint.

        Returns:
            200 OK: Metrics in Prometheus text format
            Content-Type: text/plain; version=0.0.4
        """
        try:
            metrics_text = self.metrics_collector.export_prometheus()

            return web.Response(
                text=metrics_text,
                content_type="text/plain; version=0.0.4",
                status=200,
            )

        except Exception as e:
            logger.error(
                "Failed to export metrics",
                extra={"error": str(e)},
                exc_info=True,
            )
            return web.Response(
                text=f"# Error exporting metrics: {e}\n",
                content_type="text/plain",
                status=500,
            )

    async def metrics_summary(self, request: web.Request) -> web.Response:
        """Metrics summary endpoint in JSON format."""
        try:
            summary = self.metrics_collector.get_summary()

            return web.json_response(
                {
                    "status": "ok",
                    "uptime_seconds": time.time() - self.start_time,
                    "metrics": summary,
                },
                status=200,
            )

        except Exception as e:
            logger.error(
                "Failed to generate metrics summary",
                extra={"error": str(e)},
                exc_info=True,
            )
            return web.json_response({"status": "error", "error": str(e)}, status=500)

    async def ice_servers(self, request: web.Request) -> web.Response:
        """ICE server list endpoint.

        Returns:
            200 OK: {"iceServers": [{"urls": [...], "username"?, "credential"?}]}
        """
        servers = [
            server.model_dump(exclude_none=True) for server in self.ice_config.servers
        ]

        return web.json_response(
            {"iceServers": servers},
            status=200,
            headers={"Access-Control-Allow-Origin": "*"},
        )


def setup_health_routes(
    app: web.Application,
    transport: Transport | None = None,
    registry: SessionRegistry | None = None,
    ice_config: IceConfig | None = None,
    metrics_collector: MetricsCollector | None = None,
) -> None:
    """Set up health, metrics and ICE routes on application.

    Args:
        app: aiohttp Application instance
        transport: Signaling transport (optional)
        registry: Session registry (optional)
        ice_config: ICE servers published to clients (optional)
        metrics_collector: Metrics source (optional)
    """
    handler = HealthCheckHandler(
        transport=transport,
        registry=registry,
        ice_config=ice_config,
        metrics_collector=metrics_collector,
    )

    app.router.add_get("/health", handler.health_check)
    app.router.add_get("/readiness", handler.readiness_check)
    app.router.add_get("/liveness", handler.liveness_check)

    app.router.add_get("/metrics", handler.metrics_endpoint)
    app.router.add_get("/metrics/summary", handler.metrics_summary)

    app.router.add_get("/ice-servers", handler.ice_servers)

    logger.info(
        "HTTP endpoints configured: "
        "/health, /readiness, /liveness, /metrics, /metrics/summary, /ice-servers"
    )
