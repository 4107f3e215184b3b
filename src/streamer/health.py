"""Health check endpoints for the streamer.

Provides HTTP endpoints for container healthchecks and debugging. The gRPC
control plane is the only way to change state; these routes are read-only.
"""

import logging
import time
from typing import Any

from aiohttp import web

from src.streamer.manager import StreamManager

logger = logging.getLogger(__name__)


class HealthCheckHandler:
    """Health check handler for the streamer.

    Provides:
    - /health: overall status and session count (503 while shutting down)
    - /liveness: process is running
    - /sessions: active stream ids with relay metrics
    """

    def __init__(self, manager: StreamManager) -> None:
        """Initialize health check handler.

        Args:
            manager: StreamManager whose sessions are reported
        """
        self.manager = manager
        self.start_time = time.time()

    async def health_check(self, request: web.Request) -> web.Response:
        """Health check endpoint.

        Returns:
            200 OK: Accepting sessions
            503 Service Unavailable: Shutting down

        Response format:
        {
            "status": "healthy" | "unhealthy",
            "uptime_seconds": float,
            "sessions": int
        }
        """
        healthy = not self.manager.is_shutting_down
        response_data: dict[str, Any] = {
            "status": "healthy" if healthy else "unhealthy",
            "uptime_seconds": time.time() - self.start_time,
            "sessions": self.manager.session_count,
        }

        logger.debug("Health check performed", extra={"status": response_data["status"]})
        return web.json_response(response_data, status=200 if healthy else 503)

    async def liveness_check(self, request: web.Request) -> web.Response:
        """Liveness check endpoint.

        Returns OK if the process is running, even while shutting down.
        """
        return web.json_response(
            {
                "status": "alive",
                "uptime_seconds": time.time() - self.start_time,
            },
            status=200,
        )

    async def sessions(self, request: web.Request) -> web.Response:
        """Active sessions with their relay metrics."""
        active = await self.manager.registry.active_sessions()
        return web.json_response(
            {
                "count": len(active),
                "sessions": [session.get_metrics_summary() for session in active],
            },
            status=200,
        )


def setup_health_routes(app: web.Application, manager: StreamManager) -> None:
    """Set up health check routes on application.

    Args:
        app: aiohttp Application instance
        manager: StreamManager instance
    """
    handler = HealthCheckHandler(manager)

    app.router.add_get("/health", handler.health_check)
    app.router.add_get("/liveness", handler.liveness_check)
    app.router.add_get("/sessions", handler.sessions)

    logger.info("Health check endpoints configured: /health, /liveness, /sessions")
