"""Unit tests for the HTTP health endpoints."""

import json

import pytest
from aiohttp import web
from aiohttp.test_utils import make_mocked_request

from src.streamer.config import StreamerConfig
from src.streamer.health import HealthCheckHandler, setup_health_routes
from src.streamer.manager import StreamManager
from tests.helpers.fakes import FakeConnector, FakeNegotiator


@pytest.fixture
def manager() -> StreamManager:
    return StreamManager(StreamerConfig(), FakeNegotiator(), FakeConnector())


def body(response: web.Response) -> dict[str, object]:
    assert isinstance(response.body, bytes)
    return json.loads(response.body)  # type: ignore[no-any-return]


class TestHealthCheckHandler:
    """Test endpoint responses."""

    @pytest.mark.asyncio
    async def test_health_ok(self, manager: StreamManager) -> None:
        """Test /health is 200 with the session count."""
        await manager.start_session("radio")
        handler = HealthCheckHandler(manager)

        response = await handler.health_check(make_mocked_request("GET", "/health"))

        assert response.status == 200
        data = body(response)
        assert data["status"] == "healthy"
        assert data["sessions"] == 1
        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_health_during_shutdown(self, manager: StreamManager) -> None:
        """Test /health is 503 once shutdown started, /liveness stays 200."""
        handler = HealthCheckHandler(manager)
        await manager.shutdown()

        health = await handler.health_check(make_mocked_request("GET", "/health"))
        liveness = await handler.liveness_check(make_mocked_request("GET", "/liveness"))

        assert health.status == 503
        assert body(health)["status"] == "unhealthy"
        assert liveness.status == 200
        assert body(liveness)["status"] == "alive"

    @pytest.mark.asyncio
    async def test_sessions(self, manager: StreamManager) -> None:
        """Test /sessions lists active sessions with metrics."""
        await manager.start_session("a")
        await manager.start_session("b")
        handler = HealthCheckHandler(manager)

        response = await handler.sessions(make_mocked_request("GET", "/sessions"))

        data = body(response)
        assert data["count"] == 2
        ids = {s["stream_id"] for s in data["sessions"]}  # type: ignore[attr-defined]
        assert ids == {"a", "b"}
        await manager.shutdown()


def test_routes_registered(manager: StreamManager) -> None:
    """Test every endpoint is routed."""
    app = web.Application()
    setup_health_routes(app, manager)

    paths = {route.resource.canonical for route in app.router.routes() if route.resource}
    assert {"/health", "/liveness", "/sessions"} <= paths
