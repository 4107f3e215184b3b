"""Integration test fixtures.

Provides:
- Mock AudioProvider gRPC servers on free ports
- Streamer gRPC server (WebRTCManager) backed by a StreamManager
- Control client connected to the streamer

The WHIP side uses the in-memory FakeNegotiator unless a test builds its own
manager, so no WebRTC stack or media server is needed.
"""

import gc
import time
from collections.abc import AsyncIterator, Awaitable, Callable, Iterator

import pytest
import pytest_asyncio

from src.client.control_client import StreamerControlClient
from src.streamer.config import MediaMTXConfig, StreamerConfig
from src.streamer.manager import StreamManager
from src.streamer.server import create_grpc_server
from src.streamer.upstream import GrpcUpstreamConnector
from tests.helpers.fakes import FakeNegotiator
from tests.helpers.grpc_servers import ProviderHandle, StreamerHandle, start_provider


@pytest.fixture
def grpc_event_loop_workaround() -> Iterator[None]:
    """Workaround for grpc-python event loop cleanup issues.

    grpc-python background threads can touch an event loop that pytest-asyncio
    already closed. Disable GC during the test and give the threads a moment
    to finish afterwards.

    See: https://github.com/grpc/grpc/issues/37714
    """
    gc_was_enabled = gc.isenabled()
    gc.disable()

    yield

    if gc_was_enabled:
        gc.enable()
    time.sleep(0.2)


@pytest_asyncio.fixture
async def provider(grpc_event_loop_workaround: None) -> AsyncIterator[ProviderHandle]:
    """Endless silence-mode provider."""
    handle = await start_provider()
    yield handle
    await handle.server.stop(grace=None)


@pytest_asyncio.fixture
async def provider_factory(
    grpc_event_loop_workaround: None,
) -> AsyncIterator[Callable[..., Awaitable[ProviderHandle]]]:
    """Start extra providers (tone mode, frame limits); all stopped on teardown."""
    handles: list[ProviderHandle] = []

    async def factory(mode: str = "silence", frame_count: int | None = None) -> ProviderHandle:
        handle = await start_provider(mode, frame_count)
        handles.append(handle)
        return handle

    yield factory

    for handle in handles:
        await handle.server.stop(grace=None)


@pytest_asyncio.fixture
async def streamer(provider: ProviderHandle) -> AsyncIterator[StreamerHandle]:
    """Streamer whose default upstream is the ``provider`` fixture."""
    config = StreamerConfig(
        mediamtx=MediaMTXConfig(host="http://media.invalid:8889"),
        audio_provider_address=provider.address,
        graceful_shutdown_timeout_s=1.0,
    )
    negotiator = FakeNegotiator()
    manager = StreamManager(config, negotiator, GrpcUpstreamConnector(connect_timeout_s=1.0))
    server, port = await create_grpc_server(manager, "127.0.0.1:0")

    yield StreamerHandle(manager, negotiator, server, f"127.0.0.1:{port}")

    await server.stop(grace=None)
    await manager.shutdown()


@pytest_asyncio.fixture
async def control(streamer: StreamerHandle) -> AsyncIterator[StreamerControlClient]:
    async with StreamerControlClient(streamer.address, timeout_s=10.0) as client:
        yield client
