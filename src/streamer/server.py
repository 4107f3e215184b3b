"""Streamer gRPC server.

Wires configuration into the WHIP client, upstream connector and
StreamManager, serves the WebRTCManager service (plus the optional health
endpoint), and shuts everything down in order on SIGINT/SIGTERM.
"""

import asyncio
import logging
import signal

import grpc
from aiohttp.web import Application, AppRunner, TCPSite

from src.rpc.generated import streamer_pb2_grpc
from src.streamer.config import StreamerConfig
from src.streamer.health import setup_health_routes
from src.streamer.manager import StreamManager
from src.streamer.servicer import WebRTCManagerServicer
from src.streamer.upstream import GrpcUpstreamConnector
from src.streamer.whip import WHIPClient

logger = logging.getLogger(__name__)


def build_manager(config: StreamerConfig) -> StreamManager:
    """Create a StreamManager backed by aiortc/aiohttp and gRPC upstreams."""
    negotiator = WHIPClient(
        ice_servers=config.webrtc.ice_servers,
        track_queue_size=config.webrtc.track_queue_size,
        timeout_s=config.timeouts.negotiation_s,
    )
    connector = GrpcUpstreamConnector(connect_timeout_s=config.timeouts.upstream_connect_s)
    return StreamManager(config, negotiator, connector)


async def create_grpc_server(manager: StreamManager, address: str) -> tuple[grpc.aio.Server, int]:
    """Create and start a gRPC server hosting WebRTCManager.

    Args:
        manager: StreamManager behind the servicer
        address: Listen address (host:port, port 0 picks a free port)

    Returns:
        (server, bound port)

    Raises:
        RuntimeError: If the address cannot be bound
    """
    server = grpc.aio.server()
    servicer = WebRTCManagerServicer(manager)
    streamer_pb2_grpc.add_WebRTCManagerServicer_to_server(servicer, server)  # type: ignore[no-untyped-call]

    port = server.add_insecure_port(address)
    if port == 0:
        raise RuntimeError(f"Failed to bind gRPC server to {address}")

    await server.start()
    return server, port


async def start_server(config: StreamerConfig, stop_event: asyncio.Event | None = None) -> None:
    """Run the streamer until ``stop_event`` is set or a signal arrives.

    Args:
        config: Streamer configuration
        stop_event: External stop trigger (installs SIGINT/SIGTERM handlers if None)

    Notes:
        Shutdown order: stop accepting RPCs, stop every session and wait for
        relay tasks (bounded by graceful_shutdown_timeout_s), stop the health
        endpoint.
    """
    if stop_event is None:
        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop_event.set)

    manager = build_manager(config)

    listen_addr = f"{config.grpc.host}:{config.grpc.port}"
    server, port = await create_grpc_server(manager, listen_addr)
    logger.info(
        "Streamer started",
        extra={
            "address": listen_addr,
            "port": port,
            "mediamtx_host": config.mediamtx.host,
            "audio_provider_address": config.audio_provider_address,
        },
    )

    runner: AppRunner | None = None
    if config.health.enabled:
        health_app = Application()
        setup_health_routes(health_app, manager)
        runner = AppRunner(health_app)
        await runner.setup()
        site = TCPSite(runner, config.health.host, config.health.port)
        await site.start()
        logger.info(
            "Health check server started",
            extra={"host": config.health.host, "port": config.health.port},
        )

    try:
        await stop_event.wait()
        logger.info("Received shutdown signal")
    finally:
        logger.info("Stopping streamer")
        await server.stop(grace=1.0)
        await manager.shutdown(config.graceful_shutdown_timeout_s)

        if runner is not None:
            await runner.cleanup()
            logger.info("Health check server stopped")

        logger.info("Streamer stopped")
