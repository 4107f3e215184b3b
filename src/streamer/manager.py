"""Stream session orchestration.

StreamManager is the control-plane entry point. It guarantees at most one
session per stream id, builds sessions (WHIP negotiation + upstream stream)
outside the registry lock, spawns one relay task per session, and tears
sessions down from whichever path gets there first.

Start protocol:
    1. reserve the id with a placeholder (reject if taken)
    2. negotiate + connect upstream in a child task (lock not held)
    3. swap the placeholder for the session, spawn the relay
A stop that finds the placeholder removes it and cancels step 2; the start
then reports not-accepted and every partially built resource is closed.
"""

import asyncio
import logging
from typing import Protocol

from src.common.types import FrameSource, StreamID, TransportHandle, UpstreamAddress
from src.streamer.config import StreamerConfig
from src.streamer.errors import NegotiationFailed, UpstreamConnectFailed
from src.streamer.registry import PendingSession, SessionRegistry
from src.streamer.relay import run_relay
from src.streamer.session import StreamSession

logger = logging.getLogger(__name__)


class Negotiator(Protocol):
    """Builds a connected media transport for a WHIP endpoint."""

    async def establish(self, endpoint: str) -> TransportHandle: ...

    async def close(self) -> None: ...


class UpstreamConnector(Protocol):
    """Opens the upstream audio stream for a session."""

    async def connect(self, address: UpstreamAddress, stream_id: StreamID) -> FrameSource: ...


class StreamManager:
    """Starts, stops and supervises relay sessions.

    Thread-safety: not thread-safe. All calls must come from the event loop
    that owns the gRPC server.
    """

    def __init__(
        self,
        config: StreamerConfig,
        negotiator: Negotiator,
        upstream_connector: UpstreamConnector,
        registry: SessionRegistry | None = None,
    ) -> None:
        """Initialize the manager.

        Args:
            config: Streamer configuration (media server host, default upstream)
            negotiator: WHIP negotiation client
            upstream_connector: Upstream stream factory
            registry: Session registry (a fresh one if omitted)
        """
        self.config = config
        self.negotiator = negotiator
        self.upstream_connector = upstream_connector
        self.registry = registry or SessionRegistry()
        self._relay_tasks: set[asyncio.Task[None]] = set()
        self._shutting_down = False

    @property
    def session_count(self) -> int:
        """Number of pending and active stream ids."""
        return len(self.registry)

    @property
    def is_shutting_down(self) -> bool:
        return self._shutting_down

    async def start_session(
        self, stream_id: StreamID, upstream_address: UpstreamAddress | None = None
    ) -> bool:
        """Start relaying ``stream_id``.

        Args:
            stream_id: Stream to publish (also names the WHIP endpoint path)
            upstream_address: AudioProvider address; configured default if None/empty

        Returns:
            True if the session is now active, False otherwise
        """
        if self._shutting_down:
            logger.warning("Rejecting start during shutdown", extra={"stream_id": stream_id})
            return False

        pending = await self.registry.reserve(stream_id)
        if pending is None:
            logger.info("Stream already active", extra={"stream_id": stream_id})
            return False

        address = upstream_address or self.config.audio_provider_address
        endpoint = self.config.mediamtx.whip_endpoint(stream_id)
        logger.info(
            "Starting session",
            extra={"stream_id": stream_id, "endpoint": endpoint, "upstream": address},
        )

        task = asyncio.create_task(
            self._build_session(stream_id, endpoint, address),
            name=f"establish-{stream_id}",
        )
        pending.task = task

        try:
            await asyncio.wait({task})
        except asyncio.CancelledError:
            # Caller went away (RPC cancelled); abandon the start. The build
            # may already have finished, in which case its session is stopped.
            task.cancel()
            await asyncio.wait({task})
            try:
                if not task.cancelled() and task.exception() is None:
                    logger.info(
                        "Stopping session built after caller cancelled",
                        extra={"stream_id": stream_id},
                    )
                    await task.result().stop()
            finally:
                await self.registry.release(pending)
            raise

        if task.cancelled():
            logger.info("Session start cancelled by stop", extra={"stream_id": stream_id})
            await self.registry.release(pending)
            return False

        error = task.exception()
        if error is not None:
            self._log_start_failure(stream_id, error)
            await self.registry.release(pending)
            return False

        session = task.result()
        if not await self.registry.install(pending, session):
            logger.info("Session stopped before activation", extra={"stream_id": stream_id})
            await session.stop()
            return False

        relay = asyncio.create_task(run_relay(session, self._on_relay_exit), name=f"relay-{stream_id}")
        session.relay_task = relay
        self._relay_tasks.add(relay)
        relay.add_done_callback(self._relay_tasks.discard)

        logger.info("Session started", extra={"stream_id": stream_id})
        return True

    async def stop_session(self, stream_id: StreamID) -> bool:
        """Stop ``stream_id``.

        Returns:
            True if an active or starting session was stopped, False if unknown
        """
        entry = await self.registry.pop(stream_id)
        if entry is None:
            logger.info("No session to stop", extra={"stream_id": stream_id})
            return False

        if isinstance(entry, PendingSession):
            logger.info("Cancelling session start", extra={"stream_id": stream_id})
            entry.cancel()
            return True

        logger.info("Stopping session", extra={"stream_id": stream_id})
        await entry.stop()
        return True

    async def shutdown(self, timeout_s: float | None = None) -> None:
        """Stop every session and wait for relay tasks to finish.

        Args:
            timeout_s: Grace period for relay tasks (config default if None)
        """
        self._shutting_down = True
        grace = timeout_s if timeout_s is not None else self.config.graceful_shutdown_timeout_s

        entries = await self.registry.drain()
        logger.info("Shutting down sessions", extra={"count": len(entries)})

        for entry in entries:
            if isinstance(entry, PendingSession):
                entry.cancel()
        await asyncio.gather(
            *(entry.stop() for entry in entries if isinstance(entry, StreamSession))
        )

        if self._relay_tasks:
            _, still_running = await asyncio.wait(set(self._relay_tasks), timeout=grace)
            for task in still_running:
                logger.warning("Cancelling unfinished relay", extra={"task": task.get_name()})
                task.cancel()
            if still_running:
                await asyncio.gather(*still_running, return_exceptions=True)

        await self.negotiator.close()

    async def _build_session(
        self, stream_id: StreamID, endpoint: str, address: UpstreamAddress
    ) -> StreamSession:
        """Negotiate the transport, then open the upstream stream.

        The transport is closed if the upstream step fails or is cancelled.
        """
        transport = await self.negotiator.establish(endpoint)
        try:
            upstream = await self.upstream_connector.connect(address, stream_id)
        except BaseException:
            await transport.close()
            raise
        return StreamSession(stream_id, transport, upstream)

    async def _on_relay_exit(self, session: StreamSession) -> None:
        """Relay cleanup: drop the registry entry if still ours, then stop."""
        removed = await self.registry.remove_if(session.stream_id, session)
        if removed:
            logger.info("Session removed after relay exit", extra={"stream_id": session.stream_id})
        await session.stop()

    @staticmethod
    def _log_start_failure(stream_id: StreamID, error: BaseException) -> None:
        if isinstance(error, NegotiationFailed):
            logger.error(
                "WHIP negotiation failed",
                extra={"stream_id": stream_id, "status": error.status, "error": error.reason},
            )
        elif isinstance(error, UpstreamConnectFailed):
            logger.error(
                "Upstream connection failed",
                extra={"stream_id": stream_id, "address": error.address, "error": error.reason},
            )
        else:
            logger.error(
                "Failed to start session",
                extra={"stream_id": stream_id, "error": f"{type(error).__name__}: {error}"},
                exc_info=error,
            )
