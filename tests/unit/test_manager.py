"""Unit tests for StreamManager session orchestration.

Uses in-memory fakes for the WHIP client and upstream connector, so every
scenario runs on one event loop without sockets.

Coverage:
- Start/stop happy path and endpoint/address resolution
- At most one session per stream id under concurrent starts
- Cleanup after negotiation and upstream failures
- Stop while a start is still negotiating
- Relay self-cleanup and stale-exit protection
- Process shutdown
"""

import asyncio

import pytest

from src.streamer.config import MediaMTXConfig, StreamerConfig
from src.streamer.errors import NegotiationFailed, UpstreamConnectFailed
from src.streamer.manager import StreamManager
from tests.helpers.fakes import (
    FakeConnector,
    FakeFrame,
    FakeNegotiator,
    FakeUpstream,
    wait_until,
)


@pytest.fixture
def config() -> StreamerConfig:
    return StreamerConfig(
        mediamtx=MediaMTXConfig(host="http://media:8889"),
        audio_provider_address="provider:50052",
        graceful_shutdown_timeout_s=1.0,
    )


@pytest.fixture
def negotiator() -> FakeNegotiator:
    return FakeNegotiator()


@pytest.fixture
def connector() -> FakeConnector:
    return FakeConnector()


@pytest.fixture
def manager(
    config: StreamerConfig, negotiator: FakeNegotiator, connector: FakeConnector
) -> StreamManager:
    return StreamManager(config, negotiator, connector)


class TestStartSession:
    """Test session start."""

    @pytest.mark.asyncio
    async def test_start_registers_session(
        self, manager: StreamManager, negotiator: FakeNegotiator, connector: FakeConnector
    ) -> None:
        """Test a successful start negotiates, connects and spawns the relay."""
        assert await manager.start_session("radio") is True

        assert negotiator.endpoints == ["http://media:8889/radio/whip"]
        assert connector.calls == [("provider:50052", "radio")]

        session = await manager.registry.get("radio")
        assert session is not None
        assert session.relay_task is not None
        assert not session.relay_task.done()
        assert manager.session_count == 1

        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_request_address_overrides_default(
        self, manager: StreamManager, connector: FakeConnector
    ) -> None:
        """Test a non-empty upstream address in the request wins."""
        assert await manager.start_session("radio", "other:6000") is True
        assert connector.calls == [("other:6000", "radio")]
        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_empty_address_uses_default(
        self, manager: StreamManager, connector: FakeConnector
    ) -> None:
        """Test an empty upstream address falls back to configuration."""
        assert await manager.start_session("radio", "") is True
        assert connector.calls == [("provider:50052", "radio")]
        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_duplicate_start_rejected(
        self, manager: StreamManager, negotiator: FakeNegotiator
    ) -> None:
        """Test a second start for an active id is rejected without negotiating."""
        assert await manager.start_session("radio") is True
        assert await manager.start_session("radio") is False

        assert len(negotiator.endpoints) == 1
        assert manager.session_count == 1
        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_concurrent_starts_single_winner(
        self, manager: StreamManager, negotiator: FakeNegotiator
    ) -> None:
        """Test concurrent starts for one id yield exactly one session."""
        negotiator.gate = asyncio.Event()

        starts = [asyncio.create_task(manager.start_session("radio")) for _ in range(10)]
        await negotiator.started.wait()
        negotiator.gate.set()
        results = await asyncio.gather(*starts)

        assert results.count(True) == 1
        assert len(negotiator.endpoints) == 1
        assert manager.session_count == 1
        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_distinct_ids_run_in_parallel(self, manager: StreamManager) -> None:
        """Test different stream ids are independent."""
        results = await asyncio.gather(*(manager.start_session(f"s{i}") for i in range(5)))

        assert results == [True] * 5
        assert manager.session_count == 5
        await manager.shutdown()


class TestStartFailures:
    """Test cleanup when a start fails."""

    @pytest.mark.asyncio
    async def test_negotiation_failure(
        self, manager: StreamManager, negotiator: FakeNegotiator, connector: FakeConnector
    ) -> None:
        """Test a rejected offer leaves no entry and no open transport."""
        negotiator.error = NegotiationFailed("Internal Server Error", 500)

        assert await manager.start_session("radio") is False

        assert manager.session_count == 0
        assert [t.close_calls for t in negotiator.transports] == [1]
        assert connector.calls == []

    @pytest.mark.asyncio
    async def test_upstream_failure_closes_transport(
        self, manager: StreamManager, negotiator: FakeNegotiator, connector: FakeConnector
    ) -> None:
        """Test an unreachable upstream closes the negotiated transport."""
        connector.error = UpstreamConnectFailed("provider:50052", "not ready after 5.0s")

        assert await manager.start_session("radio") is False

        assert manager.session_count == 0
        assert [t.close_calls for t in negotiator.transports] == [1]

    @pytest.mark.asyncio
    async def test_unexpected_error_is_contained(
        self, manager: StreamManager, negotiator: FakeNegotiator
    ) -> None:
        """Test an arbitrary exception still reports not-accepted."""
        negotiator.error = RuntimeError("unexpected")

        assert await manager.start_session("radio") is False
        assert manager.session_count == 0

    @pytest.mark.asyncio
    async def test_retry_after_failure(
        self, manager: StreamManager, negotiator: FakeNegotiator
    ) -> None:
        """Test the id is free again after a failed start."""
        negotiator.error = NegotiationFailed("refused")
        assert await manager.start_session("radio") is False

        negotiator.error = None
        assert await manager.start_session("radio") is True
        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_caller_cancellation_releases_id(
        self, manager: StreamManager, negotiator: FakeNegotiator
    ) -> None:
        """Test cancelling the start call itself cleans up."""
        negotiator.gate = asyncio.Event()
        start = asyncio.create_task(manager.start_session("radio"))
        await negotiator.started.wait()

        start.cancel()
        with pytest.raises(asyncio.CancelledError):
            await start

        await wait_until(lambda: negotiator.transports[0].close_calls == 1)
        assert manager.session_count == 0

    @pytest.mark.asyncio
    async def test_caller_cancelled_after_build_stops_session(
        self, manager: StreamManager, negotiator: FakeNegotiator, connector: FakeConnector
    ) -> None:
        """Test a session finished just as the caller is cancelled is closed, not leaked."""
        negotiator.gate = asyncio.Event()
        start = asyncio.create_task(manager.start_session("radio"))
        await negotiator.started.wait()

        establish = next(t for t in asyncio.all_tasks() if t.get_name() == "establish-radio")
        establish.add_done_callback(lambda _: start.cancel())
        negotiator.gate.set()

        with pytest.raises(asyncio.CancelledError):
            await start

        assert establish.done() and not establish.cancelled()
        assert manager.session_count == 0
        assert [t.close_calls for t in negotiator.transports] == [1]
        assert [u.close_calls for u in connector.upstreams] == [1]


class TestStopSession:
    """Test session stop."""

    @pytest.mark.asyncio
    async def test_stop_active_session(
        self, manager: StreamManager, negotiator: FakeNegotiator, connector: FakeConnector
    ) -> None:
        """Test stop releases transport, upstream and the relay task."""
        await manager.start_session("radio")
        session = await manager.registry.get("radio")
        assert session is not None and session.relay_task is not None

        assert await manager.stop_session("radio") is True

        assert manager.session_count == 0
        assert negotiator.transports[0].close_calls == 1
        assert connector.upstreams[0].close_calls == 1
        await asyncio.wait_for(session.relay_task, timeout=1.0)

    @pytest.mark.asyncio
    async def test_stop_twice(self, manager: StreamManager) -> None:
        """Test the second stop reports not-accepted."""
        await manager.start_session("radio")
        assert await manager.stop_session("radio") is True
        assert await manager.stop_session("radio") is False

    @pytest.mark.asyncio
    async def test_stop_unknown(self, manager: StreamManager) -> None:
        """Test stopping an unknown id reports not-accepted."""
        assert await manager.stop_session("nope") is False

    @pytest.mark.asyncio
    async def test_stop_during_negotiation(
        self, manager: StreamManager, negotiator: FakeNegotiator, connector: FakeConnector
    ) -> None:
        """Test a stop mid-negotiation cancels the start and closes the engine."""
        negotiator.gate = asyncio.Event()
        start = asyncio.create_task(manager.start_session("radio"))
        await negotiator.started.wait()

        assert await manager.stop_session("radio") is True
        assert await start is False

        assert manager.session_count == 0
        assert negotiator.transports[0].close_calls == 1
        assert connector.calls == []

    @pytest.mark.asyncio
    async def test_restart_after_stop(self, manager: StreamManager) -> None:
        """Test start -> stop -> start yields a fresh session."""
        assert await manager.start_session("radio") is True
        first = await manager.registry.get("radio")
        assert await manager.stop_session("radio") is True
        assert await manager.start_session("radio") is True

        second = await manager.registry.get("radio")
        assert second is not None and second is not first
        await manager.shutdown()


class TestRelayExit:
    """Test cleanup driven by the relay."""

    @pytest.mark.asyncio
    async def test_upstream_eof_removes_session(
        self, config: StreamerConfig, negotiator: FakeNegotiator
    ) -> None:
        """Test the session disappears once the upstream ends."""
        connector = FakeConnector(lambda: FakeUpstream([FakeFrame(b"a"), FakeFrame(b"b")]))
        manager = StreamManager(config, negotiator, connector)

        assert await manager.start_session("radio") is True
        await wait_until(lambda: manager.session_count == 0)

        transport = negotiator.transports[0]
        assert transport.close_calls == 1
        assert [data for data, _ in transport.audio_track.samples] == [b"a", b"b"]

    @pytest.mark.asyncio
    async def test_stale_exit_keeps_newer_session(self, manager: StreamManager) -> None:
        """Test an old relay's cleanup never removes a session that reused its id."""
        await manager.start_session("radio")
        old = await manager.registry.get("radio")
        assert old is not None
        await manager.stop_session("radio")
        await manager.start_session("radio")
        new = await manager.registry.get("radio")

        # Replay the old relay's exit after the new session is installed
        await manager._on_relay_exit(old)

        assert await manager.registry.get("radio") is new
        assert new is not None and not new.is_stopped
        await manager.shutdown()


class TestShutdown:
    """Test process shutdown."""

    @pytest.mark.asyncio
    async def test_shutdown_stops_everything(
        self, manager: StreamManager, negotiator: FakeNegotiator, connector: FakeConnector
    ) -> None:
        """Test shutdown stops active sessions, cancels pending ones and closes the client."""
        await manager.start_session("a")
        await manager.start_session("b")
        relays = [s.relay_task for s in await manager.registry.active_sessions()]

        negotiator.gate = asyncio.Event()
        negotiator.started.clear()
        pending = asyncio.create_task(manager.start_session("c"))
        await negotiator.started.wait()

        await manager.shutdown()

        assert await pending is False
        assert manager.session_count == 0
        assert all(t.close_calls == 1 for t in negotiator.transports)
        assert all(u.close_calls == 1 for u in connector.upstreams)
        assert all(r is not None and r.done() for r in relays)
        assert negotiator.closed is True
        assert manager.is_shutting_down

    @pytest.mark.asyncio
    async def test_start_rejected_after_shutdown(
        self, manager: StreamManager, negotiator: FakeNegotiator
    ) -> None:
        """Test no new sessions are accepted once shutdown began."""
        await manager.shutdown()
        assert await manager.start_session("radio") is False
        assert negotiator.endpoints == []
