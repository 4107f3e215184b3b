"""In-memory stand-ins for the media transport, upstream stream and WHIP client.

They implement the same protocols as the real aiortc/gRPC-backed classes so
manager, session and relay tests run without sockets.
"""

import asyncio
import socket
from collections import deque
from collections.abc import Callable, Iterable
from dataclasses import dataclass

from src.streamer.errors import TrackClosedError, UpstreamClosedError


@dataclass
class FakeFrame:
    """Upstream frame (mirrors the AudioFrame message)."""

    opus_data: bytes = b""
    is_silence: bool = False


class FakeTrack:
    """Outbound track that records written samples.

    Args:
        fail_on: Zero-based write attempts that raise RuntimeError
    """

    def __init__(self, fail_on: Iterable[int] = ()) -> None:
        self.samples: list[tuple[bytes, float]] = []
        self.closed = False
        self.attempts = 0
        self.fail_on = set(fail_on)
        self.dropped_packets = 0

    async def write_sample(self, data: bytes, duration: float) -> None:
        if self.closed:
            raise TrackClosedError("track closed")
        attempt = self.attempts
        self.attempts += 1
        if attempt in self.fail_on:
            raise RuntimeError("write failed")
        self.samples.append((data, duration))


class FakeTransport:
    """Media transport whose close() ends the track."""

    def __init__(self, track: FakeTrack | None = None, close_error: Exception | None = None):
        self._track = track or FakeTrack()
        self.close_error = close_error
        self.close_calls = 0

    @property
    def audio_track(self) -> FakeTrack:
        return self._track

    async def close(self) -> None:
        self.close_calls += 1
        self._track.closed = True
        if self.close_error is not None:
            raise self.close_error


class FakeUpstream:
    """Upstream stream serving scripted frames.

    After the scripted frames it raises ``error`` if given, returns None if
    ``end`` is True, or blocks until close() otherwise (a live provider).
    """

    def __init__(
        self,
        frames: Iterable[FakeFrame] = (),
        end: bool = True,
        error: Exception | None = None,
        close_error: Exception | None = None,
    ) -> None:
        self._frames = deque(frames)
        self._end = end
        self._error = error
        self.close_error = close_error
        self.closed = False
        self.close_calls = 0
        self.recv_calls = 0
        self._closed_event = asyncio.Event()

    def push(self, frame: FakeFrame) -> None:
        self._frames.append(frame)

    async def recv(self) -> FakeFrame | None:
        self.recv_calls += 1
        if self.closed:
            raise UpstreamClosedError("closed")
        # Yield so concurrent tasks interleave like a real stream
        await asyncio.sleep(0)
        if self._frames:
            return self._frames.popleft()
        if self._error is not None:
            raise self._error
        if self._end:
            return None
        await self._closed_event.wait()
        raise UpstreamClosedError("closed")

    async def close(self) -> None:
        self.close_calls += 1
        self.closed = True
        self._closed_event.set()
        if self.close_error is not None:
            raise self.close_error


OFFER_SDP = "v=0\r\no=- 1 1 IN IP4 0.0.0.0\r\ns=-\r\nm=audio 9 UDP/TLS/RTP/SAVPF 111\r\n"
ANSWER_SDP = "v=0\r\no=- 2 2 IN IP4 10.0.0.1\r\ns=-\r\nm=audio 8189 UDP/TLS/RTP/SAVPF 111\r\n"


class FakeEngine:
    """Media engine that records WHIP-driven calls instead of running WebRTC."""

    def __init__(self, reject_answer: bool = False, gather_forever: bool = False) -> None:
        self.reject_answer = reject_answer
        self.gather_forever = gather_forever
        self.gathering = asyncio.Event()
        self.remote_sdp: str | None = None
        self.close_calls = 0

    def create_outbound_audio_track(self) -> FakeTrack:
        return FakeTrack()

    async def create_offer(self) -> str:
        return OFFER_SDP

    async def set_local_description(self, offer: str) -> None:
        pass

    async def wait_for_ice_gathering_complete(self) -> None:
        self.gathering.set()
        if self.gather_forever:
            await asyncio.Event().wait()

    @property
    def local_sdp(self) -> str:
        return OFFER_SDP

    async def set_remote_description(self, sdp: str) -> None:
        if self.reject_answer:
            raise ValueError("malformed answer")
        self.remote_sdp = sdp

    async def close(self) -> None:
        self.close_calls += 1


class FakeNegotiator:
    """WHIP client stand-in.

    Args:
        error: Raised from establish() after the gate opens
        gate: Holds establish() open until set (simulates a slow handshake)
    """

    def __init__(self, error: Exception | None = None, gate: asyncio.Event | None = None):
        self.error = error
        self.gate = gate
        self.endpoints: list[str] = []
        self.transports: list[FakeTransport] = []
        self.started = asyncio.Event()
        self.closed = False

    async def establish(self, endpoint: str) -> FakeTransport:
        self.endpoints.append(endpoint)
        transport = FakeTransport()
        self.transports.append(transport)
        try:
            self.started.set()
            if self.gate is not None:
                await self.gate.wait()
            if self.error is not None:
                raise self.error
        except BaseException:
            await transport.close()
            raise
        return transport

    async def close(self) -> None:
        self.closed = True


class FakeConnector:
    """Upstream connector stand-in; live (blocking) upstreams by default."""

    def __init__(
        self,
        factory: Callable[[], FakeUpstream] | None = None,
        error: Exception | None = None,
    ) -> None:
        self.factory = factory or (lambda: FakeUpstream(end=False))
        self.error = error
        self.calls: list[tuple[str, str]] = []
        self.upstreams: list[FakeUpstream] = []

    async def connect(self, address: str, stream_id: str) -> FakeUpstream:
        self.calls.append((address, stream_id))
        if self.error is not None:
            raise self.error
        upstream = self.factory()
        self.upstreams.append(upstream)
        return upstream


def get_free_port() -> int:
    """Get a free TCP port (freed again before returning, so nothing listens on it)."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        port: int = s.getsockname()[1]
    return port


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll ``predicate`` until true or fail after ``timeout`` seconds."""
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0.005)
