"""Shared type aliases and structural interfaces.

The relay engine only depends on these protocols, never on the concrete
gRPC or aiortc classes, so every collaborator can be swapped for a fake in
tests.

Example:
    >>> class ListSource:
    ...     def __init__(self, frames): self._frames = list(frames)
    ...     async def recv(self): return self._frames.pop(0) if self._frames else None
    ...     async def close(self): pass
"""

from typing import Protocol

type StreamID = str
"""Caller-supplied key identifying which logical audio feed a session relays."""

type UpstreamAddress = str
"""host:port of an AudioProvider gRPC service."""

type OpusPacket = bytes
"""One encoded 20ms Opus packet."""


class AudioFrameLike(Protocol):
    """Frame received from the upstream provider (generated AudioFrame message)."""

    @property
    def opus_data(self) -> bytes: ...

    @property
    def is_silence(self) -> bool: ...


class FrameSource(Protocol):
    """Upstream side of a session: a pull-based stream of audio frames."""

    async def recv(self) -> AudioFrameLike | None:
        """Return the next frame, or None on clean end-of-stream.

        Raises:
            RelayReceiveError: On any other receive failure
        """
        ...

    async def close(self) -> None:
        """Close the connection; unblocks a pending recv()."""
        ...


class AudioSink(Protocol):
    """Outbound audio track accepting pre-encoded samples."""

    dropped_packets: int
    """Samples discarded because the sender was not draining the queue."""

    async def write_sample(self, data: OpusPacket, duration: float) -> None:
        """Queue one sample lasting ``duration`` seconds.

        Raises:
            TrackClosedError: If the track has ended
        """
        ...


class TransportHandle(Protocol):
    """Connected media transport owning one outbound audio track."""

    @property
    def audio_track(self) -> AudioSink: ...

    async def close(self) -> None: ...
