"""Per-stream relay session.

A StreamSession owns exactly one media transport, one upstream connection
and one cancellation signal. ``stop()`` releases all of them once, no matter
which exit path (explicit stop, relay exit, process shutdown) calls it first.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field

from src.common.types import FrameSource, StreamID, TransportHandle

logger = logging.getLogger(__name__)


@dataclass
class SessionMetrics:
    """Relay activity counters for one session."""

    frames_relayed: int = 0  # Frames written to the track (audio + silence)
    silence_frames: int = 0  # Frames replaced with the silence packet
    bytes_written: int = 0
    write_errors: int = 0  # Dropped frames (track still open)

    session_start_ts: float = field(default_factory=time.monotonic)
    first_frame_ts: float | None = None
    session_end_ts: float | None = None

    def record_frame(self, size: int, is_silence: bool) -> None:
        """Record one successfully written frame."""
        self.frames_relayed += 1
        self.bytes_written += size
        if is_silence:
            self.silence_frames += 1
        if self.first_frame_ts is None:
            self.first_frame_ts = time.monotonic()

    def record_write_error(self) -> None:
        self.write_errors += 1

    def finalize(self) -> None:
        """Mark session as complete and record end time."""
        if self.session_end_ts is None:
            self.session_end_ts = time.monotonic()

    @property
    def duration_s(self) -> float:
        return (self.session_end_ts or time.monotonic()) - self.session_start_ts


class StreamSession:
    """Resources of one active stream.

    Attributes:
        stream_id: Stream this session relays
        transport: Connected media transport (owns the outbound track)
        upstream: Upstream frame source (owns the gRPC stream)
        cancelled: Set once by stop(); read by the relay loop
        relay_task: Background relay task, set by the manager after registration
    """

    def __init__(self, stream_id: StreamID, transport: TransportHandle, upstream: FrameSource):
        self.stream_id = stream_id
        self.transport = transport
        self.upstream = upstream
        self.cancelled = asyncio.Event()
        self.metrics = SessionMetrics()
        self.relay_task: asyncio.Task[None] | None = None
        self._stopped = False

    @property
    def is_stopped(self) -> bool:
        return self._stopped

    async def stop(self) -> None:
        """Cancel the relay and release transport and upstream connection.

        Cancellation is signaled first. Both closes are attempted even if one
        fails; close errors are logged, never raised. Subsequent calls are no-ops.
        """
        if self._stopped:
            return
        self._stopped = True

        self.cancelled.set()

        try:
            await self.transport.close()
        except Exception as e:
            logger.warning(
                "Error closing media transport",
                extra={"stream_id": self.stream_id, "error": str(e)},
            )

        try:
            await self.upstream.close()
        except Exception as e:
            logger.warning(
                "Error closing upstream connection",
                extra={"stream_id": self.stream_id, "error": str(e)},
            )

        self.metrics.finalize()
        logger.info("Session stopped", extra=self.get_metrics_summary())

    def get_metrics_summary(self) -> dict[str, str | float | int | None]:
        """Get session metrics summary for logging/monitoring."""
        return {
            "stream_id": self.stream_id,
            "frames_relayed": self.metrics.frames_relayed,
            "silence_frames": self.metrics.silence_frames,
            "bytes_written": self.metrics.bytes_written,
            "write_errors": self.metrics.write_errors,
            "dropped_packets": self.transport.audio_track.dropped_packets,
            "session_duration_s": round(self.metrics.duration_s, 3),
        }
