"""Per-session relay loop.

Pulls frames from the session's upstream stream and writes them to the
outbound audio track with a fixed 20ms duration. The loop holds at most one
frame and never rate-limits itself: pacing comes from the upstream source,
which yields one frame per 20ms.

Termination:
- cancellation signaled          -> exit before the next receive
- upstream end-of-stream         -> normal exit
- upstream receive error         -> logged, exit
- write on a closed track        -> silent exit (concurrent stop)
- any other write error          -> logged, frame dropped, loop continues

Whatever the reason, ``on_exit`` runs exactly once afterwards.
"""

import logging
from collections.abc import Awaitable, Callable

from src.streamer.errors import RelayReceiveError, TrackClosedError, UpstreamClosedError
from src.streamer.session import StreamSession

logger = logging.getLogger(__name__)

# Opus comfort-noise packet: TOC 0xF8 (CELT FB 20ms, mono, 1 frame) + empty payload
SILENCE_OPUS_FRAME = bytes([0xF8, 0xFF, 0xFE])

FRAME_DURATION_S = 0.020

type ExitCallback = Callable[[StreamSession], Awaitable[None]]


async def run_relay(session: StreamSession, on_exit: ExitCallback) -> None:
    """Relay frames for ``session`` until it ends, then call ``on_exit``.

    Args:
        session: Registered session whose upstream and track are relayed
        on_exit: Cleanup hook (registry removal + session stop)
    """
    stream_id = session.stream_id
    track = session.transport.audio_track
    logger.info("Starting relay", extra={"stream_id": stream_id})

    try:
        while True:
            if session.cancelled.is_set():
                logger.info("Relay cancelled", extra={"stream_id": stream_id})
                return

            try:
                frame = await session.upstream.recv()
            except UpstreamClosedError:
                logger.debug("Upstream closed during receive", extra={"stream_id": stream_id})
                return
            except RelayReceiveError as e:
                if session.cancelled.is_set():
                    logger.debug(
                        "Receive interrupted by stop",
                        extra={"stream_id": stream_id, "error": str(e)},
                    )
                else:
                    logger.error(
                        "Error receiving audio frame",
                        extra={"stream_id": stream_id, "error": str(e)},
                    )
                return

            if frame is None:
                logger.info("Upstream stream ended", extra={"stream_id": stream_id})
                return

            payload = SILENCE_OPUS_FRAME if frame.is_silence else frame.opus_data

            try:
                await track.write_sample(payload, FRAME_DURATION_S)
            except TrackClosedError:
                return
            except Exception as e:
                session.metrics.record_write_error()
                logger.warning(
                    "Error writing to track, frame dropped",
                    extra={"stream_id": stream_id, "error": str(e)},
                )
                continue

            session.metrics.record_frame(len(payload), frame.is_silence)
    finally:
        await on_exit(session)
        logger.info("Relay stopped", extra={"stream_id": stream_id})
