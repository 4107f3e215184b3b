"""Mock AudioProvider gRPC server.

Streams a 440Hz Opus tone (or silence markers) at real-time 20ms cadence
for any requested stream id. Used for local end-to-end runs of the
streamer and by the integration tests.
"""

import asyncio
import logging
from collections.abc import AsyncIterator
from typing import Literal

import grpc

from src.provider.tone import FRAME_DURATION_MS, SINE_FREQUENCY_HZ, OpusToneEncoder
from src.rpc.generated import streamer_pb2, streamer_pb2_grpc

logger = logging.getLogger(__name__)

type ProviderMode = Literal["tone", "silence"]


class MockAudioProviderServicer(streamer_pb2_grpc.AudioProviderServicer):
    """AudioProvider that synthesizes its own audio.

    Attributes:
        mode: "tone" for Opus-encoded sine audio, "silence" for silence markers
        frame_count: Frames per stream before ending it (None = endless)
        frame_interval_s: Delay between frames
        active_streams: Number of streams currently being served
    """

    def __init__(
        self,
        mode: ProviderMode = "tone",
        frame_count: int | None = None,
        frequency: int = SINE_FREQUENCY_HZ,
        frame_interval_s: float = FRAME_DURATION_MS / 1000.0,
    ) -> None:
        self.mode = mode
        self.frame_count = frame_count
        self.frequency = frequency
        self.frame_interval_s = frame_interval_s
        self.active_streams = 0
        logger.info(
            "MockAudioProviderServicer initialized",
            extra={"mode": mode, "frame_count": frame_count},
        )

    async def PullAudioStream(
        self, request: streamer_pb2.StreamRequest, context: grpc.aio.ServicerContext
    ) -> AsyncIterator[streamer_pb2.AudioFrame]:
        """Stream frames for ``request.stream_id`` until the limit or cancellation."""
        stream_id = request.stream_id
        encoder = OpusToneEncoder(self.frequency) if self.mode == "tone" else None
        loop = asyncio.get_running_loop()
        next_deadline = loop.time()
        sent = 0

        self.active_streams += 1
        logger.info("Audio stream opened", extra={"stream_id": stream_id, "mode": self.mode})
        try:
            while self.frame_count is None or sent < self.frame_count:
                if encoder is not None:
                    packets = encoder.encode_next()
                    # libopus holds back the first block; fill the gap with silence
                    for packet in packets or [b""]:
                        yield streamer_pb2.AudioFrame(opus_data=packet, is_silence=not packet)
                        sent += 1
                else:
                    yield streamer_pb2.AudioFrame(is_silence=True)
                    sent += 1

                next_deadline += self.frame_interval_s
                await asyncio.sleep(max(0.0, next_deadline - loop.time()))
        finally:
            self.active_streams -= 1
            logger.info("Audio stream closed", extra={"stream_id": stream_id, "frames_sent": sent})


async def create_provider_server(
    servicer: MockAudioProviderServicer, address: str
) -> tuple[grpc.aio.Server, int]:
    """Create and start a gRPC server hosting the mock provider.

    Returns:
        (server, bound port)
    """
    server = grpc.aio.server()
    streamer_pb2_grpc.add_AudioProviderServicer_to_server(servicer, server)  # type: ignore[no-untyped-call]

    port = server.add_insecure_port(address)
    if port == 0:
        raise RuntimeError(f"Failed to bind audio provider to {address}")

    await server.start()
    logger.info("Mock audio provider started", extra={"address": address, "port": port})
    return server, port
