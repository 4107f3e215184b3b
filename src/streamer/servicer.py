"""WebRTCManager gRPC servicer.

Thin adapter between the control plane and StreamManager: each RPC maps to
one manager call and the outcome is reported as a boolean. Session failures
never surface as gRPC errors; details go to the log.
"""

import logging

import grpc

from src.rpc.generated import streamer_pb2, streamer_pb2_grpc
from src.streamer.manager import StreamManager

logger = logging.getLogger(__name__)


class WebRTCManagerServicer(streamer_pb2_grpc.WebRTCManagerServicer):
    """gRPC servicer for session control.

    Attributes:
        manager: StreamManager that owns every session
    """

    def __init__(self, manager: StreamManager) -> None:
        self.manager = manager
        logger.info("WebRTCManagerServicer initialized")

    async def StartSession(
        self, request: streamer_pb2.StartSessionRequest, context: grpc.aio.ServicerContext
    ) -> streamer_pb2.StartSessionResponse:
        """Start relaying a stream.

        Args:
            request: StartSessionRequest with stream_id and optional audio_provider_address
            context: gRPC service context

        Returns:
            StartSessionResponse with accepted=True once the session is active
        """
        stream_id = request.stream_id
        if not stream_id:
            logger.warning("Rejecting StartSession with empty stream_id")
            return streamer_pb2.StartSessionResponse(accepted=False)

        accepted = await self.manager.start_session(
            stream_id, request.audio_provider_address or None
        )

        logger.info(
            "StartSession handled",
            extra={
                "stream_id": stream_id,
                "accepted": accepted,
                "active_sessions": self.manager.session_count,
            },
        )
        return streamer_pb2.StartSessionResponse(accepted=accepted)

    async def StopSession(
        self, request: streamer_pb2.EndSessionRequest, context: grpc.aio.ServicerContext
    ) -> streamer_pb2.EndSessionResponse:
        """Stop a stream.

        Args:
            request: EndSessionRequest with stream_id
            context: gRPC service context

        Returns:
            EndSessionResponse with accepted=False if no such session exists
        """
        stream_id = request.stream_id
        if not stream_id:
            logger.warning("Rejecting StopSession with empty stream_id")
            return streamer_pb2.EndSessionResponse(accepted=False)

        accepted = await self.manager.stop_session(stream_id)

        logger.info(
            "StopSession handled",
            extra={
                "stream_id": stream_id,
                "accepted": accepted,
                "active_sessions": self.manager.session_count,
            },
        )
        return streamer_pb2.EndSessionResponse(accepted=accepted)
