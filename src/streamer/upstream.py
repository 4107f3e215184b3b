"""gRPC client for pulling audio from an upstream AudioProvider.

Each session owns one AudioProviderClient: one channel and one
PullAudioStream server stream. The relay loop reads it frame by frame;
closing the client from another task unblocks a pending read.

Example usage:
    >>> connector = GrpcUpstreamConnector(connect_timeout_s=5.0)
    >>> client = await connector.connect("localhost:50052", "radio")
    >>> while (frame := await client.recv()) is not None:
    ...     handle(frame.opus_data, frame.is_silence)
    >>> await client.close()
"""

import asyncio
import logging

import grpc

from src.rpc.generated import streamer_pb2, streamer_pb2_grpc
from src.streamer.errors import RelayReceiveError, UpstreamClosedError, UpstreamConnectFailed

logger = logging.getLogger(__name__)


class AudioProviderClient:
    """Async gRPC client for one upstream audio stream.

    Attributes:
        address: Provider address (e.g., "localhost:50052")
        stream_id: Stream requested from the provider
        channel: gRPC async channel
        stub: AudioProvider stub
    """

    def __init__(self, address: str, stream_id: str) -> None:
        """Initialize the client.

        Args:
            address: Provider gRPC address (host:port)
            stream_id: Stream to pull
        """
        self.address = address
        self.stream_id = stream_id
        self.channel: grpc.aio.Channel | None = None
        self.stub: streamer_pb2_grpc.AudioProviderStub | None = None
        self._call: grpc.aio.UnaryStreamCall | None = None  # type: ignore[type-arg]
        self._closed = False

    async def connect(self, timeout_s: float) -> None:
        """Open the channel and start PullAudioStream.

        Args:
            timeout_s: Time allowed for the channel to become ready

        Raises:
            UpstreamConnectFailed: If the provider is unreachable in time
        """
        logger.info(
            "Connecting to audio provider",
            extra={"address": self.address, "stream_id": self.stream_id},
        )
        self.channel = grpc.aio.insecure_channel(self.address)

        try:
            await asyncio.wait_for(self.channel.channel_ready(), timeout=timeout_s)
        except TimeoutError as e:
            await self.close()
            raise UpstreamConnectFailed(self.address, f"not ready after {timeout_s}s") from e
        except asyncio.CancelledError:
            await self.close()
            raise

        # Generated gRPC stubs are untyped
        self.stub = streamer_pb2_grpc.AudioProviderStub(self.channel)  # type: ignore[no-untyped-call]
        self._call = self.stub.PullAudioStream(
            streamer_pb2.StreamRequest(stream_id=self.stream_id)
        )
        logger.info(
            "Audio stream opened",
            extra={"address": self.address, "stream_id": self.stream_id},
        )

    async def recv(self) -> streamer_pb2.AudioFrame | None:
        """Return the next frame, or None when the provider ends the stream.

        Raises:
            UpstreamClosedError: If close() was called before or during the read
            RelayReceiveError: On any other stream failure
        """
        if self._call is None:
            raise RuntimeError("Not connected to audio provider")
        if self._closed:
            raise UpstreamClosedError("Audio stream closed")

        try:
            frame = await self._call.read()
        except asyncio.CancelledError:
            # grpc.aio surfaces a locally cancelled call as CancelledError
            if self._closed:
                raise UpstreamClosedError("Audio stream closed") from None
            raise
        except grpc.aio.AioRpcError as e:
            if self._closed:
                raise UpstreamClosedError("Audio stream closed") from e
            raise RelayReceiveError(f"{e.code().name}: {e.details()}") from e

        if frame is grpc.aio.EOF:
            return None
        return frame  # type: ignore[no-any-return]

    async def close(self) -> None:
        """Cancel the stream and close the channel. Safe to call multiple times."""
        if self._closed:
            return
        self._closed = True

        if self._call is not None:
            self._call.cancel()
        if self.channel is not None:
            logger.debug("Closing audio provider channel", extra={"address": self.address})
            await self.channel.close()


class GrpcUpstreamConnector:
    """Creates connected AudioProviderClient instances for new sessions."""

    def __init__(self, connect_timeout_s: float = 5.0) -> None:
        self.connect_timeout_s = connect_timeout_s

    async def connect(self, address: str, stream_id: str) -> AudioProviderClient:
        """Connect to ``address`` and open the stream for ``stream_id``.

        Raises:
            UpstreamConnectFailed: If the stream cannot be opened
        """
        client = AudioProviderClient(address, stream_id)
        try:
            await client.connect(self.connect_timeout_s)
        except UpstreamConnectFailed:
            raise
        except grpc.RpcError as e:
            await client.close()
            raise UpstreamConnectFailed(address, str(e)) from e
        return client
