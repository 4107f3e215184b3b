"""gRPC control client for the streamer.

Starts and stops relay sessions from the command line, or from Python via
StreamerControlClient.

Example usage:
    $ python -m src.client.control_client start radio --provider localhost:50052
    $ python -m src.client.control_client stop radio

    >>> async with StreamerControlClient("localhost:50051") as client:
    ...     accepted = await client.start_session("radio")
    ...     await client.stop_session("radio")
"""

import argparse
import asyncio
import logging
import sys
from types import TracebackType

import grpc

from src.rpc.generated import streamer_pb2, streamer_pb2_grpc

logger = logging.getLogger(__name__)


class StreamerControlClient:
    """Async client for the WebRTCManager service.

    Attributes:
        address: Streamer address (e.g., "localhost:50051")
        channel: gRPC async channel
        stub: WebRTCManager stub
    """

    def __init__(self, address: str, timeout_s: float | None = None) -> None:
        """Initialize the client.

        Args:
            address: Streamer gRPC address (host:port)
            timeout_s: Per-call deadline (None = wait for the full handshake)
        """
        self.address = address
        self.timeout_s = timeout_s
        self.channel: grpc.aio.Channel | None = None
        self.stub: streamer_pb2_grpc.WebRTCManagerStub | None = None

    async def connect(self) -> None:
        """Open the channel."""
        self.channel = grpc.aio.insecure_channel(self.address)
        self.stub = streamer_pb2_grpc.WebRTCManagerStub(self.channel)  # type: ignore[no-untyped-call]
        logger.debug("Connected to streamer", extra={"address": self.address})

    async def close(self) -> None:
        """Close the channel."""
        if self.channel is not None:
            await self.channel.close()
            self.channel = None
            self.stub = None

    async def __aenter__(self) -> "StreamerControlClient":
        await self.connect()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()

    def _require_stub(self) -> streamer_pb2_grpc.WebRTCManagerStub:
        if self.stub is None:
            raise RuntimeError("Not connected to streamer")
        return self.stub

    async def start_session(self, stream_id: str, provider_address: str = "") -> bool:
        """Request a new session.

        Args:
            stream_id: Stream to publish
            provider_address: Upstream AudioProvider (empty = streamer default)

        Returns:
            True if the streamer accepted the session
        """
        response = await self._require_stub().StartSession(
            streamer_pb2.StartSessionRequest(
                stream_id=stream_id, audio_provider_address=provider_address
            ),
            timeout=self.timeout_s,
        )
        return bool(response.accepted)

    async def stop_session(self, stream_id: str) -> bool:
        """Request that a session stop.

        Returns:
            True if a session was stopped
        """
        response = await self._require_stub().StopSession(
            streamer_pb2.EndSessionRequest(stream_id=stream_id),
            timeout=self.timeout_s,
        )
        return bool(response.accepted)


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser."""
    parser = argparse.ArgumentParser(description="Control client for the WebRTC streamer")
    parser.add_argument(
        "--host",
        type=str,
        default="localhost:50051",
        help="Streamer gRPC address (default: localhost:50051)",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Per-call deadline in seconds (default: none)",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose logging")

    commands = parser.add_subparsers(dest="command", required=True)

    start = commands.add_parser("start", help="Start relaying a stream")
    start.add_argument("stream_id", help="Stream id (WHIP endpoint path)")
    start.add_argument(
        "--provider",
        type=str,
        default="",
        help="AudioProvider address (default: streamer's configured provider)",
    )

    stop = commands.add_parser("stop", help="Stop a stream")
    stop.add_argument("stream_id", help="Stream id")

    return parser


async def run_command(args: argparse.Namespace) -> bool:
    """Execute the parsed command.

    Returns:
        The streamer's accepted flag
    """
    async with StreamerControlClient(args.host, timeout_s=args.timeout) as client:
        if args.command == "start":
            return await client.start_session(args.stream_id, args.provider)
        return await client.stop_session(args.stream_id)


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the control client.

    Returns:
        Exit status: 0 accepted, 1 rejected, 2 RPC failure
    """
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING)

    try:
        accepted = asyncio.run(run_command(args))
    except grpc.RpcError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2

    print(f"{args.command} {args.stream_id}: {'accepted' if accepted else 'rejected'}")
    return 0 if accepted else 1


if __name__ == "__main__":
    sys.exit(main())
