"""Mock audio provider CLI entry point.

Run with `python -m src.provider` or the `mock-audio-provider` console script.
"""

import argparse
import asyncio
import logging

from src.provider.servicer import MockAudioProviderServicer, create_provider_server

logger = logging.getLogger(__name__)


def parse_args() -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        description="Mock AudioProvider - streams a test tone over gRPC"
    )
    parser.add_argument("--host", default="0.0.0.0", help="Bind host (default: 0.0.0.0)")  # noqa: S104
    parser.add_argument("--port", type=int, default=50052, help="Bind port (default: 50052)")
    parser.add_argument(
        "--mode",
        choices=["tone", "silence"],
        default="tone",
        help="Stream Opus tone frames or silence markers (default: tone)",
    )
    parser.add_argument("--frequency", type=int, default=440, help="Tone frequency in Hz")
    parser.add_argument(
        "--frame-count",
        type=int,
        default=None,
        help="End each stream after this many frames (default: endless)",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default="INFO",
    )
    return parser.parse_args()


async def main() -> None:
    args = parse_args()
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    servicer = MockAudioProviderServicer(
        mode=args.mode, frame_count=args.frame_count, frequency=args.frequency
    )
    server, _ = await create_provider_server(servicer, f"{args.host}:{args.port}")

    try:
        await server.wait_for_termination()
    except asyncio.CancelledError:
        logger.info("Received interrupt signal, shutting down")
    finally:
        await server.stop(grace=1.0)
        logger.info("Mock audio provider stopped")


def run() -> None:
    """Console script entry point."""
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
