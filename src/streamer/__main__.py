"""Streamer CLI entry point.

This module is invoked when running `python -m src.streamer` or the
`webrtc-streamer` console script.
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from pydantic import ValidationError

from src.streamer.config import StreamerConfig
from src.streamer.server import start_server


def setup_logging(level: str = "INFO") -> None:
    """Configure logging for the streamer.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments.

    Returns:
        Parsed arguments namespace
    """
    parser = argparse.ArgumentParser(
        description="WebRTC Streamer - relays gRPC Opus audio to a WHIP media server"
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=Path("configs/streamer.yaml"),
        help="Path to streamer configuration YAML file (default: configs/streamer.yaml)",
    )
    parser.add_argument(
        "--port",
        type=int,
        help="Override gRPC server port from config",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Override log level from config",
    )
    return parser.parse_args(argv)


def load_config(args: argparse.Namespace) -> StreamerConfig:
    """Load configuration with precedence CLI > ENV > YAML > defaults."""
    config = StreamerConfig.from_yaml_with_defaults(args.config)

    updates: dict[str, object] = {}
    if args.port:
        updates["grpc"] = config.grpc.model_copy(update={"port": args.port})
    if args.log_level:
        updates["log_level"] = args.log_level
    return config.model_copy(update=updates) if updates else config


async def main(argv: list[str] | None = None) -> None:
    """Main entry point for the streamer.

    Loads configuration, sets up logging, and runs the gRPC server until
    interrupted with Ctrl+C or SIGTERM.
    """
    args = parse_args(argv)

    try:
        config = load_config(args)
    except (ValidationError, ValueError) as e:
        print(f"Error: Failed to load configuration: {e}", file=sys.stderr)
        sys.exit(1)

    setup_logging(level=config.log_level)
    logger = logging.getLogger(__name__)
    logger.info(
        "Starting streamer",
        extra={"config_path": str(args.config), "grpc_port": config.grpc.port},
    )

    try:
        await start_server(config)
    except Exception as e:
        logger.exception("Streamer failed with error", extra={"error": str(e)})
        sys.exit(1)


def run() -> None:
    """Console script entry point."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
