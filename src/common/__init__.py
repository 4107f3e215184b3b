"""Common type definitions.

Shared aliases and protocols used by the streamer core, so that the
session, relay and registry code never depends on generated gRPC code
or on a concrete media stack.
"""

from src.common.types import (
    AudioFrameLike,
    AudioSink,
    FrameSource,
    OpusPacket,
    StreamID,
    TransportHandle,
    UpstreamAddress,
)

__all__ = [
    "AudioFrameLike",
    "AudioSink",
    "FrameSource",
    "OpusPacket",
    "StreamID",
    "TransportHandle",
    "UpstreamAddress",
]
