"""Exception types for the streamer.

All session-scoped failures derive from StreamerError. They are raised and
handled inside the streamer; control-plane callers only ever observe the
boolean ``accepted`` outcome.
"""


class StreamerError(Exception):
    """Base class for streamer errors."""


class NegotiationFailed(StreamerError):
    """WHIP handshake could not produce a connected media transport.

    Attributes:
        reason: Human-readable failure reason
        status: HTTP status returned by the media server, if one was received
    """

    def __init__(self, reason: str, status: int | None = None) -> None:
        self.reason = reason
        self.status = status
        if status is not None:
            super().__init__(f"WHIP negotiation failed with status {status}: {reason}")
        else:
            super().__init__(f"WHIP negotiation failed: {reason}")


class UpstreamConnectFailed(StreamerError):
    """Upstream audio provider could not be reached or streamed from."""

    def __init__(self, address: str, reason: str) -> None:
        self.address = address
        self.reason = reason
        super().__init__(f"Cannot open audio stream at {address}: {reason}")


class RelayReceiveError(StreamerError):
    """Non-EOF failure while receiving a frame from the upstream stream."""


class UpstreamClosedError(RelayReceiveError):
    """Upstream stream was closed locally while a receive was pending."""


class TrackClosedError(StreamerError):
    """Sample written to an outbound track that has already ended."""
