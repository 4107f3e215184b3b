"""Media transport engine backed by aiortc.

Wraps an RTCPeerConnection configured for a single send-only Opus track and
exposes the narrow surface the WHIP negotiation needs: create offer, set
local description, wait for ICE gathering, set remote description, create
the outbound track, close.

The outbound track carries already-encoded Opus packets. aiortc's RTP sender
accepts ``av.Packet`` objects from ``MediaStreamTrack.recv()`` and packetizes
them without re-encoding, so the track only has to stamp presentation times.
"""

import asyncio
import logging
import re
from dataclasses import dataclass, field
from fractions import Fraction
from typing import Protocol

from aiortc import (
    RTCConfiguration,
    RTCIceServer,
    RTCPeerConnection,
    RTCRtpSender,
    RTCSessionDescription,
)
from aiortc.mediastreams import MediaStreamError, MediaStreamTrack
from av.packet import Packet

from src.common.types import AudioSink
from src.streamer.errors import TrackClosedError

logger = logging.getLogger(__name__)

# Fixed Opus profile advertised to the media server
OPUS_MIME_TYPE = "audio/opus"
OPUS_CLOCK_RATE = 48000
OPUS_CHANNELS = 2
OPUS_PAYLOAD_TYPE = 111
OPUS_FMTP = "minptime=10;useinbandfec=1;stereo=1;sprop-stereo=1;maxaveragebitrate=128000;cbr=1"
OPUS_TIME_BASE = Fraction(1, OPUS_CLOCK_RATE)

_RTPMAP_OPUS = re.compile(r"^a=rtpmap:(\d+) opus/48000/2$", re.IGNORECASE)
_RTPMAP = re.compile(r"^a=rtpmap:(\d+) ")


def apply_opus_fmtp(sdp: str, fmtp: str = OPUS_FMTP) -> str:
    """Add the Opus fmtp line to every Opus rtpmap that lacks one.

    Args:
        sdp: Session description text (CRLF or LF line endings)
        fmtp: Format parameters to advertise

    Returns:
        SDP text with ``a=fmtp:<pt> <fmtp>`` after each bare Opus rtpmap
    """
    newline = "\r\n" if "\r\n" in sdp else "\n"
    lines = sdp.split(newline)
    existing = {line.split(" ", 1)[0] for line in lines if line.startswith("a=fmtp:")}

    result: list[str] = []
    for line in lines:
        result.append(line)
        match = _RTPMAP_OPUS.match(line)
        if match and f"a=fmtp:{match.group(1)}" not in existing:
            result.append(f"a=fmtp:{match.group(1)} {fmtp}")

    return newline.join(result)


def pin_opus_payload_type(sdp: str, payload_type: int = OPUS_PAYLOAD_TYPE) -> str:
    """Renumber the Opus payload type in an offer.

    aiortc assigns dynamic payload types; the media server answers with the
    offered number and aiortc sends with the answered one, so rewriting the
    offer is enough. The SDP is returned unchanged when it has no Opus
    rtpmap or when another codec already holds ``payload_type``.

    Args:
        sdp: Session description text (CRLF or LF line endings)
        payload_type: Payload type Opus should use

    Returns:
        SDP text with the Opus m-line entry, rtpmap, fmtp and rtcp-fb lines renumbered
    """
    newline = "\r\n" if "\r\n" in sdp else "\n"
    lines = sdp.split(newline)
    target = str(payload_type)

    current = None
    taken: set[str] = set()
    for line in lines:
        if line.startswith("m=audio "):
            taken.update(line.split(" ")[3:])
        match = _RTPMAP.match(line)
        if match:
            taken.add(match.group(1))
        opus = _RTPMAP_OPUS.match(line)
        if opus and current is None:
            current = opus.group(1)

    if current is None or current == target or target in taken:
        return sdp

    result: list[str] = []
    for line in lines:
        if line.startswith("m=audio "):
            fields = line.split(" ")
            line = " ".join(fields[:3] + [target if f == current else f for f in fields[3:]])
        else:
            for prefix in ("a=rtpmap:", "a=fmtp:", "a=rtcp-fb:"):
                if line.startswith(f"{prefix}{current} "):
                    line = f"{prefix}{target} {line[len(prefix) + len(current) + 1:]}"
                    break
        result.append(line)

    return newline.join(result)


class OutboundAudioTrack(MediaStreamTrack):
    """Send-only audio track fed with pre-encoded Opus samples.

    ``write_sample`` never blocks: when the RTP sender is not draining the
    queue (e.g. before DTLS completes) the oldest packet is dropped.
    """

    kind = "audio"

    def __init__(self, queue_size: int = 16) -> None:
        super().__init__()
        self._queue: asyncio.Queue[Packet | None] = asyncio.Queue(maxsize=queue_size)
        self._pts = 0
        self.dropped_packets = 0

    async def recv(self) -> Packet:
        if self.readyState != "live":
            raise MediaStreamError

        packet = await self._queue.get()
        if packet is None:
            raise MediaStreamError
        return packet

    async def write_sample(self, data: bytes, duration: float) -> None:
        """Queue one Opus packet lasting ``duration`` seconds.

        Raises:
            TrackClosedError: If the track has been stopped
            ValueError: If ``data`` is empty
        """
        if self.readyState != "live":
            raise TrackClosedError("Outbound audio track is closed")
        if not data:
            raise ValueError("Cannot write an empty sample")

        packet = Packet(data)
        packet.pts = self._pts
        packet.time_base = OPUS_TIME_BASE
        self._pts += round(duration * OPUS_CLOCK_RATE)

        if self._queue.full():
            self._queue.get_nowait()
            self.dropped_packets += 1
        self._queue.put_nowait(packet)

    def stop(self) -> None:
        if self.readyState != "live":
            return
        super().stop()

        # Wake a sender blocked in recv()
        if self._queue.full():
            self._queue.get_nowait()
        self._queue.put_nowait(None)


class MediaEngine(Protocol):
    """Operations the WHIP negotiation drives on a media transport."""

    def create_outbound_audio_track(self) -> AudioSink: ...

    async def create_offer(self) -> RTCSessionDescription: ...

    async def set_local_description(self, offer: RTCSessionDescription) -> None: ...

    async def wait_for_ice_gathering_complete(self) -> None: ...

    @property
    def local_sdp(self) -> str: ...

    async def set_remote_description(self, sdp: str) -> None: ...

    async def close(self) -> None: ...


class PeerConnectionEngine:
    """aiortc RTCPeerConnection configured for one outbound Opus track."""

    def __init__(self, ice_servers: list[str], track_queue_size: int = 16) -> None:
        """Create the peer connection.

        Args:
            ice_servers: STUN/TURN URLs used for candidate gathering
            track_queue_size: Packet queue size of the outbound track
        """
        configuration = RTCConfiguration(
            iceServers=[RTCIceServer(urls=url) for url in ice_servers]
        )
        self._pc = RTCPeerConnection(configuration=configuration)
        self._track_queue_size = track_queue_size
        self._tracks: list[OutboundAudioTrack] = []
        self._gathering_complete = asyncio.Event()
        self._closed = False

        self._pc.on("icegatheringstatechange", self._on_ice_gathering_state_change)
        self._pc.on("connectionstatechange", self._on_connection_state_change)

    def _on_ice_gathering_state_change(self) -> None:
        if self._pc.iceGatheringState == "complete":
            self._gathering_complete.set()

    def _on_connection_state_change(self) -> None:
        logger.info("Peer connection state changed", extra={"state": self._pc.connectionState})

    def create_outbound_audio_track(self) -> OutboundAudioTrack:
        """Create the send-only Opus track and attach it to the connection."""
        track = OutboundAudioTrack(queue_size=self._track_queue_size)
        transceiver = self._pc.addTransceiver(track, direction="sendonly")

        opus = [
            codec
            for codec in RTCRtpSender.getCapabilities("audio").codecs
            if codec.mimeType.lower() == OPUS_MIME_TYPE
            and codec.clockRate == OPUS_CLOCK_RATE
            and codec.channels == OPUS_CHANNELS
        ]
        if opus:
            transceiver.setCodecPreferences(opus)

        self._tracks.append(track)
        return track

    async def create_offer(self) -> RTCSessionDescription:
        return await self._pc.createOffer()

    async def set_local_description(self, offer: RTCSessionDescription) -> None:
        await self._pc.setLocalDescription(offer)

    async def wait_for_ice_gathering_complete(self) -> None:
        """Block until every candidate has been gathered (no trickle ICE)."""
        if self._pc.iceGatheringState == "complete":
            return
        await self._gathering_complete.wait()

    @property
    def local_sdp(self) -> str:
        """Finalized local description with the fixed Opus profile applied."""
        description = self._pc.localDescription
        if description is None:
            raise RuntimeError("Local description has not been set")
        return apply_opus_fmtp(pin_opus_payload_type(description.sdp))

    async def set_remote_description(self, sdp: str) -> None:
        await self._pc.setRemoteDescription(RTCSessionDescription(sdp=sdp, type="answer"))

    async def close(self) -> None:
        """Stop outbound tracks and close the peer connection. Safe to call twice."""
        if self._closed:
            return
        self._closed = True

        for track in self._tracks:
            track.stop()
        await self._pc.close()


@dataclass
class MediaTransport:
    """Connected publishing session returned by the WHIP negotiation."""

    engine: MediaEngine
    audio_track: AudioSink
    endpoint: str
    _closed: bool = field(default=False, init=False, repr=False)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self.engine.close()
