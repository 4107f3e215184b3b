"""WHIP negotiation client.

Performs the one-shot offer/answer exchange that turns a fresh media engine
into a connected publishing session:

1. Build the engine and attach the outbound Opus track.
2. Create the offer, apply it locally, wait for ICE gathering to finish.
3. POST the finalized offer to the WHIP endpoint as ``application/sdp``.
4. Apply the answer body as the remote description.

Any failure closes the engine before ``NegotiationFailed`` propagates, so a
transport that never reached the registry cannot leak.
"""

import asyncio
import logging
from collections.abc import Callable

import aiohttp

from src.streamer.errors import NegotiationFailed
from src.streamer.media import MediaEngine, MediaTransport, PeerConnectionEngine

logger = logging.getLogger(__name__)

SDP_CONTENT_TYPE = "application/sdp"
ACCEPTED_STATUSES = frozenset({200, 201})

type EngineFactory = Callable[[], MediaEngine]


class WHIPClient:
    """Negotiates WHIP publishing sessions against a media server.

    The aiohttp session is created lazily and shared by all negotiations;
    call ``close()`` on shutdown.
    """

    def __init__(
        self,
        ice_servers: list[str],
        track_queue_size: int = 16,
        timeout_s: float | None = None,
        engine_factory: EngineFactory | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            ice_servers: STUN/TURN URLs handed to every new engine
            track_queue_size: Outbound track packet queue size
            timeout_s: Upper bound for one whole handshake (None = unbounded)
            engine_factory: Builds the media engine (defaults to aiortc)
        """
        self.ice_servers = list(ice_servers)
        self.timeout_s = timeout_s
        self._engine_factory: EngineFactory = engine_factory or (
            lambda: PeerConnectionEngine(self.ice_servers, track_queue_size)
        )
        self._session: aiohttp.ClientSession | None = None

    def _http(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        return self._session

    async def close(self) -> None:
        """Close the shared HTTP session."""
        if self._session is not None:
            await self._session.close()
            self._session = None

    async def establish(self, endpoint: str) -> MediaTransport:
        """Run the WHIP handshake against ``endpoint``.

        Args:
            endpoint: Full WHIP URL, e.g. ``http://mediamtx:8889/radio/whip``

        Returns:
            Connected transport carrying the outbound audio track

        Raises:
            NegotiationFailed: On any engine, HTTP, status or answer error
        """
        try:
            async with asyncio.timeout(self.timeout_s):
                return await self._negotiate(endpoint)
        except TimeoutError as e:
            raise NegotiationFailed(f"timed out after {self.timeout_s}s") from e

    async def _negotiate(self, endpoint: str) -> MediaTransport:
        try:
            engine = self._engine_factory()
        except Exception as e:
            raise NegotiationFailed(f"cannot create media engine: {e}") from e

        established = False
        try:
            track = engine.create_outbound_audio_track()

            offer = await engine.create_offer()
            await engine.set_local_description(offer)
            await engine.wait_for_ice_gathering_complete()
            logger.debug("Local offer ready", extra={"endpoint": endpoint})

            answer_sdp = await self._exchange(endpoint, engine.local_sdp)

            try:
                await engine.set_remote_description(answer_sdp)
            except Exception as e:
                raise NegotiationFailed(f"invalid answer: {e}") from e

            established = True
            logger.info("WHIP session established", extra={"endpoint": endpoint})
            return MediaTransport(engine=engine, audio_track=track, endpoint=endpoint)

        except NegotiationFailed:
            raise
        except Exception as e:
            raise NegotiationFailed(f"{type(e).__name__}: {e}") from e
        finally:
            if not established:
                logger.info("Closing media engine after failed negotiation")
                await engine.close()

    async def _exchange(self, endpoint: str, offer_sdp: str) -> str:
        """POST the offer and return the answer body."""
        try:
            async with self._http().post(
                endpoint,
                data=offer_sdp.encode("utf-8"),
                headers={"Content-Type": SDP_CONTENT_TYPE},
            ) as response:
                if response.status not in ACCEPTED_STATUSES:
                    body = await response.text()
                    logger.warning(
                        "WHIP endpoint rejected offer",
                        extra={"endpoint": endpoint, "status": response.status},
                    )
                    raise NegotiationFailed(body.strip()[:200] or "rejected", response.status)

                answer = await response.text()
        except aiohttp.ClientError as e:
            raise NegotiationFailed(f"HTTP request failed: {e}") from e

        if not answer.strip():
            raise NegotiationFailed("empty answer")
        return answer
