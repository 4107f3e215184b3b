"""Stream id -> session registry.

The registry is the only state shared between control-plane calls and relay
tasks. Every membership test, insert and removal happens under one
asyncio.Lock, and nothing slow (negotiation, stream setup, closing
resources) ever runs while it is held. The raw mapping is never exposed.

A start reserves its slot with a PendingSession placeholder before
negotiating, so a concurrent start for the same id is rejected immediately
and a stop arriving mid-negotiation can cancel it.
"""

import asyncio
import logging

from src.common.types import StreamID
from src.streamer.session import StreamSession

logger = logging.getLogger(__name__)


class PendingSession:
    """Placeholder occupying a stream id while its session is being built."""

    def __init__(self, stream_id: StreamID) -> None:
        self.stream_id = stream_id
        self.task: asyncio.Task[StreamSession] | None = None
        self.cancelled = False

    def cancel(self) -> None:
        """Abandon the in-flight start and cancel its establishment task."""
        self.cancelled = True
        if self.task is not None and not self.task.done():
            self.task.cancel()


type RegistryEntry = StreamSession | PendingSession


class SessionRegistry:
    """Mapping of stream id to pending or active session."""

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._entries: dict[StreamID, RegistryEntry] = {}

    async def reserve(self, stream_id: StreamID) -> PendingSession | None:
        """Reserve ``stream_id`` for a new session.

        Returns:
            The placeholder, or None if the id is already pending or active
        """
        async with self._lock:
            if stream_id in self._entries:
                return None
            pending = PendingSession(stream_id)
            self._entries[stream_id] = pending
            return pending

    async def install(self, pending: PendingSession, session: StreamSession) -> bool:
        """Replace the placeholder with the fully built session.

        Returns:
            False if the placeholder was removed (stopped) in the meantime
        """
        async with self._lock:
            if pending.cancelled or self._entries.get(pending.stream_id) is not pending:
                return False
            self._entries[pending.stream_id] = session
            return True

    async def release(self, pending: PendingSession) -> None:
        """Drop the placeholder after a failed start (no-op if already gone)."""
        async with self._lock:
            if self._entries.get(pending.stream_id) is pending:
                del self._entries[pending.stream_id]

    async def pop(self, stream_id: StreamID) -> RegistryEntry | None:
        """Remove and return whatever occupies ``stream_id``."""
        async with self._lock:
            return self._entries.pop(stream_id, None)

    async def remove_if(self, stream_id: StreamID, session: StreamSession) -> bool:
        """Remove ``stream_id`` only if it still maps to this exact session.

        Guards a relay's own cleanup against removing a newer session that
        reused the id after an explicit stop.
        """
        async with self._lock:
            if self._entries.get(stream_id) is session:
                del self._entries[stream_id]
                return True
            return False

    async def get(self, stream_id: StreamID) -> StreamSession | None:
        """Active session for ``stream_id`` (placeholders are not sessions)."""
        async with self._lock:
            entry = self._entries.get(stream_id)
            return entry if isinstance(entry, StreamSession) else None

    async def active_sessions(self) -> list[StreamSession]:
        """Snapshot of active sessions."""
        async with self._lock:
            return [e for e in self._entries.values() if isinstance(e, StreamSession)]

    async def drain(self) -> list[RegistryEntry]:
        """Remove and return every entry (process shutdown)."""
        async with self._lock:
            entries = list(self._entries.values())
            self._entries.clear()
            return entries

    def __len__(self) -> int:
        return len(self._entries)
