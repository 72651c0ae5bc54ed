import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator, Dict, List, Optional, Protocol

from skybook.booking.models import Booking
from skybook.conversation.state import Conversation
from skybook.obs.logger import log_event


class ConversationStore(Protocol):
    async def load(self, session_id: str) -> Optional[Conversation]: ...
    async def save(self, conversation: Conversation) -> None: ...
    async def delete(self, session_id: str) -> None: ...
    def lock(self, session_id: str): ...
    async def purge_expired(self, now: Optional[datetime] = None) -> int: ...
    async def find_booking(self, booking_reference: str) -> Optional[Conversation]: ...
    async def list_bookings(self, user_id: str) -> List[Booking]: ...


class SessionStore:
    """In-process conversation store.

    Conversations are kept serialized so every ``load`` returns an independent
    copy, the same as a networked store would.
    """

    def __init__(self):
        self._data: Dict[str, str] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}

    async def load(self, session_id: str) -> Optional[Conversation]:
        raw = self._data.get(session_id)
        if raw is None:
            return None
        return Conversation.model_validate_json(raw)

    async def save(self, conversation: Conversation) -> None:
        self._data[conversation.session_id] = conversation.model_dump_json()

    async def delete(self, session_id: str) -> None:
        self._data.pop(session_id, None)

    async def exists(self, session_id: str) -> bool:
        return session_id in self._data

    @asynccontextmanager
    async def lock(self, session_id: str) -> AsyncIterator[None]:
        """Serialize all work on one session id.

        The lock outlives deletes of the conversation and is only dropped once
        nobody holds or waits for it.
        """
        lock = self._locks.setdefault(session_id, asyncio.Lock())
        self._lock_users[session_id] = self._lock_users.get(session_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[session_id] -= 1
            if not self._lock_users[session_id]:
                del self._lock_users[session_id]
                self._locks.pop(session_id, None)

    async def purge_expired(self, now: Optional[datetime] = None) -> int:
        """Drop expired conversations that never reached a booking."""
        now = now or datetime.now(timezone.utc)
        purged = 0
        for session_id in list(self._data):
            conversation = await self.load(session_id)
            if conversation is None or conversation.is_booked:
                continue
            if conversation.is_expired(now):
                await self.delete(session_id)
                purged += 1
        if purged:
            log_event("sessions_purged", count=purged)
        return purged

    async def find_booking(self, booking_reference: str) -> Optional[Conversation]:
        """The conversation that produced ``booking_reference``, if any."""
        for session_id in list(self._data):
            conversation = await self.load(session_id)
            if conversation and conversation.booking and conversation.booking.booking_reference == booking_reference:
                return conversation
        return None

    async def list_bookings(self, user_id: str) -> List[Booking]:
        bookings = []
        for session_id in list(self._data):
            conversation = await self.load(session_id)
            if conversation and conversation.booking and conversation.booking.user_id == user_id:
                bookings.append(conversation.booking)
        return sorted(bookings, key=lambda b: b.created_at, reverse=True)
