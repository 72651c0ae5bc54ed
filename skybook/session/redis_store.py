"""
Redis conversation store

Conversations are stored as JSON under ``conversation:<session_id>`` with a
Redis TTL matching the conversation's rolling expiry. Booked conversations are
stored without a TTL and indexed under ``booking_ref:<reference>`` and
``user_bookings:<user_id>``. Per-session serialization uses a Redis lock so
several worker processes can share one store.
"""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator, List, Optional

from redis import asyncio as aioredis

from skybook.booking.models import Booking
from skybook.config import settings
from skybook.conversation.state import Conversation
from skybook.obs.logger import log_event


class RedisSessionStore:
    def __init__(self, redis_url: Optional[str] = None, client: Optional[aioredis.Redis] = None,
                 lock_timeout: Optional[int] = None):
        self.redis_url = redis_url or settings.REDIS_URL
        self.client = client or aioredis.Redis.from_url(
            self.redis_url,
            encoding="utf-8",
            decode_responses=True,
            socket_connect_timeout=5,
        )
        self.lock_timeout = lock_timeout or settings.SESSION_LOCK_TIMEOUT_SECONDS
        self.prefix = "conversation:"

    def _get_key(self, session_id: str) -> str:
        return f"{self.prefix}{session_id}"

    async def load(self, session_id: str) -> Optional[Conversation]:
        data = await self.client.get(self._get_key(session_id))
        if not data:
            return None
        return Conversation.model_validate_json(data)

    async def save(self, conversation: Conversation) -> None:
        key = self._get_key(conversation.session_id)
        payload = conversation.model_dump_json()
        if conversation.booking is not None:
            await self._index_booking(conversation)
        if conversation.expires_at is None or conversation.is_booked:
            await self.client.set(key, payload)
            return
        ttl = int((conversation.expires_at - datetime.now(timezone.utc)).total_seconds())
        if ttl <= 0:
            # already past its expiry, nothing worth keeping
            await self.client.delete(key)
            return
        await self.client.set(key, payload, ex=ttl)

    async def _index_booking(self, conversation: Conversation) -> None:
        booking = conversation.booking
        if booking.booking_reference:
            await self.client.set(f"booking_ref:{booking.booking_reference}", conversation.session_id)
        if booking.user_id:
            await self.client.sadd(f"user_bookings:{booking.user_id}", conversation.session_id)

    async def find_booking(self, booking_reference: str) -> Optional[Conversation]:
        session_id = await self.client.get(f"booking_ref:{booking_reference}")
        if not session_id:
            return None
        return await self.load(session_id)

    async def list_bookings(self, user_id: str) -> List[Booking]:
        bookings = []
        for session_id in await self.client.smembers(f"user_bookings:{user_id}"):
            conversation = await self.load(session_id)
            if conversation and conversation.booking and conversation.booking.user_id == user_id:
                bookings.append(conversation.booking)
        return sorted(bookings, key=lambda b: b.created_at, reverse=True)

    async def delete(self, session_id: str) -> None:
        await self.client.delete(self._get_key(session_id))

    async def exists(self, session_id: str) -> bool:
        return bool(await self.client.exists(self._get_key(session_id)))

    @asynccontextmanager
    async def lock(self, session_id: str) -> AsyncIterator[None]:
        async with self.client.lock(f"lock:{self._get_key(session_id)}", timeout=self.lock_timeout,
                                    blocking_timeout=self.lock_timeout):
            yield

    async def purge_expired(self, now: Optional[datetime] = None) -> int:
        """Redis TTLs do most of the work; this catches keys whose TTL was lost."""
        now = now or datetime.now(timezone.utc)
        purged = 0
        async for key in self.client.scan_iter(match=f"{self.prefix}*"):
            data = await self.client.get(key)
            if not data:
                continue
            conversation = Conversation.model_validate_json(data)
            if not conversation.is_booked and conversation.is_expired(now):
                await self.client.delete(key)
                purged += 1
        if purged:
            log_event("sessions_purged", count=purged, backend="redis")
        return purged

    async def close(self) -> None:
        await self.client.aclose()
