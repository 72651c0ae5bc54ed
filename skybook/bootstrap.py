from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from dotenv import load_dotenv

from skybook.booking.orchestrator import BookingOrchestrator
from skybook.config import settings
from skybook.conversation.service import ConversationService
from skybook.duffel.client import DuffelClient
from skybook.llm.dialogue import OpenAIDialogue
from skybook.obs.logger import log_event
from skybook.session.redis_store import RedisSessionStore
from skybook.session.store import ConversationStore, SessionStore
from skybook.validation.validator import create_validator

load_dotenv()


def build_store(redis_url: Optional[str] = None) -> ConversationStore:
    """Redis when a URL is configured, otherwise the in-process store."""
    url = redis_url or settings.REDIS_URL
    if url:
        return RedisSessionStore(redis_url=url)
    return SessionStore()


def build_service(store: Optional[ConversationStore] = None,
                  provider: Optional[DuffelClient] = None,
                  dialogue: Optional[OpenAIDialogue] = None) -> ConversationService:
    validator = create_validator()
    store = store or build_store()
    provider = provider or DuffelClient()
    orchestrator = BookingOrchestrator(provider, validator=validator)
    service = ConversationService(
        store=store,
        orchestrator=orchestrator,
        dialogue=dialogue or OpenAIDialogue(),
        validator=validator,
    )
    log_event("service_started", env=settings.APP_ENV, store=type(store).__name__)
    return service


@asynccontextmanager
async def lifespan() -> AsyncIterator[ConversationService]:
    """Build the service and release network clients on exit."""
    service = build_service()
    try:
        yield service
    finally:
        provider = service.orchestrator.provider
        if isinstance(provider, DuffelClient):
            await provider.aclose()
        if isinstance(service.store, RedisSessionStore):
            await service.store.close()
        log_event("service_stopped")
