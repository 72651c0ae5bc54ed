from unittest.mock import Mock

from skybook.bootstrap import build_service, build_store
from skybook.session.redis_store import RedisSessionStore
from skybook.session.store import SessionStore


def test_store_defaults_to_memory(monkeypatch):
    monkeypatch.setattr("skybook.bootstrap.settings.REDIS_URL", None)
    assert isinstance(build_store(), SessionStore)


def test_store_uses_redis_when_configured():
    store = build_store("redis://localhost:6379/0")
    assert isinstance(store, RedisSessionStore)
    assert store.prefix == "conversation:"


def test_build_service_wires_collaborators():
    provider, dialogue = Mock(), Mock()
    service = build_service(store=SessionStore(), provider=provider, dialogue=dialogue)
    assert service.orchestrator.provider is provider
    assert service.dialogue is dialogue
    assert service.orchestrator.validator is service.validator
