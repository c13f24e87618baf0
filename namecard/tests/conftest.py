from __future__ import annotations

from typing import AsyncIterator

import pytest

from namecard.core.config import get_settings
from namecard.persistence.db import ConnectionRegistry, create_schema
from namecard.persistence.profiles import load_connection_profiles
from namecard.persistence.resilience import ResilientAccess, RetryPolicy, set_access
from namecard.observability.idempotency import set_idempotency_cache
from namecard.observability.metrics import get_aggregator
from namecard.services.auth.sessions import SessionManager


@pytest.fixture(autouse=True)
def test_settings(monkeypatch) -> None:
    # Point every test at a private in-memory store with cheap hashing and no backoff.
    monkeypatch.setenv("DATABASE_URL", "sqlite+aiosqlite://")
    monkeypatch.delenv("DATABASE_URL_SECONDARY", raising=False)
    monkeypatch.delenv("DB_SECRET_ARN", raising=False)
    monkeypatch.setenv("PASSWORD_HASH_ROUNDS", "4")
    monkeypatch.setenv("DB_RETRY_BASE_DELAY_MS", "0")
    monkeypatch.setenv("TOKEN_HASH_PEPPER", "test-pepper")
    monkeypatch.setenv("SERVICE_NAME", "namecard-test")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()
    set_access(None)
    set_idempotency_cache(None)
    get_aggregator().reset()


@pytest.fixture
async def registry() -> AsyncIterator[ConnectionRegistry]:
    settings = get_settings()
    primary, secondary = load_connection_profiles(settings)
    registry = ConnectionRegistry(primary, secondary, settings=settings)
    await create_schema(registry)
    yield registry
    await registry.dispose()


@pytest.fixture
def access(registry: ConnectionRegistry) -> ResilientAccess:
    return ResilientAccess(registry, RetryPolicy(max_attempts=3, base_delay_s=0))


@pytest.fixture
def session_manager(access: ResilientAccess) -> SessionManager:
    return SessionManager(access)
