from __future__ import annotations

import os
from typing import AsyncIterator

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine

from tenantbot.core.config import Settings, get_settings
from tenantbot.persistence.db import SessionFactory, create_engine, create_schema, create_session_factory
from tenantbot.services.credentials.store import CredentialStore
from tenantbot.services.crypto.cipher import KEY_BYTES, TokenCipher
from tenantbot.services.installations import InstallationStore
from tenantbot.services.telemetry import MetricsRegistry
from tenantbot.tests.utils.fakes import FakeClock, FakeRefresher


@pytest.fixture
def settings(monkeypatch, tmp_path) -> Settings:
    # Point every test at a throwaway SQLite file and in-process job state.
    monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path / 'tenantbot.db'}")
    monkeypatch.setenv("JOB_EXECUTION_MODE", "inline")
    monkeypatch.setenv("CREDENTIAL_ENCRYPTION_KEY", "11" * KEY_BYTES)
    monkeypatch.setenv("JOB_POLL_INTERVAL_MS", "10")
    monkeypatch.setenv("JOB_BACKOFF_BASE_MS", "1")
    monkeypatch.delenv("PLATFORM_BOT_TOKEN", raising=False)
    get_settings.cache_clear()
    yield get_settings()
    get_settings.cache_clear()


@pytest.fixture
async def engine(settings: Settings) -> AsyncIterator[AsyncEngine]:
    engine = create_engine(settings)
    await create_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> SessionFactory:
    return create_session_factory(engine)


@pytest.fixture
def cipher() -> TokenCipher:
    return TokenCipher(os.urandom(KEY_BYTES))


@pytest.fixture
def metrics() -> MetricsRegistry:
    return MetricsRegistry()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def refresher() -> FakeRefresher:
    return FakeRefresher()


@pytest.fixture
def credential_store(
    session_factory: SessionFactory,
    cipher: TokenCipher,
    refresher: FakeRefresher,
    metrics: MetricsRegistry,
    clock: FakeClock,
) -> CredentialStore:
    return CredentialStore(session_factory, cipher, refresher=refresher, metrics=metrics, clock=clock)


@pytest.fixture
def installation_store(session_factory: SessionFactory, credential_store: CredentialStore, clock: FakeClock) -> InstallationStore:
    return InstallationStore(session_factory, credential_store, clock=clock)
