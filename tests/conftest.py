"""Pytest configuration and shared fixtures.

Usage Guide:
- For repository tests: use ``db_session`` and the factories in tests.factories
- For component tests (vault, scheduler, bulk merge): use ``session`` (a
  committing session provider like ``get_session``), ``write_lock`` and
  ``fake_factory`` (an in-memory provider)
- For adapter tests: see tests/providers (httpx.MockTransport / patched githubkit)
"""

import asyncio
from datetime import UTC, datetime

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from ampel_sync.config import Settings
from ampel_sync.credentials import CredentialVault, TokenCipher
from ampel_sync.db.engine import enable_sqlite_foreign_keys, session_scope
from ampel_sync.db.models import Base
from ampel_sync.rate_limit import RateLimitTracker
from tests.fakes import FakeAdapterFactory, FakeProvider, FrozenClock, RecordingNotifier
from tests.factories import NOW


# -----------------------------------------------------------------------------
# Settings
# -----------------------------------------------------------------------------
@pytest.fixture
def settings() -> Settings:
    """Settings independent of the developer's environment."""
    return Settings(_env_file=None)


# -----------------------------------------------------------------------------
# Database Fixtures
# -----------------------------------------------------------------------------
@pytest.fixture
async def test_engine():
    """In-memory SQLite engine shared by every session of a test.

    StaticPool keeps the single connection alive so that separate
    sessions see the same database.
    """
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    enable_sqlite_foreign_keys(engine)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(test_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest.fixture
def session(session_factory):
    """Committing session provider (drop-in for ``get_session``)."""
    return session_scope(session_factory)


@pytest.fixture
async def db_session(session_factory):
    """A single session, rolled back after the test."""
    async with session_factory() as session:
        yield session
        await session.rollback()


# -----------------------------------------------------------------------------
# Component Fixtures
# -----------------------------------------------------------------------------
@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(NOW)


@pytest.fixture
def write_lock() -> asyncio.Lock:
    return asyncio.Lock()


@pytest.fixture
def cipher() -> TokenCipher:
    return TokenCipher.from_base64(TokenCipher.generate_key())


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def tracker(settings, clock) -> RateLimitTracker:
    return RateLimitTracker(settings.rate_limit, clock)


@pytest.fixture
def fake_factory(provider, tracker) -> FakeAdapterFactory:
    return FakeAdapterFactory(provider, tracker)


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def vault(cipher, fake_factory, session, write_lock, clock) -> CredentialVault:
    return CredentialVault(cipher, fake_factory, session, write_lock, clock)


# -----------------------------------------------------------------------------
# Utility Fixtures
# -----------------------------------------------------------------------------
@pytest.fixture
def utc_now() -> datetime:
    """Current UTC datetime for tests."""
    return datetime.now(UTC)
