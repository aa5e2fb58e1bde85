"""Process-wide database engine and the session scopes built on it."""

from collections.abc import AsyncGenerator, Callable
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from typing import Any

from sqlalchemy import event, pool
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from ampel_sync.config import get_settings
from ampel_sync.db.models import Base

# What components take instead of a concrete session: call it, enter it,
# and the block commits on exit or rolls back on error.
SessionProvider = Callable[[], AbstractAsyncContextManager[AsyncSession]]

_engine: AsyncEngine | None = None
_sessions: async_sessionmaker[AsyncSession] | None = None


def enable_sqlite_foreign_keys(engine: AsyncEngine) -> None:
    """Make SQLite honour ON DELETE CASCADE / SET NULL on every connection.

    Removing an account relies on this to drop its jobs and detach its
    repositories.
    """
    if engine.dialect.name != "sqlite":
        return

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_conn: Any, _: object) -> None:
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


def get_engine() -> AsyncEngine:
    global _engine
    if _engine is None:
        settings = get_settings()
        # NullPool: each session gets its own aiosqlite connection, which
        # avoids "database is locked" between the scheduler and merges.
        _engine = create_async_engine(
            settings.database_url,
            echo=settings.log_level == "DEBUG",
            poolclass=pool.NullPool,
        )
        enable_sqlite_foreign_keys(_engine)
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    global _sessions
    if _sessions is None:
        _sessions = async_sessionmaker(
            bind=get_engine(),
            expire_on_commit=False,
            autoflush=False,
        )
    return _sessions


def session_scope(factory: async_sessionmaker[AsyncSession]) -> SessionProvider:
    """Wrap ``factory`` in the commit-or-rollback contract of a SessionProvider."""

    @asynccontextmanager
    async def _scope() -> AsyncGenerator[AsyncSession, None]:
        async with factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    return _scope


@asynccontextmanager
async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """The default SessionProvider, bound to the configured database.

    Usage:
        async with get_session() as session:
            accounts = await AccountRepository(session).list_for_owner("local")
    """
    async with session_scope(get_session_factory())() as session:
        yield session


async def create_tables() -> None:
    """Create the schema directly from the models.

    ``ampel init-db`` uses this for a fresh local database; upgrades of an
    existing one go through Alembic.
    """
    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def dispose_engine() -> None:
    """Close pooled connections and forget the engine (CLI shutdown)."""
    global _engine, _sessions
    if _engine is None:
        return
    await _engine.dispose()
    _engine = None
    _sessions = None
