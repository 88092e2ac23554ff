"""
Async engine and session management.

Request handlers get a session through ``get_db``; background work (the
sweeper loop) uses ``session_scope``. Both commit on success and roll back
on error, so a queue decision is one transaction. Work that must only
happen once the transaction is durable (cache invalidation) is registered
with ``on_commit``.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Awaitable, Callable, Optional

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from regqueue.core.config import get_settings

_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker[AsyncSession]] = None


def _engine_options(url: str) -> dict:
    settings = get_settings()
    if url.startswith("sqlite"):
        return {"echo": settings.DEBUG}
    return {
        "echo": settings.DEBUG,
        "pool_size": settings.DB_POOL_SIZE,
        "max_overflow": settings.DB_MAX_OVERFLOW,
        "pool_timeout": settings.DB_POOL_TIMEOUT,
        "pool_recycle": settings.DB_POOL_RECYCLE,
        "pool_pre_ping": True,
    }


def get_engine() -> AsyncEngine:
    global _engine
    if _engine is None:
        url = get_settings().DATABASE_URL
        _engine = create_async_engine(url, **_engine_options(url))
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    global _session_factory
    if _session_factory is None:
        _session_factory = async_sessionmaker(
            get_engine(), class_=AsyncSession, expire_on_commit=False
        )
    return _session_factory


def configure_session_factory(factory: Optional[async_sessionmaker[AsyncSession]]) -> None:
    """Point background work at another session factory (tests, embedding apps)."""
    global _session_factory
    _session_factory = factory


_COMMIT_HOOKS = "regqueue.after_commit"


def on_commit(db: AsyncSession, callback: Callable[[], Awaitable[None]]) -> None:
    """Run ``callback`` after the session's transaction commits."""
    db.info.setdefault(_COMMIT_HOOKS, []).append(callback)


async def run_commit_hooks(db: AsyncSession) -> None:
    """Run and clear the callbacks registered with ``on_commit``."""
    for callback in db.info.pop(_COMMIT_HOOKS, []):
        await callback()


@asynccontextmanager
async def session_scope() -> AsyncGenerator[AsyncSession, None]:
    """Transactional session for work outside a request."""
    async with get_session_factory()() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            session.info.pop(_COMMIT_HOOKS, None)
            await session.rollback()
            raise
        await run_commit_hooks(session)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency for database sessions."""
    async with session_scope() as session:
        yield session


async def dispose_engine() -> None:
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None
