"""
Pytest fixtures for the queue store, clock and host-process client.

Each test gets a fresh in-memory SQLite database (aiosqlite, shared through
a StaticPool) and a FixedClock, so expiry is driven by advancing the clock
instead of sleeping.
"""

import os

os.environ["DATABASE_URL"] = "sqlite+aiosqlite://"
os.environ["REDIS_ENABLED"] = "false"
os.environ["SWEEPER_ENABLED"] = "false"
os.environ["ENVIRONMENT"] = "test"

from datetime import datetime, timezone
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.pool import StaticPool

from regqueue.main import app
from regqueue.core.clock import FixedClock, set_clock
from regqueue.db.base import Base
from regqueue.db.session import get_db
from regqueue.models.queue_entry import QueueEntry
from regqueue.schemas.queue import LanePolicyUpdate, QueueSettingsUpdate
from regqueue.services.settings_service import update_settings
from regqueue.services.strategy_factory import set_capacity_guard

RESOURCE_ID = "evt-summer-conference"
START = datetime(2026, 10, 17, 12, 0, 0, tzinfo=timezone.utc)


@pytest_asyncio.fixture(scope="function")
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def db_session(engine) -> AsyncGenerator[AsyncSession, None]:
    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with factory() as session:
        yield session


@pytest.fixture(autouse=True)
def clock() -> FixedClock:
    """Frozen time for every test; advance it explicitly."""
    fixed = FixedClock(START)
    set_clock(fixed)
    yield fixed
    set_clock(None)


@pytest.fixture(autouse=True)
def reset_capacity_guard():
    set_capacity_guard(None)
    yield
    set_capacity_guard(None)


@pytest_asyncio.fixture
async def enable_queue(db_session: AsyncSession):
    """
    Factory enabling the queue for a resource with the given lane caps.

    Usage: await enable_queue(group=(1, 600), individual=(2, 420))
    """

    async def _enable(resource_id: str = RESOURCE_ID, **lanes):
        lanes = lanes or {"group": (1, 600), "individual": (2, 420)}
        return await update_settings(
            db_session,
            resource_id,
            QueueSettingsUpdate(
                queue_enabled=True,
                lanes={
                    name: LanePolicyUpdate(max_concurrent=cap, session_timeout=timeout)
                    for name, (cap, timeout) in lanes.items()
                },
                waiting_room_message="Thanks for your patience",
            ),
        )

    return _enable


@pytest_asyncio.fixture
async def count_entries(db_session: AsyncSession):
    async def _count(**filters) -> int:
        query = select(func.count(QueueEntry.id))
        for column, value in filters.items():
            query = query.where(getattr(QueueEntry, column) == value)
        return (await db_session.execute(query)).scalar_one()

    return _count


@pytest_asyncio.fixture(scope="function")
async def client(db_session: AsyncSession) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client that overrides the DB dependency with the test session."""

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
