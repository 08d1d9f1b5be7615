"""Shared fixtures: in-memory SQLite, a fake Redis and an in-memory event log."""

from __future__ import annotations

from collections.abc import AsyncIterator

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from quotefeed.cache import RedisConnection
from quotefeed.db.models import Base
from quotefeed.services.counter_store import CounterStore
from quotefeed.services.event_publisher import EventPublisher
from tests.support.event_log import InMemoryEventLog, InMemoryProducer
from tests.support.factories import LIKES_TOPIC, SAVES_TOPIC
from tests.support.fake_redis import FakeRedis


@pytest_asyncio.fixture
async def engine() -> AsyncIterator[AsyncEngine]:
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:", future=True, poolclass=StaticPool
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


@pytest_asyncio.fixture
async def session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncIterator[AsyncSession]:
    """Provide an in-memory SQLite session for integration-style tests."""
    async with session_factory() as db_session:
        yield db_session
        if db_session.in_transaction():
            await db_session.rollback()


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def redis_connection(fake_redis: FakeRedis) -> RedisConnection:
    return RedisConnection(
        "redis://fake:6379/0",
        retry_backoff_seconds=30.0,
        factory=lambda _url: fake_redis,
    )


@pytest.fixture
def counter_store(redis_connection: RedisConnection) -> CounterStore:
    return CounterStore(redis_connection)


@pytest.fixture
def event_log() -> InMemoryEventLog:
    return InMemoryEventLog()


@pytest.fixture
def producer(event_log: InMemoryEventLog) -> InMemoryProducer:
    return InMemoryProducer(event_log)


@pytest.fixture
def publisher(producer: InMemoryProducer) -> EventPublisher:
    return EventPublisher(
        producer, likes_topic=LIKES_TOPIC, saves_topic=SAVES_TOPIC, timeout_seconds=1.0
    )

