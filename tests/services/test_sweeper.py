"""Tests for rebuilding cached engagement state from the database."""

from __future__ import annotations

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from quotefeed.cache import like_count_key, like_set_key
from quotefeed.db.repositories import EngagementRepository
from quotefeed.schemas.events import EngagementKind
from quotefeed.services.counter_store import CounterStore, CounterStoreUnavailable
from quotefeed.services.sweeper import EngagementSweeper
from tests.support.factories import add_likes, add_quote
from tests.support.fake_redis import FakeRedis


@pytest.mark.asyncio
async def test_sweep_restores_counters_and_sets(
    session: AsyncSession,
    session_factory: async_sessionmaker[AsyncSession],
    counter_store: CounterStore,
    fake_redis: FakeRedis,
) -> None:
    popular = (await add_quote(session, minutes=1)).id
    forgotten = (await add_quote(session, minutes=2)).id
    await add_likes(session, popular, 2)
    await EngagementRepository(session).add_save_edge("fan-0", forgotten)
    await session.commit()

    # Drifted cache: a counter that double counted and one that never dropped.
    await counter_store.seed_counts({popular: 7, forgotten: 3}, overwrite=True)
    await counter_store.seed_members(
        EngagementKind.LIKE, "fan-0", [popular, forgotten], replace=True
    )
    await counter_store.seed_members(EngagementKind.LIKE, "ghost", [popular], replace=True)

    report = await EngagementSweeper(session_factory, counter_store).sweep()

    assert fake_redis.strings[like_count_key(popular)] == "2"
    assert fake_redis.strings[like_count_key(forgotten)] == "0"
    assert await counter_store.members(EngagementKind.LIKE, "fan-0") == {popular}
    assert await counter_store.members(EngagementKind.LIKE, "fan-1") == {popular}
    assert await counter_store.members(EngagementKind.SAVE, "fan-0") == {forgotten}
    assert like_set_key("ghost") not in fake_redis.sets
    assert (report.counters, report.user_sets, report.cleared_sets) == (2, 3, 1)


@pytest.mark.asyncio
async def test_sweep_on_empty_database_is_a_no_op(
    session_factory: async_sessionmaker[AsyncSession],
    counter_store: CounterStore,
    fake_redis: FakeRedis,
) -> None:
    report = await EngagementSweeper(session_factory, counter_store).sweep()

    assert (report.counters, report.user_sets, report.cleared_sets) == (0, 0, 0)
    assert fake_redis.strings == {}


@pytest.mark.asyncio
async def test_sweep_requires_redis(
    session: AsyncSession,
    session_factory: async_sessionmaker[AsyncSession],
    counter_store: CounterStore,
    fake_redis: FakeRedis,
) -> None:
    await add_quote(session)
    fake_redis.down = True

    with pytest.raises(CounterStoreUnavailable):
        await EngagementSweeper(session_factory, counter_store).sweep()
