"""Tests for the durable engagement edge repository on SQLite."""

from __future__ import annotations

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from quotefeed.db.repositories import EngagementRepository
from quotefeed.schemas.events import EngagementKind
from tests.support.factories import add_likes, add_quote

LIKE = EngagementKind.LIKE
SAVE = EngagementKind.SAVE


@pytest.mark.asyncio
async def test_add_edge_is_insert_if_absent(session: AsyncSession) -> None:
    quote = await add_quote(session)
    repo = EngagementRepository(session)

    assert await repo.add_edge(LIKE, "alice", quote.id) is True
    assert await repo.add_edge(LIKE, "alice", quote.id) is False
    await session.commit()

    assert await repo.count_likes(quote.id) == 1
    assert await repo.edge_exists(LIKE, "alice", quote.id) is True


@pytest.mark.asyncio
async def test_remove_edge_is_delete_if_present(session: AsyncSession) -> None:
    quote = await add_quote(session)
    repo = EngagementRepository(session)
    await repo.add_save_edge("alice", quote.id)

    assert await repo.remove_save_edge("alice", quote.id) is True
    assert await repo.remove_save_edge("alice", quote.id) is False
    assert await repo.edge_exists(SAVE, "alice", quote.id) is False


@pytest.mark.asyncio
async def test_like_and_save_relations_are_independent(session: AsyncSession) -> None:
    quote = await add_quote(session)
    repo = EngagementRepository(session)

    await repo.add_like_edge("alice", quote.id)

    assert await repo.edge_exists(LIKE, "alice", quote.id) is True
    assert await repo.edge_exists(SAVE, "alice", quote.id) is False
    assert await repo.list_saved_quote_ids("alice") == []


@pytest.mark.asyncio
async def test_count_likes_bulk_zero_fills(session: AsyncSession) -> None:
    popular = await add_quote(session, minutes=1)
    ignored = await add_quote(session, minutes=2)
    await add_likes(session, popular.id, 3)
    repo = EngagementRepository(session)

    counts = await repo.count_likes_bulk([popular.id, ignored.id])

    assert counts == {popular.id: 3, ignored.id: 0}


@pytest.mark.asyncio
async def test_membership_bulk_and_listing(session: AsyncSession) -> None:
    first = await add_quote(session, minutes=1)
    second = await add_quote(session, minutes=2)
    third = await add_quote(session, minutes=3)
    repo = EngagementRepository(session)
    await repo.add_like_edge("alice", first.id)
    await repo.add_like_edge("alice", third.id)
    await session.commit()

    members = await repo.membership_bulk(LIKE, "alice", [first.id, second.id, third.id])

    assert members == {first.id, third.id}
    assert set(await repo.list_liked_quote_ids("alice")) == {first.id, third.id}
    assert await repo.users_with_edges(LIKE) == ["alice"]


@pytest.mark.asyncio
async def test_delete_all_edges_for_quote(session: AsyncSession) -> None:
    quote = await add_quote(session)
    other = await add_quote(session, minutes=1)
    await add_likes(session, quote.id, 2)
    repo = EngagementRepository(session)
    await repo.add_save_edge("alice", quote.id)
    await repo.add_save_edge("alice", other.id)

    removed = await repo.delete_all_edges_for_quote(quote.id)

    assert removed == 3
    assert await repo.count_likes(quote.id) == 0
    assert await repo.list_saved_quote_ids("alice") == [other.id]
