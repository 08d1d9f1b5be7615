"""Durable storage for like and save edges.

The repository is the system of record for engagement.  Every mutation is an
absolute set/unset (insert-if-absent, delete-if-present) so the request path
and the event reconciler can both write the same pair concurrently, and the
reconciler can replay a batch after a crash, without double counting.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence

from sqlalchemy import delete, func, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from quotefeed.db.models import QuoteLike, SavedQuote
from quotefeed.schemas.events import EngagementKind

logger = logging.getLogger(__name__)

EdgeModel = type[QuoteLike] | type[SavedQuote]

_EDGE_MODELS: dict[EngagementKind, EdgeModel] = {
    EngagementKind.LIKE: QuoteLike,
    EngagementKind.SAVE: SavedQuote,
}


def edge_model(kind: EngagementKind) -> EdgeModel:
    return _EDGE_MODELS[kind]


class EngagementRepository:
    """SQLAlchemy operations over the ``quote_likes`` and ``saved_quotes`` tables."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    def _insert(self, model: EdgeModel):
        dialect = self._session.get_bind().dialect.name
        if dialect == "postgresql":
            return postgresql.insert(model)
        if dialect == "sqlite":
            return sqlite.insert(model)
        raise RuntimeError(f"Unsupported database dialect for edge upserts: {dialect}")

    async def add_edge(self, kind: EngagementKind, user_id: str, quote_id: str) -> bool:
        """Insert the edge if absent.  Return ``True`` when a row was created."""

        model = edge_model(kind)
        stmt = (
            self._insert(model)
            .values(user_id=user_id, quote_id=quote_id)
            .on_conflict_do_nothing(index_elements=["user_id", "quote_id"])
        )
        result = await self._session.execute(stmt)
        return (result.rowcount or 0) > 0

    async def remove_edge(self, kind: EngagementKind, user_id: str, quote_id: str) -> bool:
        """Delete the edge if present.  Return ``True`` when a row was removed."""

        model = edge_model(kind)
        stmt = delete(model).where(model.user_id == user_id, model.quote_id == quote_id)
        result = await self._session.execute(stmt)
        return (result.rowcount or 0) > 0

    async def add_like_edge(self, user_id: str, quote_id: str) -> bool:
        return await self.add_edge(EngagementKind.LIKE, user_id, quote_id)

    async def remove_like_edge(self, user_id: str, quote_id: str) -> bool:
        return await self.remove_edge(EngagementKind.LIKE, user_id, quote_id)

    async def add_save_edge(self, user_id: str, quote_id: str) -> bool:
        return await self.add_edge(EngagementKind.SAVE, user_id, quote_id)

    async def remove_save_edge(self, user_id: str, quote_id: str) -> bool:
        return await self.remove_edge(EngagementKind.SAVE, user_id, quote_id)

    async def edge_exists(self, kind: EngagementKind, user_id: str, quote_id: str) -> bool:
        model = edge_model(kind)
        stmt = select(model.quote_id).where(
            model.user_id == user_id, model.quote_id == quote_id
        )
        result = await self._session.execute(stmt)
        return result.first() is not None

    async def count_likes(self, quote_id: str) -> int:
        stmt = select(func.count()).select_from(QuoteLike).where(QuoteLike.quote_id == quote_id)
        result = await self._session.execute(stmt)
        return int(result.scalar_one())

    async def count_likes_bulk(self, quote_ids: Iterable[str]) -> dict[str, int]:
        """Return like counts for ``quote_ids``, zero-filled for quotes without edges."""

        ids = list(dict.fromkeys(quote_ids))
        counts = {quote_id: 0 for quote_id in ids}
        if not ids:
            return counts

        stmt = (
            select(QuoteLike.quote_id, func.count())
            .where(QuoteLike.quote_id.in_(ids))
            .group_by(QuoteLike.quote_id)
        )
        result = await self._session.execute(stmt)
        for quote_id, count in result.all():
            counts[quote_id] = int(count)
        return counts

    async def list_quote_ids(self, kind: EngagementKind, user_id: str) -> list[str]:
        model = edge_model(kind)
        stmt = (
            select(model.quote_id)
            .where(model.user_id == user_id)
            .order_by(model.created_at.desc(), model.quote_id.desc())
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def list_liked_quote_ids(self, user_id: str) -> list[str]:
        """Return the quotes ``user_id`` liked, most recent edge first."""

        return await self.list_quote_ids(EngagementKind.LIKE, user_id)

    async def list_saved_quote_ids(self, user_id: str) -> list[str]:
        """Return the quotes ``user_id`` saved, most recent edge first."""

        return await self.list_quote_ids(EngagementKind.SAVE, user_id)

    async def membership_bulk(
        self, kind: EngagementKind, user_id: str, quote_ids: Sequence[str]
    ) -> set[str]:
        """Return the subset of ``quote_ids`` that ``user_id`` has an edge to."""

        if not quote_ids:
            return set()
        model = edge_model(kind)
        stmt = select(model.quote_id).where(
            model.user_id == user_id, model.quote_id.in_(list(quote_ids))
        )
        result = await self._session.execute(stmt)
        return set(result.scalars().all())

    async def delete_all_edges_for_quote(self, quote_id: str) -> int:
        """Remove every like and save edge referencing ``quote_id``."""

        removed = 0
        for model in _EDGE_MODELS.values():
            result = await self._session.execute(
                delete(model).where(model.quote_id == quote_id)
            )
            removed += result.rowcount or 0
        logger.debug("Removed %s engagement edges for quote %s", removed, quote_id)
        return removed

    async def users_with_edges(self, kind: EngagementKind) -> list[str]:
        """Return every user holding at least one edge of ``kind``."""

        model = edge_model(kind)
        result = await self._session.execute(select(model.user_id).distinct())
        return list(result.scalars().all())


__all__ = ["EngagementRepository", "edge_model"]
