"""Quote listing queries backing the newest and popular feeds."""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime

from sqlalchemy import and_, delete, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from quotefeed.db.models import Quote, QuoteLike


class QuoteRepository:
    """Read access to ``quotes`` plus owner-scoped deletion."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_quote(self, quote_id: str) -> Quote | None:
        return await self._session.get(Quote, quote_id)

    async def existing_ids(self, quote_ids: Sequence[str]) -> set[str]:
        if not quote_ids:
            return set()
        result = await self._session.execute(
            select(Quote.id).where(Quote.id.in_(list(quote_ids)))
        )
        return set(result.scalars().all())

    async def list_ids(self) -> list[str]:
        result = await self._session.execute(select(Quote.id).order_by(Quote.id))
        return list(result.scalars().all())

    async def get_quotes_by_ids(self, quote_ids: Sequence[str]) -> list[Quote]:
        """Return quotes in the order of ``quote_ids``, skipping unknown ids."""

        if not quote_ids:
            return []
        result = await self._session.execute(
            select(Quote).where(Quote.id.in_(list(quote_ids)))
        )
        by_id = {quote.id: quote for quote in result.scalars().all()}
        return [by_id[quote_id] for quote_id in quote_ids if quote_id in by_id]

    async def list_newest(
        self,
        *,
        limit: int,
        after: tuple[datetime, str] | None = None,
    ) -> tuple[list[Quote], bool]:
        """Return up to ``limit`` quotes after ``after`` in ``(created_at, id)`` desc order.

        The second element reports whether more rows follow the page.
        """

        stmt = select(Quote).order_by(Quote.created_at.desc(), Quote.id.desc())
        if after is not None:
            created_at, quote_id = after
            stmt = stmt.where(
                or_(
                    Quote.created_at < created_at,
                    and_(Quote.created_at == created_at, Quote.id < quote_id),
                )
            )
        result = await self._session.execute(stmt.limit(limit + 1))
        rows = list(result.scalars().all())
        return rows[:limit], len(rows) > limit

    async def list_popular(
        self, *, offset: int, limit: int
    ) -> tuple[list[tuple[Quote, int]], bool]:
        """Rank quotes by durable like count, tie-broken by recency.

        Quotes without likes are included (LEFT JOIN) so the popular feed
        never runs dry before the newest feed does.
        """

        like_count = func.count(QuoteLike.user_id).label("like_count")
        stmt = (
            select(Quote, like_count)
            .outerjoin(QuoteLike, QuoteLike.quote_id == Quote.id)
            .group_by(Quote.id)
            .order_by(like_count.desc(), Quote.created_at.desc(), Quote.id.desc())
            .offset(offset)
            .limit(limit + 1)
        )
        result = await self._session.execute(stmt)
        rows = [(quote, int(count)) for quote, count in result.all()]
        return rows[:limit], len(rows) > limit

    async def delete_quote(self, quote_id: str, *, owner_id: str) -> bool:
        """Delete ``quote_id`` when it belongs to ``owner_id``."""

        result = await self._session.execute(
            delete(Quote).where(Quote.id == quote_id, Quote.created_by == owner_id)
        )
        return (result.rowcount or 0) > 0


__all__ = ["QuoteRepository"]
