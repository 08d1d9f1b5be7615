"""Feed pages annotated with like counts and the caller's like/save flags.

Ordering always comes from the database.  Annotations come from the counter
store first; anything it cannot answer (Redis down, counter key missing, user
set never cached) is recomputed from the database and written back with
``SET NX`` so the next page load hits the cache.
"""

from __future__ import annotations

import base64
import logging
from collections.abc import Mapping, Sequence
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession

from quotefeed.db.models import Quote
from quotefeed.db.repositories import EngagementRepository, QuoteRepository
from quotefeed.schemas.events import EngagementKind
from quotefeed.schemas.feed import FeedItem, FeedPage, FeedSort, QuoteListResponse
from quotefeed.services.counter_store import CounterStore, CounterStoreUnavailable

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100
_CURSOR_SEPARATOR = "|"


class InvalidCursorError(ValueError):
    """Raised when a ``cursor`` query parameter cannot be decoded."""


def encode_cursor(created_at: datetime, quote_id: str) -> str:
    raw = f"{created_at.isoformat()}{_CURSOR_SEPARATOR}{quote_id}"
    return base64.urlsafe_b64encode(raw.encode("utf-8")).decode("ascii").rstrip("=")


def decode_cursor(cursor: str) -> tuple[datetime, str]:
    """Return the ``(created_at, id)`` position encoded by :func:`encode_cursor`."""

    try:
        padded = cursor + "=" * (-len(cursor) % 4)
        raw = base64.urlsafe_b64decode(padded.encode("ascii")).decode("utf-8")
        created_raw, quote_id = raw.split(_CURSOR_SEPARATOR, 1)
        created_at = datetime.fromisoformat(created_raw)
    except ValueError as exc:
        raise InvalidCursorError(f"Malformed feed cursor: {cursor!r}") from exc
    if not quote_id:
        raise InvalidCursorError(f"Malformed feed cursor: {cursor!r}")
    return created_at, quote_id


class FeedService:
    def __init__(
        self,
        session: AsyncSession,
        counters: CounterStore,
        *,
        default_limit: int = 20,
    ) -> None:
        self._counters = counters
        self._quotes = QuoteRepository(session)
        self._edges = EngagementRepository(session)
        self._default_limit = default_limit

    async def get_feed(
        self,
        *,
        sort: FeedSort = FeedSort.NEWEST,
        cursor: str | None = None,
        offset: int = 0,
        limit: int | None = None,
        user_id: str | None = None,
    ) -> FeedPage:
        """Return one page of the newest or popular feed.

        ``newest`` pages by opaque cursor and ignores ``offset``; ``popular``
        pages by numeric offset and ignores ``cursor``.
        """

        page_size = max(1, min(limit or self._default_limit, MAX_PAGE_SIZE))

        if sort is FeedSort.POPULAR:
            ranked, has_more = await self._quotes.list_popular(
                offset=max(offset, 0), limit=page_size
            )
            quotes = [quote for quote, _ in ranked]
            durable_counts = {quote.id: count for quote, count in ranked}
            items = await self._annotate(quotes, user_id, durable_counts=durable_counts)
            return FeedPage(
                items=items,
                next_offset=max(offset, 0) + len(quotes) if has_more else None,
            )

        after = decode_cursor(cursor) if cursor else None
        quotes, has_more = await self._quotes.list_newest(limit=page_size, after=after)
        items = await self._annotate(quotes, user_id)
        next_cursor = None
        if has_more and quotes:
            last = quotes[-1]
            next_cursor = encode_cursor(last.created_at, last.id)
        return FeedPage(items=items, next_cursor=next_cursor)

    async def list_liked(self, user_id: str) -> QuoteListResponse:
        return await self._list_engaged(EngagementKind.LIKE, user_id)

    async def list_saved(self, user_id: str) -> QuoteListResponse:
        return await self._list_engaged(EngagementKind.SAVE, user_id)

    async def _list_engaged(self, kind: EngagementKind, user_id: str) -> QuoteListResponse:
        quote_ids: Sequence[str] | None = None
        try:
            cached = await self._counters.members(kind, user_id)
        except CounterStoreUnavailable as exc:
            logger.debug("Listing %s quotes from the database: %s", kind.value, exc)
        else:
            if cached is not None:
                quote_ids = list(cached)

        if quote_ids is None:
            quote_ids = await self._edges.list_quote_ids(kind, user_id)

        quotes = await self._quotes.get_quotes_by_ids(quote_ids)
        # Sets carry no order, so both sources are shown newest quote first.
        quotes.sort(key=lambda quote: (quote.created_at, quote.id), reverse=True)
        items = await self._annotate(quotes, user_id)
        return QuoteListResponse(items=items, total=len(items))

    async def _annotate(
        self,
        quotes: Sequence[Quote],
        user_id: str | None,
        *,
        durable_counts: Mapping[str, int] | None = None,
    ) -> list[FeedItem]:
        if not quotes:
            return []
        quote_ids = [quote.id for quote in quotes]
        counts = await self._like_counts(quote_ids, durable_counts or {})

        liked: set[str] | None = None
        saved: set[str] | None = None
        if user_id:
            liked = await self._membership(EngagementKind.LIKE, user_id, quote_ids)
            saved = await self._membership(EngagementKind.SAVE, user_id, quote_ids)

        items: list[FeedItem] = []
        for quote in quotes:
            item = FeedItem.model_validate(quote)
            item.like_count = counts.get(quote.id, 0)
            if liked is not None and saved is not None:
                item.liked = quote.id in liked
                item.saved = quote.id in saved
            items.append(item)
        return items

    async def _like_counts(
        self, quote_ids: Sequence[str], durable_counts: Mapping[str, int]
    ) -> dict[str, int]:
        cache_up = True
        try:
            cached = await self._counters.bulk_read(quote_ids)
        except CounterStoreUnavailable as exc:
            logger.debug("Like counts served from the database: %s", exc)
            cached = {}
            cache_up = False

        counts = {quote_id: value for quote_id, value in cached.items() if value is not None}
        missing = [quote_id for quote_id in quote_ids if quote_id not in counts]
        if not missing:
            return counts

        recomputed = {
            quote_id: durable_counts[quote_id] for quote_id in missing if quote_id in durable_counts
        }
        unresolved = [quote_id for quote_id in missing if quote_id not in recomputed]
        if unresolved:
            recomputed.update(await self._edges.count_likes_bulk(unresolved))
        counts.update(recomputed)

        if cache_up:
            try:
                await self._counters.seed_counts(recomputed)
            except CounterStoreUnavailable as exc:
                logger.debug("Could not seed like counters: %s", exc)
        return counts

    async def _membership(
        self, kind: EngagementKind, user_id: str, quote_ids: Sequence[str]
    ) -> set[str]:
        try:
            cached = await self._counters.bulk_membership(kind, user_id, quote_ids)
        except CounterStoreUnavailable as exc:
            logger.debug("%s flags served from the database: %s", kind.value, exc)
            return await self._edges.membership_bulk(kind, user_id, quote_ids)

        if cached is not None:
            return cached

        members = await self._edges.membership_bulk(kind, user_id, quote_ids)
        # Seeded even when empty so "no edges" is a cached answer too.
        all_ids = await self._edges.list_quote_ids(kind, user_id)
        try:
            await self._counters.seed_members(kind, user_id, all_ids)
        except CounterStoreUnavailable as exc:
            logger.debug("Could not seed %s set for %s: %s", kind.value, user_id, exc)
        return members


__all__ = [
    "FeedService",
    "InvalidCursorError",
    "MAX_PAGE_SIZE",
    "decode_cursor",
    "encode_cursor",
]
