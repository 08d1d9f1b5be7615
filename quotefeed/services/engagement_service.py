"""Write path for likes and saves.

Two interchangeable strategies apply a mutation:

* :class:`CachedEngagementPath` mutates the Redis membership set (and the
  like counter) and relies on the event log to reach the database later.
* :class:`DurableEngagementPath` writes the edge straight to the database.

:class:`EngagementService` picks the cached path while the Redis connection
reports itself healthy and drops to the durable path whenever the counter
store raises :class:`CounterStoreUnavailable`.  The event is published on both
paths so the reconciler sees every mutation for a ``(user, quote)`` key in
order, even when some of them were also written directly.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable
from typing import Protocol, TypeVar

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from quotefeed.db.repositories import EngagementRepository, QuoteRepository
from quotefeed.schemas.events import EngagementAction, EngagementKind
from quotefeed.schemas.feed import EngagementResult
from quotefeed.services.counter_store import CounterStore, CounterStoreUnavailable
from quotefeed.services.event_publisher import EventPublisher

logger = logging.getLogger(__name__)

T = TypeVar("T")


class QuoteNotFoundError(LookupError):
    """The quote does not exist, or is not owned by the caller."""

    def __init__(self, quote_id: str) -> None:
        super().__init__(f"Quote {quote_id} not found")
        self.quote_id = quote_id


class EngagementUnavailableError(RuntimeError):
    """Neither the counter store nor the database accepted a mutation."""


class EngagementPath(Protocol):
    name: str

    async def apply(
        self,
        kind: EngagementKind,
        user_id: str,
        quote_id: str,
        action: EngagementAction,
    ) -> EngagementResult: ...


class CachedEngagementPath:
    """Apply mutations to Redis only; raises ``CounterStoreUnavailable``.

    A user set or counter that Redis does not hold yet is seeded from the
    database before it is mutated, so ``created`` and the returned count stay
    exact after an eviction or an outage.
    """

    name = "cache"

    def __init__(self, counters: CounterStore, session: AsyncSession) -> None:
        self._counters = counters
        self._session = session
        self._edges = EngagementRepository(session)

    async def apply(
        self,
        kind: EngagementKind,
        user_id: str,
        quote_id: str,
        action: EngagementAction,
    ) -> EngagementResult:
        changed = await self._move_member(kind, user_id, quote_id, action)

        like_count: int | None = None
        if kind is EngagementKind.LIKE:
            # Membership already moved, so a counter failure must not send the
            # caller down the durable path and apply the mutation twice.
            try:
                like_count = await self._adjust_counter(quote_id, action, changed)
            except CounterStoreUnavailable as exc:
                logger.warning("Like counter for %s not updated: %s", quote_id, exc)

        return EngagementResult(
            quote_id=quote_id,
            active=action is EngagementAction.ADD,
            created=changed is not False and action is EngagementAction.ADD,
            like_count=like_count,
        )

    async def _move_member(
        self,
        kind: EngagementKind,
        user_id: str,
        quote_id: str,
        action: EngagementAction,
    ) -> bool | None:
        """Return whether membership changed, ``None`` when it cannot be known."""

        move = (
            self._counters.add_member
            if action is EngagementAction.ADD
            else self._counters.remove_member
        )
        changed = await move(kind, user_id, quote_id)
        if changed is not None:
            return changed

        durable_ids = await self._durable(self._edges.list_quote_ids(kind, user_id))
        if durable_ids is None:
            # The event still carries the mutation to the database; the set
            # stays unseeded and the next read seeds it from there.
            return None
        await self._counters.seed_members(kind, user_id, durable_ids)
        return await move(kind, user_id, quote_id)

    async def _adjust_counter(
        self, quote_id: str, action: EngagementAction, changed: bool | None
    ) -> int | None:
        if changed is None:
            await self._counters.reset_quote(quote_id)
            return None
        if not changed:
            return await self._counters.like_count(quote_id)

        step = (
            self._counters.increment_count
            if action is EngagementAction.ADD
            else self._counters.decrement_count
        )
        count = await step(quote_id)
        if count is not None:
            return count

        durable_count = await self._durable(self._edges.count_likes(quote_id))
        if durable_count is None:
            return None
        # The seeded set said this edge is new, so the database count does not
        # include it yet.
        await self._counters.seed_counts({quote_id: durable_count})
        return await step(quote_id)

    async def _durable(self, query: Awaitable[T]) -> T | None:
        try:
            return await query
        except SQLAlchemyError as exc:
            await self._session.rollback()
            logger.warning("Could not seed the counter store from the database: %s", exc)
            return None


class DurableEngagementPath:
    """Apply mutations to the database in their own transaction."""

    name = "database"

    def __init__(self, session: AsyncSession) -> None:
        self._session = session
        self._edges = EngagementRepository(session)

    async def apply(
        self,
        kind: EngagementKind,
        user_id: str,
        quote_id: str,
        action: EngagementAction,
    ) -> EngagementResult:
        try:
            if action is EngagementAction.ADD:
                changed = await self._edges.add_edge(kind, user_id, quote_id)
            else:
                changed = await self._edges.remove_edge(kind, user_id, quote_id)
            await self._session.commit()
            like_count = (
                await self._edges.count_likes(quote_id)
                if kind is EngagementKind.LIKE
                else None
            )
        except SQLAlchemyError:
            await self._session.rollback()
            raise

        return EngagementResult(
            quote_id=quote_id,
            active=action is EngagementAction.ADD,
            created=changed and action is EngagementAction.ADD,
            like_count=like_count,
        )


class EngagementService:
    """Like, unlike, save, unsave and quote deletion for one request."""

    def __init__(
        self,
        session: AsyncSession,
        counters: CounterStore,
        publisher: EventPublisher,
    ) -> None:
        self._session = session
        self._counters = counters
        self._publisher = publisher
        self._cached = CachedEngagementPath(counters, session)
        self._durable = DurableEngagementPath(session)

    async def like(self, user_id: str, quote_id: str) -> EngagementResult:
        await self._require_quote(quote_id)
        return await self._mutate(EngagementKind.LIKE, user_id, quote_id, EngagementAction.ADD)

    async def unlike(self, user_id: str, quote_id: str) -> EngagementResult:
        return await self._mutate(EngagementKind.LIKE, user_id, quote_id, EngagementAction.REMOVE)

    async def save(self, user_id: str, quote_id: str) -> EngagementResult:
        await self._require_quote(quote_id)
        return await self._mutate(EngagementKind.SAVE, user_id, quote_id, EngagementAction.ADD)

    async def unsave(self, user_id: str, quote_id: str) -> EngagementResult:
        return await self._mutate(EngagementKind.SAVE, user_id, quote_id, EngagementAction.REMOVE)

    async def purge_quote(self, quote_id: str, *, owner_id: str) -> None:
        """Delete an owned quote together with its edges and cached counter."""

        quotes = QuoteRepository(self._session)
        quote = await quotes.get_quote(quote_id)
        if quote is None or quote.created_by != owner_id:
            raise QuoteNotFoundError(quote_id)

        try:
            removed = await EngagementRepository(self._session).delete_all_edges_for_quote(quote_id)
            await quotes.delete_quote(quote_id, owner_id=owner_id)
            await self._session.commit()
        except SQLAlchemyError:
            await self._session.rollback()
            raise
        logger.info("Deleted quote %s and %s engagement edges", quote_id, removed)

        try:
            await self._counters.reset_quote(quote_id)
        except CounterStoreUnavailable as exc:
            logger.warning("Counter for deleted quote %s left in cache: %s", quote_id, exc)

    async def _mutate(
        self,
        kind: EngagementKind,
        user_id: str,
        quote_id: str,
        action: EngagementAction,
    ) -> EngagementResult:
        if self._counters.available():
            try:
                result = await self._cached.apply(kind, user_id, quote_id, action)
            except CounterStoreUnavailable as exc:
                logger.warning(
                    "Counter store unavailable for %s/%s, writing to the database: %s",
                    kind.value,
                    action.value,
                    exc,
                )
            else:
                if not await self._publisher.publish(kind, user_id, quote_id, action):
                    await self._write_through(kind, user_id, quote_id, action)
                if kind is EngagementKind.LIKE and result.like_count is None:
                    result.like_count = await self._durable_like_count(quote_id)
                return result

        try:
            result = await self._durable.apply(kind, user_id, quote_id, action)
        except SQLAlchemyError as exc:
            logger.error(
                "Both stores rejected %s/%s for %s:%s: %s",
                kind.value,
                action.value,
                user_id,
                quote_id,
                exc,
            )
            raise EngagementUnavailableError(
                "Neither the counter store nor the database accepted the write"
            ) from exc
        self._counters.mark_stale(kind, user_id, quote_id)
        await self._publisher.publish(kind, user_id, quote_id, action)
        return result

    async def _write_through(
        self,
        kind: EngagementKind,
        user_id: str,
        quote_id: str,
        action: EngagementAction,
    ) -> None:
        """Apply a mutation whose event was lost, so the database still converges."""

        try:
            await self._durable.apply(kind, user_id, quote_id, action)
        except SQLAlchemyError as exc:
            logger.warning(
                "Event for %s:%s was not published and the database write failed; "
                "the next sweep will repair it: %s",
                user_id,
                quote_id,
                exc,
            )

    async def _durable_like_count(self, quote_id: str) -> int | None:
        try:
            return await EngagementRepository(self._session).count_likes(quote_id)
        except SQLAlchemyError as exc:
            logger.warning("Could not read like count for %s: %s", quote_id, exc)
            await self._session.rollback()
            return None

    async def _require_quote(self, quote_id: str) -> None:
        try:
            quote = await QuoteRepository(self._session).get_quote(quote_id)
        except SQLAlchemyError as exc:
            await self._session.rollback()
            if not self._counters.available():
                raise EngagementUnavailableError("Database and counter store unavailable") from exc
            logger.warning("Could not verify quote %s exists, continuing: %s", quote_id, exc)
            return
        if quote is None:
            raise QuoteNotFoundError(quote_id)


__all__ = [
    "CachedEngagementPath",
    "DurableEngagementPath",
    "EngagementPath",
    "EngagementService",
    "EngagementUnavailableError",
    "QuoteNotFoundError",
]
