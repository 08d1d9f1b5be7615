"""Rebuild the counter store from the database.

The sweep overwrites every like counter and every user like/save set with
what the database holds.  It repairs drift from lost events and from
cache keys a crashed process never invalidated after an outage, but it also
discards cache-only mutations that the reconciler has not applied yet, so run
it while the reconciler's consumer lag is zero.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from quotefeed.db.connection import session_scope
from quotefeed.db.repositories import EngagementRepository, QuoteRepository
from quotefeed.schemas.events import EngagementKind
from quotefeed.services.counter_store import CounterStore

logger = logging.getLogger(__name__)

_CHUNK_SIZE = 500


@dataclass
class SweepReport:
    counters: int = 0
    user_sets: int = 0
    cleared_sets: int = 0


class EngagementSweeper:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        counters: CounterStore,
    ) -> None:
        self._session_factory = session_factory
        self._counters = counters

    async def sweep(self) -> SweepReport:
        """Overwrite cached counters and sets; raises ``CounterStoreUnavailable``."""

        report = SweepReport()
        async with session_scope(self._session_factory) as session:
            edges = EngagementRepository(session)

            quote_ids = await QuoteRepository(session).list_ids()
            for start in range(0, len(quote_ids), _CHUNK_SIZE):
                counts = await edges.count_likes_bulk(quote_ids[start : start + _CHUNK_SIZE])
                await self._counters.seed_counts(counts, overwrite=True)
                report.counters += len(counts)

            for kind in EngagementKind:
                durable_users = set(await edges.users_with_edges(kind))
                for user_id in sorted(durable_users):
                    member_ids = await edges.list_quote_ids(kind, user_id)
                    await self._counters.seed_members(kind, user_id, member_ids, replace=True)
                    report.user_sets += 1

                stale_users = [
                    user_id
                    async for user_id in self._counters.iter_member_users(kind)
                    if user_id not in durable_users
                ]
                for user_id in stale_users:
                    await self._counters.clear_members(kind, user_id)
                    report.cleared_sets += 1

        logger.info(
            "Sweep rebuilt %s counters, %s user sets, cleared %s stale sets",
            report.counters,
            report.user_sets,
            report.cleared_sets,
        )
        return report


__all__ = ["EngagementSweeper", "SweepReport"]
