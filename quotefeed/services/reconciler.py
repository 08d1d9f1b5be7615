"""Background consumer folding engagement events into the durable store.

Consistency model: delivery is at-least-once and application is idempotent.
Within a batch only the last action per ``(kind, user_id, quote_id)`` matters,
so ``like, unlike, like`` collapses to a single insert-if-absent.  The
consumer position is committed only after the database transaction for the
batch has committed; any failure rewinds to the last committed position and
the whole batch is applied again, which is harmless because every edge write
is an absolute set or unset.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass

from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from quotefeed.db.connection import session_scope
from quotefeed.db.repositories import EngagementRepository, QuoteRepository
from quotefeed.events.log import EventConsumer, EventLogError, LogRecord, TopicAdmin
from quotefeed.schemas.events import EngagementAction, EngagementEvent, EngagementKind

logger = logging.getLogger(__name__)

CollapseKey = tuple[EngagementKind, str, str]
Sleep = Callable[[float], Awaitable[None]]


class ReconcilerStartupError(RuntimeError):
    """The event log never became reachable within the startup budget."""


@dataclass(frozen=True)
class BatchOutcome:
    records: int
    writes: int
    skipped: int


class Backoff:
    """Capped exponential delay: ``initial``, ``initial * factor``, ... up to ``maximum``."""

    def __init__(self, initial: float, maximum: float, factor: float = 2.0) -> None:
        self._initial = initial
        self._maximum = maximum
        self._factor = factor
        self._attempt = 0

    def next_delay(self) -> float:
        delay = min(self._initial * (self._factor**self._attempt), self._maximum)
        self._attempt += 1
        return delay

    def reset(self) -> None:
        self._attempt = 0


def decode_record(
    record: LogRecord, topic_kinds: Mapping[str, EngagementKind]
) -> EngagementEvent | None:
    """Parse a log record into an event, returning ``None`` for anything unusable."""

    kind = topic_kinds.get(record.topic)
    if kind is None:
        logger.warning("Skipping record from unexpected topic %s", record.topic)
        return None
    if not record.value:
        logger.warning(
            "Skipping empty record %s[%s]@%s", record.topic, record.partition, record.offset
        )
        return None

    try:
        payload = json.loads(record.value)
        if not isinstance(payload, dict):
            raise ValueError("payload is not an object")
        # Older producers omitted the kind; the topic implies it.
        payload.setdefault("kind", kind.value)
        event = EngagementEvent.model_validate(payload)
    except (ValueError, ValidationError) as exc:
        logger.warning(
            "Skipping malformed record %s[%s]@%s: %s",
            record.topic,
            record.partition,
            record.offset,
            exc,
        )
        return None

    if event.kind is not kind:
        logger.warning(
            "Skipping %s event delivered on %s topic", event.kind.value, record.topic
        )
        return None
    return event


def collapse_batch(events: Iterable[EngagementEvent]) -> dict[CollapseKey, EngagementAction]:
    """Reduce a batch to the last observed action per key, in delivery order."""

    collapsed: dict[CollapseKey, EngagementAction] = {}
    for event in events:
        collapsed[(event.kind, event.user_id, event.quote_id)] = event.action
    return collapsed


async def wait_for_topics(
    admin: TopicAdmin,
    topics: Sequence[str],
    *,
    retries: int,
    delay_seconds: float,
    sleep: Sleep = asyncio.sleep,
) -> None:
    """Block until ``topics`` exist, giving up after ``retries`` attempts."""

    attempts = max(retries, 1)
    for attempt in range(1, attempts + 1):
        try:
            await admin.ensure_topics(topics)
        except EventLogError as exc:
            if attempt == attempts:
                raise ReconcilerStartupError(
                    f"Event log not ready after {attempts} attempts: {exc}"
                ) from exc
            logger.info(
                "Event log not ready (attempt %s/%s): %s; retrying in %.1fs",
                attempt,
                attempts,
                exc,
                delay_seconds,
            )
            await sleep(delay_seconds)
        else:
            logger.info("Event topics ready: %s", ", ".join(topics))
            return


class EventReconciler:
    """Drive the ``fetch -> collapse -> apply -> commit`` cycle."""

    def __init__(
        self,
        consumer: EventConsumer,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        topic_kinds: Mapping[str, EngagementKind],
        batch_size: int = 200,
        poll_timeout_ms: int = 1000,
        backoff: Backoff | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._consumer = consumer
        self._session_factory = session_factory
        self._topic_kinds = dict(topic_kinds)
        self._batch_size = batch_size
        self._poll_timeout_ms = poll_timeout_ms
        self._backoff = backoff or Backoff(1.0, 30.0)
        self._sleep = sleep

    async def apply(self, collapsed: Mapping[CollapseKey, EngagementAction]) -> tuple[int, int]:
        """Write the collapsed actions in one transaction; return ``(writes, skipped)``.

        Adds for quotes that no longer exist are dropped, otherwise a deleted
        quote would wedge the consumer on a foreign key violation forever.
        """

        writes = 0
        skipped = 0
        async with session_scope(self._session_factory) as session:
            edges = EngagementRepository(session)
            live_ids = await QuoteRepository(session).existing_ids(
                list({quote_id for _, _, quote_id in collapsed})
            )
            for (kind, user_id, quote_id), action in collapsed.items():
                if action is EngagementAction.ADD:
                    if quote_id not in live_ids:
                        skipped += 1
                        continue
                    await edges.add_edge(kind, user_id, quote_id)
                else:
                    await edges.remove_edge(kind, user_id, quote_id)
                writes += 1
        return writes, skipped

    async def process_batch(self, records: Sequence[LogRecord]) -> BatchOutcome:
        """Apply ``records`` and commit the consumer position.  Raises on failure."""

        events = [
            event
            for event in (decode_record(record, self._topic_kinds) for record in records)
            if event is not None
        ]
        collapsed = collapse_batch(events)
        writes, skipped = (0, 0)
        if collapsed:
            writes, skipped = await self.apply(collapsed)
        await self._consumer.commit()

        outcome = BatchOutcome(
            records=len(records),
            writes=writes,
            skipped=skipped + (len(records) - len(events)),
        )
        logger.info(
            "Reconciled batch: %s records, %s writes, %s skipped",
            outcome.records,
            outcome.writes,
            outcome.skipped,
        )
        return outcome

    async def run_once(self) -> BatchOutcome | None:
        records = await self._consumer.fetch(
            max_records=self._batch_size, timeout_ms=self._poll_timeout_ms
        )
        if not records:
            return None
        return await self.process_batch(records)

    async def run(self, stop: asyncio.Event | None = None) -> None:
        """Consume until ``stop`` is set, retrying failures with capped backoff."""

        stop = stop or asyncio.Event()
        logger.info("Event reconciler started for topics: %s", ", ".join(self._topic_kinds))
        while not stop.is_set():
            try:
                await self.run_once()
            except Exception as exc:  # noqa: BLE001 - the worker must outlive infra outages
                delay = self._backoff.next_delay()
                logger.error(
                    "Reconciler batch failed (%s: %s); batch left uncommitted, retrying in %.1fs",
                    type(exc).__name__,
                    exc,
                    delay,
                )
                await self._rewind()
                await self._sleep(delay)
                continue
            self._backoff.reset()
        logger.info("Event reconciler stopped")

    async def _rewind(self) -> None:
        try:
            await self._consumer.rewind()
        except EventLogError as exc:
            logger.warning("Could not rewind consumer after failure: %s", exc)

    async def close(self) -> None:
        await self._consumer.close()


__all__ = [
    "Backoff",
    "BatchOutcome",
    "CollapseKey",
    "EventReconciler",
    "ReconcilerStartupError",
    "collapse_batch",
    "decode_record",
    "wait_for_topics",
]
