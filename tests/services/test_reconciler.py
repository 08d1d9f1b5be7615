"""Tests for batch collapse, idempotent apply and the reconciler loop."""

from __future__ import annotations

import asyncio
import random

import pytest
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from quotefeed.db.repositories import EngagementRepository
from quotefeed.events.log import LogRecord
from quotefeed.schemas.events import EngagementAction, EngagementEvent, EngagementKind
from quotefeed.services.event_publisher import EventPublisher
from quotefeed.services.reconciler import (
    Backoff,
    EventReconciler,
    ReconcilerStartupError,
    collapse_batch,
    decode_record,
    wait_for_topics,
)
from tests.support.event_log import FlakyTopicAdmin, InMemoryConsumer, InMemoryEventLog
from tests.support.factories import LIKES_TOPIC, SAVES_TOPIC, add_quote

LIKE = EngagementKind.LIKE
SAVE = EngagementKind.SAVE
ADD = EngagementAction.ADD
REMOVE = EngagementAction.REMOVE
TOPIC_KINDS = {LIKES_TOPIC: LIKE, SAVES_TOPIC: SAVE}


def _event(
    action: EngagementAction,
    *,
    user: str = "alice",
    quote: str = "q1",
    kind: EngagementKind = LIKE,
) -> EngagementEvent:
    return EngagementEvent(user_id=user, quote_id=quote, kind=kind, action=action)


def _reconciler(
    event_log: InMemoryEventLog,
    session_factory: async_sessionmaker[AsyncSession],
    *,
    batch_size: int = 200,
    sleep=asyncio.sleep,
) -> tuple[EventReconciler, InMemoryConsumer]:
    consumer = InMemoryConsumer(event_log, [LIKES_TOPIC, SAVES_TOPIC])
    reconciler = EventReconciler(
        consumer,
        session_factory,
        topic_kinds=TOPIC_KINDS,
        batch_size=batch_size,
        backoff=Backoff(1.0, 30.0),
        sleep=sleep,
    )
    return reconciler, consumer


async def _edge(
    session_factory: async_sessionmaker[AsyncSession],
    kind: EngagementKind,
    user_id: str,
    quote_id: str,
) -> bool:
    async with session_factory() as session:
        return await EngagementRepository(session).edge_exists(kind, user_id, quote_id)


def test_collapse_keeps_last_action_per_key() -> None:
    collapsed = collapse_batch(
        [
            _event(ADD),
            _event(REMOVE),
            _event(ADD),
            _event(ADD, user="bob"),
            _event(REMOVE, user="bob"),
            _event(ADD, kind=SAVE),
        ]
    )

    assert collapsed == {
        (LIKE, "alice", "q1"): ADD,
        (LIKE, "bob", "q1"): REMOVE,
        (SAVE, "alice", "q1"): ADD,
    }


def test_decode_record_skips_malformed_and_mismatched_payloads() -> None:
    event = _event(ADD)
    good = event.encode()
    records = [
        LogRecord(LIKES_TOPIC, 0, 0, "alice:q1", b"not json"),
        LogRecord(LIKES_TOPIC, 0, 1, "alice:q1", b'{"user_id": "alice"}'),
        LogRecord(SAVES_TOPIC, 0, 2, "alice:q1", good),
        LogRecord("unrelated", 0, 3, "alice:q1", good),
        LogRecord(LIKES_TOPIC, 0, 4, "alice:q1", None),
    ]

    assert [decode_record(record, TOPIC_KINDS) for record in records] == [None] * 5
    assert decode_record(LogRecord(LIKES_TOPIC, 0, 5, "alice:q1", good), TOPIC_KINDS) == event


def test_decode_record_infers_kind_from_topic_for_legacy_payloads() -> None:
    record = LogRecord(
        SAVES_TOPIC, 0, 0, "alice:q1", b'{"user_id": "alice", "quote_id": "q1", "action": "save"}'
    )

    event = decode_record(record, TOPIC_KINDS)

    assert event is not None
    assert (event.kind, event.action) == (SAVE, ADD)


def test_backoff_is_capped_exponential() -> None:
    backoff = Backoff(1.0, 30.0)

    assert [backoff.next_delay() for _ in range(7)] == [1.0, 2.0, 4.0, 8.0, 16.0, 30.0, 30.0]
    backoff.reset()
    assert backoff.next_delay() == 1.0


@pytest.mark.asyncio
async def test_process_batch_applies_then_commits(
    session: AsyncSession,
    session_factory: async_sessionmaker[AsyncSession],
    publisher: EventPublisher,
    event_log: InMemoryEventLog,
) -> None:
    quote = await add_quote(session)
    await publisher.publish(LIKE, "alice", quote.id, ADD)
    await publisher.publish(LIKE, "alice", quote.id, REMOVE)
    await publisher.publish(LIKE, "alice", quote.id, ADD)
    await publisher.publish(SAVE, "bob", quote.id, ADD)
    reconciler, consumer = _reconciler(event_log, session_factory)

    outcome = await reconciler.run_once()

    assert outcome is not None
    assert (outcome.records, outcome.writes, outcome.skipped) == (4, 2, 0)
    assert consumer.lag() == 0
    assert await _edge(session_factory, LIKE, "alice", quote.id) is True
    assert await _edge(session_factory, SAVE, "bob", quote.id) is True
    assert await reconciler.run_once() is None


@pytest.mark.asyncio
@pytest.mark.parametrize("seed", range(6))
async def test_reconciler_converges_to_last_action(
    seed: int,
    session: AsyncSession,
    session_factory: async_sessionmaker[AsyncSession],
    publisher: EventPublisher,
    event_log: InMemoryEventLog,
) -> None:
    rng = random.Random(seed)
    quote = await add_quote(session)
    actions = [rng.choice([ADD, REMOVE]) for _ in range(rng.randint(1, 25))]
    for action in actions:
        await publisher.publish(LIKE, "alice", quote.id, action)
    reconciler, consumer = _reconciler(
        event_log, session_factory, batch_size=rng.randint(1, 5)
    )

    while await reconciler.run_once() is not None:
        pass

    assert consumer.lag() == 0
    assert await _edge(session_factory, LIKE, "alice", quote.id) is (actions[-1] is ADD)


@pytest.mark.asyncio
async def test_redelivered_batch_does_not_double_apply(
    session: AsyncSession,
    session_factory: async_sessionmaker[AsyncSession],
    publisher: EventPublisher,
    event_log: InMemoryEventLog,
) -> None:
    quote = await add_quote(session)
    for user in ("alice", "bob", "carol"):
        await publisher.publish(LIKE, user, quote.id, ADD)
    reconciler, consumer = _reconciler(event_log, session_factory)
    await reconciler.run_once()

    # Simulate a crash between the database commit and the offset commit.
    consumer.committed = {topic: 0 for topic in consumer.committed}
    await consumer.rewind()
    await reconciler.run_once()

    async with session_factory() as check:
        assert await EngagementRepository(check).count_likes(quote.id) == 3


@pytest.mark.asyncio
async def test_adds_for_deleted_quotes_are_skipped(
    session_factory: async_sessionmaker[AsyncSession],
    publisher: EventPublisher,
    event_log: InMemoryEventLog,
) -> None:
    await publisher.publish(LIKE, "alice", "4a0c7c52-0000-4000-8000-000000000000", ADD)
    reconciler, consumer = _reconciler(event_log, session_factory)

    outcome = await reconciler.run_once()

    assert outcome is not None
    assert (outcome.writes, outcome.skipped) == (0, 1)
    assert consumer.lag() == 0


@pytest.mark.asyncio
async def test_apply_failure_leaves_batch_uncommitted_and_retries(
    monkeypatch: pytest.MonkeyPatch,
    session: AsyncSession,
    session_factory: async_sessionmaker[AsyncSession],
    publisher: EventPublisher,
    event_log: InMemoryEventLog,
) -> None:
    quote = await add_quote(session)
    await publisher.publish(LIKE, "alice", quote.id, ADD)

    original_add_edge = EngagementRepository.add_edge
    failures = {"remaining": 2}

    async def flaky_add_edge(self, kind, user_id, quote_id):
        if failures["remaining"]:
            failures["remaining"] -= 1
            raise OperationalError("INSERT INTO quote_likes", {}, Exception("database is down"))
        return await original_add_edge(self, kind, user_id, quote_id)

    monkeypatch.setattr(EngagementRepository, "add_edge", flaky_add_edge)

    stop = asyncio.Event()
    delays: list[float] = []

    async def fake_sleep(delay: float) -> None:
        delays.append(delay)
        assert consumer.commit_calls == 0
        if len(delays) == 2:
            stop.set()

    reconciler, consumer = _reconciler(event_log, session_factory, sleep=fake_sleep)
    await reconciler.run(stop)

    assert delays == [1.0, 2.0]
    assert consumer.rewind_calls == 2
    assert consumer.lag() == 1
    assert await _edge(session_factory, LIKE, "alice", quote.id) is False

    outcome = await reconciler.run_once()
    assert outcome is not None and outcome.writes == 1
    assert consumer.lag() == 0
    assert await _edge(session_factory, LIKE, "alice", quote.id) is True


@pytest.mark.asyncio
async def test_fetch_failure_backs_off_without_exiting(
    session_factory: async_sessionmaker[AsyncSession],
    event_log: InMemoryEventLog,
) -> None:
    stop = asyncio.Event()
    delays: list[float] = []

    async def fake_sleep(delay: float) -> None:
        delays.append(delay)
        if len(delays) == 3:
            stop.set()

    reconciler, consumer = _reconciler(event_log, session_factory, sleep=fake_sleep)
    consumer.fail_fetch = True

    await reconciler.run(stop)

    assert delays == [1.0, 2.0, 4.0]
    assert consumer.commit_calls == 0


@pytest.mark.asyncio
async def test_wait_for_topics_retries_until_ready() -> None:
    admin = FlakyTopicAdmin(failures=2)
    delays: list[float] = []

    async def fake_sleep(delay: float) -> None:
        delays.append(delay)

    await wait_for_topics(
        admin, [LIKES_TOPIC, SAVES_TOPIC], retries=5, delay_seconds=2.0, sleep=fake_sleep
    )

    assert admin.calls == 3
    assert delays == [2.0, 2.0]


@pytest.mark.asyncio
async def test_wait_for_topics_gives_up_after_bounded_retries() -> None:
    admin = FlakyTopicAdmin(failures=100)
    delays: list[float] = []

    async def fake_sleep(delay: float) -> None:
        delays.append(delay)

    with pytest.raises(ReconcilerStartupError):
        await wait_for_topics(
            admin, [LIKES_TOPIC], retries=3, delay_seconds=2.0, sleep=fake_sleep
        )

    assert admin.calls == 3
    assert len(delays) == 2
