"""Tests for best-effort engagement event publishing."""

from __future__ import annotations

import asyncio
import json
import logging

import pytest

from quotefeed.schemas.events import EngagementAction, EngagementEvent, EngagementKind
from quotefeed.services.event_publisher import EventPublisher
from tests.support.event_log import InMemoryEventLog, InMemoryProducer
from tests.support.factories import LIKES_TOPIC, SAVES_TOPIC


class _HangingProducer:
    async def send(self, topic: str, key: str, value: bytes, *, timeout: float) -> None:
        await asyncio.sleep(10)

    async def close(self) -> None:
        return None


@pytest.mark.asyncio
async def test_publish_routes_by_kind_with_pair_key(
    publisher: EventPublisher, event_log: InMemoryEventLog
) -> None:
    assert await publisher.publish(EngagementKind.LIKE, "alice", "q1", EngagementAction.ADD)
    assert await publisher.publish(EngagementKind.SAVE, "alice", "q1", EngagementAction.REMOVE)

    (like_record,) = event_log.records(LIKES_TOPIC)
    (save_record,) = event_log.records(SAVES_TOPIC)
    assert like_record.key == save_record.key == "alice:q1"

    payload = json.loads(like_record.value)
    assert payload["user_id"] == "alice"
    assert payload["kind"] == "like"
    assert payload["action"] == "add"
    assert EngagementEvent.decode(save_record.value).action is EngagementAction.REMOVE


@pytest.mark.asyncio
async def test_publish_failure_is_logged_not_raised(
    publisher: EventPublisher,
    producer: InMemoryProducer,
    caplog: pytest.LogCaptureFixture,
) -> None:
    producer.fail = True

    with caplog.at_level(logging.WARNING):
        published = await publisher.publish(
            EngagementKind.LIKE, "alice", "q1", EngagementAction.ADD
        )

    assert published is False
    assert "failed" in caplog.text


@pytest.mark.asyncio
async def test_publish_timeout_returns_false() -> None:
    publisher = EventPublisher(
        _HangingProducer(), likes_topic=LIKES_TOPIC, saves_topic=SAVES_TOPIC, timeout_seconds=0.01
    )

    assert await publisher.publish(EngagementKind.LIKE, "alice", "q1", EngagementAction.ADD) is False


@pytest.mark.asyncio
async def test_disabled_publisher_skips_quietly() -> None:
    publisher = EventPublisher(None, likes_topic=LIKES_TOPIC, saves_topic=SAVES_TOPIC)

    assert publisher.enabled is False
    assert await publisher.publish(EngagementKind.SAVE, "alice", "q1", EngagementAction.ADD) is False
    await publisher.close()


def test_legacy_action_names_are_accepted() -> None:
    event = EngagementEvent.decode(
        b'{"user_id": "alice", "quote_id": "q1", "kind": "like", "action": "unlike"}'
    )

    assert event.action is EngagementAction.REMOVE
    assert event.key == "alice:q1"
