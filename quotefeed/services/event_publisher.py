"""Fire-and-forget publishing of like/save mutations.

Events for the same ``(user_id, quote_id)`` pair share a message key, which
the log uses to route them to one partition, so "like" followed by "unlike"
is always consumed in that order.  Nothing raised here ever reaches the
request: a lost event only delays the durable store until a sweep.
"""

from __future__ import annotations

import asyncio
import logging

from quotefeed.events.log import EventLogError, EventProducer
from quotefeed.schemas.events import EngagementAction, EngagementEvent, EngagementKind

logger = logging.getLogger(__name__)


class EventPublisher:
    """Route engagement events to their kind-specific topic."""

    def __init__(
        self,
        producer: EventProducer | None,
        *,
        likes_topic: str,
        saves_topic: str,
        timeout_seconds: float = 1.5,
    ) -> None:
        self._producer = producer
        self._topics = {
            EngagementKind.LIKE: likes_topic,
            EngagementKind.SAVE: saves_topic,
        }
        self._timeout_seconds = timeout_seconds

    @property
    def enabled(self) -> bool:
        return self._producer is not None

    def topic_for(self, kind: EngagementKind) -> str:
        return self._topics[kind]

    async def publish(
        self,
        kind: EngagementKind,
        user_id: str,
        quote_id: str,
        action: EngagementAction,
    ) -> bool:
        """Publish one event; return ``False`` instead of raising on any failure."""

        if self._producer is None:
            logger.debug("Event publishing disabled; skipping %s %s", kind.value, action.value)
            return False

        event = EngagementEvent(user_id=user_id, quote_id=quote_id, kind=kind, action=action)
        topic = self.topic_for(kind)
        try:
            await asyncio.wait_for(
                self._producer.send(
                    topic, event.key, event.encode(), timeout=self._timeout_seconds
                ),
                timeout=self._timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning(
                "Publishing %s/%s for %s timed out after %.1fs",
                kind.value,
                action.value,
                event.key,
                self._timeout_seconds,
            )
            return False
        except EventLogError as exc:
            logger.warning(
                "Publishing %s/%s for %s failed: %s", kind.value, action.value, event.key, exc
            )
            return False
        except Exception:  # noqa: BLE001 - publishing must never fail the write path
            logger.exception(
                "Unexpected error publishing %s/%s for %s", kind.value, action.value, event.key
            )
            return False
        return True

    async def close(self) -> None:
        if self._producer is not None:
            await self._producer.close()


__all__ = ["EventPublisher"]
