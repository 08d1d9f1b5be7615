"""Interfaces for the ordered, partitioned engagement event log.

The publisher and the reconciler only depend on these protocols, which keeps
Kafka specifics in :mod:`quotefeed.events.kafka_log` and lets tests drive the
reconciler with an in-memory log.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from typing import Protocol


@dataclass(frozen=True)
class LogRecord:
    """One message as delivered to a consumer, in partition order."""

    topic: str
    partition: int
    offset: int
    key: str | None
    value: bytes | None


class EventLogError(Exception):
    """Raised when the log cannot be reached or rejects an operation."""


class EventProducer(Protocol):
    async def send(self, topic: str, key: str, value: bytes, *, timeout: float) -> None:
        """Append ``value`` to ``topic``; every message with ``key`` lands in one partition."""

    async def close(self) -> None: ...


class EventConsumer(Protocol):
    async def fetch(self, *, max_records: int, timeout_ms: int) -> list[LogRecord]:
        """Return the next batch of records (possibly empty) without committing."""

    async def commit(self) -> None:
        """Commit the position just past the last fetched batch."""

    async def rewind(self) -> None:
        """Seek back to the last committed position so the batch is redelivered."""

    async def close(self) -> None: ...


class TopicAdmin(Protocol):
    async def ensure_topics(self, topics: Sequence[str]) -> None:
        """Create ``topics`` when missing; raise :class:`EventLogError` if unreachable."""

    async def close(self) -> None: ...


__all__ = [
    "EventConsumer",
    "EventLogError",
    "EventProducer",
    "LogRecord",
    "TopicAdmin",
]
