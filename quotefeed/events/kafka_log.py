"""kafka-python implementations of the event log protocols.

kafka-python clients are blocking, so every call is pushed to a worker thread
with :func:`asyncio.to_thread`.  A consumer instance is only ever driven by a
single reconciler coroutine, which keeps its calls sequential even though they
hop between threads.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Sequence

from kafka import KafkaConsumer, KafkaProducer
from kafka.admin import KafkaAdminClient, NewTopic
from kafka.errors import KafkaError, TopicAlreadyExistsError

from quotefeed.events.log import EventLogError, LogRecord

logger = logging.getLogger(__name__)

_PRODUCER_RETRY_SECONDS = 30.0


class KafkaEventProducer:
    """Lazily connected producer; a failed connect is retried after a cool-down."""

    def __init__(self, brokers: Sequence[str], *, client_id: str) -> None:
        self._brokers = list(brokers)
        self._client_id = client_id
        self._producer: KafkaProducer | None = None
        self._retry_after: float = 0.0

    def _ensure_producer(self, timeout: float) -> KafkaProducer:
        if self._producer is not None:
            return self._producer
        if time.monotonic() < self._retry_after:
            raise EventLogError("Kafka producer in cool-down after a failed connect")
        try:
            self._producer = KafkaProducer(
                bootstrap_servers=self._brokers,
                client_id=self._client_id,
                key_serializer=lambda key: key.encode("utf-8"),
                acks="all",
                retries=3,
                linger_ms=5,
                max_block_ms=int(timeout * 1000),
            )
        except KafkaError as exc:
            self._retry_after = time.monotonic() + _PRODUCER_RETRY_SECONDS
            raise EventLogError(f"Kafka producer unavailable: {exc}") from exc
        return self._producer

    def _send_blocking(self, topic: str, key: str, value: bytes, timeout: float) -> None:
        producer = self._ensure_producer(timeout)
        try:
            producer.send(topic, key=key, value=value).get(timeout=timeout)
        except KafkaError as exc:
            raise EventLogError(f"Kafka publish to {topic} failed: {exc}") from exc

    async def send(self, topic: str, key: str, value: bytes, *, timeout: float) -> None:
        await asyncio.to_thread(self._send_blocking, topic, key, value, timeout)

    async def close(self) -> None:
        producer, self._producer = self._producer, None
        if producer is not None:
            await asyncio.to_thread(producer.close, 5)


class KafkaEventConsumer:
    """Manual-commit consumer subscribed to every engagement topic."""

    def __init__(
        self,
        brokers: Sequence[str],
        topics: Sequence[str],
        *,
        group_id: str,
        client_id: str,
        session_timeout_ms: int = 30000,
    ) -> None:
        self._brokers = list(brokers)
        self._topics = list(topics)
        self._group_id = group_id
        self._client_id = client_id
        self._session_timeout_ms = session_timeout_ms
        self._consumer: KafkaConsumer | None = None

    def _ensure_consumer(self) -> KafkaConsumer:
        if self._consumer is None:
            # ``earliest`` so a brand new group does not skip events published
            # before the worker first joined; replays are idempotent.
            self._consumer = KafkaConsumer(
                *self._topics,
                bootstrap_servers=self._brokers,
                group_id=self._group_id,
                client_id=self._client_id,
                enable_auto_commit=False,
                auto_offset_reset="earliest",
                session_timeout_ms=self._session_timeout_ms,
            )
        return self._consumer

    def _fetch_blocking(self, max_records: int, timeout_ms: int) -> list[LogRecord]:
        try:
            consumer = self._ensure_consumer()
            polled = consumer.poll(timeout_ms=timeout_ms, max_records=max_records)
        except KafkaError as exc:
            raise EventLogError(f"Kafka poll failed: {exc}") from exc

        records: list[LogRecord] = []
        for batch in polled.values():
            for message in batch:
                key = message.key.decode("utf-8", errors="replace") if message.key else None
                records.append(
                    LogRecord(
                        topic=message.topic,
                        partition=message.partition,
                        offset=message.offset,
                        key=key,
                        value=message.value,
                    )
                )
        return records

    def _commit_blocking(self) -> None:
        if self._consumer is None:
            return
        try:
            self._consumer.commit()
        except KafkaError as exc:
            raise EventLogError(f"Kafka offset commit failed: {exc}") from exc

    def _rewind_blocking(self) -> None:
        if self._consumer is None:
            return
        try:
            for partition in self._consumer.assignment():
                committed = self._consumer.committed(partition)
                if committed is None:
                    self._consumer.seek_to_beginning(partition)
                else:
                    self._consumer.seek(partition, committed)
        except KafkaError as exc:
            raise EventLogError(f"Kafka rewind failed: {exc}") from exc

    async def fetch(self, *, max_records: int, timeout_ms: int) -> list[LogRecord]:
        return await asyncio.to_thread(self._fetch_blocking, max_records, timeout_ms)

    async def commit(self) -> None:
        await asyncio.to_thread(self._commit_blocking)

    async def rewind(self) -> None:
        await asyncio.to_thread(self._rewind_blocking)

    async def close(self) -> None:
        consumer, self._consumer = self._consumer, None
        if consumer is not None:
            await asyncio.to_thread(consumer.close)


class KafkaTopicAdmin:
    """Checks that the engagement topics exist, creating them when allowed."""

    def __init__(
        self,
        brokers: Sequence[str],
        *,
        client_id: str,
        num_partitions: int = 1,
        replication_factor: int = 1,
    ) -> None:
        self._brokers = list(brokers)
        self._client_id = client_id
        self._num_partitions = num_partitions
        self._replication_factor = replication_factor

    def _ensure_blocking(self, topics: Sequence[str]) -> None:
        try:
            admin = KafkaAdminClient(bootstrap_servers=self._brokers, client_id=self._client_id)
        except KafkaError as exc:
            raise EventLogError(f"Kafka admin unavailable: {exc}") from exc

        try:
            existing = set(admin.list_topics())
            missing = [topic for topic in topics if topic not in existing]
            if missing:
                logger.info("Creating Kafka topics: %s", ", ".join(missing))
                try:
                    admin.create_topics(
                        new_topics=[
                            NewTopic(
                                name=topic,
                                num_partitions=self._num_partitions,
                                replication_factor=self._replication_factor,
                            )
                            for topic in missing
                        ],
                        validate_only=False,
                    )
                except TopicAlreadyExistsError:
                    logger.debug("Topics were created concurrently: %s", missing)
        except KafkaError as exc:
            raise EventLogError(f"Kafka topic check failed: {exc}") from exc
        finally:
            admin.close()

    async def ensure_topics(self, topics: Sequence[str]) -> None:
        await asyncio.to_thread(self._ensure_blocking, list(topics))

    async def close(self) -> None:
        return None


__all__ = ["KafkaEventConsumer", "KafkaEventProducer", "KafkaTopicAdmin"]
