"""Engagement event log: protocols plus the Kafka-backed implementation."""

from quotefeed.events.log import (
    EventConsumer,
    EventLogError,
    EventProducer,
    LogRecord,
    TopicAdmin,
)

__all__ = [
    "EventConsumer",
    "EventLogError",
    "EventProducer",
    "LogRecord",
    "TopicAdmin",
]
