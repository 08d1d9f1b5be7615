"""Engagement services: counter store, publisher, reconciler, feed and write path."""

from quotefeed.services.counter_store import CounterStore, CounterStoreUnavailable
from quotefeed.services.engagement_service import (
    EngagementService,
    EngagementUnavailableError,
    QuoteNotFoundError,
)
from quotefeed.services.event_publisher import EventPublisher
from quotefeed.services.feed_service import FeedService, InvalidCursorError
from quotefeed.services.reconciler import EventReconciler, ReconcilerStartupError
from quotefeed.services.sweeper import EngagementSweeper

__all__ = [
    "CounterStore",
    "CounterStoreUnavailable",
    "EngagementService",
    "EngagementSweeper",
    "EngagementUnavailableError",
    "EventPublisher",
    "EventReconciler",
    "FeedService",
    "InvalidCursorError",
    "QuoteNotFoundError",
    "ReconcilerStartupError",
]
