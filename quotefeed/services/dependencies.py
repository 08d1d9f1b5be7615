"""FastAPI dependency wiring for the engagement services.

Long-lived resources (session factory, counter store, event publisher) are
created once by the application lifespan and parked on ``app.state``; these
factories only resolve them and build the per-request services, which keeps
the service modules free of web-layer concerns.
"""

from __future__ import annotations

from collections.abc import AsyncIterator

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from quotefeed.services.counter_store import CounterStore
from quotefeed.services.engagement_service import EngagementService
from quotefeed.services.event_publisher import EventPublisher
from quotefeed.services.feed_service import FeedService
from quotefeed.settings import AppSettings, get_settings


def get_session_factory(request: Request) -> async_sessionmaker[AsyncSession]:
    return request.app.state.session_factory


async def get_db(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> AsyncIterator[AsyncSession]:
    """Yield a request-scoped session, rolling back if the handler raised."""

    async with session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


def get_counter_store(request: Request) -> CounterStore:
    return request.app.state.counter_store


def get_event_publisher(request: Request) -> EventPublisher:
    return request.app.state.event_publisher


def get_optional_user_id(
    x_user_id: str | None = Header(default=None, alias="X-User-Id"),
) -> str | None:
    """Return the caller identity set by the auth gateway, if any."""

    if x_user_id is None:
        return None
    user_id = x_user_id.strip()
    return user_id or None


def get_current_user_id(user_id: str | None = Depends(get_optional_user_id)) -> str:
    if user_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
        )
    return user_id


def get_engagement_service(
    session: AsyncSession = Depends(get_db),
    counters: CounterStore = Depends(get_counter_store),
    publisher: EventPublisher = Depends(get_event_publisher),
) -> EngagementService:
    return EngagementService(session, counters, publisher)


def get_feed_service(
    session: AsyncSession = Depends(get_db),
    counters: CounterStore = Depends(get_counter_store),
    settings: AppSettings = Depends(get_settings),
) -> FeedService:
    return FeedService(session, counters, default_limit=settings.feed_default_limit)


__all__ = [
    "get_counter_store",
    "get_current_user_id",
    "get_db",
    "get_engagement_service",
    "get_event_publisher",
    "get_feed_service",
    "get_optional_user_id",
    "get_session_factory",
]
