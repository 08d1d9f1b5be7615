"""Redis connection lifecycle and key layout for the engagement counters.

The API process and the reconciler worker each own exactly one
:class:`RedisConnection`, created at startup and closed at shutdown. Callers
ask it for a client on every operation; after a connection failure the object
stays in a cool-down window during which it reports itself unhealthy and
returns ``None`` instead of hammering an unreachable server.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from typing import Any

from redis.asyncio import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

logger = logging.getLogger(__name__)

_LIKE_COUNT_PREFIX = "like_count"
_LIKE_SET_PREFIX = "likes"
_SAVE_SET_PREFIX = "saves"

RedisFactory = Callable[[str], Any]


def like_count_key(quote_id: str) -> str:
    return f"{_LIKE_COUNT_PREFIX}:{quote_id}"


def like_set_key(user_id: str) -> str:
    return f"{_LIKE_SET_PREFIX}:{user_id}"


def save_set_key(user_id: str) -> str:
    return f"{_SAVE_SET_PREFIX}:{user_id}"


def membership_set_pattern(prefix: str) -> str:
    """Return a SCAN pattern matching every user set under ``prefix``."""

    return f"{prefix}:*"


def is_connection_error(exc: BaseException) -> bool:
    """Return ``True`` when ``exc`` means Redis could not be reached."""

    return isinstance(exc, (RedisConnectionError, RedisTimeoutError, OSError))


def _default_factory(url: str) -> Redis:
    return Redis.from_url(url, decode_responses=True, encoding="utf-8")


class RedisConnection:
    """Own a single Redis client and expose a health predicate.

    ``client()`` lazily connects (pinging before handing the client out) and
    refuses to retry until ``retry_backoff_seconds`` have elapsed since the
    last failure. ``mark_unavailable`` is called by the counter store whenever
    a command fails with a connection error so the next caller skips straight
    to the database fallback.
    """

    def __init__(
        self,
        url: str,
        *,
        retry_backoff_seconds: float = 30.0,
        factory: RedisFactory | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._url = url
        self._retry_backoff_seconds = retry_backoff_seconds
        self._factory = factory or _default_factory
        self._clock = clock
        self._client: Any | None = None
        self._unavailable_until: float | None = None
        self._lock = asyncio.Lock()

    def healthy(self) -> bool:
        """Return ``True`` unless a recent failure put the connection in cool-down."""

        if self._unavailable_until is None:
            return True
        return self._clock() >= self._unavailable_until

    async def client(self) -> Any | None:
        """Return a connected client, or ``None`` while Redis is unavailable."""

        if self._client is not None:
            return self._client
        if not self.healthy():
            return None

        async with self._lock:
            if self._client is not None:
                return self._client
            if not self.healthy():
                return None

            candidate = self._factory(self._url)
            try:
                await candidate.ping()
            except Exception as exc:  # noqa: BLE001 - classified below
                if not is_connection_error(exc):
                    raise
                logger.warning(
                    "Redis connection failed: %s. Counters fall back to the database "
                    "for %.0fs.",
                    exc,
                    self._retry_backoff_seconds,
                )
                self._unavailable_until = self._clock() + self._retry_backoff_seconds
                await self._close_quietly(candidate)
                return None

            self._client = candidate
            self._unavailable_until = None
            logger.info("Redis connection established successfully")
            return self._client

    async def mark_unavailable(self, exc: BaseException | None = None) -> None:
        """Drop the current client and start the cool-down window."""

        if exc is not None:
            logger.warning("Redis command failed (%s); entering cool-down", exc)
        self._unavailable_until = self._clock() + self._retry_backoff_seconds
        client, self._client = self._client, None
        if client is not None:
            await self._close_quietly(client)

    async def close(self) -> None:
        """Close the client gracefully and reset the cool-down state."""

        client, self._client = self._client, None
        self._unavailable_until = None
        if client is not None:
            await client.aclose()

    @staticmethod
    async def _close_quietly(client: Any) -> None:
        try:
            await client.aclose()
        except Exception as exc:  # noqa: BLE001 - the client is already broken
            logger.debug("Ignoring error while closing Redis client: %s", exc)


__all__ = [
    "RedisConnection",
    "is_connection_error",
    "like_count_key",
    "like_set_key",
    "membership_set_pattern",
    "save_set_key",
]
