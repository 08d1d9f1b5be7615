"""Startup warmup for the database pool and the Redis connection.

Both steps are best-effort: a failed warmup is logged and the API still
starts, because every request path already degrades when a store is down.
"""

from __future__ import annotations

import logging
import time

from redis.exceptions import RedisError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from quotefeed.cache import RedisConnection

logger = logging.getLogger(__name__)


async def warmup_database(engine: AsyncEngine) -> bool:
    """Open a pooled connection and issue ``SELECT 1``."""

    start = time.time()
    try:
        async with engine.begin() as conn:
            await conn.execute(text("SELECT 1"))
    except (SQLAlchemyError, OSError) as exc:
        logger.warning("Database warmup failed: %s", exc)
        return False

    elapsed = (time.time() - start) * 1000
    logger.info("Database connection warmed up (%.0fms)", elapsed)
    return True


async def warmup_redis(connection: RedisConnection) -> bool:
    """Connect to Redis ahead of the first request.

    ``RedisConnection.client`` pings before returning, so a non-``None``
    client means the server answered.
    """

    start = time.time()
    try:
        client = await connection.client()
    except RedisError as exc:
        logger.warning("Redis warmup failed: %s", exc)
        return False
    if client is None:
        logger.info("Redis warmup skipped (connection unavailable)")
        return False

    elapsed = (time.time() - start) * 1000
    logger.info("Redis connection warmed up (%.0fms)", elapsed)
    return True


async def warmup_all(engine: AsyncEngine, connection: RedisConnection) -> dict[str, bool]:
    start = time.time()
    logger.info("Starting warmup...")

    results = {
        "database": await warmup_database(engine),
        "redis": await warmup_redis(connection),
    }

    elapsed = (time.time() - start) * 1000
    logger.info("Warmup complete (%.0fms)", elapsed)
    return results


__all__ = ["warmup_all", "warmup_database", "warmup_redis"]
