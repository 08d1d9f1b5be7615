"""Redis-backed like counters and per-user membership sets.

The counter store is an accelerator, never the system of record.  Any Redis
failure surfaces as :class:`CounterStoreUnavailable` so callers can fall back
to :class:`~quotefeed.db.repositories.EngagementRepository`; nothing else
escapes this module.

Key layout (see :mod:`quotefeed.cache`):

* ``like_count:{quote_id}`` - integer, no expiry
* ``likes:{user_id}`` / ``saves:{user_id}`` - sets of quote ids, no expiry

A user set is only authoritative once it has been seeded from the database.
Seeding adds :data:`SEEDED_MARKER` next to the quote ids, so a seeded set that
the user emptied still exists and still answers "not a member".  Sets without
the marker are treated as unknown by every read and refused by every write.
Counters follow the same rule: a missing counter is unknown, never zero, and
is not incremented or decremented until it has been seeded.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Iterable, Mapping, Sequence
from typing import Any

from redis.exceptions import RedisError

from quotefeed.cache import (
    RedisConnection,
    is_connection_error,
    like_count_key,
    like_set_key,
    membership_set_pattern,
    save_set_key,
)
from quotefeed.schemas.events import EngagementKind

logger = logging.getLogger(__name__)

SEEDED_MARKER = "__seeded__"

# Keys the database wrote around while Redis was down; more than this and the
# sweep has to repair the rest.
MAX_STALE_KEYS = 10_000

INCREMENT_EXISTING_LUA = """
if redis.call('EXISTS', KEYS[1]) == 0 then
    return false
end
return redis.call('INCR', KEYS[1])
"""

# Decrement that never goes below zero and leaves an unseeded counter alone.
FLOOR_DECREMENT_LUA = """
local raw = redis.call('GET', KEYS[1])
if not raw then
    return false
end
local current = tonumber(raw) or 0
if current <= 0 then
    redis.call('SET', KEYS[1], 0)
    return 0
end
return redis.call('DECR', KEYS[1])
"""

# ARGV: marker, 'add' or 'remove', quote id.  Returns -1 for an unseeded set.
MOVE_MEMBER_LUA = """
if redis.call('SISMEMBER', KEYS[1], ARGV[1]) == 0 then
    return -1
end
if ARGV[2] == 'add' then
    return redis.call('SADD', KEYS[1], ARGV[3])
end
return redis.call('SREM', KEYS[1], ARGV[3])
"""

# ARGV: marker followed by quote ids.  A set that is already seeded wins.
SEED_UNSEEDED_LUA = """
if redis.call('SISMEMBER', KEYS[1], ARGV[1]) == 1 then
    return 0
end
redis.call('DEL', KEYS[1])
redis.call('SADD', KEYS[1], unpack(ARGV))
return 1
"""


class CounterStoreUnavailable(Exception):
    """Raised when Redis cannot answer; distinct from a zero count."""


def membership_key(kind: EngagementKind, user_id: str) -> str:
    if kind is EngagementKind.LIKE:
        return like_set_key(user_id)
    return save_set_key(user_id)


class CounterStore:
    """Counter and membership primitives over a :class:`RedisConnection`."""

    def __init__(self, connection: RedisConnection) -> None:
        self._connection = connection
        self._stale_keys: set[str] = set()

    def available(self) -> bool:
        """Cheap health check used to pick the fast path before issuing commands."""

        return self._connection.healthy()

    def mark_stale(self, kind: EngagementKind, user_id: str, quote_id: str) -> None:
        """Remember cache keys that a database-only write has made obsolete.

        They are deleted before the next command that reaches Redis, so the
        following reads recompute them from the database.
        """

        keys = {membership_key(kind, user_id)}
        if kind is EngagementKind.LIKE:
            keys.add(like_count_key(quote_id))
        fresh = keys - self._stale_keys
        if len(self._stale_keys) + len(fresh) > MAX_STALE_KEYS:
            logger.warning(
                "Too many cache keys written around the outage; %s left for the sweep",
                ", ".join(sorted(fresh)),
            )
            return
        self._stale_keys.update(fresh)

    async def _client(self) -> Any:
        client = await self._connection.client()
        if client is None:
            raise CounterStoreUnavailable("Redis connection unavailable")
        if self._stale_keys:
            await self._invalidate(client)
        return client

    async def _invalidate(self, client: Any) -> None:
        keys = sorted(self._stale_keys)
        try:
            await client.delete(*keys)
        except (RedisError, OSError) as exc:
            raise await self._fail(exc, "invalidate") from exc
        self._stale_keys.difference_update(keys)
        logger.info("Dropped %s cache keys written around a Redis outage", len(keys))

    async def _fail(self, exc: Exception, operation: str) -> CounterStoreUnavailable:
        if is_connection_error(exc):
            await self._connection.mark_unavailable(exc)
        else:
            logger.warning("Redis %s failed: %s", operation, exc)
        return CounterStoreUnavailable(f"Redis {operation} failed: {exc}")

    async def like_count(self, quote_id: str) -> int | None:
        """Return the cached count, ``None`` when the counter was never written."""

        client = await self._client()
        try:
            raw = await client.get(like_count_key(quote_id))
        except (RedisError, OSError) as exc:
            raise await self._fail(exc, "get") from exc
        return _parse_count(raw)

    async def increment_count(self, quote_id: str) -> int | None:
        """Increment a seeded counter; ``None`` when the counter is missing."""

        return await self._run_counter_script(INCREMENT_EXISTING_LUA, quote_id, "incr")

    async def decrement_count(self, quote_id: str) -> int | None:
        """Decrement with floor-at-zero semantics in a single server-side step.

        Returns ``None`` and writes nothing when the counter is missing.
        """

        return await self._run_counter_script(FLOOR_DECREMENT_LUA, quote_id, "decrement")

    async def _run_counter_script(self, source: str, quote_id: str, operation: str) -> int | None:
        client = await self._client()
        try:
            script = client.register_script(source)
            value = await script(keys=[like_count_key(quote_id)])
        except (RedisError, OSError) as exc:
            raise await self._fail(exc, operation) from exc
        return None if value is None else int(value)

    async def is_member(self, kind: EngagementKind, user_id: str, quote_id: str) -> bool | None:
        """``None`` when the user's set has not been seeded."""

        flags = await self.bulk_membership(kind, user_id, [quote_id])
        if flags is None:
            return None
        return quote_id in flags

    async def add_member(self, kind: EngagementKind, user_id: str, quote_id: str) -> bool | None:
        """Add ``quote_id`` to a seeded set.

        ``False`` when it was already present, ``None`` when the set has not
        been seeded and nothing was written.
        """

        return await self._move_member(kind, user_id, quote_id, "add")

    async def remove_member(
        self, kind: EngagementKind, user_id: str, quote_id: str
    ) -> bool | None:
        return await self._move_member(kind, user_id, quote_id, "remove")

    async def _move_member(
        self, kind: EngagementKind, user_id: str, quote_id: str, operation: str
    ) -> bool | None:
        client = await self._client()
        try:
            script = client.register_script(MOVE_MEMBER_LUA)
            changed = await script(
                keys=[membership_key(kind, user_id)],
                args=[SEEDED_MARKER, operation, quote_id],
            )
        except (RedisError, OSError) as exc:
            raise await self._fail(exc, operation) from exc
        if int(changed) < 0:
            return None
        return int(changed) == 1

    async def bulk_read(self, quote_ids: Sequence[str]) -> dict[str, int | None]:
        """Read every counter for a page in one ``MGET``; absent counters map to ``None``."""

        if not quote_ids:
            return {}
        client = await self._client()
        try:
            values = await client.mget([like_count_key(quote_id) for quote_id in quote_ids])
        except (RedisError, OSError) as exc:
            raise await self._fail(exc, "mget") from exc
        return {quote_id: _parse_count(raw) for quote_id, raw in zip(quote_ids, values)}

    async def bulk_membership(
        self, kind: EngagementKind, user_id: str, quote_ids: Sequence[str]
    ) -> set[str] | None:
        """Return the members among ``quote_ids``.

        ``None`` means the user's set has not been seeded, so callers treat
        every flag as unknown.  The marker rides along in the same
        ``SMISMEMBER`` so the answer comes from one snapshot of the set.
        """

        if not quote_ids:
            return set()
        client = await self._client()
        try:
            flags = await client.smismember(
                membership_key(kind, user_id), [SEEDED_MARKER, *quote_ids]
            )
        except (RedisError, OSError) as exc:
            raise await self._fail(exc, "smismember") from exc
        seeded, *member_flags = flags
        if not int(seeded):
            return None
        return {quote_id for quote_id, flag in zip(quote_ids, member_flags) if int(flag)}

    async def members(self, kind: EngagementKind, user_id: str) -> set[str] | None:
        """Return the whole set, ``None`` when it has not been seeded."""

        client = await self._client()
        try:
            values = set(await client.smembers(membership_key(kind, user_id)))
        except (RedisError, OSError) as exc:
            raise await self._fail(exc, "smembers") from exc
        if SEEDED_MARKER not in values:
            return None
        values.discard(SEEDED_MARKER)
        return values

    async def seed_counts(self, counts: Mapping[str, int], *, overwrite: bool = False) -> None:
        """Write counters computed from the database.

        Without ``overwrite`` existing keys win (``SET NX``), so a seed never
        clobbers increments that raced ahead of the database read.
        """

        if not counts:
            return
        client = await self._client()
        try:
            async with client.pipeline(transaction=False) as pipe:
                for quote_id, count in counts.items():
                    pipe.set(like_count_key(quote_id), max(int(count), 0), nx=not overwrite)
                await pipe.execute()
        except (RedisError, OSError) as exc:
            raise await self._fail(exc, "seed") from exc

    async def seed_members(
        self, kind: EngagementKind, user_id: str, quote_ids: Iterable[str], *, replace: bool = False
    ) -> bool:
        """Mark the user's set as seeded with ``quote_ids``.

        Without ``replace`` a set that is already seeded is left untouched, so
        mutations that raced ahead of the database read survive.  Returns
        whether the set was written.
        """

        key = membership_key(kind, user_id)
        values = [SEEDED_MARKER, *quote_ids]
        client = await self._client()
        try:
            if not replace:
                script = client.register_script(SEED_UNSEEDED_LUA)
                return int(await script(keys=[key], args=values)) == 1
            async with client.pipeline(transaction=True) as pipe:
                pipe.delete(key)
                pipe.sadd(key, *values)
                await pipe.execute()
        except (RedisError, OSError) as exc:
            raise await self._fail(exc, "seed members") from exc
        return True

    async def clear_members(self, kind: EngagementKind, user_id: str) -> None:
        """Forget a user's set entirely; the next read reseeds it."""

        client = await self._client()
        try:
            await client.delete(membership_key(kind, user_id))
        except (RedisError, OSError) as exc:
            raise await self._fail(exc, "delete") from exc

    async def reset_quote(self, quote_id: str) -> None:
        """Drop a counter so the next read recomputes it from the database."""

        client = await self._client()
        try:
            await client.delete(like_count_key(quote_id))
        except (RedisError, OSError) as exc:
            raise await self._fail(exc, "delete") from exc

    async def iter_member_users(self, kind: EngagementKind) -> AsyncIterator[str]:
        """Yield the user ids that currently own a set of ``kind``."""

        prefix = membership_key(kind, "").rstrip(":")
        client = await self._client()
        try:
            async for key in client.scan_iter(match=membership_set_pattern(prefix)):
                yield key.split(":", 1)[1]
        except (RedisError, OSError) as exc:
            raise await self._fail(exc, "scan") from exc


def _parse_count(raw: Any) -> int | None:
    if raw is None:
        return None
    try:
        return max(int(raw), 0)
    except (TypeError, ValueError):
        logger.warning("Ignoring non-integer like counter value %r", raw)
        return None


__all__ = ["CounterStore", "CounterStoreUnavailable", "SEEDED_MARKER", "membership_key"]
