"""Dict-backed stand-in for ``redis.asyncio.Redis`` (``decode_responses=True``).

Only the commands and Lua scripts the counter store issues are implemented.
Setting ``down = True`` makes every command raise
``redis.exceptions.ConnectionError`` the way a real client does when the
server goes away.
"""

from __future__ import annotations

import fnmatch
from collections.abc import AsyncIterator, Iterable
from typing import Any

from redis.exceptions import ConnectionError as RedisConnectionError

from quotefeed.services import counter_store


class FakeScript:
    """Python renditions of the counter store's Lua scripts, chosen by source."""

    def __init__(self, redis: FakeRedis, source: str) -> None:
        self._redis = redis
        handlers = {
            counter_store.INCREMENT_EXISTING_LUA: self._increment_existing,
            counter_store.FLOOR_DECREMENT_LUA: self._floor_decrement,
            counter_store.MOVE_MEMBER_LUA: self._move_member,
            counter_store.SEED_UNSEEDED_LUA: self._seed_unseeded,
        }
        self._handler = handlers[source]

    async def __call__(
        self, keys: list[str] | None = None, args: Iterable[Any] | None = None
    ) -> Any:
        self._redis._record("evalsha")
        (key,) = keys or []
        return self._handler(key, [str(arg) for arg in args or []])

    def _increment_existing(self, key: str, args: list[str]) -> int | None:
        if key not in self._redis.strings:
            return None
        value = int(self._redis.strings[key]) + 1
        self._redis.strings[key] = str(value)
        return value

    def _floor_decrement(self, key: str, args: list[str]) -> int | None:
        if key not in self._redis.strings:
            return None
        current = int(self._redis.strings[key])
        if current <= 0:
            self._redis.strings[key] = "0"
            return 0
        self._redis.strings[key] = str(current - 1)
        return current - 1

    def _move_member(self, key: str, args: list[str]) -> int:
        marker, operation, member = args
        target = self._redis.sets.get(key, set())
        if marker not in target:
            return -1
        present = member in target
        if operation == "add":
            target.add(member)
            return int(not present)
        target.discard(member)
        return int(present)

    def _seed_unseeded(self, key: str, args: list[str]) -> int:
        marker = args[0]
        if marker in self._redis.sets.get(key, set()):
            return 0
        self._redis.sets[key] = set(args)
        return 1


class FakePipeline:
    def __init__(self, redis: FakeRedis) -> None:
        self._redis = redis
        self._commands: list[tuple[str, tuple[Any, ...], dict[str, Any]]] = []

    async def __aenter__(self) -> FakePipeline:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        self._commands.clear()

    def __getattr__(self, name: str):
        def queue(*args: Any, **kwargs: Any) -> FakePipeline:
            self._commands.append((name, args, kwargs))
            return self

        return queue

    async def execute(self) -> list[Any]:
        self._redis._check()
        results = []
        for name, args, kwargs in self._commands:
            results.append(await getattr(self._redis, name)(*args, **kwargs))
        self._commands.clear()
        return results


class FakeRedis:
    def __init__(self) -> None:
        self.strings: dict[str, str] = {}
        self.sets: dict[str, set[str]] = {}
        self.down = False
        self.closed = False
        self.commands: list[str] = []

    def _check(self) -> None:
        if self.down:
            raise RedisConnectionError("Connection refused")

    def _record(self, name: str) -> None:
        self._check()
        self.commands.append(name)

    async def ping(self) -> bool:
        self._record("ping")
        return True

    async def aclose(self) -> None:
        self.closed = True

    async def get(self, key: str) -> str | None:
        self._record("get")
        return self.strings.get(key)

    async def mget(self, keys: list[str]) -> list[str | None]:
        self._record("mget")
        return [self.strings.get(key) for key in keys]

    async def set(self, key: str, value: Any, nx: bool = False) -> bool | None:
        self._record("set")
        if nx and key in self.strings:
            return None
        self.strings[key] = str(value)
        return True

    async def delete(self, *keys: str) -> int:
        self._record("delete")
        removed = 0
        for key in keys:
            if self.strings.pop(key, None) is not None:
                removed += 1
            if self.sets.pop(key, None) is not None:
                removed += 1
        return removed

    async def sadd(self, key: str, *members: str) -> int:
        self._record("sadd")
        target = self.sets.setdefault(key, set())
        before = len(target)
        target.update(members)
        return len(target) - before

    async def smismember(self, key: str, members: list[str]) -> list[int]:
        self._record("smismember")
        target = self.sets.get(key, set())
        return [int(member in target) for member in members]

    async def smembers(self, key: str) -> set[str]:
        self._record("smembers")
        return set(self.sets.get(key, set()))

    def register_script(self, script: str) -> FakeScript:
        return FakeScript(self, script)

    def pipeline(self, transaction: bool = True) -> FakePipeline:
        return FakePipeline(self)

    async def scan_iter(self, match: str | None = None) -> AsyncIterator[str]:
        self._record("scan")
        for key in list(self.strings) + list(self.sets):
            if match is None or fnmatch.fnmatchcase(key, match):
                yield key
