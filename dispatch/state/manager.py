"""Redis-based state manager shared by the Redis store backend."""

from __future__ import annotations

import json
from typing import Any, Callable
from uuid import UUID

import redis.asyncio as redis
from redis.asyncio.client import Pipeline
from redis.exceptions import WatchError

from dispatch.config import get_settings
from dispatch.errors import ConcurrentModificationError
from dispatch.utils.logging import get_logger

logger = get_logger(__name__)

# Deletes KEYS[1] only while it still holds ARGV[1]
_COMPARE_AND_DELETE = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
    return redis.call('DEL', KEYS[1])
end
return 0
"""

# Sets KEYS[2] to ARGV[1] (NX) only while every field named in ARGV[2..] is
# true in the JSON document at KEYS[1]
_SET_IF_FLAGS = """
local raw = redis.call('GET', KEYS[1])
if not raw then
    return 0
end
local doc = cjson.decode(raw)
for i = 2, #ARGV do
    if doc[ARGV[i]] ~= true then
        return 0
    end
end
if redis.call('SET', KEYS[2], ARGV[1], 'NX') then
    return 1
end
return 0
"""


def _encode(value: Any) -> Any:
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    if isinstance(value, UUID):
        return str(value)
    return value


def _decode(value: Any) -> Any:
    if value is None:
        return None
    try:
        return json.loads(value)
    except (json.JSONDecodeError, TypeError):
        return value


class StateManager:
    """Centralized state management using Redis."""

    def __init__(self, redis_url: str | None = None, max_watch_retries: int = 5) -> None:
        settings = get_settings()
        self.redis_client: redis.Redis | None = None
        self.redis_url = redis_url or settings.redis_url
        self.max_watch_retries = max_watch_retries

    async def connect(self) -> None:
        """Establish Redis connection."""
        if self.redis_client is None:
            self.redis_client = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
            logger.info("redis_connected", url=self.redis_url)

    async def disconnect(self) -> None:
        """Close Redis connection."""
        if self.redis_client:
            await self.redis_client.aclose()
            self.redis_client = None
            logger.info("redis_disconnected")

    async def _client(self) -> redis.Redis:
        if not self.redis_client:
            await self.connect()
        return self.redis_client

    async def set(
        self,
        key: str,
        value: Any,
        ttl: int | None = None,
    ) -> None:
        """Set a value in Redis with optional TTL."""
        client = await self._client()
        await client.set(key, _encode(value), ex=ttl)
        logger.debug("state_set", key=key, ttl=ttl)

    async def set_if_absent(self, key: str, value: Any, ttl: int | None = None) -> bool:
        """SET NX; True when this call created the key."""
        client = await self._client()
        return bool(await client.set(key, _encode(value), ex=ttl, nx=True))

    async def set_if_absent_while(
        self, key: str, value: Any, document_key: str, flags: list[str]
    ) -> bool:
        """SET NX that only applies while the named flags are true in document_key."""
        client = await self._client()
        created = await client.eval(_SET_IF_FLAGS, 2, document_key, key, _encode(value), *flags)
        return bool(created)

    async def get(self, key: str) -> Any:
        """Get a value from Redis."""
        client = await self._client()
        return _decode(await client.get(key))

    async def mget(self, keys: list[str]) -> list[Any]:
        """Get several values in one round trip."""
        if not keys:
            return []
        client = await self._client()
        return [_decode(value) for value in await client.mget(keys)]

    async def delete(self, key: str) -> None:
        """Delete a key from Redis."""
        client = await self._client()
        await client.delete(key)
        logger.debug("state_deleted", key=key)

    async def compare_and_delete(self, key: str, expected: Any) -> bool:
        """Delete key only if it still holds expected."""
        client = await self._client()
        return bool(await client.eval(_COMPARE_AND_DELETE, 1, key, _encode(expected)))

    async def update_json(
        self,
        key: str,
        mutate: Callable[[Any], Any],
        on_commit: Callable[[Pipeline, Any, Any], None] | None = None,
        expect: dict[str, Any] | None = None,
    ) -> Any:
        """Read-modify-write a JSON value under WATCH.

        mutate receives the current decoded value (or None) and returns the
        new one; it may raise to abort. on_commit can queue extra commands in
        the same MULTI block. expect maps other keys to the values they must
        hold; they are watched too, and when one differs nothing is written
        and None is returned. Retries when another writer touches a key.
        """
        client = await self._client()
        expect = expect or {}

        async with client.pipeline(transaction=True) as pipe:
            for attempt in range(self.max_watch_retries):
                try:
                    await pipe.watch(key, *expect)
                    for other, value in expect.items():
                        if await pipe.get(other) != _encode(value):
                            await pipe.unwatch()
                            return None
                    current = _decode(await pipe.get(key))
                    new = mutate(current)

                    pipe.multi()
                    pipe.set(key, _encode(new))
                    if on_commit is not None:
                        on_commit(pipe, current, new)
                    await pipe.execute()
                    return new

                except WatchError:
                    logger.debug("state_watch_retry", key=key, attempt=attempt + 1)
                    continue

        raise ConcurrentModificationError(
            f"Gave up updating {key} after {self.max_watch_retries} attempts",
            context={"key": key},
        )

    async def sadd(self, key: str, *members: str) -> None:
        """Add members to a set."""
        client = await self._client()
        await client.sadd(key, *members)

    async def smembers(self, key: str) -> set[str]:
        """Get all members of a set."""
        client = await self._client()
        return set(await client.smembers(key))

    async def rpush(self, key: str, value: Any) -> None:
        """Append to a list."""
        client = await self._client()
        await client.rpush(key, _encode(value))

    async def lrange(self, key: str, start: int = 0, end: int = -1) -> list[Any]:
        """Get a slice of a list."""
        client = await self._client()
        return [_decode(value) for value in await client.lrange(key, start, end)]

    async def zadd(
        self,
        key: str,
        mapping: dict[str, float],
    ) -> None:
        """Add members to a sorted set."""
        client = await self._client()
        await client.zadd(key, mapping)

    async def zrangebyscore(
        self,
        key: str,
        min_score: float | str = "-inf",
        max_score: float | str = "+inf",
    ) -> list[str]:
        """Get sorted-set members within a score range."""
        client = await self._client()
        return await client.zrangebyscore(key, min_score, max_score)

