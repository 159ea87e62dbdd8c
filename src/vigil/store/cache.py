"""
Key-value cache used for counters, cooldown markers, blacklists and
metric history.

RedisCache is the production adapter. MemoryCache keeps the same
semantics in-process and takes an injectable clock so TTL expiry can be
driven deterministically.
"""

import logging
import time
from typing import Any, Callable, Optional, Protocol, Union

import redis.asyncio as redis

logger = logging.getLogger(__name__)

Value = Union[str, int, float]


class CacheStore(Protocol):
    """Operations the pipeline needs from a cache. TTLs are in seconds."""

    async def get(self, key: str) -> Optional[str]: ...

    async def set(self, key: str, value: Value, ttl: Optional[int] = None) -> None: ...

    async def set_if_absent(self, key: str, value: Value, ttl: int) -> bool: ...

    async def exists(self, key: str) -> bool: ...

    async def delete(self, *keys: str) -> int: ...

    async def incr(self, key: str, amount: int = 1) -> int: ...

    async def incrbyfloat(self, key: str, amount: float) -> float: ...

    async def expire(self, key: str, ttl: int) -> bool: ...

    async def lpush(self, key: str, *values: Value) -> int: ...

    async def ltrim(self, key: str, start: int, stop: int) -> None: ...

    async def lrange(self, key: str, start: int, stop: int) -> list[str]: ...

    async def sadd(self, key: str, *members: Value) -> int: ...

    async def sismember(self, key: str, member: Value) -> bool: ...

    async def scard(self, key: str) -> int: ...

    async def ping(self) -> bool: ...

    async def close(self) -> None: ...


class RedisCache:
    """CacheStore backed by redis.asyncio."""

    def __init__(self, client: redis.Redis):
        self._redis = client

    @classmethod
    def from_url(cls, url: str, timeout: float = 5.0) -> "RedisCache":
        """
        Build a client with socket timeouts so no call blocks indefinitely.

        Args:
            url: Redis connection URL
            timeout: Connect and per-command timeout in seconds
        """
        client = redis.from_url(
            url,
            decode_responses=True,
            socket_timeout=timeout,
            socket_connect_timeout=timeout,
        )
        return cls(client)

    async def get(self, key: str) -> Optional[str]:
        return await self._redis.get(key)

    async def set(self, key: str, value: Value, ttl: Optional[int] = None) -> None:
        await self._redis.set(key, value, ex=ttl)

    async def set_if_absent(self, key: str, value: Value, ttl: int) -> bool:
        # SET NX EX is a single atomic check-and-set
        return bool(await self._redis.set(key, value, ex=ttl, nx=True))

    async def exists(self, key: str) -> bool:
        return bool(await self._redis.exists(key))

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return await self._redis.delete(*keys)

    async def incr(self, key: str, amount: int = 1) -> int:
        return await self._redis.incr(key, amount)

    async def incrbyfloat(self, key: str, amount: float) -> float:
        return float(await self._redis.incrbyfloat(key, amount))

    async def expire(self, key: str, ttl: int) -> bool:
        return bool(await self._redis.expire(key, ttl))

    async def lpush(self, key: str, *values: Value) -> int:
        return await self._redis.lpush(key, *values)

    async def ltrim(self, key: str, start: int, stop: int) -> None:
        await self._redis.ltrim(key, start, stop)

    async def lrange(self, key: str, start: int, stop: int) -> list[str]:
        return list(await self._redis.lrange(key, start, stop))

    async def sadd(self, key: str, *members: Value) -> int:
        if not members:
            return 0
        return await self._redis.sadd(key, *members)

    async def sismember(self, key: str, member: Value) -> bool:
        return bool(await self._redis.sismember(key, member))

    async def scard(self, key: str) -> int:
        return await self._redis.scard(key)

    async def ping(self) -> bool:
        try:
            return bool(await self._redis.ping())
        except redis.RedisError as e:
            logger.warning(f"Redis ping failed: {e}")
            return False

    async def close(self) -> None:
        await self._redis.aclose()


class MemoryCache:
    """
    In-process CacheStore.

    Every operation completes without awaiting, so each call is atomic
    with respect to other coroutines on the same event loop.
    """

    def __init__(self, clock: Optional[Callable[[], float]] = None):
        self._clock = clock or time.monotonic
        self._data: dict[str, Any] = {}
        self._expiry: dict[str, float] = {}

    def _alive(self, key: str) -> bool:
        expires_at = self._expiry.get(key)
        if expires_at is not None and self._clock() >= expires_at:
            self._data.pop(key, None)
            self._expiry.pop(key, None)
        return key in self._data

    def _put(self, key: str, value: Any, ttl: Optional[int]) -> None:
        self._data[key] = value
        if ttl is None:
            self._expiry.pop(key, None)
        else:
            self._expiry[key] = self._clock() + ttl

    def _typed(self, key: str, kind: type) -> Any:
        if not self._alive(key):
            return None
        value = self._data[key]
        if not isinstance(value, kind):
            raise TypeError(f"WRONGTYPE operation against key {key!r}")
        return value

    async def get(self, key: str) -> Optional[str]:
        return self._typed(key, str)

    async def set(self, key: str, value: Value, ttl: Optional[int] = None) -> None:
        self._put(key, str(value), ttl)

    async def set_if_absent(self, key: str, value: Value, ttl: int) -> bool:
        if self._alive(key):
            return False
        self._put(key, str(value), ttl)
        return True

    async def exists(self, key: str) -> bool:
        return self._alive(key)

    async def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if self._alive(key):
                removed += 1
            self._data.pop(key, None)
            self._expiry.pop(key, None)
        return removed

    async def incr(self, key: str, amount: int = 1) -> int:
        current = int(self._typed(key, str) or 0) + amount
        self._data[key] = str(current)
        return current

    async def incrbyfloat(self, key: str, amount: float) -> float:
        current = float(self._typed(key, str) or 0.0) + amount
        self._data[key] = repr(current)
        return current

    async def expire(self, key: str, ttl: int) -> bool:
        if not self._alive(key):
            return False
        self._expiry[key] = self._clock() + ttl
        return True

    async def lpush(self, key: str, *values: Value) -> int:
        items = self._typed(key, list)
        if items is None:
            items = []
            self._data[key] = items
        for value in values:
            items.insert(0, str(value))
        return len(items)

    async def ltrim(self, key: str, start: int, stop: int) -> None:
        items = self._typed(key, list)
        if items is None:
            return
        stop = len(items) if stop == -1 else stop + 1
        self._data[key] = items[start:stop]

    async def lrange(self, key: str, start: int, stop: int) -> list[str]:
        items = self._typed(key, list) or []
        stop = len(items) if stop == -1 else stop + 1
        return list(items[start:stop])

    async def sadd(self, key: str, *members: Value) -> int:
        members_set = self._typed(key, set)
        if members_set is None:
            members_set = set()
            self._data[key] = members_set
        before = len(members_set)
        members_set.update(str(m) for m in members)
        return len(members_set) - before

    async def sismember(self, key: str, member: Value) -> bool:
        members_set = self._typed(key, set)
        return members_set is not None and str(member) in members_set

    async def scard(self, key: str) -> int:
        members_set = self._typed(key, set)
        return len(members_set) if members_set else 0

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        self._data.clear()
        self._expiry.clear()
