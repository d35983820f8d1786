"""
Key/Value Store Backends.

Shared TTL-scoped storage for ceremony challenges, authorization codes,
signing keysets and rate-limit counters. Two backends are provided:
- InMemoryKeyValueStore for single-instance deployments and tests
- RedisKeyValueStore for multi-instance deployments

Every backend guarantees that `pop` is an atomic get-and-delete and that
`incr_with_ttl` is an atomic increment, so single-use records can never be
consumed twice and counters never undercount under concurrency.

The in-process backend only works for a single instance; running more than
one replica requires Redis.
"""

from __future__ import annotations

import asyncio
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Optional

import structlog
from redis.asyncio import Redis
from redis.exceptions import RedisError

from warden.core.config import RedisSettings
from warden.errors import UpstreamUnavailable

logger = structlog.get_logger(__name__)


class KeyValueStore(ABC):
    """Abstract key/value store interface."""

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        pass

    @abstractmethod
    async def set(self, key: str, value: str, ex: Optional[int] = None) -> None:
        pass

    @abstractmethod
    async def pop(self, key: str) -> Optional[str]:
        """Atomically return and delete the value stored at `key`."""

    @abstractmethod
    async def delete(self, key: str) -> bool:
        pass

    @abstractmethod
    async def incr_with_ttl(self, key: str, ttl_seconds: int) -> int:
        """Atomically increment a counter, setting its TTL on creation."""

    async def purge_expired(self) -> int:
        """Drop expired entries. Backends with native expiry return 0."""
        return 0

    async def close(self) -> None:
        pass


class InMemoryKeyValueStore(KeyValueStore):
    """
    In-process store for a single instance, testing and development.
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._data: dict[str, str] = {}
        self._expiry: dict[str, float] = {}
        self._lock = asyncio.Lock()

    def _expired(self, key: str) -> bool:
        """Evict `key` if its TTL has elapsed. Caller holds the lock."""
        deadline = self._expiry.get(key)
        if deadline is not None and self._clock() >= deadline:
            self._data.pop(key, None)
            self._expiry.pop(key, None)
            return True
        return False

    async def get(self, key: str) -> Optional[str]:
        async with self._lock:
            self._expired(key)
            return self._data.get(key)

    async def set(self, key: str, value: str, ex: Optional[int] = None) -> None:
        async with self._lock:
            self._data[key] = value
            if ex:
                self._expiry[key] = self._clock() + ex
            else:
                self._expiry.pop(key, None)

    async def pop(self, key: str) -> Optional[str]:
        async with self._lock:
            if self._expired(key):
                return None
            self._expiry.pop(key, None)
            return self._data.pop(key, None)

    async def delete(self, key: str) -> bool:
        async with self._lock:
            self._expiry.pop(key, None)
            return self._data.pop(key, None) is not None

    async def incr_with_ttl(self, key: str, ttl_seconds: int) -> int:
        async with self._lock:
            self._expired(key)
            value = int(self._data.get(key, 0)) + 1
            self._data[key] = str(value)
            if value == 1:
                self._expiry[key] = self._clock() + ttl_seconds
            return value

    async def purge_expired(self) -> int:
        async with self._lock:
            now = self._clock()
            expired = [k for k, deadline in self._expiry.items() if now >= deadline]
            for key in expired:
                self._data.pop(key, None)
                self._expiry.pop(key, None)
            return len(expired)

    def __len__(self) -> int:
        return len(self._data)


# INCR then set the TTL only when the key was just created
_INCR_WITH_TTL_SCRIPT = """
local current = redis.call('INCR', KEYS[1])
if current == 1 then
    redis.call('EXPIRE', KEYS[1], ARGV[1])
end
return current
"""


class RedisKeyValueStore(KeyValueStore):
    """
    Store backed by redis-py's asyncio client.

    Any Redis failure is raised as UpstreamUnavailable so callers can decide
    between failing open and failing closed.
    """

    def __init__(
        self,
        url: str = "redis://localhost:6379/0",
        socket_timeout: float = 5.0,
        client: Optional[Any] = None,
    ) -> None:
        self.url = url
        self.socket_timeout = socket_timeout
        # Connections are opened lazily by the pool on first command
        self._client = client or Redis.from_url(
            url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._logger = logger.bind(backend="redis")

    async def get(self, key: str) -> Optional[str]:
        try:
            return await self._client.get(key)
        except RedisError as e:
            raise UpstreamUnavailable("redis", str(e)) from e

    async def set(self, key: str, value: str, ex: Optional[int] = None) -> None:
        try:
            await self._client.set(key, value, ex=ex)
        except RedisError as e:
            raise UpstreamUnavailable("redis", str(e)) from e

    async def pop(self, key: str) -> Optional[str]:
        try:
            return await self._client.getdel(key)
        except RedisError as e:
            raise UpstreamUnavailable("redis", str(e)) from e

    async def delete(self, key: str) -> bool:
        try:
            return bool(await self._client.delete(key))
        except RedisError as e:
            raise UpstreamUnavailable("redis", str(e)) from e

    async def incr_with_ttl(self, key: str, ttl_seconds: int) -> int:
        try:
            return int(await self._client.eval(_INCR_WITH_TTL_SCRIPT, 1, key, ttl_seconds))
        except RedisError as e:
            raise UpstreamUnavailable("redis", str(e)) from e

    async def close(self) -> None:
        await self._client.aclose()
        self._logger.info("Redis key/value store closed")


def create_kv_store(settings: RedisSettings) -> KeyValueStore:
    """Build the store selected by configuration."""
    if settings.url:
        return RedisKeyValueStore(url=settings.url, socket_timeout=settings.socket_timeout)

    logger.warning(
        "Using in-process key/value store; state is not shared between instances"
    )
    return InMemoryKeyValueStore()
