"""Shared expiring key-value store.

Every stateful subsystem (sessions, partial transactions, debounce markers,
rate-limit counters, the sweep lock) lives in one Redis instance under its own
key prefix. This module is the only place that talks to the Redis client;
callers see a small async API and a single error type.
"""

import asyncio
import re

import redis.asyncio as redis_async
from redis.exceptions import RedisError

from catatkas.logging_config import get_logger

logger = get_logger("store")

SESSION_KEY_PREFIX = "session:"
PARTIAL_DATA_KEY_PREFIX = "partial:"
DEBOUNCE_KEY_PREFIX = "debounce:"
RATE_LIMIT_KEY_PREFIX = "ratelimit:"
RATE_LIMIT_NOTICE_KEY_PREFIX = "ratelimit_notice:"
CLEANUP_LOCK_KEY = "cleanup:lock"

_GLOB_SPECIAL = re.compile(r"([*?\[\]\\])")


class StoreUnavailableError(Exception):
    """The shared store could not be reached or answered with an error."""

    def __init__(self, operation: str, key: str | None, cause: Exception):
        self.operation = operation
        self.key = key
        self.cause = cause
        super().__init__(f"Store {operation} failed for key={key}: {cause}")


def create_redis_client(redis_url: str, socket_timeout_seconds: float):
    """Build an asyncio Redis client. Connections are opened lazily."""
    return redis_async.from_url(
        redis_url,
        decode_responses=True,
        socket_connect_timeout=socket_timeout_seconds,
        socket_timeout=socket_timeout_seconds,
    )


def escape_glob(value: str) -> str:
    return _GLOB_SPECIAL.sub(r"\\\1", value)


class KeyValueStore:
    """Async key-value operations with per-key expiration."""

    def __init__(self, redis_client):
        self._redis = redis_client

    async def _call(self, operation: str, key: str | None, coro):
        try:
            return await coro
        except (RedisError, OSError, asyncio.TimeoutError) as exc:
            raise StoreUnavailableError(operation, key, exc) from exc

    async def get(self, key: str) -> str | None:
        return await self._call("get", key, self._redis.get(key))

    async def set(self, key: str, value: str, ttl_seconds: int | None = None) -> None:
        await self._call("set", key, self._redis.set(key, value, ex=ttl_seconds))

    async def set_if_absent(
        self,
        key: str,
        value: str,
        ttl_seconds: int | None = None,
        ttl_ms: int | None = None,
    ) -> bool:
        """Atomic SET NX. Returns True when this call created the key."""
        was_set = await self._call(
            "set_if_absent",
            key,
            self._redis.set(key, value, ex=ttl_seconds, px=ttl_ms, nx=True),
        )
        return bool(was_set)

    async def delete(self, key: str) -> None:
        await self._call("delete", key, self._redis.delete(key))

    async def exists(self, key: str) -> bool:
        return bool(await self._call("exists", key, self._redis.exists(key)))

    async def expire(self, key: str, ttl_seconds: int) -> bool:
        return bool(await self._call("expire", key, self._redis.expire(key, ttl_seconds)))

    async def incr(self, key: str) -> int:
        return int(await self._call("incr", key, self._redis.incr(key)))

    async def keys_by_prefix(self, prefix: str) -> list[str]:
        pattern = f"{escape_glob(prefix)}*"
        try:
            return [key async for key in self._redis.scan_iter(match=pattern)]
        except (RedisError, OSError, asyncio.TimeoutError) as exc:
            raise StoreUnavailableError("scan", pattern, exc) from exc

    async def ping(self) -> bool:
        try:
            return bool(await self._redis.ping())
        except (RedisError, OSError, asyncio.TimeoutError) as exc:
            logger.warning("Store ping failed", extra={"context": {"error": str(exc)}})
            return False

    async def close(self) -> None:
        try:
            await self._redis.aclose()
        except (RedisError, OSError) as exc:
            logger.warning(f"Error closing store connection: {exc}")
