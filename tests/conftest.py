import asyncio
import fnmatch
import os

os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("MAINTENANCE_WORKER_ENABLED", "false")

from unittest.mock import Mock  # noqa: E402

import pytest  # noqa: E402
from redis.exceptions import ConnectionError as RedisConnectionError  # noqa: E402

from catatkas.services.store import KeyValueStore  # noqa: E402

# Minute-aligned epoch seconds, so rate-limit windows start exactly at the fixture's "now".
CLOCK_START = 1_699_999_980.0


class FakeClock:
    def __init__(self, start: float = CLOCK_START):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeRedis:
    """In-memory stand-in for redis.asyncio with per-key expiry driven by a FakeClock."""

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.data: dict[str, str] = {}
        self.expires_at: dict[str, float] = {}  # epoch ms
        self.fail = False
        self.closed = False

    def _now_ms(self) -> float:
        return self.clock() * 1000

    async def _tick(self) -> None:
        # Yield like a network round trip so concurrent callers interleave.
        await asyncio.sleep(0)
        if self.fail:
            raise RedisConnectionError("fake redis is down")

    def _purge(self, key: str) -> None:
        expiry = self.expires_at.get(key)
        if expiry is not None and self._now_ms() >= expiry:
            self.data.pop(key, None)
            self.expires_at.pop(key, None)

    def ttl_seconds(self, key: str) -> float | None:
        self._purge(key)
        expiry = self.expires_at.get(key)
        if expiry is None:
            return None
        return (expiry - self._now_ms()) / 1000

    async def get(self, key):
        await self._tick()
        self._purge(key)
        return self.data.get(key)

    async def set(self, key, value, ex=None, px=None, nx=False):
        await self._tick()
        self._purge(key)
        if nx and key in self.data:
            return None
        self.data[key] = str(value)
        if ex is not None:
            self.expires_at[key] = self._now_ms() + ex * 1000
        elif px is not None:
            self.expires_at[key] = self._now_ms() + px
        else:
            self.expires_at.pop(key, None)
        return True

    async def delete(self, *keys):
        await self._tick()
        removed = 0
        for key in keys:
            self._purge(key)
            if self.data.pop(key, None) is not None:
                removed += 1
            self.expires_at.pop(key, None)
        return removed

    async def exists(self, *keys):
        await self._tick()
        count = 0
        for key in keys:
            self._purge(key)
            count += key in self.data
        return count

    async def expire(self, key, seconds):
        await self._tick()
        self._purge(key)
        if key not in self.data:
            return False
        self.expires_at[key] = self._now_ms() + seconds * 1000
        return True

    async def incr(self, key):
        await self._tick()
        self._purge(key)
        value = int(self.data.get(key) or 0) + 1
        self.data[key] = str(value)
        return value

    async def scan_iter(self, match=None):
        await self._tick()
        for key in list(self.data):
            self._purge(key)
            if key in self.data and (match is None or fnmatch.fnmatchcase(key, match)):
                yield key

    async def ping(self):
        await self._tick()
        return True

    async def aclose(self):
        self.closed = True


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_redis(clock):
    return FakeRedis(clock)


@pytest.fixture
def store(fake_redis):
    return KeyValueStore(fake_redis)


@pytest.fixture
def db_session():
    """Mock database session."""
    return Mock()
