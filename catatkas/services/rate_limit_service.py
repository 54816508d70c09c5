"""Fixed-window rate limiting per conversation.

Counters are keyed by conversation and clock-aligned window start, so a new
window always starts from a fresh key. A burst straddling a window boundary can
briefly reach twice the nominal rate; outbound chat traffic tolerates that.
"""

import asyncio
import math
import time
from dataclasses import dataclass
from typing import Callable, Optional

from catatkas.logging_config import get_logger
from catatkas.services.result import ErrorCode, Result
from catatkas.services.store import (
    RATE_LIMIT_KEY_PREFIX,
    RATE_LIMIT_NOTICE_KEY_PREFIX,
    KeyValueStore,
    StoreUnavailableError,
)

logger = get_logger("rate_limit_service")

DEFAULT_WINDOW_MS = 60000
DEFAULT_MAX_PER_WINDOW = 15
TTL_SAFETY_MARGIN_SECONDS = 5


@dataclass
class RateLimitDecision:
    allowed: bool
    remaining: int
    reset_at: int  # epoch ms
    retry_after: Optional[int] = None  # seconds


class RateLimiter:
    def __init__(
        self,
        store: KeyValueStore,
        *,
        window_ms: int = DEFAULT_WINDOW_MS,
        max_per_window: int = DEFAULT_MAX_PER_WINDOW,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.window_ms = window_ms
        self.max_per_window = max_per_window
        self._clock = clock

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def _window_start(self, now_ms: int) -> int:
        return (now_ms // self.window_ms) * self.window_ms

    @staticmethod
    def counter_key(conversation_id: str, window_start: int) -> str:
        return f"{RATE_LIMIT_KEY_PREFIX}{conversation_id}:{window_start}"

    def _denied(self, now_ms: int, reset_at: int) -> RateLimitDecision:
        retry_after = math.ceil((reset_at - now_ms) / 1000)
        return RateLimitDecision(allowed=False, remaining=0, reset_at=reset_at, retry_after=retry_after)

    def _fail_open(self) -> RateLimitDecision:
        return RateLimitDecision(
            allowed=True,
            remaining=self.max_per_window,
            reset_at=self._now_ms() + self.window_ms,
        )

    async def check(self, conversation_id: str) -> Result[RateLimitDecision]:
        """Count one request against the current window."""
        now = self._now_ms()
        window_start = self._window_start(now)
        reset_at = window_start + self.window_ms
        key = self.counter_key(conversation_id, window_start)

        try:
            raw = await self.store.get(key)
            current = int(raw) if raw else 0

            if current >= self.max_per_window:
                decision = self._denied(now, reset_at)
                logger.warning(
                    "Rate limit exceeded",
                    extra={
                        "context": {
                            "conversation_id": conversation_id,
                            "count": current,
                            "limit": self.max_per_window,
                            "retry_after": decision.retry_after,
                        }
                    },
                )
                return Result.success(decision)

            count = await self.store.incr(key)
            if count == 1:
                await self.store.expire(key, math.ceil(self.window_ms / 1000) + TTL_SAFETY_MARGIN_SECONDS)
        except StoreUnavailableError as exc:
            return Result.failure(str(exc), ErrorCode.STORE_UNAVAILABLE)

        logger.debug(
            "Rate limit check passed",
            extra={"context": {"conversation_id": conversation_id, "count": count}},
        )
        return Result.success(
            RateLimitDecision(allowed=True, remaining=max(0, self.max_per_window - count), reset_at=reset_at)
        )

    async def check_and_consume(self, conversation_id: str) -> RateLimitDecision:
        result = await self.check(conversation_id)
        if result.is_store_failure:
            # Availability of bookkeeping wins over strict throttling.
            logger.error(
                "Error checking rate limit, allowing message",
                extra={"context": {"conversation_id": conversation_id, "error": result.error}},
            )
        return result.unwrap_or(self._fail_open())

    async def status(self, conversation_id: str) -> RateLimitDecision:
        """Current window state without counting a request."""
        now = self._now_ms()
        window_start = self._window_start(now)
        reset_at = window_start + self.window_ms

        try:
            raw = await self.store.get(self.counter_key(conversation_id, window_start))
        except StoreUnavailableError as exc:
            logger.error(
                "Error getting rate limit status",
                extra={"context": {"conversation_id": conversation_id, "error": str(exc)}},
            )
            return self._fail_open()

        current = int(raw) if raw else 0
        if current >= self.max_per_window:
            return self._denied(now, reset_at)
        return RateLimitDecision(allowed=True, remaining=self.max_per_window - current, reset_at=reset_at)

    @staticmethod
    def notice_key(conversation_id: str, window_start: int) -> str:
        return f"{RATE_LIMIT_NOTICE_KEY_PREFIX}{conversation_id}:{window_start}"

    async def claim_notice(self, conversation_id: str, decision: RateLimitDecision) -> bool:
        """True for the first caller per limited window, so the wait notice goes out once."""
        window_start = decision.reset_at - self.window_ms
        ttl_ms = max(decision.reset_at - self._now_ms(), 1)
        try:
            return await self.store.set_if_absent(
                self.notice_key(conversation_id, window_start),
                str(self._now_ms()),
                ttl_ms=ttl_ms,
            )
        except StoreUnavailableError as exc:
            logger.error(
                "Error claiming rate limit notice, staying silent",
                extra={"context": {"conversation_id": conversation_id, "error": str(exc)}},
            )
            return False

    async def wait_for_reset(self, conversation_id: str, sleep_func=asyncio.sleep) -> float:
        """Sleep until the current window reopens. Returns the seconds waited."""
        decision = await self.status(conversation_id)
        if decision.allowed or not decision.retry_after:
            return 0.0

        logger.info(
            "Waiting for rate limit reset",
            extra={"context": {"conversation_id": conversation_id, "wait_seconds": decision.retry_after}},
        )
        await sleep_func(decision.retry_after)
        return float(decision.retry_after)

    @staticmethod
    def _owned_by(key: str, prefix: str, conversation_id: str) -> bool:
        owner, _, window = key[len(prefix):].rpartition(":")
        return owner == conversation_id and window.isdigit()

    async def reset(self, conversation_id: str) -> int:
        try:
            keys = [
                key
                for key in await self.store.keys_by_prefix(f"{RATE_LIMIT_KEY_PREFIX}{conversation_id}:")
                if self._owned_by(key, RATE_LIMIT_KEY_PREFIX, conversation_id)
            ]
            notices = [
                key
                for key in await self.store.keys_by_prefix(f"{RATE_LIMIT_NOTICE_KEY_PREFIX}{conversation_id}:")
                if self._owned_by(key, RATE_LIMIT_NOTICE_KEY_PREFIX, conversation_id)
            ]
            for key in keys + notices:
                await self.store.delete(key)
        except StoreUnavailableError as exc:
            logger.error(
                "Error resetting rate limit",
                extra={"context": {"conversation_id": conversation_id, "error": str(exc)}},
            )
            return 0

        logger.debug(
            "Rate limit reset",
            extra={"context": {"conversation_id": conversation_id, "keys_cleared": len(keys)}},
        )
        return len(keys)

    async def reset_all(self) -> int:
        cleared = 0
        try:
            for key in await self.store.keys_by_prefix(RATE_LIMIT_KEY_PREFIX):
                await self.store.delete(key)
                cleared += 1
        except StoreUnavailableError as exc:
            logger.error("Error clearing all rate limits", extra={"context": {"error": str(exc)}})
            return cleared

        logger.info("All rate limits cleared", extra={"context": {"cleared_count": cleared}})
        return cleared

    async def stats(self) -> dict:
        conversations: set[str] = set()
        saturated: set[str] = set()
        try:
            for key in await self.store.keys_by_prefix(RATE_LIMIT_KEY_PREFIX):
                conversation_id, _, _window = key[len(RATE_LIMIT_KEY_PREFIX):].rpartition(":")
                if not conversation_id:
                    continue
                conversations.add(conversation_id)

                raw = await self.store.get(key)
                if raw and int(raw) >= self.max_per_window:
                    saturated.add(conversation_id)
        except StoreUnavailableError as exc:
            logger.error("Error getting rate limit stats", extra={"context": {"error": str(exc)}})
            return {"total_conversations": 0, "rate_limited_conversations": 0}

        return {
            "total_conversations": len(conversations),
            "rate_limited_conversations": len(saturated),
        }
