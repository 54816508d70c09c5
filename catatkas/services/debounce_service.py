"""Button-click debouncing.

The first click on an element writes a short-lived marker holding the click
time; further clicks on the same element by the same user are suppressed until
the marker expires.
"""

import time
from typing import Callable

from catatkas.logging_config import get_logger
from catatkas.services.result import ErrorCode, Result
from catatkas.services.store import DEBOUNCE_KEY_PREFIX, KeyValueStore, StoreUnavailableError

logger = get_logger("debounce_service")

DEFAULT_DEBOUNCE_WINDOW_MS = 3000


class DebounceGuard:
    def __init__(
        self,
        store: KeyValueStore,
        *,
        window_ms: int = DEFAULT_DEBOUNCE_WINDOW_MS,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.window_ms = window_ms
        self._clock = clock

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    @staticmethod
    def marker_key(user_id: str, element_id: str) -> str:
        return f"{DEBOUNCE_KEY_PREFIX}{user_id}:{element_id}"

    async def check(self, user_id: str, element_id: str) -> Result[bool]:
        """Result value is True when the click is a duplicate."""
        key = self.marker_key(user_id, element_id)
        try:
            # SET NX leaves an existing marker untouched and settles racing double-taps.
            created = await self.store.set_if_absent(key, str(self._now_ms()), ttl_ms=self.window_ms)
        except StoreUnavailableError as exc:
            return Result.failure(str(exc), ErrorCode.STORE_UNAVAILABLE)

        if not created:
            logger.debug("Button click debounced", extra={"context": {"user_id": user_id, "element_id": element_id}})
        return Result.success(not created)

    async def should_suppress(self, user_id: str, element_id: str) -> bool:
        result = await self.check(user_id, element_id)
        if result.is_store_failure:
            logger.error(
                "Error checking debounce, processing click",
                extra={"context": {"user_id": user_id, "element_id": element_id, "error": result.error}},
            )
        return result.unwrap_or(False)

    async def remaining_ms(self, user_id: str, element_id: str) -> int:
        try:
            raw = await self.store.get(self.marker_key(user_id, element_id))
        except StoreUnavailableError as exc:
            logger.error(
                "Error getting remaining debounce time",
                extra={"context": {"user_id": user_id, "element_id": element_id, "error": str(exc)}},
            )
            return 0

        if not raw:
            return 0
        try:
            clicked_at = int(raw)
        except ValueError:
            return 0
        return max(0, self.window_ms - (self._now_ms() - clicked_at))

    async def clear(self, user_id: str, element_id: str) -> None:
        try:
            await self.store.delete(self.marker_key(user_id, element_id))
            logger.debug("Debounce cleared", extra={"context": {"user_id": user_id, "element_id": element_id}})
        except StoreUnavailableError as exc:
            logger.error(
                "Error clearing debounce",
                extra={"context": {"user_id": user_id, "element_id": element_id, "error": str(exc)}},
            )

    async def clear_all(self, user_id: str) -> int:
        try:
            keys = await self.store.keys_by_prefix(f"{DEBOUNCE_KEY_PREFIX}{user_id}:")
            for key in keys:
                await self.store.delete(key)
        except StoreUnavailableError as exc:
            logger.error("Error clearing all debounces", extra={"context": {"user_id": user_id, "error": str(exc)}})
            return 0

        logger.debug("All debounces cleared for user", extra={"context": {"user_id": user_id, "count": len(keys)}})
        return len(keys)

    async def cleanup_expired(self) -> int:
        """Purge markers older than the window. The store TTL normally gets there first."""
        cleaned_count = 0
        try:
            keys = await self.store.keys_by_prefix(DEBOUNCE_KEY_PREFIX)
            now = self._now_ms()
            for key in keys:
                raw = await self.store.get(key)
                if not raw:
                    continue
                try:
                    clicked_at = int(raw)
                except ValueError:
                    clicked_at = 0
                if now - clicked_at > self.window_ms:
                    await self.store.delete(key)
                    cleaned_count += 1
        except StoreUnavailableError as exc:
            logger.error("Error cleaning up debounce entries", extra={"context": {"error": str(exc)}})
            return cleaned_count

        if cleaned_count:
            logger.info("Cleaned up expired debounce entries", extra={"context": {"cleaned_count": cleaned_count}})
        return cleaned_count
