"""Per-user conversation state kept in the shared store.

Sessions live under ``session:<user_id>`` with a sliding TTL that every write
refreshes. A field edit on the confirmation screen snapshots the transaction
fields first, so cancelling the edit can put them back verbatim. Transactions
that fail mid-flight are parked under ``partial:<user_id>`` for an hour so the
user can resume after a restart or reconnect.

``update`` is a plain read-modify-write against the store. Two overlapping
updates for the same user resolve last-write-wins; input within one
conversation is effectively serial, so no cross-process lock is taken.
"""

import time
from typing import Callable, Optional

from pydantic import ValidationError

from catatkas.logging_config import get_logger
from catatkas.schemas.session import PartialTransactionData, SessionState, TransactionFields
from catatkas.services.state_machine import EditableField, MenuStage
from catatkas.services.store import (
    CLEANUP_LOCK_KEY,
    PARTIAL_DATA_KEY_PREFIX,
    SESSION_KEY_PREFIX,
    KeyValueStore,
    StoreUnavailableError,
)

logger = get_logger("session_service")

DEFAULT_SESSION_TIMEOUT_SECONDS = 600
DEFAULT_PARTIAL_DATA_TTL_SECONDS = 3600
CLEANUP_LOCK_TTL_SECONDS = 10


class UsageError(Exception):
    """An operation was called against a precondition it requires."""

    def __init__(self, message: str, user_id: str | None = None):
        self.message = message
        self.user_id = user_id
        super().__init__(message)


class SessionStore:
    def __init__(
        self,
        store: KeyValueStore,
        *,
        session_timeout_seconds: int = DEFAULT_SESSION_TIMEOUT_SECONDS,
        partial_data_ttl_seconds: int = DEFAULT_PARTIAL_DATA_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.session_timeout_seconds = session_timeout_seconds
        self.partial_data_ttl_seconds = partial_data_ttl_seconds
        self._clock = clock

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    @staticmethod
    def session_key(user_id: str) -> str:
        return f"{SESSION_KEY_PREFIX}{user_id}"

    @staticmethod
    def partial_key(user_id: str) -> str:
        return f"{PARTIAL_DATA_KEY_PREFIX}{user_id}"

    async def _read_session(self, user_id: str) -> Optional[SessionState]:
        """Load a session, letting store errors propagate."""
        raw = await self.store.get(self.session_key(user_id))
        if not raw:
            return None
        try:
            return SessionState.model_validate_json(raw)
        except ValidationError as exc:
            logger.warning(
                "Discarding unreadable session",
                extra={"context": {"user_id": user_id, "error": str(exc)}},
            )
            return None

    async def get(self, user_id: str) -> Optional[SessionState]:
        try:
            return await self._read_session(user_id)
        except StoreUnavailableError as exc:
            logger.error("Error getting session", extra={"context": {"user_id": user_id, "error": str(exc)}})
            return None

    async def set(self, user_id: str, state: SessionState) -> SessionState:
        stamped = state.model_copy(update={"last_activity_at": self._now_ms()})
        try:
            await self.store.set(
                self.session_key(user_id),
                stamped.model_dump_json(),
                ttl_seconds=self.session_timeout_seconds,
            )
        except StoreUnavailableError as exc:
            logger.error("Error setting session", extra={"context": {"user_id": user_id, "error": str(exc)}})
            raise
        return stamped

    async def update(self, user_id: str, **fields) -> SessionState:
        """Merge fields into the current session (or a fresh main-menu one) and save it."""
        current = await self._read_session(user_id) or SessionState(menu=MenuStage.MAIN)
        merged = SessionState.model_validate({**current.model_dump(), **fields})
        return await self.set(user_id, merged)

    async def clear(self, user_id: str) -> None:
        try:
            await self.store.delete(self.session_key(user_id))
        except StoreUnavailableError as exc:
            logger.error("Error clearing session", extra={"context": {"user_id": user_id, "error": str(exc)}})

    async def extend(self, user_id: str) -> None:
        try:
            await self.store.expire(self.session_key(user_id), self.session_timeout_seconds)
        except StoreUnavailableError as exc:
            logger.error("Error extending session", extra={"context": {"user_id": user_id, "error": str(exc)}})

    async def is_expired(self, user_id: str) -> bool:
        try:
            return not await self.store.exists(self.session_key(user_id))
        except StoreUnavailableError as exc:
            logger.error(
                "Error checking session expiration",
                extra={"context": {"user_id": user_id, "error": str(exc)}},
            )
            return True

    async def get_context_data(self, user_id: str) -> dict:
        session = await self.get(user_id)
        if not session:
            return {}
        return session.transaction_fields()

    # Edit sub-protocol

    async def start_editing(self, user_id: str, field: EditableField | str) -> SessionState:
        current = await self._read_session(user_id)
        if not current:
            raise UsageError("No active session to edit", user_id)

        field = EditableField(field)
        # An edit already in progress keeps its original snapshot.
        snapshot = current.pre_edit_snapshot or TransactionFields(**current.transaction_fields())
        updated = await self.update(user_id, editing_field=field, pre_edit_snapshot=snapshot)

        logger.info("Started editing field", extra={"context": {"user_id": user_id, "field": field.value}})
        return updated

    async def finish_editing(self, user_id: str) -> SessionState:
        current = await self._read_session(user_id)
        if not current:
            raise UsageError("No active session", user_id)

        updated = await self.update(user_id, editing_field=None, pre_edit_snapshot=None)

        logger.info("Finished editing", extra={"context": {"user_id": user_id}})
        return updated

    async def cancel_editing(self, user_id: str) -> SessionState:
        current = await self._read_session(user_id)
        if not current or not current.pre_edit_snapshot:
            raise UsageError("No edit in progress", user_id)

        restored = await self.update(
            user_id,
            **current.pre_edit_snapshot.transaction_fields(),
            editing_field=None,
            pre_edit_snapshot=None,
        )

        logger.info("Cancelled editing", extra={"context": {"user_id": user_id}})
        return restored

    # Partial transaction recovery

    async def save_partial_data(self, user_id: str, retry_count: int = 0, **fields) -> PartialTransactionData:
        partial = PartialTransactionData(
            **fields,
            user_id=user_id,
            timestamp=self._now_ms(),
            retry_count=retry_count,
        )
        try:
            await self.store.set(
                self.partial_key(user_id),
                partial.model_dump_json(),
                ttl_seconds=self.partial_data_ttl_seconds,
            )
        except StoreUnavailableError as exc:
            logger.error("Error saving partial data", extra={"context": {"user_id": user_id, "error": str(exc)}})
            raise

        logger.info("Saved partial transaction data", extra={"context": {"user_id": user_id}})
        return partial

    async def _read_partial(self, user_id: str) -> Optional[PartialTransactionData]:
        raw = await self.store.get(self.partial_key(user_id))
        if not raw:
            return None
        try:
            return PartialTransactionData.model_validate_json(raw)
        except ValidationError as exc:
            logger.warning(
                "Discarding unreadable partial data",
                extra={"context": {"user_id": user_id, "error": str(exc)}},
            )
            return None

    async def get_partial_data(self, user_id: str) -> Optional[PartialTransactionData]:
        try:
            return await self._read_partial(user_id)
        except StoreUnavailableError as exc:
            logger.error("Error getting partial data", extra={"context": {"user_id": user_id, "error": str(exc)}})
            return None

    async def increment_retry_count(self, user_id: str) -> int:
        try:
            partial = await self._read_partial(user_id)
            if not partial:
                return 0

            partial.retry_count += 1
            await self.store.set(
                self.partial_key(user_id),
                partial.model_dump_json(),
                ttl_seconds=self.partial_data_ttl_seconds,
            )
            return partial.retry_count
        except StoreUnavailableError as exc:
            logger.error(
                "Error incrementing retry count",
                extra={"context": {"user_id": user_id, "error": str(exc)}},
            )
            return 0

    async def clear_partial_data(self, user_id: str) -> None:
        try:
            await self.store.delete(self.partial_key(user_id))
            logger.info("Cleared partial transaction data", extra={"context": {"user_id": user_id}})
        except StoreUnavailableError as exc:
            logger.error("Error clearing partial data", extra={"context": {"user_id": user_id, "error": str(exc)}})

    async def has_recoverable_context(self, user_id: str) -> bool:
        try:
            return await self.store.exists(self.partial_key(user_id))
        except StoreUnavailableError as exc:
            logger.error(
                "Error checking recoverable context",
                extra={"context": {"user_id": user_id, "error": str(exc)}},
            )
            return False

    async def restore_from_partial_data(self, user_id: str) -> SessionState:
        """Rebuild a main-menu session from the partial record. The record itself is kept."""
        partial = await self._read_partial(user_id)
        if not partial:
            raise UsageError("No partial data to restore", user_id)

        session = await self.set(user_id, SessionState(menu=MenuStage.MAIN, **partial.transaction_fields()))

        logger.info(
            "Restored session from partial data",
            extra={"context": {"user_id": user_id, "retry_count": partial.retry_count}},
        )
        return session

    # Maintenance

    async def cleanup_expired_sessions(self) -> int:
        """Delete sessions idle longer than the timeout. Returns 0 when another sweep holds the lock."""
        try:
            acquired = await self.store.set_if_absent(CLEANUP_LOCK_KEY, "1", ttl_seconds=CLEANUP_LOCK_TTL_SECONDS)
        except StoreUnavailableError as exc:
            logger.error("Error acquiring cleanup lock", extra={"context": {"error": str(exc)}})
            return 0

        if not acquired:
            logger.debug("Cleanup already in progress, skipping")
            return 0

        cleaned_count = 0
        try:
            keys = await self.store.keys_by_prefix(SESSION_KEY_PREFIX)
            now = self._now_ms()
            timeout_ms = self.session_timeout_seconds * 1000

            for key in keys:
                try:
                    raw = await self.store.get(key)
                    if not raw:
                        continue
                    try:
                        last_activity = SessionState.model_validate_json(raw).last_activity_at or 0
                    except ValidationError:
                        last_activity = 0

                    if now - last_activity > timeout_ms:
                        await self.store.delete(key)
                        cleaned_count += 1
                        logger.info(
                            "Cleaned up expired session",
                            extra={"context": {"key": key, "inactive_for_ms": now - last_activity}},
                        )
                except StoreUnavailableError as exc:
                    logger.error(
                        "Error processing session for cleanup",
                        extra={"context": {"key": key, "error": str(exc)}},
                    )
        except StoreUnavailableError as exc:
            logger.error("Error during session cleanup", extra={"context": {"error": str(exc)}})
        finally:
            try:
                await self.store.delete(CLEANUP_LOCK_KEY)
            except StoreUnavailableError as exc:
                logger.warning(f"Failed to release cleanup lock: {exc}")

        logger.info("Session cleanup completed", extra={"context": {"cleaned_count": cleaned_count}})
        return cleaned_count
