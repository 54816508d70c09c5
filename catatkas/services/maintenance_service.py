import asyncio
from typing import Optional

from catatkas.logging_config import get_logger
from catatkas.services.debounce_service import DebounceGuard
from catatkas.services.session_service import SessionStore

logger = get_logger("maintenance_worker")


class MaintenanceWorker:
    """Periodic session sweep (and debounce sweep) running as an asyncio task."""

    def __init__(
        self,
        sessions: SessionStore,
        debounce: Optional[DebounceGuard] = None,
        *,
        interval_seconds: float = 300,
    ):
        self.sessions = sessions
        self.debounce = debounce
        self.interval_seconds = max(interval_seconds, 0.1)
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self) -> dict:
        sessions_cleaned = await self.sessions.cleanup_expired_sessions()
        debounce_cleaned = await self.debounce.cleanup_expired() if self.debounce else 0
        return {"sessions_cleaned": sessions_cleaned, "debounce_cleaned": debounce_cleaned}

    async def _loop(self) -> None:
        while True:
            try:
                await asyncio.sleep(self.interval_seconds)
                results = await self.run_once()
                if results["sessions_cleaned"] or results["debounce_cleaned"]:
                    logger.info("Maintenance sweep finished", extra={"context": results})
            except asyncio.CancelledError:
                break
            except Exception as exc:
                logger.error("Maintenance loop failed", extra={"context": {"error": str(exc)}})

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop())
        logger.info("Maintenance worker started", extra={"context": {"interval_seconds": self.interval_seconds}})

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Maintenance worker stopped")
