import os

from fastapi import FastAPI

from catatkas.config import settings
from catatkas.logging_config import get_logger, setup_logging
from catatkas.routers import ops, webhook
from catatkas.services.debounce_service import DebounceGuard
from catatkas.services.intent_service import CommandInterpreter
from catatkas.services.maintenance_service import MaintenanceWorker
from catatkas.services.messaging_service import MessagingClient
from catatkas.services.orchestrator import InteractionOrchestrator
from catatkas.services.rate_limit_service import RateLimiter
from catatkas.services.session_service import SessionStore
from catatkas.services.store import KeyValueStore, create_redis_client

setup_logging(settings.log_level)

logger = get_logger("main")

app = FastAPI(
    title="Catatkas API",
    description="Chat bookkeeping assistant",
    version="0.1.0",
)

app.include_router(webhook.router)
app.include_router(ops.router)


def _is_maintenance_worker_enabled() -> bool:
    if os.environ.get("PYTEST_CURRENT_TEST"):
        return False
    return settings.maintenance_worker_enabled


def build_components(store: KeyValueStore) -> dict:
    """Wire every subsystem against one shared store."""
    sessions = SessionStore(
        store,
        session_timeout_seconds=settings.session_timeout_seconds,
        partial_data_ttl_seconds=settings.partial_data_ttl_seconds,
    )
    rate_limiter = RateLimiter(
        store,
        window_ms=settings.rate_limit_window_ms,
        max_per_window=settings.rate_limit_max_per_window,
    )
    debounce = DebounceGuard(store, window_ms=settings.debounce_window_ms)
    interpreter = CommandInterpreter(
        fuzzy_threshold=settings.fuzzy_threshold,
        min_match_length=settings.fuzzy_min_match_length,
        confidence_threshold=settings.confidence_threshold,
        suggestion_min_confidence=settings.suggestion_min_confidence,
    )
    messenger = MessagingClient(settings.messaging_api_url, settings.messaging_token)
    orchestrator = InteractionOrchestrator(
        sessions=sessions,
        rate_limiter=rate_limiter,
        debounce=debounce,
        interpreter=interpreter,
        messenger=messenger,
    )
    return {
        "store": store,
        "sessions": sessions,
        "rate_limiter": rate_limiter,
        "debounce": debounce,
        "interpreter": interpreter,
        "orchestrator": orchestrator,
        "maintenance_worker": MaintenanceWorker(
            sessions,
            debounce,
            interval_seconds=settings.cleanup_interval_seconds,
        ),
    }


@app.on_event("startup")
async def startup() -> None:
    store = KeyValueStore(create_redis_client(settings.redis_url, settings.redis_socket_timeout_seconds))
    for name, component in build_components(store).items():
        setattr(app.state, name, component)
    logger.info("Components initialized", extra={"context": {"redis_url": settings.redis_url.split("@")[-1]}})

    if _is_maintenance_worker_enabled():
        app.state.maintenance_worker.start()


@app.on_event("shutdown")
async def shutdown() -> None:
    worker = getattr(app.state, "maintenance_worker", None)
    if worker is not None:
        await worker.stop()

    store = getattr(app.state, "store", None)
    if store is not None:
        await store.close()


@app.get("/health")
async def health():
    store = getattr(app.state, "store", None)
    store_ok = await store.ping() if store is not None else False
    return {"status": "ok" if store_ok else "degraded", "store": store_ok}
