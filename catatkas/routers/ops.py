"""Operational endpoints for the throttling and session subsystems."""

from fastapi import APIRouter, Depends, Request

from catatkas.services.rate_limit_service import RateLimiter
from catatkas.services.session_service import SessionStore

router = APIRouter(prefix="/ops", tags=["ops"])


def get_rate_limiter(request: Request) -> RateLimiter:
    return request.app.state.rate_limiter


def get_session_store(request: Request) -> SessionStore:
    return request.app.state.sessions


@router.get("/rate-limits")
async def rate_limit_stats(rate_limiter: RateLimiter = Depends(get_rate_limiter)):
    return await rate_limiter.stats()


@router.get("/rate-limits/{conversation_id}")
async def rate_limit_status(conversation_id: str, rate_limiter: RateLimiter = Depends(get_rate_limiter)):
    decision = await rate_limiter.status(conversation_id)
    return {
        "conversation_id": conversation_id,
        "allowed": decision.allowed,
        "remaining": decision.remaining,
        "reset_at": decision.reset_at,
        "retry_after": decision.retry_after,
    }


@router.post("/rate-limits/{conversation_id}/reset")
async def reset_rate_limit(conversation_id: str, rate_limiter: RateLimiter = Depends(get_rate_limiter)):
    cleared = await rate_limiter.reset(conversation_id)
    return {"status": "ok", "conversation_id": conversation_id, "keys_cleared": cleared}


@router.post("/sessions/cleanup")
async def cleanup_sessions(sessions: SessionStore = Depends(get_session_store)):
    cleaned = await sessions.cleanup_expired_sessions()
    return {"status": "ok", "cleaned_count": cleaned}
