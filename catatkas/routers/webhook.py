from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from catatkas.database import get_db
from catatkas.logging_config import get_logger
from catatkas.schemas.webhook import InboundEvent, WebhookResponse
from catatkas.services.orchestrator import InteractionOrchestrator
from catatkas.services.transaction_service import get_user_by_phone

logger = get_logger("webhook")

router = APIRouter(tags=["webhook"])


def get_orchestrator(request: Request) -> InteractionOrchestrator:
    return request.app.state.orchestrator


@router.post("/webhook", response_model=WebhookResponse)
async def handle_webhook(
    event: InboundEvent,
    db: Session = Depends(get_db),
    orchestrator: InteractionOrchestrator = Depends(get_orchestrator),
):
    """Handle one inbound chat event (text message or button tap)."""
    logger.info(
        "Webhook received",
        extra={
            "context": {
                "conversation_id": event.conversation_id,
                "message_id": event.message_id,
                "kind": "button" if event.is_button else "text",
            }
        },
    )

    user = get_user_by_phone(db, event.user_phone)
    if not user:
        logger.warning("Event from unregistered user", extra={"context": {"conversation_id": event.conversation_id}})
        return WebhookResponse(success=False, message="User not registered", status="unregistered")

    try:
        outcome = await orchestrator.handle_event(db, event, user)
    except Exception as e:
        logger.error(
            "Webhook processing failed",
            extra={"context": {"conversation_id": event.conversation_id, "error": str(e)}},
            exc_info=True,
        )
        return WebhookResponse(success=False, message="Internal error")

    return WebhookResponse(
        success=True,
        message="OK",
        status=outcome.status.value,
        replies=len(outcome.replies),
    )
