from typing import Optional

import httpx

from catatkas.logging_config import get_logger
from catatkas.schemas.webhook import Reply

logger = get_logger("messaging_service")


class MessagingClient:
    """Posts replies to the chat gateway."""

    def __init__(self, api_url: str, token: Optional[str] = None, timeout: float = 30.0, transport=None):
        self.api_url = api_url
        self.token = token
        self.timeout = timeout
        self._transport = transport

    def _payload(self, conversation_id: str, reply: Reply) -> dict:
        payload = {"conversation_id": conversation_id, "text": reply.text}
        if reply.buttons:
            payload["buttons"] = [button.model_dump() for button in reply.buttons]
        return payload

    async def send(self, conversation_id: str, reply: Reply) -> bool:
        if not reply.text:
            logger.warning(f"send: empty reply for conversation_id={conversation_id}")
            return False

        headers = {"Authorization": f"Bearer {self.token}"} if self.token else {}
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(
                    self.api_url,
                    json=self._payload(conversation_id, reply),
                    headers=headers,
                )
        except httpx.HTTPError as e:
            logger.error(
                "Error sending reply",
                extra={"context": {"conversation_id": conversation_id, "error": str(e)}},
            )
            return False

        if response.status_code >= 400:
            logger.error(
                "Gateway rejected reply",
                extra={
                    "context": {
                        "conversation_id": conversation_id,
                        "status": response.status_code,
                        "body": response.text[:200],
                    }
                },
            )
            return False
        return True
