from catatkas.schemas.session import PartialTransactionData, SessionState, TransactionFields
from catatkas.schemas.webhook import InboundEvent, Reply, ReplyButton, WebhookResponse

__all__ = [
    "SessionState",
    "TransactionFields",
    "PartialTransactionData",
    "InboundEvent",
    "Reply",
    "ReplyButton",
    "WebhookResponse",
]
