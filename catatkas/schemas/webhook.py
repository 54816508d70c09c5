from typing import Optional

from pydantic import AliasChoices, BaseModel, Field


class InboundEvent(BaseModel):
    conversation_id: str = Field(validation_alias=AliasChoices("conversation_id", "conversationId", "chat_id"))
    user_phone: str = Field(validation_alias=AliasChoices("user_phone", "userPhone", "sender"))
    text: Optional[str] = None
    button_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("button_id", "buttonId"))
    message_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("message_id", "messageId"))

    @property
    def is_button(self) -> bool:
        return bool(self.button_id)


class ReplyButton(BaseModel):
    id: str
    title: str


class Reply(BaseModel):
    text: str
    buttons: list[ReplyButton] = Field(default_factory=list)


class WebhookResponse(BaseModel):
    success: bool
    message: str
    status: Optional[str] = None
    replies: int = 0
