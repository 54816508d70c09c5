from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, model_validator

from catatkas.services.state_machine import EditableField, MenuStage, TransactionType

TRANSACTION_FIELDS = ("transaction_type", "category", "amount", "description")


class TransactionFields(BaseModel):
    """The four mutable fields collected by the transaction workflow."""

    transaction_type: Optional[TransactionType] = None
    category: Optional[str] = None
    amount: Optional[Decimal] = None
    description: Optional[str] = None

    def transaction_fields(self) -> dict:
        return {name: getattr(self, name) for name in TRANSACTION_FIELDS}


class SessionState(TransactionFields):
    menu: MenuStage = MenuStage.MAIN
    step: int = 0
    editing_field: Optional[EditableField] = None
    pre_edit_snapshot: Optional[TransactionFields] = None
    last_activity_at: Optional[int] = None

    @model_validator(mode="after")
    def _snapshot_matches_editing(self) -> "SessionState":
        if (self.editing_field is None) != (self.pre_edit_snapshot is None):
            raise ValueError("pre_edit_snapshot must be present exactly while a field is being edited")
        return self

    @property
    def is_editing(self) -> bool:
        return self.editing_field is not None


class PartialTransactionData(TransactionFields):
    user_id: str
    timestamp: int
    retry_count: int = 0
