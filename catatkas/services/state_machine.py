from enum import Enum
from typing import Any, Mapping, Optional


class MenuStage(str, Enum):
    MAIN = "main"
    TRANSACTION_TYPE = "transaction_type"
    CATEGORY_SELECTION = "category_selection"
    AMOUNT_INPUT = "amount_input"
    DESCRIPTION_INPUT = "description_input"
    CONFIRMATION = "confirmation"


class TransactionType(str, Enum):
    INCOME = "income"
    EXPENSE = "expense"


class EditableField(str, Enum):
    CATEGORY = "category"
    AMOUNT = "amount"
    DESCRIPTION = "description"


STAGE_PIPELINE = [
    MenuStage.MAIN,
    MenuStage.TRANSACTION_TYPE,
    MenuStage.CATEGORY_SELECTION,
    MenuStage.AMOUNT_INPUT,
    MenuStage.DESCRIPTION_INPUT,
    MenuStage.CONFIRMATION,
]

# Stage that collects each transaction field, in pipeline order.
FIELD_STAGES = [
    ("transaction_type", MenuStage.TRANSACTION_TYPE),
    ("category", MenuStage.CATEGORY_SELECTION),
    ("amount", MenuStage.AMOUNT_INPUT),
]


class InvalidTransitionError(Exception):
    def __init__(self, from_stage: MenuStage, to_stage: MenuStage):
        self.from_stage = from_stage
        self.to_stage = to_stage
        super().__init__(f"Invalid transition: {from_stage.value} -> {to_stage.value}")


def step_of(stage: MenuStage) -> int:
    return STAGE_PIPELINE.index(stage)


def next_stage(stage: MenuStage) -> Optional[MenuStage]:
    index = step_of(stage)
    if index + 1 >= len(STAGE_PIPELINE):
        return None
    return STAGE_PIPELINE[index + 1]


def previous_stage(stage: MenuStage) -> Optional[MenuStage]:
    index = step_of(stage)
    if index == 0:
        return None
    return STAGE_PIPELINE[index - 1]


def can_transition(from_stage: MenuStage, to_stage: MenuStage) -> bool:
    """Stages move one step forward or back; any stage may return to main."""
    if to_stage == MenuStage.MAIN:
        return from_stage != MenuStage.MAIN
    return to_stage in (next_stage(from_stage), previous_stage(from_stage))


def transition(from_stage: MenuStage, to_stage: MenuStage) -> MenuStage:
    """Perform stage transition. Raises InvalidTransitionError if not allowed."""
    if not can_transition(from_stage, to_stage):
        raise InvalidTransitionError(from_stage, to_stage)
    return to_stage


def advance(current_stage: MenuStage) -> MenuStage:
    """Move to the next stage of the pipeline."""
    following = next_stage(current_stage)
    if following is None:
        raise InvalidTransitionError(current_stage, current_stage)
    return transition(current_stage, following)


def go_back(current_stage: MenuStage) -> MenuStage:
    preceding = previous_stage(current_stage)
    if preceding is None:
        raise InvalidTransitionError(current_stage, current_stage)
    return transition(current_stage, preceding)


def resume_stage(fields: Mapping[str, Any]) -> MenuStage:
    """Pick the stage to resume at after recovery: the first one still missing its field."""
    for field_name, stage in FIELD_STAGES:
        if fields.get(field_name) in (None, ""):
            return stage
    return MenuStage.CONFIRMATION
