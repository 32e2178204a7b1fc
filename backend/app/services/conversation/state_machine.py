"""Slot-filling for one incomplete expense per user.

States follow the first missing required field:
``idle -> awaiting_amount -> awaiting_description -> awaiting_category -> complete``.
Every transition consumes exactly one utterance and asks at most one question.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Optional

from app.core.config import get_settings
from app.schemas.finance import SpendingCategory
from app.services.ai.intent.contracts import ExpenseDraft
from app.services.categorization import match_category_reply
from app.utils.amounts import first_number, is_storable, to_money

logger = logging.getLogger(__name__)


class ConversationState(StrEnum):
    IDLE = "idle"
    AWAITING_AMOUNT = "awaiting_amount"
    AWAITING_DESCRIPTION = "awaiting_description"
    AWAITING_CATEGORY = "awaiting_category"
    COMPLETE = "complete"


_STATE_FOR_FIELD = {
    "amount": ConversationState.AWAITING_AMOUNT,
    "description": ConversationState.AWAITING_DESCRIPTION,
    "category": ConversationState.AWAITING_CATEGORY,
}

_CATEGORY_CHOICES = ", ".join(c.value for c in SpendingCategory if c is not SpendingCategory.OTHER) + ", or other"


@dataclass
class PendingOperation:
    """The partially filled expense awaiting an answer from its user."""

    draft: ExpenseDraft
    missing_fields: list[str] = field(default_factory=list)

    @property
    def state(self) -> ConversationState:
        if not self.missing_fields:
            return ConversationState.COMPLETE
        return _STATE_FOR_FIELD[self.missing_fields[0]]

    def to_dict(self) -> dict[str, Any]:
        return {
            "fields": self.draft.model_dump(mode="json"),
            "missing_fields": list(self.missing_fields),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PendingOperation":
        return cls(
            draft=ExpenseDraft.model_validate(data.get("fields") or {}),
            missing_fields=list(data.get("missing_fields") or []),
        )


@dataclass
class Transition:
    state: ConversationState
    question: Optional[str] = None
    pending: Optional[PendingOperation] = None
    completed: Optional[ExpenseDraft] = None
    accepted: bool = True


def question_for(missing_field: str, draft: ExpenseDraft, currency: Optional[str] = None) -> str:
    currency = currency or get_settings().currency_symbol
    if missing_field == "amount":
        return "I see you mentioned an expense! How much did you spend?"
    if missing_field == "description":
        return "What did you buy or what was this expense for?"
    if missing_field == "category":
        return (
            f"Great! I see you spent {currency}{draft.amount}. "
            f"What category is this? ({_CATEGORY_CHOICES})"
        )
    return "Could you provide more details about this expense?"


def reask_for(missing_field: str) -> str:
    if missing_field == "amount":
        return "I couldn't find an amount in your message. Please tell me how much you spent (e.g., '150' or '150.50')."
    if missing_field == "description":
        return "Please tell me what you bought or what the expense was for."
    return f"Please choose a category: {_CATEGORY_CHOICES}."


def start(draft: ExpenseDraft) -> Transition:
    """Begin from a fresh classification; complete drafts skip straight to commit."""
    missing = draft.missing_fields()
    if not missing:
        return Transition(state=ConversationState.COMPLETE, completed=draft)
    pending = PendingOperation(draft=draft, missing_fields=missing)
    return Transition(state=pending.state, question=question_for(missing[0], draft), pending=pending)


def advance(pending: PendingOperation, reply: str) -> Transition:
    """Feed one reply into the outstanding question."""
    if not pending.missing_fields:
        return Transition(state=ConversationState.COMPLETE, completed=pending.draft)

    current = pending.missing_fields[0]
    updates = _extract(current, pending.draft, reply)
    if updates is None:
        logger.debug("Reply did not answer %s; asking again", current)
        return Transition(state=pending.state, question=reask_for(current), pending=pending, accepted=False)

    draft = pending.draft.model_copy(update=updates)
    remaining = [f for f in pending.missing_fields[1:] if f in draft.missing_fields()]
    if not remaining:
        return Transition(state=ConversationState.COMPLETE, completed=draft)

    updated = PendingOperation(draft=draft, missing_fields=remaining)
    return Transition(state=updated.state, question=question_for(remaining[0], draft), pending=updated)


def _extract(missing_field: str, draft: ExpenseDraft, reply: str) -> Optional[dict[str, Any]]:
    text = (reply or "").strip()
    if missing_field == "amount":
        number = first_number(text)
        amount = to_money(number) if number is not None else None
        if not is_storable(amount):
            return None
        return {"amount": amount}
    if missing_field == "description":
        if not text:
            return None
        if draft.name:
            return {"description": text}
        return {"name": text, "description": text}
    if missing_field == "category":
        category = match_category_reply(text)
        return {"category": category} if category else None
    return None
