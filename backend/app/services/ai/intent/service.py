"""Intent classification: one utterance plus recent turns -> ``FinancialIntent``."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Sequence

from pydantic import ValidationError

from app.core.config import get_settings
from app.schemas.finance import ConversationTurn

from ..common.gateway import InferenceGateway
from ..common.json_tools import extract_json, load_tool_arguments
from ..common.providers.base import ProviderResult
from ..common.router import TASK_EXTRACTION
from .contracts import FinancialIntent, NoIntent, intent_from_model_output

logger = logging.getLogger(__name__)

INTENT_SYSTEM_PROMPT = (
    "You are a personal finance assistant. Decide what the user's latest message asks for "
    "and extract the data. Amounts are in Indian rupees.\n"
    "Only COMPLETED money events count as expense or income; plans such as "
    "'I need to buy groceries' are type none.\n"
    "Return ONLY a JSON object:\n"
    '{"type": "expense|income|budget|goal|analytics|advice|none", "hasData": bool, '
    '"isMultiple": bool, "data": ...}\n'
    "data by type:\n"
    "- expense: {name, amount, category, merchant, description}, or an array of them when "
    "several expenses are named (isMultiple true). category is one of food, transport, "
    "entertainment, shopping, bills, healthcare, utilities, education, other; use null "
    "for anything not stated.\n"
    "- income: {source, amount, frequency}\n"
    "- budget: {name, category, amount, period}\n"
    "- goal: {name, targetAmount, deadline}\n"
    "- analytics: {requestType: summary|balance|spending_analysis|insights}\n"
    "- advice: {requestType: investment|savings|budget_recommendation|financial_planning|"
    "affordability|savings_timeline, amount, item}\n"
    'Examples: "I spent 150 on coffee" -> expense; "500 on lunch, 200 on uber" -> expense '
    'array; "Got 50000 salary" -> income; "Set 5000 food budget" -> budget; '
    '"Save 100000 for vacation" -> goal; "Show my spending analysis" -> analytics; '
    '"Can I afford an iPhone worth 50k?" -> advice affordability with amount 50000.'
)

INTENT_TOOL = {
    "type": "function",
    "function": {
        "name": "record_financial_intent",
        "description": "Report the financial intent and data found in the user's latest message.",
        "parameters": {
            "type": "object",
            "properties": {
                "type": {
                    "type": "string",
                    "enum": ["expense", "income", "budget", "goal", "analytics", "advice", "none"],
                },
                "hasData": {"type": "boolean"},
                "isMultiple": {"type": "boolean"},
                "data": {},
            },
            "required": ["type"],
        },
    },
}


@dataclass
class IntentServiceResult:
    """Result from ``classify_intent`` including metadata."""

    intent: FinancialIntent
    provider_result: ProviderResult
    malformed: bool = False


def render_transcript(turns: Sequence[ConversationTurn], limit: int) -> str:
    """Flatten the last *limit* turns, oldest first, as ``User:``/``Assistant:`` lines."""
    if limit <= 0:
        return ""
    lines: list[str] = []
    for turn in list(turns)[-limit:]:
        if turn.user_text:
            lines.append(f"User: {turn.user_text}")
        if turn.response_text:
            lines.append(f"Assistant: {turn.response_text}")
    return "\n".join(lines)


def build_messages(text: str, transcript: str) -> list[dict]:
    user_content = f'Current user message: "{text}"'
    if transcript:
        user_content = f"Previous conversation:\n{transcript}\n\n{user_content}"
    return [
        {"role": "system", "content": INTENT_SYSTEM_PROMPT},
        {"role": "user", "content": user_content},
    ]


def _decode(result: ProviderResult):
    if result.tool_calls:
        return load_tool_arguments(result.tool_calls[0].arguments)
    return extract_json(result.raw_text)


async def classify_intent(
    text: str,
    gateway: InferenceGateway,
    *,
    history: Sequence[ConversationTurn] = (),
    context_turns: Optional[int] = None,
) -> IntentServiceResult:
    """Classify *text*. Unparsable or invalid replies become ``NoIntent``.

    ``ProviderUnavailableError`` from the gateway propagates to the caller.
    """
    if context_turns is None:
        context_turns = get_settings().chat_context_turns
    transcript = render_transcript(history, context_turns)

    result = await gateway.call(TASK_EXTRACTION, build_messages(text, transcript), tools=[INTENT_TOOL])

    parsed = _decode(result)
    if parsed is None:
        logger.warning("Intent reply from %s was not JSON; treating as no intent", result.provider)
        return IntentServiceResult(intent=NoIntent(), provider_result=result, malformed=True)

    try:
        intent = intent_from_model_output(parsed)
    except (ValidationError, ValueError) as exc:
        logger.warning("Intent reply from %s failed validation: %s", result.provider, exc)
        return IntentServiceResult(intent=NoIntent(), provider_result=result, malformed=True)

    logger.info("Classified intent=%s via %s", intent.type, result.provider)
    return IntentServiceResult(intent=intent, provider_result=result)
