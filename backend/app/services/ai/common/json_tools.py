"""Recover JSON payloads from model replies.

Models wrap structured answers in markdown fences, prepend chatter
("Sure! Here is the expense:") or append explanations. ``extract_json``
peels those layers off and returns the first decodable object or array.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Optional

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"```(?:json|JSON)?\s*")
_DECODER = json.JSONDecoder()

JsonPayload = dict | list


def strip_code_fences(text: str) -> str:
    return _FENCE_RE.sub("", text).strip()


def extract_json(text: Optional[str]) -> Optional[JsonPayload]:
    """Return the first JSON object or array found in *text*, else ``None``."""
    if not text or not text.strip():
        return None

    body = strip_code_fences(text)
    start = 0
    while True:
        start = _next_opening(body, start)
        if start < 0:
            break
        try:
            value, _end = _DECODER.raw_decode(body, start)
        except ValueError:
            start += 1
            continue
        if isinstance(value, (dict, list)):
            return value
        start += 1

    logger.debug("No JSON payload in model output (%d chars)", len(text))
    return None


def load_tool_arguments(arguments: Any) -> Optional[dict]:
    """Decode a function-call ``arguments`` value into a dict.

    OpenAI-style APIs send a JSON string, Anthropic sends an object.
    """
    if isinstance(arguments, dict):
        return arguments
    if not isinstance(arguments, str):
        return None
    try:
        value = json.loads(arguments or "{}")
    except ValueError:
        logger.warning("Tool call arguments are not valid JSON")
        return None
    return value if isinstance(value, dict) else None


def _next_opening(text: str, start: int) -> int:
    positions = [p for p in (text.find("{", start), text.find("[", start)) if p >= 0]
    return min(positions) if positions else -1
