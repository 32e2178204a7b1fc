"""AI audit: one ``ai_interactions`` row per provider call, successful or not."""

from __future__ import annotations

import hashlib
import logging
from typing import Any

from sqlalchemy.orm import Session

from app.core.config import get_settings
from app.models.finance import AiInteraction

from .providers.base import ProviderResult

logger = logging.getLogger(__name__)


def log_ai_run(
    db: Session,
    *,
    task: str,
    provider: str,
    model: str,
    prompt_text: str,
    provider_result: ProviderResult | None = None,
    error: str | None = None,
    user_id: str | None = None,
    extra_meta: dict[str, Any] | None = None,
) -> AiInteraction:
    """Stage an ``ai_interactions`` row on *db*; the caller's next commit persists it.

    Prompt text is always hashed; raw text is only stored when
    ``AI_DEBUG_STORE_RAW=true``.
    """
    settings = get_settings()

    metadata: dict[str, Any] = {
        "prompt_hash": hashlib.sha256(prompt_text.encode()).hexdigest(),
    }
    if provider_result is not None:
        metadata["response_hash"] = hashlib.sha256(provider_result.raw_text.encode()).hexdigest()
        if provider_result.tool_calls:
            metadata["tool_calls"] = [call.name for call in provider_result.tool_calls]

    if settings.ai_debug_store_raw:
        metadata["prompt_raw"] = prompt_text
        if provider_result is not None:
            metadata["response_raw"] = provider_result.raw_text

    if extra_meta:
        metadata.update(extra_meta)

    row = AiInteraction(
        user_id=user_id,
        task=task,
        provider=provider_result.provider if provider_result else provider,
        model=provider_result.model if provider_result else model,
        success=error is None,
        prompt_tokens=provider_result.prompt_tokens if provider_result else 0,
        completion_tokens=provider_result.completion_tokens if provider_result else 0,
        latency_ms=provider_result.latency_ms if provider_result else None,
        error_message=error,
        interaction_meta=metadata,
    )
    db.add(row)
    return row
