"""Model router: maps a semantic task to a primary and a fallback provider/model."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from app.core.config import Settings, get_settings

logger = logging.getLogger(__name__)

TASK_EXTRACTION = "extract-structured-data"
TASK_QUICK_RESPONSE = "quick-response"
TASK_DEEP_ANALYSIS = "deep-analysis"
TASK_RECEIPT_OCR = "receipt-ocr"

DEFAULT_TASK = TASK_QUICK_RESPONSE


@dataclass(frozen=True)
class ProviderTarget:
    provider: str
    model: str

    def __str__(self) -> str:
        return f"{self.provider}:{self.model}"


@dataclass(frozen=True)
class TaskRoute:
    task: str
    primary: ProviderTarget
    fallback: ProviderTarget


def build_routing_table(settings: Settings) -> dict[str, TaskRoute]:
    """Build the static task table from settings. Read-only once built."""
    fallback = ProviderTarget(settings.ai_fallback_provider, settings.ai_fallback_model)
    primary = settings.ai_primary_provider
    models = {
        TASK_EXTRACTION: settings.ai_extraction_model,
        TASK_QUICK_RESPONSE: settings.ai_quick_response_model,
        TASK_DEEP_ANALYSIS: settings.ai_deep_analysis_model,
        TASK_RECEIPT_OCR: settings.ai_receipt_ocr_model,
    }
    return {
        task: TaskRoute(task=task, primary=ProviderTarget(primary, model), fallback=fallback)
        for task, model in models.items()
    }


def route(task: str, table: dict[str, TaskRoute] | None = None) -> TaskRoute:
    """Return the route for *task*; unknown tasks use the quick-response route."""
    if table is None:
        table = build_routing_table(get_settings())
    selected = table.get(task)
    if selected is None:
        logger.warning("Unknown AI task %r, routing as %r", task, DEFAULT_TASK)
        selected = table[DEFAULT_TASK]
    return selected
