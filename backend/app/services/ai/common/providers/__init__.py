"""Provider factory: returns the right provider instance or falls back to mock."""

from __future__ import annotations

import logging

from app.core.config import get_settings

from .base import BaseProvider, ProviderError, ProviderResponseError, ProviderResult, ToolCall
from .mock import MockProvider

logger = logging.getLogger(__name__)

__all__ = [
    "get_provider",
    "BaseProvider",
    "ProviderError",
    "ProviderResponseError",
    "ProviderResult",
    "ToolCall",
    "MockProvider",
]


def get_provider(provider_name: str) -> BaseProvider:
    """Return a provider instance for *provider_name*.

    If the requested provider is not in the allowlist or has no API key,
    we fall back to ``MockProvider``.
    """
    settings = get_settings()
    name = provider_name.lower().strip()

    if name not in settings.ai_allowed_providers:
        logger.warning("Provider %r not in allowlist, falling back to mock", name)
        return MockProvider()

    if name == "mock":
        return MockProvider()

    if name == "github":
        if not settings.github_token:
            logger.warning("GITHUB_TOKEN not set, falling back to mock")
            return MockProvider()
        from .openai import GITHUB_MODELS_BASE_URL, OpenAIProvider

        return OpenAIProvider(settings.github_token, base_url=GITHUB_MODELS_BASE_URL, name="github")

    if name == "claude":
        if not settings.anthropic_api_key:
            logger.warning("ANTHROPIC_API_KEY not set, falling back to mock")
            return MockProvider()
        from .claude import ClaudeProvider

        return ClaudeProvider(api_key=settings.anthropic_api_key)

    if name == "groq":
        if not settings.groq_api_key:
            logger.warning("GROQ_API_KEY not set, falling back to mock")
            return MockProvider()
        from .groq import GroqProvider

        return GroqProvider(api_key=settings.groq_api_key)

    if name == "openai":
        if not settings.openai_api_key:
            logger.warning("OPENAI_API_KEY not set, falling back to mock")
            return MockProvider()
        from .openai import OpenAIProvider

        return OpenAIProvider(api_key=settings.openai_api_key)

    logger.warning("Unknown provider %r, falling back to mock", name)
    return MockProvider()
