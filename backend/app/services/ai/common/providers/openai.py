"""OpenAI-compatible chat completions provider.

Also serves GitHub Models, which exposes the same API under a different base URL.
"""

from __future__ import annotations

import logging
import time
from typing import Any

from .base import BaseProvider, Message, ProviderResponseError, ProviderResult, ToolCall

logger = logging.getLogger(__name__)

OPENAI_BASE_URL = "https://api.openai.com/v1"
GITHUB_MODELS_BASE_URL = "https://models.github.ai/inference"


def parse_chat_completion(data: dict[str, Any], *, model: str, provider: str, elapsed_ms: float) -> ProviderResult:
    try:
        message = data["choices"][0]["message"]
    except (KeyError, IndexError, TypeError) as exc:
        raise ProviderResponseError(f"{provider}: response has no choices[0].message") from exc

    tool_calls = []
    for call in message.get("tool_calls") or []:
        function = call.get("function") or {}
        if function.get("name"):
            tool_calls.append(ToolCall(name=function["name"], arguments=function.get("arguments") or "{}"))

    text = message.get("content") or ""
    if not text and not tool_calls:
        raise ProviderResponseError(f"{provider}: empty completion")

    usage = data.get("usage") or {}
    return ProviderResult(
        raw_text=text,
        model=data.get("model") or model,
        provider=provider,
        prompt_tokens=usage.get("prompt_tokens", 0),
        completion_tokens=usage.get("completion_tokens", 0),
        latency_ms=round(elapsed_ms, 2),
        tool_calls=tuple(tool_calls),
    )


class OpenAIProvider(BaseProvider):
    name = "openai"
    default_model = "gpt-4o-mini"

    def __init__(self, api_key: str, *, base_url: str = OPENAI_BASE_URL, name: str | None = None) -> None:
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        if name:
            self.name = name

    async def generate(
        self,
        messages: list[Message],
        *,
        model: str = "",
        temperature: float = 0.1,
        max_tokens: int = 1024,
        timeout_seconds: float = 20.0,
        tools: list[dict[str, Any]] | None = None,
    ) -> ProviderResult:
        import httpx

        model = model or self.default_model
        payload: dict[str, Any] = {
            "model": model,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "messages": messages,
        }
        if tools:
            payload["tools"] = tools
            payload["tool_choice"] = "auto"

        t0 = time.monotonic()
        async with httpx.AsyncClient(timeout=timeout_seconds) as client:
            resp = await client.post(
                f"{self._base_url}/chat/completions",
                headers={
                    "Authorization": f"Bearer {self._api_key}",
                    "Content-Type": "application/json",
                },
                json=payload,
            )
            resp.raise_for_status()
            data = resp.json()

        elapsed = (time.monotonic() - t0) * 1000
        return parse_chat_completion(data, model=model, provider=self.name, elapsed_ms=elapsed)
