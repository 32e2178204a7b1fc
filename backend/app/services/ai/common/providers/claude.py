"""Anthropic / Claude provider."""

from __future__ import annotations

import json
import logging
import re
import time
from typing import Any

from .base import BaseProvider, Message, ProviderResponseError, ProviderResult, ToolCall

logger = logging.getLogger(__name__)

_DATA_URL_RE = re.compile(r"^data:(?P<media>[\w/+.-]+);base64,(?P<data>.+)$", re.DOTALL)


def _convert_part(part: dict[str, Any]) -> dict[str, Any]:
    if part.get("type") == "image_url":
        url = (part.get("image_url") or {}).get("url", "")
        match = _DATA_URL_RE.match(url)
        if match:
            return {
                "type": "image",
                "source": {"type": "base64", "media_type": match["media"], "data": match["data"]},
            }
        return {"type": "image", "source": {"type": "url", "url": url}}
    return {"type": "text", "text": str(part.get("text", ""))}


def _convert_messages(messages: list[Message]) -> tuple[str, list[dict[str, Any]]]:
    """Split OpenAI-shaped messages into Anthropic's (system, messages) pair."""
    system_parts: list[str] = []
    converted: list[dict[str, Any]] = []
    for message in messages:
        content = message.get("content", "")
        if message.get("role") == "system":
            system_parts.append(content if isinstance(content, str) else "")
            continue
        if isinstance(content, list):
            content = [_convert_part(part) for part in content]
        converted.append({"role": message.get("role", "user"), "content": content})
    return "\n\n".join(p for p in system_parts if p), converted


def _convert_tools(tools: list[dict[str, Any]]) -> list[dict[str, Any]]:
    converted = []
    for tool in tools:
        function = tool.get("function", tool)
        converted.append(
            {
                "name": function["name"],
                "description": function.get("description", ""),
                "input_schema": function.get("parameters") or {"type": "object", "properties": {}},
            }
        )
    return converted


class ClaudeProvider(BaseProvider):
    name = "claude"

    def __init__(self, api_key: str) -> None:
        self._api_key = api_key

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

        model = model or "claude-3-5-haiku-20241022"
        system, converted = _convert_messages(messages)
        payload: dict[str, Any] = {
            "model": model,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "messages": converted,
        }
        if system:
            payload["system"] = system
        if tools:
            payload["tools"] = _convert_tools(tools)

        t0 = time.monotonic()
        async with httpx.AsyncClient(timeout=timeout_seconds) as client:
            resp = await client.post(
                "https://api.anthropic.com/v1/messages",
                headers={
                    "x-api-key": self._api_key,
                    "anthropic-version": "2023-06-01",
                    "content-type": "application/json",
                },
                json=payload,
            )
            resp.raise_for_status()
            data = resp.json()

        elapsed = (time.monotonic() - t0) * 1000
        blocks = data.get("content")
        if not isinstance(blocks, list):
            raise ProviderResponseError("claude: response has no content blocks")

        text = "".join(b.get("text", "") for b in blocks if b.get("type") == "text")
        tool_calls = tuple(
            ToolCall(name=b["name"], arguments=json.dumps(b.get("input") or {}))
            for b in blocks
            if b.get("type") == "tool_use" and b.get("name")
        )
        if not text and not tool_calls:
            raise ProviderResponseError("claude: empty completion")

        usage = data.get("usage", {})
        return ProviderResult(
            raw_text=text,
            model=model,
            provider=self.name,
            prompt_tokens=usage.get("input_tokens", 0),
            completion_tokens=usage.get("output_tokens", 0),
            latency_ms=round(elapsed, 2),
            tool_calls=tool_calls,
        )
