"""Mock provider: deterministic responses for tests and keyless environments."""

from __future__ import annotations

import time
from typing import Any

from .base import BaseProvider, Message, ProviderResult, prompt_text

NO_DATA_REPLY = '{"type": "none", "hasData": false}'


class MockProvider(BaseProvider):
    name = "mock"

    def __init__(self, reply: str = NO_DATA_REPLY) -> None:
        self._reply = reply

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
        t0 = time.monotonic()
        text = self._reply
        elapsed = (time.monotonic() - t0) * 1000
        return ProviderResult(
            raw_text=text,
            model=model or "mock-v1",
            provider=self.name,
            prompt_tokens=len(prompt_text(messages).split()),
            completion_tokens=len(text.split()),
            latency_ms=round(elapsed, 2),
        )
