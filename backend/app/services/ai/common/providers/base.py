"""Abstract base for all AI providers."""

from __future__ import annotations

import abc
from dataclasses import dataclass, field
from typing import Any

# Role-tagged chat messages in the OpenAI wire shape:
# {"role": "system" | "user" | "assistant", "content": str | list[content parts]}
Message = dict[str, Any]


class ProviderError(Exception):
    """Base for provider-side failures that are not transport errors."""


class ProviderResponseError(ProviderError):
    """The provider answered 2xx but the payload is not in the expected shape."""


@dataclass(frozen=True)
class ToolCall:
    name: str
    arguments: str


@dataclass(frozen=True)
class ProviderResult:
    """Immutable result returned by every provider."""

    raw_text: str
    model: str
    provider: str
    prompt_tokens: int = 0
    completion_tokens: int = 0
    latency_ms: float = 0.0
    tool_calls: tuple[ToolCall, ...] = field(default_factory=tuple)

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


class BaseProvider(abc.ABC):
    """Contract that every AI provider must implement."""

    name: str = "base"

    @abc.abstractmethod
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
        """Send *messages* and return a ``ProviderResult``.

        Transport failures surface as ``httpx.HTTPError``; malformed
        payloads as ``ProviderResponseError``.
        """


def prompt_text(messages: list[Message]) -> str:
    """Flatten the textual parts of *messages* (used for hashing and token estimates)."""
    chunks: list[str] = []
    for message in messages:
        content = message.get("content")
        if isinstance(content, str):
            chunks.append(content)
        elif isinstance(content, list):
            for part in content:
                if isinstance(part, dict) and part.get("type") == "text":
                    chunks.append(str(part.get("text", "")))
    return "\n".join(chunks)
