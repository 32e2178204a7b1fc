"""Inference gateway: one structured call per task with a single sequential fallback."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable

from sqlalchemy.orm import Session

from app.core.config import get_settings

from . import router as ai_router
from .audit import log_ai_run
from .providers import BaseProvider, ProviderResult, get_provider
from .providers.base import Message, prompt_text

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """Total attempts across primary and fallback. 1 disables the fallback."""

    max_attempts: int = 2

    def __post_init__(self) -> None:
        if not 1 <= self.max_attempts <= 2:
            raise ValueError("max_attempts must be 1 or 2")

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        return cls(max_attempts=get_settings().ai_max_attempts)


@dataclass(frozen=True)
class CallFailure:
    provider: str
    model: str
    error: str


class ProviderUnavailableError(Exception):
    """Every attempt allowed by the retry policy failed for *task*."""

    def __init__(self, task: str, failures: list[CallFailure]):
        self.task = task
        self.failures = list(failures)
        detail = "; ".join(f"{f.provider}:{f.model}: {f.error}" for f in self.failures)
        super().__init__(f"AI task {task!r} unavailable ({detail})")


class InferenceGateway:
    """Issues provider calls for routed tasks.

    *db*, when given, receives an ``ai_interactions`` row per attempt.
    """

    def __init__(
        self,
        *,
        db: Session | None = None,
        user_id: str | None = None,
        policy: RetryPolicy | None = None,
        routes: dict[str, ai_router.TaskRoute] | None = None,
        provider_factory: Callable[[str], BaseProvider] = get_provider,
    ) -> None:
        self._db = db
        self._user_id = user_id
        self._policy = policy or RetryPolicy.from_settings()
        self._routes = routes
        self._provider_factory = provider_factory

    async def call(
        self,
        task: str,
        messages: list[Message],
        *,
        tools: list[dict[str, Any]] | None = None,
    ) -> ProviderResult:
        settings = get_settings()
        selected = ai_router.route(task, self._routes)
        targets = [selected.primary, selected.fallback][: self._policy.max_attempts]
        # Both attempts receive the same list object.
        payload = list(messages)
        flattened = prompt_text(payload)

        failures: list[CallFailure] = []
        for attempt, target in enumerate(targets, start=1):
            if attempt > 1:
                logger.warning(
                    "AI task=%s falling back from %s to %s", task, targets[attempt - 2], target
                )
            provider = self._provider_factory(target.provider)
            try:
                result = await provider.generate(
                    payload,
                    model=target.model,
                    temperature=settings.ai_temperature,
                    max_tokens=settings.ai_max_tokens,
                    timeout_seconds=settings.ai_timeout_seconds,
                    tools=tools,
                )
            except Exception as exc:
                logger.warning("AI task=%s attempt=%d %s failed: %s", task, attempt, target, exc)
                failures.append(CallFailure(target.provider, target.model, str(exc) or type(exc).__name__))
                self._record(task, target, flattened, error=str(exc) or type(exc).__name__, attempt=attempt)
                continue

            logger.info(
                "AI task=%s provider=%s model=%s latency_ms=%.1f tokens=%d/%d",
                task,
                result.provider,
                result.model,
                result.latency_ms,
                result.prompt_tokens,
                result.completion_tokens,
            )
            self._record(task, target, flattened, result=result, attempt=attempt)
            return result

        logger.error("AI task=%s exhausted %d attempt(s)", task, len(failures))
        raise ProviderUnavailableError(task, failures)

    def _record(
        self,
        task: str,
        target: ai_router.ProviderTarget,
        flattened: str,
        *,
        attempt: int,
        result: ProviderResult | None = None,
        error: str | None = None,
    ) -> None:
        if self._db is None:
            return
        log_ai_run(
            self._db,
            task=task,
            provider=target.provider,
            model=target.model,
            prompt_text=flattened,
            provider_result=result,
            error=error,
            user_id=self._user_id,
            extra_meta={"attempt": attempt},
        )
