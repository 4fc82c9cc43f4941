from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any

from foreman.backends.base import AgentBackend, BackendExecutionError, BackendTimeoutError
from foreman.backends.command import BackendEventHook

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class BackendRetryPolicy:
    """Retry budget per backend; every try is bounded by ``timeout_seconds``."""

    max_retries: int = 1
    backoff_seconds: float = 0.5
    timeout_seconds: float = 90.0

    def delay(self, retry: int) -> float:
        return self.backoff_seconds * (2 ** (retry - 1))


class ResilientBackend(AgentBackend):
    """Tries the primary backend, then the fallback, retrying retriable failures."""

    name = "resilient"

    def __init__(
        self,
        primary_name: str,
        primary_backend: AgentBackend,
        fallback_name: str,
        fallback_backend: AgentBackend,
        retry_policy: BackendRetryPolicy,
        event_hook: BackendEventHook | None = None,
    ) -> None:
        self.candidates: list[tuple[str, AgentBackend]] = [(primary_name, primary_backend)]
        if fallback_name != primary_name:
            self.candidates.append((fallback_name, fallback_backend))
        self.retry_policy = retry_policy
        self.event_hook = event_hook

    def _emit(self, event: str, **fields: Any) -> None:
        payload = {"event": event, **fields}
        logger.debug("Backend event: %s", payload)
        if self.event_hook:
            self.event_hook(payload)

    async def _gather(
        self,
        backend: AgentBackend,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        tools: list[str] | None,
    ) -> list[str]:
        async def _drain() -> list[str]:
            return [
                chunk async for chunk in backend.execute(system_prompt, user_prompt, context, tools)
            ]

        timeout = self.retry_policy.timeout_seconds
        try:
            return await asyncio.wait_for(_drain(), timeout=timeout)
        except TimeoutError as exc:
            raise BackendTimeoutError(
                f"{backend.name} gave no answer within {timeout:.1f}s", retriable=True
            ) from exc

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        tools: list[str] | None = None,
    ) -> AsyncIterator[str]:
        failures: list[str] = []
        last_error: BackendExecutionError | None = None
        for position, (backend_name, backend) in enumerate(self.candidates):
            retry = 0
            while True:
                try:
                    chunks = await self._gather(backend, system_prompt, user_prompt, context, tools)
                except BackendExecutionError as exc:
                    last_error = exc
                    failures.append(f"{backend_name}[{retry}]: {exc}")
                    self._emit(
                        "backend_attempt_failed",
                        backend=backend_name,
                        attempt=retry,
                        error=str(exc),
                        retriable=exc.retriable,
                    )
                    if not exc.retriable or retry >= self.retry_policy.max_retries:
                        break
                    retry += 1
                    delay = self.retry_policy.delay(retry)
                    self._emit(
                        "backend_retry", backend=backend_name, attempt=retry, delay_seconds=delay
                    )
                    await asyncio.sleep(delay)
                    continue

                if position > 0:
                    self._emit("backend_fallback_success", backend=backend_name, attempt=retry)
                for chunk in chunks:
                    yield chunk
                return

        message = f"All backend attempts failed. {'; '.join(failures[-6:])}"
        # The last failure decides whether the phase itself is worth retrying later.
        if isinstance(last_error, BackendTimeoutError):
            raise BackendTimeoutError(message, retriable=True)
        raise BackendExecutionError(message, retriable=bool(last_error and last_error.retriable))
