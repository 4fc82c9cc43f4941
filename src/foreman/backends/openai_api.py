from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from typing import Any

import openai
from openai import OpenAI

from foreman.backends.base import AgentBackend, BackendExecutionError, BackendProcessError
from foreman.backends.command import render_user_prompt

logger = logging.getLogger(__name__)


class OpenAIBackend(AgentBackend):
    """Remote backend over the OpenAI Responses API."""

    name = "openai"

    def __init__(self, *, model: str = "gpt-5-codex", client: Any | None = None) -> None:
        self.model = model
        self._client = client

    def _get_client(self) -> Any:
        if self._client is None:
            try:
                self._client = OpenAI()
            except openai.OpenAIError as exc:
                raise BackendProcessError(
                    f"OpenAI client could not be created: {exc}",
                    backend=self.name,
                    retriable=False,
                ) from exc
        return self._client

    @staticmethod
    def _extract_text(payload: Any) -> str:
        if payload is None:
            return ""
        output_text = getattr(payload, "output_text", None)
        if isinstance(output_text, str):
            return output_text
        if isinstance(payload, dict):
            value = payload.get("output_text")
            if isinstance(value, str):
                return value
        return str(output_text or "")

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        tools: list[str] | None = None,
    ) -> AsyncIterator[str]:
        requested_model = context.get("model")
        model_name = (
            requested_model.strip()
            if isinstance(requested_model, str) and requested_model.strip()
            else self.model
        )
        client = self._get_client()
        prompt = render_user_prompt(user_prompt, context, tools)

        def _request() -> Any:
            return client.responses.create(
                model=model_name,
                input=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": prompt},
                ],
            )

        logger.debug("OpenAI request model=%s prompt_chars=%d", model_name, len(prompt))
        try:
            payload = await asyncio.to_thread(_request)
        except (
            openai.AuthenticationError,
            openai.PermissionDeniedError,
            openai.NotFoundError,
        ) as exc:
            raise BackendExecutionError(
                f"OpenAI request rejected: {exc}",
                backend=self.name,
                retriable=False,
            ) from exc
        except openai.OpenAIError as exc:
            raise BackendExecutionError(
                f"OpenAI execution failed: {exc}",
                backend=self.name,
                retriable=True,
            ) from exc

        content = self._extract_text(payload).strip()
        if content:
            yield content
