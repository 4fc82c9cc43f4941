from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

from foreman.backends.base import AgentBackend
from foreman.errors import RunnerError

TOOL_POLICY_ALLOWLIST = {
    "read_file",
    "write_file",
    "edit_file",
    "run_command",
    "search",
}


@dataclass(slots=True)
class SpecialistResponse:
    role: str
    content: str
    metadata: dict[str, Any] = field(default_factory=dict)


class SpecialistAgent:
    role: str = "specialist"
    system_prompt: str = "You are a software specialist."
    # Shape of the single JSON object the specialist must answer with.
    output_schema: dict[str, Any] = {}

    def __init__(self, backend: AgentBackend, *, model: str | None = None) -> None:
        self.backend = backend
        self.model = model

    def full_system_prompt(self) -> str:
        prompt = self.system_prompt.strip()
        if not self.output_schema:
            return prompt
        schema = json.dumps(self.output_schema, ensure_ascii=False, indent=2)
        return (
            f"{prompt}\n\n"
            "Answer with exactly one JSON object on a single line and nothing else. "
            f"It must have this shape:\n{schema}"
        )

    @staticmethod
    def _normalize_allowed_tools(allowed_tools: list[str] | None) -> list[str] | None:
        if not allowed_tools:
            return None
        normalized = sorted({str(tool).strip() for tool in allowed_tools if str(tool).strip()})
        unknown = [tool for tool in normalized if tool not in TOOL_POLICY_ALLOWLIST]
        if unknown:
            raise RunnerError(
                "Tool policy rejected unknown tools for specialist run: " + ", ".join(unknown),
                kind="Fatal",
            )
        return normalized

    async def run(
        self,
        instruction: str,
        context: dict[str, Any],
        allowed_tools: list[str] | None = None,
    ) -> SpecialistResponse:
        run_context = dict(context)
        if self.model:
            run_context["model"] = self.model
        normalized_tools = self._normalize_allowed_tools(allowed_tools)

        content = await self.backend.collect(
            self.full_system_prompt(),
            instruction,
            run_context,
            normalized_tools,
        )
        return SpecialistResponse(
            role=self.role,
            content=content,
            metadata={
                "instruction": instruction,
                "tool_mode": bool(normalized_tools),
                "allowed_tools": list(normalized_tools or []),
            },
        )
