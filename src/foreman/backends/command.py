from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator, Callable
from pathlib import Path
from typing import Any

from foreman.backends.base import AgentBackend, BackendExecutionError, BackendProcessError

logger = logging.getLogger(__name__)

BackendEventHook = Callable[[dict[str, Any]], None]


def render_user_prompt(
    user_prompt: str,
    context: dict[str, Any],
    tools: list[str] | None,
) -> str:
    parts = [user_prompt]
    if context:
        parts.append("Context JSON:")
        parts.append(json.dumps(context, ensure_ascii=False, indent=2))
    if tools:
        parts.append("Allowed tools:")
        parts.append(json.dumps(tools, ensure_ascii=False))
    return "\n\n".join(parts)


class CommandBackend(AgentBackend):
    """Runs an agent CLI as a subprocess and streams its JSON-lines output.

    Subclasses only decide how the command line is built. Cancelling the
    consuming task kills the child process so an aborted workflow never
    leaves an agent running behind it.
    """

    name = "command"
    default_binary = ""

    def __init__(
        self,
        binary: str | None = None,
        working_directory: Path | None = None,
        *,
        model: str | None = None,
        event_hook: BackendEventHook | None = None,
    ) -> None:
        self.binary = binary or self.default_binary
        self.working_directory = working_directory
        self.model = model
        self.event_hook = event_hook

    def _emit(self, payload: dict[str, Any]) -> None:
        logger.debug("%s backend event: %s", self.name, payload)
        if self.event_hook is not None:
            self.event_hook(payload)

    def build_command(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        tools: list[str] | None = None,
    ) -> list[str]:
        raise NotImplementedError

    def _requested_model(self, context: dict[str, Any]) -> str | None:
        requested = context.get("model")
        if isinstance(requested, str) and requested.strip():
            return requested.strip()
        return self.model

    @staticmethod
    def _extract_content(event: dict[str, Any]) -> str:
        content = event.get("content")
        if isinstance(content, str):
            return content
        if isinstance(content, list):
            parts: list[str] = []
            for item in content:
                if isinstance(item, dict):
                    text = item.get("text")
                    if isinstance(text, str):
                        parts.append(text)
            return "".join(parts)

        delta = event.get("delta")
        if isinstance(delta, str):
            return delta

        message = event.get("message")
        if isinstance(message, str):
            return message
        if isinstance(message, dict):
            msg_content = message.get("content")
            if isinstance(msg_content, str):
                return msg_content
            if isinstance(msg_content, list):
                return CommandBackend._extract_content({"content": msg_content})

        item = event.get("item")
        if isinstance(item, dict) and item.get("type") in {"agent_message", "assistant_message"}:
            text = item.get("text")
            if isinstance(text, str):
                return text

        return ""

    @staticmethod
    def _appears_partial_json(raw: str) -> bool:
        return raw.count("{") > raw.count("}") or raw.count("[") > raw.count("]")

    @staticmethod
    async def _terminate(process: asyncio.subprocess.Process) -> None:
        if process.returncode is not None:
            return
        try:
            process.kill()
        except ProcessLookupError:
            return
        await process.wait()

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        tools: list[str] | None = None,
    ) -> AsyncIterator[str]:
        command = self.build_command(system_prompt, user_prompt, context, tools)
        cwd = str(self.working_directory) if self.working_directory else None
        self._emit(
            {
                "event": "cli_start",
                "backend": self.name,
                "command": command[:3],
                "tool_mode": bool(tools),
                "model": self._requested_model(context),
            }
        )
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=cwd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise BackendProcessError(
                f"{self.name} binary not found: {self.binary}",
                backend=self.name,
                retriable=False,
            ) from exc

        if process.stdout is None:
            await self._terminate(process)
            raise BackendProcessError(
                f"{self.name} backend did not expose stdout.",
                backend=self.name,
                retriable=False,
            )

        try:
            parse_buffer = ""
            async for raw_line in process.stdout:
                line = raw_line.decode("utf-8", errors="replace").strip()
                if not line:
                    continue
                candidate = f"{parse_buffer}{line}" if parse_buffer else line
                try:
                    event = json.loads(candidate)
                    parse_buffer = ""
                except json.JSONDecodeError:
                    if self._appears_partial_json(candidate):
                        parse_buffer = candidate
                        self._emit({"event": "json_partial", "bytes": len(candidate)})
                        continue
                    parse_buffer = ""
                    self._emit({"event": "json_parse_fallback", "line": line[:200]})
                    continue

                if not isinstance(event, dict):
                    continue
                content = self._extract_content(event)
                self._emit(
                    {
                        "event": "json_event",
                        "type": str(event.get("type", "")),
                        "has_content": bool(content),
                    }
                )
                if content:
                    yield content

            if parse_buffer:
                self._emit({"event": "json_buffer_flush", "bytes": len(parse_buffer)})

            return_code = await process.wait()
        except BaseException:
            await self._terminate(process)
            self._emit({"event": "cli_killed", "backend": self.name})
            raise

        stderr_output = ""
        if process.stderr is not None:
            stderr_output = (await process.stderr.read()).decode("utf-8", errors="replace").strip()
        if return_code != 0:
            self._emit(
                {
                    "event": "cli_exit",
                    "exit_code": return_code,
                    "stderr": stderr_output[:400],
                }
            )
            raise BackendExecutionError(
                f"{self.name} backend failed with exit code {return_code}: {stderr_output}",
                backend=self.name,
                exit_code=return_code,
                retriable=True,
            )
        self._emit({"event": "cli_exit", "exit_code": 0})


class ClaudeCodeBackend(CommandBackend):
    name = "claude"
    default_binary = "claude"

    @staticmethod
    def _extract_content(event: dict[str, Any]) -> str:
        # stream-json repeats the assistant text in the final result event.
        if event.get("type") != "result":
            return ""
        result = event.get("result")
        return result if isinstance(result, str) else ""

    def build_command(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        tools: list[str] | None = None,
    ) -> list[str]:
        command = [
            self.binary,
            "-p",
            render_user_prompt(user_prompt, context, tools),
            "--output-format",
            "stream-json",
            "--verbose",
            "--append-system-prompt",
            system_prompt,
        ]
        model = self._requested_model(context)
        if model:
            command.extend(["--model", model])
        return command


class CodexBackend(CommandBackend):
    name = "codex"
    default_binary = "codex"

    def build_command(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        tools: list[str] | None = None,
    ) -> list[str]:
        command = [
            self.binary,
            "exec",
            "--json",
            "-c",
            f"instructions={json.dumps(system_prompt, ensure_ascii=False)}",
        ]
        model = self._requested_model(context)
        if model:
            command.extend(["-m", model])
        command.append(render_user_prompt(user_prompt, context, tools))
        return command
