from __future__ import annotations

import asyncio
import json
import logging
import re
import shlex
from pathlib import Path
from typing import Any

from foreman.artifacts import PHASE_ARTIFACTS, Artifact, Plan, TestReport, artifact_from_dict
from foreman.backends.base import AgentBackend, BackendExecutionError, BackendTimeoutError
from foreman.config import ProjectConfig
from foreman.errors import RunnerError
from foreman.runners.base import PhaseContext, Runner
from foreman.specialists import (
    CoderAgent,
    CriticAgent,
    DocumenterAgent,
    PlannerAgent,
    SpecialistAgent,
    TesterAgent,
)

logger = logging.getLogger(__name__)

SHELL_REQUIRED_PATTERN = re.compile(r"(?:\|\||&&|[|;<>`]|[$]\()")
FENCED_BLOCK_PATTERN = re.compile(r"```(?:json)?\s*\n(.*?)```", re.DOTALL)


def extract_json_objects(raw_text: str) -> list[dict[str, Any]]:
    """JSON objects found in agent output, in order of appearance."""
    text = raw_text.strip()
    if not text:
        return []
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        parsed = None
    if isinstance(parsed, dict):
        return [parsed]

    payloads: list[dict[str, Any]] = []
    for block in FENCED_BLOCK_PATTERN.findall(text):
        try:
            parsed = json.loads(block)
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict):
            payloads.append(parsed)
    if payloads:
        return payloads

    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not (line.startswith("{") and line.endswith("}")):
            continue
        try:
            parsed = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict):
            payloads.append(parsed)
    if payloads:
        return payloads

    start, end = text.find("{"), text.rfind("}")
    if 0 <= start < end:
        try:
            parsed = json.loads(text[start : end + 1])
        except json.JSONDecodeError:
            return []
        if isinstance(parsed, dict):
            return [parsed]
    return []


def extract_plan_steps(content: str) -> list[str]:
    steps: list[str] = []
    for raw_line in content.splitlines():
        line = raw_line.strip()
        if not line:
            continue
        match = re.match(r"^(?:[-*]|\d+[.)])\s+(.+)$", line)
        if match:
            steps.append(match.group(1).strip())
    return steps[:24]


def parse_artifact(phase: str, content: str) -> Artifact:
    expected_kind = PHASE_ARTIFACTS.get(phase)
    if expected_kind is None:
        raise RunnerError(f"No artifact type is defined for phase {phase}", kind="Fatal")

    payloads = extract_json_objects(content)
    if not payloads:
        if expected_kind == "Plan":
            steps = extract_plan_steps(content)
            if steps:
                return Plan(steps=steps)
        raise RunnerError(
            f"{phase} output did not contain a JSON {expected_kind} object.", kind="Transient"
        )

    payload = dict(payloads[-1])
    payload["kind"] = expected_kind
    try:
        return artifact_from_dict(payload)
    except (TypeError, ValueError) as exc:
        raise RunnerError(
            f"Malformed {expected_kind} from {phase}: {exc}", kind="Transient"
        ) from exc


class AgentRunner(Runner):
    """Runner that delegates each phase to a specialist agent.

    When test commands are configured the TEST phase runs them locally
    instead of asking an agent, so a test report always reflects real exit
    codes.
    """

    def __init__(
        self,
        backend: AgentBackend,
        *,
        repo_root: Path,
        project: ProjectConfig | None = None,
        model: str | None = None,
        run_test_commands: bool = True,
    ) -> None:
        self.backend = backend
        self.repo_root = repo_root.resolve()
        self.project = project or ProjectConfig()
        self.run_test_commands = run_test_commands
        coder = CoderAgent(backend, model=model)
        self.specialists: dict[str, SpecialistAgent] = {
            "PLAN": PlannerAgent(backend, model=model),
            "CODE": coder,
            "FIX": coder,
            "TEST": TesterAgent(backend, model=model),
            "REVIEW": CriticAgent(backend, model=model),
            "DONE": DocumenterAgent(backend, model=model),
        }

    def verification_commands(self) -> list[str]:
        commands = [
            self.project.lint_command,
            self.project.type_check_command,
            self.project.test_command,
        ]
        return [command.strip() for command in commands if command and command.strip()]

    async def execute(self, phase: str, context: PhaseContext, *, timeout: float) -> Artifact:
        try:
            return await asyncio.wait_for(self._execute(phase, context), timeout=timeout)
        except TimeoutError as exc:
            raise RunnerError(f"{phase} timed out after {timeout:.1f}s", kind="Timeout") from exc
        except BackendTimeoutError as exc:
            raise RunnerError(str(exc), kind="Timeout") from exc
        except BackendExecutionError as exc:
            kind = "Transient" if exc.retriable else "Fatal"
            raise RunnerError(str(exc), kind=kind) from exc

    async def _execute(self, phase: str, context: PhaseContext) -> Artifact:
        commands = self.verification_commands()
        if phase == "TEST" and self.run_test_commands and commands:
            return await self._run_tests_locally(commands)

        specialist = self.specialists.get(phase)
        if specialist is None:
            raise RunnerError(f"No specialist handles phase {phase}", kind="Fatal")

        instruction = context.instructions or f"Execute the {phase} phase."
        if context.diagnostics:
            instruction = (
                f"{instruction}\n\nFailure diagnostics from earlier attempts:\n"
                + "\n".join(f"- {item}" for item in context.diagnostics)
            )
        logger.info(
            "Running %s specialist for %s attempt %d", specialist.role, phase, context.attempt
        )
        response = await specialist.run(
            instruction,
            context.to_dict(),
            allowed_tools=list(context.tools) or None,
        )
        return parse_artifact(phase, response.content)

    async def _run_tests_locally(self, commands: list[str]) -> TestReport:
        results = [await self._run_command(command) for command in commands]
        sections: list[str] = []
        for result in results:
            sections.append(
                f"$ {result['command']} (exit {result['exit_code']})\n"
                f"{result['stdout_tail']}\n{result['stderr_tail']}".strip()
            )
        return TestReport(
            commands=[result["command"] for result in results],
            passed=all(result["exit_code"] == 0 for result in results),
            output="\n\n".join(sections),
        )

    async def _run_command(self, command: str) -> dict[str, Any]:
        command_text = command.strip()
        used_shell = bool(SHELL_REQUIRED_PATTERN.search(command_text))
        argv: list[str] = []
        if not used_shell:
            try:
                argv = shlex.split(command_text)
            except ValueError:
                used_shell = True

        try:
            if used_shell:
                process = await asyncio.create_subprocess_shell(
                    command_text,
                    cwd=self.repo_root,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                )
            else:
                process = await asyncio.create_subprocess_exec(
                    *argv,
                    cwd=self.repo_root,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                )
        except FileNotFoundError:
            return {
                "command": command,
                "exit_code": 127,
                "stdout_tail": "",
                "stderr_tail": f"Command not found: {argv[0] if argv else command_text}",
                "used_shell": used_shell,
            }

        try:
            stdout, stderr = await process.communicate()
        except asyncio.CancelledError:
            if process.returncode is None:
                process.kill()
                await process.wait()
            raise

        logger.info("Verification command %r exited with %s", command, process.returncode)
        return {
            "command": command,
            "exit_code": process.returncode,
            "stdout_tail": stdout.decode("utf-8", errors="replace").strip()[-1000:],
            "stderr_tail": stderr.decode("utf-8", errors="replace").strip()[-1000:],
            "used_shell": used_shell,
        }
