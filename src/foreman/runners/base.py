from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from foreman.artifacts import Artifact
from foreman.models import Task

# Tools an agent may use per phase; everything else is refused.
PHASE_TOOLS: dict[str, tuple[str, ...]] = {
    "PLAN": ("read_file", "search"),
    "CODE": ("edit_file", "read_file", "search", "write_file"),
    "FIX": ("edit_file", "read_file", "search", "write_file"),
    "TEST": ("read_file", "run_command", "search"),
    "REVIEW": ("read_file", "search"),
    "DONE": ("read_file",),
}

PHASE_INSTRUCTIONS: dict[str, str] = {
    "PLAN": "Produce an implementation plan for the task.",
    "CODE": "Implement the accepted plan as a unified diff.",
    "TEST": "Run the project's verification commands against the current change.",
    "REVIEW": "Review the current change against the task and its acceptance criteria.",
    "FIX": "Produce a unified diff that resolves the reported failures.",
    "DONE": "Write the pull request description for the accepted change.",
}


@dataclass(frozen=True, slots=True)
class PhaseContext:
    workflow_id: str
    phase: str
    attempt: int
    task: Task
    artifacts: dict[str, dict[str, Any]] = field(default_factory=dict)
    instructions: str = ""
    diagnostics: tuple[str, ...] = ()
    tools: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "workflow_id": self.workflow_id,
            "phase": self.phase,
            "attempt": self.attempt,
            "task": self.task.to_dict(),
            "artifacts": dict(self.artifacts),
            "diagnostics": list(self.diagnostics),
        }


class Runner(ABC):
    """Executes one phase and returns its artifact.

    Implementations keep no state between calls and raise
    :class:`foreman.errors.RunnerError` for every failure.
    """

    @abstractmethod
    async def execute(self, phase: str, context: PhaseContext, *, timeout: float) -> Artifact:
        raise NotImplementedError
