from __future__ import annotations

import fnmatch
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field

from foreman.artifacts import Artifact, Patch, Plan, Review, TestReport
from foreman.config import GuardrailsConfig, WorkflowConfig
from foreman.models import PATCH_PHASES, ApprovalDecision, GuardrailVerdict, Task

GLOB_CHARS = frozenset("*?[")


def normalize_path(path: str) -> str:
    normalized = path.replace("\\", "/").strip()
    while normalized.startswith("./"):
        normalized = normalized[2:]
    return normalized


def _escapes_root(path: str) -> bool:
    return path.startswith("/") or ".." in path.split("/")


def path_matches(path: str, pattern: str) -> bool:
    """Match a repository path against an allowed-path pattern.

    Patterns ending in ``/`` and plain names without glob characters match the
    path itself and everything beneath it; anything else is an fnmatch glob.
    """
    normalized = normalize_path(path)
    pattern = normalize_path(pattern)
    if not pattern:
        return False
    if pattern.endswith("/"):
        return normalized.startswith(pattern)
    if not GLOB_CHARS & set(pattern):
        return normalized == pattern or normalized.startswith(f"{pattern}/")
    return fnmatch.fnmatch(normalized, pattern)


def matching_pattern(path: str, patterns: Sequence[str]) -> str | None:
    for pattern in patterns:
        if path_matches(path, pattern):
            return pattern
    return None


@dataclass(frozen=True, slots=True)
class CheckInput:
    phase: str
    artifact: Artifact
    task: Task
    approval: ApprovalDecision | None = None


Check = Callable[[CheckInput], GuardrailVerdict]


def scope_check(item: CheckInput) -> GuardrailVerdict:
    if item.phase not in PATCH_PHASES or not isinstance(item.artifact, Patch):
        return GuardrailVerdict.allow()
    violations = [
        path
        for path in item.artifact.all_paths()
        if _escapes_root(normalize_path(path))
        or matching_pattern(path, item.task.allowed_paths) is None
    ]
    if violations:
        allowed = ", ".join(item.task.allowed_paths) or "(none)"
        return GuardrailVerdict.block(
            "scope",
            f"Patch touches paths outside the allowed scope [{allowed}]: "
            + ", ".join(violations),
            "ScopeViolation",
        )
    return GuardrailVerdict.allow()


def plan_quality_check(item: CheckInput) -> GuardrailVerdict:
    if item.phase != "PLAN" or not isinstance(item.artifact, Plan):
        return GuardrailVerdict.allow()
    steps = [step for step in item.artifact.steps if step.strip()]
    if not steps:
        return GuardrailVerdict.reject(
            "plan_quality",
            "Plan must include at least one actionable step.",
            "QualityFailure",
        )
    return GuardrailVerdict.allow()


def quality_gate(item: CheckInput) -> GuardrailVerdict:
    if item.phase != "TEST" or not isinstance(item.artifact, TestReport):
        return GuardrailVerdict.allow()
    if not item.artifact.passed:
        commands = ", ".join(item.artifact.commands) or "no commands recorded"
        return GuardrailVerdict.reject(
            "quality",
            f"Test report did not pass ({commands}).",
            "QualityFailure",
        )
    return GuardrailVerdict.allow()


def review_gate(item: CheckInput) -> GuardrailVerdict:
    if item.phase != "REVIEW" or not isinstance(item.artifact, Review):
        return GuardrailVerdict.allow()
    decision = item.artifact.approve
    if decision is None:
        if item.approval is None:
            return GuardrailVerdict.needs_approval(
                "review",
                "Review did not declare an explicit approve/reject decision.",
            )
        if not item.approval.approved:
            return GuardrailVerdict.block(
                "review",
                f"Undecided review was denied by {item.approval.decided_by}.",
                "ApprovalDenied",
            )
        decision = True
    if decision is False:
        findings = "; ".join(item.artifact.must_fix[:10]) or "no must-fix items listed"
        return GuardrailVerdict.reject(
            "review",
            f"Review rejected the change: {findings}",
            "ReviewRejected",
        )
    return GuardrailVerdict.allow()


@dataclass(slots=True)
class GuardrailEngine:
    """Evaluates the named checks for one artifact, in order.

    Scope is always evaluated first so a patch that escapes the task's
    allowed paths fails the workflow before any quality signal is read.
    """

    guardrails: GuardrailsConfig = field(default_factory=GuardrailsConfig)
    workflow: WorkflowConfig = field(default_factory=WorkflowConfig)
    extra_checks: list[tuple[str, Check]] = field(default_factory=list)

    def forbidden_paths_check(self, item: CheckInput) -> GuardrailVerdict:
        if item.phase not in PATCH_PHASES or not isinstance(item.artifact, Patch):
            return GuardrailVerdict.allow()
        for path in item.artifact.all_paths():
            matched = matching_pattern(path, self.guardrails.forbidden_paths)
            if matched:
                return GuardrailVerdict.block(
                    "forbidden_paths",
                    f"Forbidden path touched: {path} matched {matched}",
                    "ScopeViolation",
                )
        return GuardrailVerdict.allow()

    def max_file_changes_check(self, item: CheckInput) -> GuardrailVerdict:
        if item.phase not in PATCH_PHASES or not isinstance(item.artifact, Patch):
            return GuardrailVerdict.allow()
        max_files = int(self.guardrails.max_file_changes_per_patch)
        file_count = len(item.artifact.all_paths())
        if max_files > 0 and file_count > max_files:
            return GuardrailVerdict.block(
                "max_file_changes",
                f"Patch changes {file_count} files (max {max_files}).",
                "GuardrailBlocked",
            )
        return GuardrailVerdict.allow()

    def human_approval_check(self, item: CheckInput) -> GuardrailVerdict:
        if not self.workflow.requires_approval(item.phase):
            return GuardrailVerdict.allow()
        if item.approval is None:
            return GuardrailVerdict.needs_approval(
                "human_approval",
                f"{item.phase} output requires human approval.",
            )
        if not item.approval.approved:
            note = f": {item.approval.note}" if item.approval.note else ""
            return GuardrailVerdict.block(
                "human_approval",
                f"Approval denied by {item.approval.decided_by}{note}",
                "ApprovalDenied",
            )
        return GuardrailVerdict.allow()

    def checks(self) -> list[tuple[str, Check]]:
        return [
            ("scope", scope_check),
            ("forbidden_paths", self.forbidden_paths_check),
            ("max_file_changes", self.max_file_changes_check),
            ("plan_quality", plan_quality_check),
            ("quality", quality_gate),
            ("review", review_gate),
            *self.extra_checks,
            ("human_approval", self.human_approval_check),
        ]

    def evaluate(
        self,
        phase: str,
        artifact: Artifact,
        task: Task,
        approval: ApprovalDecision | None = None,
    ) -> GuardrailVerdict:
        item = CheckInput(phase=phase, artifact=artifact, task=task, approval=approval)
        for _name, check in self.checks():
            verdict = check(item)
            if not verdict.allowed:
                return verdict
        return GuardrailVerdict.allow()
