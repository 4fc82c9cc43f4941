from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal

Phase = Literal["PLAN", "CODE", "TEST", "REVIEW", "FIX", "DONE", "FAILED"]
WorkflowStatus = Literal["running", "waiting", "done", "failed"]
VerdictDecision = Literal["allow", "block", "needs_approval", "reject"]

PHASES = ("PLAN", "CODE", "TEST", "REVIEW", "FIX", "DONE", "FAILED")
WORK_PHASES = ("PLAN", "CODE", "TEST", "REVIEW", "FIX")
TERMINAL_PHASES = frozenset({"DONE", "FAILED"})
PATCH_PHASES = frozenset({"CODE", "FIX"})

# Phase that follows an allowed artifact.
NEXT_PHASE: dict[str, str] = {
    "PLAN": "CODE",
    "CODE": "TEST",
    "TEST": "REVIEW",
    "REVIEW": "DONE",
    "FIX": "TEST",
}

USER_ABORT = "user-abort"


def utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


@dataclass(frozen=True, slots=True)
class Task:
    goal: str
    allowed_paths: tuple[str, ...] = ()
    constraints: tuple[str, ...] = ()
    acceptance_criteria: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "goal": self.goal,
            "allowed_paths": list(self.allowed_paths),
            "constraints": list(self.constraints),
            "acceptance_criteria": list(self.acceptance_criteria),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Task:
        return cls(
            goal=str(payload["goal"]),
            allowed_paths=tuple(str(item) for item in payload.get("allowed_paths", [])),
            constraints=tuple(str(item) for item in payload.get("constraints", [])),
            acceptance_criteria=tuple(
                str(item) for item in payload.get("acceptance_criteria", [])
            ),
        )


@dataclass(frozen=True, slots=True)
class GuardrailVerdict:
    decision: VerdictDecision
    reason: str = ""
    check: str = ""
    failure_kind: str | None = None

    @property
    def allowed(self) -> bool:
        return self.decision == "allow"

    @classmethod
    def allow(cls) -> GuardrailVerdict:
        return cls("allow")

    @classmethod
    def block(cls, check: str, reason: str, failure_kind: str) -> GuardrailVerdict:
        return cls("block", reason=reason, check=check, failure_kind=failure_kind)

    @classmethod
    def needs_approval(cls, check: str, reason: str) -> GuardrailVerdict:
        return cls("needs_approval", reason=reason, check=check)

    @classmethod
    def reject(cls, check: str, reason: str, failure_kind: str) -> GuardrailVerdict:
        return cls("reject", reason=reason, check=check, failure_kind=failure_kind)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True, slots=True)
class ApprovalDecision:
    approved: bool
    decided_by: str = "operator"
    note: str = ""
    decided_at: str = field(default_factory=utcnow_iso)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> ApprovalDecision:
        return cls(
            approved=bool(payload["approved"]),
            decided_by=str(payload.get("decided_by") or "operator"),
            note=str(payload.get("note") or ""),
            decided_at=str(payload.get("decided_at") or utcnow_iso()),
        )


@dataclass(slots=True)
class HistoryEntry:
    phase: str
    attempt: int
    outcome: str
    next_phase: str
    at: str = field(default_factory=utcnow_iso)
    artifact_kind: str | None = None
    verdict: dict[str, Any] | None = None
    reason: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> HistoryEntry:
        return cls(
            phase=str(payload["phase"]),
            attempt=int(payload["attempt"]),
            outcome=str(payload["outcome"]),
            next_phase=str(payload["next_phase"]),
            at=str(payload.get("at") or utcnow_iso()),
            artifact_kind=payload.get("artifact_kind"),
            verdict=payload.get("verdict"),
            reason=str(payload.get("reason") or ""),
        )


def artifact_key(phase: str, attempt: int) -> str:
    return f"{phase}-{attempt}"


@dataclass(slots=True)
class WorkflowState:
    workflow_id: str
    task: Task
    phase: str = "PLAN"
    status: WorkflowStatus = "running"
    attempts: dict[str, int] = field(default_factory=dict)
    failures: dict[str, int] = field(default_factory=dict)
    history: list[HistoryEntry] = field(default_factory=list)
    approvals: dict[str, ApprovalDecision] = field(default_factory=dict)
    pending_approval: dict[str, Any] | None = None
    failure_reason: str | None = None
    failure_detail: str = ""
    # Run settings fixed at start: human_approve, approval_phases, dry_run, target_branch.
    settings: dict[str, Any] = field(default_factory=dict)
    created_at: str = field(default_factory=utcnow_iso)
    updated_at: str = field(default_factory=utcnow_iso)

    @property
    def terminal(self) -> bool:
        return self.phase in TERMINAL_PHASES

    @property
    def waiting(self) -> bool:
        return self.status == "waiting"

    def attempt_count(self, phase: str) -> int:
        return int(self.attempts.get(phase, 0))

    def failure_count(self, phase: str, failure_kind: str) -> int:
        return int(self.failures.get(f"{phase}:{failure_kind}", 0))

    def to_dict(self) -> dict[str, Any]:
        return {
            "workflow_id": self.workflow_id,
            "task": self.task.to_dict(),
            "phase": self.phase,
            "status": self.status,
            "terminal": self.terminal,
            "attempts": dict(self.attempts),
            "failures": dict(self.failures),
            "history": [entry.to_dict() for entry in self.history],
            "approvals": {key: value.to_dict() for key, value in self.approvals.items()},
            "pending_approval": self.pending_approval,
            "failure_reason": self.failure_reason,
            "failure_detail": self.failure_detail,
            "settings": dict(self.settings),
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> WorkflowState:
        return cls(
            workflow_id=str(payload["workflow_id"]),
            task=Task.from_dict(payload["task"]),
            phase=str(payload.get("phase", "PLAN")),
            status=payload.get("status", "running"),
            attempts={str(k): int(v) for k, v in payload.get("attempts", {}).items()},
            failures={str(k): int(v) for k, v in payload.get("failures", {}).items()},
            history=[HistoryEntry.from_dict(item) for item in payload.get("history", [])],
            approvals={
                str(key): ApprovalDecision.from_dict(value)
                for key, value in payload.get("approvals", {}).items()
            },
            pending_approval=payload.get("pending_approval"),
            failure_reason=payload.get("failure_reason"),
            failure_detail=str(payload.get("failure_detail") or ""),
            settings=dict(payload.get("settings") or {}),
            created_at=str(payload.get("created_at") or utcnow_iso()),
            updated_at=str(payload.get("updated_at") or utcnow_iso()),
        )
