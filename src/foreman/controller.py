from __future__ import annotations

import asyncio
import logging
import os
import socket
from contextlib import suppress
from dataclasses import replace
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from foreman.artifacts import Artifact, Patch, PRDescription, RunnerFailure, TestReport
from foreman.errors import (
    ConcurrentUpdateError,
    ForemanError,
    RunnerError,
    StalePatchError,
    StoreError,
    WorkspaceError,
)
from foreman.guardrails import GuardrailEngine
from foreman.models import (
    NEXT_PHASE,
    PATCH_PHASES,
    USER_ABORT,
    ApprovalDecision,
    GuardrailVerdict,
    HistoryEntry,
    Task,
    WorkflowState,
    artifact_key,
)
from foreman.policy import EscalationPolicy
from foreman.runners.base import PHASE_INSTRUCTIONS, PHASE_TOOLS, PhaseContext, Runner
from foreman.state.store import ArtifactStore
from foreman.state.workspace import Workspace

logger = logging.getLogger(__name__)

# Extra time granted to a runner past its own timeout before it is cancelled.
RUNNER_GRACE_SECONDS = 5.0


def new_workflow_id() -> str:
    return f"{datetime.now(UTC):%Y%m%d%H%M%S}-{uuid4().hex[:8]}"


def default_owner() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid4().hex[:6]}"


class _Aborted(Exception):
    """Internal signal that the workflow was aborted while a step was running."""

    def __init__(self, state: WorkflowState) -> None:
        super().__init__(state.workflow_id)
        self.state = state


class WorkflowController:
    """Drives a task through PLAN, CODE, TEST, REVIEW and FIX to DONE or FAILED.

    Each step runs one phase: the Runner produces an artifact, the artifact is
    persisted, the guardrails judge it, the policy routes failures, and the
    updated state is persisted before the next phase starts. Everything needed
    to continue lives in the store, so a crashed run resumes from the last
    persisted step without re-invoking the Runner for an artifact that was
    already written.
    """

    def __init__(
        self,
        store: ArtifactStore,
        runner: Runner,
        guardrails: GuardrailEngine,
        policy: EscalationPolicy,
        workspace: Workspace,
        *,
        target_branch: str = "main",
        phase_timeout: float = 600.0,
        owner: str | None = None,
    ) -> None:
        self.store = store
        self.runner = runner
        self.guardrails = guardrails
        self.policy = policy
        self.workspace = workspace
        self.target_branch = target_branch
        self.phase_timeout = phase_timeout
        self.owner = owner or default_owner()
        self._abort_events: dict[str, asyncio.Event] = {}

    # Public operations

    async def run(self, task: Task, *, workflow_id: str | None = None) -> WorkflowState:
        workflow_id = workflow_id or new_workflow_id()
        if self.store.get_envelope(workflow_id) is not None:
            raise StoreError(f"Workflow {workflow_id} already exists; use resume.")
        state = WorkflowState(workflow_id=workflow_id, task=task, settings=self._run_settings())
        self.store.save_state(state)
        logger.info("Started workflow %s: %s", workflow_id, task.goal)
        return await self._drive(workflow_id)

    async def resume(self, workflow_id: str) -> WorkflowState:
        state = self.store.load_state(workflow_id)
        if state.phase == "DONE" and not self._completion_recorded(state):
            return await self._drive(workflow_id)
        if state.terminal:
            return state
        if state.waiting:
            logger.info("Workflow %s is waiting for an approval decision", workflow_id)
            return state
        return await self._drive(workflow_id)

    def abort(self, workflow_id: str, *, reason: str = "") -> WorkflowState:
        event = self._abort_events.get(workflow_id)
        if event is not None:
            event.set()

        def _updater(state: WorkflowState) -> WorkflowState:
            if state.terminal:
                return state
            state.history.append(
                HistoryEntry(
                    phase=state.phase,
                    attempt=state.attempt_count(state.phase),
                    outcome="aborted",
                    next_phase="FAILED",
                    reason=reason or "Aborted by operator.",
                )
            )
            state.phase = "FAILED"
            state.status = "failed"
            state.pending_approval = None
            state.failure_reason = USER_ABORT
            state.failure_detail = reason or "Aborted by operator."
            return state

        current = self.store.load_state(workflow_id)
        if current.terminal:
            return current
        state = self.store.update_state(workflow_id, _updater)
        logger.info("Aborted workflow %s", workflow_id)
        return state

    async def approve(
        self,
        workflow_id: str,
        approved: bool,
        *,
        decided_by: str = "operator",
        note: str = "",
    ) -> WorkflowState:
        state = self.store.load_state(workflow_id)
        pending = state.pending_approval
        if not state.waiting or not pending:
            raise ForemanError(f"Workflow {workflow_id} has no pending approval.")

        decision = ApprovalDecision(approved=approved, decided_by=decided_by, note=note)
        phase = str(pending["phase"])
        attempt = int(pending["attempt"])
        key = artifact_key(phase, attempt)

        if pending.get("type") == "escalation":
            state.approvals[f"escalation:{key}"] = decision
            failure_kind = str(pending["failure_kind"])
            if approved:
                # A granted escalation restarts the failure budget for this kind.
                state.failures[f"{phase}:{failure_kind}"] = 0
                next_phase = "FIX" if pending.get("action") == "fix" else phase
                state.history.append(
                    HistoryEntry(
                        phase=phase,
                        attempt=attempt,
                        outcome="escalation-approved",
                        next_phase=next_phase,
                        reason=note,
                    )
                )
                state.phase = next_phase
                state.status = "running"
            else:
                state.history.append(
                    HistoryEntry(
                        phase=phase,
                        attempt=attempt,
                        outcome="escalation-denied",
                        next_phase="FAILED",
                        reason=note,
                    )
                )
                self._mark_failed(state, "ApprovalDenied", note or "Escalation denied.")
        else:
            state.approvals[key] = decision
            state.status = "running"
        state.pending_approval = None
        self.store.save_state(state)
        logger.info(
            "Recorded %s for %s of workflow %s",
            "approval" if approved else "denial",
            key,
            workflow_id,
        )
        if state.terminal:
            return state
        return await self._drive(workflow_id)

    def report(self, workflow_id: str) -> dict[str, Any]:
        state = self.store.load_state(workflow_id)
        final_artifacts: dict[str, Any] = {}
        for phase, (attempt, artifact) in self._allowed_artifacts(state).items():
            final_artifacts[phase] = {"attempt": attempt, "artifact": artifact.to_dict()}
        completion = self.store.get(workflow_id, "DONE", 1)
        if isinstance(completion, PRDescription):
            final_artifacts["DONE"] = {"attempt": 1, "artifact": completion.to_dict()}
        payload: dict[str, Any] = {
            "workflow": state.to_dict(),
            "artifacts": [record.to_dict() for record in self.store.history(workflow_id)],
            "final_artifacts": final_artifacts,
            "applied_patches": self.store.applied_patches(workflow_id),
        }
        if state.phase == "FAILED":
            payload["failure"] = {
                "reason": state.failure_reason,
                "detail": state.failure_detail,
                "failures": dict(state.failures),
            }
        return payload

    def list_workflows(self) -> list[WorkflowState]:
        return [self.store.load_state(workflow_id) for workflow_id in self.store.list_workflows()]

    # Driving loop

    async def _drive(self, workflow_id: str) -> WorkflowState:
        self.store.acquire_lease(workflow_id, self.owner, ttl_seconds=self._lease_ttl())
        self._abort_events[workflow_id] = asyncio.Event()
        try:
            state = self.store.load_state(workflow_id)
            revision = self.store.state_revision(workflow_id)
            self._check_workspace(state)
            target_branch = str(state.settings.get("target_branch") or self.target_branch)
            self.workspace.prepare(workflow_id, target_branch)
            for record in self.store.applied_patches(workflow_id):
                self.workspace.note_applied(workflow_id, int(record.get("sequence", 0)))

            while not state.terminal and not state.waiting:
                self.store.acquire_lease(workflow_id, self.owner, ttl_seconds=self._lease_ttl())
                try:
                    state = await self._step(state)
                except _Aborted as aborted:
                    return aborted.state
                committed = self._commit(state, revision)
                if committed is None:
                    return self.store.load_state(workflow_id)
                revision = committed

            if state.phase == "DONE" and not self._completion_recorded(state):
                state = await self._complete(state)
                if self._commit(state, revision) is None:
                    return self.store.load_state(workflow_id)
            return state
        finally:
            self._abort_events.pop(workflow_id, None)
            self.store.release_lease(workflow_id, self.owner)

    def _lease_ttl(self) -> float:
        return self.phase_timeout + RUNNER_GRACE_SECONDS + 60.0

    def _run_settings(self) -> dict[str, Any]:
        workflow = self.guardrails.workflow
        return {
            "human_approve": bool(workflow.human_approve),
            "approval_phases": list(workflow.approval_phases),
            "dry_run": self.workspace.dry_run,
            "target_branch": self.target_branch,
        }

    def _guardrails_for(self, state: WorkflowState) -> GuardrailEngine:
        """The engine with the approval gates the workflow was started with."""
        settings = state.settings
        if "human_approve" not in settings and "approval_phases" not in settings:
            return self.guardrails
        workflow = replace(
            self.guardrails.workflow,
            human_approve=bool(settings.get("human_approve", False)),
            approval_phases=[str(phase) for phase in settings.get("approval_phases", [])],
        )
        return replace(self.guardrails, workflow=workflow)

    def _check_workspace(self, state: WorkflowState) -> None:
        dry_run = state.settings.get("dry_run")
        if dry_run is None or bool(dry_run) == self.workspace.dry_run:
            return
        mode = "dry-run" if dry_run else "git"
        raise WorkspaceError(
            f"Workflow {state.workflow_id} was started in {mode} mode; "
            f"resume it with a {mode} workspace."
        )

    def _commit(self, state: WorkflowState, revision: int) -> int | None:
        """Persist ``state`` unless someone else changed it; None means stop driving."""
        try:
            return self.store.save_state(state, expected_revision=revision)
        except ConcurrentUpdateError:
            current = self.store.load_state(state.workflow_id)
            if current.terminal:
                logger.info(
                    "Workflow %s reached %s concurrently; discarding step result",
                    state.workflow_id,
                    current.phase,
                )
                return None
            raise

    async def _step(self, state: WorkflowState) -> WorkflowState:
        phase = state.phase
        attempt = state.attempt_count(phase) + 1
        key = artifact_key(phase, attempt)
        workflow_id = state.workflow_id

        artifact = self.store.get(workflow_id, phase, attempt)
        if artifact is None:
            artifact = await self._invoke_runner(state, phase, attempt)
            self.store.put(workflow_id, phase, attempt, artifact)
        else:
            logger.info("Reusing stored artifact %s for workflow %s", key, workflow_id)

        if isinstance(artifact, RunnerFailure):
            state.attempts[phase] = attempt
            return self._route_failure(
                state,
                phase,
                attempt,
                artifact.error_kind,
                artifact.message,
                outcome="error",
                artifact_kind=artifact.kind,
            )

        guardrails = self._guardrails_for(state)
        verdict = guardrails.evaluate(phase, artifact, state.task, state.approvals.get(key))
        if verdict.decision == "needs_approval":
            state.status = "waiting"
            state.pending_approval = {
                "type": "artifact",
                "phase": phase,
                "attempt": attempt,
                "check": verdict.check,
                "reason": verdict.reason,
            }
            logger.info(
                "Workflow %s waits for approval of %s: %s", workflow_id, key, verdict.reason
            )
            return state

        state.attempts[phase] = attempt
        if verdict.decision == "block":
            failure_kind = verdict.failure_kind or "GuardrailBlocked"
            self._record(state, phase, attempt, "block", "FAILED", artifact, verdict)
            return self._mark_failed(state, failure_kind, verdict.reason)

        if verdict.decision == "reject":
            return self._route_failure(
                state,
                phase,
                attempt,
                verdict.failure_kind or "QualityFailure",
                verdict.reason,
                outcome="reject",
                artifact_kind=artifact.kind,
                verdict=verdict,
            )

        if phase in PATCH_PHASES and isinstance(artifact, Patch):
            sequence = len(state.history) + 1
            try:
                await self._apply_patch(workflow_id, key, sequence, artifact)
            except StalePatchError:
                raise
            except WorkspaceError as exc:
                return self._route_failure(
                    state,
                    phase,
                    attempt,
                    "ApplyFailed",
                    str(exc),
                    outcome="apply-failed",
                    artifact_kind=artifact.kind,
                    verdict=verdict,
                )

        next_phase = NEXT_PHASE[phase]
        self._record(state, phase, attempt, "allow", next_phase, artifact, verdict)
        state.phase = next_phase
        if next_phase == "DONE":
            state.status = "done"
        logger.info("Workflow %s: %s accepted, next %s", workflow_id, key, next_phase)
        return state

    async def _apply_patch(self, workflow_id: str, key: str, sequence: int, patch: Patch) -> None:
        applied_keys = {item.get("key") for item in self.store.applied_patches(workflow_id)}
        if key in applied_keys:
            logger.info("Patch %s already applied for workflow %s", key, workflow_id)
            return
        applied = await self.workspace.apply(workflow_id, key, sequence, patch)
        detail = applied.to_dict()
        detail.pop("key", None)
        self.store.mark_applied(workflow_id, key, detail)

    async def _invoke_runner(self, state: WorkflowState, phase: str, attempt: int) -> Artifact:
        context = self._build_context(state, phase, attempt)
        abort_event = self._abort_events.setdefault(state.workflow_id, asyncio.Event())
        runner_task = asyncio.create_task(
            self.runner.execute(phase, context, timeout=self.phase_timeout)
        )
        abort_task = asyncio.create_task(abort_event.wait())
        try:
            done, _pending = await asyncio.wait(
                {runner_task, abort_task},
                timeout=self.phase_timeout + RUNNER_GRACE_SECONDS,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            abort_task.cancel()

        if runner_task not in done:
            runner_task.cancel()
            with suppress(asyncio.CancelledError, RunnerError):
                await runner_task
            if abort_event.is_set():
                raise _Aborted(self.store.load_state(state.workflow_id))
            return RunnerFailure(
                error_kind="Timeout",
                message=f"{phase} exceeded {self.phase_timeout:.1f}s and was cancelled.",
            )

        try:
            artifact = runner_task.result()
        except RunnerError as exc:
            logger.warning("Runner failed in %s attempt %d: %s", phase, attempt, exc)
            artifact = RunnerFailure(error_kind=exc.kind, message=str(exc))

        # An abort from another process is only visible in the store.
        current = self.store.load_state(state.workflow_id)
        if current.terminal:
            raise _Aborted(current)
        return artifact

    def _build_context(self, state: WorkflowState, phase: str, attempt: int) -> PhaseContext:
        artifacts = {
            allowed_phase: artifact.to_dict()
            for allowed_phase, (_attempt, artifact) in self._allowed_artifacts(state).items()
        }
        return PhaseContext(
            workflow_id=state.workflow_id,
            phase=phase,
            attempt=attempt,
            task=state.task,
            artifacts=artifacts,
            instructions=PHASE_INSTRUCTIONS.get(phase, ""),
            diagnostics=self._diagnostics(state, phase),
            tools=PHASE_TOOLS.get(phase, ()),
        )

    def _allowed_artifacts(self, state: WorkflowState) -> dict[str, tuple[int, Artifact]]:
        allowed: dict[str, tuple[int, Artifact]] = {}
        for entry in state.history:
            if entry.outcome != "allow":
                continue
            artifact = self.store.get(state.workflow_id, entry.phase, entry.attempt)
            if artifact is not None:
                allowed[entry.phase] = (entry.attempt, artifact)
        return allowed

    def _diagnostics(self, state: WorkflowState, phase: str, limit: int = 5) -> tuple[str, ...]:
        items: list[str] = []
        for entry in reversed(state.history):
            if entry.outcome == "allow" and entry.phase in {"PLAN", "CODE"}:
                break
            if entry.outcome in {"allow", "escalation-approved"} or not entry.reason:
                continue
            items.append(f"{entry.phase} attempt {entry.attempt}: {entry.reason}")
            if len(items) >= limit:
                break
        items.reverse()

        if phase == "FIX" and state.history and state.history[-1].phase == "TEST":
            last = state.history[-1]
            report = self.store.get(state.workflow_id, last.phase, last.attempt)
            if isinstance(report, TestReport) and report.output:
                items.append(f"Latest test output:\n{report.output[-2000:]}")
        return tuple(items)

    def _record(
        self,
        state: WorkflowState,
        phase: str,
        attempt: int,
        outcome: str,
        next_phase: str,
        artifact: Artifact,
        verdict: GuardrailVerdict | None,
        reason: str = "",
    ) -> None:
        state.history.append(
            HistoryEntry(
                phase=phase,
                attempt=attempt,
                outcome=outcome,
                next_phase=next_phase,
                artifact_kind=artifact.kind,
                verdict=verdict.to_dict() if verdict else None,
                reason=reason or (verdict.reason if verdict else ""),
            )
        )

    def _route_failure(
        self,
        state: WorkflowState,
        phase: str,
        attempt: int,
        failure_kind: str,
        reason: str,
        *,
        outcome: str,
        artifact_kind: str,
        verdict: GuardrailVerdict | None = None,
    ) -> WorkflowState:
        counter_key = f"{phase}:{failure_kind}"
        count = state.failure_count(phase, failure_kind) + 1
        state.failures[counter_key] = count
        action = self.policy.decide(phase, failure_kind, count, self.policy.max_attempts)
        routed = self.policy.decide(phase, failure_kind, 0, self.policy.max_attempts)

        if action == "retry":
            next_phase = phase
        elif action == "fix":
            next_phase = "FIX"
        elif action == "escalate":
            next_phase = phase
        else:
            next_phase = "FAILED"

        state.history.append(
            HistoryEntry(
                phase=phase,
                attempt=attempt,
                outcome=outcome,
                next_phase=next_phase,
                artifact_kind=artifact_kind,
                verdict=verdict.to_dict() if verdict else None,
                reason=f"{failure_kind}: {reason}",
            )
        )
        logger.info(
            "Workflow %s: %s attempt %d failed with %s (%d/%d), action %s",
            state.workflow_id,
            phase,
            attempt,
            failure_kind,
            count,
            self.policy.max_attempts,
            action,
        )

        if action == "escalate":
            state.status = "waiting"
            state.pending_approval = {
                "type": "escalation",
                "phase": phase,
                "attempt": attempt,
                "failure_kind": failure_kind,
                "action": routed if routed in {"retry", "fix"} else "retry",
                "reason": reason,
            }
            return state
        if action == "fail":
            if routed in {"retry", "fix"}:
                detail = (
                    f"{phase} exhausted {count} attempt(s) for {failure_kind}; "
                    f"failures: {dict(state.failures)}; last: {reason}"
                )
                return self._mark_failed(state, "RetryExhausted", detail)
            return self._mark_failed(state, _failure_reason(failure_kind), reason)
        state.phase = next_phase
        return state

    @staticmethod
    def _mark_failed(state: WorkflowState, failure_reason: str, detail: str) -> WorkflowState:
        state.phase = "FAILED"
        state.status = "failed"
        state.failure_reason = failure_reason
        state.failure_detail = detail
        logger.warning("Workflow %s failed: %s %s", state.workflow_id, failure_reason, detail)
        return state

    # Completion

    @staticmethod
    def _completion_recorded(state: WorkflowState) -> bool:
        return any(entry.phase == "DONE" for entry in state.history)

    async def _complete(self, state: WorkflowState) -> WorkflowState:
        workflow_id = state.workflow_id
        artifact = self.store.get(workflow_id, "DONE", 1)
        if artifact is None:
            try:
                artifact = await self._invoke_runner(state, "DONE", 1)
            except _Aborted:
                # Abort is a no-op once DONE; keep completing.
                artifact = RunnerFailure(error_kind="Transient", message="Completion interrupted.")
            self.store.put(workflow_id, "DONE", 1, artifact)

        notes: list[str] = []
        outcome = "completed"
        if isinstance(artifact, RunnerFailure):
            outcome = "completion-failed"
            notes.append(f"PR description unavailable: {artifact.message}")
        elif not isinstance(artifact, PRDescription):
            outcome = "completion-failed"
            notes.append(f"Unexpected completion artifact {artifact.kind}")

        try:
            checkpoint_id = self.workspace.checkpoint(workflow_id, "done")
            notes.append(f"checkpoint {checkpoint_id}")
        except WorkspaceError as exc:
            outcome = "completion-failed"
            notes.append(f"checkpoint failed: {exc}")

        state.history.append(
            HistoryEntry(
                phase="DONE",
                attempt=1,
                outcome=outcome,
                next_phase="DONE",
                artifact_kind=artifact.kind,
                reason="; ".join(notes),
            )
        )
        state.attempts["DONE"] = 1
        logger.info("Workflow %s completed (%s)", workflow_id, outcome)
        return state


def _failure_reason(failure_kind: str) -> str:
    if failure_kind in {"Fatal", "Transient", "Timeout"}:
        return "RunnerError"
    return failure_kind
