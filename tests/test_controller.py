import asyncio
import subprocess
from pathlib import Path

import pytest

from foreman.artifacts import (
    Artifact,
    Patch,
    Plan,
    PRDescription,
    Review,
    RunnerFailure,
    TestReport,
)
from foreman.config import WorkflowConfig
from foreman.controller import WorkflowController
from foreman.errors import ForemanError, LeaseError, RunnerError, WorkspaceError
from foreman.guardrails import GuardrailEngine
from foreman.models import USER_ABORT, Task, WorkflowState
from foreman.policy import RetryPolicy
from foreman.runners.base import PhaseContext, Runner
from foreman.state import ArtifactStore, DryRunWorkspace, GitWorkspace, Workspace

IN_SCOPE_DIFF = """diff --git a/src/a.py b/src/a.py
--- a/src/a.py
+++ b/src/a.py
@@ -1 +1 @@
-x = 1
+x = 2
"""

TASK = Task(goal="Bump x", allowed_paths=("src/",), acceptance_criteria=("x is 2",))

PASSING = TestReport(commands=["pytest -q"], passed=True, output="1 passed")
FAILING = TestReport(commands=["pytest -q"], passed=False, output="1 failed")


def _defaults() -> dict[str, list[Artifact | Exception]]:
    patch = Patch(diff=IN_SCOPE_DIFF, touched_files=["src/a.py"])
    return {
        "PLAN": [Plan(steps=["Change x"], files=["src/a.py"])],
        "CODE": [patch],
        "FIX": [patch],
        "TEST": [PASSING],
        "REVIEW": [Review(approve=True)],
        "DONE": [PRDescription(title="Bump x", body="Sets x to 2.")],
    }


class ScriptedRunner(Runner):
    """Plays back artifacts per phase; the last item repeats once the script runs out."""

    def __init__(self, **overrides: list[Artifact | Exception]) -> None:
        self.script = _defaults()
        self.script.update(overrides)
        self.calls: list[tuple[str, int]] = []
        self.contexts: list[PhaseContext] = []

    async def execute(self, phase: str, context: PhaseContext, *, timeout: float) -> Artifact:
        self.calls.append((phase, context.attempt))
        self.contexts.append(context)
        queue = self.script[phase]
        item = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(item, Exception):
            raise item
        return item


class SimulatedCrash(Exception):
    pass


class CrashingStore(ArtifactStore):
    def __init__(self, root: Path, crash_on: tuple[str, int]) -> None:
        super().__init__(root)
        self.crash_on = crash_on
        self.crashed = False

    def put(self, workflow_id: str, phase: str, attempt: int, artifact: Artifact) -> bytes:
        raw = super().put(workflow_id, phase, attempt, artifact)
        if (phase, attempt) == self.crash_on and not self.crashed:
            self.crashed = True
            raise SimulatedCrash(f"crash after writing {phase}-{attempt}")
        return raw


def _controller(
    tmp_path: Path,
    runner: Runner,
    *,
    store: ArtifactStore | None = None,
    policy: RetryPolicy | None = None,
    workflow: WorkflowConfig | None = None,
    workspace: Workspace | None = None,
    target_branch: str = "main",
) -> WorkflowController:
    return WorkflowController(
        store=store or ArtifactStore(tmp_path / ".foreman"),
        runner=runner,
        guardrails=GuardrailEngine(workflow=workflow or WorkflowConfig()),
        policy=policy or RetryPolicy(),
        workspace=workspace or DryRunWorkspace(),
        target_branch=target_branch,
        phase_timeout=5.0,
    )


def _transitions(state: WorkflowState) -> list[tuple[str, str]]:
    return [(entry.phase, entry.next_phase) for entry in state.history]


def test_nominal_run_reaches_done(tmp_path: Path) -> None:
    runner = ScriptedRunner()
    controller = _controller(tmp_path, runner)

    state = asyncio.run(controller.run(TASK, workflow_id="wf-nominal"))

    assert state.phase == "DONE"
    assert state.status == "done"
    phases = [phase for phase, _attempt in runner.calls]
    assert phases == ["PLAN", "CODE", "TEST", "REVIEW", "DONE"]
    assert _transitions(state) == [
        ("PLAN", "CODE"),
        ("CODE", "TEST"),
        ("TEST", "REVIEW"),
        ("REVIEW", "DONE"),
        ("DONE", "DONE"),
    ]
    assert state.history[-1].outcome == "completed"
    assert controller.store.applied_patches("wf-nominal")[0]["key"] == "CODE-1"
    assert controller.workspace.checkpoints


def test_out_of_scope_patch_fails_before_testing(tmp_path: Path) -> None:
    diff = (
        "diff --git a/src/a.go b/src/a.go\n--- a/src/a.go\n+++ b/src/a.go\n"
        "diff --git a/config/prod.yaml b/config/prod.yaml\n"
        "--- a/config/prod.yaml\n+++ b/config/prod.yaml\n"
    )
    runner = ScriptedRunner(
        CODE=[Patch(diff=diff, touched_files=["src/a.go", "config/prod.yaml"])],
        TEST=[PASSING],
    )
    controller = _controller(tmp_path, runner)

    state = asyncio.run(controller.run(TASK, workflow_id="wf-scope"))

    assert state.phase == "FAILED"
    assert state.failure_reason == "ScopeViolation"
    assert "config/prod.yaml" in state.failure_detail
    assert "src/a.go" not in state.failure_detail.split(":")[-1]
    assert [phase for phase, _attempt in runner.calls] == ["PLAN", "CODE"]
    assert state.history[-1].outcome == "block"
    assert controller.store.applied_patches("wf-scope") == []


def _git(repo: Path, *args: str) -> str:
    proc = subprocess.run(["git", *args], cwd=repo, check=True, text=True, capture_output=True)
    return proc.stdout.strip()


def test_rename_out_of_scope_never_reaches_the_tree(tmp_path: Path) -> None:
    repo = tmp_path / "repo"
    (repo / "src").mkdir(parents=True)
    _git(repo, "init")
    _git(repo, "config", "user.email", "test@example.com")
    _git(repo, "config", "user.name", "Test User")
    _git(repo, "symbolic-ref", "HEAD", "refs/heads/main")
    (repo / "src" / "a.py").write_text("x = 1\n", encoding="utf-8")
    _git(repo, "add", "src/a.py")
    _git(repo, "commit", "-m", "initial")

    rename = (
        "diff --git a/src/a.py b/src/a.py\n"
        "similarity index 100%\n"
        "rename from src/a.py\n"
        "rename to config/prod.yaml\n"
    )
    runner = ScriptedRunner(CODE=[Patch(diff=rename, touched_files=["src/a.py"])])
    controller = _controller(
        tmp_path,
        runner,
        store=ArtifactStore(repo / ".foreman"),
        workspace=GitWorkspace(repo),
    )

    state = asyncio.run(controller.run(TASK, workflow_id="wf-rename"))

    assert state.phase == "FAILED"
    assert state.failure_reason == "ScopeViolation"
    assert "config/prod.yaml" in state.failure_detail
    assert "TEST" not in [phase for phase, _attempt in runner.calls]
    assert not (repo / "config" / "prod.yaml").exists()
    assert (repo / "src" / "a.py").read_text(encoding="utf-8") == "x = 1\n"
    assert _git(repo, "log", "--format=%s") == "initial"
    assert controller.store.applied_patches("wf-rename") == []


def test_test_failures_loop_through_fix_until_pass(tmp_path: Path) -> None:
    runner = ScriptedRunner(TEST=[FAILING, FAILING, PASSING])
    controller = _controller(tmp_path, runner)

    state = asyncio.run(controller.run(TASK, workflow_id="wf-fix"))

    assert state.phase == "DONE"
    assert _transitions(state) == [
        ("PLAN", "CODE"),
        ("CODE", "TEST"),
        ("TEST", "FIX"),
        ("FIX", "TEST"),
        ("TEST", "FIX"),
        ("FIX", "TEST"),
        ("TEST", "REVIEW"),
        ("REVIEW", "DONE"),
        ("DONE", "DONE"),
    ]
    assert state.failures == {"TEST:QualityFailure": 2}
    assert ("TEST", 3) in runner.calls
    assert ("FIX", 2) in runner.calls


def test_fix_receives_failure_diagnostics(tmp_path: Path) -> None:
    runner = ScriptedRunner(TEST=[FAILING, PASSING])
    controller = _controller(tmp_path, runner)

    asyncio.run(controller.run(TASK, workflow_id="wf-diag"))

    fix_context = next(context for context in runner.contexts if context.phase == "FIX")
    assert any("QualityFailure" in item for item in fix_context.diagnostics)
    assert any("1 failed" in item for item in fix_context.diagnostics)
    assert "PLAN" in fix_context.artifacts
    assert "edit_file" in fix_context.tools


def test_review_rejection_exhausts_retry_budget(tmp_path: Path) -> None:
    runner = ScriptedRunner(REVIEW=[Review(must_fix=["rename x"], approve=False)])
    controller = _controller(tmp_path, runner)

    state = asyncio.run(controller.run(TASK, workflow_id="wf-review"))

    assert state.phase == "FAILED"
    assert state.failure_reason == "RetryExhausted"
    assert state.failures["REVIEW:ReviewRejected"] == 3
    assert all(count <= 3 for count in state.failures.values())
    assert [phase for phase, _ in runner.calls].count("REVIEW") == 3
    assert "DONE" not in [phase for phase, _ in runner.calls]


def test_resume_after_crash_does_not_rerun_written_attempt(tmp_path: Path) -> None:
    baseline = asyncio.run(
        _controller(tmp_path / "baseline", ScriptedRunner(TEST=[FAILING, PASSING])).run(
            TASK, workflow_id="wf-crash"
        )
    )

    store = CrashingStore(tmp_path / ".foreman", crash_on=("TEST", 1))
    first_runner = ScriptedRunner(TEST=[FAILING, PASSING])
    crashing = _controller(tmp_path, first_runner, store=store)
    with pytest.raises(SimulatedCrash):
        asyncio.run(crashing.run(TASK, workflow_id="wf-crash"))

    interrupted = store.load_state("wf-crash")
    assert interrupted.phase == "TEST"
    assert store.get_lease("wf-crash") is None

    second_runner = ScriptedRunner(TEST=[PASSING])
    resumed = asyncio.run(
        _controller(tmp_path, second_runner, store=ArtifactStore(tmp_path / ".foreman")).resume(
            "wf-crash"
        )
    )

    assert ("TEST", 1) not in second_runner.calls
    assert second_runner.calls[0] == ("FIX", 1)
    assert _transitions(resumed) == _transitions(baseline)
    assert resumed.phase == "DONE"


def test_resume_is_idempotent_on_terminal_state(tmp_path: Path) -> None:
    runner = ScriptedRunner()
    controller = _controller(tmp_path, runner)
    done = asyncio.run(controller.run(TASK, workflow_id="wf-idem"))
    calls_before = list(runner.calls)

    again = asyncio.run(controller.resume("wf-idem"))

    assert again.phase == done.phase
    assert len(again.history) == len(done.history)
    assert runner.calls == calls_before


def test_undecided_review_waits_for_approval(tmp_path: Path) -> None:
    runner = ScriptedRunner(REVIEW=[Review(nice_to_have=["docs"], approve=None)])
    controller = _controller(tmp_path, runner)

    waiting = asyncio.run(controller.run(TASK, workflow_id="wf-wait"))

    assert waiting.status == "waiting"
    assert waiting.phase == "REVIEW"
    assert waiting.pending_approval["attempt"] == 1
    assert "DONE" not in [phase for phase, _ in runner.calls]

    still_waiting = asyncio.run(controller.resume("wf-wait"))
    assert still_waiting.status == "waiting"
    assert [phase for phase, _ in runner.calls].count("REVIEW") == 1

    done = asyncio.run(controller.approve("wf-wait", True, decided_by="alice", note="ship it"))

    assert done.phase == "DONE"
    assert done.approvals["REVIEW-1"].decided_by == "alice"
    assert [phase for phase, _ in runner.calls].count("REVIEW") == 1


def test_denied_review_fails_workflow(tmp_path: Path) -> None:
    runner = ScriptedRunner(REVIEW=[Review(approve=None)])
    controller = _controller(tmp_path, runner)
    asyncio.run(controller.run(TASK, workflow_id="wf-deny"))

    state = asyncio.run(controller.approve("wf-deny", False, note="not convinced"))

    assert state.phase == "FAILED"
    assert state.failure_reason == "ApprovalDenied"


def test_human_approve_gates_every_phase(tmp_path: Path) -> None:
    runner = ScriptedRunner()
    controller = _controller(tmp_path, runner, workflow=WorkflowConfig(human_approve=True))

    state = asyncio.run(controller.run(TASK, workflow_id="wf-human"))
    gated: list[str] = []
    while state.waiting:
        gated.append(state.pending_approval["phase"])
        state = asyncio.run(controller.approve("wf-human", True))

    assert gated == ["PLAN", "CODE", "TEST", "REVIEW"]
    assert state.phase == "DONE"


def test_approval_gates_follow_the_workflow_not_the_caller(tmp_path: Path) -> None:
    runner = ScriptedRunner()
    gated = _controller(tmp_path, runner, workflow=WorkflowConfig(human_approve=True))
    waiting = asyncio.run(gated.run(TASK, workflow_id="wf-sticky"))
    assert waiting.pending_approval["phase"] == "PLAN"
    assert waiting.settings["human_approve"] is True

    ungated = _controller(tmp_path, runner)
    state = asyncio.run(ungated.approve("wf-sticky", True))

    assert state.waiting
    assert state.phase == "CODE"
    assert state.pending_approval["phase"] == "CODE"
    assert ungated.store.applied_patches("wf-sticky") == []


def test_saved_target_branch_is_used_on_approve(tmp_path: Path) -> None:
    runner = ScriptedRunner(REVIEW=[Review(approve=None)])
    first = _controller(tmp_path, runner, target_branch="develop")
    asyncio.run(first.run(TASK, workflow_id="wf-branch"))

    workspace = DryRunWorkspace()
    later = _controller(tmp_path, runner, workspace=workspace)
    state = asyncio.run(later.approve("wf-branch", True))

    assert state.phase == "DONE"
    assert workspace.prepared == [("wf-branch", "develop")]


def test_dry_run_workflow_refuses_a_git_workspace(tmp_path: Path) -> None:
    runner = ScriptedRunner(REVIEW=[Review(approve=None)])
    asyncio.run(_controller(tmp_path, runner).run(TASK, workflow_id="wf-dry"))

    controller = _controller(tmp_path, runner, workspace=GitWorkspace(tmp_path))

    with pytest.raises(WorkspaceError, match="dry-run mode"):
        asyncio.run(controller.approve("wf-dry", True))
    assert controller.store.get_lease("wf-dry") is None


def test_approve_without_pending_decision_raises(tmp_path: Path) -> None:
    controller = _controller(tmp_path, ScriptedRunner())
    asyncio.run(controller.run(TASK, workflow_id="wf-nopending"))

    with pytest.raises(ForemanError):
        asyncio.run(controller.approve("wf-nopending", True))


def test_transient_runner_error_is_retried(tmp_path: Path) -> None:
    patch = Patch(diff=IN_SCOPE_DIFF, touched_files=["src/a.py"])
    runner = ScriptedRunner(CODE=[RunnerError("socket closed", kind="Transient"), patch])
    controller = _controller(tmp_path, runner)

    state = asyncio.run(controller.run(TASK, workflow_id="wf-transient"))

    assert state.phase == "DONE"
    assert ("CODE", 2) in runner.calls
    failure = controller.store.get("wf-transient", "CODE", 1)
    assert isinstance(failure, RunnerFailure)
    assert failure.error_kind == "Transient"
    assert state.history[1].outcome == "error"


def test_fatal_runner_error_fails_immediately(tmp_path: Path) -> None:
    runner = ScriptedRunner(PLAN=[RunnerError("binary missing", kind="Fatal")])
    controller = _controller(tmp_path, runner)

    state = asyncio.run(controller.run(TASK, workflow_id="wf-fatal"))

    assert state.phase == "FAILED"
    assert state.failure_reason == "RunnerError"
    assert runner.calls == [("PLAN", 1)]


def test_repeated_timeouts_exhaust_retries(tmp_path: Path) -> None:
    runner = ScriptedRunner(PLAN=[RunnerError("slow", kind="Timeout")])
    controller = _controller(tmp_path, runner, policy=RetryPolicy(max_attempts=2))

    state = asyncio.run(controller.run(TASK, workflow_id="wf-timeout"))

    assert state.failure_reason == "RetryExhausted"
    assert state.failures == {"PLAN:Timeout": 2}
    assert runner.calls == [("PLAN", 1), ("PLAN", 2)]


def test_exhaustion_escalates_and_approval_grants_new_budget(tmp_path: Path) -> None:
    runner = ScriptedRunner(TEST=[FAILING, FAILING, FAILING, PASSING])
    controller = _controller(tmp_path, runner, policy=RetryPolicy(on_exhaustion="escalate"))

    waiting = asyncio.run(controller.run(TASK, workflow_id="wf-escalate"))

    assert waiting.status == "waiting"
    assert waiting.pending_approval["type"] == "escalation"
    assert waiting.pending_approval["action"] == "fix"

    state = asyncio.run(controller.approve("wf-escalate", True, note="one more round"))

    assert state.phase == "DONE"
    assert state.failures["TEST:QualityFailure"] == 0
    assert "escalation:TEST-3" in state.approvals


def test_abort_waiting_workflow(tmp_path: Path) -> None:
    controller = _controller(tmp_path, ScriptedRunner(REVIEW=[Review(approve=None)]))
    asyncio.run(controller.run(TASK, workflow_id="wf-abort-wait"))

    state = controller.abort("wf-abort-wait")

    assert state.phase == "FAILED"
    assert state.failure_reason == USER_ABORT
    assert state.pending_approval is None


def test_abort_is_noop_on_terminal_state(tmp_path: Path) -> None:
    controller = _controller(tmp_path, ScriptedRunner())
    done = asyncio.run(controller.run(TASK, workflow_id="wf-abort-done"))

    state = controller.abort("wf-abort-done")

    assert state.phase == "DONE"
    assert len(state.history) == len(done.history)


def test_in_process_abort_cancels_running_phase(tmp_path: Path) -> None:
    class SlowCodeRunner(ScriptedRunner):
        def __init__(self) -> None:
            super().__init__()
            self.started = asyncio.Event()
            self.cancelled = False

        async def execute(self, phase: str, context: PhaseContext, *, timeout: float) -> Artifact:
            if phase != "CODE":
                return await super().execute(phase, context, timeout=timeout)
            self.started.set()
            try:
                await asyncio.sleep(30)
            except asyncio.CancelledError:
                self.cancelled = True
                raise
            raise AssertionError("CODE should have been cancelled")

    runner = SlowCodeRunner()
    controller = _controller(tmp_path, runner)

    async def _scenario() -> WorkflowState:
        running = asyncio.create_task(controller.run(TASK, workflow_id="wf-abort-live"))
        await runner.started.wait()
        controller.abort("wf-abort-live", reason="changed my mind")
        return await running

    state = asyncio.run(_scenario())

    assert runner.cancelled
    assert state.phase == "FAILED"
    assert state.failure_reason == USER_ABORT
    assert controller.store.get("wf-abort-live", "CODE", 1) is None
    assert controller.store.get_lease("wf-abort-live") is None


def test_foreign_lease_blocks_resume(tmp_path: Path) -> None:
    store = ArtifactStore(tmp_path / ".foreman")
    store.save_state(WorkflowState(workflow_id="wf-leased", task=TASK))
    store.acquire_lease("wf-leased", "someone-else", ttl_seconds=60)
    runner = ScriptedRunner()

    with pytest.raises(LeaseError):
        asyncio.run(_controller(tmp_path, runner, store=store).resume("wf-leased"))
    assert runner.calls == []


def test_completion_failure_keeps_done_outcome(tmp_path: Path) -> None:
    runner = ScriptedRunner(DONE=[RunnerError("writer offline", kind="Transient")])
    controller = _controller(tmp_path, runner)

    state = asyncio.run(controller.run(TASK, workflow_id="wf-complete"))

    assert state.phase == "DONE"
    assert state.history[-1].outcome == "completion-failed"
    assert isinstance(controller.store.get("wf-complete", "DONE", 1), RunnerFailure)


def test_report_lists_history_and_final_artifacts(tmp_path: Path) -> None:
    controller = _controller(tmp_path, ScriptedRunner(TEST=[FAILING, PASSING]))
    asyncio.run(controller.run(TASK, workflow_id="wf-report"))

    report = controller.report("wf-report")

    assert report["workflow"]["phase"] == "DONE"
    assert report["workflow"]["terminal"] is True
    assert [item["phase"] for item in report["artifacts"]] == [
        "PLAN",
        "CODE",
        "TEST",
        "FIX",
        "TEST",
        "REVIEW",
        "DONE",
    ]
    assert report["final_artifacts"]["TEST"]["attempt"] == 2
    assert report["final_artifacts"]["TEST"]["artifact"]["passed"] is True
    assert report["final_artifacts"]["DONE"]["artifact"]["title"] == "Bump x"
    assert "failure" not in report


def test_report_surfaces_guardrail_block_verbatim(tmp_path: Path) -> None:
    runner = ScriptedRunner(CODE=[Patch(diff="", touched_files=["src/a.py", ".env"])])
    controller = _controller(tmp_path, runner)
    asyncio.run(controller.run(TASK, workflow_id="wf-forbidden"))

    report = controller.report("wf-forbidden")

    assert report["failure"]["reason"] == "ScopeViolation"
    assert ".env" in report["failure"]["detail"]
    assert report["workflow"]["history"][-1]["verdict"]["check"] == "scope"
