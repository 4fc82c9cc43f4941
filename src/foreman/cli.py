from __future__ import annotations

import asyncio
import json
import logging
import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click

from foreman.backends import (
    AgentBackend,
    BackendRetryPolicy,
    ClaudeCodeBackend,
    CodexBackend,
    OpenAIBackend,
    ResilientBackend,
)
from foreman.config import BackendName, ForemanConfig, load_config, save_config
from foreman.controller import WorkflowController
from foreman.errors import ForemanError
from foreman.guardrails import GuardrailEngine
from foreman.models import USER_ABORT, Task, WorkflowState
from foreman.policy import RetryPolicy
from foreman.runners import AgentRunner, Runner
from foreman.state import ArtifactStore, DryRunWorkspace, GitWorkspace, Workspace

logger = logging.getLogger(__name__)

DEFAULT_CONFIG = "foreman.toml"

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_POLICY = 2
EXIT_RETRY_EXHAUSTED = 3
EXIT_ABORTED = 4
EXIT_RUNNER_FATAL = 5
EXIT_WAITING = 10

FAILURE_EXIT_CODES = {
    "ScopeViolation": EXIT_POLICY,
    "GuardrailBlocked": EXIT_POLICY,
    "ApprovalDenied": EXIT_POLICY,
    "QualityFailure": EXIT_POLICY,
    "ReviewRejected": EXIT_POLICY,
    "RetryExhausted": EXIT_RETRY_EXHAUSTED,
    USER_ABORT: EXIT_ABORTED,
    "RunnerError": EXIT_RUNNER_FATAL,
}


def exit_code_for(state: WorkflowState) -> int:
    if state.phase == "DONE":
        return EXIT_OK
    if state.waiting:
        return EXIT_WAITING
    if state.phase == "FAILED":
        return FAILURE_EXIT_CODES.get(state.failure_reason or "", EXIT_ERROR)
    return EXIT_ERROR


@dataclass(slots=True)
class Runtime:
    repo_root: Path
    config_path: Path
    config: ForemanConfig
    store: ArtifactStore
    workspace: Workspace
    controller: WorkflowController


def _resolve_config_path(repo_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = repo_root / config_path
    return config_path.resolve()


def _build_single_backend(backend_name: BackendName, repo_root: Path) -> AgentBackend:
    if backend_name == "codex":
        return CodexBackend(working_directory=repo_root)
    if backend_name == "openai":
        return OpenAIBackend()
    return ClaudeCodeBackend(working_directory=repo_root)


def _build_backend(config: ForemanConfig, repo_root: Path, store: ArtifactStore) -> AgentBackend:
    primary_name = config.backend.primary
    fallback_name = config.backend.fallback
    policy = BackendRetryPolicy(
        max_retries=max(0, int(config.backend.max_retries)),
        backoff_seconds=max(0.0, float(config.backend.retry_backoff_seconds)),
        timeout_seconds=max(5.0, float(config.backend.timeout_seconds)),
    )
    return ResilientBackend(
        primary_name=primary_name,
        primary_backend=_build_single_backend(primary_name, repo_root),
        fallback_name=fallback_name,
        fallback_backend=_build_single_backend(fallback_name, repo_root),
        retry_policy=policy,
        event_hook=store.record_event,
    )


def _build_runner(config: ForemanConfig, repo_root: Path, store: ArtifactStore) -> Runner:
    return AgentRunner(
        _build_backend(config, repo_root, store),
        repo_root=repo_root,
        project=config.project,
        model=config.agents.specialist_model,
        run_test_commands=config.workflow.run_test_commands,
    )


def _apply_saved_settings(config: ForemanConfig, store: ArtifactStore, workflow_id: str) -> None:
    """Run settings belong to the workflow; flags given on later commands do not change them."""
    try:
        settings = store.load_state(workflow_id).settings
    except ForemanError as exc:
        raise click.ClickException(str(exc)) from exc
    workflow = config.workflow
    if "dry_run" in settings:
        workflow.dry_run = bool(settings["dry_run"])
    if "human_approve" in settings:
        workflow.human_approve = bool(settings["human_approve"])
    if "approval_phases" in settings:
        workflow.approval_phases = [str(phase) for phase in settings["approval_phases"]]
    if settings.get("target_branch"):
        workflow.target_branch = str(settings["target_branch"])
    logger.debug("Using saved settings of workflow %s: %s", workflow_id, settings)


def _load_runtime(
    repo_root: Path,
    config_path: Path,
    *,
    target_branch: str | None = None,
    dry_run: bool = False,
    human_approve: bool = False,
    workflow_id: str | None = None,
) -> Runtime:
    config = load_config(config_path)
    logger.debug("Loaded config from %s", config_path)
    if target_branch:
        config.workflow.target_branch = target_branch
    if dry_run:
        config.workflow.dry_run = True
    if human_approve:
        config.workflow.human_approve = True

    store = ArtifactStore(repo_root / config.state.root)
    if workflow_id:
        _apply_saved_settings(config, store, workflow_id)
    workspace: Workspace
    if config.workflow.dry_run:
        workspace = DryRunWorkspace()
    else:
        git_workspace = GitWorkspace(repo_root, state_dir=config.state.root)
        if not git_workspace.git_enabled:
            raise click.ClickException(
                f"{repo_root} is not a git repository. Use --dry-run to run without patching."
            )
        workspace = git_workspace

    controller = WorkflowController(
        store=store,
        runner=_build_runner(config, repo_root, store),
        guardrails=GuardrailEngine(guardrails=config.guardrails, workflow=config.workflow),
        policy=RetryPolicy.from_config(config.policy),
        workspace=workspace,
        target_branch=config.workflow.target_branch,
        phase_timeout=float(config.workflow.phase_timeout_seconds),
    )
    return Runtime(
        repo_root=repo_root,
        config_path=config_path,
        config=config,
        store=store,
        workspace=workspace,
        controller=controller,
    )


def _runtime_from_context(ctx: click.Context, **overrides: Any) -> Runtime:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, ctx.obj["config"])
    return _load_runtime(repo_root, config_path, **overrides)


def _load_task(
    goal: str | None,
    task_file: str | None,
    allowed_paths: tuple[str, ...],
    constraints: tuple[str, ...],
    acceptance: tuple[str, ...],
) -> Task:
    payload: dict[str, Any] = {}
    if task_file:
        path = Path(task_file)
        text = path.read_text(encoding="utf-8")
        try:
            payload = tomllib.loads(text) if path.suffix == ".toml" else json.loads(text)
        except (tomllib.TOMLDecodeError, json.JSONDecodeError) as exc:
            raise click.ClickException(f"Could not parse task file {task_file}: {exc}") from exc
        if not isinstance(payload, dict):
            raise click.ClickException(f"Task file {task_file} must contain an object.")

    goal_text = (goal or str(payload.get("goal") or "")).strip()
    if not goal_text:
        raise click.UsageError("A GOAL argument or a task file with a goal is required.")
    return Task(
        goal=goal_text,
        allowed_paths=tuple(payload.get("allowed_paths", [])) + allowed_paths,
        constraints=tuple(payload.get("constraints", [])) + constraints,
        acceptance_criteria=tuple(payload.get("acceptance_criteria", [])) + acceptance,
    )


def _echo_outcome(state: WorkflowState) -> None:
    click.echo(f"Workflow: {state.workflow_id}")
    click.echo(f"Phase: {state.phase}")
    click.echo(f"Status: {state.status}")
    if state.pending_approval:
        pending = state.pending_approval
        click.echo(
            f"Waiting for approval of {pending.get('phase')}-{pending.get('attempt')}: "
            f"{pending.get('reason', '')}"
        )
    if state.phase == "FAILED":
        click.echo(f"Failure: {state.failure_reason}")
        if state.failure_detail:
            click.echo(f"Detail: {state.failure_detail}")


def _finish(ctx: click.Context, state: WorkflowState) -> None:
    _echo_outcome(state)
    ctx.exit(exit_code_for(state))


def _runtime_options(function: Any) -> Any:
    function = click.option(
        "--human-approve",
        is_flag=True,
        default=False,
        help="Require an approval decision for every phase artifact.",
    )(function)
    function = click.option(
        "--dry-run",
        is_flag=True,
        default=False,
        help="Never touch the working tree.",
    )(function)
    function = click.option("--target-branch", default=None, help="Branch to start from.")(
        function
    )
    return function


@click.group()
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
@click.option("--verbose", is_flag=True, default=False, help="Log progress to stderr.")
@click.pass_context
def cli(ctx: click.Context, config_value: str, verbose: bool) -> None:
    """Foreman CLI."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.ensure_object(dict)
    ctx.obj["config"] = config_value


@cli.command("init")
@click.option("--backend", type=click.Choice(["codex", "claude", "openai"]), default=None)
@click.pass_context
def init_command(ctx: click.Context, backend: str | None) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, ctx.obj["config"])
    config = load_config(config_path)
    if backend:
        config.backend.primary = backend  # type: ignore[assignment]
    save_config(config_path, config)
    ArtifactStore(repo_root / config.state.root)

    click.echo(f"Initialized Foreman in {repo_root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Backend: {config.backend.primary}")
    click.echo(f"State: {repo_root / config.state.root}")


@cli.command("run")
@click.argument("goal", required=False)
@click.option("--allow", "allowed_paths", multiple=True, help="Allowed path pattern.")
@click.option("--constraint", "constraints", multiple=True)
@click.option("--accept", "acceptance", multiple=True, help="Acceptance criterion.")
@click.option("--task-file", type=click.Path(exists=True, dir_okay=False), default=None)
@_runtime_options
@click.pass_context
def run_command(
    ctx: click.Context,
    goal: str | None,
    allowed_paths: tuple[str, ...],
    constraints: tuple[str, ...],
    acceptance: tuple[str, ...],
    task_file: str | None,
    target_branch: str | None,
    dry_run: bool,
    human_approve: bool,
) -> None:
    task = _load_task(goal, task_file, allowed_paths, constraints, acceptance)
    if not task.allowed_paths:
        click.echo("Warning: no --allow patterns given; every patch will be out of scope.")
    runtime = _runtime_from_context(
        ctx, target_branch=target_branch, dry_run=dry_run, human_approve=human_approve
    )
    try:
        state = asyncio.run(runtime.controller.run(task))
    except ForemanError as exc:
        raise click.ClickException(str(exc)) from exc
    _finish(ctx, state)


@cli.command("resume")
@click.argument("workflow_id")
@_runtime_options
@click.pass_context
def resume_command(
    ctx: click.Context,
    workflow_id: str,
    target_branch: str | None,
    dry_run: bool,
    human_approve: bool,
) -> None:
    runtime = _runtime_from_context(
        ctx,
        target_branch=target_branch,
        dry_run=dry_run,
        human_approve=human_approve,
        workflow_id=workflow_id,
    )
    try:
        state = asyncio.run(runtime.controller.resume(workflow_id))
    except ForemanError as exc:
        raise click.ClickException(str(exc)) from exc
    _finish(ctx, state)


@cli.command("approve")
@click.argument("workflow_id")
@click.option("--deny", is_flag=True, default=False, help="Deny instead of approving.")
@click.option("--note", default="", help="Note stored with the decision.")
@click.option("--by", "decided_by", default="operator", show_default=True)
@_runtime_options
@click.pass_context
def approve_command(
    ctx: click.Context,
    workflow_id: str,
    deny: bool,
    note: str,
    decided_by: str,
    target_branch: str | None,
    dry_run: bool,
    human_approve: bool,
) -> None:
    runtime = _runtime_from_context(
        ctx,
        target_branch=target_branch,
        dry_run=dry_run,
        human_approve=human_approve,
        workflow_id=workflow_id,
    )
    try:
        state = asyncio.run(
            runtime.controller.approve(
                workflow_id, not deny, decided_by=decided_by, note=note
            )
        )
    except ForemanError as exc:
        raise click.ClickException(str(exc)) from exc
    _finish(ctx, state)


@cli.command("abort")
@click.argument("workflow_id")
@click.option("--reason", default="", help="Reason recorded with the abort.")
@click.pass_context
def abort_command(ctx: click.Context, workflow_id: str, reason: str) -> None:
    runtime = _runtime_from_context(ctx, dry_run=True)
    try:
        state = runtime.controller.abort(workflow_id, reason=reason)
    except ForemanError as exc:
        raise click.ClickException(str(exc)) from exc
    _finish(ctx, state)


@cli.command("report")
@click.argument("workflow_id")
@click.pass_context
def report_command(ctx: click.Context, workflow_id: str) -> None:
    runtime = _runtime_from_context(ctx, dry_run=True)
    try:
        payload = runtime.controller.report(workflow_id)
    except ForemanError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


@cli.command("list")
@click.pass_context
def list_command(ctx: click.Context) -> None:
    runtime = _runtime_from_context(ctx, dry_run=True)
    states = runtime.controller.list_workflows()
    if not states:
        click.echo("No workflows found.")
        return
    for state in states:
        click.echo(f"{state.workflow_id} {state.phase:<7} {state.status:<8} {state.task.goal}")
