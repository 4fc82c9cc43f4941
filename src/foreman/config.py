from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

BackendName = Literal["codex", "claude", "openai"]
ExhaustionMode = Literal["fail", "escalate"]

DEFAULT_ROUTES: dict[str, str] = {
    "QualityFailure": "fix",
    "ReviewRejected": "fix",
    "Timeout": "retry",
    "Transient": "retry",
    "ApplyFailed": "retry",
    "Fatal": "fail",
    "ScopeViolation": "fail",
    "GuardrailBlocked": "fail",
    "ApprovalDenied": "fail",
}


@dataclass(slots=True)
class ProjectConfig:
    name: str = "my-project"
    test_command: str = "pytest -q"
    lint_command: str = ""
    type_check_command: str = ""


@dataclass(slots=True)
class BackendConfig:
    primary: BackendName = "claude"
    fallback: BackendName = "codex"
    max_retries: int = 1
    retry_backoff_seconds: float = 0.5
    timeout_seconds: float = 90.0


@dataclass(slots=True)
class AgentsConfig:
    specialist_model: str = "claude-sonnet-4-5"


@dataclass(slots=True)
class WorkflowConfig:
    target_branch: str = "main"
    dry_run: bool = False
    human_approve: bool = False
    approval_phases: list[str] = field(default_factory=list)
    phase_timeout_seconds: float = 600.0
    run_test_commands: bool = True

    def requires_approval(self, phase: str) -> bool:
        if self.human_approve:
            return phase != "DONE"
        return phase in self.approval_phases


@dataclass(slots=True)
class GuardrailsConfig:
    max_file_changes_per_patch: int = 20
    forbidden_paths: list[str] = field(
        default_factory=lambda: [".env", "secrets/*", "production.config.*"]
    )


@dataclass(slots=True)
class PolicyConfig:
    max_attempts: int = 3
    on_exhaustion: ExhaustionMode = "fail"
    routes: dict[str, str] = field(default_factory=lambda: dict(DEFAULT_ROUTES))


@dataclass(slots=True)
class StateConfig:
    root: str = ".foreman"


@dataclass(slots=True)
class ForemanConfig:
    project: ProjectConfig = field(default_factory=ProjectConfig)
    backend: BackendConfig = field(default_factory=BackendConfig)
    agents: AgentsConfig = field(default_factory=AgentsConfig)
    workflow: WorkflowConfig = field(default_factory=WorkflowConfig)
    guardrails: GuardrailsConfig = field(default_factory=GuardrailsConfig)
    policy: PolicyConfig = field(default_factory=PolicyConfig)
    state: StateConfig = field(default_factory=StateConfig)

    @classmethod
    def default(cls) -> ForemanConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> ForemanConfig:
        policy_data = dict(data.get("policy", {}))
        routes = dict(DEFAULT_ROUTES)
        routes.update({str(k): str(v) for k, v in policy_data.pop("routes", {}).items()})
        return cls(
            project=ProjectConfig(**data.get("project", {})),
            backend=BackendConfig(**data.get("backend", {})),
            agents=AgentsConfig(**data.get("agents", {})),
            workflow=WorkflowConfig(**data.get("workflow", {})),
            guardrails=GuardrailsConfig(**data.get("guardrails", {})),
            policy=PolicyConfig(routes=routes, **policy_data),
            state=StateConfig(**data.get("state", {})),
        )

    def to_dict(self) -> dict:
        return {
            "project": {
                "name": self.project.name,
                "test_command": self.project.test_command,
                "lint_command": self.project.lint_command,
                "type_check_command": self.project.type_check_command,
            },
            "backend": {
                "primary": self.backend.primary,
                "fallback": self.backend.fallback,
                "max_retries": self.backend.max_retries,
                "retry_backoff_seconds": self.backend.retry_backoff_seconds,
                "timeout_seconds": self.backend.timeout_seconds,
            },
            "agents": {
                "specialist_model": self.agents.specialist_model,
            },
            "workflow": {
                "target_branch": self.workflow.target_branch,
                "dry_run": self.workflow.dry_run,
                "human_approve": self.workflow.human_approve,
                "approval_phases": list(self.workflow.approval_phases),
                "phase_timeout_seconds": self.workflow.phase_timeout_seconds,
                "run_test_commands": self.workflow.run_test_commands,
            },
            "guardrails": {
                "max_file_changes_per_patch": self.guardrails.max_file_changes_per_patch,
                "forbidden_paths": list(self.guardrails.forbidden_paths),
            },
            "policy": {
                "max_attempts": self.policy.max_attempts,
                "on_exhaustion": self.policy.on_exhaustion,
                "routes": dict(self.policy.routes),
            },
            "state": {
                "root": self.state.root,
            },
        }


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        return rendered if rendered else "0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: ForemanConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    section_order = ["project", "backend", "agents", "workflow", "guardrails", "policy", "state"]
    for section in section_order:
        tables: list[tuple[str, dict]] = []
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            if isinstance(value, dict):
                tables.append((key, value))
                continue
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
        for table_name, table in tables:
            lines.append(f"[{section}.{table_name}]")
            for key, value in table.items():
                lines.append(f"{json.dumps(key)} = {_toml_value(value)}")
            lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> ForemanConfig:
    if not path.exists():
        return ForemanConfig.default()
    return ForemanConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: ForemanConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
