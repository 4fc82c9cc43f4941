import tomllib
from pathlib import Path

from foreman import __version__
from foreman.config import DEFAULT_ROUTES, ForemanConfig, dumps_toml, load_config, save_config


def test_config_roundtrip(tmp_path: Path) -> None:
    config_path = tmp_path / "foreman.toml"
    config = ForemanConfig.default()
    config.project.name = "foreman-test"
    config.backend.primary = "codex"
    config.backend.max_retries = 3
    config.project.type_check_command = "python -m compileall src tests"
    config.workflow.target_branch = "develop"
    config.workflow.approval_phases = ["PLAN", "REVIEW"]
    config.workflow.phase_timeout_seconds = 120.5
    config.guardrails.forbidden_paths = ["infra/**"]
    config.policy.max_attempts = 5
    config.policy.on_exhaustion = "escalate"
    config.policy.routes["Timeout"] = "escalate"
    config.state.root = ".state"

    save_config(config_path, config)
    loaded = load_config(config_path)

    assert loaded.project.name == "foreman-test"
    assert loaded.backend.primary == "codex"
    assert loaded.backend.max_retries == 3
    assert "compileall" in loaded.project.type_check_command
    assert loaded.workflow.target_branch == "develop"
    assert loaded.workflow.approval_phases == ["PLAN", "REVIEW"]
    assert loaded.workflow.phase_timeout_seconds == 120.5
    assert loaded.guardrails.forbidden_paths == ["infra/**"]
    assert loaded.policy.max_attempts == 5
    assert loaded.policy.on_exhaustion == "escalate"
    assert loaded.policy.routes["Timeout"] == "escalate"
    assert loaded.policy.routes["QualityFailure"] == "fix"
    assert loaded.state.root == ".state"


def test_missing_config_file_yields_defaults(tmp_path: Path) -> None:
    loaded = load_config(tmp_path / "absent.toml")

    assert loaded.to_dict() == ForemanConfig.default().to_dict()


def test_partial_routes_merge_over_defaults(tmp_path: Path) -> None:
    config_path = tmp_path / "foreman.toml"
    config_path.write_text(
        '[policy]\nmax_attempts = 2\n\n[policy.routes]\nReviewRejected = "escalate"\n',
        encoding="utf-8",
    )

    loaded = load_config(config_path)

    assert loaded.policy.max_attempts == 2
    assert loaded.policy.routes["ReviewRejected"] == "escalate"
    assert {k: v for k, v in loaded.policy.routes.items() if k != "ReviewRejected"} == {
        k: v for k, v in DEFAULT_ROUTES.items() if k != "ReviewRejected"
    }


def test_human_approve_gates_every_working_phase() -> None:
    config = ForemanConfig.default()
    assert not config.workflow.requires_approval("CODE")

    config.workflow.approval_phases = ["REVIEW"]
    assert config.workflow.requires_approval("REVIEW")
    assert not config.workflow.requires_approval("PLAN")

    config.workflow.human_approve = True
    assert all(
        config.workflow.requires_approval(phase)
        for phase in ("PLAN", "CODE", "TEST", "REVIEW", "FIX")
    )
    assert not config.workflow.requires_approval("DONE")


def test_toml_dump_contains_policy_and_backend_fields() -> None:
    rendered = dumps_toml(ForemanConfig.default())

    assert "max_retries" in rendered
    assert "retry_backoff_seconds" in rendered
    assert "phase_timeout_seconds" in rendered
    assert "[policy.routes]" in rendered
    assert '"QualityFailure" = "fix"' in rendered
    assert "[state]" in rendered
    assert tomllib.loads(rendered)["policy"]["max_attempts"] == 3


def test_package_version_constant_matches_pyproject() -> None:
    project_root = Path(__file__).resolve().parents[1]
    pyproject = tomllib.loads((project_root / "pyproject.toml").read_text(encoding="utf-8"))

    assert __version__ == pyproject["project"]["version"]
