import asyncio
import subprocess
from pathlib import Path

import pytest

from foreman.artifacts import ChangeSummary, Patch
from foreman.errors import StalePatchError, WorkspaceError
from foreman.state import DryRunWorkspace, GitWorkspace

NEW_FILE_DIFF = """diff --git a/src/feature.py b/src/feature.py
new file mode 100644
--- /dev/null
+++ b/src/feature.py
@@ -0,0 +1 @@
+VALUE = 1
"""

EDIT_DIFF = """diff --git a/src/feature.py b/src/feature.py
--- a/src/feature.py
+++ b/src/feature.py
@@ -1 +1 @@
-VALUE = 1
+VALUE = 2
"""


def _run(cmd: list[str], cwd: Path) -> str:
    proc = subprocess.run(cmd, cwd=cwd, check=True, text=True, capture_output=True)
    return proc.stdout.strip()


def _init_repo(repo: Path) -> None:
    repo.mkdir()
    _run(["git", "init"], cwd=repo)
    _run(["git", "config", "user.email", "test@example.com"], cwd=repo)
    _run(["git", "config", "user.name", "Test User"], cwd=repo)
    _run(["git", "symbolic-ref", "HEAD", "refs/heads/main"], cwd=repo)

    (repo / "README.md").write_text("demo\n", encoding="utf-8")
    _run(["git", "add", "README.md"], cwd=repo)
    _run(["git", "commit", "-m", "initial"], cwd=repo)


def test_prepare_creates_workflow_branch_from_target(tmp_path: Path) -> None:
    repo = tmp_path / "repo"
    _init_repo(repo)
    workspace = GitWorkspace(repo)

    workspace.prepare("wf-1", "main")
    workspace.prepare("wf-1", "main")

    assert workspace.current_branch() == "foreman/wf-1"
    exclude = (repo / ".git" / "info" / "exclude").read_text(encoding="utf-8")
    assert exclude.splitlines().count("/.foreman/") == 1


def test_apply_commits_each_patch(tmp_path: Path) -> None:
    repo = tmp_path / "repo"
    _init_repo(repo)
    workspace = GitWorkspace(repo)
    workspace.prepare("wf-1", "main")
    first = Patch(
        diff=NEW_FILE_DIFF,
        touched_files=["src/feature.py"],
        summary=ChangeSummary(description="Add feature flag"),
    )

    applied = asyncio.run(workspace.apply("wf-1", "CODE-1", 2, first))
    asyncio.run(workspace.apply("wf-1", "FIX-1", 5, Patch(diff=EDIT_DIFF)))

    assert applied.touched_files == ["src/feature.py"]
    assert applied.commit_hash
    assert (repo / "src" / "feature.py").read_text(encoding="utf-8") == "VALUE = 2\n"
    log = _run(["git", "log", "--format=%s", "-3"], cwd=repo).splitlines()
    assert log == ["foreman(wf-1): FIX-1", "foreman(wf-1): CODE-1", "initial"]
    body = _run(["git", "log", "-1", "--format=%b", applied.commit_hash], cwd=repo)
    assert "Add feature flag" in body


def test_stale_patch_is_refused(tmp_path: Path) -> None:
    repo = tmp_path / "repo"
    _init_repo(repo)
    workspace = GitWorkspace(repo)
    workspace.prepare("wf-1", "main")
    workspace.note_applied("wf-1", 4)

    with pytest.raises(StalePatchError):
        asyncio.run(workspace.apply("wf-1", "CODE-1", 2, Patch(diff=NEW_FILE_DIFF)))

    assert not (repo / "src" / "feature.py").exists()


def test_patch_that_does_not_apply_leaves_tree_untouched(tmp_path: Path) -> None:
    repo = tmp_path / "repo"
    _init_repo(repo)
    workspace = GitWorkspace(repo)
    workspace.prepare("wf-1", "main")
    head = _run(["git", "rev-parse", "HEAD"], cwd=repo)

    with pytest.raises(WorkspaceError, match="does not apply"):
        asyncio.run(workspace.apply("wf-1", "CODE-1", 2, Patch(diff=EDIT_DIFF)))

    assert _run(["git", "rev-parse", "HEAD"], cwd=repo) == head
    assert _run(["git", "status", "--porcelain"], cwd=repo) == ""


def test_checkpoint_tags_head(tmp_path: Path) -> None:
    repo = tmp_path / "repo"
    _init_repo(repo)
    workspace = GitWorkspace(repo)
    workspace.prepare("wf-1", "main")

    checkpoint = workspace.checkpoint("wf-1", "Done")

    assert checkpoint.startswith("foreman/wf-1/done-")
    assert workspace.list_checkpoints("wf-1") == [checkpoint]


def test_workspace_outside_git_refuses_to_patch(tmp_path: Path) -> None:
    workspace = GitWorkspace(tmp_path)

    assert workspace.git_enabled is False
    with pytest.raises(WorkspaceError, match="No git repository"):
        workspace.prepare("wf-1", "main")


def test_dry_run_workspace_records_without_touching_files(tmp_path: Path) -> None:
    workspace = DryRunWorkspace()
    workspace.prepare("wf-1", "main")

    applied = asyncio.run(
        workspace.apply("wf-1", "CODE-1", 2, Patch(diff=NEW_FILE_DIFF, touched_files=[]))
    )
    checkpoint = workspace.checkpoint("wf-1", "done")

    assert workspace.prepared == [("wf-1", "main")]
    assert applied.touched_files == ["src/feature.py"]
    assert checkpoint == "foreman/wf-1/done-dry-run"
    assert list(tmp_path.iterdir()) == []
