from __future__ import annotations

import asyncio
import logging
import re
import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, ClassVar

from foreman.artifacts import Patch
from foreman.errors import StalePatchError, WorkspaceError

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class AppliedPatch:
    key: str
    sequence: int
    touched_files: list[str] = field(default_factory=list)
    commit_hash: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "sequence": self.sequence,
            "touched_files": list(self.touched_files),
            "commit_hash": self.commit_hash,
        }


class Workspace(ABC):
    """Applies accepted patches to a working tree, one at a time."""

    dry_run: ClassVar[bool] = False

    def __init__(self) -> None:
        self._apply_lock = asyncio.Lock()
        self._last_sequence: dict[str, int] = {}

    def _check_sequence(self, workflow_id: str, key: str, sequence: int) -> None:
        last = self._last_sequence.get(workflow_id)
        if last is not None and sequence <= last:
            raise StalePatchError(
                f"Patch {key} (sequence {sequence}) is not newer than the last applied "
                f"patch (sequence {last}) for workflow {workflow_id}."
            )

    def note_applied(self, workflow_id: str, sequence: int) -> None:
        """Seed the sequence watermark from a persisted ledger."""
        current = self._last_sequence.get(workflow_id, 0)
        self._last_sequence[workflow_id] = max(current, sequence)

    async def apply(
        self, workflow_id: str, key: str, sequence: int, patch: Patch
    ) -> AppliedPatch:
        async with self._apply_lock:
            self._check_sequence(workflow_id, key, sequence)
            applied = self._apply(workflow_id, key, sequence, patch)
            self._last_sequence[workflow_id] = sequence
        logger.info("Applied patch %s for workflow %s", key, workflow_id)
        return applied

    @abstractmethod
    def prepare(self, workflow_id: str, target_branch: str) -> None:
        raise NotImplementedError

    @abstractmethod
    def _apply(self, workflow_id: str, key: str, sequence: int, patch: Patch) -> AppliedPatch:
        raise NotImplementedError

    @abstractmethod
    def checkpoint(self, workflow_id: str, label: str) -> str:
        raise NotImplementedError


class DryRunWorkspace(Workspace):
    """Records what would be applied without touching the tree."""

    dry_run: ClassVar[bool] = True

    def __init__(self) -> None:
        super().__init__()
        self.prepared: list[tuple[str, str]] = []
        self.applied: list[AppliedPatch] = []
        self.checkpoints: list[str] = []

    def prepare(self, workflow_id: str, target_branch: str) -> None:
        self.prepared.append((workflow_id, target_branch))

    def _apply(self, workflow_id: str, key: str, sequence: int, patch: Patch) -> AppliedPatch:
        applied = AppliedPatch(key=key, sequence=sequence, touched_files=patch.all_paths())
        self.applied.append(applied)
        return applied

    def checkpoint(self, workflow_id: str, label: str) -> str:
        checkpoint_id = f"foreman/{workflow_id}/{_sanitize_label(label)}-dry-run"
        self.checkpoints.append(checkpoint_id)
        return checkpoint_id


def _sanitize_label(name: str) -> str:
    safe = re.sub(r"[^a-zA-Z0-9._-]+", "-", name.strip().lower())
    return safe or "checkpoint"


class GitWorkspace(Workspace):
    def __init__(self, repo_root: Path, *, state_dir: str = ".foreman") -> None:
        super().__init__()
        self.repo_root = repo_root.resolve()
        self.state_dir = state_dir
        self._git_enabled = self._is_git_repo()

    @property
    def git_enabled(self) -> bool:
        return self._git_enabled

    def _is_git_repo(self) -> bool:
        proc = subprocess.run(
            ["git", "--no-pager", "rev-parse", "--is-inside-work-tree"],
            cwd=self.repo_root,
            text=True,
            capture_output=True,
        )
        return proc.returncode == 0 and proc.stdout.strip() == "true"

    def _run_git(
        self,
        args: list[str],
        check: bool = True,
        input_text: str | None = None,
    ) -> subprocess.CompletedProcess[str]:
        if not self.git_enabled:
            raise WorkspaceError(
                f"No git repository found at {self.repo_root}; use --dry-run to skip patching."
            )
        proc = subprocess.run(
            ["git", "--no-pager", *args],
            cwd=self.repo_root,
            text=True,
            capture_output=True,
            input=input_text,
        )
        if check and proc.returncode != 0:
            raise WorkspaceError(proc.stderr.strip() or proc.stdout.strip())
        return proc

    @staticmethod
    def branch_name(workflow_id: str) -> str:
        return f"foreman/{workflow_id}"

    def current_branch(self) -> str:
        if not self.git_enabled:
            return "no-git"
        return self._run_git(["rev-parse", "--abbrev-ref", "HEAD"]).stdout.strip()

    def _branch_exists(self, branch: str) -> bool:
        proc = self._run_git(
            ["rev-parse", "--verify", "--quiet", f"refs/heads/{branch}"], check=False
        )
        return proc.returncode == 0

    def _exclude_state_dir(self) -> None:
        git_path = self._run_git(["rev-parse", "--git-path", "info/exclude"]).stdout.strip()
        exclude_path = Path(git_path)
        if not exclude_path.is_absolute():
            exclude_path = self.repo_root / exclude_path
        entry = f"/{self.state_dir.strip('/')}/"
        existing = exclude_path.read_text(encoding="utf-8") if exclude_path.exists() else ""
        if entry in existing.splitlines():
            return
        exclude_path.parent.mkdir(parents=True, exist_ok=True)
        prefix = "" if not existing or existing.endswith("\n") else "\n"
        exclude_path.write_text(f"{existing}{prefix}{entry}\n", encoding="utf-8")

    def prepare(self, workflow_id: str, target_branch: str) -> None:
        self._exclude_state_dir()
        branch = self.branch_name(workflow_id)
        if self.current_branch() == branch:
            return
        if self._branch_exists(branch):
            self._run_git(["checkout", branch])
        else:
            start_point = target_branch if self._branch_exists(target_branch) else "HEAD"
            self._run_git(["checkout", "-b", branch, start_point])
        logger.info("Workspace on branch %s", branch)

    def _apply(self, workflow_id: str, key: str, sequence: int, patch: Patch) -> AppliedPatch:
        diff = patch.diff if patch.diff.endswith("\n") else f"{patch.diff}\n"
        check = self._run_git(["apply", "--check", "--index", "-"], check=False, input_text=diff)
        if check.returncode != 0:
            raise WorkspaceError(
                f"Patch {key} does not apply: {check.stderr.strip() or check.stdout.strip()}"
            )
        self._run_git(["apply", "--index", "-"], input_text=diff)

        subject = f"foreman({workflow_id}): {key}"
        body = patch.summary.description if patch.summary else ""
        commit_args = ["commit", "--allow-empty", "-m", subject]
        if body:
            commit_args.extend(["-m", body])
        self._run_git(commit_args)
        commit_hash = self._run_git(["rev-parse", "HEAD"]).stdout.strip()
        files = self._run_git(
            ["show", "--pretty=format:", "--name-only", commit_hash], check=False
        ).stdout
        return AppliedPatch(
            key=key,
            sequence=sequence,
            touched_files=[line.strip() for line in files.splitlines() if line.strip()],
            commit_hash=commit_hash,
        )

    def checkpoint(self, workflow_id: str, label: str) -> str:
        timestamp = datetime.now(UTC).strftime("%Y%m%d%H%M%S")
        checkpoint_id = f"foreman/{workflow_id}/{_sanitize_label(label)}-{timestamp}"
        self._run_git(["tag", "-f", checkpoint_id])
        return checkpoint_id

    def list_checkpoints(self, workflow_id: str) -> list[str]:
        if not self.git_enabled:
            return []
        proc = self._run_git(
            ["tag", "--list", f"foreman/{workflow_id}/*", "--sort=creatordate"], check=False
        )
        if proc.returncode != 0:
            return []
        return [line.strip() for line in proc.stdout.splitlines() if line.strip()]
