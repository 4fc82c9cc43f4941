from __future__ import annotations

from typing import Literal

RunnerErrorKind = Literal["Timeout", "Transient", "Fatal"]
RUNNER_ERROR_KINDS = ("Timeout", "Transient", "Fatal")


class ForemanError(RuntimeError):
    """Base class for controller-side failures."""


class StoreError(ForemanError):
    """Raised when artifact or state persistence fails."""


class DuplicateArtifactError(StoreError):
    """Raised when an artifact key has already been written."""


class ConcurrentUpdateError(StoreError):
    """Raised when the persisted state revision moved past the expected one."""


class WorkflowNotFoundError(StoreError):
    """Raised when no persisted state exists for a workflow id."""


class LeaseError(StoreError):
    """Raised when another controller holds the workflow lease."""


class WorkspaceError(ForemanError):
    """Raised when a patch cannot be applied to the working tree."""


class StalePatchError(WorkspaceError):
    """Raised when an older patch would be applied after a newer one."""


class RunnerError(ForemanError):
    """Uniform failure result of a Runner invocation."""

    def __init__(self, message: str, *, kind: RunnerErrorKind = "Transient") -> None:
        if kind not in RUNNER_ERROR_KINDS:
            raise ValueError(f"Unknown runner error kind: {kind}")
        super().__init__(message)
        self.kind = kind
