from foreman.state.store import ArtifactRecord, ArtifactStore
from foreman.state.workspace import AppliedPatch, DryRunWorkspace, GitWorkspace, Workspace

__all__ = [
    "AppliedPatch",
    "ArtifactRecord",
    "ArtifactStore",
    "DryRunWorkspace",
    "GitWorkspace",
    "Workspace",
]
