from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .models import Conflict


class StagingError(RuntimeError):
    """Base class for every failure raised by the staging engine."""


class WorkspaceExistsError(StagingError):
    """Raised when a workspace directory already exists for a target version."""

    def __init__(self, version: str, path: Path) -> None:
        super().__init__(f"Staging workspace already exists for version {version}: {path}")
        self.version = version
        self.path = path


class OrphanBlockingError(StagingError):
    """Raised when initialization is refused because orphaned workspaces exist.

    The orphan paths are carried so callers can print recovery instructions
    without re-scanning the staging root.
    """

    def __init__(self, orphans: list[Path]) -> None:
        joined = ", ".join(str(path) for path in orphans)
        super().__init__(
            f"Orphaned staging directories detected: {joined}. "
            "Resolve them with 'recover <dir> <commit|rollback|inspect>' first."
        )
        self.orphans = list(orphans)


class StageFailureError(StagingError):
    """Raised when a pipeline stage reports failure or crashes."""

    def __init__(self, stage: int, message: str) -> None:
        super().__init__(f"Stage {stage} failed: {message}")
        self.stage = stage
        self.message = message


class ConflictError(StagingError):
    """Raised when production files changed since the baseline was captured."""

    def __init__(self, conflicts: list[Conflict]) -> None:
        super().__init__(
            f"File conflicts detected: {len(conflicts)} file(s) modified since staging started"
        )
        self.conflicts = list(conflicts)


class CommitError(StagingError):
    """Raised when a commit is refused or fails partway through.

    ``committed`` and ``total`` describe how far the move loop got, so a
    partial commit is always reported as "N of M files committed".
    """

    def __init__(self, message: str, *, committed: int = 0, total: int = 0) -> None:
        super().__init__(message)
        self.committed = committed
        self.total = total

    @property
    def partial(self) -> bool:
        return 0 < self.committed < self.total


class RecoveryError(StagingError):
    """Raised for invalid, corrupt, or wrong-state workspaces."""


class HistoryError(StagingError):
    """Raised when the transformation history file is unreadable or invalid."""
