from __future__ import annotations

import logging
from enum import Enum
from pathlib import Path
from typing import Any

from .committer import AtomicCommitter, failed_commit_result
from .errors import CommitError, ConflictError, RecoveryError, StagingError
from .models import (
    TERMINAL_STATUSES,
    ArtifactCategory,
    InspectionReport,
    RecoveryResult,
    Workspace,
    WorkspaceStatus,
)
from .rollback import rollback_workspace
from .workspace_store import WorkspaceStore

logger = logging.getLogger(__name__)


class RecoveryAction(str, Enum):
    COMMIT = "commit"
    ROLLBACK = "rollback"
    INSPECT = "inspect"


class OrphanRecovery:
    """Finds workspaces left behind by interrupted runs and resolves them.

    Only one logical run per target version may be live, so any
    non-terminal workspace found by a new process has no owner left and is
    an orphan. Directories whose metadata is missing or corrupt are orphans
    too: they block new runs until an operator rolls them back.
    """

    def __init__(self, store: WorkspaceStore, committer: AtomicCommitter) -> None:
        self.store = store
        self.committer = committer

    def detect_orphans(self, version: str | None = None) -> list[Path]:
        """Scan the staging root for orphaned workspaces.

        Args:
            version: When given, only the workspace for this version is
                considered. The default scans the whole staging root.
        """
        orphans: list[Path] = []
        for path in self.store.list_workspace_dirs():
            if version is not None and path.name != version:
                continue
            workspace = self.store.load(path)
            if workspace is None or workspace.status not in TERMINAL_STATUSES:
                orphans.append(path)
        if orphans:
            logger.debug("Found %d orphaned workspace(s): %s", len(orphans), orphans)
        return orphans

    def purge_completed(self) -> list[Path]:
        """Delete workspaces whose document already says ``committed``.

        Such a directory means the process died between persisting the
        commit and deleting the workspace; production is already complete.
        """
        purged: list[Path] = []
        for path in self.store.list_workspace_dirs():
            workspace = self.store.load(path)
            if workspace is not None and workspace.status in TERMINAL_STATUSES:
                logger.info("Removing completed workspace left behind for %s", workspace.version)
                self.store.remove(path)
                purged.append(path)
        return purged

    def inspect(self, path: Path) -> InspectionReport:
        """Summarize a workspace without mutating it.

        Raises:
            RecoveryError: If the workspace is missing or corrupt.
        """
        workspace = self.store.read(path)
        return InspectionReport(
            path=workspace.root,
            version=workspace.version,
            status=workspace.status,
            start_time=workspace.metadata.start_time,
            previous_version=workspace.metadata.previous_version,
            file_counts=count_staged_files(workspace),
            stage_results=dict(workspace.metadata.stage_results),
            committed_paths=list(workspace.metadata.committed_paths),
        )

    def describe_orphans(self, version: str | None = None) -> list[dict[str, Any]]:
        """Return one summary per orphan; corrupt ones carry an ``error`` key."""
        summaries: list[dict[str, Any]] = []
        for path in self.detect_orphans(version):
            try:
                summaries.append(self.inspect(path).to_dict())
            except RecoveryError as exc:
                summaries.append({"path": str(path), "error": str(exc)})
        return summaries

    def recover(self, path: Path, action: RecoveryAction | str, *, force: bool = False) -> RecoveryResult:
        """Apply a recovery action to an orphaned workspace.

        Never raises for staging failures; the outcome is always returned
        as a RecoveryResult.
        """
        path = Path(path)
        try:
            resolved = RecoveryAction(action)
        except ValueError:
            return RecoveryResult(
                success=False,
                action=str(action),
                workspace_path=path,
                error=f"Unknown recovery action: {action}",
            )

        logger.info("Recovering %s with action %s", path, resolved.value)
        try:
            if resolved is RecoveryAction.ROLLBACK:
                result = rollback_workspace(self.store, path, reason="Manual orphan recovery")
                return RecoveryResult(success=True, action=resolved.value, workspace_path=path, rollback=result)
            if resolved is RecoveryAction.INSPECT:
                report = self.inspect(path)
                return RecoveryResult(success=True, action=resolved.value, workspace_path=path, inspection=report)
            return self._recover_commit(path, force=force)
        except (StagingError, OSError) as exc:
            logger.error("Recovery of %s failed: %s", path, exc)
            return RecoveryResult(success=False, action=resolved.value, workspace_path=path, error=str(exc))

    def _recover_commit(self, path: Path, *, force: bool) -> RecoveryResult:
        workspace = self.store.read(path)
        if workspace.status is WorkspaceStatus.STAGE2_COMPLETE:
            workspace = self.store.update_status(workspace, WorkspaceStatus.READY)
        elif workspace.status is not WorkspaceStatus.READY:
            raise RecoveryError(
                f"Cannot commit: staging status is '{workspace.status.value}', need 'ready' or 'stage2-complete'"
            )
        try:
            commit = self.committer.commit(workspace, force=force)
        except (ConflictError, CommitError) as exc:
            return RecoveryResult(
                success=False,
                action=RecoveryAction.COMMIT.value,
                workspace_path=path,
                commit=failed_commit_result(workspace, exc),
                error=str(exc),
            )
        return RecoveryResult(success=True, action=RecoveryAction.COMMIT.value, workspace_path=path, commit=commit)


def count_staged_files(workspace: Workspace) -> dict[str, int]:
    counts = {
        category.value: sum(1 for entry in workspace.category_dir(category).rglob("*") if entry.is_file())
        if workspace.category_dir(category).is_dir()
        else 0
        for category in ArtifactCategory
    }
    counts["total"] = sum(counts.values())
    return counts
