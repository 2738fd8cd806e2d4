from __future__ import annotations

import errno
import logging
import os
import shutil
import tempfile
from pathlib import Path, PurePosixPath

from .baseline import baseline_key
from .conflicts import ConflictDetector
from .errors import CommitError, ConflictError, HistoryError
from .history import FileMapping, HistoryEntry, HistoryStatus, TransformationHistory
from .models import ArtifactCategory, CommitResult, ManifestEntry, Workspace, WorkspaceStatus
from .settings import StagingSettings
from .workspace_store import WorkspaceStore

logger = logging.getLogger(__name__)


def split_stage_path(raw: str) -> tuple[ArtifactCategory, str]:
    """Split a stage-reported path into its category and in-category path.

    Stages report paths relative to the workspace root, led by one of the
    category directories, e.g. ``skills/review/SKILL.md``.

    Raises:
        ValueError: If the path is empty, absolute, escapes the workspace,
            or does not start with a known category directory.
    """
    path = PurePosixPath(raw.replace("\\", "/"))
    if not raw.strip() or str(path) in {"", "."}:
        raise ValueError("stage reported an empty file path")
    if path.is_absolute():
        raise ValueError(f"stage file path must be relative: {raw}")
    if ".." in path.parts:
        raise ValueError(f"stage file path escapes its output directory: {raw}")
    head, *rest = path.parts
    try:
        category = ArtifactCategory(head)
    except ValueError:
        valid = ", ".join(category.value for category in ArtifactCategory)
        raise ValueError(f"stage file path must start with one of {valid}: {raw}") from None
    if not rest:
        raise ValueError(f"stage file path names a category directory, not a file: {raw}")
    return category, PurePosixPath(*rest).as_posix()


def move_file(source: Path, destination: Path) -> None:
    """Move one file with a single rename, creating parent directories.

    Falls back to copy-into-temp plus ``os.replace`` when the two paths are
    on different filesystems, so the destination is still swapped in
    atomically.
    """
    destination.parent.mkdir(parents=True, exist_ok=True)
    try:
        os.replace(source, destination)
        return
    except OSError as exc:
        if exc.errno != errno.EXDEV:
            raise

    logger.debug("Cross-device move for %s; copying via temp file", destination)
    fd, tmp_path = tempfile.mkstemp(dir=str(destination.parent), prefix=f".{destination.name}.", suffix=".tmp")
    os.close(fd)
    try:
        shutil.copy2(source, tmp_path)
        os.replace(tmp_path, destination)
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise
    os.unlink(source)


class AtomicCommitter:
    """Promotes a ready workspace's staged files into production.

    Each file moves with one rename. The workspace as a whole is not
    atomic across files: if a move fails partway the workspace is left on
    disk, every moved path is already recorded in its metadata, and a later
    commit resumes with the remaining entries.
    """

    def __init__(
        self,
        store: WorkspaceStore,
        settings: StagingSettings,
        *,
        detector: ConflictDetector | None = None,
        history: TransformationHistory | None = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.project_root = settings.project_root_path
        self.detector = detector if detector is not None else ConflictDetector(self.project_root)
        self.history = history

    def build_manifest(self, workspace: Workspace) -> list[ManifestEntry]:
        """Derive staged -> production mappings for a workspace.

        Paths reported by successful stages come first, in stage order.
        Files found in a category directory that no stage reported follow,
        so nothing staged is dropped when the workspace is deleted.

        Raises:
            CommitError: If a recorded path is invalid.
        """
        entries: list[ManifestEntry] = []
        seen: set[Path] = set()

        def add(category: ArtifactCategory, relative: str) -> None:
            production = self.settings.production_path(category) / relative
            if production in seen:
                return
            seen.add(production)
            entries.append(
                ManifestEntry(
                    staged_path=workspace.category_dir(category) / relative,
                    production_path=production,
                    category=category,
                    relative_path=relative,
                )
            )

        for stage, result in sorted(workspace.metadata.stage_results.items()):
            if not result.success:
                continue
            for raw in sorted(result.files_written):
                try:
                    category, relative = split_stage_path(raw)
                except ValueError as exc:
                    raise CommitError(f"Invalid manifest entry from stage {stage}: {exc}") from exc
                add(category, relative)

        reported = len(entries)
        for category in ArtifactCategory:
            staging_dir = workspace.category_dir(category)
            if not staging_dir.is_dir():
                continue
            for staged in sorted(path for path in staging_dir.rglob("*") if path.is_file()):
                add(category, staged.relative_to(staging_dir).as_posix())
        if len(entries) > reported:
            logger.warning(
                "%d staged file(s) in %s were not reported by any stage; committing them too",
                len(entries) - reported,
                workspace.version,
            )
        return entries

    def commit(self, workspace: Workspace, force: bool = False) -> CommitResult:
        """Move every staged file into production and delete the workspace.

        Args:
            workspace: Workspace to commit; its document is re-read first.
            force: Overwrite production paths that changed since the baseline.

        Returns:
            A successful CommitResult listing the committed production paths.

        Raises:
            CommitError: If the workspace is not ready, a staged file is
                missing, or a move fails (partial commits report N of M).
            ConflictError: If production changed since the baseline and
                ``force`` is false. Nothing is touched in that case.
            RecoveryError: If the workspace document is gone or corrupt.
        """
        workspace = self.store.reload(workspace)
        if workspace.status is not WorkspaceStatus.READY:
            raise CommitError(
                f"Cannot commit {workspace.version}: status is '{workspace.status.value}', need 'ready'"
            )

        already_committed = set(workspace.metadata.committed_paths)
        conflicts = self.detector.detect(workspace, exclude=already_committed)
        if conflicts and not force:
            raise ConflictError(conflicts)
        if conflicts:
            logger.warning("Force-committing %s over %d conflict(s)", workspace.version, len(conflicts))

        manifest = self.build_manifest(workspace)
        total = len(manifest)
        pending = [
            entry for entry in manifest
            if baseline_key(entry.production_path, self.project_root) not in already_committed
        ]
        committed = total - len(pending)

        missing = [entry.staged_path for entry in pending if not entry.staged_path.is_file()]
        if missing:
            raise CommitError(
                f"Staged file(s) missing for {workspace.version}: {', '.join(str(path) for path in missing)}",
                committed=committed,
                total=total,
            )

        for entry in pending:
            key = baseline_key(entry.production_path, self.project_root)
            try:
                move_file(entry.staged_path, entry.production_path)
            except OSError as exc:
                message = f"Commit of {workspace.version} failed: {committed} of {total} files committed: {exc}"
                logger.error("%s", message)
                status = HistoryStatus.PARTIAL if committed else HistoryStatus.FAILED
                self._record_history(workspace, manifest, status, error=message)
                raise CommitError(message, committed=committed, total=total) from exc
            workspace = self.store.add_committed_path(workspace, key)
            committed += 1
            logger.debug("Committed %s -> %s", entry.staged_path, entry.production_path)

        workspace = self.store.update_status(workspace, WorkspaceStatus.COMMITTED)
        self._record_history(workspace, manifest, HistoryStatus.TRANSFORMED)
        try:
            self.store.remove(workspace)
        except OSError as exc:
            # Production is complete; the next init purges committed leftovers.
            logger.warning("Committed %s but could not remove %s: %s", workspace.version, workspace.root, exc)
        logger.info("Committed %d file(s) for %s", total, workspace.version)
        return CommitResult(
            success=True,
            version=workspace.version,
            committed_paths=[baseline_key(entry.production_path, self.project_root) for entry in manifest],
            conflicts=conflicts,
            committed_count=total,
            total_count=total,
            workspace_path=workspace.root,
        )

    def _record_history(
        self,
        workspace: Workspace,
        manifest: list[ManifestEntry],
        status: HistoryStatus,
        *,
        error: str | None = None,
    ) -> None:
        if self.history is None:
            return
        entry = HistoryEntry(
            version=workspace.version,
            status=status,
            mappings=[
                FileMapping(
                    source=f"{item.category.value}/{item.relative_path}",
                    generated=baseline_key(item.production_path, self.project_root),
                    type=item.category.value,
                )
                for item in manifest
            ],
            error_details=error,
        )
        try:
            self.history.record(entry)
        except (HistoryError, OSError) as exc:
            logger.warning("Unable to record history for %s: %s", workspace.version, exc)


def failed_commit_result(workspace: Workspace | None, exc: Exception) -> CommitResult:
    """Describe a refused or failed commit as a structured result."""
    conflicts = exc.conflicts if isinstance(exc, ConflictError) else []
    committed = exc.committed if isinstance(exc, CommitError) else 0
    total = exc.total if isinstance(exc, CommitError) else 0
    return CommitResult(
        success=False,
        version=workspace.version if workspace is not None else None,
        conflicts=conflicts,
        committed_count=committed,
        total_count=total,
        workspace_path=workspace.root if workspace is not None else None,
        error=str(exc),
    )
