from __future__ import annotations

import logging
import re
import shutil
from datetime import UTC, datetime
from pathlib import Path
from typing import Callable

from pydantic import ValidationError

from .errors import RecoveryError, WorkspaceExistsError
from .fileio import atomic_write_text, locked_file, read_document
from .models import (
    METADATA_FILENAME,
    STAGE_COMPLETION_STATUS,
    STAGE_PREREQUISITE_STATUS,
    STATUS_TRANSITIONS,
    ArtifactCategory,
    BaselineSnapshot,
    StageResult,
    Workspace,
    WorkspaceMetadata,
    WorkspaceStatus,
)

logger = logging.getLogger(__name__)

_VERSION_PATTERN = re.compile(r"^[A-Za-z0-9._+-]+$")


def validate_version(version: str) -> str:
    """Return *version* unchanged if it is usable as a workspace directory name.

    Raises:
        ValueError: If the version is empty, a dot path, or contains
            characters outside ``[A-Za-z0-9._+-]``.
    """
    value = version.strip()
    if not value:
        raise ValueError("target version must be non-empty")
    if value in {".", ".."} or not _VERSION_PATTERN.match(value):
        raise ValueError(f"target version contains characters not allowed in a directory name: {version!r}")
    return value


# ---------------------------------------------------------------------------
# WorkspaceStore
# ---------------------------------------------------------------------------

class WorkspaceStore:
    """Filesystem store for staging workspaces.

    One directory per target version lives under ``staging_root``; each
    holds the four category output directories and a ``staging.json``
    metadata document. The document is the authoritative state of the
    workspace: every mutation re-reads it under an exclusive lock, applies
    the change and writes it back atomically before returning.
    """

    def __init__(self, staging_root: Path) -> None:
        self.staging_root = staging_root

    def workspace_dir(self, version: str) -> Path:
        return self.staging_root / validate_version(version)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def create(self, version: str, previous_version: str | None = None) -> Workspace:
        """Create the workspace directory and its initial metadata document.

        The workspace root is created with a single ``mkdir`` that fails if
        the directory exists, so two racing creators cannot both succeed.

        Args:
            version: Target version; becomes the directory name.
            previous_version: Optional diff-base version.

        Returns:
            The freshly created workspace in ``created`` status.

        Raises:
            ValueError: If the version is not a valid directory name.
            WorkspaceExistsError: If a directory already exists for the version.
        """
        root = self.workspace_dir(version)
        self.staging_root.mkdir(parents=True, exist_ok=True)
        try:
            root.mkdir(exist_ok=False)
        except FileExistsError as exc:
            raise WorkspaceExistsError(version, root) from exc

        metadata = WorkspaceMetadata(
            target_version=validate_version(version),
            previous_version=previous_version,
            start_time=datetime.now(UTC),
            status=WorkspaceStatus.CREATED,
        )
        workspace = Workspace(root=root, metadata=metadata)
        try:
            for category in ArtifactCategory:
                workspace.category_dir(category).mkdir()
            atomic_write_text(workspace.metadata_path, metadata.model_dump_json(indent=2))
        except BaseException:
            shutil.rmtree(root, ignore_errors=True)
            raise
        logger.info("Created staging workspace for %s at %s", version, root)
        return workspace

    def read(self, path: Path) -> Workspace:
        """Load a workspace, raising on anything unusable.

        Raises:
            RecoveryError: If the directory or its metadata document is
                missing, empty, or fails validation.
        """
        root = Path(path)
        if not root.is_dir():
            raise RecoveryError(f"Staging workspace not found: {root}")
        metadata_path = root / METADATA_FILENAME
        try:
            text = read_document(metadata_path, "staging metadata")
            metadata = WorkspaceMetadata.model_validate_json(text)
        except ValidationError as exc:
            raise RecoveryError(f"staging metadata at {metadata_path} failed validation: {exc}") from exc
        except (OSError, ValueError) as exc:
            raise RecoveryError(f"Invalid or corrupted staging directory {root}: {exc}") from exc
        return Workspace(root=root, metadata=metadata)

    def load(self, path: Path) -> Workspace | None:
        """Load a workspace, returning ``None`` if it is invalid or corrupt."""
        try:
            return self.read(path)
        except RecoveryError as exc:
            logger.warning("%s", exc)
            return None

    def reload(self, workspace: Workspace) -> Workspace:
        return self.read(workspace.root)

    def remove(self, workspace: Workspace | Path) -> None:
        """Recursively delete the workspace root. Irreversible."""
        root = workspace.root if isinstance(workspace, Workspace) else Path(workspace)
        if not root.exists():
            logger.debug("Staging workspace already absent: %s", root)
            return
        shutil.rmtree(root)
        logger.info("Removed staging workspace %s", root)

    def list_workspace_dirs(self) -> list[Path]:
        """Return every directory under the staging root, sorted by name."""
        if not self.staging_root.is_dir():
            return []
        return sorted(
            entry for entry in self.staging_root.iterdir()
            if entry.is_dir() and not entry.name.startswith(".")
        )

    # ------------------------------------------------------------------
    # Mutations (locked read-modify-write)
    # ------------------------------------------------------------------

    def update_status(self, workspace: Workspace, new_status: WorkspaceStatus) -> Workspace:
        """Persist a forward status transition and return the updated copy.

        Raises:
            RecoveryError: If the workspace is gone or the transition is
                not allowed by the status state machine.
        """

        def apply(metadata: WorkspaceMetadata) -> WorkspaceMetadata:
            _check_transition(metadata, new_status)
            return metadata.model_copy(update={"status": new_status})

        updated = self._mutate(workspace, apply)
        logger.info("Workspace %s status -> %s", updated.version, new_status.value)
        return updated

    def record_stage_result(self, workspace: Workspace, stage: int, result: StageResult) -> Workspace:
        """Record a stage result, advancing the status when the stage succeeded.

        The result and the resulting status change are written in the same
        document update. A failed result leaves the status untouched; the
        caller is expected to roll the workspace back.

        Raises:
            RecoveryError: If the stage is unknown, already recorded, or the
                workspace is not in the status that stage requires.
        """
        if stage not in STAGE_PREREQUISITE_STATUS:
            raise RecoveryError(f"Unknown stage index: {stage}")

        def apply(metadata: WorkspaceMetadata) -> WorkspaceMetadata:
            if stage in metadata.stage_results:
                raise RecoveryError(f"Stage {stage} result already recorded for {metadata.target_version}")
            required = STAGE_PREREQUISITE_STATUS[stage]
            if metadata.status is not required:
                raise RecoveryError(
                    f"Cannot record stage {stage} for {metadata.target_version}: "
                    f"status is '{metadata.status.value}', need '{required.value}'"
                )
            stage_results = {**metadata.stage_results, stage: result}
            update: dict[str, object] = {"stage_results": stage_results}
            if result.success:
                target = STAGE_COMPLETION_STATUS[stage]
                _check_transition(metadata, target)
                update["status"] = target
            return metadata.model_copy(update=update)

        updated = self._mutate(workspace, apply)
        logger.info(
            "Recorded stage %s result for %s: success=%s files=%d",
            stage,
            updated.version,
            result.success,
            len(result.files_written),
        )
        return updated

    def set_baseline(self, workspace: Workspace, snapshot: BaselineSnapshot, digest: str) -> Workspace:
        """Store the baseline snapshot. Allowed exactly once per workspace.

        Raises:
            RecoveryError: If a baseline was already captured.
        """

        def apply(metadata: WorkspaceMetadata) -> WorkspaceMetadata:
            if metadata.baseline is not None:
                raise RecoveryError(f"Baseline already captured for {metadata.target_version}")
            return metadata.model_copy(update={"baseline": snapshot, "baseline_digest": digest})

        return self._mutate(workspace, apply)

    def add_committed_path(self, workspace: Workspace, production_path: str) -> Workspace:
        def apply(metadata: WorkspaceMetadata) -> WorkspaceMetadata:
            if production_path in metadata.committed_paths:
                return metadata
            return metadata.model_copy(update={"committed_paths": [*metadata.committed_paths, production_path]})

        return self._mutate(workspace, apply)

    def _mutate(
        self,
        workspace: Workspace,
        apply: Callable[[WorkspaceMetadata], WorkspaceMetadata],
    ) -> Workspace:
        path = workspace.metadata_path
        if not path.is_file():
            raise RecoveryError(f"Staging workspace no longer exists: {workspace.root}")
        try:
            with locked_file(path):
                current = self.read(workspace.root)
                updated = apply(current.metadata)
                atomic_write_text(path, updated.model_dump_json(indent=2))
        except FileNotFoundError as exc:
            raise RecoveryError(f"Staging workspace no longer exists: {workspace.root}") from exc
        return workspace.with_metadata(updated)


def _check_transition(metadata: WorkspaceMetadata, new_status: WorkspaceStatus) -> None:
    allowed = STATUS_TRANSITIONS[metadata.status]
    if new_status not in allowed:
        raise RecoveryError(
            f"Illegal workspace status transition for {metadata.target_version}: "
            f"{metadata.status.value} -> {new_status.value}"
        )
