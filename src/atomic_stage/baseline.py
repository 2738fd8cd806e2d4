"""Baseline snapshots of the production tree.

A snapshot is taken once per workspace, immediately after creation and
before any stage runs. It records a fingerprint for every production path
the workspace's output could overwrite; the conflict detector later diffs
the live tree against it.
"""

from __future__ import annotations

import hashlib
import logging
from datetime import UTC, datetime
from pathlib import Path
from typing import Iterable

from .canonical import canonical_digest
from .errors import RecoveryError
from .models import ArtifactCategory, BaselineSnapshot, FileFingerprint, Workspace
from .settings import StagingSettings
from .workspace_store import WorkspaceStore

logger = logging.getLogger(__name__)

_HASH_CHUNK_BYTES = 1024 * 1024


def fingerprint_path(path: Path) -> FileFingerprint:
    """Fingerprint a production file.

    Missing files yield an "absent" fingerprint. Any other I/O failure
    propagates so the caller can decide how to treat an unreadable path.

    Raises:
        IsADirectoryError: If *path* is a directory.
        OSError: If the file exists but cannot be read.
    """
    try:
        stat = path.stat()
    except (FileNotFoundError, NotADirectoryError):
        return FileFingerprint.absent()
    if path.is_dir():
        raise IsADirectoryError(f"Expected a file but found a directory: {path}")

    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(_HASH_CHUNK_BYTES), b""):
            digest.update(chunk)
    return FileFingerprint(
        exists=True,
        size=stat.st_size,
        mtime_ns=stat.st_mtime_ns,
        sha256=digest.hexdigest(),
    )


def baseline_key(path: Path, project_root: Path) -> str:
    """Return the snapshot key for *path*: project-relative POSIX when possible."""
    try:
        return path.relative_to(project_root).as_posix()
    except ValueError:
        return path.as_posix()


def resolve_baseline_key(key: str, project_root: Path) -> Path:
    path = Path(key)
    return path if path.is_absolute() else project_root / path


def candidate_paths(settings: StagingSettings) -> list[Path]:
    """Select the production paths a new workspace should snapshot.

    Every file already under the four production category directories is
    included, whether or not a previous version was ever transformed. An
    empty production tree yields an empty selection.
    """
    paths: set[Path] = set()
    for category in ArtifactCategory:
        root = settings.production_path(category)
        if not root.is_dir():
            continue
        paths.update(entry for entry in root.rglob("*") if entry.is_file())
    return sorted(paths)


class BaselineSnapshotter:
    """Captures and verifies the frozen baseline of a workspace."""

    def __init__(self, store: WorkspaceStore, project_root: Path) -> None:
        self.store = store
        self.project_root = project_root

    def capture(self, workspace: Workspace, paths: Iterable[Path]) -> BaselineSnapshot:
        """Fingerprint *paths* and persist the snapshot into the workspace.

        Args:
            workspace: A workspace with no baseline yet.
            paths: Candidate production paths; absent ones are recorded as such.

        Returns:
            The persisted snapshot.

        Raises:
            RecoveryError: If a baseline was already captured for the workspace.
            OSError: If a candidate path exists but cannot be read.
        """
        if workspace.metadata.baseline is not None:
            raise RecoveryError(f"Baseline already captured for {workspace.version}")

        files: dict[str, FileFingerprint] = {}
        for path in paths:
            absolute = path if path.is_absolute() else self.project_root / path
            files[baseline_key(absolute, self.project_root)] = fingerprint_path(absolute)

        snapshot = BaselineSnapshot(files=files, captured_at=datetime.now(UTC))
        self.store.set_baseline(workspace, snapshot, canonical_digest(snapshot))
        logger.info("Captured baseline for %s: %d path(s)", workspace.version, len(files))
        return snapshot

    @staticmethod
    def verify(workspace: Workspace) -> BaselineSnapshot:
        """Return the workspace baseline after checking it was not altered.

        Raises:
            RecoveryError: If the baseline is missing or its digest does not
                match the one recorded at capture time.
        """
        snapshot = workspace.metadata.baseline
        if snapshot is None or workspace.metadata.baseline_digest is None:
            raise RecoveryError(f"No baseline recorded for {workspace.version}")
        if canonical_digest(snapshot) != workspace.metadata.baseline_digest:
            raise RecoveryError(f"Baseline for {workspace.version} was modified after capture")
        return snapshot
