from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterable

from .baseline import BaselineSnapshotter, fingerprint_path, resolve_baseline_key
from .models import Conflict, Workspace

logger = logging.getLogger(__name__)


class ConflictDetector:
    """Diffs the live production tree against a workspace's frozen baseline.

    This is a point-in-time check, not a lock: an edit landing between
    detection and the move loop is not caught.
    """

    def __init__(self, project_root: Path) -> None:
        self.project_root = project_root

    def detect(self, workspace: Workspace, *, exclude: Iterable[str] = ()) -> list[Conflict]:
        """Return every baseline path whose current fingerprint differs.

        A path that cannot be read is reported as a conflict.

        Args:
            workspace: Workspace whose baseline is compared.
            exclude: Baseline keys to skip, such as paths this workspace
                already moved during an earlier partial commit.

        Raises:
            RecoveryError: If the baseline is missing or was altered.
        """
        snapshot = BaselineSnapshotter.verify(workspace)
        skipped = set(exclude)
        conflicts: list[Conflict] = []
        for key, recorded in sorted(snapshot.files.items()):
            if key in skipped:
                continue
            path = resolve_baseline_key(key, self.project_root)
            try:
                current = fingerprint_path(path)
            except OSError as exc:
                logger.warning("Unable to fingerprint %s; treating as conflict: %s", path, exc)
                conflicts.append(Conflict(key, recorded, None, detail=str(exc)))
                continue
            if not recorded.matches(current):
                conflicts.append(Conflict(key, recorded, current))

        if conflicts:
            logger.warning(
                "Detected %d conflict(s) for %s: %s",
                len(conflicts),
                workspace.version,
                "; ".join(conflict.describe() for conflict in conflicts),
            )
        else:
            logger.debug("No conflicts for %s across %d baseline path(s)", workspace.version, len(snapshot.files))
        return conflicts
