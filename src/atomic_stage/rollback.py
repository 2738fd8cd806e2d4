from __future__ import annotations

import logging
from pathlib import Path

from .models import METADATA_FILENAME, RollbackResult, Workspace
from .workspace_store import WorkspaceStore

logger = logging.getLogger(__name__)


def rollback_workspace(
    store: WorkspaceStore,
    workspace: Workspace | Path,
    reason: str | None = None,
) -> RollbackResult:
    """Discard a workspace without touching production.

    Accepts a bare path so corrupt workspaces with no readable document can
    still be removed. When the document records paths already moved by a
    partial commit, those files stay in production and are named in a
    warning.

    Raises:
        OSError: If the workspace directory cannot be deleted.
    """
    root = workspace.root if isinstance(workspace, Workspace) else Path(workspace)
    loaded = store.load(root) if (root / METADATA_FILENAME).is_file() else None
    if loaded is None and isinstance(workspace, Workspace):
        loaded = workspace

    version = loaded.version if loaded is not None else None
    if loaded is not None and loaded.metadata.committed_paths:
        logger.warning(
            "Rolling back %s after a partial commit; these files remain in production: %s",
            version,
            ", ".join(loaded.metadata.committed_paths),
        )

    store.remove(root)
    logger.info("Rolled back staging workspace %s (%s)", version or root, reason or "no reason given")
    return RollbackResult(success=True, version=version, workspace_path=root, reason=reason)
