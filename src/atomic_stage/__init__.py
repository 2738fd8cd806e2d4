from importlib.metadata import version

from .baseline import BaselineSnapshotter, candidate_paths, fingerprint_path
from .canonical import canonical_digest, to_canonical_json, to_jsonable
from .committer import AtomicCommitter
from .conflicts import ConflictDetector
from .errors import (
    CommitError,
    ConflictError,
    HistoryError,
    OrphanBlockingError,
    RecoveryError,
    StageFailureError,
    StagingError,
    WorkspaceExistsError,
)
from .executors import CommandStageExecutor, StageExecutor, collect_written_files
from .history import HistoryEntry, HistoryStatus, TransformationHistory
from .models import (
    ArtifactCategory,
    BaselineSnapshot,
    CommitResult,
    Conflict,
    FileFingerprint,
    InitResult,
    InspectionReport,
    ManifestEntry,
    PipelineResult,
    RecoveryResult,
    RollbackResult,
    StageResult,
    Workspace,
    WorkspaceMetadata,
    WorkspaceStatus,
)
from .orchestrator import PipelineOrchestrator
from .recovery import OrphanRecovery, RecoveryAction
from .rollback import rollback_workspace
from .settings import StagingSettings
from .workspace_store import WorkspaceStore, validate_version


def get_version() -> str:
    try:
        return version("atomic-stage")
    except Exception:
        return "0.0.0"


__all__ = [
    "ArtifactCategory",
    "AtomicCommitter",
    "BaselineSnapshot",
    "BaselineSnapshotter",
    "CommandStageExecutor",
    "CommitError",
    "CommitResult",
    "Conflict",
    "ConflictDetector",
    "ConflictError",
    "FileFingerprint",
    "HistoryEntry",
    "HistoryError",
    "HistoryStatus",
    "InitResult",
    "InspectionReport",
    "ManifestEntry",
    "OrphanBlockingError",
    "OrphanRecovery",
    "PipelineOrchestrator",
    "PipelineResult",
    "RecoveryAction",
    "RecoveryError",
    "RecoveryResult",
    "RollbackResult",
    "StageExecutor",
    "StageFailureError",
    "StageResult",
    "StagingError",
    "StagingSettings",
    "TransformationHistory",
    "Workspace",
    "WorkspaceExistsError",
    "WorkspaceMetadata",
    "WorkspaceStatus",
    "WorkspaceStore",
    "candidate_paths",
    "canonical_digest",
    "collect_written_files",
    "fingerprint_path",
    "get_version",
    "rollback_workspace",
    "to_canonical_json",
    "to_jsonable",
    "validate_version",
]
