from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from .canonical import to_jsonable

METADATA_FILENAME = "staging.json"


class WorkspaceStatus(str, Enum):
    CREATED = "created"
    STAGE1_COMPLETE = "stage1-complete"
    STAGE2_COMPLETE = "stage2-complete"
    READY = "ready"
    COMMITTED = "committed"


# Rollback is not a status: it removes the workspace from any non-terminal state.
STATUS_TRANSITIONS: dict[WorkspaceStatus, frozenset[WorkspaceStatus]] = {
    WorkspaceStatus.CREATED: frozenset({WorkspaceStatus.STAGE1_COMPLETE}),
    WorkspaceStatus.STAGE1_COMPLETE: frozenset({WorkspaceStatus.STAGE2_COMPLETE}),
    WorkspaceStatus.STAGE2_COMPLETE: frozenset({WorkspaceStatus.READY}),
    WorkspaceStatus.READY: frozenset({WorkspaceStatus.COMMITTED}),
    WorkspaceStatus.COMMITTED: frozenset(),
}

TERMINAL_STATUSES = frozenset({WorkspaceStatus.COMMITTED})

# Status reached after recording a successful result for each stage.
STAGE_COMPLETION_STATUS: dict[int, WorkspaceStatus] = {
    1: WorkspaceStatus.STAGE1_COMPLETE,
    2: WorkspaceStatus.STAGE2_COMPLETE,
}

# Status a workspace must be in before a stage's result can be recorded.
STAGE_PREREQUISITE_STATUS: dict[int, WorkspaceStatus] = {
    1: WorkspaceStatus.CREATED,
    2: WorkspaceStatus.STAGE1_COMPLETE,
}


class ArtifactCategory(str, Enum):
    SCRIPTS = "scripts"
    COMMANDS = "commands"
    AGENTS = "agents"
    SKILLS = "skills"


# ---------------------------------------------------------------------------
# Persisted documents
# ---------------------------------------------------------------------------

class FileFingerprint(BaseModel):
    """Point-in-time fingerprint of one production file."""

    model_config = ConfigDict(frozen=True)

    exists: bool
    size: int | None = None
    mtime_ns: int | None = None
    sha256: str | None = None

    @classmethod
    def absent(cls) -> "FileFingerprint":
        return cls(exists=False)

    def matches(self, other: "FileFingerprint") -> bool:
        """Compare by content; mtime alone never makes two fingerprints differ."""
        if not self.exists or not other.exists:
            return self.exists == other.exists
        return self.size == other.size and self.sha256 == other.sha256

    def describe(self) -> str:
        if not self.exists:
            return "absent"
        digest = (self.sha256 or "")[:12]
        return f"size={self.size} sha256={digest}"


class StageResult(BaseModel):
    """Outcome reported by a stage executor. Immutable once recorded."""

    model_config = ConfigDict(frozen=True)

    success: bool
    files_written: list[str] = Field(default_factory=list)
    error: str | None = None
    duration_ms: int = Field(default=0, ge=0)

    @classmethod
    def failed(cls, error: str, *, duration_ms: int = 0) -> "StageResult":
        return cls(success=False, files_written=[], error=error, duration_ms=duration_ms)


class BaselineSnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    files: dict[str, FileFingerprint] = Field(default_factory=dict)
    captured_at: datetime


class WorkspaceMetadata(BaseModel):
    """The ``staging.json`` document: authoritative state of one workspace."""

    target_version: str
    previous_version: str | None = None
    start_time: datetime
    status: WorkspaceStatus = WorkspaceStatus.CREATED
    stage_results: dict[int, StageResult] = Field(default_factory=dict)
    baseline: BaselineSnapshot | None = None
    baseline_digest: str | None = None
    committed_paths: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# In-memory views
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Workspace:
    """A workspace root paired with the metadata last loaded from it."""

    root: Path
    metadata: WorkspaceMetadata

    @property
    def version(self) -> str:
        return self.metadata.target_version

    @property
    def status(self) -> WorkspaceStatus:
        return self.metadata.status

    @property
    def metadata_path(self) -> Path:
        return self.root / METADATA_FILENAME

    def category_dir(self, category: ArtifactCategory) -> Path:
        return self.root / category.value

    def output_dirs(self) -> dict[ArtifactCategory, Path]:
        return {category: self.category_dir(category) for category in ArtifactCategory}

    def with_metadata(self, metadata: WorkspaceMetadata) -> "Workspace":
        return replace(self, metadata=metadata)


@dataclass(frozen=True)
class ManifestEntry:
    staged_path: Path
    production_path: Path
    category: ArtifactCategory
    relative_path: str


@dataclass(frozen=True)
class Conflict:
    """A baseline path whose current state differs from the frozen fingerprint.

    ``current_fingerprint`` is ``None`` when the file could not be read;
    ``detail`` then carries the I/O error.
    """

    production_path: str
    recorded_fingerprint: FileFingerprint
    current_fingerprint: FileFingerprint | None
    detail: str | None = None

    def describe(self) -> str:
        current = self.current_fingerprint.describe() if self.current_fingerprint else f"unreadable ({self.detail})"
        return f"{self.production_path}: {self.recorded_fingerprint.describe()} -> {current}"


# ---------------------------------------------------------------------------
# Entry point results
# ---------------------------------------------------------------------------

class _ResultMixin:
    def to_dict(self) -> dict[str, Any]:
        return to_jsonable(self)


@dataclass(frozen=True)
class InitResult(_ResultMixin):
    success: bool
    version: str
    workspace_path: Path | None = None
    previous_version: str | None = None
    output_dirs: dict[str, Path] = field(default_factory=dict)
    orphans: list[Path] = field(default_factory=list)
    error: str | None = None


@dataclass(frozen=True)
class CommitResult(_ResultMixin):
    success: bool
    version: str | None
    committed_paths: list[str] = field(default_factory=list)
    conflicts: list[Conflict] = field(default_factory=list)
    committed_count: int = 0
    total_count: int = 0
    workspace_path: Path | None = None
    error: str | None = None


@dataclass(frozen=True)
class RollbackResult(_ResultMixin):
    success: bool
    version: str | None
    workspace_path: Path
    reason: str | None = None
    error: str | None = None


@dataclass(frozen=True)
class InspectionReport(_ResultMixin):
    path: Path
    version: str
    status: WorkspaceStatus
    start_time: datetime
    previous_version: str | None
    file_counts: dict[str, int]
    stage_results: dict[int, StageResult] = field(default_factory=dict)
    committed_paths: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class RecoveryResult(_ResultMixin):
    success: bool
    action: str
    workspace_path: Path
    inspection: InspectionReport | None = None
    commit: CommitResult | None = None
    rollback: RollbackResult | None = None
    error: str | None = None


@dataclass(frozen=True)
class PipelineResult(_ResultMixin):
    success: bool
    version: str
    status: WorkspaceStatus | None = None
    workspace_path: Path | None = None
    stage_results: dict[int, StageResult] = field(default_factory=dict)
    failed_stage: int | None = None
    commit: CommitResult | None = None
    error: str | None = None
