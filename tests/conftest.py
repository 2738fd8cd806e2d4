from __future__ import annotations

import os
from pathlib import Path

import pytest

from atomic_stage import ArtifactCategory, PipelineOrchestrator, StageResult, StagingSettings


@pytest.fixture(autouse=True)
def _isolated_staging_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep developer STAGING_* variables from leaking into tests."""
    for name in list(os.environ):
        if name.startswith("STAGING_"):
            monkeypatch.delenv(name, raising=False)


@pytest.fixture
def project_root(tmp_path: Path) -> Path:
    root = tmp_path / "project"
    root.mkdir()
    return root


@pytest.fixture
def settings(project_root: Path) -> StagingSettings:
    return StagingSettings(project_root=str(project_root)).normalized()


@pytest.fixture
def orchestrator(settings: StagingSettings) -> PipelineOrchestrator:
    return PipelineOrchestrator(settings)


class StubExecutor:
    """Deterministic stage executor writing fixed files into its output directory."""

    def __init__(
        self,
        files: dict[str, str] | None = None,
        *,
        success: bool = True,
        error: str | None = None,
        raises: Exception | None = None,
    ) -> None:
        self.files = dict(files or {})
        self.success = success
        self.error = error
        self.raises = raises
        self.calls: list[Path] = []

    def run(self, output_dir: Path) -> StageResult:
        self.calls.append(output_dir)
        if self.raises is not None:
            raise self.raises
        for relative, content in self.files.items():
            target = output_dir / relative
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content, encoding="utf-8")
        if not self.success:
            return StageResult.failed(self.error or "stage failed", duration_ms=5)
        return StageResult(success=True, files_written=sorted(self.files), duration_ms=5)


def write_production(settings: StagingSettings, category: str, relative: str, content: str) -> Path:
    path = settings.production_path(ArtifactCategory(category)) / relative
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    return path
