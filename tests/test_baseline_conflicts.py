from __future__ import annotations

import json
import os
from pathlib import Path

import pytest

from atomic_stage import (
    ArtifactCategory,
    BaselineSnapshotter,
    ConflictDetector,
    FileFingerprint,
    PipelineOrchestrator,
    RecoveryError,
    StageResult,
    StagingSettings,
    WorkspaceStore,
    candidate_paths,
    fingerprint_path,
)
from atomic_stage import conflicts as conflicts_module

from conftest import StubExecutor, write_production


def test_fingerprint_absent_and_present(tmp_path: Path) -> None:
    missing = fingerprint_path(tmp_path / "missing.txt")
    assert missing == FileFingerprint.absent()

    target = tmp_path / "present.txt"
    target.write_text("hello", encoding="utf-8")
    present = fingerprint_path(target)
    assert present.exists
    assert present.size == 5
    assert present.sha256 == "2cf24dba5fb0a30e26e83b2ac5b9e29e1b161e5c1fa7425e73043362938b9824"


def test_fingerprint_match_ignores_mtime_only_changes(tmp_path: Path) -> None:
    target = tmp_path / "file.txt"
    target.write_text("same", encoding="utf-8")
    before = fingerprint_path(target)
    stat = target.stat()
    os.utime(target, ns=(stat.st_atime_ns, stat.st_mtime_ns + 5_000_000_000))
    after = fingerprint_path(target)

    assert before.mtime_ns != after.mtime_ns
    assert before.matches(after)
    assert not before.matches(FileFingerprint.absent())


def test_candidate_paths_empty_for_empty_production(settings: StagingSettings) -> None:
    assert candidate_paths(settings) == []


def test_candidate_paths_cover_all_production_categories(settings: StagingSettings) -> None:
    paths = {
        write_production(settings, "scripts", "nested/a.ts", "a"),
        write_production(settings, "commands", "b.md", "b"),
        write_production(settings, "agents", "c.md", "c"),
        write_production(settings, "skills", "d/SKILL.md", "d"),
    }
    assert set(candidate_paths(settings)) == paths


def test_scenario_a_empty_baseline_never_conflicts(orchestrator: PipelineOrchestrator, settings: StagingSettings) -> None:
    init = orchestrator.initialize("v2.0.0")
    assert init.success, init.error
    assert init.previous_version is None

    workspace = orchestrator.store.read(init.workspace_path)
    assert workspace.metadata.baseline is not None
    assert workspace.metadata.baseline.files == {}

    write_production(settings, "scripts", "a.x", "appeared later")
    assert orchestrator.detector.detect(workspace) == []


def test_first_run_protects_existing_production_files(
    orchestrator: PipelineOrchestrator,
    settings: StagingSettings,
) -> None:
    existing = write_production(settings, "scripts", "a.x", "original")
    init = orchestrator.initialize("v2.0.0")
    assert init.success, init.error
    assert init.previous_version is None
    root = init.workspace_path
    (root / "scripts" / "a.x").write_text("generated", encoding="utf-8")
    orchestrator.record_stage(root, 1, StageResult(success=True, files_written=["scripts/a.x"]))
    orchestrator.record_stage(root, 2, StageResult(success=True))

    existing.write_text("edited out of band", encoding="utf-8")
    result = orchestrator.commit(root)

    assert not result.success
    assert [conflict.production_path for conflict in result.conflicts] == [".speck/scripts/a.x"]
    assert existing.read_text(encoding="utf-8") == "edited out of band"


def test_detect_reports_modification_and_deletion(orchestrator: PipelineOrchestrator, settings: StagingSettings) -> None:
    modified = write_production(settings, "scripts", "a.x", "one")
    deleted = write_production(settings, "commands", "b.md", "two")
    untouched = write_production(settings, "agents", "c.md", "three")
    init = orchestrator.initialize("v2.0.0", previous_version="v1.0.0")
    assert init.success, init.error
    workspace = orchestrator.store.read(init.workspace_path)
    assert len(workspace.metadata.baseline.files) == 3

    modified.write_text("one, edited", encoding="utf-8")
    deleted.unlink()

    found = orchestrator.detector.detect(workspace)
    paths = {conflict.production_path for conflict in found}
    assert paths == {".speck/scripts/a.x", ".claude/commands/b.md"}
    by_path = {conflict.production_path: conflict for conflict in found}
    assert by_path[".claude/commands/b.md"].current_fingerprint == FileFingerprint.absent()
    assert untouched.read_text(encoding="utf-8") == "three"


def test_detect_reports_absent_path_that_appears(settings: StagingSettings) -> None:
    store = WorkspaceStore(settings.staging_root_path)
    workspace = store.create("v2.0.0")
    planned = settings.project_root_path / ".speck" / "scripts" / "new.ts"
    BaselineSnapshotter(store, settings.project_root_path).capture(workspace, [planned])
    workspace = store.reload(workspace)

    planned.parent.mkdir(parents=True, exist_ok=True)
    planned.write_text("appeared", encoding="utf-8")

    found = ConflictDetector(settings.project_root_path).detect(workspace)
    assert len(found) == 1
    assert not found[0].recorded_fingerprint.exists
    assert found[0].current_fingerprint.exists


def test_unreadable_baseline_path_is_a_conflict(
    monkeypatch: pytest.MonkeyPatch,
    orchestrator: PipelineOrchestrator,
    settings: StagingSettings,
) -> None:
    write_production(settings, "scripts", "a.x", "one")
    init = orchestrator.initialize("v2.0.0", previous_version="v1.0.0")
    workspace = orchestrator.store.read(init.workspace_path)

    def _unreadable(path: Path) -> FileFingerprint:
        raise PermissionError(f"permission denied: {path}")

    monkeypatch.setattr(conflicts_module, "fingerprint_path", _unreadable)
    found = orchestrator.detector.detect(workspace)
    assert len(found) == 1
    assert found[0].current_fingerprint is None
    assert "permission denied" in (found[0].detail or "")


def test_baseline_capture_happens_once(orchestrator: PipelineOrchestrator) -> None:
    init = orchestrator.initialize("v2.0.0")
    workspace = orchestrator.store.read(init.workspace_path)
    with pytest.raises(RecoveryError, match="already captured"):
        orchestrator.snapshotter.capture(workspace, [])


def test_tampered_baseline_is_rejected(orchestrator: PipelineOrchestrator, settings: StagingSettings) -> None:
    write_production(settings, "scripts", "a.x", "one")
    init = orchestrator.initialize("v2.0.0", previous_version="v1.0.0")
    metadata_path = init.workspace_path / "staging.json"
    payload = json.loads(metadata_path.read_text(encoding="utf-8"))
    payload["baseline"]["files"] = {}
    metadata_path.write_text(json.dumps(payload), encoding="utf-8")

    workspace = orchestrator.store.read(init.workspace_path)
    with pytest.raises(RecoveryError, match="modified after capture"):
        orchestrator.detector.detect(workspace)


def test_baseline_is_captured_before_stages_run(orchestrator: PipelineOrchestrator, settings: StagingSettings) -> None:
    write_production(settings, "scripts", "a.x", "one")
    stage1 = StubExecutor({"scripts/a.x": "generated"})
    stage2 = StubExecutor({"commands/b.x": "generated"})

    result = orchestrator.run("v2.0.0", stage1, stage2, previous_version="v1.0.0")

    assert result.success, result.error
    workspace = orchestrator.store.read(result.workspace_path)
    recorded = workspace.metadata.baseline.files[".speck/scripts/a.x"]
    assert recorded.sha256 == fingerprint_path(settings.production_path(ArtifactCategory.SCRIPTS) / "a.x").sha256
