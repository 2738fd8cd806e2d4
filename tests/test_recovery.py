from __future__ import annotations

from pathlib import Path

import pytest

from atomic_stage import (
    PipelineOrchestrator,
    RecoveryError,
    StageResult,
    StagingSettings,
    WorkspaceStatus,
)

from conftest import StubExecutor


def _workspace_in_status(orchestrator: PipelineOrchestrator, version: str, status: WorkspaceStatus) -> Path:
    init = orchestrator.initialize(version)
    assert init.success, init.error
    workspace = orchestrator.store.read(init.workspace_path)
    (workspace.root / "scripts" / "a.x").write_text("alpha", encoding="utf-8")
    if status is WorkspaceStatus.CREATED:
        return workspace.root
    workspace = orchestrator.store.record_stage_result(workspace, 1, StageResult(success=True, files_written=["scripts/a.x"]))
    if status is WorkspaceStatus.STAGE1_COMPLETE:
        return workspace.root
    workspace = orchestrator.store.record_stage_result(workspace, 2, StageResult(success=True))
    if status is WorkspaceStatus.STAGE2_COMPLETE:
        return workspace.root
    orchestrator.store.update_status(workspace, WorkspaceStatus.READY)
    return workspace.root


def test_crashed_workspace_is_reported_as_orphan(orchestrator: PipelineOrchestrator) -> None:
    root = _workspace_in_status(orchestrator, "v2.0.0", WorkspaceStatus.STAGE2_COMPLETE)

    # A new process sees only what is on disk.
    fresh = PipelineOrchestrator(orchestrator.settings)
    assert fresh.recovery.detect_orphans() == [root]
    report = fresh.recovery.inspect(root)
    assert report.version == "v2.0.0"
    assert report.status is WorkspaceStatus.STAGE2_COMPLETE
    assert report.file_counts == {"scripts": 1, "commands": 0, "agents": 0, "skills": 0, "total": 1}


def test_init_refused_while_orphans_exist(orchestrator: PipelineOrchestrator) -> None:
    orphan = _workspace_in_status(orchestrator, "v2.0.0", WorkspaceStatus.STAGE1_COMPLETE)

    blocked = orchestrator.initialize("v3.0.0")

    assert not blocked.success
    assert blocked.orphans == [orphan]
    assert "Orphaned staging directories detected" in (blocked.error or "")
    assert not (orchestrator.settings.staging_root_path / "v3.0.0").exists()


def test_init_for_same_version_refused_while_workspace_live(orchestrator: PipelineOrchestrator) -> None:
    _workspace_in_status(orchestrator, "v2.0.0", WorkspaceStatus.CREATED)
    again = orchestrator.initialize("v2.0.0")
    assert not again.success


def test_version_scoped_orphan_check_allows_other_versions(settings: StagingSettings) -> None:
    scoped = PipelineOrchestrator(
        StagingSettings(project_root=settings.project_root, orphan_scope="version").normalized()
    )
    _workspace_in_status(scoped, "v2.0.0", WorkspaceStatus.STAGE1_COMPLETE)

    other = scoped.initialize("v3.0.0")
    same = scoped.initialize("v2.0.0")

    assert other.success, other.error
    assert not same.success
    assert same.orphans


def test_recover_commit_auto_advances_stage2_complete(orchestrator: PipelineOrchestrator) -> None:
    root = _workspace_in_status(orchestrator, "v2.0.0", WorkspaceStatus.STAGE2_COMPLETE)

    result = orchestrator.recovery.recover(root, "commit")

    assert result.success, result.error
    assert result.commit is not None and result.commit.committed_paths == [".speck/scripts/a.x"]
    assert not root.exists()


@pytest.mark.parametrize("status", [WorkspaceStatus.CREATED, WorkspaceStatus.STAGE1_COMPLETE])
def test_recover_commit_refuses_incomplete_workspace(
    orchestrator: PipelineOrchestrator,
    status: WorkspaceStatus,
) -> None:
    root = _workspace_in_status(orchestrator, "v2.0.0", status)

    result = orchestrator.recovery.recover(root, "commit")

    assert not result.success
    assert "need 'ready' or 'stage2-complete'" in (result.error or "")
    assert orchestrator.store.read(root).status is status


def test_recover_rollback_removes_workspace(orchestrator: PipelineOrchestrator) -> None:
    root = _workspace_in_status(orchestrator, "v2.0.0", WorkspaceStatus.READY)
    result = orchestrator.recovery.recover(root, "rollback")
    assert result.success
    assert not root.exists()
    assert orchestrator.recovery.detect_orphans() == []


def test_recover_inspect_is_read_only(orchestrator: PipelineOrchestrator) -> None:
    root = _workspace_in_status(orchestrator, "v2.0.0", WorkspaceStatus.STAGE1_COMPLETE)
    before = (root / "staging.json").read_text(encoding="utf-8")

    result = orchestrator.recovery.recover(root, "inspect")

    assert result.success
    assert result.inspection is not None
    assert result.inspection.status is WorkspaceStatus.STAGE1_COMPLETE
    assert (root / "staging.json").read_text(encoding="utf-8") == before


def test_recover_unknown_action(orchestrator: PipelineOrchestrator) -> None:
    root = _workspace_in_status(orchestrator, "v2.0.0", WorkspaceStatus.CREATED)
    result = orchestrator.recovery.recover(root, "explode")
    assert not result.success
    assert result.error == "Unknown recovery action: explode"


def test_corrupt_workspace_is_orphan_and_can_only_be_rolled_back(orchestrator: PipelineOrchestrator) -> None:
    root = _workspace_in_status(orchestrator, "v2.0.0", WorkspaceStatus.CREATED)
    (root / "staging.json").write_text("garbage", encoding="utf-8")

    assert orchestrator.recovery.detect_orphans() == [root]
    with pytest.raises(RecoveryError):
        orchestrator.recovery.inspect(root)
    assert not orchestrator.recovery.recover(root, "commit").success
    summaries = orchestrator.recovery.describe_orphans()
    assert summaries[0]["path"] == str(root)
    assert "error" in summaries[0]

    assert orchestrator.recovery.recover(root, "rollback").success
    assert not root.exists()


def test_completed_workspace_left_behind_is_purged_on_init(orchestrator: PipelineOrchestrator) -> None:
    root = _workspace_in_status(orchestrator, "v2.0.0", WorkspaceStatus.READY)
    workspace = orchestrator.store.read(root)
    orchestrator.store.update_status(workspace, WorkspaceStatus.COMMITTED)
    assert orchestrator.recovery.detect_orphans() == []

    result = orchestrator.initialize("v3.0.0")

    assert result.success, result.error
    assert not root.exists()


def test_orphan_from_interrupted_run_blocks_next_run(orchestrator: PipelineOrchestrator) -> None:
    first = orchestrator.run("v2.0.0", StubExecutor({"scripts/a.x": "alpha"}), StubExecutor({"commands/b.x": "beta"}))
    assert first.success and first.status is WorkspaceStatus.READY

    second_stage1 = StubExecutor({"scripts/c.x": "gamma"})
    second = orchestrator.run("v3.0.0", second_stage1, StubExecutor())

    assert not second.success
    assert "Orphaned staging directories detected" in (second.error or "")
    assert second_stage1.calls == []
