from __future__ import annotations

import logging
import time
import uuid
from pathlib import Path
from typing import Any, TypedDict

from langgraph.graph import END, START, StateGraph

from .baseline import BaselineSnapshotter, candidate_paths
from .committer import AtomicCommitter, failed_commit_result
from .conflicts import ConflictDetector
from .errors import CommitError, ConflictError, OrphanBlockingError, StageFailureError, StagingError
from .executors import StageExecutor
from .history import TransformationHistory
from .models import (
    CommitResult,
    InitResult,
    PipelineResult,
    RollbackResult,
    StageResult,
    Workspace,
    WorkspaceStatus,
)
from .recovery import OrphanRecovery
from .rollback import rollback_workspace
from .settings import StagingSettings
from .workspace_store import WorkspaceStore, validate_version

logger = logging.getLogger(__name__)


class PipelineState(TypedDict, total=False):
    version: str
    previous_version: str | None
    executors: dict[int, StageExecutor]
    commit_requested: bool
    force: bool
    workspace_path: str | None
    status: str | None
    stage_results: dict[int, StageResult]
    failed_stage: int | None
    error: str | None
    commit: CommitResult | None


class PipelineOrchestrator:
    """Drives a two-stage run from workspace creation to commit or rollback.

    Every public method returns a structured result and never raises for
    staging failures. The workspace document is re-read on every
    transition, so stages may also be recorded by separate processes
    through ``record_stage``.
    """

    def __init__(
        self,
        settings: StagingSettings | None = None,
        *,
        store: WorkspaceStore | None = None,
        history: TransformationHistory | None = None,
    ) -> None:
        self.settings = settings if settings is not None else StagingSettings.from_env()
        self.project_root = self.settings.project_root_path
        self.store = store if store is not None else WorkspaceStore(self.settings.staging_root_path)
        self.history = history if history is not None else TransformationHistory(self.settings.history_file)
        self.snapshotter = BaselineSnapshotter(self.store, self.project_root)
        self.detector = ConflictDetector(self.project_root)
        self.committer = AtomicCommitter(
            self.store,
            self.settings,
            detector=self.detector,
            history=self.history,
        )
        self.recovery = OrphanRecovery(self.store, self.committer)
        self.graph = self._build_graph().compile()

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def initialize(self, version: str, previous_version: str | None = None) -> InitResult:
        """Create a workspace for *version* and capture its baseline.

        Refuses to start while orphaned workspaces exist. When no previous
        version is given, the latest transformed version from the history
        file is used as the diff base.
        """
        try:
            version = validate_version(version)
            self.recovery.purge_completed()
            scope = version if self.settings.orphan_scope == "version" else None
            orphans = self.recovery.detect_orphans(scope)
            if orphans:
                raise OrphanBlockingError(orphans)
            if previous_version is None:
                previous_version = self.history.latest_transformed_version()
            workspace = self.store.create(version, previous_version)
        except OrphanBlockingError as exc:
            logger.warning("%s", exc)
            return InitResult(success=False, version=version, orphans=exc.orphans, error=str(exc))
        except (StagingError, OSError, ValueError) as exc:
            logger.error("Unable to initialize staging for %s: %s", version, exc)
            return InitResult(success=False, version=version, error=str(exc))

        try:
            self.snapshotter.capture(workspace, candidate_paths(self.settings))
        except (StagingError, OSError) as exc:
            logger.error("Baseline capture failed for %s: %s", version, exc)
            self._discard(workspace.root, f"baseline capture failed: {exc}")
            return InitResult(success=False, version=version, error=f"Baseline capture failed: {exc}")

        return InitResult(
            success=True,
            version=version,
            workspace_path=workspace.root,
            previous_version=previous_version,
            output_dirs={category.value: path for category, path in workspace.output_dirs().items()},
        )

    def output_dir(self, workspace: Workspace) -> Path:
        """Return the directory handed to stage executors.

        It is the workspace root; executors write under its category
        directories and report paths such as ``agents/reviewer.md``.
        """
        return workspace.root

    def record_stage(self, workspace_path: Path, stage: int, result: StageResult) -> PipelineResult:
        """Record a stage result reported by an external process.

        A failed stage rolls the whole workspace back. A successful stage 2
        advances the workspace to ``ready``.
        """
        workspace_path = Path(workspace_path)
        version = workspace_path.name
        try:
            workspace = self.store.read(workspace_path)
            version = workspace.version
            workspace, error = self._settle_stage(workspace, stage, result)
            if error is not None:
                self._discard(workspace.root, error)
                return PipelineResult(
                    success=False,
                    version=version,
                    workspace_path=workspace.root,
                    stage_results=dict(workspace.metadata.stage_results),
                    failed_stage=stage,
                    error=error,
                )
            if workspace.status is WorkspaceStatus.STAGE2_COMPLETE:
                workspace = self.store.update_status(workspace, WorkspaceStatus.READY)
        except (StagingError, OSError) as exc:
            logger.error("Unable to record stage %s for %s: %s", stage, workspace_path, exc)
            return PipelineResult(success=False, version=version, workspace_path=workspace_path, error=str(exc))
        return PipelineResult(
            success=True,
            version=version,
            status=workspace.status,
            workspace_path=workspace.root,
            stage_results=dict(workspace.metadata.stage_results),
        )

    def commit(self, workspace_path: Path, force: bool = False) -> CommitResult:
        """Commit a ``ready`` (or ``stage2-complete``) workspace into production."""
        workspace: Workspace | None = None
        try:
            workspace = self.store.read(Path(workspace_path))
            if workspace.status is WorkspaceStatus.STAGE2_COMPLETE:
                workspace = self.store.update_status(workspace, WorkspaceStatus.READY)
            return self.committer.commit(workspace, force=force)
        except (ConflictError, CommitError) as exc:
            logger.warning("Commit refused for %s: %s", workspace_path, exc)
            return failed_commit_result(workspace, exc)
        except (StagingError, OSError) as exc:
            logger.error("Commit failed for %s: %s", workspace_path, exc)
            return failed_commit_result(workspace, exc)

    def rollback(self, workspace_path: Path, reason: str | None = None) -> RollbackResult:
        try:
            return rollback_workspace(self.store, Path(workspace_path), reason)
        except OSError as exc:
            logger.error("Rollback failed for %s: %s", workspace_path, exc)
            return RollbackResult(
                success=False,
                version=None,
                workspace_path=Path(workspace_path),
                reason=reason,
                error=str(exc),
            )

    def run(
        self,
        version: str,
        stage1: StageExecutor,
        stage2: StageExecutor,
        *,
        previous_version: str | None = None,
        commit: bool = False,
        force: bool = False,
    ) -> PipelineResult:
        """Run both stages for *version*, optionally committing the result."""
        initial_state: PipelineState = {
            "version": version,
            "previous_version": previous_version,
            "executors": {1: stage1, 2: stage2},
            "commit_requested": commit,
            "force": force,
            "workspace_path": None,
            "status": None,
            "stage_results": {},
            "failed_stage": None,
            "error": None,
            "commit": None,
        }
        result = self.graph.invoke(
            initial_state,
            config={
                "recursion_limit": self.settings.recursion_limit,
                "configurable": {"thread_id": f"pipeline-{uuid.uuid4().hex[:8]}"},
            },
        )
        return _pipeline_result(result)

    # ------------------------------------------------------------------
    # Graph
    # ------------------------------------------------------------------

    def _build_graph(self) -> StateGraph:
        graph = StateGraph(PipelineState)
        graph.add_node("initialize", self._initialize_node)
        graph.add_node("stage1", self._stage1_node)
        graph.add_node("stage2", self._stage2_node)
        graph.add_node("mark_ready", self._mark_ready_node)
        graph.add_node("commit", self._commit_node)
        graph.add_node("rollback", self._rollback_node)

        graph.add_edge(START, "initialize")
        graph.add_conditional_edges(
            "initialize",
            self._after_initialize_route,
            {
                "stage1": "stage1",
                "end": END,
            },
        )
        graph.add_conditional_edges(
            "stage1",
            self._after_stage_route,
            {
                "next": "stage2",
                "rollback": "rollback",
            },
        )
        graph.add_conditional_edges(
            "stage2",
            self._after_stage_route,
            {
                "next": "mark_ready",
                "rollback": "rollback",
            },
        )
        graph.add_conditional_edges(
            "mark_ready",
            self._after_ready_route,
            {
                "commit": "commit",
                "end": END,
            },
        )
        graph.add_edge("commit", END)
        graph.add_edge("rollback", END)
        return graph

    def _initialize_node(self, state: PipelineState) -> dict[str, Any]:
        result = self.initialize(state["version"], state.get("previous_version"))
        if not result.success:
            return {"error": result.error}
        return {
            "workspace_path": str(result.workspace_path),
            "previous_version": result.previous_version,
            "status": WorkspaceStatus.CREATED.value,
        }

    def _stage1_node(self, state: PipelineState) -> dict[str, Any]:
        return self._run_stage(state, 1)

    def _stage2_node(self, state: PipelineState) -> dict[str, Any]:
        return self._run_stage(state, 2)

    def _run_stage(self, state: PipelineState, stage: int) -> dict[str, Any]:
        executor = state["executors"][stage]
        try:
            workspace = self.store.read(Path(state["workspace_path"]))
            output_dir = self.output_dir(workspace)
            result = self._invoke_executor(stage, executor, output_dir)
            workspace, error = self._settle_stage(workspace, stage, result)
        except (StagingError, OSError) as exc:
            return {"failed_stage": stage, "error": str(StageFailureError(stage, str(exc)))}

        stage_results = {**state.get("stage_results", {}), stage: result}
        if error is not None:
            return {"stage_results": stage_results, "failed_stage": stage, "error": error}
        return {"stage_results": stage_results, "status": workspace.status.value}

    def _mark_ready_node(self, state: PipelineState) -> dict[str, Any]:
        try:
            workspace = self.store.read(Path(state["workspace_path"]))
            workspace = self.store.update_status(workspace, WorkspaceStatus.READY)
        except StagingError as exc:
            return {"error": str(exc)}
        return {"status": workspace.status.value}

    def _commit_node(self, state: PipelineState) -> dict[str, Any]:
        result = self.commit(Path(state["workspace_path"]), force=state.get("force", False))
        update: dict[str, Any] = {"commit": result}
        if result.success:
            update["status"] = WorkspaceStatus.COMMITTED.value
        else:
            update["error"] = result.error
        return update

    def _rollback_node(self, state: PipelineState) -> dict[str, Any]:
        self._discard(Path(state["workspace_path"]), state.get("error"))
        return {"status": None}

    def _after_initialize_route(self, state: PipelineState) -> str:
        return "end" if state.get("error") else "stage1"

    def _after_stage_route(self, state: PipelineState) -> str:
        return "rollback" if state.get("failed_stage") is not None else "next"

    def _after_ready_route(self, state: PipelineState) -> str:
        if state.get("error") or not state.get("commit_requested"):
            return "end"
        return "commit"

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _invoke_executor(self, stage: int, executor: StageExecutor, output_dir: Path) -> StageResult:
        logger.info("Starting stage %s in %s", stage, output_dir)
        started = time.monotonic()
        try:
            result = executor.run(output_dir)
            if not isinstance(result, StageResult):
                result = StageResult.model_validate(result)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Stage %s executor crashed: %s", stage, exc)
            elapsed = int((time.monotonic() - started) * 1000)
            return StageResult.failed(f"{type(exc).__name__}: {exc}", duration_ms=elapsed)
        return result

    def _settle_stage(self, workspace: Workspace, stage: int, result: StageResult) -> tuple[Workspace, str | None]:
        workspace = self.store.record_stage_result(workspace, stage, result)
        if result.success:
            return workspace, None
        error = str(StageFailureError(stage, result.error or "no error message reported"))
        logger.warning("%s; rolling back %s", error, workspace.version)
        return workspace, error

    def _discard(self, root: Path, reason: str | None) -> None:
        try:
            rollback_workspace(self.store, root, reason)
        except OSError as exc:
            logger.error("Rollback of %s failed: %s", root, exc)


def _pipeline_result(state: dict[str, Any]) -> PipelineResult:
    status = state.get("status")
    workspace_path = state.get("workspace_path")
    return PipelineResult(
        success=state.get("error") is None,
        version=state["version"],
        status=WorkspaceStatus(status) if status else None,
        workspace_path=Path(workspace_path) if workspace_path else None,
        stage_results=dict(state.get("stage_results") or {}),
        failed_stage=state.get("failed_stage"),
        commit=state.get("commit"),
        error=state.get("error"),
    )
