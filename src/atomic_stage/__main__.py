"""Entry point for `python -m atomic_stage` and the `atomic-stage` CLI script."""

from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path
from typing import Any

from atomic_stage.errors import HistoryError
from atomic_stage.executors import CommandStageExecutor
from atomic_stage.orchestrator import PipelineOrchestrator
from atomic_stage.recovery import RecoveryAction
from atomic_stage.settings import StagingSettings


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Stage, commit and recover generated artifacts atomically")
    parser.add_argument(
        "--project-root",
        type=Path,
        default=None,
        help="Host tree root holding production and staging directories (default: STAGING_PROJECT_ROOT or cwd)",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging verbosity",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    init_parser = subparsers.add_parser("init", help="Create a staging workspace and capture the baseline")
    init_parser.add_argument("version", help="Target version identifier")
    init_parser.add_argument(
        "--previous-version",
        default=None,
        help="Diff-base version (default: latest transformed version in history)",
    )

    status_parser = subparsers.add_parser("status", help="List orphaned staging workspaces")
    status_parser.add_argument("--version", default=None, help="Only report the workspace for this version")

    recover_parser = subparsers.add_parser("recover", help="Resolve an orphaned staging workspace")
    recover_parser.add_argument("workspace_dir", type=Path, help="Path to the orphaned workspace directory")
    recover_parser.add_argument("action", choices=[action.value for action in RecoveryAction])
    recover_parser.add_argument("--force", action="store_true", help="Commit even when production changed")

    run_parser = subparsers.add_parser("run", help="Run both stages through external commands")
    run_parser.add_argument("version", help="Target version identifier")
    run_parser.add_argument("--stage1", required=True, help="Stage 1 command line; {output_dir} and {<category>_dir} are substituted")
    run_parser.add_argument("--stage2", required=True, help="Stage 2 command line; {output_dir} and {<category>_dir} are substituted")
    run_parser.add_argument("--previous-version", default=None, help="Diff-base version")
    run_parser.add_argument("--commit", action="store_true", help="Commit to production once both stages succeed")
    run_parser.add_argument("--force", action="store_true", help="Commit even when production changed")

    subparsers.add_parser("history", help="Print the transformation history")
    return parser.parse_args(argv)


def _emit(payload: dict[str, Any]) -> None:
    print(json.dumps(payload, indent=2, default=str))


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        project_root = args.project_root.resolve() if args.project_root is not None else None
        settings = StagingSettings.from_env(project_root)
    except (OSError, ValueError) as exc:
        logging.error("Invalid staging configuration: %s", exc)
        return 1

    orchestrator = PipelineOrchestrator(settings)
    try:
        if args.command == "init":
            result = orchestrator.initialize(args.version, args.previous_version)
            _emit(result.to_dict())
            return 0 if result.success else 1

        if args.command == "status":
            orphans = orchestrator.recovery.describe_orphans(args.version)
            if not orphans:
                _emit({"orphans": [], "message": "No orphaned staging directories"})
            else:
                _emit({"orphans": orphans, "message": f"{len(orphans)} orphaned staging directories found"})
            return 0

        if args.command == "recover":
            recovery = orchestrator.recovery.recover(args.workspace_dir.resolve(), args.action, force=args.force)
            _emit(recovery.to_dict())
            return 0 if recovery.success else 1

        if args.command == "run":
            timeout = settings.stage_timeout_seconds
            pipeline = orchestrator.run(
                args.version,
                CommandStageExecutor.from_command_line(args.stage1, timeout=timeout),
                CommandStageExecutor.from_command_line(args.stage2, timeout=timeout),
                previous_version=args.previous_version,
                commit=args.commit,
                force=args.force,
            )
            _emit(pipeline.to_dict())
            return 0 if pipeline.success else 1

        if args.command == "history":
            try:
                document = orchestrator.history.read()
            except HistoryError as exc:
                logging.error("%s", exc)
                return 1
            _emit(document.model_dump(mode="json"))
            return 0
    except Exception as exc:  # noqa: BLE001
        logging.exception("Staging command failed: %s", exc)
        return 1

    logging.error("Unknown command: %s", args.command)
    return 1


if __name__ == "__main__":
    raise SystemExit(main())
