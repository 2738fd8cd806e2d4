import json
import os
import shlex
import subprocess
import sys
from pathlib import Path

import pytest

from atomic_stage.__main__ import main


REPO_ROOT = Path(__file__).resolve().parents[1]


def _cli(project_root: Path, *args: str, env_overrides: dict[str, str] | None = None) -> subprocess.CompletedProcess[str]:
    env = {name: value for name, value in os.environ.items() if not name.startswith("STAGING_")}
    env["PYTHONPATH"] = os.pathsep.join(filter(None, [str(REPO_ROOT / "src"), env.get("PYTHONPATH")]))
    env.update(env_overrides or {})
    return subprocess.run(
        [sys.executable, "-m", "atomic_stage", "--project-root", str(project_root), *args],
        cwd=REPO_ROOT,
        env=env,
        capture_output=True,
        text=True,
        check=False,
    )


def _write_command(target_dir: str, filename: str, content: str) -> str:
    script = f"import pathlib, sys; pathlib.Path(sys.argv[1], {filename!r}).write_text({content!r})"
    return shlex.join([sys.executable, "-c", script, target_dir])


def _failing_command(message: str) -> str:
    script = f"import sys; sys.stderr.write({message!r}); sys.exit(3)"
    return shlex.join([sys.executable, "-c", script])


def test_cli_init_status_and_recover_across_processes(project_root: Path) -> None:
    init = _cli(project_root, "init", "v2.0.0")
    assert init.returncode == 0, init.stderr
    payload = json.loads(init.stdout)
    workspace = Path(payload["workspace_path"])
    assert payload["success"] is True
    assert workspace.is_dir()

    status = _cli(project_root, "status")
    assert status.returncode == 0, status.stderr
    report = json.loads(status.stdout)
    assert report["message"] == "1 orphaned staging directories found"
    assert report["orphans"][0]["version"] == "v2.0.0"
    assert report["orphans"][0]["status"] == "created"

    blocked = _cli(project_root, "init", "v3.0.0")
    assert blocked.returncode == 1
    assert json.loads(blocked.stdout)["orphans"] == [str(workspace)]

    recovered = _cli(project_root, "recover", str(workspace), "rollback")
    assert recovered.returncode == 0, recovered.stderr
    assert json.loads(recovered.stdout)["action"] == "rollback"
    assert not workspace.exists()

    clean = _cli(project_root, "status")
    assert json.loads(clean.stdout) == {"orphans": [], "message": "No orphaned staging directories"}


def test_cli_rejects_invalid_configuration(project_root: Path) -> None:
    result = _cli(project_root, "status", env_overrides={"STAGING_ORPHAN_SCOPE": "everywhere"})
    assert result.returncode == 1
    assert "STAGING_ORPHAN_SCOPE" in result.stderr


def test_run_command_commits_stage_output(project_root: Path, capsys: pytest.CaptureFixture[str]) -> None:
    exit_code = main(
        [
            "--project-root",
            str(project_root),
            "run",
            "v2.0.0",
            "--stage1",
            _write_command("{scripts_dir}", "a.x", "alpha"),
            "--stage2",
            _write_command("{skills_dir}", "b.x", "beta"),
            "--commit",
        ]
    )

    payload = json.loads(capsys.readouterr().out)
    assert exit_code == 0, payload
    assert payload["status"] == "committed"
    assert payload["commit"]["committed_paths"] == [".speck/scripts/a.x", ".claude/skills/b.x"]
    assert (project_root / ".speck" / "scripts" / "a.x").read_text(encoding="utf-8") == "alpha"
    assert (project_root / ".claude" / "skills" / "b.x").read_text(encoding="utf-8") == "beta"

    assert main(["--project-root", str(project_root), "history"]) == 0
    history = json.loads(capsys.readouterr().out)
    assert history["latest_version"] == "v2.0.0"
    assert history["entries"][0]["status"] == "transformed"


def test_run_command_reports_failed_stage(project_root: Path, capsys: pytest.CaptureFixture[str]) -> None:
    exit_code = main(
        [
            "--project-root",
            str(project_root),
            "run",
            "v2.0.0",
            "--stage1",
            _failing_command("syntax error"),
            "--stage2",
            _write_command("{skills_dir}", "b.x", "beta"),
        ]
    )

    payload = json.loads(capsys.readouterr().out)
    assert exit_code == 1
    assert payload["failed_stage"] == 1
    assert "syntax error" in payload["error"]
    assert not (project_root / ".speck" / ".transform-staging" / "v2.0.0").exists()
    assert not (project_root / ".claude" / "skills" / "b.x").exists()


def test_recover_inspect_prints_report(project_root: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert main(["--project-root", str(project_root), "init", "v2.0.0"]) == 0
    workspace = Path(json.loads(capsys.readouterr().out)["workspace_path"])

    assert main(["--project-root", str(project_root), "recover", str(workspace), "inspect"]) == 0
    report = json.loads(capsys.readouterr().out)

    assert report["inspection"]["version"] == "v2.0.0"
    assert report["inspection"]["file_counts"]["total"] == 0
    assert workspace.is_dir()


def test_history_command_fails_on_corrupt_file(project_root: Path, capsys: pytest.CaptureFixture[str]) -> None:
    history = project_root / ".speck" / "transformation-history.json"
    history.parent.mkdir(parents=True)
    history.write_text("[not a ledger", encoding="utf-8")

    assert main(["--project-root", str(project_root), "history"]) == 1
    assert capsys.readouterr().out == ""
