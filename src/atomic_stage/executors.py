from __future__ import annotations

import logging
import os
import shlex
import subprocess
import time
from pathlib import Path
from typing import Protocol, Sequence, runtime_checkable

from .models import ArtifactCategory, StageResult

logger = logging.getLogger(__name__)

OUTPUT_DIR_PLACEHOLDER = "{output_dir}"
OUTPUT_DIR_ENV = "STAGING_OUTPUT_DIR"


@runtime_checkable
class StageExecutor(Protocol):
    """Performs one pipeline stage inside a workspace.

    ``output_dir`` is the workspace root. Files go under its category
    directories and are reported relative to it, e.g. ``skills/a/SKILL.md``.
    """

    def run(self, output_dir: Path) -> StageResult:
        ...


def collect_written_files(output_dir: Path) -> list[str]:
    """Return every file under the category directories of *output_dir*.

    Paths are category-qualified POSIX paths, sorted.
    """
    return sorted(_stat_category_files(output_dir))


def _stat_category_files(output_dir: Path) -> dict[str, tuple[int, int]]:
    found: dict[str, tuple[int, int]] = {}
    for category in ArtifactCategory:
        category_dir = output_dir / category.value
        if not category_dir.is_dir():
            continue
        for entry in category_dir.rglob("*"):
            if entry.is_file():
                stat = entry.stat()
                found[entry.relative_to(output_dir).as_posix()] = (stat.st_size, stat.st_mtime_ns)
    return found


def _placeholders(output_dir: Path) -> dict[str, str]:
    values = {OUTPUT_DIR_PLACEHOLDER: str(output_dir)}
    for category in ArtifactCategory:
        values[f"{{{category.value}_dir}}"] = str(output_dir / category.value)
    return values


class CommandStageExecutor:
    """Runs an external command as a pipeline stage.

    ``{output_dir}`` in any argument becomes the workspace root, and
    ``{scripts_dir}``, ``{commands_dir}``, ``{agents_dir}`` and
    ``{skills_dir}`` become the category directories. The same paths are
    exported as ``STAGING_OUTPUT_DIR`` and ``STAGING_<CATEGORY>_DIR``.
    Files the command creates or changes under the category directories
    become the stage's ``files_written``.
    """

    def __init__(self, argv: Sequence[str], *, timeout: float | None = None) -> None:
        if not argv:
            raise ValueError("stage command must be non-empty")
        self.argv = list(argv)
        self.timeout = timeout

    @classmethod
    def from_command_line(cls, command: str, *, timeout: float | None = None) -> "CommandStageExecutor":
        return cls(shlex.split(command), timeout=timeout)

    def run(self, output_dir: Path) -> StageResult:
        placeholders = _placeholders(output_dir)
        args = []
        for arg in self.argv:
            for token, value in placeholders.items():
                arg = arg.replace(token, value)
            args.append(arg)
        env = {**os.environ, OUTPUT_DIR_ENV: str(output_dir)}
        for category in ArtifactCategory:
            env[f"STAGING_{category.name}_DIR"] = str(output_dir / category.value)

        before = _stat_category_files(output_dir)
        logger.info("Running stage command: %s", shlex.join(args))
        started = time.monotonic()
        try:
            completed = subprocess.run(
                args,
                capture_output=True,
                text=True,
                timeout=self.timeout,
                env=env,
                check=False,
            )
        except subprocess.TimeoutExpired:
            return StageResult.failed(
                f"stage command timed out after {self.timeout}s: {args[0]}",
                duration_ms=_elapsed_ms(started),
            )
        except OSError as exc:
            return StageResult.failed(f"stage command could not start: {exc}", duration_ms=_elapsed_ms(started))

        duration_ms = _elapsed_ms(started)
        if completed.returncode != 0:
            detail = completed.stderr.strip() or completed.stdout.strip()
            message = f"exited with status {completed.returncode}"
            return StageResult.failed(f"{message}: {detail}" if detail else message, duration_ms=duration_ms)
        after = _stat_category_files(output_dir)
        return StageResult(
            success=True,
            files_written=sorted(path for path, stat in after.items() if before.get(path) != stat),
            duration_ms=duration_ms,
        )


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
