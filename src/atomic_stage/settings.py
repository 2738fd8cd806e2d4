from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

from .models import ArtifactCategory

logger = logging.getLogger(__name__)

DEFAULT_PRODUCTION_DIRS: dict[ArtifactCategory, str] = {
    ArtifactCategory.SCRIPTS: ".speck/scripts",
    ArtifactCategory.COMMANDS: ".claude/commands",
    ArtifactCategory.AGENTS: ".claude/agents",
    ArtifactCategory.SKILLS: ".claude/skills",
}

ORPHAN_SCOPES = ("global", "version")


@dataclass(frozen=True)
class StagingSettings:
    """Staging settings loaded from environment with fail-fast validation."""

    project_root: str = ""
    staging_root: str = ".speck/.transform-staging"
    history_path: str = ".speck/transformation-history.json"
    production_dirs: dict[ArtifactCategory, str] = field(default_factory=lambda: dict(DEFAULT_PRODUCTION_DIRS))
    orphan_scope: str = "global"
    recursion_limit: int = 50
    stage_timeout_seconds: int = 3_600

    @classmethod
    def from_env(cls, project_root: Path | None = None) -> "StagingSettings":
        """Build settings from ``STAGING_*`` variables.

        A ``.env`` file at the project root is loaded first; variables that
        are already set in the environment take precedence over it.
        """
        root = project_root if project_root is not None else Path(os.getenv("STAGING_PROJECT_ROOT", "") or Path.cwd())
        env_path = root / ".env"
        if env_path.is_file():
            load_dotenv(env_path, override=False)
            logger.debug("Loaded staging environment from %s", env_path)

        production_dirs = {
            category: os.getenv(f"STAGING_DEST_{category.name}", default)
            for category, default in DEFAULT_PRODUCTION_DIRS.items()
        }
        return cls(
            project_root=str(root),
            staging_root=os.getenv("STAGING_ROOT", ".speck/.transform-staging"),
            history_path=os.getenv("STAGING_HISTORY_PATH", ".speck/transformation-history.json"),
            production_dirs=production_dirs,
            orphan_scope=os.getenv("STAGING_ORPHAN_SCOPE", "global"),
            recursion_limit=_get_env_int("STAGING_RECURSION_LIMIT", default=50, minimum=10, maximum=10_000),
            stage_timeout_seconds=_get_env_int("STAGING_STAGE_TIMEOUT_SECONDS", default=3_600, minimum=1),
        ).normalized()

    def normalized(self) -> "StagingSettings":
        """Validate and normalize all fields. Raises ValueError on invalid configuration."""
        # -- String field validation --
        if not self.staging_root.strip():
            raise ValueError("STAGING_ROOT must be non-empty")
        if not self.history_path.strip():
            raise ValueError("STAGING_HISTORY_PATH must be non-empty")

        production_dirs: dict[ArtifactCategory, str] = {}
        for category in ArtifactCategory:
            raw = self.production_dirs.get(category, "").strip()
            if not raw:
                raise ValueError(f"STAGING_DEST_{category.name} must be non-empty")
            production_dirs[category] = raw

        orphan_scope = self.orphan_scope.strip().lower()
        if orphan_scope not in ORPHAN_SCOPES:
            raise ValueError(f"STAGING_ORPHAN_SCOPE must be one of: {', '.join(ORPHAN_SCOPES)}")

        settings = StagingSettings(
            project_root=self.project_root,
            staging_root=self.staging_root.strip(),
            history_path=self.history_path.strip(),
            production_dirs=production_dirs,
            orphan_scope=orphan_scope,
            recursion_limit=self.recursion_limit,
            stage_timeout_seconds=self.stage_timeout_seconds,
        )

        # -- Layout validation --
        destinations = [settings.production_path(category) for category in ArtifactCategory]
        if len(set(destinations)) != len(destinations):
            raise ValueError("STAGING_DEST_* directories must be distinct")
        staging = settings.staging_root_path
        for destination in destinations:
            if staging == destination or destination in staging.parents:
                raise ValueError(f"STAGING_ROOT must not live inside production directory {destination}")
        return settings

    @property
    def project_root_path(self) -> Path:
        """Return the project root as an absolute Path, defaulting to cwd if unset."""
        root = Path(self.project_root) if self.project_root else Path.cwd()
        return root.resolve()

    @property
    def staging_root_path(self) -> Path:
        return self._resolve(self.staging_root)

    @property
    def history_file(self) -> Path:
        return self._resolve(self.history_path)

    def production_path(self, category: ArtifactCategory) -> Path:
        return self._resolve(self.production_dirs[category])

    def _resolve(self, raw: str) -> Path:
        path = Path(raw)
        return path if path.is_absolute() else self.project_root_path / path


def _get_env_int(name: str, default: int, minimum: int, maximum: int = 10_000_000) -> int:
    """Parse an integer from an environment variable with bounds checking.

    Args:
        name: Environment variable name.
        default: Value to return if the variable is unset.
        minimum: Inclusive lower bound.
        maximum: Inclusive upper bound.

    Returns:
        The parsed integer, guaranteed to be within [minimum, maximum].

    Raises:
        ValueError: If the value is not an integer or is outside bounds.
    """
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got: {raw!r}") from exc
    if parsed < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {parsed}")
    if parsed > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {parsed}")
    return parsed
