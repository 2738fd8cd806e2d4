from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, ValidationError

from .errors import HistoryError
from .fileio import atomic_write_text, locked_file, read_document

logger = logging.getLogger(__name__)

HISTORY_SCHEMA_VERSION = "1.0.0"


class HistoryStatus(str, Enum):
    TRANSFORMED = "transformed"
    FAILED = "failed"
    PARTIAL = "partial"


class FileMapping(BaseModel):
    source: str
    generated: str
    type: str


class HistoryEntry(BaseModel):
    version: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    commit_sha: str | None = None
    status: HistoryStatus
    mappings: list[FileMapping] = Field(default_factory=list)
    error_details: str | None = None


class HistoryDocument(BaseModel):
    schema_version: Literal["1.0.0"] = HISTORY_SCHEMA_VERSION
    latest_version: str | None = None
    entries: list[HistoryEntry] = Field(default_factory=list)


class TransformationHistory:
    """JSON ledger of every version the pipeline has committed or attempted.

    The latest successfully transformed version doubles as the default
    diff base for the next workspace's baseline.
    """

    def __init__(self, path: Path) -> None:
        self.path = path

    def read(self) -> HistoryDocument:
        """Read the history file.

        Returns:
            The parsed document, or an empty one if the file does not exist.

        Raises:
            HistoryError: If the file is unreadable, not JSON, or violates
                the history schema.
        """
        if not self.path.exists():
            return HistoryDocument()
        try:
            text = read_document(self.path, "transformation history")
            payload = json.loads(text)
        except (OSError, ValueError) as exc:
            raise HistoryError(f"Failed to parse transformation history at {self.path}: {exc}") from exc
        try:
            return HistoryDocument.model_validate(payload)
        except ValidationError as exc:
            raise HistoryError(f"transformation history at {self.path} failed validation: {exc}") from exc

    def write(self, document: HistoryDocument) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        atomic_write_text(self.path, document.model_dump_json(indent=2))

    def latest_transformed_version(self) -> str | None:
        return self.read().latest_version

    def record(self, entry: HistoryEntry) -> HistoryDocument:
        """Add *entry*, replacing any existing entry for the same version.

        A ``transformed`` entry also becomes the latest version.

        Raises:
            HistoryError: If the existing history cannot be read.
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with locked_file(self.path):
            document = self.read()
            entries = [existing for existing in document.entries if existing.version != entry.version]
            entries.append(entry)
            latest = entry.version if entry.status is HistoryStatus.TRANSFORMED else document.latest_version
            updated = document.model_copy(update={"entries": entries, "latest_version": latest})
            self.write(updated)
        logger.info("Recorded %s history entry for %s in %s", entry.status.value, entry.version, self.path)
        return updated
