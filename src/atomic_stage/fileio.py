"""File primitives shared by ``staging.json`` and the transformation history.

Both documents are always rewritten whole. Readers see either the previous
document or the new one, never a mix, and writers serialize through a
``.lock`` sidecar next to the document.
"""

from __future__ import annotations

import fcntl
import os
import tempfile
from contextlib import contextmanager, suppress
from pathlib import Path
from typing import Iterator

LOCK_SUFFIX = ".lock"


def lock_path_for(document: Path) -> Path:
    return document.with_name(document.name + LOCK_SUFFIX)


@contextmanager
def locked_file(path: Path) -> Iterator[None]:
    """Hold an exclusive ``flock`` on the sidecar of *path* for the block.

    The sidecar is opened where it stands and its directory is never
    created, so mutating a deleted workspace fails with FileNotFoundError.
    """
    with lock_path_for(path).open("a+", encoding="utf-8") as sidecar:
        fcntl.flock(sidecar.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(sidecar.fileno(), fcntl.LOCK_UN)


def atomic_write_text(path: Path, content: str) -> None:
    """Swap *content* in for *path* through an fsynced sibling temp file."""
    fd, temp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    temp_path = Path(temp_name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(temp_path, path)
    except BaseException:
        with suppress(OSError):
            temp_path.unlink()
        raise


def read_document(path: Path, label: str) -> str:
    """Return the raw text of a workspace or history document.

    Raises:
        FileNotFoundError: If *path* is not a file.
        ValueError: If the document is blank or not UTF-8. Callers turn
            both into RecoveryError or HistoryError with *label* attached.
    """
    if not path.is_file():
        raise FileNotFoundError(f"{label} not found: {path}")
    try:
        text = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as exc:
        raise ValueError(f"{label} at {path} is not valid UTF-8") from exc
    if not text.strip():
        raise ValueError(f"{label} at {path} is empty")
    return text
