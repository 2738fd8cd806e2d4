from __future__ import annotations

import dataclasses
import hashlib
from datetime import date, datetime
from enum import Enum
from pathlib import PurePath
from typing import Any

import rfc8785
from pydantic import BaseModel

# JSON-primitive types that rfc8785 can serialize directly.
_PASSTHROUGH_TYPES = (bool, int, float, str, type(None))


def to_jsonable(value: Any) -> Any:
    """Recursively convert staging values into JSON-primitive types.

    Handles pydantic models, result dataclasses, filesystem paths, enums and
    timestamps. Dictionary keys are stringified so stage indexes survive a
    JSON round trip.

    Args:
        value: Any value produced by the staging engine.

    Returns:
        A structure of dicts, lists and JSON scalars.

    Raises:
        TypeError: If value contains a type with no JSON representation.
    """
    # Enum before passthrough: str-based enums would otherwise pass as themselves.
    if isinstance(value, Enum):
        return to_jsonable(value.value)

    if isinstance(value, _PASSTHROUGH_TYPES):
        return value

    if isinstance(value, BaseModel):
        return to_jsonable(value.model_dump(mode="json"))

    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {f.name: to_jsonable(getattr(value, f.name)) for f in dataclasses.fields(value)}

    if isinstance(value, dict):
        return {str(to_jsonable(k)): to_jsonable(v) for k, v in value.items()}

    if isinstance(value, (list, tuple, set, frozenset)):
        items = [to_jsonable(item) for item in value]
        if isinstance(value, (set, frozenset)):
            items.sort(key=str)
        return items

    if isinstance(value, PurePath):
        return str(value)

    if isinstance(value, (datetime, date)):
        return value.isoformat()

    if isinstance(value, bytes):
        raise TypeError(f"Cannot serialize bytes to JSON; encode to hex first: {value!r:.64}")

    raise TypeError(f"Cannot serialize type {type(value).__name__} to JSON")


def to_canonical_json(value: Any) -> str:
    """Serialize a value to byte-for-byte reproducible JSON per RFC 8785."""
    return rfc8785.dumps(to_jsonable(value)).decode("utf-8")


def canonical_digest(value: Any) -> str:
    """Return the SHA-256 hex digest of ``value``'s canonical JSON form."""
    return hashlib.sha256(to_canonical_json(value).encode("utf-8")).hexdigest()
