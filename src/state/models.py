from __future__ import annotations

import base64
import json
from datetime import datetime, UTC
from typing import Any, Dict, List, Literal

from pydantic import BaseModel, ConfigDict, Field


FORMAT_VERSION = "2025.03"

# Binary values in the object store travel as {"__bytes__": "<base64>"}
_BYTES_TAG = "__bytes__"


def _now_iso() -> str:
    return datetime.now(UTC).isoformat(timespec="seconds")


def _json_default(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray, memoryview)):
        return {_BYTES_TAG: base64.b64encode(bytes(value)).decode("ascii")}
    if isinstance(value, (set, frozenset)):
        return sorted(value, key=repr)
    if isinstance(value, BaseModel):
        return value.model_dump(by_alias=True)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def _json_object_hook(obj: Dict[str, Any]) -> Any:
    if len(obj) == 1 and isinstance(obj.get(_BYTES_TAG), str):
        return base64.b64decode(obj[_BYTES_TAG])
    return obj


def dump_value(value: Any) -> str:
    """Serialize an object-store value to deterministic JSON text."""
    return json.dumps(value, default=_json_default, separators=(",", ":"), sort_keys=True, ensure_ascii=False)


def load_value(text: str | bytes) -> Any:
    """Inverse of `dump_value` (restores tagged binary values)."""
    return json.loads(text, object_hook=_json_object_hook)


class SnapshotMetadata(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    format_version: str = Field(default=FORMAT_VERSION, alias="version")
    created_at: str = Field(default_factory=_now_iso, alias="exportDate")
    is_chunked: bool = Field(default=False, alias="chunked")


class ChunkedValue(BaseModel):
    """
    An oversized object-store value, stored as its JSON text split in pieces.

    Reassembly is `"".join(chunks)` followed by `load_value`.
    """

    model_config = ConfigDict(populate_by_name=True)

    chunked: Literal[True] = Field(default=True, alias="__chunked")
    chunks: List[str] = Field(default_factory=list, alias="__chunks")

    @staticmethod
    def matches(value: Any) -> bool:
        return (
            isinstance(value, dict)
            and value.get("__chunked") is True
            and isinstance(value.get("__chunks"), list)
        )

    def joined(self) -> str:
        return "".join(self.chunks)


class Snapshot(BaseModel):
    """
    Full in-memory copy of both local stores plus metadata.

    Fields
    - string_store: the string-keyed settings/app store (JSON name `localStorage`).
      Exports hold strings only; scalars from older backups are accepted and
      coerced to text on import.
    - object_store: the structured value store (JSON name `indexedDB`). Values are
      JSON-compatible objects, binary data, or `ChunkedValue` dumps for oversized entries.
    - metadata: format version, creation time and the chunked flag.
    """

    model_config = ConfigDict(populate_by_name=True)

    string_store: Dict[str, Any] = Field(default_factory=dict, alias="localStorage")
    object_store: Dict[str, Any] = Field(default_factory=dict, alias="indexedDB")
    metadata: SnapshotMetadata = Field(default_factory=SnapshotMetadata)

    def to_json(self) -> str:
        return dump_value(self.model_dump(by_alias=True))


class ChunkedEnvelope(BaseModel):
    """Whole-snapshot wrapper used once the serialized snapshot is over the size ceiling."""

    model_config = ConfigDict(populate_by_name=True)

    format: Literal["chunked"] = Field(default="chunked", alias="__format")
    format_version: str = Field(default=FORMAT_VERSION, alias="__version")
    chunks: List[str] = Field(default_factory=list, alias="__chunks")
    total_chunks: int = Field(default=0, alias="__totalChunks")
    metadata: SnapshotMetadata = Field(default_factory=SnapshotMetadata)

    @staticmethod
    def matches(value: Any) -> bool:
        return isinstance(value, dict) and value.get("__format") == "chunked"

    def joined(self) -> str:
        return "".join(self.chunks)

    def to_json(self) -> str:
        return dump_value(self.model_dump(by_alias=True))


__all__ = [
    "FORMAT_VERSION",
    "SnapshotMetadata",
    "ChunkedValue",
    "Snapshot",
    "ChunkedEnvelope",
    "dump_value",
    "load_value",
]
