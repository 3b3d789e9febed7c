"""
Snapshot export/import for the two local stores.

Export: `build_snapshot` reads both stores (oversized object values become
`ChunkedValue`s) and `finalize_for_transport` turns the snapshot into the
JSON bytes the codec encrypts, wrapping it in a `ChunkedEnvelope` when it is
over the size ceiling.

Import: `apply_snapshot` accepts either form and writes it back, never
touching device-local settings.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, FrozenSet, Iterator, List, Sequence

from pydantic import ValidationError

from common.errors import FatalIOError, FormatError
from common.settings import CANONICAL_SCRIPT_URL, PRESERVED_KEYS, Settings

from .models import ChunkedEnvelope, ChunkedValue, Snapshot, dump_value, load_value
from .stores import ObjectStore, StringStore


logger = logging.getLogger(__name__)

CHUNK_SIZE = 10 * 1024 * 1024
MAX_PAYLOAD_SIZE = 100 * 1024 * 1024
BATCH_SIZE = 100


def chunk_string(text: str, size: int = CHUNK_SIZE) -> List[str]:
    """Split `text` into pieces of at most `size` characters; `"".join` restores it."""
    if size <= 0:
        raise ValueError("size must be > 0")
    return [text[i : i + size] for i in range(0, len(text), size)]


def _batches(keys: Sequence[Any], size: int) -> Iterator[Sequence[Any]]:
    for i in range(0, len(keys), size):
        yield keys[i : i + size]


def _list_keys(store, what: str) -> List[str]:
    try:
        return list(store.keys())
    except Exception as exc:
        raise FatalIOError(f"Failed to enumerate {what} keys") from exc


def _as_string_value(value: Any) -> str:
    """Text to store for a string store value; scalars become their JSON text."""
    if isinstance(value, str):
        return value
    if value is None or isinstance(value, (bool, int, float)):
        return dump_value(value)
    raise TypeError(f"expected a string, got {type(value).__name__}")


@dataclass
class ApplyResult:
    strings_written: int = 0
    strings_skipped: int = 0
    objects_written: int = 0
    objects_skipped: int = 0
    local_data_modified: bool = False


async def build_snapshot(
    strings: StringStore,
    objects: ObjectStore,
    *,
    chunk_size: int = CHUNK_SIZE,
    batch_size: int = BATCH_SIZE,
) -> Snapshot:
    """Read every key of both stores into a Snapshot.

    A key that fails to read is logged and left out. Object values whose JSON
    text is longer than `chunk_size` are stored as `ChunkedValue` dumps and the
    snapshot is flagged as chunked.
    """
    snapshot = Snapshot()

    string_keys = _list_keys(strings, "string store")
    logger.info("Exporting string store (%d keys)", len(string_keys))
    for batch in _batches(string_keys, batch_size):
        for key in batch:
            try:
                value = strings.get(key)
            except Exception as exc:
                logger.warning("Skipping string store key %s: %s", key, exc)
                continue
            if value is not None:
                snapshot.string_store[key] = value
        await asyncio.sleep(0)

    object_keys = _list_keys(objects, "object store")
    logger.info("Exporting object store (%d keys)", len(object_keys))
    for batch in _batches(object_keys, batch_size):
        for key in batch:
            try:
                value = objects.get(key)
                text = dump_value(value)
            except Exception as exc:
                logger.warning("Skipping object store key %s: %s", key, exc)
                continue
            if len(text) > chunk_size:
                logger.warning("Large object store value for key %s: %d chars, chunking", key, len(text))
                snapshot.object_store[key] = ChunkedValue(chunks=chunk_string(text, chunk_size)).model_dump(by_alias=True)
                snapshot.metadata.is_chunked = True
            else:
                snapshot.object_store[key] = value
        await asyncio.sleep(0)

    return snapshot


def finalize_for_transport(
    snapshot: Snapshot,
    *,
    max_size: int = MAX_PAYLOAD_SIZE,
    chunk_size: int = CHUNK_SIZE,
) -> bytes:
    """Serialize `snapshot`; over `max_size` bytes it is wrapped in a ChunkedEnvelope.

    The envelope chunks are the unmodified serialization; only the envelope's
    own metadata carries the chunked flag.
    """
    text = snapshot.to_json()
    data = text.encode("utf-8")
    if len(data) <= max_size:
        return data

    logger.warning("Large export payload: %d bytes, using chunked envelope", len(data))
    chunks = chunk_string(text, chunk_size)
    envelope = ChunkedEnvelope(
        format_version=snapshot.metadata.format_version,
        chunks=chunks,
        total_chunks=len(chunks),
        metadata=snapshot.metadata.model_copy(update={"is_chunked": True}),
    )
    return envelope.to_json().encode("utf-8")


def parse_transport(payload: bytes) -> Snapshot:
    """Inverse of `finalize_for_transport`; FormatError for anything else."""
    try:
        doc = load_value(payload)
    except (UnicodeDecodeError, ValueError) as exc:
        raise FormatError("Backup payload is not valid JSON") from exc

    if ChunkedEnvelope.matches(doc):
        try:
            envelope = ChunkedEnvelope.model_validate(doc)
        except ValidationError as exc:
            raise FormatError("Malformed chunked envelope") from exc
        if envelope.total_chunks != len(envelope.chunks):
            raise FormatError(
                f"Chunked envelope expects {envelope.total_chunks} chunks, found {len(envelope.chunks)}"
            )
        logger.info("Reassembling chunked payload (%d chunks)", envelope.total_chunks)
        try:
            doc = load_value(envelope.joined())
        except ValueError as exc:
            raise FormatError("Reassembled chunked payload is not valid JSON") from exc

    if not isinstance(doc, dict):
        raise FormatError("Backup payload is not a JSON object")
    try:
        return Snapshot.model_validate(doc)
    except ValidationError as exc:
        raise FormatError("Backup payload does not match the snapshot schema") from exc


async def apply_snapshot(
    payload: bytes,
    strings: StringStore,
    objects: ObjectStore,
    *,
    preserved: FrozenSet[str] = PRESERVED_KEYS,
    extension_url: str = CANONICAL_SCRIPT_URL,
    batch_size: int = BATCH_SIZE,
) -> ApplyResult:
    """Write a transported snapshot into the local stores.

    1. String keys not in `preserved` overwrite local values.
    2. The object store is cleared and refilled; chunked values are reassembled.
    3. The loader list is made to contain `extension_url`.
    Keys that fail to write are logged and skipped.
    """
    snapshot = parse_transport(payload)
    result = ApplyResult()

    string_keys = list(snapshot.string_store)
    logger.info("Importing string store (%d keys)", len(string_keys))
    for batch in _batches(string_keys, batch_size):
        for key in batch:
            if key in preserved:
                continue
            try:
                strings.set(key, _as_string_value(snapshot.string_store[key]))
            except Exception as exc:
                logger.warning("Failed to import string store key %s: %s", key, exc)
                result.strings_skipped += 1
                continue
            result.strings_written += 1
            result.local_data_modified = True
        await asyncio.sleep(0)

    try:
        objects.clear()
    except Exception as exc:
        raise FatalIOError("Failed to clear object store before import") from exc

    object_keys = list(snapshot.object_store)
    logger.info("Importing object store (%d keys)", len(object_keys))
    for batch in _batches(object_keys, batch_size):
        for key in batch:
            try:
                value = snapshot.object_store[key]
                if ChunkedValue.matches(value):
                    value = load_value(ChunkedValue.model_validate(value).joined())
                objects.put(key, value)
            except Exception as exc:
                logger.warning("Failed to import object store key %s: %s", key, exc)
                result.objects_skipped += 1
                continue
            result.objects_written += 1
        await asyncio.sleep(0)

    if Settings(strings).ensure_extension_registered(extension_url):
        logger.info("Registered loader URL %s", extension_url)

    logger.info(
        "Import completed: %d string keys, %d object keys (%d skipped)",
        result.strings_written,
        result.objects_written,
        result.strings_skipped + result.objects_skipped,
    )
    return result


__all__ = [
    "ApplyResult",
    "BATCH_SIZE",
    "CHUNK_SIZE",
    "MAX_PAYLOAD_SIZE",
    "apply_snapshot",
    "build_snapshot",
    "chunk_string",
    "finalize_for_transport",
    "parse_transport",
]
