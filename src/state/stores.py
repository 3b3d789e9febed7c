from __future__ import annotations

import json
import os
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Protocol

from .models import dump_value, load_value


DEFAULT_OBJECT_STORE_NAME = "keyval"


class StringStore(Protocol):
    """String-keyed, string-valued store (settings and small app data)."""

    def keys(self) -> List[str]: ...

    def get(self, key: str) -> Optional[str]: ...

    def set(self, key: str, value: str) -> None: ...

    def remove(self, key: str) -> None: ...


class ObjectStore(Protocol):
    """Store of arbitrary structured values (chats, blobs, ...)."""

    def keys(self) -> List[str]: ...

    def get(self, key: str) -> Any: ...

    def put(self, key: str, value: Any) -> None: ...

    def clear(self) -> None: ...


class MemoryStringStore:
    def __init__(self, initial: Optional[Dict[str, str]] = None) -> None:
        self._data: Dict[str, str] = dict(initial or {})

    def keys(self) -> List[str]:
        return list(self._data)

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = str(value)

    def remove(self, key: str) -> None:
        self._data.pop(key, None)

    def as_dict(self) -> Dict[str, str]:
        return dict(self._data)


class JsonFileStringStore:
    """
    String store persisted to a single JSON object file.

    - Loaded lazily on first access; a corrupt or non-object file starts empty.
    - Every mutation rewrites the file (small settings-sized data only).
    - Write failures propagate so callers can skip the key and log.
    """

    def __init__(self, path: os.PathLike[str] | str) -> None:
        self._path = Path(path)
        self._data: Dict[str, str] = {}
        self._loaded = False

    def _ensure_loaded(self) -> None:
        if self._loaded:
            return
        self._loaded = True
        if not self._path.exists():
            return
        try:
            with self._path.open("r", encoding="utf-8") as f:
                raw = json.load(f)
        except (OSError, ValueError):
            self._data = {}
            return
        if isinstance(raw, dict):
            self._data = {str(k): str(v) for k, v in raw.items() if v is not None}

    def _save(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._path.with_suffix(self._path.suffix + ".tmp")
        with tmp.open("w", encoding="utf-8") as f:
            json.dump(self._data, f, indent=2, sort_keys=True)
        tmp.replace(self._path)

    def keys(self) -> List[str]:
        self._ensure_loaded()
        return list(self._data)

    def get(self, key: str) -> Optional[str]:
        self._ensure_loaded()
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._ensure_loaded()
        self._data[key] = str(value)
        self._save()

    def remove(self, key: str) -> None:
        self._ensure_loaded()
        if self._data.pop(key, None) is not None:
            self._save()


class MemoryObjectStore:
    def __init__(self, initial: Optional[Dict[str, Any]] = None) -> None:
        self._data: Dict[str, Any] = dict(initial or {})

    def keys(self) -> List[str]:
        return list(self._data)

    def get(self, key: str) -> Any:
        return self._data.get(key)

    def put(self, key: str, value: Any) -> None:
        self._data[key] = value

    def clear(self) -> None:
        self._data.clear()

    def as_dict(self) -> Dict[str, Any]:
        return dict(self._data)


class SqliteObjectStore:
    """
    Object store backed by one SQLite table, opened by a fixed store name.

    Values are stored as JSON text (binary values tagged, see `dump_value`).
    Each operation opens its own connection inside `_transaction()`, so the
    handle is committed or rolled back and closed on every exit path.
    """

    def __init__(self, path: os.PathLike[str] | str, *, store_name: str = DEFAULT_OBJECT_STORE_NAME) -> None:
        if not store_name.isidentifier():
            raise ValueError(f"invalid store name: {store_name!r}")
        self._path = Path(path)
        self._table = store_name
        with self._transaction() as conn:
            conn.execute(f"CREATE TABLE IF NOT EXISTS {self._table} (k TEXT PRIMARY KEY, v TEXT NOT NULL)")

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(self._path)
        try:
            yield conn
            conn.commit()
        except BaseException:
            conn.rollback()
            raise
        finally:
            conn.close()

    def keys(self) -> List[str]:
        with self._transaction() as conn:
            rows = conn.execute(f"SELECT k FROM {self._table} ORDER BY k").fetchall()
        return [r[0] for r in rows]

    def get(self, key: str) -> Any:
        with self._transaction() as conn:
            row = conn.execute(f"SELECT v FROM {self._table} WHERE k = ?", (key,)).fetchone()
        if row is None:
            return None
        return load_value(row[0])

    def put(self, key: str, value: Any) -> None:
        text = dump_value(value)
        with self._transaction() as conn:
            conn.execute(
                f"INSERT INTO {self._table} (k, v) VALUES (?, ?) "
                "ON CONFLICT(k) DO UPDATE SET v = excluded.v",
                (key, text),
            )

    def clear(self) -> None:
        with self._transaction() as conn:
            conn.execute(f"DELETE FROM {self._table}")


__all__ = [
    "StringStore",
    "ObjectStore",
    "MemoryStringStore",
    "JsonFileStringStore",
    "MemoryObjectStore",
    "SqliteObjectStore",
]
