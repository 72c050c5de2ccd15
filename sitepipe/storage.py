"""Key/value persistence for definitions and collected datasets."""

from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import Any, Protocol

logger = logging.getLogger(__name__)


class StorageError(Exception):
    """Raised when a value cannot be persisted."""


class PersistenceStore(Protocol):
    """Minimal key/value contract over JSON-serializable values."""

    def get(self, key: str, default: Any = None) -> Any: ...

    def set(self, key: str, value: Any) -> None: ...

    def delete(self, key: str) -> bool: ...

    def keys(self, prefix: str = "") -> list[str]: ...


def _encode(key: str, value: Any) -> str:
    try:
        return json.dumps(value)
    except (TypeError, ValueError) as exc:
        raise StorageError(f"Value for key '{key}' is not JSON-serializable: {exc}") from exc


class MemoryStore:
    """In-process store. Values are round-tripped through JSON on write."""

    def __init__(self) -> None:
        self._data: dict[str, str] = {}

    def get(self, key: str, default: Any = None) -> Any:
        raw = self._data.get(key)
        if raw is None:
            return default
        return json.loads(raw)

    def set(self, key: str, value: Any) -> None:
        self._data[key] = _encode(key, value)

    def delete(self, key: str) -> bool:
        return self._data.pop(key, None) is not None

    def keys(self, prefix: str = "") -> list[str]:
        return [key for key in self._data if key.startswith(prefix)]


class JsonFileStore:
    """Store backed by a single JSON document on disk.

    Writes go through a temporary file followed by an atomic replace so a
    crash never leaves a truncated document behind.
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self._lock = threading.Lock()
        self._data = self._load()

    def _load(self) -> dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise StorageError(f"Corrupt store file {self.path}: {exc}") from exc
        if not isinstance(data, dict):
            raise StorageError(f"Store file {self.path} must contain a JSON object")
        return data

    def _flush(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(self._data, indent=2), encoding="utf-8")
        tmp_path.replace(self.path)

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            if key not in self._data:
                return default
            # Hand out copies so callers cannot mutate stored state
            return json.loads(json.dumps(self._data[key]))

    def set(self, key: str, value: Any) -> None:
        encoded = _encode(key, value)
        with self._lock:
            self._data[key] = json.loads(encoded)
            self._flush()
        logger.debug("Stored key %s in %s", key, self.path)

    def delete(self, key: str) -> bool:
        with self._lock:
            if key not in self._data:
                return False
            del self._data[key]
            self._flush()
            return True

    def keys(self, prefix: str = "") -> list[str]:
        with self._lock:
            return [key for key in self._data if key.startswith(prefix)]
