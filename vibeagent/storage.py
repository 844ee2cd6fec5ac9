"""
State persistence — namespaced key/value storage backed by an atomic JSON file.

Every agent keeps its persisted state (vault ciphertext, salt, permission
matrix, JWTs, active DID, settings) in one JSON document per namespace.

Depends on: config
"""

import copy
import fcntl
import json
import os
import sys
import threading
from abc import ABC, abstractmethod
from typing import Any, Optional

from vibeagent.config import AGENT_HOME, AGENT_NAMESPACE


class Storage(ABC):
    """Key/value store for JSON-serializable values."""

    @abstractmethod
    def get(self, key: str, default: Any = None) -> Any:
        ...

    @abstractmethod
    def set(self, key: str, value: Any) -> None:
        ...

    @abstractmethod
    def remove(self, key: str) -> None:
        ...

    @abstractmethod
    def clear(self) -> None:
        ...


class MemoryStorage(Storage):
    """Volatile storage. Values are deep-copied so callers never share state with the store."""

    def __init__(self, initial: Optional[dict] = None):
        self._data: dict[str, Any] = copy.deepcopy(initial) if initial else {}

    def get(self, key: str, default: Any = None) -> Any:
        if key not in self._data:
            return default
        return copy.deepcopy(self._data[key])

    def set(self, key: str, value: Any) -> None:
        self._data[key] = copy.deepcopy(value)

    def remove(self, key: str) -> None:
        self._data.pop(key, None)

    def clear(self) -> None:
        self._data.clear()


class JsonFileStorage(Storage):
    """Storage persisted to a single JSON file, rewritten atomically on every mutation."""

    def __init__(self, path: str):
        self.path = path
        self._lock = threading.Lock()
        self._data: dict[str, Any] = self._load()

    @classmethod
    def for_namespace(cls, namespace: str = AGENT_NAMESPACE,
                      home: Optional[str] = None) -> "JsonFileStorage":
        """Storage file for a namespace, e.g. ~/.vibeagent/vibe_agent.json."""
        base = home or AGENT_HOME
        os.makedirs(base, exist_ok=True)
        return cls(os.path.join(base, f"{namespace}.json"))

    def get(self, key: str, default: Any = None) -> Any:
        if key not in self._data:
            return default
        return copy.deepcopy(self._data[key])

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._data[key] = copy.deepcopy(value)
            self._save()

    def remove(self, key: str) -> None:
        with self._lock:
            if self._data.pop(key, None) is not None:
                self._save()

    def clear(self) -> None:
        with self._lock:
            self._data = {}
            self._save()

    # =========================================================================
    # File I/O
    # =========================================================================

    def _load(self) -> dict:
        if not os.path.exists(self.path):
            return {}
        try:
            with open(self.path, "r") as f:
                fcntl.flock(f.fileno(), fcntl.LOCK_SH)
                try:
                    data = json.load(f)
                finally:
                    fcntl.flock(f.fileno(), fcntl.LOCK_UN)
        except (json.JSONDecodeError, OSError) as e:
            print(f"[VibeAgent] Warning: could not load storage file {self.path}: {e}", file=sys.stderr)
            return {}
        if not isinstance(data, dict):
            print(f"[VibeAgent] Warning: ignoring non-object storage file {self.path}", file=sys.stderr)
            return {}
        return data

    def _save(self) -> None:
        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        tmp = self.path + ".tmp"
        fd = os.open(tmp, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w") as f:
            fcntl.flock(f.fileno(), fcntl.LOCK_EX)
            try:
                json.dump(self._data, f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            finally:
                fcntl.flock(f.fileno(), fcntl.LOCK_UN)
        os.replace(tmp, self.path)
