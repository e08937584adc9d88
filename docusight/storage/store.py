"""
Key-value persistence for library records.

Every write covers exactly one key and is atomic: readers see either the
previous record or the new one. Records are JSON-serializable dicts.
"""

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Optional, Union
from urllib.parse import quote, unquote
import copy
import json
import logging
import os
import tempfile
import threading

logger = logging.getLogger(__name__)

ASSET_PREFIX = 'asset:'
PERSON_REGISTRY_KEY = 'person-registry'
COLLECTIONS_KEY = 'collections'


def asset_key(asset_id: str) -> str:
    return f"{ASSET_PREFIX}{asset_id}"


class StorageError(Exception):
    """Base exception for storage operations."""
    pass


class StorageNotFoundError(StorageError):
    """Raised when a key is not found."""
    pass


class StorageCorruptError(StorageError):
    """Raised when a stored record cannot be decoded."""
    pass


class KeyValueStore(ABC):
    """Abstract base class for record stores."""

    @abstractmethod
    def get(self, key: str) -> Dict[str, Any]:
        """Load the record at ``key``; raises StorageNotFoundError."""
        pass

    @abstractmethod
    def put(self, key: str, record: Dict[str, Any]) -> None:
        """Atomically write one record."""
        pass

    @abstractmethod
    def delete(self, key: str) -> bool:
        """Delete a record. Returns True if deleted."""
        pass

    @abstractmethod
    def keys(self, prefix: str = "") -> List[str]:
        """List keys with optional prefix filter, sorted."""
        pass

    def exists(self, key: str) -> bool:
        return key in self.keys(key)

    def get_or_default(self, key: str, default: Optional[Dict[str, Any]] = None) -> Optional[Dict[str, Any]]:
        try:
            return self.get(key)
        except StorageNotFoundError:
            return default


class MemoryStore(KeyValueStore):
    """In-process store; records are copied on the way in and out."""

    def __init__(self):
        self._lock = threading.Lock()
        self._records: Dict[str, Dict[str, Any]] = {}

    def get(self, key: str) -> Dict[str, Any]:
        with self._lock:
            if key not in self._records:
                raise StorageNotFoundError(f"Key not found: {key}")
            return copy.deepcopy(self._records[key])

    def put(self, key: str, record: Dict[str, Any]) -> None:
        record = copy.deepcopy(record)
        with self._lock:
            self._records[key] = record

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._records.pop(key, None) is not None

    def keys(self, prefix: str = "") -> List[str]:
        with self._lock:
            return sorted(k for k in self._records if k.startswith(prefix))


class JsonFileStore(KeyValueStore):
    """One JSON file per key under a base directory."""

    SUFFIX = '.json'

    def __init__(self, base_path: Union[str, Path]):
        """
        Initialize file storage.

        Args:
            base_path: Base directory for records
        """
        self.base_path = Path(base_path).resolve()
        self.base_path.mkdir(parents=True, exist_ok=True)

    def _full_path(self, key: str) -> Path:
        return self.base_path / (quote(key, safe='') + self.SUFFIX)

    def get(self, key: str) -> Dict[str, Any]:
        full_path = self._full_path(key)
        if not full_path.exists():
            raise StorageNotFoundError(f"Key not found: {key}")
        try:
            with open(full_path, 'r') as f:
                return json.load(f)
        except json.JSONDecodeError as e:
            raise StorageCorruptError(f"Corrupt record {key}: {e}") from e

    def put(self, key: str, record: Dict[str, Any]) -> None:
        full_path = self._full_path(key)
        # Write beside the target, then rename over it
        fd, tmp_name = tempfile.mkstemp(dir=self.base_path, prefix='.tmp-', suffix=self.SUFFIX)
        try:
            with os.fdopen(fd, 'w') as f:
                json.dump(record, f, indent=2)
            os.replace(tmp_name, full_path)
        except (OSError, TypeError, ValueError) as e:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise StorageError(f"Failed to write {key}: {e}") from e

    def delete(self, key: str) -> bool:
        full_path = self._full_path(key)
        if full_path.exists():
            full_path.unlink()
            return True
        return False

    def keys(self, prefix: str = "") -> List[str]:
        keys = []
        for path in self.base_path.glob('*' + self.SUFFIX):
            if path.name.startswith('.tmp-'):
                continue
            key = unquote(path.name[:-len(self.SUFFIX)])
            if key.startswith(prefix):
                keys.append(key)
        return sorted(keys)


def create_store(config: Optional[Dict[str, Any]] = None) -> KeyValueStore:
    """Build the store named by the ``storage`` config section."""
    storage_config = (config or {}).get('storage', {}) or {}
    backend = storage_config.get('backend', 'memory')
    if backend == 'memory':
        return MemoryStore()
    if backend == 'json':
        path = storage_config.get('path')
        if not path:
            raise StorageError("storage.path is required for the json backend")
        return JsonFileStore(path)
    raise StorageError(f"Unknown storage backend: {backend}")
