"""
Persistence backends for DocuSight.
"""

from .store import (
    KeyValueStore, MemoryStore, JsonFileStore, create_store,
    StorageError, StorageNotFoundError, StorageCorruptError,
    asset_key, ASSET_PREFIX, PERSON_REGISTRY_KEY, COLLECTIONS_KEY,
)

__all__ = [
    'KeyValueStore', 'MemoryStore', 'JsonFileStore', 'create_store',
    'StorageError', 'StorageNotFoundError', 'StorageCorruptError',
    'asset_key', 'ASSET_PREFIX', 'PERSON_REGISTRY_KEY', 'COLLECTIONS_KEY',
]
