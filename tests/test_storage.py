"""
Tests for the record stores.
"""

import pytest

from docusight.storage.store import (
    JsonFileStore, MemoryStore, StorageCorruptError, StorageError, StorageNotFoundError,
    asset_key, create_store,
)


@pytest.fixture(params=['memory', 'json'])
def store(request, tmp_path):
    if request.param == 'memory':
        return MemoryStore()
    return JsonFileStore(tmp_path / 'records')


class TestKeyValueStore:
    """Behaviour shared by every backend."""

    def test_put_and_get(self, store):
        store.put('asset:a', {'id': 'a', 'tags': ['x']})
        assert store.get('asset:a') == {'id': 'a', 'tags': ['x']}

    def test_put_replaces(self, store):
        store.put('asset:a', {'v': 1})
        store.put('asset:a', {'v': 2})
        assert store.get('asset:a') == {'v': 2}
        assert store.keys() == ['asset:a']

    def test_missing_key(self, store):
        with pytest.raises(StorageNotFoundError):
            store.get('asset:missing')
        assert store.get_or_default('asset:missing', {'d': 1}) == {'d': 1}
        assert not store.exists('asset:missing')

    def test_delete(self, store):
        store.put('asset:a', {})
        assert store.delete('asset:a') is True
        assert store.delete('asset:a') is False
        assert not store.exists('asset:a')

    def test_keys_by_prefix(self, store):
        store.put(asset_key('b'), {})
        store.put(asset_key('a'), {})
        store.put('person-registry', {})
        assert store.keys('asset:') == ['asset:a', 'asset:b']
        assert store.keys() == ['asset:a', 'asset:b', 'person-registry']

    def test_exists_is_exact(self, store):
        store.put('asset:ab', {})
        assert store.exists('asset:ab')
        assert not store.exists('asset:a')

    def test_records_are_copies(self, store):
        record = {'tags': ['x']}
        store.put('asset:a', record)
        record['tags'].append('y')
        store.get('asset:a')['tags'].append('z')
        assert store.get('asset:a') == {'tags': ['x']}


class TestJsonFileStore:
    """Test the file backend specifics."""

    def test_keys_with_separators(self, tmp_path):
        store = JsonFileStore(tmp_path)
        store.put('asset:2024/03/a', {'id': 'a'})
        assert store.keys() == ['asset:2024/03/a']
        assert list(tmp_path.glob('*.json'))

    def test_corrupt_record(self, tmp_path):
        store = JsonFileStore(tmp_path)
        store.put('asset:a', {'id': 'a'})
        store._full_path('asset:a').write_text('{not json')
        with pytest.raises(StorageCorruptError):
            store.get('asset:a')

    def test_unserializable_record_leaves_previous(self, tmp_path):
        store = JsonFileStore(tmp_path)
        store.put('asset:a', {'v': 1})
        with pytest.raises(StorageError):
            store.put('asset:a', {'v': object()})
        assert store.get('asset:a') == {'v': 1}
        assert not list(tmp_path.glob('.tmp-*'))

    def test_survives_reopen(self, tmp_path):
        JsonFileStore(tmp_path).put('collections', {'manual': []})
        assert JsonFileStore(tmp_path).get('collections') == {'manual': []}


class TestCreateStore:
    """Test backend selection from config."""

    def test_default_is_memory(self):
        assert isinstance(create_store(), MemoryStore)

    def test_json_backend(self, tmp_path):
        store = create_store({'storage': {'backend': 'json', 'path': str(tmp_path)}})
        assert isinstance(store, JsonFileStore)

    def test_json_backend_needs_path(self):
        with pytest.raises(StorageError):
            create_store({'storage': {'backend': 'json'}})

    def test_unknown_backend(self):
        with pytest.raises(StorageError):
            create_store({'storage': {'backend': 'sqlite'}})
