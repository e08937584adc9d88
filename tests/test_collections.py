"""
Tests for smart collection generation and the collection registry.
"""

import pytest

from docusight.errors import DocuSightError, UnknownEntity
from docusight.library import CollectionRegistry, SmartCollectionGenerator
from docusight.library.collections import slugify
from docusight.models.collections import CollectionDimension, CollectionType
from docusight.models.media import AssetStatus

from .test_query_index import PARIS, make_asset


@pytest.fixture
def generator():
    return SmartCollectionGenerator()


def by_id(collections):
    return {c.id: c for c in collections}


class TestSmartCollections:
    """Test auto collection thresholds."""

    def test_date_collection_needs_five(self, generator):
        four = [make_asset(f"a{i}", day=3) for i in range(4)]
        assert generator.generate(four) == []

        five = four + [make_asset('a4', day=3)]
        collections = by_id(generator.generate(five))
        date = collections['date-2024-03-03']
        assert date.type is CollectionType.AUTO
        assert date.dimension is CollectionDimension.DATE
        assert date.size == 5
        assert date.confidence == 0.9
        assert date.settings.layout == 'timeline'

    def test_location_collection_needs_three(self, generator):
        assets = [make_asset(f"a{i}", day=i + 1, city='Paris', coords=PARIS) for i in range(3)]
        collections = by_id(generator.generate(assets))
        assert set(collections) == {'location-paris'}
        assert collections['location-paris'].name == 'Paris'
        assert collections['location-paris'].confidence == 0.8

        assert generator.generate(assets[:2]) == []

    def test_person_collection_uses_names(self, generator):
        assets = [make_asset(f"a{i}", day=i + 1, persons=['p1']) for i in range(3)]
        collections = by_id(generator.generate(assets, {'p1': 'Ana Ruiz'}))
        assert collections['person-p1'].name == 'Ana Ruiz'
        assert collections['person-p1'].confidence == 0.85

    def test_only_ready_assets(self, generator):
        assets = [make_asset(f"a{i}", day=3) for i in range(4)]
        assets.append(make_asset('broken', day=3, status=AssetStatus.ERROR))
        assert generator.generate(assets) == []

    def test_slugify(self):
        assert slugify('São Paulo') == 's-o-paulo'
        assert slugify('!!!') == 'unknown'


class TestCollectionRegistry:
    """Test manual and auto collection handling."""

    @pytest.fixture
    def registry(self, generator):
        registry = CollectionRegistry()
        registry.replace_auto(generator.generate([make_asset(f"a{i}", day=3) for i in range(5)]))
        return registry

    def test_auto_collections_are_read_only(self, registry):
        with pytest.raises(DocuSightError):
            registry.add_assets('date-2024-03-03', ['x'])
        with pytest.raises(DocuSightError):
            registry.remove_assets('date-2024-03-03', ['a0'])
        with pytest.raises(DocuSightError):
            registry.delete('date-2024-03-03')

    def test_convert_to_manual(self, registry):
        manual = registry.convert_to_manual('date-2024-03-03', name='March 3rd selects')
        assert manual.type is CollectionType.MANUAL
        assert manual.size == 5
        registry.remove_assets(manual.id, ['a0'])
        assert registry.get(manual.id).size == 4
        assert registry.get('date-2024-03-03').size == 5

    def test_replace_auto_leaves_manual_alone(self, registry):
        manual = registry.create_manual('Selects', ['a1', 'a1', 'a2'])
        assert manual.asset_ids == ['a1', 'a2']
        registry.replace_auto([])
        assert [c.id for c in registry.list()] == [manual.id]
        with pytest.raises(UnknownEntity):
            registry.get('date-2024-03-03')

    def test_drop_asset_only_touches_manual(self, registry):
        manual = registry.create_manual('Selects', ['a1', 'a2'])
        registry.drop_asset('a1')
        assert registry.get(manual.id).asset_ids == ['a2']
        assert 'a1' in registry.get('date-2024-03-03').asset_ids

    def test_list_by_type(self, registry):
        registry.create_manual('Selects')
        assert len(registry.list(CollectionType.MANUAL)) == 1
        assert len(registry.list(CollectionType.AUTO)) == 1

    def test_snapshot_restore(self, registry):
        manual = registry.create_manual('Selects', ['a1'])
        restored = CollectionRegistry()
        restored.restore(registry.snapshot())
        assert restored.get(manual.id).asset_ids == ['a1']
        assert restored.get('date-2024-03-03').type is CollectionType.AUTO

    def test_returned_collections_are_copies(self, registry):
        manual = registry.create_manual('Selects', ['a1'])
        registry.get(manual.id).asset_ids.append('a9')
        registry.list(CollectionType.MANUAL)[0].name = 'Renamed'
        manual.asset_ids.clear()
        registry.get('date-2024-03-03').asset_ids.clear()

        assert registry.get(manual.id).asset_ids == ['a1']
        assert registry.get(manual.id).name == 'Selects'
        assert registry.get('date-2024-03-03').size == 5
