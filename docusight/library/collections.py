"""
Smart collections.

Auto collections group ready assets by capture day, city and person. They
are recomputed from scratch and swapped in wholesale, so they are never
edited in place; manual collections live beside them untouched.
"""

import copy
import logging
import re
import threading
import uuid
from collections import OrderedDict
from typing import Dict, Iterable, List, Optional

from ..config import LibrarySettings
from ..errors import DocuSightError, UnknownEntity
from ..models.collections import (
    Collection, CollectionDimension, CollectionSettings, CollectionType,
)
from ..models.media import AssetStatus, MediaAsset, utcnow

logger = logging.getLogger(__name__)


def slugify(text: str) -> str:
    slug = re.sub(r'[^a-z0-9]+', '-', text.lower()).strip('-')
    return slug or 'unknown'


class SmartCollectionGenerator:
    """Derives auto collections from the current library contents."""

    def __init__(self, settings: Optional[LibrarySettings] = None):
        self.settings = settings or LibrarySettings()

    def generate(self, assets: Iterable[MediaAsset],
                 person_names: Optional[Dict[str, str]] = None) -> List[Collection]:
        """
        Generate date, location and person collections.

        Args:
            assets: Library assets; only ready assets are grouped
            person_names: Display names for person collections

        Returns:
            Auto collections meeting the per-dimension minimum size
        """
        person_names = person_names or {}
        ready = sorted((a for a in assets if a.status is AssetStatus.READY), key=lambda a: a.id)

        by_day: Dict[str, List[str]] = OrderedDict()
        by_city: Dict[str, List[str]] = OrderedDict()
        city_names: Dict[str, str] = {}
        by_person: Dict[str, List[str]] = OrderedDict()

        for asset in ready:
            by_day.setdefault(asset.effective_date.date().isoformat(), []).append(asset.id)

            loc = asset.metadata.location
            if loc is not None and loc.city:
                slug = slugify(loc.city)
                city_names.setdefault(slug, loc.city)
                by_city.setdefault(slug, []).append(asset.id)

            for person_id in asset.person_ids:
                by_person.setdefault(person_id, []).append(asset.id)

        confidence = self.settings.collection_confidence
        collections = []

        for day, members in sorted(by_day.items()):
            if len(members) >= self.settings.min_date_members:
                collections.append(self._auto(
                    f"date-{day}", day, members, CollectionDimension.DATE,
                    confidence['date'], f"{len(members)} items captured on {day}",
                    layout='timeline'))

        for slug, members in sorted(by_city.items()):
            if len(members) >= self.settings.min_location_members:
                city = city_names[slug]
                collections.append(self._auto(
                    f"location-{slug}", city, members, CollectionDimension.LOCATION,
                    confidence['location'], f"{len(members)} items from {city}"))

        for person_id, members in sorted(by_person.items()):
            if len(members) >= self.settings.min_person_members:
                name = person_names.get(person_id, person_id)
                collections.append(self._auto(
                    f"person-{person_id}", name, members, CollectionDimension.PERSON,
                    confidence['person'], f"{len(members)} items featuring {name}"))

        logger.debug(f"Generated {len(collections)} auto collections from {len(ready)} ready assets")
        return collections

    @staticmethod
    def _auto(collection_id: str, name: str, members: List[str],
              dimension: CollectionDimension, confidence: float, description: str,
              layout: str = 'grid') -> Collection:
        return Collection(
            id=collection_id,
            name=name,
            type=CollectionType.AUTO,
            asset_ids=list(members),
            description=description,
            dimension=dimension,
            confidence=confidence,
            settings=CollectionSettings(layout=layout),
        )


class CollectionRegistry:
    """
    Thread-safe holder of manual and auto collections.

    Collections handed in or out are copies; the registry's own objects
    only change through its methods.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._manual: Dict[str, Collection] = {}
        self._auto: Dict[str, Collection] = {}

    def replace_auto(self, collections: Iterable[Collection]) -> None:
        """Swap the whole auto set in one step."""
        fresh = {c.id: copy.deepcopy(c) for c in collections}
        with self._lock:
            self._auto = fresh

    def create_manual(self, name: str, asset_ids: Iterable[str] = (), description: str = "",
                      settings: Optional[CollectionSettings] = None) -> Collection:
        collection = Collection(
            id=f"collection-{uuid.uuid4().hex[:12]}",
            name=name,
            type=CollectionType.MANUAL,
            asset_ids=list(dict.fromkeys(asset_ids)),
            description=description,
            settings=settings or CollectionSettings(),
        )
        with self._lock:
            self._manual[collection.id] = collection
            created = copy.deepcopy(collection)
        logger.info(f"Created collection {collection.id} '{name}' with {created.size} assets")
        return created

    def get(self, collection_id: str) -> Collection:
        with self._lock:
            collection = self._manual.get(collection_id) or self._auto.get(collection_id)
            if collection is None:
                raise UnknownEntity(f"Unknown collection: {collection_id}")
            return copy.deepcopy(collection)

    def list(self, type: Optional[CollectionType] = None) -> List[Collection]:
        with self._lock:
            manual = [copy.deepcopy(c) for c in sorted(self._manual.values(), key=lambda c: c.id)]
            auto = [copy.deepcopy(c) for c in sorted(self._auto.values(), key=lambda c: c.id)]
        if type is CollectionType.MANUAL:
            return manual
        if type is CollectionType.AUTO:
            return auto
        return manual + auto

    def _editable(self, collection_id: str) -> Collection:
        if collection_id in self._auto:
            raise DocuSightError(f"Collection {collection_id} is generated; "
                                 f"convert it to manual before editing")
        collection = self._manual.get(collection_id)
        if collection is None:
            raise UnknownEntity(f"Unknown collection: {collection_id}")
        return collection

    def add_assets(self, collection_id: str, asset_ids: Iterable[str]) -> Collection:
        with self._lock:
            collection = self._editable(collection_id)
            for asset_id in asset_ids:
                if asset_id not in collection.asset_ids:
                    collection.asset_ids.append(asset_id)
            collection.updated_at = utcnow()
            return copy.deepcopy(collection)

    def remove_assets(self, collection_id: str, asset_ids: Iterable[str]) -> Collection:
        with self._lock:
            collection = self._editable(collection_id)
            drop = set(asset_ids)
            collection.asset_ids = [a for a in collection.asset_ids if a not in drop]
            collection.updated_at = utcnow()
            return copy.deepcopy(collection)

    def convert_to_manual(self, collection_id: str, name: Optional[str] = None) -> Collection:
        """Copy an auto collection into a new, editable manual collection."""
        with self._lock:
            source = self._auto.get(collection_id)
        if source is None:
            raise UnknownEntity(f"Unknown auto collection: {collection_id}")
        return self.create_manual(name or source.name, source.asset_ids, source.description,
                                  CollectionSettings.from_dict(source.settings.to_dict()))

    def delete(self, collection_id: str) -> None:
        with self._lock:
            self._editable(collection_id)
            del self._manual[collection_id]

    def drop_asset(self, asset_id: str) -> None:
        """
        Remove a deleted asset from manual collections. Auto collections are
        regenerated by the caller instead, so none ever shrinks below its
        minimum size.
        """
        with self._lock:
            for collection in self._manual.values():
                if asset_id in collection.asset_ids:
                    collection.asset_ids.remove(asset_id)
                    collection.updated_at = utcnow()

    def snapshot(self) -> Dict[str, List[dict]]:
        with self._lock:
            return {'manual': [c.to_dict() for c in self._manual.values()],
                    'auto': [c.to_dict() for c in self._auto.values()]}

    def restore(self, data: Dict[str, List[dict]]) -> None:
        with self._lock:
            self._manual = {c['id']: Collection.from_dict(c) for c in data.get('manual', [])}
            self._auto = {c['id']: Collection.from_dict(c) for c in data.get('auto', [])}
