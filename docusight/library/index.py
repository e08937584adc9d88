"""
In-memory library index.

The primary map holds every asset by id. Secondary indexes (tag name, tag
category, kind, status, day, geolocation bucket, city, person) narrow the
candidate set before the full predicate check, so results never depend on
the secondary indexes being complete, only on them not missing entries.

Readers never see a half-updated asset: ``upsert`` swaps a private copy in
under the write lock and readers receive copies.
"""

import copy
import logging
import threading
from collections import Counter
from contextlib import contextmanager
from datetime import date
from math import cos, floor, radians
from typing import Any, Callable, Dict, Hashable, Iterable, List, Optional, Set, Tuple

from ..errors import UnknownEntity
from ..models.media import AssetStatus, MediaAsset
from .query import SearchQuery, SortSpec

logger = logging.getLogger(__name__)

GEO_BUCKET_DEGREES = 0.1


class ReadWriteLock:
    """Many concurrent readers or one writer; writers are not starved."""

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextmanager
    def read(self):
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if not self._readers:
                    self._cond.notify_all()

    @contextmanager
    def write(self):
        with self._cond:
            self._writers_waiting += 1
            while self._writer or self._readers:
                self._cond.wait()
            self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


def geo_bucket(latitude: float, longitude: float) -> Tuple[int, int]:
    return (floor(latitude / GEO_BUCKET_DEGREES), floor(longitude / GEO_BUCKET_DEGREES))


def _quality_band(score: Optional[float]) -> str:
    if score is None:
        return 'unanalyzed'
    if score >= 0.8:
        return 'excellent'
    if score >= 0.6:
        return 'good'
    if score >= 0.4:
        return 'fair'
    return 'poor'


class LibraryIndex:
    """Searchable index of every asset in the library."""

    def __init__(self, canonical_person: Optional[Callable[[str], str]] = None):
        """
        Args:
            canonical_person: Maps a person id to the id currently holding
                its faces; applied to face back-references under the write
                lock, so an asset published concurrently with a merge never
                points at the retired person
        """
        self._canonical_person = canonical_person
        self._lock = ReadWriteLock()
        self._assets: Dict[str, MediaAsset] = {}
        self._secondary: Dict[str, Dict[Hashable, Set[str]]] = {
            'tag': {}, 'category': {}, 'kind': {}, 'status': {},
            'day': {}, 'bucket': {}, 'city': {}, 'person': {},
        }

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def upsert(self, asset: MediaAsset) -> MediaAsset:
        """
        Insert or replace an asset and all of its index entries.

        Returns:
            Copy of the asset as stored
        """
        stored = copy.deepcopy(asset)
        with self._lock.write():
            if self._canonical_person is not None:
                stored.faces = [face.with_person(self._canonical_person(face.person_id))
                                if face.person_id else face for face in stored.faces]
            previous = self._assets.get(stored.id)
            if previous is not None:
                self._unindex(previous)
            self._assets[stored.id] = stored
            self._index(stored)
            return copy.deepcopy(stored)

    def remove(self, asset_id: str) -> Optional[MediaAsset]:
        with self._lock.write():
            asset = self._assets.pop(asset_id, None)
            if asset is not None:
                self._unindex(asset)
            return asset

    def replace_person(self, old_person_id: str, new_person_id: str) -> List[str]:
        """
        Rewrite face back-references after a merge.

        Returns:
            Ids of the assets that changed
        """
        changed = []
        with self._lock.write():
            for asset_id in sorted(self._secondary['person'].get(old_person_id, set())):
                asset = copy.deepcopy(self._assets[asset_id])
                asset.faces = [face.with_person(new_person_id) if face.person_id == old_person_id
                               else face for face in asset.faces]
                self._unindex(self._assets[asset_id])
                self._assets[asset_id] = asset
                self._index(asset)
                changed.append(asset_id)
        return changed

    def clear(self) -> None:
        with self._lock.write():
            self._assets.clear()
            for index in self._secondary.values():
                index.clear()

    def _keys_for(self, asset: MediaAsset) -> Dict[str, Iterable[Hashable]]:
        loc = asset.metadata.location
        return {
            'tag': {tag.name.lower() for tag in asset.tags},
            'category': {tag.category for tag in asset.tags},
            'kind': [asset.kind],
            'status': [asset.status],
            'day': [asset.effective_date.date()],
            'bucket': [geo_bucket(loc.latitude, loc.longitude)] if loc else [],
            'city': [loc.city.lower()] if loc and loc.city else [],
            'person': asset.person_ids,
        }

    def _index(self, asset: MediaAsset) -> None:
        for name, keys in self._keys_for(asset).items():
            index = self._secondary[name]
            for key in keys:
                index.setdefault(key, set()).add(asset.id)

    def _unindex(self, asset: MediaAsset) -> None:
        for name, keys in self._keys_for(asset).items():
            index = self._secondary[name]
            for key in keys:
                members = index.get(key)
                if members is None:
                    continue
                members.discard(asset.id)
                if not members:
                    del index[key]

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, asset_id: str) -> MediaAsset:
        with self._lock.read():
            asset = self._assets.get(asset_id)
            if asset is None:
                raise UnknownEntity(f"Unknown asset: {asset_id}")
            return copy.deepcopy(asset)

    def __contains__(self, asset_id: str) -> bool:
        with self._lock.read():
            return asset_id in self._assets

    def __len__(self) -> int:
        with self._lock.read():
            return len(self._assets)

    def all(self) -> List[MediaAsset]:
        with self._lock.read():
            return [copy.deepcopy(self._assets[key]) for key in sorted(self._assets)]

    def search(self, query: Optional[SearchQuery] = None, sort: Optional[SortSpec] = None,
               limit: Optional[int] = None, offset: int = 0) -> List[MediaAsset]:
        """
        Run a query and return matching assets in sort order.

        Raises:
            InvalidQuery: Malformed query or sort specification
        """
        query = query or SearchQuery()
        sort = sort or SortSpec()
        query.validate()
        sort.validate()

        with self._lock.read():
            candidates = self._candidates(query)
            matches = [self._assets[asset_id] for asset_id in candidates
                       if query.matches(self._assets[asset_id])]
            ordered = self._sort(matches, query, sort)
            if offset:
                ordered = ordered[offset:]
            if limit is not None:
                ordered = ordered[:limit]
            result = [copy.deepcopy(asset) for asset in ordered]

        logger.debug(f"Search matched {len(matches)} of {len(candidates)} candidates")
        return result

    def _candidates(self, query: SearchQuery) -> Set[str]:
        """Narrow with secondary indexes; always a superset of the matches."""
        candidates: Optional[Set[str]] = None

        def narrow(ids: Set[str]) -> None:
            nonlocal candidates
            candidates = set(ids) if candidates is None else candidates & ids

        def union(index: str, keys: Iterable[Hashable]) -> Set[str]:
            result: Set[str] = set()
            for key in keys:
                result |= self._secondary[index].get(key, set())
            return result

        if query.asset_ids is not None:
            narrow({asset_id for asset_id in query.asset_ids if asset_id in self._assets})
        if query.tags is not None:
            narrow(union('tag', query.tags))
        if query.categories is not None:
            narrow(union('category', query.categories))
        if query.kinds is not None:
            narrow(union('kind', query.kinds))
        if query.statuses is not None:
            narrow(union('status', query.statuses))
        if query.persons is not None:
            narrow(union('person', query.persons))
        if query.date_range is not None:
            start = query.date_range.start.date() if query.date_range.start else date.min
            end = query.date_range.end.date() if query.date_range.end else date.max
            narrow(union('day', [day for day in self._secondary['day'] if start <= day <= end]))
        if query.near is not None:
            narrow(union('bucket', self._buckets_near(query)))

        if candidates is None:
            return set(self._assets)
        return candidates

    def _buckets_near(self, query: SearchQuery) -> List[Tuple[int, int]]:
        near = query.near
        lat_span = near.radius_km / 111.0 + GEO_BUCKET_DEGREES
        lon_scale = max(cos(radians(near.latitude)), 1e-6)
        lon_span = near.radius_km / (111.0 * lon_scale) + GEO_BUCKET_DEGREES
        low = geo_bucket(near.latitude - lat_span, near.longitude - lon_span)
        high = geo_bucket(near.latitude + lat_span, near.longitude + lon_span)
        return [bucket for bucket in self._secondary['bucket']
                if low[0] <= bucket[0] <= high[0] and low[1] <= bucket[1] <= high[1]]

    @staticmethod
    def _sort(assets: List[MediaAsset], query: SearchQuery, sort: SortSpec) -> List[MediaAsset]:
        if sort.key == 'date':
            key = lambda a: a.effective_date
        elif sort.key == 'name':
            key = lambda a: a.filename.lower()
        elif sort.key == 'size':
            key = lambda a: a.size
        elif sort.key == 'quality':
            key = lambda a: a.quality_score if a.quality_score is not None else -1.0
        else:
            key = query.relevance

        # Stable sorts: id ascending first, so equal keys keep id order either way
        ordered = sorted(assets, key=lambda a: a.id)
        ordered.sort(key=key, reverse=sort.descending)
        return ordered

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    def stats(self, top_tags: int = 10) -> Dict[str, Any]:
        """Library statistics: totals, distributions and top tags."""
        with self._lock.read():
            assets = list(self._assets.values())
            by_kind = Counter(a.kind.value for a in assets)
            by_status = Counter(a.status.value for a in assets)
            by_day = Counter(a.effective_date.date().isoformat() for a in assets)
            tag_counts = Counter(tag.name for a in assets for tag in a.tags)
            quality = Counter(_quality_band(a.quality_score) for a in assets)
            return {
                'total_assets': len(assets),
                'total_size': sum(a.size for a in assets),
                'by_kind': dict(by_kind),
                'by_status': dict(by_status),
                'by_day': dict(sorted(by_day.items())),
                'top_tags': [{'tag': name, 'count': count}
                             for name, count in sorted(tag_counts.items(),
                                                       key=lambda item: (-item[1], item[0]))[:top_tags]],
                'quality_distribution': dict(quality),
                'processing': by_status.get(AssetStatus.PROCESSING.value, 0),
                'errors': by_status.get(AssetStatus.ERROR.value, 0),
                'persons_indexed': len(self._secondary['person']),
            }
