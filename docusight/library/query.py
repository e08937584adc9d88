"""
Search queries over the media library.

A query is a conjunction of optional predicates; an empty query matches
everything. Structural problems (inverted ranges, unknown kinds, unknown
sort keys) raise InvalidQuery. A query that is well formed but matches
nothing simply returns no results.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, time
from math import radians, cos, sin, asin, sqrt
from typing import Any, Dict, FrozenSet, Iterable, Optional

from ..errors import InvalidQuery
from ..models.media import (
    AssetStatus, MediaAsset, MediaKind, TagCategory, parse_datetime,
)

SORT_KEYS = ('date', 'name', 'size', 'relevance', 'quality')
SORT_ORDERS = ('asc', 'desc')

# Relevance weights for free-text hits
TEXT_WEIGHTS = {'filename': 1.0, 'tag': 0.75, 'description': 0.5}


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance between two points on Earth (in km)."""
    lat1, lon1, lat2, lon2 = map(radians, [lat1, lon1, lat2, lon2])
    dlat = lat2 - lat1
    dlon = lon2 - lon1
    a = sin(dlat / 2) ** 2 + cos(lat1) * cos(lat2) * sin(dlon / 2) ** 2
    return 2 * asin(sqrt(min(1.0, a))) * 6371


def _as_datetime(value: Any, end_of_day: bool = False) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return parse_datetime(value)
    if isinstance(value, date):
        return datetime.combine(value, time.max if end_of_day else time.min)
    try:
        parsed = parse_datetime(value)
    except ValueError as e:
        raise InvalidQuery(f"Invalid date: {value!r}") from e
    # A bare date string covers the whole day at the end of a range
    if end_of_day and len(str(value)) <= 10:
        parsed = datetime.combine(parsed.date(), time.max)
    return parsed


def _enum_set(values: Optional[Iterable[Any]], enum_cls, label: str) -> Optional[FrozenSet]:
    if values is None:
        return None
    result = set()
    for value in values:
        if isinstance(value, enum_cls):
            result.add(value)
            continue
        try:
            result.add(enum_cls(str(value).lower()))
        except ValueError as e:
            raise InvalidQuery(f"Unknown {label}: {value!r}") from e
    return frozenset(result)


@dataclass(frozen=True)
class DateRange:
    """Inclusive date range; either bound may be open."""
    start: Optional[datetime] = None
    end: Optional[datetime] = None

    @classmethod
    def of(cls, start: Any = None, end: Any = None) -> 'DateRange':
        return cls(_as_datetime(start), _as_datetime(end, end_of_day=True))

    def validate(self) -> None:
        if self.start and self.end and self.start > self.end:
            raise InvalidQuery(f"Date range start {self.start} is after end {self.end}")

    def contains(self, value: datetime) -> bool:
        if self.start and value < self.start:
            return False
        if self.end and value > self.end:
            return False
        return True


@dataclass(frozen=True)
class QualityRange:
    """Inclusive range on the overall quality score."""
    min: float = 0.0
    max: float = 1.0

    def validate(self) -> None:
        for bound in (self.min, self.max):
            if not 0.0 <= bound <= 1.0:
                raise InvalidQuery(f"Quality bound {bound} outside [0, 1]")
        if self.min > self.max:
            raise InvalidQuery(f"Quality range min {self.min} exceeds max {self.max}")

    def contains(self, value: float) -> bool:
        return self.min <= value <= self.max


@dataclass(frozen=True)
class NearPoint:
    latitude: float
    longitude: float
    radius_km: float

    def validate(self) -> None:
        if not -90.0 <= self.latitude <= 90.0 or not -180.0 <= self.longitude <= 180.0:
            raise InvalidQuery(f"Invalid coordinates: {self.latitude}, {self.longitude}")
        if self.radius_km <= 0:
            raise InvalidQuery(f"Radius must be positive, got {self.radius_km}")


@dataclass(frozen=True)
class SortSpec:
    key: str = 'date'
    order: str = 'desc'

    def validate(self) -> None:
        if self.key not in SORT_KEYS:
            raise InvalidQuery(f"Unknown sort key: {self.key}")
        if self.order not in SORT_ORDERS:
            raise InvalidQuery(f"Unknown sort order: {self.order}")

    @property
    def descending(self) -> bool:
        return self.order == 'desc'


@dataclass(frozen=True)
class SearchQuery:
    """
    Search predicates. Every predicate is optional; they combine with AND,
    while the values inside a list predicate (tags, categories, kinds,
    persons, statuses) combine with OR.
    """
    text: Optional[str] = None
    tags: Optional[FrozenSet[str]] = None
    categories: Optional[FrozenSet[TagCategory]] = None
    date_range: Optional[DateRange] = None
    kinds: Optional[FrozenSet[MediaKind]] = None
    persons: Optional[FrozenSet[str]] = None
    quality: Optional[QualityRange] = None
    location: Optional[str] = None
    near: Optional[NearPoint] = None
    statuses: Optional[FrozenSet[AssetStatus]] = None
    asset_ids: Optional[FrozenSet[str]] = None
    min_documentary_value: Optional[float] = None

    @classmethod
    def build(cls, text: Optional[str] = None, tags: Optional[Iterable[str]] = None,
              categories: Optional[Iterable[Any]] = None, date_from: Any = None,
              date_to: Any = None, kinds: Optional[Iterable[Any]] = None,
              persons: Optional[Iterable[str]] = None, min_quality: Optional[float] = None,
              max_quality: Optional[float] = None, location: Optional[str] = None,
              near: Optional[tuple] = None, statuses: Optional[Iterable[Any]] = None,
              asset_ids: Optional[Iterable[str]] = None,
              min_documentary_value: Optional[float] = None) -> 'SearchQuery':
        """Convenience constructor from loose values; validates the result."""
        query = cls(
            text=text or None,
            tags=frozenset(t.lower() for t in tags) if tags is not None else None,
            categories=_enum_set(categories, TagCategory, 'tag category'),
            date_range=(DateRange.of(date_from, date_to)
                        if date_from is not None or date_to is not None else None),
            kinds=_enum_set(kinds, MediaKind, 'media kind'),
            persons=frozenset(persons) if persons is not None else None,
            quality=(QualityRange(min_quality if min_quality is not None else 0.0,
                                  max_quality if max_quality is not None else 1.0)
                     if min_quality is not None or max_quality is not None else None),
            location=location or None,
            near=NearPoint(*near) if near is not None else None,
            statuses=_enum_set(statuses, AssetStatus, 'asset status'),
            asset_ids=frozenset(asset_ids) if asset_ids is not None else None,
            min_documentary_value=min_documentary_value,
        )
        query.validate()
        return query

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'SearchQuery':
        """Build from a filter mapping such as a collection's saved filters."""
        data = data or {}
        known = {'text', 'tags', 'categories', 'date_from', 'date_to', 'kinds', 'persons',
                 'min_quality', 'max_quality', 'location', 'near', 'statuses', 'asset_ids',
                 'min_documentary_value'}
        unknown = set(data) - known
        if unknown:
            raise InvalidQuery(f"Unknown query fields: {sorted(unknown)}")
        return cls.build(**data)

    def validate(self) -> None:
        """
        Raises:
            InvalidQuery: A predicate is structurally malformed
        """
        if self.date_range:
            self.date_range.validate()
        if self.quality:
            self.quality.validate()
        if self.near:
            self.near.validate()
        if self.min_documentary_value is not None and not 0.0 <= self.min_documentary_value <= 1.0:
            raise InvalidQuery(f"Documentary value bound {self.min_documentary_value} outside [0, 1]")
        for name, values, enum_cls in (('categories', self.categories, TagCategory),
                                       ('kinds', self.kinds, MediaKind),
                                       ('statuses', self.statuses, AssetStatus)):
            if values is not None and any(not isinstance(v, enum_cls) for v in values):
                raise InvalidQuery(f"Invalid value in {name}")

    @property
    def is_empty(self) -> bool:
        return all(getattr(self, name) is None for name in self.__dataclass_fields__)

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    def matches(self, asset: MediaAsset) -> bool:
        """Evaluate every predicate against one asset."""
        if self.asset_ids is not None and asset.id not in self.asset_ids:
            return False
        if self.statuses is not None and asset.status not in self.statuses:
            return False
        if self.kinds is not None and asset.kind not in self.kinds:
            return False
        if self.tags is not None and not any(tag.name.lower() in self.tags for tag in asset.tags):
            return False
        if self.categories is not None and not any(tag.category in self.categories
                                                   for tag in asset.tags):
            return False
        if self.persons is not None and not self.persons.intersection(asset.person_ids):
            return False
        if self.date_range is not None and not self.date_range.contains(asset.effective_date):
            return False
        if self.quality is not None:
            score = asset.quality_score
            if score is None or not self.quality.contains(score):
                return False
        if self.min_documentary_value is not None:
            if asset.analysis is None or \
                    asset.analysis.documentary_value.overall < self.min_documentary_value:
                return False
        if self.location is not None and not self._location_matches(asset):
            return False
        if self.near is not None:
            loc = asset.metadata.location
            if loc is None or haversine_km(self.near.latitude, self.near.longitude,
                                           loc.latitude, loc.longitude) > self.near.radius_km:
                return False
        if self.text is not None and self.text_score(asset) == 0.0:
            return False
        return True

    def _location_matches(self, asset: MediaAsset) -> bool:
        loc = asset.metadata.location
        if loc is None:
            return False
        needle = self.location.lower()
        return any(needle in (part or '').lower() for part in (loc.city, loc.country, loc.address))

    def text_score(self, asset: MediaAsset) -> float:
        """Weighted free-text hits; 0 when the text matches nowhere."""
        if not self.text:
            return 0.0
        needle = self.text.lower()
        score = 0.0
        if needle in asset.filename.lower():
            score += TEXT_WEIGHTS['filename']
        if asset.analysis and needle in asset.analysis.description.lower():
            score += TEXT_WEIGHTS['description']
        score += TEXT_WEIGHTS['tag'] * sum(1 for tag in asset.tags if needle in tag.name.lower())
        return score

    def relevance(self, asset: MediaAsset) -> float:
        """Narrative score plus text-hit weights."""
        narrative = asset.analysis.documentary_value.narrative_score if asset.analysis else 0.0
        return narrative + self.text_score(asset)
