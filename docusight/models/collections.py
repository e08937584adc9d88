"""
Data models for manual and generated collections.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from .media import format_datetime, parse_datetime, utcnow


class CollectionType(Enum):
    MANUAL = "manual"
    AUTO = "auto"


class CollectionDimension(Enum):
    """Grouping dimension of an auto collection."""
    DATE = "date"
    LOCATION = "location"
    PERSON = "person"


@dataclass
class CollectionSettings:
    sort_by: str = "date"          # date | name | size | relevance | quality
    sort_order: str = "desc"       # asc | desc
    layout: str = "grid"           # grid | timeline | masonry | slideshow
    filters: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {'sort_by': self.sort_by, 'sort_order': self.sort_order,
                'layout': self.layout, 'filters': dict(self.filters)}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'CollectionSettings':
        data = data or {}
        return cls(sort_by=data.get('sort_by', 'date'),
                   sort_order=data.get('sort_order', 'desc'),
                   layout=data.get('layout', 'grid'),
                   filters=dict(data.get('filters', {})))


@dataclass
class Collection:
    """
    A named set of assets.

    Auto collections are regenerated wholesale and must be converted to
    manual before they can be edited by hand.
    """
    id: str
    name: str
    type: CollectionType = CollectionType.MANUAL
    asset_ids: List[str] = field(default_factory=list)
    description: str = ""
    dimension: Optional[CollectionDimension] = None
    confidence: Optional[float] = None
    settings: CollectionSettings = field(default_factory=CollectionSettings)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def size(self) -> int:
        return len(self.asset_ids)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'name': self.name,
            'type': self.type.value,
            'asset_ids': list(self.asset_ids),
            'description': self.description,
            'dimension': self.dimension.value if self.dimension else None,
            'confidence': self.confidence,
            'settings': self.settings.to_dict(),
            'created_at': format_datetime(self.created_at),
            'updated_at': format_datetime(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Collection':
        dimension = data.get('dimension')
        return cls(
            id=data['id'],
            name=data['name'],
            type=CollectionType(data.get('type', 'manual')),
            asset_ids=list(data.get('asset_ids', [])),
            description=data.get('description', ''),
            dimension=CollectionDimension(dimension) if dimension else None,
            confidence=data.get('confidence'),
            settings=CollectionSettings.from_dict(data.get('settings')),
            created_at=parse_datetime(data.get('created_at')) or utcnow(),
            updated_at=parse_datetime(data.get('updated_at')) or utcnow(),
        )
