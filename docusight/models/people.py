"""
Data models for library-wide identities.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from .media import format_datetime, parse_datetime, utcnow


@dataclass(frozen=True)
class PersonRelationship:
    person_id: str
    type: str
    confidence: float = 1.0

    def to_dict(self) -> Dict[str, Any]:
        return {'person_id': self.person_id, 'type': self.type,
                'confidence': self.confidence}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PersonRelationship':
        return cls(person_id=data['person_id'], type=data['type'],
                   confidence=float(data.get('confidence', 1.0)))


@dataclass
class Person:
    """
    An identity cluster spanning the whole library.

    Retired persons are kept after a merge so past assignments stay
    auditable; ``retired_into`` names the person that absorbed them.
    """
    id: str
    name: str
    aliases: List[str] = field(default_factory=list)
    face_ids: List[str] = field(default_factory=list)
    first_seen: Optional[datetime] = None
    last_seen: Optional[datetime] = None
    verified: bool = False
    retired: bool = False
    retired_into: Optional[str] = None
    relationships: List[PersonRelationship] = field(default_factory=list)
    notes: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    @property
    def face_count(self) -> int:
        return len(self.face_ids)

    def observe(self, seen_at: Optional[datetime]) -> None:
        """Widen the first/last seen window."""
        if seen_at is None:
            return
        if self.first_seen is None or seen_at < self.first_seen:
            self.first_seen = seen_at
        if self.last_seen is None or seen_at > self.last_seen:
            self.last_seen = seen_at

    def add_alias(self, alias: str) -> None:
        if alias and alias != self.name and alias not in self.aliases:
            self.aliases.append(alias)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'name': self.name,
            'aliases': list(self.aliases),
            'face_ids': list(self.face_ids),
            'first_seen': format_datetime(self.first_seen),
            'last_seen': format_datetime(self.last_seen),
            'verified': self.verified,
            'retired': self.retired,
            'retired_into': self.retired_into,
            'relationships': [rel.to_dict() for rel in self.relationships],
            'notes': self.notes,
            'created_at': format_datetime(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Person':
        return cls(
            id=data['id'],
            name=data['name'],
            aliases=list(data.get('aliases', [])),
            face_ids=list(data.get('face_ids', [])),
            first_seen=parse_datetime(data.get('first_seen')),
            last_seen=parse_datetime(data.get('last_seen')),
            verified=bool(data.get('verified', False)),
            retired=bool(data.get('retired', False)),
            retired_into=data.get('retired_into'),
            relationships=[PersonRelationship.from_dict(rel)
                           for rel in data.get('relationships', [])],
            notes=data.get('notes'),
            created_at=parse_datetime(data.get('created_at')) or utcnow(),
        )
