"""
Library-wide identity resolution.

Each face detection is assigned to a Person by comparing its signature
against person centroids. Centroids are running averages, so an assignment
costs one pass over the active persons and no re-clustering. All mutation
goes through a single lock: resolve, assign, merge and unassign for one
library are mutually exclusive.
"""

import copy
import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np

from ..config import LibrarySettings
from ..detection.bundle import FaceSignal
from ..errors import MergeConflict, UnknownEntity
from ..models.media import utcnow
from ..models.people import Person, PersonRelationship

logger = logging.getLogger(__name__)


def face_signature(face: FaceSignal) -> Optional[np.ndarray]:
    """
    Signature used for identity matching.

    The embedding when the detector provides one; otherwise the landmark
    layout, centered so that only its shape counts. Returns None when the
    face carries neither, or when its values are not finite numbers.
    """
    if face.embedding:
        try:
            return _normalize(np.asarray(face.embedding, dtype=np.float32))
        except (TypeError, ValueError):
            return None
    if face.landmarks:
        points = np.asarray([[lm.x, lm.y] for lm in sorted(face.landmarks, key=lambda lm: lm.type)],
                            dtype=np.float32)
        points = points - points.mean(axis=0)
        return _normalize(points.ravel())
    return None


def signature_is_finite(face: FaceSignal) -> bool:
    """False when the embedding or landmark coordinates hold NaN or infinity."""
    values = list(face.embedding or ()) + [v for lm in face.landmarks or () for v in (lm.x, lm.y)]
    try:
        return bool(np.isfinite(np.asarray(values, dtype=np.float64)).all())
    except (TypeError, ValueError):
        return False


def _normalize(vector: np.ndarray) -> Optional[np.ndarray]:
    if vector.size == 0 or not np.isfinite(vector).all():
        return None
    norm = float(np.linalg.norm(vector))
    if not np.isfinite(norm) or norm < 1e-10:
        return None
    return (vector / norm).astype(np.float32)


@dataclass(frozen=True)
class AssignmentEvent:
    """Audit record of a registry mutation."""
    action: str           # assign | create | merge | unassign | reassign | retract
    person_id: str
    detection_id: Optional[str] = None
    other_person_id: Optional[str] = None
    similarity: Optional[float] = None
    timestamp: datetime = field(default_factory=utcnow)


class UnionFind:
    """Union-Find structure for grouping similar persons."""

    def __init__(self, n):
        self.parent = list(range(n))
        self.rank = [0] * n

    def find(self, x):
        if self.parent[x] != x:
            self.parent[x] = self.find(self.parent[x])
        return self.parent[x]

    def union(self, x, y):
        px, py = self.find(x), self.find(y)
        if px == py:
            return
        if self.rank[px] < self.rank[py]:
            px, py = py, px
        self.parent[py] = px
        if self.rank[px] == self.rank[py]:
            self.rank[px] += 1


class IdentityResolver:
    """
    Incremental clustering of face detections into Persons.

    Every detection id is assigned at most once, so replaying ``resolve``
    for the same detection (pipeline retry, cancelled run) returns the
    earlier assignment without touching any centroid.
    """

    def __init__(self, settings: Optional[LibrarySettings] = None,
                 id_factory: Optional[Callable[[], str]] = None):
        self.settings = settings or LibrarySettings()
        self._id_factory = id_factory or (lambda: f"person-{uuid.uuid4().hex[:12]}")
        self._lock = threading.RLock()
        self._persons: Dict[str, Person] = {}
        self._centroids: Dict[str, np.ndarray] = {}
        self._centroid_counts: Dict[str, int] = {}
        self._signatures: Dict[str, np.ndarray] = {}
        self._assignments: Dict[str, str] = {}
        self._history: List[AssignmentEvent] = []

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def get_person(self, person_id: str) -> Optional[Person]:
        with self._lock:
            person = self._persons.get(person_id)
            return copy.deepcopy(person) if person else None

    def canonical_id(self, person_id: str) -> str:
        """Follow merge links to the person that currently holds the faces."""
        with self._lock:
            seen = set()
            while person_id in self._persons and self._persons[person_id].retired:
                if person_id in seen:
                    break
                seen.add(person_id)
                person_id = self._persons[person_id].retired_into or person_id
            return person_id

    def list_persons(self, include_retired: bool = False) -> List[Person]:
        with self._lock:
            return [copy.deepcopy(p) for p in sorted(self._persons.values(), key=lambda p: p.id)
                    if include_retired or not p.retired]

    def assignment_of(self, detection_id: str) -> Optional[str]:
        with self._lock:
            return self._assignments.get(detection_id)

    @property
    def history(self) -> List[AssignmentEvent]:
        with self._lock:
            return list(self._history)

    def __len__(self) -> int:
        with self._lock:
            return sum(1 for p in self._persons.values() if not p.retired)

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def resolve(self, detection_id: str, signature: Optional[np.ndarray] = None,
                seen_at: Optional[datetime] = None, exclude: Iterable[str] = (),
                refresh: bool = False) -> str:
        """
        Assign a face detection to a Person.

        Args:
            detection_id: Stable id of the face detection
            signature: Face signature (see ``face_signature``); None when
                the detection carries nothing comparable
            seen_at: Capture time of the asset, for first/last seen
            exclude: Person ids the detection must not join (split)
            refresh: Re-resolve an already assigned detection when its
                signature changed (re-analysis)

        Returns:
            Id of the existing or newly created Person
        """
        with self._lock:
            if signature is not None:
                signature = _normalize(np.asarray(signature, dtype=np.float32))

            existing = self._assignments.get(detection_id)
            if existing is not None:
                if not refresh or self._same_signature(detection_id, signature):
                    return existing
                self._unassign_locked([detection_id], action='reassign')
                self._signatures.pop(detection_id, None)
            elif signature is None:
                signature = self._signatures.get(detection_id)

            person_id, similarity = self._best_match(signature, set(exclude))
            if person_id is None:
                person_id = self._create(name=None, verified=False)
                logger.debug(f"No match for {detection_id}; created {person_id}")

            self._assign(detection_id, person_id, signature, seen_at, similarity)
            return person_id

    def _same_signature(self, detection_id: str, signature: Optional[np.ndarray]) -> bool:
        stored = self._signatures.get(detection_id)
        if stored is None or signature is None:
            return stored is None and signature is None
        return stored.shape == signature.shape and bool(np.allclose(stored, signature, atol=1e-6))

    def _best_match(self, signature: Optional[np.ndarray],
                    exclude: set) -> Tuple[Optional[str], Optional[float]]:
        if signature is None:
            return None, None

        scored = []
        for person_id, centroid in self._centroids.items():
            person = self._persons[person_id]
            if person.retired or person_id in exclude or centroid.shape != signature.shape:
                continue
            unit = _normalize(centroid)
            if unit is None:
                continue
            score = float(np.dot(signature, unit))
            if not np.isfinite(score):
                continue
            scored.append((score, person_id))

        if not scored:
            return None, None
        best_similarity = max(score for score, _ in scored)
        if best_similarity < self.settings.acceptance_threshold:
            return None, None

        epsilon = self.settings.tie_epsilon
        tied = [(pid, score) for score, pid in scored if best_similarity - score <= epsilon]
        # Stability bias: larger clusters win near ties, then the lower id
        tied.sort(key=lambda item: (-len(self._persons[item[0]].face_ids), item[0]))
        if not tied:
            return None, None
        chosen, similarity = tied[0]
        if len(tied) > 1:
            logger.info(f"Near-tie identity match between {[pid for pid, _ in tied]} "
                        f"(best {best_similarity:.3f}); chose {chosen}")
        return chosen, similarity

    def _create(self, name: Optional[str], verified: bool) -> str:
        person_id = self._id_factory()
        while person_id in self._persons:
            person_id = self._id_factory()
        display = name or f"Unknown person {sum(1 for p in self._persons.values() if not p.verified) + 1}"
        self._persons[person_id] = Person(id=person_id, name=display, verified=verified)
        self._history.append(AssignmentEvent('create', person_id))
        return person_id

    def _assign(self, detection_id: str, person_id: str, signature: Optional[np.ndarray],
                seen_at: Optional[datetime], similarity: Optional[float] = None) -> None:
        person = self._persons[person_id]
        person.face_ids.append(detection_id)
        person.observe(seen_at)
        self._assignments[detection_id] = person_id

        if signature is not None:
            self._signatures[detection_id] = signature
            centroid = self._centroids.get(person_id)
            if centroid is None:
                self._centroids[person_id] = signature.copy()
                self._centroid_counts[person_id] = 1
            elif centroid.shape == signature.shape:
                # Running mean over the signatures assigned so far
                n = self._centroid_counts.get(person_id, 0) + 1
                self._centroids[person_id] = centroid + (signature - centroid) / n
                self._centroid_counts[person_id] = n

        self._history.append(AssignmentEvent('assign', person_id, detection_id, similarity=similarity))

    def _recompute_centroid(self, person_id: str) -> None:
        """Rebuild a centroid from every assigned signature."""
        person = self._persons[person_id]
        signatures = [self._signatures[fid] for fid in person.face_ids if fid in self._signatures]
        if not signatures:
            self._centroids.pop(person_id, None)
            self._centroid_counts.pop(person_id, None)
            return
        shapes: Dict[Tuple[int, ...], List[np.ndarray]] = {}
        for sig in signatures:
            shapes.setdefault(sig.shape, []).append(sig)
        dominant = max(shapes.values(), key=len)
        self._centroids[person_id] = np.mean(np.stack(dominant), axis=0).astype(np.float32)
        self._centroid_counts[person_id] = len(dominant)

    # ------------------------------------------------------------------
    # Explicit user actions
    # ------------------------------------------------------------------

    def create_person(self, name: str, verified: bool = True, notes: Optional[str] = None) -> Person:
        """Create a named person from a user action."""
        with self._lock:
            person_id = self._create(name=name, verified=verified)
            self._persons[person_id].notes = notes
            return copy.deepcopy(self._persons[person_id])

    def assign(self, detection_id: str, person_id: str, signature: Optional[np.ndarray] = None,
               seen_at: Optional[datetime] = None) -> Person:
        """Manually assign a detection to a person, moving it if needed."""
        with self._lock:
            self._require_active(person_id)
            current = self._assignments.get(detection_id)
            if current == person_id:
                return copy.deepcopy(self._persons[person_id])
            if current is not None:
                self._unassign_locked([detection_id])
            if signature is not None:
                signature = _normalize(np.asarray(signature, dtype=np.float32))
            else:
                signature = self._signatures.get(detection_id)
            self._assign(detection_id, person_id, signature, seen_at)
            return copy.deepcopy(self._persons[person_id])

    def rename(self, person_id: str, name: str, verified: bool = True) -> Person:
        with self._lock:
            person = self._require_active(person_id)
            if person.name != name:
                person.add_alias(person.name)
                person.name = name
                if name in person.aliases:
                    person.aliases.remove(name)
            person.verified = person.verified or verified
            return copy.deepcopy(person)

    def verify(self, person_id: str) -> Person:
        with self._lock:
            person = self._require_active(person_id)
            person.verified = True
            return copy.deepcopy(person)

    def add_alias(self, person_id: str, alias: str) -> Person:
        with self._lock:
            person = self._require_active(person_id)
            person.add_alias(alias)
            return copy.deepcopy(person)

    def relate(self, person_a: str, person_b: str, relation: str,
               confidence: float = 1.0) -> None:
        """Record a symmetric relationship between two persons."""
        with self._lock:
            a = self._require_active(person_a)
            b = self._require_active(person_b)
            for left, right in ((a, b), (b, a)):
                left.relationships = [rel for rel in left.relationships
                                      if not (rel.person_id == right.id and rel.type == relation)]
                left.relationships.append(PersonRelationship(right.id, relation, confidence))

    def _require_active(self, person_id: str) -> Person:
        person = self._persons.get(person_id)
        if person is None:
            raise UnknownEntity(f"Unknown person: {person_id}")
        if person.retired:
            raise MergeConflict(f"Person {person_id} is retired into {person.retired_into}")
        return person

    # ------------------------------------------------------------------
    # Merge and split
    # ------------------------------------------------------------------

    def merge(self, target_id: str, source_id: str) -> Person:
        """
        Merge ``source_id`` into ``target_id``.

        Every detection of the source moves to the target, aliases are
        unioned, the target centroid is recomputed from the full assigned
        set and the source is retired (kept for audit).

        Raises:
            MergeConflict: Either person is retired, or both ids are the same
            UnknownEntity: Either id is unknown
        """
        with self._lock:
            if target_id == source_id:
                raise MergeConflict(f"Cannot merge person {target_id} into itself")
            for person_id in (target_id, source_id):
                if person_id not in self._persons:
                    raise UnknownEntity(f"Unknown person: {person_id}")
                if self._persons[person_id].retired:
                    raise MergeConflict(f"Person {person_id} is already retired")

            target = self._persons[target_id]
            source = self._persons[source_id]

            for detection_id in source.face_ids:
                self._assignments[detection_id] = target_id
                target.face_ids.append(detection_id)

            target.add_alias(source.name)
            for alias in source.aliases:
                target.add_alias(alias)
            target.observe(source.first_seen)
            target.observe(source.last_seen)
            target.verified = target.verified or source.verified
            known = {(rel.person_id, rel.type) for rel in target.relationships}
            for rel in source.relationships:
                if rel.person_id != target_id and (rel.person_id, rel.type) not in known:
                    target.relationships.append(rel)
            target.relationships = [rel for rel in target.relationships if rel.person_id != source_id]

            for other in self._persons.values():
                if other.id in (target_id, source_id):
                    continue
                other.relationships = [
                    PersonRelationship(target_id, rel.type, rel.confidence)
                    if rel.person_id == source_id else rel
                    for rel in other.relationships
                ]

            source.face_ids = []
            source.retired = True
            source.retired_into = target_id
            self._centroids.pop(source_id, None)
            self._centroid_counts.pop(source_id, None)
            self._recompute_centroid(target_id)

            self._history.append(AssignmentEvent('merge', target_id, other_person_id=source_id))
            logger.info(f"Merged person {source_id} into {target_id} "
                        f"({len(target.face_ids)} faces)")
            return copy.deepcopy(target)

    def unassign(self, detection_ids: Sequence[str]) -> Dict[str, str]:
        """
        Remove detections from their persons so they can be re-resolved.

        Returns:
            Mapping of detection id to the person it was removed from
        """
        with self._lock:
            return self._unassign_locked(detection_ids)

    def _unassign_locked(self, detection_ids: Sequence[str], action: str = 'unassign') -> Dict[str, str]:
        removed: Dict[str, str] = {}
        for detection_id in detection_ids:
            person_id = self._assignments.pop(detection_id, None)
            if person_id is None:
                continue
            person = self._persons[person_id]
            if detection_id in person.face_ids:
                person.face_ids.remove(detection_id)
            removed[detection_id] = person_id
            self._history.append(AssignmentEvent(action, person_id, detection_id))
        for person_id in set(removed.values()):
            self._recompute_centroid(person_id)
        return removed

    def retract(self, detection_ids: Sequence[str]) -> Dict[str, str]:
        """Forget detections entirely, e.g. when their asset is deleted."""
        with self._lock:
            removed = self._unassign_locked(detection_ids, action='retract')
            for detection_id in detection_ids:
                self._signatures.pop(detection_id, None)
            return removed

    # ------------------------------------------------------------------
    # Review helpers
    # ------------------------------------------------------------------

    def similarity(self, person_a: str, person_b: str) -> Optional[float]:
        with self._lock:
            a = self._centroids.get(person_a)
            b = self._centroids.get(person_b)
            if a is None or b is None or a.shape != b.shape:
                return None
            a, b = _normalize(a), _normalize(b)
            if a is None or b is None:
                return None
            return float(np.dot(a, b))

    def suggest_merges(self, threshold: Optional[float] = None) -> List[Dict[str, Any]]:
        """
        Group active persons whose centroids are similar enough to review
        for merging.

        Returns:
            List of groups, each with ``persons`` (id, name, face_count,
            sorted by face count) and similarity statistics, most similar
            groups first
        """
        threshold = self.settings.merge_suggestion_threshold if threshold is None else threshold
        with self._lock:
            persons = [p for p in sorted(self._persons.values(), key=lambda p: p.id)
                       if not p.retired and p.id in self._centroids]
            n = len(persons)
            if n < 2:
                return []

            uf = UnionFind(n)
            pair_similarities = {}
            for i in range(n):
                for j in range(i + 1, n):
                    sim = self.similarity(persons[i].id, persons[j].id)
                    if sim is not None and sim >= threshold:
                        uf.union(i, j)
                        pair_similarities[(i, j)] = sim

            groups: Dict[int, List[int]] = {}
            for i in range(n):
                groups.setdefault(uf.find(i), []).append(i)

            result = []
            for indices in groups.values():
                if len(indices) < 2:
                    continue
                sims = [pair_similarities[(a, b)] for a in indices for b in indices
                        if a < b and (a, b) in pair_similarities]
                members = [{'id': persons[i].id, 'name': persons[i].name,
                            'face_count': persons[i].face_count} for i in indices]
                members.sort(key=lambda m: (-m['face_count'], m['id']))
                result.append({
                    'persons': members,
                    'min_similarity': min(sims),
                    'max_similarity': max(sims),
                    'avg_similarity': sum(sims) / len(sims),
                })
            result.sort(key=lambda g: g['avg_similarity'], reverse=True)
            return result

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def snapshot(self) -> Dict[str, Any]:
        """Serializable copy of the registry."""
        with self._lock:
            return {
                'persons': [p.to_dict() for p in self._persons.values()],
                'signatures': {fid: sig.tolist() for fid, sig in self._signatures.items()},
                'centroids': {pid: c.tolist() for pid, c in self._centroids.items()},
                'assignments': dict(self._assignments),
            }

    def restore(self, data: Dict[str, Any]) -> None:
        """Replace the registry with a snapshot."""
        with self._lock:
            self._persons = {p['id']: Person.from_dict(p) for p in data.get('persons', [])}
            self._signatures = {}
            for fid, sig in data.get('signatures', {}).items():
                signature = np.asarray(sig, dtype=np.float32)
                if np.isfinite(signature).all():
                    self._signatures[fid] = signature
            self._assignments = dict(data.get('assignments', {}))
            # Centroids and their counts are rebuilt from the stored signatures
            self._centroids = {}
            self._centroid_counts = {}
            for person_id, person in self._persons.items():
                if not person.retired:
                    self._recompute_centroid(person_id)
            self._history = []
