"""
Detection bundle schema.

Detectors report objects, scenes, faces and a color summary for one file.
The bundle is a tagged union: every detection carries its kind, and the
bundle declares the schema version it was produced with. Kinds this version
does not know are skipped with a warning instead of failing the asset.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Tuple

from ..models.media import (
    BoundingBox, ColorSummary, CompositionSummary, EmotionScore, Landmark,
    ObjectDetection, SceneDetection,
)

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1


class MalformedBundle(ValueError):
    """Raised when a detection payload is not a bundle at all."""
    pass


class DetectionKind(Enum):
    OBJECT = "object"
    SCENE = "scene"
    FACE = "face"
    COLOR = "color"
    COMPOSITION = "composition"


# Grouped wire keys (section form) mapped to their kind
_GROUPED_KEYS = {
    'objects': DetectionKind.OBJECT,
    'scenes': DetectionKind.SCENE,
    'faces': DetectionKind.FACE,
    'colors': DetectionKind.COLOR,
    'composition': DetectionKind.COMPOSITION,
}
_META_KEYS = {'schemaVersion', 'schema_version', 'detections', 'source'}


@dataclass(frozen=True)
class FaceSignal:
    """A face as reported by the detector, before identity resolution."""
    box: BoundingBox
    confidence: float
    landmarks: Tuple[Landmark, ...] = ()
    emotions: Tuple[EmotionScore, ...] = ()
    age: Optional[int] = None
    gender: Optional[str] = None
    embedding: Optional[Tuple[float, ...]] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'FaceSignal':
        embedding = data.get('embedding')
        return cls(
            box=BoundingBox.from_dict(data.get('box') or data.get('boundingBox')),
            confidence=float(data.get('confidence', 0.0)),
            landmarks=tuple(Landmark.from_dict(item) for item in data.get('landmarks', [])),
            emotions=tuple(EmotionScore.from_dict(item) for item in data.get('emotions', [])),
            age=data.get('age'),
            gender=data.get('gender'),
            embedding=tuple(float(v) for v in embedding) if embedding else None,
        )


@dataclass(frozen=True)
class DetectionBundle:
    """All detections produced for one file."""
    schema_version: int = SCHEMA_VERSION
    objects: Tuple[ObjectDetection, ...] = ()
    scenes: Tuple[SceneDetection, ...] = ()
    faces: Tuple[FaceSignal, ...] = ()
    colors: ColorSummary = field(default_factory=ColorSummary)
    composition: CompositionSummary = field(default_factory=CompositionSummary)
    ignored: Tuple[str, ...] = ()

    def items(self) -> Iterator[Tuple[DetectionKind, Any]]:
        """Iterate detections as (kind, detection) pairs."""
        for obj in self.objects:
            yield DetectionKind.OBJECT, obj
        for scene in self.scenes:
            yield DetectionKind.SCENE, scene
        for face in self.faces:
            yield DetectionKind.FACE, face
        yield DetectionKind.COLOR, self.colors
        yield DetectionKind.COMPOSITION, self.composition

    @classmethod
    def empty(cls) -> 'DetectionBundle':
        return cls()


def _parse_item(kind: DetectionKind, data: Dict[str, Any]):
    if kind is DetectionKind.OBJECT:
        return ObjectDetection.from_dict(data)
    if kind is DetectionKind.SCENE:
        return SceneDetection.from_dict(data)
    if kind is DetectionKind.FACE:
        return FaceSignal.from_dict(data)
    if kind is DetectionKind.COLOR:
        return ColorSummary.from_dict(data)
    return CompositionSummary.from_dict(data)


def parse_bundle(payload: Optional[Dict[str, Any]]) -> DetectionBundle:
    """
    Build a bundle from its JSON wire shape.

    Accepts the grouped form ``{"objects": [...], "scenes": [...],
    "faces": [...], "colors": {...}}`` and the tagged form
    ``{"detections": [{"kind": "object", ...}, ...]}``, or both at once.

    Args:
        payload: Decoded JSON payload from a detector

    Returns:
        DetectionBundle with unknown kinds and malformed entries skipped

    Raises:
        MalformedBundle: The payload is not an object, its schema version is
            not an integer, or ``detections`` is not a list
    """
    payload = payload or {}
    if not isinstance(payload, dict):
        raise MalformedBundle(f"Detection payload must be an object, got {type(payload).__name__}")
    raw_version = payload.get('schemaVersion', payload.get('schema_version', SCHEMA_VERSION))
    if isinstance(raw_version, bool) or not isinstance(raw_version, (int, str)):
        raise MalformedBundle(f"Invalid schema version: {raw_version!r}")
    try:
        version = int(raw_version)
    except ValueError as e:
        raise MalformedBundle(f"Invalid schema version: {raw_version!r}") from e
    detections = payload.get('detections') or []
    if not isinstance(detections, list):
        raise MalformedBundle("'detections' must be a list")
    if version > SCHEMA_VERSION:
        logger.warning(f"Detection bundle schema v{version} is newer than v{SCHEMA_VERSION}; "
                       f"reading known kinds only")

    collected: Dict[DetectionKind, List[Any]] = {kind: [] for kind in DetectionKind}
    ignored: List[str] = []

    def add(kind: DetectionKind, data: Any) -> None:
        if not isinstance(data, dict):
            logger.warning(f"Skipping malformed {kind.value} detection: {data!r}")
            return
        try:
            collected[kind].append(_parse_item(kind, data))
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Skipping malformed {kind.value} detection: {e}")

    for key, value in payload.items():
        if key in _META_KEYS:
            continue
        kind = _GROUPED_KEYS.get(key)
        if kind is None:
            logger.warning(f"Ignoring unknown detection kind '{key}'")
            ignored.append(key)
            continue
        if isinstance(value, list):
            for entry in value:
                add(kind, entry)
        else:
            add(kind, value)

    for entry in detections:
        raw_kind = entry.get('kind') if isinstance(entry, dict) else None
        try:
            kind = DetectionKind(raw_kind)
        except ValueError:
            logger.warning(f"Ignoring unknown detection kind '{raw_kind}'")
            ignored.append(str(raw_kind))
            continue
        add(kind, {k: v for k, v in entry.items() if k != 'kind'})

    colors = collected[DetectionKind.COLOR]
    composition = collected[DetectionKind.COMPOSITION]
    return DetectionBundle(
        schema_version=version,
        objects=tuple(collected[DetectionKind.OBJECT]),
        scenes=tuple(collected[DetectionKind.SCENE]),
        faces=tuple(collected[DetectionKind.FACE]),
        colors=colors[-1] if colors else ColorSummary(),
        composition=composition[-1] if composition else CompositionSummary(),
        ignored=tuple(ignored),
    )
