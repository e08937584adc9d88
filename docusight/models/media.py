"""
Data models for media assets and their analysis.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple


def utcnow() -> datetime:
    """Naive UTC timestamp; every datetime in the library is naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def parse_datetime(value: Any) -> Optional[datetime]:
    """Parse an ISO timestamp (or pass a datetime through) as naive UTC."""
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value).replace('Z', '+00:00'))
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def format_datetime(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def clamp_unit(value: float) -> float:
    """Clamp to [0, 1]; NaN becomes 0."""
    value = float(value)
    if value != value:
        return 0.0
    return max(0.0, min(1.0, value))


class MediaKind(Enum):
    """Kinds of media the library ingests."""
    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"
    DOCUMENT = "document"


class AssetStatus(Enum):
    """Asset lifecycle states."""
    PROCESSING = "processing"
    READY = "ready"
    ERROR = "error"


class TagCategory(Enum):
    OBJECT = "object"
    PERSON = "person"
    LOCATION = "location"
    EMOTION = "emotion"
    ACTIVITY = "activity"
    COLOR = "color"
    STYLE = "style"
    TECHNICAL = "technical"
    CUSTOM = "custom"


class TagSource(Enum):
    DERIVED = "derived"   # produced by the scoring engine
    MANUAL = "manual"     # added by a user or a batch tag operation


class VersionType(Enum):
    ORIGINAL = "original"
    EDITED = "edited"
    COMPRESSED = "compressed"
    THUMBNAIL = "thumbnail"


@dataclass(frozen=True)
class BoundingBox:
    """Box in normalized 0-1 image coordinates."""
    x: float = 0.0
    y: float = 0.0
    width: float = 0.0
    height: float = 0.0

    def to_dict(self) -> Dict[str, float]:
        return {'x': self.x, 'y': self.y, 'width': self.width, 'height': self.height}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'BoundingBox':
        data = data or {}
        return cls(
            x=clamp_unit(data.get('x', 0.0)),
            y=clamp_unit(data.get('y', 0.0)),
            width=clamp_unit(data.get('width', 0.0)),
            height=clamp_unit(data.get('height', 0.0)),
        )


@dataclass(frozen=True)
class Landmark:
    type: str
    x: float
    y: float

    def to_dict(self) -> Dict[str, Any]:
        return {'type': self.type, 'x': self.x, 'y': self.y}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Landmark':
        return cls(type=str(data.get('type', '')), x=float(data.get('x', 0.0)),
                   y=float(data.get('y', 0.0)))


@dataclass(frozen=True)
class EmotionScore:
    emotion: str
    confidence: float

    def to_dict(self) -> Dict[str, Any]:
        return {'emotion': self.emotion, 'confidence': self.confidence}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'EmotionScore':
        return cls(emotion=str(data.get('emotion', '')),
                   confidence=float(data.get('confidence', 0.0)))


@dataclass(frozen=True)
class GeoLocation:
    latitude: float
    longitude: float
    altitude: Optional[float] = None
    address: Optional[str] = None
    city: Optional[str] = None
    country: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'latitude': self.latitude,
            'longitude': self.longitude,
            'altitude': self.altitude,
            'address': self.address,
            'city': self.city,
            'country': self.country,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional['GeoLocation']:
        if not data:
            return None
        return cls(
            latitude=float(data['latitude']),
            longitude=float(data['longitude']),
            altitude=data.get('altitude'),
            address=data.get('address'),
            city=data.get('city'),
            country=data.get('country'),
        )


@dataclass(frozen=True)
class CameraInfo:
    make: Optional[str] = None
    model: Optional[str] = None
    lens: Optional[str] = None
    iso: Optional[int] = None
    aperture: Optional[str] = None
    shutter_speed: Optional[str] = None
    focal_length: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'make': self.make,
            'model': self.model,
            'lens': self.lens,
            'iso': self.iso,
            'aperture': self.aperture,
            'shutter_speed': self.shutter_speed,
            'focal_length': self.focal_length,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional['CameraInfo']:
        if not data:
            return None
        return cls(**{key: data.get(key) for key in (
            'make', 'model', 'lens', 'iso', 'aperture', 'shutter_speed', 'focal_length')})


@dataclass(frozen=True)
class MediaMetadata:
    """Container/format metadata; every field is optional and kind-dependent."""
    format: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None
    duration: Optional[float] = None
    frame_rate: Optional[float] = None
    bit_rate: Optional[int] = None
    color_space: Optional[str] = None
    location: Optional[GeoLocation] = None
    camera: Optional[CameraInfo] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'format': self.format,
            'width': self.width,
            'height': self.height,
            'duration': self.duration,
            'frame_rate': self.frame_rate,
            'bit_rate': self.bit_rate,
            'color_space': self.color_space,
            'location': self.location.to_dict() if self.location else None,
            'camera': self.camera.to_dict() if self.camera else None,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'MediaMetadata':
        data = data or {}
        return cls(
            format=data.get('format'),
            width=data.get('width'),
            height=data.get('height'),
            duration=data.get('duration'),
            frame_rate=data.get('frame_rate'),
            bit_rate=data.get('bit_rate'),
            color_space=data.get('color_space'),
            location=GeoLocation.from_dict(data.get('location')),
            camera=CameraInfo.from_dict(data.get('camera')),
        )


@dataclass(frozen=True)
class Tag:
    """A tag on an asset. (name, category) is unique per asset."""
    name: str
    category: TagCategory
    confidence: float = 1.0
    source: TagSource = TagSource.DERIVED
    color: Optional[str] = None

    @property
    def key(self) -> Tuple[str, TagCategory]:
        return (self.name.lower(), self.category)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'category': self.category.value,
            'confidence': self.confidence,
            'source': self.source.value,
            'color': self.color,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Tag':
        return cls(
            name=data['name'],
            category=TagCategory(data.get('category', 'custom')),
            confidence=clamp_unit(data.get('confidence', 1.0)),
            source=TagSource(data.get('source', 'derived')),
            color=data.get('color'),
        )


def merge_tags(existing: Iterable[Tag], new: Iterable[Tag]) -> List[Tag]:
    """
    Combine two tag lists keeping one tag per (name, category).

    A tag from ``new`` replaces the existing tag with the same key in place;
    unseen keys are appended in order.
    """
    merged: Dict[Tuple[str, TagCategory], Tag] = {}
    for tag in list(existing) + list(new):
        merged[tag.key] = tag
    return list(merged.values())


@dataclass(frozen=True)
class FaceDetection:
    """One face on one asset; ``person_id`` is a non-owning link."""
    id: str
    box: BoundingBox
    confidence: float
    landmarks: Tuple[Landmark, ...] = ()
    emotions: Tuple[EmotionScore, ...] = ()
    age: Optional[int] = None
    gender: Optional[str] = None
    person_id: Optional[str] = None

    def with_person(self, person_id: Optional[str]) -> 'FaceDetection':
        return replace(self, person_id=person_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'box': self.box.to_dict(),
            'confidence': self.confidence,
            'landmarks': [landmark.to_dict() for landmark in self.landmarks],
            'emotions': [emotion.to_dict() for emotion in self.emotions],
            'age': self.age,
            'gender': self.gender,
            'person_id': self.person_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'FaceDetection':
        return cls(
            id=data['id'],
            box=BoundingBox.from_dict(data.get('box')),
            confidence=clamp_unit(data.get('confidence', 0.0)),
            landmarks=tuple(Landmark.from_dict(item) for item in data.get('landmarks', [])),
            emotions=tuple(EmotionScore.from_dict(item) for item in data.get('emotions', [])),
            age=data.get('age'),
            gender=data.get('gender'),
            person_id=data.get('person_id'),
        )


@dataclass(frozen=True)
class ObjectDetection:
    name: str
    confidence: float
    box: BoundingBox = field(default_factory=BoundingBox)
    category: str = "object"

    def to_dict(self) -> Dict[str, Any]:
        return {'name': self.name, 'confidence': self.confidence,
                'box': self.box.to_dict(), 'category': self.category}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ObjectDetection':
        return cls(name=data['name'], confidence=float(data.get('confidence', 0.0)),
                   box=BoundingBox.from_dict(data.get('box')),
                   category=data.get('category') or 'object')


@dataclass(frozen=True)
class SceneDetection:
    name: str
    confidence: float
    category: str = "environment"

    def to_dict(self) -> Dict[str, Any]:
        return {'name': self.name, 'confidence': self.confidence, 'category': self.category}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SceneDetection':
        return cls(name=data['name'], confidence=float(data.get('confidence', 0.0)),
                   category=data.get('category') or 'environment')


@dataclass(frozen=True)
class ColorSummary:
    dominant_colors: Tuple[str, ...] = ()
    palette: Tuple[str, ...] = ()
    brightness: float = 0.5
    contrast: float = 0.5
    saturation: float = 0.5
    temperature: str = "neutral"   # warm | cool | neutral

    def to_dict(self) -> Dict[str, Any]:
        return {
            'dominantColors': list(self.dominant_colors),
            'palette': list(self.palette),
            'brightness': self.brightness,
            'contrast': self.contrast,
            'saturation': self.saturation,
            'temperature': self.temperature,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'ColorSummary':
        data = data or {}
        return cls(
            dominant_colors=tuple(data.get('dominantColors', data.get('dominant_colors', ()))),
            palette=tuple(data.get('palette', ())),
            brightness=float(data.get('brightness', 0.5)),
            contrast=float(data.get('contrast', 0.5)),
            saturation=float(data.get('saturation', 0.5)),
            temperature=data.get('temperature') or 'neutral',
        )


@dataclass(frozen=True)
class CompositionSummary:
    rule_of_thirds: bool = False
    symmetry: float = 0.0
    leading_lines: bool = False
    depth: float = 0.0
    balance: float = 0.5
    focus_point: Tuple[float, float] = (0.5, 0.5)
    # Optional technical signals some analyzers report directly
    sharpness: Optional[float] = None
    noise: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'ruleOfThirds': self.rule_of_thirds,
            'symmetry': self.symmetry,
            'leadingLines': self.leading_lines,
            'depth': self.depth,
            'balance': self.balance,
            'focusPoint': {'x': self.focus_point[0], 'y': self.focus_point[1]},
            'sharpness': self.sharpness,
            'noise': self.noise,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'CompositionSummary':
        data = data or {}
        focus = data.get('focusPoint') or {}
        return cls(
            rule_of_thirds=bool(data.get('ruleOfThirds', False)),
            symmetry=float(data.get('symmetry', 0.0)),
            leading_lines=bool(data.get('leadingLines', False)),
            depth=float(data.get('depth', 0.0)),
            balance=float(data.get('balance', 0.5)),
            focus_point=(float(focus.get('x', 0.5)), float(focus.get('y', 0.5))),
            sharpness=data.get('sharpness'),
            noise=data.get('noise'),
        )


@dataclass(frozen=True)
class QualityMetrics:
    sharpness: float
    exposure: float
    noise: float
    overall: float
    issues: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {'sharpness': self.sharpness, 'exposure': self.exposure,
                'noise': self.noise, 'overall': self.overall,
                'issues': list(self.issues)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'QualityMetrics':
        return cls(sharpness=data['sharpness'], exposure=data['exposure'],
                   noise=data['noise'], overall=data['overall'],
                   issues=tuple(data.get('issues', ())))


@dataclass(frozen=True)
class PlacementRecommendation:
    section: str
    confidence: float
    reason: str
    timing: float   # normalized position in the film, 0-1

    def to_dict(self) -> Dict[str, Any]:
        return {'section': self.section, 'confidence': self.confidence,
                'reason': self.reason, 'timing': self.timing}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PlacementRecommendation':
        return cls(section=data['section'], confidence=data['confidence'],
                   reason=data['reason'], timing=data['timing'])


@dataclass(frozen=True)
class DocumentaryValue:
    narrative_score: float
    emotional_impact: float
    historical_value: float
    uniqueness: float
    suggested_use: Tuple[str, ...] = ()
    placement_recommendations: Tuple[PlacementRecommendation, ...] = ()

    @property
    def overall(self) -> float:
        return (self.narrative_score + self.emotional_impact
                + self.historical_value + self.uniqueness) / 4

    def to_dict(self) -> Dict[str, Any]:
        return {
            'narrativeScore': self.narrative_score,
            'emotionalImpact': self.emotional_impact,
            'historicalValue': self.historical_value,
            'uniqueness': self.uniqueness,
            'suggestedUse': list(self.suggested_use),
            'placementRecommendations': [rec.to_dict() for rec in self.placement_recommendations],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'DocumentaryValue':
        return cls(
            narrative_score=data['narrativeScore'],
            emotional_impact=data['emotionalImpact'],
            historical_value=data['historicalValue'],
            uniqueness=data['uniqueness'],
            suggested_use=tuple(data.get('suggestedUse', ())),
            placement_recommendations=tuple(
                PlacementRecommendation.from_dict(rec)
                for rec in data.get('placementRecommendations', ())),
        )


@dataclass(frozen=True)
class MediaAnalysis:
    """Derived analysis of one asset. Recomputed wholesale, never patched."""
    description: str
    objects: Tuple[ObjectDetection, ...]
    scenes: Tuple[SceneDetection, ...]
    colors: ColorSummary
    composition: CompositionSummary
    quality: QualityMetrics
    documentary_value: DocumentaryValue

    def to_dict(self) -> Dict[str, Any]:
        return {
            'description': self.description,
            'objects': [obj.to_dict() for obj in self.objects],
            'scenes': [scene.to_dict() for scene in self.scenes],
            'colors': self.colors.to_dict(),
            'composition': self.composition.to_dict(),
            'quality': self.quality.to_dict(),
            'documentaryValue': self.documentary_value.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional['MediaAnalysis']:
        if not data:
            return None
        return cls(
            description=data.get('description', ''),
            objects=tuple(ObjectDetection.from_dict(obj) for obj in data.get('objects', ())),
            scenes=tuple(SceneDetection.from_dict(scene) for scene in data.get('scenes', ())),
            colors=ColorSummary.from_dict(data.get('colors')),
            composition=CompositionSummary.from_dict(data.get('composition')),
            quality=QualityMetrics.from_dict(data['quality']),
            documentary_value=DocumentaryValue.from_dict(data['documentaryValue']),
        )


@dataclass(frozen=True)
class MediaVersion:
    """A stored rendition of an asset. Only paths/URLs, never payloads."""
    id: str
    type: VersionType
    url: str
    size: int
    format: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'type': self.type.value,
            'url': self.url,
            'size': self.size,
            'format': self.format,
            'created_at': format_datetime(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'MediaVersion':
        return cls(
            id=data['id'],
            type=VersionType(data['type']),
            url=data['url'],
            size=int(data.get('size', 0)),
            format=data.get('format'),
            created_at=parse_datetime(data.get('created_at')) or utcnow(),
        )


@dataclass
class MediaAsset:
    """
    One ingested file.

    Created in ``processing`` state, moved to ``ready`` by the enrichment
    pipeline or to ``error`` with a human-readable reason and its failure
    code (UNSUPPORTED_FORMAT, CORRUPT_INPUT, DETECTION_FAILED,
    ENRICHMENT_FAILED or CANCELLED).
    """
    id: str
    filename: str
    kind: MediaKind
    size: int = 0
    uploaded_at: datetime = field(default_factory=utcnow)
    captured_at: Optional[datetime] = None
    metadata: MediaMetadata = field(default_factory=MediaMetadata)
    status: AssetStatus = AssetStatus.PROCESSING
    error: Optional[str] = None
    error_code: Optional[str] = None
    tags: List[Tag] = field(default_factory=list)
    faces: List[FaceDetection] = field(default_factory=list)
    analysis: Optional[MediaAnalysis] = None
    versions: List[MediaVersion] = field(default_factory=list)
    correlation_id: Optional[str] = None

    @property
    def effective_date(self) -> datetime:
        """Capture time when known, upload time otherwise."""
        return self.captured_at or self.uploaded_at

    @property
    def original(self) -> Optional[MediaVersion]:
        for version in self.versions:
            if version.type is VersionType.ORIGINAL:
                return version
        return None

    @property
    def person_ids(self) -> List[str]:
        seen = []
        for face in self.faces:
            if face.person_id and face.person_id not in seen:
                seen.append(face.person_id)
        return seen

    @property
    def quality_score(self) -> Optional[float]:
        return self.analysis.quality.overall if self.analysis else None

    def set_tag(self, tag: Tag) -> None:
        """Add a tag, replacing any tag with the same (name, category)."""
        self.tags = merge_tags(self.tags, [tag])

    def mark_error(self, reason: str, code: str = "ENRICHMENT_FAILED") -> None:
        self.status = AssetStatus.ERROR
        self.error = reason
        self.error_code = code
        self.analysis = None

    def is_consistent(self) -> bool:
        """Check the status/analysis/tag invariants."""
        if self.status is AssetStatus.READY:
            if self.analysis is None:
                return False
            if any(not 0.0 <= tag.confidence <= 1.0 for tag in self.tags):
                return False
        if self.status is AssetStatus.ERROR and self.analysis is not None:
            return False
        keys = [tag.key for tag in self.tags]
        return len(keys) == len(set(keys))

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'filename': self.filename,
            'kind': self.kind.value,
            'size': self.size,
            'uploaded_at': format_datetime(self.uploaded_at),
            'captured_at': format_datetime(self.captured_at),
            'metadata': self.metadata.to_dict(),
            'status': self.status.value,
            'error': self.error,
            'error_code': self.error_code,
            'tags': [tag.to_dict() for tag in self.tags],
            'faces': [face.to_dict() for face in self.faces],
            'analysis': self.analysis.to_dict() if self.analysis else None,
            'versions': [version.to_dict() for version in self.versions],
            'correlation_id': self.correlation_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'MediaAsset':
        return cls(
            id=data['id'],
            filename=data['filename'],
            kind=MediaKind(data['kind']),
            size=int(data.get('size', 0)),
            uploaded_at=parse_datetime(data.get('uploaded_at')) or utcnow(),
            captured_at=parse_datetime(data.get('captured_at')),
            metadata=MediaMetadata.from_dict(data.get('metadata')),
            status=AssetStatus(data.get('status', 'processing')),
            error=data.get('error'),
            error_code=data.get('error_code'),
            tags=[Tag.from_dict(tag) for tag in data.get('tags', [])],
            faces=[FaceDetection.from_dict(face) for face in data.get('faces', [])],
            analysis=MediaAnalysis.from_dict(data.get('analysis')),
            versions=[MediaVersion.from_dict(v) for v in data.get('versions', [])],
            correlation_id=data.get('correlation_id'),
        )
