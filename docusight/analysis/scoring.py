"""
Scoring and tagging engine.

Turns a detection bundle into quality metrics, documentary-value scores and
derived tags. Pure and deterministic for a given bundle and settings:
out-of-range values are clamped with a warning instead of being rejected.
"""

import logging
import zlib
from dataclasses import dataclass, replace
from typing import Dict, List, Optional, Sequence, Tuple

from ..config import LibrarySettings, PLACEMENT_MIN_CONFIDENCE
from ..detection.bundle import DetectionBundle, FaceSignal
from ..models.media import (
    ColorSummary, CompositionSummary, DocumentaryValue, EmotionScore, MediaAnalysis,
    MediaKind, ObjectDetection, PlacementRecommendation, QualityMetrics,
    SceneDetection, Tag, TagCategory, TagSource,
)

logger = logging.getLogger(__name__)

PEOPLE_LABELS = {'person', 'people', 'face', 'man', 'woman', 'child', 'crowd'}
ARCHITECTURE_LABELS = {'building', 'window', 'door', 'bridge', 'church', 'tower',
                       'monument', 'architecture', 'house', 'castle'}
OUTDOOR_SCENES = {'outdoor', 'street', 'nature', 'urban', 'landscape', 'beach', 'forest'}
HISTORIC_SCENES = {'historic', 'monument', 'archive', 'ruins', 'museum'}

TAG_COLORS = [
    '#EF4444', '#F97316', '#F59E0B', '#EAB308', '#84CC16',
    '#22C55E', '#10B981', '#14B8A6', '#06B6D4', '#0EA5E9',
    '#3B82F6', '#6366F1', '#8B5CF6', '#A855F7', '#D946EF',
    '#EC4899', '#F43F5E',
]


def tag_color(name: str) -> str:
    """Stable display color for a tag name."""
    return TAG_COLORS[zlib.crc32(name.lower().encode('utf-8')) % len(TAG_COLORS)]


class _Clamper:
    """Clamps values into [0, 1] and counts how many needed it."""

    def __init__(self):
        self.count = 0

    def __call__(self, value, what: str) -> float:
        try:
            number = float(value)
        except (TypeError, ValueError):
            number = float('nan')
        if number != number:
            logger.warning(f"Non-numeric value for {what}; using 0.0")
            self.count += 1
            return 0.0
        if number < 0.0 or number > 1.0:
            clamped = max(0.0, min(1.0, number))
            logger.warning(f"Clamped {what} from {number} to {clamped}")
            self.count += 1
            return clamped
        return number


@dataclass(frozen=True)
class ScoringResult:
    analysis: MediaAnalysis
    tags: Tuple[Tag, ...]
    faces: Tuple[FaceSignal, ...]
    clamped: int = 0


class ScoringEngine:
    """
    Computes MediaAnalysis and tags from raw detections.

    Thresholds and weights come from LibrarySettings; the placement
    recommendation cutoff is fixed.
    """

    def __init__(self, settings: Optional[LibrarySettings] = None):
        self.settings = settings or LibrarySettings()

    def score(self, bundle: DetectionBundle, kind: MediaKind = MediaKind.IMAGE) -> ScoringResult:
        """
        Score one asset's detections.

        Args:
            bundle: Detections for the asset
            kind: Media kind, used in the generated description

        Returns:
            ScoringResult with analysis, derived tags and sanitized faces
        """
        clamp = _Clamper()
        objects = tuple(replace(obj, confidence=clamp(obj.confidence, f"object '{obj.name}'"))
                        for obj in bundle.objects)
        scenes = tuple(replace(scene, confidence=clamp(scene.confidence, f"scene '{scene.name}'"))
                       for scene in bundle.scenes)
        faces = tuple(self._sanitize_face(face, clamp) for face in bundle.faces)
        colors = self._sanitize_colors(bundle.colors, clamp)
        composition = self._sanitize_composition(bundle.composition, clamp)

        quality = self.quality_metrics(colors, composition)
        documentary = self.documentary_value(objects, scenes, faces, colors, composition)
        analysis = MediaAnalysis(
            description=self.describe(kind, objects, scenes, faces),
            objects=objects,
            scenes=scenes,
            colors=colors,
            composition=composition,
            quality=quality,
            documentary_value=documentary,
        )
        tags = self.derive_tags(analysis, faces)

        return ScoringResult(analysis=analysis, tags=tuple(tags), faces=faces,
                             clamped=clamp.count)

    # ------------------------------------------------------------------
    # Sanitizing
    # ------------------------------------------------------------------

    def _sanitize_face(self, face: FaceSignal, clamp: _Clamper) -> FaceSignal:
        return replace(
            face,
            confidence=clamp(face.confidence, "face confidence"),
            emotions=tuple(EmotionScore(e.emotion, clamp(e.confidence, f"emotion '{e.emotion}'"))
                           for e in face.emotions),
        )

    def _sanitize_colors(self, colors: ColorSummary, clamp: _Clamper) -> ColorSummary:
        return replace(
            colors,
            brightness=clamp(colors.brightness, "brightness"),
            contrast=clamp(colors.contrast, "contrast"),
            saturation=clamp(colors.saturation, "saturation"),
        )

    def _sanitize_composition(self, composition: CompositionSummary,
                              clamp: _Clamper) -> CompositionSummary:
        return replace(
            composition,
            symmetry=clamp(composition.symmetry, "symmetry"),
            depth=clamp(composition.depth, "depth"),
            balance=clamp(composition.balance, "balance"),
            sharpness=(clamp(composition.sharpness, "sharpness")
                       if composition.sharpness is not None else None),
            noise=(clamp(composition.noise, "noise")
                   if composition.noise is not None else None),
        )

    # ------------------------------------------------------------------
    # Quality
    # ------------------------------------------------------------------

    def exposure_score(self, brightness: float) -> float:
        """1.0 inside the target band, falling linearly to 0 at the extremes."""
        low, high = self.settings.exposure_band
        if brightness < low:
            return max(0.0, 1.0 - (low - brightness) / low) if low > 0 else 0.0
        if brightness > high:
            span = 1.0 - high
            return max(0.0, 1.0 - (brightness - high) / span) if span > 0 else 0.0
        return 1.0

    def quality_metrics(self, colors: ColorSummary, composition: CompositionSummary) -> QualityMetrics:
        """
        Combine sharpness, exposure and noise into a weighted overall score.

        Analyzers that do not report sharpness or noise directly get
        estimates from contrast and brightness.
        """
        s = self.settings
        sharpness = composition.sharpness if composition.sharpness is not None else colors.contrast
        exposure = colors.brightness
        if composition.noise is not None:
            noise = composition.noise
        else:
            noise = (1.0 - colors.brightness) * (1.0 - colors.contrast)

        total_weight = s.sharpness_weight + s.exposure_weight + s.noise_weight
        overall = (s.sharpness_weight * sharpness
                   + s.exposure_weight * self.exposure_score(exposure)
                   + s.noise_weight * (1.0 - noise)) / total_weight

        issues = []
        if sharpness < s.low_sharpness:
            issues.append('low-sharpness')
        low, high = s.exposure_band
        if exposure < low:
            issues.append('underexposed')
        elif exposure > high:
            issues.append('overexposed')
        if noise > s.high_noise:
            issues.append('high-noise')

        return QualityMetrics(
            sharpness=round(sharpness, 4),
            exposure=round(exposure, 4),
            noise=round(noise, 4),
            overall=round(max(0.0, min(1.0, overall)), 4),
            issues=tuple(issues),
        )

    # ------------------------------------------------------------------
    # Documentary value
    # ------------------------------------------------------------------

    def _present(self, detections: Sequence, labels: set, category: Optional[str],
                 minimum: float) -> bool:
        for detection in detections:
            if detection.confidence < minimum:
                continue
            if detection.name.lower() in labels:
                return True
            if category and getattr(detection, 'category', None) == category:
                return True
        return False

    def documentary_value(self, objects: Sequence[ObjectDetection], scenes: Sequence[SceneDetection],
                          faces: Sequence[FaceSignal], colors: ColorSummary,
                          composition: CompositionSummary) -> DocumentaryValue:
        s = self.settings
        has_people = bool(faces) or self._present(objects, PEOPLE_LABELS, 'people', s.object_tag_min)
        has_architecture = self._present(objects, ARCHITECTURE_LABELS, 'architecture', s.object_tag_min)
        is_outdoor = self._present(scenes, OUTDOOR_SCENES, None, s.scene_tag_min)
        is_historic = self._present(scenes, HISTORIC_SCENES, None, s.scene_tag_min)

        composition_strength = (
            (1.0 if composition.rule_of_thirds else 0.0)
            + (1.0 if composition.leading_lines else 0.0)
            + composition.symmetry + composition.depth + composition.balance
        ) / 5.0

        emotion_intensity = 0.0
        for face in faces:
            for emotion in face.emotions:
                if emotion.emotion.lower() != 'neutral':
                    emotion_intensity = max(emotion_intensity, emotion.confidence)
        if not faces:
            emotion_intensity = 0.5 * (colors.saturation + colors.contrast) / 2.0

        age_signal = 0.5 * (1.0 - colors.saturation) + (0.5 if is_historic else 0.0)
        labels = {obj.name.lower() for obj in objects} | {scene.name.lower() for scene in scenes}
        diversity = min(1.0, len(labels) / 8.0)

        narrative = (s.people_weight * has_people + s.architecture_weight * has_architecture
                     + s.composition_weight * composition_strength)
        emotional = 0.4 + 0.6 * emotion_intensity if has_people else 0.4 * emotion_intensity
        historical = 0.3 + 0.4 * age_signal if has_architecture else 0.3 * age_signal
        uniqueness = 0.5 * diversity + 0.3 * (1.0 - composition.symmetry) + (0.2 if is_outdoor else 0.0)

        narrative, emotional, historical, uniqueness = (
            round(max(0.0, min(1.0, value)), 4)
            for value in (narrative, emotional, historical, uniqueness)
        )

        suggested_use = []
        if narrative > 0.6:
            suggested_use.append('Main story element')
        if emotional > 0.7:
            suggested_use.append('Emotional moment')
        if has_architecture:
            suggested_use.append('Establishing shot')
        if has_people:
            suggested_use.append('Character introduction')

        candidates = [
            PlacementRecommendation('Opening sequence', narrative, 'Strong narrative potential', 0.1),
            PlacementRecommendation('Character development', emotional, 'High emotional impact', 0.4),
            PlacementRecommendation('Conclusion', historical, 'Historical significance', 0.8),
        ]
        placements = tuple(rec for rec in candidates if rec.confidence > PLACEMENT_MIN_CONFIDENCE)

        return DocumentaryValue(
            narrative_score=narrative,
            emotional_impact=emotional,
            historical_value=historical,
            uniqueness=uniqueness,
            suggested_use=tuple(suggested_use),
            placement_recommendations=placements,
        )

    # ------------------------------------------------------------------
    # Description and tags
    # ------------------------------------------------------------------

    def describe(self, kind: MediaKind, objects: Sequence[ObjectDetection],
                 scenes: Sequence[SceneDetection], faces: Sequence[FaceSignal]) -> str:
        subjects = []
        for obj in sorted(objects, key=lambda o: (-o.confidence, o.name)):
            if obj.name not in subjects:
                subjects.append(obj.name)
        top_scene = max(scenes, key=lambda sc: (sc.confidence, sc.name), default=None)

        if subjects:
            text = f"{kind.value.capitalize()} showing {', '.join(subjects[:3])}"
        else:
            text = f"{kind.value.capitalize()} with no detected subjects"
        if top_scene is not None:
            text += f" in a {top_scene.name} setting"
        if faces:
            text += f" with {len(faces)} face{'s' if len(faces) != 1 else ''}"
        return text + "."

    def derive_tags(self, analysis: MediaAnalysis, faces: Sequence[FaceSignal] = ()) -> List[Tag]:
        """Threshold detections and scores into tags, one per (name, category)."""
        s = self.settings
        tags: Dict[tuple, Tag] = {}

        def add(tag: Tag) -> None:
            current = tags.get(tag.key)
            if current is None or tag.confidence > current.confidence:
                tags[tag.key] = tag

        for obj in analysis.objects:
            if obj.confidence > s.object_tag_min:
                add(Tag(obj.name, TagCategory.OBJECT, obj.confidence, TagSource.DERIVED, tag_color(obj.name)))

        for scene in analysis.scenes:
            if scene.confidence > s.scene_tag_min:
                add(Tag(scene.name, TagCategory.LOCATION, scene.confidence, TagSource.DERIVED,
                        tag_color(scene.name)))

        colors = analysis.colors
        if colors.dominant_colors or colors.palette:
            add(Tag(f"{colors.temperature} tones", TagCategory.COLOR, 0.8, TagSource.DERIVED,
                    (colors.dominant_colors or colors.palette)[0]))

        if analysis.quality.overall > s.high_quality_min:
            add(Tag('high quality', TagCategory.TECHNICAL, analysis.quality.overall,
                    TagSource.DERIVED, '#10B981'))

        narrative = analysis.documentary_value.narrative_score
        if narrative > s.strong_narrative_min:
            add(Tag('strong narrative', TagCategory.STYLE, narrative, TagSource.DERIVED, '#8B5CF6'))

        if faces:
            totals: Dict[str, float] = {}
            for face in faces:
                for emotion in face.emotions:
                    totals[emotion.emotion] = totals.get(emotion.emotion, 0.0) + emotion.confidence
            for emotion, total in sorted(totals.items()):
                mean = total / len(faces)
                if emotion.lower() != 'neutral' and mean > s.emotion_tag_min:
                    add(Tag(emotion, TagCategory.EMOTION, round(mean, 4), TagSource.DERIVED,
                            tag_color(emotion)))

        return list(tags.values())
