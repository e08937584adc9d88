"""
Tests for the scoring and tagging engine.
"""

import pytest

from docusight.analysis.scoring import ScoringEngine, tag_color
from docusight.config import LibrarySettings, PLACEMENT_MIN_CONFIDENCE
from docusight.detection.bundle import parse_bundle
from docusight.models.media import MediaKind, TagCategory

from .conftest import face, payload


@pytest.fixture
def engine():
    return ScoringEngine(LibrarySettings())


def tag_keys(result):
    return {(tag.name, tag.category) for tag in result.tags}


class TestTagging:
    """Test derived tags."""

    def test_person_outdoor_image(self, engine):
        """A person outdoors yields object and location tags and some narrative value."""
        result = engine.score(parse_bundle(payload(objects={'person': 0.95}, scenes={'outdoor': 0.8})))
        assert tag_keys(result) == {('person', TagCategory.OBJECT), ('outdoor', TagCategory.LOCATION)}
        assert result.analysis.documentary_value.narrative_score > 0

    def test_thresholds_are_strict(self, engine):
        result = engine.score(parse_bundle(payload(objects={'chair': 0.7}, scenes={'indoor': 0.6})))
        assert result.tags == ()

    def test_color_tag_needs_colors(self, engine):
        plain = engine.score(parse_bundle(payload()))
        assert not any(t.category is TagCategory.COLOR for t in plain.tags)

        warm = engine.score(parse_bundle(payload(colors={
            'dominantColors': ['#C05A2B', '#222222'], 'temperature': 'warm'})))
        color_tags = [t for t in warm.tags if t.category is TagCategory.COLOR]
        assert len(color_tags) == 1
        assert color_tags[0].name == 'warm tones'
        assert color_tags[0].color == '#C05A2B'

    def test_high_quality_tag(self, engine):
        result = engine.score(parse_bundle(payload(
            colors={'brightness': 0.5, 'contrast': 0.6},
            composition={'sharpness': 0.95, 'noise': 0.05})))
        assert result.analysis.quality.overall > 0.8
        assert ('high quality', TagCategory.TECHNICAL) in tag_keys(result)

    def test_strong_narrative_tag(self, engine):
        result = engine.score(parse_bundle(payload(
            objects={'person': 0.9, 'building': 0.9},
            composition={'ruleOfThirds': True, 'leadingLines': True, 'symmetry': 1.0,
                         'depth': 1.0, 'balance': 1.0})))
        assert result.analysis.documentary_value.narrative_score == pytest.approx(1.0)
        assert ('strong narrative', TagCategory.STYLE) in tag_keys(result)

    def test_emotion_tags_use_mean_over_faces(self, engine):
        result = engine.score(parse_bundle(payload(faces=[
            face(emotions={'happy': 0.9, 'neutral': 0.95}),
            face(emotions={'happy': 0.5, 'neutral': 0.9}),
        ])))
        emotions = [t for t in result.tags if t.category is TagCategory.EMOTION]
        assert [t.name for t in emotions] == ['happy']
        assert emotions[0].confidence == pytest.approx(0.7)

    def test_tag_colors_are_stable(self):
        assert tag_color('Harbor') == tag_color('harbor')


class TestQuality:
    """Test quality metrics."""

    def test_estimates_without_direct_signals(self, engine):
        quality = engine.score(parse_bundle(payload())).analysis.quality
        # contrast 0.5 -> sharpness, brightness 0.5 in band, noise (1-0.5)*(1-0.5)
        assert quality.sharpness == pytest.approx(0.5)
        assert quality.noise == pytest.approx(0.25)
        assert quality.overall == pytest.approx(0.75)
        assert quality.issues == ()

    def test_issues(self, engine):
        quality = engine.score(parse_bundle(payload(
            colors={'brightness': 0.05, 'contrast': 0.1}))).analysis.quality
        assert 'underexposed' in quality.issues
        assert 'low-sharpness' in quality.issues
        assert 'high-noise' in quality.issues

    def test_exposure_score_band(self, engine):
        assert engine.exposure_score(0.5) == 1.0
        assert engine.exposure_score(0.0) == 0.0
        assert engine.exposure_score(1.0) == 0.0
        assert 0.0 < engine.exposure_score(0.1) < 1.0

    def test_custom_weights(self):
        engine = ScoringEngine(LibrarySettings(sharpness_weight=1.0, exposure_weight=0.0,
                                               noise_weight=0.0))
        quality = engine.score(parse_bundle(payload(composition={'sharpness': 0.42}))).analysis.quality
        assert quality.overall == pytest.approx(0.42)


class TestSanitizing:
    """Test clamping of out-of-range detector values."""

    def test_out_of_range_values_are_clamped(self, engine, caplog):
        result = engine.score(parse_bundle(payload(
            objects={'person': 1.4}, colors={'brightness': -0.2})))
        assert result.clamped == 2
        assert result.analysis.objects[0].confidence == 1.0
        assert result.analysis.colors.brightness == 0.0
        assert 'Clamped' in caplog.text

    def test_scores_stay_in_unit_range(self, engine):
        result = engine.score(parse_bundle(payload(
            objects={'person': 5.0, 'building': 3.0},
            faces=[face(emotions={'angry': 9.0})],
            composition={'symmetry': 4.0, 'depth': -1.0, 'balance': 2.0})))
        value = result.analysis.documentary_value
        for score in (value.narrative_score, value.emotional_impact,
                      value.historical_value, value.uniqueness):
            assert 0.0 <= score <= 1.0
        assert all(0.0 <= tag.confidence <= 1.0 for tag in result.tags)


class TestDocumentaryValue:
    """Test documentary value and placement."""

    def test_placements_above_cutoff(self, engine):
        result = engine.score(parse_bundle(payload(
            objects={'person': 0.9, 'building': 0.9},
            faces=[face(emotions={'surprised': 0.95})],
            composition={'ruleOfThirds': True, 'balance': 0.8})))
        placements = result.analysis.documentary_value.placement_recommendations
        assert placements
        assert all(p.confidence > PLACEMENT_MIN_CONFIDENCE for p in placements)

    def test_suggested_use(self, engine):
        result = engine.score(parse_bundle(payload(objects={'person': 0.9, 'bridge': 0.8})))
        uses = result.analysis.documentary_value.suggested_use
        assert 'Establishing shot' in uses
        assert 'Character introduction' in uses

    def test_description(self, engine):
        result = engine.score(parse_bundle(payload(
            objects={'person': 0.95}, scenes={'street': 0.8}, faces=[face()])), MediaKind.IMAGE)
        assert result.analysis.description == "Image showing person in a street setting with 1 face."

    def test_deterministic(self, engine):
        bundle = parse_bundle(payload(objects={'person': 0.95}, scenes={'outdoor': 0.8},
                                      faces=[face(emotions={'happy': 0.8})]))
        assert engine.score(bundle) == engine.score(bundle)
