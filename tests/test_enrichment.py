"""
Tests for the enrichment pipeline.
"""

import logging
from datetime import datetime

import pytest

from docusight.detection.adapter import AdapterUnavailable, DetectionAdapter, StaticDetectionAdapter
from docusight.detection.bundle import parse_bundle
from docusight.errors import EnrichmentCancelled
from docusight.identity import IdentityResolver
from docusight.models.media import (
    AssetStatus, MediaKind, Tag, TagCategory, TagSource, VersionType,
)
from docusight.pipeline import CancellationToken, EnrichmentPipeline, FileDescriptor

from .conftest import embedding, face, make_jpeg, payload


class FlakyAdapter(DetectionAdapter):
    """Unavailable for the first ``failures`` calls."""

    def __init__(self, failures, result=None, on_call=None):
        super().__init__()
        self.failures = failures
        self.result = result or payload(objects={'person': 0.9})
        self.on_call = on_call
        self.calls = 0

    def detect(self, data, kind, source=None):
        self.calls += 1
        if self.on_call:
            self.on_call()
        if self.calls <= self.failures:
            raise AdapterUnavailable("inference service down")
        return parse_bundle(self.result)


@pytest.fixture
def resolver():
    return IdentityResolver()


def make_pipeline(adapter, resolver, delays=None):
    return EnrichmentPipeline(adapter, resolver,
                              sleep=delays.append if delays is not None else (lambda s: None))


class TestEnrich:
    """Test successful enrichment."""

    def test_ready_asset_is_complete(self, resolver):
        adapter = StaticDetectionAdapter({'interview.jpg': payload(
            objects={'person': 0.95}, scenes={'outdoor': 0.8}, faces=[face(embedding(1.0))])})
        asset = make_pipeline(adapter, resolver).enrich(
            FileDescriptor('interview.jpg', data=make_jpeg(taken='2024:03:01 10:00:00')),
            correlation_id='corr-1')

        assert asset.status is AssetStatus.READY
        assert asset.kind is MediaKind.IMAGE
        assert asset.analysis is not None
        assert asset.is_consistent()
        assert asset.correlation_id == 'corr-1'
        assert asset.captured_at == datetime(2024, 3, 1, 10, 0, 0)
        assert asset.faces[0].id == f"{asset.id}-face-0"
        assert resolver.assignment_of(asset.faces[0].id) == asset.faces[0].person_id
        assert asset.original.type is VersionType.ORIGINAL

    def test_from_path_records_original(self, resolver, tmp_path):
        path = tmp_path / 'harbor.jpg'
        path.write_bytes(make_jpeg())
        asset = make_pipeline(StaticDetectionAdapter(default=payload()), resolver).enrich(
            FileDescriptor.from_path(path))
        assert asset.filename == 'harbor.jpg'
        assert asset.original.url == str(path)
        assert asset.size == path.stat().st_size

    def test_video_uses_declared_metadata(self, resolver):
        asset = make_pipeline(StaticDetectionAdapter(default=payload()), resolver).enrich(
            FileDescriptor('clip.mp4', data=b'\x00' * 500, declared={'duration': 1.0}))
        assert asset.status is AssetStatus.READY
        assert asset.kind is MediaKind.VIDEO
        assert asset.metadata.bit_rate == 4000

    def test_replay_resolves_same_person(self, resolver):
        adapter = StaticDetectionAdapter(default=payload(faces=[face(embedding(1.0))]))
        pipeline = make_pipeline(adapter, resolver)
        descriptor = FileDescriptor('a.jpg', data=make_jpeg())
        first = pipeline.enrich(descriptor, asset_id='asset-fixed')
        second = pipeline.enrich(descriptor, asset_id='asset-fixed')
        assert first.faces[0].person_id == second.faces[0].person_id
        assert resolver.get_person(first.faces[0].person_id).face_count == 1

    def test_previous_manual_tags_and_versions_survive(self, resolver):
        pipeline = make_pipeline(StaticDetectionAdapter(default=payload(objects={'boat': 0.9})),
                                 resolver)
        descriptor = FileDescriptor('a.jpg', data=make_jpeg(), path=None)
        first = pipeline.enrich(descriptor)
        first.set_tag(Tag('keeper', TagCategory.CUSTOM, 1.0, TagSource.MANUAL))

        again = pipeline.enrich(descriptor, previous=first)
        assert again.id == first.id
        assert again.uploaded_at == first.uploaded_at
        assert {t.name for t in again.tags} == {'boat', 'keeper'}
        assert again.versions == first.versions

    def test_log_lines_carry_correlation_and_kind(self, resolver, caplog):
        pipeline = make_pipeline(StaticDetectionAdapter(default=payload()), resolver)
        with caplog.at_level(logging.INFO, logger='docusight.pipeline.enrichment'):
            pipeline.enrich(FileDescriptor('a.jpg', data=make_jpeg()), correlation_id='corr-7')
        enriched = [r.getMessage() for r in caplog.records if r.getMessage().startswith('Asset enriched')]
        assert len(enriched) == 1
        assert '"correlation_id": "corr-7"' in enriched[0]
        assert '"kind": "image"' in enriched[0]


class TestEnrichFailures:
    """Test failure handling: the asset carries the reason, nothing escalates."""

    def test_unsupported_format(self, resolver):
        asset = make_pipeline(StaticDetectionAdapter(default=payload()), resolver).enrich(
            FileDescriptor('notes.xyz', data=b'???'))
        assert asset.status is AssetStatus.ERROR
        assert asset.kind is MediaKind.DOCUMENT
        assert asset.analysis is None
        assert asset.error

    def test_corrupt_image(self, resolver):
        asset = make_pipeline(StaticDetectionAdapter(default=payload()), resolver).enrich(
            FileDescriptor('broken.jpg', data=b'not really a jpeg'))
        assert asset.status is AssetStatus.ERROR
        assert 'decode' in asset.error
        assert asset.is_consistent()

    def test_unavailable_adapter_is_retried(self, resolver):
        delays = []
        adapter = FlakyAdapter(failures=2)
        asset = make_pipeline(adapter, resolver, delays).enrich(
            FileDescriptor('a.jpg', data=make_jpeg()))
        assert asset.status is AssetStatus.READY
        assert adapter.calls == 3
        assert delays == [0.5, 1.0]

    def test_retries_exhausted(self, resolver):
        delays = []
        adapter = FlakyAdapter(failures=10)
        asset = make_pipeline(adapter, resolver, delays).enrich(
            FileDescriptor('a.jpg', data=make_jpeg()))
        assert asset.status is AssetStatus.ERROR
        assert 'unavailable' in asset.error
        assert adapter.calls == 3
        assert delays == [0.5, 1.0]

    def test_rejected_input_is_not_retried(self, resolver):
        delays = []
        asset = make_pipeline(StaticDetectionAdapter(), resolver, delays).enrich(
            FileDescriptor('a.jpg', data=make_jpeg()))
        assert asset.status is AssetStatus.ERROR
        assert delays == []

    def test_cancelled_before_start(self, resolver):
        token = CancellationToken()
        token.cancel()
        adapter = StaticDetectionAdapter(default=payload(faces=[face(embedding(1.0))]))
        with pytest.raises(EnrichmentCancelled):
            make_pipeline(adapter, resolver).enrich(FileDescriptor('a.jpg', data=make_jpeg()),
                                                    cancel_token=token)
        assert adapter.calls == 0
        assert len(resolver) == 0

    def test_cancelled_during_retry(self, resolver):
        token = CancellationToken()
        adapter = FlakyAdapter(failures=10, on_call=token.cancel)
        with pytest.raises(EnrichmentCancelled):
            make_pipeline(adapter, resolver).enrich(FileDescriptor('a.jpg', data=make_jpeg()),
                                                    cancel_token=token)
        assert adapter.calls == 1

    @pytest.mark.parametrize("detections", [
        {'schemaVersion': 'two', 'objects': []},
        {'schemaVersion': 1.5},
        {'detections': {'kind': 'object', 'name': 'boat'}},
        [{'kind': 'object', 'name': 'boat'}],
    ])
    def test_malformed_payload_is_detection_failure(self, resolver, detections):
        delays = []
        asset = make_pipeline(StaticDetectionAdapter(default=detections), resolver, delays).enrich(
            FileDescriptor('a.jpg', data=make_jpeg()))
        assert asset.status is AssetStatus.ERROR
        assert asset.error_code == 'DETECTION_FAILED'
        assert asset.is_consistent()
        assert delays == []

    def test_adapter_bug_is_detection_failure(self, resolver):
        class BrokenAdapter(DetectionAdapter):
            def detect(self, data, kind, source=None):
                raise KeyError('boundingBox')

        asset = make_pipeline(BrokenAdapter(), resolver).enrich(FileDescriptor('a.jpg', data=make_jpeg()))
        assert asset.status is AssetStatus.ERROR
        assert asset.error_code == 'DETECTION_FAILED'

    def test_invalid_declared_metadata_is_corrupt_input(self, resolver):
        asset = make_pipeline(StaticDetectionAdapter(default=payload()), resolver).enrich(
            FileDescriptor('clip.mp4', data=b'\x00' * 500, declared={'duration': 'abc'}))
        assert asset.status is AssetStatus.ERROR
        assert asset.error_code == 'CORRUPT_INPUT'


class TestNonFiniteFaces:
    """Faces whose signature holds NaN or infinity never reach the registry."""

    @pytest.mark.parametrize("bad", [float('nan'), float('inf'), float('-inf')])
    def test_face_is_left_unassigned(self, resolver, bad):
        adapter = StaticDetectionAdapter(default=payload(
            faces=[face(embedding(bad, 1.0)), face(embedding(1.0))]))
        asset = make_pipeline(adapter, resolver).enrich(FileDescriptor('a.jpg', data=make_jpeg()))

        assert asset.status is AssetStatus.READY
        assert asset.faces[0].person_id is None
        assert asset.faces[1].person_id is not None
        assert resolver.assignment_of(asset.faces[0].id) is None
        assert len(resolver) == 1

    def test_registry_keeps_matching_after_bad_face(self, resolver):
        adapter = StaticDetectionAdapter({
            'a.jpg': payload(faces=[face(embedding(1.0))]),
            'b.jpg': payload(faces=[face(embedding(float('nan'), float('nan')))]),
            'c.jpg': payload(faces=[face(embedding(0.99, 0.01))]),
        })
        pipeline = make_pipeline(adapter, resolver)
        first = pipeline.enrich(FileDescriptor('a.jpg', data=make_jpeg()))
        pipeline.enrich(FileDescriptor('b.jpg', data=make_jpeg()))
        third = pipeline.enrich(FileDescriptor('c.jpg', data=make_jpeg()))

        assert third.faces[0].person_id == first.faces[0].person_id
        assert resolver.get_person(first.faces[0].person_id).face_count == 2

    def test_nan_landmarks_are_left_unassigned(self, resolver):
        landmarks = [{'type': 'left_eye', 'x': float('nan'), 'y': 0.4},
                     {'type': 'right_eye', 'x': 0.5, 'y': 0.4}]
        adapter = StaticDetectionAdapter(default=payload(faces=[face(landmarks=landmarks)]))
        asset = make_pipeline(adapter, resolver).enrich(FileDescriptor('a.jpg', data=make_jpeg()))
        assert asset.faces[0].person_id is None
        assert len(resolver) == 0


class TestReanalysisIdentity:
    """Re-running enrichment over an asset's faces."""

    def test_changed_signature_moves_to_matching_person(self, resolver):
        adapter = StaticDetectionAdapter({
            'a.jpg': payload(faces=[face(embedding(1.0))]),
            'b.jpg': payload(faces=[face(embedding(0.0, 1.0))]),
        })
        pipeline = make_pipeline(adapter, resolver)
        first = pipeline.enrich(FileDescriptor('a.jpg', data=make_jpeg()))
        other = pipeline.enrich(FileDescriptor('b.jpg', data=make_jpeg()))

        adapter.register('a.jpg', payload(faces=[face(embedding(0.0, 1.0))]))
        again = pipeline.enrich(FileDescriptor('a.jpg', data=make_jpeg()), previous=first)

        assert again.faces[0].person_id == other.faces[0].person_id
        assert resolver.get_person(other.faces[0].person_id).face_count == 2
        assert resolver.get_person(first.faces[0].person_id).face_count == 0

    def test_unchanged_signature_keeps_person(self, resolver):
        adapter = StaticDetectionAdapter(default=payload(faces=[face(embedding(1.0))]))
        pipeline = make_pipeline(adapter, resolver)
        first = pipeline.enrich(FileDescriptor('a.jpg', data=make_jpeg()))
        again = pipeline.enrich(FileDescriptor('a.jpg', data=make_jpeg()), previous=first)
        assert again.faces[0].person_id == first.faces[0].person_id
        assert len(resolver) == 1
