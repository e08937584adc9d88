"""
Enrichment pipeline.

Turns one uploaded file into a fully analyzed MediaAsset:

1. metadata extraction
2. detection through the adapter (retried with exponential backoff)
3. scoring, tagging and identity resolution
4. assembly of a complete, new asset

The steps run strictly in order for one asset. The result is either a
``ready`` asset with every field populated or an ``error`` asset carrying
the reason; never anything in between.
"""

import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from ..analysis.metadata import MetadataExtractor, guess_mime, kind_for_mime
from ..analysis.scoring import ScoringEngine
from ..config import LibrarySettings
from ..detection.adapter import AdapterError, AdapterUnavailable, DetectionAdapter
from ..detection.bundle import DetectionBundle, MalformedBundle
from ..errors import CorruptInput, DetectionAdapterFailure, EnrichmentCancelled, EnrichmentError
from ..identity.resolver import IdentityResolver, face_signature, signature_is_finite
from ..models.media import (
    AssetStatus, FaceDetection, MediaAsset, MediaKind, MediaVersion, TagSource,
    VersionType, merge_tags, utcnow,
)
from ..utils.logging import StructuredLogger

logger = logging.getLogger(__name__)


@dataclass
class FileDescriptor:
    """An uploaded file: bytes in memory or a path to read them from."""
    filename: str
    data: Optional[bytes] = None
    path: Optional[str] = None
    url: Optional[str] = None
    mime_type: Optional[str] = None
    kind: Optional[MediaKind] = None
    declared: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_path(cls, path, declared: Optional[Dict[str, Any]] = None) -> 'FileDescriptor':
        path = Path(path)
        return cls(filename=path.name, path=str(path), declared=dict(declared or {}))

    @property
    def source(self) -> Optional[str]:
        """Where the original lives; recorded on the original version."""
        return self.path or self.url

    @property
    def size(self) -> int:
        if self.data is not None:
            return len(self.data)
        if self.path is not None and Path(self.path).exists():
            return Path(self.path).stat().st_size
        return 0

    def read(self) -> bytes:
        """
        Raises:
            CorruptInput: The file cannot be read
        """
        if self.data is not None:
            return self.data
        if self.path is None:
            raise CorruptInput(f"No data or path for {self.filename}")
        try:
            return Path(self.path).read_bytes()
        except OSError as e:
            raise CorruptInput(f"Cannot read {self.path}: {e}") from e


class CancellationToken:
    """Cooperative cancellation checked between pipeline steps."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self, step: str) -> None:
        if self._event.is_set():
            raise EnrichmentCancelled(f"Enrichment cancelled before {step}")


class EnrichmentPipeline:
    """
    Runs the enrichment steps for one asset at a time; safe to call from
    several worker threads at once.
    """

    def __init__(self, adapter: DetectionAdapter, resolver: IdentityResolver,
                 settings: Optional[LibrarySettings] = None,
                 extractor: Optional[MetadataExtractor] = None,
                 scoring: Optional[ScoringEngine] = None,
                 sleep: Callable[[float], None] = time.sleep):
        self.adapter = adapter
        self.resolver = resolver
        self.settings = settings or LibrarySettings()
        self.extractor = extractor or MetadataExtractor()
        self.scoring = scoring or ScoringEngine(self.settings)
        self._sleep = sleep

    @staticmethod
    def face_id(asset_id: str, index: int) -> str:
        """Stable face detection id, so a replayed run resolves the same ids."""
        return f"{asset_id}-face-{index}"

    def enrich(self, descriptor: FileDescriptor, correlation_id: Optional[str] = None,
               asset_id: Optional[str] = None, cancel_token: Optional[CancellationToken] = None,
               previous: Optional[MediaAsset] = None) -> MediaAsset:
        """
        Enrich one file.

        Args:
            descriptor: The uploaded file
            correlation_id: Id carried through every log line of this run
            asset_id: Id of an existing asset (re-analysis or a placeholder)
            cancel_token: Checked between steps
            previous: Current state of the asset when re-analyzing; its
                manual tags and upload time are kept

        Returns:
            New MediaAsset in ``ready`` or ``error`` state

        Raises:
            EnrichmentCancelled: The run was cancelled; nothing was published
        """
        asset_id = asset_id or (previous.id if previous else f"asset-{uuid.uuid4().hex[:12]}")
        correlation_id = correlation_id or uuid.uuid4().hex[:12]
        log = StructuredLogger(__name__, {'correlation_id': correlation_id, 'asset_id': asset_id})
        token = cancel_token or CancellationToken()
        uploaded_at = previous.uploaded_at if previous else utcnow()
        mime_type = descriptor.mime_type or guess_mime(descriptor.filename)

        try:
            kind = descriptor.kind or kind_for_mime(mime_type, self.settings.supported_mime_prefixes)
        except EnrichmentError as e:
            log.warning("Rejected upload", filename=descriptor.filename, reason=e.reason)
            return self._failed(asset_id, descriptor, MediaKind.DOCUMENT, uploaded_at,
                                correlation_id, e, previous)

        log = log.bind(kind=kind.value)
        start = time.time()
        try:
            token.raise_if_cancelled('metadata extraction')
            data = descriptor.read()
            extracted = self.extractor.extract(data, kind, mime_type, descriptor.declared)
            log.debug("Metadata extracted", format=extracted.metadata.format)

            token.raise_if_cancelled('detection')
            bundle = self._detect(data, kind, descriptor.source or descriptor.filename, token, log)

            token.raise_if_cancelled('scoring')
            scored = self.scoring.score(bundle, kind)
            if scored.clamped:
                log.warning("Clamped malformed detection values", count=scored.clamped)

            token.raise_if_cancelled('identity resolution')
            seen_at = extracted.captured_at or uploaded_at
            faces: List[FaceDetection] = []
            for index, face in enumerate(scored.faces):
                detection_id = self.face_id(asset_id, index)
                if signature_is_finite(face):
                    person_id = self.resolver.resolve(detection_id, face_signature(face), seen_at=seen_at,
                                                      refresh=previous is not None)
                else:
                    log.warning("Left face with non-finite signature unassigned", face=detection_id)
                    self.resolver.retract([detection_id])
                    person_id = None
                faces.append(FaceDetection(
                    id=detection_id, box=face.box, confidence=face.confidence,
                    landmarks=face.landmarks, emotions=face.emotions, age=face.age,
                    gender=face.gender, person_id=person_id,
                ))
        except EnrichmentCancelled:
            log.info("Enrichment cancelled")
            raise
        except EnrichmentError as e:
            log.warning("Enrichment failed", code=e.code, reason=e.reason)
            return self._failed(asset_id, descriptor, kind, uploaded_at, correlation_id, e, previous)

        manual_tags = [t for t in previous.tags if t.source is TagSource.MANUAL] if previous else []
        asset = MediaAsset(
            id=asset_id,
            filename=descriptor.filename,
            kind=kind,
            size=len(data),
            uploaded_at=uploaded_at,
            captured_at=extracted.captured_at,
            metadata=extracted.metadata,
            status=AssetStatus.READY,
            tags=merge_tags(scored.tags, manual_tags),
            faces=faces,
            analysis=scored.analysis,
            versions=self._versions(asset_id, descriptor, len(data), mime_type, previous),
            correlation_id=correlation_id,
        )
        log.info("Asset enriched", tags=len(asset.tags), faces=len(faces),
                 quality=round(asset.quality_score, 3), seconds=round(time.time() - start, 3))
        return asset

    def _detect(self, data: bytes, kind: MediaKind, source: str, token: CancellationToken,
                log: StructuredLogger) -> DetectionBundle:
        """Call the adapter, retrying unavailability with exponential backoff."""
        attempts = max(1, self.settings.retry_attempts)
        delay = self.settings.retry_backoff_seconds
        for attempt in range(1, attempts + 1):
            try:
                bundle = self.adapter.detect(data, kind, source)
                if bundle.ignored:
                    log.warning("Ignored unknown detection kinds", kinds=list(bundle.ignored))
                return bundle
            except AdapterUnavailable as e:
                if attempt == attempts:
                    raise DetectionAdapterFailure(
                        f"Detection unavailable after {attempts} attempts: {e}") from e
                log.warning("Detection adapter unavailable, retrying",
                            attempt=attempt, delay=delay, error=str(e))
                self._sleep(delay)
                delay *= 2
                token.raise_if_cancelled('detection retry')
            except AdapterError as e:
                raise DetectionAdapterFailure(f"Detection rejected input: {e}") from e
            except MalformedBundle as e:
                raise DetectionAdapterFailure(f"Malformed detection payload: {e}") from e
            except Exception as e:
                log.error("Detection adapter raised unexpectedly", error=str(e))
                raise DetectionAdapterFailure(f"Detection adapter error: {e}") from e
        raise DetectionAdapterFailure("Detection did not run")

    def _versions(self, asset_id: str, descriptor: FileDescriptor, size: int,
                  mime_type: Optional[str], previous: Optional[MediaAsset]) -> List[MediaVersion]:
        if previous and previous.versions:
            return list(previous.versions)
        return [MediaVersion(
            id=f"{asset_id}-original",
            type=VersionType.ORIGINAL,
            url=descriptor.source or descriptor.filename,
            size=size,
            format=mime_type,
        )]

    def _failed(self, asset_id: str, descriptor: FileDescriptor, kind: MediaKind,
                uploaded_at: datetime, correlation_id: str, error: EnrichmentError,
                previous: Optional[MediaAsset] = None) -> MediaAsset:
        asset = MediaAsset(
            id=asset_id,
            filename=descriptor.filename,
            kind=previous.kind if previous else kind,
            size=descriptor.size,
            uploaded_at=uploaded_at,
            tags=[t for t in previous.tags if t.source is TagSource.MANUAL] if previous else [],
            versions=self._versions(asset_id, descriptor, descriptor.size,
                                    descriptor.mime_type or guess_mime(descriptor.filename), previous),
            correlation_id=correlation_id,
        )
        asset.mark_error(error.reason, error.code)
        return asset
