"""
Detection adapter interface.

Perceptual detectors live outside DocuSight. An adapter wraps one of them and
normalizes its output into a DetectionBundle.
"""

import hashlib
import json
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, Optional

from ..models.media import MediaKind
from .bundle import DetectionBundle, parse_bundle

logger = logging.getLogger(__name__)


class AdapterError(Exception):
    """Base exception for detection adapters."""
    pass


class AdapterUnavailable(AdapterError):
    """Raised when the detector backend cannot be reached."""
    pass


class UnsupportedInput(AdapterError):
    """Raised when the detector refuses the input."""
    pass


class DetectionAdapter(ABC):
    """
    Base class for detection adapters.

    Implementations may be slow (remote inference); the enrichment pipeline
    calls them from worker threads and retries AdapterError with backoff.
    """

    def __init__(self, config: Dict[str, Any] = None):
        self.config = config or {}

    @property
    def name(self) -> str:
        return type(self).__name__

    @abstractmethod
    def detect(self, data: bytes, kind: MediaKind,
               source: Optional[str] = None) -> DetectionBundle:
        """
        Run detection on one file.

        Args:
            data: Raw file bytes
            kind: Media kind of the file
            source: Original path or URL, when known

        Returns:
            DetectionBundle for the file

        Raises:
            AdapterUnavailable: Detector backend is down
            UnsupportedInput: Detector cannot handle this input
        """
        pass


def content_key(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


class StaticDetectionAdapter(DetectionAdapter):
    """
    Adapter that replays pre-computed detection payloads.

    Payloads are looked up by source name first, then by content hash, and
    fall back to the default payload.
    """

    def __init__(self, payloads: Optional[Dict[str, Dict[str, Any]]] = None,
                 default: Optional[Dict[str, Any]] = None, config: Dict[str, Any] = None):
        super().__init__(config)
        self.payloads: Dict[str, Dict[str, Any]] = dict(payloads or {})
        self.default = default
        self.calls = 0

    def register(self, key: str, payload: Dict[str, Any]) -> None:
        self.payloads[key] = payload

    def register_content(self, data: bytes, payload: Dict[str, Any]) -> None:
        self.payloads[content_key(data)] = payload

    def detect(self, data: bytes, kind: MediaKind,
               source: Optional[str] = None) -> DetectionBundle:
        self.calls += 1
        payload = None
        if source is not None:
            payload = self.payloads.get(source) or self.payloads.get(Path(source).name)
        if payload is None:
            payload = self.payloads.get(content_key(data), self.default)
        if payload is None:
            raise UnsupportedInput(f"No detections registered for {source or 'content'}")
        return parse_bundle(payload)


class SidecarDetectionAdapter(DetectionAdapter):
    """
    Adapter reading detections from a JSON file stored beside the media file,
    e.g. ``interview.jpg.detections.json``.
    """

    def __init__(self, suffix: str = ".detections.json", config: Dict[str, Any] = None):
        super().__init__(config)
        self.suffix = suffix

    def sidecar_path(self, source: str) -> Path:
        return Path(str(source) + self.suffix)

    def detect(self, data: bytes, kind: MediaKind,
               source: Optional[str] = None) -> DetectionBundle:
        if source is None:
            raise AdapterUnavailable("Sidecar detections need the source path")

        path = self.sidecar_path(source)
        if not path.exists():
            logger.debug(f"No detection sidecar for {source}")
            return DetectionBundle.empty()

        try:
            with open(path, 'r') as f:
                payload = json.load(f)
        except json.JSONDecodeError as e:
            raise UnsupportedInput(f"Invalid detection sidecar {path}: {e}") from e
        except OSError as e:
            raise AdapterUnavailable(f"Cannot read detection sidecar {path}: {e}") from e

        return parse_bundle(payload)
