"""
Detection adapter boundary for DocuSight.

Normalizes external detector output into the library's detection schema.
"""

from .bundle import (
    DetectionBundle, DetectionKind, FaceSignal, MalformedBundle, SCHEMA_VERSION, parse_bundle,
)
from .adapter import (
    DetectionAdapter, StaticDetectionAdapter, SidecarDetectionAdapter,
    AdapterError, AdapterUnavailable, UnsupportedInput,
)

__all__ = [
    'DetectionBundle', 'DetectionKind', 'FaceSignal', 'MalformedBundle', 'SCHEMA_VERSION',
    'parse_bundle',
    'DetectionAdapter', 'StaticDetectionAdapter', 'SidecarDetectionAdapter',
    'AdapterError', 'AdapterUnavailable', 'UnsupportedInput',
]
