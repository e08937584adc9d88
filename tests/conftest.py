"""
Shared fixtures for the DocuSight test suite.
"""

import io
from typing import Dict, List, Optional, Sequence

import pytest
from PIL import Image

from docusight.config import LibrarySettings
from docusight.core.library import MediaLibrary
from docusight.detection.adapter import StaticDetectionAdapter
from docusight.pipeline.enrichment import FileDescriptor
from docusight.storage.store import MemoryStore


def make_jpeg(width: int = 64, height: int = 48, color=(120, 90, 60),
              taken: Optional[str] = None, make: Optional[str] = None,
              model: Optional[str] = None) -> bytes:
    """Small JPEG with optional EXIF capture time and camera."""
    image = Image.new('RGB', (width, height), color)
    exif = Image.Exif()
    if taken:
        exif[0x0132] = taken      # DateTime
    if make:
        exif[0x010F] = make
    if model:
        exif[0x0110] = model
    buffer = io.BytesIO()
    if len(exif):
        image.save(buffer, format='JPEG', exif=exif)
    else:
        image.save(buffer, format='JPEG')
    return buffer.getvalue()


def embedding(*values: float, dim: int = 8) -> List[float]:
    """Pad the given leading values with zeros."""
    vector = list(values) + [0.0] * (dim - len(values))
    return vector[:dim]


def face(vector: Optional[Sequence[float]] = None, confidence: float = 0.95,
         emotions: Optional[Dict[str, float]] = None, landmarks=None) -> Dict:
    data = {
        'boundingBox': {'x': 0.4, 'y': 0.2, 'width': 0.2, 'height': 0.3},
        'confidence': confidence,
        'emotions': [{'emotion': name, 'confidence': conf}
                     for name, conf in (emotions or {}).items()],
    }
    if vector is not None:
        data['embedding'] = list(vector)
    if landmarks is not None:
        data['landmarks'] = landmarks
    return data


def payload(objects: Optional[Dict[str, float]] = None, scenes: Optional[Dict[str, float]] = None,
            faces: Sequence[Dict] = (), colors: Optional[Dict] = None,
            composition: Optional[Dict] = None) -> Dict:
    """Detection payload in the grouped wire form."""
    data = {
        'schemaVersion': 1,
        'objects': [{'name': name, 'confidence': conf} for name, conf in (objects or {}).items()],
        'scenes': [{'name': name, 'confidence': conf} for name, conf in (scenes or {}).items()],
        'faces': list(faces),
    }
    if colors is not None:
        data['colors'] = colors
    if composition is not None:
        data['composition'] = composition
    return data


def jpeg_descriptor(filename: str, **declared) -> FileDescriptor:
    return FileDescriptor(filename=filename, data=make_jpeg(), declared=declared)


@pytest.fixture
def settings():
    return LibrarySettings()


@pytest.fixture
def adapter():
    """Adapter replaying registered payloads; unregistered files get no detections."""
    return StaticDetectionAdapter(default=payload())


@pytest.fixture
def library(adapter):
    lib = MediaLibrary(adapter, store=MemoryStore(), sleep=lambda seconds: None)
    yield lib
    lib.close()


@pytest.fixture(autouse=True)
def _restore_root_logger():
    """Undo root-logger changes (level, handlers) made by CLI logging setup."""
    import logging
    root = logging.getLogger()
    level, handlers = root.level, list(root.handlers)
    yield
    for handler in [h for h in root.handlers if h not in handlers]:
        root.removeHandler(handler)
        handler.close()
    root.setLevel(level)
