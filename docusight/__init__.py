"""
DocuSight: Media intelligence and retrieval for documentary libraries

Enriches uploaded images, video, audio and documents with detections,
quality and documentary-value scores, resolves faces into library-wide
identities, and serves search, smart collections and batch operations.
"""

__version__ = "0.1.0"
__author__ = "Sam Scarrow"
__email__ = "sam@example.com"

# Core imports for easy access
from .config import load_config, LibrarySettings
from .core.library import MediaLibrary
from .pipeline.enrichment import FileDescriptor

__all__ = [
    "load_config",
    "LibrarySettings",
    "MediaLibrary",
    "FileDescriptor",
]
