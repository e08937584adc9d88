"""
Analysis modules for DocuSight: metadata extraction and scoring.
"""

from .metadata import MetadataExtractor, ExtractedMetadata, guess_mime, kind_for_mime
from .scoring import ScoringEngine, ScoringResult, tag_color

__all__ = [
    'MetadataExtractor', 'ExtractedMetadata', 'guess_mime', 'kind_for_mime',
    'ScoringEngine', 'ScoringResult', 'tag_color',
]
