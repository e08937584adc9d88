"""
Data model for the DocuSight media library.
"""

from .media import (
    MediaKind, AssetStatus, TagCategory, TagSource, VersionType,
    BoundingBox, Landmark, EmotionScore, GeoLocation, CameraInfo, MediaMetadata,
    Tag, FaceDetection, ObjectDetection, SceneDetection, ColorSummary,
    CompositionSummary, QualityMetrics, PlacementRecommendation, DocumentaryValue,
    MediaAnalysis, MediaVersion, MediaAsset, merge_tags, utcnow,
)
from .people import Person, PersonRelationship
from .collections import Collection, CollectionType, CollectionDimension, CollectionSettings
from .jobs import BatchJob, BatchOperation, JobStatus, BatchItemResult, BatchError

__all__ = [
    'MediaKind', 'AssetStatus', 'TagCategory', 'TagSource', 'VersionType',
    'BoundingBox', 'Landmark', 'EmotionScore', 'GeoLocation', 'CameraInfo',
    'MediaMetadata', 'Tag', 'FaceDetection', 'ObjectDetection', 'SceneDetection',
    'ColorSummary', 'CompositionSummary', 'QualityMetrics', 'PlacementRecommendation',
    'DocumentaryValue', 'MediaAnalysis', 'MediaVersion', 'MediaAsset', 'merge_tags',
    'utcnow', 'Person', 'PersonRelationship', 'Collection', 'CollectionType',
    'CollectionDimension', 'CollectionSettings', 'BatchJob', 'BatchOperation',
    'JobStatus', 'BatchItemResult', 'BatchError',
]
