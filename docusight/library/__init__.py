"""
Library index, search, smart collections and export.
"""

from .query import SearchQuery, DateRange, QualityRange, NearPoint, SortSpec, haversine_km
from .index import LibraryIndex, ReadWriteLock
from .collections import SmartCollectionGenerator, CollectionRegistry
from .export import build_export, write_export

__all__ = [
    'SearchQuery', 'DateRange', 'QualityRange', 'NearPoint', 'SortSpec', 'haversine_km',
    'LibraryIndex', 'ReadWriteLock', 'SmartCollectionGenerator', 'CollectionRegistry',
    'build_export', 'write_export',
]
