"""
Enrichment pipeline and batch job queue.
"""

from .enrichment import EnrichmentPipeline, FileDescriptor, CancellationToken
from .batch import BatchJobQueue

__all__ = ['EnrichmentPipeline', 'FileDescriptor', 'CancellationToken', 'BatchJobQueue']
