"""
Data models for batch jobs.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from .media import format_datetime, utcnow


class BatchOperation(Enum):
    """Operations the batch queue can run over a set of assets."""
    INGEST = "ingest"       # first enrichment of a freshly uploaded file
    ANALYZE = "analyze"     # re-run enrichment on existing assets
    TAG = "tag"
    MOVE = "move"           # add to a manual collection
    DELETE = "delete"
    EXPORT = "export"


class JobStatus(Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"       # queue-level fault only

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


PRIORITIES = {'urgent': 0, 'high': 1, 'normal': 2, 'low': 3}


@dataclass(frozen=True)
class BatchItemResult:
    asset_id: str
    result: Any = None
    processing_time: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {'asset_id': self.asset_id, 'success': True, 'result': self.result,
                'processing_time': self.processing_time}


@dataclass(frozen=True)
class BatchError:
    asset_id: str
    error: str
    code: str = "ERROR"
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {'asset_id': self.asset_id, 'error': self.error, 'code': self.code,
                'timestamp': format_datetime(self.timestamp)}


@dataclass
class BatchJob:
    """
    A batch operation over a list of assets.

    ``results`` is aligned with ``asset_ids``; an entry stays ``None`` until
    its item succeeds, so a failed item is ``None`` with a matching entry in
    ``errors``.
    """
    id: str
    operation: BatchOperation
    asset_ids: List[str]
    priority: str = "normal"
    parameters: Dict[str, Any] = field(default_factory=dict)
    status: JobStatus = JobStatus.QUEUED
    results: List[Optional[BatchItemResult]] = field(default_factory=list)
    errors: List[BatchError] = field(default_factory=list)
    cancelled: bool = False
    fault: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    def __post_init__(self):
        if not self.results:
            self.results = [None] * len(self.asset_ids)

    @property
    def total(self) -> int:
        return len(self.asset_ids)

    @property
    def succeeded(self) -> int:
        return sum(1 for result in self.results if result is not None)

    @property
    def terminal_items(self) -> int:
        return self.succeeded + len(self.errors)

    @property
    def progress(self) -> float:
        """Percentage of items in a terminal state, successful or not."""
        if not self.asset_ids:
            return 100.0
        return self.terminal_items / self.total * 100

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'operation': self.operation.value,
            'asset_ids': list(self.asset_ids),
            'priority': self.priority,
            'parameters': dict(self.parameters),
            'status': self.status.value,
            'progress': self.progress,
            'results': [result.to_dict() if result else None for result in self.results],
            'errors': [error.to_dict() for error in self.errors],
            'cancelled': self.cancelled,
            'fault': self.fault,
            'created_at': format_datetime(self.created_at),
            'started_at': format_datetime(self.started_at),
            'completed_at': format_datetime(self.completed_at),
        }
