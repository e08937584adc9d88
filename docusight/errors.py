"""
Error taxonomy for DocuSight.

Enrichment errors are recorded on the asset they belong to and never
escalate to sibling assets. Query and merge errors are caller errors and
are raised synchronously.
"""


class DocuSightError(Exception):
    """Base exception for DocuSight operations."""
    retryable = False


class EnrichmentError(DocuSightError):
    """Raised when an asset cannot be enriched."""

    code = "ENRICHMENT_FAILED"

    def __init__(self, message: str, asset_id: str = None):
        super().__init__(message)
        self.asset_id = asset_id

    @property
    def reason(self) -> str:
        """Human-readable reason kept on the asset."""
        return str(self)


class UnsupportedFormat(EnrichmentError):
    """Raised when the declared MIME type or kind is not handled."""
    code = "UNSUPPORTED_FORMAT"


class CorruptInput(EnrichmentError):
    """Raised when the byte stream cannot be decoded."""
    code = "CORRUPT_INPUT"


class DetectionAdapterFailure(EnrichmentError):
    """Raised when the detection adapter is unavailable or rejects the input."""
    code = "DETECTION_FAILED"
    retryable = True


class EnrichmentCancelled(EnrichmentError):
    """Raised when an in-flight enrichment run is cancelled."""
    code = "CANCELLED"


class InvalidQuery(DocuSightError, ValueError):
    """Raised when a search predicate is structurally malformed."""


class MergeConflict(DocuSightError):
    """Raised when a merge targets a retired, unknown or identical person."""


class QueueFault(DocuSightError):
    """Raised when the batch queue itself cannot schedule a job."""


class UnknownEntity(DocuSightError, KeyError):
    """Raised when an asset, person, collection or job id is not known."""

    def __str__(self):
        return str(self.args[0]) if self.args else "unknown entity"
