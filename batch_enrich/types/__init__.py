"""Type definitions and Pydantic models."""

from .checkpoint import Checkpoint, CheckpointStats, FailedItem
from .errors import (
    BatchEnrichError,
    CheckpointError,
    CheckpointLoadError,
    CheckpointWriteError,
    CircuitOpenError,
    ConfigMismatchError,
    ProviderError,
)
from .incremental import IncrementalState, RunStats
from .items import WorkItem
from .records import (
    ENRICHMENT_KINDS,
    EnrichmentKind,
    EnrichmentRecord,
    ImageAnalysisRecord,
    LinkContextRecord,
    PdfSummaryRecord,
    TranscriptionRecord,
    TranscriptSegment,
    VideoMetadataRecord,
    parse_record,
)

__all__ = [
    # Records
    "EnrichmentRecord",
    "EnrichmentKind",
    "ENRICHMENT_KINDS",
    "ImageAnalysisRecord",
    "TranscriptionRecord",
    "TranscriptSegment",
    "PdfSummaryRecord",
    "VideoMetadataRecord",
    "LinkContextRecord",
    "parse_record",
    # Items
    "WorkItem",
    # Checkpoint
    "Checkpoint",
    "CheckpointStats",
    "FailedItem",
    # Incremental
    "IncrementalState",
    "RunStats",
    # Errors
    "BatchEnrichError",
    "ConfigMismatchError",
    "CheckpointError",
    "CheckpointWriteError",
    "CheckpointLoadError",
    "ProviderError",
    "CircuitOpenError",
]
