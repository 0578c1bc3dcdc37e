"""Checkpoint snapshot models."""

from datetime import datetime

from pydantic import Field

from .records import CamelModel, utc_now

CHECKPOINT_VERSION = "1.0"


class FailedItem(CamelModel):
    """An item whose enrichment failed during the run."""

    index: int
    guid: str
    kind: str
    error: str


class CheckpointStats(CamelModel):
    """Aggregate counters for a run."""

    processed_count: int = 0
    failed_count: int = 0
    enrichments_by_kind: dict[str, int] = Field(default_factory=dict)


class Checkpoint(CamelModel):
    """Immutable snapshot of how far a batch run has progressed."""

    version: str = Field(default=CHECKPOINT_VERSION)
    config_hash: str
    last_processed_index: int
    total_processed: int
    total_failed: int
    stats: CheckpointStats = Field(default_factory=CheckpointStats)
    failed_items: list[FailedItem] = Field(default_factory=list)
    completed: bool = Field(default=False, description="True only for the end-of-run flush")
    created_at: datetime = Field(default_factory=utc_now)
