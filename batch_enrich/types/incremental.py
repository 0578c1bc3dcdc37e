"""Incremental enrichment state models."""

from datetime import datetime
from typing import Optional

from pydantic import Field

from .records import CamelModel, utc_now

INCREMENTAL_STATE_VERSION = "1.0"


class RunStats(CamelModel):
    """Counters from the most recent incremental run."""

    processed_count: int = 0
    failed_count: int = 0
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None


class IncrementalState(CamelModel):
    """GUIDs already enriched, carried between runs over a growing dataset."""

    version: str = Field(default=INCREMENTAL_STATE_VERSION)
    last_enriched_at: datetime = Field(default_factory=utc_now)
    total_items: int = 0
    enriched_guids: list[str] = Field(default_factory=list)
    config_hash: str = ""
    enrichment_stats: Optional[RunStats] = None
