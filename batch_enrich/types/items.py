"""Work item model."""

from typing import Any

from pydantic import Field

from .records import CamelModel, EnrichmentRecord


class WorkItem(CamelModel):
    """One unit of work, owned by the caller.

    The runner only reads and replaces ``enrichment``; ``payload`` is opaque
    data for the enrichment functions (media path, mime type, text, ...).
    """

    guid: str = Field(description="Opaque item identifier")
    payload: dict[str, Any] = Field(default_factory=dict)
    enrichment: list[EnrichmentRecord] = Field(default_factory=list)

    @property
    def label(self) -> str:
        return self.payload.get("filename") or self.guid
