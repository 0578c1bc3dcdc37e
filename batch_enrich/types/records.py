"""Enrichment record models.

Records form a tagged union keyed by ``kind``; each variant carries its own
payload fields on top of the shared provenance fields.
"""

import re
from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator
from pydantic.alias_generators import to_camel

_VERSION_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")

Provider = Literal[
    "gemini",
    "firecrawl",
    "local",
    "youtube",
    "spotify",
    "twitter",
    "instagram",
    "generic",
]


def utc_now() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def today_version() -> str:
    """Record version stamp for today (YYYY-MM-DD)."""
    return utc_now().strftime("%Y-%m-%d")


class CamelModel(BaseModel):
    """Base model that serializes with camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class BaseRecord(CamelModel):
    """Fields shared by every enrichment record."""

    provider: Provider = Field(description="Provider that produced the record")
    model: Optional[str] = Field(default=None, description="Model identifier")
    version: str = Field(default_factory=today_version, description="YYYY-MM-DD")
    created_at: datetime = Field(default_factory=utc_now)
    error: Optional[str] = Field(default=None, description="Provider error, if any")
    used_fallback: Optional[bool] = Field(default=None)

    @field_validator("version")
    @classmethod
    def _check_version(cls, value: str) -> str:
        if not _VERSION_PATTERN.match(value):
            raise ValueError("version must be YYYY-MM-DD")
        return value

    @field_validator("created_at")
    @classmethod
    def _check_utc(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            raise ValueError("createdAt must be timezone-aware (UTC)")
        return value.astimezone(timezone.utc)

    @property
    def is_error(self) -> bool:
        return self.error is not None


class ImageAnalysisRecord(BaseRecord):
    kind: Literal["image_analysis"] = "image_analysis"
    vision_summary: Optional[str] = None
    short_description: Optional[str] = None


class TranscriptSegment(CamelModel):
    time: str
    speaker: str
    content: str


class TranscriptionRecord(BaseRecord):
    kind: Literal["transcription"] = "transcription"
    transcription: Optional[str] = None
    speakers: list[str] = Field(default_factory=list)
    timestamps: list[TranscriptSegment] = Field(default_factory=list)


class PdfSummaryRecord(BaseRecord):
    kind: Literal["pdf_summary"] = "pdf_summary"
    pdf_summary: Optional[str] = None


class VideoMetadataRecord(BaseRecord):
    kind: Literal["video_metadata"] = "video_metadata"
    filename: Optional[str] = None
    size: Optional[int] = None
    duration: Optional[float] = None
    analyzed: bool = False
    note: Optional[str] = None


class LinkContextRecord(BaseRecord):
    kind: Literal["link_context"] = "link_context"
    url: Optional[str] = None
    title: Optional[str] = None
    summary: Optional[str] = None
    failed_providers: list[str] = Field(default_factory=list)


EnrichmentRecord = Annotated[
    Union[
        ImageAnalysisRecord,
        TranscriptionRecord,
        PdfSummaryRecord,
        VideoMetadataRecord,
        LinkContextRecord,
    ],
    Field(discriminator="kind"),
]

EnrichmentKind = Literal[
    "image_analysis",
    "transcription",
    "pdf_summary",
    "video_metadata",
    "link_context",
]

ENRICHMENT_KINDS: tuple[str, ...] = (
    "image_analysis",
    "transcription",
    "pdf_summary",
    "video_metadata",
    "link_context",
)

_record_adapter: TypeAdapter[EnrichmentRecord] = TypeAdapter(EnrichmentRecord)


def parse_record(data: dict[str, Any]) -> EnrichmentRecord:
    """Validate a dict into the matching record variant."""
    return _record_adapter.validate_python(data)
