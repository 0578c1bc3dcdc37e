"""Shared fixtures: a virtual clock so no test waits on real time."""

import asyncio
from datetime import datetime, timezone
from typing import Optional

import pytest

from batch_enrich.types.records import ImageAnalysisRecord

START_MS = 1_700_000_000_000.0


class FakeClock:
    """Virtual clock; sleeping advances time instantly."""

    def __init__(self, start_ms: float = START_MS):
        self.now = start_ms
        self.sleeps: list[float] = []

    def now_ms(self) -> float:
        return self.now

    async def sleep_ms(self, delay_ms: float) -> None:
        self.sleeps.append(delay_ms)
        self.now += max(0.0, delay_ms)
        await asyncio.sleep(0)

    def advance(self, delay_ms: float) -> None:
        self.now += delay_ms


@pytest.fixture
def clock():
    return FakeClock()


def image_record(
    created_at: Optional[datetime] = None,
    error: Optional[str] = None,
    summary: str = "a cat on a sofa",
) -> ImageAnalysisRecord:
    return ImageAnalysisRecord(
        provider="gemini",
        model="gemini-1.5-pro",
        version="2025-01-15",
        created_at=created_at or datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc),
        error=error,
        vision_summary=summary,
    )


@pytest.fixture
def make_image_record():
    return image_record
