"""Core infrastructure for the batch enrichment engine."""

from .clock import Clock, SystemClock, get_clock
from .config import EnrichConfig, get_config

__all__ = [
    # Config
    "EnrichConfig",
    "get_config",
    # Clock
    "Clock",
    "SystemClock",
    "get_clock",
]
