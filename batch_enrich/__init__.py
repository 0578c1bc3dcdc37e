"""Resumable, rate-limited batch enrichment engine."""

__version__ = "0.1.0"
