"""Exception taxonomy for enrichment runs.

Provider failures are per-item data and never escape the runner loop.
Configuration and storage failures abort the run.
"""

from typing import Any, Optional

import httpx

# Synthetic status for failures that carry no HTTP status (malformed responses)
STATUS_UNKNOWN = 0
# Status assigned to timeouts so they classify like a gateway timeout
STATUS_TIMEOUT = 504


class BatchEnrichError(Exception):
    """Base class for all batch enrichment errors."""


class ConfigMismatchError(BatchEnrichError):
    """Checkpoint was written under a different configuration."""

    def __init__(self, checkpoint_hash: str, current_hash: str):
        self.checkpoint_hash = checkpoint_hash
        self.current_hash = current_hash
        super().__init__(
            f"Config mismatch: checkpoint was created with config {checkpoint_hash[:8]}, "
            f"but current config is {current_hash[:8]}. "
            "Cannot resume with different configuration."
        )


class CheckpointError(BatchEnrichError):
    """Checkpoint storage failure."""


class CheckpointWriteError(CheckpointError):
    """Checkpoint could not be written."""


class CheckpointLoadError(CheckpointError):
    """Checkpoint exists but could not be read or parsed."""


class ProviderError(BatchEnrichError):
    """Failure reported by an external enrichment provider.

    The status/headers shape is what the rate limiter's retry strategy
    consumes.
    """

    def __init__(
        self,
        status: int,
        message: str = "",
        headers: Optional[dict[str, Any]] = None,
    ):
        self.status = status
        self.headers = dict(headers or {})
        self.message = message or f"provider returned status {status}"
        super().__init__(self.message)

    @classmethod
    def from_response(cls, response: httpx.Response) -> "ProviderError":
        """Build from an httpx response."""
        return cls(
            status=response.status_code,
            message=response.text[:500] or response.reason_phrase,
            headers=dict(response.headers),
        )

    @classmethod
    def from_exception(cls, exc: BaseException) -> "ProviderError":
        """Normalize an arbitrary exception raised by an enrichment function.

        Timeouts classify as retryable 504s; anything unrecognized is treated
        as a malformed response and is not retried.
        """
        if isinstance(exc, ProviderError):
            return exc
        if isinstance(exc, httpx.HTTPStatusError):
            return cls.from_response(exc.response)
        if isinstance(exc, (httpx.TimeoutException, TimeoutError)):
            return cls(STATUS_TIMEOUT, f"timeout: {exc}")
        return cls(STATUS_UNKNOWN, f"{type(exc).__name__}: {exc}")

    @property
    def reason(self) -> str:
        if self.status == STATUS_UNKNOWN:
            return "exception"
        return f"http_{self.status}"


class CircuitOpenError(ProviderError):
    """Synthetic fail-fast outcome while a provider's circuit is open."""

    def __init__(self, provider: str):
        super().__init__(STATUS_UNKNOWN, f"circuit open for provider {provider}")
        self.provider = provider

    @property
    def reason(self) -> str:
        return "circuit_open"
