"""Execution orchestration for enrichment runs."""

from .enrichment_runner import (
    EnrichmentBinding,
    EnrichmentRunner,
    ItemOutcome,
    OutcomeStatus,
    RunnerConfig,
    RunnerResult,
    RunState,
    UNROUTED_KIND,
)
from .idempotency import (
    add_enrichments_idempotent,
    add_idempotent,
    clear_enrichment_by_kind,
    dedupe,
    get_enrichment_by_kind,
    has_all_enrichments,
    should_skip,
)
from .progress_tracker import KindProgress, ProgressCallbacks, ProgressSnapshot, ProgressTracker
from .rate_limiter import (
    RateLimitConfig,
    RateLimiter,
    RateLimitState,
    RetryDecision,
    circuit_transition,
    create_rate_limiter,
    is_5xx,
    is_retryable_status,
)

__all__ = [
    # Runner
    "EnrichmentBinding",
    "EnrichmentRunner",
    "ItemOutcome",
    "OutcomeStatus",
    "RunnerConfig",
    "RunnerResult",
    "RunState",
    "UNROUTED_KIND",
    # Idempotency
    "add_enrichments_idempotent",
    "add_idempotent",
    "clear_enrichment_by_kind",
    "dedupe",
    "get_enrichment_by_kind",
    "has_all_enrichments",
    "should_skip",
    # Progress
    "KindProgress",
    "ProgressCallbacks",
    "ProgressSnapshot",
    "ProgressTracker",
    # Rate Limiter
    "RateLimitConfig",
    "RateLimiter",
    "RateLimitState",
    "RetryDecision",
    "circuit_transition",
    "create_rate_limiter",
    "is_5xx",
    "is_retryable_status",
]
