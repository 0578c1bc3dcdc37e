"""Enrichment runner: the resumable control loop over an ordered batch.

For each item the runner consults the idempotency guard, paces the call
through the item's provider rate limiter, invokes the caller-supplied
enrichment function with retries, records the outcome, and periodically
persists a checkpoint.

Per-item failures are data: they land in ``failed_items`` and the batch
always runs to completion. Only configuration mismatches and checkpoint
storage failures abort a run.

Items may be processed with bounded concurrency. Checkpoints only ever
reflect the contiguous prefix of completed items, and writes are serialized.
"""

import asyncio
import inspect
import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import AbstractSet, Any, Awaitable, Callable, Optional, Sequence, Union

from ..checkpoint.checkpoint_manager import (
    CheckpointManager,
    ResumeState,
    compute_config_hash,
    create_checkpoint,
)
from ..core.clock import Clock, get_clock
from ..core.config import EnrichConfig
from ..types.checkpoint import Checkpoint, CheckpointStats, FailedItem
from ..types.errors import STATUS_UNKNOWN, CheckpointWriteError, CircuitOpenError, ProviderError
from ..types.items import WorkItem
from ..types.records import EnrichmentRecord, parse_record
from .idempotency import add_idempotent, should_skip
from .progress_tracker import ProgressCallbacks, ProgressTracker
from .rate_limiter import RateLimitConfig, RateLimiter

logger = logging.getLogger(__name__)

UNROUTED_KIND = "none"

EnrichFn = Callable[[WorkItem], Union[EnrichmentRecord, Awaitable[EnrichmentRecord]]]


def _always(item: WorkItem) -> bool:
    return True


@dataclass
class EnrichmentBinding:
    """An enrichment function bound to the kind it produces.

    ``applies_to`` selects the items it handles; the first matching binding
    decides an item's kind. Each binding gets its own rate limiter.
    """

    kind: str
    provider: str
    enrich: EnrichFn
    applies_to: Callable[[WorkItem], bool] = _always
    rate_limit: Optional[RateLimitConfig] = None


class RunState(str, Enum):
    """Runner lifecycle states."""

    IDLE = "idle"
    RESUMING = "resuming"
    RUNNING = "running"
    CHECKPOINTING = "checkpointing"
    COMPLETED = "completed"
    INTERRUPTED = "interrupted"


class OutcomeStatus(str, Enum):
    ENRICHED = "enriched"
    SKIPPED = "skipped"
    UNROUTED = "unrouted"
    FAILED = "failed"


@dataclass
class ItemOutcome:
    """Result of processing one item."""

    index: int
    guid: str
    kind: str
    status: OutcomeStatus
    attempts: int = 0
    record: Optional[EnrichmentRecord] = None
    error: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.status == OutcomeStatus.FAILED


@dataclass
class RunnerConfig:
    """Configuration for the enrichment runner."""

    # Checkpointing
    checkpoint_dir: Path = Path("./.checkpoints")
    checkpoint_interval: int = 100

    # Execution
    force_refresh: bool = False
    max_concurrent_items: int = 1

    # Default rate limiting for bindings without their own
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)

    # Determinism-relevant settings; hashed to key the checkpoint
    hash_input: dict[str, Any] = field(default_factory=dict)

    # Progress
    progress_callbacks: Optional[ProgressCallbacks] = None

    # Called before each checkpoint is saved, e.g. to persist the items
    before_checkpoint: Optional[Callable[[], None]] = None

    @classmethod
    def from_enrich_config(
        cls,
        config: EnrichConfig,
        progress_callbacks: Optional[ProgressCallbacks] = None,
        before_checkpoint: Optional[Callable[[], None]] = None,
    ) -> "RunnerConfig":
        return cls(
            checkpoint_dir=config.checkpoint_dir,
            checkpoint_interval=config.checkpoint_interval,
            force_refresh=config.force_refresh,
            max_concurrent_items=config.max_concurrent_items,
            rate_limit=RateLimitConfig(
                rate_limit_delay_ms=config.rate_limit_delay_ms,
                max_retries=config.max_retries,
                circuit_breaker_threshold=config.circuit_breaker_threshold,
                circuit_breaker_reset_ms=config.circuit_breaker_reset_ms,
            ),
            hash_input=config.hash_input(),
            progress_callbacks=progress_callbacks,
            before_checkpoint=before_checkpoint,
        )


@dataclass
class RunnerResult:
    """Result of an enrichment run."""

    started_at: datetime = field(default_factory=datetime.now)
    completed_at: Optional[datetime] = None
    config_hash: str = ""
    start_index: int = 0
    resumed: bool = False
    outcomes: list[ItemOutcome] = field(default_factory=list)
    checkpoint: Optional[Checkpoint] = None
    checkpoints_written: int = 0

    @property
    def total_processed(self) -> int:
        return self.checkpoint.total_processed if self.checkpoint else 0

    @property
    def total_failed(self) -> int:
        return self.checkpoint.total_failed if self.checkpoint else 0

    @property
    def failed_items(self) -> list[FailedItem]:
        return list(self.checkpoint.failed_items) if self.checkpoint else []

    @property
    def success(self) -> bool:
        return self.checkpoint is not None and self.total_failed == 0

    @property
    def duration_seconds(self) -> float:
        if self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return 0.0

    def count(self, status: OutcomeStatus) -> int:
        return sum(1 for outcome in self.outcomes if outcome.status == status)


class _PrefixLedger:
    """Checkpoint counters advanced only along the contiguous completed prefix.

    Out-of-order completions are buffered until every earlier item is done.
    """

    def __init__(self, resume_state: ResumeState):
        checkpoint = resume_state.checkpoint
        self._config_hash = resume_state.config_hash
        self._next_index = resume_state.start_index
        self._pending: dict[int, ItemOutcome] = {}
        self.total_processed = checkpoint.total_processed if checkpoint else 0
        self.total_failed = checkpoint.total_failed if checkpoint else 0
        self.stats = (
            checkpoint.stats.model_copy(deep=True) if checkpoint else CheckpointStats()
        )
        self.failed_items: list[FailedItem] = list(resume_state.failed_items)

    @property
    def last_index(self) -> int:
        return self._next_index - 1

    def record(self, outcome: ItemOutcome) -> None:
        self._pending[outcome.index] = outcome
        while self._next_index in self._pending:
            self._apply(self._pending.pop(self._next_index))
            self._next_index += 1

    def _apply(self, outcome: ItemOutcome) -> None:
        if outcome.failed:
            self.total_failed += 1
            self.failed_items.append(
                FailedItem(
                    index=outcome.index,
                    guid=outcome.guid,
                    kind=outcome.kind,
                    error=outcome.error or "unknown error",
                )
            )
        else:
            self.total_processed += 1
            if outcome.status == OutcomeStatus.ENRICHED:
                by_kind = self.stats.enrichments_by_kind
                by_kind[outcome.kind] = by_kind.get(outcome.kind, 0) + 1

        self.stats.processed_count = self.total_processed
        self.stats.failed_count = self.total_failed

    def snapshot(self, completed: bool) -> Checkpoint:
        return create_checkpoint(
            last_processed_index=self.last_index,
            total_processed=self.total_processed,
            total_failed=self.total_failed,
            stats=self.stats,
            failed_items=self.failed_items,
            config_hash=self._config_hash,
            completed=completed,
        )


async def _invoke(enrich: EnrichFn, item: WorkItem) -> EnrichmentRecord:
    result = enrich(item)
    if inspect.isawaitable(result):
        result = await result
    if isinstance(result, dict):
        result = parse_record(result)
    return result


class EnrichmentRunner:
    """Runs enrichment bindings over an ordered batch of work items.

    Features:
    - Resume from checkpoint with config-hash verification
    - Idempotent merging (already-enriched kinds are skipped)
    - Per-provider pacing, retry with backoff, and circuit breaker
    - Periodic atomic checkpoints plus a final flush
    - Bounded concurrency with contiguous-prefix checkpointing
    - Checkpoint flush on cancellation
    """

    def __init__(
        self,
        bindings: Sequence[EnrichmentBinding],
        config: Optional[RunnerConfig] = None,
        clock: Optional[Clock] = None,
        checkpoint_manager: Optional[CheckpointManager] = None,
        limiters: Optional[dict[str, RateLimiter]] = None,
    ):
        """Initialize the runner.

        Args:
            bindings: Enrichment bindings, in routing priority order.
            config: Runner configuration.
            clock: Time source for pacing, backoff and durations.
            checkpoint_manager: Checkpoint store; derived from config if None.
            limiters: Rate limiters keyed by binding kind; one is created for
                every binding without an entry.
        """
        self._config = config or RunnerConfig()
        self._bindings = list(bindings)
        self._clock = clock or get_clock()
        self._config_hash = compute_config_hash(self._config.hash_input)
        self._checkpoints = checkpoint_manager or CheckpointManager(
            self._config.checkpoint_dir, self._config_hash
        )
        self._limiters: dict[str, RateLimiter] = dict(limiters or {})
        for binding in self._bindings:
            if binding.kind not in self._limiters:
                self._limiters[binding.kind] = RateLimiter(
                    binding.rate_limit or self._config.rate_limit,
                    clock=self._clock,
                    name=binding.provider,
                )
        self._writer_lock = asyncio.Lock()
        self._state = RunState.IDLE
        self._known_guids: frozenset[str] = frozenset()

    @property
    def state(self) -> RunState:
        return self._state

    @property
    def config_hash(self) -> str:
        return self._config_hash

    @property
    def checkpoint_manager(self) -> CheckpointManager:
        return self._checkpoints

    def get_limiter(self, kind: str) -> RateLimiter:
        return self._limiters[kind]

    def _set_state(self, state: RunState) -> None:
        if state != self._state:
            logger.debug(f"Runner state {self._state.value} -> {state.value}")
            self._state = state

    def _route(self, item: WorkItem) -> Optional[EnrichmentBinding]:
        for binding in self._bindings:
            if binding.applies_to(item):
                return binding
        return None

    def _kind_of(self, item: WorkItem) -> str:
        binding = self._route(item)
        return binding.kind if binding else UNROUTED_KIND

    async def run(
        self,
        items: Sequence[WorkItem],
        resume: bool = False,
        known_guids: Optional[AbstractSet[str]] = None,
    ) -> RunnerResult:
        """Enrich ``items`` in order.

        Args:
            items: Ordered work items; their enrichment lists are updated in place.
            resume: Continue from this configuration's checkpoint if one exists.
            known_guids: GUIDs enriched by an earlier incremental run; these
                items are skipped without calling any binding.

        Returns:
            RunnerResult with per-item outcomes and the final checkpoint.

        Raises:
            ConfigMismatchError: Resuming a checkpoint from another configuration.
            CheckpointError: A checkpoint could not be read or written.
        """
        if resume:
            self._set_state(RunState.RESUMING)
        resume_state = self._checkpoints.initialize(resume)

        result = RunnerResult(
            config_hash=self._config_hash,
            start_index=resume_state.start_index,
            resumed=resume_state.is_resuming,
        )
        ledger = _PrefixLedger(resume_state)
        tracker = ProgressTracker(
            total=len(items),
            checkpoint_interval=self._config.checkpoint_interval,
            callbacks=self._config.progress_callbacks,
            clock=self._clock,
            initial_processed=min(resume_state.start_index, len(items)),
        )

        self._known_guids = frozenset(known_guids or ())
        kind_totals = Counter(
            self._kind_of(items[index]) for index in range(resume_state.start_index, len(items))
        )
        for kind, count in kind_totals.items():
            tracker.set_kind_total(kind, count)
        tracker.begin()

        remaining = max(0, len(items) - resume_state.start_index)
        logger.info(
            f"Starting enrichment: {remaining} of {len(items)} items "
            f"(config {self._config_hash[:8]})"
        )
        self._set_state(RunState.RUNNING)

        try:
            if self._config.max_concurrent_items > 1:
                await self._run_concurrent(items, resume_state.start_index, tracker, ledger, result)
            else:
                for index in range(resume_state.start_index, len(items)):
                    outcome = await self._process_item(index, items[index], tracker)
                    ledger.record(outcome)
                    result.outcomes.append(outcome)
                    await self._maybe_checkpoint(tracker, ledger)
        except (asyncio.CancelledError, KeyboardInterrupt):
            logger.warning(
                f"Run interrupted; flushing checkpoint at index {ledger.last_index}"
            )
            self._set_state(RunState.INTERRUPTED)
            await self._write_checkpoint(tracker, ledger, completed=False)
            raise

        result.checkpoint = await self._write_checkpoint(tracker, ledger, completed=True)
        result.checkpoints_written = self._checkpoints.writes
        result.completed_at = datetime.now()
        self._set_state(RunState.COMPLETED)

        logger.info(
            f"Enrichment complete: {ledger.total_processed} processed, "
            f"{ledger.total_failed} failed"
        )
        return result

    def run_sync(
        self,
        items: Sequence[WorkItem],
        resume: bool = False,
        known_guids: Optional[AbstractSet[str]] = None,
    ) -> RunnerResult:
        """Synchronous wrapper for run()."""
        return asyncio.run(self.run(items, resume=resume, known_guids=known_guids))

    async def _run_concurrent(
        self,
        items: Sequence[WorkItem],
        start_index: int,
        tracker: ProgressTracker,
        ledger: _PrefixLedger,
        result: RunnerResult,
    ) -> None:
        semaphore = asyncio.Semaphore(self._config.max_concurrent_items)
        outcomes: dict[int, ItemOutcome] = {}

        async def run_single(index: int) -> None:
            async with semaphore:
                outcome = await self._process_item(index, items[index], tracker)
            outcomes[index] = outcome
            ledger.record(outcome)
            await self._maybe_checkpoint(tracker, ledger)

        tasks = [asyncio.create_task(run_single(i)) for i in range(start_index, len(items))]
        try:
            await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise
        finally:
            result.outcomes.extend(outcomes[i] for i in sorted(outcomes))

    async def _process_item(
        self, index: int, item: WorkItem, tracker: ProgressTracker
    ) -> ItemOutcome:
        binding = self._route(item)
        kind = binding.kind if binding else UNROUTED_KIND
        label = item.label

        tracker.start(kind, label, key=index)
        if binding is None:
            outcome = ItemOutcome(index, item.guid, kind, OutcomeStatus.UNROUTED)
        elif item.guid in self._known_guids:
            logger.debug(f"Skipping item {index} ({item.guid}): enriched in an earlier run")
            outcome = ItemOutcome(index, item.guid, kind, OutcomeStatus.SKIPPED)
        elif not self._config.force_refresh and should_skip(item.enrichment, kind):
            logger.debug(f"Skipping item {index} ({item.guid}): {kind} already present")
            outcome = ItemOutcome(index, item.guid, kind, OutcomeStatus.SKIPPED)
        else:
            outcome = await self._enrich_with_retry(index, item, binding)

        tracker.complete(kind, index)
        return outcome

    async def _enrich_with_retry(
        self, index: int, item: WorkItem, binding: EnrichmentBinding
    ) -> ItemOutcome:
        limiter = self._limiters[binding.kind]
        attempt = 1

        while True:
            await limiter.pace()

            if limiter.is_circuit_open():
                error = CircuitOpenError(binding.provider)
                logger.warning(f"Circuit open for {binding.provider}; failing item {index} fast")
                return self._failed(index, item, binding, error, attempt - 1)

            try:
                record = await _invoke(binding.enrich, item)
                if record.kind != binding.kind:
                    raise ProviderError(
                        STATUS_UNKNOWN,
                        f"expected {binding.kind} record, got {record.kind}",
                    )
            except Exception as exc:
                error = ProviderError.from_exception(exc)
                decision = limiter.retry_strategy(error, attempt)

                if decision.should_retry and limiter.should_retry_attempt(attempt):
                    logger.warning(
                        f"Item {index} ({binding.provider}) failed with {error.reason}; "
                        f"retry {attempt}/{limiter.get_config().max_retries} "
                        f"in {decision.delay_ms:.0f}ms"
                    )
                    await self._clock.sleep_ms(decision.delay_ms)
                    attempt += 1
                    continue

                limiter.record_failure()
                return self._failed(index, item, binding, error, attempt)

            limiter.record_success()
            item.enrichment = add_idempotent(item.enrichment, record, self._config.force_refresh)
            return ItemOutcome(
                index,
                item.guid,
                binding.kind,
                OutcomeStatus.ENRICHED,
                attempts=attempt,
                record=record,
            )

    def _failed(
        self,
        index: int,
        item: WorkItem,
        binding: EnrichmentBinding,
        error: ProviderError,
        attempts: int,
    ) -> ItemOutcome:
        message = f"{error.reason}: {error.message}"
        logger.warning(f"Failed to enrich item {index} ({item.guid}): {message}")
        return ItemOutcome(
            index,
            item.guid,
            binding.kind,
            OutcomeStatus.FAILED,
            attempts=attempts,
            error=message,
        )

    async def _maybe_checkpoint(self, tracker: ProgressTracker, ledger: _PrefixLedger) -> None:
        if tracker.should_checkpoint():
            await self._write_checkpoint(tracker, ledger, completed=False)

    def _before_save(self) -> None:
        """Run the pre-checkpoint hook so the checkpoint never claims unsaved work."""
        if self._config.before_checkpoint is None:
            return
        try:
            self._config.before_checkpoint()
        except OSError as e:
            raise CheckpointWriteError(f"Failed to persist items before checkpoint: {e}") from e

    async def _write_checkpoint(
        self, tracker: ProgressTracker, ledger: _PrefixLedger, completed: bool
    ) -> Checkpoint:
        async with self._writer_lock:
            previous_state = self._state
            self._set_state(RunState.CHECKPOINTING)
            tracker.start_checkpoint_write()

            checkpoint = ledger.snapshot(completed=completed)
            last_saved = self._checkpoints.last_saved_index
            floor = -1 if last_saved is None else last_saved
            if completed or checkpoint.last_processed_index > floor:
                self._before_save()
                self._checkpoints.save(checkpoint)
                snapshot = tracker.progress()
                logger.info(
                    f"Checkpoint written at index {checkpoint.last_processed_index} "
                    f"({snapshot.processed}/{snapshot.total}, ETA {snapshot.eta_seconds}s)"
                )

            tracker.complete_checkpoint_write()
            self._set_state(previous_state)
            return checkpoint
