"""Progress bookkeeping for enrichment runs.

Tracks completed items, a rolling window of per-item durations for ETA
estimates, per-kind totals and counts, and the "checkpoint now" signal.
Pure bookkeeping: no retries, no I/O, and no exception ever escapes,
including from observer callbacks.
"""

import logging
import math
from collections import deque
from dataclasses import dataclass, field
from typing import Hashable, Optional

from ..core.clock import Clock, get_clock

logger = logging.getLogger(__name__)

DEFAULT_MAX_SAMPLES = 10


class ProgressCallbacks:
    """Observational hooks; every method is a safe no-op by default."""

    def on_run_start(self, total: int, already_processed: int) -> None:
        pass

    def on_kind_total(self, kind: str, total: int) -> None:
        pass

    def on_item_start(self, kind: str, label: str) -> None:
        pass

    def on_item_complete(self, kind: str) -> None:
        pass

    def on_checkpoint_start(self) -> None:
        pass

    def on_checkpoint_complete(self) -> None:
        pass


@dataclass
class KindProgress:
    """Completed and expected item counts for one enrichment kind."""

    completed: int = 0
    total: int = 0


@dataclass(frozen=True)
class ProgressSnapshot:
    """Point-in-time view of run progress."""

    processed: int
    total: int
    percentage: int
    average_duration_ms: float
    eta_seconds: int
    is_checkpointing: bool
    by_kind: dict[str, KindProgress] = field(default_factory=dict)


class ProgressTracker:
    """Counts completions, estimates time remaining, and signals checkpoints."""

    def __init__(
        self,
        total: int,
        checkpoint_interval: int = 100,
        callbacks: Optional[ProgressCallbacks] = None,
        clock: Optional[Clock] = None,
        max_samples: int = DEFAULT_MAX_SAMPLES,
        initial_processed: int = 0,
    ):
        """Initialize the tracker.

        Args:
            total: Total items in the batch.
            checkpoint_interval: Completions between checkpoint signals.
            callbacks: Progress observer. No-op if None.
            clock: Time source for durations.
            max_samples: Size of the rolling duration window.
            initial_processed: Items already done before this run (resume).
        """
        self._total = total
        self._checkpoint_interval = max(1, checkpoint_interval)
        self._callbacks = callbacks or ProgressCallbacks()
        self._clock = clock or get_clock()
        self._durations: deque[float] = deque(maxlen=max_samples)
        self._starts: dict[Hashable, float] = {}
        self._last_start: Optional[float] = None
        self._processed = initial_processed
        self._since_checkpoint = 0
        self._is_checkpointing = False
        self._kinds: dict[str, KindProgress] = {}

    def _emit(self, hook: str, *args) -> None:
        try:
            getattr(self._callbacks, hook)(*args)
        except Exception as e:
            logger.warning(f"Progress callback {hook} failed: {e}")

    def begin(self) -> None:
        """Announce the batch size and how much of it is already done."""
        self._emit("on_run_start", self._total, self._processed)

    def set_kind_total(self, kind: str, total: int) -> None:
        """Set the number of items expected for one kind."""
        self._kinds.setdefault(kind, KindProgress()).total = total
        self._emit("on_kind_total", kind, total)

    def increment_kind(self, kind: str, count: int = 1) -> None:
        self._kinds.setdefault(kind, KindProgress()).completed += count

    def start(self, kind: str, label: str, key: Optional[Hashable] = None) -> None:
        """Mark the start of one unit of work.

        ``key`` identifies the unit for duration tracking and defaults to
        ``label``; pass a unique key when labels can repeat.
        """
        now = self._clock.now_ms()
        self._starts[label if key is None else key] = now
        self._last_start = now
        self._emit("on_item_start", kind, label)

    def complete(self, kind: str, key: Optional[Hashable] = None) -> None:
        """Mark a unit of work complete and record its duration."""
        started = self._starts.pop(key, None) if key is not None else None
        if started is None:
            started = self._last_start
        if started is not None:
            self._durations.append(max(0.0, self._clock.now_ms() - started))

        self._processed += 1
        self._since_checkpoint += 1
        self.increment_kind(kind)
        self._emit("on_item_complete", kind)

    def average_duration(self) -> float:
        """Mean of the rolling duration window in ms (0 if empty)."""
        if not self._durations:
            return 0.0
        return sum(self._durations) / len(self._durations)

    def eta_seconds(self) -> int:
        remaining = max(0, self._total - self._processed)
        return math.ceil(remaining * self.average_duration() / 1000.0)

    def should_checkpoint(self) -> bool:
        return self._since_checkpoint >= self._checkpoint_interval

    def start_checkpoint_write(self) -> None:
        self._is_checkpointing = True
        self._emit("on_checkpoint_start")

    def complete_checkpoint_write(self) -> None:
        """Acknowledge a checkpoint write; resets the interval counter."""
        self._is_checkpointing = False
        self._since_checkpoint = 0
        self._emit("on_checkpoint_complete")

    def progress(self) -> ProgressSnapshot:
        percentage = round(self._processed / self._total * 100) if self._total else 100
        return ProgressSnapshot(
            processed=self._processed,
            total=self._total,
            percentage=percentage,
            average_duration_ms=self.average_duration(),
            eta_seconds=self.eta_seconds(),
            is_checkpointing=self._is_checkpointing,
            by_kind={
                kind: KindProgress(counts.completed, counts.total)
                for kind, counts in self._kinds.items()
            },
        )
