"""Per-provider rate limiter with retry classification and circuit breaker.

Three independent policies share one state object:
- pacing: minimum delay between consecutive calls
- failure response: retry/backoff decision per provider response
- sustained outage: circuit breaker that fails fast after N consecutive
  failures and closes again after a cooldown

Instances never share state; the runner holds one per provider binding.
"""

import asyncio
import logging
import random
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Mapping, Optional

from ..core.clock import Clock, get_clock
from ..types.errors import ProviderError

logger = logging.getLogger(__name__)

JITTER_FRACTION = 0.25


@dataclass(frozen=True)
class RateLimitConfig:
    """Immutable per-run rate limit settings (milliseconds)."""

    rate_limit_delay_ms: float = 1000
    max_retries: int = 3
    circuit_breaker_threshold: int = 5
    circuit_breaker_reset_ms: float = 60000

    def __post_init__(self) -> None:
        if self.rate_limit_delay_ms < 0:
            raise ValueError("rate_limit_delay_ms must be non-negative")
        if self.max_retries < 0:
            raise ValueError("max_retries must be non-negative")
        if self.circuit_breaker_threshold < 1:
            raise ValueError("circuit_breaker_threshold must be >= 1")
        if self.circuit_breaker_reset_ms < 0:
            raise ValueError("circuit_breaker_reset_ms must be non-negative")


@dataclass(frozen=True)
class RateLimitState:
    """Rate limiter state; lives for one process run and is never persisted."""

    last_call_time: Optional[float] = None
    consecutive_failures: int = 0
    circuit_open: bool = False
    circuit_opened_at: Optional[float] = None


@dataclass(frozen=True)
class RetryDecision:
    """Outcome of classifying a provider response."""

    should_retry: bool
    delay_ms: float = 0.0


CLOSED_STATE = RateLimitState()


def is_5xx(status: int) -> bool:
    return 500 <= status < 600


def is_retryable_status(status: int) -> bool:
    """429 and any 5xx are retryable."""
    return status == 429 or is_5xx(status)


def circuit_transition(
    state: RateLimitState, now_ms: float, reset_ms: float
) -> tuple[RateLimitState, bool]:
    """Evaluate the circuit at ``now_ms``.

    This is not a pure getter: an open circuit whose cooldown has elapsed is
    closed and its failure counter cleared, so checking the circuit is also
    what lets the first call after the cooldown through.

    Returns:
        Tuple of (new state, whether the circuit is open).
    """
    if not state.circuit_open:
        return state, False

    opened_at = state.circuit_opened_at if state.circuit_opened_at is not None else 0.0
    if now_ms - opened_at >= reset_ms:
        return replace(state, consecutive_failures=0, circuit_open=False, circuit_opened_at=None), False

    return state, True


def _get_header(headers: Optional[Mapping[str, Any]], name: str) -> Any:
    if not headers:
        return None
    if name in headers:
        return headers[name]
    lowered = name.lower()
    for key, value in headers.items():
        if key.lower() == lowered:
            return value
    return None


class RateLimiter:
    """Admission control, retry policy and circuit breaker for one provider."""

    def __init__(
        self,
        config: Optional[RateLimitConfig] = None,
        clock: Optional[Clock] = None,
        rng: Optional[random.Random] = None,
        name: str = "default",
    ):
        """Initialize the rate limiter.

        Args:
            config: Rate limit settings. Uses defaults if None.
            clock: Time source. Uses the system clock if None.
            rng: Random source for backoff jitter.
            name: Provider binding name, used in log messages.
        """
        self._config = config or RateLimitConfig()
        self._clock = clock or get_clock()
        self._rng = rng or random.Random()
        self._name = name
        self._state = CLOSED_STATE
        self._pace_lock = asyncio.Lock()

    @property
    def name(self) -> str:
        return self._name

    # Pacing

    def should_delay(self) -> float:
        """Milliseconds to wait before the next call (0 on the first call)."""
        if self._state.last_call_time is None:
            return 0.0

        elapsed = self._clock.now_ms() - self._state.last_call_time
        return max(0.0, self._config.rate_limit_delay_ms - elapsed)

    def record_call(self) -> None:
        """Stamp the call time; call immediately before issuing the request."""
        self._state = replace(self._state, last_call_time=self._clock.now_ms())

    async def pace(self) -> None:
        """Wait out the pacing delay, then record the call.

        Serialized so concurrent callers sharing this provider are spaced
        correctly.
        """
        async with self._pace_lock:
            delay = self.should_delay()
            if delay > 0:
                logger.debug(f"[{self._name}] pacing delay {delay:.0f}ms")
                await self._clock.sleep_ms(delay)
            self.record_call()

    # Retry policy

    def _exponential_backoff(self, attempt_number: int) -> float:
        base_ms = (2**attempt_number) * 1000.0
        jitter = (self._rng.random() - 0.5) * 2 * JITTER_FRACTION * base_ms
        return base_ms + jitter

    def _parse_retry_after(self, value: Any) -> Optional[float]:
        """Convert a Retry-After value to milliseconds, or None if unusable."""
        if value is None:
            return None

        if isinstance(value, bool):
            return None
        if isinstance(value, (int, float)):
            seconds = float(value)
        else:
            try:
                seconds = float(int(str(value).strip()))
            except ValueError:
                seconds = None
        if seconds is not None:
            # Negative delta-seconds are invalid in either form
            return seconds * 1000.0 if seconds >= 0 else None

        text = str(value).strip()

        try:
            retry_at = parsedate_to_datetime(text)
        except (TypeError, ValueError, IndexError):
            return None
        if retry_at is None:
            return None
        if retry_at.tzinfo is None:
            retry_at = retry_at.replace(tzinfo=timezone.utc)

        now = datetime.fromtimestamp(self._clock.now_ms() / 1000.0, tz=timezone.utc)
        return max(0.0, (retry_at - now).total_seconds() * 1000.0)

    def retry_strategy(
        self,
        response: ProviderError,
        attempt_number: int,
    ) -> RetryDecision:
        """Decide whether and how long to back off after a provider response.

        A Retry-After header always wins over exponential backoff.

        Args:
            response: Anything with ``status`` and ``headers`` attributes.
            attempt_number: 1-based attempt that produced the response.
        """
        status = response.status
        if not is_retryable_status(status):
            return RetryDecision(should_retry=False)

        retry_after = self._parse_retry_after(_get_header(response.headers, "Retry-After"))
        if retry_after is not None:
            return RetryDecision(should_retry=True, delay_ms=retry_after)

        return RetryDecision(should_retry=True, delay_ms=self._exponential_backoff(attempt_number))

    def should_retry_attempt(self, attempt_number: int) -> bool:
        return attempt_number <= self._config.max_retries

    # Circuit breaker

    def is_circuit_open(self) -> bool:
        """Check the circuit; may close it as a side effect (see circuit_transition)."""
        was_open = self._state.circuit_open
        self._state, is_open = circuit_transition(
            self._state, self._clock.now_ms(), self._config.circuit_breaker_reset_ms
        )
        if was_open and not is_open:
            logger.info(f"[{self._name}] circuit breaker reset after cooldown")
        return is_open

    def record_failure(self) -> None:
        failures = self._state.consecutive_failures + 1
        self._state = replace(self._state, consecutive_failures=failures)

        if failures == self._config.circuit_breaker_threshold:
            self._state = replace(
                self._state, circuit_open=True, circuit_opened_at=self._clock.now_ms()
            )
            logger.warning(
                f"[{self._name}] circuit breaker opened after {failures} consecutive failures"
            )

    def record_success(self) -> None:
        self._state = replace(
            self._state, consecutive_failures=0, circuit_open=False, circuit_opened_at=None
        )

    def reset_circuit_breaker(self) -> None:
        self._state = replace(
            self._state, consecutive_failures=0, circuit_open=False, circuit_opened_at=None
        )

    # Introspection

    def get_state(self) -> RateLimitState:
        return self._state

    def get_config(self) -> RateLimitConfig:
        return self._config

    def reset(self) -> None:
        """Reset all state, including pacing."""
        self._state = CLOSED_STATE


def create_rate_limiter(
    clock: Optional[Clock] = None,
    name: str = "default",
    **overrides: Any,
) -> RateLimiter:
    """Create a rate limiter with default settings plus overrides."""
    return RateLimiter(RateLimitConfig(**overrides), clock=clock, name=name)
