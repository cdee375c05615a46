"""Retry with exponential backoff, per-provider circuit breakers, and their composition.

Two composable pieces:

- :func:`retry_async` executes an async operation under a :class:`RetryPolicy`.
  Delays follow ``min(base * 2**(attempt - 1), max_delay)``; only errors
  accepted by the policy's predicate are retried (server-class and
  rate-limited provider errors by default, never auth or client errors).
  Exhausting attempts re-raises the last error unchanged.
- :class:`CircuitBreaker` fails fast with :class:`CircuitOpenError` while a
  provider is unhealthy and admits exactly one trial call once the recovery
  timeout has elapsed.

:class:`ResilientExecutor` composes them: the breaker wraps retry, which
wraps the provider call.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TypeVar

from calsync.core.metrics import SyncMetrics
from calsync.errors import CircuitOpenError, ProviderError, ProviderTimeoutError
from calsync.models import utcnow

logger = logging.getLogger(__name__)

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]
Clock = Callable[[], datetime]

DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_BASE_DELAY_SECONDS = 0.1
DEFAULT_MAX_DELAY_SECONDS = 2.0
DEFAULT_ATTEMPT_TIMEOUT_SECONDS = 30.0
DEFAULT_FAILURE_THRESHOLD = 5
DEFAULT_RECOVERY_TIMEOUT_SECONDS = 60.0


def is_retryable(exc: BaseException) -> bool:
    """Default retry predicate: server-class and rate-limited provider errors."""
    return isinstance(exc, ProviderError) and exc.retryable


# ---------------------------------------------------------------------------
# Retry
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry policy with capped exponential backoff (delays in seconds)."""

    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    base_delay: float = DEFAULT_BASE_DELAY_SECONDS
    max_delay: float = DEFAULT_MAX_DELAY_SECONDS
    attempt_timeout: float | None = DEFAULT_ATTEMPT_TIMEOUT_SECONDS
    retry_predicate: Callable[[BaseException], bool] = is_retryable

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must be non-negative")
        if self.max_delay < self.base_delay:
            raise ValueError("max_delay must be >= base_delay")
        if self.attempt_timeout is not None and self.attempt_timeout <= 0:
            raise ValueError("attempt_timeout must be positive")

    def delay_for(self, attempt: int) -> float:
        """Backoff before the retry that follows failed attempt number *attempt* (1-based)."""
        if attempt < 1:
            raise ValueError("attempt is 1-based")
        # Cap the exponent so huge attempt numbers never overflow.
        exponent = min(attempt - 1, 62)
        return min(self.base_delay * (2**exponent), self.max_delay)

    def wait_for(self, attempt: int, exc: BaseException) -> float:
        """Delay after *exc*, honouring a provider's Retry-After up to ``max_delay``."""
        delay = self.delay_for(attempt)
        retry_after = getattr(exc, "retry_after", None)
        if retry_after is not None and retry_after > delay:
            delay = min(float(retry_after), self.max_delay)
        return delay


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    name: str = "operation",
    provider: str | None = None,
    sleep: Sleep = asyncio.sleep,
    on_retry: Callable[[int, BaseException, float], None] | None = None,
) -> T:
    """Run *operation* under *policy*.

    Each attempt is bounded by ``policy.attempt_timeout``; a timeout surfaces
    as :class:`ProviderTimeoutError` (server class, so retryable).  The sleep
    between attempts is awaited through *sleep* and is therefore cancellable.
    Cancellation is never retried.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            if policy.attempt_timeout is None:
                return await operation()
            try:
                return await asyncio.wait_for(operation(), timeout=policy.attempt_timeout)
            except TimeoutError as exc:
                raise ProviderTimeoutError(
                    provider=provider or name, timeout=policy.attempt_timeout
                ) from exc
        except Exception as exc:
            if attempt >= policy.max_attempts or not policy.retry_predicate(exc):
                raise
            delay = policy.wait_for(attempt, exc)
            logger.warning(
                "%s failed (attempt %d/%d, provider=%s, error=%s); retrying in %.2fs",
                name,
                attempt,
                policy.max_attempts,
                provider,
                type(exc).__name__,
                delay,
            )
            if on_retry is not None:
                on_retry(attempt, exc, delay)
            await sleep(delay)


# ---------------------------------------------------------------------------
# Circuit breaker
# ---------------------------------------------------------------------------


class CircuitState(enum.StrEnum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class BreakerHealth(enum.StrEnum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


@dataclass(frozen=True)
class BreakerStats:
    """Point-in-time view of a breaker's counters."""

    name: str
    state: CircuitState
    failure_count: int
    total_calls: int
    total_successes: int
    total_failures: int
    rejected_calls: int
    last_failure_at: datetime | None
    last_success_at: datetime | None
    next_attempt: datetime | None


def counts_as_failure(exc: BaseException) -> bool:
    """Errors that indicate the provider itself is unhealthy."""
    return isinstance(exc, ProviderError) and exc.retryable


class CircuitBreaker:
    """Per-provider circuit breaker: CLOSED -> OPEN -> HALF_OPEN -> CLOSED.

    ``failure_threshold`` consecutive counted failures open the circuit until
    ``now + recovery_timeout``.  Errors rejected by *failure_predicate* (auth
    or client errors) show the provider answered, so they count as successes
    for breaker purposes.
    """

    def __init__(
        self,
        name: str,
        *,
        failure_threshold: int = DEFAULT_FAILURE_THRESHOLD,
        recovery_timeout: float = DEFAULT_RECOVERY_TIMEOUT_SECONDS,
        clock: Clock = utcnow,
        failure_predicate: Callable[[BaseException], bool] = counts_as_failure,
        on_state_change: Callable[[str, CircuitState, CircuitState], None] | None = None,
    ) -> None:
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        if recovery_timeout < 0:
            raise ValueError("recovery_timeout must be non-negative")
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = timedelta(seconds=recovery_timeout)
        self._clock = clock
        self._failure_predicate = failure_predicate
        self._on_state_change = on_state_change

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._next_attempt: datetime | None = None
        self._trial_in_flight = False

        self._total_calls = 0
        self._total_successes = 0
        self._total_failures = 0
        self._rejected_calls = 0
        self._last_failure_at: datetime | None = None
        self._last_success_at: datetime | None = None

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    @property
    def next_attempt(self) -> datetime | None:
        return self._next_attempt

    async def call(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Run *operation* through the breaker."""
        self._admit()
        self._total_calls += 1
        try:
            result = await operation()
        except asyncio.CancelledError:
            # Neither outcome; a later caller may take the trial slot.
            self._trial_in_flight = False
            raise
        except Exception as exc:
            if self._failure_predicate(exc):
                self._record_failure()
            else:
                self._record_success()
            raise
        self._record_success()
        return result

    def _admit(self) -> None:
        if self._state is CircuitState.OPEN:
            assert self._next_attempt is not None
            if self._clock() < self._next_attempt:
                self._rejected_calls += 1
                raise CircuitOpenError(self.name, self._next_attempt)
            self._transition(CircuitState.HALF_OPEN)
            self._trial_in_flight = True
            return
        if self._state is CircuitState.HALF_OPEN:
            if self._trial_in_flight:
                self._rejected_calls += 1
                raise CircuitOpenError(self.name)
            self._trial_in_flight = True

    def _record_success(self) -> None:
        self._total_successes += 1
        self._last_success_at = self._clock()
        self._failure_count = 0
        if self._state is CircuitState.HALF_OPEN:
            self._trial_in_flight = False
            self._next_attempt = None
            self._transition(CircuitState.CLOSED)

    def _record_failure(self) -> None:
        self._total_failures += 1
        self._last_failure_at = self._clock()
        if self._state is CircuitState.HALF_OPEN:
            self._trial_in_flight = False
            self._open()
            return
        self._failure_count += 1
        if self._failure_count >= self.failure_threshold:
            self._open()

    def _open(self) -> None:
        self._next_attempt = self._clock() + self.recovery_timeout
        self._transition(CircuitState.OPEN)

    def _transition(self, new_state: CircuitState) -> None:
        old_state = self._state
        if old_state is new_state:
            return
        self._state = new_state
        logger.info("Circuit '%s' %s -> %s", self.name, old_state, new_state)
        if self._on_state_change is not None:
            self._on_state_change(self.name, old_state, new_state)

    def force_reset(self) -> None:
        """Close the circuit and clear failure state (operator action)."""
        self._failure_count = 0
        self._next_attempt = None
        self._trial_in_flight = False
        self._transition(CircuitState.CLOSED)

    def time_until_next_attempt(self) -> float:
        """Seconds until an open circuit admits a trial call (0 when not open)."""
        if self._state is not CircuitState.OPEN or self._next_attempt is None:
            return 0.0
        return max(0.0, (self._next_attempt - self._clock()).total_seconds())

    def health(self) -> BreakerHealth:
        if self._state is CircuitState.OPEN:
            return BreakerHealth.UNHEALTHY
        if self._state is CircuitState.HALF_OPEN or self._failure_count > 0:
            return BreakerHealth.DEGRADED
        return BreakerHealth.HEALTHY

    def stats(self) -> BreakerStats:
        return BreakerStats(
            name=self.name,
            state=self._state,
            failure_count=self._failure_count,
            total_calls=self._total_calls,
            total_successes=self._total_successes,
            total_failures=self._total_failures,
            rejected_calls=self._rejected_calls,
            last_failure_at=self._last_failure_at,
            last_success_at=self._last_success_at,
            next_attempt=self._next_attempt,
        )


class BreakerRegistry:
    """Lazily creates one :class:`CircuitBreaker` per provider identifier.

    State changes of every breaker are fanned out to the registered listeners.
    """

    def __init__(
        self,
        *,
        failure_threshold: int = DEFAULT_FAILURE_THRESHOLD,
        recovery_timeout: float = DEFAULT_RECOVERY_TIMEOUT_SECONDS,
        clock: Clock = utcnow,
        on_state_change: Callable[[str, CircuitState, CircuitState], None] | None = None,
    ) -> None:
        self._failure_threshold = failure_threshold
        self._recovery_timeout = recovery_timeout
        self._clock = clock
        self._listeners: list[Callable[[str, CircuitState, CircuitState], None]] = []
        if on_state_change is not None:
            self._listeners.append(on_state_change)
        self._breakers: dict[str, CircuitBreaker] = {}

    def add_listener(self, listener: Callable[[str, CircuitState, CircuitState], None]) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def _notify(self, name: str, old: CircuitState, new: CircuitState) -> None:
        for listener in self._listeners:
            listener(name, old, new)

    def get(self, provider: str) -> CircuitBreaker:
        breaker = self._breakers.get(provider)
        if breaker is None:
            breaker = CircuitBreaker(
                provider,
                failure_threshold=self._failure_threshold,
                recovery_timeout=self._recovery_timeout,
                clock=self._clock,
                on_state_change=self._notify,
            )
            self._breakers[provider] = breaker
        return breaker

    def stats(self) -> list[BreakerStats]:
        return [breaker.stats() for _, breaker in sorted(self._breakers.items())]

    def reset_all(self) -> None:
        for breaker in self._breakers.values():
            breaker.force_reset()


# ---------------------------------------------------------------------------
# Composition
# ---------------------------------------------------------------------------


class ResilientExecutor:
    """Run provider calls through retry wrapped by the provider's circuit breaker."""

    def __init__(
        self,
        *,
        retry_policy: RetryPolicy | None = None,
        breakers: BreakerRegistry | None = None,
        sleep: Sleep = asyncio.sleep,
        metrics: SyncMetrics | None = None,
    ) -> None:
        self.retry_policy = retry_policy or RetryPolicy()
        self._metrics = metrics or SyncMetrics()
        self.breakers = breakers or BreakerRegistry()
        self.breakers.add_listener(self._on_state_change)
        self._sleep = sleep

    def _on_state_change(self, name: str, old: CircuitState, new: CircuitState) -> None:
        self._metrics.record_circuit_transition(name, str(new))

    async def call(
        self,
        provider: str,
        operation_name: str,
        fn: Callable[[], Awaitable[T]],
        *,
        retry_policy: RetryPolicy | None = None,
    ) -> T:
        policy = retry_policy or self.retry_policy

        def _on_retry(attempt: int, exc: BaseException, delay: float) -> None:
            self._metrics.record_retry(provider, operation_name)

        async def _with_retry() -> T:
            return await retry_async(
                fn,
                policy,
                name=operation_name,
                provider=provider,
                sleep=self._sleep,
                on_retry=_on_retry,
            )

        return await self.breakers.get(provider).call(_with_retry)
