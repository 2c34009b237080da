"""
Retry with exponential backoff, and a circuit breaker for provider calls.

The orchestrator owns retries; provider adapters never retry on their
own. Only transient failures (timeouts, unreachable providers) are
retried, and never past the request deadline.
"""

import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional, TypeVar

from .errors import ProviderError, ProviderErrorKind

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """
    Exponential backoff policy.

    Args:
        max_attempts: Total attempts including the first (1 = no retries)
        base_delay: Delay before the first retry, in seconds
        max_delay: Upper bound on any single delay
        multiplier: Growth factor per attempt (delay *= multiplier)
    """
    max_attempts: int = 2
    base_delay: float = 0.2
    max_delay: float = 1.0
    multiplier: float = 2.0

    def delay_for(self, attempt: int) -> float:
        """Delay after the given failed attempt (1-based)."""
        return min(self.base_delay * (self.multiplier ** (attempt - 1)), self.max_delay)


@dataclass
class RetryPolicies:
    """Default policy plus per-provider overrides."""
    default: RetryPolicy = field(default_factory=RetryPolicy)
    overrides: Dict[str, RetryPolicy] = field(default_factory=dict)

    def for_provider(self, name: str) -> RetryPolicy:
        return self.overrides.get(name, self.default)


def call_with_retry(
    provider: str,
    func: Callable[[float], T],
    policy: RetryPolicy,
    deadline_at: float,
    sleep: Callable[[float], None] = time.sleep,
    on_retry: Optional[Callable[[int, ProviderError, float], None]] = None,
) -> T:
    """
    Call func(remaining_seconds) until it succeeds or retries run out.

    Args:
        provider: Provider name, used for deadline errors
        func: Callable taking the seconds left before the deadline
        policy: RetryPolicy to apply
        deadline_at: time.monotonic() value after which no attempt starts
        sleep: Sleep function (injectable for tests)
        on_retry: Optional callback(attempt, error, delay)

    Raises:
        ProviderError: the last error, or TIMEOUT if the deadline passed
    """
    attempt = 0
    while True:
        attempt += 1
        remaining = deadline_at - time.monotonic()
        if remaining <= 0:
            raise ProviderError(provider, ProviderErrorKind.TIMEOUT, "request deadline exceeded")

        try:
            return func(remaining)
        except ProviderError as e:
            if not e.kind.retryable or attempt >= policy.max_attempts:
                raise
            delay = policy.delay_for(attempt)
            if time.monotonic() + delay >= deadline_at:
                raise
            if on_retry:
                on_retry(attempt, e, delay)
            sleep(delay)


class CircuitBreaker:
    """
    Circuit breaker to stop calling a provider that keeps failing.

    States:
    - CLOSED: Normal operation, calls pass through
    - OPEN: Too many consecutive failures, calls are blocked
    - HALF_OPEN: Recovery period elapsed, one trial call allowed. A trial
      that never reports back is replaced after another recovery period.
    """

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"

    def __init__(
        self,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.clock = clock

        self._lock = threading.Lock()
        self.failure_count = 0
        self.last_failure_time: Optional[float] = None
        self._state = self.CLOSED
        self._half_open_since: Optional[float] = None

    @property
    def state(self) -> str:
        with self._lock:
            if self._state == self.OPEN and self._should_attempt_reset():
                return self.HALF_OPEN
            return self._state

    def allow_request(self) -> bool:
        """Return True if a call may proceed; moves OPEN to HALF_OPEN when due."""
        with self._lock:
            if self._state == self.CLOSED:
                return True
            now = self.clock()
            if self._state == self.OPEN and self._should_attempt_reset():
                self._state = self.HALF_OPEN
                self._half_open_since = now
                return True
            if self._state == self.HALF_OPEN and now - self._half_open_since >= self.recovery_timeout:
                self._half_open_since = now
                return True
            # HALF_OPEN already has its trial call in flight
            return False

    def release_trial(self):
        """Give back a HALF_OPEN trial that was never sent."""
        with self._lock:
            if self._state == self.HALF_OPEN:
                self._state = self.OPEN
                self._half_open_since = None

    def record_success(self):
        with self._lock:
            self.failure_count = 0
            self._state = self.CLOSED

    def record_failure(self):
        with self._lock:
            self.failure_count += 1
            self.last_failure_time = self.clock()
            if self._state == self.HALF_OPEN or self.failure_count >= self.failure_threshold:
                self._state = self.OPEN

    def time_until_reset(self) -> float:
        with self._lock:
            if self._state == self.HALF_OPEN and self._half_open_since is not None:
                elapsed = self.clock() - self._half_open_since
                return max(0.0, self.recovery_timeout - elapsed)
            if self._state != self.OPEN or self.last_failure_time is None:
                return 0.0
            elapsed = self.clock() - self.last_failure_time
            return max(0.0, self.recovery_timeout - elapsed)

    def reset(self):
        with self._lock:
            self.failure_count = 0
            self.last_failure_time = None
            self._state = self.CLOSED
            self._half_open_since = None

    def _should_attempt_reset(self) -> bool:
        if self.last_failure_time is None:
            return True
        return self.clock() - self.last_failure_time >= self.recovery_timeout
