"""
Backoff and circuit breaking around the search provider.

exponential_backoff drives DiscoveryService.discover_with_retry,
CircuitBreaker guards BraveSearchProvider, and should_retry_http_status
decides which provider statuses count as an outage rather than a rejection.
"""

import functools
import threading
import time
from datetime import datetime
from typing import Callable, Iterator, Optional, Tuple, Type

# Request Timeout plus the gateway/server family; 501 means the call itself is wrong
RETRYABLE_STATUSES = frozenset({408, 500, 502, 503, 504})


class RetryError(Exception):
    """Every attempt failed. The last failure is chained as __cause__."""


class CircuitOpenError(Exception):
    """Raised instead of calling through an open circuit."""

    def __init__(self, message: str, retry_after: float):
        super().__init__(message)
        self.retry_after = retry_after


def backoff_delays(
    retries: int,
    base_delay: float = 1.0,
    max_delay: float = 60.0,
    exponential_base: float = 2.0,
) -> Iterator[float]:
    """Yield the wait before each retry: base, base*k, base*k^2 ... capped at max_delay."""
    delay = base_delay
    for _ in range(retries):
        yield min(delay, max_delay)
        delay *= exponential_base


def exponential_backoff(
    max_retries: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 60.0,
    exponential_base: float = 2.0,
    exceptions: Tuple[Type[Exception], ...] = (Exception,),
    on_retry: Optional[Callable] = None,
    sleep: Callable[[float], None] = time.sleep,
):
    """
    Retry the decorated call on `exceptions`, sleeping between attempts.

    Args:
        max_retries: Retries after the first attempt (0 = single attempt)
        base_delay: Wait before the first retry, in seconds
        max_delay: Upper bound for any single wait
        exponential_base: Growth factor between waits
        exceptions: Exception types worth another attempt; others propagate
        on_retry: Called as on_retry(attempt, exception, delay) before sleeping
        sleep: Sleep function, replaced in tests

    Raises:
        RetryError: The final attempt failed too
    """
    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            delays = backoff_delays(max_retries, base_delay, max_delay, exponential_base)
            attempt = 0
            while True:
                try:
                    return func(*args, **kwargs)
                except exceptions as e:
                    delay = next(delays, None)
                    if delay is None:
                        raise RetryError(f"Failed after {attempt + 1} attempts: {e}") from e
                    attempt += 1
                    if on_retry:
                        on_retry(attempt, e, delay)
                    sleep(delay)

        return wrapper
    return decorator


class CircuitBreaker:
    """
    Stops calling a failing dependency for a while.

    CLOSED passes calls through and counts consecutive failures. Reaching
    failure_threshold moves to OPEN, where calls fail fast with
    CircuitOpenError. After recovery_timeout seconds the next call is let
    through as a trial (HALF_OPEN): success closes the circuit, failure
    reopens it straight away.

    Only `expected_exception` counts as a failure; anything else propagates
    without touching the state.
    """

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"

    def __init__(
        self,
        failure_threshold: int = 5,
        recovery_timeout: int = 60,
        expected_exception: Type[Exception] = Exception,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.expected_exception = expected_exception
        self._clock = clock
        self._lock = threading.Lock()

        self.state = self.CLOSED
        self.failure_count = 0
        self.last_failure_time: Optional[datetime] = None

    def _seconds_since_failure(self) -> Optional[float]:
        if self.last_failure_time is None:
            return None
        return (self._clock() - self.last_failure_time).total_seconds()

    def _admit(self) -> None:
        with self._lock:
            if self.state != self.OPEN:
                return
            elapsed = self._seconds_since_failure()
            if elapsed is None or elapsed >= self.recovery_timeout:
                self.state = self.HALF_OPEN
                return
            retry_after = max(0.0, self.recovery_timeout - elapsed)
        raise CircuitOpenError(
            f"Circuit breaker is OPEN; search provider unavailable. Retry after {retry_after:.0f}s",
            retry_after=retry_after,
        )

    def call(self, func: Callable, *args, **kwargs):
        """
        Run func(*args, **kwargs) unless the circuit is open.

        Raises:
            CircuitOpenError: Circuit is OPEN and still cooling down
        """
        self._admit()
        try:
            result = func(*args, **kwargs)
        except self.expected_exception:
            self._record_failure()
            raise
        self._record_success()
        return result

    def _record_success(self) -> None:
        with self._lock:
            self.state = self.CLOSED
            self.failure_count = 0

    def _record_failure(self) -> None:
        with self._lock:
            self.failure_count += 1
            self.last_failure_time = self._clock()
            if self.state == self.HALF_OPEN or self.failure_count >= self.failure_threshold:
                self.state = self.OPEN

    def reset(self) -> None:
        with self._lock:
            self.state = self.CLOSED
            self.failure_count = 0
            self.last_failure_time = None


def should_retry_http_status(status_code: int) -> bool:
    """
    True for statuses that mean the provider is struggling rather than
    refusing: 408, 500, 502-504 and anything above 504.

    The provider's own 429 is excluded and surfaces as a rejection.
    """
    return status_code in RETRYABLE_STATUSES or status_code > 504
