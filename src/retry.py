"""
x402 Distributor - Retry Logic with Exponential Backoff

Used by the webhook dispatcher when forwarding payment notifications to
the distribution endpoint. The distribution core itself never retries;
a re-delivered notification is safe because distributions are idempotent
per funding reference.

Features:
- Exponential backoff with jitter
- Retryable vs. non-retryable error classification
- Circuit breaker per downstream endpoint

Usage:
    from retry import RetryConfig, retry_call

    result = retry_call(post_webhook, args=(payload,), config=RetryConfig.from_env())

Environment Variables:
    X402_DISPATCH_MAX_RETRIES=4
    X402_DISPATCH_BASE_DELAY=1.0
    X402_DISPATCH_MAX_DELAY=30.0
    X402_DISPATCH_JITTER=0.1
"""

import logging
import os
import random
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from monitoring.metrics import metrics

logger = logging.getLogger(__name__)


class RetryableError(Exception):
    """
    Transient failure worth retrying.

    ``retry_after`` is the downstream's own hint in seconds (a Retry-After
    header); it raises the backoff delay, capped at ``max_delay``.
    """

    def __init__(self, message: str = "", retry_after: float | None = None):
        super().__init__(message)
        self.retry_after = retry_after


class NonRetryableError(Exception):
    """Final failure; retrying cannot help."""
    pass


class CircuitOpenError(ConnectionError):
    """Raised instead of calling a downstream whose circuit is open."""
    pass


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""

    max_retries: int = 4
    base_delay: float = 1.0
    max_delay: float = 30.0
    exponential_base: float = 2.0
    jitter: float = 0.1

    retryable_exceptions: tuple = (
        RetryableError,
        ConnectionError,
        TimeoutError,
    )

    @classmethod
    def from_env(cls) -> "RetryConfig":
        """Create configuration from environment variables."""
        return cls(
            max_retries=int(os.getenv("X402_DISPATCH_MAX_RETRIES", "4")),
            base_delay=float(os.getenv("X402_DISPATCH_BASE_DELAY", "1.0")),
            max_delay=float(os.getenv("X402_DISPATCH_MAX_DELAY", "30.0")),
            jitter=float(os.getenv("X402_DISPATCH_JITTER", "0.1")),
        )


@dataclass
class RetryStats:
    """Statistics from one retried call."""

    attempts: int = 0
    retries: int = 0
    total_delay: float = 0.0
    last_error: str | None = None

    def record_failure(self, error: Exception, delay: float = 0.0) -> None:
        self.attempts += 1
        self.last_error = f"{type(error).__name__}: {error}"
        if delay > 0:
            self.retries += 1
            self.total_delay += delay

    def record_success(self) -> None:
        self.attempts += 1


class CircuitBreaker:
    """
    Guards one downstream endpoint.

    After ``failure_threshold`` consecutive failures the circuit opens and
    calls are refused. Once ``recovery_timeout`` seconds have passed a
    single trial call is let through (half-open); its outcome closes or
    re-opens the circuit. The state is exported as the
    ``circuit_open{circuit=...}`` gauge.
    """

    def __init__(self, name: str, failure_threshold: int = 5, recovery_timeout: float = 30.0):
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout

        self._state = CircuitState.CLOSED
        self._consecutive_failures = 0
        self._opened_at = 0.0
        self._lock = threading.Lock()

    def _move_to(self, state: CircuitState, reason: str) -> None:
        # Caller holds self._lock
        if state != self._state:
            log = logger.warning if state == CircuitState.OPEN else logger.info
            log(f"Circuit {self.name}: {self._state.value} -> {state.value} ({reason})")
        self._state = state
        if state == CircuitState.OPEN:
            self._opened_at = time.monotonic()
        metrics.set_gauge(
            "circuit_open", 1 if state == CircuitState.OPEN else 0, labels={"circuit": self.name}
        )

    @property
    def state(self) -> CircuitState:
        with self._lock:
            cooled_down = time.monotonic() - self._opened_at >= self.recovery_timeout
            if self._state == CircuitState.OPEN and cooled_down:
                self._move_to(CircuitState.HALF_OPEN, "recovery timeout elapsed")
            return self._state

    def is_allowed(self) -> bool:
        return self.state != CircuitState.OPEN

    def record_success(self) -> None:
        with self._lock:
            self._consecutive_failures = 0
            self._move_to(CircuitState.CLOSED, "call succeeded")

    def record_failure(self) -> None:
        with self._lock:
            self._consecutive_failures += 1
            if self._state == CircuitState.HALF_OPEN:
                self._move_to(CircuitState.OPEN, "trial call failed")
            elif self._consecutive_failures >= self.failure_threshold:
                self._move_to(
                    CircuitState.OPEN, f"{self._consecutive_failures} consecutive failures"
                )

    def reset(self) -> None:
        with self._lock:
            self._consecutive_failures = 0
            self._move_to(CircuitState.CLOSED, "reset")


# One breaker per downstream, shared by every dispatcher in the process
_circuit_breakers: dict[str, CircuitBreaker] = {}
_circuit_breakers_lock = threading.Lock()


def get_circuit_breaker(name: str, **kwargs) -> CircuitBreaker:
    """Breaker registered under ``name``, created on first use."""
    with _circuit_breakers_lock:
        breaker = _circuit_breakers.get(name)
        if breaker is None:
            breaker = _circuit_breakers[name] = CircuitBreaker(name, **kwargs)
        return breaker


def calculate_delay(
    attempt: int,
    base_delay: float,
    exponential_base: float,
    max_delay: float,
    jitter: float
) -> float:
    """
    Calculate delay with exponential backoff and jitter.

    Args:
        attempt: Current attempt number (0-indexed)
        base_delay: Initial delay in seconds
        exponential_base: Multiplier for exponential growth
        max_delay: Maximum delay cap
        jitter: Random jitter factor (0.0 to 1.0)

    Returns:
        Delay in seconds
    """
    delay = min(base_delay * (exponential_base ** attempt), max_delay)
    if jitter > 0:
        delay += delay * jitter * (2 * random.random() - 1)
    return max(0.0, delay)


def is_retryable_exception(exception: Exception, retryable_types: tuple) -> bool:
    """Check if an exception should trigger a retry."""
    if isinstance(exception, NonRetryableError):
        return False
    if isinstance(exception, RetryableError):
        return True
    return isinstance(exception, retryable_types)


def retry_call(
    func: Callable,
    args: tuple = (),
    kwargs: dict | None = None,
    config: RetryConfig | None = None,
    circuit: CircuitBreaker | None = None,
    stats: RetryStats | None = None,
    on_retry: Callable[[int, Exception, float], None] | None = None,
) -> Any:
    """
    Execute a function with retry logic.

    Args:
        func: Function to call
        args: Positional arguments
        kwargs: Keyword arguments
        config: Retry configuration
        circuit: Optional circuit breaker guarding the downstream
        stats: Optional RetryStats updated in place
        on_retry: Callback called before each retry (attempt, exception, delay)

    Returns:
        Result of the function call

    Raises:
        The last exception once retries are exhausted, any non-retryable
        exception immediately, or CircuitOpenError.
    """
    config = config or RetryConfig()
    kwargs = kwargs or {}
    stats = stats if stats is not None else RetryStats()

    for attempt in range(config.max_retries + 1):
        if circuit and not circuit.is_allowed():
            raise CircuitOpenError(f"Circuit breaker {circuit.name} is open")

        try:
            result = func(*args, **kwargs)
        except Exception as e:
            if not is_retryable_exception(e, config.retryable_exceptions):
                stats.record_failure(e)
                logger.warning(f"Non-retryable error: {e}")
                raise

            if circuit:
                circuit.record_failure()

            if attempt >= config.max_retries:
                stats.record_failure(e)
                logger.warning(f"Max retries ({config.max_retries}) exceeded: {e}")
                raise

            delay = calculate_delay(
                attempt,
                config.base_delay,
                config.exponential_base,
                config.max_delay,
                config.jitter,
            )
            hinted = getattr(e, "retry_after", None)
            if hinted:
                delay = min(max(delay, hinted), config.max_delay)
            stats.record_failure(e, delay)
            logger.info(f"Retry {attempt + 1}/{config.max_retries} after {delay:.2f}s: {e}")

            if on_retry:
                on_retry(attempt + 1, e, delay)
            time.sleep(delay)
        else:
            stats.record_success()
            if circuit:
                circuit.record_success()
            return result
