# portfolio_engine/services/circuit_breaker.py
"""
Circuit breaker guarding calls to external price and FX providers.

After a run of provider failures the breaker opens and the resolver stops
calling that provider for a while. The snapshot job then records the
affected positions as failures instead of waiting on timeouts for every
position in every portfolio.

States:
    CLOSED    - Normal operation, calls pass through
    OPEN      - Too many failures, calls rejected immediately
    HALF_OPEN - Testing recovery, limited calls allowed

State Transitions:
    CLOSED -> OPEN: When failure count reaches threshold within window
    OPEN -> HALF_OPEN: After recovery timeout expires
    HALF_OPEN -> CLOSED: When a test call succeeds
    HALF_OPEN -> OPEN: When a test call fails

Usage:
    from portfolio_engine.services.circuit_breaker import get_breaker, CircuitBreakerOpen

    breaker = get_breaker("yahoo-history")
    try:
        with breaker:
            result = provider.get_historical_prices(symbol, start, end)
    except CircuitBreakerOpen:
        result = None
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from functools import wraps
from typing import Callable, TypeVar, Any

from portfolio_engine.services.constants import (
    CIRCUIT_BREAKER_FAILURE_THRESHOLD,
    CIRCUIT_BREAKER_FAILURE_WINDOW,
    CIRCUIT_BREAKER_HALF_OPEN_MAX_CALLS,
    CIRCUIT_BREAKER_RECOVERY_TIMEOUT,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreakerOpen(Exception):
    """
    Raised when a provider call is rejected by an open breaker.

    Attributes:
        breaker_name: Name of the circuit breaker
        time_remaining: Seconds until recovery timeout expires
    """

    def __init__(self, breaker_name: str, time_remaining: float) -> None:
        self.breaker_name = breaker_name
        self.time_remaining = time_remaining
        super().__init__(
            f"Circuit breaker '{breaker_name}' is open. "
            f"Retry in {time_remaining:.1f} seconds."
        )


@dataclass
class CircuitBreakerStats:
    """Counters for monitoring a breaker."""
    total_calls: int = 0
    successful_calls: int = 0
    failed_calls: int = 0
    rejected_calls: int = 0
    state_changes: int = 0
    last_failure_time: float | None = None
    last_success_time: float | None = None


@dataclass
class CircuitBreaker:
    """
    Thread-safe circuit breaker.

    The scheduler thread and request threads may share one breaker per
    provider, so all state changes happen under a re-entrant lock.

    Attributes:
        name: Identifier for this breaker (used in logs/errors)
        failure_threshold: Number of failures before opening
        recovery_timeout: Seconds to wait before testing recovery
        half_open_max_calls: Max calls allowed in half-open state
        failure_window: Window (seconds) for counting failures (0 = no window)
        excluded_exceptions: Exception types that don't count as failures,
            e.g. TickerNotFoundError says nothing about provider health
    """

    name: str
    failure_threshold: int = CIRCUIT_BREAKER_FAILURE_THRESHOLD
    recovery_timeout: float = CIRCUIT_BREAKER_RECOVERY_TIMEOUT
    half_open_max_calls: int = CIRCUIT_BREAKER_HALF_OPEN_MAX_CALLS
    failure_window: float = CIRCUIT_BREAKER_FAILURE_WINDOW
    excluded_exceptions: tuple[type[Exception], ...] = field(default_factory=tuple)

    _state: CircuitState = field(default=CircuitState.CLOSED, init=False)
    _failure_timestamps: list[float] = field(default_factory=list, init=False)
    _failure_count: int = field(default=0, init=False)
    _last_failure_time: float = field(default=0.0, init=False)
    _half_open_calls: int = field(default=0, init=False)
    _lock: threading.RLock = field(default_factory=threading.RLock, init=False)
    _stats: CircuitBreakerStats = field(default_factory=CircuitBreakerStats, init=False)

    def __post_init__(self) -> None:
        if self.failure_threshold < 1:
            raise ValueError("failure_threshold must be at least 1")
        if self.recovery_timeout < 0:
            raise ValueError("recovery_timeout cannot be negative")
        if self.half_open_max_calls < 1:
            raise ValueError("half_open_max_calls must be at least 1")

        logger.debug(
            f"CircuitBreaker '{self.name}' initialized: "
            f"threshold={self.failure_threshold}, "
            f"recovery_timeout={self.recovery_timeout}s"
        )

    @property
    def state(self) -> CircuitState:
        with self._lock:
            self._refresh_state()
            return self._state

    @property
    def stats(self) -> CircuitBreakerStats:
        """Copy of current counters."""
        with self._lock:
            return CircuitBreakerStats(**vars(self._stats))

    @property
    def is_open(self) -> bool:
        return self.state == CircuitState.OPEN

    # =========================================================================
    # STATE MACHINE (call with lock held)
    # =========================================================================

    def _refresh_state(self) -> None:
        if self._state == CircuitState.OPEN:
            if time.time() - self._last_failure_time >= self.recovery_timeout:
                self._transition_to(CircuitState.HALF_OPEN)

    def _transition_to(self, new_state: CircuitState) -> None:
        old_state = self._state
        self._state = new_state
        self._stats.state_changes += 1

        if new_state == CircuitState.HALF_OPEN:
            self._half_open_calls = 0
        elif new_state == CircuitState.CLOSED:
            self._failure_count = 0
            self._failure_timestamps.clear()

        log = logger.warning if new_state == CircuitState.OPEN else logger.info
        log(
            f"CircuitBreaker '{self.name}' state change: "
            f"{old_state.value} -> {new_state.value}"
        )

    def _record_success(self) -> None:
        self._stats.successful_calls += 1
        self._stats.last_success_time = time.time()

        if self._state == CircuitState.HALF_OPEN:
            self._transition_to(CircuitState.CLOSED)

    def _record_failure(self) -> None:
        now = time.time()
        self._stats.failed_calls += 1
        self._stats.last_failure_time = now
        self._last_failure_time = now

        if self._state == CircuitState.HALF_OPEN:
            self._transition_to(CircuitState.OPEN)
            return

        if self._state != CircuitState.CLOSED:
            return

        if self.failure_window > 0:
            cutoff = now - self.failure_window
            self._failure_timestamps = [
                t for t in self._failure_timestamps if t > cutoff
            ]
            self._failure_timestamps.append(now)
            self._failure_count = len(self._failure_timestamps)
        else:
            self._failure_count += 1

        if self._failure_count >= self.failure_threshold:
            self._transition_to(CircuitState.OPEN)

    def _admit(self) -> bool:
        self._refresh_state()

        if self._state == CircuitState.CLOSED:
            return True

        if self._state == CircuitState.HALF_OPEN and self._half_open_calls < self.half_open_max_calls:
            self._half_open_calls += 1
            return True

        return False

    def _time_until_recovery(self) -> float:
        elapsed = time.time() - self._last_failure_time
        return max(0.0, self.recovery_timeout - elapsed)

    # =========================================================================
    # PUBLIC INTERFACE
    # =========================================================================

    def __enter__(self) -> "CircuitBreaker":
        """
        Admit a call or reject it.

        Raises:
            CircuitBreakerOpen: If the circuit is open
        """
        with self._lock:
            self._stats.total_calls += 1

            if not self._admit():
                self._stats.rejected_calls += 1
                raise CircuitBreakerOpen(self.name, self._time_until_recovery())

        return self

    def __exit__(self, exc_type: type | None, exc_val: Exception | None, exc_tb: Any) -> bool:
        with self._lock:
            if exc_val is None:
                self._record_success()
            elif self.excluded_exceptions and isinstance(exc_val, self.excluded_exceptions):
                self._record_success()
            else:
                self._record_failure()

        return False

    def __call__(self, func: Callable[..., T]) -> Callable[..., T]:
        """Use the breaker as a decorator."""
        @wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> T:
            with self:
                return func(*args, **kwargs)
        return wrapper

    def reset(self) -> None:
        """Force the breaker back to CLOSED."""
        with self._lock:
            self._transition_to(CircuitState.CLOSED)

    def force_open(self) -> None:
        """Force the breaker OPEN (maintenance, known outage)."""
        with self._lock:
            self._last_failure_time = time.time()
            self._transition_to(CircuitState.OPEN)


# =============================================================================
# PROCESS-WIDE REGISTRY
# =============================================================================

_registry: dict[str, CircuitBreaker] = {}
_registry_lock = threading.Lock()


def get_breaker(
        name: str,
        excluded_exceptions: tuple[type[Exception], ...] = (),
) -> CircuitBreaker:
    """
    Get (or create) the shared breaker for a provider.

    One breaker per provider name, so the scheduler and ad hoc callers
    see the same health state.
    """
    with _registry_lock:
        breaker = _registry.get(name)
        if breaker is None:
            breaker = CircuitBreaker(name=name, excluded_exceptions=excluded_exceptions)
            _registry[name] = breaker
        return breaker


def reset_all_breakers() -> None:
    """Close every registered breaker."""
    with _registry_lock:
        for breaker in _registry.values():
            breaker.reset()
