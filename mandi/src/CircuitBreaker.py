"""CircuitBreaker: Per-source failure isolation with a rolling failure-rate window.

Each external price source gets its own breaker. Outcomes are recorded in a
sliding monitoring window, so old failures age out instead of accumulating
forever. When the failure rate inside the window reaches the threshold the
breaker opens and every call fails fast until the recovery timeout elapses.
The first call after that is let through as a trial call: success closes the
breaker, failure re-opens it with a fresh timeout.

.. code-block:: python

    >>> breaker = CircuitBreaker("agmarknet", failure_threshold=0.5)
    >>> breaker.record_failure()
    >>> breaker.is_open()
    True
    >>> breaker.get_state()
    <CircuitState.OPEN: 'open'>
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import TypeVar

from .errors import CircuitOpenError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(str, Enum):
    """Breaker state."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitBreakerRecord:
    """Point-in-time view of one source's breaker.

    :ivar source_id: Source the breaker protects.
    :ivar state: Current breaker state.
    :ivar failure_count: Total failures since tracking began.
    :ivar success_count: Total successes since tracking began.
    :ivar failure_rate: Failure rate inside the monitoring window.
    :ivar last_failure_at: Unix timestamp of the last failure.
    :ivar next_retry_at: Unix timestamp when an open breaker allows a trial call.
    """

    source_id: str
    state: CircuitState = CircuitState.CLOSED
    failure_count: int = 0
    success_count: int = 0
    failure_rate: float = 0.0
    last_failure_at: float | None = None
    next_retry_at: float | None = None


class CircuitBreaker:
    """Closed/Open/Half-Open state machine for a single source.

    :ivar source_id: Source the breaker protects.
    :ivar failure_threshold: Failure rate (0..1] that opens the breaker.
    :ivar recovery_timeout: Seconds an open breaker waits before a trial call.
    :ivar monitoring_period: Length of the rolling window in seconds.
    :ivar minimum_calls: Calls required in the window before it can trip.
    """

    DEFAULT_FAILURE_THRESHOLD = 0.5
    DEFAULT_RECOVERY_TIMEOUT = 30.0
    DEFAULT_MONITORING_PERIOD = 120.0  # 2 minutes

    def __init__(
        self,
        source_id: str,
        failure_threshold: float = DEFAULT_FAILURE_THRESHOLD,
        recovery_timeout: float = DEFAULT_RECOVERY_TIMEOUT,
        monitoring_period: float = DEFAULT_MONITORING_PERIOD,
        minimum_calls: int = 1,
    ) -> None:
        """Initialize the breaker.

        :param source_id: Source the breaker protects.
        :param failure_threshold: Failure rate that opens the breaker.
        :param recovery_timeout: Seconds to stay open before probing.
        :param monitoring_period: Rolling window length in seconds.
        :param minimum_calls: Minimum calls in window before tripping.
        :raises ValueError: If parameters are invalid.
        """
        if not 0 < failure_threshold <= 1:
            raise ValueError("failure_threshold must be in (0, 1]")
        if recovery_timeout <= 0:
            raise ValueError("recovery_timeout must be positive")
        if monitoring_period <= 0:
            raise ValueError("monitoring_period must be positive")
        if minimum_calls < 1:
            raise ValueError("minimum_calls must be at least 1")

        self.source_id = source_id
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.monitoring_period = monitoring_period
        self.minimum_calls = minimum_calls

        self._lock = threading.Lock()
        self._window: deque[tuple[float, bool]] = deque()
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._last_failure_at: float | None = None
        self._next_retry_at: float | None = None
        self._trial_in_flight = False

    async def execute(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Run an operation through the breaker.

        :param operation: Zero-argument coroutine factory.
        :returns: The operation's result.
        :raises CircuitOpenError: If the breaker rejects the call.
        :raises Exception: Whatever the operation raised (recorded as failure).
        """
        self._acquire_permission()
        try:
            result = await operation()
        except Exception:
            self.record_failure()
            raise
        except BaseException:
            # Cancellation is not a verdict on the source.
            self._release_trial()
            raise
        self.record_success()
        return result

    def record_success(self) -> None:
        """Record a successful call."""
        with self._lock:
            now = time.time()
            self._success_count += 1
            self._append(now, True)
            if self._state is CircuitState.HALF_OPEN:
                logger.info(f"[{self.source_id}] Trial call succeeded, circuit closed")
                self._state = CircuitState.CLOSED
                self._next_retry_at = None
                self._window.clear()
            self._trial_in_flight = False

    def record_failure(self) -> None:
        """Record a failed call, opening the breaker if the rate is too high."""
        with self._lock:
            now = time.time()
            self._failure_count += 1
            self._last_failure_at = now
            self._append(now, False)

            if self._state is CircuitState.HALF_OPEN:
                self._open(now)
                logger.warning(
                    f"[{self.source_id}] Trial call failed, circuit re-opened "
                    f"for {self.recovery_timeout:.0f}s"
                )
            elif self._state is CircuitState.CLOSED:
                rate = self._failure_rate()
                if (
                    len(self._window) >= self.minimum_calls
                    and rate >= self.failure_threshold
                ):
                    self._open(now)
                    logger.warning(
                        f"[{self.source_id}] Circuit opened "
                        f"(failure rate {rate:.0%} >= {self.failure_threshold:.0%}, "
                        f"retry in {self.recovery_timeout:.0f}s)"
                    )
            self._trial_in_flight = False

    def is_open(self) -> bool:
        """Check whether calls are currently rejected.

        An open breaker whose recovery timeout has elapsed moves to
        half-open here and reports False so the next call can try the source.
        """
        with self._lock:
            self._maybe_half_open(time.time())
            return self._state is CircuitState.OPEN

    def get_state(self) -> CircuitState:
        """Get the current state, applying any due Open -> Half-Open move."""
        with self._lock:
            self._maybe_half_open(time.time())
            return self._state

    def get_record(self) -> CircuitBreakerRecord:
        """Get a snapshot of the breaker's bookkeeping."""
        with self._lock:
            now = time.time()
            self._maybe_half_open(now)
            self._prune(now)
            return CircuitBreakerRecord(
                source_id=self.source_id,
                state=self._state,
                failure_count=self._failure_count,
                success_count=self._success_count,
                failure_rate=self._failure_rate(),
                last_failure_at=self._last_failure_at,
                next_retry_at=self._next_retry_at,
            )

    def reset(self) -> None:
        """Return to a pristine closed state."""
        with self._lock:
            self._window.clear()
            self._state = CircuitState.CLOSED
            self._failure_count = 0
            self._success_count = 0
            self._last_failure_at = None
            self._next_retry_at = None
            self._trial_in_flight = False

    def _acquire_permission(self) -> None:
        with self._lock:
            self._maybe_half_open(time.time())
            if self._state is CircuitState.OPEN:
                raise CircuitOpenError(self.source_id, self._next_retry_at)
            if self._state is CircuitState.HALF_OPEN:
                # Only one trial call at a time
                if self._trial_in_flight:
                    raise CircuitOpenError(self.source_id, self._next_retry_at)
                self._trial_in_flight = True

    def _release_trial(self) -> None:
        with self._lock:
            self._trial_in_flight = False

    def _maybe_half_open(self, now: float) -> None:
        if (
            self._state is CircuitState.OPEN
            and self._next_retry_at is not None
            and now >= self._next_retry_at
        ):
            self._state = CircuitState.HALF_OPEN
            logger.info(f"[{self.source_id}] Recovery timeout elapsed, circuit half-open")

    def _open(self, now: float) -> None:
        self._state = CircuitState.OPEN
        self._next_retry_at = now + self.recovery_timeout

    def _append(self, now: float, success: bool) -> None:
        self._window.append((now, success))
        self._prune(now)

    def _prune(self, now: float) -> None:
        cutoff = now - self.monitoring_period
        while self._window and self._window[0][0] < cutoff:
            self._window.popleft()

    def _failure_rate(self) -> float:
        if not self._window:
            return 0.0
        failures = sum(1 for _, ok in self._window if not ok)
        return failures / len(self._window)


class CircuitBreakerRegistry:
    """Owns one independent CircuitBreaker per source.

    .. code-block:: python

        >>> registry = CircuitBreakerRegistry(["agmarknet", "datagov"])
        >>> registry.get("agmarknet").record_failure()
        >>> registry.get_available_sources()
        ['datagov']
    """

    def __init__(
        self,
        sources: list[str] | None = None,
        failure_threshold: float = CircuitBreaker.DEFAULT_FAILURE_THRESHOLD,
        recovery_timeout: float = CircuitBreaker.DEFAULT_RECOVERY_TIMEOUT,
        monitoring_period: float = CircuitBreaker.DEFAULT_MONITORING_PERIOD,
        minimum_calls: int = 1,
    ) -> None:
        """Initialize the registry.

        :param sources: Sources to create breakers for up front.
        :param failure_threshold: Failure rate that opens a breaker.
        :param recovery_timeout: Seconds a breaker stays open.
        :param monitoring_period: Rolling window length in seconds.
        :param minimum_calls: Minimum calls in window before tripping.
        """
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.monitoring_period = monitoring_period
        self.minimum_calls = minimum_calls
        self._lock = threading.Lock()
        self._breakers: dict[str, CircuitBreaker] = {}
        for source in sources or []:
            self.get(source)

    @property
    def sources(self) -> list[str]:
        """Tracked source names in registration order."""
        with self._lock:
            return list(self._breakers)

    def get(self, source: str) -> CircuitBreaker:
        """Get the breaker for a source, creating it on first use."""
        with self._lock:
            breaker = self._breakers.get(source)
            if breaker is None:
                breaker = CircuitBreaker(
                    source,
                    failure_threshold=self.failure_threshold,
                    recovery_timeout=self.recovery_timeout,
                    monitoring_period=self.monitoring_period,
                    minimum_calls=self.minimum_calls,
                )
                self._breakers[source] = breaker
            return breaker

    def get_available_sources(self) -> list[str]:
        """Get sources whose breaker currently allows calls."""
        return [s for s in self.sources if not self.get(s).is_open()]

    def get_all_records(self) -> dict[str, CircuitBreakerRecord]:
        """Get a record for every tracked source."""
        return {s: self.get(s).get_record() for s in self.sources}

    def reset(self, source: str) -> None:
        """Reset one source's breaker (no-op for unknown sources)."""
        with self._lock:
            breaker = self._breakers.get(source)
        if breaker is not None:
            breaker.reset()

    def reset_all(self) -> None:
        """Reset every breaker."""
        for source in self.sources:
            self.reset(source)
