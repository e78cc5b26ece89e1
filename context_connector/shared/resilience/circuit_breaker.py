"""
Circuit breaker guarding calls to a single retrieval backend.

One breaker is created per backend when the engine is built and shared across
queries; it is the only cross-query mutable state in the engine. While open,
the engine skips the backend and treats it as an empty result.

Usage:
    cb = CircuitBreaker(name="vector", failure_threshold=5, recovery_timeout=30.0)

    if not cb.allow_request():
        return []
    try:
        results = await backend.search(...)
    except BackendError:
        cb.record_failure()
        return []
    cb.record_success()
"""

from __future__ import annotations

import threading
import time
from enum import Enum
from typing import Callable, Dict, Optional

from ..config import ResilienceConfig
from ..observability import get_logger

logger = get_logger(__name__)


class CircuitState(Enum):
    CLOSED = "closed"  # calls pass through
    OPEN = "open"  # calls are skipped
    HALF_OPEN = "half_open"  # one trial call allowed


class CircuitBreaker:
    """
    Consecutive-failure circuit breaker.

    CLOSED counts consecutive failures and opens at ``failure_threshold``.
    OPEN rejects until ``recovery_timeout`` seconds have passed since the last
    failure, then admits a single trial call (HALF_OPEN). A trial success closes
    the circuit; a trial failure reopens it.

    State is guarded by a lock so a breaker may be shared between event loops
    running in different threads.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        recovery_timeout: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if failure_threshold <= 0:
            raise ValueError("failure_threshold must be positive")
        if recovery_timeout <= 0:
            raise ValueError("recovery_timeout must be positive")

        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_time: Optional[float] = None
        self._trial_in_flight = False
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, name: str, config: ResilienceConfig) -> "CircuitBreaker":
        return cls(
            name=name,
            failure_threshold=config.failure_threshold,
            recovery_timeout=config.recovery_timeout_seconds,
        )

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._state

    @property
    def failure_count(self) -> int:
        with self._lock:
            return self._failure_count

    def allow_request(self) -> bool:
        """Return True when a call may be attempted now."""
        with self._lock:
            if self._state == CircuitState.CLOSED:
                return True

            if self._state == CircuitState.OPEN:
                elapsed = self._clock() - (self._last_failure_time or 0.0)
                if elapsed < self.recovery_timeout:
                    return False
                self._state = CircuitState.HALF_OPEN
                self._trial_in_flight = True
                logger.info(
                    "circuit_breaker_half_open",
                    breaker=self.name,
                    elapsed_seconds=round(elapsed, 3),
                )
                return True

            # HALF_OPEN: only the first caller gets the trial call
            if self._trial_in_flight:
                return False
            self._trial_in_flight = True
            return True

    def record_success(self) -> None:
        with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                logger.info("circuit_breaker_closed", breaker=self.name)
            self._state = CircuitState.CLOSED
            self._failure_count = 0
            self._trial_in_flight = False

    def release_trial(self) -> None:
        """Give back a half-open trial slot whose call never completed."""
        with self._lock:
            self._trial_in_flight = False

    def record_failure(self) -> None:
        with self._lock:
            self._failure_count += 1
            self._last_failure_time = self._clock()
            self._trial_in_flight = False

            if self._state == CircuitState.HALF_OPEN:
                self._state = CircuitState.OPEN
                logger.warning("circuit_breaker_reopened", breaker=self.name)
            elif (
                self._state == CircuitState.CLOSED
                and self._failure_count >= self.failure_threshold
            ):
                self._state = CircuitState.OPEN
                logger.warning(
                    "circuit_breaker_opened",
                    breaker=self.name,
                    failure_count=self._failure_count,
                    threshold=self.failure_threshold,
                )

    def reset(self) -> None:
        with self._lock:
            self._state = CircuitState.CLOSED
            self._failure_count = 0
            self._last_failure_time = None
            self._trial_in_flight = False

    def is_open(self) -> bool:
        with self._lock:
            return self._state == CircuitState.OPEN

    def snapshot(self) -> Dict[str, object]:
        """State summary for health reporting."""
        with self._lock:
            return {
                "name": self.name,
                "state": self._state.value,
                "failures": self._failure_count,
                "threshold": self.failure_threshold,
            }

    def __repr__(self) -> str:
        with self._lock:
            return (
                f"CircuitBreaker(name={self.name!r}, state={self._state.value}, "
                f"failures={self._failure_count}/{self.failure_threshold})"
            )
