"""
Circuit Breaker

Per-backend failure isolation. A circuit opens after a run of consecutive
failures, short-circuits calls while open, and lets a single probe through
once the cool-down has elapsed.

    CLOSED --N consecutive failures--> OPEN --cool-down--> HALF_OPEN
    HALF_OPEN --probe succeeds--> CLOSED
    HALF_OPEN --probe fails--> OPEN
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, TypeVar

from glassbox_core.domain.entities import CircuitState, CircuitStatus
from glassbox_core.domain.errors import BackendError, CircuitOpenError, GlassboxError
from glassbox_core.domain.value_objects import BackendId
from glassbox_core.harness_config import CircuitBreakerConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitBreaker:
    """Failure tracker for one backend identity"""

    def __init__(
        self,
        backend_id: BackendId,
        failure_threshold: int = 5,
        cooldown_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be at least 1.")
        self.backend_id = backend_id
        self.failure_threshold = failure_threshold
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock

        self._lock = threading.Lock()
        self._status = CircuitStatus.CLOSED
        self._consecutive_failures = 0
        self._last_failure_at: float | None = None
        self._opened_at: float | None = None
        self._probe_in_flight = False

    @property
    def status(self) -> CircuitStatus:
        with self._lock:
            return self._status

    def snapshot(self) -> CircuitState:
        """Current state as an immutable snapshot"""
        with self._lock:
            return CircuitState(
                status=self._status,
                consecutive_failures=self._consecutive_failures,
                last_failure_at=self._last_failure_at,
                opened_at=self._opened_at,
            )

    def allow_request(self) -> bool:
        """
        Decide whether one call may go through

        An OPEN circuit whose cool-down has elapsed moves to HALF_OPEN and the
        caller becomes the probe. While a probe is in flight, other callers are
        refused.
        """
        with self._lock:
            if self._status is CircuitStatus.CLOSED:
                return True
            if self._status is CircuitStatus.OPEN:
                if self._clock() - self._opened_at < self.cooldown_seconds:
                    return False
                self._transition(CircuitStatus.HALF_OPEN)
            if self._probe_in_flight:
                return False
            self._probe_in_flight = True
            return True

    def record_success(self) -> None:
        with self._lock:
            self._consecutive_failures = 0
            self._probe_in_flight = False
            if self._status is not CircuitStatus.CLOSED:
                self._transition(CircuitStatus.CLOSED)

    def record_failure(self) -> None:
        with self._lock:
            now = self._clock()
            self._consecutive_failures += 1
            self._last_failure_at = now
            self._probe_in_flight = False
            if self._status is CircuitStatus.HALF_OPEN or (
                self._status is CircuitStatus.CLOSED
                and self._consecutive_failures >= self.failure_threshold
            ):
                self._opened_at = now
                self._transition(CircuitStatus.OPEN)

    def release_probe(self) -> None:
        """Give up a probe slot without a verdict (the call was abandoned)"""
        with self._lock:
            self._probe_in_flight = False

    def call(self, fn: Callable[[], T]) -> T:
        """
        Run exactly one attempt through the breaker

        Args:
            fn: The attempt (a callable with no arguments)

        Returns:
            The return value of fn()

        Raises:
            CircuitOpenError: If the circuit refuses the call (fn is not invoked)
            Exception: Whatever fn() raised
        """
        if not self.allow_request():
            raise CircuitOpenError(
                f"Circuit for {self.backend_id} is {self.status.value}",
                model_name=self.backend_id.model,
            )
        try:
            result = fn()
        except BackendError:
            self.record_failure()
            raise
        except GlassboxError:
            # Cancellation and budget refusals say nothing about backend health
            self.release_probe()
            raise
        except Exception:
            self.record_failure()
            raise
        self.record_success()
        return result

    def reset(self) -> None:
        """Force the circuit back to CLOSED"""
        with self._lock:
            self._consecutive_failures = 0
            self._probe_in_flight = False
            self._opened_at = None
            if self._status is not CircuitStatus.CLOSED:
                self._transition(CircuitStatus.CLOSED)

    def _transition(self, new_status: CircuitStatus) -> None:
        previous = self._status
        self._status = new_status
        logger.warning(
            "Circuit %s: %s -> %s (consecutive failures: %d)",
            self.backend_id, previous.value, new_status.value, self._consecutive_failures,
        )


class CircuitBreakerRegistry:
    """Independent breakers keyed by BackendId, created on first use"""

    def __init__(
        self,
        failure_threshold: int = 5,
        cooldown_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.failure_threshold = failure_threshold
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._breakers: dict[BackendId, CircuitBreaker] = {}

    @classmethod
    def from_config(
        cls,
        config: CircuitBreakerConfig,
        clock: Callable[[], float] = time.monotonic,
    ) -> CircuitBreakerRegistry:
        return cls(config.failure_threshold, config.cooldown_seconds, clock=clock)

    def get(self, provider: str, model: str) -> CircuitBreaker:
        backend_id = BackendId(provider=provider, model=model)
        with self._lock:
            breaker = self._breakers.get(backend_id)
            if breaker is None:
                breaker = CircuitBreaker(
                    backend_id,
                    failure_threshold=self.failure_threshold,
                    cooldown_seconds=self.cooldown_seconds,
                    clock=self._clock,
                )
                self._breakers[backend_id] = breaker
            return breaker

    def snapshot(self) -> dict[str, CircuitState]:
        """States of every known circuit keyed by "provider:model" """
        with self._lock:
            breakers = list(self._breakers.values())
        return {str(b.backend_id): b.snapshot() for b in breakers}

    def reset_all(self) -> None:
        with self._lock:
            breakers = list(self._breakers.values())
        for breaker in breakers:
            breaker.reset()
