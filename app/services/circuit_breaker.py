"""Per-resource failure isolation."""

from __future__ import annotations

import logging
import time
from enum import Enum
from typing import Any, Awaitable, Callable, TypeVar

from ..errors import CircuitOpenFailure

logger = logging.getLogger(__name__)

T = TypeVar("T")
Clock = Callable[[], float]


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


def counts_as_failure(exc: BaseException) -> bool:
    """Failures count unless the exception says otherwise (e.g. an authoritative 404)."""

    return bool(getattr(exc, "counts_toward_breaker", True))


class CircuitBreaker:
    """Open after ``failure_threshold`` consecutive failures; one trial call after the cooldown.

    While open every call is rejected with :class:`CircuitOpenFailure` without
    running. Once the cooldown has elapsed the breaker half-opens and lets
    exactly one trial call through; concurrent callers are still rejected.
    A successful trial closes the breaker, a failed one reopens it and
    restarts the cooldown.
    """

    def __init__(
        self,
        name: str,
        *,
        failure_threshold: int = 5,
        cooldown_seconds: float = 60.0,
        clock: Clock = time.monotonic,
    ):
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be at least 1")
        self.name = name
        self.failure_threshold = failure_threshold
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._consecutive_failures = 0
        self._opened_at: float | None = None
        self._trial_in_flight = False

    @property
    def state(self) -> CircuitState:
        return self._state

    def is_open(self) -> bool:
        return self._state is CircuitState.OPEN

    def _cooldown_remaining(self) -> float:
        if self._opened_at is None:
            return 0.0
        return max(self._opened_at + self.cooldown_seconds - self._clock(), 0.0)

    def _admit(self) -> None:
        """Raise if the call must be rejected; otherwise register it."""

        if self._state is CircuitState.OPEN:
            if self._cooldown_remaining() > 0:
                raise CircuitOpenFailure(
                    f"Circuit for {self.name} is open", resource=self.name
                )
            self._state = CircuitState.HALF_OPEN
            self._trial_in_flight = False
            logger.info("Circuit for %s half-open, allowing one trial call", self.name)

        if self._state is CircuitState.HALF_OPEN:
            if self._trial_in_flight:
                raise CircuitOpenFailure(
                    f"Circuit for {self.name} is probing recovery", resource=self.name
                )
            self._trial_in_flight = True

    def record_success(self) -> None:
        if self._state is not CircuitState.CLOSED:
            logger.info("Circuit for %s closed, normal operation resumed", self.name)
        self._state = CircuitState.CLOSED
        self._consecutive_failures = 0
        self._opened_at = None
        self._trial_in_flight = False

    def record_failure(self) -> None:
        self._consecutive_failures += 1
        if self._state is CircuitState.HALF_OPEN:
            self._open()
        elif (
            self._state is CircuitState.CLOSED
            and self._consecutive_failures >= self.failure_threshold
        ):
            self._open()

    def _release_trial(self) -> None:
        self._trial_in_flight = False

    def _open(self) -> None:
        self._state = CircuitState.OPEN
        self._opened_at = self._clock()
        self._trial_in_flight = False
        logger.warning(
            "Circuit for %s opened after %s consecutive failures; cooling down %.0fs",
            self.name,
            self._consecutive_failures,
            self.cooldown_seconds,
        )

    async def call(self, func: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """Run ``func`` through the breaker, recording its outcome."""

        self._admit()
        try:
            result = await func(*args, **kwargs)
        except Exception as exc:
            if counts_as_failure(exc):
                self.record_failure()
            else:
                # The resource answered; treat it as reachable.
                self.record_success()
            raise
        except BaseException:
            # Task cancellation says nothing about the resource.
            self._release_trial()
            raise
        self.record_success()
        return result

    def stats(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "state": self._state.value,
            "consecutive_failures": self._consecutive_failures,
            "failure_threshold": self.failure_threshold,
            "cooldown_remaining": round(self._cooldown_remaining(), 3)
            if self._state is CircuitState.OPEN
            else 0.0,
        }

    def reset(self) -> None:
        self.record_success()


class BreakerRegistry:
    """Lazily created breakers keyed by resource name, sharing one configuration."""

    def __init__(
        self,
        *,
        failure_threshold: int = 5,
        cooldown_seconds: float = 60.0,
        clock: Clock = time.monotonic,
    ):
        self._failure_threshold = failure_threshold
        self._cooldown_seconds = cooldown_seconds
        self._clock = clock
        self._breakers: dict[str, CircuitBreaker] = {}

    def get(self, name: str) -> CircuitBreaker:
        breaker = self._breakers.get(name)
        if breaker is None:
            breaker = CircuitBreaker(
                name,
                failure_threshold=self._failure_threshold,
                cooldown_seconds=self._cooldown_seconds,
                clock=self._clock,
            )
            self._breakers[name] = breaker
        return breaker

    def stats(self) -> list[dict[str, Any]]:
        return [breaker.stats() for breaker in self._breakers.values()]
