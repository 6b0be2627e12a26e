"""
Circuit breakers for external calls.

One breaker per named resource (positions API, balance lookups, ...).
A flaky dependency trips its own breaker only; other resources keep
flowing. Breakers live in a registry owned by the orchestrator so tests can
build isolated copies.
"""

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional, Tuple, TypeVar

from copyrelay.errors import CopyRelayError, ErrorKind

logger = logging.getLogger(__name__)

T = TypeVar("T")

# name -> (failure_threshold, cooldown_seconds)
DEFAULT_BREAKER_SETTINGS: Dict[str, Tuple[int, float]] = {
    "validation-positions": (3, 30.0),
    "validation-balance": (3, 30.0),
    "pnl-positions": (5, 60.0),
    "activity-polling": (5, 60.0),
}


class BreakerState(str, Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


@dataclass(frozen=True)
class BreakerTransition:
    """Reported to listeners on every state change."""

    name: str
    old_state: BreakerState
    new_state: BreakerState
    failure_count: int
    reason: Optional[str] = None


TransitionListener = Callable[[BreakerTransition], None]


class CircuitBreaker:
    """
    Consecutive-failure circuit breaker.

    CLOSED: calls pass through; threshold consecutive failures opens it.
    OPEN: calls fail fast until the cool-down elapses.
    HALF_OPEN: one probe call decides between CLOSED and OPEN.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 3,
        cooldown_seconds: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        if failure_threshold <= 0:
            raise ValueError(f"failure_threshold must be positive: {failure_threshold}")
        if cooldown_seconds < 0:
            raise ValueError(f"cooldown_seconds must be non-negative: {cooldown_seconds}")

        self.name = name
        self.failure_threshold = failure_threshold
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock

        self._state = BreakerState.CLOSED
        self._failure_count = 0
        self._last_failure_at: Optional[float] = None
        self._opened_at: Optional[float] = None
        self._probe_in_flight = False
        self._listeners: List[TransitionListener] = []

    @property
    def state(self) -> BreakerState:
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    @property
    def last_failure_at(self) -> Optional[float]:
        return self._last_failure_at

    def add_listener(self, listener: TransitionListener) -> None:
        self._listeners.append(listener)

    async def execute(self, operation: Callable[[], Awaitable[T]]) -> T:
        """
        Run operation through the breaker.

        Raises:
            CopyRelayError(CIRCUIT_OPEN): breaker open, operation not invoked
            Any exception raised by the operation itself
        """
        self._before_call()

        try:
            result = await operation()
        except Exception as e:
            self._on_failure(e)
            raise
        except BaseException:
            # cancelled mid-probe: neither success nor failure
            self._probe_in_flight = False
            raise

        self._on_success()
        return result

    def _before_call(self) -> None:
        if self._state == BreakerState.OPEN:
            elapsed = self._clock() - (self._opened_at or 0.0)
            if elapsed < self.cooldown_seconds:
                remaining = self.cooldown_seconds - elapsed
                raise CopyRelayError(
                    ErrorKind.CIRCUIT_OPEN,
                    f"Circuit '{self.name}' is OPEN, retry in {remaining:.1f}s",
                )
            self._transition(BreakerState.HALF_OPEN, "cool-down elapsed")

        if self._state == BreakerState.HALF_OPEN:
            if self._probe_in_flight:
                raise CopyRelayError(
                    ErrorKind.CIRCUIT_OPEN,
                    f"Circuit '{self.name}' is HALF_OPEN, probe in flight",
                )
            self._probe_in_flight = True

    def _on_success(self) -> None:
        self._probe_in_flight = False
        self._failure_count = 0
        if self._state != BreakerState.CLOSED:
            self._transition(BreakerState.CLOSED, "probe succeeded")

    def _on_failure(self, error: Exception) -> None:
        self._failure_count += 1
        self._last_failure_at = self._clock()

        if self._state == BreakerState.HALF_OPEN:
            self._probe_in_flight = False
            self._open(f"probe failed: {error}")
        elif self._state == BreakerState.CLOSED and self._failure_count >= self.failure_threshold:
            self._open(f"{self._failure_count} consecutive failures, last: {error}")

    def _open(self, reason: str) -> None:
        self._opened_at = self._clock()
        self._transition(BreakerState.OPEN, reason)

    def _transition(self, new_state: BreakerState, reason: str) -> None:
        old_state = self._state
        self._state = new_state

        log = logger.warning if new_state == BreakerState.OPEN else logger.info
        log(f"Circuit '{self.name}': {old_state.value} -> {new_state.value} ({reason})")

        event = BreakerTransition(
            name=self.name,
            old_state=old_state,
            new_state=new_state,
            failure_count=self._failure_count,
            reason=reason,
        )
        for listener in self._listeners:
            try:
                listener(event)
            except Exception as e:
                logger.error(f"Breaker listener failed for '{self.name}': {e}")

    def reset(self) -> None:
        """Force the breaker closed (manual intervention)."""
        self._failure_count = 0
        self._probe_in_flight = False
        self._opened_at = None
        if self._state != BreakerState.CLOSED:
            self._transition(BreakerState.CLOSED, "manual reset")

    def get_status(self) -> dict:
        return {
            "name": self.name,
            "state": self._state.value,
            "failure_count": self._failure_count,
            "failure_threshold": self.failure_threshold,
            "cooldown_seconds": self.cooldown_seconds,
            "last_failure_at": self._last_failure_at,
        }


class BreakerRegistry:
    """Named breakers, created on first use."""

    def __init__(
        self,
        settings: Optional[Dict[str, Tuple[int, float]]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._settings = dict(DEFAULT_BREAKER_SETTINGS)
        if settings:
            self._settings.update(settings)
        self._clock = clock
        self._breakers: Dict[str, CircuitBreaker] = {}
        self._listeners: List[TransitionListener] = []

    def get(
        self,
        name: str,
        failure_threshold: Optional[int] = None,
        cooldown_seconds: Optional[float] = None,
    ) -> CircuitBreaker:
        """
        Get the breaker for a resource.

        Explicit threshold / cool-down apply only when the breaker is first
        created; otherwise the registry settings (or 3 / 30s) are used.
        """
        breaker = self._breakers.get(name)
        if breaker is not None:
            return breaker

        default_threshold, default_cooldown = self._settings.get(name, (3, 30.0))
        breaker = CircuitBreaker(
            name=name,
            failure_threshold=failure_threshold or default_threshold,
            cooldown_seconds=default_cooldown if cooldown_seconds is None else cooldown_seconds,
            clock=self._clock,
        )
        for listener in self._listeners:
            breaker.add_listener(listener)
        self._breakers[name] = breaker
        return breaker

    def add_listener(self, listener: TransitionListener) -> None:
        """Subscribe to transitions of every breaker, existing and future."""
        self._listeners.append(listener)
        for breaker in self._breakers.values():
            breaker.add_listener(listener)

    def get_status(self) -> List[dict]:
        return [b.get_status() for b in self._breakers.values()]
