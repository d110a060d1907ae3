"""Per-tool circuit breaker.

State machine per tool:

    closed --(N consecutive failures)--> open
    open --(reset timeout since last failure)--> half_open (one trial call)
    half_open --(trial succeeds)--> closed
    half_open --(trial fails)--> open (timer restarts)

State is in-memory only and shared by every workflow using the tool;
all reads and updates go through a single lock so the check-then-act
sequences are atomic.
"""

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any

from .errors import CircuitOpenError

logger = logging.getLogger(__name__)


class CircuitState(str, Enum):
    """Circuit breaker state."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitBreakerState:
    """Breaker bookkeeping for a single tool."""

    tool: str
    state: CircuitState = CircuitState.CLOSED
    failure_count: int = 0
    last_failure_at: float | None = None
    trial_in_flight: bool = False


BreakerListener = Callable[[str, CircuitBreakerState], None]


class CircuitBreaker:
    """Circuit breakers for every tool behind the gateway."""

    def __init__(
        self,
        failure_threshold: int = 3,
        reset_timeout: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize breaker registry.

        Args:
            failure_threshold: Consecutive failures that open a breaker
            reset_timeout: Seconds after the last failure before a trial
            clock: Monotonic clock (injectable for simulated time)
        """
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self._clock = clock
        self._lock = threading.Lock()
        self._states: dict[str, CircuitBreakerState] = {}
        self._on_open: list[BreakerListener] = []
        self._on_close: list[BreakerListener] = []

    def add_listener(
        self,
        on_open: BreakerListener | None = None,
        on_close: BreakerListener | None = None,
    ) -> None:
        """Register callbacks fired after a breaker opens or closes."""
        if on_open:
            self._on_open.append(on_open)
        if on_close:
            self._on_close.append(on_close)

    def _get(self, tool: str) -> CircuitBreakerState:
        state = self._states.get(tool)
        if state is None:
            state = CircuitBreakerState(tool=tool)
            self._states[tool] = state
        return state

    def _cooled_down(self, state: CircuitBreakerState) -> bool:
        if state.last_failure_at is None:
            return True
        return self._clock() - state.last_failure_at >= self.reset_timeout

    def state(self, tool: str) -> CircuitState:
        """Current state as a caller would observe it right now."""
        with self._lock:
            current = self._get(tool)
            if current.state == CircuitState.OPEN and self._cooled_down(current):
                return CircuitState.HALF_OPEN
            return current.state

    def acquire(self, tool: str) -> None:
        """Ask permission to call the tool.

        Raises:
            CircuitOpenError: If the call must fail fast
        """
        with self._lock:
            current = self._get(tool)
            if current.state == CircuitState.CLOSED:
                return
            if current.state == CircuitState.OPEN:
                if not self._cooled_down(current):
                    raise CircuitOpenError(f"Circuit open for {tool}", tool=tool)
                current.state = CircuitState.HALF_OPEN
                current.trial_in_flight = False
                logger.info(f"BREAKER: {tool} half-open, allowing one trial call")
            if current.trial_in_flight:
                raise CircuitOpenError(f"Circuit half-open for {tool}, trial in flight", tool=tool)
            current.trial_in_flight = True

    def record_success(self, tool: str) -> None:
        """Record a successful call; closes a half-open breaker."""
        with self._lock:
            current = self._get(tool)
            was_closed = current.state == CircuitState.CLOSED
            current.state = CircuitState.CLOSED
            current.failure_count = 0
            current.trial_in_flight = False
            snapshot = CircuitBreakerState(**asdict(current))
        if not was_closed:
            logger.info(f"BREAKER: {tool} closed")
            for listener in self._on_close:
                listener(tool, snapshot)

    def record_failure(self, tool: str) -> None:
        """Record a failed call; may open the breaker."""
        opened = False
        with self._lock:
            current = self._get(tool)
            current.failure_count += 1
            current.last_failure_at = self._clock()
            if current.state == CircuitState.HALF_OPEN:
                current.state = CircuitState.OPEN
                current.trial_in_flight = False
                opened = True
            elif current.state == CircuitState.CLOSED and current.failure_count >= self.failure_threshold:
                current.state = CircuitState.OPEN
                opened = True
            snapshot = CircuitBreakerState(**asdict(current))
        if opened:
            logger.warning(
                f"BREAKER: {tool} opened after {snapshot.failure_count} consecutive failures"
            )
            for listener in self._on_open:
                listener(tool, snapshot)

    def release_trial(self, tool: str) -> None:
        """End a half-open trial that neither succeeded nor failed."""
        with self._lock:
            self._get(tool).trial_in_flight = False

    def reset(self, tool: str) -> None:
        """Force a breaker back to closed."""
        with self._lock:
            self._states[tool] = CircuitBreakerState(tool=tool)

    def open_tools(self) -> list[str]:
        """Tools whose breaker is not closed."""
        with self._lock:
            return sorted(t for t, s in self._states.items() if s.state != CircuitState.CLOSED)

    def snapshot(self) -> dict[str, dict[str, Any]]:
        """Read-only view of every breaker."""
        with self._lock:
            return {
                tool: {**asdict(state), "state": state.state.value}
                for tool, state in self._states.items()
            }
