"""Resilient tool gateway.

Every external call (classification, embedding, code host, filesystem,
terminal, database, notifications) goes through ``ResilientToolGateway``,
which layers, in order:

1. Policy guard checks (paths, command whitelist, call-rate spikes)
2. A per-call timeout
3. Retry with a fixed 1s/2s/4s backoff for transient failures
4. A per-tool circuit breaker
"""

import logging
import threading
import time
from collections import deque
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from pathlib import Path
from typing import Any, TypeVar

from .base import BaseTool, ToolResult, ToolStatus
from .circuit_breaker import CircuitBreaker
from .errors import (
    FordError,
    PermanentToolError,
    RateLimitedError,
    RetryExhaustedError,
    SecurityViolation,
    ToolTimeoutError,
    is_transient,
)
from .security import SecurityPolicy, check_call_rate, guard_tool_call

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Jitter-free exponential backoff schedule."""

    max_retries: int = 3
    base_delay: float = 1.0
    multiplier: float = 2.0

    def delay(self, retry_index: int) -> float:
        """Delay before retry number ``retry_index`` (0-indexed)."""
        return self.base_delay * (self.multiplier ** retry_index)

    @property
    def schedule(self) -> list[float]:
        return [self.delay(i) for i in range(self.max_retries)]


class ResilientToolGateway:
    """Single entry point for tool and capability calls."""

    def __init__(
        self,
        policy: SecurityPolicy,
        retry: RetryPolicy | None = None,
        timeout: float = 30.0,
        breaker: CircuitBreaker | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        max_workers: int = 16,
    ) -> None:
        """Initialize gateway.

        Args:
            policy: Security policy for the guard checks
            retry: Retry schedule for transient failures
            timeout: Default per-call ceiling in seconds (0 disables)
            breaker: Shared circuit breaker registry
            clock: Monotonic clock (injectable for simulated time)
            sleep: Sleep function used between retries
            max_workers: Threads available for timed calls
        """
        self.policy = policy
        self.retry = retry or RetryPolicy()
        self.timeout = timeout
        self.breaker = breaker or CircuitBreaker(clock=clock)
        self._clock = clock
        self._sleep = sleep
        self._tools: dict[str, BaseTool] = {}
        self._call_log: dict[str, deque[float]] = {}
        self._rate_lock = threading.Lock()
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers,
            thread_name_prefix="ford-gateway",
        )

    def register(self, tool: BaseTool, name: str | None = None) -> None:
        """Register a tool under its name."""
        self._tools[name or tool.name] = tool

    def has_tool(self, name: str) -> bool:
        return name in self._tools

    def call(
        self,
        tool: str,
        operation: str,
        *,
        scope: Sequence[str | Path] | None = None,
        call_timeout: float | None = None,
        **kwargs: Any,
    ) -> Any:
        """Call a registered tool operation.

        Args:
            tool: Registered tool name
            operation: Tool operation
            scope: Directories writes must stay inside
            call_timeout: Override the default call ceiling
            **kwargs: Operation parameters

        Returns:
            The tool output on success

        Raises:
            SecurityViolation, PermanentToolError, CircuitOpenError,
            RetryExhaustedError
        """
        if tool not in self._tools:
            raise PermanentToolError(f"Unknown tool: {tool}", tool=tool)
        self._guard(tool, operation, kwargs, scope)
        instance = self._tools[tool]

        def thunk() -> Any:
            return self._unwrap(tool, instance.execute(operation, **kwargs))

        return self._dispatch(tool, thunk, call_timeout)

    def call_direct(
        self,
        tool: str,
        operation: str,
        *,
        scope: Sequence[str | Path] | None = None,
        call_timeout: float | None = None,
        **kwargs: Any,
    ) -> Any:
        """Call a tool operation without consulting its circuit breaker.

        Reserved for compensating actions such as restoring files after a
        failed change set, which must run even while the breaker the
        failure just opened is failing every other call fast. The policy
        guard, timeout and retry schedule still apply; the call neither
        counts toward the rate limit nor moves the breaker.
        """
        if tool not in self._tools:
            raise PermanentToolError(f"Unknown tool: {tool}", tool=tool)
        guard_tool_call(tool, operation, kwargs, self.policy, scope=scope)
        instance = self._tools[tool]

        def thunk() -> Any:
            return self._unwrap(tool, instance.execute(operation, **kwargs))

        return self._dispatch(tool, thunk, call_timeout, use_breaker=False)

    def invoke(
        self,
        tool: str,
        func: Callable[..., T],
        *args: Any,
        call_timeout: float | None = None,
        **kwargs: Any,
    ) -> T:
        """Call a capability function under the same protections."""
        self._check_rate(tool)

        def thunk() -> T:
            return func(*args, **kwargs)

        return self._dispatch(tool, thunk, call_timeout)

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)

    def _guard(
        self,
        tool: str,
        operation: str,
        kwargs: dict[str, Any],
        scope: Sequence[str | Path] | None,
    ) -> None:
        try:
            guard_tool_call(tool, operation, kwargs, self.policy, scope=scope)
        except SecurityViolation:
            logger.warning(f"GATEWAY: rejected {tool}.{operation} by policy guard")
            raise
        self._check_rate(tool)

    def _check_rate(self, tool: str) -> None:
        with self._rate_lock:
            now = self._clock()
            log = self._call_log.setdefault(tool, deque())
            window_start = now - self.policy.rate_window_seconds
            while log and log[0] <= window_start:
                log.popleft()
            check_call_rate(log, now, self.policy, tool=tool)
            log.append(now)

    def _unwrap(self, tool: str, result: ToolResult) -> Any:
        if result.success:
            return result.output
        message = result.error or f"{tool} returned {result.status.value}"
        if result.status == ToolStatus.TIMEOUT:
            raise ToolTimeoutError(message, tool=tool)
        if result.status == ToolStatus.RATE_LIMITED:
            raise RateLimitedError(message, tool=tool)
        if result.status == ToolStatus.DENIED:
            raise SecurityViolation(message, tool=tool)
        raise PermanentToolError(message, tool=tool)

    def _run_with_timeout(self, tool: str, thunk: Callable[[], T], timeout: float) -> T:
        if not timeout:
            return thunk()
        future = self._executor.submit(thunk)
        try:
            return future.result(timeout=timeout)
        except FutureTimeoutError as exc:
            # The worker thread cannot be interrupted; its result is discarded.
            future.cancel()
            raise ToolTimeoutError(f"{tool} call exceeded {timeout}s", tool=tool) from exc

    def _dispatch(
        self,
        tool: str,
        thunk: Callable[[], T],
        call_timeout: float | None,
        use_breaker: bool = True,
    ) -> T:
        timeout = self.timeout if call_timeout is None else call_timeout
        retries = 0
        while True:
            if use_breaker:
                self.breaker.acquire(tool)
            try:
                result = self._run_with_timeout(tool, thunk, timeout)
            except Exception as exc:
                if not is_transient(exc):
                    if use_breaker:
                        self.breaker.release_trial(tool)
                    if isinstance(exc, FordError):
                        raise
                    raise PermanentToolError(f"{tool} failed: {exc}", tool=tool) from exc

                if use_breaker:
                    self.breaker.record_failure(tool)
                if retries >= self.retry.max_retries:
                    logger.error(f"GATEWAY: {tool} failed after {retries + 1} attempts: {exc}")
                    raise RetryExhaustedError(
                        f"{tool} failed after {retries + 1} attempts: {exc}",
                        tool=tool,
                        attempts=retries + 1,
                        last_error=exc,
                    ) from exc
                delay = self.retry.delay(retries)
                logger.info(
                    f"GATEWAY: transient failure on {tool} ({exc}); "
                    f"retry {retries + 1}/{self.retry.max_retries} in {delay:.0f}s"
                )
                self._sleep(delay)
                retries += 1
                continue

            if use_breaker:
                self.breaker.record_success(tool)
            return result
