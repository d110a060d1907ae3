from __future__ import annotations

import time
from pathlib import Path

import pytest

from conftest import FakeClock, FakeTerminal
from tools.base import BaseTool, ToolResult, ToolStatus
from tools.circuit_breaker import CircuitBreaker, CircuitState
from tools.errors import (
    CircuitOpenError,
    PermanentToolError,
    RetryExhaustedError,
    SecurityViolation,
    SuspiciousActivityError,
    ToolNetworkError,
    ToolTimeoutError,
)
from tools.gateway import ResilientToolGateway, RetryPolicy
from tools.security import SecurityPolicy


class Flaky:
    """Callable failing with the given exceptions before succeeding."""

    def __init__(self, *failures: BaseException, result: str = "ok") -> None:
        self.failures = list(failures)
        self.result = result
        self.calls = 0

    def __call__(self, *args, **kwargs) -> str:
        self.calls += 1
        if self.failures:
            raise self.failures.pop(0)
        return self.result


def _gateway(policy: SecurityPolicy, clock: FakeClock, sleeps: list[float], threshold: int = 3) -> ResilientToolGateway:
    return ResilientToolGateway(
        policy,
        timeout=0,
        breaker=CircuitBreaker(failure_threshold=threshold, reset_timeout=60.0, clock=clock),
        clock=clock,
        sleep=sleeps.append,
    )


def test_retry_policy_schedule_is_1_2_4() -> None:
    assert RetryPolicy().schedule == [1.0, 2.0, 4.0]


def test_transient_failures_retry_with_backoff(gateway: ResilientToolGateway, sleeps: list[float]) -> None:
    func = Flaky(ToolNetworkError("reset"), TimeoutError("slow"))

    assert gateway.invoke("code_host", func) == "ok"
    assert func.calls == 3
    assert sleeps == [1.0, 2.0]


def test_retries_exhausted_after_full_schedule(policy, clock, sleeps) -> None:
    gateway = _gateway(policy, clock, sleeps, threshold=10)
    func = Flaky(*(ConnectionError(f"down {i}") for i in range(4)))

    with pytest.raises(RetryExhaustedError) as exc_info:
        gateway.invoke("code_host", func)

    assert func.calls == 4
    assert sleeps == [1.0, 2.0, 4.0]
    assert exc_info.value.attempts == 4
    assert isinstance(exc_info.value.last_error, ConnectionError)


def test_permanent_errors_are_not_retried(gateway: ResilientToolGateway, sleeps: list[float]) -> None:
    func = Flaky(PermanentToolError("bad credentials", tool="code_host"))

    with pytest.raises(PermanentToolError, match="bad credentials"):
        gateway.invoke("code_host", func)
    assert func.calls == 1
    assert sleeps == []


def test_unknown_exceptions_map_to_permanent(gateway: ResilientToolGateway) -> None:
    with pytest.raises(PermanentToolError, match="code_host failed"):
        gateway.invoke("code_host", Flaky(KeyError("missing")))
    assert gateway.breaker.state("code_host") == CircuitState.CLOSED


def test_breaker_opens_after_three_failures_and_fails_fast(policy, clock, sleeps) -> None:
    gateway = _gateway(policy, clock, sleeps)
    func = Flaky(*(ToolNetworkError("down") for _ in range(10)))

    with pytest.raises(CircuitOpenError):
        gateway.invoke("embed", func)
    assert func.calls == 3
    assert gateway.breaker.state("embed") == CircuitState.OPEN

    # Before the reset timeout every call fails fast without reaching the tool
    clock.advance(59)
    with pytest.raises(CircuitOpenError):
        gateway.invoke("embed", func)
    assert func.calls == 3


def test_breaker_allows_one_trial_after_reset_timeout(policy, clock, sleeps) -> None:
    gateway = _gateway(policy, clock, sleeps)
    for _ in range(3):
        gateway.breaker.record_failure("embed")
    assert gateway.breaker.state("embed") == CircuitState.OPEN

    clock.advance(60)
    assert gateway.breaker.state("embed") == CircuitState.HALF_OPEN
    gateway.breaker.acquire("embed")
    with pytest.raises(CircuitOpenError, match="trial in flight"):
        gateway.breaker.acquire("embed")

    gateway.breaker.record_success("embed")
    assert gateway.breaker.state("embed") == CircuitState.CLOSED
    assert gateway.invoke("embed", Flaky()) == "ok"


def test_failed_trial_reopens_breaker(policy, clock, sleeps) -> None:
    gateway = _gateway(policy, clock, sleeps)
    for _ in range(3):
        gateway.breaker.record_failure("embed")
    clock.advance(61)

    func = Flaky(ToolNetworkError("still down"))
    with pytest.raises(CircuitOpenError):
        gateway.invoke("embed", func)
    assert func.calls == 1
    assert gateway.breaker.state("embed") == CircuitState.OPEN


def test_non_whitelisted_commands_never_execute(gateway: ResilientToolGateway, terminal: FakeTerminal) -> None:
    with pytest.raises(SecurityViolation, match="not whitelisted"):
        gateway.call("terminal", "execute", command="curl", args=["http://example.com"], cwd=".")
    assert terminal.calls == []

    output = gateway.call("terminal", "execute", command="ruff", args=["check", "."], cwd=".")
    assert output["exit_code"] == 0
    assert terminal.commands == ["ruff"]


def test_filesystem_writes_outside_scope_are_rejected(gateway: ResilientToolGateway, repo: Path) -> None:
    with pytest.raises(SecurityViolation):
        gateway.call("filesystem", "write", scope=["src"], path="tests/test_new.py", content="x")
    assert not (repo / "tests" / "test_new.py").exists()

    gateway.call("filesystem", "write", scope=["src"], path="src/new.py", content="x = 1\n")
    assert gateway.call("filesystem", "read", path="src/new.py") == "x = 1\n"


def test_unknown_tool_is_permanent(gateway: ResilientToolGateway) -> None:
    with pytest.raises(PermanentToolError, match="Unknown tool"):
        gateway.call("database", "query", path="x")


def test_tool_result_statuses_map_to_errors(gateway: ResilientToolGateway, sleeps: list[float]) -> None:
    class Limited(BaseTool):
        name = "limited"

        def __init__(self) -> None:
            self.calls = 0

        def execute(self, operation, **kwargs) -> ToolResult:
            self.calls += 1
            if self.calls == 1:
                return ToolResult(status=ToolStatus.RATE_LIMITED, error="slow down")
            return ToolResult(status=ToolStatus.SUCCESS, output="done")

    tool = Limited()
    gateway.register(tool)
    assert gateway.call("limited", "run") == "done"
    assert sleeps == [1.0]


def test_call_rate_spike_is_suspicious(repo: Path, clock: FakeClock, sleeps: list[float]) -> None:
    policy = SecurityPolicy(allowed_dirs=(repo,), max_calls_per_window=2, rate_window_seconds=60)
    gateway = _gateway(policy, clock, sleeps)

    gateway.invoke("notifier", Flaky())
    gateway.invoke("notifier", Flaky())
    with pytest.raises(SuspiciousActivityError):
        gateway.invoke("notifier", Flaky())

    clock.advance(61)
    assert gateway.invoke("notifier", Flaky()) == "ok"


def test_slow_calls_time_out(policy: SecurityPolicy, clock: FakeClock, sleeps: list[float]) -> None:
    gateway = ResilientToolGateway(
        policy,
        retry=RetryPolicy(max_retries=0),
        timeout=0.05,
        breaker=CircuitBreaker(clock=clock),
        clock=clock,
        sleep=sleeps.append,
    )
    try:
        with pytest.raises(RetryExhaustedError) as exc_info:
            gateway.invoke("code_generator", time.sleep, 0.5)
        assert isinstance(exc_info.value.last_error, ToolTimeoutError)
    finally:
        gateway.shutdown()


def test_direct_calls_run_while_breaker_is_open(gateway: ResilientToolGateway, repo: Path) -> None:
    for _ in range(3):
        gateway.breaker.record_failure("filesystem")
    with pytest.raises(CircuitOpenError):
        gateway.call("filesystem", "read", path="src/app.py")

    gateway.call_direct("filesystem", "write", scope=["src"], path="src/app.py", content="restored\n")

    assert (repo / "src" / "app.py").read_text(encoding="utf-8") == "restored\n"
    assert gateway.breaker.state("filesystem") == CircuitState.OPEN
    # The policy guard still applies
    with pytest.raises(SecurityViolation):
        gateway.call_direct("filesystem", "write", scope=["src"], path="tests/x.py", content="x")
