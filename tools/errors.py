"""Error taxonomy for tool calls and change request workflows.

Errors fall into four families that decide how the gateway and the
workflow react:

- Transient (timeout, rate limit, network): retried with backoff
- Permanent (bad credentials, malformed request): fail fast, alert
- Security (policy violation, suspicious pattern): halt, alert, never retried
- Validation (lint/test/build failure): halts only the affected change request
"""

from typing import Any


class FordError(Exception):
    """Base class for all orchestration errors."""


class ConfigError(FordError):
    """Invalid or inconsistent configuration."""


class ToolError(FordError):
    """A tool or capability call failed."""

    def __init__(self, message: str, tool: str | None = None) -> None:
        super().__init__(message)
        self.tool = tool


class TransientToolError(ToolError):
    """Failure that may succeed when retried."""


class ToolTimeoutError(TransientToolError):
    """Call exceeded its configured ceiling."""


class RateLimitedError(TransientToolError):
    """Remote side asked us to slow down."""


class ToolNetworkError(TransientToolError):
    """Connection-level failure."""


class PermanentToolError(ToolError):
    """Failure that will not go away by retrying."""


class SecurityViolation(ToolError):
    """Call rejected by the policy guard before dispatch."""


class SuspiciousActivityError(SecurityViolation):
    """Call pattern looks anomalous (e.g. command rate spike)."""


class CircuitOpenError(ToolError):
    """Breaker for the tool is open; the call was not attempted."""


class RetryExhaustedError(ToolError):
    """All retry attempts for a transient failure were used."""

    def __init__(
        self,
        message: str,
        tool: str | None = None,
        attempts: int = 0,
        last_error: BaseException | None = None,
    ) -> None:
        super().__init__(message, tool=tool)
        self.attempts = attempts
        self.last_error = last_error


class InvalidTransitionError(FordError):
    """State transition not present in the change request graph."""


class ChangeSetError(FordError):
    """A multi-file change could not be applied (and was rolled back)."""

    def __init__(self, message: str, failed_path: str | None = None) -> None:
        super().__init__(message)
        self.failed_path = failed_path


def is_transient(error: BaseException) -> bool:
    """Return True if the error should be retried."""
    if isinstance(error, (SecurityViolation, PermanentToolError, CircuitOpenError)):
        return False
    if isinstance(error, TransientToolError):
        return True
    # Builtin errors raised by capability adapters
    return isinstance(error, (TimeoutError, ConnectionError))


def describe_error(error: BaseException) -> dict[str, Any]:
    """Capture error context for halt records and alerts."""
    context: dict[str, Any] = {
        "type": type(error).__name__,
        "message": str(error),
    }
    tool = getattr(error, "tool", None)
    if tool:
        context["tool"] = tool
    if isinstance(error, RetryExhaustedError):
        context["attempts"] = error.attempts
        if error.last_error is not None:
            context["last_error"] = f"{type(error.last_error).__name__}: {error.last_error}"
    if isinstance(error, ChangeSetError) and error.failed_path:
        context["failed_path"] = error.failed_path
    return context
