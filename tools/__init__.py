"""Tools module for gateway-dispatched operations.

Provides:
- Policy guard checks (filesystem scope, command whitelist, rate spikes)
- Filesystem and terminal tools behind a uniform execute contract
- Per-tool circuit breakers
- The resilient gateway (timeout, retry, breaker) every call goes through
"""

from .base import BaseTool, ToolResult, ToolStatus
from .circuit_breaker import CircuitBreaker, CircuitBreakerState, CircuitState
from .errors import (
    ChangeSetError,
    CircuitOpenError,
    ConfigError,
    FordError,
    InvalidTransitionError,
    PermanentToolError,
    RateLimitedError,
    RetryExhaustedError,
    SecurityViolation,
    SuspiciousActivityError,
    ToolError,
    ToolNetworkError,
    ToolTimeoutError,
    TransientToolError,
    describe_error,
    is_transient,
)
from .filesystem_tool import FilesystemTool
from .gateway import ResilientToolGateway, RetryPolicy
from .security import SecurityPolicy, check_command, check_path, guard_tool_call
from .shell_tool import ShellTool

__all__ = [
    "BaseTool",
    "ToolResult",
    "ToolStatus",
    "CircuitBreaker",
    "CircuitBreakerState",
    "CircuitState",
    "ChangeSetError",
    "CircuitOpenError",
    "ConfigError",
    "FordError",
    "InvalidTransitionError",
    "PermanentToolError",
    "RateLimitedError",
    "RetryExhaustedError",
    "SecurityViolation",
    "SuspiciousActivityError",
    "ToolError",
    "ToolNetworkError",
    "ToolTimeoutError",
    "TransientToolError",
    "describe_error",
    "is_transient",
    "FilesystemTool",
    "ResilientToolGateway",
    "RetryPolicy",
    "SecurityPolicy",
    "check_command",
    "check_path",
    "guard_tool_call",
    "ShellTool",
]
