"""Base tool interface for gateway-dispatched operations."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ToolStatus(Enum):
    """Status of a tool execution."""

    SUCCESS = "success"
    FAILURE = "failure"
    TIMEOUT = "timeout"
    RATE_LIMITED = "rate_limited"
    DENIED = "denied"


# Statuses the gateway treats as retryable
TRANSIENT_STATUSES = {ToolStatus.TIMEOUT, ToolStatus.RATE_LIMITED}


@dataclass
class ToolResult:
    """Result of a tool execution."""

    status: ToolStatus
    output: Any = None
    error: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return self.status == ToolStatus.SUCCESS

    @property
    def transient(self) -> bool:
        return self.status in TRANSIENT_STATUSES

    def __bool__(self) -> bool:
        return self.success


class BaseTool(ABC):
    """Abstract base class for all tools.

    Tools are deterministic operations invoked through the gateway
    with a uniform ``execute(operation, **kwargs)`` contract.
    """

    name: str = "base_tool"
    description: str = "Base tool interface"

    @abstractmethod
    def execute(self, operation: str, **kwargs: Any) -> ToolResult:
        """Execute the tool operation.

        Args:
            operation: Operation name
            **kwargs: Operation-specific parameters

        Returns:
            ToolResult with status and output
        """
        ...

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(name={self.name!r})"
