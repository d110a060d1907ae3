"""Terminal command execution tool."""

import os
import subprocess
import time
from pathlib import Path
from typing import Any

from .base import BaseTool, ToolResult, ToolStatus
from .security import DEFAULT_COMMAND_WHITELIST


class ShellTool(BaseTool):
    """Tool for executing whitelisted commands without a shell.

    A non-zero exit code is reported in the output, not as a tool
    failure: callers such as the validation pipeline decide what an
    exit code means. Only timeouts and launch errors fail the call.
    """

    name = "terminal"
    description = "Terminal command execution"

    def __init__(
        self,
        working_dir: Path | str | None = None,
        timeout: int = 300,
        allowed_commands: set[str] | frozenset[str] | None = None,
    ) -> None:
        """Initialize shell tool.

        Args:
            working_dir: Default working directory for commands
            timeout: Default timeout in seconds
            allowed_commands: Override allowed command set
        """
        self.working_dir = Path(working_dir) if working_dir else Path.cwd()
        self.timeout = timeout
        self.allowed_commands = allowed_commands or DEFAULT_COMMAND_WHITELIST

    def execute(self, operation: str, **kwargs: Any) -> ToolResult:
        """Execute a terminal operation.

        Args:
            operation: Only ``execute`` is supported
            **kwargs: command, args, cwd, timeout, env

        Returns:
            ToolResult with stdout, stderr, exit_code and duration
        """
        if operation != "execute":
            return ToolResult(
                status=ToolStatus.FAILURE,
                error=f"Unknown operation: {operation}. Available: ['execute']",
            )
        return self._execute(**kwargs)

    def _execute(
        self,
        command: str,
        args: list[str] | None = None,
        cwd: str | Path | None = None,
        timeout: float | None = None,
        env: dict[str, str] | None = None,
    ) -> ToolResult:
        """Run a single command."""
        if Path(command).name not in self.allowed_commands:
            return ToolResult(
                status=ToolStatus.DENIED,
                error=f"Command not allowed: {command}",
            )

        parts = [command, *(args or [])]
        effective_timeout = timeout or self.timeout
        started = time.monotonic()
        try:
            result = subprocess.run(
                parts,
                cwd=str(cwd) if cwd else self.working_dir,
                capture_output=True,
                text=True,
                timeout=effective_timeout,
                check=False,
                env={**os.environ, **(env or {})},
            )
        except subprocess.TimeoutExpired:
            return ToolResult(
                status=ToolStatus.TIMEOUT,
                error=f"Command timed out after {effective_timeout}s",
            )
        except FileNotFoundError:
            return ToolResult(
                status=ToolStatus.FAILURE,
                error=f"Command not found: {command}",
            )

        return ToolResult(
            status=ToolStatus.SUCCESS,
            output={
                "stdout": result.stdout,
                "stderr": result.stderr,
                "exit_code": result.returncode,
                "duration": time.monotonic() - started,
            },
        )
