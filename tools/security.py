"""Policy guard for tool access.

Every filesystem and terminal request passes through these checks
before the gateway dispatches it. The functions are pure: callers pass
in the policy and any call history they track, so no synchronization
is required.

Rules enforced:
- Filesystem paths must resolve inside the allowed directories
- Writes and deletes must additionally stay inside the change scope
- Terminal commands must be bare names present in the whitelist
- Call rate per tool must stay under the configured spike limit

Policy files are YAML and are always parsed with ``yaml.safe_load``
after a pre-scan for object-instantiation tags.
"""

import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .errors import SecurityViolation, SuspiciousActivityError

# Dangerous YAML patterns that indicate potential exploits
YAML_EXPLOIT_PATTERNS = [
    r'!!python/',           # Python object instantiation
    r'!!ruby/',             # Ruby object instantiation
    r'!!perl/',             # Perl object instantiation
    r'!!java/',             # Java object instantiation
    r'!!\w+/object',        # Generic object tags
    r'__reduce__',          # Pickle-style attacks
    r'__import__',          # Dynamic imports
]

DEFAULT_COMMAND_WHITELIST = frozenset({
    # Python
    "python",
    "pytest",
    "ruff",
    "flake8",
    "mypy",
    "black",
    # Node.js
    "node",
    "npm",
    "npx",
    "eslint",
    "tsc",
    "jest",
    # Build
    "make",
    "git",
})

# Operations that mutate the filesystem and are held to the change scope
MUTATING_FS_OPERATIONS = {"write", "delete"}

FILESYSTEM_TOOL = "filesystem"
TERMINAL_TOOL = "terminal"


@dataclass(frozen=True)
class SecurityPolicy:
    """Immutable policy consulted before every tool dispatch."""

    allowed_dirs: tuple[Path, ...] = field(default_factory=tuple)
    command_whitelist: frozenset[str] = DEFAULT_COMMAND_WHITELIST
    max_calls_per_window: int = 120
    rate_window_seconds: float = 60.0

    @property
    def base_dir(self) -> Path:
        """Directory relative paths are resolved against."""
        if not self.allowed_dirs:
            raise SecurityViolation("No allowed directories configured")
        return self.allowed_dirs[0]


def resolve_path(path: str | Path, base_dir: Path) -> Path:
    """Resolve a requested path, collapsing ``..`` and symlinks."""
    raw = str(path)
    if "\x00" in raw:
        raise SecurityViolation(f"Null byte in path: {raw!r}")
    candidate = Path(raw)
    if not candidate.is_absolute():
        candidate = base_dir / candidate
    return candidate.resolve()


def _is_within(path: Path, directories: Iterable[Path]) -> bool:
    for directory in directories:
        root = Path(directory).resolve()
        if path == root or path.is_relative_to(root):
            return True
    return False


def check_path(
    path: str | Path,
    policy: SecurityPolicy,
    scope: Sequence[str | Path] | None = None,
) -> Path:
    """Check a filesystem path against the allowed directories.

    Args:
        path: Requested path (absolute or relative to the base dir)
        policy: Active security policy
        scope: Optional narrower set of directories (relative to the
            base dir) the path must also fall within

    Returns:
        The resolved path

    Raises:
        SecurityViolation: If the path escapes the allowed area
    """
    resolved = resolve_path(path, policy.base_dir)
    if not _is_within(resolved, policy.allowed_dirs):
        raise SecurityViolation(
            f"Path outside allowed directories: {path}",
            tool=FILESYSTEM_TOOL,
        )
    if scope is not None:
        scope_dirs = [resolve_path(s, policy.base_dir) for s in scope]
        if not _is_within(resolved, scope_dirs):
            raise SecurityViolation(
                f"Path outside approved change scope: {path}",
                tool=FILESYSTEM_TOOL,
            )
    return resolved


def check_command(command: str, policy: SecurityPolicy) -> str:
    """Check a terminal command against the whitelist.

    Only bare command names are accepted; a path-qualified command
    could point at any binary that happens to share a whitelisted name.

    Returns:
        The command name

    Raises:
        SecurityViolation: If the command is not whitelisted
    """
    name = (command or "").strip()
    if not name:
        raise SecurityViolation("Empty command", tool=TERMINAL_TOOL)
    if "/" in name or "\\" in name:
        raise SecurityViolation(
            f"Path-qualified commands are not allowed: {name}",
            tool=TERMINAL_TOOL,
        )
    if name not in policy.command_whitelist:
        raise SecurityViolation(
            f"Command not whitelisted: {name}",
            tool=TERMINAL_TOOL,
        )
    return name


def check_call_rate(
    recent_calls: Sequence[float],
    now: float,
    policy: SecurityPolicy,
    tool: str | None = None,
) -> None:
    """Flag call-rate spikes as suspicious activity.

    Args:
        recent_calls: Timestamps of previous calls to the tool
        now: Current timestamp (same clock as recent_calls)
        policy: Active security policy
        tool: Tool name for the error

    Raises:
        SuspiciousActivityError: If this call would exceed the limit
    """
    window_start = now - policy.rate_window_seconds
    in_window = sum(1 for ts in recent_calls if ts > window_start)
    if in_window + 1 > policy.max_calls_per_window:
        raise SuspiciousActivityError(
            f"Call rate spike: {in_window + 1} calls in "
            f"{policy.rate_window_seconds:.0f}s (limit {policy.max_calls_per_window})",
            tool=tool,
        )


def guard_tool_call(
    tool: str,
    operation: str,
    kwargs: dict[str, Any],
    policy: SecurityPolicy,
    scope: Sequence[str | Path] | None = None,
) -> None:
    """Apply the static checks for one tool request.

    Raises:
        SecurityViolation: If the request violates policy
    """
    if tool == FILESYSTEM_TOOL:
        path = kwargs.get("path")
        if path is None:
            raise SecurityViolation(f"filesystem.{operation} requires a path", tool=tool)
        check_path(
            path,
            policy,
            scope=scope if operation in MUTATING_FS_OPERATIONS else None,
        )
    elif tool == TERMINAL_TOOL:
        check_command(kwargs.get("command", ""), policy)
        cwd = kwargs.get("cwd")
        if cwd is not None:
            check_path(cwd, policy)


def safe_yaml_load(content: str) -> Any:
    """Safely load YAML content.

    Raises:
        ValueError: If content contains suspicious patterns
        yaml.YAMLError: If YAML is malformed
    """
    for pattern in YAML_EXPLOIT_PATTERNS:
        if re.search(pattern, content, re.IGNORECASE):
            raise ValueError(f"Suspicious YAML pattern detected: {pattern}")
    return yaml.safe_load(content)


def load_policy_file(file_path: Path | str) -> dict[str, Any]:
    """Load a YAML policy file.

    Recognised keys: ``allowed_dirs``, ``command_whitelist``,
    ``max_calls_per_window``, ``rate_window_seconds``.

    Raises:
        ValueError: If the file is not a mapping or looks malicious
        FileNotFoundError: If file doesn't exist
    """
    path = Path(file_path)
    data = safe_yaml_load(path.read_text(encoding="utf-8")) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Policy file must contain a mapping: {path}")
    return data
