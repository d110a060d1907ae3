"""Configuration management for Ford.

Loads configuration from:
1. ford.toml (defaults)
2. Environment variables, including a .env file (overrides)
3. An optional YAML policy file referenced by ``policy.policy_file``
"""

import os
import sys
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib

from dotenv import load_dotenv

from tools.errors import ConfigError
from tools.security import DEFAULT_COMMAND_WHITELIST, SecurityPolicy, load_policy_file

# Load .env file if present
load_dotenv()

CONFIG_FILENAME = "ford.toml"


@dataclass
class GatewayConfig:
    """Resilient tool gateway configuration."""

    timeout_seconds: float = 30.0
    max_retries: int = 3
    backoff_base_seconds: float = 1.0
    backoff_multiplier: float = 2.0
    breaker_failure_threshold: int = 3
    breaker_reset_seconds: float = 60.0


@dataclass
class PolicyConfig:
    """Tool access policy."""

    allowed_dirs: list[str] = field(default_factory=lambda: ["."])
    command_whitelist: list[str] = field(default_factory=lambda: sorted(DEFAULT_COMMAND_WHITELIST))
    max_calls_per_window: int = 120
    rate_window_seconds: float = 60.0
    policy_file: str = ""  # YAML file overriding the keys above


@dataclass
class ClusteringConfig:
    """Cluster engine configuration."""

    similarity_threshold: float = 0.8


@dataclass
class SchedulerConfig:
    """Admission and concurrency configuration."""

    concurrency_limit: int = 4
    # True: a change request waiting for review keeps its slot
    count_pending_review: bool = True
    poll_interval_seconds: float = 5.0


@dataclass
class ChangeRequestConfig:
    """Change request workflow configuration."""

    repo: str = ""
    deletion_threshold: int = 100
    slug_length: int = 40
    issue_labels: list[str] = field(default_factory=lambda: ["ford"])


@dataclass
class ValidationConfig:
    """Validation pipeline commands (empty string = stage passes with a warning)."""

    working_dir: str = "."
    lint_command: str = "ruff check ."
    test_command: str = "pytest -q"
    build_command: str = "python -m compileall -q ."
    timeout_seconds: float = 300.0


@dataclass
class StorageConfig:
    """Durable state locations."""

    state_dir: str = ".ford"
    checkpoint_retention: int = 50
    embeddings_dir: str = ""  # empty = in-memory embedding store


@dataclass
class NotificationConfig:
    """Resolved-feedback notifications."""

    enabled: bool = True
    message_template: str = "Thanks for the report! A fix has been merged in PR #{pr_number}."


@dataclass
class Config:
    """Main configuration container."""

    gateway: GatewayConfig = field(default_factory=GatewayConfig)
    policy: PolicyConfig = field(default_factory=PolicyConfig)
    clustering: ClusteringConfig = field(default_factory=ClusteringConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    change_requests: ChangeRequestConfig = field(default_factory=ChangeRequestConfig)
    validation: ValidationConfig = field(default_factory=ValidationConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    notifications: NotificationConfig = field(default_factory=NotificationConfig)
    log_level: str = "INFO"
    # Directory of the ford.toml this config was loaded from
    config_dir: Path | None = field(default=None, repr=False)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Config":
        """Create Config from dictionary.

        Raises:
            ConfigError: On unknown keys or invalid values
        """
        sections = {
            "gateway": GatewayConfig,
            "policy": PolicyConfig,
            "clustering": ClusteringConfig,
            "scheduler": SchedulerConfig,
            "change_requests": ChangeRequestConfig,
            "validation": ValidationConfig,
            "storage": StorageConfig,
            "notifications": NotificationConfig,
        }
        unknown = set(data) - set(sections) - {"log_level"}
        if unknown:
            raise ConfigError(f"Unknown config sections: {sorted(unknown)}")

        built = {}
        for name, section_cls in sections.items():
            section_data = data.get(name, {}) or {}
            try:
                built[name] = section_cls(**section_data)
            except TypeError as e:
                raise ConfigError(f"Invalid [{name}] section: {e}") from e

        config = cls(**built, log_level=str(data.get("log_level", "INFO")).upper())
        config.validate()
        return config

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data.pop("config_dir")
        return data

    def state_path(self, base_dir: Path | None = None) -> Path:
        """Absolute state directory (checkpoints, signals, ledger, alerts).

        A relative ``storage.state_dir`` is taken from the directory of the
        loaded ford.toml, then ``base_dir``, then the current directory.
        The CLI and the orchestrator both resolve it here.
        """
        state_dir = Path(self.storage.state_dir).expanduser()
        if state_dir.is_absolute():
            return state_dir
        root = self.config_dir or base_dir or Path.cwd()
        return (Path(root) / state_dir).resolve()

    def validate(self) -> None:
        """Check value ranges.

        Raises:
            ConfigError: If a value is out of range
        """
        problems = []
        if self.gateway.timeout_seconds < 0:
            problems.append("gateway.timeout_seconds must be >= 0")
        if self.gateway.max_retries < 0:
            problems.append("gateway.max_retries must be >= 0")
        if self.gateway.breaker_failure_threshold < 1:
            problems.append("gateway.breaker_failure_threshold must be >= 1")
        if not 0.0 <= self.clustering.similarity_threshold <= 1.0:
            problems.append("clustering.similarity_threshold must be within [0, 1]")
        if self.scheduler.concurrency_limit < 1:
            problems.append("scheduler.concurrency_limit must be >= 1")
        if self.change_requests.deletion_threshold < 0:
            problems.append("change_requests.deletion_threshold must be >= 0")
        if self.change_requests.slug_length < 1:
            problems.append("change_requests.slug_length must be >= 1")
        if not self.policy.allowed_dirs:
            problems.append("policy.allowed_dirs must not be empty")
        if self.log_level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            problems.append(f"log_level {self.log_level!r} is not a logging level")
        if problems:
            raise ConfigError("; ".join(problems))

    def security_policy(self, base_dir: Path | None = None) -> SecurityPolicy:
        """Build the immutable security policy, applying the policy file."""
        policy = asdict(self.policy)
        if self.policy.policy_file:
            try:
                overrides = load_policy_file(self.policy.policy_file)
            except (OSError, ValueError) as e:
                raise ConfigError(f"Cannot load policy file {self.policy.policy_file}: {e}") from e
            known = {f.name for f in fields(PolicyConfig)}
            for key, value in overrides.items():
                if key not in known or key == "policy_file":
                    raise ConfigError(f"Unknown policy key: {key}")
                policy[key] = value

        root = base_dir or Path.cwd()
        allowed = tuple(
            (Path(d) if Path(d).is_absolute() else root / d).resolve()
            for d in policy["allowed_dirs"]
        )
        return SecurityPolicy(
            allowed_dirs=allowed,
            command_whitelist=frozenset(policy["command_whitelist"]),
            max_calls_per_window=int(policy["max_calls_per_window"]),
            rate_window_seconds=float(policy["rate_window_seconds"]),
        )


def find_config_file() -> Path | None:
    """Find ford.toml in current or parent directories.

    Returns:
        Path to ford.toml or None if not found.
    """
    current = Path.cwd()

    for directory in [current, *current.parents]:
        config_path = directory / CONFIG_FILENAME
        if config_path.exists():
            return config_path

    return None


def load_config(config_path: Path | str | None = None) -> Config:
    """Load configuration from file and environment.

    Args:
        config_path: Optional explicit path to ford.toml

    Returns:
        Config object with merged settings.

    Raises:
        ConfigError: If the file is malformed or values are invalid
    """
    # Start with defaults
    config_data: dict[str, Any] = {}
    config_dir: Path | None = None

    # Load from file if available
    if config_path is None:
        config_path = find_config_file()

    if config_path is not None:
        path = Path(config_path)
        if path.exists():
            try:
                with open(path, "rb") as f:
                    config_data = tomllib.load(f)
            except tomllib.TOMLDecodeError as e:
                raise ConfigError(f"Malformed config file {path}: {e}") from e
            config_dir = path.parent.resolve()

    # Apply environment variable overrides
    env_overrides = {
        "gateway": {
            "timeout_seconds": _float_or_none(os.getenv("FORD_GATEWAY_TIMEOUT")),
        },
        "scheduler": {
            "concurrency_limit": _int_or_none(os.getenv("FORD_CONCURRENCY_LIMIT")),
            "count_pending_review": _bool_or_none(os.getenv("FORD_COUNT_PENDING_REVIEW")),
        },
        "change_requests": {
            "repo": os.getenv("FORD_REPO"),
        },
        "storage": {
            "state_dir": os.getenv("FORD_STATE_DIR"),
        },
        "policy": {
            "policy_file": os.getenv("FORD_POLICY_FILE"),
        },
    }

    # Merge env overrides (only non-None values)
    for section, values in env_overrides.items():
        if section not in config_data:
            config_data[section] = {}
        for key, value in values.items():
            if value is not None:
                config_data[section][key] = value

    log_level = os.getenv("FORD_LOG_LEVEL") or os.getenv("LOG_LEVEL")
    if log_level:
        config_data["log_level"] = log_level

    config = Config.from_dict(config_data)
    config.config_dir = config_dir
    return config


def _int_or_none(value: str | None) -> int | None:
    """Convert string to int, or return None."""
    if value is None:
        return None
    try:
        return int(value)
    except ValueError:
        return None


def _float_or_none(value: str | None) -> float | None:
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def _bool_or_none(value: str | None) -> bool | None:
    if value is None:
        return None
    lowered = value.strip().lower()
    if lowered in ("1", "true", "yes", "on"):
        return True
    if lowered in ("0", "false", "no", "off"):
        return False
    return None


DEFAULT_CONFIG_TOML = """\
log_level = "INFO"

[gateway]
timeout_seconds = 30.0
max_retries = 3
breaker_failure_threshold = 3
breaker_reset_seconds = 60.0

[policy]
allowed_dirs = ["."]
max_calls_per_window = 120
rate_window_seconds = 60.0

[clustering]
similarity_threshold = 0.8

[scheduler]
concurrency_limit = 4
count_pending_review = true

[change_requests]
repo = ""
deletion_threshold = 100

[validation]
working_dir = "."
lint_command = "ruff check ."
test_command = "pytest -q"
build_command = "python -m compileall -q ."

[storage]
state_dir = ".ford"
checkpoint_retention = 50
"""


# Global config instance (lazy loaded)
_config: Config | None = None


def get_config() -> Config:
    """Get the global configuration instance.

    Returns:
        Config object (loaded once, cached).
    """
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reload_config(config_path: Path | str | None = None) -> Config:
    """Force reload of configuration.

    Returns:
        Fresh Config object.
    """
    global _config
    _config = load_config(config_path)
    return _config
