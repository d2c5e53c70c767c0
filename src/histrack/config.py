"""
Configuration for histrack.

Settings live in a YAML file (default ~/.histrack/config.yaml) validated by
a frozen Pydantic model. A missing file means "all defaults"; there is no
global configuration object, callers pass a HistrackConfig explicitly.

Example config.yaml:
    storage_path: ~/.histrack/commands.db
    retention_days: 30
    exclude_patterns: [cd, ls, "history*"]
    enabled_shells: [bash, zsh]
"""

import fnmatch
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from histrack.errors import ConfigLoadError, ConfigValidationError
from histrack.schema import ShellType
from histrack.store.base import StorageEngine
from histrack.store.registry import open_store
from histrack.store.retry import RetryPolicy

CONFIG_ENV_VAR = "HISTRACK_CONFIG"
DEFAULT_DATA_DIR = Path("~/.histrack")
DEFAULT_CONFIG_PATH = DEFAULT_DATA_DIR / "config.yaml"

DEFAULT_EXCLUDE_PATTERNS = ("cd", "ls", "dir", "pwd", "clear", "exit")
DEFAULT_SHELLS = (ShellType.POWERSHELL, ShellType.BASH, ShellType.ZSH, ShellType.CMD)
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class HistrackConfig(BaseModel):
    """
    User configuration.

    Attributes:
        storage_path: Location of the history database
        storage_kind: Registered storage backend name
        retention_days: Age in days after which records are purged (0 = purge all)
        max_commands_per_directory: Cap on records kept per directory, oldest go first
        operation_timeout: Total seconds one store operation may wait on locks
        max_attempts: Attempts per store operation under contention
        exclude_patterns: Commands never recorded (exact, prefix or glob)
        enabled_shells: Shells whose commands are recorded
        auto_cleanup: Run retention cleanup from the capture path
        cleanup_interval_hours: Minimum time between automatic cleanups
        log_file: Capture log location (shell hooks never log to the terminal)
        log_level: Level for the capture log
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    storage_path: str = Field(
        default=str(DEFAULT_DATA_DIR / "commands.db"),
        description="Path to the history database",
    )
    storage_kind: str = Field(default="sqlite", description="Storage backend name")
    retention_days: int = Field(default=90, description="Retention period in days", ge=0)
    max_commands_per_directory: int | None = Field(
        default=None,
        description="Newest records kept per directory (None = unlimited)",
        ge=1,
    )
    operation_timeout: float = Field(
        default=5.0,
        description="Seconds an operation may wait for the store lock",
        gt=0,
    )
    max_attempts: int = Field(default=4, description="Attempts under contention", ge=1, le=10)
    exclude_patterns: tuple[str, ...] = Field(
        default=DEFAULT_EXCLUDE_PATTERNS,
        description="Commands that are never recorded",
    )
    enabled_shells: tuple[ShellType, ...] = Field(
        default=DEFAULT_SHELLS,
        description="Shells whose commands are recorded",
    )
    auto_cleanup: bool = Field(default=True, description="Purge old records automatically")
    cleanup_interval_hours: float = Field(
        default=24,
        description="Minimum hours between automatic cleanups",
        gt=0,
    )
    log_file: str = Field(
        default=str(DEFAULT_DATA_DIR / "histrack.log"),
        description="Capture log file",
    )
    log_level: str = Field(default="WARNING", description="Capture log level")

    @field_validator("storage_path", "log_file")
    @classmethod
    def validate_path(cls, v: str) -> str:
        """Paths must not be blank."""
        if not v.strip():
            msg = "Path cannot be empty"
            raise ValueError(msg)
        return v

    @field_validator("storage_kind")
    @classmethod
    def validate_kind(cls, v: str) -> str:
        """Backend names are case-insensitive."""
        if not v.strip():
            msg = "Storage kind cannot be empty"
            raise ValueError(msg)
        return v.strip().lower()

    @field_validator("exclude_patterns", mode="before")
    @classmethod
    def validate_patterns(cls, v: Any) -> tuple[str, ...]:
        """Drop blank patterns."""
        if v is None:
            return ()
        if isinstance(v, str):
            v = [v]
        return tuple(str(p).strip() for p in v if str(p).strip())

    @field_validator("enabled_shells", mode="before")
    @classmethod
    def validate_shells(cls, v: Any) -> tuple[ShellType, ...]:
        """Shell names must be known; unknown names are a configuration error."""
        if v is None:
            return ()
        if isinstance(v, str):
            v = [v]
        shells: list[ShellType] = []
        for item in v:
            shell = ShellType.parse(item)
            if shell == ShellType.UNKNOWN and str(item).strip().lower() != "unknown":
                msg = f"Unknown shell: {item}"
                raise ValueError(msg)
            if shell not in shells:
                shells.append(shell)
        return tuple(shells)

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Accept standard logging level names."""
        level = v.strip().upper()
        if level not in LOG_LEVELS:
            msg = f"Invalid log level: {v} (expected one of {', '.join(LOG_LEVELS)})"
            raise ValueError(msg)
        return level

    def resolved_storage_path(self) -> Path:
        """storage_path with ~ and environment variables expanded."""
        return _expand(self.storage_path)

    def resolved_log_file(self) -> Path:
        """log_file with ~ and environment variables expanded."""
        return _expand(self.log_file)

    def retry_policy(self) -> RetryPolicy:
        """Retry budget derived from operation_timeout and max_attempts."""
        return RetryPolicy(max_attempts=self.max_attempts, timeout=self.operation_timeout)

    def is_shell_enabled(self, shell: ShellType | str) -> bool:
        """Check if commands from a shell should be recorded."""
        return ShellType.parse(shell) in self.enabled_shells

    def should_exclude(self, command: str) -> bool:
        """
        Check a command against exclude_patterns.

        A pattern excludes a command when it equals the command, is its
        first word ("cd" excludes "cd /tmp") or glob-matches it.
        """
        command = command.strip()
        for pattern in self.exclude_patterns:
            if command == pattern or command.startswith(pattern + " "):
                return True
            if fnmatch.fnmatchcase(command, pattern):
                return True
        return False


def _expand(path: str) -> Path:
    return Path(os.path.expandvars(os.path.expanduser(path)))


def default_config_path() -> Path:
    """Config file location: $HISTRACK_CONFIG or ~/.histrack/config.yaml."""
    override = os.environ.get(CONFIG_ENV_VAR)
    if override:
        return _expand(override)
    return DEFAULT_CONFIG_PATH.expanduser()


def _validate(data: Any, path: str) -> HistrackConfig:
    if data is None:
        data = {}
    if not isinstance(data, Mapping):
        raise ConfigValidationError(
            path=path,
            details=f"top level must be a mapping, got {type(data).__name__}",
        )
    try:
        return HistrackConfig.model_validate(dict(data))
    except ValidationError as e:
        details = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise ConfigValidationError(path=path, details=details) from e


def load_config(path: Path | str | None = None) -> HistrackConfig:
    """
    Load configuration from a YAML file.

    Args:
        path: Config file; defaults to default_config_path()

    Returns:
        Validated HistrackConfig (all defaults if the file does not exist)

    Raises:
        ConfigLoadError: If the file cannot be read or is not valid YAML
        ConfigValidationError: If values fail validation
    """
    config_path = Path(path).expanduser() if path is not None else default_config_path()
    if not config_path.exists():
        return HistrackConfig()

    try:
        with open(config_path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise ConfigLoadError(path=str(config_path), underlying_error=str(e)) from e

    return _validate(data, str(config_path))


def load_config_from_string(content: str) -> HistrackConfig:
    """Load configuration from a YAML string."""
    try:
        data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise ConfigLoadError(path="<string>", underlying_error=str(e)) from e
    return _validate(data, "<string>")


def config_to_dict(config: HistrackConfig) -> dict[str, Any]:
    """Plain-data form of a config, as written to YAML."""
    return config.model_dump(mode="json")


def save_config(config: HistrackConfig, path: Path | str | None = None) -> Path:
    """
    Write configuration as YAML, creating the parent directory.

    Returns:
        The path written
    """
    config_path = Path(path).expanduser() if path is not None else default_config_path()
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with open(config_path, "w", encoding="utf-8") as f:
        yaml.safe_dump(config_to_dict(config), f, sort_keys=False, default_flow_style=False)
    return config_path


def open_store_from_config(config: HistrackConfig, *, create_dirs: bool = True) -> StorageEngine:
    """
    Construct (but do not initialize) the configured store.

    Args:
        config: Configuration to use
        create_dirs: Create the storage directory if it is missing

    Raises:
        ConstructionError: If the backend is unknown or the path unusable
    """
    storage_path = config.resolved_storage_path()
    if create_dirs and str(storage_path) != ":memory:":
        storage_path.parent.mkdir(parents=True, exist_ok=True)
    return open_store(config.storage_kind, storage_path, retry=config.retry_policy())
