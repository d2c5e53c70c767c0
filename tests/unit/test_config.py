"""
Unit tests for configuration loading.

Tests cover:
- Defaults
- YAML loading and validation errors
- Save / load round trip
- Exclusion and shell helpers
- Store construction from config
"""

from pathlib import Path

import pytest

from histrack.config import (
    DEFAULT_EXCLUDE_PATTERNS,
    HistrackConfig,
    default_config_path,
    load_config,
    load_config_from_string,
    open_store_from_config,
    save_config,
)
from histrack.errors import ConfigLoadError, ConfigValidationError, ConstructionError
from histrack.schema import ShellType
from histrack.store import SQLiteStorage


class TestDefaults:
    """Tests for default configuration values."""

    def test_defaults(self) -> None:
        """Defaults match the documented values."""
        config = HistrackConfig()
        assert config.storage_kind == "sqlite"
        assert config.retention_days == 90
        assert config.operation_timeout == 5.0
        assert config.max_attempts == 4
        assert config.exclude_patterns == DEFAULT_EXCLUDE_PATTERNS
        assert config.auto_cleanup is True
        assert config.cleanup_interval_hours == 24
        assert config.log_level == "WARNING"
        assert config.storage_path.endswith("commands.db")

    def test_all_concrete_shells_enabled(self) -> None:
        """Every concrete shell is recorded by default."""
        config = HistrackConfig()
        for shell in ("bash", "zsh", "powershell", "cmd"):
            assert config.is_shell_enabled(shell)

    def test_resolved_storage_path_expands_home(self) -> None:
        """~ is expanded."""
        path = HistrackConfig(storage_path="~/h/commands.db").resolved_storage_path()
        assert path == Path.home() / "h" / "commands.db"

    def test_retry_policy(self) -> None:
        """Retry budget follows timeout and attempts."""
        policy = HistrackConfig(operation_timeout=2.0, max_attempts=2).retry_policy()
        assert policy.timeout == 2.0
        assert policy.max_attempts == 2


class TestValidation:
    """Tests for value validation."""

    @pytest.mark.parametrize(
        "fields",
        [
            {"retention_days": -1},
            {"operation_timeout": 0},
            {"max_attempts": 0},
            {"max_attempts": 11},
            {"max_commands_per_directory": 0},
            {"storage_path": "  "},
            {"enabled_shells": ["fish"]},
            {"log_level": "LOUD"},
            {"unknown_key": True},
        ],
    )
    def test_invalid_values(self, fields: dict) -> None:
        """Out-of-range or unknown values fail validation."""
        with pytest.raises(ConfigValidationError):
            load_config_from_string("\n".join(f"{k}: {v!r}" for k, v in fields.items()))

    def test_zero_retention_allowed(self) -> None:
        """retention_days may be 0."""
        assert load_config_from_string("retention_days: 0").retention_days == 0

    def test_directory_cap(self) -> None:
        """max_commands_per_directory is unset by default and accepts a positive cap."""
        assert load_config_from_string("retention_days: 30").max_commands_per_directory is None
        assert load_config_from_string("max_commands_per_directory: 500").max_commands_per_directory == 500

    def test_storage_kind_lowercased(self) -> None:
        """Backend names are case-insensitive."""
        assert load_config_from_string("storage_kind: SQLite").storage_kind == "sqlite"

    def test_log_level_uppercased(self) -> None:
        """Level names are case-insensitive."""
        assert load_config_from_string("log_level: debug").log_level == "DEBUG"


class TestLoadConfig:
    """Tests for file loading."""

    def test_missing_file_gives_defaults(self, temp_dir: Path) -> None:
        """No config file means defaults."""
        assert load_config(temp_dir / "absent.yaml") == HistrackConfig()

    def test_load_file(self, temp_dir: Path, sample_config_yaml: str) -> None:
        """Values in the file override defaults."""
        path = temp_dir / "config.yaml"
        path.write_text(sample_config_yaml)
        config = load_config(path)
        assert config.retention_days == 30
        assert config.operation_timeout == 2.5
        assert config.exclude_patterns == ("cd", "history*")
        assert config.enabled_shells == (ShellType.BASH, ShellType.ZSH)

    def test_empty_file_gives_defaults(self, temp_dir: Path) -> None:
        """An empty file is the same as no file."""
        path = temp_dir / "config.yaml"
        path.write_text("")
        assert load_config(path) == HistrackConfig()

    def test_invalid_yaml(self, temp_dir: Path) -> None:
        """Broken YAML raises ConfigLoadError naming the file."""
        path = temp_dir / "config.yaml"
        path.write_text("retention_days: [unclosed")
        with pytest.raises(ConfigLoadError) as exc_info:
            load_config(path)
        assert exc_info.value.path == str(path)

    def test_non_mapping(self) -> None:
        """The top level must be a mapping."""
        with pytest.raises(ConfigValidationError):
            load_config_from_string("- just\n- a list\n")

    def test_env_override(self, monkeypatch: pytest.MonkeyPatch, temp_dir: Path) -> None:
        """HISTRACK_CONFIG selects the default config file."""
        path = temp_dir / "elsewhere.yaml"
        path.write_text("retention_days: 7\n")
        monkeypatch.setenv("HISTRACK_CONFIG", str(path))
        assert default_config_path() == path
        assert load_config().retention_days == 7

    def test_save_and_load(self, temp_dir: Path) -> None:
        """Saved configs load back equal, creating parent directories."""
        config = HistrackConfig(retention_days=12, enabled_shells=["zsh"], exclude_patterns=["ls"])
        path = save_config(config, temp_dir / "nested" / "config.yaml")
        assert path.exists()
        assert load_config(path) == config


class TestHelpers:
    """Tests for exclusion and shell helpers."""

    @pytest.mark.parametrize(
        ("command", "excluded"),
        [
            ("cd", True),
            ("cd /tmp", True),
            ("cdk deploy", False),
            ("ls -la", True),
            ("history | tail", True),
            ("git status", False),
        ],
    )
    def test_should_exclude(self, command: str, excluded: bool) -> None:
        """Exact, first-word and glob patterns exclude commands."""
        config = HistrackConfig(exclude_patterns=["cd", "ls", "history*"])
        assert config.should_exclude(command) is excluded

    def test_disabled_shell(self) -> None:
        """Shells not listed are disabled."""
        config = HistrackConfig(enabled_shells=["bash"])
        assert config.is_shell_enabled(ShellType.BASH)
        assert not config.is_shell_enabled("zsh")


class TestOpenStoreFromConfig:
    """Tests for open_store_from_config."""

    def test_creates_data_directory(self, config: HistrackConfig) -> None:
        """The storage directory is created before the store opens."""
        store = open_store_from_config(config)
        assert isinstance(store, SQLiteStorage)
        assert config.resolved_storage_path().parent.is_dir()
        with store:
            assert store.count_commands() == 0

    def test_unknown_kind(self, temp_dir: Path) -> None:
        """An unregistered backend fails with ConstructionError."""
        config = HistrackConfig(storage_kind="cassandra", storage_path=str(temp_dir / "x.db"))
        with pytest.raises(ConstructionError):
            open_store_from_config(config)
