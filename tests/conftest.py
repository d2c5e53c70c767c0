"""
Pytest configuration and fixtures for histrack tests.

This module provides shared fixtures used across unit and integration tests.
"""

import tempfile
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any, Generator

import pytest

from histrack.config import HistrackConfig
from histrack.schema import CommandRecord, ShellType
from histrack.store import SQLiteStorage


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def db_path(temp_dir: Path) -> Path:
    """Path for a database file that does not exist yet."""
    return temp_dir / "commands.db"


@pytest.fixture
def store(db_path: Path) -> Generator[SQLiteStorage, None, None]:
    """An initialized file-backed store."""
    storage = SQLiteStorage(db_path)
    storage.initialize()
    yield storage
    storage.close()


@pytest.fixture
def make_record() -> Callable[..., CommandRecord]:
    """Factory for records; age is subtracted from the current time."""

    def factory(
        command: str = "git status",
        directory: str = "/test/directory",
        age: timedelta = timedelta(0),
        **fields: Any,
    ) -> CommandRecord:
        fields.setdefault("shell", ShellType.BASH)
        return CommandRecord(
            command=command,
            directory=directory,
            timestamp=datetime.now(UTC) - age,
            **fields,
        )

    return factory


@pytest.fixture
def config(temp_dir: Path) -> HistrackConfig:
    """Configuration pointing every path into the temp directory."""
    return HistrackConfig(
        storage_path=str(temp_dir / "data" / "commands.db"),
        log_file=str(temp_dir / "data" / "histrack.log"),
    )


@pytest.fixture
def sample_config_yaml() -> str:
    """Return a config YAML overriding a few defaults."""
    return """
retention_days: 30
operation_timeout: 2.5
exclude_patterns:
  - cd
  - "history*"
enabled_shells:
  - bash
  - zsh
"""


@pytest.fixture(autouse=True)
def isolated_config(monkeypatch: pytest.MonkeyPatch, temp_dir: Path) -> None:
    """Keep tests away from the user's real ~/.histrack configuration."""
    monkeypatch.setenv("HISTRACK_CONFIG", str(temp_dir / "config.yaml"))
    monkeypatch.delenv("HISTRACK_SHELL", raising=False)
