"""
Integration tests for the histrack CLI.

Tests cover:
- record (shell hook entry point)
- history, search, dirs, stats
- cleanup with and without confirmation, optimize
- config show / init
- Error exits
"""

import json
import logging
from collections.abc import Generator
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
import yaml
from typer.testing import CliRunner

from histrack import __version__
from histrack.cli import app, parse_since
from histrack.logging_config import LOGGER_NAME
from histrack.schema import CommandRecord, ShellType
from histrack.store import SQLiteStorage

runner = CliRunner()


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture(autouse=True)
def reset_logging() -> Generator[None, None, None]:
    """Drop handlers the CLI attaches so they do not outlive a test."""
    histrack_logger = logging.getLogger(LOGGER_NAME)
    handlers = list(histrack_logger.handlers)
    yield
    for handler in histrack_logger.handlers:
        if handler not in handlers:
            histrack_logger.removeHandler(handler)


@pytest.fixture
def config_file(temp_dir: Path) -> Path:
    """Config file (the one HISTRACK_CONFIG points at) with temp paths."""
    path = temp_dir / "config.yaml"
    path.write_text(
        yaml.safe_dump({
            "storage_path": str(temp_dir / "data" / "commands.db"),
            "log_file": str(temp_dir / "data" / "histrack.log"),
        })
    )
    return path


@pytest.fixture
def db_file(config_file: Path, temp_dir: Path) -> Path:
    return temp_dir / "data" / "commands.db"


@pytest.fixture
def seeded(db_file: Path) -> Path:
    """Store with a few records in two project directories."""
    db_file.parent.mkdir(parents=True, exist_ok=True)
    now = datetime.now(UTC)
    with SQLiteStorage(db_file) as store:
        store.save_commands([
            CommandRecord(command="git status", directory="/proj/api", shell=ShellType.BASH,
                          timestamp=now - timedelta(minutes=30), tags=["git", "success"]),
            CommandRecord(command="Git log", directory="/proj/api", shell=ShellType.ZSH,
                          timestamp=now - timedelta(minutes=20)),
            CommandRecord(command="npm install", directory="/proj/web", shell=ShellType.BASH,
                          timestamp=now - timedelta(minutes=10), exit_code=1),
            CommandRecord(command="git push", directory="/proj/web", shell=ShellType.BASH,
                          timestamp=now - timedelta(days=3)),
        ])
    return db_file


def stored_commands(db_file: Path, directory: str) -> list[str]:
    with SQLiteStorage(db_file) as store:
        return [r.command for r in store.get_commands_by_directory(directory)]


# =============================================================================
# Global Options
# =============================================================================


class TestGlobalOptions:
    """Tests for app-level options."""

    def test_version(self) -> None:
        """--version prints the version."""
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.stdout

    def test_db_override(self, seeded: Path, temp_dir: Path) -> None:
        """--db points the CLI at another database."""
        other = temp_dir / "other.db"
        result = runner.invoke(app, ["--db", str(other), "history", "--dir", "/proj/api", "--json"])
        assert result.exit_code == 0
        assert json.loads(result.stdout) == []
        assert other.exists()

    def test_bad_config(self, temp_dir: Path) -> None:
        """A broken config file stops query commands with exit 1."""
        bad = temp_dir / "bad.yaml"
        bad.write_text("retention_days: [oops")
        result = runner.invoke(app, ["--config", str(bad), "history"])
        assert result.exit_code == 1
        assert "Configuration error" in result.output

    def test_unopenable_store(self, temp_dir: Path, config_file: Path) -> None:
        """A database path that is a directory exits 1."""
        result = runner.invoke(app, ["--db", str(temp_dir), "history"])
        assert result.exit_code == 1
        assert "Cannot open history store" in result.output


# =============================================================================
# record
# =============================================================================


class TestRecordCommand:
    """Tests for `histrack record`."""

    def test_record(self, db_file: Path) -> None:
        """A hook invocation stores the command silently."""
        result = runner.invoke(
            app,
            ["record", "--dir", "/proj/cli", "--exit-code", "2", "--duration-ms", "1500",
             "--shell", "zsh", "--", "make", "-j4", "test"],
        )
        assert result.exit_code == 0
        assert result.stdout == ""
        with SQLiteStorage(db_file) as store:
            [record] = store.get_commands_by_directory("/proj/cli")
        assert record.command == "make -j4 test"
        assert record.exit_code == 2
        assert record.duration == timedelta(milliseconds=1500)
        assert record.shell == ShellType.ZSH
        assert {"build", "failed", "has-flags"} <= set(record.tags)

    def test_record_skips_excluded(self, db_file: Path) -> None:
        """Excluded commands are not stored."""
        result = runner.invoke(app, ["record", "--dir", "/proj/cli", "--shell", "bash", "cd", "/tmp"])
        assert result.exit_code == 0
        assert not db_file.exists()

    def test_record_never_fails(self, temp_dir: Path, config_file: Path) -> None:
        """Even an unusable store exits 0 without output."""
        result = runner.invoke(app, ["--db", str(temp_dir), "record", "--shell", "bash", "make"])
        assert result.exit_code == 0
        assert result.stdout == ""

    def test_record_with_bad_config(self, temp_dir: Path) -> None:
        """A broken config does not break the prompt."""
        bad = temp_dir / "bad.yaml"
        bad.write_text("retention_days: -5")
        result = runner.invoke(app, ["--config", str(bad), "record", "make"])
        assert result.exit_code == 0


# =============================================================================
# history
# =============================================================================


class TestHistoryCommand:
    """Tests for `histrack history`."""

    def test_history_json(self, seeded: Path) -> None:
        """History lists a directory newest first."""
        result = runner.invoke(app, ["history", "--dir", "/proj/api/", "--json"])
        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert [d["command"] for d in data] == ["Git log", "git status"]
        assert data[1]["tags"] == ["git", "success"]

    def test_history_table(self, seeded: Path) -> None:
        """The table view shows commands."""
        result = runner.invoke(app, ["history", "--dir", "/proj/web"])
        assert result.exit_code == 0
        assert "npm install" in result.stdout

    def test_history_since(self, seeded: Path) -> None:
        """--since hides older commands."""
        result = runner.invoke(app, ["history", "--dir", "/proj/web", "--since", "1d", "--json"])
        assert [d["command"] for d in json.loads(result.stdout)] == ["npm install"]

    def test_history_shell_and_limit(self, seeded: Path) -> None:
        """--shell and --limit narrow the listing."""
        result = runner.invoke(app, ["history", "--dir", "/proj/api", "--shell", "bash", "--json"])
        assert [d["command"] for d in json.loads(result.stdout)] == ["git status"]
        result = runner.invoke(app, ["history", "--dir", "/proj/api", "--limit", "1", "--json"])
        assert len(json.loads(result.stdout)) == 1

    def test_history_empty(self, seeded: Path) -> None:
        """No history is a message, not an error."""
        result = runner.invoke(app, ["history", "--dir", "/nowhere"])
        assert result.exit_code == 0
        assert "No history" in result.stdout

    def test_history_bad_since(self, seeded: Path) -> None:
        """Unparseable durations are usage errors."""
        result = runner.invoke(app, ["history", "--since", "yesterday"])
        assert result.exit_code == 2

    def test_history_unknown_shell(self, seeded: Path) -> None:
        """An unrecognized shell name is a usage error, not an UNKNOWN filter."""
        result = runner.invoke(app, ["history", "--dir", "/proj/api", "--shell", "fish"])
        assert result.exit_code == 2

    def test_history_unknown_shell_by_name(self, seeded: Path) -> None:
        """The literal name "unknown" is still accepted."""
        result = runner.invoke(app, ["history", "--dir", "/proj/api", "--shell", "unknown", "--json"])
        assert result.exit_code == 0
        assert json.loads(result.stdout) == []


# =============================================================================
# search / dirs / stats
# =============================================================================


class TestSearchCommand:
    """Tests for `histrack search`."""

    def test_search_directory(self, seeded: Path) -> None:
        """Search is case-sensitive and scoped to one directory."""
        result = runner.invoke(app, ["search", "git", "--dir", "/proj/api", "--json"])
        assert result.exit_code == 0
        assert [d["command"] for d in json.loads(result.stdout)] == ["git status"]

    def test_search_ignore_case(self, seeded: Path) -> None:
        """--ignore-case matches regardless of case."""
        result = runner.invoke(app, ["search", "git", "--dir", "/proj/api", "-i", "--json"])
        assert [d["command"] for d in json.loads(result.stdout)] == ["Git log", "git status"]

    def test_search_all(self, seeded: Path) -> None:
        """--all fans out over every directory."""
        result = runner.invoke(app, ["search", "git", "--all", "--json"])
        data = json.loads(result.stdout)
        assert [d["command"] for d in data] == ["git status", "git push"]
        assert {d["directory"] for d in data} == {"/proj/api", "/proj/web"}

    def test_search_conflicting_scope(self, seeded: Path) -> None:
        """--dir and --all are mutually exclusive."""
        result = runner.invoke(app, ["search", "git", "--all", "--dir", "/proj/api"])
        assert result.exit_code == 2

    def test_search_no_match(self, seeded: Path) -> None:
        """No match is reported, exit 0."""
        result = runner.invoke(app, ["search", "kubectl", "--all"])
        assert result.exit_code == 0
        assert "No commands matching" in result.stdout


class TestDirsAndStats:
    """Tests for `histrack dirs` and `histrack stats`."""

    def test_dirs_json(self, seeded: Path) -> None:
        """Directories are listed most recently used first."""
        result = runner.invoke(app, ["dirs", "--json"])
        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert [d["path"] for d in data] == ["/proj/web", "/proj/api"]
        assert data[0]["command_count"] == 2

    def test_dirs_empty(self, db_file: Path) -> None:
        """An empty store says so."""
        result = runner.invoke(app, ["dirs"])
        assert result.exit_code == 0
        assert "No history recorded yet" in result.stdout

    def test_stats_json(self, seeded: Path) -> None:
        """Stats report totals."""
        result = runner.invoke(app, ["stats", "--json"])
        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["commands"] == 4
        assert data["directories"] == 2
        assert data["size_bytes"] > 0
        assert data["storage_kind"] == "sqlite"

    def test_optimize(self, seeded: Path) -> None:
        """optimize keeps every record."""
        result = runner.invoke(app, ["optimize"])
        assert result.exit_code == 0
        assert "Optimized store" in result.stdout
        assert stored_commands(seeded, "/proj/api") == ["Git log", "git status"]


# =============================================================================
# cleanup
# =============================================================================


class TestCleanupCommand:
    """Tests for `histrack cleanup`."""

    def test_cleanup_keep(self, seeded: Path) -> None:
        """--keep trims every directory to its newest commands."""
        result = runner.invoke(app, ["cleanup", "--days", "365", "--keep", "1", "--yes"])
        assert result.exit_code == 0
        assert "Deleted 2 record(s)" in result.stdout
        assert stored_commands(seeded, "/proj/api") == ["Git log"]
        assert stored_commands(seeded, "/proj/web") == ["npm install"]

    def test_cleanup_huge_retention(self, seeded: Path) -> None:
        """A retention period beyond the calendar deletes nothing."""
        result = runner.invoke(app, ["cleanup", "--days", "1000000", "--yes"])
        assert result.exit_code == 0
        assert "Deleted 0 record(s)" in result.stdout
        assert stored_commands(seeded, "/proj/web") == ["npm install", "git push"]

    def test_cleanup_days(self, seeded: Path) -> None:
        """Old records are removed without prompting when --yes is given."""
        result = runner.invoke(app, ["cleanup", "--days", "1", "--yes"])
        assert result.exit_code == 0
        assert "Deleted 1 record(s)" in result.stdout
        assert stored_commands(seeded, "/proj/web") == ["npm install"]

    def test_cleanup_aborted(self, seeded: Path) -> None:
        """Answering no leaves the store alone."""
        result = runner.invoke(app, ["cleanup", "--days", "0"], input="n\n")
        assert result.exit_code == 0
        assert "Aborted" in result.stdout
        assert len(stored_commands(seeded, "/proj/api")) == 2

    def test_cleanup_confirmed(self, seeded: Path) -> None:
        """Answering yes runs the cleanup."""
        result = runner.invoke(app, ["cleanup", "--days", "0"], input="y\n")
        assert result.exit_code == 0
        assert stored_commands(seeded, "/proj/api") == []

    def test_cleanup_negative(self, seeded: Path) -> None:
        """A negative period is an error."""
        result = runner.invoke(app, ["cleanup", "--days", "-1", "--yes"])
        assert result.exit_code == 1
        assert "Retention period" in result.output


# =============================================================================
# config
# =============================================================================


class TestConfigCommands:
    """Tests for `histrack config`."""

    def test_config_init(self, temp_dir: Path) -> None:
        """init writes defaults once."""
        path = temp_dir / "new" / "config.yaml"
        result = runner.invoke(app, ["--config", str(path), "config", "init"])
        assert result.exit_code == 0
        assert yaml.safe_load(path.read_text())["retention_days"] == 90

        result = runner.invoke(app, ["--config", str(path), "config", "init"])
        assert result.exit_code == 1
        result = runner.invoke(app, ["--config", str(path), "config", "init", "--force"])
        assert result.exit_code == 0

    def test_config_show(self, config_file: Path) -> None:
        """show prints the effective configuration."""
        result = runner.invoke(app, ["config", "show"])
        assert result.exit_code == 0
        assert "retention_days: 90" in result.stdout
        assert "storage_kind: sqlite" in result.stdout


class TestParseSince:
    """Tests for the --since parser."""

    @pytest.mark.parametrize(
        ("value", "expected"),
        [
            ("30m", timedelta(minutes=30)),
            ("24h", timedelta(hours=24)),
            ("7D", timedelta(days=7)),
            ("2w", timedelta(weeks=2)),
        ],
    )
    def test_valid(self, value: str, expected: timedelta) -> None:
        assert parse_since(value) == expected
