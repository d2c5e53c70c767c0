"""
Command capture for histrack.

Shell hooks call `histrack record` after every command. This module turns
what the hook reports into a CommandRecord and stores it:

    recorder = CommandRecorder(config)
    recorder.record("git status", directory="/home/me/app", exit_code=0)

Capture is fire-and-forget: a failed write is logged to the capture log and
dropped, so a broken or busy store never disturbs the user's prompt.
"""

import logging
import os
import re
import shlex
import time
from collections.abc import Mapping
from datetime import UTC, datetime, timedelta
from pathlib import Path

from histrack.config import HistrackConfig, open_store_from_config
from histrack.errors import HistrackError
from histrack.schema import MAX_TAG_LENGTH, CommandRecord, ShellType, TagSet, validate_record

logger = logging.getLogger(__name__)

LONG_RUNNING_THRESHOLD = timedelta(seconds=10)

TRACKER_COMMANDS = ("histrack",)
SKIPPABLE_BUILTINS = frozenset({"cd", "pwd", "ls", "dir", "echo", "exit", "clear", "cls"})

PROJECT_ROOT_MARKERS = (
    ".git",
    "go.mod",
    "package.json",
    "Cargo.toml",
    "pyproject.toml",
    "setup.py",
    "requirements.txt",
    "Makefile",
    "pom.xml",
    "build.gradle",
    "composer.json",
)

# Command prefixes (as token sequences) for each category tag
COMMAND_CATEGORIES: dict[str, tuple[tuple[str, ...], ...]] = {
    "git": (("git",),),
    "docker": (("docker",), ("docker-compose",), ("podman",)),
    "package-manager": (
        ("npm",), ("yarn",), ("pnpm",), ("pip",), ("pip3",), ("uv",), ("poetry",),
        ("cargo", "add"), ("cargo", "install"), ("composer",), ("brew",),
        ("apt",), ("apt-get",), ("go", "get"), ("go", "mod"),
    ),
    "build": (
        ("make",), ("cmake",), ("go", "build"), ("npm", "run", "build"),
        ("yarn", "build"), ("cargo", "build"), ("mvn",), ("gradle",),
    ),
    "test": (
        ("go", "test"), ("npm", "test"), ("yarn", "test"), ("pytest",),
        ("python", "-m", "pytest"), ("cargo", "test"), ("tox",),
    ),
}

_TAG_UNSAFE = re.compile(r"[^a-z0-9._+-]")


def detect_shell(environ: Mapping[str, str] | None = None) -> ShellType:
    """
    Guess the calling shell from environment variables.

    HISTRACK_SHELL (set by the installed hooks) wins; then SHELL, then
    PowerShell's PSModulePath, then a cmd.exe ComSpec.
    """
    env = os.environ if environ is None else environ

    explicit = env.get("HISTRACK_SHELL", "").strip()
    if explicit:
        return ShellType.parse(explicit)

    shell = ShellType.parse(env.get("SHELL", ""))
    if shell in (ShellType.BASH, ShellType.ZSH):
        return shell

    if env.get("PSModulePath"):
        return ShellType.POWERSHELL

    comspec = env.get("ComSpec") or env.get("COMSPEC") or ""
    if "cmd.exe" in comspec.lower():
        return ShellType.CMD

    return ShellType.UNKNOWN


def split_command(command: str) -> list[str]:
    """Split a command line into words; falls back to whitespace on bad quoting."""
    try:
        return shlex.split(command, posix=True)
    except ValueError:
        return command.split()


def _starts_with(tokens: list[str], prefix: tuple[str, ...]) -> bool:
    return tuple(tokens[: len(prefix)]) == prefix


def command_base(tokens: list[str]) -> str:
    """Lower-cased program name of a tokenized command (no path, no .exe)."""
    if not tokens:
        return ""
    name = tokens[0].replace("\\", "/").rsplit("/", 1)[-1].lower()
    return name.removesuffix(".exe")


def is_project_root(directory: str) -> bool:
    """Check for common project root markers."""
    root = Path(directory)
    return any((root / marker).exists() for marker in PROJECT_ROOT_MARKERS)


def derive_tags(
    command: str,
    directory: str,
    exit_code: int = 0,
    duration: timedelta = timedelta(0),
    shell: ShellType = ShellType.UNKNOWN,
) -> TagSet:
    """
    Compute automatic tags for a command.

    Returns:
        TagSet in a stable order: categories, result, timing, shell,
        program, syntax, directory context
    """
    tags = TagSet()
    tokens = split_command(command)
    base = command_base(tokens)
    normalized_tokens = [base, *tokens[1:]] if tokens else []

    for tag, prefixes in COMMAND_CATEGORIES.items():
        if any(_starts_with(normalized_tokens, prefix) for prefix in prefixes):
            tags.add(tag)

    tags.add("success" if exit_code == 0 else "failed")
    if duration > LONG_RUNNING_THRESHOLD:
        tags.add("long-running")

    if shell != ShellType.UNKNOWN:
        tags.add(f"shell-{shell.value}")

    safe_base = _TAG_UNSAFE.sub("", base)
    if safe_base:
        tags.add(f"cmd-{safe_base}"[:MAX_TAG_LENGTH])

    if "|" in command:
        tags.add("has-pipes")
    if ">" in command or "<" in command:
        tags.add("has-redirection")
    if any(token.startswith("-") and token != "-" for token in tokens[1:]):
        tags.add("has-flags")

    if os.path.isdir(directory):
        if is_project_root(directory):
            tags.add("project-root")
    else:
        tags.add("directory-missing")

    return tags


def should_skip(command: str, config: HistrackConfig) -> bool:
    """
    Decide whether a command is not worth recording.

    Skips blank commands, configured exclude patterns, histrack's own
    invocations and bare trivial builtins.
    """
    stripped = command.strip()
    if not stripped:
        return True
    if config.should_exclude(stripped):
        return True
    if command_base(split_command(stripped)) in TRACKER_COMMANDS:
        return True
    return stripped in SKIPPABLE_BUILTINS


def build_record(
    command: str,
    directory: str,
    *,
    exit_code: int = 0,
    duration: timedelta = timedelta(0),
    shell: ShellType | str = ShellType.UNKNOWN,
    timestamp: datetime | None = None,
    extra_tags: tuple[str, ...] = (),
) -> CommandRecord:
    """
    Build a validated, auto-tagged record.

    Raises:
        RecordValidationError: If any field is malformed
    """
    shell_type = ShellType.parse(shell) if not isinstance(shell, ShellType) else shell
    tags = derive_tags(command, directory, exit_code, duration, shell_type)
    tags.extend(extra_tags)
    return validate_record({
        "command": command,
        "directory": directory,
        "timestamp": timestamp or datetime.now(UTC),
        "shell": shell_type,
        "exit_code": exit_code,
        "duration": duration,
        "tags": tags.as_tuple(),
    })


class CommandRecorder:
    """
    Records commands reported by shell hooks.

    Each record() call opens the store, saves one record, optionally runs
    retention cleanup and closes the store again.

    Attributes:
        config: Active configuration
    """

    CLEANUP_STAMP = ".last_cleanup"

    def __init__(self, config: HistrackConfig | None = None) -> None:
        self.config = config or HistrackConfig()

    def record(
        self,
        command: str,
        directory: str | None = None,
        *,
        exit_code: int = 0,
        duration: timedelta = timedelta(0),
        shell: ShellType | str | None = None,
        timestamp: datetime | None = None,
        environ: Mapping[str, str] | None = None,
    ) -> CommandRecord | None:
        """
        Capture one command.

        Returns:
            The stored record, or None if the command was skipped or could
            not be stored
        """
        if should_skip(command, self.config):
            logger.debug("Skipping command: %r", command[:80])
            return None

        shell_type = ShellType.parse(shell) if shell is not None else detect_shell(environ)
        if shell_type != ShellType.UNKNOWN and not self.config.is_shell_enabled(shell_type):
            logger.debug("Shell %s disabled, not recording", shell_type.value)
            return None

        try:
            record = build_record(
                command,
                directory or os.getcwd(),
                exit_code=exit_code,
                duration=duration,
                shell=shell_type,
                timestamp=timestamp,
            )
            with open_store_from_config(self.config) as store:
                stored = store.save_command(record)
                if self.config.max_commands_per_directory is not None:
                    self._trim(store, stored.directory)
                if self._cleanup_due():
                    self._auto_cleanup(store)
        except (HistrackError, OSError) as e:
            logger.warning("Failed to record command: %s", e)
            return None

        return stored

    def _trim(self, store, directory: str) -> None:
        """Apply the per-directory cap to the directory just written."""
        try:
            store.trim_directory(directory, self.config.max_commands_per_directory)
        except HistrackError as e:
            logger.warning("Trimming %s failed: %s", directory, e)

    def _auto_cleanup(self, store) -> None:
        """Run retention cleanup; a failure here does not undo the saved record."""
        try:
            deleted = store.cleanup_old_commands(self.config.retention_days)
        except HistrackError as e:
            logger.warning("Automatic cleanup failed: %s", e)
            return
        self._mark_cleanup()
        logger.info("Automatic cleanup removed %d record(s)", deleted)

    def _stamp_path(self) -> Path | None:
        storage_path = self.config.resolved_storage_path()
        if str(storage_path) == ":memory:":
            return None
        return storage_path.parent / self.CLEANUP_STAMP

    def _cleanup_due(self) -> bool:
        """True when auto cleanup is on and the last run is older than the interval."""
        if not self.config.auto_cleanup:
            return False
        stamp = self._stamp_path()
        if stamp is None:
            return False
        try:
            last_run = stamp.stat().st_mtime
        except FileNotFoundError:
            return True
        return time.time() - last_run >= self.config.cleanup_interval_hours * 3600

    def _mark_cleanup(self) -> None:
        stamp = self._stamp_path()
        if stamp is not None:
            try:
                stamp.touch()
            except OSError as e:
                logger.warning("Could not update cleanup stamp %s: %s", stamp, e)
