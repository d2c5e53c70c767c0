"""
Schema definitions for histrack.

This module defines the Pydantic models shared by the store, the capture
path and the CLI:
- ShellType: Which shell produced a command
- TagSet: Ordered, duplicate-free collection of tags
- CommandRecord: One executed command instance
- CommandFilter: Multi-criteria query against the store
- DirectoryStats: Derived per-directory aggregate

Design Decisions:
    - Records are frozen: there is no update path, only insert and purge
    - Directories are normalized by the model itself, so every record that
      exists is already in the store's canonical form
    - Timestamps are always timezone-aware UTC; naive inputs are taken as UTC
"""

from collections.abc import Iterable, Iterator, Mapping
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from histrack.errors import RecordValidationError
from histrack.paths import normalize_directory

MAX_TAG_LENGTH = 64


# =============================================================================
# Enums
# =============================================================================


class ShellType(str, Enum):
    """Shell environment a command was executed in."""

    UNKNOWN = "unknown"
    POWERSHELL = "powershell"
    BASH = "bash"
    ZSH = "zsh"
    CMD = "cmd"

    @classmethod
    def parse(cls, value: Any) -> "ShellType":
        """
        Parse a shell name, alias or legacy integer code.

        Unrecognized names map to UNKNOWN; values of an unsupported
        type raise ValueError.
        """
        if isinstance(value, ShellType):
            return value
        if isinstance(value, bool):
            msg = f"Invalid shell type: {value!r}"
            raise ValueError(msg)
        if isinstance(value, int):
            members = list(cls)
            if 0 <= value < len(members):
                return members[value]
            msg = f"Invalid shell code: {value}"
            raise ValueError(msg)
        if isinstance(value, str):
            name = value.strip().lower()
            name = name.rsplit("/", 1)[-1].rsplit("\\", 1)[-1]
            name = name.removesuffix(".exe")
            return _SHELL_ALIASES.get(name, cls.UNKNOWN)
        msg = f"Invalid shell type: {value!r}"
        raise ValueError(msg)


_SHELL_ALIASES = {
    "unknown": ShellType.UNKNOWN,
    "powershell": ShellType.POWERSHELL,
    "pwsh": ShellType.POWERSHELL,
    "bash": ShellType.BASH,
    "sh": ShellType.BASH,
    "zsh": ShellType.ZSH,
    "cmd": ShellType.CMD,
}


# =============================================================================
# Tags
# =============================================================================


class TagSet:
    """
    Ordered set of short tag strings.

    Insertion order is preserved and re-adding an existing tag is a no-op.
    Tags are stripped; blank tags are ignored.

    Usage:
        tags = TagSet(["git", "success"])
        tags.add("git")        # False, already present
        tags.add("has-flags")  # True
        list(tags)             # ["git", "success", "has-flags"]
    """

    __slots__ = ("_tags",)

    def __init__(self, tags: Iterable[str] = ()) -> None:
        self._tags: dict[str, None] = {}
        self.extend(tags)

    def add(self, tag: str) -> bool:
        """Add a tag; return True if it was not present before."""
        if not isinstance(tag, str):
            msg = f"Tags must be strings, got {type(tag).__name__}"
            raise ValueError(msg)
        tag = tag.strip()
        if not tag:
            return False
        if len(tag) > MAX_TAG_LENGTH:
            msg = f"Tag longer than {MAX_TAG_LENGTH} characters: {tag[:20]}..."
            raise ValueError(msg)
        if tag in self._tags:
            return False
        self._tags[tag] = None
        return True

    def extend(self, tags: Iterable[str]) -> None:
        """Add several tags in order."""
        for tag in tags:
            self.add(tag)

    def discard(self, tag: str) -> bool:
        """Remove a tag if present; return True if it was removed."""
        if tag in self._tags:
            del self._tags[tag]
            return True
        return False

    def as_tuple(self) -> tuple[str, ...]:
        """Return the tags as an immutable tuple."""
        return tuple(self._tags)

    def __contains__(self, tag: object) -> bool:
        return tag in self._tags

    def __iter__(self) -> Iterator[str]:
        return iter(self._tags)

    def __len__(self) -> int:
        return len(self._tags)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, TagSet):
            return self.as_tuple() == other.as_tuple()
        if isinstance(other, (list, tuple)):
            return self.as_tuple() == tuple(other)
        return NotImplemented

    def __repr__(self) -> str:
        return f"TagSet({list(self._tags)!r})"


# =============================================================================
# Records
# =============================================================================


def ensure_utc(value: datetime) -> datetime:
    """Return an aware UTC datetime; naive values are interpreted as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


class CommandRecord(BaseModel):
    """
    One executed command instance.

    Attributes:
        id: Opaque unique identifier; empty means the store assigns one
        command: The command line as typed (never blank)
        directory: Normalized absolute working directory
        timestamp: When the command ran (UTC)
        shell: Shell that executed the command
        exit_code: Exit status reported by the shell
        duration: Elapsed execution time (non-negative)
        tags: Ordered, duplicate-free tags
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str = Field(default="", description="Unique identifier")
    command: str = Field(..., description="Executed command line", min_length=1)
    directory: str = Field(..., description="Normalized working directory", min_length=1)
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        description="Execution time (UTC)",
    )
    shell: ShellType = Field(default=ShellType.UNKNOWN, description="Executing shell")
    exit_code: int = Field(default=0, description="Exit status")
    duration: timedelta = Field(default=timedelta(0), description="Elapsed time")
    tags: tuple[str, ...] = Field(default=(), description="Ordered tag set")

    @field_validator("id")
    @classmethod
    def validate_id(cls, v: str) -> str:
        """IDs are opaque but may not contain whitespace."""
        if v != v.strip() or any(ch.isspace() for ch in v):
            msg = "ID cannot contain whitespace"
            raise ValueError(msg)
        return v

    @field_validator("command")
    @classmethod
    def validate_command(cls, v: str) -> str:
        """Reject commands that are blank after stripping."""
        if not v.strip():
            msg = "Command cannot be empty"
            raise ValueError(msg)
        return v

    @field_validator("directory")
    @classmethod
    def validate_directory(cls, v: str) -> str:
        """Store directories in normal form only."""
        if "\x00" in v:
            msg = "Directory cannot contain NUL characters"
            raise ValueError(msg)
        return normalize_directory(v)

    @field_validator("timestamp")
    @classmethod
    def validate_timestamp(cls, v: datetime) -> datetime:
        """Convert to aware UTC."""
        return ensure_utc(v)

    @field_validator("shell", mode="before")
    @classmethod
    def validate_shell(cls, v: Any) -> ShellType:
        """Accept names, aliases and legacy integer codes."""
        return ShellType.parse(v)

    @field_validator("duration")
    @classmethod
    def validate_duration(cls, v: timedelta) -> timedelta:
        """Durations cannot be negative."""
        if v < timedelta(0):
            msg = "Duration cannot be negative"
            raise ValueError(msg)
        return v

    @field_validator("tags", mode="before")
    @classmethod
    def validate_tags(cls, v: Any) -> tuple[str, ...]:
        """Run tags through TagSet: order kept, duplicates dropped."""
        if v is None:
            return ()
        if isinstance(v, str):
            v = [v]
        if not isinstance(v, Iterable):
            msg = f"Tags must be a sequence of strings, got {type(v).__name__}"
            raise ValueError(msg)
        return TagSet(v).as_tuple()

    def has_tag(self, tag: str) -> bool:
        """Check whether the record carries a tag."""
        return tag in self.tags

    def with_tags(self, *tags: str) -> "CommandRecord":
        """Return a copy with extra tags appended (duplicates ignored)."""
        merged = TagSet(self.tags)
        merged.extend(tags)
        return self.model_copy(update={"tags": merged.as_tuple()})

    def with_id(self, record_id: str) -> "CommandRecord":
        """Return a copy carrying the given id."""
        return self.model_copy(update={"id": record_id})


def validate_record(data: "CommandRecord | Mapping[str, Any]") -> CommandRecord:
    """
    Turn caller input into a validated CommandRecord.

    Args:
        data: An existing record (returned as-is) or a mapping of fields

    Returns:
        Validated CommandRecord

    Raises:
        RecordValidationError: If any field is malformed
    """
    if isinstance(data, CommandRecord):
        return data
    if not isinstance(data, Mapping):
        raise RecordValidationError(
            details=f"expected a CommandRecord or mapping, got {type(data).__name__}",
        )
    try:
        return CommandRecord.model_validate(dict(data))
    except ValidationError as e:
        errors = e.errors()
        field_name = None
        if errors and errors[0].get("loc"):
            field_name = ".".join(str(part) for part in errors[0]["loc"])
        details = "; ".join(err.get("msg", "") for err in errors)
        raise RecordValidationError(field_name=field_name, details=details) from e


# =============================================================================
# Query Models
# =============================================================================


class CommandFilter(BaseModel):
    """
    Multi-criteria query against the store.

    Unset criteria do not filter. The pattern is a case-sensitive
    substring match, like search_commands().
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    directory: str | None = Field(default=None, description="Restrict to one directory")
    pattern: str = Field(default="", description="Case-sensitive substring")
    shell: ShellType | None = Field(default=None, description="Restrict to one shell")
    since: datetime | None = Field(default=None, description="Inclusive lower time bound")
    until: datetime | None = Field(default=None, description="Inclusive upper time bound")
    exit_code: int | None = Field(default=None, description="Exact exit status")
    limit: int | None = Field(default=None, description="Maximum records", gt=0)

    @field_validator("directory")
    @classmethod
    def validate_directory(cls, v: str | None) -> str | None:
        """Normalize like the write path."""
        return normalize_directory(v) if v is not None else None

    @field_validator("since", "until")
    @classmethod
    def validate_bounds(cls, v: datetime | None) -> datetime | None:
        """Convert bounds to aware UTC."""
        return ensure_utc(v) if v is not None else None

    @field_validator("shell", mode="before")
    @classmethod
    def validate_shell(cls, v: Any) -> ShellType | None:
        """Accept names and aliases."""
        return ShellType.parse(v) if v is not None else None


class DirectoryStats(BaseModel):
    """Aggregate view of one directory's history."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    path: str = Field(..., description="Normalized directory")
    command_count: int = Field(..., description="Number of records", ge=0)
    first_used: datetime = Field(..., description="Oldest record timestamp")
    last_used: datetime = Field(..., description="Newest record timestamp")
