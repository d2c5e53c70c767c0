"""
Exception hierarchy for histrack.

All histrack exceptions inherit from HistrackError, allowing callers to catch
every histrack-specific failure with a single except clause.

Exception Categories:
    - RecordValidationError: Malformed CommandRecord rejected before the store
    - ConfigError: Configuration file could not be loaded or validated
    - StorageError: Store construction, initialization, contention, I/O
    - RetentionPeriodError: Invalid retention period passed to cleanup
    - CommandLimitError: Invalid per-directory cap passed to trim_directory

Design Principles:
    - All errors have error codes for programmatic handling
    - All errors include context (path, operation, field where applicable)
    - All errors provide actionable suggestions where possible
    - Errors are designed to be both human-readable and machine-parseable
"""

from dataclasses import dataclass, field
from typing import Any


# =============================================================================
# Error Codes
# =============================================================================

# Validation errors: 3xxx
ERROR_RECORD_INVALID = 3001

# Config errors: 4xxx
ERROR_CONFIG_LOAD = 4001
ERROR_CONFIG_INVALID = 4002

# Storage errors: 5xxx
ERROR_STORAGE_CONSTRUCTION = 5001
ERROR_STORAGE_INITIALIZATION = 5002
ERROR_STORAGE_CONTENTION = 5003
ERROR_STORAGE_WRITE = 5004
ERROR_STORAGE_READ = 5005
ERROR_STORAGE_DUPLICATE = 5006
ERROR_STORAGE_NOT_INITIALIZED = 5007
ERROR_RETENTION_INVALID = 5010
ERROR_LIMIT_INVALID = 5011


# =============================================================================
# Base Exception
# =============================================================================


@dataclass
class HistrackError(Exception):
    """
    Base exception for all histrack errors.

    Attributes:
        message: Human-readable error description
        code: Numeric error code for programmatic handling
        suggestion: Optional hint for how to resolve the error
        context: Optional dict with additional debugging info
    """

    message: str = ""
    code: int = 0
    suggestion: str | None = None
    context: dict[str, Any] = field(default_factory=dict)

    def __str__(self) -> str:
        """Format error for display."""
        parts = [f"[E{self.code}] {self.message}"]
        if self.suggestion:
            parts.append(f"\nSuggestion: {self.suggestion}")
        return "".join(parts)

    def __repr__(self) -> str:
        """Format error for debugging."""
        return (
            f"{self.__class__.__name__}("
            f"message={self.message!r}, "
            f"code={self.code}, "
            f"context={self.context!r})"
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "code": self.code,
            "suggestion": self.suggestion,
            "context": self.context,
        }


# =============================================================================
# Validation Errors
# =============================================================================


@dataclass
class RecordValidationError(HistrackError):
    """
    Raised when a command record is malformed.

    Validation happens before the store boundary, so no partial
    mutation ever follows one of these.

    Attributes:
        field_name: The offending field, if a single one can be named
        details: Validator output
    """

    field_name: str | None = None
    details: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            target = f" ({self.field_name})" if self.field_name else ""
            self.message = f"Invalid command record{target}: {self.details}"
        if self.code == 0:
            self.code = ERROR_RECORD_INVALID
        self.context.update({
            "field": self.field_name,
            "details": self.details,
        })


# =============================================================================
# Config Errors
# =============================================================================


@dataclass
class ConfigError(HistrackError):
    """
    Base class for configuration errors.

    Attributes:
        path: The configuration file involved (if any)
    """

    path: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        self.context["path"] = self.path


@dataclass
class ConfigLoadError(ConfigError):
    """Raised when the configuration file cannot be read or parsed."""

    underlying_error: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Failed to load config {self.path}: {self.underlying_error}"
        if self.code == 0:
            self.code = ERROR_CONFIG_LOAD
        if not self.suggestion:
            self.suggestion = "Fix the YAML syntax or run 'histrack config init' to regenerate it"
        super().__post_init__()
        self.context["underlying_error"] = self.underlying_error


@dataclass
class ConfigValidationError(ConfigError):
    """Raised when configuration values are out of range or unknown."""

    details: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Invalid configuration: {self.details}"
        if self.code == 0:
            self.code = ERROR_CONFIG_INVALID
        super().__post_init__()
        self.context["details"] = self.details


# =============================================================================
# Storage Errors
# =============================================================================


@dataclass
class StorageError(HistrackError):
    """
    Base class for storage/database errors.

    Attributes:
        operation: The operation that failed (e.g., "save_command", "cleanup")
    """

    operation: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        self.context["operation"] = self.operation


@dataclass
class ConstructionError(StorageError):
    """Raised when a store cannot be constructed (bad backend or path)."""

    kind: str = ""
    db_path: str = ""
    reason: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Cannot open {self.kind or 'store'} at {self.db_path!r}: {self.reason}"
        if self.code == 0:
            self.code = ERROR_STORAGE_CONSTRUCTION
        if not self.operation:
            self.operation = "open"
        super().__post_init__()
        self.context.update({
            "kind": self.kind,
            "db_path": self.db_path,
            "reason": self.reason,
        })


@dataclass
class InitializationError(StorageError):
    """Raised when the store file cannot be opened or its schema created."""

    db_path: str = ""
    underlying_error: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Failed to initialize store {self.db_path}: {self.underlying_error}"
        if self.code == 0:
            self.code = ERROR_STORAGE_INITIALIZATION
        if not self.suggestion:
            self.suggestion = "Check that the parent directory exists and is writable"
        if not self.operation:
            self.operation = "initialize"
        super().__post_init__()
        self.context.update({
            "db_path": self.db_path,
            "underlying_error": self.underlying_error,
        })


@dataclass
class ContentionError(StorageError):
    """Raised when the store stays locked after the retry budget is spent."""

    attempts: int = 0
    waited_seconds: float = 0.0

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = (
                f"Store busy during {self.operation}: gave up after "
                f"{self.attempts} attempt(s) ({self.waited_seconds:.2f}s)"
            )
        if self.code == 0:
            self.code = ERROR_STORAGE_CONTENTION
        if not self.suggestion:
            self.suggestion = "Increase operation_timeout in the config or retry later"
        super().__post_init__()
        self.context.update({
            "attempts": self.attempts,
            "waited_seconds": self.waited_seconds,
        })


@dataclass
class StorageWriteError(StorageError):
    """Raised when a write operation fails."""

    underlying_error: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Database write failed: {self.underlying_error}"
        if self.code == 0:
            self.code = ERROR_STORAGE_WRITE
        super().__post_init__()
        self.context["underlying_error"] = self.underlying_error


@dataclass
class DuplicateRecordError(StorageWriteError):
    """Raised when a record id is already present in the store."""

    record_id: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Record id already exists: {self.record_id}"
        if self.code == 0:
            self.code = ERROR_STORAGE_DUPLICATE
        super().__post_init__()
        self.context["record_id"] = self.record_id


@dataclass
class StorageReadError(StorageError):
    """Raised when a read operation fails."""

    underlying_error: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Database read failed: {self.underlying_error}"
        if self.code == 0:
            self.code = ERROR_STORAGE_READ
        super().__post_init__()
        self.context["underlying_error"] = self.underlying_error


@dataclass
class StoreNotInitializedError(StorageError):
    """Raised when a store is used before initialize() or after close()."""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Store is not initialized (during {self.operation})"
        if self.code == 0:
            self.code = ERROR_STORAGE_NOT_INITIALIZED
        if not self.suggestion:
            self.suggestion = "Call initialize() or use the store as a context manager"
        super().__post_init__()


@dataclass
class RetentionPeriodError(StorageError):
    """Raised when cleanup receives a negative or non-integer retention period."""

    retention_days: Any = None

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = (
                f"Retention period must be a non-negative integer of days, "
                f"got {self.retention_days!r}"
            )
        if self.code == 0:
            self.code = ERROR_RETENTION_INVALID
        if not self.operation:
            self.operation = "cleanup_old_commands"
        super().__post_init__()
        self.context["retention_days"] = self.retention_days


@dataclass
class CommandLimitError(StorageError):
    """Raised when a per-directory cap is not a positive integer."""

    max_commands: Any = None

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Command limit must be a positive integer, got {self.max_commands!r}"
        if self.code == 0:
            self.code = ERROR_LIMIT_INVALID
        if not self.operation:
            self.operation = "trim_directory"
        super().__post_init__()
        self.context["max_commands"] = self.max_commands
