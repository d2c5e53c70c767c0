"""
Base class for storage backends.

StorageEngine is the one interface the capture path and the CLI talk to.
Backends are looked up by name through the registry (see registry.py), so
call sites never import a concrete backend.

Lifecycle:
    store = open_store("sqlite", path)   # construct: validate kind and path
    store.initialize()                   # connect, create schema (idempotent)
    ...                                  # one logical operation
    store.close()                        # release (idempotent)

Or as a context manager, which initializes on enter and closes on exit:
    with open_store("sqlite", path) as store:
        store.save_command(record)
"""

from abc import ABC, abstractmethod
from collections.abc import Iterable, Mapping
from datetime import datetime
from typing import Any

from histrack.schema import CommandFilter, CommandRecord, DirectoryStats


class StorageEngine(ABC):
    """
    Abstract base class for command history stores.

    Subclasses must implement the core operations below. Every method that
    takes a directory normalizes it exactly like the write path does.
    """

    @property
    @abstractmethod
    def kind(self) -> str:
        """Registry name of this backend (e.g. "sqlite")."""
        ...

    @abstractmethod
    def initialize(self) -> None:
        """
        Open the underlying store and create the schema if absent.

        Calling it again on an initialized store is a no-op.

        Raises:
            InitializationError: If the store cannot be opened or set up
        """
        ...

    @abstractmethod
    def close(self) -> None:
        """Release the store handle. Safe to call more than once."""
        ...

    @abstractmethod
    def save_command(self, record: "CommandRecord | Mapping[str, Any]") -> CommandRecord:
        """
        Persist one record atomically, assigning an id if it has none.

        Returns:
            The record as stored (normalized directory, final id)

        Raises:
            RecordValidationError: If the record is malformed
            ContentionError: If the store stays locked after retries
            StorageWriteError: On any other write failure
        """
        ...

    @abstractmethod
    def save_commands(self, records: Iterable["CommandRecord | Mapping[str, Any]"]) -> list[CommandRecord]:
        """Persist several records in a single transaction."""
        ...

    @abstractmethod
    def get_commands_by_directory(self, directory: str) -> list[CommandRecord]:
        """Return every record for a directory, most recent first."""
        ...

    @abstractmethod
    def get_directories_with_history(self) -> list[str]:
        """Return the sorted distinct directories that have records."""
        ...

    @abstractmethod
    def search_commands(self, pattern: str, directory: str) -> list[CommandRecord]:
        """Return records in one directory whose command contains pattern."""
        ...

    @abstractmethod
    def filter_commands(self, criteria: CommandFilter) -> list[CommandRecord]:
        """Return records matching every set criterion, most recent first."""
        ...

    @abstractmethod
    def get_directory_stats(self) -> list[DirectoryStats]:
        """Return per-directory aggregates, most recently used first."""
        ...

    @abstractmethod
    def count_commands(self) -> int:
        """Return the total number of stored records."""
        ...

    @abstractmethod
    def database_size(self) -> int:
        """Return the storage footprint in bytes."""
        ...

    @abstractmethod
    def cleanup_old_commands(self, retention_days: int, *, now: datetime | None = None) -> int:
        """
        Delete records older than the retention period.

        Args:
            retention_days: Age threshold in days; 0 deletes everything
            now: Reference time; defaults to the current time

        Returns:
            Number of deleted records

        Raises:
            RetentionPeriodError: If retention_days is negative or not an int
        """
        ...

    @abstractmethod
    def trim_directory(self, directory: str, max_commands: int) -> int:
        """Delete all but the newest max_commands records of one directory."""
        ...

    @abstractmethod
    def optimize(self) -> None:
        """Compact the store and refresh its statistics."""
        ...

    def __enter__(self) -> "StorageEngine":
        """Initialize on entering the context."""
        self.initialize()
        return self

    def __exit__(self, *args: Any) -> None:
        """Close on leaving the context."""
        self.close()

    def __repr__(self) -> str:
        return f"<StorageEngine: {self.kind}>"
