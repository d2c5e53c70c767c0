"""
Storage module for histrack.

This module provides persistence for command records. Call sites work
against StorageEngine and resolve a backend by name through the registry;
the SQLite backend is registered on import.

Tables (SQLite backend):
    - commands: One row per executed command
    - command_tags: Ordered tags of each command
    - schema_version: Schema version marker

Design principles:
    - Insert-only: records are never updated, only purged by retention
    - Atomic: a record and its tags land together or not at all
    - Multi-process safe: WAL journal plus bounded retry on contention
"""

from histrack.store.base import StorageEngine
from histrack.store.registry import (
    StorageRegistry,
    default_registry,
    open_store,
    register_backend,
)
from histrack.store.retry import RetryPolicy, is_contention_error, run_with_retry
from histrack.store.sqlite import SQLiteStorage, generate_id, register_sqlite_backend

# Register built-in backends
register_sqlite_backend()

__all__ = [
    "RetryPolicy",
    "SQLiteStorage",
    "StorageEngine",
    "StorageRegistry",
    "default_registry",
    "generate_id",
    "is_contention_error",
    "open_store",
    "register_backend",
    "run_with_retry",
]
