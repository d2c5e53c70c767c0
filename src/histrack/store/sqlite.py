"""
SQLite storage for histrack.

All command history lives in a single SQLite database file.

Design Principles:
    - Insert-only: records are never updated, only inserted and purged
    - Atomic: a record and its tags are written in one transaction
    - Directory-scoped: every query is keyed by the normalized directory
    - Contention-tolerant: busy/locked errors are retried within a budget

Tables:
    - schema_version: Schema version marker
    - commands: One row per executed command
    - command_tags: Ordered tags, one row per (command, position)

Concurrency:
    Each shell-triggered capture is its own process. The database runs in
    WAL mode so readers are never blocked by a writer, and every write
    transaction starts with BEGIN IMMEDIATE so that the write lock is taken
    up front (a deferred transaction that upgrades later can fail without
    the busy handler getting a chance to wait).
"""

import itertools
import logging
import os
import sqlite3
import time
import uuid
from collections.abc import Callable, Generator, Iterable, Mapping
from contextlib import contextmanager
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any, TypeVar

from histrack.errors import (
    CommandLimitError,
    ConstructionError,
    ContentionError,
    DuplicateRecordError,
    InitializationError,
    RetentionPeriodError,
    StorageReadError,
    StorageWriteError,
    StoreNotInitializedError,
)
from histrack.paths import normalize_directory
from histrack.schema import (
    CommandFilter,
    CommandRecord,
    DirectoryStats,
    ShellType,
    ensure_utc,
    validate_record,
)
from histrack.store.base import StorageEngine
from histrack.store.retry import RetryPolicy, run_with_retry

logger = logging.getLogger(__name__)

T = TypeVar("T")

MEMORY_PATH = ":memory:"

# Schema version for compatibility checks
SCHEMA_VERSION = 1

SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS schema_version (
        version INTEGER PRIMARY KEY,
        applied_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS commands (
        id TEXT PRIMARY KEY,
        command TEXT NOT NULL CHECK (length(command) > 0),
        directory TEXT NOT NULL,
        timestamp TEXT NOT NULL,
        shell TEXT NOT NULL DEFAULT 'unknown',
        exit_code INTEGER NOT NULL DEFAULT 0,
        duration_us INTEGER NOT NULL DEFAULT 0 CHECK (duration_us >= 0),
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS command_tags (
        command_id TEXT NOT NULL REFERENCES commands(id) ON DELETE CASCADE,
        position INTEGER NOT NULL,
        tag TEXT NOT NULL,
        PRIMARY KEY (command_id, position),
        UNIQUE (command_id, tag)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_commands_dir_timestamp ON commands(directory, timestamp DESC)",
    "CREATE INDEX IF NOT EXISTS idx_commands_timestamp ON commands(timestamp)",
    "CREATE INDEX IF NOT EXISTS idx_command_tags_tag ON command_tags(tag)",
)

RECORD_COLUMNS = "c.id, c.command, c.directory, c.timestamp, c.shell, c.exit_code, c.duration_us"

_id_counter = itertools.count()


def generate_id() -> str:
    """
    Generate a globally unique record id.

    Layout: <ns timestamp>-<pid>-<per-process counter>-<random>, all hex.
    The timestamp prefix keeps ids roughly time-ordered; pid and counter
    separate writers within the same nanosecond; the random suffix covers
    pid reuse across machines sharing a store file.
    """
    return (
        f"{time.time_ns():x}-{os.getpid():x}-"
        f"{next(_id_counter):x}-{uuid.uuid4().hex[:8]}"
    )


def format_timestamp(value: datetime) -> str:
    """Fixed-width UTC ISO string; lexicographic order equals time order."""
    return ensure_utc(value).isoformat(timespec="microseconds")


def parse_timestamp(value: str) -> datetime:
    """Inverse of format_timestamp."""
    return ensure_utc(datetime.fromisoformat(value))


def now_iso() -> str:
    """Get current UTC time in storage format."""
    return format_timestamp(datetime.now(UTC))


def _duration_to_us(value: timedelta) -> int:
    return value // timedelta(microseconds=1)


class SQLiteStorage(StorageEngine):
    """
    SQLite-backed command history store.

    Usage:
        store = SQLiteStorage("~/.histrack/commands.db")
        store.initialize()
        store.save_command(record)
        store.get_commands_by_directory("/home/me/project")
        store.close()

    Or use as context manager:
        with SQLiteStorage(path) as store:
            ...
    """

    def __init__(self, db_path: str | os.PathLike[str], retry: RetryPolicy | None = None) -> None:
        """
        Validate the location of the database file.

        No file is touched here; initialize() opens it.

        Args:
            db_path: Path to the SQLite database file, or ":memory:"
            retry: Contention retry policy

        Raises:
            ConstructionError: If the path is empty, a directory or read-only
        """
        self.retry = retry or RetryPolicy()
        self._conn: sqlite3.Connection | None = None

        raw = os.fspath(db_path) if db_path is not None else ""
        if raw == MEMORY_PATH:
            self.db_path = Path(MEMORY_PATH)
            self.in_memory = True
            return

        self.in_memory = False
        if not raw.strip():
            raise ConstructionError(kind=self.kind, db_path=raw, reason="storage path is empty")

        path = Path(os.path.abspath(os.path.expanduser(raw)))
        if path.is_dir():
            raise ConstructionError(
                kind=self.kind,
                db_path=str(path),
                reason="path is a directory",
                suggestion="Point storage_path at a file, e.g. ~/.histrack/commands.db",
            )
        if path.exists() and not os.access(path, os.W_OK):
            raise ConstructionError(
                kind=self.kind,
                db_path=str(path),
                reason="file is not writable",
            )
        self.db_path = path

    @property
    def kind(self) -> str:
        return "sqlite"

    @property
    def is_initialized(self) -> bool:
        """True between a successful initialize() and close()."""
        return self._conn is not None

    # =========================================================================
    # Connection / Transaction Management
    # =========================================================================

    def initialize(self) -> None:
        """
        Open the database and create the schema if needed.

        Idempotent: returns immediately when already initialized.

        Raises:
            InitializationError: If the file cannot be opened or set up
            ContentionError: If another process held the lock throughout
        """
        if self._conn is not None:
            return

        if not self.in_memory and not self.db_path.parent.is_dir():
            raise InitializationError(
                db_path=str(self.db_path),
                underlying_error=f"parent directory does not exist: {self.db_path.parent}",
            )

        try:
            conn = sqlite3.connect(
                str(self.db_path),
                timeout=self.retry.attempt_timeout,
                isolation_level=None,
                check_same_thread=False,
            )
        except (sqlite3.Error, ValueError, OSError) as e:
            raise InitializationError(
                db_path=str(self.db_path),
                underlying_error=str(e),
            ) from e

        conn.row_factory = sqlite3.Row
        try:
            run_with_retry("initialize", lambda: self._configure(conn), self.retry)
            run_with_retry("initialize", lambda: self._init_schema(conn), self.retry)
        except ContentionError:
            conn.close()
            raise
        except InitializationError:
            conn.close()
            raise
        except sqlite3.Error as e:
            conn.close()
            raise InitializationError(
                db_path=str(self.db_path),
                underlying_error=str(e),
            ) from e

        self._conn = conn
        logger.debug("Opened store %s", self.db_path)

    def _configure(self, conn: sqlite3.Connection) -> None:
        """Apply connection pragmas."""
        conn.execute("PRAGMA foreign_keys = ON")
        conn.execute("PRAGMA synchronous = NORMAL")
        if not self.in_memory:
            mode = conn.execute("PRAGMA journal_mode").fetchone()[0]
            if str(mode).lower() != "wal":
                # Switching needs a brief exclusive lock; the mode persists in the file
                conn.execute("PRAGMA journal_mode = WAL")

    def _init_schema(self, conn: sqlite3.Connection) -> None:
        """Create tables and indexes unless the current version is present."""
        version = self._read_schema_version(conn)
        if version == SCHEMA_VERSION:
            return
        if version is not None and version > SCHEMA_VERSION:
            raise InitializationError(
                db_path=str(self.db_path),
                underlying_error=(
                    f"store uses schema version {version}, this version of "
                    f"histrack supports {SCHEMA_VERSION}"
                ),
                suggestion="Upgrade histrack or point storage_path at a new file",
            )

        conn.execute("BEGIN IMMEDIATE")
        try:
            for statement in SCHEMA_STATEMENTS:
                conn.execute(statement)
            conn.execute(
                "INSERT OR IGNORE INTO schema_version (version, applied_at) VALUES (?, ?)",
                (SCHEMA_VERSION, now_iso()),
            )
            conn.commit()
        except BaseException:
            conn.rollback()
            raise
        logger.info("Created schema version %d in %s", SCHEMA_VERSION, self.db_path)

    @staticmethod
    def _read_schema_version(conn: sqlite3.Connection) -> int | None:
        row = conn.execute(
            "SELECT name FROM sqlite_master WHERE type = 'table' AND name = 'schema_version'"
        ).fetchone()
        if row is None:
            return None
        row = conn.execute("SELECT MAX(version) AS version FROM schema_version").fetchone()
        return row["version"] if row else None

    def close(self) -> None:
        """Close the database connection. Repeated calls are no-ops."""
        if self._conn is not None:
            self._conn.close()
            self._conn = None
            logger.debug("Closed store %s", self.db_path)

    def _connection(self, operation: str) -> sqlite3.Connection:
        if self._conn is None:
            raise StoreNotInitializedError(operation=operation)
        return self._conn

    @contextmanager
    def transaction(self, operation: str) -> Generator[sqlite3.Connection, None, None]:
        """
        Write transaction holding the write lock from its first statement.

        Commits on success, rolls back on any exception.
        """
        conn = self._connection(operation)
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
            conn.commit()
        except BaseException:
            conn.rollback()
            raise

    def _write(self, operation: str, work: Callable[[sqlite3.Connection], T]) -> T:
        """Run work inside a retried write transaction."""
        self._connection(operation)

        def attempt() -> T:
            with self.transaction(operation) as conn:
                return work(conn)

        try:
            return run_with_retry(operation, attempt, self.retry)
        except sqlite3.Error as e:
            raise StorageWriteError(operation=operation, underlying_error=str(e)) from e

    def _read(self, operation: str, work: Callable[[sqlite3.Connection], T]) -> T:
        """Run a read-only query, retrying on contention."""
        conn = self._connection(operation)
        try:
            return run_with_retry(operation, lambda: work(conn), self.retry)
        except sqlite3.Error as e:
            raise StorageReadError(operation=operation, underlying_error=str(e)) from e

    # =========================================================================
    # Write Path
    # =========================================================================

    def _prepare(self, record: "CommandRecord | Mapping[str, Any]") -> CommandRecord:
        """Validate, re-normalize the directory and assign an id if missing."""
        record = validate_record(record)
        updates: dict[str, Any] = {}
        directory = normalize_directory(record.directory)
        if directory != record.directory:
            updates["directory"] = directory
        if not record.id:
            updates["id"] = generate_id()
        return record.model_copy(update=updates) if updates else record

    @staticmethod
    def _insert(conn: sqlite3.Connection, record: CommandRecord) -> None:
        conn.execute(
            """
            INSERT INTO commands (
                id, command, directory, timestamp, shell,
                exit_code, duration_us, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                record.id,
                record.command,
                record.directory,
                format_timestamp(record.timestamp),
                record.shell.value,
                record.exit_code,
                _duration_to_us(record.duration),
                now_iso(),
            ),
        )
        if record.tags:
            conn.executemany(
                "INSERT INTO command_tags (command_id, position, tag) VALUES (?, ?, ?)",
                [(record.id, position, tag) for position, tag in enumerate(record.tags)],
            )

    def _exists(self, conn: sqlite3.Connection, record_id: str) -> bool:
        row = conn.execute("SELECT 1 FROM commands WHERE id = ?", (record_id,)).fetchone()
        return row is not None

    def save_command(self, record: "CommandRecord | Mapping[str, Any]") -> CommandRecord:
        """
        Store one command record and its tags atomically.

        Args:
            record: A CommandRecord or a mapping of its fields

        Returns:
            The stored record (normalized directory, assigned id)
        """
        prepared = self._prepare(record)

        def work(conn: sqlite3.Connection) -> None:
            if self._exists(conn, prepared.id):
                raise DuplicateRecordError(operation="save_command", record_id=prepared.id)
            self._insert(conn, prepared)

        self._write("save_command", work)
        logger.debug("Saved command %s in %s", prepared.id, prepared.directory)
        return prepared

    def save_commands(self, records: Iterable["CommandRecord | Mapping[str, Any]"]) -> list[CommandRecord]:
        """
        Store several records in a single transaction.

        Every record is validated before the transaction starts, so a
        malformed record leaves the store untouched.
        """
        prepared = [self._prepare(record) for record in records]
        if not prepared:
            return []

        seen: set[str] = set()
        for record in prepared:
            if record.id in seen:
                raise DuplicateRecordError(operation="save_commands", record_id=record.id)
            seen.add(record.id)

        def work(conn: sqlite3.Connection) -> None:
            for record in prepared:
                if self._exists(conn, record.id):
                    raise DuplicateRecordError(operation="save_commands", record_id=record.id)
                self._insert(conn, record)

        self._write("save_commands", work)
        logger.debug("Saved %d commands", len(prepared))
        return prepared

    # =========================================================================
    # Query Path
    # =========================================================================

    def _load_tags(self, conn: sqlite3.Connection, where: str, params: list[Any]) -> dict[str, list[str]]:
        """Fetch ordered tags for every command matching the WHERE clause."""
        tags: dict[str, list[str]] = {}
        cursor = conn.execute(
            f"""
            SELECT t.command_id, t.tag
            FROM command_tags t
            JOIN commands c ON c.id = t.command_id
            WHERE {where}
            ORDER BY t.command_id, t.position
            """,
            params,
        )
        for row in cursor:
            tags.setdefault(row["command_id"], []).append(row["tag"])
        return tags

    def _query_records(
        self,
        conn: sqlite3.Connection,
        where: str,
        params: list[Any],
        limit: int | None = None,
    ) -> list[CommandRecord]:
        """Run a record query (newest first) and attach tags."""
        sql = f"""
            SELECT {RECORD_COLUMNS}
            FROM commands c
            WHERE {where}
            ORDER BY c.timestamp DESC, c.rowid DESC
        """
        query_params = list(params)
        if limit is not None:
            sql += " LIMIT ?"
            query_params.append(limit)
        rows = conn.execute(sql, query_params).fetchall()
        if not rows:
            return []

        if limit is None:
            tags = self._load_tags(conn, where, params)
        else:
            ids = [row["id"] for row in rows]
            placeholders = ", ".join("?" for _ in ids)
            tags = self._load_tags(conn, f"c.id IN ({placeholders})", ids)
        return [self._row_to_record(row, tags.get(row["id"], [])) for row in rows]

    @staticmethod
    def _row_to_record(row: sqlite3.Row, tags: list[str]) -> CommandRecord:
        return CommandRecord(
            id=row["id"],
            command=row["command"],
            directory=row["directory"],
            timestamp=parse_timestamp(row["timestamp"]),
            shell=ShellType.parse(row["shell"]),
            exit_code=row["exit_code"],
            duration=timedelta(microseconds=row["duration_us"]),
            tags=tuple(tags),
        )

    def get_commands_by_directory(self, directory: str) -> list[CommandRecord]:
        """
        Get all commands recorded in a directory.

        Args:
            directory: Any spelling of the directory; normalized first

        Returns:
            Records, most recent first; empty when there is no history
        """
        normalized = normalize_directory(directory)
        return self._read(
            "get_commands_by_directory",
            lambda conn: self._query_records(conn, "c.directory = ?", [normalized]),
        )

    def get_directories_with_history(self) -> list[str]:
        """List distinct directories with at least one record, sorted."""

        def work(conn: sqlite3.Connection) -> list[str]:
            cursor = conn.execute("SELECT DISTINCT directory FROM commands ORDER BY directory")
            return [row["directory"] for row in cursor]

        return self._read("get_directories_with_history", work)

    def search_commands(self, pattern: str, directory: str) -> list[CommandRecord]:
        """
        Find commands in one directory containing a substring.

        The match is case-sensitive and literal: "%" and "_" have no
        special meaning. An empty pattern matches every record.

        Args:
            pattern: Substring to look for
            directory: Directory to search; normalized first

        Returns:
            Matching records, most recent first
        """
        normalized = normalize_directory(directory)
        if not pattern:
            return self.get_commands_by_directory(normalized)
        return self._read(
            "search_commands",
            lambda conn: self._query_records(
                conn,
                "c.directory = ? AND instr(c.command, ?) > 0",
                [normalized, pattern],
            ),
        )

    def filter_commands(self, criteria: CommandFilter) -> list[CommandRecord]:
        """Get commands matching every criterion that is set."""
        clauses: list[str] = []
        params: list[Any] = []

        if criteria.directory is not None:
            clauses.append("c.directory = ?")
            params.append(criteria.directory)
        if criteria.pattern:
            clauses.append("instr(c.command, ?) > 0")
            params.append(criteria.pattern)
        if criteria.shell is not None:
            clauses.append("c.shell = ?")
            params.append(criteria.shell.value)
        if criteria.since is not None:
            clauses.append("c.timestamp >= ?")
            params.append(format_timestamp(criteria.since))
        if criteria.until is not None:
            clauses.append("c.timestamp <= ?")
            params.append(format_timestamp(criteria.until))
        if criteria.exit_code is not None:
            clauses.append("c.exit_code = ?")
            params.append(criteria.exit_code)

        where = " AND ".join(clauses) if clauses else "1 = 1"
        return self._read(
            "filter_commands",
            lambda conn: self._query_records(conn, where, params, limit=criteria.limit),
        )

    def get_directory_stats(self) -> list[DirectoryStats]:
        """Per-directory counts and first/last use, most recent first."""

        def work(conn: sqlite3.Connection) -> list[DirectoryStats]:
            cursor = conn.execute(
                """
                SELECT directory,
                       COUNT(*) AS command_count,
                       MIN(timestamp) AS first_used,
                       MAX(timestamp) AS last_used
                FROM commands
                GROUP BY directory
                ORDER BY last_used DESC, directory
                """
            )
            return [
                DirectoryStats(
                    path=row["directory"],
                    command_count=row["command_count"],
                    first_used=parse_timestamp(row["first_used"]),
                    last_used=parse_timestamp(row["last_used"]),
                )
                for row in cursor
            ]

        return self._read("get_directory_stats", work)

    def count_commands(self) -> int:
        """Total number of stored records."""
        return self._read(
            "count_commands",
            lambda conn: conn.execute("SELECT COUNT(*) FROM commands").fetchone()[0],
        )

    def database_size(self) -> int:
        """Bytes used by the database pages (page_count * page_size)."""

        def work(conn: sqlite3.Connection) -> int:
            page_count = conn.execute("PRAGMA page_count").fetchone()[0]
            page_size = conn.execute("PRAGMA page_size").fetchone()[0]
            return page_count * page_size

        return self._read("database_size", work)

    # =========================================================================
    # Retention
    # =========================================================================

    def cleanup_old_commands(self, retention_days: int, *, now: datetime | None = None) -> int:
        """
        Delete records older than the retention period.

        A record whose age is exactly retention_days is deleted (the
        boundary is inclusive). retention_days == 0 deletes everything,
        including records timestamped in the future. A period reaching
        back past the earliest representable date deletes nothing.

        Args:
            retention_days: Non-negative number of days
            now: Reference time; defaults to the current time

        Returns:
            Number of deleted records

        Raises:
            RetentionPeriodError: If retention_days is negative or not an int
        """
        if isinstance(retention_days, bool) or not isinstance(retention_days, int) or retention_days < 0:
            raise RetentionPeriodError(retention_days=retention_days)

        if retention_days == 0:
            sql, params = "DELETE FROM commands", ()
        else:
            reference = ensure_utc(now) if now is not None else datetime.now(UTC)
            try:
                cutoff = reference - timedelta(days=retention_days)
            except OverflowError:
                logger.debug("Retention of %d day(s) predates every record", retention_days)
                return 0
            sql, params = "DELETE FROM commands WHERE timestamp <= ?", (format_timestamp(cutoff),)

        deleted = self._write(
            "cleanup_old_commands",
            lambda conn: conn.execute(sql, params).rowcount,
        )
        if deleted:
            logger.info("Cleaned up %d command(s) older than %d day(s)", deleted, retention_days)
        return deleted

    def trim_directory(self, directory: str, max_commands: int) -> int:
        """
        Keep only the newest max_commands records of one directory.

        Other directories are never touched.

        Returns:
            Number of deleted records

        Raises:
            CommandLimitError: If max_commands is not a positive int
        """
        if isinstance(max_commands, bool) or not isinstance(max_commands, int) or max_commands < 1:
            raise CommandLimitError(max_commands=max_commands)

        target = normalize_directory(directory)

        def work(conn: sqlite3.Connection) -> int:
            return conn.execute(
                """
                DELETE FROM commands WHERE rowid IN (
                    SELECT rowid FROM commands
                    WHERE directory = ?
                    ORDER BY timestamp DESC, rowid DESC
                    LIMIT -1 OFFSET ?
                )
                """,
                (target, max_commands),
            ).rowcount

        deleted = self._write("trim_directory", work)
        if deleted:
            logger.info("Trimmed %d command(s) from %s", deleted, target)
        return deleted

    # =========================================================================
    # Maintenance
    # =========================================================================

    def optimize(self) -> None:
        """
        Reclaim free pages and refresh query planner statistics.

        Runs VACUUM then ANALYZE. VACUUM cannot run inside a transaction
        and needs every other writer to be idle, so it shares the
        contention retry budget.
        """
        conn = self._connection("optimize")

        def work() -> None:
            conn.execute("VACUUM")
            conn.execute("ANALYZE")

        try:
            run_with_retry("optimize", work, self.retry)
        except sqlite3.Error as e:
            raise StorageWriteError(operation="optimize", underlying_error=str(e)) from e
        logger.info("Optimized store %s", self.db_path)


def create_sqlite_storage(path: str | os.PathLike[str], retry: RetryPolicy) -> SQLiteStorage:
    """Registry factory for the "sqlite" backend."""
    return SQLiteStorage(path, retry)


def register_sqlite_backend() -> None:
    """Register the SQLite backend in the default registry."""
    from histrack.store.registry import default_registry

    default_registry.register("sqlite", create_sqlite_storage)
