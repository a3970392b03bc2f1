"""
recurgent — state database

Purpose
- SQLite schema management, migrations, and connection lifecycle for the
  artifact store, lifecycle ledger, role-profile registry and governance store.

What should be included in this file
- Schema version table and migration runner.
- Safe locking strategy and busy timeout handling.
- Append-only enforcement for audit tables via triggers.

Functional requirements
- Must support idempotent migration application.
- Writers use ``BEGIN IMMEDIATE`` so concurrent updates serialize instead of
  losing increments.

Non-functional requirements
- Short-lived connections; WAL journal so readers never block on writers.
"""

from __future__ import annotations

import hashlib
import itertools
import sqlite3
import time
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Final

from recurgent.constants import LIFECYCLE_STATES, STATE_DB_SCHEMA_VERSION
from recurgent.utils.hashing import canonical_json

SQLValue = str | int | float | bytes | None
SQLParams = Sequence[SQLValue]
RowValue = str | int | float | bytes | None

DEFAULT_BUSY_TIMEOUT_MS: Final[int] = 5_000
DEFAULT_BUSY_RETRY_LIMIT: Final[int] = 4
DEFAULT_BUSY_RETRY_BACKOFF_MS: Final[int] = 25

PROPOSAL_STATUSES: Final[tuple[str, ...]] = (
    "pending",
    "approved",
    "rejected",
    "applying",
    "applied",
)
LIFECYCLE_MODES: Final[tuple[str, ...]] = ("shadow", "enforced")


def _sql_enum(values: Sequence[str]) -> str:
    return ",".join(f"'{value}'" for value in values)


def _append_only_triggers(table: str) -> tuple[str, str]:
    return (
        f"""
        CREATE TRIGGER IF NOT EXISTS {table}_append_only_update
        BEFORE UPDATE ON {table}
        BEGIN
            SELECT RAISE(ABORT, '{table} is append-only');
        END
        """,
        f"""
        CREATE TRIGGER IF NOT EXISTS {table}_append_only_delete
        BEFORE DELETE ON {table}
        BEGIN
            SELECT RAISE(ABORT, '{table} is append-only');
        END
        """,
    )


_SCHEMA_VERSIONS_TABLE_SQL: Final[str] = """
CREATE TABLE IF NOT EXISTS schema_versions (
    version INTEGER PRIMARY KEY CHECK (version > 0),
    name TEXT NOT NULL,
    checksum TEXT NOT NULL CHECK (length(checksum) = 64),
    applied_at TEXT NOT NULL
)
"""

_MIGRATION_0001_STATEMENTS: Final[tuple[str, ...]] = (
    _SCHEMA_VERSIONS_TABLE_SQL,
    f"""
    CREATE TABLE IF NOT EXISTS artifacts (
        role TEXT NOT NULL,
        method TEXT NOT NULL,
        checksum TEXT NOT NULL CHECK (checksum LIKE 'sha256:%'),
        code TEXT NOT NULL,
        dependencies_json TEXT NOT NULL,
        lifecycle_state TEXT NOT NULL
            CHECK (lifecycle_state IN ({_sql_enum(LIFECYCLE_STATES)})),
        scorecard_json TEXT NOT NULL,
        generation_attempts INTEGER NOT NULL CHECK (generation_attempts >= 0),
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        last_success_at TEXT,
        PRIMARY KEY (role, method, checksum)
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS lifecycle_ledger (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        role TEXT NOT NULL,
        method TEXT NOT NULL,
        checksum TEXT NOT NULL,
        from_state TEXT CHECK (from_state IS NULL OR from_state IN ({_sql_enum(LIFECYCLE_STATES)})),
        to_state TEXT NOT NULL CHECK (to_state IN ({_sql_enum(LIFECYCLE_STATES)})),
        decision TEXT NOT NULL,
        rationale_json TEXT NOT NULL,
        policy_version TEXT NOT NULL,
        mode TEXT NOT NULL CHECK (mode IN ({_sql_enum(LIFECYCLE_MODES)})),
        authorized_by TEXT,
        recorded_at TEXT NOT NULL,
        FOREIGN KEY (role, method, checksum) REFERENCES artifacts(role, method, checksum)
    )
    """,
    *_append_only_triggers("lifecycle_ledger"),
    """
    CREATE TABLE IF NOT EXISTS lifecycle_evaluations (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        role TEXT NOT NULL,
        method TEXT NOT NULL,
        checksum TEXT NOT NULL,
        decision TEXT NOT NULL,
        policy_version TEXT NOT NULL,
        mode TEXT NOT NULL,
        rationale_json TEXT NOT NULL,
        incumbent_checksum TEXT,
        recorded_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS incumbents (
        role TEXT NOT NULL,
        method TEXT NOT NULL,
        checksum TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        PRIMARY KEY (role, method)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS retention_policies (
        role TEXT PRIMARY KEY,
        policy_json TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_artifacts_role_method"
    " ON artifacts(role, method, lifecycle_state)",
    "CREATE INDEX IF NOT EXISTS idx_ledger_artifact"
    " ON lifecycle_ledger(role, method, checksum, id)",
    "CREATE INDEX IF NOT EXISTS idx_evaluations_role_method"
    " ON lifecycle_evaluations(role, method, id)",
)

_MIGRATION_0002_STATEMENTS: Final[tuple[str, ...]] = (
    """
    CREATE TABLE IF NOT EXISTS role_profiles (
        role TEXT NOT NULL,
        version INTEGER NOT NULL CHECK (version > 0),
        profile_json TEXT NOT NULL,
        published_at TEXT NOT NULL,
        PRIMARY KEY (role, version)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS role_profile_bindings (
        role TEXT PRIMARY KEY,
        active_version INTEGER NOT NULL,
        updated_at TEXT NOT NULL,
        FOREIGN KEY (role, active_version) REFERENCES role_profiles(role, version)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS role_profile_history (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        role TEXT NOT NULL,
        event TEXT NOT NULL,
        active_version INTEGER,
        source TEXT NOT NULL,
        actor TEXT,
        proposal_id TEXT,
        note TEXT,
        recorded_at TEXT NOT NULL
    )
    """,
    *_append_only_triggers("role_profile_history"),
    """
    CREATE TABLE IF NOT EXISTS role_observations (
        role TEXT NOT NULL,
        constraint_name TEXT NOT NULL,
        kind TEXT NOT NULL,
        method TEXT NOT NULL,
        observed_value TEXT NOT NULL,
        first_observed_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        PRIMARY KEY (role, constraint_name, method)
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS proposals (
        id TEXT PRIMARY KEY,
        proposal_type TEXT NOT NULL,
        target TEXT NOT NULL,
        payload_json TEXT NOT NULL,
        evidence_refs_json TEXT NOT NULL,
        status TEXT NOT NULL CHECK (status IN ({_sql_enum(PROPOSAL_STATUSES)})),
        author TEXT NOT NULL,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS proposal_events (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        proposal_id TEXT NOT NULL REFERENCES proposals(id),
        event TEXT NOT NULL,
        status TEXT NOT NULL,
        actor TEXT NOT NULL,
        note TEXT,
        recorded_at TEXT NOT NULL
    )
    """,
    *_append_only_triggers("proposal_events"),
    "CREATE INDEX IF NOT EXISTS idx_profile_history_role ON role_profile_history(role, id)",
    "CREATE INDEX IF NOT EXISTS idx_proposals_status ON proposals(status, created_at)",
)


@dataclass(frozen=True, slots=True)
class MigrationRecord:
    version: int
    name: str
    checksum: str
    applied_at: str


@dataclass(frozen=True, slots=True)
class _Migration:
    version: int
    name: str
    statements: tuple[str, ...]
    checksum: str


def _migration_checksum(version: int, name: str, statements: Sequence[str]) -> str:
    digest = hashlib.sha256()
    digest.update(f"{version}:{name}\n".encode())
    for statement in statements:
        normalized = "\n".join(line.rstrip() for line in statement.strip().splitlines())
        digest.update(normalized.encode("utf-8"))
        digest.update(b"\n--\n")
    return digest.hexdigest()


_MIGRATIONS: Final[tuple[_Migration, ...]] = (
    _Migration(
        version=1,
        name="artifact_store_schema",
        statements=_MIGRATION_0001_STATEMENTS,
        checksum=_migration_checksum(1, "artifact_store_schema", _MIGRATION_0001_STATEMENTS),
    ),
    _Migration(
        version=2,
        name="profile_and_governance_schema",
        statements=_MIGRATION_0002_STATEMENTS,
        checksum=_migration_checksum(
            2, "profile_and_governance_schema", _MIGRATION_0002_STATEMENTS
        ),
    ),
)

_SQLITE_BUSY_CODES: Final[frozenset[int]] = frozenset(
    code
    for code in (
        getattr(sqlite3, "SQLITE_BUSY", None),
        getattr(sqlite3, "SQLITE_BUSY_RECOVERY", None),
        getattr(sqlite3, "SQLITE_BUSY_SNAPSHOT", None),
        getattr(sqlite3, "SQLITE_LOCKED", None),
    )
    if isinstance(code, int)
)

_BUSY_SUBSTRINGS: Final[tuple[str, ...]] = (
    "database is locked",
    "database table is locked",
    "database schema is locked",
)

_CORRUPTION_SUBSTRINGS: Final[tuple[str, ...]] = (
    "database disk image is malformed",
    "malformed database",
    "file is not a database",
)


class StateDBError(RuntimeError):
    """Base class for persistence DB errors."""


class StateDBBusyError(StateDBError):
    """Raised when bounded busy retries are exhausted."""


class StateDBMigrationError(StateDBError):
    """Raised when migrations cannot be applied safely."""


class StateDBCorruptionError(StateDBError):
    """Raised when SQLite reports possible corruption."""


class StateDB:
    """SQLite state DB manager with deterministic migrations and safe helpers."""

    def __init__(
        self,
        path: str | Path,
        *,
        busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS,
        busy_retry_limit: int = DEFAULT_BUSY_RETRY_LIMIT,
        busy_retry_backoff_ms: int = DEFAULT_BUSY_RETRY_BACKOFF_MS,
    ) -> None:
        if busy_timeout_ms < 0:
            raise ValueError("busy_timeout_ms must be >= 0")
        if busy_retry_limit < 0:
            raise ValueError("busy_retry_limit must be >= 0")
        if busy_retry_backoff_ms < 0:
            raise ValueError("busy_retry_backoff_ms must be >= 0")

        self._path = Path(path).expanduser()
        self._busy_timeout_ms = busy_timeout_ms
        self._busy_retry_limit = busy_retry_limit
        self._busy_retry_backoff_ms = busy_retry_backoff_ms
        self._savepoints = itertools.count(1)

    @property
    def path(self) -> Path:
        return self._path

    def connect(self) -> sqlite3.Connection:
        """Open a configured SQLite connection for the state DB."""

        self._path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(
            self._path,
            timeout=self._busy_timeout_ms / 1000.0,
            isolation_level=None,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        self._configure_connection(conn)
        return conn

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        conn = self.connect()
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def transaction(
        self,
        *,
        conn: sqlite3.Connection | None = None,
        immediate: bool = True,
    ) -> Iterator[sqlite3.Connection]:
        """Run statements inside an atomic transaction with savepoint support."""

        if conn is None:
            with self.connection() as owned_conn:
                with self.transaction(conn=owned_conn, immediate=immediate) as txn_conn:
                    yield txn_conn
                return

        if conn.in_transaction:
            savepoint = f"sp_{next(self._savepoints)}"
            self._execute_with_retry(conn, f"SAVEPOINT {savepoint}", (), operation="savepoint")
            try:
                yield conn
            except Exception:
                self._execute_with_retry(
                    conn,
                    f"ROLLBACK TO SAVEPOINT {savepoint}",
                    (),
                    operation="rollback to savepoint",
                )
                self._execute_with_retry(
                    conn, f"RELEASE SAVEPOINT {savepoint}", (), operation="release savepoint"
                )
                raise
            else:
                self._execute_with_retry(
                    conn, f"RELEASE SAVEPOINT {savepoint}", (), operation="release savepoint"
                )
            return

        begin_sql = "BEGIN IMMEDIATE" if immediate else "BEGIN"
        self._execute_with_retry(conn, begin_sql, (), operation="begin transaction")
        try:
            yield conn
        except Exception:
            self._execute_with_retry(conn, "ROLLBACK", (), operation="rollback transaction")
            raise
        else:
            self._execute_with_retry(conn, "COMMIT", (), operation="commit transaction")

    def migrate(self) -> int:
        """Apply migrations idempotently and return current schema version."""

        with self.connection() as conn:
            self._execute_with_retry(
                conn, _SCHEMA_VERSIONS_TABLE_SQL, (), operation="create schema_versions table"
            )
            applied = self._load_applied_migrations(conn)
            current_version = max(applied, default=0)
            if current_version > STATE_DB_SCHEMA_VERSION:
                raise StateDBMigrationError(
                    "database schema is newer than supported by this runtime "
                    f"(db={current_version}, code={STATE_DB_SCHEMA_VERSION})"
                )

            for migration in _MIGRATIONS:
                if migration.version > STATE_DB_SCHEMA_VERSION:
                    continue

                record = applied.get(migration.version)
                if record is not None:
                    if record.checksum != migration.checksum:
                        raise StateDBMigrationError(
                            "migration checksum mismatch for version "
                            f"{migration.version}: db={record.checksum} code={migration.checksum}"
                        )
                    continue

                with self.transaction(conn=conn, immediate=True) as tx:
                    if self._is_recorded(tx, migration.version):
                        continue
                    for statement in migration.statements:
                        self._execute_with_retry(
                            tx, statement, (), operation=f"apply migration {migration.version}"
                        )
                    self._execute_with_retry(
                        tx,
                        """
                        INSERT INTO schema_versions (version, name, checksum, applied_at)
                        VALUES (?, ?, ?, ?)
                        """,
                        (migration.version, migration.name, migration.checksum, utc_now_iso()),
                        operation=f"record migration {migration.version}",
                    )

            return self.schema_version(conn=conn)

    def schema_version(self, *, conn: sqlite3.Connection | None = None) -> int:
        row = self.query_one(
            "SELECT COALESCE(MAX(version), 0) AS version FROM schema_versions",
            conn=conn,
        )
        if row is None:
            return 0
        value = row["version"]
        if not isinstance(value, int):
            raise StateDBMigrationError("schema_versions.version must be an integer")
        return value

    def execute(
        self,
        sql: str,
        params: SQLParams = (),
        *,
        conn: sqlite3.Connection | None = None,
    ) -> int:
        """Execute a parameterized statement and return affected row count."""

        if conn is not None:
            cursor = self._execute_with_retry(conn, sql, params, operation="execute statement")
            return cursor.rowcount

        with self.transaction(immediate=True) as tx:
            cursor = self._execute_with_retry(tx, sql, params, operation="execute statement")
            return cursor.rowcount

    def insert(
        self,
        sql: str,
        params: SQLParams = (),
        *,
        conn: sqlite3.Connection | None = None,
    ) -> int:
        """Execute an INSERT and return the new row id."""

        if conn is not None:
            cursor = self._execute_with_retry(conn, sql, params, operation="insert row")
            return int(cursor.lastrowid or 0)

        with self.transaction(immediate=True) as tx:
            cursor = self._execute_with_retry(tx, sql, params, operation="insert row")
            return int(cursor.lastrowid or 0)

    def query_all(
        self,
        sql: str,
        params: SQLParams = (),
        *,
        conn: sqlite3.Connection | None = None,
    ) -> list[dict[str, RowValue]]:
        """Run a query and return rows as typed dictionaries."""

        if conn is not None:
            cursor = self._execute_with_retry(conn, sql, params, operation="query all")
            return [dict(row) for row in cursor.fetchall()]

        with self.connection() as owned_conn:
            cursor = self._execute_with_retry(owned_conn, sql, params, operation="query all")
            return [dict(row) for row in cursor.fetchall()]

    def query_one(
        self,
        sql: str,
        params: SQLParams = (),
        *,
        conn: sqlite3.Connection | None = None,
    ) -> dict[str, RowValue] | None:
        """Run a query and return the first row as a typed dictionary."""

        if conn is not None:
            cursor = self._execute_with_retry(conn, sql, params, operation="query one")
            row = cursor.fetchone()
            return None if row is None else dict(row)

        with self.connection() as owned_conn:
            cursor = self._execute_with_retry(owned_conn, sql, params, operation="query one")
            row = cursor.fetchone()
            return None if row is None else dict(row)

    def _configure_connection(self, conn: sqlite3.Connection) -> None:
        conn.execute("PRAGMA foreign_keys=ON")
        conn.execute(f"PRAGMA busy_timeout={self._busy_timeout_ms}")
        journal_row = conn.execute("PRAGMA journal_mode=WAL").fetchone()
        if journal_row is None:
            raise StateDBError("failed to configure journal_mode")

    def _is_recorded(self, conn: sqlite3.Connection, version: int) -> bool:
        row = self._execute_with_retry(
            conn,
            "SELECT 1 FROM schema_versions WHERE version = ?",
            (version,),
            operation="check migration",
        ).fetchone()
        return row is not None

    def _load_applied_migrations(self, conn: sqlite3.Connection) -> dict[int, MigrationRecord]:
        cursor = self._execute_with_retry(
            conn,
            "SELECT version, name, checksum, applied_at FROM schema_versions ORDER BY version ASC",
            (),
            operation="load schema_versions",
        )
        return {
            row["version"]: MigrationRecord(
                version=row["version"],
                name=row["name"],
                checksum=row["checksum"],
                applied_at=row["applied_at"],
            )
            for row in cursor.fetchall()
        }

    def _execute_with_retry(
        self,
        conn: sqlite3.Connection,
        sql: str,
        params: SQLParams,
        *,
        operation: str,
    ) -> sqlite3.Cursor:
        for attempt in range(self._busy_retry_limit + 1):
            try:
                return conn.execute(sql, tuple(params))
            except sqlite3.IntegrityError:
                raise
            except sqlite3.Error as exc:
                if self._is_busy_error(exc) and attempt < self._busy_retry_limit:
                    time.sleep((self._busy_retry_backoff_ms / 1000.0) * float(2**attempt))
                    continue
                self._raise_actionable_error(exc, operation=operation)
        raise StateDBBusyError(f"{operation} exhausted retries unexpectedly")

    def _is_busy_error(self, exc: sqlite3.Error) -> bool:
        code = getattr(exc, "sqlite_errorcode", None)
        if isinstance(code, int) and code in _SQLITE_BUSY_CODES:
            return True
        message = str(exc).lower()
        return any(fragment in message for fragment in _BUSY_SUBSTRINGS)

    def _raise_actionable_error(self, exc: sqlite3.Error, *, operation: str) -> None:
        message = str(exc).lower()
        if any(fragment in message for fragment in _CORRUPTION_SUBSTRINGS):
            raise StateDBCorruptionError(f"{operation} failed for {self._path}: {exc}") from exc
        if self._is_busy_error(exc):
            raise StateDBBusyError(
                f"{operation} hit SQLITE_BUSY for {self._path} after "
                f"{self._busy_retry_limit + 1} attempt(s): {exc}"
            ) from exc
        raise StateDBError(f"{operation} failed for {self._path}: {exc}") from exc


def utc_now_iso() -> str:
    return datetime.now(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")


__all__ = [
    "DEFAULT_BUSY_RETRY_BACKOFF_MS",
    "DEFAULT_BUSY_RETRY_LIMIT",
    "DEFAULT_BUSY_TIMEOUT_MS",
    "LIFECYCLE_MODES",
    "MigrationRecord",
    "PROPOSAL_STATUSES",
    "RowValue",
    "SQLParams",
    "SQLValue",
    "StateDB",
    "StateDBBusyError",
    "StateDBCorruptionError",
    "StateDBError",
    "StateDBMigrationError",
    "canonical_json",
    "utc_now_iso",
]
