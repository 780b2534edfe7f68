"""
MedRefer local database.

Owns the SQLite connection, the schema and its migrations.
"""

from __future__ import annotations

import sqlite3
import threading
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from medrefer.core.errors import PersistenceError
from medrefer.core.logging import OperationLogger, get_logger

logger = get_logger(__name__)

DEFAULT_BUSY_TIMEOUT_MS = 30000

_SCHEMA_V1: tuple[str, ...] = (
    """
    CREATE TABLE IF NOT EXISTS patients (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        age INTEGER NOT NULL,
        medical_record_number TEXT UNIQUE NOT NULL,
        date_of_birth TEXT NOT NULL,
        gender TEXT NOT NULL,
        blood_type TEXT,
        phone TEXT,
        email TEXT,
        address TEXT,
        insurance TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS specialists (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        credentials TEXT,
        specialty TEXT NOT NULL,
        hospital TEXT NOT NULL,
        is_available INTEGER DEFAULT 1,
        rating REAL DEFAULT 0.0,
        languages TEXT,
        insurance TEXT,
        hospital_network TEXT,
        success_rate REAL DEFAULT 0.0,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS referrals (
        id TEXT PRIMARY KEY,
        tracking_number TEXT UNIQUE NOT NULL,
        patient_id TEXT NOT NULL,
        specialist_id TEXT,
        status TEXT NOT NULL DEFAULT 'Pending',
        urgency TEXT NOT NULL,
        symptoms_description TEXT,
        ai_confidence REAL DEFAULT 0.0,
        department TEXT,
        referring_physician TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        FOREIGN KEY (patient_id) REFERENCES patients (id) ON DELETE CASCADE,
        FOREIGN KEY (specialist_id) REFERENCES specialists (id) ON DELETE SET NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS appointments (
        id TEXT PRIMARY KEY,
        patient_id TEXT NOT NULL,
        specialist_id TEXT,
        referral_id TEXT,
        appointment_date TEXT,
        status TEXT NOT NULL DEFAULT 'scheduled',
        reason TEXT,
        type TEXT,
        duration_minutes INTEGER,
        location TEXT,
        notes TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        FOREIGN KEY (patient_id) REFERENCES patients (id) ON DELETE CASCADE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS payments (
        id TEXT PRIMARY KEY,
        patient_id TEXT NOT NULL,
        referral_id TEXT,
        appointment_id TEXT,
        amount REAL NOT NULL,
        currency TEXT NOT NULL DEFAULT 'KES',
        payment_method TEXT,
        status TEXT NOT NULL DEFAULT 'pending',
        transaction_id TEXT,
        payment_date TEXT,
        description TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS cart_items (
        id TEXT PRIMARY KEY,
        drug_id TEXT UNIQUE NOT NULL,
        name TEXT NOT NULL,
        quantity INTEGER NOT NULL DEFAULT 1,
        unit_price REAL NOT NULL DEFAULT 0.0,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS clinical_decisions (
        id TEXT PRIMARY KEY,
        patient_id TEXT NOT NULL,
        specialist_id TEXT NOT NULL,
        condition_id TEXT,
        decision_type TEXT NOT NULL,
        title TEXT NOT NULL,
        description TEXT,
        rationale TEXT,
        confidence TEXT,
        evidence TEXT,
        recommendations TEXT,
        contraindications TEXT,
        status TEXT NOT NULL DEFAULT 'pending',
        priority TEXT NOT NULL DEFAULT 'medium',
        reviewed_at TEXT,
        reviewed_by TEXT,
        review_notes TEXT,
        metadata TEXT,
        is_active INTEGER DEFAULT 1,
        expires_at TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS quality_metrics (
        id TEXT PRIMARY KEY,
        metric_type TEXT NOT NULL,
        title TEXT NOT NULL,
        description TEXT,
        category TEXT NOT NULL,
        measurement TEXT,
        target_value REAL NOT NULL DEFAULT 0.0,
        current_value REAL NOT NULL DEFAULT 0.0,
        unit TEXT,
        period TEXT,
        measurement_date TEXT NOT NULL,
        department_id TEXT,
        specialist_id TEXT,
        facility_id TEXT,
        breakdown TEXT,
        tags TEXT,
        status TEXT,
        notes TEXT,
        is_active INTEGER DEFAULT 1,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
)

_SCHEMA_V2: tuple[str, ...] = (
    """
    CREATE TABLE IF NOT EXISTS sync_queue (
        id TEXT PRIMARY KEY,
        operation_type TEXT NOT NULL,
        entity_type TEXT NOT NULL,
        entity_id TEXT,
        data TEXT NOT NULL,
        priority TEXT NOT NULL DEFAULT 'normal',
        timestamp TEXT NOT NULL,
        retry_count INTEGER DEFAULT 0,
        next_retry_time TEXT,
        status TEXT DEFAULT 'pending',
        error_message TEXT,
        metadata TEXT,
        completed_at TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS sync_history (
        id TEXT PRIMARY KEY,
        status TEXT NOT NULL,
        sync_time TEXT NOT NULL,
        duration_ms INTEGER,
        error_message TEXT,
        metadata TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS conflict_resolutions (
        id TEXT PRIMARY KEY,
        conflict_id TEXT NOT NULL,
        entity_type TEXT NOT NULL,
        entity_id TEXT NOT NULL,
        local_version TEXT NOT NULL,
        remote_version TEXT NOT NULL,
        resolution_strategy TEXT NOT NULL,
        resolved_data TEXT,
        resolved_at TEXT NOT NULL,
        resolved_by TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_sync_queue_status ON sync_queue(status)",
    "CREATE INDEX IF NOT EXISTS idx_sync_queue_timestamp ON sync_queue(timestamp)",
)

_SCHEMA_V3: tuple[str, ...] = (
    """
    CREATE TABLE IF NOT EXISTS security_audit_logs (
        id TEXT PRIMARY KEY,
        timestamp TEXT NOT NULL,
        event_type TEXT NOT NULL,
        user_id TEXT NOT NULL,
        action TEXT NOT NULL,
        resource_id TEXT,
        ip_address TEXT NOT NULL,
        risk_level TEXT NOT NULL,
        metadata TEXT,
        session_id TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_audit_timestamp ON security_audit_logs(timestamp)",
    "CREATE INDEX IF NOT EXISTS idx_audit_user ON security_audit_logs(user_id)",
)

MIGRATIONS: tuple[tuple[int, tuple[str, ...]], ...] = (
    (1, _SCHEMA_V1),
    (2, _SCHEMA_V2),
    (3, _SCHEMA_V3),
)

SCHEMA_VERSION = MIGRATIONS[-1][0]


class Database:
    """Thread-safe wrapper around a single SQLite connection."""

    def __init__(self, connection: sqlite3.Connection, path: Path | None = None) -> None:
        self._connection = connection
        self._lock = threading.RLock()
        self._depth = 0
        self.path = path

    @classmethod
    def open(
        cls,
        path: Path,
        busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS,
        migrate: bool = True,
    ) -> Database:
        """Open (creating if needed) the database file at ``path``."""
        if str(path) == ":memory:":
            return cls.in_memory(migrate=migrate)

        path.parent.mkdir(parents=True, exist_ok=True)
        try:
            connection = sqlite3.connect(
                path,
                check_same_thread=False,
                timeout=max(1.0, busy_timeout_ms / 1000),
            )
            connection.execute("PRAGMA journal_mode=WAL")
            connection.execute("PRAGMA synchronous=NORMAL")
            connection.execute(f"PRAGMA busy_timeout={int(busy_timeout_ms)}")
        except sqlite3.Error as e:
            raise PersistenceError(f"Cannot open database {path}: {e}") from e

        db = cls(cls._configure(connection), path)
        if migrate:
            db.migrate()
        return db

    @classmethod
    def in_memory(cls, migrate: bool = True) -> Database:
        """Open a private in-memory database."""
        connection = sqlite3.connect(":memory:", check_same_thread=False)
        db = cls(cls._configure(connection))
        if migrate:
            db.migrate()
        return db

    @staticmethod
    def _configure(connection: sqlite3.Connection) -> sqlite3.Connection:
        connection.row_factory = sqlite3.Row
        connection.execute("PRAGMA foreign_keys=ON")
        return connection

    @property
    def schema_version(self) -> int:
        with self._lock:
            return int(self._connection.execute("PRAGMA user_version").fetchone()[0])

    def migrate(self) -> int:
        """Apply pending migrations. Returns the resulting schema version."""
        current = self.schema_version
        pending = [(version, stmts) for version, stmts in MIGRATIONS if version > current]
        if not pending:
            return current

        with OperationLogger("schema migration", logger, from_version=current) as op:
            with self.transaction() as conn:
                for version, statements in pending:
                    for statement in statements:
                        conn.execute(statement)
                    conn.execute(f"PRAGMA user_version={int(version)}")
            op.update(to_version=pending[-1][0])

        return pending[-1][0]

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run a block atomically. Nested calls join the outer transaction."""
        with self._lock:
            outer = self._depth == 0
            self._depth += 1
            try:
                yield self._connection
            except Exception:
                if outer:
                    self._connection.rollback()
                raise
            else:
                if outer:
                    self._connection.commit()
            finally:
                self._depth -= 1

    def execute(self, sql: str, params: Sequence[Any] = ()) -> int:
        """Execute a write statement and return the affected row count."""
        try:
            with self.transaction() as conn:
                cursor = conn.execute(sql, tuple(params))
                return cursor.rowcount
        except sqlite3.IntegrityError:
            raise
        except sqlite3.Error as e:
            raise PersistenceError(f"Statement failed: {e}") from e

    def query(self, sql: str, params: Sequence[Any] = ()) -> list[sqlite3.Row]:
        """Run a read query and return all rows."""
        try:
            with self._lock:
                return self._connection.execute(sql, tuple(params)).fetchall()
        except sqlite3.Error as e:
            raise PersistenceError(f"Query failed: {e}") from e

    def query_one(self, sql: str, params: Sequence[Any] = ()) -> sqlite3.Row | None:
        rows = self.query(sql, params)
        return rows[0] if rows else None

    def scalar(self, sql: str, params: Sequence[Any] = ()) -> Any:
        row = self.query_one(sql, params)
        return row[0] if row is not None else None

    def table_exists(self, name: str) -> bool:
        row = self.query_one(
            "SELECT name FROM sqlite_master WHERE type = 'table' AND name = ?",
            (name,),
        )
        return row is not None

    def close(self) -> None:
        with self._lock:
            self._connection.close()
        logger.debug("Database closed", path=str(self.path) if self.path else ":memory:")

    def __enter__(self) -> Database:
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()
