"""
Database Connection Layer

Supports SQLite (dev) and PostgreSQL (production) with automatic schema creation.

All financial mutations in this package are single conditional statements
(or short transactions built from them), so the database is what serializes
concurrent billing workers, not the Python process.
"""

import os
import sqlite3
from contextlib import contextmanager
from typing import Optional, Generator, Any, Dict, List
from datetime import datetime, timezone
import threading
import structlog

logger = structlog.get_logger()

# Schema version for migrations
SCHEMA_VERSION = 1

SCHEMA_SQL = """
-- Prepaid balances
CREATE TABLE IF NOT EXISTS wallets (
    user_id TEXT PRIMARY KEY,
    balance_micros INTEGER NOT NULL DEFAULT 0 CHECK (balance_micros >= 0),
    updated_at TEXT NOT NULL
);

-- Every balance change, written with the change itself
CREATE TABLE IF NOT EXISTS wallet_transactions (
    txn_id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    kind TEXT NOT NULL,
    amount_micros INTEGER NOT NULL,
    balance_after INTEGER NOT NULL,
    reference TEXT,
    created_at TEXT NOT NULL
);

-- Metered calls
CREATE TABLE IF NOT EXISTS calls (
    call_id TEXT PRIMARY KEY,
    caller_id TEXT NOT NULL,
    callee_id TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'ringing',
    started_at TEXT,
    last_billed_at TEXT,
    seconds_used INTEGER NOT NULL DEFAULT 0 CHECK (seconds_used >= 0),
    amount_charged_micros INTEGER NOT NULL DEFAULT 0 CHECK (amount_charged_micros >= 0),
    rate_micros_per_second INTEGER NOT NULL CHECK (rate_micros_per_second > 0),
    free_until TEXT,
    created_at TEXT NOT NULL,
    ended_at TEXT,
    end_reason TEXT
);

-- Billed units (the audit trail of record, append-only)
CREATE TABLE IF NOT EXISTS ledger_entries (
    entry_id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    call_id TEXT NOT NULL,
    seconds_billed INTEGER NOT NULL,
    amount_micros INTEGER NOT NULL,
    created_at TEXT NOT NULL,
    FOREIGN KEY (call_id) REFERENCES calls(call_id)
);

-- Debits whose ledger commit failed
CREATE TABLE IF NOT EXISTS reconciliation_flags (
    flag_id TEXT PRIMARY KEY,
    call_id TEXT NOT NULL,
    user_id TEXT NOT NULL,
    amount_micros INTEGER NOT NULL,
    error TEXT,
    created_at TEXT NOT NULL,
    resolved INTEGER NOT NULL DEFAULT 0
);

-- Schema version tracking
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at TEXT NOT NULL
);

-- Indexes for performance
CREATE INDEX IF NOT EXISTS idx_calls_billable ON calls(status, last_billed_at);
CREATE INDEX IF NOT EXISTS idx_calls_caller ON calls(caller_id);
CREATE INDEX IF NOT EXISTS idx_ledger_call ON ledger_entries(call_id);
CREATE INDEX IF NOT EXISTS idx_ledger_user ON ledger_entries(user_id);
CREATE INDEX IF NOT EXISTS idx_wallet_txn_user ON wallet_transactions(user_id);
CREATE INDEX IF NOT EXISTS idx_wallet_txn_reference ON wallet_transactions(reference);
CREATE INDEX IF NOT EXISTS idx_flags_resolved ON reconciliation_flags(resolved);
"""

POSTGRES_SCHEMA_SQL = """
-- Prepaid balances
CREATE TABLE IF NOT EXISTS wallets (
    user_id TEXT PRIMARY KEY,
    balance_micros BIGINT NOT NULL DEFAULT 0 CHECK (balance_micros >= 0),
    updated_at TIMESTAMPTZ NOT NULL
);

-- Balance changes
CREATE TABLE IF NOT EXISTS wallet_transactions (
    txn_id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    kind TEXT NOT NULL,
    amount_micros BIGINT NOT NULL,
    balance_after BIGINT NOT NULL,
    reference TEXT,
    created_at TIMESTAMPTZ NOT NULL
);

-- Metered calls
CREATE TABLE IF NOT EXISTS calls (
    call_id TEXT PRIMARY KEY,
    caller_id TEXT NOT NULL,
    callee_id TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'ringing',
    started_at TIMESTAMPTZ,
    last_billed_at TIMESTAMPTZ,
    seconds_used BIGINT NOT NULL DEFAULT 0 CHECK (seconds_used >= 0),
    amount_charged_micros BIGINT NOT NULL DEFAULT 0 CHECK (amount_charged_micros >= 0),
    rate_micros_per_second BIGINT NOT NULL CHECK (rate_micros_per_second > 0),
    free_until TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL,
    ended_at TIMESTAMPTZ,
    end_reason TEXT
);

-- Ledger
CREATE TABLE IF NOT EXISTS ledger_entries (
    entry_id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    call_id TEXT NOT NULL REFERENCES calls(call_id),
    seconds_billed INTEGER NOT NULL,
    amount_micros BIGINT NOT NULL,
    created_at TIMESTAMPTZ NOT NULL
);

-- Reconciliation flags
CREATE TABLE IF NOT EXISTS reconciliation_flags (
    flag_id TEXT PRIMARY KEY,
    call_id TEXT NOT NULL,
    user_id TEXT NOT NULL,
    amount_micros BIGINT NOT NULL,
    error TEXT,
    created_at TIMESTAMPTZ NOT NULL,
    resolved BOOLEAN NOT NULL DEFAULT FALSE
);

-- Schema version
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at TIMESTAMPTZ NOT NULL
);

-- Indexes
CREATE INDEX IF NOT EXISTS idx_calls_billable ON calls(status, last_billed_at);
CREATE INDEX IF NOT EXISTS idx_calls_caller ON calls(caller_id);
CREATE INDEX IF NOT EXISTS idx_ledger_call ON ledger_entries(call_id);
CREATE INDEX IF NOT EXISTS idx_ledger_user ON ledger_entries(user_id);
CREATE INDEX IF NOT EXISTS idx_wallet_txn_user ON wallet_transactions(user_id);
CREATE INDEX IF NOT EXISTS idx_wallet_txn_reference ON wallet_transactions(reference);
CREATE INDEX IF NOT EXISTS idx_flags_resolved ON reconciliation_flags(resolved);
"""


class Transaction:
    """
    A unit of work on one connection.

    Statements run through it commit or roll back together when the
    enclosing ``Database.transaction()`` block exits.
    """

    def __init__(self, conn: Any, is_postgres: bool):
        self._conn = conn
        self._is_postgres = is_postgres

    def _cursor(self, query: str, params: tuple) -> Any:
        if self._is_postgres:
            cursor = self._conn.cursor()
            cursor.execute(query.replace("?", "%s"), params)
            return cursor
        return self._conn.execute(query, params)

    def execute(self, query: str, params: tuple = ()) -> List[Dict[str, Any]]:
        """Execute a statement and return any result rows as dicts."""
        cursor = self._cursor(query, params)
        if cursor.description:
            return [dict(row) for row in cursor.fetchall()]
        return []

    def execute_update(self, query: str, params: tuple = ()) -> int:
        """Execute a write and return the number of affected rows."""
        return self._cursor(query, params).rowcount


class Database:
    """
    Database connection manager with SQLite and PostgreSQL support.

    Usage:
        db = Database()  # Uses DATABASE_URL env or defaults to SQLite
        with db.transaction() as tx:
            tx.execute("SELECT * FROM calls")
    """

    _instance: Optional["Database"] = None
    _lock = threading.Lock()

    def __init__(self, database_url: Optional[str] = None):
        self.database_url = database_url or os.environ.get(
            "DATABASE_URL",
            "sqlite:///callmeter.db"
        )
        self.is_postgres = self.database_url.startswith("postgres")
        self._local = threading.local()
        self._initialized = False

    @classmethod
    def get_instance(cls, database_url: Optional[str] = None) -> "Database":
        """Get singleton database instance."""
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = cls(database_url)
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Drop the singleton (used when the configured URL changes)."""
        with cls._lock:
            if cls._instance is not None:
                cls._instance.close()
            cls._instance = None

    def _get_sqlite_path(self) -> str:
        """Extract SQLite file path from URL."""
        if self.database_url.startswith("sqlite:///"):
            return self.database_url[10:]
        return "callmeter.db"

    @contextmanager
    def connection(self) -> Generator[Any, None, None]:
        """Get a database connection (thread-safe)."""
        if self.is_postgres:
            with self._postgres_connection() as conn:
                yield conn
        else:
            with self._sqlite_connection() as conn:
                yield conn

    @contextmanager
    def _sqlite_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """SQLite connection with WAL mode for concurrency."""
        if not hasattr(self._local, 'conn') or self._local.conn is None:
            db_path = self._get_sqlite_path()
            self._local.conn = sqlite3.connect(
                db_path,
                check_same_thread=False,
                timeout=30.0,
            )
            self._local.conn.row_factory = sqlite3.Row
            # Enable WAL mode for better concurrency
            self._local.conn.execute("PRAGMA journal_mode=WAL")
            self._local.conn.execute("PRAGMA synchronous=NORMAL")
            self._local.conn.execute("PRAGMA foreign_keys=ON")

        try:
            yield self._local.conn
            self._local.conn.commit()
        except Exception:
            self._local.conn.rollback()
            raise

    @contextmanager
    def _postgres_connection(self) -> Generator[Any, None, None]:
        """PostgreSQL connection, one per unit of work."""
        try:
            import psycopg2
            from psycopg2.extras import RealDictCursor
        except ImportError:
            raise ImportError("psycopg2 required for PostgreSQL. Install with: pip install psycopg2-binary")

        conn = psycopg2.connect(self.database_url, cursor_factory=RealDictCursor)
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Generator[Transaction, None, None]:
        """Run several statements as one atomic unit."""
        with self.connection() as conn:
            yield Transaction(conn, self.is_postgres)

    def initialize(self) -> None:
        """Initialize database schema."""
        if self._initialized:
            return

        with self._lock:
            if self._initialized:
                return

            schema = POSTGRES_SCHEMA_SQL if self.is_postgres else SCHEMA_SQL

            with self.connection() as conn:
                now = datetime.now(timezone.utc).isoformat()
                if self.is_postgres:
                    cursor = conn.cursor()
                    cursor.execute(schema)
                    cursor.execute(
                        "INSERT INTO schema_version (version, applied_at) VALUES (%s, %s) ON CONFLICT (version) DO NOTHING",
                        (SCHEMA_VERSION, now)
                    )
                else:
                    conn.executescript(schema)
                    conn.execute(
                        "INSERT OR IGNORE INTO schema_version (version, applied_at) VALUES (?, ?)",
                        (SCHEMA_VERSION, now)
                    )

            self._initialized = True
            logger.info("database_initialized", url=self.database_url[:20] + "...", is_postgres=self.is_postgres)

    def execute(self, query: str, params: tuple = ()) -> List[Dict[str, Any]]:
        """Execute a query and return results as list of dicts."""
        with self.transaction() as tx:
            return tx.execute(query, params)

    def execute_update(self, query: str, params: tuple = ()) -> int:
        """Execute a single write and return the affected row count."""
        with self.transaction() as tx:
            return tx.execute_update(query, params)

    def ping(self) -> bool:
        """Readiness probe for the health endpoint."""
        try:
            self.execute("SELECT 1 AS ok")
            return True
        except Exception as e:
            logger.warning("database_ping_failed", error=str(e))
            return False

    def close(self) -> None:
        """Close database connections."""
        if hasattr(self._local, 'conn') and self._local.conn:
            self._local.conn.close()
            self._local.conn = None


def get_database(database_url: Optional[str] = None) -> Database:
    """Get the database singleton instance."""
    db = Database.get_instance(database_url)
    db.initialize()
    return db
