"""
Database Connection Layer

SQLite (dev) and PostgreSQL (production) behind one small API:

- execute() / execute_many(): run a statement, commit when it finishes
- transaction(): unit of work; every statement issued on this thread inside
  the block shares one connection and commits once at the end

A transaction takes the database write lock when it opens (BEGIN IMMEDIATE
on SQLite, an advisory lock on PostgreSQL). Writers in other threads or
processes queue behind it, so a read-modify-write of a ledger row and the
append of its fact can never interleave with another writer.

Queries are written with '?' placeholders and rewritten for PostgreSQL.
"""

import os
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Generator, List, Optional
import structlog

logger = structlog.get_logger()

SCHEMA_VERSION = 2

DEFAULT_URL = "sqlite:///settlement_rail.db"

# Arbitrary key for pg_advisory_xact_lock; one writer lock per database
WRITE_LOCK_KEY = 7_307_114

# Amounts can reach 2**256 - 1, beyond any native integer column,
# so they are stored as decimal strings.
SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS usage_ledger (
    entity_id TEXT PRIMARY KEY,
    primary_accumulated TEXT NOT NULL DEFAULT '0',
    secondary_accumulated TEXT NOT NULL DEFAULT '0',
    max_reported_epoch INTEGER NOT NULL DEFAULT 0,
    last_primary_settled_epoch INTEGER NOT NULL DEFAULT 0,
    last_secondary_settled_epoch INTEGER NOT NULL DEFAULT 0,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS ledger_facts (
    fact_id TEXT PRIMARY KEY,
    sequence INTEGER NOT NULL UNIQUE,
    fact_type TEXT NOT NULL,
    entity_id TEXT,
    payload TEXT NOT NULL,  -- JSON object
    timestamp TEXT NOT NULL,
    prev_hash TEXT NOT NULL,
    fact_hash TEXT NOT NULL,
    signature TEXT,
    key_id TEXT
);

-- Administrator-controlled values (rates, role holders)
CREATE TABLE IF NOT EXISTS ledger_settings (
    name TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_facts_entity ON ledger_facts(entity_id);
CREATE INDEX IF NOT EXISTS idx_facts_type ON ledger_facts(fact_type);
"""

# Fact timestamps stay TEXT: they are part of the signed payload and must
# read back byte-for-byte whatever the session time zone.
POSTGRES_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS usage_ledger (
    entity_id TEXT PRIMARY KEY,
    primary_accumulated NUMERIC(78, 0) NOT NULL DEFAULT 0,
    secondary_accumulated NUMERIC(78, 0) NOT NULL DEFAULT 0,
    max_reported_epoch BIGINT NOT NULL DEFAULT 0,
    last_primary_settled_epoch BIGINT NOT NULL DEFAULT 0,
    last_secondary_settled_epoch BIGINT NOT NULL DEFAULT 0,
    updated_at TIMESTAMPTZ NOT NULL
);

CREATE TABLE IF NOT EXISTS ledger_facts (
    fact_id TEXT PRIMARY KEY,
    sequence BIGINT NOT NULL UNIQUE,
    fact_type TEXT NOT NULL,
    entity_id TEXT,
    payload TEXT NOT NULL,
    timestamp TEXT NOT NULL,
    prev_hash TEXT NOT NULL,
    fact_hash TEXT NOT NULL,
    signature TEXT,
    key_id TEXT
);

CREATE TABLE IF NOT EXISTS ledger_settings (
    name TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL
);

CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at TIMESTAMPTZ NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_facts_entity ON ledger_facts(entity_id);
CREATE INDEX IF NOT EXISTS idx_facts_type ON ledger_facts(fact_type);
"""


class Database:
    """
    Database connection manager with SQLite and PostgreSQL support.

    Usage:
        db = Database("sqlite:///ledger.db")
        db.initialize()
        with db.transaction():
            db.execute("SELECT * FROM usage_ledger WHERE entity_id = ?", ("ds-1",))
            db.execute_many(UPSERT_SQL, rows)
    """

    def __init__(self, database_url: Optional[str] = None):
        self.database_url = database_url or os.environ.get("DATABASE_URL", DEFAULT_URL)
        self.is_postgres = self.database_url.startswith("postgres")
        self._local = threading.local()
        self._init_lock = threading.Lock()
        self._initialized = False

    def _get_sqlite_path(self) -> str:
        if self.database_url.startswith("sqlite:///"):
            return self.database_url[10:]
        return "settlement_rail.db"

    def _sql(self, query: str) -> str:
        return query.replace("?", "%s") if self.is_postgres else query

    @property
    def in_transaction(self) -> bool:
        return getattr(self._local, "tx", None) is not None

    def _sqlite_conn(self) -> sqlite3.Connection:
        """Per-thread SQLite connection in WAL mode."""
        conn = getattr(self._local, "conn", None)
        if conn is None:
            conn = sqlite3.connect(
                self._get_sqlite_path(),
                check_same_thread=False,
                timeout=30.0,
            )
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")
            self._local.conn = conn
        return conn

    @contextmanager
    def _connect(self) -> Generator[Any, None, None]:
        """Open a connection; commit on success, roll back on error."""
        if self.is_postgres:
            import psycopg2
            from psycopg2.extras import RealDictCursor

            conn = psycopg2.connect(self.database_url, cursor_factory=RealDictCursor)
            try:
                yield conn
                conn.commit()
            except Exception:
                conn.rollback()
                raise
            finally:
                conn.close()
        else:
            conn = self._sqlite_conn()
            try:
                yield conn
                conn.commit()
            except Exception:
                conn.rollback()
                raise

    @contextmanager
    def connection(self) -> Generator[Any, None, None]:
        """The open transaction's connection, or a fresh autocommitting one."""
        if self.in_transaction:
            yield self._local.tx
        else:
            with self._connect() as conn:
                yield conn

    @contextmanager
    def transaction(self) -> Generator[Any, None, None]:
        """
        Unit of work holding the write lock.

        Nested calls join the outer transaction; only the outermost block
        commits or rolls back.
        """
        if self.in_transaction:
            yield self._local.tx
            return

        with self._connect() as conn:
            if self.is_postgres:
                conn.cursor().execute("SELECT pg_advisory_xact_lock(%s)", (WRITE_LOCK_KEY,))
            else:
                conn.execute("BEGIN IMMEDIATE")
            self._local.tx = conn
            try:
                yield conn
            finally:
                self._local.tx = None

    def initialize(self) -> None:
        """Create the schema if needed."""
        if self._initialized:
            return

        with self._init_lock:
            if self._initialized:
                return

            schema = POSTGRES_SCHEMA_SQL if self.is_postgres else SCHEMA_SQL
            now = datetime.now(timezone.utc).isoformat()

            with self._connect() as conn:
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
        with self.connection() as conn:
            if self.is_postgres:
                cursor = conn.cursor()
                cursor.execute(self._sql(query), params)
            else:
                cursor = conn.execute(query, params)
            if cursor.description:
                return [dict(row) for row in cursor.fetchall()]
            return []

    def execute_many(self, query: str, params_list: List[tuple]) -> int:
        """Execute a query with multiple parameter sets in one transaction."""
        with self.connection() as conn:
            if self.is_postgres:
                cursor = conn.cursor()
                cursor.executemany(self._sql(query), params_list)
            else:
                cursor = conn.executemany(query, params_list)
            return cursor.rowcount

    def close(self) -> None:
        """Close this thread's SQLite connection."""
        conn = getattr(self._local, "conn", None)
        if conn is not None:
            conn.close()
            self._local.conn = None
