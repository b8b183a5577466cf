"""DuckDB-backed document store shared by every Teamwork component.

The store is the only shared mutable resource of the process. All state
transitions that must be atomic (claiming an assignment, taking pending queue
items, bumping an unread counter) are written as a single conditional
``UPDATE ... RETURNING`` or ``INSERT ... ON CONFLICT`` statement, so two
callers racing on the same rows always observe a single winner.

Database Schema:
    presence            user_id PK, last_seen (epoch seconds)
    messages            id (sequence), room_id, sender_id, text, created_at
    unread              (user_id, room_id) PK, unread_count
    sorter_queue        value PK, seq (sequence), status, created_at,
                        assigned_at, sent_at
    sorter_assignments  id (sequence), user_id, batch VARCHAR[], status,
                        created_at, sent_at
    users               id PK, name, role, blocked, owner_id, created_at
    sessions            token PK, user_id, created_at

Thread Safety:
    A DuckDB connection is NOT thread-safe. Every statement runs under a
    process-local lock, which also keeps multi-statement helpers from
    interleaving with other callers.

Usage:
    store = Store.get_instance()
    rows = store.fetchall("SELECT user_id FROM presence WHERE last_seen > ?", [cutoff])
"""
import logging
import threading
from contextlib import contextmanager
from typing import Any, Iterable, Iterator, List, Optional, Sequence

import duckdb

logger = logging.getLogger(__name__)

_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS presence (
        user_id   VARCHAR PRIMARY KEY,
        last_seen DOUBLE  NOT NULL
    )
    """,
    "CREATE SEQUENCE IF NOT EXISTS messages_seq START 1",
    """
    CREATE TABLE IF NOT EXISTS messages (
        id         BIGINT  DEFAULT nextval('messages_seq') PRIMARY KEY,
        room_id    VARCHAR NOT NULL,
        sender_id  VARCHAR NOT NULL,
        text       VARCHAR NOT NULL,
        created_at DOUBLE  NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_messages_room ON messages(room_id)",
    """
    CREATE TABLE IF NOT EXISTS unread (
        user_id      VARCHAR NOT NULL,
        room_id      VARCHAR NOT NULL,
        unread_count INTEGER NOT NULL DEFAULT 0,
        PRIMARY KEY (user_id, room_id)
    )
    """,
    "CREATE SEQUENCE IF NOT EXISTS sorter_queue_seq START 1",
    """
    CREATE TABLE IF NOT EXISTS sorter_queue (
        value       VARCHAR PRIMARY KEY,
        seq         BIGINT  NOT NULL DEFAULT nextval('sorter_queue_seq'),
        status      VARCHAR NOT NULL DEFAULT 'pending',
        created_at  DOUBLE  NOT NULL,
        assigned_at DOUBLE,
        sent_at     DOUBLE
    )
    """,
    "CREATE SEQUENCE IF NOT EXISTS sorter_assignments_seq START 1",
    """
    CREATE TABLE IF NOT EXISTS sorter_assignments (
        id         BIGINT    DEFAULT nextval('sorter_assignments_seq') PRIMARY KEY,
        user_id    VARCHAR   NOT NULL,
        batch      VARCHAR[] NOT NULL,
        status     VARCHAR   NOT NULL,
        created_at DOUBLE    NOT NULL,
        sent_at    DOUBLE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS users (
        id         VARCHAR PRIMARY KEY,
        name       VARCHAR NOT NULL,
        role       VARCHAR NOT NULL,
        blocked    BOOLEAN NOT NULL DEFAULT FALSE,
        owner_id   VARCHAR,
        created_at DOUBLE  NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS sessions (
        token      VARCHAR PRIMARY KEY,
        user_id    VARCHAR NOT NULL,
        created_at DOUBLE  NOT NULL
    )
    """,
]


class Store:
    """Singleton wrapper around one DuckDB connection.

    Attributes:
        _instance: Singleton instance of the store.
        _db_path: Path to the DuckDB database file (":memory:" for tests).
    """

    _instance: Optional["Store"] = None
    _db_path: str = "teamwork.duckdb"

    def __init__(self, db_path: Optional[str] = None) -> None:
        if db_path:
            self._db_path = db_path
        self._lock = threading.RLock()
        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        self._initialize_db()
        logger.info("[Store] Initialized with db=%s", self._db_path)

    @classmethod
    def get_instance(cls, db_path: Optional[str] = None) -> "Store":
        """Get or create the singleton instance.

        Args:
            db_path: Optional database path (only used on first call).
        """
        if cls._instance is None:
            cls._instance = cls(db_path)
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Close the connection and forget the singleton (used by tests)."""
        if cls._instance is not None:
            cls._instance.close()
            cls._instance = None

    @property
    def lock(self) -> threading.RLock:
        """Lock guarding the connection; hold it to group statements."""
        return self._lock

    def _get_connection(self) -> duckdb.DuckDBPyConnection:
        if self._connection is None:
            self._connection = duckdb.connect(self._db_path)
        return self._connection

    def _initialize_db(self) -> None:
        with self._lock:
            conn = self._get_connection()
            for statement in _SCHEMA:
                conn.execute(statement)

    def fetchall(self, sql: str, params: Optional[Sequence[Any]] = None) -> List[tuple]:
        """Run one statement and return every result row."""
        with self._lock:
            return self._get_connection().execute(sql, params or []).fetchall()

    def fetchone(self, sql: str, params: Optional[Sequence[Any]] = None) -> Optional[tuple]:
        """Run one statement and return its first row (or None)."""
        with self._lock:
            return self._get_connection().execute(sql, params or []).fetchone()

    def execute(self, sql: str, params: Optional[Sequence[Any]] = None) -> None:
        """Run one statement, discarding any result."""
        with self._lock:
            self._get_connection().execute(sql, params or [])

    def executemany(self, sql: str, rows: Iterable[Sequence[Any]]) -> None:
        """Run one statement once per parameter row."""
        rows = list(rows)
        if not rows:
            return
        with self._lock:
            self._get_connection().executemany(sql, rows)

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """Run the enclosed statements as one transaction.

        Holds the lock for the whole block; any exception rolls back.
        """
        with self._lock:
            conn = self._get_connection()
            conn.execute("BEGIN TRANSACTION")
            try:
                yield
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            if self._connection is not None:
                self._connection.close()
                self._connection = None


def placeholders(count: int) -> str:
    """Return ``?, ?, ...`` for an IN clause of *count* parameters."""
    return ", ".join("?" for _ in range(count))
