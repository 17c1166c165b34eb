"""DuckDB-backed document store shared by the user and conversation stores.

The service implements the singleton pattern so that only one database
connection exists per process. Store classes never use the root connection
directly from worker threads; they take a cursor per call with
``Database.cursor()``, which DuckDB allows to be used from another thread.

Database Schema:
    users table:
        - id, name, email (unique), password_hash, profile_picture, created_at
    user_connections table:
        - (user_id, contact_id) pairs, stored in both directions
    conversations table:
        - id, participant_a < participant_b (unique pair),
          last_message_id, last_message_at, created_at
    messages table:
        - id, seq (monotonic ordering key), conversation_id, sender_id,
          body, is_read, read_at, created_at

Usage:
    db = Database.get_instance(path=":memory:")
    cursor = db.cursor()
"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Optional, TypeVar

import duckdb

logger = logging.getLogger(__name__)

T = TypeVar("T")


SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS users (
        id VARCHAR PRIMARY KEY,
        name VARCHAR NOT NULL,
        email VARCHAR NOT NULL UNIQUE,
        password_hash VARCHAR NOT NULL DEFAULT '',
        profile_picture VARCHAR NOT NULL DEFAULT '',
        created_at TIMESTAMP NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_connections (
        user_id VARCHAR NOT NULL,
        contact_id VARCHAR NOT NULL,
        PRIMARY KEY (user_id, contact_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS conversations (
        id VARCHAR PRIMARY KEY,
        participant_a VARCHAR NOT NULL,
        participant_b VARCHAR NOT NULL,
        last_message_id VARCHAR,
        last_message_at TIMESTAMP NOT NULL,
        created_at TIMESTAMP NOT NULL,
        UNIQUE (participant_a, participant_b),
        CHECK (participant_a < participant_b)
    )
    """,
    "CREATE SEQUENCE IF NOT EXISTS messages_seq START 1",
    """
    CREATE TABLE IF NOT EXISTS messages (
        id VARCHAR PRIMARY KEY,
        seq BIGINT DEFAULT nextval('messages_seq'),
        conversation_id VARCHAR NOT NULL,
        sender_id VARCHAR NOT NULL,
        body VARCHAR NOT NULL,
        is_read BOOLEAN NOT NULL DEFAULT FALSE,
        read_at TIMESTAMP,
        created_at TIMESTAMP NOT NULL
    )
    """,
]


def utcnow() -> datetime:
    """Current UTC time as a naive datetime (DuckDB TIMESTAMP has no zone)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Database:
    """Singleton owner of the DuckDB connection.

    Attributes:
        _instance: Singleton instance of the service.
        _db_path: Path to the DuckDB database file.
    """

    _instance: Optional["Database"] = None
    _db_path: str = "linkup.duckdb"

    def __init__(self, path: Optional[str] = None) -> None:
        """Open the database and create the schema if it doesn't exist.

        Args:
            path: Path to DuckDB file, or ":memory:". Defaults to "linkup.duckdb".
        """
        if path:
            self._db_path = path
        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        self._initialize_db()

    @classmethod
    def get_instance(cls, path: Optional[str] = None) -> "Database":
        """Get or create the singleton instance.

        Args:
            path: Optional database path (only used on first call).
        """
        if cls._instance is None:
            cls._instance = cls(path)
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Close the connection and clear the singleton (used by tests and shutdown)."""
        if cls._instance is not None:
            cls._instance.close()
            cls._instance = None

    @property
    def path(self) -> str:
        return self._db_path

    def _get_connection(self) -> duckdb.DuckDBPyConnection:
        if self._connection is None:
            self._connection = duckdb.connect(self._db_path)
        return self._connection

    def _initialize_db(self) -> None:
        """Create tables and sequences. Safe to call multiple times."""
        conn = self._get_connection()
        for statement in SCHEMA:
            conn.execute(statement)
        logger.info("Database ready at %s", self._db_path)

    def cursor(self) -> duckdb.DuckDBPyConnection:
        """Return a new cursor on the shared database.

        Each call yields an independent handle, so one may be used per
        worker thread. Callers close it when done.
        """
        return self._get_connection().cursor()

    async def run(self, fn: Callable[..., T], *args: Any) -> T:
        """Run ``fn(cursor, *args)`` in a worker thread on a fresh cursor.

        The event loop stays free while DuckDB works, so a slow query only
        delays the coroutine awaiting it.
        """
        return await asyncio.to_thread(self._run_with_cursor, fn, *args)

    def _run_with_cursor(self, fn: Callable[..., T], *args: Any) -> T:
        cursor = self.cursor()
        try:
            return fn(cursor, *args)
        finally:
            cursor.close()

    def close(self) -> None:
        """Close the database connection."""
        if self._connection is not None:
            self._connection.close()
            self._connection = None
