"""
Database Module - SQLite-based storage for conversation sessions
================================================================

This module provides the SQLite persistence used by the session store:
- One row per conversation id
- JSON-encoded session payloads
- Thread-local connections so the store can run in worker threads
"""

import sqlite3
import json
from pathlib import Path
from typing import Dict, Any
from contextlib import contextmanager
import threading

from .exceptions import StoreError
from .logging import get_logger

logger = get_logger("core.database")


class Database:
    """
    SQLite database manager for conversation sessions.

    Provides thread-safe database operations with one connection per
    thread and automatic schema creation.

    Attributes:
        db_path (str): Path to SQLite database file
        lock (threading.Lock): Serializes writes across threads
    """

    def __init__(self, db_path: str):
        """
        Initialize database connection.

        Args:
            db_path: Path to SQLite database file

        Raises:
            StoreError: If database cannot be initialized
        """
        self.db_path = db_path
        self.lock = threading.Lock()
        self._local = threading.local()

        Path(db_path).parent.mkdir(parents=True, exist_ok=True)

        self._init_schema()

    def _get_connection(self) -> sqlite3.Connection:
        """
        Get thread-local database connection.

        Returns:
            sqlite3.Connection: Database connection for current thread
        """
        if getattr(self._local, "connection", None) is None:
            self._local.connection = sqlite3.connect(
                self.db_path,
                check_same_thread=False,
                timeout=30.0
            )
            self._local.connection.row_factory = sqlite3.Row
            self._local.connection.execute("PRAGMA journal_mode = WAL")
        return self._local.connection

    @contextmanager
    def transaction(self):
        """
        Context manager for database transactions.

        Provides automatic commit on success and rollback on error.

        Yields:
            sqlite3.Connection: Database connection

        Example:
            with db.transaction() as conn:
                conn.execute("DELETE FROM sessions")
        """
        conn = self._get_connection()
        try:
            yield conn
            conn.commit()
        except Exception as e:
            conn.rollback()
            raise StoreError(f"Transaction failed: {e}", {"path": self.db_path})

    def _init_schema(self) -> None:
        """
        Initialize database schema.

        Raises:
            StoreError: If schema creation fails
        """
        schema_sql = """
        -- Sessions table: one JSON payload per conversation
        CREATE TABLE IF NOT EXISTS sessions (
            session_id TEXT PRIMARY KEY,
            payload TEXT NOT NULL,
            updated_at DATETIME DEFAULT CURRENT_TIMESTAMP
        );
        """

        try:
            with self.transaction() as conn:
                conn.executescript(schema_sql)
        except sqlite3.Error as e:
            raise StoreError(f"Failed to initialize database schema: {e}")

    # === Session Operations ===

    def get_session(self, session_id: str) -> Dict[str, Any]:
        """
        Load a stored session payload.

        Args:
            session_id: Conversation id

        Returns:
            The decoded payload, or an empty dict when nothing is stored

        Raises:
            StoreError: If the read fails or the payload is corrupt
        """
        try:
            conn = self._get_connection()
            row = conn.execute(
                "SELECT payload FROM sessions WHERE session_id = ?",
                (session_id,)
            ).fetchone()
        except sqlite3.Error as e:
            raise StoreError(f"Failed to load session: {e}", {"session_id": session_id})

        if row is None:
            return {}

        try:
            return json.loads(row["payload"])
        except ValueError as e:
            raise StoreError(f"Corrupt session payload: {e}", {"session_id": session_id})

    def set_session(self, session_id: str, payload: Dict[str, Any]) -> None:
        """
        Insert or replace a session payload.

        Args:
            session_id: Conversation id
            payload: JSON-serializable session data

        Raises:
            StoreError: If the payload cannot be encoded or written
        """
        try:
            encoded = json.dumps(payload, ensure_ascii=False)
        except (TypeError, ValueError) as e:
            raise StoreError(f"Session is not JSON serializable: {e}", {"session_id": session_id})

        with self.lock:
            with self.transaction() as conn:
                conn.execute(
                    """
                    INSERT INTO sessions (session_id, payload, updated_at)
                    VALUES (?, ?, CURRENT_TIMESTAMP)
                    ON CONFLICT(session_id) DO UPDATE SET
                        payload = excluded.payload,
                        updated_at = CURRENT_TIMESTAMP
                    """,
                    (session_id, encoded)
                )

    def delete_session(self, session_id: str) -> None:
        """Remove a stored session. Missing sessions are ignored."""
        with self.lock:
            with self.transaction() as conn:
                conn.execute("DELETE FROM sessions WHERE session_id = ?", (session_id,))

    def close(self) -> None:
        """Close database connection for current thread."""
        if getattr(self._local, "connection", None):
            self._local.connection.close()
            self._local.connection = None


def init_database(db_path: str) -> Database:
    """
    Initialize and return a database instance.

    Args:
        db_path: Path to SQLite database file

    Returns:
        Database instance
    """
    return Database(db_path)
