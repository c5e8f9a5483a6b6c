"""
Database Manager Module - QR Check-In Attendance Protocol

This module handles the SQLite storage behind attendance sessions. It owns
the schema (sessions, rosters, attendance records), a single connection
shared by all threads, and the transaction helper the session registry uses
for its atomic check-then-insert.

Features:
- SQLite connection management (file or in-memory)
- Idempotent schema creation
- Serialized access through a re-entrant lock
- Immediate-mode transactions with automatic rollback
- One record per (session, student) enforced by the schema
"""

import sqlite3
import logging
from contextlib import contextmanager
import threading
import os


class DatabaseManager:
    """
    SQLite access for the check-in protocol.

    All statements run on one connection guarded by a re-entrant lock, so a
    transaction opened by one thread is never interleaved with statements
    from another.
    """

    def __init__(self, db_path):
        """
        Initialize the database manager with the specified database path.

        Args:
            db_path (str): Path to the SQLite database file, or ':memory:'
        """
        self.db_path = str(db_path)
        self.logger = logging.getLogger(__name__)
        self._lock = threading.RLock()
        self._connection = None

        # Ensure database directory exists
        if self.db_path != ':memory:':
            directory = os.path.dirname(self.db_path)
            if directory:
                os.makedirs(directory, exist_ok=True)

        self.initialize_database()

    def _connect(self):
        connection = sqlite3.connect(
            self.db_path,
            check_same_thread=False,
            timeout=30.0,
            isolation_level=None  # transactions are opened explicitly
        )
        connection.row_factory = sqlite3.Row
        connection.execute("PRAGMA foreign_keys = ON")
        if self.db_path != ':memory:':
            connection.execute("PRAGMA journal_mode = WAL")
        return connection

    @contextmanager
    def get_connection(self):
        """
        Context manager giving exclusive use of the shared connection.

        Yields:
            sqlite3.Connection: Database connection object
        """
        with self._lock:
            if self._connection is None:
                self._connection = self._connect()
            yield self._connection

    def initialize_database(self):
        """
        Create all tables and indexes. Safe to call repeatedly.
        """
        try:
            with self.transaction() as conn:
                cursor = conn.cursor()

                # One row per attendance session of a class on a date
                cursor.execute("""
                    CREATE TABLE IF NOT EXISTS attendance_sessions (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        class_id VARCHAR(50) NOT NULL,
                        date_key VARCHAR(20) NOT NULL,
                        state VARCHAR(20) NOT NULL DEFAULT 'created',
                        enrolled_count INTEGER NOT NULL DEFAULT 0,
                        started_by VARCHAR(50),
                        started_at_ms INTEGER,
                        ended_at_ms INTEGER,
                        cleared_at_ms INTEGER,
                        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                    )
                """)

                # Roster snapshot taken when the session starts
                cursor.execute("""
                    CREATE TABLE IF NOT EXISTS session_roster (
                        session_id INTEGER NOT NULL,
                        subject_id VARCHAR(50) NOT NULL,
                        PRIMARY KEY (session_id, subject_id),
                        FOREIGN KEY (session_id) REFERENCES attendance_sessions(id)
                    )
                """)

                cursor.execute("""
                    CREATE TABLE IF NOT EXISTS attendance_records (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        session_id INTEGER NOT NULL,
                        subject_id VARCHAR(50) NOT NULL,
                        status VARCHAR(20) NOT NULL DEFAULT 'present',
                        checked_in BOOLEAN NOT NULL DEFAULT 1,
                        marked_at_ms INTEGER NOT NULL,
                        marked_by VARCHAR(50),
                        notes TEXT,
                        updated_by VARCHAR(50),
                        updated_at_ms INTEGER,
                        FOREIGN KEY (session_id) REFERENCES attendance_sessions(id),
                        UNIQUE(session_id, subject_id)
                    )
                """)

                cursor.execute("CREATE INDEX IF NOT EXISTS idx_sessions_class ON attendance_sessions(class_id, state)")
                cursor.execute("""
                    CREATE UNIQUE INDEX IF NOT EXISTS idx_sessions_one_active
                    ON attendance_sessions(class_id, date_key) WHERE state = 'active'
                """)
                cursor.execute("CREATE INDEX IF NOT EXISTS idx_records_session ON attendance_records(session_id)")

            self.logger.info("Database initialized successfully")

        except Exception as e:
            self.logger.error(f"Failed to initialize database: {str(e)}")
            raise

    def execute_query(self, query, params=None, fetch_all=True):
        """
        Execute a SELECT query and return results.

        Args:
            query (str): SQL query string
            params (tuple): Query parameters
            fetch_all (bool): Whether to fetch all results or just one

        Returns:
            list or dict: Query results
        """
        try:
            with self.get_connection() as conn:
                cursor = conn.execute(query, params or ())

                if fetch_all:
                    return [dict(row) for row in cursor.fetchall()]
                result = cursor.fetchone()
                return dict(result) if result else None

        except Exception as e:
            self.logger.error(f"Query execution failed: {str(e)}")
            raise

    @contextmanager
    def transaction(self):
        """
        Run a block inside ``BEGIN IMMEDIATE`` ... ``COMMIT``.

        The write lock is taken up front, so a read inside the block cannot be
        invalidated by another writer before the block's own write.

        Yields:
            sqlite3.Connection: Database connection within transaction
        """
        with self.get_connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
                conn.execute("COMMIT")
            except BaseException as e:
                conn.execute("ROLLBACK")
                self.logger.debug(f"Transaction rolled back: {e!r}")
                raise

    def close(self):
        """Close the shared connection."""
        with self._lock:
            if self._connection is not None:
                try:
                    self._connection.close()
                except sqlite3.Error as e:
                    self.logger.error(f"Error closing connection: {str(e)}")
                self._connection = None
