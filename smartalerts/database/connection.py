"""
SQLite database connection and schema management.
"""

import logging
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

from smartalerts.errors import StoreUnavailableError

logger = logging.getLogger(__name__)


class Database:
    """
    SQLite database connection manager.

    The connection is shared by the scheduler, the dispatcher pool and
    user-initiated operations, so every statement runs under one re-entrant
    lock.
    """

    def __init__(self, db_path: str):
        """
        Initialize database connection.

        Args:
            db_path: Path to SQLite database file, or ":memory:" for in-memory DB.
        """
        self.db_path = db_path
        self.lock = threading.RLock()
        self._connection: Optional[sqlite3.Connection] = None
        self._connect()

    def _connect(self) -> None:
        """Establish database connection."""
        if self.db_path != ":memory:":
            # Ensure parent directory exists
            path = Path(self.db_path)
            path.parent.mkdir(parents=True, exist_ok=True)

        self._connection = sqlite3.connect(self.db_path, check_same_thread=False)
        self._connection.row_factory = sqlite3.Row
        self._connection.execute("PRAGMA foreign_keys = ON")

    @property
    def connection(self) -> sqlite3.Connection:
        """Get the database connection."""
        if self._connection is None:
            raise sqlite3.ProgrammingError("Database connection is closed")
        return self._connection

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Cursor]:
        """
        Run statements atomically under the connection lock.

        Raises:
            StoreUnavailableError: If the database cannot be used
        """
        with self.lock:
            try:
                conn = self.connection
            except sqlite3.ProgrammingError as e:
                raise StoreUnavailableError(str(e)) from e
            cursor = conn.cursor()
            try:
                yield cursor
                conn.commit()
            except sqlite3.OperationalError as e:
                conn.rollback()
                raise StoreUnavailableError(str(e)) from e
            except Exception:
                conn.rollback()
                raise

    def initialize(self) -> None:
        """Create database schema if it doesn't exist."""
        with self.transaction() as cursor:
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS users (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    email TEXT,
                    name TEXT,
                    phone TEXT,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS alerts (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id INTEGER NOT NULL,
                    type TEXT NOT NULL,
                    cryptocurrency TEXT NOT NULL,
                    condition TEXT NOT NULL,
                    threshold REAL NOT NULL CHECK (threshold > 0),
                    metadata TEXT NOT NULL DEFAULT '{}',
                    notification_method TEXT NOT NULL,
                    is_active INTEGER NOT NULL DEFAULT 1,
                    is_triggered INTEGER NOT NULL DEFAULT 0,
                    current_value REAL,
                    previous_value REAL,
                    last_checked TIMESTAMP,
                    triggered_at TIMESTAMP,
                    notified_at TIMESTAMP,
                    pending_since TIMESTAMP,
                    message TEXT,
                    version INTEGER NOT NULL DEFAULT 0,
                    created_at TIMESTAMP NOT NULL,
                    updated_at TIMESTAMP NOT NULL,
                    FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS notification_preferences (
                    user_id INTEGER PRIMARY KEY,
                    data TEXT NOT NULL,
                    updated_at TIMESTAMP NOT NULL,
                    FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
                )
            """)

            # alert_id is deliberately not a foreign key: records outlive alerts
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS dispatch_records (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    event_key TEXT NOT NULL,
                    alert_id INTEGER NOT NULL,
                    user_id INTEGER NOT NULL,
                    channel TEXT NOT NULL,
                    status TEXT NOT NULL,
                    kind TEXT NOT NULL,
                    digest_id TEXT,
                    error TEXT,
                    attempts INTEGER NOT NULL DEFAULT 0,
                    simulated INTEGER NOT NULL DEFAULT 0,
                    corrects_id INTEGER REFERENCES dispatch_records(id),
                    created_at TIMESTAMP NOT NULL
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS audit_log (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    actor_id INTEGER,
                    action TEXT NOT NULL,
                    target_type TEXT NOT NULL,
                    target_id INTEGER,
                    description TEXT NOT NULL,
                    details TEXT NOT NULL DEFAULT '{}',
                    severity TEXT NOT NULL,
                    category TEXT NOT NULL,
                    created_at TIMESTAMP NOT NULL
                )
            """)

            # Create indexes for common queries
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_alerts_user_active
                ON alerts(user_id, is_active)
            """)
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_alerts_asset_type_active
                ON alerts(cryptocurrency, type, is_active)
            """)
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_alerts_triggered
                ON alerts(is_triggered, is_active)
            """)
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_dispatch_event_channel
                ON dispatch_records(event_key, channel)
            """)
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_dispatch_user_created
                ON dispatch_records(user_id, created_at)
            """)
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_audit_action_created
                ON audit_log(action, created_at)
            """)

        logger.debug("Schema initialized for %s", self.db_path)

    def close(self) -> None:
        """Close the database connection."""
        with self.lock:
            if self._connection:
                self._connection.close()
                self._connection = None
