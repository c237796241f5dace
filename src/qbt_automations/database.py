"""
SQLite storage

Shared database for the rule store and the default activity recorder with:
- Thread-safe operations (connection per thread)
- WAL journal for concurrent readers
- ACID transactions
- Automatic schema migration
"""

import sqlite3
import logging
import threading
from pathlib import Path
from datetime import datetime, timezone
from contextlib import contextmanager
from typing import Optional

logger = logging.getLogger(__name__)


def to_timestamp(value: datetime) -> str:
    """Fixed-width UTC ISO timestamp so text comparison matches time order"""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec='microseconds')


def from_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


class SQLiteDatabase:
    """
    SQLite database holding rules, settings and activity

    Tables:
    - automation_rules: Rules per instance (JSON action payload)
    - reannounce_settings: One settings row per instance
    - automation_activity: Append-only rule engine log
    - reannounce_activity: Append-only reannounce log
    """

    SCHEMA_VERSION = 1

    def __init__(self, db_path: str = '/config/qbt-automations.db'):
        """
        Initialize database

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = Path(db_path)
        self.local = threading.local()
        self._connections = []
        self._conn_lock = threading.Lock()

        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._init_database()

        logger.info(f"SQLite database initialized: {self.db_path}")

    def get_connection(self) -> sqlite3.Connection:
        """
        Get thread-local database connection

        Returns:
            SQLite connection for current thread
        """
        if not hasattr(self.local, 'conn'):
            conn = sqlite3.connect(
                str(self.db_path),
                check_same_thread=False,
                isolation_level=None  # Autocommit mode
            )
            conn.row_factory = sqlite3.Row
            conn.execute('PRAGMA journal_mode=WAL')
            conn.execute('PRAGMA foreign_keys=ON')

            with self._conn_lock:
                self._connections.append(conn)

            self.local.conn = conn

        return self.local.conn

    @contextmanager
    def transaction(self):
        """
        Context manager for database transactions

        Usage:
            with db.transaction() as conn:
                conn.execute(...)
        """
        conn = self.get_connection()
        try:
            conn.execute('BEGIN IMMEDIATE')
            yield conn
            conn.execute('COMMIT')
        except Exception:
            conn.execute('ROLLBACK')
            raise

    def _init_database(self):
        """Initialize database schema and run migrations"""
        conn = self.get_connection()

        conn.execute('''
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY,
                applied_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
            )
        ''')

        cursor = conn.execute('SELECT MAX(version) FROM schema_version')
        current_version = cursor.fetchone()[0]

        if current_version is None:
            self._create_schema_v1(conn)
            conn.execute('INSERT INTO schema_version (version) VALUES (?)', (self.SCHEMA_VERSION,))
            logger.info(f"Created database schema v{self.SCHEMA_VERSION}")
        elif current_version < self.SCHEMA_VERSION:
            self._migrate_schema(conn, current_version)

    def _create_schema_v1(self, conn: sqlite3.Connection):
        """Create initial database schema (version 1)"""

        conn.execute('''
            CREATE TABLE IF NOT EXISTS automation_rules (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                instance_id INTEGER NOT NULL,
                name TEXT NOT NULL,
                enabled INTEGER NOT NULL DEFAULT 1,
                sort_order INTEGER NOT NULL DEFAULT 0,
                payload TEXT NOT NULL,
                created_at TIMESTAMP NOT NULL,
                updated_at TIMESTAMP NOT NULL
            )
        ''')
        conn.execute(
            'CREATE INDEX IF NOT EXISTS idx_rules_instance_order '
            'ON automation_rules(instance_id, sort_order, id)'
        )

        conn.execute('''
            CREATE TABLE IF NOT EXISTS reannounce_settings (
                instance_id INTEGER PRIMARY KEY,
                payload TEXT NOT NULL,
                updated_at TIMESTAMP NOT NULL
            )
        ''')

        conn.execute('''
            CREATE TABLE IF NOT EXISTS automation_activity (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                instance_id INTEGER NOT NULL,
                created_at TIMESTAMP NOT NULL,
                hash TEXT NOT NULL,
                torrent_name TEXT,
                tracker_domain TEXT,
                rule_id INTEGER,
                rule_name TEXT,
                action TEXT NOT NULL,
                outcome TEXT NOT NULL,
                reason TEXT,
                details TEXT
            )
        ''')
        conn.execute(
            'CREATE INDEX IF NOT EXISTS idx_activity_instance_created '
            'ON automation_activity(instance_id, created_at)'
        )

        conn.execute('''
            CREATE TABLE IF NOT EXISTS reannounce_activity (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                instance_id INTEGER NOT NULL,
                hash TEXT NOT NULL,
                torrent_name TEXT,
                trackers TEXT,
                timestamp TIMESTAMP NOT NULL,
                outcome TEXT NOT NULL,
                reason TEXT
            )
        ''')
        conn.execute(
            'CREATE INDEX IF NOT EXISTS idx_reannounce_instance_ts '
            'ON reannounce_activity(instance_id, timestamp)'
        )

    def _migrate_schema(self, conn: sqlite3.Connection, from_version: int):
        """
        Run schema migrations

        Args:
            conn: Database connection
            from_version: Current schema version
        """
        logger.info(f"Schema migration from v{from_version} to v{self.SCHEMA_VERSION} completed")

    def health_check(self) -> bool:
        """Check if database is accessible"""
        try:
            conn = self.get_connection()
            conn.execute('SELECT 1')
            return True
        except Exception as e:
            logger.error(f"Database health check failed: {e}")
            return False

    def close(self):
        """Close all database connections across all threads"""
        with self._conn_lock:
            for conn in self._connections:
                try:
                    conn.close()
                except sqlite3.Error:
                    pass  # already closed
            self._connections.clear()

        if hasattr(self.local, 'conn'):
            delattr(self.local, 'conn')

    def __del__(self):
        """Cleanup on deletion"""
        self.close()
