"""
Database module for slidebox.

Handles SQLite database initialization, schema creation, and connection management.
"""

import logging
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from .models import ConfigEntry


class Database:
    """Manages SQLite database connection and schema."""

    def __init__(self, db_path: Optional[str] = None):
        """
        Initialize database connection.

        Args:
            db_path: Path to SQLite database file. If None, uses ~/.slidebox/slidebox.db
        """
        self.logger = logging.getLogger(__name__)

        if db_path is None:
            # Default to ~/.slidebox/slidebox.db
            home = Path.home()
            slidebox_dir = home / ".slidebox"
            slidebox_dir.mkdir(exist_ok=True)
            db_path = str(slidebox_dir / "slidebox.db")

        self.db_path = db_path
        self._ensure_schema()
        self.logger.info("Database initialized at %s", self.db_path)

    def _ensure_schema(self):
        """Ensure database schema exists (thread-safe)."""
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        cursor = conn.cursor()

        # Configuration table (also holds the persisted slideshow cursor)
        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS config (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """
        )

        conn.commit()
        conn.close()
        self.logger.debug("Database schema created/verified")

    def get_connection(self):
        """
        Get a new database connection (thread-safe).

        Each thread should get its own connection. Caller is responsible
        for closing the connection when done.
        """
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    def close(self):
        """Close database connection (no-op since we use per-thread connections)."""
        pass

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.close()


def _parse_timestamp(value) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value))
    except ValueError:
        return None


class ConfigRepository:
    """Key-value access to the config table."""

    def __init__(self, database: Database):
        self.database = database
        self.logger = logging.getLogger(__name__)

    def get(self, key: str) -> Optional[ConfigEntry]:
        """Get a single entry, or None if the key is absent."""
        conn = self.database.get_connection()
        try:
            row = conn.execute(
                "SELECT key, value, updated_at FROM config WHERE key = ?", (key,)
            ).fetchone()
        finally:
            conn.close()

        if row is None:
            return None
        return ConfigEntry(
            key=row["key"], value=row["value"], updated_at=_parse_timestamp(row["updated_at"])
        )

    def get_all(self) -> List[ConfigEntry]:
        """Get all entries ordered by key."""
        conn = self.database.get_connection()
        try:
            rows = conn.execute("SELECT key, value, updated_at FROM config ORDER BY key").fetchall()
        finally:
            conn.close()

        return [
            ConfigEntry(
                key=row["key"], value=row["value"], updated_at=_parse_timestamp(row["updated_at"])
            )
            for row in rows
        ]

    def set(self, key: str, value: str) -> bool:
        """
        Insert or replace an entry.

        Returns:
            True if successful
        """
        conn = self.database.get_connection()
        try:
            conn.execute(
                """
                INSERT INTO config (key, value, updated_at) VALUES (?, ?, CURRENT_TIMESTAMP)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value,
                                               updated_at = CURRENT_TIMESTAMP
            """,
                (key, value),
            )
            conn.commit()
            return True
        except sqlite3.Error as e:
            self.logger.error("Failed to set config %s: %s", key, e)
            return False
        finally:
            conn.close()

    def delete(self, key: str) -> bool:
        """
        Remove an entry.

        Returns:
            True if a row was removed
        """
        conn = self.database.get_connection()
        try:
            cursor = conn.execute("DELETE FROM config WHERE key = ?", (key,))
            conn.commit()
            return cursor.rowcount > 0
        finally:
            conn.close()

    def initialize_defaults(self, defaults: Dict[str, Optional[str]]) -> None:
        """Insert defaults for keys that are not stored yet. None values are skipped."""
        conn = self.database.get_connection()
        try:
            for key, value in defaults.items():
                if value is None:
                    continue
                conn.execute(
                    "INSERT OR IGNORE INTO config (key, value) VALUES (?, ?)", (key, str(value))
                )
            conn.commit()
        finally:
            conn.close()
