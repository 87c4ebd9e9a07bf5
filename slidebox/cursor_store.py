"""
Pagination cursor persistence for slidebox.

The cursor is a capture-time boundary ("assets taken at or before this
instant"). It survives restarts so the slideshow resumes near where it left off.
"""

import logging
import threading
from datetime import datetime, timezone
from typing import Optional

from .database import ConfigRepository, Database

CURSOR_KEY = "slideshow_cursor"


def parse_timestamp(value: str) -> datetime:
    """
    Parse an ISO-8601 timestamp as sent by the photo server.

    Accepts a trailing 'Z' and naive values (treated as UTC).

    Raises:
        ValueError: If the value is not a valid timestamp
    """
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_timestamp(value: datetime) -> str:
    """Format a timestamp as ISO-8601 in UTC with millisecond precision."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class CursorStore:
    """Reads and writes the persisted cursor in the config table."""

    def __init__(self, database: Database, key: str = CURSOR_KEY):
        """
        Initialize CursorStore.

        Args:
            database: Database instance for persistence
            key: Config key holding the cursor
        """
        self.repository = ConfigRepository(database)
        self.key = key
        self.logger = logging.getLogger(__name__)
        self._lock = threading.Lock()

    def get(self) -> Optional[datetime]:
        """Get the persisted cursor, or None for "most recent"."""
        with self._lock:
            entry = self.repository.get(self.key)
        if entry is None or not entry.value:
            return None
        try:
            return parse_timestamp(entry.value)
        except ValueError:
            self.logger.warning("Ignoring invalid persisted cursor: %s", entry.value)
            return None

    def set(self, cursor: Optional[datetime]) -> None:
        """Persist a cursor. None clears it."""
        if cursor is None:
            self.clear()
            return
        with self._lock:
            self.repository.set(self.key, format_timestamp(cursor))
        self.logger.debug("Cursor set to %s", cursor)

    def clear(self) -> None:
        """Reset the cursor to "most recent"."""
        with self._lock:
            self.repository.delete(self.key)
        self.logger.debug("Cursor cleared")
