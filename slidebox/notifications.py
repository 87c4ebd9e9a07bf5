"""
User-visible notifications for slidebox.

Transient problems (retries, skipped assets, catalog outages) surface here as
dismissible messages that the display layer polls.
"""

import itertools
import logging
import threading
from collections import deque
from datetime import datetime, timezone
from typing import List

from .models import Notification

LEVELS = ("info", "warning", "error")


class NotificationCenter:
    """Bounded, thread-safe list of recent notifications."""

    def __init__(self, max_items: int = 20):
        """
        Initialize NotificationCenter.

        Args:
            max_items: Oldest notifications are dropped beyond this count
        """
        self.logger = logging.getLogger(__name__)
        self._items: deque = deque(maxlen=max_items)
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def notify(self, level: str, title: str, message: str) -> Notification:
        """Add a notification and return it."""
        if level not in LEVELS:
            level = "info"
        with self._lock:
            notification = Notification(
                id=next(self._ids),
                level=level,
                title=title,
                message=message,
                created_at=datetime.now(timezone.utc),
            )
            self._items.append(notification)

        self.logger.debug("Notification (%s): %s - %s", level, title, message)
        return notification

    def list(self) -> List[Notification]:
        """Notifications still pending, oldest first."""
        with self._lock:
            return list(self._items)

    def dismiss(self, notification_id: int) -> bool:
        """
        Dismiss a notification.

        Returns:
            True if it was found and removed
        """
        with self._lock:
            for notification in self._items:
                if notification.id == notification_id:
                    self._items.remove(notification)
                    return True
        return False

    def clear(self) -> None:
        with self._lock:
            self._items.clear()
