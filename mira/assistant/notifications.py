"""Recent phone notifications per user, kept in bounded ring buffers."""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Iterable
from typing import Any

LOGGER = logging.getLogger("mira-assistant.notifications")


class NotificationBuffer:
    def __init__(self, capacity: int = 50) -> None:
        if capacity < 1:
            raise ValueError("Notification buffer capacity must be positive")
        self.capacity = capacity
        self._by_user: dict[str, deque[dict[str, Any]]] = {}

    def add(self, user_id: str, notifications: dict[str, Any] | Iterable[dict[str, Any]] | None) -> int:
        """Append notifications for a user; returns how many were stored."""
        if not notifications:
            return 0
        items = [notifications] if isinstance(notifications, dict) else list(notifications)
        buffer = self._by_user.setdefault(user_id, deque(maxlen=self.capacity))
        stored = 0
        for item in items:
            if isinstance(item, dict):
                buffer.append(item)
                stored += 1
        LOGGER.debug("[notifications] Stored %d notification(s) for %s", stored, user_id)
        return stored

    def latest(self, user_id: str, count: int = 5) -> list[dict[str, Any]]:
        buffer = self._by_user.get(user_id)
        if not buffer or count <= 0:
            return []
        return list(buffer)[-count:]

    def dismiss(self, user_id: str, notification_id: str) -> bool:
        buffer = self._by_user.get(user_id)
        if not buffer:
            return False
        kept = [item for item in buffer if str(item.get("id") or item.get("notificationId") or "") != notification_id]
        if len(kept) == len(buffer):
            return False
        buffer.clear()
        buffer.extend(kept)
        return True

    def clear(self, user_id: str) -> None:
        self._by_user.pop(user_id, None)

    def __len__(self) -> int:
        return len(self._by_user)
