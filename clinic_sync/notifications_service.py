"""User-facing notifications raised by the sync layer."""

from __future__ import annotations

import uuid
from collections import deque
from threading import Lock
from typing import Any, Callable, Deque, Dict, List, Mapping, Optional

import structlog

from clinic_sync.subscriptions import Disposer
from clinic_sync.time_utils import utc_iso_now


logger = structlog.get_logger(__name__)

NOTIFICATION_TYPES = ("info", "success", "warning", "error")

NotificationListener = Callable[[Dict[str, Any]], Any]


class NotificationCenter:
    """Keep a bounded history of notifications and fan new ones out."""

    def __init__(self, *, history_limit: int = 20) -> None:
        self._history_limit = max(1, history_limit)
        self._recent: Deque[Dict[str, Any]] = deque(maxlen=self._history_limit)
        self._listeners: List[NotificationListener] = []
        self._lock = Lock()

    def push(
        self,
        title: str,
        message: str,
        *,
        type: str = "info",
        payload: Optional[Mapping[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Record a notification and return the stored item."""

        item = self._build_item(title, message, type, payload)
        with self._lock:
            self._recent.append(item)
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(dict(item))
            except Exception:
                logger.exception("notification_listener_failed", notification_id=item["id"])
        return dict(item)

    def error(self, title: str, message: str) -> Dict[str, Any]:
        return self.push(title, message, type="error")

    def warning(self, title: str, message: str) -> Dict[str, Any]:
        return self.push(title, message, type="warning")

    def success(self, title: str, message: str) -> Dict[str, Any]:
        return self.push(title, message, type="success")

    def recent(self, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """Return notifications newest first."""

        with self._lock:
            items = [dict(item) for item in reversed(self._recent)]
        return items[:limit] if limit else items

    def dismiss(self, notification_id: str) -> bool:
        with self._lock:
            for item in list(self._recent):
                if item["id"] == notification_id:
                    self._recent.remove(item)
                    return True
        return False

    def clear(self) -> None:
        with self._lock:
            self._recent.clear()

    def add_listener(self, listener: NotificationListener) -> Disposer:
        with self._lock:
            self._listeners.append(listener)

        def _remove() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return Disposer(_remove)

    def _build_item(
        self,
        title: str,
        message: str,
        type_: str,
        payload: Optional[Mapping[str, Any]],
    ) -> Dict[str, Any]:
        severity = str(type_ or "info").strip().lower()
        if severity not in NOTIFICATION_TYPES:
            severity = "info"
        title_str = str(title).strip() if title else "Notification"
        message_str = str(message).strip() if message else "An error occurred"
        item: Dict[str, Any] = {
            "id": f"{severity}-{uuid.uuid4().hex[:12]}",
            "title": title_str,
            "message": message_str,
            "type": severity,
            "timestamp": utc_iso_now(),
        }
        if payload:
            item["context"] = dict(payload)
        return item


__all__ = ["NOTIFICATION_TYPES", "NotificationCenter", "NotificationListener"]
