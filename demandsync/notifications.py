"""Transient user-facing notifications.

Failed writes and sync problems show up as short-lived toasts. The session
history is kept in memory only; nothing about a failure outlives the process.
"""

import itertools
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Literal

logger = logging.getLogger(__name__)

Severity = Literal["info", "success", "alert", "error"]


@dataclass(frozen=True)
class Notification:
    id: str
    message: str
    severity: Severity
    created_at: datetime
    timeout: float

    def expired(self, now: datetime) -> bool:
        return now >= self.created_at + timedelta(seconds=self.timeout)


class Notifier:
    """Collects toasts and history, and fans new notifications out to listeners.

    Args:
        toast_seconds: How long a toast stays visible
        clock: Source of "now" (tests inject a fake)
    """

    def __init__(
        self,
        toast_seconds: float = 4,
        clock: Callable[[], datetime] | None = None,
    ):
        self.toast_seconds = toast_seconds
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._ids = itertools.count(1)
        self._lock = threading.Lock()
        self._toasts: list[Notification] = []
        self.history: list[Notification] = []
        self._listeners: list[Callable[[Notification], None]] = []

    def notify(self, message: str, severity: Severity = "info") -> Notification:
        note = Notification(
            id=f"n{next(self._ids)}",
            message=message,
            severity=severity,
            created_at=self._clock(),
            timeout=self.toast_seconds,
        )
        with self._lock:
            self._toasts.append(note)
            self.history.append(note)
            listeners = list(self._listeners)

        log = logger.warning if severity == "error" else logger.info
        log("[%s] %s", severity, message)

        for listener in listeners:
            try:
                listener(note)
            except Exception:
                logger.exception("Notification listener failed")
        return note

    def error(self, message: str) -> Notification:
        return self.notify(message, "error")

    @property
    def toasts(self) -> list[Notification]:
        """Toasts that have not yet expired."""
        self.expire()
        with self._lock:
            return list(self._toasts)

    def dismiss(self, notification_id: str) -> None:
        with self._lock:
            self._toasts = [t for t in self._toasts if t.id != notification_id]

    def expire(self, now: datetime | None = None) -> int:
        """Drop expired toasts. Returns how many were removed."""
        now = now or self._clock()
        with self._lock:
            before = len(self._toasts)
            self._toasts = [t for t in self._toasts if not t.expired(now)]
            return before - len(self._toasts)

    def subscribe(self, listener: Callable[[Notification], None]) -> None:
        with self._lock:
            self._listeners.append(listener)
