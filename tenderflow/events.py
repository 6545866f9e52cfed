"""Notification channel emitted by the orchestration core.

Pipelines report noteworthy transitions here instead of touching any UI.
Presentation layers subscribe or poll ``recent()``.
"""
from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable

logger = logging.getLogger(__name__)


class NotificationKind(str, Enum):
    FILE_REJECTED = "file_rejected"
    FILE_COMPLETED = "file_completed"
    FILE_FAILED = "file_failed"
    BATCH_COMPLETED = "batch_completed"
    STAGE_REJECTED = "stage_rejected"
    STAGE_COMPLETED = "stage_completed"
    STAGE_FAILED = "stage_failed"
    WORKFLOW_RESET = "workflow_reset"
    TENDER_COMPLETED = "tender_completed"
    TENDER_FAILED = "tender_failed"


@dataclass(frozen=True)
class Notification:
    kind: NotificationKind
    message: str
    subject: str | None = None
    level: str = "info"
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


Subscriber = Callable[[Notification], None]


class Notifier:
    """Fan-out of notifications to subscribers, with a bounded history."""

    def __init__(self, history_size: int = 100) -> None:
        self._subscribers: list[Subscriber] = []
        self._history: deque[Notification] = deque(maxlen=history_size)

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register ``callback``; returns a function that unsubscribes it."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def emit(self, notification: Notification) -> None:
        self._history.append(notification)
        logger.debug(f"Notification {notification.kind.value}: {notification.message}")
        for callback in list(self._subscribers):
            try:
                callback(notification)
            except Exception:
                # subscriber failures are logged, never propagated
                logger.exception(f"Notification subscriber failed on {notification.kind.value}")

    def recent(self, limit: int | None = None) -> list[Notification]:
        items = list(self._history)
        return items[-limit:] if limit else items

    def clear(self) -> None:
        self._history.clear()
