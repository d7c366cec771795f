"""Task event stream (log chunks and state transitions)."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from .models import TaskStatus

logger = logging.getLogger(__name__)


class EventKind(str, Enum):
    STATE = "state"
    LOG = "log"


@dataclass(frozen=True)
class TaskEvent:
    """A state transition or a chunk of worker output for one task."""

    kind: EventKind
    task_id: str
    status: TaskStatus
    stream: str | None = None
    data: str = ""
    timestamp: datetime = field(default_factory=datetime.now)

    @property
    def is_terminal(self) -> bool:
        return self.kind is EventKind.STATE and self.status.is_terminal


EventCallback = Callable[[TaskEvent], None]


class EventChannel:
    """Explicit observer list; nothing is broadcast globally.

    Subscriber exceptions are logged and do not affect other subscribers or
    the publishing task.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: list[EventCallback] = []

    def subscribe(self, callback: EventCallback) -> Callable[[], None]:
        """Register ``callback``; returns a function that unsubscribes it."""
        with self._lock:
            self._subscribers.append(callback)

        def _unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return _unsubscribe

    def publish(self, event: TaskEvent) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(event)
            except Exception:
                logger.exception("Event subscriber failed for task %s", event.task_id)

    def __len__(self) -> int:
        with self._lock:
            return len(self._subscribers)
