"""Progress notifications for queue listeners.

Any number of listeners (progress bar, logging, a UI panel) can subscribe
independently; a failing listener is logged and never affects the run or
the other listeners.
"""

import threading
from enum import Enum
from typing import Callable, List, Optional

import structlog
from pydantic import BaseModel, Field

from .models import QueueStats

logger = structlog.get_logger(__name__)


class EventKind(str, Enum):
    STATE_CHANGED = "state_changed"
    JOB_STARTED = "job_started"
    JOB_COMPLETED = "job_completed"
    JOB_FAILED = "job_failed"
    JOB_CANCELLED = "job_cancelled"
    RATE_LIMITED = "rate_limited"
    QUEUE_COMPLETE = "queue_complete"
    LIMIT_REACHED = "limit_reached"
    PAUSED = "paused"
    RESUMED = "resumed"
    CANCELLED = "cancelled"
    CLEARED = "cleared"
    NOTICE = "notice"


class QueueEvent(BaseModel):
    """A single notification delivered to every subscriber."""

    kind: EventKind = Field(..., description="What happened")
    stats: QueueStats = Field(..., description="Queue counts at emit time")
    job_id: Optional[str] = Field(default=None, description="Job concerned, if any")
    message: Optional[str] = Field(default=None, description="User-facing text")


Listener = Callable[[QueueEvent], None]


class EventBus:
    """Observer list with subscribe/unsubscribe semantics."""

    def __init__(self):
        self._listeners: List[Listener] = []
        self._lock = threading.Lock()

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener; returns a callable that unsubscribes it."""
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def emit(self, event: QueueEvent) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event)
            except Exception:
                logger.exception("listener_failed", kind=event.kind.value, job_id=event.job_id)

    def __len__(self) -> int:
        return len(self._listeners)
