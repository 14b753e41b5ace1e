"""Observer lists and closed notification enums.

Each owning object (runtime, worker, memory store) keeps its own :class:`Observable`
and emits :class:`Notification` values tagged with a variant of one of the enums below.
"""

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

import structlog

from enclave.utils.clock import utcnow

logger = structlog.get_logger(__name__)


class RuntimeEvent(str, Enum):
    """Lifecycle notifications emitted by isolation runtimes."""

    STARTING = "starting"
    STARTED = "started"
    STOPPING = "stopping"
    STOPPED = "stopped"
    ERROR = "error"
    PROFILE_UPDATED = "profile_updated"
    BACKEND_EVENT = "backend_event"


class WorkerEvent(str, Enum):
    """Notifications emitted by workers."""

    STATUS_CHANGED = "status_changed"
    LOG = "log"
    TASK_STARTED = "task_started"
    TASK_COMPLETED = "task_completed"
    DELEGATED = "delegated"
    QUEUED = "queued"
    DEADLINE_MODE = "deadline_mode"


class MemoryEvent(str, Enum):
    """Notifications emitted by the memory store."""

    LOADED = "loaded"
    SAVED = "saved"
    CONTACT_ADDED = "contact_added"
    DEADLINE_ADDED = "deadline_added"
    DEADLINE_UPDATED = "deadline_updated"
    MICROTASK_COMPLETED = "microtask_completed"
    JOURNAL_ENTRY_ADDED = "journal_entry_added"
    ASSESSMENT_RECORDED = "assessment_recorded"


@dataclass
class Notification:
    """A single emitted event."""

    event: Enum
    source: str
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)


Handler = Callable[[Notification], None]


class Observable:
    """Explicit observer list owned by one object."""

    def __init__(self, source: str):
        self.source = source
        self._handlers: list[Handler] = []

    def subscribe(self, handler: Handler) -> Callable[[], None]:
        """Register a handler.

        Args:
            handler: Callable receiving each Notification

        Returns:
            Function that removes the handler again
        """
        self._handlers.append(handler)

        def unsubscribe() -> None:
            if handler in self._handlers:
                self._handlers.remove(handler)

        return unsubscribe

    def emit(self, event: Enum, **data: Any) -> Notification:
        """Deliver a notification to every handler in registration order.

        A failing handler is logged and skipped so it cannot break the emitter.
        """
        notification = Notification(event=event, source=self.source, data=data)
        for handler in list(self._handlers):
            try:
                handler(notification)
            except Exception as e:
                logger.error(
                    "observer_failed",
                    source=self.source,
                    event=event.value,
                    error=str(e),
                    exc_info=True,
                )
        return notification
