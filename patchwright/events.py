"""
Progress events for apply transactions.

The applier publishes one event per state transition on an
`EventChannel`. Publishing is fire-and-forget: a failing subscriber is
logged and skipped, and `QueueSubscriber` drops events rather than
block when its queue is full.
"""

from __future__ import annotations

import enum
import logging
import queue
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

LOG = logging.getLogger(__name__)


class EventKind(str, enum.Enum):
    UNPACKING = "unpacking"
    UNPACKED = "unpacked"
    SNAPSHOT_CREATING = "snapshot_creating"
    SNAPSHOT_CREATED = "snapshot_created"
    VALIDATING = "validating"
    CONFLICTS_DETECTED = "conflicts_detected"
    VALIDATED = "validated"
    PRE_COMMANDS_RUNNING = "pre_commands_running"
    COMMAND_START = "command_start"
    COMMAND_COMPLETE = "command_complete"
    PRE_COMMANDS_COMPLETE = "pre_commands_complete"
    FILES_APPLYING = "files_applying"
    FILE_APPLYING = "file_applying"
    FILE_APPLIED = "file_applied"
    FILES_APPLIED = "files_applied"
    MIGRATIONS_RUNNING = "migrations_running"
    MIGRATION_START = "migration_start"
    MIGRATION_COMPLETE = "migration_complete"
    MIGRATIONS_COMPLETE = "migrations_complete"
    POST_COMMANDS_RUNNING = "post_commands_running"
    POST_COMMANDS_COMPLETE = "post_commands_complete"
    VERIFYING = "verifying"
    VERIFIED = "verified"
    COMPLETE = "complete"
    ERROR = "error"
    ROLLBACK_STARTING = "rollback_starting"
    ROLLBACK_COMPLETE = "rollback_complete"
    ROLLBACK_FAILED = "rollback_failed"


@dataclass(frozen=True)
class Event:
    kind: EventKind
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())


Subscriber = Callable[[Event], None]


class EventChannel:
    """
    Synchronous fan-out of events to subscribers.

    Subscribers run on the publishing thread and must return quickly;
    use QueueSubscriber to hand events to another thread.
    """

    def __init__(self) -> None:
        self._subscribers: List[Subscriber] = []
        self._lock = threading.Lock()

    def subscribe(self, subscriber: Subscriber) -> Callable[[], None]:
        """
        Register a subscriber and return a function that removes it.
        """

        with self._lock:
            self._subscribers.append(subscriber)

        def unsubscribe() -> None:
            with self._lock:
                if subscriber in self._subscribers:
                    self._subscribers.remove(subscriber)

        return unsubscribe

    def publish(self, kind: EventKind, **data: Any) -> Event:
        event = Event(kind=kind, data=data)
        with self._lock:
            subscribers = list(self._subscribers)
        for subscriber in subscribers:
            try:
                subscriber(event)
            except Exception:  # noqa: BLE001
                LOG.exception("Event subscriber failed while handling %s", kind.value)
        return event


class QueueSubscriber:
    """
    Subscriber that buffers events in a bounded queue.

    When the queue is full new events are dropped and counted.
    """

    def __init__(self, maxsize: int = 1000) -> None:
        self.queue: "queue.Queue[Event]" = queue.Queue(maxsize=maxsize)
        self.dropped = 0

    def __call__(self, event: Event) -> None:
        try:
            self.queue.put_nowait(event)
        except queue.Full:
            self.dropped += 1

    def get(self, timeout: Optional[float] = None) -> Event:
        return self.queue.get(timeout=timeout)

    def drain(self) -> List[Event]:
        events: List[Event] = []
        while True:
            try:
                events.append(self.queue.get_nowait())
            except queue.Empty:
                return events
