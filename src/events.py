"""
Project Events - In-memory pub/sub for declared project changes.

The API publishes CREATED/MODIFIED/DELETION_REQUESTED when projects are
declared, changed or deleted; the controller publishes RECONCILED after
every pass and DELETED once a record is erased. Subscribers receive them as
Server-Sent Events.
"""

import asyncio
import json
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, AsyncIterator, Callable, Dict, Optional, Tuple

logger = logging.getLogger(__name__)


def _json_default(obj: Any) -> str:
    if isinstance(obj, datetime):
        return obj.isoformat()
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


class EventType(Enum):
    """Types of project events."""

    CREATED = "CREATED"
    MODIFIED = "MODIFIED"
    DELETION_REQUESTED = "DELETION_REQUESTED"
    RECONCILED = "RECONCILED"
    DELETED = "DELETED"


@dataclass
class ProjectEvent:
    """A change to one declared project."""

    event_type: EventType
    project_name: str
    phase: str
    project: Dict[str, Any]
    timestamp: str

    def to_sse(self) -> str:
        """Format the event as an SSE message (event line + JSON data line)."""
        data = {
            "event_type": self.event_type.value,
            "project_name": self.project_name,
            "phase": self.phase,
            "project": self.project,
            "timestamp": self.timestamp,
        }
        json_data = json.dumps(data, default=_json_default)
        return f"event: {self.event_type.value}\ndata: {json_data}\n\n"

    @classmethod
    def from_record(
        cls, event_type: EventType, record: Dict[str, Any]
    ) -> "ProjectEvent":
        """Build an event from a parsed ``sentry_projects`` record."""
        status = record.get("status") or {}
        return cls(
            event_type=event_type,
            project_name=record["name"],
            phase=status.get("phase") or "Uninitialized",
            project=record,
            timestamp=datetime.now(timezone.utc).isoformat(),
        )


class EventSubscription:
    """
    Async iterator over one subscriber's queue.

    A ``None`` sentinel ends iteration.
    """

    def __init__(
        self,
        queue: asyncio.Queue,
        filter_fn: Optional[Callable[[ProjectEvent], bool]] = None,
    ):
        self._queue = queue
        self._filter_fn = filter_fn

    def __aiter__(self) -> AsyncIterator[ProjectEvent]:
        return self

    async def __anext__(self) -> ProjectEvent:
        while True:
            event = await self._queue.get()
            if event is None:
                raise StopAsyncIteration
            if self._filter_fn is None or self._filter_fn(event):
                return event


class EventBus:
    """
    Fan-out of project events to subscriber queues.

    Publishing never blocks: a subscriber whose queue is full misses the
    event.
    """

    def __init__(self, queue_size: int = 256):
        self._queue_size = queue_size
        self._subscribers: Dict[str, asyncio.Queue] = {}
        self._lock = asyncio.Lock()

    async def publish(self, event: ProjectEvent) -> None:
        async with self._lock:
            subscribers = list(self._subscribers.items())

        for subscriber_id, queue in subscribers:
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning(
                    f"Dropped {event.event_type.value} event for subscriber "
                    f"{subscriber_id}: queue full"
                )

    async def publish_record(
        self, event_type: EventType, record: Optional[Dict[str, Any]]
    ) -> None:
        """Publish an event for a stored record, if there is one."""
        if record:
            await self.publish(ProjectEvent.from_record(event_type, record))

    async def subscribe(
        self,
        filter_fn: Optional[Callable[[ProjectEvent], bool]] = None,
    ) -> Tuple[str, EventSubscription]:
        """
        Register a subscriber.

        Returns:
            ``(subscriber_id, subscription)``; pass the id to unsubscribe().
        """
        subscriber_id = str(uuid.uuid4())
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._queue_size)

        async with self._lock:
            self._subscribers[subscriber_id] = queue

        logger.info(f"New event subscriber: {subscriber_id}")
        return subscriber_id, EventSubscription(queue, filter_fn)

    async def unsubscribe(self, subscriber_id: str) -> None:
        """Drop a subscriber and end its iteration."""
        async with self._lock:
            queue = self._subscribers.pop(subscriber_id, None)

        if queue is not None:
            try:
                queue.put_nowait(None)
            except asyncio.QueueFull:
                pass
            logger.info(f"Unsubscribed: {subscriber_id}")

    def subscriber_count(self) -> int:
        return len(self._subscribers)
