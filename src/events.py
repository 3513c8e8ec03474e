"""
Event Bus - In-memory pub/sub for resource events.

Trigger events (CREATED, MODIFIED) feed the controller's work queue. DELETED
is published when a queued resource turns out to be gone; it and the outcome
events (RECONCILED, FAILED) are the operator's own event surface.
"""

import asyncio
import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, AsyncIterator, Callable, Dict, Optional, Tuple

from db import NamespacedName

logger = logging.getLogger(__name__)


class EventType(Enum):
    """Types of resource events."""

    CREATED = "CREATED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"
    RECONCILED = "RECONCILED"
    FAILED = "FAILED"


TRIGGER_EVENTS = frozenset({EventType.CREATED, EventType.MODIFIED})


@dataclass
class ResourceEvent:
    """Event emitted when a resource changes or finishes reconciling."""

    event_type: EventType
    key: NamespacedName
    message: str = ""
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )

    @property
    def triggers_reconcile(self) -> bool:
        return self.event_type in TRIGGER_EVENTS

    def to_json(self) -> str:
        return json.dumps(
            {
                "event_type": self.event_type.value,
                "namespace": self.key.namespace,
                "name": self.key.name,
                "message": self.message,
                "data": self.data,
                "timestamp": self.timestamp,
            },
            default=str,
        )

    @classmethod
    def from_resource(
        cls,
        event_type: EventType,
        resource: Dict[str, Any],
        message: str = "",
    ) -> "ResourceEvent":
        """Create an event from a resource row."""
        return cls(
            event_type=event_type,
            key=NamespacedName.from_resource(resource),
            message=message,
            data={"generation": resource.get("generation")},
        )


class EventSubscription:
    """
    Async iterator for consuming events from a subscription.

    A ``None`` sentinel value stops iteration.
    """

    def __init__(
        self,
        queue: asyncio.Queue,
        filter_fn: Optional[Callable[[ResourceEvent], bool]] = None,
    ):
        self._queue = queue
        self._filter_fn = filter_fn

    def __aiter__(self) -> AsyncIterator[ResourceEvent]:
        return self

    async def __anext__(self) -> ResourceEvent:
        while True:
            event = await self._queue.get()

            if event is None:
                raise StopAsyncIteration

            if self._filter_fn is None or self._filter_fn(event):
                return event


class EventBus:
    """
    In-memory pub/sub event bus.

    Publishing never blocks: events are dropped for subscribers whose queue
    is full. The periodic resync recovers any dropped change event.
    """

    def __init__(self, queue_size: int = 1024):
        self._queue_size = queue_size
        self._subscribers: Dict[str, asyncio.Queue] = {}

    def publish(self, event: ResourceEvent) -> None:
        for subscriber_id, queue in list(self._subscribers.items()):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning(
                    f"Dropped {event.event_type.value} event for {event.key} "
                    f"(subscriber {subscriber_id}): queue full"
                )

    def subscribe(
        self,
        filter_fn: Optional[Callable[[ResourceEvent], bool]] = None,
    ) -> Tuple[str, EventSubscription]:
        """
        Subscribe to events.

        Returns:
            A tuple of ``(subscriber_id, EventSubscription)``.
        """
        subscriber_id = str(uuid.uuid4())
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._queue_size)
        self._subscribers[subscriber_id] = queue
        logger.debug(f"New event subscriber: {subscriber_id}")
        return subscriber_id, EventSubscription(queue, filter_fn)

    def unsubscribe(self, subscriber_id: str) -> None:
        """Remove a subscriber and terminate its iterator."""
        queue = self._subscribers.pop(subscriber_id, None)
        if queue is not None:
            try:
                queue.put_nowait(None)
            except asyncio.QueueFull:
                pass
            logger.debug(f"Unsubscribed: {subscriber_id}")

    def subscriber_count(self) -> int:
        return len(self._subscribers)
