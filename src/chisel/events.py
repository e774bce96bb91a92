"""
Event Streaming - In-memory pub/sub for reconciliation events.

The engine reports progress through an EventEmitter. Emission is
best-effort telemetry: a full subscriber queue drops the event and an
emitter failure is logged, never raised into the reconciliation.
"""

import asyncio
import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, AsyncIterator, Callable, Dict, Optional, Tuple

logger = logging.getLogger(__name__)


def _json_default(obj: Any) -> Any:
    """JSON serializer for objects not handled by default json encoder."""
    if isinstance(obj, datetime):
        return obj.isoformat()
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, BaseException):
        return str(obj)
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


class EventType(Enum):
    """Types of engine events."""

    RESOURCE_STARTED = "resource.started"
    RESOURCE_COMPLETED = "resource.completed"
    RESOURCE_FAILED = "resource.failed"
    PLAN_STARTED = "plan.started"
    PLAN_COMPLETED = "plan.completed"
    APPLY_STARTED = "apply.started"
    APPLY_COMPLETED = "apply.completed"
    APPLY_FAILED = "apply.failed"
    DRIFT_DETECTED = "drift.detected"
    ROLLBACK_STARTED = "rollback.started"
    ROLLBACK_COMPLETED = "rollback.completed"


@dataclass
class Event:
    """A single engine event."""

    event_type: EventType
    source: str
    data: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: f"evt_{uuid.uuid4().hex}")
    timestamp: str = field(
        default_factory=lambda: datetime.now(timezone.utc)
        .isoformat()
        .replace("+00:00", "Z")
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.event_type.value,
            "source": self.source,
            "timestamp": self.timestamp,
            "data": self.data,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=_json_default)


class EventSubscription:
    """
    Async iterator for consuming events from a subscription.

    Reads events from a queue, applying an optional filter function.
    A ``None`` sentinel value stops iteration.
    """

    def __init__(
        self,
        queue: asyncio.Queue,
        filter_fn: Optional[Callable[[Event], bool]] = None,
    ):
        self._queue = queue
        self._filter_fn = filter_fn

    def __aiter__(self) -> AsyncIterator[Event]:
        return self

    async def __anext__(self) -> Event:
        while True:
            event = await self._queue.get()

            if event is None:
                raise StopAsyncIteration

            if self._filter_fn is None or self._filter_fn(event):
                return event

    def get_nowait(self) -> Optional[Event]:
        """Return the next matching queued event, or None if none is queued."""
        while True:
            try:
                event = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                return None
            if event is None:
                return None
            if self._filter_fn is None or self._filter_fn(event):
                return event


class EventBus:
    """
    In-memory pub/sub event bus.

    Maintains an ``asyncio.Queue`` per subscriber and publishes events
    non-blocking. Full queues cause events to be dropped to prevent
    back-pressure on the engine.
    """

    def __init__(self, queue_size: int = 256):
        self._queue_size = queue_size
        self._subscribers: Dict[str, asyncio.Queue] = {}
        self._lock = asyncio.Lock()
        self._closed = False

    async def publish(self, event: Event) -> None:
        """
        Publish an event to all subscribers (non-blocking).

        Raises:
            RuntimeError: If the bus has been closed.
        """
        if self._closed:
            raise RuntimeError("event bus is closed")

        async with self._lock:
            subscribers = list(self._subscribers.items())

        for subscriber_id, queue in subscribers:
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning(
                    f"Dropped event {event.event_type.value} for subscriber "
                    f"{subscriber_id}: queue full"
                )

    async def subscribe(
        self,
        filter_fn: Optional[Callable[[Event], bool]] = None,
    ) -> Tuple[str, EventSubscription]:
        """
        Subscribe to events.

        Returns:
            A tuple of ``(subscriber_id, EventSubscription)``.
        """
        subscriber_id = str(uuid.uuid4())
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._queue_size)

        async with self._lock:
            self._subscribers[subscriber_id] = queue

        logger.debug(f"New event subscriber: {subscriber_id}")
        return subscriber_id, EventSubscription(queue, filter_fn)

    async def unsubscribe(self, subscriber_id: str) -> None:
        """
        Remove a subscriber and send it the ``None`` sentinel.
        """
        async with self._lock:
            queue = self._subscribers.pop(subscriber_id, None)

        if queue is not None:
            try:
                queue.put_nowait(None)
            except asyncio.QueueFull:
                pass
            logger.debug(f"Unsubscribed: {subscriber_id}")

    async def close(self) -> None:
        """Stop accepting events and end every subscription."""
        self._closed = True
        async with self._lock:
            subscriber_ids = list(self._subscribers)
        for subscriber_id in subscriber_ids:
            await self.unsubscribe(subscriber_id)

    def subscriber_count(self) -> int:
        """Return the current number of subscribers."""
        return len(self._subscribers)


class EventEmitter:
    """
    Helper used by the engine to emit events.

    Every ``emit_*`` coroutine swallows and logs publishing errors so
    telemetry can never fail a reconciliation.
    """

    def __init__(self, bus: EventBus, source: str = "chisel"):
        self.bus = bus
        self.source = source

    async def emit(self, event_type: EventType, **data: Any) -> None:
        event = Event(event_type=event_type, source=self.source, data=data)
        try:
            await self.bus.publish(event)
        except Exception as e:
            logger.warning(f"Failed to emit {event_type.value} event: {e}")

    async def emit_resource_started(self, resource_id: str, action: str) -> None:
        await self.emit(EventType.RESOURCE_STARTED, resource_id=resource_id, action=action)

    async def emit_resource_completed(
        self, resource_id: str, action: str, duration: float
    ) -> None:
        await self.emit(
            EventType.RESOURCE_COMPLETED,
            resource_id=resource_id,
            action=action,
            duration=duration,
            success=True,
        )

    async def emit_resource_failed(
        self, resource_id: str, action: str, error: str, duration: float
    ) -> None:
        await self.emit(
            EventType.RESOURCE_FAILED,
            resource_id=resource_id,
            action=action,
            error=error,
            duration=duration,
            success=False,
        )

    async def emit_plan_started(self, module_name: str, resource_count: int) -> None:
        await self.emit(
            EventType.PLAN_STARTED,
            module_name=module_name,
            resource_count=resource_count,
        )

    async def emit_plan_completed(
        self, module_name: str, summary: Dict[str, int], duration: float
    ) -> None:
        await self.emit(
            EventType.PLAN_COMPLETED,
            module_name=module_name,
            summary=summary,
            duration=duration,
        )

    async def emit_apply_started(self, module_name: str, resource_count: int) -> None:
        await self.emit(
            EventType.APPLY_STARTED,
            module_name=module_name,
            resource_count=resource_count,
        )

    async def emit_apply_completed(
        self, module_name: str, summary: Dict[str, int], duration: float
    ) -> None:
        await self.emit(
            EventType.APPLY_COMPLETED,
            module_name=module_name,
            summary=summary,
            duration=duration,
        )

    async def emit_apply_failed(
        self, module_name: str, error: str, duration: float
    ) -> None:
        await self.emit(
            EventType.APPLY_FAILED,
            module_name=module_name,
            error=error,
            duration=duration,
        )

    async def emit_rollback_started(self, resource_count: int) -> None:
        await self.emit(EventType.ROLLBACK_STARTED, resource_count=resource_count)

    async def emit_rollback_completed(self, succeeded: int, failed: int) -> None:
        await self.emit(
            EventType.ROLLBACK_COMPLETED, succeeded=succeeded, failed=failed
        )

    async def emit_drift_detected(
        self, module_name: str, resource_id: str, changes: Dict[str, Any]
    ) -> None:
        await self.emit(
            EventType.DRIFT_DETECTED,
            module_name=module_name,
            resource_id=resource_id,
            changes=changes,
        )
