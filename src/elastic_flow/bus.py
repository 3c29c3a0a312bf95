"""Asyncio event bus used to push execution progress to observers."""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Union
from uuid import uuid4

from loguru import logger


class EventType(Enum):
    """Event types emitted by the execution engine."""

    # Execution lifecycle events
    EXECUTION_STARTED = "execution.started"
    EXECUTION_PROGRESS = "execution.progress"
    EXECUTION_PAUSED = "execution.paused"
    EXECUTION_RESUMED = "execution.resumed"
    EXECUTION_COMPLETED = "execution.completed"
    EXECUTION_FAILED = "execution.failed"
    EXECUTION_CANCELLED = "execution.cancelled"

    # Node events
    NODE_STARTED = "node.started"
    NODE_COMPLETED = "node.completed"
    NODE_FAILED = "node.failed"
    NODE_RETRYING = "node.retrying"
    NODE_SKIPPED = "node.skipped"

    # Engine subsystem events
    RESOURCE_SCALING = "resource.scaling"
    RECOVERY_ATTEMPTED = "recovery.attempted"
    OPTIMIZATION_APPLIED = "optimization.applied"


@dataclass
class EventMetadata:
    """Metadata for events."""

    event_id: str = field(default_factory=lambda: str(uuid4()))
    timestamp: datetime = field(default_factory=datetime.utcnow)
    correlation_id: str | None = None
    source: str | None = None
    tags: set[str] = field(default_factory=set)


@dataclass
class Event:
    """Base event class."""

    type: EventType
    data: dict[str, Any]
    metadata: EventMetadata = field(default_factory=EventMetadata)


class EventFilter:
    """Filter events based on type, source, correlation id and tags."""

    def __init__(
        self,
        event_types: set[EventType] | None = None,
        source_patterns: set[str] | None = None,
        required_tags: set[str] | None = None,
        excluded_tags: set[str] | None = None,
        correlation_id: str | None = None,
    ):
        self.event_types = event_types or set()
        self.source_patterns = source_patterns or set()
        self.required_tags = required_tags or set()
        self.excluded_tags = excluded_tags or set()
        self.correlation_id = correlation_id

    def matches(self, event: Event) -> bool:
        """Check if event matches filter criteria."""
        if self.event_types and event.type not in self.event_types:
            return False

        if self.correlation_id and event.metadata.correlation_id != self.correlation_id:
            return False

        if self.source_patterns and event.metadata.source:
            if not any(
                pattern in event.metadata.source for pattern in self.source_patterns
            ):
                return False

        if self.required_tags and not self.required_tags.issubset(event.metadata.tags):
            return False

        if self.excluded_tags and self.excluded_tags.intersection(event.metadata.tags):
            return False

        return True


class EventChannel:
    """Bounded queue a poller reads events from."""

    def __init__(self, channel_id: str, event_filter: EventFilter | None, maxsize: int):
        self.channel_id = channel_id
        self.event_filter = event_filter
        self.queue: asyncio.Queue[Event] = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0

    async def get(self, timeout: float | None = None) -> Event:
        if timeout is None:
            return await self.queue.get()
        return await asyncio.wait_for(self.queue.get(), timeout=timeout)

    def get_nowait(self) -> Event | None:
        try:
            return self.queue.get_nowait()
        except asyncio.QueueEmpty:
            return None

    def drain(self) -> list[Event]:
        events = []
        while not self.queue.empty():
            events.append(self.queue.get_nowait())
        return events


HandlerType = Union[Callable[[Event], None], Callable[[Event], Awaitable[None]]]


class EventBus:
    """Asyncio event bus for engine components and external observers."""

    def __init__(self, channel_size: int = 1000):
        self.channel_size = channel_size

        self._handlers: dict[EventType, list[HandlerType]] = {}
        self._global_handlers: list[HandlerType] = []
        self._channels: dict[str, EventChannel] = {}

        self._running = False

        # Statistics
        self.stats = {
            "events_published": 0,
            "events_processed": 0,
            "events_dropped": 0,
            "handler_errors": 0,
            "active_handlers": 0,
        }

    async def start(self) -> None:
        """Start the event bus."""
        if self._running:
            return
        self._running = True
        logger.info("Event bus started")

    async def stop(self) -> None:
        """Stop the event bus."""
        if not self._running:
            return
        self._running = False
        logger.info("Event bus stopped")

    @property
    def running(self) -> bool:
        return self._running

    def subscribe(self, event_type: EventType, handler: HandlerType) -> None:
        """Subscribe to specific event type."""
        self._handlers.setdefault(event_type, []).append(handler)
        self.stats["active_handlers"] += 1

    def subscribe_all(self, handler: HandlerType) -> None:
        """Subscribe to all events."""
        self._global_handlers.append(handler)
        self.stats["active_handlers"] += 1

    def unsubscribe(self, handler: HandlerType) -> None:
        removed = 0
        for handlers in self._handlers.values():
            while handler in handlers:
                handlers.remove(handler)
                removed += 1
        while handler in self._global_handlers:
            self._global_handlers.remove(handler)
            removed += 1
        self.stats["active_handlers"] -= removed

    def open_channel(
        self, event_filter: EventFilter | None = None, maxsize: int | None = None
    ) -> EventChannel:
        """Open a polling channel that receives every matching event."""
        channel = EventChannel(str(uuid4()), event_filter, maxsize or self.channel_size)
        self._channels[channel.channel_id] = channel
        return channel

    def close_channel(self, channel: EventChannel | str) -> None:
        channel_id = channel if isinstance(channel, str) else channel.channel_id
        self._channels.pop(channel_id, None)

    async def publish(self, event: Event) -> None:
        """Publish an event."""
        if not self._running:
            logger.debug(f"Event bus not running, dropping event {event.type.value}")
            return

        self.stats["events_published"] += 1
        await self._handle_event(event)

    async def publish_data(
        self,
        event_type: EventType,
        data: dict[str, Any],
        source: str | None = None,
        correlation_id: str | None = None,
        tags: set[str] | None = None,
    ) -> None:
        """Publish event with data."""
        metadata = EventMetadata(
            source=source, correlation_id=correlation_id, tags=tags or set()
        )
        await self.publish(Event(type=event_type, data=data, metadata=metadata))

    async def _handle_event(self, event: Event) -> None:
        """Handle a single event."""
        self.stats["events_processed"] += 1

        handlers = list(self._handlers.get(event.type, []))
        handlers.extend(self._global_handlers)

        for handler in handlers:
            try:
                result = handler(event)
                if hasattr(result, "__await__"):
                    await result
            except Exception as e:
                self.stats["handler_errors"] += 1
                logger.error(f"Error in event handler: {e}")

        for channel in list(self._channels.values()):
            if channel.event_filter and not channel.event_filter.matches(event):
                continue
            try:
                channel.queue.put_nowait(event)
            except asyncio.QueueFull:
                channel.dropped += 1
                self.stats["events_dropped"] += 1
                logger.warning(
                    f"Event channel {channel.channel_id} full, dropping event: {event.type.value}"
                )

    def get_stats(self) -> dict[str, Any]:
        """Get event bus statistics."""
        return {
            **self.stats,
            "open_channels": len(self._channels),
            "running": self._running,
        }
