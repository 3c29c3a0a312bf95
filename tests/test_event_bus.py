"""Unit tests for the asyncio event bus."""

import asyncio
from unittest.mock import AsyncMock, Mock

import pytest

from elastic_flow.bus import (
    Event,
    EventBus,
    EventFilter,
    EventMetadata,
    EventType,
)

# ---------------- module-level fixtures ----------------


@pytest.fixture
def event_bus():
    return EventBus()


@pytest.fixture
def mock_handler():
    return Mock()


@pytest.fixture
def async_mock_handler():
    return AsyncMock()


# ---------------- tests ----------------


class TestEvent:
    def test_event_creation(self):
        metadata = EventMetadata(source="test", tags={"node"})
        event = Event(EventType.NODE_STARTED, {"node_id": "a"}, metadata)
        assert event.type == EventType.NODE_STARTED
        assert event.data == {"node_id": "a"}
        assert event.metadata.source == "test"
        assert event.metadata.tags == {"node"}
        assert event.metadata.event_id


class TestEventFilter:
    def test_event_type_filtering(self):
        event_filter = EventFilter(
            event_types={EventType.EXECUTION_STARTED, EventType.EXECUTION_COMPLETED}
        )
        assert event_filter.matches(Event(EventType.EXECUTION_STARTED, {})) is True
        assert event_filter.matches(Event(EventType.NODE_STARTED, {})) is False

    def test_source_pattern_filtering(self):
        event_filter = EventFilter(source_patterns={"scheduler", "orchestrator"})
        event1 = Event(EventType.NODE_STARTED, {}, EventMetadata(source="scheduler"))
        event2 = Event(EventType.NODE_STARTED, {}, EventMetadata(source="resource_manager"))
        assert event_filter.matches(event1) is True
        assert event_filter.matches(event2) is False

    def test_tag_filtering(self):
        event_filter = EventFilter(required_tags={"priority", "component"}, excluded_tags={"debug"})
        event1 = Event(EventType.NODE_STARTED, {}, EventMetadata(tags={"priority", "component"}))
        event2 = Event(EventType.NODE_STARTED, {}, EventMetadata(tags={"priority"}))
        event3 = Event(
            EventType.NODE_STARTED, {}, EventMetadata(tags={"priority", "component", "debug"})
        )
        assert event_filter.matches(event1) is True
        assert event_filter.matches(event2) is False
        assert event_filter.matches(event3) is False

    def test_correlation_filtering(self):
        event_filter = EventFilter(correlation_id="exec-1")
        event1 = Event(EventType.NODE_STARTED, {}, EventMetadata(correlation_id="exec-1"))
        event2 = Event(EventType.NODE_STARTED, {}, EventMetadata(correlation_id="exec-2"))
        assert event_filter.matches(event1) is True
        assert event_filter.matches(event2) is False


class TestEventBus:
    def test_get_stats(self, event_bus):
        stats = event_bus.get_stats()
        assert "events_published" in stats
        assert "events_processed" in stats
        assert "handler_errors" in stats
        assert "active_handlers" in stats
        assert stats["running"] is False

    @pytest.mark.asyncio
    async def test_events_dropped_when_stopped(self, event_bus, mock_handler):
        event_bus.subscribe(EventType.NODE_STARTED, mock_handler)
        await event_bus.publish_data(EventType.NODE_STARTED, {"node_id": "a"})
        mock_handler.assert_not_called()
        assert event_bus.stats["events_published"] == 0

    @pytest.mark.asyncio
    async def test_sync_and_async_handlers(self, event_bus, mock_handler, async_mock_handler):
        await event_bus.start()
        event_bus.subscribe(EventType.NODE_STARTED, mock_handler)
        event_bus.subscribe_all(async_mock_handler)

        await event_bus.publish_data(EventType.NODE_STARTED, {"node_id": "a"}, source="scheduler")
        await event_bus.publish_data(EventType.NODE_COMPLETED, {"node_id": "a"})

        assert mock_handler.call_count == 1
        assert mock_handler.call_args[0][0].metadata.source == "scheduler"
        assert async_mock_handler.await_count == 2

    @pytest.mark.asyncio
    async def test_handler_errors_are_counted(self, event_bus, mock_handler):
        await event_bus.start()
        event_bus.subscribe(EventType.NODE_FAILED, Mock(side_effect=RuntimeError("boom")))
        event_bus.subscribe(EventType.NODE_FAILED, mock_handler)

        await event_bus.publish_data(EventType.NODE_FAILED, {})

        assert event_bus.stats["handler_errors"] == 1
        mock_handler.assert_called_once()

    @pytest.mark.asyncio
    async def test_unsubscribe(self, event_bus, mock_handler):
        await event_bus.start()
        event_bus.subscribe(EventType.NODE_STARTED, mock_handler)
        event_bus.subscribe_all(mock_handler)
        event_bus.unsubscribe(mock_handler)

        await event_bus.publish_data(EventType.NODE_STARTED, {})

        mock_handler.assert_not_called()
        assert event_bus.stats["active_handlers"] == 0


class TestEventChannel:
    @pytest.mark.asyncio
    async def test_channel_receives_filtered_events(self, event_bus):
        await event_bus.start()
        channel = event_bus.open_channel(EventFilter(correlation_id="exec-1"))

        await event_bus.publish_data(EventType.NODE_STARTED, {"n": 1}, correlation_id="exec-1")
        await event_bus.publish_data(EventType.NODE_STARTED, {"n": 2}, correlation_id="exec-2")
        await event_bus.publish_data(EventType.NODE_COMPLETED, {"n": 3}, correlation_id="exec-1")

        first = await channel.get(timeout=1)
        assert first.data == {"n": 1}
        assert [e.data["n"] for e in channel.drain()] == [3]
        assert channel.get_nowait() is None

    @pytest.mark.asyncio
    async def test_full_channel_drops_events(self, event_bus):
        await event_bus.start()
        channel = event_bus.open_channel(maxsize=1)

        await event_bus.publish_data(EventType.NODE_STARTED, {})
        await event_bus.publish_data(EventType.NODE_STARTED, {})

        assert channel.dropped == 1
        assert event_bus.stats["events_dropped"] == 1

    @pytest.mark.asyncio
    async def test_closed_channel_stops_receiving(self, event_bus):
        await event_bus.start()
        channel = event_bus.open_channel()
        event_bus.close_channel(channel)

        await event_bus.publish_data(EventType.NODE_STARTED, {})

        assert channel.get_nowait() is None
        assert event_bus.get_stats()["open_channels"] == 0

    @pytest.mark.asyncio
    async def test_get_times_out(self, event_bus):
        channel = event_bus.open_channel()
        with pytest.raises(asyncio.TimeoutError):
            await channel.get(timeout=0.01)
