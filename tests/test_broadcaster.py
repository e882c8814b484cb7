"""Tests for the event broadcaster."""

import asyncio

import pytest

from svn_migrate.events.broadcaster import EventBroadcaster, EventType


class TestEventBroadcaster:
    """Test event fan-out."""

    def setup_method(self):
        """Set up test fixtures."""
        self.broadcaster = EventBroadcaster(default_maxsize=10)

    @pytest.mark.asyncio
    async def test_subscriber_receives_events(self):
        """Test an unfiltered subscriber sees every record."""
        subscription = self.broadcaster.subscribe()

        self.broadcaster.emit(EventType.STARTED, 'a', {'job_id': 'j1'})
        self.broadcaster.emit(EventType.COMPLETED, 'b')

        first = await subscription.get(timeout=1)
        second = await subscription.get(timeout=1)
        assert (first.type, first.record_id, first.payload) == (
            EventType.STARTED,
            'a',
            {'job_id': 'j1'},
        )
        assert second.record_id == 'b'

    @pytest.mark.asyncio
    async def test_filter_by_record(self):
        """Test a filtered subscriber only sees its record."""
        subscription = self.broadcaster.subscribe('a')

        self.broadcaster.emit(EventType.STARTED, 'b')
        self.broadcaster.emit(EventType.STARTED, 'a')

        event = await subscription.get(timeout=1)
        assert event.record_id == 'a'
        assert subscription.queue.empty()

    @pytest.mark.asyncio
    async def test_full_queue_drops(self):
        """Test a slow subscriber loses events without blocking others."""
        slow = self.broadcaster.subscribe(maxsize=2)
        fast = self.broadcaster.subscribe(maxsize=10)

        for i in range(5):
            self.broadcaster.emit(EventType.PROGRESS, 'a', {'current': i})

        assert slow.queue.qsize() == 2
        assert slow.dropped == 3
        assert fast.queue.qsize() == 5
        stats = self.broadcaster.stats
        assert stats['events_emitted'] == 5
        assert stats['events_delivered'] == 7
        assert stats['events_dropped'] == 3

    @pytest.mark.asyncio
    async def test_get_timeout(self):
        """Test waiting on an empty subscription times out."""
        subscription = self.broadcaster.subscribe()

        with pytest.raises(asyncio.TimeoutError):
            await subscription.get(timeout=0.01)

    @pytest.mark.asyncio
    async def test_close_ends_iteration(self):
        """Test closing the broadcaster ends async iteration after queued events."""
        subscription = self.broadcaster.subscribe()
        self.broadcaster.emit(EventType.STARTED, 'a')
        self.broadcaster.close()

        received = [event async for event in subscription]

        assert [event.type for event in received] == [EventType.STARTED]
        assert self.broadcaster.subscriber_count == 0

    @pytest.mark.asyncio
    async def test_context_manager_unsubscribes(self):
        """Test leaving the context detaches the subscriber."""
        async with self.broadcaster.subscribe('a'):
            assert self.broadcaster.subscriber_count == 1

        assert self.broadcaster.subscriber_count == 0
        self.broadcaster.emit(EventType.STARTED, 'a')
        assert self.broadcaster.stats['events_delivered'] == 0
