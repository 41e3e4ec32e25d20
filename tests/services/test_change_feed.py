"""
Tests for the change-notification feed.
Tests per-event scoping, subscription teardown and Redis message handling.
"""

import pytest
import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

from registrations.schemas.registration import ChangeType
from registrations.services.change_feed import ChangeFeed, RedisChangeFeed
from registrations.services.event_publisher import REGISTRATIONS_TABLE, change_channel


def insert_payload(event_id: str) -> str:
    return json.dumps({"type": "INSERT", "table": REGISTRATIONS_TABLE, "event_id": event_id})


class TestChangeFeed:
    """Test in-process fan-out."""

    @pytest.fixture
    def feed(self):
        return ChangeFeed(channel_prefix="test:changes")

    @pytest.mark.asyncio
    async def test_dispatch_reaches_subscriber(self, feed):
        queue = asyncio.Queue()
        feed.subscribe(REGISTRATIONS_TABLE, "evt-1", queue)

        delivered = feed.dispatch("test:changes:event_registrations:evt-1", insert_payload("evt-1"))
        notification = await asyncio.wait_for(queue.get(), timeout=1)

        assert delivered == 1
        assert notification.type == ChangeType.INSERT
        assert notification.event_id == "evt-1"

    def test_notifications_scoped_to_event(self, feed):
        """A change for one event never reaches another event's subscribers."""
        first, second = asyncio.Queue(), asyncio.Queue()
        feed.subscribe(REGISTRATIONS_TABLE, "evt-1", first)
        feed.subscribe(REGISTRATIONS_TABLE, "evt-2", second)

        feed.dispatch(change_channel("test:changes", REGISTRATIONS_TABLE, "evt-2"), insert_payload("evt-2"))

        assert first.empty()
        assert second.qsize() == 1

    def test_dispatch_accepts_dict_and_bytes(self, feed):
        queue = asyncio.Queue()
        subscription = feed.subscribe(REGISTRATIONS_TABLE, "evt-1", queue)

        feed.dispatch(subscription.channel, {"type": "DELETE", "table": REGISTRATIONS_TABLE, "event_id": "evt-1"})
        feed.dispatch(subscription.channel, insert_payload("evt-1").encode())

        assert queue.get_nowait().type == ChangeType.DELETE
        assert queue.get_nowait().type == ChangeType.INSERT

    def test_duplicates_are_delivered(self, feed):
        """Delivery is at-least-once; consumers coalesce."""
        queue = asyncio.Queue()
        subscription = feed.subscribe(REGISTRATIONS_TABLE, "evt-1", queue)

        feed.dispatch(subscription.channel, insert_payload("evt-1"))
        feed.dispatch(subscription.channel, insert_payload("evt-1"))

        assert queue.qsize() == 2

    def test_malformed_payload_ignored(self, feed):
        queue = asyncio.Queue()
        subscription = feed.subscribe(REGISTRATIONS_TABLE, "evt-1", queue)

        assert feed.dispatch(subscription.channel, "not json") == 0
        assert feed.dispatch(subscription.channel, {"table": REGISTRATIONS_TABLE}) == 0
        assert queue.empty()

    def test_dispatch_without_subscribers(self, feed):
        assert feed.dispatch("test:changes:event_registrations:evt-9", insert_payload("evt-9")) == 0

    def test_unsubscribe_is_idempotent(self, feed):
        subscription = feed.subscribe(REGISTRATIONS_TABLE, "evt-1", asyncio.Queue())
        channel = subscription.channel

        subscription.close()
        subscription.close()
        feed.unsubscribe(subscription)

        assert subscription.closed is True
        assert feed.subscriber_count(channel) == 0
        assert feed.dispatch(channel, insert_payload("evt-1")) == 0

    def test_shared_queue(self, feed):
        """Two subscriptions sharing a queue merge their notifications."""
        queue = asyncio.Queue()
        registrations = feed.subscribe(REGISTRATIONS_TABLE, "evt-1", queue)
        events = feed.subscribe("events", "evt-1", queue)

        feed.dispatch(registrations.channel, insert_payload("evt-1"))
        feed.dispatch(events.channel, {"type": "UPDATE", "table": "events", "event_id": "evt-1"})

        assert queue.qsize() == 2

    def test_closed_subscription_receives_nothing(self, feed):
        closed_queue, open_queue = asyncio.Queue(), asyncio.Queue()
        subscription = feed.subscribe(REGISTRATIONS_TABLE, "evt-1", closed_queue)
        other = feed.subscribe(REGISTRATIONS_TABLE, "evt-1", open_queue)
        subscription.close()

        delivered = feed.dispatch(other.channel, insert_payload("evt-1"))

        assert delivered == 1
        assert closed_queue.empty()
        assert open_queue.qsize() == 1


class TestRedisChangeFeed:
    """Test the Redis-backed feed."""

    @pytest.fixture
    def mock_pubsub(self):
        pubsub = AsyncMock()

        async def get_message(**kwargs):
            await asyncio.sleep(0.01)
            return None

        pubsub.get_message = get_message
        return pubsub

    @pytest.fixture
    def mock_redis_manager(self, mock_pubsub):
        redis_manager = MagicMock()
        redis_manager.pubsub = AsyncMock(return_value=mock_pubsub)
        return redis_manager

    @pytest.fixture
    def redis_feed(self, mock_redis_manager):
        return RedisChangeFeed(mock_redis_manager, channel_prefix="venue:changes")

    def test_initialization(self, redis_feed):
        assert redis_feed.running is False
        assert redis_feed.pubsub is None

    def test_handle_message_dispatches(self, redis_feed):
        queue = asyncio.Queue()
        redis_feed.subscribe(REGISTRATIONS_TABLE, "evt-1", queue)

        redis_feed._handle_message({
            "type": "pmessage",
            "pattern": "venue:changes:*",
            "channel": "venue:changes:event_registrations:evt-1",
            "data": insert_payload("evt-1"),
        })

        assert queue.qsize() == 1

    @pytest.mark.asyncio
    async def test_start_and_stop(self, redis_feed, mock_pubsub):
        await redis_feed.start()

        mock_pubsub.psubscribe.assert_called_once_with("venue:changes:*")
        assert redis_feed.running is True

        await redis_feed.stop()

        mock_pubsub.punsubscribe.assert_called_once()
        mock_pubsub.aclose.assert_called_once()
        assert redis_feed.running is False
        assert redis_feed.pubsub is None

    @pytest.mark.asyncio
    async def test_listener_delivers_messages(self, redis_feed, mock_pubsub):
        queue = asyncio.Queue()
        redis_feed.subscribe(REGISTRATIONS_TABLE, "evt-1", queue)
        message = {
            "type": "pmessage",
            "pattern": "venue:changes:*",
            "channel": "venue:changes:event_registrations:evt-1",
            "data": insert_payload("evt-1"),
        }
        pending = [message]

        async def get_message(**kwargs):
            if pending:
                return pending.pop(0)
            await asyncio.sleep(0.01)
            return None

        mock_pubsub.get_message = get_message

        await redis_feed.start()
        notification = await asyncio.wait_for(queue.get(), timeout=1)
        await redis_feed.stop()

        assert notification.event_id == "evt-1"

    @pytest.mark.asyncio
    async def test_stop_without_start(self, redis_feed, mock_pubsub):
        await redis_feed.stop()

        mock_pubsub.aclose.assert_not_called()
