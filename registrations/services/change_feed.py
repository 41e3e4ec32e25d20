"""
Change-notification channel for Registrations Service.

ChangeFeed fans notifications out to per-(table, event) subscriptions inside
the process. RedisChangeFeed feeds it from a Redis pattern subscription.
Notifications are triggers to re-query; delivery is at-least-once and may
contain duplicates.
"""

import asyncio
import logging
from typing import Dict, Set, Union

from pydantic import ValidationError

from ..db.redis_client import RedisManager
from ..schemas.registration import ChangeNotification
from .event_publisher import change_channel

logger = logging.getLogger(__name__)


class FeedSubscription:
    """Delivers the notifications of one channel into a consumer's queue."""

    def __init__(self, feed: "ChangeFeed", channel: str, queue: asyncio.Queue):
        self.channel = channel
        self.queue = queue
        self.closed = False
        self._feed = feed

    def _deliver(self, notification: ChangeNotification):
        if not self.closed:
            self.queue.put_nowait(notification)

    def close(self):
        self._feed.unsubscribe(self)


class ChangeFeed:
    """In-process fan-out of change notifications, scoped by channel."""

    def __init__(self, channel_prefix: str = "venue:changes"):
        self.channel_prefix = channel_prefix
        self._subscriptions: Dict[str, Set[FeedSubscription]] = {}

    def subscribe(self, table: str, event_id: str, queue: asyncio.Queue) -> FeedSubscription:
        """
        Subscribe to changes of `table` filtered to `event_id`, delivered into
        `queue`. Several subscriptions may share one queue to merge their
        notifications.
        """
        channel = change_channel(self.channel_prefix, table, event_id)
        subscription = FeedSubscription(self, channel, queue)
        self._subscriptions.setdefault(channel, set()).add(subscription)
        logger.debug(f"Subscribed to {channel}")
        return subscription

    def unsubscribe(self, subscription: FeedSubscription):
        """Remove a subscription. Safe to call more than once."""
        subscription.closed = True
        subscribers = self._subscriptions.get(subscription.channel)
        if not subscribers:
            return
        subscribers.discard(subscription)
        if not subscribers:
            del self._subscriptions[subscription.channel]
        logger.debug(f"Unsubscribed from {subscription.channel}")

    def subscriber_count(self, channel: str) -> int:
        return len(self._subscriptions.get(channel, ()))

    def dispatch(self, channel: str, payload: Union[str, bytes, dict]) -> int:
        """
        Deliver a notification to the subscribers of `channel`.

        Returns:
            Number of subscriptions the notification was delivered to
        """
        subscribers = self._subscriptions.get(channel)
        if not subscribers:
            return 0

        try:
            if isinstance(payload, dict):
                notification = ChangeNotification.model_validate(payload)
            else:
                notification = ChangeNotification.model_validate_json(payload)
        except ValidationError as e:
            logger.warning(f"Ignoring malformed notification on {channel}: {e}")
            return 0

        for subscription in list(subscribers):
            subscription._deliver(notification)
        return len(subscribers)

    async def start(self):
        pass

    async def stop(self):
        pass


class RedisChangeFeed(ChangeFeed):
    """
    Change feed backed by Redis pub/sub.
    A single pattern subscription serves every event; the listener task
    dispatches each message to the matching in-process subscriptions.
    """

    def __init__(self, redis_manager: RedisManager, channel_prefix: str = "venue:changes"):
        super().__init__(channel_prefix)
        self.redis_manager = redis_manager
        self.running = False
        self.pubsub = None
        self._listener = None

    async def start(self):
        """Start listening for change notifications."""
        if self.running:
            return

        try:
            self.pubsub = await self.redis_manager.pubsub()
            await self.pubsub.psubscribe(f"{self.channel_prefix}:*")
            self.running = True
            self._listener = asyncio.create_task(self._listen_for_messages())
            logger.info(f"Change feed started on {self.channel_prefix}:*")

        except Exception as e:
            logger.error(f"Failed to start change feed: {e}")
            raise

    async def stop(self):
        """Stop the listener and release the pub/sub connection."""
        if self.pubsub is None:
            return

        self.running = False
        if self._listener:
            self._listener.cancel()
            try:
                await self._listener
            except asyncio.CancelledError:
                pass
            self._listener = None
        if self.pubsub:
            await self.pubsub.punsubscribe()
            await self.pubsub.aclose()
            self.pubsub = None

        logger.info("Change feed stopped")

    async def _listen_for_messages(self):
        """Listen for messages from Redis pub/sub."""
        try:
            while self.running:
                message = await self.pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)

                if message and message["type"] == "pmessage":
                    self._handle_message(message)

        except asyncio.CancelledError:
            raise
        except Exception as e:
            # The subscription stops silently; counts recover on reload.
            logger.error(f"Error in change feed listener: {e}")
            self.running = False

    def _handle_message(self, message):
        """Handle an incoming Redis pattern message."""
        delivered = self.dispatch(message["channel"], message["data"])
        logger.debug(f"Change on {message['channel']} delivered to {delivered} subscriptions")
