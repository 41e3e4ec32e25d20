"""
Capacity Counter for Registrations Service.

Keeps one CapacitySnapshot per event, refreshed by an initial fetch, by
change notifications and by optimistic bumps after local actions. Each
subscribed event gets a single reconciliation loop that consumes the event's
notifications, coalesces bursts into one re-count and hands the authoritative
count to every listener.
"""

import asyncio
import inspect
import logging
from typing import Awaitable, Callable, Dict, List, Optional, Union

from ..schemas.registration import CapacitySnapshot
from .change_feed import ChangeFeed, FeedSubscription
from .errors import EventNotFoundError, TransientFetchError
from .registration_store import RegistrationStore

logger = logging.getLogger(__name__)

CountListener = Callable[[int], Union[Awaitable[None], None]]


class CounterSubscription:
    """Handle returned by CapacityCounter.subscribe."""

    def __init__(self, counter: "CapacityCounter", event_id: str, listener: CountListener):
        self.event_id = event_id
        self.listener = listener
        self.active = True
        self._counter = counter

    def unsubscribe(self):
        if self.active:
            self.active = False
            self._counter._remove_listener(self)


class _EventChannel:
    """Notification plumbing for one event."""

    def __init__(self):
        self.queue: asyncio.Queue = asyncio.Queue()
        self.feed_subscriptions: List[FeedSubscription] = []
        self.listeners: Dict[CountListener, CounterSubscription] = {}
        self.task: Optional[asyncio.Task] = None


class CapacityCounter:
    """Notification-driven enrolled counts with optimistic local adjustment."""

    def __init__(self, store: RegistrationStore, feed: ChangeFeed):
        self.store = store
        self.feed = feed
        self._snapshots: Dict[str, CapacitySnapshot] = {}
        self._channels: Dict[str, _EventChannel] = {}

    def snapshot(self, event_id: str) -> Optional[CapacitySnapshot]:
        """Current snapshot, or None while the count is unknown."""
        return self._snapshots.get(event_id)

    async def initialize(self, event_id: str) -> int:
        """
        Fetch the authoritative count and capacity for an event.

        Raises:
            TransientFetchError: The store could not be read. The snapshot
                stays unknown rather than showing zero.
            EventNotFoundError: The event does not exist. No snapshot is kept.
        """
        event = await self.store.get_event(event_id)
        if event is None:
            self._snapshots.pop(event_id, None)
            raise EventNotFoundError()
        enrolled = await self.store.count_registrations(event_id)
        capacity = event.capacity
        self._snapshots[event_id] = CapacitySnapshot(
            event_id=event_id, enrolled=enrolled, capacity=capacity
        )
        logger.info(f"Event {event_id}: {enrolled}/{capacity or 'unlimited'} enrolled")
        return enrolled

    async def recount(self, event_id: str, refresh_capacity: bool = False) -> Optional[int]:
        """
        Replace the snapshot with a freshly queried count.

        Returns:
            The authoritative count, or None if the store could not be read
            or the event no longer exists. A failed re-count keeps the
            previous snapshot until the next notification or reload.
        """
        current = self._snapshots.get(event_id)
        try:
            if current is None or refresh_capacity:
                return await self.initialize(event_id)
            enrolled = await self.store.count_registrations(event_id)
        except TransientFetchError:
            logger.warning(f"Re-count for event {event_id} failed, keeping last known value")
            return None
        except EventNotFoundError:
            logger.info(f"Event {event_id} no longer exists, dropping its count")
            return None

        self._snapshots[event_id] = current.with_enrolled(enrolled, provisional=False)
        return enrolled

    def bump_optimistic(
        self, event_id: str, delta: int, basis: Optional[CapacitySnapshot] = None
    ) -> Optional[CapacitySnapshot]:
        """
        Adjust the displayed count right after a local action, floored at 0.
        The value is provisional and is replaced by the next authoritative count.

        Args:
            basis: The snapshot the action was taken against. If a newer count
                has replaced it, that count already reflects the action and
                the bump is skipped.
        """
        current = self._snapshots.get(event_id)
        if current is None:
            return None
        if basis is not None and current is not basis:
            logger.debug(f"Event {event_id}: skipping optimistic {delta:+d}, count already refreshed")
            return current
        bumped = current.with_enrolled(current.enrolled + delta, provisional=True)
        self._snapshots[event_id] = bumped
        logger.debug(f"Event {event_id}: optimistic {delta:+d} -> {bumped.enrolled}")
        return bumped

    def subscribe(self, event_id: str, listener: CountListener) -> CounterSubscription:
        """
        Call `listener` with the re-queried count whenever registrations of the
        event change. Subscribing the same listener again returns the existing
        handle.
        """
        channel = self._channels.get(event_id)
        if channel is None:
            channel = self._open_channel(event_id)

        existing = channel.listeners.get(listener)
        if existing is not None:
            return existing

        subscription = CounterSubscription(self, event_id, listener)
        channel.listeners[listener] = subscription
        return subscription

    def listener_count(self, event_id: str) -> int:
        channel = self._channels.get(event_id)
        return len(channel.listeners) if channel else 0

    def _open_channel(self, event_id: str) -> _EventChannel:
        channel = _EventChannel()
        channel.feed_subscriptions = [
            self.feed.subscribe(self.store.registration_table, event_id, channel.queue),
            self.feed.subscribe(self.store.offering_table, event_id, channel.queue),
        ]
        channel.task = asyncio.create_task(self._reconcile_loop(event_id, channel))
        self._channels[event_id] = channel
        return channel

    def _remove_listener(self, subscription: CounterSubscription):
        channel = self._channels.get(subscription.event_id)
        if channel is None:
            return
        if channel.listeners.get(subscription.listener) is subscription:
            del channel.listeners[subscription.listener]
        if not channel.listeners:
            self._close_channel(subscription.event_id)

    def _close_channel(self, event_id: str) -> Optional[asyncio.Task]:
        channel = self._channels.pop(event_id, None)
        if channel is None:
            return None
        # An unwatched count goes stale.
        self._snapshots.pop(event_id, None)
        for feed_subscription in channel.feed_subscriptions:
            feed_subscription.close()
        for subscription in channel.listeners.values():
            subscription.active = False
        channel.listeners.clear()
        if channel.task:
            channel.task.cancel()
        return channel.task

    async def _reconcile_loop(self, event_id: str, channel: _EventChannel):
        while True:
            first = await channel.queue.get()
            pending = [first]
            while not channel.queue.empty():
                pending.append(channel.queue.get_nowait())

            refresh_capacity = any(n.table == self.store.offering_table for n in pending)
            count = await self.recount(event_id, refresh_capacity=refresh_capacity)
            if count is None:
                continue

            for listener in list(channel.listeners):
                await self._notify(event_id, listener, count)

    async def _notify(self, event_id: str, listener: CountListener, count: int):
        try:
            result = listener(count)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception(f"Count listener for event {event_id} failed")

    async def close(self):
        """Stop every reconciliation loop and drop all subscriptions."""
        tasks = [self._close_channel(event_id) for event_id in list(self._channels)]
        for task in tasks:
            if task is None:
                continue
            try:
                await task
            except asyncio.CancelledError:
                pass
