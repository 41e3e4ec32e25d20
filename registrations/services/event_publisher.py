"""
Event Publisher for Registrations Service.
Publishes row-change notifications to Redis so that every process showing
an event's count re-queries it.
"""

import logging

from ..db.redis_client import RedisManager
from ..schemas.registration import ChangeNotification, ChangeType

logger = logging.getLogger(__name__)

REGISTRATIONS_TABLE = "event_registrations"
EVENTS_TABLE = "events"
ACTIVITY_REGISTRATIONS_TABLE = "registrations"
ACTIVITIES_TABLE = "activities"


def change_channel(prefix: str, table: str, event_id: str) -> str:
    """Channel carrying changes of `table` filtered to one event."""
    return f"{prefix}:{table}:{event_id}"


class RegistrationEventPublisher:
    """
    Publishes change notifications to Redis channels.
    Publishing is best effort: a lost notification is recovered by the next one
    or by a reload, so failures are logged and not raised.
    """

    def __init__(self, redis_manager: RedisManager, channel_prefix: str = "venue:changes"):
        self.redis_manager = redis_manager
        self.channel_prefix = channel_prefix

    async def _publish(self, notification: ChangeNotification):
        channel = change_channel(self.channel_prefix, notification.table, notification.event_id)
        try:
            await self.redis_manager.publish(channel, notification.model_dump_json())
            logger.info(f"Published {notification.type.value} on {channel}")
        except Exception as e:
            logger.error(f"Failed to publish {notification.type.value} on {channel}: {e}")

    async def publish_registration_created(self, event_id: str, table: str = REGISTRATIONS_TABLE):
        """Publish a registration insert for an event or activity."""
        await self._publish(ChangeNotification(
            type=ChangeType.INSERT, table=table, event_id=event_id
        ))

    async def publish_registration_deleted(self, event_id: str, table: str = REGISTRATIONS_TABLE):
        """Publish a registration delete for an event or activity."""
        await self._publish(ChangeNotification(
            type=ChangeType.DELETE, table=table, event_id=event_id
        ))
