"""
Redis client for Registrations Service.
Carries the change-notification channel (pub/sub) between the remote store
and every process that displays registration counts.
"""

from typing import Optional
import redis.asyncio as redis
from redis.asyncio import Redis
from redis.asyncio.client import PubSub
import logging

from registrations.core.config import config

logger = logging.getLogger(__name__)


class RedisManager:
    """
    Redis manager for change notifications.
    Owns the connection used for publishing and for pub/sub listeners.
    """

    def __init__(self):
        self.redis_client: Optional[Redis] = None
        self._initialized = False

    async def initialize(self):
        """Initialize Redis connection."""
        if self._initialized:
            return

        try:
            redis_url = await config.get_redis_url()
            self.redis_client = redis.from_url(
                redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=5,
                retry_on_timeout=True,
                health_check_interval=30
            )

            # Test connection
            await self.redis_client.ping()
            self._initialized = True
            logger.info("Redis client initialized successfully")

        except Exception as e:
            logger.error(f"Failed to initialize Redis client: {e}")
            raise

    async def close(self):
        """Close Redis connection."""
        if self.redis_client:
            await self.redis_client.aclose()
        self._initialized = False
        logger.info("Redis connection closed")

    async def publish(self, channel: str, message: str) -> int:
        """
        Publish a message on a channel.

        Returns:
            Number of subscribers that received the message
        """
        if not self._initialized:
            await self.initialize()

        return await self.redis_client.publish(channel, message)

    async def pubsub(self) -> PubSub:
        """Create a pub/sub handle on the shared connection pool."""
        if not self._initialized:
            await self.initialize()

        return self.redis_client.pubsub()

    # Health Check
    async def health_check(self) -> bool:
        """Check Redis connection health."""
        try:
            if not self._initialized:
                await self.initialize()

            result = await self.redis_client.ping()
            return result is True
        except Exception as e:
            logger.error(f"Redis health check failed: {e}")
            return False


# Global Redis manager instance
redis_manager = RedisManager()
