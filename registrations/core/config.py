"""
Configuration management for Registrations Service.
Uses Zero Python SDK for secure configuration, with environment variables
as the source when no Zero token is provided (local development, tests).
"""

import os
import asyncio
import concurrent.futures
from urllib.parse import quote_plus
from typing import Dict, Any, Optional
import logging
from zero_python_sdk import zero

logger = logging.getLogger(__name__)


class ZeroSecretsManager:
    """
    Zero secrets client using the official Zero Python SDK.
    Secrets are fetched once and cached for the lifetime of the process.
    """

    def __init__(self, zero_token: str, caller_name: str = "venue"):
        self.zero_token = zero_token
        self.caller_name = caller_name
        self._cache: Dict[str, Any] = {}
        self._secrets = None

    async def _fetch_secrets(self):
        """Fetch secrets from Zero if not already cached."""
        if self._secrets is None:
            try:
                loop = asyncio.get_running_loop()
                with concurrent.futures.ThreadPoolExecutor() as executor:
                    self._secrets = await loop.run_in_executor(
                        executor,
                        lambda: zero(
                            token=self.zero_token,
                            pick=["venue"],
                            caller_name=self.caller_name
                        ).fetch()
                    )
                logger.info("Successfully fetched secrets from Zero")
            except Exception as e:
                logger.error(f"Failed to fetch secrets from Zero: {e}")
                self._secrets = {}

    def _normalize_key(self, key: str) -> str:
        """Normalize a key to lowercase and replace underscores with hyphens."""
        return key.lower().replace("_", "-")

    async def get_secret(self, key: str) -> Optional[str]:
        """
        Get a secret value by key.

        Args:
            key: The secret key to retrieve

        Returns:
            Secret value or None if not found
        """
        try:
            key = self._normalize_key(key)
            if key in self._cache:
                return self._cache[key]

            await self._fetch_secrets()
            venue_secrets = self._secrets.get("venue", {})
            secret_value = venue_secrets.get(key)

            if secret_value:
                self._cache[key] = secret_value

            return secret_value

        except Exception as e:
            logger.error(f"Failed to fetch secret {key}: {e}")
            return None

    async def close(self):
        """Close method for compatibility."""
        pass


class EnvironmentSecretsManager:
    """Reads secrets straight from the process environment."""

    async def get_secret(self, key: str) -> Optional[str]:
        return os.getenv(key.upper())

    async def close(self):
        pass


class RegistrationsConfig:
    """
    Registrations Service configuration manager.
    Every getter falls back to a development default when the secret is unset.
    """

    def __init__(self):
        self.zero_token = os.getenv("ZERO_TOKEN")
        if self.zero_token:
            self.secrets_manager = ZeroSecretsManager(self.zero_token)
        else:
            logger.info("ZERO_TOKEN not set, reading configuration from environment")
            self.secrets_manager = EnvironmentSecretsManager()

    async def get_database_url(self) -> str:
        """Get the database connection URL (asyncpg driver)."""
        host = await self.secrets_manager.get_secret("DB_HOST") or "localhost"
        port = await self.secrets_manager.get_secret("DB_PORT") or "5432"
        name = await self.secrets_manager.get_secret("DB_NAME") or "postgres"
        user = await self.secrets_manager.get_secret("DB_USER") or "postgres"
        password = await self.secrets_manager.get_secret("DB_PASSWORD") or "postgres"

        return f"postgresql+asyncpg://{user}:{quote_plus(password)}@{host}:{port}/{name}"

    async def get_redis_url(self) -> str:
        """Get the Redis connection URL."""
        host = await self.secrets_manager.get_secret("REDIS_HOST") or "localhost"
        port = await self.secrets_manager.get_secret("REDIS_PORT") or "6379"
        password = await self.secrets_manager.get_secret("REDIS_PASSWORD")
        use_tls = await self.secrets_manager.get_secret("REDIS_USE_TLS")

        protocol = "rediss://" if use_tls else "redis://"

        if password:
            return f"{protocol}:{password}@{host}:{port}"
        return f"{protocol}{host}:{port}"

    async def get_jwt_secret(self) -> str:
        """Get JWT secret key shared with the auth provider."""
        return await self.secrets_manager.get_secret("JWT_SECRET") or "your-secret-key-change-in-production"

    async def get_jwt_algorithm(self) -> str:
        """Get JWT algorithm."""
        return await self.secrets_manager.get_secret("JWT_ALGORITHM") or "HS256"

    async def get_jwt_audience(self) -> Optional[str]:
        """Get the expected JWT audience, if the auth provider sets one."""
        return await self.secrets_manager.get_secret("JWT_AUDIENCE")

    async def get_registration_config(self) -> Dict[str, Any]:
        """Get registration flow configuration."""
        return {
            "submit_timeout_seconds": float(await self.secrets_manager.get_secret("SUBMIT_TIMEOUT_SECONDS") or "15"),
            "change_channel_prefix": await self.secrets_manager.get_secret("CHANGE_CHANNEL_PREFIX") or "venue:changes",
            "enable_change_publishing": await self.secrets_manager.get_secret("ENABLE_CHANGE_PUBLISHING") != "false",
            "max_tracked_registrations": int(await self.secrets_manager.get_secret("MAX_TRACKED_REGISTRATIONS") or "5000"),
        }

    async def get_database_config(self) -> Dict[str, Any]:
        """Get database pool configuration."""
        return {
            "pool_size": int(await self.secrets_manager.get_secret("DB_POOL_SIZE") or "10"),
            "max_overflow": int(await self.secrets_manager.get_secret("DB_MAX_OVERFLOW") or "20"),
            "pool_timeout": int(await self.secrets_manager.get_secret("DB_POOL_TIMEOUT") or "30"),
            "pool_recycle": int(await self.secrets_manager.get_secret("DB_POOL_RECYCLE") or "3600"),
        }

    async def close(self):
        """Close the secrets manager."""
        await self.secrets_manager.close()


# Global config instance
config = RegistrationsConfig()
