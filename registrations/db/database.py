"""
Database connection and session management for Registrations Service.
The tables belong to the hosted backend; this service only reads them and
invokes its remote procedures.
"""

from sqlalchemy import text
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from contextlib import asynccontextmanager
from typing import AsyncGenerator
import logging

from registrations.core.config import config

logger = logging.getLogger(__name__)


class DatabaseManager:
    """
    Database manager for the remote data store.
    Handles connection pooling and transaction management.
    """

    def __init__(self):
        self.async_engine = None
        self.async_session_factory = None
        self._initialized = False

    async def initialize(self):
        """Initialize the async engine and session factory."""
        if self._initialized:
            return

        try:
            db_url = await config.get_database_url()
            db_config = await config.get_database_config()

            self.async_engine = create_async_engine(
                db_url,
                pool_size=db_config["pool_size"],
                max_overflow=db_config["max_overflow"],
                pool_timeout=db_config["pool_timeout"],
                pool_recycle=db_config["pool_recycle"],
                pool_pre_ping=True,
                echo=False,
                connect_args={
                    "statement_cache_size": 0,
                    "prepared_statement_cache_size": 0
                }
            )

            self.async_session_factory = async_sessionmaker(
                bind=self.async_engine,
                class_=AsyncSession,
                autoflush=False,
                expire_on_commit=False
            )

            self._initialized = True
            logger.info("Database manager initialized successfully")

        except Exception as e:
            logger.error(f"Failed to initialize database manager: {e}")
            raise

    @asynccontextmanager
    async def get_async_session(self) -> AsyncGenerator[AsyncSession, None]:
        """
        Get an async database session with automatic transaction management.
        Ensures proper rollback on exceptions.
        """
        if not self._initialized:
            raise RuntimeError("Database manager not initialized")

        session = self.async_session_factory()
        try:
            yield session
            await session.commit()
        except Exception as e:
            await session.rollback()
            logger.error(f"Async database session error: {e}")
            raise
        finally:
            await session.close()

    async def health_check(self) -> bool:
        """Run a trivial query against the database."""
        try:
            async with self.get_async_session() as session:
                await session.execute(text("SELECT 1"))
            return True
        except Exception as e:
            logger.error(f"Database health check failed: {e}")
            return False

    async def close(self):
        """Close all database connections."""
        if self.async_engine:
            await self.async_engine.dispose()
        self._initialized = False
        logger.info("Database connections closed")


# Global database manager instance
db_manager = DatabaseManager()
