"""
Database connection management.
Handles the Motor client and access to the task collection.
"""

import logging

from motor.motor_asyncio import (
    AsyncIOMotorClient,
    AsyncIOMotorCollection,
    AsyncIOMotorDatabase,
)

from kiln.config import Settings, get_settings

logger = logging.getLogger(__name__)

# Global client instance
_client: AsyncIOMotorClient | None = None


def create_client(url: str, **kwargs) -> AsyncIOMotorClient:
    """
    Create a Motor client returning timezone-aware datetimes.

    Args:
        url: MongoDB connection string.
        **kwargs: Extra client options.

    Returns:
        AsyncIOMotorClient: The new client.
    """
    return AsyncIOMotorClient(url, tz_aware=True, **kwargs)


def get_client(settings: Settings | None = None) -> AsyncIOMotorClient:
    """
    Get or create the process-wide Motor client.

    Args:
        settings: Settings used when the client is first created;
            defaults to the process settings.

    Returns:
        AsyncIOMotorClient: The client instance.
    """
    global _client
    if _client is None:
        settings = settings or get_settings()
        _client = create_client(settings.mongodb_url)
    return _client


def get_database(settings: Settings | None = None) -> AsyncIOMotorDatabase:
    """Get the configured database."""
    settings = settings or get_settings()
    return get_client(settings)[settings.mongodb_database]


def get_collection(
    name: str | None = None, settings: Settings | None = None
) -> AsyncIOMotorCollection:
    """
    Get a collection of the configured database.

    Args:
        name: Collection name; defaults to the task collection.
        settings: Settings naming the database and task collection;
            defaults to the process settings.

    Returns:
        AsyncIOMotorCollection: The collection.
    """
    settings = settings or get_settings()
    return get_database(settings)[name or settings.mongodb_collection]


async def ping(client: AsyncIOMotorClient | None = None) -> None:
    """
    Round-trip a ping to the server.

    Raises:
        pymongo.errors.PyMongoError: If the server is unreachable.
    """
    await (client or get_client()).admin.command("ping")


async def init_db(settings: Settings | None = None) -> None:
    """
    Initialize the database connection.
    Should be called on process startup.
    """
    settings = settings or get_settings()
    await ping(get_client(settings))
    logger.info(
        "Database connection initialized",
        extra={
            "database": settings.mongodb_database,
            "collection": settings.mongodb_collection,
        },
    )


async def close_db() -> None:
    """
    Close the database connection.
    Should be called on process shutdown.
    """
    global _client
    if _client is not None:
        _client.close()
        _client = None
        logger.info("Database connection closed")
